from taskfleet.core.entities.template import TaskTemplate
from taskfleet.core.remote.definitions import (
    build_register_request,
    definition_matches,
    family_name,
    normalize_container_definition,
)


def _template(**overrides):
    values = dict(name="builder", image="agent:1", cpu=512, memory=1024, environment={"B": "2", "A": "1"})
    values.update(overrides)
    return TaskTemplate(**values).with_defaults()


def test_family_name_strips_whitespace_from_cloud_name():
    assert family_name("my  ecs\tcloud", "builder") == "myecscloud-builder"


def test_register_or_reuse_is_idempotent(service):
    template = _template()
    first = service.register_or_reuse_definition(template, "fleet-builder")
    second = service.register_or_reuse_definition(template, "fleet-builder")

    assert service.register_calls == 1
    assert first.arn == second.arn


def test_changed_template_registers_new_revision(service):
    service.register_or_reuse_definition(_template(), "fleet-builder")
    updated = service.register_or_reuse_definition(_template(image="agent:2"), "fleet-builder")

    assert service.register_calls == 2
    assert updated.revision == 2


def test_role_and_network_mode_changes_are_detected(service):
    existing = service.register_or_reuse_definition(_template(), "fleet-builder")

    request = build_register_request("fleet-builder", _template(task_role="arn:aws:iam::1:role/agent"))
    assert definition_matches(existing, request)["task_role"] is False

    request = build_register_request("fleet-builder", _template(network_mode="host"))
    assert definition_matches(existing, request)["network_mode"] is False


def test_normalization_ignores_service_filled_defaults():
    requested = {
        "name": "agent",
        "image": "agent:1",
        "cpu": 0,
        "essential": True,
        "environment": [{"name": "B", "value": "2"}, {"name": "A", "value": "1"}],
        "portMappings": [{"containerPort": 8080}],
    }
    echoed = {
        "name": "agent",
        "image": "agent:1",
        "essential": True,
        "environment": [{"name": "A", "value": "1"}, {"name": "B", "value": "2"}],
        "portMappings": [{"containerPort": 8080, "protocol": "tcp"}],
        "mountPoints": [],
        "volumesFrom": [],
    }
    assert normalize_container_definition(requested) == normalize_container_definition(echoed)


def test_fargate_request_uses_awsvpc_and_string_sizes():
    template = _template(launch_type="FARGATE", execution_role="arn:aws:iam::1:role/exec", memory_reservation=768)
    request = build_register_request("fleet-builder", template)

    assert request["networkMode"] == "awsvpc"
    assert request["requiresCompatibilities"] == ["FARGATE"]
    assert request["cpu"] == "512"
    assert request["memory"] == "768"
    assert request["executionRoleArn"] == "arn:aws:iam::1:role/exec"
