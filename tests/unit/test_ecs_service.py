from datetime import datetime, timezone

import pytest
from botocore.exceptions import ClientError

from taskfleet.core.entities.host import HostStatus
from taskfleet.core.entities.template import TaskTemplate
from taskfleet.core.entities.types import TaskDefinition
from taskfleet.core.errors import RemoteServiceError
from taskfleet.core.remote.ecs import EcsTaskService


def _client_error(code, message, operation):
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


class StubEcs:
    def __init__(self):
        self.calls = []
        self.pages = [
            {"containerInstanceArns": ["ci-1", "ci-2"], "nextToken": "page-2"},
            {"containerInstanceArns": ["ci-3"]},
        ]
        self.describe_definition_error = None
        self.run_response = {"tasks": [], "failures": []}

    def list_container_instances(self, **kwargs):
        self.calls.append(("list_container_instances", kwargs))
        return self.pages.pop(0)

    def describe_container_instances(self, **kwargs):
        self.calls.append(("describe_container_instances", kwargs))
        return {
            "containerInstances": [
                {
                    "containerInstanceArn": arn,
                    "ec2InstanceId": f"i-{arn}",
                    "status": "ACTIVE",
                    "runningTasksCount": 1,
                    "pendingTasksCount": 0,
                    "remainingResources": [
                        {"name": "CPU", "type": "INTEGER", "integerValue": 512},
                        {"name": "MEMORY", "type": "INTEGER", "integerValue": 1024},
                    ],
                }
                for arn in kwargs["containerInstances"]
            ]
        }

    def describe_task_definition(self, **kwargs):
        if self.describe_definition_error is not None:
            raise self.describe_definition_error
        return {"taskDefinition": {"taskDefinitionArn": "arn:td/family:3", "family": "family", "revision": 3}}

    def run_task(self, **kwargs):
        self.calls.append(("run_task", kwargs))
        return self.run_response

    def stop_task(self, **kwargs):
        raise _client_error("ThrottlingException", "Rate exceeded", "StopTask")


class StubEc2:
    def describe_instances(self, InstanceIds):
        return {
            "Reservations": [
                {
                    "Instances": [
                        {"InstanceId": instance_id, "LaunchTime": datetime(2024, 5, 6, 8, 0, tzinfo=timezone.utc)}
                        for instance_id in InstanceIds
                    ]
                }
            ]
        }


@pytest.fixture
def ecs():
    return StubEcs()


@pytest.fixture
def service(ecs):
    return EcsTaskService(
        "builds",
        region="us-east-1",
        ecs_client=ecs,
        autoscaling_client=object(),
        ec2_client=StubEc2(),
    )


def test_list_hosts_follows_next_token(service, ecs):
    assert service.list_hosts(HostStatus.ACTIVE) == ["ci-1", "ci-2", "ci-3"]

    first, second = [kwargs for name, kwargs in ecs.calls if name == "list_container_instances"]
    assert first == {"cluster": "builds", "status": "ACTIVE"}
    assert second["nextToken"] == "page-2"


def test_describe_hosts_merges_launch_times(service):
    hosts = service.describe_hosts(["ci-1"])

    assert len(hosts) == 1
    host = hosts[0]
    assert host.instance_id == "i-ci-1"
    assert host.running_tasks == 1
    assert host.remaining.cpu == 512
    assert host.remaining.memory == 1024
    assert host.launch_time == datetime(2024, 5, 6, 8, 0, tzinfo=timezone.utc)


def test_missing_definition_returns_none(service, ecs):
    ecs.describe_definition_error = _client_error("ClientException", "Unable to describe task definition.",
                                                  "DescribeTaskDefinition")
    assert service.find_definition("family") is None

    ecs.describe_definition_error = _client_error("AccessDeniedException", "denied", "DescribeTaskDefinition")
    with pytest.raises(RemoteServiceError) as excinfo:
        service.find_definition("family")
    assert excinfo.value.code == "AccessDeniedException"


def test_client_errors_are_wrapped(service):
    with pytest.raises(RemoteServiceError) as excinfo:
        service.stop_task("task-1")

    assert excinfo.value.operation == "stop_task"
    assert excinfo.value.code == "ThrottlingException"
    assert "Rate exceeded" in str(excinfo.value)


def test_run_task_overrides_agent_container(service, ecs):
    definition = TaskDefinition(
        arn="arn:td/family:3", family="family", revision=3, container_definitions=[{"name": "agent"}]
    )
    template = TaskTemplate(
        name="serverless", launch_type="FARGATE", subnets=["subnet-1"], tags={"team": "ci"}
    ).with_defaults()
    ecs.run_response = {"tasks": [], "failures": [{"reason": "RESOURCE:ENI", "arn": "arn:ci"}]}

    result = service.run_task(definition, template, ["-url", "http://c/"], {"AGENT_NODE_NAME": "agent-1"})

    request = [kwargs for name, kwargs in ecs.calls if name == "run_task"][0]
    override = request["overrides"]["containerOverrides"][0]
    assert override["name"] == "agent"
    assert override["environment"] == [{"name": "AGENT_NODE_NAME", "value": "agent-1"}]
    assert request["networkConfiguration"]["awsvpcConfiguration"]["subnets"] == ["subnet-1"]
    assert request["tags"] == [{"key": "team", "value": "ci"}]
    assert result.failures[0].reason == "RESOURCE:ENI"
