import pytest

from taskfleet.core.actors.control.launcher import AGENT_NAME_ENV, AGENT_SECRET_ENV
from taskfleet.core.entities.agent import AgentState
from taskfleet.core.entities.host import HostStatus
from taskfleet.core.entities.template import TaskTemplate
from taskfleet.core.errors import (
    AgentConnectTimeout,
    InsufficientCapacityError,
    LaunchAttemptsExceeded,
    NodeRemovedError,
    RunTaskFailedError,
    TaskDefinitionNotFoundError,
    TaskStartTimeout,
    TaskStoppedError,
)

ENI_TIMEOUT = "Timeout waiting for network interface provisioning to complete"


@pytest.fixture
def template():
    return TaskTemplate(name="builder", image="agent:1", cpu=256, memory=512, label="linux").with_defaults()


@pytest.fixture
def node(agent_manager, template, service):
    service.add_host("host-1", cpu=1024, memory=2048)
    return agent_manager.create_node("fleet-builder-abcde", template)


def _connect_when_waiting(registry, name):
    def _on_sleep(_clock):
        current = registry.get(name)
        if current is not None and current.state is AgentState.AGENT_CONNECTING:
            current.transition(AgentState.AGENT_ONLINE)

    return _on_sleep


def test_launch_brings_node_online(launcher, service, registry, clock, node, template):
    clock.on_sleep = _connect_when_waiting(registry, node.name)

    launcher.launch(node, template, clock() + 60)

    assert node.launched is True
    assert node.accepting_tasks is True
    assert node.is_online
    assert node.task_id in service.tasks
    assert node.task_definition_id.endswith("testfleet-builder:1")

    call = service.run_calls[0]
    assert call["command"] == ["-url", "http://controller:8080/", node.secret, node.name]
    assert call["environment"] == {AGENT_NAME_ENV: node.name, AGENT_SECRET_ENV: node.secret}


def test_command_includes_tunnel(launcher, node):
    launcher.tunnel = "controller:50000"
    command = launcher.build_command(node)
    assert command[:4] == ["-url", "http://controller:8080/", "-tunnel", "controller:50000"]
    assert command[-2:] == [node.secret, node.name]


def test_agent_reported_online_before_task_poll(launcher, service, registry, clock, node, template):
    """连接层先于任务轮询上报在线时，启动流程不应回退状态。"""
    service.on_running = lambda _task: node.transition(AgentState.AGENT_ONLINE)

    launcher.launch(node, template, clock() + 60)

    assert node.state is AgentState.AGENT_ONLINE
    assert node.launched is True


def test_agent_dropping_before_task_poll_does_not_break_launch(launcher, service, registry, clock, node, template):
    dropped = []

    def _on_sleep(_clock):
        if node.state is AgentState.TASK_STARTING and not dropped:
            node.transition(AgentState.AGENT_ONLINE)
            node.transition(AgentState.AGENT_CONNECTING)
            dropped.append(node.name)
        elif dropped and node.state is AgentState.AGENT_CONNECTING:
            if service.tasks[node.task_id].last_status == "RUNNING":
                node.transition(AgentState.AGENT_ONLINE)

    service.scripted_runs = [{"statuses": ["PENDING", "RUNNING"]}]
    clock.on_sleep = _on_sleep

    launcher.launch(node, template, clock() + 60)

    assert dropped == [node.name]
    assert node.state is AgentState.AGENT_ONLINE
    assert node.launched is True
    assert node.name in registry
    assert service.stopped == []


def test_unexpected_errors_still_clean_up(launcher, service, registry, clock, node, template):
    def _explode(_task):
        raise RuntimeError("connection layer exploded")

    service.on_running = _explode

    with pytest.raises(RuntimeError, match="exploded"):
        launcher.launch(node, template, clock() + 60)

    assert service.stopped == [node.task_id]
    assert node.name not in registry


def test_second_launch_only_reenables_task_acceptance(launcher, service, node, template, clock):
    node.launched = True
    node.accepting_tasks = False

    launcher.launch(node, template, clock() + 60)

    assert node.accepting_tasks is True
    assert service.run_calls == []


def test_retryable_failure_is_retried_until_bound(launcher, service, registry, clock, node, template):
    service.scripted_runs = [{"failures": [ENI_TIMEOUT]}, {"failures": [ENI_TIMEOUT]}, {}]

    with pytest.raises(LaunchAttemptsExceeded) as excinfo:
        launcher.launch(node, template, clock() + 60)

    assert excinfo.value.attempts == 2
    assert excinfo.value.node_name == node.name
    assert len(service.run_calls) == 2
    assert node.name not in registry
    assert node.state is AgentState.TERMINATED


def test_retryable_failure_then_success(launcher, service, registry, clock, node, template):
    service.scripted_runs = [{"failures": [ENI_TIMEOUT]}]
    clock.on_sleep = _connect_when_waiting(registry, node.name)

    launcher.launch(node, template, clock() + 60)

    assert len(service.run_calls) == 2
    assert node.launched is True


def test_other_run_failures_are_fatal(launcher, service, registry, clock, node, template):
    service.scripted_runs = [{"failures": ["RESOURCE:MEMORY"]}]

    with pytest.raises(RunTaskFailedError) as excinfo:
        launcher.launch(node, template, clock() + 60)

    assert excinfo.value.reasons == ["RESOURCE:MEMORY"]
    assert len(service.run_calls) == 1
    assert node.name not in registry


def test_stopped_task_with_retryable_reason_counts_as_attempt(launcher, service, clock, node, template):
    service.scripted_runs = [
        {"statuses": ["PENDING", "STOPPED"], "stopped_reason": ENI_TIMEOUT},
        {"statuses": ["STOPPED"], "stopped_reason": ENI_TIMEOUT},
    ]

    with pytest.raises(LaunchAttemptsExceeded):
        launcher.launch(node, template, clock() + 60)
    assert len(service.run_calls) == 2


def test_stopped_task_is_fatal_otherwise(launcher, service, clock, node, template):
    service.scripted_runs = [{"statuses": ["STOPPED"], "stopped_reason": "Essential container in task exited"}]

    with pytest.raises(TaskStoppedError) as excinfo:
        launcher.launch(node, template, clock() + 60)

    assert "stopped before coming online" in str(excinfo.value)
    assert excinfo.value.retryable is False
    assert len(service.run_calls) == 1


def test_task_start_timeout_stops_task(launcher, service, registry, clock, node, template):
    service.scripted_runs = [{"statuses": ["PENDING"]}]

    with pytest.raises(TaskStartTimeout) as excinfo:
        launcher.launch(node, template, clock() + 5)

    assert "took too long to start" in str(excinfo.value)
    assert service.stopped == [node.task_id]
    assert node.name not in registry


def test_agent_connect_timeout(launcher, service, clock, node, template):
    with pytest.raises(AgentConnectTimeout) as excinfo:
        launcher.launch(node, template, clock() + 10)

    assert "Agent is not connected" in str(excinfo.value)
    assert service.stopped == [node.task_id]


def test_node_removed_while_connecting(launcher, registry, clock, node, template):
    def _remove(_clock):
        if node.state is AgentState.AGENT_CONNECTING:
            registry.remove(node.name)

    clock.on_sleep = _remove

    with pytest.raises(NodeRemovedError):
        launcher.launch(node, template, clock() + 60)


def test_cleanup_errors_do_not_mask_original_failure(launcher, service, clock, node, template):
    service.stop_error = "throttled"

    with pytest.raises(AgentConnectTimeout):
        launcher.launch(node, template, clock() + 10)


def test_capacity_wait_ignores_draining_hosts(launcher, service, agent_manager, clock, template):
    service.add_host("drained", status=HostStatus.DRAINING, cpu=4096, memory=8192)
    service.add_host("small", cpu=128, memory=256)
    node = agent_manager.create_node("fleet-builder-cap01", template)

    with pytest.raises(InsufficientCapacityError):
        launcher.launch(node, template, clock() + 30)

    assert service.run_calls == []
    assert 10.0 in clock.sleeps


def test_serverless_launch_skips_capacity_check(launcher, service, registry, agent_manager, clock):
    template = TaskTemplate(
        name="serverless", image="agent:1", cpu=256, memory=512, launch_type="FARGATE", subnets=["subnet-1"]
    ).with_defaults()
    node = agent_manager.create_node("fleet-serverless-abcde", template)
    clock.on_sleep = _connect_when_waiting(registry, node.name)

    launcher.launch(node, template, clock() + 60)

    assert node.launched is True
    assert service.run_calls[0]["launch_type"] == "FARGATE"


def test_missing_task_definition_override_is_fatal(launcher, service, agent_manager, clock):
    template = TaskTemplate(name="pinned", task_definition_override="missing-family").with_defaults()
    node = agent_manager.create_node("fleet-pinned-abcde", template)

    with pytest.raises(TaskDefinitionNotFoundError):
        launcher.launch(node, template, clock() + 60)
    assert service.run_calls == []


def test_existing_task_definition_override_is_used(launcher, service, registry, agent_manager, clock, template):
    service.add_host("host-1")
    existing = service.register_or_reuse_definition(template, "shared-family")
    pinned = TaskTemplate(name="pinned", cpu=0, memory=0, task_definition_override="shared-family").with_defaults()
    node = agent_manager.create_node("fleet-pinned-fghjk", pinned)
    clock.on_sleep = _connect_when_waiting(registry, node.name)

    launcher.launch(node, pinned, clock() + 60)

    assert service.register_calls == 1
    assert service.run_calls[0]["definition"] == existing.arn
