from datetime import datetime, timezone

import pytest

from taskfleet.core.actors.management.pool_maintainer import PoolMaintainer
from taskfleet.core.controllers.cloud import FleetCloud
from taskfleet.core.entities.agent import AgentState, RetentionMode
from taskfleet.core.entities.pool import AgentPool
from taskfleet.core.entities.template import TaskTemplate

MORNING = datetime(2024, 5, 6, 3, 0, tzinfo=timezone.utc)
AFTERNOON = datetime(2024, 5, 6, 15, 30, tzinfo=timezone.utc)


def _connect_all(registry):
    def _on_sleep(_clock):
        for node in registry.list_nodes(lambda candidate: candidate.state is AgentState.AGENT_CONNECTING):
            node.transition(AgentState.AGENT_ONLINE)

    return _on_sleep


@pytest.fixture
def pool():
    return AgentPool(label="linux docker", min_idle_agents=3, id="pool-1")


@pytest.fixture
def cloud(service, registry, agent_manager, launcher, clock, pool):
    clock.on_sleep = _connect_all(registry)
    templates = [TaskTemplate(name="builder", image="agent:1", cpu=0, memory=0, label="linux docker large")]
    fleet = FleetCloud("test fleet", templates, service, registry, agent_manager, launcher, pools=[pool])
    yield fleet
    fleet.shutdown(wait=True)


@pytest.fixture
def maintainer(cloud):
    return PoolMaintainer(cloud, clock=lambda: AFTERNOON)


def _idle_pool_node(agent_manager, cloud, pool, name):
    node = agent_manager.create_node(name, cloud.find_template("builder"), pool=pool)
    node.state = AgentState.IDLE
    node.launched = True
    node.accepting_tasks = True
    return node


def test_tops_pool_up_to_minimum(maintainer, cloud, service, registry, agent_manager, pool):
    _idle_pool_node(agent_manager, cloud, pool, "existing-idle")

    launched = maintainer.run_once()

    assert launched == {"pool-1": 2}
    assert len(service.run_calls) == 2
    assert maintainer.count_idle(pool) == 3
    for node in registry.list_nodes():
        assert node.pool_id == "pool-1"
        assert node.label == "linux docker"


def test_empty_pool_gets_exactly_its_minimum(maintainer, service, pool):
    pool.min_idle_agents = 2

    assert maintainer.run_once() == {"pool-1": 2}
    assert len(service.run_calls) == 2
    assert maintainer.run_once() == {"pool-1": 0}
    assert len(service.run_calls) == 2


def test_full_pool_launches_nothing(maintainer, cloud, service, agent_manager, pool):
    for index in range(3):
        _idle_pool_node(agent_manager, cloud, pool, f"idle-{index}")

    assert maintainer.run_once() == {"pool-1": 0}
    assert service.run_calls == []


def test_busy_and_foreign_nodes_do_not_count(maintainer, cloud, agent_manager, pool):
    busy = _idle_pool_node(agent_manager, cloud, pool, "busy")
    busy.state = AgentState.BUSY
    agent_manager.create_node("unpooled", cloud.find_template("builder")).state = AgentState.IDLE

    assert maintainer.count_idle(pool) == 0


def test_failure_stops_the_pool_for_this_run(maintainer, service, pool):
    service.scripted_runs = [{"failures": ["RESOURCE:CPU"]}]

    assert maintainer.run_once() == {"pool-1": 0}
    assert len(service.run_calls) == 1


def test_schedule_limits_maintenance(cloud, service, pool):
    pool.schedule = "* 3 * * *"

    assert PoolMaintainer(cloud).run_once(AFTERNOON) == {"pool-1": 0}
    assert service.run_calls == []

    assert PoolMaintainer(cloud).run_once(MORNING) == {"pool-1": 3}


def test_invalid_schedule_is_treated_as_active(pool):
    pool.schedule = "every tuesday"
    assert pool.is_schedule_active(AFTERNOON) is True


def test_pool_without_matching_template_is_skipped(cloud, service):
    cloud.pools["gpu"] = AgentPool(label="gpu", min_idle_agents=2, id="gpu")

    launched = PoolMaintainer(cloud).run_once(AFTERNOON)

    assert launched["gpu"] == 0


def test_agent_names_use_cloud_and_label(maintainer, pool):
    name = maintainer.generate_agent_name(pool)
    prefix, suffix = name.rsplit("-", 1)
    assert prefix == "testfleet-linux-docker"
    assert len(suffix) == 5


def test_one_shot_pool_agents_use_pool_idle_minutes(maintainer, registry, pool):
    pool.min_idle_agents = 1
    pool.max_idle_minutes = 12

    maintainer.run_once()

    [node] = registry.list_nodes()
    assert node.retention is RetentionMode.ONCE
    assert node.max_idle_minutes == 12


def test_persistent_pool_agents_use_cloud_retention_timeout(service, registry, agent_manager, launcher, clock,
                                                            pool):
    clock.on_sleep = _connect_all(registry)
    pool.min_idle_agents = 1
    pool.max_idle_minutes = 12
    templates = [TaskTemplate(name="builder", image="agent:1", cpu=0, memory=0, label="linux docker")]
    fleet = FleetCloud("test fleet", templates, service, registry, agent_manager, launcher, pools=[pool],
                       retention=RetentionMode.PERSISTENT, retention_timeout_minutes=45)
    try:
        PoolMaintainer(fleet).run_once(AFTERNOON)
    finally:
        fleet.shutdown(wait=True)

    [node] = registry.list_nodes()
    assert node.retention is RetentionMode.PERSISTENT
    assert node.max_idle_minutes == 45
