import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from textwrap import dedent

import pytest
import ray

from fakes import InMemoryTaskService
from taskfleet.core.actors.control.supervisor import background_outcome
from taskfleet.core.actors.management.scale_in import ClusterScaleInActor
from taskfleet.core.controllers import FleetController
from taskfleet.core.entities.host import HostStatus

STARTING_STATES = {"task_starting", "task_running", "agent_connecting"}

FLEET_YAML = """
fleet:
  name: it fleet
  cluster: test-cluster
  controller_url: http://controller:8080/
  agent_timeout_seconds: 30
  task_polling_interval_seconds: 0.05
launcher:
  connect_poll_interval_seconds: 0.05
  capacity_poll_interval_seconds: 0.05
templates:
  - name: builder
    image: agent:1
    cpu: 0
    memory: 0
    label: linux
pools:
  - id: warm
    label: linux
    min_idle_agents: 0
"""


def _wait_for(predicate, timeout=15.0, interval=0.05):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        value = predicate()
        if value:
            return value
        time.sleep(interval)
    raise AssertionError("condition not met before timeout")


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "fleet.yaml"
    path.write_text(dedent(FLEET_YAML), encoding="utf-8")
    return path


@pytest.fixture
def controller(ray_runtime, config_file):
    fleet = FleetController(
        "it-supervisor",
        config_path=str(config_file),
        start_background_jobs=False,
        service=InMemoryTaskService(),
    )
    try:
        yield fleet
    finally:
        fleet.shutdown()


def _agent_state(controller, name):
    result = controller.get_agent(name)
    return result["agent"]["state"] if result.get("success") else None


def test_provision_connect_and_retire(controller):
    result = controller.provision("linux", 2)

    assert result["success"] is True
    assert result["excess"] == 2
    assert result["remaining"] == 0
    names = [launch["node_name"] for launch in result["launches"]]
    assert len(names) == 2
    assert all(name.startswith("itfleet-builder-") for name in names)

    # a second call sees both agents as connecting capacity
    assert controller.provision("linux", 2)["launches"] == []

    for name in names:
        _wait_for(lambda: _agent_state(controller, name) in STARTING_STATES)
        assert controller.mark_online(name)["success"] is True
    for name in names:
        _wait_for(lambda: controller.get_agent(name)["agent"]["launched"])

    status = controller.status()
    assert status["bootstrapped"] is True
    assert status["fleet"] == "it fleet"
    assert status["agents"] == {"agent_online": 2}

    first = names[0]
    assert controller.task_accepted(first)["success"] is True
    completed = controller.task_completed(first)
    assert completed["decision"]["terminate"] is True
    assert controller.get_agent(first)["success"] is False
    assert len(controller.list_agents()["agents"]) == 1

    assert controller.terminate_agent(names[1])["success"] is True
    assert controller.list_agents()["agents"] == []


def test_listings(controller):
    templates = controller.list_templates()["templates"]
    assert [template["name"] for template in templates] == ["builder"]
    assert templates[0]["label"] == "linux"

    pools = controller.list_pools()["pools"]
    assert pools[0]["id"] == "warm"
    assert pools[0]["schedule_active"] is True
    assert pools[0]["idle_agents"] == 0

    assert controller.maintain_pools() == {"success": True, "launched": {"warm": 0}}
    assert controller.retention_tick() == {"success": True, "terminated": []}
    assert controller.scale_in_status()["success"] is False


def test_bad_configuration_fails_bootstrap(ray_runtime, tmp_path: Path):
    path = tmp_path / "broken.yaml"
    path.write_text("scale_in:\n  enabled: true\n", encoding="utf-8")

    with pytest.raises(ValueError, match="host_group"):
        FleetController("broken-supervisor", config_path=str(path), service=InMemoryTaskService())


def test_scale_in_actor_tick(ray_runtime):
    service = InMemoryTaskService()
    now = datetime.now(timezone.utc)
    service.add_host("old", launch_time=now - timedelta(hours=11), running=1)
    service.add_host("empty", instance_id="i-empty", status=HostStatus.DRAINING, launch_time=now)
    service.add_host("fresh", launch_time=now - timedelta(minutes=5))

    actor = ClusterScaleInActor.remote("test-cluster", "agents-asg", service=service)
    result = ray.get(actor.run_once.remote())

    assert result["success"] is True
    assert result["drained"] == ["old"]
    assert result["terminated"] == ["empty"]

    status = ray.get(actor.status.remote())
    assert status["ticks"] == 1
    assert status["running"] is False
    assert status["host_group"] == "agents-asg"


@ray.remote
def _crashing_loop():
    raise RuntimeError("scale-in loop crashed")


@ray.remote
def _finished_loop():
    return {"success": True, "ticks": 3}


def test_background_outcome_surfaces_loop_crash(ray_runtime):
    outcome = background_outcome(_crashing_loop.remote(), timeout=5)

    assert outcome["success"] is False
    assert "scale-in loop crashed" in outcome["error"]


def test_background_outcome_returns_loop_result(ray_runtime):
    assert background_outcome(_finished_loop.remote(), timeout=5) == {"success": True, "ticks": 3}
