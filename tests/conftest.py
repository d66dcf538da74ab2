"""
Shared pytest fixtures.
"""

from __future__ import annotations

import logging

import pytest
import ray

from fakes import FakeClock, InMemoryTaskService
from taskfleet.core.actors.control.launcher import AgentLauncher
from taskfleet.core.actors.management.agent_manager import AgentManager
from taskfleet.core.config import reset_fleet_config
from taskfleet.core.registry import NodeRegistry

logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s", force=True)
logging.getLogger("taskfleet").setLevel(logging.DEBUG)


@pytest.fixture
def ray_runtime():
    """Spin up a local Ray runtime for tests and mirror worker logs to the driver."""
    try:
        ray.init(
            ignore_reinit_error=True,
            local_mode=True,
            logging_level=logging.INFO,
        )
    except PermissionError as exc:
        pytest.skip(f"Ray init requires system permissions not available in this environment: {exc}")
    except Exception as exc:  # pragma: no cover - restricted sandboxes
        if "Operation not permitted" in str(exc):
            pytest.skip(f"Ray init skipped due to restricted environment: {exc}")
        raise
    try:
        yield
    finally:
        ray.shutdown()


@pytest.fixture(autouse=True)
def clean_fleet_config(monkeypatch, tmp_path):
    """Keep every test away from a taskfleet.yaml in the caller's working directory."""
    monkeypatch.delenv("TASKFLEET_CONFIG", raising=False)
    monkeypatch.chdir(tmp_path)
    reset_fleet_config()
    yield
    reset_fleet_config()


@pytest.fixture
def service():
    return InMemoryTaskService()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry():
    return NodeRegistry("test-fleet")


@pytest.fixture
def agent_manager(service, registry):
    return AgentManager(service, registry)


@pytest.fixture
def launcher(service, registry, agent_manager, clock):
    return AgentLauncher(
        service,
        registry,
        agent_manager,
        cloud_name="test fleet",
        controller_url="http://controller:8080/",
        max_attempts=2,
        clock=clock,
        sleep=clock.sleep,
    )
