"""
Unit tests for the TaskFleet head helper.
"""

from __future__ import annotations

import ray

from fakes import InMemoryTaskService
from taskfleet.core.actors.head import FleetHead


def test_head_start_stop(ray_runtime):
    head = FleetHead(name="test-taskfleet-supervisor", service=InMemoryTaskService())

    assert head.start() is True
    assert head.handle is not None
    status = ray.get(head.handle.status.remote())
    assert status["bootstrapped"] is True
    assert status["background_jobs"] is True

    assert head.stop() is True
    assert head.handle is None


def test_head_reports_bad_configuration(ray_runtime, tmp_path):
    config_file = tmp_path / "broken.yaml"
    config_file.write_text("launcher:\n  max_attempts: -1\n", encoding="utf-8")
    head = FleetHead(name="broken-head", config_path=str(config_file), service=InMemoryTaskService())

    assert head.start() is False
    assert head.handle is None
