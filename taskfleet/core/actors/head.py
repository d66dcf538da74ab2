"""
TaskFleet head-node helper.
"""

from __future__ import annotations

import logging
from typing import Optional

import ray

from taskfleet.core.remote.base import RemoteTaskService

from .control.supervisor import FleetSupervisorActor
from .management.config import ActorConfig

logger = logging.getLogger(__name__)


class FleetHead:
    """Convenience wrapper to start/stop the supervisor actor on the head node."""

    def __init__(
        self,
        name: str = "taskfleet-supervisor",
        *,
        config_path: Optional[str] = None,
        service: Optional[RemoteTaskService] = None,
    ):
        self.name = name
        self.config_path = config_path
        self.service = service
        self._actor: Optional[ray.actor.ActorHandle] = None

    @property
    def handle(self) -> Optional[ray.actor.ActorHandle]:
        return self._actor

    def start(self) -> bool:
        if self._actor is None:
            config = ActorConfig(name=self.name, config_path=self.config_path)
            actor = FleetSupervisorActor.options(max_concurrency=config.max_concurrency).remote(config, self.service)
            result = ray.get(actor.bootstrap.remote())
            if not result.get("success"):
                ray.kill(actor, no_restart=True)
                logger.error("TaskFleet supervisor failed to start (%s): %s", self.name, result.get("error"))
                return False
            self._actor = actor
            logger.info("TaskFleet supervisor started (%s)", self.name)
        return True

    def stop(self) -> bool:
        if self._actor:
            ray.get(self._actor.shutdown.remote())
            ray.kill(self._actor, no_restart=True)
            self._actor = None
            logger.info("TaskFleet supervisor stopped (%s)", self.name)
        return True
