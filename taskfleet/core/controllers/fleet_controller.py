"""
Client-facing FleetController façade.

The façade proxies all operations to the underlying supervisor actor while
exposing a synchronous API to library consumers and to the connection layer
that reports agent events.
"""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from typing import Any, Optional

import ray

from taskfleet.core.actors.control.supervisor import FleetSupervisorActor
from taskfleet.core.actors.management.config import ActorConfig
from taskfleet.core.remote.base import RemoteTaskService
from taskfleet.core.utils import install_stdout_logger

logger = logging.getLogger(__name__)


class FleetController:
    """Thin wrapper around the FleetSupervisorActor."""

    def __init__(
        self,
        name: str = "taskfleet-supervisor",
        *,
        namespace: str | None = None,
        detached: bool = False,
        max_restarts: int = -1,
        max_task_retries: int = 0,
        config_path: str | None = None,
        state_path: str | None = None,
        start_background_jobs: bool = True,
        service: Optional[RemoteTaskService] = None,
    ):
        """
        Create (and bootstrap) a new supervisor actor.

        Args:
            name: Logical name for the supervisor actor.
            namespace: Ray namespace to place the actor in. ``None`` uses
                the caller's current namespace.
            detached: Whether to create the supervisor as a detached actor
                that survives driver exits and can be attached to later.
            max_restarts: Passed to Ray to automatically restart the actor
                on failure (``-1`` means infinite restarts).
            max_task_retries: Maximum automatic retries for actor tasks.
            config_path: YAML file to load instead of the default lookup.
            state_path: Directory for persisted node records.
            start_background_jobs: Run pool maintenance, retention ticks and
                scale-in on timers; disable to drive them manually.
            service: Remote service to use instead of building one from the
                ``fleet`` config section.
        """
        self.name = name
        self._namespace = namespace
        actor_config = ActorConfig(
            name=name,
            config_path=config_path,
            state_path=state_path,
            start_background_jobs=start_background_jobs,
        )
        actor_options: dict[str, Any] = {"max_concurrency": actor_config.max_concurrency}
        if namespace is not None:
            actor_options["namespace"] = namespace
        if detached:
            actor_options.update(
                {
                    "name": name,
                    "lifetime": "detached",
                    "max_restarts": max_restarts,
                    "max_task_retries": max_task_retries,
                }
            )
        self._supervisor = FleetSupervisorActor.options(**actor_options).remote(actor_config, service)
        self._owns_supervisor = True
        result = ray.get(self._supervisor.bootstrap.remote())
        if not result.get("success"):
            ray.kill(self._supervisor, no_restart=True)
            self._supervisor = None  # type: ignore[assignment]
            raise ValueError(f"TaskFleet supervisor failed to bootstrap: {result.get('error')}")

    @classmethod
    def attach(cls, name: str = "taskfleet-supervisor", *, namespace: str | None = None) -> "FleetController":
        """
        Attach to an existing supervisor actor (typically detached).
        """
        handle = ray.get_actor(name, namespace=namespace)
        instance = cls.__new__(cls)
        instance.name = name
        instance._namespace = namespace
        instance._supervisor = handle
        instance._owns_supervisor = False
        return instance

    def _ensure_supervisor(self) -> ray.actor.ActorHandle:
        if self._supervisor is None:
            raise RuntimeError("FleetController has been shut down")
        return self._supervisor

    def supervisor_handle(self) -> ray.actor.ActorHandle:
        """返回底层的 supervisor actor 句柄，供连接层直接上报事件。"""
        return self._ensure_supervisor()

    def provision(self, label: str | None, queue_length: int) -> Any:
        """按队列长度为某个标签补足 Agent。"""
        supervisor = self._ensure_supervisor()
        return ray.get(supervisor.provision.remote(label, queue_length))

    def mark_online(self, name: str) -> Any:
        supervisor = self._ensure_supervisor()
        return ray.get(supervisor.mark_online.remote(name))

    def mark_offline(self, name: str) -> Any:
        supervisor = self._ensure_supervisor()
        return ray.get(supervisor.mark_offline.remote(name))

    def task_accepted(self, name: str) -> Any:
        supervisor = self._ensure_supervisor()
        return ray.get(supervisor.task_accepted.remote(name))

    def task_completed(self, name: str) -> Any:
        supervisor = self._ensure_supervisor()
        return ray.get(supervisor.task_completed.remote(name))

    def terminate_agent(self, name: str, reason: str = "requested") -> Any:
        supervisor = self._ensure_supervisor()
        return ray.get(supervisor.terminate_agent.remote(name, reason))

    def maintain_pools(self) -> Any:
        supervisor = self._ensure_supervisor()
        return ray.get(supervisor.maintain_pools.remote())

    def retention_tick(self) -> Any:
        supervisor = self._ensure_supervisor()
        return ray.get(supervisor.retention_tick.remote())

    def list_agents(self, pool_id: str | None = None) -> Any:
        """列出 Agent，可选限制到指定 pool。"""
        supervisor = self._ensure_supervisor()
        return ray.get(supervisor.list_agents.remote(pool_id))

    def get_agent(self, name: str) -> Any:
        supervisor = self._ensure_supervisor()
        return ray.get(supervisor.get_agent.remote(name))

    def list_pools(self) -> Any:
        supervisor = self._ensure_supervisor()
        return ray.get(supervisor.list_pools.remote())

    def list_templates(self) -> Any:
        supervisor = self._ensure_supervisor()
        return ray.get(supervisor.list_templates.remote())

    def scale_in_status(self) -> Any:
        supervisor = self._ensure_supervisor()
        return ray.get(supervisor.scale_in_status.remote())

    def status(self) -> Any:
        supervisor = self._ensure_supervisor()
        return ray.get(supervisor.status.remote())

    def shutdown(self) -> None:
        if self._supervisor is None:
            return
        if self._owns_supervisor:
            ray.get(self._supervisor.shutdown.remote())
            ray.kill(self._supervisor, no_restart=True)
        self._supervisor = None  # type: ignore[assignment]


def main(argv: Optional[list] = None) -> int:
    """Run a detached supervisor until interrupted."""
    parser = argparse.ArgumentParser(description="Run the TaskFleet supervisor on a Ray cluster.")
    parser.add_argument("--name", default="taskfleet-supervisor")
    parser.add_argument("--namespace", default="taskfleet")
    parser.add_argument("--config", dest="config_path", default=None, help="YAML configuration file")
    parser.add_argument("--address", default=None, help="Ray cluster address (default: start a local one)")
    args = parser.parse_args(argv)

    install_stdout_logger()
    ray.init(address=args.address, namespace=args.namespace, ignore_reinit_error=True)
    controller = FleetController(name=args.name, namespace=args.namespace, config_path=args.config_path)
    logger.info("TaskFleet supervisor %s running: %s", args.name, controller.status())

    stop = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    stop.wait()

    controller.shutdown()
    ray.shutdown()
    return 0
