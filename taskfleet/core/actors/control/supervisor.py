"""
Supervisor actor for a TaskFleet controller.

The supervisor owns the whole control plane of one fleet: the node
registry, the launcher, the cloud (provisioning source and retention
controller), the pool maintainer and, when enabled, the scale-in actor.
Periodic work runs on an APScheduler ``BackgroundScheduler`` inside the
actor process.

The actor is threaded: pool launches block until the agent connects, and
the connection-layer calls that report it online must be served meanwhile.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import ray
import yaml
from apscheduler.schedulers.background import BackgroundScheduler
from ray.exceptions import RayActorError

from taskfleet.core.actors.control.launcher import AgentLauncher
from taskfleet.core.actors.management.agent_manager import AgentManager
from taskfleet.core.actors.management.config import ActorConfig
from taskfleet.core.actors.management.pool_maintainer import PoolMaintainer
from taskfleet.core.actors.management.scale_in import ClusterScaleInActor
from taskfleet.core.config import FleetConfig, load_fleet_config
from taskfleet.core.errors import TaskFleetError
from taskfleet.core.registry import NodeRegistry
from taskfleet.core.remote.base import RemoteTaskService
from taskfleet.core.scheduling.strategy import ProvisioningStrategy, apply_strategies, create_strategy
from taskfleet.core.utils import configure_runtime_logging

if TYPE_CHECKING:
    from taskfleet.core.controllers.cloud import FleetCloud

logger = logging.getLogger(__name__)

_SCALE_IN_STOP_TIMEOUT = 10.0


@ray.remote
class FleetSupervisorActor:
    """Coordinates provisioning, retention, warm pools and scale-in for one fleet."""

    def __init__(self, config: ActorConfig, service: Optional[RemoteTaskService] = None):
        configure_runtime_logging()
        self.config = config
        self._service_override = service
        self.fleet_config: Optional[FleetConfig] = None
        self.cloud: Optional["FleetCloud"] = None
        self.pool_maintainer: Optional[PoolMaintainer] = None
        self.strategies: List[ProvisioningStrategy] = []
        self.scheduler: Optional[BackgroundScheduler] = None
        self.scale_in: Optional[ray.actor.ActorHandle] = None
        self._scale_in_run: Optional[ray.ObjectRef] = None
        logger.info("FleetSupervisorActor[%s] initialised", config.name)

    # ------------------------------------------------------------------
    # Lifecycle

    def bootstrap(self) -> dict:
        """读取配置并组装控制面组件；重复调用是安全的。"""
        if self.cloud is not None:
            return {"success": True, "fleet": self.cloud.name}

        from taskfleet.core.controllers.cloud import FleetCloud

        try:
            fleet_config = load_fleet_config(self.config.config_path)
        except (OSError, ValueError, yaml.YAMLError, TaskFleetError) as exc:
            logger.error("FleetSupervisorActor[%s] configuration rejected: %s", self.config.name, exc)
            return {"success": False, "error": str(exc)}

        settings = fleet_config.fleet
        service = self._service_override
        if service is None:
            from taskfleet.core.remote.ecs import EcsTaskService

            try:
                service = EcsTaskService(settings.cluster, region=settings.region)
            except TaskFleetError as exc:
                logger.error("FleetSupervisorActor[%s] cannot reach cluster %s: %s", self.config.name,
                             settings.cluster, exc)
                return {"success": False, "error": str(exc)}

        registry = NodeRegistry(settings.name, self.config.state_path or settings.state_path)
        agent_manager = AgentManager(service, registry)
        launcher_settings = fleet_config.launcher
        launcher = AgentLauncher(
            service,
            registry,
            agent_manager,
            cloud_name=settings.name,
            controller_url=settings.controller_url,
            tunnel=settings.tunnel,
            max_attempts=launcher_settings.max_attempts,
            task_polling_interval=settings.task_polling_interval_seconds,
            connect_poll_interval=launcher_settings.connect_poll_interval_seconds,
            capacity_poll_interval=launcher_settings.capacity_poll_interval_seconds,
            retryable_failures=launcher_settings.retryable_failures,
        )
        try:
            cloud = FleetCloud(
                settings.name,
                fleet_config.templates,
                service,
                registry,
                agent_manager,
                launcher,
                pools=fleet_config.pools,
                retention=settings.retention_mode,
                retention_timeout_minutes=settings.retention_timeout_minutes,
                num_executors=settings.num_executors,
                agent_timeout_seconds=settings.agent_timeout_seconds,
                max_workers=launcher_settings.max_workers,
                recheck_delay_minutes=fleet_config.retention.recheck_delay_minutes,
            )
        except TaskFleetError as exc:
            return {"success": False, "error": str(exc)}

        self.fleet_config = fleet_config
        self.cloud = cloud
        self.pool_maintainer = PoolMaintainer(cloud)
        self.strategies = [create_strategy(fleet_config.provisioning.default_strategy)]

        if self.config.start_background_jobs:
            self._start_background_jobs(fleet_config)
            if fleet_config.scale_in.enabled:
                self._start_scale_in(fleet_config)

        logger.info(
            "Fleet %s bootstrapped: cluster=%s templates=%d pools=%d",
            settings.name,
            settings.cluster,
            len(fleet_config.templates),
            len(fleet_config.pools),
        )
        return {"success": True, "fleet": settings.name}

    def _start_background_jobs(self, fleet_config: FleetConfig) -> None:
        scheduler = BackgroundScheduler(daemon=True)
        scheduler.add_job(
            self.maintain_pools,
            "interval",
            seconds=fleet_config.pool_maintenance.interval_seconds,
            id="pool_maintenance",
            name="Warm pool maintenance",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.add_job(
            self.retention_tick,
            "interval",
            seconds=fleet_config.retention.tick_interval_seconds,
            id="retention_tick",
            name="Idle agent retention",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.start()
        self.scheduler = scheduler
        logger.info("Background jobs started for fleet %s", fleet_config.fleet.name)

    def _start_scale_in(self, fleet_config: FleetConfig) -> None:
        settings = fleet_config.scale_in
        self.scale_in = ClusterScaleInActor.remote(
            fleet_config.fleet.cluster,
            settings.host_group,
            region=fleet_config.fleet.region,
            service=self._service_override,
            interval_seconds=settings.interval_seconds,
            max_uptime_seconds=settings.max_uptime_seconds,
            billing_period_seconds=settings.billing_period_seconds,
            drain_window_seconds=settings.drain_window_seconds,
        )
        # the loop returns when stop() is called; the ref surfaces a crash
        self._scale_in_run = self.scale_in.run.remote()
        logger.info("Scale-in loop requested for host group %s", settings.host_group)

    def shutdown(self) -> dict:
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
        if self.scale_in is not None:
            try:
                ray.get(self.scale_in.stop.remote())
            except RayActorError as exc:
                logger.warning("Scale-in actor already gone: %s", exc)
            if self._scale_in_run is not None:
                outcome = background_outcome(self._scale_in_run, timeout=_SCALE_IN_STOP_TIMEOUT)
                if outcome is None:
                    logger.warning("Scale-in loop did not stop within %ss", _SCALE_IN_STOP_TIMEOUT)
                self._scale_in_run = None
            self.scale_in = None
        if self.cloud is not None:
            self.cloud.shutdown(wait=False)
        return {"success": True}

    def _require_cloud(self) -> "FleetCloud":
        if self.cloud is None:
            raise RuntimeError("FleetSupervisorActor has not been bootstrapped")
        return self.cloud

    # ------------------------------------------------------------------
    # Provisioning

    def provision(self, label: Optional[str], queue_length: int) -> dict:
        """
        根据队列长度为 ``label`` 补足 Agent。

        Returns:
            ``{"success": True, "remaining": int, "launches": [...]}``；
            启动在后台线程进行，结果通过 ``list_agents`` 观察。
        """
        cloud = self._require_cloud()
        snapshot = cloud.demand_snapshot(label, queue_length)
        decision = apply_strategies(snapshot, self.strategies, [cloud])
        for launch in decision.launches:
            if launch.future is not None:
                launch.future.add_done_callback(_log_launch_outcome(launch.node_name))
        return {
            "success": True,
            "excess": snapshot.excess,
            "remaining": decision.remaining,
            "launches": [launch.to_dict() for launch in decision.launches],
        }

    # ------------------------------------------------------------------
    # Connection-layer events

    def mark_online(self, name: str) -> dict:
        return self._require_cloud().mark_online(name)

    def mark_offline(self, name: str) -> dict:
        return self._require_cloud().mark_offline(name)

    def task_accepted(self, name: str) -> dict:
        return self._require_cloud().task_accepted(name)

    def task_completed(self, name: str) -> dict:
        return self._require_cloud().task_completed(name)

    def terminate_agent(self, name: str, reason: str = "requested") -> dict:
        return self._require_cloud().agent_manager.terminate_node(name, reason=reason)

    # ------------------------------------------------------------------
    # Periodic jobs

    def maintain_pools(self) -> dict:
        if self.pool_maintainer is None:
            return {"success": False, "error": "not bootstrapped"}
        try:
            launched = self.pool_maintainer.run_once()
        except Exception as exc:
            logger.exception("Pool maintenance failed")
            return {"success": False, "error": str(exc)}
        return {"success": True, "launched": launched}

    def retention_tick(self) -> dict:
        cloud = self._require_cloud()
        terminated = cloud.retention_controller.tick()
        return {"success": True, "terminated": terminated}

    def scale_in_status(self) -> dict:
        if self.scale_in is None:
            return {"success": False, "error": "scale-in is not enabled"}
        if self._scale_in_run is not None:
            outcome = background_outcome(self._scale_in_run)
            if outcome is not None and not outcome.get("success"):
                return {"success": False, "error": f"scale-in loop ended: {outcome.get('error')}"}
        try:
            return ray.get(self.scale_in.status.remote())
        except RayActorError as exc:
            return {"success": False, "error": str(exc)}

    # ------------------------------------------------------------------
    # Queries

    def list_agents(self, pool_id: Optional[str] = None) -> dict:
        agents = self._require_cloud().agent_manager.list_agents(pool_id)
        return {"success": True, "agents": agents}

    def get_agent(self, name: str) -> dict:
        agent = self._require_cloud().agent_manager.get_agent(name)
        if agent is None:
            return {"success": False, "error": f"Agent '{name}' not found"}
        return {"success": True, "agent": agent}

    def list_pools(self) -> dict:
        cloud = self._require_cloud()
        pools: List[Dict[str, Any]] = []
        for pool in cloud.pools.values():
            payload = pool.to_dict()
            payload["schedule_active"] = pool.is_schedule_active()
            payload["idle_agents"] = self.pool_maintainer.count_idle(pool) if self.pool_maintainer else 0
            pools.append(payload)
        return {"success": True, "pools": pools}

    def list_templates(self) -> dict:
        cloud = self._require_cloud()
        templates = []
        for name in cloud.template_names:
            template = cloud.find_template(name)
            if template is not None:
                templates.append(template.to_dict())
        return {"success": True, "templates": templates}

    def status(self) -> dict:
        if self.cloud is None:
            return {"success": True, "bootstrapped": False}
        return {
            "success": True,
            "bootstrapped": True,
            "fleet": self.cloud.name,
            "cluster": self.cloud.service.cluster,
            "agents": self.cloud.agent_manager.counts_by_state(),
            "pools": len(self.cloud.pools),
            "background_jobs": self.scheduler is not None,
            "scale_in": self.scale_in is not None,
        }


def _log_launch_outcome(node_name: str):
    def _callback(future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("Launch of agent %s failed: %s", node_name, exc)
        else:
            logger.info("Launch of agent %s completed", node_name)

    return _callback


def background_outcome(ref: ray.ObjectRef, timeout: float = 0) -> Optional[dict]:
    """Result of a long-running actor call, or ``None`` while it is still running."""
    ready, _ = ray.wait([ref], timeout=timeout)
    if not ready:
        return None
    try:
        return ray.get(ref)
    except Exception as exc:
        logger.error("Background loop failed: %s", exc)
        return {"success": False, "error": str(exc)}
