"""
Host-fleet scale-in loop.

Hosts are billed per started hour, so idle hosts are drained shortly before
their next billing boundary rather than as soon as they go idle.  Hosts
that have been up for too long are drained regardless of load.  Draining
hosts that no longer run anything are unprotected and terminated with a
desired-capacity decrement.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

import ray

from taskfleet.config.policy import DEFAULT_SCALE_IN_THRESHOLDS
from taskfleet.core.entities.host import HostInstance, HostStatus
from taskfleet.core.errors import RemoteServiceError
from taskfleet.core.remote.base import RemoteTaskService
from taskfleet.core.utils import configure_runtime_logging

logger = logging.getLogger(__name__)


class ClusterScaleIn:
    """One cluster's protect / drain / terminate cycle."""

    def __init__(
        self,
        service: RemoteTaskService,
        host_group: str,
        *,
        interval_seconds: float = 60.0,
        max_uptime_seconds: int = DEFAULT_SCALE_IN_THRESHOLDS["max_uptime_seconds"],
        billing_period_seconds: int = DEFAULT_SCALE_IN_THRESHOLDS["billing_period_seconds"],
        drain_window_seconds: int = DEFAULT_SCALE_IN_THRESHOLDS["drain_window_seconds"],
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        if not host_group:
            raise ValueError("host_group is required for scale-in")
        self.service = service
        self.host_group = host_group
        self.interval_seconds = interval_seconds
        self.max_uptime_seconds = max_uptime_seconds
        self.billing_period_seconds = billing_period_seconds
        self.drain_window_seconds = drain_window_seconds
        self.clock = clock
        self.ticks = 0
        self.last_result: Dict[str, List[str]] = {"terminated": [], "drained": []}

    def start(self) -> bool:
        """Make sure the host group protects newly launched hosts from scale-in."""
        changed = self.service.protect_new_hosts(self.host_group)
        if changed:
            logger.info("Enabled scale-in protection for new hosts in %s", self.host_group)
        else:
            logger.debug("New hosts in %s are already protected", self.host_group)
        return changed

    def drain_reason(self, host: HostInstance, now: Optional[datetime] = None) -> Optional[str]:
        uptime = host.uptime_seconds(now or self.clock())
        if uptime > self.max_uptime_seconds:
            return f"uptime {uptime}s exceeds {self.max_uptime_seconds}s"
        remaining = self.billing_period_seconds - uptime % self.billing_period_seconds
        if host.is_idle and remaining < self.drain_window_seconds:
            return f"idle with {remaining}s left in the billing period"
        return None

    def run_once(self, now: Optional[datetime] = None) -> Dict[str, List[str]]:
        current = now or self.clock()
        terminated: List[str] = []
        drained: List[str] = []

        for host in self.service.hosts_with_status(HostStatus.DRAINING):
            if host.task_count > 0:
                continue
            if not host.instance_id:
                logger.warning("Draining host %s has no instance id, skipping", host.host_id)
                continue
            logger.info("Terminating drained host %s (%s)", host.host_id, host.instance_id)
            try:
                self.service.terminate_host(host.instance_id, self.host_group)
            except RemoteServiceError as exc:
                logger.error("Could not terminate host %s: %s", host.host_id, exc)
                continue
            terminated.append(host.host_id)

        for host in self.service.hosts_with_status(HostStatus.ACTIVE):
            reason = self.drain_reason(host, current)
            if reason is None:
                continue
            logger.info("Draining host %s: %s", host.host_id, reason)
            try:
                self.service.set_host_draining(host.host_id)
            except RemoteServiceError as exc:
                logger.error("Could not drain host %s: %s", host.host_id, exc)
                continue
            drained.append(host.host_id)

        self.ticks += 1
        self.last_result = {"terminated": terminated, "drained": drained}
        return self.last_result

    def run(self, stop_event: threading.Event) -> None:
        """Tick every ``interval_seconds`` until ``stop_event`` is set."""
        logger.info("Scale-in loop for %s started (interval=%ss)", self.host_group, self.interval_seconds)
        while not stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Scale-in tick for %s failed", self.host_group)
            stop_event.wait(self.interval_seconds)
        logger.info("Scale-in loop for %s stopped", self.host_group)


@ray.remote(max_concurrency=2)
class ClusterScaleInActor:
    """Hosts :class:`ClusterScaleIn` so that ``stop`` can arrive while ``run`` loops."""

    def __init__(
        self,
        cluster: str,
        host_group: str,
        *,
        region: Optional[str] = None,
        service: Optional[RemoteTaskService] = None,
        **thresholds,
    ):
        configure_runtime_logging()
        if service is None:
            from taskfleet.core.remote.ecs import EcsTaskService

            service = EcsTaskService(cluster, region=region)
        self.scale_in = ClusterScaleIn(service, host_group, **thresholds)
        self._stop = threading.Event()
        self._running = False
        logger.debug("ClusterScaleInActor[%s] initialised", host_group)

    def run(self) -> dict:
        if self._running:
            return {"success": False, "error": "scale-in loop already running"}
        self._stop.clear()
        try:
            self.scale_in.start()
        except RemoteServiceError as exc:
            logger.warning("Could not enable scale-in protection for %s: %s", self.scale_in.host_group, exc)
        self._running = True
        try:
            self.scale_in.run(self._stop)
        finally:
            self._running = False
        return {"success": True, "ticks": self.scale_in.ticks}

    def stop(self) -> dict:
        self._stop.set()
        return {"success": True}

    def run_once(self) -> dict:
        try:
            result = self.scale_in.run_once()
        except RemoteServiceError as exc:
            logger.error("Scale-in tick for %s failed: %s", self.scale_in.host_group, exc)
            return {"success": False, "error": str(exc)}
        return {"success": True, **result}

    def status(self) -> dict:
        return {
            "success": True,
            "host_group": self.scale_in.host_group,
            "running": self._running,
            "ticks": self.scale_in.ticks,
            "last_result": self.scale_in.last_result,
        }
