"""
Warm-pool reconciliation.

Each run tops every active pool up to its ``min_idle_agents``.  Launches
are synchronous, so a pool never has more than one launch in flight from
this loop; the first failure ends that pool's work for the run.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Dict, Optional

from taskfleet.core.entities.pool import AgentPool
from taskfleet.core.errors import TaskFleetError
from taskfleet.core.utils.naming import compact, dashed, random_suffix

if TYPE_CHECKING:
    from taskfleet.core.controllers.cloud import FleetCloud

logger = logging.getLogger(__name__)


class PoolMaintainer:
    """Keeps each :class:`AgentPool` of a cloud at its minimum idle size."""

    def __init__(self, cloud: "FleetCloud", *, clock: Optional[Callable[[], datetime]] = None):
        self.cloud = cloud
        self.clock = clock or (lambda: datetime.now().astimezone())

    def count_idle(self, pool: AgentPool) -> int:
        wanted = pool.labels
        return len(
            self.cloud.registry.list_nodes(
                lambda node: node.pool_id == pool.id
                and node.is_online
                and node.is_idle
                and node.labels.issuperset(wanted)
            )
        )

    def generate_agent_name(self, pool: AgentPool) -> str:
        return f"{compact(self.cloud.name)}-{dashed(pool.label)}-{random_suffix()}"

    def run_once(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Reconcile every pool once; returns the number of agents launched per pool id."""
        current = now or self.clock()
        launched: Dict[str, int] = {}
        for pool in list(self.cloud.pools.values()):
            launched[pool.id] = self._maintain(pool, current)
        return launched

    def _maintain(self, pool: AgentPool, now: datetime) -> int:
        if pool.min_idle_agents <= 0:
            return 0
        if not pool.is_schedule_active(now):
            logger.debug("Pool %s: schedule '%s' inactive at %s", pool.id, pool.schedule, now.isoformat())
            return 0
        template = self.cloud.template_for_label(pool.label)
        if template is None:
            logger.warning("Pool %s: no template serves label [%s]", pool.id, pool.label)
            return 0

        idle = self.count_idle(pool)
        deficit = pool.min_idle_agents - idle
        started = 0
        while started < deficit:
            name = self.generate_agent_name(pool)
            logger.info(
                "Pool %s: %d/%d idle agents, launching %s", pool.id, idle + started, pool.min_idle_agents, name
            )
            try:
                self.cloud.launch_pool_agent(pool, template, name)
            except (TaskFleetError, ValueError) as exc:
                logger.error("Pool %s: failed to launch %s: %s", pool.id, name, exc)
                break
            started += 1
        return started
