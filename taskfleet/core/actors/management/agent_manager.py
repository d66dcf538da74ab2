"""
Agent record management.

Creates node records for launches and tears them down again: stopping the
remote task, moving the node to TERMINATED and dropping it from the
registry.  Used in-process by the launcher, the retention controller and
the pool maintainer, so it is a plain class rather than an actor.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Union

from taskfleet.core.entities.agent import AgentNode, AgentState, RetentionMode
from taskfleet.core.entities.pool import AgentPool
from taskfleet.core.entities.template import TaskTemplate
from taskfleet.core.errors import RemoteServiceError
from taskfleet.core.registry import NodeRegistry
from taskfleet.core.remote.base import RemoteTaskService

logger = logging.getLogger(__name__)


class AgentManager:
    """Lifecycle bookkeeping for :class:`AgentNode` records."""

    def __init__(self, service: RemoteTaskService, registry: NodeRegistry):
        self.service = service
        self.registry = registry

    def _sanitize_agent(self, node: AgentNode) -> dict:
        # to_dict never includes the connection secret
        return node.to_dict()

    def create_node(
        self,
        name: str,
        template: TaskTemplate,
        *,
        pool: Optional[AgentPool] = None,
        retention: RetentionMode = RetentionMode.ONCE,
        max_idle_minutes: int = 5,
        num_executors: int = 1,
    ) -> AgentNode:
        """Register a new REQUESTED node for ``template``."""
        label = pool.label if pool is not None else (template.label or "")
        node = AgentNode(
            name=name,
            template_name=template.name,
            label=label,
            pool_id=pool.id if pool is not None else None,
            retention=retention,
            max_idle_minutes=_idle_minutes(pool, retention, max_idle_minutes),
            num_executors=max(1, int(num_executors)),
        )
        self.registry.register(node)
        self._persist(node)
        return node

    def terminate_node(self, node: Union[AgentNode, str], reason: str = "") -> dict:
        """
        停止节点对应的远端任务并注销节点。

        远端停止失败只记录日志：节点依然会被标记为 TERMINATED 并移出注册表，
        调用方通过返回值中的 ``error`` 了解失败原因。
        """
        record = self.registry.get(node) if isinstance(node, str) else node
        if record is None:
            return {"success": False, "error": f"Agent '{node}' not found"}

        logger.info("Terminating agent %s (%s)", record.name, reason or "no reason given")
        error: Optional[str] = None
        if record.task_id:
            try:
                self.service.stop_task(record.task_id, record.cluster_id)
            except RemoteServiceError as exc:
                error = str(exc)
                logger.warning("Agent %s: failed to stop task %s: %s", record.name, record.task_id, exc)

        record.accepting_tasks = False
        record.transition(AgentState.TERMINATED)
        self.registry.remove(record.name)
        self._persist(record)

        payload = {"success": error is None, "agent": self._sanitize_agent(record)}
        if error is not None:
            payload["error"] = error
        return payload

    def list_agents(self, pool_id: Optional[str] = None) -> List[dict]:
        nodes = self.registry.list_nodes()
        if pool_id is not None:
            nodes = [node for node in nodes if node.pool_id == pool_id]
        return [self._sanitize_agent(node) for node in nodes]

    def get_agent(self, name: str) -> Optional[dict]:
        node = self.registry.get(name)
        return self._sanitize_agent(node) if node is not None else None

    def counts_by_state(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for node in self.registry.list_nodes():
            counts[node.state.value] = counts.get(node.state.value, 0) + 1
        return counts

    def _persist(self, node: AgentNode) -> None:
        try:
            self.registry.save(node)
        except OSError:
            logger.exception("Failed to persist agent %s", node.name)


def _idle_minutes(pool: Optional[AgentPool], retention: RetentionMode, default: int) -> int:
    # persistent pool agents follow the cloud-wide retention timeout
    if pool is not None and retention is RetentionMode.ONCE:
        return pool.max_idle_minutes
    return default
