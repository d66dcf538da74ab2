"""
Retention policy for online agents.

One controller serves both retention modes:

* ``persistent`` agents are kept until they have been idle longer than
  their max-idle duration.
* ``once`` agents take a single task and are retired when it completes,
  unless their template asks for a minimum number of retained nodes and
  the fleet is already at or below that floor.

The controller also owns survivability: once the remote task is seen down
the node is never considered recoverable again.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from taskfleet.core.actors.management.agent_manager import AgentManager
from taskfleet.core.entities.agent import AgentNode, AgentState, RetentionMode
from taskfleet.core.entities.template import TaskTemplate
from taskfleet.core.errors import RemoteServiceError
from taskfleet.core.registry import NodeRegistry
from taskfleet.core.remote.base import RemoteTaskService

logger = logging.getLogger(__name__)

DOWN_STATUSES = frozenset({"DEACTIVATING", "STOPPING", "DEPROVISIONING", "STOPPED"})
UP_STATUSES = frozenset({"PROVISIONING", "PENDING", "ACTIVATING", "RUNNING"})


@dataclass
class RetentionDecision:
    terminate: bool
    recheck_after_minutes: Optional[int] = None
    reason: str = ""

    def to_dict(self) -> dict:
        return {
            "terminate": self.terminate,
            "recheck_after_minutes": self.recheck_after_minutes,
            "reason": self.reason,
        }


class RetentionController:
    """Decides, per idle node, whether it may be terminated now."""

    def __init__(
        self,
        service: RemoteTaskService,
        registry: NodeRegistry,
        agent_manager: AgentManager,
        template_lookup: Callable[[str], Optional[TaskTemplate]],
        *,
        recheck_delay_minutes: int = 1,
        clock: Callable[[], float] = time.time,
    ):
        self.service = service
        self.registry = registry
        self.agent_manager = agent_manager
        self.template_lookup = template_lookup
        self.recheck_delay_minutes = recheck_delay_minutes
        self.clock = clock
        self._deferred: Dict[str, float] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Policy

    def check(self, node: AgentNode, *, task_completed: bool = False, now: Optional[float] = None) -> RetentionDecision:
        if node.is_terminated:
            return RetentionDecision(False, reason="already terminated")
        current = self.clock() if now is None else now
        idle_limit = node.max_idle_minutes * 60

        if node.retention is RetentionMode.PERSISTENT:
            if node.is_idle and node.idle_seconds(current) > idle_limit:
                return RetentionDecision(True, reason=f"idle longer than {node.max_idle_minutes} minutes")
            return RetentionDecision(False, reason="within idle timeout")

        template = self.template_lookup(node.template_name)
        if template is not None and template.min_retained_nodes > 0 and self._below_floor(node, template):
            return RetentionDecision(
                False,
                recheck_after_minutes=self.recheck_delay_minutes,
                reason=f"at or below min retained ({template.min_retained_nodes})",
            )
        if task_completed:
            return RetentionDecision(True, reason="task completed")
        if node.is_idle and node.idle_seconds(current) > idle_limit:
            return RetentionDecision(True, reason=f"idle longer than {node.max_idle_minutes} minutes")
        return RetentionDecision(False, reason="within idle timeout")

    def may_terminate_now(self, node: AgentNode, task_completed: bool = False) -> bool:
        return self.check(node, task_completed=task_completed).terminate

    def _below_floor(self, node: AgentNode, template: TaskTemplate) -> bool:
        labels = node.labels
        if not labels:
            return False
        floor = template.min_retained_nodes
        for label in labels:
            online = self.registry.online_count(label)
            logger.debug("Agent %s: label [%s] has %d online nodes (floor %d)", node.name, label, online, floor)
            if online > floor:
                return False
        return True

    # ------------------------------------------------------------------
    # Survivability

    def is_survivable(self, node: AgentNode) -> bool:
        """远端任务一旦被观测到下线，节点就永久视为不可恢复。"""
        if not node.survivable:
            return False
        if not node.task_id:
            self._mark_unsurvivable(node, "no remote task")
            return False
        try:
            task = self.service.describe_task(node.task_id, node.cluster_id)
        except RemoteServiceError as exc:
            logger.warning("Agent %s: survivability check failed, keeping current flag: %s", node.name, exc)
            return node.survivable

        if task is None:
            self._mark_unsurvivable(node, "task no longer exists")
        elif task.last_status in DOWN_STATUSES and task.desired_status not in UP_STATUSES:
            self._mark_unsurvivable(node, f"last status {task.last_status}, desired {task.desired_status}")
        return node.survivable

    def _mark_unsurvivable(self, node: AgentNode, why: str) -> None:
        logger.info("Agent %s is no longer survivable: %s", node.name, why)
        node.mark_unsurvivable()
        try:
            self.registry.save(node)
        except OSError:
            logger.exception("Failed to persist agent %s", node.name)

    # ------------------------------------------------------------------
    # Events from the connection layer

    def on_disconnected(self, node: AgentNode) -> dict:
        if node.is_terminated:
            return {"success": True, "terminated": False}
        if not self.is_survivable(node):
            result = self.agent_manager.terminate_node(node, reason="agent disconnected and task is gone")
            return {"success": result["success"], "terminated": True}
        if node.is_online and node.state is not AgentState.DRAINING:
            node.transition(AgentState.AGENT_CONNECTING)
        logger.info("Agent %s disconnected, waiting for it to reconnect", node.name)
        return {"success": True, "terminated": False}

    def on_task_completed(self, node: AgentNode) -> RetentionDecision:
        if node.state in (AgentState.BUSY, AgentState.AGENT_ONLINE):
            node.transition(AgentState.IDLE, now=self.clock())
        if node.retention is not RetentionMode.ONCE:
            return RetentionDecision(False, reason="persistent retention")

        node.accepting_tasks = False
        decision = self.check(node, task_completed=True)
        if decision.terminate:
            self.agent_manager.terminate_node(node, reason=decision.reason)
        else:
            node.accepting_tasks = True
            self._defer(node, decision)
        return decision

    # ------------------------------------------------------------------
    # Periodic evaluation

    def tick(self, now: Optional[float] = None) -> List[str]:
        """Evaluate every idle node; return the names of nodes that were terminated."""
        current = self.clock() if now is None else now
        terminated: List[str] = []
        for node in self.registry.list_nodes(lambda candidate: candidate.is_idle and candidate.launched):
            with self._lock:
                next_check = self._deferred.get(node.name)
            if next_check is not None and current < next_check:
                continue
            try:
                decision = self.check(node, now=current)
                if decision.terminate:
                    self.agent_manager.terminate_node(node, reason=decision.reason)
                    terminated.append(node.name)
                else:
                    self._defer(node, decision, now=current)
            except Exception:
                logger.exception("Retention check for agent %s failed", node.name)
        with self._lock:
            for name in list(self._deferred):
                if name not in self.registry:
                    self._deferred.pop(name, None)
        return terminated

    def _defer(self, node: AgentNode, decision: RetentionDecision, now: Optional[float] = None) -> None:
        with self._lock:
            if decision.recheck_after_minutes:
                current = self.clock() if now is None else now
                self._deferred[node.name] = current + decision.recheck_after_minutes * 60
            else:
                self._deferred.pop(node.name, None)
