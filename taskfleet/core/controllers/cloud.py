"""
FleetCloud: the provisioning source backed by one remote cluster.

A cloud owns its template mapping and warm pools, creates node records,
hands launches to :class:`AgentLauncher` on a bounded worker pool and
receives the connection-layer events for its nodes.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterable, List, Mapping, Optional

from taskfleet.core.actors.control.launcher import AgentLauncher
from taskfleet.core.actors.control.retention import RetentionController
from taskfleet.core.actors.management.agent_manager import AgentManager
from taskfleet.core.entities.agent import AgentNode, AgentState, InvalidTransition, RetentionMode
from taskfleet.core.entities.pool import AgentPool
from taskfleet.core.entities.template import TaskTemplate, parse_labels
from taskfleet.core.entities.types import DemandSnapshot, PlannedLaunch
from taskfleet.core.errors import TemplateError
from taskfleet.core.registry import NodeRegistry
from taskfleet.core.remote.base import RemoteTaskService
from taskfleet.core.scheduling.strategy import ProvisioningSource
from taskfleet.core.utils.naming import compact, random_suffix

logger = logging.getLogger(__name__)


class FleetCloud(ProvisioningSource):
    """Provisioning source for one cluster and its templates."""

    def __init__(
        self,
        name: str,
        templates: Iterable[TaskTemplate],
        service: RemoteTaskService,
        registry: NodeRegistry,
        agent_manager: AgentManager,
        launcher: AgentLauncher,
        *,
        pools: Iterable[AgentPool] = (),
        retention: RetentionMode = RetentionMode.ONCE,
        retention_timeout_minutes: int = 5,
        num_executors: int = 1,
        agent_timeout_seconds: float = 900,
        max_workers: int = 8,
        recheck_delay_minutes: int = 1,
        retention_controller: Optional[RetentionController] = None,
    ):
        self.name = name
        self._templates: Dict[str, TaskTemplate] = {}
        for template in templates:
            if template.name in self._templates:
                raise TemplateError(f"Duplicate template name '{template.name}'")
            self._templates[template.name] = template
        self.pools: Dict[str, AgentPool] = {pool.id: pool for pool in pools}
        self.service = service
        self.registry = registry
        self.agent_manager = agent_manager
        self.launcher = launcher
        self.retention = retention
        self.retention_timeout_minutes = retention_timeout_minutes
        self.num_executors = max(1, int(num_executors))
        self.agent_timeout_seconds = agent_timeout_seconds
        self.retention_controller = retention_controller or RetentionController(
            service,
            registry,
            agent_manager,
            self.find_template,
            recheck_delay_minutes=recheck_delay_minutes,
        )
        self._executor = ThreadPoolExecutor(max_workers=max(1, int(max_workers)), thread_name_prefix=f"{name}-launch")

    # ------------------------------------------------------------------
    # Templates

    @property
    def template_names(self) -> List[str]:
        return list(self._templates)

    def effective_template(self, name: str, overrides: Optional[Mapping[str, object]] = None) -> TaskTemplate:
        """
        解析 ``inherit_from`` 链并返回可直接用于启动的模板。

        子模板按字段覆盖父模板；随后应用 ``overrides``（受 ``allowed_overrides``
        约束），最后用运行时默认值补齐未设置的字段。
        """
        template = self._templates.get(name)
        if template is None:
            raise TemplateError(f"Unknown template '{name}'")

        chain: List[TaskTemplate] = []
        seen = set()
        current: Optional[TaskTemplate] = template
        while current is not None:
            if current.name in seen:
                path = " -> ".join(item.name for item in chain + [current])
                raise TemplateError(f"Template inheritance cycle: {path}")
            seen.add(current.name)
            chain.append(current)
            parent_name = current.inherit_from
            if not parent_name:
                break
            current = self._templates.get(parent_name)
            if current is None:
                raise TemplateError(f"Template '{chain[-1].name}' inherits from unknown template '{parent_name}'")

        merged: Optional[TaskTemplate] = None
        for item in reversed(chain):
            merged = item.merge(merged)
        assert merged is not None
        if overrides:
            merged = merged.apply_overrides(overrides)
        return merged.with_defaults()

    def find_template(self, name: str) -> Optional[TaskTemplate]:
        try:
            return self.effective_template(name)
        except TemplateError:
            logger.warning("Template %s cannot be resolved", name, exc_info=True)
            return None

    def template_for_label(self, label: Optional[str]) -> Optional[TaskTemplate]:
        for name in self._templates:
            template = self.find_template(name)
            if template is not None and template.can_serve(label):
                return template
        return None

    # ------------------------------------------------------------------
    # ProvisioningSource

    def can_serve(self, label: Optional[str]) -> bool:
        return self.template_for_label(label) is not None

    def provision(self, label: Optional[str], excess: int) -> List[PlannedLaunch]:
        template = self.template_for_label(label)
        if template is None:
            return []

        launches: List[PlannedLaunch] = []
        remaining = excess
        while remaining > 0:
            node = self.agent_manager.create_node(
                self.generate_node_name(template),
                template,
                retention=self.retention,
                max_idle_minutes=self.retention_timeout_minutes,
                num_executors=self.num_executors,
            )
            future = self._executor.submit(self._launch, node, template)
            launches.append(PlannedLaunch(node_name=node.name, label=label, executors=node.num_executors, future=future))
            remaining -= node.num_executors
        logger.info("Cloud %s: provisioning %d agent(s) for label [%s]", self.name, len(launches), label)
        return launches

    def demand_snapshot(self, label: Optional[str], queue_length: int) -> DemandSnapshot:
        """Build a snapshot from the registry's view of available and connecting executors."""
        available = 0
        connecting = 0
        for node in self.registry.list_nodes():
            if node.is_terminated or not node.labels.issuperset(parse_labels(label or "")):
                continue
            if node.is_online:
                if node.is_idle and node.accepting_tasks:
                    available += node.num_executors
            else:
                connecting += node.num_executors
        return DemandSnapshot(
            label=label,
            queue_length=max(0, int(queue_length)),
            available_capacity=available,
            connecting_capacity=connecting,
        )

    def generate_node_name(self, template: TaskTemplate) -> str:
        return f"{compact(self.name)}-{template.name}-{random_suffix()}"

    def _launch(self, node: AgentNode, template: TaskTemplate) -> str:
        self.launcher.launch(node, template, self.launcher.deadline_after(self.agent_timeout_seconds))
        return node.name

    # ------------------------------------------------------------------
    # Warm pools

    def launch_pool_agent(self, pool: AgentPool, template: TaskTemplate, name: str) -> AgentNode:
        """Create and launch one pool agent, blocking until it is online."""
        node = self.agent_manager.create_node(
            name,
            template,
            pool=pool,
            retention=self.retention,
            max_idle_minutes=self.retention_timeout_minutes,
            num_executors=self.num_executors,
        )
        self.launcher.launch(node, template, self.launcher.deadline_after(self.agent_timeout_seconds))
        return node

    # ------------------------------------------------------------------
    # Connection-layer events

    def mark_online(self, name: str) -> dict:
        node = self.registry.get(name)
        if node is None:
            return {"success": False, "error": f"Agent '{name}' not found"}
        if node.is_online:
            return {"success": True, "agent": node.to_dict()}
        try:
            node.transition(AgentState.AGENT_ONLINE)
        except InvalidTransition as exc:
            return {"success": False, "error": str(exc)}
        self._persist(node)
        logger.info("Agent %s connected", name)
        return {"success": True, "agent": node.to_dict()}

    def mark_offline(self, name: str) -> dict:
        node = self.registry.get(name)
        if node is None:
            return {"success": False, "error": f"Agent '{name}' not found"}
        result = self.retention_controller.on_disconnected(node)
        if not result.get("terminated"):
            self._persist(node)
        return result

    def task_accepted(self, name: str) -> dict:
        node = self.registry.get(name)
        if node is None:
            return {"success": False, "error": f"Agent '{name}' not found"}
        if not node.accepting_tasks:
            return {"success": False, "error": f"Agent '{name}' is not accepting tasks"}
        try:
            node.transition(AgentState.BUSY)
        except InvalidTransition as exc:
            return {"success": False, "error": str(exc)}
        self._persist(node)
        return {"success": True, "agent": node.to_dict()}

    def task_completed(self, name: str) -> dict:
        node = self.registry.get(name)
        if node is None:
            return {"success": False, "error": f"Agent '{name}' not found"}
        decision = self.retention_controller.on_task_completed(node)
        if not decision.terminate:
            self._persist(node)
        return {"success": True, "decision": decision.to_dict()}

    # ------------------------------------------------------------------

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)

    def _persist(self, node: AgentNode) -> None:
        try:
            self.registry.save(node)
        except OSError:
            logger.exception("Failed to persist agent %s", node.name)
