"""
Contract over the remote container-task orchestration API.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, List, Mapping, Optional, Sequence

from taskfleet.core.entities.host import HostInstance, HostStatus
from taskfleet.core.entities.template import TaskTemplate
from taskfleet.core.entities.types import RemoteTask, RunTaskResult, TaskDefinition
from taskfleet.core.remote.definitions import build_register_request, definition_matches

logger = logging.getLogger(__name__)


class RemoteTaskService(ABC):
    """
    远端任务服务抽象。

    所有方法都可能抛出 :class:`~taskfleet.core.errors.RemoteServiceError`；
    除分页续取外本层不做任何重试，由调用方决定重试策略。
    """

    cluster: str

    # ------------------------------------------------------------------
    # Task definitions

    def register_or_reuse_definition(self, template: TaskTemplate, family: str) -> TaskDefinition:
        """
        Return the latest revision of ``family`` when it matches ``template``,
        otherwise register a new revision.
        """
        request = build_register_request(family, template)
        current = self.find_definition(family)
        if current is not None:
            matches = definition_matches(current, request)
            for aspect, matched in matches.items():
                logger.debug("Family %s: match on %s: %s", family, aspect, matched)
            if all(matches.values()):
                logger.info("Reusing task definition %s for template %s", current.arn, template.name)
                return current
            logger.info(
                "Task definition %s differs from template %s (%s), registering a new revision",
                current.arn,
                template.name,
                ", ".join(aspect for aspect, matched in matches.items() if not matched),
            )
        created = self.register_definition(request)
        logger.info("Registered task definition %s for template %s", created.arn, template.name)
        return created

    @abstractmethod
    def find_definition(self, family_or_arn: str) -> Optional[TaskDefinition]:
        """Latest revision of a family (or a specific ARN); ``None`` when absent."""

    @abstractmethod
    def register_definition(self, request: Mapping[str, Any]) -> TaskDefinition:
        """Register a new revision from a ``build_register_request`` payload."""

    # ------------------------------------------------------------------
    # Tasks

    @abstractmethod
    def run_task(
        self,
        definition: TaskDefinition,
        template: TaskTemplate,
        command: Sequence[str],
        environment: Mapping[str, str],
    ) -> RunTaskResult:
        """Start one task of ``definition`` with the agent container's command and env overridden."""

    @abstractmethod
    def describe_task(self, task_id: str, cluster: Optional[str] = None) -> Optional[RemoteTask]:
        """Current remote view of a task; ``None`` when the service no longer knows it."""

    @abstractmethod
    def stop_task(self, task_id: str, cluster: Optional[str] = None) -> None:
        ...

    # ------------------------------------------------------------------
    # Hosts

    @abstractmethod
    def list_hosts(self, status: Optional[HostStatus] = None) -> List[str]:
        """All host ids in the cluster with ``status``, across every page."""

    @abstractmethod
    def describe_hosts(self, host_ids: Sequence[str]) -> List[HostInstance]:
        ...

    @abstractmethod
    def set_host_draining(self, host_id: str) -> None:
        ...

    @abstractmethod
    def protect_new_hosts(self, group: str) -> bool:
        """Make the host group protect newly launched hosts from scale-in; True if it changed."""

    @abstractmethod
    def terminate_host(self, instance_id: str, group: str) -> None:
        """Remove scale-in protection and terminate, decrementing the desired count."""

    def hosts_with_status(self, status: HostStatus) -> List[HostInstance]:
        host_ids = self.list_hosts(status)
        if not host_ids:
            return []
        return self.describe_hosts(host_ids)
