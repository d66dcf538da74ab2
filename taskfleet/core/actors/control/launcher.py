"""
Drives one agent node from REQUESTED to connected.

Stages run strictly in order for a node: resolve the task definition, run
the task, wait for it to reach RUNNING, wait for the agent to connect.  The
run-and-wait pair is retried when the remote service reports a cause from
the retryable allow-list.  Host-managed launches for the same cluster are
serialized so that the capacity check and the run see the same hosts.
"""

from __future__ import annotations

import contextlib
import logging
import threading
import time
from typing import Callable, Dict, Iterable, Iterator, List, Optional

from taskfleet.core.actors.management.agent_manager import AgentManager
from taskfleet.core.config import DEFAULT_RETRYABLE_FAILURES
from taskfleet.core.entities.agent import AgentNode, AgentState
from taskfleet.core.entities.host import HostStatus
from taskfleet.core.entities.template import TaskTemplate
from taskfleet.core.entities.types import RemoteTask, TaskDefinition
from taskfleet.core.errors import (
    AgentConnectTimeout,
    InsufficientCapacityError,
    LaunchAttemptsExceeded,
    LaunchError,
    NodeRemovedError,
    RemoteServiceError,
    RetryableLaunchFailure,
    RunTaskFailedError,
    TaskDefinitionNotFoundError,
    TaskStartTimeout,
    TaskStoppedError,
)
from taskfleet.core.registry import NodeRegistry
from taskfleet.core.remote.base import RemoteTaskService
from taskfleet.core.remote.definitions import family_name

logger = logging.getLogger(__name__)

AGENT_NAME_ENV = "AGENT_NODE_NAME"
AGENT_SECRET_ENV = "AGENT_NODE_SECRET"

TASK_RUNNING = "RUNNING"
TASK_STOPPED = "STOPPED"

_LAUNCH_STAGES = (
    AgentState.REQUESTED,
    AgentState.TASK_STARTING,
    AgentState.TASK_RUNNING,
    AgentState.AGENT_CONNECTING,
)


class AgentLauncher:
    """
    Agent 启动器。

    ``deadline`` 与 ``clock`` 使用同一时间基准（默认 ``time.monotonic``），
    测试可以注入假时钟与假 ``sleep``。
    """

    def __init__(
        self,
        service: RemoteTaskService,
        registry: NodeRegistry,
        agent_manager: AgentManager,
        *,
        cloud_name: str,
        controller_url: str,
        tunnel: Optional[str] = None,
        max_attempts: int = 2,
        task_polling_interval: float = 1.0,
        connect_poll_interval: float = 1.0,
        capacity_poll_interval: float = 10.0,
        retryable_failures: Iterable[str] = DEFAULT_RETRYABLE_FAILURES,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.service = service
        self.registry = registry
        self.agent_manager = agent_manager
        self.cloud_name = cloud_name
        self.controller_url = controller_url
        self.tunnel = tunnel
        self.max_attempts = max(1, int(max_attempts))
        self.task_polling_interval = task_polling_interval
        self.connect_poll_interval = connect_poll_interval
        self.capacity_poll_interval = capacity_poll_interval
        self.retryable_failures = tuple(item for item in retryable_failures if item)
        self.clock = clock
        self.sleep = sleep
        self._cluster_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Public API

    def deadline_after(self, seconds: float) -> float:
        return self.clock() + seconds

    def launch(self, node: AgentNode, template: TaskTemplate, deadline: float) -> None:
        """Bring ``node`` online before ``deadline``; on any failure the node is torn down and the error re-raised."""
        if node.launched:
            logger.info("Agent %s already launched, accepting tasks again", node.name)
            node.accepting_tasks = True
            self._persist(node)
            return

        logger.info("Launching agent %s from template %s", node.name, template.name)
        try:
            definition = self._resolve_definition(node, template)
            self._run_with_retries(node, template, definition, deadline)
            self._wait_for_connection(node, deadline)
        except Exception as exc:
            if isinstance(exc, LaunchError) and exc.node_name is None:
                exc.node_name = node.name
            self._cleanup(node, exc)
            raise

        node.launched = True
        node.accepting_tasks = True
        self._persist(node)
        logger.info("Agent %s is online (task=%s)", node.name, node.task_id)

    def build_command(self, node: AgentNode) -> List[str]:
        command = ["-url", self.controller_url]
        if self.tunnel:
            command.extend(["-tunnel", self.tunnel])
        command.extend([node.secret, node.name])
        return command

    def build_environment(self, node: AgentNode) -> Dict[str, str]:
        return {AGENT_NAME_ENV: node.name, AGENT_SECRET_ENV: node.secret}

    def is_retryable(self, reason: Optional[str]) -> bool:
        if not reason:
            return False
        return any(candidate in reason for candidate in self.retryable_failures)

    # ------------------------------------------------------------------
    # Stages

    def _resolve_definition(self, node: AgentNode, template: TaskTemplate) -> TaskDefinition:
        override = template.task_definition_override
        if override:
            definition = self.service.find_definition(override)
            if definition is None:
                raise TaskDefinitionNotFoundError(
                    f"Could not find task definition override {override} for template {template.name}",
                    node_name=node.name,
                )
            logger.info("Agent %s uses task definition override %s", node.name, definition.arn)
            return definition
        return self.service.register_or_reuse_definition(template, family_name(self.cloud_name, template.name))

    def _run_with_retries(
        self, node: AgentNode, template: TaskTemplate, definition: TaskDefinition, deadline: float
    ) -> None:
        attempt = 0
        while True:
            attempt += 1
            try:
                with self._cluster_lock(template):
                    if not template.is_serverless:
                        self._wait_for_capacity(node, template, deadline)
                    task = self._run_task(node, template, definition)
                    self._wait_for_running(node, task, deadline)
                return
            except LaunchError as exc:
                if not exc.retryable:
                    raise
                if attempt >= self.max_attempts:
                    raise LaunchAttemptsExceeded(
                        f"Agent {node.name}: giving up after {attempt} attempts: {exc}",
                        node_name=node.name,
                        attempts=attempt,
                    ) from exc
                logger.warning(
                    "Agent %s: attempt %d/%d failed with a retryable cause (%s), retrying",
                    node.name,
                    attempt,
                    self.max_attempts,
                    exc,
                )
                node.task_id = None

    @contextlib.contextmanager
    def _cluster_lock(self, template: TaskTemplate) -> Iterator[None]:
        if template.is_serverless:
            yield
            return
        cluster = self.service.cluster
        with self._locks_guard:
            lock = self._cluster_locks.setdefault(cluster, threading.Lock())
        with lock:
            yield

    def _wait_for_capacity(self, node: AgentNode, template: TaskTemplate, deadline: float) -> None:
        needed = template.requested_resources()
        if needed.cpu <= 0 and needed.memory <= 0:
            return
        while True:
            host_ids = self.service.list_hosts()
            hosts = self.service.describe_hosts(host_ids) if host_ids else []
            for host in hosts:
                if host.status is HostStatus.DRAINING:
                    continue
                if host.remaining.has_enough(needed):
                    logger.debug("Agent %s: host %s has %r free", node.name, host.host_id, host.remaining)
                    return
            if self.clock() >= deadline:
                raise InsufficientCapacityError(
                    f"No host in cluster {self.service.cluster} offers {needed!r} for template {template.name}",
                    node_name=node.name,
                )
            logger.info(
                "Agent %s: waiting for a host with %r (checked %d hosts)", node.name, needed, len(hosts)
            )
            self.sleep(self.capacity_poll_interval)

    def _run_task(self, node: AgentNode, template: TaskTemplate, definition: TaskDefinition) -> RemoteTask:
        self._advance(node, AgentState.TASK_STARTING)
        result = self.service.run_task(
            definition, template, self.build_command(node), self.build_environment(node)
        )
        if result.failures:
            reasons = []
            for failure in result.failures:
                logger.warning("Failure reason=%s, arn=%s", failure.reason, failure.arn)
                reasons.append(failure.reason)
            message = f"Failed to run task for agent {node.name}: {', '.join(reasons)}"
            if any(self.is_retryable(reason) for reason in reasons):
                raise RetryableLaunchFailure(message, node_name=node.name)
            raise RunTaskFailedError(message, node_name=node.name, reasons=reasons)
        if not result.tasks:
            raise RunTaskFailedError(f"No task was started for agent {node.name}", node_name=node.name)

        task = result.tasks[0]
        node.task_id = task.task_id
        node.cluster_id = task.cluster_id or self.service.cluster
        node.task_definition_id = definition.arn
        self._persist(node)
        logger.info("Agent %s: started task %s", node.name, task.task_id)
        return task

    def _wait_for_running(self, node: AgentNode, task: RemoteTask, deadline: float) -> RemoteTask:
        while True:
            current = self.service.describe_task(task.task_id, node.cluster_id)
            if current is not None:
                if current.last_status == TASK_RUNNING:
                    self._advance(node, AgentState.TASK_RUNNING)
                    return current
                if current.last_status == TASK_STOPPED:
                    reason = current.stopped_reason or current.container_reason or ""
                    raise TaskStoppedError(
                        f"Task stopped before coming online. TaskARN: {task.task_id}, reason: {reason}",
                        node_name=node.name,
                        stopped_reason=reason,
                        retryable=self.is_retryable(reason),
                    )
            if self.clock() >= deadline:
                self._log_final_state(node, task)
                raise TaskStartTimeout(
                    f"Task took too long to start. TaskARN: {task.task_id}", node_name=node.name
                )
            self.sleep(self.task_polling_interval)

    def _log_final_state(self, node: AgentNode, task: RemoteTask) -> None:
        try:
            final = self.service.describe_task(task.task_id, node.cluster_id)
        except RemoteServiceError as exc:
            logger.warning("Agent %s: could not describe task %s after timeout: %s", node.name, task.task_id, exc)
            return
        if final is None:
            logger.warning("Agent %s: task %s is unknown to the service", node.name, task.task_id)
            return
        logger.warning(
            "Agent %s: task %s last=%s desired=%s stopped_reason=%s exit_code=%s container_reason=%s",
            node.name,
            final.task_id,
            final.last_status,
            final.desired_status,
            final.stopped_reason,
            final.exit_code,
            final.container_reason,
        )

    def _wait_for_connection(self, node: AgentNode, deadline: float) -> None:
        self._advance(node, AgentState.AGENT_CONNECTING)
        while True:
            current = self.registry.get(node.name)
            if current is None or current.is_terminated:
                raise NodeRemovedError(
                    f"Node {node.name} was removed while waiting for the agent to connect", node_name=node.name
                )
            if current.is_online:
                return
            if self.clock() >= deadline:
                raise AgentConnectTimeout(f"Agent is not connected: {node.name}", node_name=node.name)
            self.sleep(self.connect_poll_interval)

    # ------------------------------------------------------------------
    # Helpers

    def _advance(self, node: AgentNode, target: AgentState) -> None:
        if node.is_terminated:
            raise NodeRemovedError(f"Node {node.name} was terminated during launch", node_name=node.name)
        # the connection layer may report the agent online (and offline again) before the task poll does
        if node.is_online:
            return
        if node.state in _LAUNCH_STAGES and _LAUNCH_STAGES.index(node.state) > _LAUNCH_STAGES.index(target):
            logger.debug("Agent %s already at %s, not moving back to %s", node.name, node.state.value, target.value)
            return
        node.transition(target)
        self._persist(node)

    def _cleanup(self, node: AgentNode, cause: Exception) -> None:
        logger.warning("Launch of agent %s failed: %s", node.name, cause)
        try:
            self.agent_manager.terminate_node(node, reason=f"launch failed: {cause}")
        except Exception:
            logger.exception("Cleanup of agent %s failed", node.name)

    def _persist(self, node: AgentNode) -> None:
        try:
            self.registry.save(node)
        except OSError:
            logger.exception("Failed to persist agent %s", node.name)
