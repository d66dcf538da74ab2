"""
Exception hierarchy for the TaskFleet runtime.

Launch failures carry the node name so that provisioning callers can report
which capacity request failed.
"""

from __future__ import annotations

from typing import Optional


class TaskFleetError(Exception):
    """Base class for all TaskFleet errors."""


class TemplateError(TaskFleetError):
    """Template graph is invalid (unknown parent, inheritance cycle, bad field)."""


class RemoteServiceError(TaskFleetError):
    """A call against the remote orchestration API failed."""

    def __init__(self, operation: str, message: str, *, code: Optional[str] = None):
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation
        self.code = code


class LaunchError(TaskFleetError):
    """Base class for errors raised while bringing an agent online."""

    retryable = False

    def __init__(self, message: str, *, node_name: Optional[str] = None, retryable: Optional[bool] = None):
        super().__init__(message)
        self.node_name = node_name
        if retryable is not None:
            self.retryable = retryable


class RetryableLaunchFailure(LaunchError):
    """Run-and-wait failed with a cause on the retryable allow-list."""

    retryable = True


class RunTaskFailedError(LaunchError):
    """The remote service reported failures when asked to run the task."""

    def __init__(self, message: str, *, node_name: Optional[str] = None, reasons: Optional[list] = None):
        super().__init__(message, node_name=node_name)
        self.reasons = list(reasons or [])


class LaunchAttemptsExceeded(LaunchError):
    """Every allowed run-and-wait attempt failed with a retryable cause."""

    def __init__(self, message: str, *, node_name: Optional[str] = None, attempts: int = 0):
        super().__init__(message, node_name=node_name)
        self.attempts = attempts


class TaskStartTimeout(LaunchError):
    """The task did not reach RUNNING before the launch deadline."""


class TaskStoppedError(LaunchError):
    """The task stopped before the agent came online."""

    def __init__(
        self,
        message: str,
        *,
        node_name: Optional[str] = None,
        stopped_reason: Optional[str] = None,
        retryable: bool = False,
    ):
        super().__init__(message, node_name=node_name, retryable=retryable)
        self.stopped_reason = stopped_reason


class AgentConnectTimeout(LaunchError):
    """The task is running but the agent never connected."""


class NodeRemovedError(LaunchError):
    """The node was removed from the registry while it was being launched."""


class InsufficientCapacityError(LaunchError):
    """No host offered enough cpu/memory before the deadline."""


class TaskDefinitionNotFoundError(LaunchError):
    """A template names a task-definition override that does not exist."""


__all__ = [
    "TaskFleetError",
    "TemplateError",
    "RemoteServiceError",
    "LaunchError",
    "RetryableLaunchFailure",
    "RunTaskFailedError",
    "LaunchAttemptsExceeded",
    "TaskStartTimeout",
    "TaskStoppedError",
    "AgentConnectTimeout",
    "NodeRemovedError",
    "InsufficientCapacityError",
    "TaskDefinitionNotFoundError",
]
