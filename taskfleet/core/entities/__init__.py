"""
Domain entities used throughout the TaskFleet runtime.
"""

from .agent import AgentNode, AgentState, RetentionMode  # noqa: F401
from .host import HostInstance, HostStatus  # noqa: F401
from .pool import AgentPool  # noqa: F401
from .resources import ContainerResources  # noqa: F401
from .template import UNSET, TaskTemplate  # noqa: F401
from .types import (  # noqa: F401
    DemandSnapshot,
    PlannedLaunch,
    RemoteTask,
    RunFailure,
    RunTaskResult,
    TaskDefinition,
)

__all__ = [
    "AgentNode",
    "AgentState",
    "RetentionMode",
    "HostInstance",
    "HostStatus",
    "AgentPool",
    "ContainerResources",
    "UNSET",
    "TaskTemplate",
    "DemandSnapshot",
    "PlannedLaunch",
    "RemoteTask",
    "RunFailure",
    "RunTaskResult",
    "TaskDefinition",
]
