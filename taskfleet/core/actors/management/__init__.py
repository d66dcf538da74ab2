"""
Components that manage long-lived resources: agent records, warm pools and
the host fleet.
"""

from .config import ActorConfig  # noqa: F401
from .agent_manager import AgentManager  # noqa: F401
from .pool_maintainer import PoolMaintainer  # noqa: F401
from .scale_in import ClusterScaleIn, ClusterScaleInActor  # noqa: F401

__all__ = [
    "ActorConfig",
    "AgentManager",
    "PoolMaintainer",
    "ClusterScaleIn",
    "ClusterScaleInActor",
]
