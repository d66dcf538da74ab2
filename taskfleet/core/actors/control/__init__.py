"""
Launching, retention and supervision of agent nodes.
"""

from .launcher import AgentLauncher  # noqa: F401
from .retention import RetentionController, RetentionDecision  # noqa: F401
from .supervisor import FleetSupervisorActor  # noqa: F401

__all__ = [
    "AgentLauncher",
    "RetentionController",
    "RetentionDecision",
    "FleetSupervisorActor",
]
