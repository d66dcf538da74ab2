"""
Ray actor implementations that back the TaskFleet control plane.

Sub-packages:
    - management: agent records, warm pools and host scale-in.
    - control:    launching, retention and the supervisor actor.
"""

from . import management  # noqa: F401
from . import control  # noqa: F401
from .head import FleetHead  # noqa: F401

__all__ = [
    "management",
    "control",
    "FleetHead",
]
