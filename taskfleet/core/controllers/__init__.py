"""
Public facing controller facades for TaskFleet.
"""

from .cloud import FleetCloud  # noqa: F401
from .fleet_controller import FleetController  # noqa: F401

__all__ = ["FleetCloud", "FleetController"]
