"""
Core package bootstrap for the TaskFleet runtime.

Re-exports the primary façade class so callers can simply do::

    from taskfleet.core import FleetController
"""

from __future__ import annotations

from taskfleet.core.controllers.fleet_controller import FleetController

__all__ = ["FleetController"]
