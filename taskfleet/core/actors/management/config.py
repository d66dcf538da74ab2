"""
Shared configuration dataclasses for TaskFleet actors.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


@dataclass
class ActorConfig:
    """
    Settings the hosting layer passes to a long-lived actor.

    ``config_path`` overrides the ``TASKFLEET_CONFIG`` lookup for this actor
    only; ``state_path`` overrides ``fleet.state_path``.
    """

    name: str
    max_concurrency: int = 16
    startup_timeout: float = 60.0
    config_path: Optional[str] = None
    state_path: Optional[str] = None
    start_background_jobs: bool = True
    metadata: dict[str, str] = field(default_factory=dict)
