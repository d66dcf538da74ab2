"""
Underlying compute host (container instance) entity.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from taskfleet.core.entities.resources import ContainerResources


class HostStatus(str, Enum):
    ACTIVE = "ACTIVE"
    DRAINING = "DRAINING"
    REGISTERING = "REGISTERING"
    DEREGISTERING = "DEREGISTERING"
    INACTIVE = "INACTIVE"


@dataclass
class HostInstance:
    """A member of the host fleet as reported by the orchestration API."""

    host_id: str
    instance_id: Optional[str]
    status: HostStatus
    pending_tasks: int = 0
    running_tasks: int = 0
    launch_time: Optional[datetime] = None
    remaining: ContainerResources = field(default_factory=ContainerResources)

    @property
    def task_count(self) -> int:
        return self.pending_tasks + self.running_tasks

    @property
    def is_idle(self) -> bool:
        return self.task_count == 0

    def uptime_seconds(self, now: Optional[datetime] = None) -> int:
        if self.launch_time is None:
            return 0
        current = now or datetime.now(timezone.utc)
        launched = self.launch_time
        if launched.tzinfo is None:
            launched = launched.replace(tzinfo=timezone.utc)
        return max(0, int((current - launched).total_seconds()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "host_id": self.host_id,
            "instance_id": self.instance_id,
            "status": self.status.value,
            "pending_tasks": self.pending_tasks,
            "running_tasks": self.running_tasks,
            "launch_time": self.launch_time.isoformat() if self.launch_time else None,
            "remaining": self.remaining.to_dict(),
        }
