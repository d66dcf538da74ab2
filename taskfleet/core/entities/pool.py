"""
Warm agent pool definitions.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, Mapping, Optional

from apscheduler.triggers.cron import CronTrigger

from taskfleet.core.entities.template import parse_labels

logger = logging.getLogger(__name__)


@dataclass
class AgentPool:
    """
    保持固定数量空闲 Agent 的预热池。

    ``schedule`` 为五段式 crontab 表达式，只在命中的分钟内维持
    ``min_idle_agents``；为空或无法解析时视为始终生效。
    """

    label: str
    min_idle_agents: int = 0
    schedule: Optional[str] = None
    max_idle_minutes: int = 5
    description: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self) -> None:
        self.label = (self.label or "").strip()
        self.min_idle_agents = max(0, int(self.min_idle_agents or 0))
        self.max_idle_minutes = max(0, int(self.max_idle_minutes or 0))
        schedule = (self.schedule or "").strip()
        self.schedule = schedule or None
        if not (self.id or "").strip():
            self.id = str(uuid.uuid4())

    @property
    def labels(self) -> FrozenSet[str]:
        return parse_labels(self.label)

    def is_schedule_active(self, now: Optional[datetime] = None) -> bool:
        """Whether ``now`` falls inside the cron schedule; fails open on bad input."""
        if not self.schedule:
            return True
        current = now or datetime.now().astimezone()
        try:
            trigger = CronTrigger.from_crontab(self.schedule, timezone=current.tzinfo or "UTC")
        except ValueError:
            logger.warning("Pool %s: invalid schedule '%s', treating as always active", self.id, self.schedule)
            return True
        minute = current.replace(second=0, microsecond=0)
        if minute.tzinfo is None:
            minute = minute.replace(tzinfo=trigger.timezone)
        return trigger.get_next_fire_time(None, minute) == minute

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "min_idle_agents": self.min_idle_agents,
            "schedule": self.schedule,
            "max_idle_minutes": self.max_idle_minutes,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "AgentPool":
        if not isinstance(payload, Mapping):
            raise ValueError("Pool definition must be a mapping")
        label = str(payload.get("label") or "").strip()
        if not label:
            raise ValueError("Pool definition requires a non-empty 'label'")
        return cls(
            label=label,
            min_idle_agents=int(payload.get("min_idle_agents", 0) or 0),
            schedule=payload.get("schedule"),
            max_idle_minutes=int(payload.get("max_idle_minutes", 5) or 0),
            description=str(payload.get("description") or ""),
            id=str(payload.get("id") or ""),
        )
