"""
Agent node entity definitions.
"""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from taskfleet.core.entities.template import parse_labels


class AgentState(str, Enum):
    """Lifecycle states of an agent node."""

    REQUESTED = "requested"
    TASK_STARTING = "task_starting"
    TASK_RUNNING = "task_running"
    AGENT_CONNECTING = "agent_connecting"
    AGENT_ONLINE = "agent_online"
    IDLE = "idle"
    BUSY = "busy"
    DRAINING = "draining"
    TERMINATED = "terminated"


_TRANSITIONS: Dict[AgentState, FrozenSet[AgentState]] = {
    AgentState.REQUESTED: frozenset({AgentState.TASK_STARTING}),
    AgentState.TASK_STARTING: frozenset({AgentState.TASK_RUNNING, AgentState.TASK_STARTING, AgentState.AGENT_ONLINE}),
    AgentState.TASK_RUNNING: frozenset({AgentState.AGENT_CONNECTING, AgentState.AGENT_ONLINE}),
    AgentState.AGENT_CONNECTING: frozenset({AgentState.AGENT_ONLINE}),
    AgentState.AGENT_ONLINE: frozenset(
        {AgentState.IDLE, AgentState.BUSY, AgentState.DRAINING, AgentState.AGENT_CONNECTING}
    ),
    AgentState.IDLE: frozenset({AgentState.BUSY, AgentState.DRAINING, AgentState.AGENT_CONNECTING}),
    AgentState.BUSY: frozenset({AgentState.IDLE, AgentState.DRAINING, AgentState.AGENT_CONNECTING}),
    AgentState.DRAINING: frozenset(),
    AgentState.TERMINATED: frozenset(),
}

ONLINE_STATES = frozenset({AgentState.AGENT_ONLINE, AgentState.IDLE, AgentState.BUSY, AgentState.DRAINING})


class RetentionMode(str, Enum):
    """How long an agent is kept once it has come online."""

    PERSISTENT = "persistent"
    ONCE = "once"


class InvalidTransition(ValueError):
    """Raised when a node is moved to a state its current state cannot reach."""


@dataclass
class AgentNode:
    """
    One provisioned agent and the remote task backing it.

    ``survivable`` only ever moves from True to False.  The connection
    secret is generated once per node and handed to the agent container.
    """

    name: str
    template_name: str
    label: str = ""
    pool_id: Optional[str] = None
    retention: RetentionMode = RetentionMode.ONCE
    max_idle_minutes: int = 5
    num_executors: int = 1
    state: AgentState = AgentState.REQUESTED
    task_id: Optional[str] = None
    cluster_id: Optional[str] = None
    task_definition_id: Optional[str] = None
    launched: bool = False
    accepting_tasks: bool = False
    survivable: bool = True
    secret: str = field(default_factory=lambda: secrets.token_hex(32))
    idle_since: Optional[float] = None
    created_at: float = field(default_factory=time.time)

    @property
    def labels(self) -> FrozenSet[str]:
        return parse_labels(self.label)

    @property
    def is_online(self) -> bool:
        return self.state in ONLINE_STATES

    @property
    def is_idle(self) -> bool:
        return self.state in (AgentState.IDLE, AgentState.AGENT_ONLINE)

    @property
    def is_terminated(self) -> bool:
        return self.state is AgentState.TERMINATED

    def transition(self, target: AgentState, *, now: Optional[float] = None) -> None:
        """Move to ``target``; any state may go straight to TERMINATED."""
        if self.state is target and target is not AgentState.TASK_STARTING:
            return
        if target is not AgentState.TERMINATED:
            allowed = _TRANSITIONS.get(self.state, frozenset())
            if target not in allowed:
                raise InvalidTransition(f"Agent {self.name}: cannot move from {self.state.value} to {target.value}")
        self.state = target
        if target in (AgentState.IDLE, AgentState.AGENT_ONLINE):
            if self.idle_since is None:
                self.idle_since = time.time() if now is None else now
        else:
            self.idle_since = None

    def idle_seconds(self, now: Optional[float] = None) -> float:
        if self.idle_since is None:
            return 0.0
        current = time.time() if now is None else now
        return max(0.0, current - self.idle_since)

    def mark_unsurvivable(self) -> None:
        self.survivable = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "template_name": self.template_name,
            "label": self.label,
            "pool_id": self.pool_id,
            "retention": self.retention.value,
            "max_idle_minutes": self.max_idle_minutes,
            "num_executors": self.num_executors,
            "state": self.state.value,
            "task_id": self.task_id,
            "cluster_id": self.cluster_id,
            "task_definition_id": self.task_definition_id,
            "launched": self.launched,
            "accepting_tasks": self.accepting_tasks,
            "survivable": self.survivable,
            "idle_since": self.idle_since,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "AgentNode":
        return cls(
            name=str(payload["name"]),
            template_name=str(payload.get("template_name", "")),
            label=str(payload.get("label") or ""),
            pool_id=payload.get("pool_id"),
            retention=RetentionMode(payload.get("retention", RetentionMode.ONCE.value)),
            max_idle_minutes=int(payload.get("max_idle_minutes", 5)),
            num_executors=int(payload.get("num_executors", 1)),
            state=AgentState(payload.get("state", AgentState.REQUESTED.value)),
            task_id=payload.get("task_id"),
            cluster_id=payload.get("cluster_id"),
            task_definition_id=payload.get("task_definition_id"),
            launched=bool(payload.get("launched", False)),
            accepting_tasks=bool(payload.get("accepting_tasks", False)),
            survivable=bool(payload.get("survivable", True)),
            idle_since=payload.get("idle_since"),
            created_at=float(payload.get("created_at") or time.time()),
        )
