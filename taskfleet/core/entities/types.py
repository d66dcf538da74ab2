"""
Common type definitions shared across actors and controllers.
"""

from __future__ import annotations

from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class TaskDefinition:
    """Registered, versioned task descriptor on the remote service."""

    arn: str
    family: str
    revision: int
    container_definitions: List[Dict[str, Any]] = field(default_factory=list)
    volumes: List[Dict[str, Any]] = field(default_factory=list)
    task_role_arn: Optional[str] = None
    execution_role_arn: Optional[str] = None
    network_mode: Optional[str] = None

    @property
    def agent_container_name(self) -> Optional[str]:
        # the agent container is the first container of the definition by convention
        if not self.container_definitions:
            return None
        return self.container_definitions[0].get("name")

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "TaskDefinition":
        return cls(
            arn=payload["taskDefinitionArn"],
            family=payload.get("family", ""),
            revision=int(payload.get("revision", 0)),
            container_definitions=list(payload.get("containerDefinitions") or []),
            volumes=list(payload.get("volumes") or []),
            task_role_arn=payload.get("taskRoleArn"),
            execution_role_arn=payload.get("executionRoleArn"),
            network_mode=payload.get("networkMode"),
        )


@dataclass
class RemoteTask:
    """Snapshot of a remote task as returned by a describe call."""

    task_id: str
    cluster_id: str
    last_status: str
    desired_status: str
    task_definition_id: Optional[str] = None
    host_id: Optional[str] = None
    stopped_reason: Optional[str] = None
    exit_code: Optional[int] = None
    container_reason: Optional[str] = None

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "RemoteTask":
        containers = payload.get("containers") or [{}]
        first = containers[0]
        return cls(
            task_id=payload["taskArn"],
            cluster_id=payload.get("clusterArn", ""),
            last_status=payload.get("lastStatus", ""),
            desired_status=payload.get("desiredStatus", ""),
            task_definition_id=payload.get("taskDefinitionArn"),
            host_id=payload.get("containerInstanceArn"),
            stopped_reason=payload.get("stoppedReason"),
            exit_code=first.get("exitCode"),
            container_reason=first.get("reason"),
        )


@dataclass
class RunFailure:
    reason: str
    arn: Optional[str] = None


@dataclass
class RunTaskResult:
    tasks: List[RemoteTask] = field(default_factory=list)
    failures: List[RunFailure] = field(default_factory=list)


@dataclass
class DemandSnapshot:
    """Per demand-class view of the build queue."""

    label: Optional[str]
    queue_length: int
    available_capacity: int = 0
    connecting_capacity: int = 0

    @property
    def excess(self) -> int:
        return self.queue_length - self.available_capacity - self.connecting_capacity


@dataclass
class PlannedLaunch:
    """An agent a provisioning source has committed to start."""

    node_name: str
    label: Optional[str]
    executors: int = 1
    future: Optional["Future[Any]"] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"node_name": self.node_name, "label": self.label, "executors": self.executors}
