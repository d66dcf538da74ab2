"""
Container resource bundle shared by templates and hosts.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict


@dataclass
class ContainerResources:
    """CPU units (1024 per vCPU) and memory in MiB, as the remote service counts them."""

    cpu: int = 0
    memory: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"cpu": self.cpu, "memory": self.memory}

    @classmethod
    def from_dict(cls, values: Dict[str, object]) -> "ContainerResources":
        """
        从字典创建 ContainerResources 对象

        Raises:
            ValueError: 资源值为负数或无法转换为整数
        """
        try:
            cpu = int(values.get("cpu", 0) or 0)
            memory = int(values.get("memory", 0) or 0)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid resource specification: {e}") from e
        if cpu < 0 or memory < 0:
            raise ValueError(f"Resource values must be non-negative: cpu={cpu}, memory={memory}")
        return cls(cpu=cpu, memory=memory)

    @classmethod
    def from_remaining(cls, remaining: list) -> "ContainerResources":
        """Build from the ``remainingResources`` list of a container-instance description."""
        values: Dict[str, int] = {}
        for resource in remaining or []:
            name = str(resource.get("name", "")).upper()
            if name in ("CPU", "MEMORY"):
                values[name.lower()] = int(resource.get("integerValue", 0) or 0)
        return cls(cpu=values.get("cpu", 0), memory=values.get("memory", 0))

    def copy(self) -> "ContainerResources":
        return ContainerResources(cpu=self.cpu, memory=self.memory)

    def has_enough(self, other: "ContainerResources") -> bool:
        return self.cpu >= other.cpu and self.memory >= other.memory

    def __repr__(self) -> str:
        return f"ContainerResources(cpu={self.cpu}, memory={self.memory}MiB)"
