"""
Task template entity.

A :class:`TaskTemplate` describes what container to run for an agent.  Every
field except ``name`` starts out as :data:`UNSET`; a child template only
overrides the parent fields it explicitly sets, and an explicit ``None`` or
empty value counts as set.
"""

from __future__ import annotations

import copy
import dataclasses
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional

from taskfleet.core.entities.resources import ContainerResources
from taskfleet.core.errors import TemplateError


class _Unset:
    """Marker for template fields that were never assigned."""

    _instance: Optional["_Unset"] = None

    def __new__(cls) -> "_Unset":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False

    def __reduce__(self):
        return (_Unset, ())


UNSET: Any = _Unset()

LAUNCH_TYPE_EC2 = "EC2"
LAUNCH_TYPE_FARGATE = "FARGATE"

ALL_OVERRIDES = "*"


def _unset() -> Any:
    return field(default=UNSET)


@dataclass(frozen=True)
class TaskTemplate:
    """Immutable description of an agent container and how to run it."""

    name: str
    label: Any = _unset()
    image: Any = _unset()
    cpu: Any = _unset()
    memory: Any = _unset()
    memory_reservation: Any = _unset()
    network_mode: Any = _unset()
    launch_type: Any = _unset()
    platform_version: Any = _unset()
    inherit_from: Any = _unset()
    allowed_overrides: Any = _unset()
    agent_container_name: Any = _unset()
    task_definition_override: Any = _unset()
    entrypoint: Any = _unset()
    container_user: Any = _unset()
    privileged: Any = _unset()
    environment: Any = _unset()
    volumes: Any = _unset()
    mount_points: Any = _unset()
    port_mappings: Any = _unset()
    log_driver: Any = _unset()
    log_driver_options: Any = _unset()
    task_role: Any = _unset()
    execution_role: Any = _unset()
    subnets: Any = _unset()
    security_groups: Any = _unset()
    assign_public_ip: Any = _unset()
    min_retained: Any = _unset()
    tags: Any = _unset()

    # ------------------------------------------------------------------
    # Construction

    @classmethod
    def field_names(cls) -> tuple:
        return tuple(f.name for f in dataclasses.fields(cls))

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "TaskTemplate":
        """Build a template from a YAML mapping; keys that are absent stay UNSET."""
        if not isinstance(payload, Mapping):
            raise TemplateError("Template definition must be a mapping")
        name = str(payload.get("name") or "").strip()
        if not name:
            raise TemplateError("Template requires a non-empty 'name'")
        known = set(cls.field_names())
        unknown = sorted(set(payload) - known)
        if unknown:
            raise TemplateError(f"Template '{name}' has unknown fields: {', '.join(unknown)}")

        values: Dict[str, Any] = {key: value for key, value in payload.items() if key != "name"}
        if "allowed_overrides" in values and values["allowed_overrides"] is not None:
            values["allowed_overrides"] = _coerce_name_set(values["allowed_overrides"])
        if "launch_type" in values and isinstance(values["launch_type"], str):
            values["launch_type"] = values["launch_type"].strip().upper()
        for int_field in ("cpu", "memory", "memory_reservation", "min_retained"):
            if int_field in values and values[int_field] is not None:
                try:
                    values[int_field] = int(values[int_field])
                except (TypeError, ValueError) as exc:
                    raise TemplateError(f"Template '{name}' field '{int_field}' must be an integer") from exc
                if values[int_field] < 0:
                    raise TemplateError(f"Template '{name}' field '{int_field}' must be non-negative")
        return cls(name=name, **values)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the explicitly set fields only."""
        data: Dict[str, Any] = {}
        for name in self.field_names():
            value = getattr(self, name)
            if value is UNSET:
                continue
            if isinstance(value, frozenset):
                value = sorted(value)
            data[name] = value
        return data

    def explicit_fields(self) -> FrozenSet[str]:
        return frozenset(name for name in self.field_names() if getattr(self, name) is not UNSET)

    # ------------------------------------------------------------------
    # Merge / overrides

    def merge(self, parent: Optional["TaskTemplate"]) -> "TaskTemplate":
        """
        Right-biased merge of this template over ``parent``.

        Fields explicitly set here win, including ``None`` and empty values;
        fields left UNSET fall back to the parent.  The result no longer
        refers to a parent.
        """
        if parent is None:
            return self
        values: Dict[str, Any] = {}
        for name in self.field_names():
            if name == "name":
                continue
            mine = getattr(self, name)
            values[name] = getattr(parent, name) if mine is UNSET else mine
        values["inherit_from"] = None
        return TaskTemplate(name=self.name, **values)

    def apply_overrides(self, overrides: Mapping[str, Any]) -> "TaskTemplate":
        """Replace the fields named in ``overrides``; each must be allowed by ``allowed_overrides``."""
        if not overrides:
            return self
        allowed = self.allowed_overrides if self.allowed_overrides else frozenset()
        known = set(self.field_names()) - {"name", "allowed_overrides", "inherit_from"}
        changes: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in known:
                raise TemplateError(f"Unknown template field '{key}'")
            if ALL_OVERRIDES not in allowed and key not in allowed:
                raise TemplateError(
                    f"Template ({self.name}): not allowed to override '{key}'. "
                    f"Allowed overrides are [{', '.join(sorted(allowed))}]"
                )
            changes[key] = value
        return dataclasses.replace(self, **changes)

    def with_defaults(self) -> "TaskTemplate":
        """Fill every UNSET field with its runtime default."""
        changes = {
            name: copy.deepcopy(_DEFAULTS.get(name))
            for name in self.field_names()
            if getattr(self, name) is UNSET
        }
        return dataclasses.replace(self, **changes) if changes else self

    # ------------------------------------------------------------------
    # Derived views

    @property
    def label_set(self) -> FrozenSet[str]:
        return parse_labels(self.label if isinstance(self.label, str) else "")

    @property
    def is_serverless(self) -> bool:
        return isinstance(self.launch_type, str) and self.launch_type.upper() == LAUNCH_TYPE_FARGATE

    @property
    def memory_constraint(self) -> int:
        """Soft limit when set, otherwise the hard limit."""
        reservation = self.memory_reservation or 0
        if reservation > 0:
            return reservation
        return self.memory or 0

    @property
    def min_retained_nodes(self) -> int:
        return int(self.min_retained or 0)

    def requested_resources(self) -> ContainerResources:
        return ContainerResources(cpu=int(self.cpu or 0), memory=self.memory_constraint)

    def can_serve(self, label: Optional[str]) -> bool:
        """A blank demand label matches any template; otherwise every requested atom must be present."""
        wanted = parse_labels(label or "")
        return wanted.issubset(self.label_set)


_DEFAULTS: Dict[str, Any] = {
    "label": "",
    "image": None,
    "cpu": 0,
    "memory": 0,
    "memory_reservation": 0,
    "network_mode": None,
    "launch_type": LAUNCH_TYPE_EC2,
    "platform_version": None,
    "inherit_from": None,
    "allowed_overrides": frozenset(),
    "agent_container_name": None,
    "task_definition_override": None,
    "entrypoint": None,
    "container_user": None,
    "privileged": False,
    "environment": {},
    "volumes": [],
    "mount_points": [],
    "port_mappings": [],
    "log_driver": None,
    "log_driver_options": {},
    "task_role": None,
    "execution_role": None,
    "subnets": [],
    "security_groups": [],
    "assign_public_ip": False,
    "min_retained": 0,
    "tags": {},
}


def parse_labels(label: str) -> FrozenSet[str]:
    return frozenset(part for part in label.split() if part)


def _coerce_name_set(value: Any) -> FrozenSet[str]:
    if isinstance(value, str):
        items: Iterable[str] = value.replace(",", " ").split()
    else:
        items = (str(item).strip() for item in value)
    return frozenset(item for item in items if item)


__all__ = [
    "UNSET",
    "LAUNCH_TYPE_EC2",
    "LAUNCH_TYPE_FARGATE",
    "ALL_OVERRIDES",
    "TaskTemplate",
    "parse_labels",
]
