"""
Pure helpers for building and comparing task definitions.

The remote service echoes container definitions back with defaults filled
in (empty lists, ``protocol: tcp`` ...), so comparisons go through
:func:`normalize_container_definition` on both sides.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Mapping, Optional

from taskfleet.core.entities.template import TaskTemplate
from taskfleet.core.entities.types import TaskDefinition

AWSVPC = "awsvpc"

# container-definition keys this controller sets and therefore compares
COMPARED_KEYS = (
    "name",
    "image",
    "cpu",
    "memory",
    "memoryReservation",
    "essential",
    "privileged",
    "user",
    "entryPoint",
    "environment",
    "mountPoints",
    "portMappings",
    "logConfiguration",
)


def family_name(cloud_name: str, template_name: str) -> str:
    """Deterministic family: cloud name without whitespace, a dash, the template name."""
    return re.sub(r"\s+", "", cloud_name) + "-" + template_name


def environment_pairs(environment: Optional[Mapping[str, Any]]) -> List[Dict[str, str]]:
    return [{"name": str(key), "value": str(value)} for key, value in sorted((environment or {}).items())]


def build_container_definition(family: str, template: TaskTemplate) -> Dict[str, Any]:
    """Container definition for the agent container of ``template`` (defaults applied)."""
    container: Dict[str, Any] = {
        "name": template.agent_container_name or family,
        "image": template.image,
        "essential": True,
        "privileged": bool(template.privileged),
        "cpu": int(template.cpu or 0),
        "environment": environment_pairs(template.environment),
        "mountPoints": [dict(item) for item in template.mount_points or []],
        "portMappings": [dict(item) for item in template.port_mappings or []],
    }
    # at least one of memory / memoryReservation must be set on EC2 hosts
    if (template.memory_reservation or 0) > 0:
        container["memoryReservation"] = int(template.memory_reservation)
    if (template.memory or 0) > 0:
        container["memory"] = int(template.memory)
    if template.entrypoint:
        container["entryPoint"] = template.entrypoint.split()
    if template.container_user:
        container["user"] = template.container_user
    if template.log_driver:
        container["logConfiguration"] = {
            "logDriver": template.log_driver,
            "options": {str(k): str(v) for k, v in (template.log_driver_options or {}).items()},
        }
    return container


def effective_network_mode(template: TaskTemplate) -> Optional[str]:
    if template.is_serverless:
        return AWSVPC
    return template.network_mode or None


def build_register_request(family: str, template: TaskTemplate) -> Dict[str, Any]:
    """Keyword arguments for ``register_task_definition``."""
    request: Dict[str, Any] = {
        "family": family,
        "containerDefinitions": [build_container_definition(family, template)],
        "volumes": [dict(item) for item in template.volumes or []],
    }
    network_mode = effective_network_mode(template)
    if network_mode:
        request["networkMode"] = network_mode
    if template.is_serverless:
        request["requiresCompatibilities"] = [template.launch_type]
        request["cpu"] = str(int(template.cpu or 0))
        request["memory"] = str(template.memory_constraint)
        if template.execution_role:
            request["executionRoleArn"] = template.execution_role
    if template.task_role:
        request["taskRoleArn"] = template.task_role
    if template.tags:
        request["tags"] = [{"key": str(k), "value": str(v)} for k, v in sorted(template.tags.items())]
    return request


def _empty_to_none(value: Any) -> Any:
    if value in (None, [], {}, ""):
        return None
    return value


def _normalize_items(items: Optional[Iterable[Mapping[str, Any]]], defaults: Mapping[str, Any]) -> Optional[list]:
    normalized = []
    for item in items or []:
        entry = dict(defaults)
        entry.update({key: value for key, value in item.items() if value is not None})
        normalized.append(tuple(sorted(entry.items())))
    return sorted(normalized) or None


def normalize_container_definition(container: Mapping[str, Any]) -> Dict[str, Any]:
    normalized: Dict[str, Any] = {}
    for key in COMPARED_KEYS:
        value = container.get(key)
        if key == "environment":
            value = sorted((str(pair.get("name")), str(pair.get("value"))) for pair in value or []) or None
        elif key == "portMappings":
            value = _normalize_items(value, {"protocol": "tcp"})
        elif key == "mountPoints":
            value = _normalize_items(value, {"readOnly": False})
        elif key == "privileged":
            value = bool(value)
        elif key == "cpu":
            value = int(value or 0)
        elif key == "logConfiguration" and value:
            value = (value.get("logDriver"), tuple(sorted((value.get("options") or {}).items())))
        normalized[key] = _empty_to_none(value)
    return normalized


def normalize_volumes(volumes: Optional[Iterable[Mapping[str, Any]]]) -> list:
    return sorted(repr(sorted(dict(volume).items())) for volume in volumes or [])


def definition_matches(existing: TaskDefinition, request: Mapping[str, Any]) -> Dict[str, bool]:
    """Compare the latest registered revision against a register request, field by field."""
    desired_container = request["containerDefinitions"][0]
    current_container = existing.container_definitions[0] if existing.container_definitions else {}
    task_role = request.get("taskRoleArn")
    execution_role = request.get("executionRoleArn")
    network_mode = request.get("networkMode")
    return {
        "container_definition": normalize_container_definition(desired_container)
        == normalize_container_definition(current_container),
        "volumes": normalize_volumes(request.get("volumes")) == normalize_volumes(existing.volumes),
        "task_role": task_role is None or task_role == existing.task_role_arn,
        "execution_role": execution_role is None or execution_role == existing.execution_role_arn,
        "network_mode": network_mode is None or network_mode == existing.network_mode,
    }
