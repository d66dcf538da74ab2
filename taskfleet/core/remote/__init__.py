"""
Remote orchestration service contract and its ECS implementation.

``EcsTaskService`` is imported lazily so that unit tests of the pure
components do not need boto3 configured.
"""

from __future__ import annotations

from .base import RemoteTaskService  # noqa: F401
from .definitions import family_name  # noqa: F401

__all__ = ["RemoteTaskService", "EcsTaskService", "family_name"]


def __getattr__(name: str):
    if name == "EcsTaskService":
        from .ecs import EcsTaskService

        return EcsTaskService
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")
