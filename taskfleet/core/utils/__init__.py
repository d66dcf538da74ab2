"""Utility helpers for TaskFleet."""

from .logging import configure_runtime_logging, install_stdout_logger  # noqa: F401
from .naming import compact, dashed, random_suffix  # noqa: F401

__all__ = [
    "compact",
    "configure_runtime_logging",
    "dashed",
    "install_stdout_logger",
    "random_suffix",
]
