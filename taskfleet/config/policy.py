"""
Retention policy definitions and constants.
"""

from __future__ import annotations

import os
from typing import Dict, Tuple, TypedDict

from taskfleet.core.entities.agent import RetentionMode


class ScaleInThresholds(TypedDict):
    """Timing thresholds used to drain hosts."""
    max_uptime_seconds: int
    billing_period_seconds: int
    drain_window_seconds: int


# Hosts older than ten hours are always drained; idle hosts are drained when
# fewer than four minutes remain before the next billing hour.
DEFAULT_SCALE_IN_THRESHOLDS: ScaleInThresholds = {
    "max_uptime_seconds": 10 * 3600,
    "billing_period_seconds": 3600,
    "drain_window_seconds": 240,
}


RETENTION_ALIASES: Dict[str, str] = {
    "retain": RetentionMode.PERSISTENT.value,
    "persist": RetentionMode.PERSISTENT.value,
    "one-shot": RetentionMode.ONCE.value,
    "oneshot": RetentionMode.ONCE.value,
}


def resolve_retention_mode(
    value: str | bool | RetentionMode | None,
) -> Tuple[RetentionMode | None, str | None]:
    """
    Resolve user input (enum, bool, string, environment indirection) to a retention mode.

    Supports the following forms:
        - Enum members (:class:`RetentionMode`)
        - Booleans, as used by ``fleet.retain_agents`` (``True`` means persistent)
        - String equivalents, case-insensitive (``"persistent"``, ``"once"``)
        - Semantic aliases (``"retain"``, ``"one-shot"``, etc.)
        - Environment indirection: ``"env:TASKFLEET_RETENTION"``

    Returns:
        A tuple of ``(mode, hint)`` where ``hint`` describes the resolution source.
        If resolution fails, returns ``(None, error_hint)``.
    """
    if value is None:
        return None, None

    if isinstance(value, RetentionMode):
        return value, f"enum:{value.name}"

    if isinstance(value, bool):
        mode = RetentionMode.PERSISTENT if value else RetentionMode.ONCE
        return mode, f"bool:{value}"

    if not isinstance(value, str):
        return None, None

    raw = value.strip()
    if not raw:
        return None, None

    if raw.lower().startswith("env:"):
        env_key = raw[4:].strip()
        if not env_key:
            return None, "环境变量键为空"
        env_val = os.getenv(env_key)
        if env_val is None:
            return None, f"环境变量 {env_key} 未设置"
        raw = env_val.strip()
        if not raw:
            return None, f"环境变量 {env_key} 的值为空"
        hint_prefix = f'env:{env_key}="{env_val}"'
    else:
        hint_prefix = None

    alias = RETENTION_ALIASES.get(raw.lower(), raw.lower())
    try:
        mode = RetentionMode(alias)
    except ValueError:
        return None, hint_prefix or f'value="{raw}"'

    return mode, hint_prefix or f'value="{raw}"'
