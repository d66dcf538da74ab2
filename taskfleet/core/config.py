"""Configuration helpers for TaskFleet.

This module loads YAML configuration describing the fleet, its templates and
warm pools.  Configuration precedence:

1. Environment variable ``TASKFLEET_CONFIG`` pointing to a YAML file.
2. ``taskfleet.yaml`` in the current working directory.
3. Built-in defaults bundled with the package (``config/default.yaml``).

Sections missing from a user file fall back to the bundled defaults.
"""

from __future__ import annotations

import importlib
import inspect
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml

from taskfleet.config.policy import DEFAULT_SCALE_IN_THRESHOLDS, resolve_retention_mode
from taskfleet.core.entities.agent import RetentionMode
from taskfleet.core.entities.pool import AgentPool
from taskfleet.core.entities.template import TaskTemplate
from taskfleet.core.scheduling.strategy import (
    ProvisioningStrategy,
    available_strategies as _available_strategies,
    register_strategy,
    unregister_strategy,
)

__all__ = [
    "FleetConfig",
    "FleetSettings",
    "LauncherSettings",
    "RetentionSettings",
    "PoolMaintenanceSettings",
    "ScaleInSettings",
    "ProvisioningConfig",
    "StrategyConfigEntry",
    "build_fleet_config",
    "get_fleet_config",
    "load_fleet_config",
    "reset_fleet_config",
]


_ENV_VAR = "TASKFLEET_CONFIG"
_CWD_FILE = "taskfleet.yaml"

DEFAULT_RETRYABLE_FAILURES = ("Timeout waiting for network interface provisioning to complete",)


@dataclass
class FleetSettings:
    name: str = "taskfleet"
    cluster: str = "default"
    region: Optional[str] = None
    controller_url: str = "http://localhost:8080/"
    tunnel: Optional[str] = None
    agent_timeout_seconds: int = 900
    task_polling_interval_seconds: float = 1.0
    retain_agents: bool = False
    retention_timeout_minutes: int = 5
    num_executors: int = 1
    state_path: Optional[str] = None

    @property
    def retention_mode(self) -> RetentionMode:
        return RetentionMode.PERSISTENT if self.retain_agents else RetentionMode.ONCE


@dataclass
class LauncherSettings:
    max_attempts: int = 2
    max_workers: int = 8
    connect_poll_interval_seconds: float = 1.0
    capacity_poll_interval_seconds: float = 10.0
    retryable_failures: List[str] = field(default_factory=lambda: list(DEFAULT_RETRYABLE_FAILURES))


@dataclass
class RetentionSettings:
    recheck_delay_minutes: int = 1
    tick_interval_seconds: float = 60.0


@dataclass
class PoolMaintenanceSettings:
    interval_seconds: float = 60.0


@dataclass
class ScaleInSettings:
    enabled: bool = False
    host_group: Optional[str] = None
    interval_seconds: float = 60.0
    max_uptime_seconds: int = DEFAULT_SCALE_IN_THRESHOLDS["max_uptime_seconds"]
    billing_period_seconds: int = DEFAULT_SCALE_IN_THRESHOLDS["billing_period_seconds"]
    drain_window_seconds: int = DEFAULT_SCALE_IN_THRESHOLDS["drain_window_seconds"]


@dataclass
class StrategyConfigEntry:
    name: str
    import_path: Optional[str] = None
    enabled: bool = True


@dataclass
class ProvisioningConfig:
    default_strategy: str = "no_delay"
    strategies: List[StrategyConfigEntry] = field(default_factory=list)


@dataclass
class FleetConfig:
    fleet: FleetSettings = field(default_factory=FleetSettings)
    launcher: LauncherSettings = field(default_factory=LauncherSettings)
    retention: RetentionSettings = field(default_factory=RetentionSettings)
    pool_maintenance: PoolMaintenanceSettings = field(default_factory=PoolMaintenanceSettings)
    scale_in: ScaleInSettings = field(default_factory=ScaleInSettings)
    provisioning: ProvisioningConfig = field(default_factory=ProvisioningConfig)
    templates: List[TaskTemplate] = field(default_factory=list)
    pools: List[AgentPool] = field(default_factory=list)


_fleet_config: Optional[FleetConfig] = None


def _resolve_config_path() -> Optional[Path]:
    env_path = os.environ.get(_ENV_VAR)
    if env_path:
        candidate = Path(env_path).expanduser()
        if candidate.is_file():
            return candidate

    cwd_file = Path.cwd() / _CWD_FILE
    if cwd_file.is_file():
        return cwd_file
    return None


def _load_default_dict() -> Dict[str, Any]:
    from importlib import resources

    with resources.files("taskfleet.config").joinpath("default.yaml").open("r", encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def _load_yaml_dict(path: Optional[Path] = None) -> Dict[str, Any]:
    data = _load_default_dict()
    if path is None:
        path = _resolve_config_path()
    if path is not None:
        with path.open("r", encoding="utf-8") as fh:
            user = yaml.safe_load(fh) or {}
        if not isinstance(user, dict):
            raise ValueError(f"Configuration file {path} must contain a mapping")
        for key, value in user.items():
            if isinstance(value, dict) and isinstance(data.get(key), dict):
                merged = dict(data[key])
                merged.update(value)
                data[key] = merged
            else:
                data[key] = value
    return data


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    node = data.get(name) or {}
    if not isinstance(node, dict):
        raise ValueError(f"'{name}' section must be a mapping")
    return node


def _positive(value: Any, name: str, *, allow_zero: bool = False) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"'{name}' must be a number, got {value!r}") from exc
    if number < 0 or (number == 0 and not allow_zero):
        raise ValueError(f"'{name}' must be {'non-negative' if allow_zero else 'positive'}, got {value!r}")
    return number


def _build_fleet_settings(node: Dict[str, Any]) -> FleetSettings:
    retain, hint = resolve_retention_mode(node.get("retain_agents", False))
    if retain is None:
        raise ValueError(f"'fleet.retain_agents' is invalid ({hint})")
    return FleetSettings(
        name=str(node.get("name") or "taskfleet").strip(),
        cluster=str(node.get("cluster") or "default").strip(),
        region=node.get("region"),
        controller_url=str(node.get("controller_url") or "http://localhost:8080/"),
        tunnel=node.get("tunnel") or None,
        agent_timeout_seconds=int(_positive(node.get("agent_timeout_seconds", 900), "fleet.agent_timeout_seconds")),
        task_polling_interval_seconds=_positive(
            node.get("task_polling_interval_seconds", 1), "fleet.task_polling_interval_seconds"
        ),
        retain_agents=retain is RetentionMode.PERSISTENT,
        retention_timeout_minutes=int(
            _positive(node.get("retention_timeout_minutes", 5), "fleet.retention_timeout_minutes", allow_zero=True)
        ),
        num_executors=int(_positive(node.get("num_executors", 1), "fleet.num_executors")),
        state_path=node.get("state_path") or None,
    )


def _build_launcher_settings(node: Dict[str, Any]) -> LauncherSettings:
    retryable = node.get("retryable_failures", list(DEFAULT_RETRYABLE_FAILURES))
    if isinstance(retryable, str):
        retryable = [retryable]
    if not isinstance(retryable, list):
        raise ValueError("'launcher.retryable_failures' must be a list of strings")
    return LauncherSettings(
        max_attempts=int(_positive(node.get("max_attempts", 2), "launcher.max_attempts")),
        max_workers=int(_positive(node.get("max_workers", 8), "launcher.max_workers")),
        connect_poll_interval_seconds=_positive(
            node.get("connect_poll_interval_seconds", 1), "launcher.connect_poll_interval_seconds"
        ),
        capacity_poll_interval_seconds=_positive(
            node.get("capacity_poll_interval_seconds", 10), "launcher.capacity_poll_interval_seconds"
        ),
        retryable_failures=[str(item) for item in retryable if str(item).strip()],
    )


def _build_scale_in_settings(node: Dict[str, Any]) -> ScaleInSettings:
    settings = ScaleInSettings(
        enabled=bool(node.get("enabled", False)),
        host_group=node.get("host_group") or None,
        interval_seconds=_positive(node.get("interval_seconds", 60), "scale_in.interval_seconds"),
        max_uptime_seconds=int(
            _positive(node.get("max_uptime_seconds", DEFAULT_SCALE_IN_THRESHOLDS["max_uptime_seconds"]),
                      "scale_in.max_uptime_seconds")
        ),
        billing_period_seconds=int(
            _positive(node.get("billing_period_seconds", DEFAULT_SCALE_IN_THRESHOLDS["billing_period_seconds"]),
                      "scale_in.billing_period_seconds")
        ),
        drain_window_seconds=int(
            _positive(node.get("drain_window_seconds", DEFAULT_SCALE_IN_THRESHOLDS["drain_window_seconds"]),
                      "scale_in.drain_window_seconds", allow_zero=True)
        ),
    )
    if settings.enabled and not settings.host_group:
        raise ValueError("'scale_in.host_group' is required when scale-in is enabled")
    return settings


def _coerce_strategy_entry(raw: Dict[str, Any]) -> StrategyConfigEntry:
    name = str(raw.get("name", "")).strip()
    if not name:
        raise ValueError("Strategy entry requires a non-empty 'name'")
    import_path = raw.get("import")
    if import_path is not None:
        import_path = str(import_path).strip()
    enabled = bool(raw.get("enabled", True))
    return StrategyConfigEntry(name=name, import_path=import_path, enabled=enabled)


def _build_provisioning_config(node: Dict[str, Any]) -> ProvisioningConfig:
    default_strategy = str(node.get("default_strategy", "no_delay")).strip() or "no_delay"
    raw_entries = node.get("strategies", [])
    entries: List[StrategyConfigEntry] = []

    if isinstance(raw_entries, list):
        for item in raw_entries:
            if not isinstance(item, dict):
                raise ValueError("Each strategy definition must be a mapping")
            entries.append(_coerce_strategy_entry(item))
    elif raw_entries:
        raise ValueError("'strategies' must be a list of mappings")

    return ProvisioningConfig(default_strategy=default_strategy, strategies=entries)


def _build_list(data: Dict[str, Any], name: str, factory: Callable[[Dict[str, Any]], Any]) -> list:
    raw = data.get(name) or []
    if not isinstance(raw, list):
        raise ValueError(f"'{name}' must be a list of mappings")
    return [factory(item) for item in raw]


def build_fleet_config(data: Dict[str, Any]) -> FleetConfig:
    """Parse an already-loaded mapping into :class:`FleetConfig`."""
    templates = _build_list(data, "templates", TaskTemplate.from_dict)
    names = [template.name for template in templates]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise ValueError(f"Duplicate template names: {', '.join(duplicates)}")

    retention = _section(data, "retention")
    pool_maintenance = _section(data, "pool_maintenance")
    return FleetConfig(
        fleet=_build_fleet_settings(_section(data, "fleet")),
        launcher=_build_launcher_settings(_section(data, "launcher")),
        retention=RetentionSettings(
            recheck_delay_minutes=int(
                _positive(retention.get("recheck_delay_minutes", 1), "retention.recheck_delay_minutes")
            ),
            tick_interval_seconds=_positive(
                retention.get("tick_interval_seconds", 60), "retention.tick_interval_seconds"
            ),
        ),
        pool_maintenance=PoolMaintenanceSettings(
            interval_seconds=_positive(pool_maintenance.get("interval_seconds", 60), "pool_maintenance.interval_seconds"),
        ),
        scale_in=_build_scale_in_settings(_section(data, "scale_in")),
        provisioning=_build_provisioning_config(_section(data, "provisioning")),
        templates=templates,
        pools=_build_list(data, "pools", AgentPool.from_dict),
    )


def _coerce_strategy_factory(obj: object) -> Callable[[], ProvisioningStrategy]:
    if inspect.isclass(obj) and issubclass(obj, ProvisioningStrategy):  # type: ignore[arg-type]
        return obj  # type: ignore[return-value]

    if callable(obj):
        def _call() -> ProvisioningStrategy:
            instance = obj()
            if isinstance(instance, ProvisioningStrategy):
                return instance
            raise TypeError("Strategy factory must return a ProvisioningStrategy")

        return _call

    raise TypeError("Unsupported strategy factory type")


def _apply_provisioning_config(config: ProvisioningConfig) -> None:
    for entry in config.strategies:
        if not entry.enabled:
            unregister_strategy(entry.name)
            continue
        if entry.import_path:
            module_name, sep, attr = entry.import_path.partition(":")
            if not sep:
                raise ValueError(
                    f"Invalid import path '{entry.import_path}'. Expected format 'module:attr'."
                )
            module = importlib.import_module(module_name)
            register_strategy(entry.name, _coerce_strategy_factory(getattr(module, attr)), replace=True)

    if config.default_strategy not in _available_strategies():
        raise ValueError(
            f"Default strategy '{config.default_strategy}' is not registered. "
            f"Available: {', '.join(_available_strategies())}"
        )


def load_fleet_config(path: Optional[str] = None) -> FleetConfig:
    """
    读取并校验配置，注册配置中声明的供给策略。

    ``path`` 为空时按 ``TASKFLEET_CONFIG`` → 当前目录 → 内置默认值的顺序查找。
    """
    resolved = Path(path).expanduser() if path else None
    if resolved is not None and not resolved.is_file():
        raise ValueError(f"Configuration file {resolved} does not exist")
    config = build_fleet_config(_load_yaml_dict(resolved))
    _apply_provisioning_config(config.provisioning)
    return config


def get_fleet_config() -> FleetConfig:
    global _fleet_config
    if _fleet_config is None:
        _fleet_config = load_fleet_config()
    return _fleet_config


def reset_fleet_config() -> None:
    """Reset cached fleet configuration (intended for tests)."""
    global _fleet_config
    _fleet_config = None
