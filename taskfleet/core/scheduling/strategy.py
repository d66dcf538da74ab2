"""
Provisioning strategy implementations for TaskFleet.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Type, Union

from taskfleet.core.entities.types import DemandSnapshot, PlannedLaunch

logger = logging.getLogger(__name__)

StrategyFactory = Callable[[], "ProvisioningStrategy"]
StrategySpec = Union[
    str,
    "ProvisioningStrategy",
    Type["ProvisioningStrategy"],
    StrategyFactory,
]


class ProvisioningSource(ABC):
    """Something that can start agents for a demand class (a cloud)."""

    name: str = "source"

    @abstractmethod
    def can_serve(self, label: Optional[str]) -> bool:
        """Whether this source has a template for ``label``."""

    @abstractmethod
    def provision(self, label: Optional[str], excess: int) -> List[PlannedLaunch]:
        """Start up to ``excess`` executors worth of agents and return what was started."""


class ProvisioningListener:
    """Observer hooks around provisioning; default implementations do nothing."""

    def can_provision(self, source: ProvisioningSource, label: Optional[str]) -> Optional[str]:
        """Return a blockage cause to veto provisioning from ``source``."""
        return None

    def on_started(self, source: ProvisioningSource, label: Optional[str], launches: List[PlannedLaunch]) -> None:
        pass


@dataclass
class StrategyDecision:
    """Outcome of one strategy pass."""

    remaining: int
    launches: List[PlannedLaunch] = field(default_factory=list)

    @property
    def consult_remaining(self) -> bool:
        """True when other strategies should try to satisfy the leftover demand."""
        return self.remaining > 0


class ProvisioningStrategy(ABC):
    """Base class for all provisioning strategies."""

    @abstractmethod
    def apply(
        self,
        snapshot: DemandSnapshot,
        sources: Sequence[ProvisioningSource],
        listeners: Sequence[ProvisioningListener] = (),
    ) -> StrategyDecision:
        """Turn a demand snapshot into launches on ``sources``."""


def _blockage(
    listeners: Sequence[ProvisioningListener], source: ProvisioningSource, label: Optional[str]
) -> Optional[str]:
    for listener in listeners:
        try:
            cause = listener.can_provision(source, label)
        except Exception:
            logger.exception("Provisioning listener %r failed in can_provision", listener)
            continue
        if cause:
            return cause
    return None


def _notify_started(
    listeners: Sequence[ProvisioningListener],
    source: ProvisioningSource,
    label: Optional[str],
    launches: List[PlannedLaunch],
) -> None:
    for listener in listeners:
        try:
            listener.on_started(source, label, list(launches))
        except Exception:
            logger.exception("Provisioning listener %r failed in on_started", listener)


class NoDelayProvisioningStrategy(ProvisioningStrategy):
    """
    立即按最新快照补足缺口，不做任何平滑。

    ``excess = queue_length - available - connecting``；按注册顺序询问每个能
    服务该标签的 source，扣减其实际启动的 executor 数，直到缺口归零。
    """

    def apply(
        self,
        snapshot: DemandSnapshot,
        sources: Sequence[ProvisioningSource],
        listeners: Sequence[ProvisioningListener] = (),
    ) -> StrategyDecision:
        label = snapshot.label
        excess = snapshot.excess
        launches: List[PlannedLaunch] = []
        logger.debug(
            "label [%s]: queue=%d available=%d connecting=%d excess=%d",
            label,
            snapshot.queue_length,
            snapshot.available_capacity,
            snapshot.connecting_capacity,
            excess,
        )

        for source in sources:
            if excess <= 0:
                break
            if not source.can_serve(label):
                continue
            cause = _blockage(listeners, source, label)
            if cause:
                logger.info("Provisioning from %s blocked for label [%s]: %s", source.name, label, cause)
                continue

            started = source.provision(label, excess)
            if not started:
                continue
            _notify_started(listeners, source, label, started)
            launches.extend(started)
            excess -= sum(launch.executors for launch in started)
            logger.info(
                "Started %d agent(s) from %s for label [%s], remaining excess %d",
                len(started),
                source.name,
                label,
                max(excess, 0),
            )

        return StrategyDecision(remaining=max(excess, 0), launches=launches)


def apply_strategies(
    snapshot: DemandSnapshot,
    strategies: Sequence[ProvisioningStrategy],
    sources: Sequence[ProvisioningSource],
    listeners: Sequence[ProvisioningListener] = (),
) -> StrategyDecision:
    """Consult ``strategies`` in order until one leaves no demand for the others."""
    decision = StrategyDecision(remaining=max(snapshot.excess, 0))
    launches: List[PlannedLaunch] = []
    for strategy in strategies:
        current = DemandSnapshot(
            label=snapshot.label,
            queue_length=snapshot.queue_length,
            available_capacity=snapshot.available_capacity,
            connecting_capacity=snapshot.connecting_capacity + sum(launch.executors for launch in launches),
        )
        decision = strategy.apply(current, sources, listeners)
        launches.extend(decision.launches)
        if not decision.consult_remaining:
            break
    return StrategyDecision(remaining=decision.remaining, launches=launches)


def _coerce_strategy_instance(candidate: object) -> ProvisioningStrategy:
    if isinstance(candidate, ProvisioningStrategy):
        return candidate
    raise TypeError("Factory did not return a ProvisioningStrategy instance.")


_STRATEGY_REGISTRY: dict[str, StrategyFactory] = {}


def register_strategy(
    name: str,
    factory: StrategyFactory,
    *,
    replace: bool = False,
) -> None:
    """
    将供给策略注册到全局表中。

    Args:
        name: 策略名称，将被标准化为小写。
        factory: 无参工厂方法，返回策略实例。
        replace: 当名称已存在时是否允许覆盖，默认不允许。
    """
    key = name.strip().lower()
    if not key:
        raise ValueError("Strategy name must be a non-empty string.")
    if key in _STRATEGY_REGISTRY and not replace:
        raise ValueError(f"Strategy '{key}' already registered.")
    _STRATEGY_REGISTRY[key] = factory


def unregister_strategy(name: str) -> None:
    """从全局表删除指定名称的策略，名称不存在时静默返回。"""
    key = name.strip().lower()
    _STRATEGY_REGISTRY.pop(key, None)


def available_strategies() -> tuple[str, ...]:
    """返回当前已注册的策略名称列表（按字母序）。"""
    return tuple(sorted(_STRATEGY_REGISTRY))


def create_strategy(strategy: StrategySpec) -> ProvisioningStrategy:
    """
    根据输入生成或校验供给策略实例。

    Args:
        strategy: 策略标识。支持注册名称（如 ``"no_delay"``）、
            ProvisioningStrategy 子类、返回实例的工厂方法，或已存在的实例。
    """
    if isinstance(strategy, ProvisioningStrategy):
        return strategy

    if isinstance(strategy, str):
        key = strategy.strip().lower()
        try:
            factory = _STRATEGY_REGISTRY[key]
        except KeyError as exc:
            raise ValueError(
                f"Unknown provisioning strategy '{strategy}'. "
                f"Available strategies: {', '.join(sorted(_STRATEGY_REGISTRY)) or '<none>'}"
            ) from exc
        return _coerce_strategy_instance(factory())

    if isinstance(strategy, type) and issubclass(strategy, ProvisioningStrategy):
        return strategy()

    if callable(strategy):
        return _coerce_strategy_instance(strategy())

    raise TypeError(
        "Strategy must be provided as a name, ProvisioningStrategy subclass, "
        "callable factory, or ProvisioningStrategy instance."
    )


register_strategy("no_delay", NoDelayProvisioningStrategy)


__all__ = [
    "ProvisioningSource",
    "ProvisioningListener",
    "ProvisioningStrategy",
    "NoDelayProvisioningStrategy",
    "StrategyDecision",
    "apply_strategies",
    "available_strategies",
    "register_strategy",
    "unregister_strategy",
    "create_strategy",
]
