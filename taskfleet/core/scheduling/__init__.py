"""
Provisioning strategies for TaskFleet.
"""

from __future__ import annotations

from .strategy import (
    NoDelayProvisioningStrategy,
    ProvisioningListener,
    ProvisioningSource,
    ProvisioningStrategy,
    StrategyDecision,
    apply_strategies,
    available_strategies,
    create_strategy,
    register_strategy,
    unregister_strategy,
)

__all__ = [
    "NoDelayProvisioningStrategy",
    "ProvisioningListener",
    "ProvisioningSource",
    "ProvisioningStrategy",
    "StrategyDecision",
    "apply_strategies",
    "available_strategies",
    "create_strategy",
    "register_strategy",
    "unregister_strategy",
]
