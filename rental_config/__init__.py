"""
rental_config -- Runtime configuration for the billing engine.

``load_config()`` is the single entry point: defaults, then an optional
YAML file, then environment overrides, validated into a frozen
``EngineConfig``.
"""

from rental_config.loader import load_config
from rental_config.schema import (
    BillingConfig,
    DatabaseConfig,
    EngineConfig,
    LoggingConfig,
    MetricsConfig,
    SettlementConfig,
    SourcesConfig,
)

__all__ = [
    "BillingConfig",
    "DatabaseConfig",
    "EngineConfig",
    "LoggingConfig",
    "MetricsConfig",
    "SettlementConfig",
    "SourcesConfig",
    "load_config",
]
