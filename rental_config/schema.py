"""
EngineConfig schema.

Frozen dataclass sections parsed from YAML by ``rental_config.loader``.
Every section validates itself in ``__post_init__`` and raises
``ConfigurationError`` naming the offending key.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from rental_kernel.exceptions import ConfigurationError

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_CURRENCIES = ("ARS", "USD", "BRL")


@dataclass(frozen=True)
class DatabaseConfig:
    url: str = "sqlite:///rental_billing.db"
    echo: bool = False
    pool_size: int = 5

    def __post_init__(self) -> None:
        if not self.url:
            raise ConfigurationError("database.url", "must not be empty")
        if self.pool_size < 1:
            raise ConfigurationError("database.pool_size", "must be at least 1")


@dataclass(frozen=True)
class BillingConfig:
    base_currency: str = "ARS"
    grace_days: int = 10
    late_fee_rate: Decimal = Decimal("0.02")  # Fraction, not percent
    reminder_days_before: int = 3

    def __post_init__(self) -> None:
        if self.base_currency not in _CURRENCIES:
            raise ConfigurationError(
                "billing.base_currency", f"must be one of {', '.join(_CURRENCIES)}"
            )
        if self.grace_days < 0:
            raise ConfigurationError("billing.grace_days", "must not be negative")
        if not Decimal("0") <= self.late_fee_rate <= Decimal("1"):
            raise ConfigurationError("billing.late_fee_rate", "must be between 0 and 1")
        if self.reminder_days_before < 0:
            raise ConfigurationError(
                "billing.reminder_days_before", "must not be negative"
            )


@dataclass(frozen=True)
class SettlementConfig:
    default_commission_percentage: Decimal = Decimal("5")
    currency: str = "ARS"

    def __post_init__(self) -> None:
        if not Decimal("0") <= self.default_commission_percentage <= Decimal("100"):
            raise ConfigurationError(
                "settlements.default_commission_percentage", "must be between 0 and 100"
            )
        if self.currency not in _CURRENCIES:
            raise ConfigurationError(
                "settlements.currency", f"must be one of {', '.join(_CURRENCIES)}"
            )


@dataclass(frozen=True)
class SourcesConfig:
    bcra_api_url: str = "https://api.bcra.gob.ar"
    bcra_icl_variable_id: int = 40
    bcra_insecure_tls: bool = False
    bcb_api_url: str = "https://api.bcb.gov.br/dados/serie"
    datos_ar_api_url: str = "https://apis.datos.gob.ar/series/api/series"
    datos_ar_ipc_series_id: str = "148.3_INIVELNAL_DICI_M_26"
    timeout_seconds: float = 30.0

    def __post_init__(self) -> None:
        for key in ("bcra_api_url", "bcb_api_url", "datos_ar_api_url"):
            value = getattr(self, key)
            if not value.startswith(("http://", "https://")):
                raise ConfigurationError(f"sources.{key}", f"not an http(s) URL: {value!r}")
        if self.bcra_icl_variable_id < 1:
            raise ConfigurationError("sources.bcra_icl_variable_id", "must be positive")
        if self.timeout_seconds <= 0:
            raise ConfigurationError("sources.timeout_seconds", "must be positive")


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    file: str | None = None

    def __post_init__(self) -> None:
        if self.level.upper() not in _LOG_LEVELS:
            raise ConfigurationError(
                "logging.level", f"must be one of {', '.join(_LOG_LEVELS)}"
            )


@dataclass(frozen=True)
class MetricsConfig:
    pushgateway_url: str | None = None  # Unset or blank disables metrics
    push_job: str = "rent_batch"
    instance: str | None = None  # Defaults to the host name

    def __post_init__(self) -> None:
        if not self.push_job:
            raise ConfigurationError("metrics.push_job", "must not be empty")


@dataclass(frozen=True)
class EngineConfig:
    """Root of the runtime configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    billing: BillingConfig = field(default_factory=BillingConfig)
    settlements: SettlementConfig = field(default_factory=SettlementConfig)
    sources: SourcesConfig = field(default_factory=SourcesConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
