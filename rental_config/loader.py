"""
Configuration loader (``rental_config.loader``).

Responsibility
--------------
Reads an optional YAML file, layers environment overrides on top, and
parses the result into the frozen ``EngineConfig`` tree.

Precedence (lowest to highest): dataclass defaults, YAML file, environment.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown key, wrong type or out-of-range value  -> ``ConfigurationError``.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import fields
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml

from rental_kernel.domain.money import to_decimal
from rental_kernel.exceptions import ConfigurationError
from rental_kernel.logging_config import get_logger

from rental_config.schema import (
    BillingConfig,
    DatabaseConfig,
    EngineConfig,
    LoggingConfig,
    MetricsConfig,
    SettlementConfig,
    SourcesConfig,
)

logger = get_logger("config.loader")

CONFIG_PATH_ENV = "RENTAL_BILLING_CONFIG"

_SECTIONS: dict[str, type] = {
    "database": DatabaseConfig,
    "billing": BillingConfig,
    "settlements": SettlementConfig,
    "sources": SourcesConfig,
    "logging": LoggingConfig,
    "metrics": MetricsConfig,
}

# Environment variable -> (section, key)
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "DATABASE_URL": ("database", "url"),
    "DEFAULT_COMMISSION_PERCENTAGE": ("settlements", "default_commission_percentage"),
    "BCRA_API_URL": ("sources", "bcra_api_url"),
    "BCRA_ICL_VARIABLE_ID": ("sources", "bcra_icl_variable_id"),
    "BCRA_API_INSECURE": ("sources", "bcra_insecure_tls"),
    "BCB_API_URL": ("sources", "bcb_api_url"),
    "DATOS_AR_API_URL": ("sources", "datos_ar_api_url"),
    "DATOS_AR_IPC_SERIES_ID": ("sources", "datos_ar_ipc_series_id"),
    "LOG_FILE": ("logging", "file"),
    "LOG_LEVEL": ("logging", "level"),
    "PROMETHEUS_PUSHGATEWAY_URL": ("metrics", "pushgateway_url"),
    "PROMETHEUS_PUSHGATEWAY_JOB": ("metrics", "push_job"),
    "PROMETHEUS_PUSHGATEWAY_INSTANCE": ("metrics", "instance"),
}

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off", "")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML mapping; an empty file yields an empty dict."""
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(str(path), "top level must be a mapping")
    return data


def load_config(
    path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> EngineConfig:
    """
    Build the runtime configuration.

    ``path`` defaults to ``$RENTAL_BILLING_CONFIG`` when set; with neither,
    only defaults and environment overrides apply.
    """
    env = os.environ if env is None else env
    if path is None and env.get(CONFIG_PATH_ENV):
        path = env[CONFIG_PATH_ENV]

    raw: dict[str, Any] = {}
    if path is not None:
        raw = load_yaml_file(Path(path))
        logger.info("config_file_loaded", extra={"path": str(path)})

    unknown = set(raw) - set(_SECTIONS)
    if unknown:
        raise ConfigurationError(sorted(unknown)[0], "unknown configuration section")

    merged = {name: dict(raw.get(name) or {}) for name in _SECTIONS}
    applied = []
    for variable, (section, key) in ENV_OVERRIDES.items():
        if variable in env:
            merged[section][key] = env[variable]
            applied.append(variable)
    if applied:
        logger.debug("config_env_overrides", extra={"variables": applied})

    return EngineConfig(**{
        name: parse_section(name, cls, merged[name])
        for name, cls in _SECTIONS.items()
    })


def parse_section(name: str, cls: type, data: Mapping[str, Any]) -> Any:
    """Coerce a raw mapping into one section dataclass."""
    declared = {f.name: f for f in fields(cls)}
    unknown = set(data) - set(declared)
    if unknown:
        raise ConfigurationError(f"{name}.{sorted(unknown)[0]}", "unknown key")

    values = {}
    for key, raw_value in data.items():
        default = declared[key].default
        values[key] = _coerce(f"{name}.{key}", raw_value, default)
    return cls(**values)


def _coerce(key: str, value: Any, default: Any) -> Any:
    # Target type follows the default; None defaults are optional strings
    if value is None:
        return None
    if isinstance(default, bool):
        return _parse_bool(key, value)
    if isinstance(default, Decimal):
        try:
            return to_decimal(value)
        except ValueError as exc:
            raise ConfigurationError(key, str(exc)) from exc
    if isinstance(default, int):
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ConfigurationError(key, f"not an integer: {value!r}") from None
    if isinstance(default, float):
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ConfigurationError(key, f"not a number: {value!r}") from None
    return str(value)


def _parse_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigurationError(key, f"not a boolean: {value!r}")
