"""
Versioned withholding configuration for a company.

Contract:
    ``WithholdingConfig.from_settings(raw)`` turns the JSON stored in
    ``companies.withholding_settings`` into a frozen, typed config.
    Version-2 documents are parsed strictly.  Documents without a
    ``version`` key are legacy key bags; they are migrated once, here,
    by ``migrate_legacy_settings()`` and never inspected anywhere else.

Legacy shapes accepted by the migration:
    - Flat column-style keys: ``is_withholding_agent``,
      ``withholding_iibb_rate``, ``withholding_iibb_jurisdiction``,
      ``withholding_iva_rate``, ``withholding_ganancias_rate``,
      ``withholding_ganancias_min_amount``.
    - Agent flags ``withholding_agent_iibb`` / ``withholding_agent_ganancias``
      plus a ``withholding_rates`` bag keyed ``iibb``/``iibbRate``,
      ``iva``/``ivaRate``, ``ganancias``/``gananciasRate``,
      ``gananciasMinAmount``/``ganancias_min_amount``,
      ``iibbJurisdiction``/``iibb_jurisdiction``.
    - camelCase top-level keys (``isWithholdingAgent`` and the rate keys).

Failure modes:
    - InvalidWithholdingConfigError for unknown versions, non-numeric rates,
      or negative rates.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any, Mapping

from rental_kernel.domain.money import to_decimal
from rental_kernel.exceptions import InvalidWithholdingConfigError
from rental_kernel.logging_config import get_logger

logger = get_logger("billing.withholding_config")

CURRENT_VERSION = 2

_ZERO = Decimal("0")

# First matching key wins, in this order
_LEGACY_KEYS: dict[str, tuple[str, ...]] = {
    "iibb_rate": ("iibb", "iibbRate", "iibb_rate", "withholding_iibb_rate"),
    "iva_rate": ("iva", "ivaRate", "iva_rate", "withholding_iva_rate"),
    "ganancias_rate": (
        "ganancias",
        "gananciasRate",
        "ganancias_rate",
        "withholding_ganancias_rate",
    ),
    "ganancias_min_amount": (
        "gananciasMinAmount",
        "ganancias_min_amount",
        "withholding_ganancias_min_amount",
    ),
    "iibb_jurisdiction": (
        "iibbJurisdiction",
        "iibb_jurisdiction",
        "withholding_iibb_jurisdiction",
    ),
}

_LEGACY_AGENT_KEYS = (
    "is_withholding_agent",
    "isWithholdingAgent",
    "withholding_agent_iibb",
    "withholding_agent_ganancias",
)


@dataclass(frozen=True)
class WithholdingConfig:
    """Company-level withholding agent settings (rates are percentages)."""

    is_withholding_agent: bool = False
    iibb_rate: Decimal = _ZERO
    iibb_jurisdiction: str | None = None
    iva_rate: Decimal = _ZERO
    ganancias_rate: Decimal = _ZERO
    ganancias_min_amount: Decimal = _ZERO
    version: int = CURRENT_VERSION

    @classmethod
    def disabled(cls) -> WithholdingConfig:
        return cls()

    @classmethod
    def from_settings(
        cls,
        raw: Mapping[str, Any] | None,
        company_id: str | None = None,
    ) -> WithholdingConfig:
        if not raw:
            return cls.disabled()

        version = raw.get("version")
        if version is None:
            logger.debug(
                "withholding_settings_migrated",
                extra={"company_id": company_id},
            )
            raw = migrate_legacy_settings(raw)
        elif version != CURRENT_VERSION:
            raise InvalidWithholdingConfigError(
                company_id, f"unsupported settings version {version!r}"
            )

        try:
            config = cls(
                is_withholding_agent=bool(raw.get("is_withholding_agent", False)),
                iibb_rate=to_decimal(raw.get("iibb_rate"), _ZERO),
                iibb_jurisdiction=_clean_str(raw.get("iibb_jurisdiction")),
                iva_rate=to_decimal(raw.get("iva_rate"), _ZERO),
                ganancias_rate=to_decimal(raw.get("ganancias_rate"), _ZERO),
                ganancias_min_amount=to_decimal(
                    raw.get("ganancias_min_amount"), _ZERO
                ),
            )
        except ValueError as exc:
            raise InvalidWithholdingConfigError(company_id, str(exc)) from exc

        for name in ("iibb_rate", "iva_rate", "ganancias_rate", "ganancias_min_amount"):
            if getattr(config, name) < 0:
                raise InvalidWithholdingConfigError(
                    company_id, f"{name} must not be negative"
                )
        return config

    def to_settings(self) -> dict[str, Any]:
        """Serialize as a version-2 document (Decimals as strings)."""
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Decimal):
                data[key] = str(value)
        return data


def migrate_legacy_settings(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Rewrite a legacy key bag as a version-2 document."""
    rates: dict[str, Any] = {}
    nested = raw.get("withholding_rates")
    if isinstance(nested, Mapping):
        rates.update(nested)
    # Top-level keys override the nested bag
    rates.update({k: v for k, v in raw.items() if k != "withholding_rates"})

    migrated: dict[str, Any] = {
        "version": CURRENT_VERSION,
        "is_withholding_agent": any(
            bool(raw.get(key)) for key in _LEGACY_AGENT_KEYS
        ),
    }
    for target, candidates in _LEGACY_KEYS.items():
        migrated[target] = _first_present(rates, candidates)
    return migrated


def _first_present(source: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = source.get(key)
        if value is not None and value != "":
            return value
    return None


def _clean_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None
