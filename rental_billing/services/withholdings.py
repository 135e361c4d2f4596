"""
WithholdingCalculator -- IIBB, IVA and Ganancias withholdings on invoices.

Contract:
    ``calculate_withholdings(company_id, owner_id, amount)`` returns a
    ``WithholdingResult``.  A company that is not a withholding agent (or
    has no settings, or does not exist) yields all zeros.  For an agent,
    each tax with a positive rate applies unless the owner is exempt:
    ``amount × rate/100`` rounded to cents.  Ganancias additionally needs
    ``amount >= ganancias_min_amount`` (50000 when unset); below it the
    tax is zero and the breakdown explains why.

    ``validate_configuration(company_id)`` reports configuration smells.
    They are operator warnings and never block billing.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from rental_kernel.domain.money import ZERO, percent_of
from rental_kernel.logging_config import get_logger

from rental_billing.domain.types import (
    ConfigValidation,
    WithholdingLine,
    WithholdingResult,
    WithholdingType,
)
from rental_billing.domain.withholding_config import WithholdingConfig
from rental_billing.models.party import CompanyModel, OwnerModel

logger = get_logger("billing.withholdings")

DEFAULT_GANANCIAS_MIN_AMOUNT = Decimal("50000")
IIBB_HIGH_RATE = Decimal("10")


def _fmt(value: Decimal) -> str:
    # 3.50 -> "3.5", 50000.00 -> "50000"
    return f"{value.normalize():f}"


class WithholdingCalculator:
    def __init__(self, session: Session):
        self._session = session

    def load_config(self, company_id: UUID | None) -> WithholdingConfig:
        if company_id is None:
            return WithholdingConfig.disabled()
        company = self._session.get(CompanyModel, company_id)
        if company is None:
            return WithholdingConfig.disabled()
        return company.withholding_config()

    def calculate_withholdings(
        self,
        company_id: UUID | None,
        owner_id: UUID,
        amount: Decimal,
    ) -> WithholdingResult:
        config = self.load_config(company_id)
        if not config.is_withholding_agent:
            return WithholdingResult()

        owner = self._session.get(OwnerModel, owner_id)
        iibb_exempt = bool(owner and owner.iibb_exempt)
        iva_exempt = bool(owner and owner.iva_exempt)
        ganancias_exempt = bool(owner and owner.ganancias_exempt)

        iibb = iva = ganancias = ZERO
        breakdown: list[WithholdingLine] = []

        if config.iibb_rate > 0 and not iibb_exempt:
            iibb = percent_of(amount, config.iibb_rate)
            if config.iibb_jurisdiction:
                description = (
                    f"Retención IIBB {config.iibb_jurisdiction} ({_fmt(config.iibb_rate)}%)"
                )
            else:
                description = f"Retención IIBB ({_fmt(config.iibb_rate)}%)"
            breakdown.append(
                WithholdingLine(WithholdingType.IIBB, config.iibb_rate, amount, iibb, description)
            )

        if config.iva_rate > 0 and not iva_exempt:
            iva = percent_of(amount, config.iva_rate)
            breakdown.append(
                WithholdingLine(
                    WithholdingType.IVA,
                    config.iva_rate,
                    amount,
                    iva,
                    f"Retención IVA ({_fmt(config.iva_rate)}%)",
                )
            )

        if config.ganancias_rate > 0 and not ganancias_exempt:
            minimum = config.ganancias_min_amount or DEFAULT_GANANCIAS_MIN_AMOUNT
            if amount < minimum:
                description = f"Retención Ganancias no aplica (monto < ${_fmt(minimum)})"
            else:
                ganancias = percent_of(amount, config.ganancias_rate)
                description = f"Retención Ganancias ({_fmt(config.ganancias_rate)}%)"
            breakdown.append(
                WithholdingLine(
                    WithholdingType.GANANCIAS,
                    config.ganancias_rate,
                    amount,
                    ganancias,
                    description,
                )
            )

        result = WithholdingResult(
            iibb=iibb,
            iva=iva,
            ganancias=ganancias,
            iibb_jurisdiction=config.iibb_jurisdiction if iibb > 0 else None,
            breakdown=tuple(breakdown),
        )
        logger.debug(
            "withholdings_calculated",
            extra={
                "company_id": str(company_id),
                "owner_id": str(owner_id),
                "amount": amount,
                "total": result.total,
            },
        )
        return result

    def validate_configuration(self, company_id: UUID) -> ConfigValidation:
        config = self.load_config(company_id)
        if not config.is_withholding_agent:
            return ConfigValidation(valid=True)

        issues: list[str] = []
        if config.iibb_rate > 0 and not config.iibb_jurisdiction:
            issues.append("IIBB rate configured but jurisdiction not specified")
        if config.iibb_rate > IIBB_HIGH_RATE:
            issues.append(f"IIBB rate ({_fmt(config.iibb_rate)}%) seems unusually high")
        if config.ganancias_rate > 0 and config.ganancias_min_amount == 0:
            issues.append("Ganancias rate configured but minimum amount not set")

        for issue in issues:
            logger.warning(
                "withholding_config_issue",
                extra={"company_id": str(company_id), "issue": issue},
            )
        return ConfigValidation(valid=not issues, issues=tuple(issues))
