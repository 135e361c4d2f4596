"""
ReportService -- owner report data: monthly invoice summary and the
settlement statement.

Contract:
    ``build_monthly_summary()`` and ``build_settlement_statement()`` return
    plain dicts (Decimals kept as Decimals) that a ``ReportRenderer`` turns
    into a document.  ``generate()`` builds and renders, skipping the
    renderer in dry-run.

Failure modes:
    - OwnerNotFoundError for an unknown owner.
    - InvalidPeriodError for a malformed period.
"""

from __future__ import annotations

from datetime import date
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from rental_kernel.domain.money import ZERO
from rental_kernel.domain.periods import format_period, month_end, parse_period
from rental_kernel.logging_config import get_logger

from rental_billing.collaborators import LoggingReportRenderer, ReportRenderer, ReportResult
from rental_billing.domain.types import InvoiceStatus
from rental_billing.models.invoice import InvoiceModel
from rental_billing.models.lease import LeaseModel
from rental_billing.services.settlements import SettlementEngine

logger = get_logger("billing.reports")

MONTHLY_SUMMARY = "monthly"
SETTLEMENT_STATEMENT = "settlement"
REPORT_TYPES = (MONTHLY_SUMMARY, SETTLEMENT_STATEMENT)


class ReportService:
    def __init__(
        self,
        session: Session,
        settlements: SettlementEngine,
        renderer: ReportRenderer | None = None,
    ):
        self._session = session
        self._settlements = settlements
        self._renderer = renderer or LoggingReportRenderer()

    def build_monthly_summary(self, owner_id: UUID, year: int, month: int) -> dict[str, Any]:
        owner = self._settlements.get_owner(owner_id)
        first = date(year, month, 1)
        rows = self._session.execute(
            select(InvoiceModel, LeaseModel)
            .join(LeaseModel, LeaseModel.id == InvoiceModel.lease_id)
            .where(
                InvoiceModel.owner_id == owner_id,
                InvoiceModel.period_start >= first,
                InvoiceModel.period_start <= month_end(first),
                InvoiceModel.deleted_at.is_(None),
            )
            .order_by(InvoiceModel.invoice_number)
        ).all()

        lines = []
        subtotal = withholdings = total = paid = pending = ZERO
        for invoice_model, lease in rows:
            invoice = invoice_model.to_dto()
            lines.append({
                "invoice_number": invoice.invoice_number,
                "tenant_name": lease.tenant_name or "",
                "property": lease.property_label or "N/A",
                "subtotal": invoice.subtotal,
                "withholdings": invoice.withholdings_total,
                "total": invoice.total,
                "status": invoice.status.value,
            })
            subtotal += invoice.subtotal
            withholdings += invoice.withholdings_total
            total += invoice.total
            if invoice.status is InvoiceStatus.PAID:
                paid += invoice.total
            else:
                pending += invoice.total

        return {
            "type": MONTHLY_SUMMARY,
            "owner_id": str(owner_id),
            "owner_name": owner.full_name,
            "period": format_period(year, month),
            "year": year,
            "month": month,
            "invoices": lines,
            "totals": {
                "subtotal": subtotal,
                "withholdings": withholdings,
                "total": total,
                "paid": paid,
                "pending": pending,
            },
        }

    def build_settlement_statement(self, owner_id: UUID, period: str) -> dict[str, Any]:
        calculation = self._settlements.calculate_settlement(owner_id, period)
        owner = self._settlements.get_owner(owner_id)
        rate = f"{calculation.commission_rate.normalize():f}"

        deductions = [{
            "description": f"Comisión de administración ({rate}%)",
            "amount": calculation.commission_amount,
        }]
        deductions.extend(
            {"description": w.description, "amount": w.amount}
            for w in calculation.withholdings
        )

        return {
            "type": SETTLEMENT_STATEMENT,
            "owner_id": str(owner_id),
            "owner_name": calculation.owner_name,
            "owner_cuit": owner.cuit,
            "period": period,
            "invoices": [
                {
                    "invoice_number": invoice.invoice_number,
                    "tenant": invoice.tenant or "",
                    "property": invoice.property_label or "N/A",
                    "amount": invoice.amount,
                }
                for invoice in calculation.invoices
            ],
            "deductions": deductions,
            "summary": {
                "gross_amount": calculation.gross_amount,
                "total_deductions": calculation.total_deductions,
                "net_amount": calculation.net_amount,
            },
            "scheduled_date": calculation.scheduled_date,
        }

    def generate(
        self,
        report_type: str,
        owner_id: UUID,
        period: str,
        dry_run: bool = False,
    ) -> ReportResult:
        """Build one report and hand it to the renderer (not in dry-run)."""
        if report_type == MONTHLY_SUMMARY:
            year, month = parse_period(period)
            report = self.build_monthly_summary(owner_id, year, month)
        elif report_type == SETTLEMENT_STATEMENT:
            report = self.build_settlement_statement(owner_id, period)
        else:
            raise ValueError(f"Unknown report type: {report_type!r}")

        if dry_run:
            logger.info(
                "report_dry_run",
                extra={
                    "report_type": report_type,
                    "owner_id": str(owner_id),
                    "period": period,
                    "invoice_count": len(report["invoices"]),
                },
            )
            return ReportResult(success=True)

        result = self._renderer.render(report)
        if not result.success:
            logger.error(
                "report_render_failed",
                extra={"report_type": report_type, "error": result.error},
            )
        return result
