"""
ORM models for the parties the engine reads: property owners and the
administering companies.

Both tables are read-only from the engine's point of view.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, Boolean, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from rental_kernel.db.base import TrackedBase

from rental_billing.models._mapping import optional_money

if TYPE_CHECKING:
    from rental_billing.domain.types import OwnerRecord
    from rental_billing.domain.withholding_config import WithholdingConfig


class OwnerModel(TrackedBase):
    __tablename__ = "owners"

    first_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    last_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    email: Mapped[str | None] = mapped_column(String(200), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    cuit: Mapped[str | None] = mapped_column(String(20), nullable=True)
    # Percent; None falls back to the configured default
    commission_rate: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    iibb_exempt: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    iva_exempt: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    ganancias_exempt: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    def to_dto(self) -> OwnerRecord:
        from rental_billing.domain.types import OwnerRecord

        return OwnerRecord(
            owner_id=self.id,
            first_name=self.first_name or "",
            last_name=self.last_name or "",
            email=self.email,
            phone=self.phone,
            cuit=self.cuit,
            commission_rate=optional_money("owner", "commission_rate", self.commission_rate),
            iibb_exempt=bool(self.iibb_exempt),
            iva_exempt=bool(self.iva_exempt),
            ganancias_exempt=bool(self.ganancias_exempt),
        )


class CompanyModel(TrackedBase):
    __tablename__ = "companies"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    base_currency: Mapped[str] = mapped_column(String(3), nullable=False, default="ARS")
    withholding_settings: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True,
    )

    def withholding_config(self) -> WithholdingConfig:
        from rental_billing.domain.withholding_config import WithholdingConfig

        return WithholdingConfig.from_settings(
            self.withholding_settings, company_id=str(self.id),
        )
