"""
AdjustmentCalculator -- rent adjustment by fixed rate or published index.

Contract:
    ``calculate_adjusted_rent(lease)`` returns an ``AdjustmentResult`` with
    the original and adjusted amounts and the applied percentage.
    ``should_apply_adjustment(lease, today)`` says whether the lease's
    adjustment is due.

Rules:
    none/unset   adjusted = original, rate 0
    fixed        adjusted = original × (1 + rate/100)
    index types  current = latest point; base = latest point on or before
                 the first of the month of ``last_adjustment_date`` (today
                 when unset); variation = (current/base - 1) × 100;
                 adjusted = original × (1 + variation/100)

Failure modes:
    Index adjustment fails open: a missing point or a lookup error is
    logged and the unadjusted amount is returned.  Billing never stops
    because an index feed is late.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal

from rental_kernel.domain.clock import Clock, SystemClock
from rental_kernel.domain.money import HUNDRED, ZERO
from rental_kernel.domain.periods import month_start
from rental_kernel.logging_config import get_logger

from rental_billing.domain.types import AdjustmentResult, AdjustmentType, LeaseRecord
from rental_billing.services.index_store import IndexStore

logger = get_logger("billing.adjustment")

_ONE = Decimal("1")


class AdjustmentCalculator:
    def __init__(self, index_store: IndexStore, clock: Clock | None = None):
        self._index_store = index_store
        self._clock = clock or SystemClock()

    def calculate_adjusted_rent(self, lease: LeaseRecord) -> AdjustmentResult:
        original = lease.rent_amount
        unadjusted = AdjustmentResult(
            original_amount=original,
            adjusted_amount=original,
            adjustment_type=lease.adjustment_type,
            adjustment_rate=ZERO,
        )

        if lease.adjustment_type is AdjustmentType.NONE:
            return unadjusted

        if lease.adjustment_type is AdjustmentType.FIXED:
            rate = lease.adjustment_rate if lease.adjustment_rate is not None else ZERO
            return AdjustmentResult(
                original_amount=original,
                adjusted_amount=original * (_ONE + rate / HUNDRED),
                adjustment_type=AdjustmentType.FIXED,
                adjustment_rate=rate,
            )

        index_type = lease.adjustment_type.index_type
        try:
            current = self._index_store.latest(index_type)
            base_day = month_start(lease.last_adjustment_date or self._clock.today())
            base = self._index_store.latest_on_or_before(index_type, base_day)
        except Exception as exc:
            logger.error(
                "adjustment_lookup_failed",
                extra={
                    "lease_id": str(lease.lease_id),
                    "index_type": index_type.value,
                    "error": str(exc),
                },
            )
            return unadjusted

        if current is None or base is None or base.value == ZERO:
            logger.warning(
                "adjustment_index_unavailable",
                extra={
                    "lease_id": str(lease.lease_id),
                    "index_type": index_type.value,
                    "has_current": current is not None,
                    "has_base": base is not None,
                },
            )
            return unadjusted

        variation = (current.value / base.value - _ONE) * HUNDRED
        adjusted = original * (_ONE + variation / HUNDRED)

        logger.debug(
            "adjustment_calculated",
            extra={
                "lease_id": str(lease.lease_id),
                "index_type": index_type.value,
                "base_value": base.value,
                "current_value": current.value,
                "variation": variation,
            },
        )
        return AdjustmentResult(
            original_amount=original,
            adjusted_amount=adjusted,
            adjustment_type=lease.adjustment_type,
            adjustment_rate=variation,
            base_index_value=base.value,
            current_index_value=current.value,
        )

    def should_apply_adjustment(self, lease: LeaseRecord, today: date | None = None) -> bool:
        if lease.adjustment_type is AdjustmentType.NONE:
            return False
        if lease.next_adjustment_date is None:
            return False
        return lease.next_adjustment_date <= (today or self._clock.today())
