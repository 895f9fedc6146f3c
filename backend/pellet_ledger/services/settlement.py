# Overview: Settlement arithmetic shared by sales and supplier invoices.

"""
Settlement account: "total owed vs total paid" over an append-only payment log.

Pure functions only. Callers (sales_service, supplier_service) load the
payment amounts under a row lock and write the derived fields back.

STATUS:
- PENDING: total_paid == 0
- PARTIAL: 0 < total_paid and remaining > tolerance
- PAID:    remaining <= tolerance (overpayment stays PAID, excess is surplus)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from flask import current_app


STATUS_PENDING = "PENDING"
STATUS_PARTIAL = "PARTIAL"
STATUS_PAID = "PAID"

SETTLEMENT_STATUSES = [STATUS_PENDING, STATUS_PARTIAL, STATUS_PAID]


@dataclass(frozen=True)
class SettlementState:
    total_cents: int
    total_paid_cents: int
    status: str

    @property
    def remaining_cents(self) -> int:
        return max(0, self.total_cents - self.total_paid_cents)

    @property
    def surplus_cents(self) -> int:
        return max(0, self.total_paid_cents - self.total_cents)

    @property
    def is_settled(self) -> bool:
        return self.status == STATUS_PAID

    def to_dict(self) -> dict:
        return {
            "total_cents": self.total_cents,
            "total_paid_cents": self.total_paid_cents,
            "remaining_cents": self.remaining_cents,
            "surplus_cents": self.surplus_cents,
            "status": self.status,
        }


def settlement_tolerance_cents() -> int:
    return int(current_app.config.get("SETTLEMENT_TOLERANCE_CENTS", 1))


def settlement_status(total_cents: int, total_paid_cents: int, tolerance_cents: int = 0) -> str:
    if total_paid_cents > 0 and total_cents - total_paid_cents <= tolerance_cents:
        return STATUS_PAID
    if total_paid_cents > 0:
        return STATUS_PARTIAL
    # A zero-total obligation is settled from the start
    if total_cents <= 0:
        return STATUS_PAID
    return STATUS_PENDING


def compute_settlement(
    total_cents: int,
    payment_amounts: Iterable[int],
    tolerance_cents: int | None = None,
) -> SettlementState:
    """Derive the settlement state from the authoritative payment amounts."""
    if tolerance_cents is None:
        tolerance_cents = settlement_tolerance_cents()
    total_paid = sum(int(a) for a in payment_amounts)
    return SettlementState(
        total_cents=total_cents,
        total_paid_cents=total_paid,
        status=settlement_status(total_cents, total_paid, tolerance_cents),
    )
