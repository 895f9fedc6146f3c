# Overview: Service-layer operations for checks; encapsulates the check lifecycle state machine.

"""
Check Lifecycle Service

WHY: Checks received from clients are held, collected, or endorsed to
suppliers. Their status has to stay correct without a background job.

STATES:
- PENDING (initial) -> COLLECTED | REJECTED | EXPIRED | DELIVERED
- DELIVERED -> COLLECTED | REJECTED (reported by the receiving party)

PASSIVE EXPIRY:
- Any read or write of a PENDING check whose due_date < now forces
  EXPIRED before anything else happens. Persisted on the spot.
- Expiry never blocks a manual update_check_status call afterwards.

UNIQUENESS:
- check_number is unique across all checks (checks are hard-deleted).
"""

from __future__ import annotations

from datetime import datetime, timedelta
import math

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Check, Payment, SupplierPayment
from pellet_ledger.time_utils import utcnow, normalize_datetime
from .concurrency import lock_for_update, run_in_transaction, flush_or_conflict
from .errors import (
    CannotDeleteCollected,
    DuplicateCheckNumber,
    InvalidAmount,
    InvalidInput,
    InvalidStatus,
    NotFound,
)


# =============================================================================
# CHECK STATUS (CONSTANTS)
# =============================================================================

CHECK_PENDING = "PENDING"
CHECK_COLLECTED = "COLLECTED"
CHECK_REJECTED = "REJECTED"
CHECK_EXPIRED = "EXPIRED"
CHECK_DELIVERED = "DELIVERED"

CHECK_STATUSES = [
    CHECK_PENDING,
    CHECK_COLLECTED,
    CHECK_REJECTED,
    CHECK_EXPIRED,
    CHECK_DELIVERED,
]

# Fields update_check may touch; status goes through update_check_status
EDITABLE_FIELDS = {
    "check_number",
    "amount_cents",
    "is_electronic",
    "reception_date",
    "due_date",
    "received_from",
    "issued_by",
    "bank_name",
    "account_number",
    "notes",
}


# =============================================================================
# NORMALIZATION
# =============================================================================

def normalize_expiry(check: Check, now: datetime | None = None) -> bool:
    """
    Force EXPIRED on an overdue PENDING check. Returns True if it changed.

    Does not commit; callers decide (reads commit right away, writes
    commit with the rest of their transaction).
    """
    now = now or utcnow()
    if check.status == CHECK_PENDING and check.due_date is not None and check.due_date < now:
        check.status = CHECK_EXPIRED
        return True
    return False


def _append_note(check: Check, note: str | None) -> None:
    if not note:
        return
    check.notes = f"{check.notes}\n{note}" if check.notes else note


def _parse_date(value, field: str, default=None) -> datetime | None:
    try:
        return normalize_datetime(value, default=default)
    except ValueError:
        raise InvalidInput(f"invalid {field}")


def _validate_amount(amount_cents) -> int:
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise InvalidAmount(amount_cents)
    return amount_cents


def _ensure_number_free(check_number: str, *, exclude_id: int | None = None) -> None:
    query = db.session.query(Check.id).filter(Check.check_number == check_number)
    if exclude_id is not None:
        query = query.filter(Check.id != exclude_id)
    if query.first() is not None:
        raise DuplicateCheckNumber(check_number)


def _load_locked(check_id: int) -> Check:
    check = lock_for_update(db.session.query(Check).filter_by(id=check_id)).first()
    if check is None:
        raise NotFound("Check", check_id)
    return check


# =============================================================================
# CREATION (no commit variant used by payments)
# =============================================================================

def _create_check_inner(
    *,
    check_number: str,
    amount_cents: int,
    due_date,
    received_from: str,
    issued_by: str,
    is_electronic: bool = False,
    reception_date=None,
    bank_name: str | None = None,
    account_number: str | None = None,
    notes: str | None = None,
    client_payment_id: int | None = None,
    supplier_payment_id: int | None = None,
    now: datetime | None = None,
) -> Check:
    number = (check_number or "").strip()
    if not number:
        raise InvalidInput("check_number is required")
    _validate_amount(amount_cents)
    if not received_from or not received_from.strip():
        raise InvalidInput("received_from is required")
    if not issued_by or not issued_by.strip():
        raise InvalidInput("issued_by is required")

    due_dt = _parse_date(due_date, "due_date")
    if due_dt is None:
        raise InvalidInput("due_date is required")
    now = now or utcnow()
    reception_dt = _parse_date(reception_date, "reception_date", default=now)

    _ensure_number_free(number)

    check = Check(
        check_number=number,
        amount_cents=amount_cents,
        is_electronic=bool(is_electronic),
        reception_date=reception_dt,
        due_date=due_dt,
        received_from=received_from.strip(),
        issued_by=issued_by.strip(),
        bank_name=bank_name,
        account_number=account_number,
        notes=notes,
        client_payment_id=client_payment_id,
        supplier_payment_id=supplier_payment_id,
        status=CHECK_PENDING,
    )
    normalize_expiry(check, now)
    db.session.add(check)
    flush_or_conflict(lambda: DuplicateCheckNumber(number))
    return check


def create_check(*, now: datetime | None = None, **fields) -> Check:
    """
    Register a check received by the factory.

    Raises:
        DuplicateCheckNumber: number already used by another check
        InvalidAmount / InvalidInput: bad data
    """
    def _op():
        check = _create_check_inner(now=now, **fields)
        db.session.commit()
        current_app.logger.info("Check %s registered (%s cents)", check.check_number, check.amount_cents)
        return check

    return run_in_transaction(_op)


# =============================================================================
# READS (normalize first)
# =============================================================================

def get_check(check_id: int, *, now: datetime | None = None) -> Check:
    check = db.session.get(Check, check_id)
    if check is None:
        raise NotFound("Check", check_id)
    if normalize_expiry(check, now):
        db.session.commit()
    return check


def list_checks(
    *,
    status: str | None = None,
    is_electronic: bool | None = None,
    page: int = 1,
    limit: int = 10,
    now: datetime | None = None,
) -> dict:
    """Checks ordered by due date. Overdue PENDING rows are expired first."""
    if status is not None and status not in CHECK_STATUSES:
        raise InvalidStatus(status, CHECK_STATUSES)

    expire_overdue_checks(now=now)
    page = max(1, page)
    limit = max(1, min(limit, 200))

    query = db.session.query(Check)
    if status is not None:
        query = query.filter(Check.status == status)
    if is_electronic is not None:
        query = query.filter(Check.is_electronic == is_electronic)

    total = query.count()
    checks = query.order_by(Check.due_date, Check.id).offset((page - 1) * limit).limit(limit).all()
    return {
        "checks": checks,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
        "stats": check_stats(),
    }


def checks_due_soon(days: int | None = None, *, now: datetime | None = None) -> list[Check]:
    """PENDING checks due between now and now + days, soonest first."""
    if days is None:
        days = int(current_app.config.get("CHECK_DUE_SOON_DAYS", 7))
    now = now or utcnow()
    expire_overdue_checks(now=now)
    return (
        db.session.query(Check)
        .filter(
            Check.status == CHECK_PENDING,
            Check.due_date >= now,
            Check.due_date <= now + timedelta(days=days),
        )
        .order_by(Check.due_date)
        .all()
    )


def check_stats() -> dict:
    """Count and total amount per status."""
    rows = (
        db.session.query(Check.status, func.count(Check.id), func.coalesce(func.sum(Check.amount_cents), 0))
        .group_by(Check.status)
        .all()
    )
    return {
        status: {"count": int(count), "total_amount_cents": int(total)}
        for status, count, total in rows
    }


def days_until_due(check: Check, now: datetime | None = None) -> int:
    now = now or utcnow()
    return math.ceil((check.due_date - now).total_seconds() / 86400)


def expire_overdue_checks(*, now: datetime | None = None) -> int:
    """Batch form of the passive expiry. Returns how many checks flipped."""
    now = now or utcnow()

    def _op():
        overdue = (
            db.session.query(Check)
            .filter(Check.status == CHECK_PENDING, Check.due_date < now)
            .all()
        )
        for check in overdue:
            check.status = CHECK_EXPIRED
        if overdue:
            db.session.commit()
            current_app.logger.info("Expired %s overdue checks", len(overdue))
        return len(overdue)

    return run_in_transaction(_op)


# =============================================================================
# WRITES
# =============================================================================

def update_check(check_id: int, *, now: datetime | None = None, **fields) -> Check:
    """
    Edit the data fields of a check.

    Raises:
        DuplicateCheckNumber: new number already used by another check
        InvalidInput: unknown field
    """
    unknown = set(fields) - EDITABLE_FIELDS
    if unknown:
        raise InvalidInput(f"Cannot update fields: {sorted(unknown)}")

    def _op():
        check = _load_locked(check_id)
        normalize_expiry(check, now)

        if "check_number" in fields:
            number = (fields["check_number"] or "").strip()
            if not number:
                raise InvalidInput("check_number is required")
            if number != check.check_number:
                _ensure_number_free(number, exclude_id=check.id)
                check.check_number = number
        if "amount_cents" in fields:
            check.amount_cents = _validate_amount(fields["amount_cents"])
        if "is_electronic" in fields:
            check.is_electronic = bool(fields["is_electronic"])
        if "reception_date" in fields:
            check.reception_date = _parse_date(fields["reception_date"], "reception_date", default=check.reception_date)
        if "due_date" in fields:
            check.due_date = _parse_date(fields["due_date"], "due_date", default=check.due_date)
        for name in ("received_from", "issued_by", "bank_name", "account_number", "notes"):
            if name in fields:
                setattr(check, name, fields[name])

        # A new due date may have made it overdue
        normalize_expiry(check, now)

        number = check.check_number
        flush_or_conflict(lambda: DuplicateCheckNumber(number))
        db.session.commit()
        return check

    return run_in_transaction(_op)


def update_check_status(
    check_id: int,
    new_status: str,
    notes: str | None = None,
    *,
    now: datetime | None = None,
) -> Check:
    """
    Explicit status change.

    Notes are appended on a new line, never overwritten.
    Any status of the closed set is accepted; expiry does not block
    a later manual COLLECTED/REJECTED.
    """
    if new_status not in CHECK_STATUSES:
        raise InvalidStatus(new_status, CHECK_STATUSES)

    def _op():
        check = _load_locked(check_id)
        normalize_expiry(check, now)
        previous = check.status

        check.status = new_status
        # An overdue check cannot be put back to PENDING
        normalize_expiry(check, now)
        _append_note(check, notes)
        db.session.commit()
        current_app.logger.info("Check %s status %s -> %s", check.check_number, previous, check.status)
        return check

    return run_in_transaction(_op)


def _deliver_check_inner(
    check: Check,
    *,
    delivered_to: str,
    delivered_for: str | None = None,
    invoice_id: int | None = None,
    supplier_payment_id: int | None = None,
    now: datetime | None = None,
) -> Check:
    now = now or utcnow()
    normalize_expiry(check, now)
    if check.status != CHECK_PENDING:
        raise InvalidStatus(check.status, [CHECK_PENDING])
    if not delivered_to or not delivered_to.strip():
        raise InvalidInput("delivered_to is required")

    check.status = CHECK_DELIVERED
    check.delivered_to = delivered_to.strip()
    check.delivered_at = now
    check.delivered_for = delivered_for
    if invoice_id is not None:
        check.invoice_id = invoice_id
    if supplier_payment_id is not None:
        check.supplier_payment_id = supplier_payment_id
    return check


def deliver_check(
    check_id: int,
    *,
    delivered_to: str,
    delivered_for: str | None = None,
    invoice_id: int | None = None,
    now: datetime | None = None,
) -> Check:
    """
    Endorse a held (PENDING) check to a third party.

    Raises:
        InvalidStatus: the check is not PENDING (expired checks included)
    """
    def _op():
        check = _load_locked(check_id)
        _deliver_check_inner(
            check,
            delivered_to=delivered_to,
            delivered_for=delivered_for,
            invoice_id=invoice_id,
            now=now,
        )
        db.session.commit()
        current_app.logger.info("Check %s delivered to %s", check.check_number, check.delivered_to)
        return check

    return run_in_transaction(_op)


def delete_check(check_id: int) -> None:
    """
    Hard-delete a check.

    Raises:
        CannotDeleteCollected: the check was already collected
    """
    def _op():
        check = _load_locked(check_id)
        if check.status == CHECK_COLLECTED:
            raise CannotDeleteCollected(check.id)
        number = check.check_number

        # SQLite only honors ON DELETE SET NULL with PRAGMA foreign_keys on
        db.session.query(Payment).filter(Payment.check_id == check.id).update(
            {Payment.check_id: None}, synchronize_session="fetch"
        )
        db.session.query(SupplierPayment).filter(SupplierPayment.check_id == check.id).update(
            {SupplierPayment.check_id: None}, synchronize_session="fetch"
        )
        db.session.delete(check)
        db.session.commit()
        current_app.logger.info("Check %s deleted", number)

    return run_in_transaction(_op)
