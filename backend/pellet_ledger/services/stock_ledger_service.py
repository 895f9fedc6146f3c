# Overview: Service-layer operations for the stock ledgers; encapsulates business logic and database work.

# backend/pellet_ledger/services/stock_ledger_service.py

from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import StockBalance, StockMovement, Sale, Client
from pellet_ledger.amounts import round_quantity
from pellet_ledger.time_utils import utcnow, normalize_datetime, to_utc_z
from .concurrency import lock_for_update, run_in_transaction, flush_or_conflict
from .errors import InvalidQuantity, InvalidInput, InsufficientStock
"""
Stock Ledger Invariants (authoritative)

Ledgers:
- PRODUCT: finished pellets, keyed by presentation (closed set).
- ROLL:    raw alfalfa rolls, free-form key.
- SUPPLY:  purchased supplies, free-form key.

Model:
- StockBalance holds the current quantity per (ledger, key).
- StockMovement is the append-only history; rows are never updated.
- Conservation: balance.quantity == sum(INBOUND) - sum(OUTBOUND + PRODUCTION).

Business invariants:
- quantity > 0 on every movement (validated before any read or write).
- A balance never goes negative. OUTBOUND/PRODUCTION re-read the balance
  under a row lock and fail with InsufficientStock; nothing is clamped.
- The balance write and the movement append happen in the same DB
  transaction. Compound callers pass commit=False and own the commit.

Quantities are rounded to one decimal place at the boundary.
"""


LEDGER_PRODUCT = "PRODUCT"
LEDGER_ROLL = "ROLL"
LEDGER_SUPPLY = "SUPPLY"

LEDGERS = [LEDGER_PRODUCT, LEDGER_ROLL, LEDGER_SUPPLY]

KIND_INBOUND = "INBOUND"
KIND_OUTBOUND = "OUTBOUND"
KIND_PRODUCTION = "PRODUCTION"

MOVEMENT_KINDS = [KIND_INBOUND, KIND_OUTBOUND, KIND_PRODUCTION]
DEBIT_KINDS = (KIND_OUTBOUND, KIND_PRODUCTION)

PRESENTATIONS = ["Bolsa 25kg", "Big Bag", "Granel"]

TREND_GROWING = "GROWING"
TREND_SHRINKING = "SHRINKING"
TREND_STABLE = "STABLE"

_DEFAULT_UNITS = {
    LEDGER_PRODUCT: "kg",
    LEDGER_ROLL: "kg",
    LEDGER_SUPPLY: "kg",
}


def normalize_key(ledger: str, key: str) -> str:
    """
    Validate and canonicalize a ledger key.

    PRODUCT keys must be one of PRESENTATIONS (kept verbatim).
    ROLL/SUPPLY keys are trimmed and upper-cased so "bentonita " and
    "BENTONITA" land on the same balance row.
    """
    if ledger not in LEDGERS:
        raise InvalidInput(f"Unknown ledger: {ledger}. Must be one of {LEDGERS}")
    if not isinstance(key, str) or not key.strip():
        raise InvalidInput("Ledger key is required")

    if ledger == LEDGER_PRODUCT:
        if key not in PRESENTATIONS:
            raise InvalidInput(f"Unknown presentation: {key}. Must be one of {PRESENTATIONS}")
        return key

    return key.strip().upper()


def _validate_quantity(quantity) -> float:
    try:
        value = round_quantity(quantity)
    except ValueError:
        raise InvalidQuantity(quantity)
    if value <= 0:
        raise InvalidQuantity(quantity)
    return value


def _get_balance_row(ledger: str, key: str, *, lock: bool = False) -> StockBalance | None:
    query = db.session.query(StockBalance).filter_by(ledger=ledger, key=key)
    if lock:
        query = lock_for_update(query)
    return query.first()


def _apply_movement_inner(
    *,
    ledger: str,
    key: str,
    kind: str,
    quantity: float,
    occurred_dt: datetime,
    reference: str | None = None,
    notes: str | None = None,
    supplier_id: int | None = None,
    invoice_number: str | None = None,
    sale_id: int | None = None,
    production_id: int | None = None,
    unit: str | None = None,
) -> StockBalance:
    """Core movement logic without commit. Inputs are already validated."""
    balance = _get_balance_row(ledger, key, lock=True)

    if kind in DEBIT_KINDS:
        available = balance.quantity if balance is not None else 0.0
        if quantity > available:
            raise InsufficientStock(available, quantity, ledger=ledger, key=key)
        balance.quantity = round_quantity(balance.quantity - quantity)
    else:
        if balance is None:
            # Upsert: first sighting of this key starts at zero
            balance = StockBalance(
                ledger=ledger,
                key=key,
                quantity=0.0,
                unit=unit or _DEFAULT_UNITS[ledger],
            )
            db.session.add(balance)
            flush_or_conflict()
        balance.quantity = round_quantity(balance.quantity + quantity)
        if supplier_id is not None:
            balance.supplier_id = supplier_id
        if invoice_number is not None:
            balance.invoice_number = invoice_number

    movement = StockMovement(
        ledger=ledger,
        key=key,
        kind=kind,
        quantity=quantity,
        occurred_at=occurred_dt,
        reference=reference,
        notes=notes,
        supplier_id=supplier_id,
        invoice_number=invoice_number,
        sale_id=sale_id,
        production_id=production_id,
    )
    db.session.add(movement)
    db.session.flush()
    return balance


def apply_movement(
    ledger: str,
    key: str,
    kind: str,
    quantity,
    *,
    reference: str | None = None,
    notes: str | None = None,
    supplier_id: int | None = None,
    invoice_number: str | None = None,
    sale_id: int | None = None,
    production_id: int | None = None,
    occurred_at=None,
    unit: str | None = None,
    commit: bool = True,
) -> StockBalance:
    """
    Apply one movement to a ledger key and return the new balance.

    Raises:
        InvalidQuantity: quantity <= 0 (before any DB access)
        InvalidInput: unknown ledger/kind/presentation
        InsufficientStock: OUTBOUND/PRODUCTION larger than the balance
        ConcurrencyConflict: a concurrent writer changed the balance row

    DESIGN NOTE: commit=False is for compound operations (sale, invoice,
    production) that must land the movement in their own transaction.
    Those callers handle rollback through run_in_transaction.
    """
    qty = _validate_quantity(quantity)
    if kind not in MOVEMENT_KINDS:
        raise InvalidInput(f"Invalid movement kind: {kind}. Must be one of {MOVEMENT_KINDS}")
    canonical_key = normalize_key(ledger, key)
    try:
        occurred_dt = normalize_datetime(occurred_at, default=utcnow())
    except ValueError:
        raise InvalidInput("invalid occurred_at")

    if not commit:
        return _apply_movement_inner(
            ledger=ledger,
            key=canonical_key,
            kind=kind,
            quantity=qty,
            occurred_dt=occurred_dt,
            reference=reference,
            notes=notes,
            supplier_id=supplier_id,
            invoice_number=invoice_number,
            sale_id=sale_id,
            production_id=production_id,
            unit=unit,
        )

    def _op():
        balance = _apply_movement_inner(
            ledger=ledger,
            key=canonical_key,
            kind=kind,
            quantity=qty,
            occurred_dt=occurred_dt,
            reference=reference,
            notes=notes,
            supplier_id=supplier_id,
            invoice_number=invoice_number,
            sale_id=sale_id,
            production_id=production_id,
            unit=unit,
        )
        db.session.commit()
        current_app.logger.info(
            "Stock %s %s %s %s -> %s", ledger, kind, canonical_key, qty, balance.quantity
        )
        return balance

    return run_in_transaction(_op)


def set_min_stock(ledger: str, key: str, min_stock) -> StockBalance:
    """Set the low-stock alert threshold of an existing balance row."""
    canonical_key = normalize_key(ledger, key)
    try:
        value = round_quantity(min_stock)
    except ValueError:
        raise InvalidQuantity(min_stock)
    if value < 0:
        raise InvalidQuantity(min_stock)

    def _op():
        balance = _get_balance_row(ledger, canonical_key, lock=True)
        if balance is None:
            raise InvalidInput(f"No stock recorded for {ledger}/{canonical_key}")
        balance.min_stock = value
        db.session.commit()
        return balance

    return run_in_transaction(_op)


# =============================================================================
# READ SIDE
# =============================================================================

def get_balance(ledger: str, key: str) -> float:
    """Current quantity for a key (0 when the key was never stocked)."""
    balance = _get_balance_row(ledger, normalize_key(ledger, key))
    return balance.quantity if balance is not None else 0.0


def list_balances(ledger: str | None = None) -> list[StockBalance]:
    query = db.session.query(StockBalance)
    if ledger is not None:
        if ledger not in LEDGERS:
            raise InvalidInput(f"Unknown ledger: {ledger}. Must be one of {LEDGERS}")
        query = query.filter_by(ledger=ledger)
    return query.order_by(StockBalance.ledger, StockBalance.key).all()


def low_stock(ledger: str | None = None) -> list[StockBalance]:
    """Balances with an alert threshold that are at or below it."""
    query = db.session.query(StockBalance).filter(
        StockBalance.min_stock > 0,
        StockBalance.quantity <= StockBalance.min_stock,
    )
    if ledger is not None:
        query = query.filter(StockBalance.ledger == ledger)
    return query.order_by(StockBalance.ledger, StockBalance.key).all()


def list_movements(
    ledger: str,
    key: str | None = None,
    kind: str | None = None,
    *,
    page: int = 1,
    limit: int = 50,
) -> dict:
    """
    Movements newest first, enriched with the client of the referenced sale.

    The movement row itself only stores sale_id; client name/company are
    joined at read time.
    """
    if ledger not in LEDGERS:
        raise InvalidInput(f"Unknown ledger: {ledger}. Must be one of {LEDGERS}")
    page = max(1, page)
    limit = max(1, min(limit, 200))

    query = (
        db.session.query(StockMovement, Client.name, Client.company)
        .outerjoin(Sale, Sale.id == StockMovement.sale_id)
        .outerjoin(Client, Client.id == Sale.client_id)
        .filter(StockMovement.ledger == ledger)
    )
    if key is not None:
        query = query.filter(StockMovement.key == normalize_key(ledger, key))
    if kind is not None:
        query = query.filter(StockMovement.kind == kind)

    total = query.count()
    rows = (
        query.order_by(StockMovement.occurred_at.desc(), StockMovement.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )

    movements = []
    for movement, client_name, client_company in rows:
        data = movement.to_dict()
        data["client_name"] = client_name
        data["client_company"] = client_company
        movements.append(data)

    return {
        "movements": movements,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }


def movement_totals(ledger: str, key: str, as_of: datetime | None = None) -> tuple[float, float]:
    """(sum inbound, sum outbound+production) for a key, optionally as-of."""
    q = db.session.query(
        func.coalesce(func.sum(StockMovement.quantity), 0.0)
    ).filter(
        StockMovement.ledger == ledger,
        StockMovement.key == key,
    )
    if as_of is not None:
        q = q.filter(StockMovement.occurred_at <= as_of)

    inbound = q.filter(StockMovement.kind == KIND_INBOUND).scalar() or 0.0
    debits = q.filter(StockMovement.kind.in_(DEBIT_KINDS)).scalar() or 0.0
    return round_quantity(inbound), round_quantity(debits)


def reconcile_ledger(ledger: str | None = None) -> list[dict]:
    """
    Compare every balance with its movement history.

    Returns one entry per key whose stored quantity does not match
    sum(INBOUND) - sum(OUTBOUND + PRODUCTION). Empty list means consistent.
    """
    discrepancies = []
    for balance in list_balances(ledger):
        inbound, debits = movement_totals(balance.ledger, balance.key)
        expected = round_quantity(inbound - debits)
        if expected != round_quantity(balance.quantity):
            current_app.logger.warning(
                "Ledger mismatch %s/%s: stored %s, movements %s",
                balance.ledger, balance.key, balance.quantity, expected,
            )
            discrepancies.append({
                "ledger": balance.ledger,
                "key": balance.key,
                "stored_quantity": balance.quantity,
                "movement_quantity": expected,
                "difference": round_quantity(balance.quantity - expected),
            })
    return discrepancies


def ledger_velocity(
    ledger: str,
    key: str,
    window_days: int | None = None,
    *,
    now: datetime | None = None,
) -> dict:
    """
    Movement statistics for one key over a trailing window.

    Trend compares the last 7 days of outbound against the rest of the
    window: GROWING above 1.2x, SHRINKING below 0.8x, otherwise STABLE.
    With no movement at all in the last 7 days the trend is STABLE.
    """
    canonical_key = normalize_key(ledger, key)
    if window_days is None:
        window_days = int(current_app.config.get("VELOCITY_WINDOW_DAYS", 30))
    if window_days <= 0:
        raise InvalidInput("window_days must be positive")

    end = now or utcnow()
    start = end - timedelta(days=window_days)
    last_week_start = end - timedelta(days=7)

    movements = (
        db.session.query(StockMovement)
        .filter(
            StockMovement.ledger == ledger,
            StockMovement.key == canonical_key,
            StockMovement.occurred_at >= start,
            StockMovement.occurred_at <= end,
        )
        .order_by(StockMovement.occurred_at)
        .all()
    )

    total_in = 0.0
    total_out = 0.0
    count_in = 0
    count_out = 0
    last_week_out = 0.0
    last_week_count = 0
    for m in movements:
        if m.occurred_at >= last_week_start:
            last_week_count += 1
        if m.kind == KIND_INBOUND:
            total_in += m.quantity
            count_in += 1
        else:
            total_out += m.quantity
            count_out += 1
            if m.occurred_at >= last_week_start:
                last_week_out += m.quantity

    days = max(1, window_days)
    current = get_balance(ledger, canonical_key)

    trend = TREND_STABLE
    if last_week_count > 0:
        rest_out = total_out - last_week_out
        if last_week_out > rest_out * 1.2:
            trend = TREND_GROWING
        elif last_week_out < rest_out * 0.8:
            trend = TREND_SHRINKING

    return {
        "ledger": ledger,
        "key": canonical_key,
        "window": {
            "days": window_days,
            "from": to_utc_z(start),
            "to": to_utc_z(end),
        },
        "inbound": {
            "total": round_quantity(total_in),
            "count": count_in,
            "per_day": total_in / days,
            "average": total_in / count_in if count_in else 0.0,
        },
        "outbound": {
            "total": round_quantity(total_out),
            "count": count_out,
            "per_day": total_out / days,
            "average": total_out / count_out if count_out else 0.0,
        },
        "throughput_per_day": (total_in + total_out) / days,
        "movement_count": len(movements),
        "current_quantity": current,
        "rotation": total_out / current if current > 0 else 0.0,
        "trend": trend,
    }
