# Overview: Service-layer operations for production runs; rolls and supplies in, pellets out.

from __future__ import annotations

import re

from flask import current_app

from ..extensions import db
from ..models import Production
from pellet_ledger.amounts import round_quantity
from pellet_ledger.time_utils import utcnow, normalize_datetime
from .concurrency import run_in_transaction, flush_or_conflict
from .errors import DuplicateRecord, InvalidInput, InvalidQuantity
from . import stock_ledger_service as ledger


LOT_PREFIX = "LOTE-"
_LOT_RE = re.compile(r"^LOTE-(\d+)$")


def _positive(value) -> float:
    try:
        qty = round_quantity(value)
    except ValueError:
        raise InvalidQuantity(value)
    if qty <= 0:
        raise InvalidQuantity(value)
    return qty


def next_lot_number() -> str:
    """LOTE-NNNNN after the highest numbered lot on record."""
    highest = 0
    for (lot,) in db.session.query(Production.lot_number).filter(Production.lot_number.like(f"{LOT_PREFIX}%")):
        match = _LOT_RE.match(lot)
        if match:
            highest = max(highest, int(match.group(1)))
    return f"{LOT_PREFIX}{highest + 1:05d}"


def record_production(
    roll_key: str,
    roll_quantity,
    outputs: dict,
    supplies: dict | None = None,
    efficiency=None,
    operator: str | None = None,
    notes: str | None = None,
    lot_number: str | None = None,
    produced_at=None,
) -> Production:
    """
    Record a production run.

    outputs:  {presentation: quantity} added to the PRODUCT ledger
    supplies: {supply key: quantity} consumed from the SUPPLY ledger

    The roll consumption, every supply consumption and every output are
    one transaction: a shortage anywhere leaves no trace of the run.

    efficiency defaults to total_output / roll_quantity, capped at 1.

    Raises:
        InvalidQuantity, InvalidInput, InsufficientStock, DuplicateRecord (lot)
    """
    rolls = _positive(roll_quantity)
    if not outputs:
        raise InvalidInput("A production run needs at least one output")
    output_qty = {}
    for presentation, qty in outputs.items():
        ledger.normalize_key(ledger.LEDGER_PRODUCT, presentation)
        output_qty[presentation] = _positive(qty)
    supply_qty = {
        ledger.normalize_key(ledger.LEDGER_SUPPLY, key): _positive(qty)
        for key, qty in (supplies or {}).items()
    }
    total_output = round_quantity(sum(output_qty.values()))

    if efficiency is None:
        efficiency = min(1.0, total_output / rolls)
    try:
        efficiency = float(efficiency)
    except (TypeError, ValueError):
        raise InvalidInput("efficiency must be a number")
    if not 0 <= efficiency <= 1:
        raise InvalidInput("efficiency must be between 0 and 1")

    try:
        produced_dt = normalize_datetime(produced_at, default=utcnow())
    except ValueError:
        raise InvalidInput("invalid produced_at")
    roll_canonical = ledger.normalize_key(ledger.LEDGER_ROLL, roll_key)

    def _op():
        lot = (lot_number or "").strip() or next_lot_number()
        if db.session.query(Production.id).filter_by(lot_number=lot).first():
            raise DuplicateRecord("Production", "lot_number", lot)

        production = Production(
            lot_number=lot,
            roll_key=roll_canonical,
            roll_quantity=rolls,
            total_output=total_output,
            efficiency=efficiency,
            operator=operator,
            notes=notes,
            produced_at=produced_dt,
        )
        db.session.add(production)
        flush_or_conflict(lambda: DuplicateRecord("Production", "lot_number", lot))

        reference = f"Production {lot}"
        ledger.apply_movement(
            ledger.LEDGER_ROLL, roll_canonical, ledger.KIND_PRODUCTION, rolls,
            reference=reference, production_id=production.id, occurred_at=produced_dt, commit=False,
        )
        for key, qty in supply_qty.items():
            ledger.apply_movement(
                ledger.LEDGER_SUPPLY, key, ledger.KIND_PRODUCTION, qty,
                reference=reference, production_id=production.id, occurred_at=produced_dt, commit=False,
            )
        for presentation, qty in output_qty.items():
            ledger.apply_movement(
                ledger.LEDGER_PRODUCT, presentation, ledger.KIND_INBOUND, qty,
                reference=reference, production_id=production.id, occurred_at=produced_dt, commit=False,
            )

        db.session.commit()
        current_app.logger.info(
            "Production %s: %s of %s -> %s output (efficiency %.2f)",
            lot, rolls, roll_canonical, total_output, efficiency,
        )
        return production

    return run_in_transaction(_op)
