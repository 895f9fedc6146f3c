# Overview: Service-layer operations for supplier invoices and payments; encapsulates business logic and database work.

from __future__ import annotations

from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Check, Invoice, InvoiceLine, Supplier, SupplierPayment
from pellet_ledger.amounts import line_total_cents, round_quantity, tax_cents
from pellet_ledger.time_utils import utcnow, normalize_datetime
from .concurrency import lock_for_update, run_in_transaction, flush_or_conflict
from .errors import (
    DuplicateRecord,
    InvalidAmount,
    InvalidInput,
    InvalidQuantity,
    InvalidStatus,
    InvoiceNotFound,
    LedgerError,
    NotFound,
)
from .settlement import compute_settlement, SETTLEMENT_STATUSES, STATUS_PENDING, STATUS_PARTIAL, STATUS_PAID
from . import check_service
from . import stock_ledger_service as ledger
"""
Supplier Settlement Invariants (authoritative)

Invoice amounts (cents):
- line.total    = quantity x unit_price (half-up)
- subtotal      = sum(line.total)
- tax           = round(subtotal x TAX_RATE)
- total         = subtotal + tax

Stock:
- ROLL_ALFALFA / ROLL_OTHER lines are INBOUND on the ROLL ledger,
  SUPPLY lines INBOUND on the SUPPLY ledger, in the invoice's transaction.

Payments:
- Append-only; status cached and recomputed like sales.
- Paying with a held check endorses it to the supplier (DELIVERED).

Tax repair:
- Idempotent; one savepoint per invoice, a failing record is skipped
  and reported, never fails the batch.
"""


LINE_ROLL_ALFALFA = "ROLL_ALFALFA"
LINE_ROLL_OTHER = "ROLL_OTHER"
LINE_SUPPLY = "SUPPLY"
LINE_SERVICE = "SERVICE"
LINE_OTHER = "OTHER"

LINE_TYPES = [LINE_ROLL_ALFALFA, LINE_ROLL_OTHER, LINE_SUPPLY, LINE_SERVICE, LINE_OTHER]

ROLL_KEYS = {
    LINE_ROLL_ALFALFA: "ROLLO ALFALFA",
    LINE_ROLL_OTHER: "ROLLO OTRO",
}

SUPPLIER_PAYMENT_METHODS = ["CASH", "TRANSFER", "CHECK", "CARD", "OTHER"]

DEFAULT_CONCEPT = "Factura de proveedor"


@dataclass
class TaxCorrection:
    invoice_id: int
    invoice_number: str
    old_tax_cents: int
    new_tax_cents: int
    old_total_cents: int
    new_total_cents: int

    @property
    def delta_cents(self) -> int:
        return self.new_total_cents - self.old_total_cents

    def to_dict(self) -> dict:
        return {
            "invoice_id": self.invoice_id,
            "invoice_number": self.invoice_number,
            "old_tax_cents": self.old_tax_cents,
            "new_tax_cents": self.new_tax_cents,
            "old_total_cents": self.old_total_cents,
            "new_total_cents": self.new_total_cents,
            "delta_cents": self.delta_cents,
        }


@dataclass
class RepairSkipped:
    invoice_id: int
    reason: str

    def to_dict(self) -> dict:
        return {"invoice_id": self.invoice_id, "reason": self.reason}


@dataclass
class TaxRepairReport:
    dry_run: bool = False
    checked: int = 0
    corrections: list = field(default_factory=list)
    skipped: list = field(default_factory=list)

    @property
    def corrected(self) -> int:
        return len(self.corrections)

    @property
    def net_delta_cents(self) -> int:
        return sum(c.delta_cents for c in self.corrections)

    def to_dict(self) -> dict:
        return {
            "dry_run": self.dry_run,
            "checked": self.checked,
            "corrected": self.corrected,
            "net_delta_cents": self.net_delta_cents,
            "corrections": [c.to_dict() for c in self.corrections],
            "skipped": [s.to_dict() for s in self.skipped],
        }


def _tax_rate():
    return current_app.config.get("TAX_RATE", "0.21")


def _validate_amount(amount_cents) -> int:
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise InvalidAmount(amount_cents)
    return amount_cents


def _parse_date(value, name: str, default=None):
    try:
        return normalize_datetime(value, default=default)
    except ValueError:
        raise InvalidInput(f"invalid {name}")


def _build_line(raw: dict) -> InvoiceLine:
    """Validate one input line and compute its total."""
    description = (raw.get("description") or "").strip()
    if not description:
        raise InvalidInput("Line description is required")

    line_type = raw.get("line_type") or raw.get("type") or LINE_OTHER
    if line_type not in LINE_TYPES:
        raise InvalidInput(f"Invalid line type: {line_type}. Must be one of {LINE_TYPES}")

    try:
        qty = round_quantity(raw.get("quantity"))
    except ValueError:
        raise InvalidQuantity(raw.get("quantity"))
    if qty <= 0:
        raise InvalidQuantity(raw.get("quantity"))

    unit_price = raw.get("unit_price_cents")
    if isinstance(unit_price, bool) or not isinstance(unit_price, int) or unit_price < 0:
        raise InvalidAmount(unit_price, "Unit price cannot be negative")

    weight = raw.get("weight_kg")
    if weight is not None:
        try:
            weight = round_quantity(weight)
        except ValueError:
            raise InvalidQuantity(weight)
        if weight <= 0:
            raise InvalidQuantity(weight)

    return InvoiceLine(
        description=description,
        line_type=line_type,
        quantity=qty,
        unit_price_cents=unit_price,
        total_cents=line_total_cents(qty, unit_price),
        weight_kg=weight,
    )


def _stock_target(line: InvoiceLine):
    """(ledger, key, quantity) for lines that bring stock in, else None."""
    if line.line_type in ROLL_KEYS:
        quantity = line.quantity * line.weight_kg if line.weight_kg else line.quantity
        return ledger.LEDGER_ROLL, ROLL_KEYS[line.line_type], round_quantity(quantity)
    if line.line_type == LINE_SUPPLY:
        return ledger.LEDGER_SUPPLY, line.description, line.quantity
    return None


def _recompute(invoice: Invoice):
    amounts = [
        amount
        for (amount,) in db.session.query(SupplierPayment.amount_cents).filter(
            SupplierPayment.invoice_id == invoice.id
        )
    ]
    state = compute_settlement(invoice.total_cents, amounts)
    invoice.total_paid_cents = state.total_paid_cents
    invoice.status = state.status
    return state


# =============================================================================
# WRITES
# =============================================================================

def record_invoice(
    supplier_id: int,
    invoice_number: str,
    lines: list[dict],
    date=None,
    due_date=None,
    concept: str | None = None,
    notes: str | None = None,
) -> Invoice:
    """
    Record a supplier invoice and bring its rolls/supplies into stock.

    lines: [{"description", "line_type", "quantity", "unit_price_cents", "weight_kg"?}]

    Raises:
        InvalidInput / InvalidQuantity / InvalidAmount: bad lines (nothing written)
        NotFound: unknown supplier
        DuplicateRecord: invoice number already recorded for this supplier
    """
    number = (invoice_number or "").strip()
    if not number:
        raise InvalidInput("invoice_number is required")
    if not lines:
        raise InvalidInput("An invoice needs at least one line")
    built = [_build_line(raw) for raw in lines]

    invoice_dt = _parse_date(date, "date", default=utcnow())
    due_dt = _parse_date(due_date, "due_date")

    subtotal = sum(line.total_cents for line in built)
    tax = tax_cents(subtotal, _tax_rate())
    opening = compute_settlement(subtotal + tax, [])

    def _op():
        supplier = db.session.get(Supplier, supplier_id)
        if supplier is None:
            raise NotFound("Supplier", supplier_id)

        existing = (
            db.session.query(Invoice.id)
            .filter_by(supplier_id=supplier_id, invoice_number=number)
            .first()
        )
        if existing is not None:
            raise DuplicateRecord("Invoice", "invoice_number", number)

        invoice = Invoice(
            supplier_id=supplier_id,
            invoice_number=number,
            invoice_date=invoice_dt,
            due_date=due_dt,
            concept=concept or DEFAULT_CONCEPT,
            subtotal_cents=subtotal,
            tax_cents=tax,
            total_cents=subtotal + tax,
            status=opening.status,
            total_paid_cents=0,
            notes=notes,
        )
        invoice.lines = built
        db.session.add(invoice)
        flush_or_conflict(lambda: DuplicateRecord("Invoice", "invoice_number", number))

        for line in built:
            target = _stock_target(line)
            if target is None:
                continue
            ledger_name, key, quantity = target
            ledger.apply_movement(
                ledger_name,
                key,
                ledger.KIND_INBOUND,
                quantity,
                reference=f"Invoice {number}",
                notes=line.description,
                supplier_id=supplier_id,
                invoice_number=number,
                occurred_at=invoice_dt,
                commit=False,
            )

        db.session.commit()
        current_app.logger.info(
            "Invoice %s recorded for supplier %s: subtotal %s, tax %s, total %s cents",
            number, supplier_id, subtotal, tax, invoice.total_cents,
        )
        return invoice

    return run_in_transaction(_op)


def record_supplier_payment(
    invoice_id: int,
    amount_cents: int,
    method: str,
    reference: str | None = None,
    notes: str | None = None,
    check_id: int | None = None,
    paid_at=None,
) -> SupplierPayment:
    """
    Append a payment to a supplier invoice and recompute its status.

    With check_id the held check is endorsed to the supplier.

    Raises:
        InvalidAmount, InvalidInput, InvoiceNotFound, NotFound (check),
        InvalidStatus (check not held)
    """
    _validate_amount(amount_cents)
    if method not in SUPPLIER_PAYMENT_METHODS:
        raise InvalidInput(f"Invalid payment method: {method}. Must be one of {SUPPLIER_PAYMENT_METHODS}")
    paid_dt = _parse_date(paid_at, "paid_at", default=utcnow())

    def _op():
        invoice = lock_for_update(db.session.query(Invoice).filter_by(id=invoice_id)).first()
        if invoice is None:
            raise InvoiceNotFound(invoice_id)

        payment = SupplierPayment(
            invoice_id=invoice.id,
            amount_cents=amount_cents,
            method=method,
            paid_at=paid_dt,
            reference=reference,
            notes=notes,
        )
        db.session.add(payment)
        db.session.flush()

        if check_id is not None:
            check = lock_for_update(db.session.query(Check).filter_by(id=check_id)).first()
            if check is None:
                raise NotFound("Check", check_id)
            check_service._deliver_check_inner(
                check,
                delivered_to=invoice.supplier.business_name,
                delivered_for=f"Invoice {invoice.invoice_number}",
                invoice_id=invoice.id,
                supplier_payment_id=payment.id,
                now=paid_dt,
            )
            payment.check_id = check.id

        state = _recompute(invoice)
        db.session.commit()
        current_app.logger.info(
            "Supplier payment %s on invoice %s: %s cents via %s -> %s (paid %s / %s)",
            payment.id, invoice.invoice_number, amount_cents, method, state.status,
            state.total_paid_cents, state.total_cents,
        )
        return payment

    return run_in_transaction(_op)


def repair_invoice_tax(dry_run: bool = False) -> TaxRepairReport:
    """
    Recompute tax/total of every invoice whose stored values drifted.

    An invoice is corrected when its tax or its total is off by more than
    TAX_REPAIR_THRESHOLD_CENTS. Status is recomputed from the payment log.
    Re-running after a successful pass corrects nothing.
    """
    threshold = int(current_app.config.get("TAX_REPAIR_THRESHOLD_CENTS", 100))
    rate = _tax_rate()
    report = TaxRepairReport(dry_run=dry_run)

    invoice_ids = [i for (i,) in db.session.query(Invoice.id).order_by(Invoice.id)]
    for invoice_id in invoice_ids:
        report.checked += 1
        try:
            with db.session.begin_nested():
                invoice = lock_for_update(db.session.query(Invoice).filter_by(id=invoice_id)).first()
                if invoice is None:
                    raise InvoiceNotFound(invoice_id)

                correct_tax = tax_cents(invoice.subtotal_cents, rate)
                correct_total = invoice.subtotal_cents + correct_tax
                if (
                    abs(invoice.tax_cents - correct_tax) <= threshold
                    and abs(invoice.total_cents - correct_total) <= threshold
                ):
                    continue

                correction = TaxCorrection(
                    invoice_id=invoice.id,
                    invoice_number=invoice.invoice_number,
                    old_tax_cents=invoice.tax_cents,
                    new_tax_cents=correct_tax,
                    old_total_cents=invoice.total_cents,
                    new_total_cents=correct_total,
                )
                if not dry_run:
                    invoice.tax_cents = correct_tax
                    invoice.total_cents = correct_total
                    _recompute(invoice)
                report.corrections.append(correction)
            current_app.logger.info(
                "%sInvoice %s tax %s -> %s, total %s -> %s",
                "[dry-run] " if dry_run else "",
                correction.invoice_number,
                correction.old_tax_cents, correction.new_tax_cents,
                correction.old_total_cents, correction.new_total_cents,
            )
        except (LedgerError, SQLAlchemyError) as exc:
            report.skipped.append(RepairSkipped(invoice_id=invoice_id, reason=str(exc)))
            current_app.logger.warning("Tax repair skipped invoice %s: %s", invoice_id, exc)

    if not dry_run:
        db.session.commit()
    current_app.logger.info(
        "Tax repair done: %s checked, %s corrected, net delta %s cents, %s skipped",
        report.checked, report.corrected, report.net_delta_cents, len(report.skipped),
    )
    return report


# =============================================================================
# READ SIDE
# =============================================================================

def get_invoice_settlement(invoice_id: int) -> dict:
    invoice = db.session.get(Invoice, invoice_id)
    if invoice is None:
        raise InvoiceNotFound(invoice_id)
    state = compute_settlement(invoice.total_cents, [p.amount_cents for p in invoice.payments])
    data = state.to_dict()
    data["invoice_id"] = invoice.id
    data["supplier_id"] = invoice.supplier_id
    data["payments"] = [p.to_dict() for p in invoice.payments]
    return data


def list_invoices(
    *,
    supplier_id: int | None = None,
    status: str | None = None,
    page: int = 1,
    limit: int = 10,
) -> dict:
    if status is not None and status not in SETTLEMENT_STATUSES:
        raise InvalidStatus(status, SETTLEMENT_STATUSES)
    page = max(1, page)
    limit = max(1, min(limit, 200))

    query = db.session.query(Invoice)
    if supplier_id is not None:
        query = query.filter(Invoice.supplier_id == supplier_id)
    if status is not None:
        query = query.filter(Invoice.status == status)

    total = query.count()
    invoices = (
        query.order_by(Invoice.invoice_date.desc(), Invoice.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "invoices": [i.to_dict(include_lines=True) for i in invoices],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }


def supplier_balances() -> dict:
    """Per-supplier invoiced/paid/balance plus global totals."""
    rows = (
        db.session.query(
            Supplier.id,
            Supplier.business_name,
            func.count(Invoice.id),
            func.coalesce(func.sum(Invoice.total_cents), 0),
            func.coalesce(func.sum(Invoice.total_paid_cents), 0),
        )
        .outerjoin(Invoice, Invoice.supplier_id == Supplier.id)
        .group_by(Supplier.id, Supplier.business_name)
        .order_by(Supplier.business_name)
        .all()
    )
    status_rows = (
        db.session.query(Invoice.supplier_id, Invoice.status, func.count(Invoice.id))
        .group_by(Invoice.supplier_id, Invoice.status)
        .all()
    )
    status_counts: dict[int, dict[str, int]] = {}
    for supplier_id, status, count in status_rows:
        status_counts.setdefault(supplier_id, {})[status] = int(count)

    suppliers = []
    for supplier_id, name, invoice_count, invoiced, paid in rows:
        counts = status_counts.get(supplier_id, {})
        suppliers.append({
            "supplier_id": supplier_id,
            "business_name": name,
            "invoices": int(invoice_count),
            "total_invoiced_cents": int(invoiced),
            "total_paid_cents": int(paid),
            "balance_cents": max(0, int(invoiced) - int(paid)),
            "pending": counts.get(STATUS_PENDING, 0),
            "partial": counts.get(STATUS_PARTIAL, 0),
            "paid": counts.get(STATUS_PAID, 0),
        })

    total_invoiced = sum(s["total_invoiced_cents"] for s in suppliers)
    total_paid = sum(s["total_paid_cents"] for s in suppliers)
    with_debt = [s for s in suppliers if s["balance_cents"] > 0]
    total_debt = sum(s["balance_cents"] for s in with_debt)

    return {
        "suppliers": suppliers,
        "totals": {
            "total_invoiced_cents": total_invoiced,
            "total_paid_cents": total_paid,
            "total_debt_cents": total_debt,
            "suppliers_with_debt": len(with_debt),
            "average_debt_cents": total_debt // len(with_debt) if with_debt else 0,
        },
    }
