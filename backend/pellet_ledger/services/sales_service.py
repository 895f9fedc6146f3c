# Overview: Service-layer operations for sales; encapsulates business logic and database work.

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Client, Payment, Sale, Check
from pellet_ledger.amounts import line_total_cents, round_quantity
from pellet_ledger.time_utils import utcnow, normalize_datetime
from .concurrency import lock_for_update, run_in_transaction
from .errors import (
    InsufficientCredit,
    InvalidAmount,
    InvalidInput,
    InvalidQuantity,
    InvalidStatus,
    NotFound,
    SaleFullyPaid,
    SaleNotOwnedByClient,
)
from .settlement import compute_settlement, SETTLEMENT_STATUSES
from . import check_service
from . import stock_ledger_service as ledger
"""
Sales Settlement Invariants (authoritative)

Sale creation:
- The Sale row and its OUTBOUND movement on the PRODUCT ledger are one
  DB transaction. InsufficientStock leaves neither behind.
- total_cents = quantity x unit_price_cents, half-up to the cent. No tax.

Payments:
- Append-only. Sale.status / Sale.total_paid_cents are caches recomputed
  from the full payment log on every payment write, under a row lock.
- Overpayment is accepted; the excess is reported as surplus, never
  silently moved to the client's credit.

Credit:
- credit_balance_cents never goes below 0.
- apply_credit applies min(amount, remaining) and decrements the credit by
  exactly what was applied. Client and sale are locked together.
"""


METHOD_CASH = "CASH"
METHOD_TRANSFER = "TRANSFER"
METHOD_CHECK = "CHECK"
METHOD_CARD = "CARD"
METHOD_CREDIT_BALANCE = "CREDIT_BALANCE"

PAYMENT_METHODS = [METHOD_CASH, METHOD_TRANSFER, METHOD_CHECK, METHOD_CARD, METHOD_CREDIT_BALANCE]


@dataclass
class CreditApplication:
    payment: Payment
    amount_applied_cents: int
    remaining_credit_cents: int
    sale: Sale

    def to_dict(self) -> dict:
        return {
            "payment": self.payment.to_dict(),
            "amount_applied_cents": self.amount_applied_cents,
            "remaining_credit_cents": self.remaining_credit_cents,
            "sale": self.sale.to_dict(),
        }


def _validate_amount(amount_cents) -> int:
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise InvalidAmount(amount_cents)
    return amount_cents


def _load_sale_locked(sale_id: int) -> Sale:
    sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
    if sale is None:
        raise NotFound("Sale", sale_id)
    return sale


def _recompute(sale: Sale):
    """Refresh the cached settlement fields from the payment log."""
    amounts = [
        amount for (amount,) in db.session.query(Payment.amount_cents).filter(Payment.sale_id == sale.id)
    ]
    state = compute_settlement(sale.total_cents, amounts)
    sale.total_paid_cents = state.total_paid_cents
    sale.status = state.status
    return state


# =============================================================================
# WRITES
# =============================================================================

def create_sale(
    client_id: int,
    presentation: str,
    quantity,
    unit_price_cents: int,
    lot: str | None = None,
    notes: str | None = None,
    sold_at=None,
) -> Sale:
    """
    Register a sale and take the pellets out of the PRODUCT ledger.

    Raises:
        InvalidQuantity: quantity <= 0
        InvalidAmount: negative unit price
        InvalidInput: unknown presentation
        NotFound: unknown client
        InsufficientStock: not enough product; nothing is written
    """
    try:
        qty = round_quantity(quantity)
    except ValueError:
        raise InvalidQuantity(quantity)
    if qty <= 0:
        raise InvalidQuantity(quantity)
    if isinstance(unit_price_cents, bool) or not isinstance(unit_price_cents, int) or unit_price_cents < 0:
        raise InvalidAmount(unit_price_cents, "Unit price cannot be negative")
    ledger.normalize_key(ledger.LEDGER_PRODUCT, presentation)
    try:
        sold_dt = normalize_datetime(sold_at, default=utcnow())
    except ValueError:
        raise InvalidInput("invalid sold_at")

    total_cents = line_total_cents(qty, unit_price_cents)
    # Same rule as every later recompute (a zero total starts settled)
    opening = compute_settlement(total_cents, [])

    def _op():
        if db.session.get(Client, client_id) is None:
            raise NotFound("Client", client_id)

        sale = Sale(
            client_id=client_id,
            sold_at=sold_dt,
            presentation=presentation,
            quantity=qty,
            unit_price_cents=unit_price_cents,
            total_cents=total_cents,
            lot=lot,
            notes=notes,
            status=opening.status,
            total_paid_cents=0,
        )
        db.session.add(sale)
        db.session.flush()

        ledger.apply_movement(
            ledger.LEDGER_PRODUCT,
            presentation,
            ledger.KIND_OUTBOUND,
            qty,
            reference=f"Sale {sale.id}",
            notes=notes,
            sale_id=sale.id,
            occurred_at=sold_dt,
            commit=False,
        )

        db.session.commit()
        current_app.logger.info(
            "Sale %s created: client %s, %s x %s, total %s cents",
            sale.id, client_id, qty, presentation, sale.total_cents,
        )
        return sale

    return run_in_transaction(_op)


def record_sale_payment(
    sale_id: int,
    amount_cents: int,
    method: str,
    reference: str | None = None,
    notes: str | None = None,
    check_id: int | None = None,
    check_details: dict | None = None,
    paid_at=None,
) -> Payment:
    """
    Append a payment to a sale and recompute its status.

    check_id links an existing check; check_details registers a new one
    inside the same transaction (a duplicate number rolls back the payment).

    Raises:
        InvalidAmount, InvalidInput, NotFound, DuplicateCheckNumber
    """
    _validate_amount(amount_cents)
    if method not in PAYMENT_METHODS or method == METHOD_CREDIT_BALANCE:
        # CREDIT_BALANCE payments only come from apply_credit
        raise InvalidInput(f"Invalid payment method: {method}")
    if check_id is not None and check_details is not None:
        raise InvalidInput("Pass either check_id or check_details, not both")
    try:
        paid_dt = normalize_datetime(paid_at, default=utcnow())
    except ValueError:
        raise InvalidInput("invalid paid_at")

    def _op():
        sale = _load_sale_locked(sale_id)

        payment = Payment(
            sale_id=sale.id,
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
            if check.client_payment_id is not None:
                raise InvalidInput(
                    f"Check {check.check_number} is already linked to payment {check.client_payment_id}"
                )
            check_service.normalize_expiry(check)
            check.client_payment_id = payment.id
            payment.check_id = check.id
        elif check_details is not None:
            check = check_service._create_check_inner(
                client_payment_id=payment.id,
                **check_details,
            )
            payment.check_id = check.id

        state = _recompute(sale)
        db.session.commit()
        current_app.logger.info(
            "Payment %s on sale %s: %s cents via %s -> %s (paid %s / %s)",
            payment.id, sale.id, amount_cents, method, state.status,
            state.total_paid_cents, state.total_cents,
        )
        return payment

    return run_in_transaction(_op)


def apply_credit(client_id: int, sale_id: int, amount_cents: int) -> CreditApplication:
    """
    Pay a sale out of the client's credit balance.

    Only min(amount, remaining) is applied and debited from the credit.

    Raises:
        InvalidAmount: amount <= 0
        NotFound: unknown client or sale
        InsufficientCredit: credit balance < amount
        SaleNotOwnedByClient: the sale belongs to another client
        SaleFullyPaid: nothing left to pay on the sale
    """
    _validate_amount(amount_cents)

    def _op():
        client = lock_for_update(db.session.query(Client).filter_by(id=client_id)).first()
        if client is None:
            raise NotFound("Client", client_id)
        sale = _load_sale_locked(sale_id)

        available = client.credit_balance_cents or 0
        if available < amount_cents:
            raise InsufficientCredit(available, amount_cents)
        if sale.client_id != client.id:
            raise SaleNotOwnedByClient(sale.id, client.id)

        state = _recompute(sale)
        if state.remaining_cents <= 0:
            raise SaleFullyPaid(sale.id)

        to_apply = min(amount_cents, state.remaining_cents)
        payment = Payment(
            sale_id=sale.id,
            amount_cents=to_apply,
            method=METHOD_CREDIT_BALANCE,
            paid_at=utcnow(),
            reference="Credit balance",
            notes=f"Credit applied to sale {sale.id}",
        )
        db.session.add(payment)
        client.credit_balance_cents = available - to_apply
        db.session.flush()

        state = _recompute(sale)
        db.session.commit()
        current_app.logger.info(
            "Credit applied: client %s, sale %s, %s cents (credit left %s) -> %s",
            client.id, sale.id, to_apply, client.credit_balance_cents, state.status,
        )
        return CreditApplication(
            payment=payment,
            amount_applied_cents=to_apply,
            remaining_credit_cents=client.credit_balance_cents,
            sale=sale,
        )

    return run_in_transaction(_op)


# =============================================================================
# READ SIDE
# =============================================================================

def get_sale_settlement(sale_id: int) -> dict:
    sale = db.session.get(Sale, sale_id)
    if sale is None:
        raise NotFound("Sale", sale_id)
    state = compute_settlement(sale.total_cents, [p.amount_cents for p in sale.payments])
    data = state.to_dict()
    data["sale_id"] = sale.id
    data["client_id"] = sale.client_id
    data["payments"] = [p.to_dict() for p in sale.payments]
    return data


def list_sales(
    *,
    client_id: int | None = None,
    status: str | None = None,
    page: int = 1,
    limit: int = 10,
) -> dict:
    if status is not None and status not in SETTLEMENT_STATUSES:
        raise InvalidStatus(status, SETTLEMENT_STATUSES)
    page = max(1, page)
    limit = max(1, min(limit, 200))

    query = db.session.query(Sale, Client.name, Client.company).join(Client, Client.id == Sale.client_id)
    if client_id is not None:
        query = query.filter(Sale.client_id == client_id)
    if status is not None:
        query = query.filter(Sale.status == status)

    total = query.count()
    rows = (
        query.order_by(Sale.sold_at.desc(), Sale.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )

    sales = []
    for sale, client_name, client_company in rows:
        data = sale.to_dict()
        data["client_name"] = client_name
        data["client_company"] = client_company
        sales.append(data)

    return {
        "sales": sales,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }


def sales_summary() -> dict:
    """Totals over all sales, the top 5 clients by amount and the 5 latest sales."""
    count, invoiced, paid = db.session.query(
        func.count(Sale.id),
        func.coalesce(func.sum(Sale.total_cents), 0),
        func.coalesce(func.sum(Sale.total_paid_cents), 0),
    ).one()

    by_status = dict(
        db.session.query(Sale.status, func.count(Sale.id)).group_by(Sale.status).all()
    )

    top_rows = (
        db.session.query(
            Client.id,
            Client.name,
            Client.company,
            func.count(Sale.id),
            func.sum(Sale.total_cents),
        )
        .join(Sale, Sale.client_id == Client.id)
        .group_by(Client.id, Client.name, Client.company)
        .order_by(func.sum(Sale.total_cents).desc())
        .limit(5)
        .all()
    )

    recent = db.session.query(Sale).order_by(Sale.sold_at.desc(), Sale.id.desc()).limit(5).all()

    return {
        "count": int(count),
        "total_invoiced_cents": int(invoiced),
        "total_paid_cents": int(paid),
        "total_pending_cents": max(0, int(invoiced) - int(paid)),
        "average_sale_cents": int(invoiced) // int(count) if count else 0,
        "by_status": {status: int(by_status.get(status, 0)) for status in SETTLEMENT_STATUSES},
        "top_clients": [
            {
                "client_id": cid,
                "name": name,
                "company": company,
                "sales": int(n),
                "total_cents": int(total or 0),
            }
            for cid, name, company, n, total in top_rows
        ],
        "recent_sales": [s.to_dict() for s in recent],
    }
