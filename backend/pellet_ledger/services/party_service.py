# Overview: Service-layer operations for clients and suppliers; encapsulates business logic and database work.

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import Client, Supplier
from .concurrency import lock_for_update, run_in_transaction, flush_or_conflict
from .errors import DuplicateRecord, InvalidAmount, InvalidInput, NotFound


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _required(value: str | None, field: str) -> str:
    cleaned = _clean(value)
    if not cleaned:
        raise InvalidInput(f"{field} is required")
    return cleaned


def create_client(
    *,
    name: str,
    company: str,
    cuit: str,
    contact: str,
    email: str | None = None,
    address: str | None = None,
    phone: str | None = None,
    credit_balance_cents: int = 0,
) -> Client:
    """
    Create a client. CUIT is unique; the constraint is the source of truth,
    the pre-check only gives a friendlier error on the common path.
    """
    cuit = _required(cuit, "cuit")
    if credit_balance_cents < 0:
        raise InvalidAmount(credit_balance_cents, "Initial credit balance cannot be negative")

    def _op():
        if db.session.query(Client.id).filter_by(cuit=cuit).first():
            raise DuplicateRecord("Client", "cuit", cuit)

        client = Client(
            name=_required(name, "name"),
            company=_required(company, "company"),
            cuit=cuit,
            contact=_required(contact, "contact"),
            email=_clean(email).lower() if _clean(email) else None,
            address=_clean(address),
            phone=_clean(phone),
            credit_balance_cents=credit_balance_cents,
        )
        db.session.add(client)
        flush_or_conflict(lambda: DuplicateRecord("Client", "cuit", cuit))
        db.session.commit()
        return client

    return run_in_transaction(_op)


def create_supplier(
    *,
    business_name: str,
    cuit: str,
    contact: str,
    email: str | None = None,
    address: str | None = None,
    phone: str | None = None,
) -> Supplier:
    cuit = _required(cuit, "cuit")

    def _op():
        if db.session.query(Supplier.id).filter_by(cuit=cuit).first():
            raise DuplicateRecord("Supplier", "cuit", cuit)

        supplier = Supplier(
            business_name=_required(business_name, "business_name"),
            cuit=cuit,
            contact=_required(contact, "contact"),
            email=_clean(email).lower() if _clean(email) else None,
            address=_clean(address),
            phone=_clean(phone),
        )
        db.session.add(supplier)
        flush_or_conflict(lambda: DuplicateRecord("Supplier", "cuit", cuit))
        db.session.commit()
        return supplier

    return run_in_transaction(_op)


def get_client(client_id: int) -> Client:
    client = db.session.get(Client, client_id)
    if client is None:
        raise NotFound("Client", client_id)
    return client


def get_supplier(supplier_id: int) -> Supplier:
    supplier = db.session.get(Supplier, supplier_id)
    if supplier is None:
        raise NotFound("Supplier", supplier_id)
    return supplier


def get_client_credit(client_id: int) -> dict:
    client = get_client(client_id)
    return {
        "client_id": client.id,
        "client_name": client.name,
        "client_company": client.company,
        "credit_balance_cents": client.credit_balance_cents or 0,
    }


def grant_client_credit(client_id: int, amount_cents: int, reason: str | None = None) -> Client:
    """
    Increase a client's credit balance (pre-payment, refund of a surplus, ...).

    This is the only way credit goes up; apply_credit is the only way down.
    """
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise InvalidAmount(amount_cents)

    def _op():
        client = lock_for_update(db.session.query(Client).filter_by(id=client_id)).first()
        if client is None:
            raise NotFound("Client", client_id)
        client.credit_balance_cents = (client.credit_balance_cents or 0) + amount_cents
        db.session.commit()
        current_app.logger.info(
            "Credit granted to client %s: +%s cents (%s)", client_id, amount_cents, reason or "no reason given"
        )
        return client

    return run_in_transaction(_op)
