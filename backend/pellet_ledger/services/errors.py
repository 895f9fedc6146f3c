# Overview: Caller-visible failures raised by the ledger and settlement services.

"""
Every error here is recoverable: the service rolls the transaction back and
the caller decides what to do. ConcurrencyConflict is the only retryable one.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for ledger/settlement failures."""
    code = "LEDGER_ERROR"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, "details": self.details}


class InvalidQuantity(LedgerError):
    code = "INVALID_QUANTITY"

    def __init__(self, quantity):
        super().__init__(f"Quantity must be positive (got {quantity!r})", {"quantity": quantity})


class InvalidAmount(LedgerError):
    code = "INVALID_AMOUNT"

    def __init__(self, amount_cents, message: str | None = None):
        super().__init__(
            message or f"Amount must be positive (got {amount_cents!r})",
            {"amount_cents": amount_cents},
        )


class InvalidInput(LedgerError):
    code = "INVALID_INPUT"


class InsufficientStock(LedgerError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, available: float, requested: float | None = None, *, ledger: str | None = None, key: str | None = None):
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for {key or 'key'}: available {available}, requested {requested}",
            {"ledger": ledger, "key": key, "available": available, "requested": requested},
        )


class InsufficientCredit(LedgerError):
    code = "INSUFFICIENT_CREDIT"

    def __init__(self, available_cents: int, requested_cents: int):
        self.available_cents = available_cents
        self.requested_cents = requested_cents
        super().__init__(
            f"Insufficient credit balance: available {available_cents}, requested {requested_cents}",
            {"available_cents": available_cents, "requested_cents": requested_cents},
        )


class SaleNotOwnedByClient(LedgerError):
    code = "SALE_NOT_OWNED_BY_CLIENT"

    def __init__(self, sale_id: int, client_id: int):
        super().__init__(
            f"Sale {sale_id} does not belong to client {client_id}",
            {"sale_id": sale_id, "client_id": client_id},
        )


class SaleFullyPaid(LedgerError):
    code = "SALE_FULLY_PAID"

    def __init__(self, sale_id: int):
        super().__init__(f"Sale {sale_id} has no remaining balance", {"sale_id": sale_id})


class NotFound(LedgerError):
    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found", {"entity": entity, "id": entity_id})


class InvoiceNotFound(NotFound):
    code = "INVOICE_NOT_FOUND"

    def __init__(self, invoice_id):
        super().__init__("Invoice", invoice_id)


class DuplicateRecord(LedgerError):
    code = "DUPLICATE_RECORD"

    def __init__(self, entity: str, field: str, value):
        super().__init__(
            f"{entity} with {field}={value!r} already exists",
            {"entity": entity, "field": field, "value": value},
        )


class DuplicateCheckNumber(DuplicateRecord):
    code = "DUPLICATE_CHECK_NUMBER"

    def __init__(self, check_number: str):
        super().__init__("Check", "check_number", check_number)


class InvalidStatus(LedgerError):
    code = "INVALID_STATUS"

    def __init__(self, status, allowed):
        super().__init__(
            f"Invalid status {status!r}. Must be one of {list(allowed)}",
            {"status": status, "allowed": list(allowed)},
        )


class CannotDeleteCollected(LedgerError):
    code = "CANNOT_DELETE_COLLECTED"

    def __init__(self, check_id: int):
        super().__init__(f"Check {check_id} was already collected and cannot be deleted", {"check_id": check_id})


class ConcurrencyConflict(LedgerError):
    """A concurrent writer got there first. Safe to retry the whole call."""
    code = "CONCURRENCY_CONFLICT"
