from __future__ import annotations

from ..extensions import db
from pellet_ledger.time_utils import to_utc_z


class Invoice(db.Model):
    """
    Supplier invoice.

    Amount invariants (cents):
    - subtotal_cents = sum(line.total_cents)
    - tax_cents      = round(subtotal_cents * TAX_RATE)
    - total_cents    = subtotal_cents + tax_cents

    status / total_paid_cents are cached from supplier_payments, same rule
    as Sale.
    """
    __tablename__ = "invoices"
    __table_args__ = (
        db.UniqueConstraint("supplier_id", "invoice_number", name="uq_invoices_supplier_number"),
        db.Index("ix_invoices_supplier_status", "supplier_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=False, index=True)

    invoice_number = db.Column(db.String(64), nullable=False)
    invoice_date = db.Column(db.DateTime(timezone=True), nullable=False)
    due_date = db.Column(db.DateTime(timezone=True), nullable=True)
    concept = db.Column(db.String(255), nullable=False, default="Factura de proveedor")

    subtotal_cents = db.Column(db.Integer, nullable=False)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False)

    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)
    total_paid_cents = db.Column(db.Integer, nullable=False, default=0)

    notes = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    supplier = db.relationship("Supplier", backref=db.backref("invoices", lazy=True))
    lines = db.relationship("InvoiceLine", backref="invoice", lazy=True, order_by="InvoiceLine.id")
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Invoice id={self.id} number={self.invoice_number!r} total_cents={self.total_cents} status={self.status}>"

    def to_dict(self, include_lines: bool = False) -> dict:
        data = {
            "id": self.id,
            "supplier_id": self.supplier_id,
            "invoice_number": self.invoice_number,
            "invoice_date": to_utc_z(self.invoice_date),
            "due_date": to_utc_z(self.due_date) if self.due_date else None,
            "concept": self.concept,
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "status": self.status,
            "total_paid_cents": self.total_paid_cents,
            "pending_cents": max(0, self.total_cents - self.total_paid_cents),
            "notes": self.notes,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class InvoiceLine(db.Model):
    """
    Line item on a supplier invoice.

    LINE TYPES:
    - ROLL_ALFALFA / ROLL_OTHER: inbound on the ROLL ledger
      (quantity x weight_kg when weight_kg is given)
    - SUPPLY: inbound on the SUPPLY ledger, keyed by description
    - SERVICE / OTHER: money only
    """
    __tablename__ = "invoice_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)

    description = db.Column(db.String(255), nullable=False)
    line_type = db.Column(db.String(16), nullable=False)
    quantity = db.Column(db.Float, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    total_cents = db.Column(db.Integer, nullable=False)
    weight_kg = db.Column(db.Float, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "description": self.description,
            "line_type": self.line_type,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "total_cents": self.total_cents,
            "weight_kg": self.weight_kg,
        }


class SupplierPayment(db.Model):
    """Payment made to a supplier against an invoice. Append-only."""
    __tablename__ = "supplier_payments"
    __table_args__ = (
        db.CheckConstraint("amount_cents > 0", name="ck_supplier_payments_amount_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    method = db.Column(db.String(32), nullable=False)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=False)

    reference = db.Column(db.String(255), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    check_id = db.Column(db.Integer, db.ForeignKey("checks.id", ondelete="SET NULL"), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    invoice = db.relationship("Invoice", backref=db.backref("payments", lazy=True, order_by="SupplierPayment.id"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "amount_cents": self.amount_cents,
            "method": self.method,
            "paid_at": to_utc_z(self.paid_at),
            "reference": self.reference,
            "notes": self.notes,
            "check_id": self.check_id,
            "created_at": to_utc_z(self.created_at),
        }
