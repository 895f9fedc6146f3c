from __future__ import annotations

from ..extensions import db
from pellet_ledger.time_utils import to_utc_z


class Sale(db.Model):
    """
    Pellet sale to a client.

    WHY: A sale is created together with one OUTBOUND movement on the
    PRODUCT ledger (same DB transaction). Payments live in their own table.

    status and total_paid_cents are cached from the payment log and are
    recomputed on every payment write:
    - PENDING: nothing paid
    - PARTIAL: 0 < paid < total
    - PAID:    remaining <= settlement tolerance (overpayment allowed)
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.Index("ix_sales_client_status", "client_id", "status"),
        db.CheckConstraint("quantity > 0", name="ck_sales_quantity_positive"),
        db.CheckConstraint("unit_price_cents >= 0", name="ck_sales_unit_price_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"), nullable=False, index=True)

    sold_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    presentation = db.Column(db.String(32), nullable=False)
    quantity = db.Column(db.Float, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    total_cents = db.Column(db.Integer, nullable=False)

    lot = db.Column(db.String(32), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)
    total_paid_cents = db.Column(db.Integer, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    client = db.relationship("Client", backref=db.backref("sales", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Sale id={self.id} client_id={self.client_id} total_cents={self.total_cents} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "client_id": self.client_id,
            "sold_at": to_utc_z(self.sold_at),
            "presentation": self.presentation,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "total_cents": self.total_cents,
            "lot": self.lot,
            "notes": self.notes,
            "status": self.status,
            "total_paid_cents": self.total_paid_cents,
            "surplus_cents": max(0, self.total_paid_cents - self.total_cents),
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Payment(db.Model):
    """
    Client payment against a sale.

    METHODS:
    - CASH, TRANSFER, CARD
    - CHECK: optionally linked to a Check row (check_id)
    - CREDIT_BALANCE: created only by apply_credit

    Append-only: rows are never updated or deleted.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.CheckConstraint("amount_cents > 0", name="ck_payments_amount_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    method = db.Column(db.String(32), nullable=False)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=False)

    reference = db.Column(db.String(255), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    check_id = db.Column(db.Integer, db.ForeignKey("checks.id", ondelete="SET NULL"), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    sale = db.relationship("Sale", backref=db.backref("payments", lazy=True, order_by="Payment.id"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "amount_cents": self.amount_cents,
            "method": self.method,
            "paid_at": to_utc_z(self.paid_at),
            "reference": self.reference,
            "notes": self.notes,
            "check_id": self.check_id,
            "created_at": to_utc_z(self.created_at),
        }
