from __future__ import annotations

from ..extensions import db
from pellet_ledger.time_utils import to_utc_z


class Check(db.Model):
    """
    Negotiable instrument (paper check or e-cheq) held by the factory.

    STATUS:
    - PENDING:   initial
    - COLLECTED, REJECTED, EXPIRED
    - DELIVERED: endorsed to a third party (usually a supplier); that party
                 may later report it COLLECTED or REJECTED

    A PENDING check whose due_date has passed is forced to EXPIRED whenever
    it is read or written (see check_service).

    Payment links are weak back-references (plain ids, no ownership).
    """
    __tablename__ = "checks"
    __table_args__ = (
        db.UniqueConstraint("check_number", name="uq_checks_check_number"),
        db.Index("ix_checks_status_due", "status", "due_date"),
        db.CheckConstraint("amount_cents > 0", name="ck_checks_amount_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    check_number = db.Column(db.String(64), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    is_electronic = db.Column(db.Boolean, nullable=False, default=False)

    reception_date = db.Column(db.DateTime(timezone=True), nullable=False)
    due_date = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    received_from = db.Column(db.String(255), nullable=False)
    issued_by = db.Column(db.String(255), nullable=False)
    bank_name = db.Column(db.String(255), nullable=True)
    account_number = db.Column(db.String(64), nullable=True)

    status = db.Column(db.String(16), nullable=False, default="PENDING")

    client_payment_id = db.Column(db.Integer, nullable=True, index=True)
    supplier_payment_id = db.Column(db.Integer, nullable=True, index=True)

    delivered_to = db.Column(db.String(255), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_for = db.Column(db.String(255), nullable=True)
    invoice_id = db.Column(db.Integer, nullable=True)

    notes = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Check id={self.id} number={self.check_number!r} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "check_number": self.check_number,
            "amount_cents": self.amount_cents,
            "is_electronic": self.is_electronic,
            "reception_date": to_utc_z(self.reception_date),
            "due_date": to_utc_z(self.due_date),
            "received_from": self.received_from,
            "issued_by": self.issued_by,
            "bank_name": self.bank_name,
            "account_number": self.account_number,
            "status": self.status,
            "client_payment_id": self.client_payment_id,
            "supplier_payment_id": self.supplier_payment_id,
            "delivered_to": self.delivered_to,
            "delivered_at": to_utc_z(self.delivered_at) if self.delivered_at else None,
            "delivered_for": self.delivered_for,
            "invoice_id": self.invoice_id,
            "notes": self.notes,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
