from __future__ import annotations

from ..extensions import db
from pellet_ledger.time_utils import to_utc_z


class Client(db.Model):
    """
    Client master data.

    credit_balance_cents is a pre-paid amount the client can apply to its
    own sales. It only goes down through sales_service.apply_credit and only
    goes up through party_service.grant_client_credit.
    """
    __tablename__ = "clients"
    __table_args__ = (
        db.UniqueConstraint("cuit", name="uq_clients_cuit"),
        db.CheckConstraint("credit_balance_cents >= 0", name="ck_clients_credit_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(255), nullable=False)
    company = db.Column(db.String(255), nullable=False)
    cuit = db.Column(db.String(32), nullable=False)
    contact = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    address = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(64), nullable=True)

    credit_balance_cents = db.Column(db.Integer, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Client id={self.id} cuit={self.cuit!r} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "company": self.company,
            "cuit": self.cuit,
            "contact": self.contact,
            "email": self.email,
            "address": self.address,
            "phone": self.phone,
            "credit_balance_cents": self.credit_balance_cents,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Supplier(db.Model):
    __tablename__ = "suppliers"
    __table_args__ = (
        db.UniqueConstraint("cuit", name="uq_suppliers_cuit"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    business_name = db.Column(db.String(255), nullable=False)
    contact = db.Column(db.String(255), nullable=False)
    cuit = db.Column(db.String(32), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    address = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def __repr__(self) -> str:
        return f"<Supplier id={self.id} cuit={self.cuit!r} business_name={self.business_name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_name": self.business_name,
            "contact": self.contact,
            "cuit": self.cuit,
            "email": self.email,
            "address": self.address,
            "phone": self.phone,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
