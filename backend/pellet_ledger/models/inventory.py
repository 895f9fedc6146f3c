from __future__ import annotations

from ..extensions import db
from pellet_ledger.time_utils import to_utc_z


class StockBalance(db.Model):
    """
    Current quantity of one ledger key.

    Three ledgers share this table: PRODUCT (finished pellets, keyed by
    presentation), ROLL (raw alfalfa rolls) and SUPPLY (purchased supplies).
    Rows are created at quantity 0 on the first inbound movement and are only
    ever changed by stock_ledger_service.apply_movement.

    supplier_id / invoice_number record the provenance of the last inbound
    movement that came from a supplier invoice.
    """
    __tablename__ = "stock_balances"
    __table_args__ = (
        db.UniqueConstraint("ledger", "key", name="uq_stock_balances_ledger_key"),
        db.CheckConstraint("quantity >= 0", name="ck_stock_balances_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    ledger = db.Column(db.String(16), nullable=False, index=True)
    key = db.Column(db.String(128), nullable=False)

    quantity = db.Column(db.Float, nullable=False, default=0.0)
    unit = db.Column(db.String(16), nullable=False, default="kg")
    min_stock = db.Column(db.Float, nullable=False, default=0.0)

    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=True)
    invoice_number = db.Column(db.String(64), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    supplier = db.relationship("Supplier")
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<StockBalance ledger={self.ledger} key={self.key!r} quantity={self.quantity}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ledger": self.ledger,
            "key": self.key,
            "quantity": self.quantity,
            "unit": self.unit,
            "min_stock": self.min_stock,
            "supplier_id": self.supplier_id,
            "invoice_number": self.invoice_number,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockMovement(db.Model):
    """Immutable quantity change applied to a ledger key."""
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_ledger_key_occurred", "ledger", "key", "occurred_at"),
        db.CheckConstraint("quantity > 0", name="ck_stock_movements_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    ledger = db.Column(db.String(16), nullable=False)
    key = db.Column(db.String(128), nullable=False)

    # INBOUND, OUTBOUND, PRODUCTION
    kind = db.Column(db.String(16), nullable=False, index=True)
    quantity = db.Column(db.Float, nullable=False)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    reference = db.Column(db.String(255), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    # Provenance / linkage (all optional)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=True)
    invoice_number = db.Column(db.String(64), nullable=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True, index=True)
    production_id = db.Column(db.Integer, db.ForeignKey("productions.id"), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def signed_quantity(self) -> float:
        return self.quantity if self.kind == "INBOUND" else -self.quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ledger": self.ledger,
            "key": self.key,
            "kind": self.kind,
            "quantity": self.quantity,
            "occurred_at": to_utc_z(self.occurred_at),
            "reference": self.reference,
            "notes": self.notes,
            "supplier_id": self.supplier_id,
            "invoice_number": self.invoice_number,
            "sale_id": self.sale_id,
            "production_id": self.production_id,
            "created_at": to_utc_z(self.created_at),
        }


class Production(db.Model):
    """
    Production run: rolls (and supplies) in, pellets out.

    lot_number is unique; duplicates are rejected at insertion.
    """
    __tablename__ = "productions"
    __table_args__ = (
        db.UniqueConstraint("lot_number", name="uq_productions_lot_number"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    lot_number = db.Column(db.String(32), nullable=False)

    roll_key = db.Column(db.String(128), nullable=False)
    roll_quantity = db.Column(db.Float, nullable=False)
    total_output = db.Column(db.Float, nullable=False)

    # 0..1
    efficiency = db.Column(db.Float, nullable=False)

    operator = db.Column(db.String(128), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    produced_at = db.Column(db.DateTime(timezone=True), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    movements = db.relationship("StockMovement", backref="production", lazy=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "lot_number": self.lot_number,
            "roll_key": self.roll_key,
            "roll_quantity": self.roll_quantity,
            "total_output": self.total_output,
            "efficiency": self.efficiency,
            "operator": self.operator,
            "notes": self.notes,
            "produced_at": to_utc_z(self.produced_at),
            "created_at": to_utc_z(self.created_at),
        }
