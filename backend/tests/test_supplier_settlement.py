"""
Supplier settlement tests.

Invoice tax arithmetic, inbound stock from invoice lines, supplier payments
(including endorsed checks) and the tax repair procedure.
"""

from datetime import timedelta

import pytest

from pellet_ledger.extensions import db
from pellet_ledger.models import Check, Invoice, InvoiceLine, StockMovement
from pellet_ledger.services import check_service, supplier_service
from pellet_ledger.services import stock_ledger_service as ledger
from pellet_ledger.services.errors import (
    DuplicateRecord,
    InvalidInput,
    InvalidQuantity,
    InvalidStatus,
    InvoiceNotFound,
    NotFound,
)
from pellet_ledger.services.settlement import STATUS_PAID, STATUS_PARTIAL, STATUS_PENDING
from pellet_ledger.time_utils import utcnow


def _roll_line(quantity=20, unit_price_cents=50_000, weight_kg=None):
    return {
        "description": "Rollo de alfalfa",
        "line_type": "ROLL_ALFALFA",
        "quantity": quantity,
        "unit_price_cents": unit_price_cents,
        "weight_kg": weight_kg,
    }


def _insert_legacy_invoice(supplier_id, number, subtotal_cents, tax_cents, total_cents, total_paid_cents=0):
    """Invoice written without going through record_invoice (pre-fix data)."""
    invoice = Invoice(
        supplier_id=supplier_id,
        invoice_number=number,
        invoice_date=utcnow(),
        subtotal_cents=subtotal_cents,
        tax_cents=tax_cents,
        total_cents=total_cents,
        status=STATUS_PENDING,
        total_paid_cents=total_paid_cents,
    )
    db.session.add(invoice)
    db.session.flush()
    db.session.add(InvoiceLine(
        invoice_id=invoice.id,
        description="Servicio de flete",
        line_type="SERVICE",
        quantity=1,
        unit_price_cents=subtotal_cents,
        total_cents=subtotal_cents,
    ))
    db.session.commit()
    return invoice


class TestRecordInvoice:
    def test_amounts(self, db_session, supplier):
        invoice = supplier_service.record_invoice(
            supplier.id,
            "A-0001-00000100",
            [
                _roll_line(quantity=20, unit_price_cents=50_000),
                {"description": "Flete", "line_type": "SERVICE", "quantity": 1, "unit_price_cents": 100_000},
            ],
        )

        assert invoice.subtotal_cents == 1_100_000
        assert invoice.tax_cents == 231_000
        assert invoice.total_cents == 1_331_000
        assert invoice.status == STATUS_PENDING
        assert len(invoice.lines) == 2

    def test_roll_lines_bring_weight_into_roll_ledger(self, db_session, supplier):
        supplier_service.record_invoice(supplier.id, "A-1", [_roll_line(quantity=10, weight_kg=450)])

        assert ledger.get_balance(ledger.LEDGER_ROLL, "ROLLO ALFALFA") == 4_500
        movement = db_session.query(StockMovement).one()
        assert movement.supplier_id == supplier.id
        assert movement.invoice_number == "A-1"

    def test_roll_lines_without_weight_count_units(self, db_session, supplier):
        supplier_service.record_invoice(
            supplier.id, "A-2",
            [dict(_roll_line(quantity=3), line_type="ROLL_OTHER", description="Rollo de moha")],
        )
        assert ledger.get_balance(ledger.LEDGER_ROLL, "ROLLO OTRO") == 3

    def test_supply_lines_keyed_by_description(self, db_session, supplier):
        supplier_service.record_invoice(
            supplier.id, "A-3",
            [{"description": "Bentonita", "line_type": "SUPPLY", "quantity": 250, "unit_price_cents": 300}],
        )
        assert ledger.get_balance(ledger.LEDGER_SUPPLY, "BENTONITA") == 250

    def test_service_lines_do_not_touch_stock(self, db_session, supplier):
        supplier_service.record_invoice(
            supplier.id, "A-4",
            [{"description": "Flete", "line_type": "SERVICE", "quantity": 1, "unit_price_cents": 10_000}],
        )
        assert db_session.query(StockMovement).count() == 0

    def test_duplicate_number_per_supplier(self, db_session, supplier):
        supplier_service.record_invoice(supplier.id, "A-5", [_roll_line()])

        with pytest.raises(DuplicateRecord):
            supplier_service.record_invoice(supplier.id, "A-5", [_roll_line()])

        assert db_session.query(Invoice).count() == 1
        assert ledger.get_balance(ledger.LEDGER_ROLL, "ROLLO ALFALFA") == 20

    def test_requires_lines(self, db_session, supplier):
        with pytest.raises(InvalidInput):
            supplier_service.record_invoice(supplier.id, "A-6", [])

    def test_bad_line_writes_nothing(self, db_session, supplier):
        with pytest.raises(InvalidQuantity):
            supplier_service.record_invoice(supplier.id, "A-7", [_roll_line(), _roll_line(quantity=0)])
        assert db_session.query(Invoice).count() == 0
        assert db_session.query(StockMovement).count() == 0

    def test_unknown_supplier(self, db_session):
        with pytest.raises(NotFound):
            supplier_service.record_invoice(777, "A-8", [_roll_line()])


class TestSupplierPayments:
    @pytest.fixture
    def invoice(self, supplier):
        # subtotal 10000 + tax 2100
        return supplier_service.record_invoice(
            supplier.id, "B-1",
            [{"description": "Flete", "line_type": "SERVICE", "quantity": 1, "unit_price_cents": 10_000}],
        )

    def test_status_follows_payments(self, db_session, invoice):
        supplier_service.record_supplier_payment(invoice.id, 5_000, "TRANSFER")
        assert db_session.get(Invoice, invoice.id).status == STATUS_PARTIAL

        supplier_service.record_supplier_payment(invoice.id, 7_100, "CASH")
        settlement = supplier_service.get_invoice_settlement(invoice.id)
        assert settlement["status"] == STATUS_PAID
        assert settlement["remaining_cents"] == 0

    def test_unknown_invoice(self, db_session):
        with pytest.raises(InvoiceNotFound):
            supplier_service.record_supplier_payment(31337, 100, "CASH")

    def test_rejects_unknown_method(self, db_session, invoice):
        with pytest.raises(InvalidInput):
            supplier_service.record_supplier_payment(invoice.id, 100, "CREDIT_BALANCE")

    def test_paying_with_check_delivers_it(self, db_session, supplier, invoice):
        check = check_service.create_check(
            check_number="CHK-1",
            amount_cents=12_100,
            due_date=utcnow() + timedelta(days=20),
            received_from="Forrajes del Sur SA",
            issued_by="Forrajes del Sur SA",
        )

        payment = supplier_service.record_supplier_payment(invoice.id, 12_100, "CHECK", check_id=check.id)

        delivered = db_session.get(Check, check.id)
        assert delivered.status == "DELIVERED"
        assert delivered.delivered_to == "Agro Rollos SRL"
        assert delivered.invoice_id == invoice.id
        assert delivered.supplier_payment_id == payment.id
        assert db_session.get(Invoice, invoice.id).status == STATUS_PAID

    def test_expired_check_cannot_pay(self, db_session, invoice):
        check = check_service.create_check(
            check_number="CHK-OLD",
            amount_cents=12_100,
            due_date=utcnow() - timedelta(days=1),
            received_from="X",
            issued_by="X",
        )

        with pytest.raises(InvalidStatus):
            supplier_service.record_supplier_payment(invoice.id, 12_100, "CHECK", check_id=check.id)
        assert db_session.get(Invoice, invoice.id).total_paid_cents == 0


class TestRepairInvoiceTax:
    def test_repairs_missing_tax_and_is_idempotent(self, db_session, supplier):
        bad = _insert_legacy_invoice(supplier.id, "OLD-1", 1_100_000, 0, 1_100_000)

        report = supplier_service.repair_invoice_tax()

        assert report.corrected == 1
        assert report.net_delta_cents == 231_000
        repaired = db_session.get(Invoice, bad.id)
        assert repaired.tax_cents == 231_000
        assert repaired.total_cents == 1_331_000

        second = supplier_service.repair_invoice_tax()
        assert second.corrected == 0
        assert second.net_delta_cents == 0

    def test_small_drift_is_left_alone(self, db_session, supplier):
        _insert_legacy_invoice(supplier.id, "OLD-2", 10_000, 2_050, 12_050)

        assert supplier_service.repair_invoice_tax().corrected == 0

    def test_dry_run_writes_nothing(self, db_session, supplier):
        bad = _insert_legacy_invoice(supplier.id, "OLD-3", 1_100_000, 0, 1_100_000)

        report = supplier_service.repair_invoice_tax(dry_run=True)

        assert report.corrected == 1
        db.session.expire_all()
        assert db_session.get(Invoice, bad.id).tax_cents == 0

    def test_status_recomputed_against_new_total(self, db_session, supplier):
        bad = _insert_legacy_invoice(supplier.id, "OLD-4", 10_000, 0, 10_000)
        supplier_service.record_supplier_payment(bad.id, 10_000, "CASH")
        assert db_session.get(Invoice, bad.id).status == STATUS_PAID

        supplier_service.repair_invoice_tax()

        repaired = db_session.get(Invoice, bad.id)
        assert repaired.total_cents == 12_100
        assert repaired.status == STATUS_PARTIAL


class TestSupplierReadSide:
    def test_balances(self, db_session, supplier):
        first = supplier_service.record_invoice(
            supplier.id, "C-1",
            [{"description": "Flete", "line_type": "SERVICE", "quantity": 1, "unit_price_cents": 10_000}],
        )
        supplier_service.record_invoice(
            supplier.id, "C-2",
            [{"description": "Flete", "line_type": "SERVICE", "quantity": 1, "unit_price_cents": 20_000}],
        )
        supplier_service.record_supplier_payment(first.id, 12_100, "TRANSFER")

        balances = supplier_service.supplier_balances()
        row = balances["suppliers"][0]
        assert row["total_invoiced_cents"] == 36_300
        assert row["total_paid_cents"] == 12_100
        assert row["balance_cents"] == 24_200
        assert row["paid"] == 1
        assert row["pending"] == 1
        assert balances["totals"]["suppliers_with_debt"] == 1
        assert balances["totals"]["average_debt_cents"] == 24_200

        listed = supplier_service.list_invoices(supplier_id=supplier.id, status=STATUS_PENDING)
        assert [i["invoice_number"] for i in listed["invoices"]] == ["C-2"]


class TestSettlementEdges:
    def test_zero_priced_invoice_is_stored_settled(self, db_session, supplier):
        invoice = supplier_service.record_invoice(
            supplier.id, "FREE-1",
            [{"description": "Muestra de bentonita", "line_type": "SUPPLY", "quantity": 5, "unit_price_cents": 0}],
        )

        stored = db_session.get(Invoice, invoice.id).status
        assert stored == supplier_service.get_invoice_settlement(invoice.id)["status"] == STATUS_PAID

    def test_overpayment_is_kept_as_surplus(self, db_session, supplier):
        invoice = supplier_service.record_invoice(
            supplier.id, "OVER-1",
            [{"description": "Flete", "line_type": "SERVICE", "quantity": 1, "unit_price_cents": 10_000}],
        )

        supplier_service.record_supplier_payment(invoice.id, 13_000, "TRANSFER")

        settlement = supplier_service.get_invoice_settlement(invoice.id)
        assert settlement["status"] == STATUS_PAID
        assert settlement["surplus_cents"] == 900
        assert settlement["remaining_cents"] == 0
