"""
Sales settlement tests.

Sale creation against the PRODUCT ledger, payment status recomputation,
check-backed payments and client credit application.
"""

from datetime import datetime, timedelta

import pytest

from pellet_ledger.models import Check, Client, Payment, Sale, StockMovement
from pellet_ledger.services import party_service, sales_service
from pellet_ledger.services import stock_ledger_service as ledger
from pellet_ledger.services.errors import (
    DuplicateCheckNumber,
    DuplicateRecord,
    InsufficientCredit,
    InsufficientStock,
    InvalidAmount,
    InvalidInput,
    InvalidQuantity,
    NotFound,
    SaleFullyPaid,
    SaleNotOwnedByClient,
)
from pellet_ledger.services.settlement import STATUS_PAID, STATUS_PARTIAL, STATUS_PENDING
from pellet_ledger.time_utils import utcnow


def _check_details(number="00012345", amount_cents=4_000, days=30):
    return {
        "check_number": number,
        "amount_cents": amount_cents,
        "due_date": utcnow() + timedelta(days=days),
        "received_from": "Forrajes del Sur SA",
        "issued_by": "Forrajes del Sur SA",
        "bank_name": "Banco Nacion",
    }


class TestCreateSale:
    def test_sale_takes_product_out_of_ledger(self, db_session, customer, granel_500):
        sale = sales_service.create_sale(customer.id, "Granel", 200, 22_000, lot="LOTE-00001")

        assert sale.status == STATUS_PENDING
        assert sale.total_cents == 4_400_000
        assert ledger.get_balance(ledger.LEDGER_PRODUCT, "Granel") == 300

        movement = db_session.query(StockMovement).filter_by(sale_id=sale.id).one()
        assert movement.kind == ledger.KIND_OUTBOUND
        assert movement.reference == f"Sale {sale.id}"
        assert movement.quantity == 200

    def test_insufficient_stock_rolls_back_the_sale(self, db_session, customer, granel_500):
        with pytest.raises(InsufficientStock) as exc:
            sales_service.create_sale(customer.id, "Granel", 600, 22_000)

        assert exc.value.available == 500
        assert ledger.get_balance(ledger.LEDGER_PRODUCT, "Granel") == 500
        assert db_session.query(Sale).count() == 0
        assert db_session.query(StockMovement).count() == 1

    def test_rejects_bad_input_before_writing(self, db_session, customer, granel_500):
        with pytest.raises(InvalidQuantity):
            sales_service.create_sale(customer.id, "Granel", 0, 100)
        with pytest.raises(InvalidAmount):
            sales_service.create_sale(customer.id, "Granel", 10, -1)
        with pytest.raises(InvalidInput):
            sales_service.create_sale(customer.id, "Tonel", 10, 100)
        assert db_session.query(Sale).count() == 0

    def test_unknown_client(self, db_session, granel_500):
        with pytest.raises(NotFound):
            sales_service.create_sale(9999, "Granel", 10, 100)
        assert ledger.get_balance(ledger.LEDGER_PRODUCT, "Granel") == 500

    def test_movement_listing_shows_client(self, db_session, customer, granel_500):
        sales_service.create_sale(customer.id, "Granel", 10, 100)

        result = ledger.list_movements(ledger.LEDGER_PRODUCT, kind=ledger.KIND_OUTBOUND)
        assert result["movements"][0]["client_name"] == "Juan Perez"
        assert result["movements"][0]["client_company"] == "Forrajes del Sur SA"


class TestSalePayments:
    @pytest.fixture
    def sale(self, customer, bags_stock):
        # 10 bags at 1000 cents = 10000 cents
        return sales_service.create_sale(customer.id, "Bolsa 25kg", 10, 1_000)

    def test_partial_then_paid_then_surplus(self, db_session, sale):
        sales_service.record_sale_payment(sale.id, 4_000, "CASH")
        assert db_session.get(Sale, sale.id).status == STATUS_PARTIAL

        sales_service.record_sale_payment(sale.id, 6_000, "TRANSFER", reference="TRX-991")
        assert db_session.get(Sale, sale.id).status == STATUS_PAID

        sales_service.record_sale_payment(sale.id, 1, "CASH")
        settlement = sales_service.get_sale_settlement(sale.id)
        assert settlement["status"] == STATUS_PAID
        assert settlement["total_paid_cents"] == 10_001
        assert settlement["surplus_cents"] == 1
        assert settlement["remaining_cents"] == 0
        assert len(settlement["payments"]) == 3

    def test_one_cent_short_counts_as_paid(self, db_session, sale):
        sales_service.record_sale_payment(sale.id, 9_999, "CASH")
        assert db_session.get(Sale, sale.id).status == STATUS_PAID

    def test_cached_totals_match_payment_log(self, db_session, sale):
        for amount in (1_500, 2_500, 3_000):
            sales_service.record_sale_payment(sale.id, amount, "CARD")

        refreshed = db_session.get(Sale, sale.id)
        logged = sum(p.amount_cents for p in db_session.query(Payment).filter_by(sale_id=sale.id))
        assert refreshed.total_paid_cents == logged == 7_000
        assert refreshed.status == STATUS_PARTIAL

    @pytest.mark.parametrize("amount", [0, -100])
    def test_rejects_non_positive_amount(self, db_session, sale, amount):
        with pytest.raises(InvalidAmount):
            sales_service.record_sale_payment(sale.id, amount, "CASH")

    def test_rejects_unknown_method(self, db_session, sale):
        with pytest.raises(InvalidInput):
            sales_service.record_sale_payment(sale.id, 100, "BARTER")

    def test_credit_balance_method_is_reserved(self, db_session, sale):
        with pytest.raises(InvalidInput):
            sales_service.record_sale_payment(sale.id, 100, "CREDIT_BALANCE")

    def test_unknown_sale(self, db_session):
        with pytest.raises(NotFound):
            sales_service.record_sale_payment(424242, 100, "CASH")

    def test_payment_with_new_check(self, db_session, sale):
        payment = sales_service.record_sale_payment(
            sale.id, 4_000, "CHECK", check_details=_check_details(),
        )

        check = db_session.query(Check).filter_by(check_number="00012345").one()
        assert payment.check_id == check.id
        assert check.client_payment_id == payment.id
        assert check.status == "PENDING"

    def test_duplicate_check_number_rolls_back_payment(self, db_session, sale):
        sales_service.record_sale_payment(sale.id, 4_000, "CHECK", check_details=_check_details())

        with pytest.raises(DuplicateCheckNumber):
            sales_service.record_sale_payment(sale.id, 2_000, "CHECK", check_details=_check_details())

        assert db_session.query(Payment).filter_by(sale_id=sale.id).count() == 1
        assert db_session.get(Sale, sale.id).total_paid_cents == 4_000


class TestApplyCredit:
    @pytest.fixture
    def sale(self, customer, bags_stock):
        return sales_service.create_sale(customer.id, "Bolsa 25kg", 10, 1_000)

    def test_applies_requested_amount(self, db_session, customer, sale):
        party_service.grant_client_credit(customer.id, 5_000, reason="Advance payment")

        result = sales_service.apply_credit(customer.id, sale.id, 3_000)

        assert result.amount_applied_cents == 3_000
        assert result.remaining_credit_cents == 2_000
        assert result.payment.method == "CREDIT_BALANCE"
        assert db_session.get(Sale, sale.id).status == STATUS_PARTIAL

    def test_applies_only_what_is_owed(self, db_session, customer, sale):
        party_service.grant_client_credit(customer.id, 20_000)
        sales_service.record_sale_payment(sale.id, 7_000, "CASH")

        result = sales_service.apply_credit(customer.id, sale.id, 5_000)

        assert result.amount_applied_cents == 3_000
        assert result.remaining_credit_cents == 17_000
        assert db_session.get(Client, customer.id).credit_balance_cents == 17_000
        assert db_session.get(Sale, sale.id).status == STATUS_PAID

    def test_insufficient_credit(self, db_session, customer, sale):
        party_service.grant_client_credit(customer.id, 1_000)

        with pytest.raises(InsufficientCredit) as exc:
            sales_service.apply_credit(customer.id, sale.id, 2_000)

        assert exc.value.available_cents == 1_000
        assert db_session.get(Client, customer.id).credit_balance_cents == 1_000
        assert db_session.query(Payment).count() == 0

    def test_sale_of_another_client(self, db_session, other_customer, sale):
        party_service.grant_client_credit(other_customer.id, 5_000)

        with pytest.raises(SaleNotOwnedByClient):
            sales_service.apply_credit(other_customer.id, sale.id, 1_000)
        assert db_session.get(Client, other_customer.id).credit_balance_cents == 5_000

    def test_fully_paid_sale(self, db_session, customer, sale):
        party_service.grant_client_credit(customer.id, 5_000)
        sales_service.record_sale_payment(sale.id, 10_000, "CASH")

        with pytest.raises(SaleFullyPaid):
            sales_service.apply_credit(customer.id, sale.id, 1_000)
        assert db_session.get(Client, customer.id).credit_balance_cents == 5_000

    def test_credit_never_exceeds_what_was_granted(self, db_session, customer, bags_stock):
        party_service.grant_client_credit(customer.id, 6_000)
        first = sales_service.create_sale(customer.id, "Bolsa 25kg", 4, 1_000)
        second = sales_service.create_sale(customer.id, "Bolsa 25kg", 4, 1_000)

        applied = sales_service.apply_credit(customer.id, first.id, 4_000).amount_applied_cents
        with pytest.raises(InsufficientCredit):
            sales_service.apply_credit(customer.id, second.id, 4_000)
        applied += sales_service.apply_credit(customer.id, second.id, 2_000).amount_applied_cents

        assert applied == 6_000
        assert db_session.get(Client, customer.id).credit_balance_cents == 0


class TestParties:
    def test_duplicate_cuit_rejected(self, db_session, customer):
        with pytest.raises(DuplicateRecord):
            party_service.create_client(
                name="Otro", company="Otra SA", cuit="30-71234567-8", contact="X",
            )

    def test_email_is_normalized(self, customer):
        assert customer.email == "compras@forrajessur.com.ar"

    def test_grant_credit_rejects_non_positive(self, customer):
        with pytest.raises(InvalidAmount):
            party_service.grant_client_credit(customer.id, 0)

    def test_get_client_credit(self, customer):
        party_service.grant_client_credit(customer.id, 2_500)
        assert party_service.get_client_credit(customer.id)["credit_balance_cents"] == 2_500


class TestSalesReadSide:
    def test_list_and_summary(self, db_session, customer, other_customer, bags_stock):
        big = sales_service.create_sale(customer.id, "Bolsa 25kg", 100, 1_000, sold_at=datetime(2024, 5, 1))
        sales_service.create_sale(other_customer.id, "Bolsa 25kg", 10, 1_000, sold_at=datetime(2024, 5, 2))
        sales_service.record_sale_payment(big.id, 100_000, "TRANSFER")

        paid = sales_service.list_sales(status=STATUS_PAID)
        assert [s["id"] for s in paid["sales"]] == [big.id]
        assert paid["sales"][0]["client_name"] == "Juan Perez"

        summary = sales_service.sales_summary()
        assert summary["count"] == 2
        assert summary["total_invoiced_cents"] == 110_000
        assert summary["total_paid_cents"] == 100_000
        assert summary["total_pending_cents"] == 10_000
        assert summary["by_status"] == {STATUS_PENDING: 1, STATUS_PARTIAL: 0, STATUS_PAID: 1}
        assert summary["top_clients"][0]["client_id"] == customer.id
        assert summary["recent_sales"][0]["client_id"] == other_customer.id


class TestOpeningStatus:
    def test_zero_priced_sale_is_stored_settled(self, db_session, customer, granel_500):
        sale = sales_service.create_sale(customer.id, "Granel", 10, 0)

        stored = db_session.get(Sale, sale.id).status
        assert stored == sales_service.get_sale_settlement(sale.id)["status"] == STATUS_PAID
        assert [s["id"] for s in sales_service.list_sales(status=STATUS_PAID)["sales"]] == [sale.id]


class TestCheckLinks:
    def test_check_already_linked_to_a_payment_is_rejected(self, db_session, customer, bags_stock):
        sale = sales_service.create_sale(customer.id, "Bolsa 25kg", 10, 1_000)
        first = sales_service.record_sale_payment(
            sale.id, 4_000, "CHECK", check_details=_check_details(number="LNK-1"),
        )

        with pytest.raises(InvalidInput):
            sales_service.record_sale_payment(sale.id, 4_000, "CHECK", check_id=first.check_id)

        assert db_session.get(Check, first.check_id).client_payment_id == first.id
        assert db_session.query(Payment).filter_by(sale_id=sale.id).count() == 1
        assert db_session.get(Sale, sale.id).total_paid_cents == 4_000

    def test_boolean_credit_grant_rejected(self, db_session, customer):
        with pytest.raises(InvalidAmount):
            party_service.grant_client_credit(customer.id, True)
        assert db_session.get(Client, customer.id).credit_balance_cents == 0
