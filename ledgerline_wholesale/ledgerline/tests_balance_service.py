from decimal import Decimal

from django.core.exceptions import ValidationError
from django.test import TestCase

from .exceptions import NotFound
from .models import Party, PartyTransaction, SalesOrder
from .services.balance_service import (
    Allocation, BalanceState, customer_balances, get_party_balances, supplier_balances,
)
from .services.orchestrator import TransactionOrchestrator
from .testing import LedgerFixtures


class BalanceStateRulesTest(TestCase):
    """The pure allocation rules, without touching the database."""

    def test_payment_drains_pending_then_banks_advance(self):
        state = BalanceState(pending=Decimal("50.00"))
        alloc = state.apply(state.pay(Decimal("70.00")))
        self.assertEqual(alloc, Allocation(Decimal("-50.00"), Decimal("0.00"), Decimal("20.00")))
        self.assertEqual((state.pending, state.advance), (Decimal("0.00"), Decimal("20.00")))

    def test_posted_first_payment_reduces_current_before_pending(self):
        state = BalanceState(pending=Decimal("10.00"), current=Decimal("30.00"))
        alloc = state.pay(Decimal("35.00"), posted_first=True)
        self.assertEqual(alloc.current, Decimal("-30.00"))
        self.assertEqual(alloc.pending, Decimal("-5.00"))

    def test_refund_never_drives_pending_negative(self):
        state = BalanceState(pending=Decimal("5.00"), advance=Decimal("10.00"))
        state.apply(state.refund(Decimal("40.00")))
        self.assertEqual((state.pending, state.advance), (Decimal("0.00"), Decimal("0.00")))

    def test_confirm_moves_at_most_pending(self):
        state = BalanceState(pending=Decimal("20.00"))
        alloc = state.confirm(Decimal("50.00"))
        self.assertEqual(alloc, Allocation(Decimal("-20.00"), Decimal("20.00"), Decimal("0.00")))

    def test_unwinding_a_settled_charge_returns_credit(self):
        state = BalanceState()
        alloc = state.unwind_charge(Decimal("40.00"))
        self.assertEqual(alloc.advance, Decimal("40.00"))


class PartyBalanceServiceTest(LedgerFixtures, TestCase):

    def test_charge_lands_in_pending(self):
        customer_balances.record_charge(self.customer, "100")
        self.assertBalances(self.customer, "100.00", "0.00", "0.00")
        row = PartyTransaction.objects.get(party=self.customer)
        self.assertEqual(row.transaction_type, PartyTransaction.Type.CHARGE)
        self.assertEqual(row.pending_after, Decimal("100.00"))

    def test_paying_exactly_pending_leaves_advance_untouched(self):
        customer_balances.record_charge(self.customer, "80.00")
        customer_balances.record_payment(self.customer, "80.00")
        self.assertBalances(self.customer, "0.00", "0.00", "0.00")

    def test_overpayment_goes_to_advance(self):
        customer_balances.record_charge(self.customer, "50.00")
        party = customer_balances.record_payment(self.customer, "70.00")
        self.assertBalances(self.customer, "0.00", "0.00", "20.00")
        self.assertEqual(party.last_allocation.advance, Decimal("20.00"))

    def test_refund_uses_advance_first(self):
        customer_balances.record_charge(self.customer, "30.00")
        customer_balances.record_payment(self.customer, "50.00")
        customer_balances.record_refund(self.customer, "15.00")
        self.assertBalances(self.customer, "0.00", "0.00", "5.00")

    def test_buckets_stay_non_negative_over_mixed_sequences(self):
        steps = [
            ("charge", "40"), ("payment", "55"), ("refund", "30"), ("charge", "10"),
            ("refund", "25"), ("payment", "5"), ("charge", "100"), ("payment", "120"),
            ("refund", "500"),
        ]
        for kind, amount in steps:
            getattr(customer_balances, f"record_{kind}")(self.customer, amount)
            self.customer.refresh_from_db()
            self.assertGreaterEqual(self.customer.pending_balance, 0)
            self.assertGreaterEqual(self.customer.advance_balance, 0)
            self.assertGreaterEqual(self.customer.current_balance, 0)

    def test_confirm_charge_posts_unpaid_part(self):
        customer_balances.record_charge(self.customer, "100.00")
        customer_balances.confirm_charge(self.customer, "60.00")
        self.assertBalances(self.customer, "40.00", "60.00", "0.00")

    def test_reverse_charge_undoes_posted_amount(self):
        customer_balances.record_charge(self.customer, "100.00")
        customer_balances.confirm_charge(self.customer, "100.00")
        customer_balances.reverse_charge(self.customer, "100.00", was_confirmed=True)
        self.assertBalances(self.customer, "0.00", "0.00", "0.00")

    def test_negative_amount_rejected(self):
        with self.assertRaises(ValidationError) as cm:
            customer_balances.record_payment(self.customer, "-1")
        self.assertEqual(cm.exception.code, "invalid_amount")

    def test_wrong_party_type_is_not_found(self):
        with self.assertRaises(NotFound):
            supplier_balances.record_charge(self.customer, "10")
        with self.assertRaises(NotFound):
            customer_balances.record_charge(999999, "10")

    def test_can_accept_charge_reports_new_balance(self):
        self.customer.credit_limit = Decimal("100.00")
        self.customer.save()
        customer_balances.adjust_balance(self.customer, "80.00", posted=True)

        check = customer_balances.can_accept_charge(self.customer, "30.00")
        self.assertFalse(check.allowed)
        self.assertEqual(check.new_balance, Decimal("110.00"))
        self.assertEqual(check.available_credit, Decimal("20.00"))
        self.assertTrue(customer_balances.can_accept_charge(self.customer, "20.00").allowed)

    def test_zero_credit_limit_means_unlimited(self):
        customer_balances.adjust_balance(self.customer, "5000.00", posted=True)
        check = customer_balances.can_accept_charge(self.customer, "10000.00")
        self.assertTrue(check.allowed)
        self.assertIsNone(check.available_credit)


class RecalculateBalanceTest(LedgerFixtures, TestCase):

    def setUp(self):
        super().setUp()
        self.orchestrator = TransactionOrchestrator()
        self.order = self.orchestrator.create_sales_order(
            self.customer.pk,
            items=[{"product": self.product.pk, "quantity": 2}],
            payment_method=SalesOrder.PaymentMethod.ACCOUNT,
            user=self.user,
        )

    def test_rebuilds_drifted_balances(self):
        Party.objects.filter(pk=self.customer.pk).update(current_balance=Decimal("5.00"),
                                                         advance_balance=Decimal("7.00"))
        customer_balances.recalculate_balance(self.customer)
        self.assertBalances(self.customer, "0.00", "200.00", "0.00")

    def test_is_idempotent(self):
        Party.objects.filter(pk=self.customer.pk).update(pending_balance=Decimal("33.00"))
        customer_balances.recalculate_balance(self.customer)
        first = PartyTransaction.objects.filter(
            party=self.customer, transaction_type=PartyTransaction.Type.RECALCULATION
        ).count()
        customer_balances.recalculate_balance(self.customer)
        second = PartyTransaction.objects.filter(
            party=self.customer, transaction_type=PartyTransaction.Type.RECALCULATION
        ).count()
        self.assertEqual(first, 1)
        self.assertEqual(second, 1)
        self.assertBalances(self.customer, "0.00", "200.00", "0.00")

    def test_matches_live_balances_after_payments(self):
        self.orchestrator.record_party_payment(self.customer, "250.00", user=self.user)
        self.assertBalances(self.customer, "0.00", "0.00", "50.00")
        customer_balances.recalculate_balance(self.customer)
        self.assertBalances(self.customer, "0.00", "0.00", "50.00")

    def test_party_balance_annotation(self):
        row = get_party_balances(Party.objects.filter(pk=self.customer.pk)).get()
        self.assertEqual(row.net_balance, Decimal("200.00"))
        self.assertEqual(row.open_documents, Decimal("200.00"))
