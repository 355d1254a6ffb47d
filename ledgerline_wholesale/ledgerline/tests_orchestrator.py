from datetime import date
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.test import TestCase

from .exceptions import (
    BusinessRuleError, CreditLimitExceeded, InvalidStateTransition, NotFound,
    PartialCompensationFailure,
)
from .models import (
    BankAccount, Payment, PartyTransaction, PurchaseInvoice, RecurringExpense, SalesOrder,
    StockMovement, StockReturn, StockReturnItem,
)
from .services.accounting import LoggingAccountingBackend
from .services.balance_service import customer_balances
from .services.inventory_service import InventoryStockService
from .services.orchestrator import TransactionOrchestrator
from .testing import LedgerFixtures


class FlakyInventory(InventoryStockService):
    """Fails update_stock on the given call numbers (1-based)."""

    def __init__(self, *fail_on):
        super().__init__()
        self.fail_on = set(fail_on)
        self.calls = 0

    def update_stock(self, product_id, movement_type, quantity, **kwargs):
        self.calls += 1
        if self.calls in self.fail_on:
            raise NotFound("Product", product_id)
        return super().update_stock(product_id, movement_type, quantity, **kwargs)


class BrokenAccounting(LoggingAccountingBackend):
    def record_sale(self, order):
        raise RuntimeError("ledger offline")


class SalesOrderFlowTest(LedgerFixtures, TestCase):

    def setUp(self):
        super().setUp()
        self.orchestrator = TransactionOrchestrator()

    def sell(self, qty, **kwargs):
        kwargs.setdefault("user", self.user)
        return self.orchestrator.create_sales_order(
            self.customer.pk, items=[{"product": self.product.pk, "quantity": qty}], **kwargs
        )

    def test_cash_sale_fully_paid(self):
        order = self.sell(7)
        self.assertEqual(order.status, SalesOrder.Status.CONFIRMED)
        self.assertEqual(order.total, Decimal("700.00"))
        self.assertEqual(order.payment_status, SalesOrder.PaymentStatus.PAID)
        self.assertEqual(self.inventory(self.product).available_stock, Decimal("3"))
        self.assertEqual(self.reload(self.product).stock_qty, Decimal("3"))
        self.assertBalances(self.customer, "0.00", "0.00", "0.00")
        movement = StockMovement.objects.get(movement_type="out")
        self.assertEqual((movement.reference_type, movement.reference_id), ("SalesOrder", order.pk))

    def test_credit_limit_blocks_on_account_order(self):
        seed = self.make_product("Seed pack", stock="5", sale="30.00")
        self.customer.credit_limit = Decimal("100.00")
        self.customer.save()
        customer_balances.adjust_balance(self.customer, "80.00", posted=True)

        with self.assertRaises(CreditLimitExceeded) as cm:
            self.orchestrator.create_sales_order(
                self.customer.pk, items=[{"product": seed.pk, "quantity": 1}],
                payment_method=SalesOrder.PaymentMethod.ACCOUNT, amount_paid=0,
            )
        self.assertEqual(cm.exception.new_balance, Decimal("110.00"))
        self.assertEqual(cm.exception.details["credit_limit"], Decimal("100.00"))
        self.assertFalse(SalesOrder.objects.exists())
        self.assertEqual(self.inventory(seed).current_stock, Decimal("5"))

    def test_overpayment_becomes_advance(self):
        fifty = self.make_product("Spray", stock="3", sale="50.00")
        order = self.orchestrator.create_sales_order(
            self.customer.pk, items=[{"product": fifty.pk, "quantity": 1}], amount_paid="70.00",
        )
        self.assertEqual(order.remaining_balance, Decimal("0.00"))
        self.assertBalances(self.customer, "0.00", "0.00", "20.00")

    def test_partial_payment_posts_unpaid_part(self):
        order = self.sell(3, amount_paid="100.00")
        self.assertTrue(order.is_partial_payment)
        self.assertTrue(self.reload(order).balance_confirmed)
        self.assertBalances(self.customer, "0.00", "200.00", "0.00")

    def test_pricing_applies_customer_discount_and_tax(self):
        self.customer.discount_percent = Decimal("10.00")
        self.customer.save()
        taxed = self.make_product("Fungicide", stock="10", sale="200.00", tax="5.00")
        order = self.orchestrator.create_sales_order(
            self.customer.pk, items=[{"product": taxed.pk, "quantity": 2, "discount_percent": "5"}],
        )
        item = order.items.get()
        self.assertEqual(item.discount_percent, Decimal("10.00"))
        self.assertEqual(item.discount_amount, Decimal("40.00"))
        self.assertEqual(item.tax_amount, Decimal("18.00"))
        self.assertEqual(order.total, Decimal("378.00"))
        self.assertEqual(item.unit_cost, Decimal("0.00"))

    def test_walk_in_sale_needs_no_party(self):
        order = self.orchestrator.create_sales_order(
            None, items=[{"product": self.product.pk, "quantity": 1}], customer_name="Counter",
        )
        self.assertIsNone(order.customer)
        self.assertEqual(self.inventory(self.product).current_stock, Decimal("9"))

    def test_on_account_walk_in_rejected(self):
        with self.assertRaises(ValidationError):
            self.orchestrator.create_sales_order(
                None, items=[{"product": self.product.pk, "quantity": 1}],
                payment_method=SalesOrder.PaymentMethod.ACCOUNT,
            )

    def test_insufficient_stock_leaves_nothing_behind(self):
        other = self.make_product("Other", stock="1", sale="10.00")
        with self.assertRaises(BusinessRuleError):
            self.orchestrator.create_sales_order(
                self.customer.pk,
                items=[{"product": self.product.pk, "quantity": 4}, {"product": other.pk, "quantity": 2}],
                payment_method=SalesOrder.PaymentMethod.ACCOUNT,
            )
        self.assertEqual(self.inventory(self.product).current_stock, Decimal("10"))
        self.assertEqual(self.inventory(other).current_stock, Decimal("1"))
        self.assertFalse(SalesOrder.objects.exists())
        self.assertBalances(self.customer, "0.00", "0.00", "0.00")

    def test_create_then_delete_restores_everything(self):
        customer_balances.record_charge(self.customer, "15.00")
        order = self.sell(3, payment_method=SalesOrder.PaymentMethod.ACCOUNT)
        self.assertBalances(self.customer, "15.00", "300.00", "0.00")

        self.orchestrator.delete_sales_order(order.pk, user=self.user)
        self.assertTrue(self.reload(order).is_deleted)
        self.assertEqual(self.inventory(self.product).current_stock, Decimal("10"))
        self.assertEqual(self.reload(self.product).stock_qty, Decimal("10"))
        self.assertBalances(self.customer, "15.00", "0.00", "0.00")

    def test_delete_overpaid_order_withdraws_advance(self):
        order = self.sell(1, amount_paid="130.00")
        self.assertBalances(self.customer, "0.00", "0.00", "30.00")
        self.orchestrator.delete_sales_order(order.pk)
        self.assertBalances(self.customer, "0.00", "0.00", "0.00")

    def test_deleted_order_cannot_be_deleted_twice(self):
        order = self.sell(1)
        self.orchestrator.delete_sales_order(order.pk)
        with self.assertRaises(NotFound):
            self.orchestrator.delete_sales_order(order.pk)

    def test_update_changes_stock_and_balance_by_difference(self):
        order = self.sell(2, payment_method=SalesOrder.PaymentMethod.ACCOUNT)
        self.orchestrator.update_sales_order(
            order.pk, items=[{"product": self.product.pk, "quantity": 5}], user=self.user,
        )
        self.assertEqual(self.inventory(self.product).current_stock, Decimal("5"))
        self.assertBalances(self.customer, "0.00", "500.00", "0.00")

        self.orchestrator.update_sales_order(order.pk, amount_paid="450.00")
        self.assertBalances(self.customer, "0.00", "50.00", "0.00")
        self.assertEqual(self.reload(order).payment_status, SalesOrder.PaymentStatus.PARTIAL)

    def test_editing_overpaid_order_uses_its_own_credit_first(self):
        order = self.sell(1, amount_paid="130.00")
        self.assertBalances(self.customer, "0.00", "0.00", "30.00")
        self.orchestrator.update_sales_order(order.pk, items=[{"product": self.product.pk, "quantity": 2}])
        self.assertBalances(self.customer, "0.00", "70.00", "0.00")

        customer_balances.recalculate_balance(self.customer)
        self.assertFalse(PartyTransaction.objects.filter(
            party=self.customer, transaction_type=PartyTransaction.Type.RECALCULATION,
        ).exists())
        self.assertBalances(self.customer, "0.00", "70.00", "0.00")

    def test_edit_does_not_spend_credit_from_other_documents(self):
        self.orchestrator.record_party_payment(self.customer.pk, "50.00")
        order = self.sell(1, payment_method=SalesOrder.PaymentMethod.ACCOUNT)
        self.assertBalances(self.customer, "0.00", "100.00", "50.00")
        self.orchestrator.update_sales_order(order.pk, items=[{"product": self.product.pk, "quantity": 2}])
        self.assertBalances(self.customer, "0.00", "200.00", "50.00")

    def test_update_moves_balance_to_new_customer(self):
        other = type(self.customer).objects.create(display_name="Other Customer", type="CUSTOMER")
        order = self.sell(2, payment_method=SalesOrder.PaymentMethod.ACCOUNT)
        self.orchestrator.update_sales_order(order.pk, customer_id=other.pk)
        self.assertBalances(self.customer, "0.00", "0.00", "0.00")
        self.assertBalances(other, "0.00", "200.00", "0.00")

    def test_draft_reserves_then_confirm_takes_stock(self):
        order = self.sell(4, status=SalesOrder.Status.DRAFT, payment_method=SalesOrder.PaymentMethod.ACCOUNT)
        record = self.inventory(self.product)
        self.assertEqual((record.current_stock, record.reserved_stock), (Decimal("10"), Decimal("4")))
        self.assertBalances(self.customer, "400.00", "0.00", "0.00")

        self.orchestrator.transition_sales_order(order.pk, SalesOrder.Status.CONFIRMED, user=self.user)
        record = self.inventory(self.product)
        self.assertEqual((record.current_stock, record.reserved_stock), (Decimal("6"), Decimal("0")))
        self.assertBalances(self.customer, "0.00", "400.00", "0.00")
        self.assertTrue(self.reload(order).balance_confirmed)

    def test_cancel_returns_stock_and_clears_balance(self):
        order = self.sell(4, payment_method=SalesOrder.PaymentMethod.ACCOUNT)
        self.orchestrator.transition_sales_order(order.pk, SalesOrder.Status.CANCELLED)
        self.assertEqual(self.inventory(self.product).current_stock, Decimal("10"))
        self.assertBalances(self.customer, "0.00", "0.00", "0.00")
        # cancelled orders are only soft-deleted afterwards
        self.orchestrator.delete_sales_order(order.pk)
        self.assertEqual(self.inventory(self.product).current_stock, Decimal("10"))

    def test_invalid_transitions(self):
        order = self.sell(1)
        with self.assertRaises(InvalidStateTransition):
            self.orchestrator.transition_sales_order(order.pk, SalesOrder.Status.DRAFT)
        with self.assertRaises(InvalidStateTransition):
            self.orchestrator.create_sales_order(
                self.customer.pk, items=[{"product": self.product.pk, "quantity": 1}],
                status=SalesOrder.Status.PAID,
            )
        self.orchestrator.transition_sales_order(order.pk, SalesOrder.Status.DELIVERED)
        with self.assertRaises(InvalidStateTransition):
            self.orchestrator.delete_sales_order(order.pk)

    def test_accounting_failure_does_not_abort_sale(self):
        orchestrator = TransactionOrchestrator(accounting=BrokenAccounting())
        with self.assertLogs("ledgerline.services.orchestrator", level="ERROR"):
            order = orchestrator.create_sales_order(
                self.customer.pk, items=[{"product": self.product.pk, "quantity": 1}],
            )
        self.assertTrue(SalesOrder.objects.filter(pk=order.pk).exists())
        self.assertEqual(self.inventory(self.product).current_stock, Decimal("9"))


class PurchaseInvoiceFlowTest(LedgerFixtures, TestCase):

    def setUp(self):
        super().setUp()
        self.orchestrator = TransactionOrchestrator()
        self.seed = self.make_product("Seed", stock="0", purchase="10.00")
        self.spray = self.make_product("Spray", stock="0", purchase="20.00")

    def lines(self):
        return [
            {"product": self.product.pk, "quantity": 10, "unit_cost": "80.00"},
            {"product": self.seed.pk, "quantity": 5},
            {"product": self.spray.pk, "quantity": 2},
        ]

    def test_create_adds_stock_and_supplier_balance(self):
        invoice = self.orchestrator.create_purchase_invoice(self.supplier.pk, self.lines(), amount_paid="100.00")
        self.assertEqual(invoice.total, Decimal("890.00"))
        self.assertEqual(self.inventory(self.product).current_stock, Decimal("20"))
        self.assertEqual(self.inventory(self.product).average_cost, Decimal("70"))
        self.assertEqual(self.inventory(self.seed).current_stock, Decimal("5"))
        self.assertBalances(self.supplier, "0.00", "790.00", "0.00")

    def test_failure_on_second_item_rolls_back_first(self):
        orchestrator = TransactionOrchestrator(inventory=FlakyInventory(2))
        with self.assertRaises(NotFound):
            orchestrator.create_purchase_invoice(self.supplier.pk, self.lines())
        self.assertEqual(self.inventory(self.product).current_stock, Decimal("10"))
        self.assertEqual(self.reload(self.product).stock_qty, Decimal("10"))
        self.assertEqual(self.inventory(self.seed).current_stock, Decimal("0"))
        self.assertFalse(PurchaseInvoice.objects.exists())
        self.assertBalances(self.supplier, "0.00", "0.00", "0.00")
        record = self.inventory(self.product)
        self.assertEqual(record.average_cost, Decimal("60"))
        self.assertEqual(record.last_purchase_cost, Decimal("0"))
        self.assertIsNone(record.last_purchase_date)
        self.assertEqual(self.reload(self.product).purchase_price, Decimal("60.00"))

    def test_failed_rollback_raises_partial_compensation_failure(self):
        orchestrator = TransactionOrchestrator(inventory=FlakyInventory(2, 3))
        with self.assertLogs("ledgerline.services.compensation", level="ERROR"):
            with self.assertRaises(PartialCompensationFailure) as cm:
                orchestrator.create_purchase_invoice(self.supplier.pk, self.lines())
        self.assertIsInstance(cm.exception.primary, NotFound)
        self.assertEqual(len(cm.exception.failures), 1)
        self.assertEqual(cm.exception.as_dict()["error"], "partial_compensation_failure")
        # the first increment could not be undone
        self.assertEqual(self.inventory(self.product).current_stock, Decimal("20"))

    def test_unknown_supplier(self):
        with self.assertRaises(NotFound):
            self.orchestrator.create_purchase_invoice(self.customer.pk, self.lines())

    def test_delete_restores_stock_and_balance(self):
        invoice = self.orchestrator.create_purchase_invoice(self.supplier.pk, self.lines())
        self.orchestrator.delete_purchase_invoice(invoice.pk)
        self.assertEqual(self.inventory(self.product).current_stock, Decimal("10"))
        self.assertEqual(self.inventory(self.spray).current_stock, Decimal("0"))
        self.assertBalances(self.supplier, "0.00", "0.00", "0.00")

    def test_delete_takes_purchase_out_of_average_cost(self):
        earlier = self.orchestrator.create_purchase_invoice(
            self.supplier.pk, [{"product": self.product.pk, "quantity": 5, "unit_cost": "66.00"}],
        )
        invoice = self.orchestrator.create_purchase_invoice(self.supplier.pk, self.lines())
        self.assertEqual(self.inventory(self.product).average_cost, Decimal("69.2"))

        self.orchestrator.delete_purchase_invoice(invoice.pk)
        record = self.inventory(self.product)
        self.assertEqual(record.average_cost, Decimal("62"))
        self.assertEqual(record.last_purchase_cost, Decimal("66"))
        self.assertEqual(self.reload(self.product).purchase_price, Decimal("62.00"))

        self.orchestrator.delete_purchase_invoice(earlier.pk)
        record = self.inventory(self.product)
        self.assertEqual(record.average_cost, Decimal("60"))
        self.assertIsNone(record.last_purchase_date)

    def test_reducing_a_line_withdraws_its_cost(self):
        invoice = self.orchestrator.create_purchase_invoice(
            self.supplier.pk, [{"product": self.product.pk, "quantity": 10, "unit_cost": "80.00"}],
        )
        self.orchestrator.update_purchase_invoice(
            invoice.pk, items=[{"product": self.product.pk, "quantity": 5, "unit_cost": "80.00"}],
        )
        record = self.inventory(self.product)
        self.assertEqual(record.current_stock, Decimal("15"))
        self.assertEqual(record.average_cost, Decimal("66.666667"))

    def test_delete_fails_when_stock_already_sold(self):
        invoice = self.orchestrator.create_purchase_invoice(
            self.supplier.pk, [{"product": self.seed.pk, "quantity": 5}],
        )
        InventoryStockService().update_stock(self.seed.pk, "out", 3)
        with self.assertRaises(BusinessRuleError):
            self.orchestrator.delete_purchase_invoice(invoice.pk)
        self.assertFalse(self.reload(invoice).is_deleted)
        self.assertEqual(self.inventory(self.seed).current_stock, Decimal("2"))

    def test_update_quantity_and_payment(self):
        invoice = self.orchestrator.create_purchase_invoice(
            self.supplier.pk, [{"product": self.seed.pk, "quantity": 5}],
        )
        self.orchestrator.update_purchase_invoice(
            invoice.pk, items=[{"product": self.seed.pk, "quantity": 8}], amount_paid="30.00",
        )
        self.assertEqual(self.inventory(self.seed).current_stock, Decimal("8"))
        self.assertBalances(self.supplier, "0.00", "50.00", "0.00")

    def test_received_invoice_is_locked_for_edit(self):
        invoice = self.orchestrator.create_purchase_invoice(self.supplier.pk, self.lines())
        self.orchestrator.transition_purchase_invoice(invoice.pk, PurchaseInvoice.Status.RECEIVED)
        with self.assertRaises(InvalidStateTransition):
            self.orchestrator.update_purchase_invoice(invoice.pk, amount_paid="10.00")

    def test_draft_invoice_stocks_in_on_confirm(self):
        invoice = self.orchestrator.create_purchase_invoice(
            self.supplier.pk, [{"product": self.seed.pk, "quantity": 4}], status=PurchaseInvoice.Status.DRAFT,
        )
        self.assertEqual(self.inventory(self.seed).current_stock, Decimal("0"))
        self.assertBalances(self.supplier, "40.00", "0.00", "0.00")
        self.orchestrator.transition_purchase_invoice(invoice.pk, PurchaseInvoice.Status.CONFIRMED)
        self.assertEqual(self.inventory(self.seed).current_stock, Decimal("4"))
        self.assertBalances(self.supplier, "0.00", "40.00", "0.00")


class PaymentFlowTest(LedgerFixtures, TestCase):

    def setUp(self):
        super().setUp()
        self.orchestrator = TransactionOrchestrator()
        self.orchestrator.create_purchase_invoice(
            self.supplier.pk, [{"product": self.product.pk, "quantity": 10, "unit_cost": "60.00"}],
        )
        self.bank = BankAccount.objects.create(name="Meezan", account_number="0101")
        self.expense = RecurringExpense.objects.create(
            name="Warehouse rent", amount=Decimal("100.00"), day_of_month=5,
            supplier=self.supplier, next_due_date=date(2026, 1, 5),
        )

    def test_recurring_payment_settles_supplier_and_rolls_due_date(self):
        payment = self.orchestrator.record_recurring_payment(
            self.expense.pk, payment_date=date(2026, 1, 5), user=self.user,
        )
        self.assertEqual(payment.direction, Payment.OUT)
        self.assertEqual(payment.amount, Decimal("100.00"))
        self.assertEqual(payment.recurring_expense, self.expense)
        self.assertBalances(self.supplier, "0.00", "500.00", "0.00")
        expense = self.reload(self.expense)
        self.assertEqual(expense.next_due_date, date(2026, 2, 5))
        self.assertIsNotNone(expense.last_paid_at)

    def test_recurring_bank_payment_needs_account(self):
        with self.assertRaises(ValidationError):
            self.orchestrator.record_recurring_payment(self.expense.pk, payment_type="bank")
        payment = self.orchestrator.record_recurring_payment(
            self.expense.pk, payment_type="bank", bank_account_id=self.bank.pk,
        )
        self.assertEqual(payment.bank_account, self.bank)

    def test_inactive_expense_cannot_be_paid(self):
        self.expense.status = RecurringExpense.Status.INACTIVE
        self.expense.save()
        with self.assertRaises(InvalidStateTransition):
            self.orchestrator.record_recurring_payment(self.expense.pk)
        self.assertFalse(Payment.objects.exists())

    def test_due_date_clamps_to_month_end(self):
        self.expense.day_of_month = 31
        self.assertEqual(self.expense.following_due_date(date(2026, 1, 31)), date(2026, 2, 28))
        self.assertEqual(self.expense.following_due_date(date(2026, 2, 10)), date(2026, 2, 28))

    def test_customer_receipt(self):
        payment = self.orchestrator.record_party_payment(self.customer.pk, "25.00")
        self.assertEqual(payment.direction, Payment.IN)
        self.assertBalances(self.customer, "0.00", "0.00", "25.00")


class ReturnFlowTest(LedgerFixtures, TestCase):

    def setUp(self):
        super().setUp()
        self.orchestrator = TransactionOrchestrator()
        self.order = self.orchestrator.create_sales_order(
            self.customer.pk, items=[{"product": self.product.pk, "quantity": 4}],
        )

    def make_return(self, qty, **kwargs):
        ret = StockReturn.objects.create(
            origin=StockReturn.Origin.SALES, sales_order=self.order, party=self.customer, **kwargs
        )
        StockReturnItem.objects.create(stock_return=ret, product=self.product, quantity=Decimal(qty))
        return ret

    def test_sale_return_restocks_and_credits_store_credit(self):
        ret = self.make_return("2", refund_method=StockReturn.RefundMethod.STORE_CREDIT)
        ret = self.orchestrator.process_return(ret.pk, user=self.user)
        self.assertEqual(ret.status, StockReturn.Status.COMPLETED)
        self.assertEqual(ret.total_refund, Decimal("200.00"))
        self.assertEqual(ret.balance_credited, Decimal("200.00"))
        self.assertEqual(self.inventory(self.product).current_stock, Decimal("8"))
        self.assertBalances(self.customer, "0.00", "0.00", "200.00")

    def test_cash_refund_of_paid_order_leaves_balance(self):
        ret = self.make_return("1", refund_method=StockReturn.RefundMethod.CASH)
        ret = self.orchestrator.process_return(ret.pk)
        self.assertEqual(ret.balance_credited, Decimal("0.00"))
        self.assertBalances(self.customer, "0.00", "0.00", "0.00")

    def test_cannot_return_more_than_sold(self):
        self.orchestrator.process_return(self.make_return("3").pk)
        with self.assertRaises(BusinessRuleError) as cm:
            self.orchestrator.process_return(self.make_return("2").pk)
        self.assertEqual(cm.exception.code, "return_exceeds_quantity")
        self.assertEqual(self.inventory(self.product).current_stock, Decimal("9"))

    def test_purchase_return_removes_stock_and_reduces_debt(self):
        invoice = self.orchestrator.create_purchase_invoice(
            self.supplier.pk, [{"product": self.product.pk, "quantity": 5, "unit_cost": "60.00"}],
        )
        ret = StockReturn.objects.create(origin=StockReturn.Origin.PURCHASE, purchase_invoice=invoice)
        StockReturnItem.objects.create(stock_return=ret, product=self.product, quantity=Decimal("2"))
        ret = self.orchestrator.process_return(ret.pk)
        self.assertEqual(ret.party, self.supplier)
        self.assertEqual(self.inventory(self.product).current_stock, Decimal("9"))
        self.assertBalances(self.supplier, "0.00", "180.00", "0.00")
