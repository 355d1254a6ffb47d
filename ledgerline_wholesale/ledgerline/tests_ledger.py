from datetime import timedelta
from decimal import Decimal

from django.test import TestCase
from django.utils import timezone

from .ledger import LedgerFilter, StockLedgerReconstructor, build_ledger
from .models import SalesOrder, StockReturn, StockReturnItem
from .services.inventory_service import InventoryStockService
from .services.orchestrator import TransactionOrchestrator
from .testing import LedgerFixtures


class StockLedgerTest(LedgerFixtures, TestCase):

    def setUp(self):
        super().setUp()
        self.orchestrator = TransactionOrchestrator()

    def purchase(self, product, qty, cost="80.00"):
        return self.orchestrator.create_purchase_invoice(
            self.supplier.pk, [{"product": product.pk, "quantity": qty, "unit_cost": cost}],
        )

    def group(self, ledger, product):
        return next(g for g in ledger.products if g.product_id == product.pk)

    def test_purchase_fully_returned_nets_to_zero(self):
        invoice = self.purchase(self.product, 10)
        ret = StockReturn.objects.create(origin=StockReturn.Origin.PURCHASE, purchase_invoice=invoice)
        StockReturnItem.objects.create(stock_return=ret, product=self.product, quantity=Decimal("10"))
        self.orchestrator.process_return(ret.pk)

        ledger = build_ledger(LedgerFilter(product_id=self.product.pk))
        group = self.group(ledger, self.product)
        self.assertEqual([e.document_type for e in group.entries], ["PURCHASE", "PURCHASE_RETURN"])
        self.assertEqual(group.total_quantity, Decimal("0"))
        self.assertEqual(group.total_amount, Decimal("0.00"))
        self.assertEqual(ledger.total_products, 1)

    def test_sign_convention_and_running_totals(self):
        self.purchase(self.product, 5)
        order = self.orchestrator.create_sales_order(
            self.customer.pk, items=[{"product": self.product.pk, "quantity": 3}],
        )
        ret = StockReturn.objects.create(origin=StockReturn.Origin.SALES, sales_order=order, party=self.customer)
        StockReturnItem.objects.create(stock_return=ret, product=self.product, quantity=Decimal("1"))
        self.orchestrator.process_return(ret.pk)
        InventoryStockService().update_stock(self.product.pk, "damage", 2, reason="water damage")

        group = self.group(build_ledger(), self.product)
        signs = {e.document_type: e.signed_quantity for e in group.entries}
        self.assertEqual(signs, {
            "PURCHASE": Decimal("5"),
            "SALE": Decimal("-3"),
            "SALE_RETURN": Decimal("1"),
            "DAMAGE": Decimal("-2"),
        })
        self.assertEqual(group.entries[-1].running_quantity, Decimal("1"))
        self.assertEqual(group.total_quantity, Decimal("1"))
        sale = next(e for e in group.entries if e.document_type == "SALE")
        self.assertEqual(sale.signed_amount, Decimal("-300.00"))
        self.assertEqual(sale.party_name, "Test Customer")

    def test_document_type_filter(self):
        self.purchase(self.product, 5)
        self.orchestrator.create_sales_order(None, items=[{"product": self.product.pk, "quantity": 1}])
        ledger = build_ledger(LedgerFilter(document_type="SALE"))
        types = {e.document_type for g in ledger.products for e in g.entries}
        self.assertEqual(types, {"SALE"})

    def test_unknown_document_type(self):
        with self.assertRaises(ValueError):
            build_ledger(LedgerFilter(document_type="TRANSFER"))

    def test_drafts_and_deleted_documents_are_left_out(self):
        draft = self.orchestrator.create_sales_order(
            self.customer.pk, items=[{"product": self.product.pk, "quantity": 1}],
            status=SalesOrder.Status.DRAFT,
        )
        deleted = self.orchestrator.create_sales_order(
            self.customer.pk, items=[{"product": self.product.pk, "quantity": 2}],
        )
        self.orchestrator.delete_sales_order(deleted.pk)
        ledger = build_ledger(LedgerFilter(document_type="SALE"))
        refs = [e.document_ref for g in ledger.products for e in g.entries]
        self.assertNotIn(draft.order_number, refs)
        self.assertNotIn(deleted.order_number, refs)

    def test_party_and_document_number_filters(self):
        order = self.orchestrator.create_sales_order(
            self.customer.pk, items=[{"product": self.product.pk, "quantity": 1}],
        )
        self.orchestrator.create_sales_order(None, items=[{"product": self.product.pk, "quantity": 2}])

        by_party = build_ledger(LedgerFilter(party_id=self.customer.pk))
        self.assertEqual(by_party.total_quantity, Decimal("-1"))

        by_number = build_ledger(LedgerFilter(document_number=order.order_number[-6:].lower()))
        refs = [e.document_ref for g in by_number.products for e in g.entries]
        self.assertEqual(refs, [order.order_number])

    def test_date_filter(self):
        self.purchase(self.product, 5)
        tomorrow = timezone.localdate() + timedelta(days=1)
        self.assertEqual(build_ledger(LedgerFilter(date_from=tomorrow)).total_products, 0)
        self.assertEqual(build_ledger(LedgerFilter(date_to=timezone.localdate())).total_products, 1)

    def test_pagination_is_by_product_group(self):
        for name in ("Alpha", "Bravo", "Charlie"):
            self.purchase(self.make_product(name), 2, cost="1.00")
        reconstructor = StockLedgerReconstructor(page_size=2)

        first = reconstructor.build_ledger(LedgerFilter())
        self.assertEqual((first.page, first.pages, first.total_products), (1, 2, 3))
        self.assertEqual([g.product_name for g in first.products], ["Alpha", "Bravo"])
        self.assertEqual(first.total_quantity, Decimal("6"))

        second = reconstructor.build_ledger(LedgerFilter(page=2))
        self.assertEqual([g.product_name for g in second.products], ["Charlie"])
        self.assertEqual(second.total_amount, Decimal("6.00"))

    def test_group_is_labelled_with_product_not_first_variant(self):
        variant = self.make_variant(self.product, "25kg", stock="5")
        self.orchestrator.create_sales_order(
            None, items=[{"product": self.product.pk, "variant": variant.pk, "quantity": 1}],
        )
        self.orchestrator.create_sales_order(None, items=[{"product": self.product.pk, "quantity": 2}])

        group = self.group(build_ledger(LedgerFilter(product_id=self.product.pk)), self.product)
        self.assertEqual(group.product_name, "Urea 50kg")
        self.assertEqual(len(group.entries), 2)
        self.assertIn("25kg", group.entries[0].product_name)
        self.assertEqual(group.total_quantity, Decimal("-3"))
