from decimal import Decimal
from io import StringIO

from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import TestCase

from .models import Party, Product, SalesOrder
from .services.orchestrator import TransactionOrchestrator
from .testing import LedgerFixtures


class ManagementCommandTest(LedgerFixtures, TestCase):

    def setUp(self):
        super().setUp()
        TransactionOrchestrator().create_sales_order(
            self.customer.pk, items=[{"product": self.product.pk, "quantity": 2}],
            payment_method=SalesOrder.PaymentMethod.ACCOUNT,
        )

    def test_recalculate_party_balances(self):
        Party.objects.filter(pk=self.customer.pk).update(current_balance=Decimal("0.00"),
                                                         pending_balance=Decimal("9.00"))
        out = StringIO()
        call_command("recalculate_party_balances", stdout=out)
        self.assertBalances(self.customer, "0.00", "200.00", "0.00")
        self.assertIn("1 changed", out.getvalue())
        self.assertIn("Net outstanding: 200", out.getvalue())
        self.assertIn("Unpaid on open documents: 200", out.getvalue())

    def test_recalculate_single_party_and_type(self):
        out = StringIO()
        call_command("recalculate_party_balances", "--party", str(self.customer.pk), "--type", "CUSTOMER", stdout=out)
        self.assertIn("0 changed", out.getvalue())
        with self.assertRaises(CommandError):
            call_command("recalculate_party_balances", "--party", "999999", stdout=StringIO())

    def test_sync_inventory_cache(self):
        Product.objects.filter(pk=self.product.pk).update(stock_qty=Decimal("99"))
        out = StringIO()
        call_command("sync_inventory_cache", stdout=out)
        self.assertEqual(self.reload(self.product).stock_qty, Decimal("8"))
        self.assertIn("Synced", out.getvalue())

    def test_models_match_migrations(self):
        call_command("makemigrations", "ledgerline", "--check", "--dry-run", stdout=StringIO())
