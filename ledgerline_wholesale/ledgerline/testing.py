"""Shared fixtures for the ledgerline test modules."""
from decimal import Decimal

from django.contrib.auth.models import User

from .models import Inventory, Party, Product, ProductVariant


class LedgerFixtures:
    """Mixin for django.test.TestCase: a user, two parties and a stocked product."""

    def setUp(self):
        super().setUp()
        self.user = User.objects.create_superuser(username="admin", password="password", email="admin@example.com")
        self.customer = Party.objects.create(display_name="Test Customer", type=Party.CUSTOMER)
        self.supplier = Party.objects.create(display_name="Test Supplier", type=Party.SUPPLIER)
        self.product = self.make_product("Urea 50kg", stock="10", purchase="60.00", sale="100.00")

    def make_product(self, name, stock="0", purchase="0.00", sale="0.00", tax="0.00"):
        return Product.objects.create(
            name=name,
            purchase_price=Decimal(purchase),
            sale_price=Decimal(sale),
            tax_rate=Decimal(tax),
            stock_qty=Decimal(stock),
        )

    def make_variant(self, product, name, stock="0", sale=None):
        return ProductVariant.objects.create(
            product=product,
            name=name,
            stock_qty=Decimal(stock),
            sale_price=Decimal(sale) if sale is not None else None,
        )

    def inventory(self, product, variant=None):
        return Inventory.objects.get(product=product, variant=variant)

    def reload(self, obj):
        obj.refresh_from_db()
        return obj

    def assertBalances(self, party, pending, current, advance):
        party.refresh_from_db()
        self.assertEqual(
            (party.pending_balance, party.current_balance, party.advance_balance),
            (Decimal(pending), Decimal(current), Decimal(advance)),
        )
