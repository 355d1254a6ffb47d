from datetime import timedelta
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db.models import F
from django.test import TestCase
from django.utils import timezone

from .exceptions import InsufficientStock, NotFound
from .models import Inventory, Product, StockMovement
from .services.inventory_service import InventoryStockService
from .testing import LedgerFixtures


class RacedInventory(InventoryStockService):
    """Another caller reserves stock after the record was read, so only the UPDATE sees it."""

    def __init__(self, reserve):
        super().__init__()
        self.reserve = Decimal(reserve)

    def _prepare(self, product_id, variant_id, performed_by=None):
        product, variant, record = super()._prepare(product_id, variant_id, performed_by)
        Inventory.objects.filter(pk=record.pk).update(reserved_stock=F("reserved_stock") + self.reserve)
        return product, variant, record


class InventoryStockServiceTest(LedgerFixtures, TestCase):

    def setUp(self):
        super().setUp()
        self.service = InventoryStockService()

    def test_new_product_gets_inventory_record_from_cached_stock(self):
        record = self.inventory(self.product)
        self.assertEqual(record.current_stock, Decimal("10"))
        self.assertEqual(record.available_stock, Decimal("10"))
        self.assertEqual(record.average_cost, Decimal("60.00"))
        self.assertEqual(record.reorder_point, Decimal("10"))

    def test_stock_out_updates_record_cache_and_audit(self):
        movement = self.service.update_stock(self.product.pk, "out", 7, reason="counter sale",
                                             performed_by=self.user)
        record = self.inventory(self.product)
        self.assertEqual(record.current_stock, Decimal("3"))
        self.assertEqual(record.available_stock, Decimal("3"))
        self.assertEqual(self.reload(self.product).stock_qty, Decimal("3"))
        self.assertEqual((movement.stock_before, movement.stock_after), (Decimal("10"), Decimal("3")))
        self.assertEqual(movement.signed_quantity, Decimal("-7"))
        self.assertEqual(movement.created_by, self.user)

    def test_insufficient_stock_reports_available_and_requested(self):
        with self.assertRaises(InsufficientStock) as cm:
            self.service.update_stock(self.product.pk, "out", 11)
        self.assertEqual(cm.exception.available, Decimal("10"))
        self.assertEqual(cm.exception.requested, Decimal("11"))
        self.assertEqual(cm.exception.code, "insufficient_stock")
        self.assertEqual(self.inventory(self.product).current_stock, Decimal("10"))
        self.assertFalse(StockMovement.objects.filter(movement_type="out").exists())

    def test_reserved_stock_is_not_available(self):
        self.service.reserve_stock(self.product.pk, 4)
        record = self.inventory(self.product)
        self.assertEqual(record.available_stock, Decimal("6"))
        with self.assertRaises(InsufficientStock):
            self.service.update_stock(self.product.pk, "out", 7)
        self.service.release_stock(self.product.pk, 4)
        self.assertEqual(self.inventory(self.product).available_stock, Decimal("10"))

    def test_stock_in_with_cost_updates_weighted_average(self):
        self.service.update_stock(self.product.pk, "in", 10, unit_cost="80.00")
        record = self.inventory(self.product)
        self.assertEqual(record.current_stock, Decimal("20"))
        self.assertEqual(record.average_cost, Decimal("70"))
        self.assertEqual(record.last_purchase_cost, Decimal("80"))
        self.assertIsNotNone(record.last_purchase_date)
        self.assertEqual(self.reload(self.product).purchase_price, Decimal("70.00"))

    def test_adjustment_sets_absolute_count(self):
        movement = self.service.update_stock(self.product.pk, "adjustment", 4, reason="stock take")
        self.assertEqual(self.inventory(self.product).current_stock, Decimal("4"))
        self.assertEqual(movement.quantity, Decimal("6"))
        self.assertEqual(movement.signed_quantity, Decimal("-6"))

    def test_damage_removes_stock(self):
        self.service.update_stock(self.product.pk, "damage", 2, reason="torn bags")
        self.assertEqual(self.inventory(self.product).current_stock, Decimal("8"))

    def test_cached_stock_above_record_is_synced_up_first(self):
        Product.objects.filter(pk=self.product.pk).update(stock_qty=Decimal("15"))
        with self.assertLogs("ledgerline.services.inventory_service", level="WARNING"):
            self.service.update_stock(self.product.pk, "in", 1)
        self.assertEqual(self.inventory(self.product).current_stock, Decimal("16"))
        self.assertEqual(self.reload(self.product).stock_qty, Decimal("16"))
        sync = StockMovement.objects.get(reason="Auto-sync from product stock")
        self.assertEqual(sync.quantity, Decimal("5"))

    def test_cached_stock_below_record_is_overwritten(self):
        Product.objects.filter(pk=self.product.pk).update(stock_qty=Decimal("2"))
        self.service.update_stock(self.product.pk, "out", 5)
        self.assertEqual(self.inventory(self.product).current_stock, Decimal("5"))
        self.assertEqual(self.reload(self.product).stock_qty, Decimal("5"))

    def test_variant_stock_is_tracked_separately(self):
        variant = self.make_variant(self.product, "25kg", stock="5")
        self.service.update_stock(self.product.pk, "out", 2, variant_id=variant.pk)
        self.assertEqual(self.inventory(self.product, variant).current_stock, Decimal("3"))
        self.assertEqual(self.reload(variant).stock_qty, Decimal("3"))
        self.assertEqual(self.reload(self.product).stock_qty, Decimal("10"))

    def test_unknown_product_or_variant(self):
        with self.assertRaises(NotFound) as cm:
            self.service.update_stock(999999, "in", 1)
        self.assertEqual(cm.exception.entity, "Product")
        with self.assertRaises(NotFound):
            self.service.update_stock(self.product.pk, "in", 1, variant_id=999999)

    def test_invalid_quantity_and_type(self):
        with self.assertRaises(ValidationError):
            self.service.update_stock(self.product.pk, "in", 0)
        with self.assertRaises(ValidationError):
            self.service.update_stock(self.product.pk, "in", "-3")
        with self.assertRaises(ValidationError):
            self.service.update_stock(self.product.pk, "teleport", 1)

    def test_out_of_stock_status_and_reorder(self):
        self.service.update_stock(self.product.pk, "out", 10)
        record = self.inventory(self.product)
        self.assertEqual(record.status, Inventory.Status.OUT_OF_STOCK)
        self.assertTrue(record.needs_reorder)

    def test_sync_cache_overwrites_from_inventory(self):
        Product.objects.filter(pk=self.product.pk).update(stock_qty=Decimal("1"))
        self.assertEqual(self.service.sync_cache(self.product), 1)
        self.assertEqual(self.reload(self.product).stock_qty, Decimal("10"))

    def test_stock_taken_between_check_and_update_is_refused(self):
        service = RacedInventory(reserve="8")
        with self.assertRaises(InsufficientStock) as cm:
            service.update_stock(self.product.pk, "out", 5)
        self.assertEqual(cm.exception.available, Decimal("2"))
        self.assertEqual(cm.exception.requested, Decimal("5"))
        self.assertEqual(self.inventory(self.product).current_stock, Decimal("10"))
        self.assertFalse(StockMovement.objects.filter(movement_type="out").exists())

    def test_cost_snapshot_and_restore(self):
        snapshot = self.service.cost_snapshot(self.product.pk)
        self.service.update_stock(self.product.pk, "in", 10, unit_cost="200.00")
        self.assertEqual(self.reload(self.product).purchase_price, Decimal("130.00"))
        self.service.restore_cost(self.product.pk, snapshot)
        record = self.inventory(self.product)
        self.assertEqual(record.average_cost, Decimal("60"))
        self.assertEqual(record.last_purchase_cost, Decimal("0"))
        self.assertIsNone(record.last_purchase_date)
        self.assertEqual(self.reload(self.product).purchase_price, Decimal("60.00"))

    def test_withdrawing_cost_reverses_weighted_average(self):
        self.service.update_stock(self.product.pk, "in", 10, unit_cost="80.00")
        self.service.update_stock(self.product.pk, "out", 10, unit_cost="80.00", withdraw_cost=True)
        self.assertEqual(self.inventory(self.product).average_cost, Decimal("60"))
        self.assertEqual(self.reload(self.product).purchase_price, Decimal("60.00"))


class InventoryBatchTest(LedgerFixtures, TestCase):

    def setUp(self):
        super().setUp()
        self.service = InventoryStockService()
        self.other = self.make_product("Potash", stock="3", purchase="5.00")

    def test_stock_take_sets_every_count(self):
        movements = self.service.process_adjustment(
            [{"product": self.product.pk, "quantity": 7}, {"product": self.other.pk, "quantity": 4}],
            reason="month-end count", performed_by=self.user,
        )
        self.assertEqual(len(movements), 2)
        self.assertEqual(self.inventory(self.product).current_stock, Decimal("7"))
        self.assertEqual(self.inventory(self.other).current_stock, Decimal("4"))
        self.assertTrue(all(m.reason == "month-end count" for m in movements))

    def test_damage_batch_is_all_or_nothing(self):
        with self.assertRaises(InsufficientStock):
            self.service.process_adjustment(
                [{"product": self.product.pk, "quantity": 2}, {"product": self.other.pk, "quantity": 5}],
                movement_type="damage", reason="flooded store",
            )
        self.assertEqual(self.inventory(self.product).current_stock, Decimal("10"))
        self.assertEqual(self.inventory(self.other).current_stock, Decimal("3"))

    def test_adjustment_needs_reason_and_adjustment_type(self):
        with self.assertRaises(ValidationError):
            self.service.process_adjustment([{"product": self.product.pk, "quantity": 1}], reason=" ")
        with self.assertRaises(ValidationError):
            self.service.process_adjustment([{"product": self.product.pk, "quantity": 1}],
                                            movement_type="in", reason="count")

    def test_bulk_update_reports_each_line(self):
        results = self.service.bulk_update_stock([
            {"product": self.product.pk, "movement_type": "in", "quantity": 5},
            {"product": 999999, "movement_type": "in", "quantity": 1},
            {"product": self.other.pk, "movement_type": "out", "quantity": 9},
        ])
        self.assertEqual([r["success"] for r in results], [True, False, False])
        self.assertIn("not found", results[1]["error"])
        self.assertEqual(self.inventory(self.product).current_stock, Decimal("15"))
        self.assertEqual(self.inventory(self.other).current_stock, Decimal("3"))


class InventoryQueryTest(LedgerFixtures, TestCase):

    def setUp(self):
        super().setUp()
        self.service = InventoryStockService()
        self.empty = self.make_product("Empty sack", stock="0")
        self.plenty = self.make_product("Gypsum", stock="100", purchase="2.00")

    def test_low_stock_lists_records_at_or_below_reorder_point(self):
        names = [record.product.name for record in self.service.low_stock()]
        self.assertEqual(names, ["Empty sack", "Urea 50kg"])

    def test_summary(self):
        self.assertEqual(self.service.summary(), {
            "total_products": 2,
            "out_of_stock": 1,
            "low_stock": 1,
            "total_value": Decimal("800.00"),
        })

    def test_history_filters_and_pages(self):
        self.service.update_stock(self.product.pk, "out", 2)
        self.service.update_stock(self.product.pk, "in", 3, unit_cost="60.00")
        self.service.update_stock(self.product.pk, "damage", 1, reason="torn")

        outs = self.service.history(self.product.pk, movement_type="out")
        self.assertEqual(outs["total"], 1)
        self.assertFalse(outs["has_more"])

        page = self.service.history(self.product.pk, limit=2)
        self.assertEqual(page["total"], 3)
        self.assertTrue(page["has_more"])
        self.assertEqual([m.movement_type for m in page["movements"]], ["damage", "in"])

        tomorrow = timezone.localdate() + timedelta(days=1)
        self.assertEqual(self.service.history(self.product.pk, date_from=tomorrow)["total"], 0)
