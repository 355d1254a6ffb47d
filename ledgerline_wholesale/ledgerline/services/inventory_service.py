import logging
from decimal import Decimal
from typing import Optional

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import transaction
from django.db.models import Count, DecimalField, ExpressionWrapper, F, Q, Sum
from django.db.models.functions import Coalesce
from django.utils import timezone

from ledgerline.exceptions import InsufficientStock, NotFound
from ledgerline.models import (
    Inventory, Product, ProductVariant, PurchaseInvoice, StockMovement,
    _money_q, _qty_q, document_reference,
)
from ledgerline.services.compensation import CompensationStack

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
COST_FIELDS = ("average_cost", "last_purchase_cost", "last_purchase_date")


def _quantity(value, allow_zero: bool = False) -> Decimal:
    qty = _qty_q(Decimal(str(value or 0)))
    if qty < 0 or (qty == 0 and not allow_zero):
        raise ValidationError("Quantity must be greater than zero.", code="invalid_quantity")
    return qty


class InventoryStockService:
    """
    Applies stock changes to the Inventory record (source of truth) and
    refreshes the cached stock_qty on the product or variant afterwards.
    """

    def __init__(self, reorder_point=None, reorder_quantity=None):
        self.reorder_point = Decimal(str(
            reorder_point if reorder_point is not None
            else getattr(settings, "LEDGERLINE_DEFAULT_REORDER_POINT", 10)
        ))
        self.reorder_quantity = Decimal(str(
            reorder_quantity if reorder_quantity is not None
            else getattr(settings, "LEDGERLINE_DEFAULT_REORDER_QUANTITY", 50)
        ))

    # ---- lookups ---------------------------------------------------------
    def resolve(self, product_id, variant_id=None):
        pk = getattr(product_id, "pk", product_id)
        try:
            product = Product.objects.get(pk=pk, is_deleted=False)
        except Product.DoesNotExist:
            raise NotFound("Product", pk) from None
        variant = None
        if variant_id is not None:
            vpk = getattr(variant_id, "pk", variant_id)
            try:
                variant = ProductVariant.objects.select_related("product").get(
                    pk=vpk, product=product, is_deleted=False
                )
            except ProductVariant.DoesNotExist:
                raise NotFound("Product variant", vpk) from None
        return product, variant

    def _record(self, product: Product, variant: Optional[ProductVariant], lock: bool) -> Inventory:
        owner = variant or product
        record, created = Inventory.objects.get_or_create(
            product=product,
            variant=variant,
            defaults={
                "current_stock": owner.stock_qty,
                "available_stock": owner.stock_qty,
                "average_cost": (variant.effective_purchase_price if variant else product.purchase_price) or ZERO,
                "reorder_point": self.reorder_point,
                "reorder_quantity": self.reorder_quantity,
                "status": Inventory.Status.ACTIVE if owner.stock_qty > 0 else Inventory.Status.OUT_OF_STOCK,
            },
        )
        if created:
            logger.info("Created inventory record for %s from cached stock %s", owner, owner.stock_qty)
        if lock:
            record = Inventory.objects.select_for_update().get(pk=record.pk)
        return record

    @transaction.atomic
    def get_inventory(self, product_id, variant_id=None) -> Inventory:
        product, variant = self.resolve(product_id, variant_id)
        return self._record(product, variant, lock=False)

    def _prepare(self, product_id, variant_id, performed_by=None):
        """Resolve, lock and heal the record before any change."""
        product, variant = self.resolve(product_id, variant_id)
        record = self._record(product, variant, lock=True)
        cached = (variant or product).stock_qty
        if cached > record.current_stock:
            self._auto_sync(record, product, variant, cached, performed_by)
        return product, variant, record

    def _auto_sync(self, record, product, variant, cached, performed_by=None):
        before = record.current_stock
        logger.warning(
            "Inventory drift on %s: cached stock %s above record %s, raising record",
            variant or product, cached, before,
        )
        Inventory.objects.filter(pk=record.pk).update(current_stock=F("current_stock") + (cached - before))
        record.refresh_from_db()
        self._finish(record)
        StockMovement.objects.create(
            inventory=record,
            product=product,
            variant=variant,
            movement_type=StockMovement.Type.ADJUSTMENT,
            quantity=cached - before,
            stock_before=before,
            stock_after=record.current_stock,
            unit_cost=record.average_cost,
            total_value=_money_q((cached - before) * record.average_cost),
            reason="Auto-sync from product stock",
            created_by=performed_by,
        )

    def _finish(self, record: Inventory, extra_fields=()):
        record.available_stock = max(ZERO, record.current_stock - record.reserved_stock)
        record.status = (Inventory.Status.ACTIVE if record.current_stock > 0
                         else Inventory.Status.OUT_OF_STOCK)
        record.save(update_fields=["available_stock", "status", "last_updated", *extra_fields])

    def _refresh_cache(self, record: Inventory):
        # inventory wins; the cache is overwritten, never read back
        if record.variant_id:
            ProductVariant.objects.filter(pk=record.variant_id).update(stock_qty=record.current_stock)
        else:
            Product.objects.filter(pk=record.product_id).update(stock_qty=record.current_stock)

    def _apply_cost(self, record: Inventory, product, variant, stock_before, qty, unit_cost) -> list:
        unit_cost = Decimal(str(unit_cost))
        total = stock_before + qty
        if total > 0:
            record.average_cost = _qty_q(
                (stock_before * record.average_cost + qty * unit_cost) / total
            )
        record.last_purchase_cost = unit_cost
        record.last_purchase_date = timezone.now()
        self._reprice(record, product, variant)
        return list(COST_FIELDS)

    def _withdraw_cost(self, record: Inventory, product, variant, stock_before, qty, unit_cost) -> list:
        """Take qty bought at unit_cost back out of the weighted average."""
        left = stock_before - qty
        value = stock_before * record.average_cost - qty * Decimal(str(unit_cost))
        if left <= 0 or value < 0:
            return []
        record.average_cost = _qty_q(value / left)
        self._reprice(record, product, variant)
        return ["average_cost"]

    def _reprice(self, record: Inventory, product, variant):
        owner_model = ProductVariant if variant else Product
        owner_model.objects.filter(pk=(variant or product).pk).update(
            purchase_price=_money_q(record.average_cost)
        )

    # ---- mutations -------------------------------------------------------
    @transaction.atomic
    def update_stock(
        self,
        product_id,
        movement_type: str,
        quantity,
        reason: str = "",
        reference=None,
        performed_by=None,
        variant_id=None,
        unit_cost=None,
        party=None,
        notes: str = "",
        movement_date=None,
        withdraw_cost: bool = False,
    ) -> StockMovement:
        """
        Apply one movement and write its audit row.

        in / return add stock, out / damage remove it, adjustment sets the
        absolute count. Removals are checked against current - reserved,
        once on the locked row and again in the UPDATE itself.

        An inbound unit_cost is blended into the average cost. With
        withdraw_cost, an outbound unit_cost is taken back out of it
        (a purchase being deleted or reduced).
        """
        if movement_type not in StockMovement.Type.values:
            raise ValidationError(f"Unknown movement type '{movement_type}'.", code="invalid_movement")
        qty = _quantity(quantity, allow_zero=movement_type == StockMovement.Type.ADJUSTMENT)
        product, variant, record = self._prepare(product_id, variant_id, performed_by)
        owner = variant or product

        before = record.current_stock
        if movement_type in StockMovement.INBOUND:
            delta = qty
        elif movement_type in StockMovement.OUTBOUND:
            delta = -qty
            available = before - record.reserved_stock
            if available < qty:
                raise InsufficientStock(owner, max(ZERO, available), qty)
        else:
            delta = qty - before

        qs = Inventory.objects.filter(pk=record.pk)
        if movement_type in StockMovement.OUTBOUND:
            qs = qs.filter(current_stock__gte=F("reserved_stock") + qty)
        if not qs.update(current_stock=F("current_stock") + delta):
            record.refresh_from_db()
            raise InsufficientStock(owner, max(ZERO, record.current_stock - record.reserved_stock), qty)
        record.refresh_from_db()

        extra = []
        if movement_type in StockMovement.INBOUND and unit_cost is not None:
            extra = self._apply_cost(record, product, variant, before, qty, unit_cost)
        elif withdraw_cost and movement_type in StockMovement.OUTBOUND and unit_cost is not None:
            extra = self._withdraw_cost(record, product, variant, before, qty, unit_cost)
        self._finish(record, extra)
        self._refresh_cache(record)

        cost = Decimal(str(unit_cost)) if unit_cost is not None else record.average_cost
        moved = abs(record.current_stock - before)
        return StockMovement.objects.create(
            inventory=record,
            product=product,
            variant=variant,
            party=party,
            movement_type=movement_type,
            quantity=qty if movement_type != StockMovement.Type.ADJUSTMENT else moved,
            stock_before=before,
            stock_after=record.current_stock,
            unit_cost=cost,
            total_value=_money_q(moved * cost),
            reason=reason[:255],
            movement_date=movement_date or timezone.now(),
            notes=notes[:255],
            created_by=performed_by,
            **document_reference(reference),
        )

    @transaction.atomic
    def reserve_stock(self, product_id, quantity, variant_id=None, performed_by=None) -> Inventory:
        qty = _quantity(quantity)
        product, variant, record = self._prepare(product_id, variant_id, performed_by)
        available = record.current_stock - record.reserved_stock
        if available < qty:
            raise InsufficientStock(variant or product, max(ZERO, available), qty)
        updated = Inventory.objects.filter(
            pk=record.pk, current_stock__gte=F("reserved_stock") + qty
        ).update(reserved_stock=F("reserved_stock") + qty)
        record.refresh_from_db()
        if not updated:
            raise InsufficientStock(variant or product,
                                    max(ZERO, record.current_stock - record.reserved_stock), qty)
        self._finish(record)
        return record

    @transaction.atomic
    def release_stock(self, product_id, quantity, variant_id=None, performed_by=None) -> Inventory:
        qty = _quantity(quantity)
        product, variant, record = self._prepare(product_id, variant_id, performed_by)
        released = min(qty, record.reserved_stock)
        if released:
            Inventory.objects.filter(pk=record.pk).update(reserved_stock=F("reserved_stock") - released)
            record.refresh_from_db()
        self._finish(record)
        return record

    @transaction.atomic
    def sync_cache(self, product: Product) -> int:
        """Refresh cached stock on the product and its variants from inventory."""
        count = 0
        for record in Inventory.objects.filter(product=product):
            self._refresh_cache(record)
            count += 1
        return count

    # ---- cost bookkeeping ------------------------------------------------
    def cost_snapshot(self, product_id, variant_id=None) -> dict:
        record = self.get_inventory(product_id, variant_id)
        owner = record.variant or record.product
        snapshot = {name: getattr(record, name) for name in COST_FIELDS}
        snapshot["purchase_price"] = owner.purchase_price
        return snapshot

    @transaction.atomic
    def restore_cost(self, product_id, snapshot: dict, variant_id=None) -> Inventory:
        """Put back cost fields captured by cost_snapshot()."""
        product, variant = self.resolve(product_id, variant_id)
        record = self._record(product, variant, lock=True)
        for name in COST_FIELDS:
            setattr(record, name, snapshot[name])
        record.save(update_fields=[*COST_FIELDS, "last_updated"])
        owner_model = ProductVariant if variant else Product
        owner_model.objects.filter(pk=(variant or product).pk).update(purchase_price=snapshot["purchase_price"])
        return record

    @transaction.atomic
    def refresh_last_purchase(self, product_id, variant_id=None, exclude=None) -> Inventory:
        """
        Point last_purchase_cost/date at the newest stock-in of a live
        purchase invoice, leaving out `exclude` (an invoice being removed).
        """
        product, variant = self.resolve(product_id, variant_id)
        record = self._record(product, variant, lock=True)
        live = PurchaseInvoice.objects.filter(is_deleted=False, status__in=PurchaseInvoice.CONFIRMED_STATUSES)
        if exclude is not None:
            live = live.exclude(pk=exclude.pk)
        last = (StockMovement.objects
                .filter(inventory=record, movement_type=StockMovement.Type.IN, is_deleted=False,
                        reference_type=PurchaseInvoice.__name__, reference_id__in=live.values("pk"))
                .order_by("-movement_date", "-id")
                .first())
        record.last_purchase_cost = last.unit_cost if last else ZERO
        record.last_purchase_date = last.movement_date if last else None
        record.save(update_fields=["last_purchase_cost", "last_purchase_date", "last_updated"])
        return record

    # ---- batches ---------------------------------------------------------
    def process_adjustment(self, adjustments, movement_type: str = StockMovement.Type.ADJUSTMENT,
                           reason: str = "", performed_by=None, notes: str = "") -> list:
        """
        Apply a stock take or a damage write-off across several lines.
        All or nothing: lines already applied are undone if a later one fails.

        adjustments: [{"product": id, "variant": id?, "quantity": n}, ...].
        For "adjustment" the quantity is the counted stock, for "damage" the
        amount written off.
        """
        if movement_type not in (StockMovement.Type.ADJUSTMENT, StockMovement.Type.DAMAGE):
            raise ValidationError(f"'{movement_type}' is not an adjustment type.", code="invalid_movement")
        if not reason.strip():
            raise ValidationError("Adjustments need a reason.", code="reason_required")
        if not adjustments:
            raise ValidationError("At least one line item is required.", code="no_items")

        stack = CompensationStack()
        movements = []
        try:
            for line in adjustments:
                product_id, variant_id = line["product"], line.get("variant")
                movement = self.update_stock(
                    product_id, movement_type, line.get("quantity"), reason=reason,
                    performed_by=performed_by, variant_id=variant_id, notes=notes,
                )
                movements.append(movement)
                if movement_type == StockMovement.Type.DAMAGE:
                    stack.push(f"restock {movement.quantity} of product #{movement.product_id}",
                               self.update_stock, product_id, StockMovement.Type.IN, movement.quantity,
                               reason=f"Rollback: {reason}", performed_by=performed_by, variant_id=variant_id)
                else:
                    stack.push(f"recount product #{movement.product_id} to {movement.stock_before}",
                               self.update_stock, product_id, StockMovement.Type.ADJUSTMENT,
                               movement.stock_before, reason=f"Rollback: {reason}",
                               performed_by=performed_by, variant_id=variant_id)
        except Exception as exc:
            stack.unwind(exc)
            raise
        logger.info("Processed %s of %d line(s): %s", movement_type, len(movements), reason)
        return movements

    def bulk_update_stock(self, updates, performed_by=None) -> list:
        """
        Apply independent movements one by one. A failing line is reported
        in its result and does not stop the others.
        """
        results = []
        for update in updates:
            product_id = update.get("product")
            try:
                movement = self.update_stock(
                    product_id, update.get("movement_type"), update.get("quantity"),
                    reason=update.get("reason", ""), performed_by=performed_by,
                    variant_id=update.get("variant"), unit_cost=update.get("unit_cost"),
                )
            except (ValidationError, NotFound) as exc:
                logger.warning("Bulk stock update failed for product #%s: %s", product_id, exc)
                results.append({"success": False, "product_id": product_id, "error": str(exc)})
            else:
                results.append({"success": True, "product_id": product_id, "movement": movement})
        return results

    # ---- queries ---------------------------------------------------------
    def low_stock(self):
        """Inventory records at or below their reorder point."""
        return (Inventory.objects
                .select_related("product", "variant")
                .filter(product__is_deleted=False, current_stock__lte=F("reorder_point"))
                .order_by("current_stock", "product__name", "pk"))

    def history(self, product_id, variant_id=None, movement_type=None, date_from=None, date_to=None,
                limit: int = 50, offset: int = 0) -> dict:
        product, variant = self.resolve(product_id, variant_id)
        qs = StockMovement.objects.filter(product=product, is_deleted=False)
        if variant is not None:
            qs = qs.filter(variant=variant)
        if movement_type:
            qs = qs.filter(movement_type=movement_type)
        if date_from:
            qs = qs.filter(movement_date__date__gte=date_from)
        if date_to:
            qs = qs.filter(movement_date__date__lte=date_to)
        total = qs.count()
        return {
            "movements": list(qs.order_by("-movement_date", "-id")[offset:offset + limit]),
            "total": total,
            "has_more": offset + limit < total,
        }

    def summary(self) -> dict:
        value = ExpressionWrapper(F("current_stock") * F("average_cost"),
                                  output_field=DecimalField(max_digits=36, decimal_places=6))
        active = Q(status=Inventory.Status.ACTIVE)
        data = Inventory.objects.filter(product__is_deleted=False).aggregate(
            total_products=Count("pk", filter=active),
            out_of_stock=Count("pk", filter=Q(status=Inventory.Status.OUT_OF_STOCK)),
            low_stock=Count("pk", filter=active & Q(current_stock__lte=F("reorder_point"))),
            total_value=Coalesce(Sum(value, filter=active), ZERO,
                                 output_field=DecimalField(max_digits=36, decimal_places=6)),
        )
        data["total_value"] = _money_q(Decimal(str(data["total_value"])))
        return data
