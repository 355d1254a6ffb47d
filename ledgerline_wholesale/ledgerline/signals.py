import logging

from django.db.models.signals import post_save
from django.dispatch import receiver

from .models import Product, ProductVariant
from ledgerline.services.inventory_service import InventoryStockService

logger = logging.getLogger(__name__)


# ---------------------------------------------------------
# Inventory records follow the catalogue
# ---------------------------------------------------------
@receiver(post_save, sender=Product)
def product_post_save(sender, instance, created, raw=False, **kwargs):
    if created and not raw:
        InventoryStockService().get_inventory(instance.pk)


@receiver(post_save, sender=ProductVariant)
def variant_post_save(sender, instance, created, raw=False, **kwargs):
    if created and not raw:
        InventoryStockService().get_inventory(instance.product_id, instance.pk)
