from django.core.management.base import BaseCommand

from ledgerline.models import Product
from ledgerline.services.inventory_service import InventoryStockService


class Command(BaseCommand):
    help = 'Overwrites cached product/variant stock_qty from the inventory records'

    def handle(self, *args, **options):
        service = InventoryStockService()
        products = Product.objects.filter(is_deleted=False).order_by('pk')
        count = 0
        for product in products.iterator():
            count += service.sync_cache(product)
        self.stdout.write(self.style.SUCCESS(f'Synced {count} inventory records.'))
