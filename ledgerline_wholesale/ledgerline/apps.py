from django.apps import AppConfig


class LedgerlineConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'ledgerline'

    def ready(self):
        import ledgerline.signals  # noqa: F401
