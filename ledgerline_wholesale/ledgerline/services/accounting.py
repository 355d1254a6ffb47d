"""
Accounting-entry collaborator. The engine only notifies it; journal
posting lives elsewhere. The backend class is chosen with the
LEDGERLINE_ACCOUNTING_BACKEND setting.
"""
import logging

from django.conf import settings
from django.utils.module_loading import import_string

logger = logging.getLogger(__name__)

DEFAULT_BACKEND = "ledgerline.services.accounting.LoggingAccountingBackend"


class AccountingBackend:
    def record_sale(self, order):
        raise NotImplementedError

    def record_purchase(self, invoice):
        raise NotImplementedError

    def record_return(self, stock_return):
        raise NotImplementedError

    def record_cash_payment(self, payment):
        raise NotImplementedError

    def record_bank_payment(self, payment):
        raise NotImplementedError


class LoggingAccountingBackend(AccountingBackend):
    """Writes each notification to the log; used when no ledger is wired in."""

    def record_sale(self, order):
        logger.info("Sale %s posted: total %s, paid %s", order.order_number, order.total, order.amount_paid)

    def record_purchase(self, invoice):
        logger.info("Purchase %s posted: total %s, paid %s",
                    invoice.invoice_number, invoice.total, invoice.amount_paid)

    def record_return(self, stock_return):
        logger.info("Return %s posted: refund %s", stock_return.return_number, stock_return.total_refund)

    def record_cash_payment(self, payment):
        logger.info("Cash payment #%s: %s", payment.pk, payment.amount)

    def record_bank_payment(self, payment):
        logger.info("Bank payment #%s: %s via %s", payment.pk, payment.amount, payment.bank_account)


def get_accounting_backend() -> AccountingBackend:
    path = getattr(settings, "LEDGERLINE_ACCOUNTING_BACKEND", DEFAULT_BACKEND)
    return import_string(path)()
