# ledgerline/ledger.py
from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Literal, Optional
from datetime import date, datetime
from math import ceil

from django.conf import settings
from django.db.models import Q

from .models import (
    PurchaseInvoice, PurchaseInvoiceItem, SalesOrder, SalesOrderItem,
    StockMovement, StockReturn, StockReturnItem,
)

DocumentType = Literal["SALE", "PURCHASE", "SALE_RETURN", "PURCHASE_RETURN", "DAMAGE"]

SALE = "SALE"
PURCHASE = "PURCHASE"
SALE_RETURN = "SALE_RETURN"
PURCHASE_RETURN = "PURCHASE_RETURN"
DAMAGE = "DAMAGE"
DOCUMENT_TYPES = (SALE, PURCHASE, SALE_RETURN, PURCHASE_RETURN, DAMAGE)

# stock leaves: -1, stock arrives: +1
SIGNS = {
    SALE: Decimal("-1"),
    PURCHASE: Decimal("1"),
    SALE_RETURN: Decimal("1"),
    PURCHASE_RETURN: Decimal("-1"),
    DAMAGE: Decimal("-1"),
}


@dataclass
class LedgerFilter:
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    party_id: Optional[int] = None
    product_id: Optional[int] = None
    document_number: str = ""
    document_type: Optional[DocumentType] = None
    page: int = 1
    limit: Optional[int] = None


@dataclass
class LedgerEntry:
    date: datetime
    document_type: DocumentType
    document_ref: str
    party_name: str
    product_id: int
    product_name: str
    unit_price: Decimal
    signed_quantity: Decimal
    signed_amount: Decimal
    reference_id: int | None = None
    # the product itself, without the variant
    base_name: str = ""
    # filled in during assembly
    running_quantity: Decimal = Decimal("0")
    running_amount: Decimal = Decimal("0.00")


@dataclass
class ProductLedger:
    product_id: int
    product_name: str
    entries: list = field(default_factory=list)
    total_quantity: Decimal = Decimal("0")
    total_amount: Decimal = Decimal("0.00")


@dataclass
class StockLedger:
    products: list
    total_quantity: Decimal
    total_amount: Decimal
    page: int
    pages: int
    total_products: int
    limit: int


def _q(v: Decimal | None) -> Decimal:
    return (v or Decimal("0.00")).quantize(Decimal("0.01"))

def _line_name(product, variant) -> str:
    return f"{product.name} — {variant.name}" if variant is not None else product.name

def _dated(qs, field_name: str, flt: LedgerFilter):
    if flt.date_from:
        qs = qs.filter(**{f"{field_name}__date__gte": flt.date_from})
    if flt.date_to:
        qs = qs.filter(**{f"{field_name}__date__lte": flt.date_to})
    return qs


class StockLedgerReconstructor:
    """
    Read-only replay of sales, purchases, returns and damage write-offs into
    one signed, per-product stock ledger. Nothing here writes to the database.
    """

    def __init__(self, page_size: Optional[int] = None):
        self.page_size = page_size or getattr(settings, "LEDGERLINE_STOCK_LEDGER_PAGE_SIZE", 1000)

    # ---------- SALES ----------
    def sale_rows(self, flt: LedgerFilter) -> Iterable[LedgerEntry]:
        qs = (SalesOrderItem.objects
              .select_related("sales_order", "sales_order__customer", "product", "variant")
              .filter(sales_order__is_deleted=False,
                      sales_order__status__in=SalesOrder.CONFIRMED_STATUSES))
        qs = _dated(qs, "sales_order__order_date", flt)
        if flt.party_id:
            qs = qs.filter(sales_order__customer_id=flt.party_id)
        if flt.product_id:
            qs = qs.filter(product_id=flt.product_id)
        if flt.document_number:
            qs = qs.filter(sales_order__order_number__icontains=flt.document_number)

        for it in qs:
            so = it.sales_order
            yield self._entry(
                SALE, so.order_date, so.order_number,
                so.customer.display_name if so.customer_id else so.customer_name,
                it.product, it.variant, it.quantity, it.unit_price, so.pk,
            )

    # ---------- PURCHASES ----------
    def purchase_rows(self, flt: LedgerFilter) -> Iterable[LedgerEntry]:
        qs = (PurchaseInvoiceItem.objects
              .select_related("invoice", "invoice__supplier", "product", "variant")
              .filter(invoice__is_deleted=False,
                      invoice__status__in=PurchaseInvoice.CONFIRMED_STATUSES))
        qs = _dated(qs, "invoice__invoice_date", flt)
        if flt.party_id:
            qs = qs.filter(invoice__supplier_id=flt.party_id)
        if flt.product_id:
            qs = qs.filter(product_id=flt.product_id)
        if flt.document_number:
            qs = qs.filter(invoice__invoice_number__icontains=flt.document_number)

        for it in qs:
            inv = it.invoice
            yield self._entry(
                PURCHASE, inv.invoice_date, inv.invoice_number, inv.supplier.display_name,
                it.product, it.variant, it.quantity, it.unit_cost, inv.pk,
            )

    # ---------- RETURNS ----------
    def return_rows(self, flt: LedgerFilter, origin: str) -> Iterable[LedgerEntry]:
        doc_type = SALE_RETURN if origin == StockReturn.Origin.SALES else PURCHASE_RETURN
        qs = (StockReturnItem.objects
              .select_related("stock_return", "stock_return__party", "product", "variant")
              .filter(stock_return__is_deleted=False,
                      stock_return__origin=origin,
                      stock_return__status__in=StockReturn.PROCESSED_STATUSES))
        qs = _dated(qs, "stock_return__return_date", flt)
        if flt.party_id:
            qs = qs.filter(stock_return__party_id=flt.party_id)
        if flt.product_id:
            qs = qs.filter(product_id=flt.product_id)
        if flt.document_number:
            qs = qs.filter(stock_return__return_number__icontains=flt.document_number)

        for it in qs:
            ret = it.stock_return
            yield self._entry(
                doc_type, ret.return_date, ret.return_number,
                ret.party.display_name if ret.party_id else "",
                it.product, it.variant, it.quantity, it.original_price, ret.pk,
                amount=it.line_total(),
            )

    # ---------- DAMAGE ----------
    def damage_rows(self, flt: LedgerFilter) -> Iterable[LedgerEntry]:
        qs = (StockMovement.objects
              .select_related("product", "variant", "party")
              .filter(movement_type=StockMovement.Type.DAMAGE, is_deleted=False))
        qs = _dated(qs, "movement_date", flt)
        if flt.party_id:
            qs = qs.filter(party_id=flt.party_id)
        if flt.product_id:
            qs = qs.filter(product_id=flt.product_id)
        if flt.document_number:
            qs = qs.filter(Q(reference_number__icontains=flt.document_number)
                           | Q(reason__icontains=flt.document_number))

        for mv in qs:
            yield self._entry(
                DAMAGE, mv.movement_date, mv.reference_number or f"DMG #{mv.pk}",
                mv.party.display_name if mv.party_id else "",
                mv.product, mv.variant, mv.quantity, mv.unit_cost, mv.reference_id or mv.pk,
            )

    def _entry(self, doc_type, when, ref, party_name, product, variant, qty, unit_price, ref_id,
               amount=None) -> LedgerEntry:
        sign = SIGNS[doc_type]
        qty = qty or Decimal("0")
        unit_price = unit_price or Decimal("0")
        value = _q(amount if amount is not None else qty * unit_price)
        return LedgerEntry(
            date=when,
            document_type=doc_type,
            document_ref=ref,
            party_name=party_name or "",
            product_id=product.pk,
            product_name=_line_name(product, variant),
            base_name=product.name,
            unit_price=_q(unit_price),
            signed_quantity=sign * qty,
            signed_amount=sign * value,
            reference_id=ref_id,
        )

    def entries(self, flt: LedgerFilter) -> list:
        if flt.document_type and flt.document_type not in DOCUMENT_TYPES:
            raise ValueError(f"Unknown document type '{flt.document_type}'")
        wanted = [flt.document_type] if flt.document_type else list(DOCUMENT_TYPES)

        rows = []
        if SALE in wanted:
            rows.extend(self.sale_rows(flt))
        if PURCHASE in wanted:
            rows.extend(self.purchase_rows(flt))
        if SALE_RETURN in wanted:
            rows.extend(self.return_rows(flt, StockReturn.Origin.SALES))
        if PURCHASE_RETURN in wanted:
            rows.extend(self.return_rows(flt, StockReturn.Origin.PURCHASE))
        if DAMAGE in wanted:
            rows.extend(self.damage_rows(flt))
        rows.sort(key=lambda r: (r.date, r.reference_id or 0))
        return rows

    def build_ledger(self, flt: Optional[LedgerFilter] = None) -> StockLedger:
        """
        Returns a StockLedger whose `products` holds one page of ProductLedger
        groups. Grand totals always cover every group, not just the page.
        """
        flt = flt or LedgerFilter()
        groups: dict[int, ProductLedger] = {}
        for entry in self.entries(flt):
            group = groups.get(entry.product_id)
            if group is None:
                group = groups[entry.product_id] = ProductLedger(entry.product_id, entry.base_name)
            group.total_quantity += entry.signed_quantity
            group.total_amount += entry.signed_amount
            entry.running_quantity = group.total_quantity
            entry.running_amount = group.total_amount
            group.entries.append(entry)

        ordered = sorted(groups.values(), key=lambda g: (g.product_name.lower(), g.product_id))
        total_quantity = sum((g.total_quantity for g in ordered), Decimal("0"))
        total_amount = _q(sum((g.total_amount for g in ordered), Decimal("0.00")))

        limit = max(1, int(flt.limit or self.page_size))
        pages = max(1, ceil(len(ordered) / limit))
        page = min(max(1, int(flt.page or 1)), pages)
        start = (page - 1) * limit

        return StockLedger(
            products=ordered[start:start + limit],
            total_quantity=total_quantity,
            total_amount=total_amount,
            page=page,
            pages=pages,
            total_products=len(ordered),
            limit=limit,
        )


def build_ledger(flt: Optional[LedgerFilter] = None) -> StockLedger:
    return StockLedgerReconstructor().build_ledger(flt)
