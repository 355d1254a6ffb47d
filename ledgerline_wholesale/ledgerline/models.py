# ledgerline/models.py
from calendar import monthrange
from datetime import date, timedelta
from decimal import Decimal, ROUND_HALF_UP
from uuid import uuid4

from django.conf import settings
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.db.models import Q, UniqueConstraint
from django.utils import timezone

# --------------------------------
# Common field presets
# --------------------------------
DECIMAL_12_2 = {"max_digits": 12, "decimal_places": 2}
DECIMAL_18_6 = {"max_digits": 18, "decimal_places": 6}  # qty, rates, costs
PERCENT = {"max_digits": 5, "decimal_places": 2}


def _money_q(v: Decimal) -> Decimal:
    return (v or Decimal("0.00")).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _qty_q(v: Decimal) -> Decimal:
    return (v or Decimal("0")).quantize(Decimal("0.000001"), rounding=ROUND_HALF_UP)


def _next_document_no(prefix: str) -> str:
    """
    Human-readable document number: <PREFIX>-<YYYYMMDD>-<6 hex>.
    """
    ts = timezone.localtime()
    return f"{prefix}-{ts.strftime('%Y%m%d')}-{uuid4().hex[:6].upper()}"


def document_reference(obj) -> dict:
    """Generic reference columns (type, id, number) pointing at a source document."""
    if obj is None:
        return {}
    number = (
        getattr(obj, "order_number", "")
        or getattr(obj, "invoice_number", "")
        or getattr(obj, "return_number", "")
        or getattr(obj, "reference", "")
    )
    return {
        "reference_type": obj.__class__.__name__,
        "reference_id": obj.pk,
        "reference_number": number or "",
    }


# --------------------------------
# Core mixins
# --------------------------------
class TimeStampedBy(models.Model):
    created_at = models.DateTimeField(default=timezone.now, db_index=True, editable=True)
    updated_at = models.DateTimeField(auto_now=True, db_index=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, null=True, blank=True,
        on_delete=models.SET_NULL, related_name="%(class)s_created"
    )
    updated_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, null=True, blank=True,
        on_delete=models.SET_NULL, related_name="%(class)s_updated"
    )
    is_active = models.BooleanField(default=True, db_index=True)
    is_deleted = models.BooleanField(default=False, db_index=True)

    class Meta:
        abstract = True


# --------------------------------
# Parties
# --------------------------------
class Party(TimeStampedBy):
    """
    Customers and suppliers share one table; `type` decides which balance
    service owns the row. The three balance buckets are written only through
    PartyBalanceService.
    """
    CUSTOMER = "CUSTOMER"
    SUPPLIER = "SUPPLIER"
    PARTY_TYPES = [(CUSTOMER, "Customer"), (SUPPLIER, "Supplier")]

    type = models.CharField(max_length=20, choices=PARTY_TYPES, db_index=True)
    display_name = models.CharField(max_length=255, db_index=True)
    phone = models.CharField(max_length=50, blank=True, default="")
    email = models.EmailField(blank=True, default="")
    address = models.TextField(blank=True, default="")

    # balance buckets
    pending_balance = models.DecimalField(**DECIMAL_12_2, default=Decimal("0.00"), editable=False)
    current_balance = models.DecimalField(**DECIMAL_12_2, default=Decimal("0.00"), editable=False)
    advance_balance = models.DecimalField(**DECIMAL_12_2, default=Decimal("0.00"), editable=False)
    credit_limit = models.DecimalField(**DECIMAL_12_2, default=Decimal("0.00"))  # 0 = no limit

    # customer-level discount applied to sales lines
    discount_percent = models.DecimalField(**PERCENT, default=Decimal("0.00"))

    class Meta:
        ordering = ["display_name"]
        indexes = [models.Index(fields=["type", "display_name"], name="party_type_name_idx")]
        constraints = [
            models.CheckConstraint(condition=Q(pending_balance__gte=0), name="party_pending_non_negative"),
            models.CheckConstraint(condition=Q(current_balance__gte=0), name="party_current_non_negative"),
            models.CheckConstraint(condition=Q(advance_balance__gte=0), name="party_advance_non_negative"),
        ]

    def __str__(self):
        return self.display_name

    @property
    def outstanding(self) -> Decimal:
        """Positive: party owes; negative: credit in party's favour."""
        return _money_q(self.pending_balance + self.current_balance - self.advance_balance)


class PartyTransaction(TimeStampedBy):
    """
    One row per balance mutation with the signed bucket deltas that were
    applied. Reversals read these back to undo a document exactly.
    """
    class Type(models.TextChoices):
        CHARGE        = "charge",        "Charge"
        PAYMENT       = "payment",       "Payment"
        REFUND        = "refund",        "Refund"
        CONFIRM       = "confirm",       "Confirm"
        REVERSAL      = "reversal",      "Reversal"
        ADJUSTMENT    = "adjustment",    "Adjustment"
        RECALCULATION = "recalculation", "Recalculation"

    party = models.ForeignKey(Party, on_delete=models.CASCADE, related_name="balance_transactions")
    transaction_type = models.CharField(max_length=20, choices=Type.choices, db_index=True)
    amount = models.DecimalField(**DECIMAL_12_2, default=Decimal("0.00"))

    pending_delta = models.DecimalField(**DECIMAL_12_2, default=Decimal("0.00"))
    current_delta = models.DecimalField(**DECIMAL_12_2, default=Decimal("0.00"))
    advance_delta = models.DecimalField(**DECIMAL_12_2, default=Decimal("0.00"))

    pending_after = models.DecimalField(**DECIMAL_12_2, default=Decimal("0.00"))
    current_after = models.DecimalField(**DECIMAL_12_2, default=Decimal("0.00"))
    advance_after = models.DecimalField(**DECIMAL_12_2, default=Decimal("0.00"))

    reference_type = models.CharField(max_length=50, blank=True, default="", db_index=True)
    reference_id = models.PositiveBigIntegerField(null=True, blank=True, db_index=True)
    reference_number = models.CharField(max_length=64, blank=True, default="")
    notes = models.CharField(max_length=255, blank=True, default="")

    class Meta:
        ordering = ["created_at", "id"]
        indexes = [
            models.Index(fields=["party", "reference_type", "reference_id"], name="ptxn_party_reference_idx"),
        ]

    def __str__(self):
        return f"{self.get_transaction_type_display()} {self.amount} — {self.party_id}"


# --------------------------------
# Catalogue
# --------------------------------
class Product(TimeStampedBy):
    name = models.CharField(max_length=255, db_index=True)
    sku = models.CharField(max_length=64, blank=True, default="", db_index=True)
    purchase_price = models.DecimalField(**DECIMAL_12_2, default=0)
    sale_price = models.DecimalField(**DECIMAL_12_2, default=0)
    tax_rate = models.DecimalField(**PERCENT, default=Decimal("0.00"))
    # cache of Inventory.current_stock, refreshed by InventoryStockService
    stock_qty = models.DecimalField(**DECIMAL_18_6, default=Decimal("0"))

    class Meta:
        ordering = ["name"]

    def __str__(self):
        return self.name


class ProductVariant(TimeStampedBy):
    product = models.ForeignKey(Product, on_delete=models.CASCADE, related_name="variants")
    name = models.CharField(max_length=255)
    sku = models.CharField(max_length=64, blank=True, default="")
    purchase_price = models.DecimalField(**DECIMAL_12_2, null=True, blank=True)
    sale_price = models.DecimalField(**DECIMAL_12_2, null=True, blank=True)
    stock_qty = models.DecimalField(**DECIMAL_18_6, default=Decimal("0"))

    class Meta:
        ordering = ["product_id", "name"]

    def __str__(self):
        return f"{self.product.name} — {self.name}"

    @property
    def effective_sale_price(self) -> Decimal:
        return self.sale_price if self.sale_price is not None else self.product.sale_price

    @property
    def effective_purchase_price(self) -> Decimal:
        return self.purchase_price if self.purchase_price is not None else self.product.purchase_price


class Inventory(models.Model):
    """
    Source of truth for stock. Product.stock_qty / ProductVariant.stock_qty
    are caches refreshed from this row.
    """
    class Status(models.TextChoices):
        ACTIVE       = "active",       "Active"
        OUT_OF_STOCK = "out_of_stock", "Out of stock"

    product = models.ForeignKey(Product, on_delete=models.CASCADE, related_name="inventory_records")
    variant = models.ForeignKey(ProductVariant, on_delete=models.CASCADE, null=True, blank=True,
                                related_name="inventory_records")

    current_stock = models.DecimalField(**DECIMAL_18_6, default=Decimal("0"))
    reserved_stock = models.DecimalField(**DECIMAL_18_6, default=Decimal("0"))
    available_stock = models.DecimalField(**DECIMAL_18_6, default=Decimal("0"))

    average_cost = models.DecimalField(**DECIMAL_18_6, default=Decimal("0"))
    last_purchase_cost = models.DecimalField(**DECIMAL_18_6, default=Decimal("0"))
    last_purchase_date = models.DateTimeField(null=True, blank=True)

    reorder_point = models.DecimalField(**DECIMAL_18_6, default=Decimal("10"))
    reorder_quantity = models.DecimalField(**DECIMAL_18_6, default=Decimal("50"))

    status = models.CharField(max_length=20, choices=Status.choices, default=Status.ACTIVE)
    last_updated = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name_plural = "Inventory"
        constraints = [
            UniqueConstraint(fields=["product"], condition=Q(variant__isnull=True),
                             name="uniq_inventory_base_product"),
            UniqueConstraint(fields=["product", "variant"], name="uniq_inventory_product_variant"),
            models.CheckConstraint(condition=Q(current_stock__gte=0), name="inventory_stock_non_negative"),
        ]

    def __str__(self):
        label = self.variant.name if self.variant_id else self.product.name
        return f"{label}: {self.current_stock}"

    @property
    def needs_reorder(self) -> bool:
        return self.current_stock <= self.reorder_point


class StockMovement(TimeStampedBy):
    """
    Audit sink: exactly one row per stock mutation. `quantity` is the
    absolute amount moved; direction follows `movement_type`.
    """
    class Type(models.TextChoices):
        IN         = "in",         "Stock In"
        OUT        = "out",        "Stock Out"
        ADJUSTMENT = "adjustment", "Adjustment"
        RETURN     = "return",     "Return"
        DAMAGE     = "damage",     "Damage"

    INBOUND = {Type.IN, Type.RETURN}
    OUTBOUND = {Type.OUT, Type.DAMAGE}

    inventory = models.ForeignKey(Inventory, on_delete=models.CASCADE, related_name="movements")
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="stock_movements")
    variant = models.ForeignKey(ProductVariant, on_delete=models.PROTECT, null=True, blank=True,
                                related_name="stock_movements")
    party = models.ForeignKey(Party, on_delete=models.SET_NULL, null=True, blank=True,
                              related_name="stock_movements")

    movement_type = models.CharField(max_length=20, choices=Type.choices, db_index=True)
    quantity = models.DecimalField(**DECIMAL_18_6)
    stock_before = models.DecimalField(**DECIMAL_18_6)
    stock_after = models.DecimalField(**DECIMAL_18_6)
    unit_cost = models.DecimalField(**DECIMAL_18_6, default=Decimal("0"))
    total_value = models.DecimalField(**DECIMAL_12_2, default=Decimal("0.00"))

    reason = models.CharField(max_length=255, blank=True, default="")
    reference_type = models.CharField(max_length=50, blank=True, default="", db_index=True)
    reference_id = models.PositiveBigIntegerField(null=True, blank=True, db_index=True)
    reference_number = models.CharField(max_length=64, blank=True, default="", db_index=True)
    movement_date = models.DateTimeField(default=timezone.now, db_index=True)
    notes = models.CharField(max_length=255, blank=True, default="")

    class Meta:
        ordering = ["movement_date", "id"]
        indexes = [models.Index(fields=["product", "movement_date"], name="movement_product_date_idx")]

    def __str__(self):
        return f"{self.get_movement_type_display()} {self.quantity} x {self.product_id}"

    @property
    def signed_quantity(self) -> Decimal:
        return self.stock_after - self.stock_before


# --------------------------------
# Money accounts
# --------------------------------
class BankAccount(TimeStampedBy):
    name = models.CharField(max_length=255)
    bank_name = models.CharField(max_length=255, blank=True, default="")
    account_number = models.CharField(max_length=64, blank=True, default="")

    class Meta:
        ordering = ["name"]

    def __str__(self):
        return f"{self.name} ({self.account_number})" if self.account_number else self.name


# ----------------------------
# Source documents
# ----------------------------
class SourceDocument(TimeStampedBy):
    """
    Pricing totals plus the payment sub-record shared by sales orders and
    purchase invoices. Mutated only by the TransactionOrchestrator.
    """
    class PaymentStatus(models.TextChoices):
        PENDING = "pending", "Pending"
        PARTIAL = "partial", "Partial"
        PAID    = "paid",    "Paid"

    subtotal         = models.DecimalField(**DECIMAL_12_2, default=Decimal("0.00"))
    discount_amount  = models.DecimalField(**DECIMAL_12_2, default=Decimal("0.00"))
    tax_amount       = models.DecimalField(**DECIMAL_12_2, default=Decimal("0.00"))
    total            = models.DecimalField(**DECIMAL_12_2, default=Decimal("0.00"))

    amount_paid        = models.DecimalField(**DECIMAL_12_2, default=Decimal("0.00"))
    payment_status     = models.CharField(max_length=20, choices=PaymentStatus.choices,
                                          default=PaymentStatus.PENDING)
    is_partial_payment = models.BooleanField(default=False)
    remaining_balance  = models.DecimalField(**DECIMAL_12_2, default=Decimal("0.00"))

    # True once the unpaid portion has been moved pending -> current
    balance_confirmed = models.BooleanField(default=False)

    notes = models.CharField(max_length=255, blank=True, default="")

    class Meta:
        abstract = True

    @property
    def unpaid_amount(self) -> Decimal:
        return _money_q(max(Decimal("0.00"), (self.total or Decimal("0.00")) - (self.amount_paid or Decimal("0.00"))))

    def recompute_totals(self):
        sub = disc = tax = Decimal("0.00")
        for it in self.items.all():
            sub += it.subtotal
            disc += it.discount_amount
            tax += it.tax_amount
        self.subtotal = _money_q(sub)
        self.discount_amount = _money_q(disc)
        self.tax_amount = _money_q(tax)
        self.total = _money_q(sub - disc + tax)

    def set_payment(self, amount_paid: Decimal):
        paid = _money_q(amount_paid)
        self.amount_paid = paid
        self.remaining_balance = _money_q(max(Decimal("0.00"), self.total - paid))
        self.is_partial_payment = Decimal("0.00") < paid < self.total
        if self.total > 0 and paid >= self.total:
            self.payment_status = self.PaymentStatus.PAID
        elif self.total == 0:
            self.payment_status = self.PaymentStatus.PAID
        elif paid > 0:
            self.payment_status = self.PaymentStatus.PARTIAL
        else:
            self.payment_status = self.PaymentStatus.PENDING


class SalesOrder(SourceDocument):
    class Status(models.TextChoices):
        DRAFT      = "draft",      "Draft"
        PENDING    = "pending",    "Pending"
        CONFIRMED  = "confirmed",  "Confirmed"
        PROCESSING = "processing", "Processing"
        SHIPPED    = "shipped",    "Shipped"
        DELIVERED  = "delivered",  "Delivered"
        PAID       = "paid",       "Paid"
        CANCELLED  = "cancelled",  "Cancelled"
        CLOSED     = "closed",     "Closed"

    class PaymentMethod(models.TextChoices):
        CASH    = "cash",    "Cash"
        BANK    = "bank",    "Bank"
        CARD    = "card",    "Card"
        ACCOUNT = "account", "On Account"

    # stock has left the shelf and the unpaid portion is posted
    CONFIRMED_STATUSES = {Status.CONFIRMED, Status.PROCESSING, Status.SHIPPED,
                          Status.DELIVERED, Status.PAID, Status.CLOSED}
    OPEN_STATUSES = {Status.DRAFT, Status.PENDING}
    TERMINAL_STATUSES = {Status.SHIPPED, Status.DELIVERED, Status.PAID, Status.CLOSED}
    TRANSITIONS = {
        Status.DRAFT:      {Status.PENDING, Status.CONFIRMED, Status.CANCELLED},
        Status.PENDING:    {Status.CONFIRMED, Status.CANCELLED},
        Status.CONFIRMED:  {Status.PROCESSING, Status.SHIPPED, Status.DELIVERED, Status.PAID,
                            Status.CLOSED, Status.CANCELLED},
        Status.PROCESSING: {Status.SHIPPED, Status.DELIVERED, Status.PAID, Status.CLOSED,
                            Status.CANCELLED},
        Status.SHIPPED:    {Status.DELIVERED, Status.PAID, Status.CLOSED},
        Status.DELIVERED:  {Status.PAID, Status.CLOSED},
        Status.PAID:       {Status.CLOSED},
        Status.CANCELLED:  set(),
        Status.CLOSED:     set(),
    }

    order_number = models.CharField(max_length=64, unique=True, default="", blank=True)
    customer   = models.ForeignKey(Party, on_delete=models.PROTECT, null=True, blank=True,
                                   related_name="sales_orders")
    customer_name = models.CharField(max_length=255, blank=True, default="")  # walk-ins
    status     = models.CharField(max_length=20, choices=Status.choices, default=Status.CONFIRMED)
    order_date = models.DateTimeField(default=timezone.now, db_index=True)
    payment_method = models.CharField(max_length=20, choices=PaymentMethod.choices,
                                      default=PaymentMethod.CASH)
    is_tax_exempt = models.BooleanField(default=False)

    class Meta:
        ordering = ["-order_date", "-id"]
        indexes = [
            models.Index(fields=["customer", "order_date"], name="so_customer_date_idx"),
            models.Index(fields=["status"], name="so_status_idx"),
        ]

    def __str__(self):
        return f"SO {self.order_number or self.pk or '—'}"

    def save(self, *args, **kwargs):
        if not self.order_number:
            self.order_number = _next_document_no("SO")
        super().save(*args, **kwargs)

    @property
    def party(self):
        return self.customer

    @property
    def is_stock_committed(self) -> bool:
        return self.status in self.CONFIRMED_STATUSES


class SalesOrderItem(models.Model):
    sales_order = models.ForeignKey(SalesOrder, on_delete=models.CASCADE, related_name="items")
    product     = models.ForeignKey(Product, on_delete=models.PROTECT)
    variant     = models.ForeignKey(ProductVariant, on_delete=models.PROTECT, null=True, blank=True)

    quantity    = models.DecimalField(**DECIMAL_18_6, validators=[MinValueValidator(0)])
    unit_price  = models.DecimalField(**DECIMAL_12_2)
    # snapshot of cost at time of sale
    unit_cost   = models.DecimalField(**DECIMAL_12_2, default=Decimal("0.00"))
    discount_percent = models.DecimalField(**PERCENT, default=Decimal("0.00"))
    tax_rate    = models.DecimalField(**PERCENT, default=Decimal("0.00"))

    subtotal        = models.DecimalField(**DECIMAL_12_2, default=Decimal("0.00"))
    discount_amount = models.DecimalField(**DECIMAL_12_2, default=Decimal("0.00"))
    tax_amount      = models.DecimalField(**DECIMAL_12_2, default=Decimal("0.00"))
    total           = models.DecimalField(**DECIMAL_12_2, default=Decimal("0.00"))

    class Meta:
        ordering = ["id"]

    def __str__(self):
        return f"{self.quantity or 0} x {getattr(self.product, 'name', '—')}"

    @property
    def line_key(self):
        return (self.product_id, self.variant_id)


class PurchaseInvoice(SourceDocument):
    class Status(models.TextChoices):
        DRAFT     = "draft",     "Draft"
        PENDING   = "pending",   "Pending"
        CONFIRMED = "confirmed", "Confirmed"
        RECEIVED  = "received",  "Received"
        PAID      = "paid",      "Paid"
        CANCELLED = "cancelled", "Cancelled"
        CLOSED    = "closed",    "Closed"

    CONFIRMED_STATUSES = {Status.CONFIRMED, Status.RECEIVED, Status.PAID, Status.CLOSED}
    OPEN_STATUSES = {Status.DRAFT, Status.PENDING}
    LOCKED_FOR_EDIT = {Status.RECEIVED, Status.PAID, Status.CLOSED, Status.CANCELLED}
    LOCKED_FOR_DELETE = {Status.PAID, Status.CLOSED}
    TRANSITIONS = {
        Status.DRAFT:     {Status.PENDING, Status.CONFIRMED, Status.CANCELLED},
        Status.PENDING:   {Status.CONFIRMED, Status.CANCELLED},
        Status.CONFIRMED: {Status.RECEIVED, Status.PAID, Status.CLOSED, Status.CANCELLED},
        Status.RECEIVED:  {Status.PAID, Status.CLOSED, Status.CANCELLED},
        Status.PAID:      {Status.CLOSED},
        Status.CANCELLED: set(),
        Status.CLOSED:    set(),
    }

    invoice_number = models.CharField(max_length=64, unique=True, default="", blank=True)
    supplier   = models.ForeignKey(Party, on_delete=models.PROTECT, related_name="purchase_invoices")
    status     = models.CharField(max_length=20, choices=Status.choices, default=Status.CONFIRMED)
    invoice_date = models.DateTimeField(default=timezone.now, db_index=True)

    class Meta:
        ordering = ["-invoice_date", "-id"]
        indexes = [
            models.Index(fields=["supplier", "invoice_date"], name="pi_supplier_date_idx"),
            models.Index(fields=["status"], name="pi_status_idx"),
        ]

    def __str__(self):
        return f"PI {self.invoice_number or self.pk or '—'}"

    def save(self, *args, **kwargs):
        if not self.invoice_number:
            self.invoice_number = _next_document_no("PI")
        super().save(*args, **kwargs)

    @property
    def party(self):
        return self.supplier

    @property
    def is_stock_committed(self) -> bool:
        return self.status in self.CONFIRMED_STATUSES


class PurchaseInvoiceItem(models.Model):
    invoice    = models.ForeignKey(PurchaseInvoice, on_delete=models.CASCADE, related_name="items")
    product    = models.ForeignKey(Product, on_delete=models.PROTECT)
    variant    = models.ForeignKey(ProductVariant, on_delete=models.PROTECT, null=True, blank=True)
    quantity   = models.DecimalField(**DECIMAL_18_6, validators=[MinValueValidator(0)])
    unit_cost  = models.DecimalField(**DECIMAL_12_2)
    tax_rate   = models.DecimalField(**PERCENT, default=Decimal("0.00"))

    subtotal        = models.DecimalField(**DECIMAL_12_2, default=Decimal("0.00"))
    discount_amount = models.DecimalField(**DECIMAL_12_2, default=Decimal("0.00"))
    tax_amount      = models.DecimalField(**DECIMAL_12_2, default=Decimal("0.00"))
    total_cost      = models.DecimalField(**DECIMAL_12_2, default=Decimal("0.00"))

    class Meta:
        ordering = ["id"]

    def __str__(self):
        return f"{self.quantity or 0} x {getattr(self.product, 'name', '—')} @ {self.unit_cost}"

    @property
    def line_key(self):
        return (self.product_id, self.variant_id)

    @property
    def total(self) -> Decimal:
        return self.total_cost


class StockReturn(TimeStampedBy):
    """
    Sale return (customer brings goods back) or purchase return (goods
    sent back to the supplier).
    """
    class Origin(models.TextChoices):
        SALES    = "sales",    "Sale Return"
        PURCHASE = "purchase", "Purchase Return"

    class Status(models.TextChoices):
        PENDING    = "pending",    "Pending"
        APPROVED   = "approved",   "Approved"
        PROCESSING = "processing", "Processing"
        RECEIVED   = "received",   "Received"
        COMPLETED  = "completed",  "Completed"
        REFUNDED   = "refunded",   "Refunded"
        REJECTED   = "rejected",   "Rejected"
        CANCELLED  = "cancelled",  "Cancelled"

    class RefundMethod(models.TextChoices):
        ORIGINAL_PAYMENT = "original_payment", "Original payment"
        CASH             = "cash",             "Cash"
        BANK             = "bank",             "Bank"
        STORE_CREDIT     = "store_credit",     "Store credit"

    # statuses whose stock effect has happened
    PROCESSED_STATUSES = {Status.APPROVED, Status.PROCESSING, Status.RECEIVED,
                          Status.COMPLETED, Status.REFUNDED}
    PROCESSABLE_STATUSES = {Status.PENDING, Status.APPROVED, Status.PROCESSING, Status.RECEIVED}

    return_number = models.CharField(max_length=64, unique=True, default="", blank=True)
    origin = models.CharField(max_length=20, choices=Origin.choices)
    sales_order = models.ForeignKey(SalesOrder, on_delete=models.PROTECT, null=True, blank=True,
                                    related_name="returns")
    purchase_invoice = models.ForeignKey(PurchaseInvoice, on_delete=models.PROTECT, null=True, blank=True,
                                         related_name="returns")
    party = models.ForeignKey(Party, on_delete=models.PROTECT, null=True, blank=True,
                              related_name="stock_returns")
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    refund_method = models.CharField(max_length=20, choices=RefundMethod.choices,
                                     default=RefundMethod.ORIGINAL_PAYMENT)
    return_date = models.DateTimeField(default=timezone.now, db_index=True)
    total_refund = models.DecimalField(**DECIMAL_12_2, default=Decimal("0.00"))
    balance_credited = models.DecimalField(**DECIMAL_12_2, default=Decimal("0.00"))
    processed_at = models.DateTimeField(null=True, blank=True)
    reason = models.CharField(max_length=255, blank=True, default="")

    class Meta:
        ordering = ["-return_date", "-id"]

    def __str__(self):
        return f"{self.get_origin_display()} {self.return_number or self.pk}"

    def save(self, *args, **kwargs):
        if not self.return_number:
            self.return_number = _next_document_no("SR" if self.origin == self.Origin.SALES else "PR")
        super().save(*args, **kwargs)

    @property
    def source_document(self):
        return self.sales_order if self.origin == self.Origin.SALES else self.purchase_invoice


class StockReturnItem(models.Model):
    stock_return = models.ForeignKey(StockReturn, on_delete=models.CASCADE, related_name="items")
    product = models.ForeignKey(Product, on_delete=models.PROTECT)
    variant = models.ForeignKey(ProductVariant, on_delete=models.PROTECT, null=True, blank=True)
    quantity = models.DecimalField(**DECIMAL_18_6, validators=[MinValueValidator(0)])
    original_price = models.DecimalField(**DECIMAL_12_2, default=Decimal("0.00"))
    refund_amount = models.DecimalField(**DECIMAL_12_2, default=Decimal("0.00"))

    class Meta:
        ordering = ["id"]

    def __str__(self):
        return f"{self.quantity or 0} x {getattr(self.product, 'name', '—')}"

    @property
    def line_key(self):
        return (self.product_id, self.variant_id)

    def line_total(self) -> Decimal:
        if self.refund_amount:
            return _money_q(self.refund_amount)
        return _money_q((self.quantity or Decimal("0")) * (self.original_price or Decimal("0")))


# ----------------------------
# Payments and recurring expenses
# ----------------------------
class RecurringExpense(TimeStampedBy):
    class Status(models.TextChoices):
        ACTIVE   = "active",   "Active"
        INACTIVE = "inactive", "Inactive"

    class PaymentType(models.TextChoices):
        CASH = "cash", "Cash"
        BANK = "bank", "Bank"

    name = models.CharField(max_length=255)
    amount = models.DecimalField(**DECIMAL_12_2, validators=[MinValueValidator(0)])
    day_of_month = models.PositiveSmallIntegerField(
        default=1, validators=[MinValueValidator(1), MaxValueValidator(31)]
    )
    supplier = models.ForeignKey(Party, on_delete=models.PROTECT, null=True, blank=True,
                                 related_name="recurring_expenses_as_supplier")
    customer = models.ForeignKey(Party, on_delete=models.PROTECT, null=True, blank=True,
                                 related_name="recurring_expenses_as_customer")
    default_payment_type = models.CharField(max_length=10, choices=PaymentType.choices,
                                            default=PaymentType.CASH)
    bank_account = models.ForeignKey(BankAccount, on_delete=models.SET_NULL, null=True, blank=True,
                                     related_name="recurring_expenses")
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.ACTIVE)
    next_due_date = models.DateField(null=True, blank=True)
    last_paid_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["next_due_date", "name"]

    def __str__(self):
        return self.name

    @staticmethod
    def _due_in_month(year: int, month: int, day: int) -> date:
        return date(year, month, min(day, monthrange(year, month)[1]))

    def following_due_date(self, anchor: date) -> date:
        """First occurrence of day_of_month strictly after `anchor`."""
        candidate = self._due_in_month(anchor.year, anchor.month, self.day_of_month)
        if candidate > anchor:
            return candidate
        nxt = date(anchor.year, anchor.month, 28) + timedelta(days=4)  # always next month
        return self._due_in_month(nxt.year, nxt.month, self.day_of_month)


class Payment(TimeStampedBy):
    """Standalone cash or bank payment/receipt against a party."""
    IN = "in"
    OUT = "out"
    DIRECTIONS = [(IN, "Received"), (OUT, "Paid")]

    class Source(models.TextChoices):
        CASH = "cash", "Cash"
        BANK = "bank", "Bank"

    party = models.ForeignKey(Party, on_delete=models.PROTECT, null=True, blank=True,
                              related_name="payments")
    direction = models.CharField(max_length=3, choices=DIRECTIONS)
    payment_source = models.CharField(max_length=10, choices=Source.choices, default=Source.CASH)
    bank_account = models.ForeignKey(BankAccount, on_delete=models.PROTECT, null=True, blank=True,
                                     related_name="payments")
    recurring_expense = models.ForeignKey(RecurringExpense, on_delete=models.SET_NULL, null=True,
                                          blank=True, related_name="payments")
    amount = models.DecimalField(**DECIMAL_12_2, validators=[MinValueValidator(0)])
    date = models.DateField(default=timezone.localdate, db_index=True)
    reference = models.CharField(max_length=64, blank=True, default="")
    description = models.CharField(max_length=255, blank=True, default="")

    class Meta:
        ordering = ["-date", "-id"]
        indexes = [models.Index(fields=["party", "date"], name="payment_party_date_idx")]

    def __str__(self):
        return f"{self.get_direction_display()} {self.amount} ({self.get_payment_source_display()})"
