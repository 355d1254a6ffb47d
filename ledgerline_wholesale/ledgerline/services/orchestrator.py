"""
Document workflows that move stock and party balances together.

Every public method follows the same order: validate, price, check
credit, move stock (each step pushes its undo onto a CompensationStack),
then persist the document and post the balance inside transaction.atomic.
If anything after the first stock step fails, the stack is unwound.
Accounting notifications never abort the business transaction.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from ledgerline.exceptions import (
    BusinessRuleError, CreditLimitExceeded, InvalidStateTransition, NotFound,
)
from ledgerline.models import (
    BankAccount, Party, Payment, Product, ProductVariant, PurchaseInvoice, PurchaseInvoiceItem,
    RecurringExpense, SalesOrder, SalesOrderItem, StockMovement, StockReturn,
    _money_q, _next_document_no, _qty_q,
)
from ledgerline.services.accounting import get_accounting_backend
from ledgerline.services.balance_service import (
    PartyBalanceService, _amount, customer_balances, supplier_balances,
)
from ledgerline.services.compensation import CompensationStack
from ledgerline.services.inventory_service import InventoryStockService, _quantity

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")
HUNDRED = Decimal("100")
_UNSET = object()


@dataclass
class PricedLine:
    product: Product
    variant: Optional[ProductVariant]
    quantity: Decimal
    unit_price: Decimal = ZERO
    unit_cost: Decimal = ZERO
    discount_percent: Decimal = ZERO
    tax_rate: Decimal = ZERO
    subtotal: Decimal = ZERO
    discount_amount: Decimal = ZERO
    tax_amount: Decimal = ZERO
    total: Decimal = ZERO

    @property
    def line_key(self):
        return (self.product.pk, self.variant.pk if self.variant else None)


def _decimal(value, default=ZERO) -> Decimal:
    if value is None or value == "":
        return default
    return Decimal(str(value))


def _quantities(lines) -> dict:
    qty = {}
    for line in lines:
        qty[line.line_key] = qty.get(line.line_key, ZERO) + line.quantity
    return qty


def _unit_costs(items) -> dict:
    """Quantity-weighted purchase cost per (product, variant)."""
    qty, value = {}, {}
    for it in items:
        qty[it.line_key] = qty.get(it.line_key, ZERO) + it.quantity
        value[it.line_key] = value.get(it.line_key, ZERO) + it.quantity * it.unit_cost
    return {key: _qty_q(value[key] / qty[key]) for key in qty if qty[key]}


def _contribution(doc) -> Decimal:
    """What the document adds to the party's debt: total less paid (may be negative)."""
    return _money_q(doc.total - doc.amount_paid)


class TransactionOrchestrator:
    def __init__(
        self,
        customers: Optional[PartyBalanceService] = None,
        suppliers: Optional[PartyBalanceService] = None,
        inventory: Optional[InventoryStockService] = None,
        accounting=None,
    ):
        self.customers = customers or customer_balances
        self.suppliers = suppliers or supplier_balances
        self.inventory = inventory or InventoryStockService()
        self.accounting = accounting or get_accounting_backend()

    # ------------------------------------------------------------------
    # shared helpers
    # ------------------------------------------------------------------
    def _balances(self, party: Party) -> PartyBalanceService:
        return self.customers if party.type == Party.CUSTOMER else self.suppliers

    def _load(self, model, pk, label):
        pk = getattr(pk, "pk", pk)
        try:
            return model.objects.get(pk=pk, is_deleted=False)
        except model.DoesNotExist:
            raise NotFound(label, pk) from None

    def _relock(self, doc, expected_status):
        """Lock the row inside the transaction and make sure nobody moved it meanwhile."""
        locked = type(doc).objects.select_for_update().get(pk=doc.pk)
        if locked.status != expected_status or locked.is_deleted:
            raise InvalidStateTransition(doc, locked.status, expected_status)
        return locked

    def _notify(self, method: str, obj):
        try:
            with transaction.atomic():
                getattr(self.accounting, method)(obj)
        except Exception:
            logger.exception("Accounting %s failed for %s; business transaction kept", method, obj)

    def _stock_step(self, stack, movements, key, movement_type, qty, reason, reference, user,
                    party=None, unit_cost=None, withdraw_cost=False):
        product_id, variant_id = key
        revalues = unit_cost is not None and (movement_type in StockMovement.INBOUND or withdraw_cost)
        snapshot = self.inventory.cost_snapshot(product_id, variant_id) if revalues else None
        movement = self.inventory.update_stock(
            product_id, movement_type, qty, reason=reason, reference=reference,
            performed_by=user, variant_id=variant_id, unit_cost=unit_cost, party=party,
            withdraw_cost=withdraw_cost,
        )
        movements.append(movement)
        undo = StockMovement.Type.OUT if movement_type in StockMovement.INBOUND else StockMovement.Type.IN
        stack.push(
            f"{undo} {qty} of product #{product_id}",
            self.inventory.update_stock, product_id, undo, qty,
            reason=f"Rollback: {reason}", reference=reference, performed_by=user,
            variant_id=variant_id, party=party,
        )
        if snapshot is not None:
            # runs before the quantity undo, which leaves cost alone
            stack.push(f"restore cost of product #{product_id}", self.inventory.restore_cost,
                       product_id, snapshot, variant_id=variant_id)
        return movement

    def _reserve_step(self, stack, key, qty, user, release=False):
        product_id, variant_id = key
        if release:
            self.inventory.release_stock(product_id, qty, variant_id=variant_id, performed_by=user)
            stack.push(f"re-reserve {qty} of product #{product_id}", self.inventory.reserve_stock,
                       product_id, qty, variant_id=variant_id, performed_by=user)
        else:
            self.inventory.reserve_stock(product_id, qty, variant_id=variant_id, performed_by=user)
            stack.push(f"release {qty} of product #{product_id}", self.inventory.release_stock,
                       product_id, qty, variant_id=variant_id, performed_by=user)

    def _link_movements(self, doc, movements):
        if movements:
            StockMovement.objects.filter(pk__in=[m.pk for m in movements]).update(
                reference_type=doc.__class__.__name__, reference_id=doc.pk,
            )

    def _post_balance(self, doc, party, user):
        """Charge the full total once, apply what was paid, post the unpaid part if confirmed."""
        service = self._balances(party)
        service.record_charge(party, doc.total, reference=doc, user=user)
        if doc.amount_paid > 0:
            service.record_payment(party, doc.amount_paid, reference=doc, user=user)
        doc.balance_confirmed = False
        if doc.is_stock_committed:
            service.confirm_charge(party, doc.unpaid_amount, reference=doc, user=user)
            doc.balance_confirmed = True
        doc.save(update_fields=["balance_confirmed", "updated_at"])

    def _confirm_balance(self, doc, party, user):
        if party is None or doc.balance_confirmed:
            return
        self._balances(party).confirm_charge(party, doc.unpaid_amount, reference=doc, user=user)
        doc.balance_confirmed = True
        doc.save(update_fields=["balance_confirmed", "updated_at"])

    def _check_credit(self, customer, unpaid, order_total, payment_method):
        if customer is None or not customer.credit_limit or customer.credit_limit <= 0:
            return
        if unpaid <= 0 and payment_method != SalesOrder.PaymentMethod.ACCOUNT:
            return
        check = self.customers.can_accept_charge(customer, unpaid)
        if not check.allowed:
            raise CreditLimitExceeded(customer, check, order_amount=order_total)

    def _run(self, stack, work):
        try:
            return work()
        except Exception as exc:
            stack.unwind(exc)
            raise

    # ------------------------------------------------------------------
    # pricing
    # ------------------------------------------------------------------
    def _price_sale_line(self, item: dict, customer: Optional[Party], tax_exempt: bool) -> PricedLine:
        product, variant = self.inventory.resolve(item["product"], item.get("variant"))
        qty = _quantity(item.get("quantity"))
        list_price = variant.effective_sale_price if variant else product.sale_price
        unit_price = _money_q(_decimal(item.get("unit_price"), list_price))
        discount_percent = max(
            _decimal(item.get("discount_percent")),
            customer.discount_percent if customer else ZERO,
        )
        tax_rate = ZERO if tax_exempt else _decimal(item.get("tax_rate"), product.tax_rate)
        unit_cost = (variant.effective_purchase_price if variant else product.purchase_price) or ZERO

        subtotal = _money_q(qty * unit_price)
        discount = _money_q(subtotal * discount_percent / HUNDRED)
        tax = _money_q((subtotal - discount) * tax_rate / HUNDRED)
        return PricedLine(
            product=product, variant=variant, quantity=qty,
            unit_price=unit_price, unit_cost=_money_q(unit_cost),
            discount_percent=discount_percent, tax_rate=tax_rate,
            subtotal=subtotal, discount_amount=discount, tax_amount=tax,
            total=_money_q(subtotal - discount + tax),
        )

    def _price_purchase_line(self, item: dict) -> PricedLine:
        product, variant = self.inventory.resolve(item["product"], item.get("variant"))
        qty = _quantity(item.get("quantity"))
        default_cost = (variant.effective_purchase_price if variant else product.purchase_price) or ZERO
        unit_cost = _money_q(_decimal(item.get("unit_cost"), default_cost))
        tax_rate = _decimal(item.get("tax_rate"))
        subtotal = _money_q(qty * unit_cost)
        tax = _money_q(subtotal * tax_rate / HUNDRED)
        return PricedLine(
            product=product, variant=variant, quantity=qty,
            unit_price=unit_cost, unit_cost=unit_cost, tax_rate=tax_rate,
            subtotal=subtotal, tax_amount=tax, total=_money_q(subtotal + tax),
        )

    def _price(self, items, pricer) -> list:
        if not items:
            raise ValidationError("At least one line item is required.", code="no_items")
        return [pricer(item) for item in items]

    # ------------------------------------------------------------------
    # sales orders
    # ------------------------------------------------------------------
    def _write_sales_items(self, order, lines):
        order.items.all().delete()
        SalesOrderItem.objects.bulk_create([
            SalesOrderItem(
                sales_order=order, product=line.product, variant=line.variant,
                quantity=line.quantity, unit_price=line.unit_price, unit_cost=line.unit_cost,
                discount_percent=line.discount_percent, tax_rate=line.tax_rate,
                subtotal=line.subtotal, discount_amount=line.discount_amount,
                tax_amount=line.tax_amount, total=line.total,
            )
            for line in lines
        ])
        order.recompute_totals()

    def create_sales_order(
        self,
        customer_id=None,
        items=(),
        payment_method: str = SalesOrder.PaymentMethod.CASH,
        amount_paid=None,
        status: str = SalesOrder.Status.CONFIRMED,
        user=None,
        order_date=None,
        customer_name: str = "",
        is_tax_exempt: bool = False,
        notes: str = "",
    ) -> SalesOrder:
        """
        Create a sales order. Confirmed orders take stock out at once; draft
        and pending orders only reserve it. Paying methods other than
        'account' default to paying the full total.
        """
        if status not in (SalesOrder.Status.DRAFT, SalesOrder.Status.PENDING, SalesOrder.Status.CONFIRMED):
            raise InvalidStateTransition("new sales order", "new", status)
        customer = self.customers.get_party(customer_id) if customer_id else None
        if customer is None and payment_method == SalesOrder.PaymentMethod.ACCOUNT:
            raise ValidationError("On-account sales need a customer.", code="customer_required")

        lines = self._price(items, lambda it: self._price_sale_line(it, customer, is_tax_exempt))
        total = _money_q(sum((line.total for line in lines), ZERO))
        if amount_paid is None:
            amount_paid = ZERO if payment_method == SalesOrder.PaymentMethod.ACCOUNT else total
        paid = _amount(amount_paid)
        self._check_credit(customer, max(ZERO, total - paid), total, payment_method)

        order = SalesOrder(
            order_number=_next_document_no("SO"),
            customer=customer,
            customer_name=customer_name or (customer.display_name if customer else ""),
            status=status,
            order_date=order_date or timezone.now(),
            payment_method=payment_method,
            is_tax_exempt=is_tax_exempt,
            notes=notes,
            created_by=user,
            updated_by=user,
        )
        stack = CompensationStack()
        movements = []

        def work():
            for line in lines:
                if order.is_stock_committed:
                    self._stock_step(stack, movements, line.line_key, StockMovement.Type.OUT, line.quantity,
                                     f"Sales order {order.order_number}", order, user, party=customer)
                else:
                    self._reserve_step(stack, line.line_key, line.quantity, user)

            with transaction.atomic():
                order.save()
                self._write_sales_items(order, lines)
                order.set_payment(paid)
                order.save()
                self._link_movements(order, movements)
                if customer is not None:
                    self._post_balance(order, customer, user)
                if order.is_stock_committed:
                    self._notify("record_sale", order)
            return order

        return self._run(stack, work)

    def update_sales_order(
        self,
        order_id,
        items=None,
        amount_paid=None,
        customer_id=_UNSET,
        payment_method: Optional[str] = None,
        notes: Optional[str] = None,
        user=None,
    ) -> SalesOrder:
        order = self._load(SalesOrder, order_id, "Sales order")
        if order.status in SalesOrder.TERMINAL_STATUSES or order.status == SalesOrder.Status.CANCELLED:
            raise InvalidStateTransition(order, order.status, "updated")

        old_customer = order.customer
        customer = old_customer
        if customer_id is not _UNSET:
            customer = self.customers.get_party(customer_id) if customer_id else None
        method = payment_method or order.payment_method
        if customer is None and method == SalesOrder.PaymentMethod.ACCOUNT:
            raise ValidationError("On-account sales need a customer.", code="customer_required")

        old_items = list(order.items.select_related("product", "variant"))
        if items is None:
            lines = [
                PricedLine(
                    product=it.product, variant=it.variant, quantity=it.quantity,
                    unit_price=it.unit_price, unit_cost=it.unit_cost,
                    discount_percent=it.discount_percent, tax_rate=it.tax_rate,
                    subtotal=it.subtotal, discount_amount=it.discount_amount,
                    tax_amount=it.tax_amount, total=it.total,
                )
                for it in old_items
            ]
        else:
            lines = self._price(items, lambda it: self._price_sale_line(it, customer, order.is_tax_exempt))

        new_total = _money_q(sum((line.total for line in lines), ZERO))
        paid = _amount(order.amount_paid if amount_paid is None else amount_paid)
        old_contribution = _contribution(order)
        new_contribution = _money_q(new_total - paid)
        if customer is not None:
            extra = new_contribution - (old_contribution if customer == old_customer else ZERO)
            if extra > 0:
                self._check_credit(customer, extra, new_total, method)

        old_qty, new_qty = _quantities(old_items), _quantities(lines)
        committed = order.is_stock_committed
        status = order.status
        stack = CompensationStack()
        movements = []

        def work():
            for key in list(old_qty) + [k for k in new_qty if k not in old_qty]:
                diff = new_qty.get(key, ZERO) - old_qty.get(key, ZERO)
                if not diff:
                    continue
                reason = f"Sales order {order.order_number} edited"
                if committed:
                    kind = StockMovement.Type.OUT if diff > 0 else StockMovement.Type.IN
                    self._stock_step(stack, movements, key, kind, abs(diff), reason, order, user, party=customer)
                else:
                    self._reserve_step(stack, key, abs(diff), user, release=diff < 0)

            with transaction.atomic():
                locked = self._relock(order, status)
                was_confirmed = locked.balance_confirmed
                locked.customer = customer
                if customer_id is not _UNSET:
                    locked.customer_name = customer.display_name if customer else locked.customer_name
                locked.payment_method = method
                if notes is not None:
                    locked.notes = notes
                locked.updated_by = user
                if items is not None:
                    self._write_sales_items(locked, lines)
                locked.set_payment(paid)
                locked.save()
                self._link_movements(locked, movements)

                if customer is not None and customer == old_customer:
                    delta = new_contribution - old_contribution
                    if delta:
                        self.customers.adjust_balance(customer, delta, posted=was_confirmed,
                                                      reference=locked, user=user)
                else:
                    if old_customer is not None:
                        self.customers.reverse_document(old_customer, locked, user=user)
                    if customer is not None:
                        self._post_balance(locked, customer, user)
                    else:
                        locked.balance_confirmed = False
                        locked.save(update_fields=["balance_confirmed", "updated_at"])
            return locked

        return self._run(stack, work)

    def _restore_sales_stock(self, stack, movements, order, user, reason):
        for key, qty in _quantities(order.items.all()).items():
            if order.is_stock_committed:
                self._stock_step(stack, movements, key, StockMovement.Type.IN, qty, reason, order, user,
                                 party=order.customer)
            else:
                self._reserve_step(stack, key, qty, user, release=True)

    def delete_sales_order(self, order_id, user=None) -> SalesOrder:
        """Restore stock, undo the customer's balance effect and soft-delete the order."""
        order = self._load(SalesOrder, order_id, "Sales order")
        if order.status in SalesOrder.TERMINAL_STATUSES:
            raise InvalidStateTransition(order, order.status, "deleted")
        stack = CompensationStack()
        movements = []
        status = order.status

        def work():
            if status != SalesOrder.Status.CANCELLED:
                self._restore_sales_stock(stack, movements, order, user,
                                          f"Sales order {order.order_number} deleted")
            with transaction.atomic():
                locked = self._relock(order, status)
                if locked.customer_id and status != SalesOrder.Status.CANCELLED:
                    self.customers.reverse_document(locked.customer_id, locked, user=user)
                locked.is_deleted = True
                locked.updated_by = user
                locked.save()
            return locked

        return self._run(stack, work)

    def transition_sales_order(self, order_id, new_status: str, user=None) -> SalesOrder:
        order = self._load(SalesOrder, order_id, "Sales order")
        current = order.status
        if new_status not in SalesOrder.TRANSITIONS.get(current, set()):
            raise InvalidStateTransition(order, current, new_status)
        stack = CompensationStack()
        movements = []
        committing = current in SalesOrder.OPEN_STATUSES and new_status in SalesOrder.CONFIRMED_STATUSES

        def work():
            if new_status == SalesOrder.Status.CANCELLED:
                self._restore_sales_stock(stack, movements, order, user,
                                          f"Sales order {order.order_number} cancelled")
            elif committing:
                for key, qty in _quantities(order.items.all()).items():
                    self._reserve_step(stack, key, qty, user, release=True)
                    self._stock_step(stack, movements, key, StockMovement.Type.OUT, qty,
                                     f"Sales order {order.order_number} confirmed", order, user,
                                     party=order.customer)

            with transaction.atomic():
                locked = self._relock(order, current)
                locked.status = new_status
                locked.updated_by = user
                locked.save()
                self._link_movements(locked, movements)
                if new_status == SalesOrder.Status.CANCELLED:
                    if locked.customer_id:
                        self.customers.reverse_document(locked.customer_id, locked, user=user)
                    locked.balance_confirmed = False
                    locked.save(update_fields=["balance_confirmed", "updated_at"])
                elif committing:
                    self._confirm_balance(locked, locked.customer, user)
                    self._notify("record_sale", locked)
            return locked

        return self._run(stack, work)

    # ------------------------------------------------------------------
    # purchase invoices
    # ------------------------------------------------------------------
    def _write_purchase_items(self, invoice, lines):
        invoice.items.all().delete()
        PurchaseInvoiceItem.objects.bulk_create([
            PurchaseInvoiceItem(
                invoice=invoice, product=line.product, variant=line.variant,
                quantity=line.quantity, unit_cost=line.unit_cost, tax_rate=line.tax_rate,
                subtotal=line.subtotal, tax_amount=line.tax_amount, total_cost=line.total,
            )
            for line in lines
        ])
        invoice.recompute_totals()

    def create_purchase_invoice(
        self,
        supplier_id,
        items=(),
        amount_paid=0,
        status: str = PurchaseInvoice.Status.CONFIRMED,
        user=None,
        invoice_date=None,
        notes: str = "",
    ) -> PurchaseInvoice:
        if status not in (PurchaseInvoice.Status.DRAFT, PurchaseInvoice.Status.PENDING,
                          PurchaseInvoice.Status.CONFIRMED, PurchaseInvoice.Status.RECEIVED):
            raise InvalidStateTransition("new purchase invoice", "new", status)
        supplier = self.suppliers.get_party(supplier_id)
        lines = self._price(items, self._price_purchase_line)
        paid = _amount(amount_paid)

        invoice = PurchaseInvoice(
            invoice_number=_next_document_no("PI"),
            supplier=supplier,
            status=status,
            invoice_date=invoice_date or timezone.now(),
            notes=notes,
            created_by=user,
            updated_by=user,
        )
        stack = CompensationStack()
        movements = []

        def work():
            if invoice.is_stock_committed:
                for line in lines:
                    self._stock_step(stack, movements, line.line_key, StockMovement.Type.IN, line.quantity,
                                     f"Purchase invoice {invoice.invoice_number}", invoice, user,
                                     party=supplier, unit_cost=line.unit_cost)
            with transaction.atomic():
                invoice.save()
                self._write_purchase_items(invoice, lines)
                invoice.set_payment(paid)
                invoice.save()
                self._link_movements(invoice, movements)
                self._post_balance(invoice, supplier, user)
                if invoice.is_stock_committed:
                    self._notify("record_purchase", invoice)
            return invoice

        return self._run(stack, work)

    def update_purchase_invoice(
        self,
        invoice_id,
        items=None,
        amount_paid=None,
        supplier_id=_UNSET,
        notes: Optional[str] = None,
        user=None,
    ) -> PurchaseInvoice:
        invoice = self._load(PurchaseInvoice, invoice_id, "Purchase invoice")
        if invoice.status in PurchaseInvoice.LOCKED_FOR_EDIT:
            raise InvalidStateTransition(invoice, invoice.status, "updated")

        old_supplier = invoice.supplier
        supplier = old_supplier if supplier_id is _UNSET else self.suppliers.get_party(supplier_id)
        old_items = list(invoice.items.select_related("product", "variant"))
        if items is None:
            lines = [
                PricedLine(
                    product=it.product, variant=it.variant, quantity=it.quantity,
                    unit_price=it.unit_cost, unit_cost=it.unit_cost, tax_rate=it.tax_rate,
                    subtotal=it.subtotal, tax_amount=it.tax_amount, total=it.total_cost,
                )
                for it in old_items
            ]
        else:
            lines = self._price(items, self._price_purchase_line)
        new_total = _money_q(sum((line.total for line in lines), ZERO))
        paid = _amount(invoice.amount_paid if amount_paid is None else amount_paid)
        old_contribution = _contribution(invoice)
        new_contribution = _money_q(new_total - paid)

        old_qty, new_qty = _quantities(old_items), _quantities(lines)
        costs = _unit_costs(lines)
        old_costs = _unit_costs(old_items)
        committed = invoice.is_stock_committed
        status = invoice.status
        stack = CompensationStack()
        movements = []

        def work():
            if committed:
                for key in list(old_qty) + [k for k in new_qty if k not in old_qty]:
                    diff = new_qty.get(key, ZERO) - old_qty.get(key, ZERO)
                    if not diff:
                        continue
                    reason = f"Purchase invoice {invoice.invoice_number} edited"
                    if diff > 0:
                        self._stock_step(stack, movements, key, StockMovement.Type.IN, diff, reason,
                                         invoice, user, party=supplier, unit_cost=costs.get(key))
                    else:
                        self._stock_step(stack, movements, key, StockMovement.Type.OUT, -diff, reason,
                                         invoice, user, party=supplier, unit_cost=old_costs.get(key),
                                         withdraw_cost=True)

            with transaction.atomic():
                locked = self._relock(invoice, status)
                was_confirmed = locked.balance_confirmed
                locked.supplier = supplier
                if notes is not None:
                    locked.notes = notes
                locked.updated_by = user
                if items is not None:
                    self._write_purchase_items(locked, lines)
                locked.set_payment(paid)
                locked.save()
                self._link_movements(locked, movements)

                if supplier == old_supplier:
                    delta = new_contribution - old_contribution
                    if delta:
                        self.suppliers.adjust_balance(supplier, delta, posted=was_confirmed,
                                                      reference=locked, user=user)
                else:
                    self.suppliers.reverse_document(old_supplier, locked, user=user)
                    self._post_balance(locked, supplier, user)
            return locked

        return self._run(stack, work)

    def _remove_purchase_stock(self, stack, movements, invoice, user, reason):
        if not invoice.is_stock_committed:
            return
        items = list(invoice.items.all())
        costs = _unit_costs(items)
        for key, qty in _quantities(items).items():
            self._stock_step(stack, movements, key, StockMovement.Type.OUT, qty, reason, invoice, user,
                             party=invoice.supplier, unit_cost=costs.get(key), withdraw_cost=True)
            self.inventory.refresh_last_purchase(key[0], key[1], exclude=invoice)

    def delete_purchase_invoice(self, invoice_id, user=None) -> PurchaseInvoice:
        invoice = self._load(PurchaseInvoice, invoice_id, "Purchase invoice")
        if invoice.status in PurchaseInvoice.LOCKED_FOR_DELETE:
            raise InvalidStateTransition(invoice, invoice.status, "deleted")
        stack = CompensationStack()
        movements = []
        status = invoice.status

        def work():
            if status != PurchaseInvoice.Status.CANCELLED:
                self._remove_purchase_stock(stack, movements, invoice, user,
                                            f"Purchase invoice {invoice.invoice_number} deleted")
            with transaction.atomic():
                locked = self._relock(invoice, status)
                if status != PurchaseInvoice.Status.CANCELLED:
                    self.suppliers.reverse_document(locked.supplier_id, locked, user=user)
                locked.is_deleted = True
                locked.updated_by = user
                locked.save()
            return locked

        return self._run(stack, work)

    def transition_purchase_invoice(self, invoice_id, new_status: str, user=None) -> PurchaseInvoice:
        invoice = self._load(PurchaseInvoice, invoice_id, "Purchase invoice")
        current = invoice.status
        if new_status not in PurchaseInvoice.TRANSITIONS.get(current, set()):
            raise InvalidStateTransition(invoice, current, new_status)
        committing = (current in PurchaseInvoice.OPEN_STATUSES
                      and new_status in PurchaseInvoice.CONFIRMED_STATUSES)
        stack = CompensationStack()
        movements = []

        def work():
            if new_status == PurchaseInvoice.Status.CANCELLED:
                self._remove_purchase_stock(stack, movements, invoice, user,
                                            f"Purchase invoice {invoice.invoice_number} cancelled")
            elif committing:
                for it in invoice.items.all():
                    self._stock_step(stack, movements, it.line_key, StockMovement.Type.IN, it.quantity,
                                     f"Purchase invoice {invoice.invoice_number} confirmed", invoice, user,
                                     party=invoice.supplier, unit_cost=it.unit_cost)
            with transaction.atomic():
                locked = self._relock(invoice, current)
                locked.status = new_status
                locked.updated_by = user
                locked.save()
                self._link_movements(locked, movements)
                if new_status == PurchaseInvoice.Status.CANCELLED:
                    self.suppliers.reverse_document(locked.supplier_id, locked, user=user)
                    locked.balance_confirmed = False
                    locked.save(update_fields=["balance_confirmed", "updated_at"])
                elif committing:
                    self._confirm_balance(locked, locked.supplier, user)
                    self._notify("record_purchase", locked)
            return locked

        return self._run(stack, work)

    # ------------------------------------------------------------------
    # payments
    # ------------------------------------------------------------------
    def _bank_account(self, payment_type, bank_account_id, fallback=None):
        if payment_type != Payment.Source.BANK:
            return None
        if bank_account_id:
            return self._load(BankAccount, bank_account_id, "Bank account")
        if fallback is None:
            raise ValidationError("A bank account is required for bank payments.",
                                  code="bank_account_required")
        return fallback

    def _notify_payment(self, payment):
        if payment.payment_source == Payment.Source.BANK:
            self._notify("record_bank_payment", payment)
        else:
            self._notify("record_cash_payment", payment)

    def record_recurring_payment(
        self,
        expense_id,
        payment_date=None,
        payment_type: Optional[str] = None,
        bank_account_id=None,
        amount=None,
        notes: str = "",
        user=None,
    ) -> Payment:
        """
        Pay one period of a recurring expense: write the Payment, settle the
        linked supplier (or customer) balance and roll next_due_date forward.
        """
        expense = self._load(RecurringExpense, expense_id, "Recurring expense")
        if expense.status != RecurringExpense.Status.ACTIVE:
            raise InvalidStateTransition(expense, expense.status, "paid")
        payment_type = payment_type or expense.default_payment_type
        if payment_type not in Payment.Source.values:
            raise ValidationError(f"Unknown payment type '{payment_type}'.", code="invalid_payment_type")
        bank = self._bank_account(payment_type, bank_account_id, expense.bank_account)
        value = _amount(expense.amount if amount is None else amount)
        if value <= 0:
            raise ValidationError("Payment amount must be greater than zero.", code="invalid_amount")
        paid_on = payment_date or timezone.localdate()
        party = expense.supplier or expense.customer

        with transaction.atomic():
            payment = Payment.objects.create(
                party=party,
                direction=Payment.OUT,
                payment_source=payment_type,
                bank_account=bank,
                recurring_expense=expense,
                amount=value,
                date=paid_on,
                reference=f"REC-{expense.pk}-{paid_on.strftime('%Y%m%d')}",
                description=notes or expense.name,
                created_by=user,
                updated_by=user,
            )
            if party is not None:
                self._balances(party).record_payment(party, value, reference=payment, user=user)
            self._notify_payment(payment)

            anchor = max(expense.next_due_date or paid_on, paid_on)
            expense.next_due_date = expense.following_due_date(anchor)
            expense.last_paid_at = timezone.now()
            expense.updated_by = user
            expense.save(update_fields=["next_due_date", "last_paid_at", "updated_by", "updated_at"])
        return payment

    def record_party_payment(
        self,
        party_id,
        amount,
        payment_type: str = Payment.Source.CASH,
        bank_account_id=None,
        payment_date=None,
        notes: str = "",
        user=None,
    ) -> Payment:
        """Standalone receipt from a customer or payment to a supplier."""
        try:
            party = Party.objects.get(pk=getattr(party_id, "pk", party_id), is_deleted=False)
        except Party.DoesNotExist:
            raise NotFound("Party", party_id) from None
        if payment_type not in Payment.Source.values:
            raise ValidationError(f"Unknown payment type '{payment_type}'.", code="invalid_payment_type")
        bank = self._bank_account(payment_type, bank_account_id)
        value = _amount(amount)
        if value <= 0:
            raise ValidationError("Payment amount must be greater than zero.", code="invalid_amount")

        with transaction.atomic():
            payment = Payment.objects.create(
                party=party,
                direction=Payment.IN if party.type == Party.CUSTOMER else Payment.OUT,
                payment_source=payment_type,
                bank_account=bank,
                amount=value,
                date=payment_date or timezone.localdate(),
                description=notes,
                created_by=user,
                updated_by=user,
            )
            self._balances(party).record_payment(party, value, reference=payment, user=user)
            self._notify_payment(payment)
        return payment

    # ------------------------------------------------------------------
    # returns
    # ------------------------------------------------------------------
    def _returnable(self, stock_return, source) -> tuple:
        sold = {}
        prices = {}
        for it in source.items.all():
            sold[it.line_key] = sold.get(it.line_key, ZERO) + it.quantity
            if stock_return.origin == StockReturn.Origin.SALES:
                prices[it.line_key] = it.total / it.quantity if it.quantity else it.unit_price
            else:
                prices[it.line_key] = it.unit_cost
        earlier = StockReturn.objects.filter(
            is_deleted=False,
            status__in=StockReturn.PROCESSED_STATUSES,
            sales_order=stock_return.sales_order,
            purchase_invoice=stock_return.purchase_invoice,
        ).exclude(pk=stock_return.pk)
        for ret in earlier.prefetch_related("items"):
            for it in ret.items.all():
                key = (it.product_id, it.variant_id)
                sold[key] = sold.get(key, ZERO) - it.quantity
        return sold, prices

    def process_return(self, return_id, user=None) -> StockReturn:
        """
        Complete a sale or purchase return: move the goods, credit the party
        where money is owed back, and mark the return completed.
        """
        stock_return = self._load(StockReturn, return_id, "Return")
        if stock_return.status not in StockReturn.PROCESSABLE_STATUSES:
            raise InvalidStateTransition(stock_return, stock_return.status, StockReturn.Status.COMPLETED)
        is_sale = stock_return.origin == StockReturn.Origin.SALES
        source = stock_return.source_document
        if source is None or source.is_deleted or not source.is_stock_committed:
            raise ValidationError("Returns need a confirmed original document.", code="invalid_return_source")
        party = stock_return.party or source.party

        returnable, prices = self._returnable(stock_return, source)
        items = list(stock_return.items.select_related("product", "variant"))
        if not items:
            raise ValidationError("At least one line item is required.", code="no_items")
        requested = _quantities(items)
        for key, qty in requested.items():
            left = returnable.get(key, ZERO)
            if qty > left:
                raise BusinessRuleError(
                    "Cannot return %(requested)s of product #%(product)s; only %(returnable)s left",
                    code="return_exceeds_quantity",
                    product=key[0], requested=qty, returnable=max(ZERO, left),
                )
        for it in items:
            if not it.original_price:
                it.original_price = _money_q(prices.get(it.line_key, ZERO))
            if not it.refund_amount:
                it.refund_amount = _money_q(it.quantity * it.original_price)

        stack = CompensationStack()
        movements = []
        status = stock_return.status

        def work():
            for it in items:
                if is_sale:
                    self._stock_step(stack, movements, it.line_key, StockMovement.Type.RETURN, it.quantity,
                                     f"Sale return {stock_return.return_number}", stock_return, user,
                                     party=party)
                else:
                    self._stock_step(stack, movements, it.line_key, StockMovement.Type.OUT, it.quantity,
                                     f"Purchase return {stock_return.return_number}", stock_return, user,
                                     party=party)
            with transaction.atomic():
                locked = self._relock(stock_return, status)
                for it in items:
                    it.save(update_fields=["original_price", "refund_amount"])
                locked.total_refund = _money_q(sum((it.refund_amount for it in items), ZERO))
                credit = ZERO
                if party is not None:
                    owed_back = (not is_sale
                                 or locked.refund_method == StockReturn.RefundMethod.STORE_CREDIT
                                 or source.payment_status != source.PaymentStatus.PAID)
                    if owed_back:
                        credit = locked.total_refund
                        self._balances(party).adjust_balance(party, -credit, reference=locked, user=user)
                locked.party = party
                locked.balance_credited = credit
                locked.status = StockReturn.Status.COMPLETED
                locked.processed_at = timezone.now()
                locked.updated_by = user
                locked.save()
                self._link_movements(locked, movements)
                self._notify("record_return", locked)
            return locked

        return self._run(stack, work)
