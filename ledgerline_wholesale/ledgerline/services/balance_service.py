import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from django.core.exceptions import ValidationError
from django.db import transaction
from django.db.models import DecimalField, F, OuterRef, Q, Subquery, Sum
from django.db.models.functions import Coalesce

from ledgerline.exceptions import NotFound
from ledgerline.models import (
    Party, PartyTransaction, Payment, PurchaseInvoice, SalesOrder, StockReturn,
    _money_q, document_reference,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


@dataclass
class Allocation:
    """Signed deltas for the three balance buckets."""
    pending: Decimal = ZERO
    current: Decimal = ZERO
    advance: Decimal = ZERO

    def __add__(self, other: "Allocation") -> "Allocation":
        return Allocation(self.pending + other.pending,
                          self.current + other.current,
                          self.advance + other.advance)

    def __neg__(self) -> "Allocation":
        return Allocation(-self.pending, -self.current, -self.advance)

    @property
    def is_zero(self) -> bool:
        return not (self.pending or self.current or self.advance)


@dataclass
class BalanceState:
    """
    In-memory copy of a party's buckets. Every rule returns the Allocation it
    would apply; nothing here touches the database, so the same rules drive
    both live updates and the replay in recalculate_balance().
    """
    pending: Decimal = ZERO
    current: Decimal = ZERO
    advance: Decimal = ZERO

    @classmethod
    def of(cls, party: Party) -> "BalanceState":
        return cls(party.pending_balance, party.current_balance, party.advance_balance)

    def apply(self, alloc: Allocation) -> Allocation:
        self.pending += alloc.pending
        self.current += alloc.current
        self.advance += alloc.advance
        return alloc

    def charge(self, amount: Decimal, posted: bool = False) -> Allocation:
        return Allocation(current=amount) if posted else Allocation(pending=amount)

    def pay(self, amount: Decimal, posted_first: bool = False) -> Allocation:
        # phase 1: settle what is owed; phase 2: bank the rest as advance
        buckets = ["current", "pending"] if posted_first else ["pending", "current"]
        alloc = Allocation()
        rest = amount
        for name in buckets:
            reduction = min(rest, getattr(self, name))
            setattr(alloc, name, -reduction)
            rest -= reduction
        alloc.advance = rest
        return alloc

    def refund(self, amount: Decimal) -> Allocation:
        from_advance = min(amount, self.advance)
        from_pending = min(amount - from_advance, self.pending)
        return Allocation(pending=-from_pending, advance=-from_advance)

    def confirm(self, amount: Decimal) -> Allocation:
        moved = min(amount, self.pending)
        return Allocation(pending=-moved, current=moved)

    def unwind_charge(self, amount: Decimal, posted_amount: Decimal = ZERO) -> Allocation:
        posted = min(posted_amount, amount)
        from_current = min(posted, self.current)
        from_pending = min(amount - posted, self.pending)
        # whatever was already settled comes back as credit
        credit = amount - from_current - from_pending
        return Allocation(pending=-from_pending, current=-from_current, advance=credit)

    def unwind_payment(self, amount: Decimal, paid: Optional[Allocation] = None) -> Allocation:
        if paid is None:
            take = min(amount, self.advance)
            return Allocation(pending=amount - take, advance=-take)
        if paid.advance < 0:
            return Allocation(pending=-paid.pending, current=-paid.current, advance=-paid.advance)
        take = min(paid.advance, self.advance)
        # advance already spent elsewhere is owed again
        uncovered = paid.advance - take
        return Allocation(pending=-paid.pending + uncovered, current=-paid.current, advance=-take)


@dataclass
class CreditCheck:
    allowed: bool
    current_balance: Decimal
    pending_balance: Decimal
    credit_limit: Decimal
    amount: Decimal
    new_balance: Decimal
    available_credit: Optional[Decimal]

    @property
    def total_outstanding(self) -> Decimal:
        return self.current_balance + self.pending_balance


def _amount(value) -> Decimal:
    amount = _money_q(Decimal(str(value or 0)))
    if amount < 0:
        raise ValidationError("Amount must not be negative.", code="invalid_amount")
    return amount


class PartyBalanceService:
    """
    Owns Party.pending_balance / current_balance / advance_balance.

    Each call locks the party row, decides the allocation from the locked
    values and writes it back as F() deltas, then appends a PartyTransaction
    with the exact deltas so documents can be reversed later.
    """

    def __init__(self, party_type: Optional[str] = None):
        self.party_type = party_type

    @property
    def label(self) -> str:
        return dict(Party.PARTY_TYPES).get(self.party_type, "Party")

    # ---- loading ---------------------------------------------------------
    def _get(self, party_id, lock: bool = False) -> Party:
        pk = getattr(party_id, "pk", party_id)
        qs = Party.objects.filter(is_deleted=False)
        if self.party_type:
            qs = qs.filter(type=self.party_type)
        if lock:
            qs = qs.select_for_update()
        try:
            return qs.get(pk=pk)
        except Party.DoesNotExist:
            raise NotFound(self.label, pk) from None

    def get_party(self, party_id) -> Party:
        return self._get(party_id)

    def _commit(self, party: Party, kind: str, amount: Decimal, alloc: Allocation,
                reference=None, user=None, notes: str = "") -> Party:
        if alloc.is_zero and not amount:
            party.last_allocation = alloc
            return party
        if not alloc.is_zero:
            Party.objects.filter(pk=party.pk).update(
                pending_balance=F("pending_balance") + alloc.pending,
                current_balance=F("current_balance") + alloc.current,
                advance_balance=F("advance_balance") + alloc.advance,
            )
            party.refresh_from_db(fields=["pending_balance", "current_balance", "advance_balance"])
        PartyTransaction.objects.create(
            party=party,
            transaction_type=kind,
            amount=amount,
            pending_delta=alloc.pending,
            current_delta=alloc.current,
            advance_delta=alloc.advance,
            pending_after=party.pending_balance,
            current_after=party.current_balance,
            advance_after=party.advance_balance,
            notes=notes[:255],
            created_by=user,
            **document_reference(reference),
        )
        party.last_allocation = alloc
        return party

    # ---- mutations -------------------------------------------------------
    @transaction.atomic
    def record_charge(self, party_id, amount, reference=None, user=None) -> Party:
        amount = _amount(amount)
        party = self._get(party_id, lock=True)
        alloc = BalanceState.of(party).charge(amount)
        return self._commit(party, PartyTransaction.Type.CHARGE, amount, alloc, reference, user)

    @transaction.atomic
    def record_payment(self, party_id, amount, reference=None, user=None) -> Party:
        amount = _amount(amount)
        party = self._get(party_id, lock=True)
        alloc = BalanceState.of(party).pay(amount)
        return self._commit(party, PartyTransaction.Type.PAYMENT, amount, alloc, reference, user)

    @transaction.atomic
    def record_refund(self, party_id, amount, reference=None, user=None) -> Party:
        amount = _amount(amount)
        party = self._get(party_id, lock=True)
        alloc = BalanceState.of(party).refund(amount)
        return self._commit(party, PartyTransaction.Type.REFUND, amount, alloc, reference, user)

    @transaction.atomic
    def confirm_charge(self, party_id, unpaid_amount, reference=None, user=None) -> Party:
        amount = _amount(unpaid_amount)
        party = self._get(party_id, lock=True)
        alloc = BalanceState.of(party).confirm(amount)
        return self._commit(party, PartyTransaction.Type.CONFIRM, amount, alloc, reference, user)

    @transaction.atomic
    def reverse_charge(self, party_id, amount, was_confirmed: bool = False,
                       confirmed_amount=None, reference=None, user=None) -> Party:
        amount = _amount(amount)
        if not was_confirmed:
            posted = ZERO
        elif confirmed_amount is None:
            posted = amount
        else:
            posted = _amount(confirmed_amount)
        party = self._get(party_id, lock=True)
        alloc = BalanceState.of(party).unwind_charge(amount, posted)
        return self._commit(party, PartyTransaction.Type.REVERSAL, amount, alloc, reference, user,
                            notes="Charge reversed")

    @transaction.atomic
    def reverse_payment(self, party_id, amount, allocation: Optional[Allocation] = None,
                        reference=None, user=None) -> Party:
        amount = _amount(amount)
        party = self._get(party_id, lock=True)
        alloc = BalanceState.of(party).unwind_payment(amount, allocation)
        return self._commit(party, PartyTransaction.Type.REVERSAL, amount, alloc, reference, user,
                            notes="Payment reversed")

    @transaction.atomic
    def adjust_balance(self, party_id, delta, posted: bool = False, reference=None, user=None) -> Party:
        """
        Apply one signed change to what the party owes. Increases first use
        up advance credit the referenced document itself created, the rest
        lands in current (posted) or pending; decreases are allocated like a
        payment.
        """
        delta = _money_q(Decimal(str(delta or 0)))
        party = self._get(party_id, lock=True)
        state = BalanceState.of(party)
        if delta >= 0:
            own_credit = ZERO
            if reference is not None and delta:
                own_credit = max(self.document_trail(party, reference).advance, ZERO)
            netted = min(delta, own_credit, state.advance)
            alloc = Allocation(advance=-netted) + state.charge(delta - netted, posted=posted)
        else:
            alloc = state.pay(-delta, posted_first=posted)
        return self._commit(party, PartyTransaction.Type.ADJUSTMENT, abs(delta), alloc, reference, user)

    def document_trail(self, party_id, reference) -> Allocation:
        """Net bucket deltas recorded against one document for this party."""
        ref = document_reference(reference)
        agg = PartyTransaction.objects.filter(
            party_id=getattr(party_id, "pk", party_id),
            reference_type=ref["reference_type"],
            reference_id=ref["reference_id"],
        ).aggregate(
            p=Coalesce(Sum("pending_delta"), ZERO, output_field=DecimalField()),
            c=Coalesce(Sum("current_delta"), ZERO, output_field=DecimalField()),
            a=Coalesce(Sum("advance_delta"), ZERO, output_field=DecimalField()),
        )
        return Allocation(agg["p"], agg["c"], agg["a"])

    @transaction.atomic
    def reverse_document(self, party_id, reference, user=None) -> Party:
        """
        Undo everything a document did to this party: first the payment side
        (advance withdrawn, settled amounts owed again), then the charge side.
        """
        party = self._get(party_id, lock=True)
        net = self.document_trail(party, reference)
        paid = Allocation(
            pending=min(net.pending, ZERO),
            current=min(net.current, ZERO),
            advance=net.advance,
        )
        charged_pending = max(net.pending, ZERO)
        charged_current = max(net.current, ZERO)

        if not paid.is_zero:
            settled = -(paid.pending + paid.current) + max(paid.advance, ZERO)
            party = self.reverse_payment(party, settled, allocation=paid, reference=reference, user=user)
        if charged_pending or charged_current:
            party = self.reverse_charge(
                party, charged_pending + charged_current,
                was_confirmed=charged_current > 0, confirmed_amount=charged_current,
                reference=reference, user=user,
            )
        return party

    # ---- repair ----------------------------------------------------------
    def _replay_events(self, party: Party):
        events = []
        if party.type == Party.CUSTOMER:
            docs = SalesOrder.objects.filter(customer=party)
            return_qs = StockReturn.objects.filter(party=party, origin=StockReturn.Origin.SALES)
            cancelled = SalesOrder.Status.CANCELLED
        else:
            docs = PurchaseInvoice.objects.filter(supplier=party)
            return_qs = StockReturn.objects.filter(party=party, origin=StockReturn.Origin.PURCHASE)
            cancelled = PurchaseInvoice.Status.CANCELLED
        for doc in docs.filter(is_deleted=False).exclude(status=cancelled):
            events.append((doc.created_at, doc.pk, "document", doc))
        for ret in return_qs.filter(is_deleted=False, balance_credited__gt=0):
            events.append((ret.processed_at or ret.created_at, ret.pk, "credit", ret))
        for pay in Payment.objects.filter(party=party, is_deleted=False):
            events.append((pay.created_at, pay.pk, "payment", pay))
        events.sort(key=lambda e: (e[0], e[1]))
        return events

    def replay(self, party: Party) -> BalanceState:
        state = BalanceState()
        for _, _, kind, obj in self._replay_events(party):
            if kind == "document":
                state.apply(state.charge(obj.total))
                if obj.amount_paid:
                    state.apply(state.pay(obj.amount_paid))
                if obj.balance_confirmed:
                    state.apply(state.confirm(obj.unpaid_amount))
            elif kind == "credit":
                state.apply(state.pay(obj.balance_credited))
            else:
                state.apply(state.pay(obj.amount))
        return state

    @transaction.atomic
    def recalculate_balance(self, party_id, user=None) -> Party:
        """
        Rebuild the buckets from the party's live documents and payments.
        The difference to the stored values is applied as a delta, so a
        second run changes nothing.
        """
        party = self._get(party_id, lock=True)
        target = self.replay(party)
        alloc = Allocation(
            pending=_money_q(target.pending) - party.pending_balance,
            current=_money_q(target.current) - party.current_balance,
            advance=_money_q(target.advance) - party.advance_balance,
        )
        if alloc.is_zero:
            party.last_allocation = alloc
            return party
        logger.info(
            "Recalculated balance for %s #%s: pending %+s, current %+s, advance %+s",
            self.label, party.pk, alloc.pending, alloc.current, alloc.advance,
        )
        return self._commit(party, PartyTransaction.Type.RECALCULATION, ZERO, alloc, user=user,
                            notes="Rebuilt from documents")

    # ---- queries ---------------------------------------------------------
    def can_accept_charge(self, party_id, amount, include_pending: bool = False) -> CreditCheck:
        amount = _amount(amount)
        party = self._get(party_id)
        basis = party.current_balance + (party.pending_balance if include_pending else ZERO)
        new_balance = _money_q(basis + amount)
        limit = party.credit_limit or ZERO
        if limit <= 0:
            return CreditCheck(True, party.current_balance, party.pending_balance, limit,
                               amount, new_balance, None)
        return CreditCheck(
            allowed=new_balance <= limit,
            current_balance=party.current_balance,
            pending_balance=party.pending_balance,
            credit_limit=limit,
            amount=amount,
            new_balance=new_balance,
            available_credit=_money_q(max(ZERO, limit - basis)),
        )


customer_balances = PartyBalanceService(Party.CUSTOMER)
supplier_balances = PartyBalanceService(Party.SUPPLIER)


def balances_for(party: Party) -> PartyBalanceService:
    return customer_balances if party.type == Party.CUSTOMER else supplier_balances


def get_party_balances(qs):
    """
    Annotates a Party queryset with 'net_balance' (pending + current - advance)
    and 'open_documents' (unpaid remainder of live sales orders and purchase
    invoices). Uses Subquery to avoid Cartesian products between the sums.
    """

    def _sub_sum(model, link_field, amount_field, extra_filter=None):
        sub_qs = model.objects.filter(**{link_field: OuterRef("pk")}, is_deleted=False)
        if extra_filter is not None:
            sub_qs = sub_qs.filter(extra_filter)
        return Coalesce(
            Subquery(
                sub_qs.values(link_field)
                .annotate(total=Sum(amount_field))
                .values("total")
            ),
            ZERO,
            output_field=DecimalField(),
        )

    open_so = _sub_sum(SalesOrder, "customer_id", "remaining_balance",
                       ~Q(status=SalesOrder.Status.CANCELLED))
    open_pi = _sub_sum(PurchaseInvoice, "supplier_id", "remaining_balance",
                       ~Q(status=PurchaseInvoice.Status.CANCELLED))

    return qs.annotate(
        open_so=open_so,
        open_pi=open_pi,
    ).annotate(
        net_balance=F("pending_balance") + F("current_balance") - F("advance_balance"),
        open_documents=F("open_so") + F("open_pi"),
    )
