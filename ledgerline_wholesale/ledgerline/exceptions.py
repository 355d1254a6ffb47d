# ledgerline/exceptions.py
"""
Business-rule errors raised by the balance, inventory and orchestration
services. Rule violations are Django ValidationErrors carrying a `code` and
numeric `params`, so callers can render them without another query.
"""
from decimal import Decimal

from django.core.exceptions import ObjectDoesNotExist, ValidationError


def _plain(value):
    if isinstance(value, Decimal):
        return str(value)
    return value


class NotFound(ObjectDoesNotExist):
    """A party, product, variant or document is missing."""

    def __init__(self, entity: str, pk=None):
        self.entity = entity
        self.pk = pk
        super().__init__(f"{entity} not found" + (f" (id={pk})" if pk is not None else ""))

    def as_dict(self):
        return {"error": "not_found", "entity": self.entity, "id": self.pk, "message": str(self)}


class BusinessRuleError(ValidationError):
    """Base for rejections that carry numeric context."""
    default_code = "business_rule"
    message_template = "%(detail)s"

    def __init__(self, message=None, code=None, **params):
        self.details = params
        super().__init__(
            message or self.message_template,
            code=code or self.default_code,
            params={k: _plain(v) for k, v in params.items()},
        )

    def __str__(self):
        return self.messages[0] if self.messages else self.default_code

    def as_dict(self):
        data = {k: _plain(v) for k, v in self.details.items()}
        data["error"] = self.code
        data["message"] = str(self)
        return data


class InsufficientStock(BusinessRuleError):
    default_code = "insufficient_stock"
    message_template = "Insufficient stock for %(product)s. Available: %(available)s, Requested: %(requested)s"

    def __init__(self, product, available: Decimal, requested: Decimal):
        self.product = product
        self.available = available
        self.requested = requested
        super().__init__(product=str(product), available=available, requested=requested)


class CreditLimitExceeded(BusinessRuleError):
    default_code = "credit_limit_exceeded"
    message_template = (
        "Credit limit exceeded for %(party)s. Current balance: %(current_balance)s, "
        "order amount: %(amount)s, new balance: %(new_balance)s, credit limit: %(credit_limit)s"
    )

    def __init__(self, party, check, order_amount: Decimal = None):
        self.party = party
        self.check = check
        super().__init__(
            party=str(party),
            current_balance=check.current_balance,
            pending_balance=check.pending_balance,
            total_outstanding=check.total_outstanding,
            amount=check.amount,
            order_amount=order_amount if order_amount is not None else check.amount,
            new_balance=check.new_balance,
            credit_limit=check.credit_limit,
            available_credit=check.available_credit,
        )

    @property
    def new_balance(self) -> Decimal:
        return self.check.new_balance


class InvalidStateTransition(BusinessRuleError):
    default_code = "invalid_state_transition"
    message_template = "Cannot move %(document)s from '%(current)s' to '%(target)s'"

    def __init__(self, document, current: str, target: str):
        self.document = document
        self.current = current
        self.target = target
        super().__init__(document=str(document), current=str(current), target=str(target))


class PartialCompensationFailure(Exception):
    """
    A compensating undo failed after a primary failure. Stock or balances
    may now be inconsistent and need manual repair.
    """

    def __init__(self, primary: BaseException, failures):
        self.primary = primary
        self.failures = list(failures)  # [(label, exception), ...]
        labels = ", ".join(label for label, _ in self.failures)
        super().__init__(
            f"Compensation failed for [{labels}] after: {primary}"
        )

    def as_dict(self):
        return {
            "error": "partial_compensation_failure",
            "message": str(self),
            "primary": str(self.primary),
            "failed_compensations": [
                {"step": label, "error": str(exc)} for label, exc in self.failures
            ],
        }
