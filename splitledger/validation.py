"""
Share validation and record-level checks.

The share validator looks at a proposed batch of shares before anything is
persisted. Which already-persisted shares count against the expense total is
an explicit policy:

* ``AllocationPolicy.BATCH`` compares only the proposed batch with the total.
  Two disjoint batches can therefore jointly exceed the expense amount. This
  is the long-standing behaviour and the default.
* ``AllocationPolicy.CUMULATIVE`` adds the shares already stored for the
  expense before comparing, and re-checks share and expense amount updates.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from .errors import ValidationError
from .models import ZERO, Expense, ExpenseShare, Group, Settlement, ShareRequest, to_decimal

INVALID_AMOUNT = "invalid_amount"
OVERALLOCATED = "overallocated"

MAX_DESCRIPTION_BYTES = 500
MAX_NAME_BYTES = 500


class AllocationPolicy(str, Enum):
    BATCH = "batch"
    CUMULATIVE = "cumulative"

    @classmethod
    def parse(cls, value: str) -> "AllocationPolicy":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            raise ValueError(f"unknown allocation policy: {value!r}") from None


@dataclass(frozen=True)
class ShareVerdict:
    ok: bool
    reason: Optional[str] = None

    def raise_for_reason(self) -> None:
        if not self.ok:
            field = "amount_owed" if self.reason == INVALID_AMOUNT else "amount"
            raise ValidationError({field: self.reason})


ACCEPTED = ShareVerdict(True)


class ShareValidator:
    def __init__(self, policy: AllocationPolicy = AllocationPolicy.BATCH) -> None:
        self.policy = policy

    def validate(
        self,
        expense_total: Decimal,
        proposed: Iterable[Decimal],
        persisted_total: Decimal = ZERO,
    ) -> ShareVerdict:
        amounts = list(proposed)
        if any(amount <= ZERO for amount in amounts):
            return ShareVerdict(False, INVALID_AMOUNT)

        allocated = sum(amounts, ZERO)
        if self.policy is AllocationPolicy.CUMULATIVE:
            allocated += persisted_total
        if allocated > expense_total:
            return ShareVerdict(False, OVERALLOCATED)
        return ACCEPTED

    def validate_batch(
        self,
        expense: Expense,
        requests: Iterable[ShareRequest],
        persisted_total: Decimal = ZERO,
    ) -> ShareVerdict:
        return self.validate(expense.amount, (r.amount_owed for r in requests), persisted_total)

    def validate_share_update(
        self,
        expense: Expense,
        new_amount: Decimal,
        other_shares_total: Decimal,
    ) -> ShareVerdict:
        return self.validate(expense.amount, [new_amount], other_shares_total)

    def validate_expense_total(self, new_total: Decimal, persisted_total: Decimal) -> ShareVerdict:
        # Shrinking an expense under its persisted shares only matters cumulatively
        if self.policy is AllocationPolicy.CUMULATIVE and persisted_total > new_total:
            return ShareVerdict(False, OVERALLOCATED)
        return ACCEPTED


def parse_share_requests(payload: Any) -> List[ShareRequest]:
    if not isinstance(payload, list):
        raise ValidationError({"participants": "must be a list"})

    requests: List[ShareRequest] = []
    for item in payload:
        try:
            user_id = int(item["user_id"])
            amount_owed = to_decimal(item["amount_owed"])
        except (KeyError, TypeError, ValueError, InvalidOperation):
            raise ValidationError({"participants": "invalid_share_payload"}) from None
        requests.append(ShareRequest(user_id=user_id, amount_owed=amount_owed))
    return requests


def parse_amount(value: Any, field: str = "amount") -> Decimal:
    try:
        return to_decimal(value)
    except (TypeError, ValueError, InvalidOperation):
        raise ValidationError({field: INVALID_AMOUNT}) from None


def group_errors(group: Group) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    if not group.name:
        errors["name"] = "must be provided"
    elif len(group.name.encode("utf-8")) > MAX_NAME_BYTES:
        errors["name"] = f"must not be more than {MAX_NAME_BYTES} bytes long"
    return errors


def expense_errors(expense: Expense) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    if expense.amount <= ZERO:
        errors["amount"] = INVALID_AMOUNT
    if len(expense.description.encode("utf-8")) > MAX_DESCRIPTION_BYTES:
        errors["description"] = f"must not be more than {MAX_DESCRIPTION_BYTES} bytes long"
    return errors


def share_errors(share: ExpenseShare) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    if not share.expense_id or share.expense_id <= 0:
        errors["expense_id"] = "must be positive"
    if share.user_id <= 0:
        errors["user_id"] = "must be positive"
    if share.amount_owed <= ZERO:
        errors["amount_owed"] = INVALID_AMOUNT
    return errors


def settlement_errors(settlement: Settlement) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    if settlement.payer_id is None or settlement.payer_id <= 0:
        errors["payer_id"] = "must be positive"
    if settlement.payee_id is None or settlement.payee_id <= 0:
        errors["payee_id"] = "must be positive"
    if "payer_id" not in errors and settlement.payer_id == settlement.payee_id:
        errors["payee_id"] = "payer and payee cannot be the same"
    if settlement.amount <= ZERO:
        errors["amount"] = INVALID_AMOUNT
    return errors


def require_valid(errors: Dict[str, str]) -> None:
    if errors:
        raise ValidationError(errors)
