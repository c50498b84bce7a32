"""
Balance reconciliation.

Net balances are recomputed from scratch on every query by folding two
ordered result sets, expense/share tuples then settlement tuples, into a
mapping that lives only inside ``reconcile``.

Sign convention, used by the engine, the API and the tests alike:

    positive balance  -> the user owes the group
    negative balance  -> the group owes the user

An expense charges every share to its user (+amount_owed) and credits its
payer with what the shares cover (-amount_owed per share). For a fully
allocated expense that is the whole expense amount; the unassigned part of a
partially allocated expense is attributed to nobody until shares exist for
it. A settlement is a transfer: the payer's debt goes down (-amount) and the
payee's credit goes down (+amount). Every step is zero-sum, so the emitted
balances always add up to exactly zero.
"""

from decimal import Decimal
from typing import Dict, Iterable, List

from .interface import ExpenseLedger, SettlementLedger
from .log import get_logger
from .models import ZERO, Balance, ExpenseEntry, SettlementEntry, Transfer

log = get_logger(__name__)


def reconcile(
    expense_entries: Iterable[ExpenseEntry],
    settlement_entries: Iterable[SettlementEntry],
) -> List[Balance]:
    totals: Dict[int, Decimal] = {}

    def touch(user_id: int) -> None:
        totals.setdefault(user_id, ZERO)

    for entry in expense_entries:
        if entry.paid_by is None:
            # Payer reference was cleared; crediting nobody would break zero-sum
            log.warning("expense_without_payer_skipped", expense_id=entry.expense_id)
            continue

        touch(entry.paid_by)
        if entry.share_user_id is not None:
            touch(entry.share_user_id)
            totals[entry.share_user_id] += entry.amount_owed
            totals[entry.paid_by] -= entry.amount_owed

    for settlement in settlement_entries:
        if settlement.payer_id is None or settlement.payee_id is None:
            log.warning("settlement_without_party_skipped")
            continue
        touch(settlement.payer_id)
        touch(settlement.payee_id)
        totals[settlement.payer_id] -= settlement.amount
        totals[settlement.payee_id] += settlement.amount

    return [Balance(user_id=user_id, balance=totals[user_id]) for user_id in sorted(totals)]


def suggest_transfers(balances: Iterable[Balance]) -> List[Transfer]:
    """Greedy debtor/creditor matching that brings every balance to zero."""
    debtors = []
    creditors = []

    for entry in balances:
        if entry.balance > ZERO:
            debtors.append({"user_id": entry.user_id, "amount": entry.balance})
        elif entry.balance < ZERO:
            creditors.append({"user_id": entry.user_id, "amount": -entry.balance})

    transfers: List[Transfer] = []

    debtor_idx = 0
    creditor_idx = 0

    while debtor_idx < len(debtors) and creditor_idx < len(creditors):
        debtor = debtors[debtor_idx]
        creditor = creditors[creditor_idx]

        settled_amount = min(debtor["amount"], creditor["amount"])
        if settled_amount > ZERO:
            transfers.append(
                Transfer(
                    from_user_id=debtor["user_id"],
                    to_user_id=creditor["user_id"],
                    amount=settled_amount,
                )
            )

        debtor["amount"] -= settled_amount
        creditor["amount"] -= settled_amount

        if debtor["amount"] <= ZERO:
            debtor_idx += 1
        if creditor["amount"] <= ZERO:
            creditor_idx += 1

    return transfers


class BalanceEngine:
    """Reads both ledgers for a group and nets them. Performs no writes."""

    def __init__(self, expenses: ExpenseLedger, settlements: SettlementLedger) -> None:
        self.expenses = expenses
        self.settlements = settlements

    def group_balances(self, group_id: int) -> List[Balance]:
        # Any read failure propagates as a single error before anything is computed
        expense_entries = self.expenses.expense_entries(group_id)
        settlement_entries = self.settlements.settlement_entries(group_id)

        balances = reconcile(expense_entries, settlement_entries)
        log.debug(
            "balances_reconciled",
            group_id=group_id,
            users=len(balances),
            expense_rows=len(expense_entries),
            settlement_rows=len(settlement_entries),
        )
        return balances
