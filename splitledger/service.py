"""
Ledger service: the control flow between the membership oracle, the share
validator, the ledger stores and the reconciliation engine.

Writes require the acting user to be an active member of the group. Reads,
balances included, are also open to former members so that someone who left
can still see what they owe. Any logged-in user may create a group and
becomes its first member; only the creator may delete it.
"""

from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from .balances import BalanceEngine, suggest_transfers
from .errors import DuplicateEntryError, ForbiddenError, NotFoundError
from .filters import Filters
from .interface import ExpenseLedger, GroupLedger, MembershipOracle, SettlementLedger, ShareLedger
from .log import get_logger
from .models import (
    ZERO,
    Balance,
    BatchResult,
    Expense,
    ExpenseShare,
    Group,
    GroupMember,
    MembershipEvent,
    Settlement,
    ShareRequest,
    Transfer,
)
from .validation import (
    AllocationPolicy,
    ShareValidator,
    expense_errors,
    group_errors,
    require_valid,
    settlement_errors,
    share_errors,
)

log = get_logger(__name__)


class LedgerService:
    def __init__(
        self,
        members: MembershipOracle,
        expenses: ExpenseLedger,
        shares: ShareLedger,
        settlements: SettlementLedger,
        groups: GroupLedger,
        validator: Optional[ShareValidator] = None,
    ) -> None:
        self.groups = groups
        self.members = members
        self.expenses = expenses
        self.shares = shares
        self.settlements = settlements
        self.validator = validator or ShareValidator()
        self.engine = BalanceEngine(expenses, settlements)

    @property
    def cumulative(self) -> bool:
        return self.validator.policy is AllocationPolicy.CUMULATIVE

    # ------------------------
    # Access checks
    # ------------------------
    def _require_active(self, user_id: int, group_id: int) -> None:
        if not self.members.is_active_member(user_id, group_id):
            raise ForbiddenError("not an active member of this group")

    def _require_ever(self, user_id: int, group_id: int) -> None:
        if not self.members.was_ever_member(group_id, user_id):
            raise ForbiddenError("not a member of this group")

    # ------------------------
    # Groups
    # ------------------------
    def create_group(self, actor_id: int, name: str) -> Group:
        group = Group(name=(name or "").strip(), created_by=actor_id)
        require_valid(group_errors(group))
        return self.groups.insert(group)

    def get_group(self, group_id: int, actor_id: int) -> Group:
        group = self.groups.get(group_id)
        self._require_ever(actor_id, group_id)
        return group

    def list_groups(
        self,
        actor_id: int,
        filters: Filters,
        name: str = "",
        created_by: Optional[int] = None,
    ) -> Tuple[List[Group], Dict]:
        filters.validate()
        return self.groups.list_for_user(actor_id, name, created_by, filters)

    def update_group(
        self,
        group_id: int,
        actor_id: int,
        name: Optional[str] = None,
        version: Optional[int] = None,
    ) -> Group:
        group = self.groups.get(group_id)
        self._require_active(actor_id, group_id)

        if version is not None:
            group.version = version
        if name is not None:
            group.name = name.strip()
        require_valid(group_errors(group))

        updated = self.groups.update(group)
        log.info("group_updated", group_id=group_id, version=updated.version)
        return updated

    def delete_group(self, group_id: int, actor_id: int) -> None:
        group = self.groups.get(group_id)
        self._require_active(actor_id, group_id)
        # A group whose creator account is gone can be deleted by any active member
        if group.created_by is not None and group.created_by != actor_id:
            raise ForbiddenError("only the creator can delete a group")

        self.groups.delete(group_id)
        log.info("group_deleted", group_id=group_id, deleted_by=actor_id)

    # ------------------------
    # Expenses
    # ------------------------
    def create_expense(
        self,
        group_id: int,
        actor_id: int,
        amount: Decimal,
        description: str = "",
        shares: Optional[Sequence[ShareRequest]] = None,
    ) -> Tuple[Expense, Optional[BatchResult]]:
        # The acting user pays for the expense, so they must be active
        self._require_active(actor_id, group_id)

        expense = Expense(group_id=group_id, amount=amount, description=description, paid_by=actor_id)
        require_valid(expense_errors(expense))

        if shares:
            # Fail before the expense row exists if the batch cannot fit
            self.validator.validate_batch(expense, shares).raise_for_reason()

        expense = self.expenses.insert(expense)
        log.info("expense_created", group_id=group_id, expense_id=expense.id, amount=str(expense.amount))

        batch = None
        if shares:
            batch = self._insert_shares(group_id, expense, shares)
        return expense, batch

    def get_expense(self, group_id: int, actor_id: int, expense_id: int) -> Expense:
        self._require_ever(actor_id, group_id)
        return self.expenses.get(group_id, expense_id)

    def list_expenses(
        self,
        group_id: int,
        actor_id: int,
        filters: Filters,
        description: str = "",
        paid_by: Optional[int] = None,
    ) -> Tuple[List[Expense], Dict]:
        self._require_ever(actor_id, group_id)
        filters.validate()
        return self.expenses.list_for_group(group_id, description, paid_by, filters)

    def update_expense(
        self,
        group_id: int,
        actor_id: int,
        expense_id: int,
        amount: Optional[Decimal] = None,
        description: Optional[str] = None,
        version: Optional[int] = None,
    ) -> Expense:
        self._require_active(actor_id, group_id)
        expense = self.expenses.get(group_id, expense_id)

        if version is not None:
            expense.version = version
        if description is not None:
            expense.description = description
        if amount is not None:
            expense.amount = amount

        require_valid(expense_errors(expense))
        if amount is not None:
            persisted = self.shares.total_for_expense(expense.id) if self.cumulative else ZERO
            self.validator.validate_expense_total(expense.amount, persisted).raise_for_reason()

        updated = self.expenses.update(expense)
        log.info("expense_updated", group_id=group_id, expense_id=expense_id, version=updated.version)
        return updated

    def delete_expense(self, group_id: int, actor_id: int, expense_id: int) -> None:
        self._require_active(actor_id, group_id)
        self.expenses.delete(group_id, expense_id)
        log.info("expense_deleted", group_id=group_id, expense_id=expense_id)

    # ------------------------
    # Participants (expense shares)
    # ------------------------
    def add_shares(
        self,
        group_id: int,
        actor_id: int,
        expense_id: int,
        requests: Sequence[ShareRequest],
    ) -> BatchResult:
        self._require_active(actor_id, group_id)
        expense = self.expenses.get(group_id, expense_id)

        persisted = self.shares.total_for_expense(expense.id) if self.cumulative else ZERO
        self.validator.validate_batch(expense, requests, persisted).raise_for_reason()

        return self._insert_shares(group_id, expense, requests)

    def _insert_shares(self, group_id: int, expense: Expense, requests: Sequence[ShareRequest]) -> BatchResult:
        result = BatchResult()
        seen = set()

        for request in requests:
            if request.user_id in seen:
                result.validation_failures.append(request.user_id)
                continue
            seen.add(request.user_id)

            share = ExpenseShare(expense_id=expense.id, user_id=request.user_id, amount_owed=request.amount_owed)
            if share_errors(share):
                result.validation_failures.append(request.user_id)
                continue

            if not self.members.is_active_member(request.user_id, group_id):
                result.membership_failures.append(request.user_id)
                continue

            try:
                result.inserted.append(self.shares.insert(share))
            except DuplicateEntryError:
                result.validation_failures.append(request.user_id)

        log.info(
            "participants_added",
            group_id=group_id,
            expense_id=expense.id,
            new_records=len(result.inserted),
            membership_failures=len(result.membership_failures),
            validation_failures=len(result.validation_failures),
        )
        return result

    def list_shares(
        self,
        group_id: int,
        actor_id: int,
        expense_id: int,
        filters: Filters,
    ) -> Tuple[List[ExpenseShare], Dict]:
        self._require_ever(actor_id, group_id)
        filters.validate()
        self.expenses.get(group_id, expense_id)
        return self.shares.list_for_expense(group_id, expense_id, filters)

    def _share_in_expense(self, group_id: int, expense_id: int, share_id: int) -> Tuple[Expense, ExpenseShare]:
        expense = self.expenses.get(group_id, expense_id)
        share = self.shares.get(share_id)
        if share.expense_id != expense.id:
            raise NotFoundError("participant not found")
        return expense, share

    def update_share(
        self,
        group_id: int,
        actor_id: int,
        expense_id: int,
        share_id: int,
        amount_owed: Decimal,
        version: Optional[int] = None,
    ) -> ExpenseShare:
        self._require_active(actor_id, group_id)
        expense, share = self._share_in_expense(group_id, expense_id, share_id)
        self._require_active(share.user_id, group_id)

        share.amount_owed = amount_owed
        if version is not None:
            share.version = version
        require_valid(share_errors(share))

        others = self.shares.total_for_expense(expense.id, exclude_share_id=share.id) if self.cumulative else ZERO
        self.validator.validate_share_update(expense, share.amount_owed, others).raise_for_reason()

        updated = self.shares.update(share)
        log.info("participant_updated", group_id=group_id, expense_id=expense_id, participant_id=share_id)
        return updated

    def delete_share(self, group_id: int, actor_id: int, expense_id: int, share_id: int) -> None:
        self._require_active(actor_id, group_id)
        _, share = self._share_in_expense(group_id, expense_id, share_id)
        self._require_active(share.user_id, group_id)
        self.shares.delete(share.id)
        log.info("participant_deleted", group_id=group_id, expense_id=expense_id, participant_id=share_id)

    # ------------------------
    # Settlements
    # ------------------------
    def record_settlement(
        self,
        group_id: int,
        actor_id: int,
        payer_id: int,
        payee_id: int,
        amount: Decimal,
    ) -> Settlement:
        self._require_active(actor_id, group_id)

        settlement = Settlement(group_id=group_id, payer_id=payer_id, payee_id=payee_id, amount=amount)
        errors = settlement_errors(settlement)
        if "payer_id" not in errors and not self.members.is_active_member(payer_id, group_id):
            errors["payer_id"] = "payer must be a member of the group"
        if "payee_id" not in errors and not self.members.is_active_member(payee_id, group_id):
            errors["payee_id"] = "payee must be a member of the group"
        require_valid(errors)

        settlement = self.settlements.insert(settlement)
        log.info(
            "settlement_recorded",
            group_id=group_id,
            settlement_id=settlement.id,
            payer_id=payer_id,
            payee_id=payee_id,
            amount=str(settlement.amount),
        )
        return settlement

    def get_settlement(self, group_id: int, actor_id: int, settlement_id: int) -> Settlement:
        self._require_ever(actor_id, group_id)
        return self.settlements.get(group_id, settlement_id)

    def list_settlements(self, group_id: int, actor_id: int, filters: Filters) -> Tuple[List[Settlement], Dict]:
        self._require_ever(actor_id, group_id)
        filters.validate()
        return self.settlements.list_for_group(group_id, filters)

    def delete_settlement(self, group_id: int, actor_id: int, settlement_id: int) -> None:
        self._require_active(actor_id, group_id)
        self.settlements.delete(group_id, settlement_id)
        log.info("settlement_reversed", group_id=group_id, settlement_id=settlement_id)

    # ------------------------
    # Balances
    # ------------------------
    def group_balances(self, group_id: int, actor_id: int) -> List[Balance]:
        self._require_ever(actor_id, group_id)
        return self.engine.group_balances(group_id)

    def settle_up(self, group_id: int, actor_id: int) -> Tuple[List[Balance], List[Transfer]]:
        balances = self.group_balances(group_id, actor_id)
        return balances, suggest_transfers(balances)

    # ------------------------
    # Membership
    # ------------------------
    def join_group(self, group_id: int, actor_id: int) -> GroupMember:
        return self.members.add_member(group_id, actor_id)

    def remove_member(self, group_id: int, actor_id: int, user_id: int) -> GroupMember:
        self._require_active(actor_id, group_id)
        member = self.members.remove_member(group_id, user_id)
        log.info("member_removed", group_id=group_id, user_id=user_id, removed_by=actor_id)
        return member

    def reinstate_member(self, group_id: int, actor_id: int, user_id: int) -> GroupMember:
        self._require_active(actor_id, group_id)
        member = self.members.reinstate_member(group_id, user_id)
        log.info("member_reinstated", group_id=group_id, user_id=user_id, reinstated_by=actor_id)
        return member

    def list_members(self, group_id: int, actor_id: int, include_inactive: bool = False) -> List[GroupMember]:
        self._require_ever(actor_id, group_id)
        return self.members.list_members(group_id, include_inactive)

    def member_history(self, group_id: int, actor_id: int, user_id: int) -> List[MembershipEvent]:
        self._require_ever(actor_id, group_id)
        return self.members.history(group_id, user_id)
