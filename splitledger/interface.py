"""
Abstract storage interfaces.

The service and the reconciliation engine only talk to these. The MySQL
implementations live next to their domain (``groups.py``, ``expenses.py``,
``settlements.py``, ``membership.py``); tests swap in in-memory versions.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from .filters import Filters
from .models import (
    Expense,
    ExpenseEntry,
    ExpenseShare,
    Group,
    GroupMember,
    MembershipEvent,
    Settlement,
    SettlementEntry,
)

Page = Tuple[List[Any], Dict[str, Any]]


class GroupLedger(ABC):
    @abstractmethod
    def insert(self, group: Group) -> Group:
        """Create the group and join ``group.created_by`` to it in one transaction."""
        pass

    @abstractmethod
    def get(self, group_id: int) -> Group:
        pass

    @abstractmethod
    def update(self, group: Group) -> Group:
        """Raises EditConflictError unless ``group.version`` is current."""
        pass

    @abstractmethod
    def delete(self, group_id: int) -> None:
        pass

    @abstractmethod
    def list_for_user(self, user_id: int, name: str, created_by: Optional[int], filters: Filters) -> Page:
        """Groups the user has ever been a member of."""
        pass


class MembershipOracle(ABC):
    """Answers membership questions; the ledger never reads member rows itself."""

    @abstractmethod
    def is_active_member(self, user_id: int, group_id: int) -> bool:
        pass

    @abstractmethod
    def was_ever_member(self, group_id: int, user_id: int) -> bool:
        pass

    @abstractmethod
    def add_member(self, group_id: int, user_id: int) -> GroupMember:
        """Join. Raises DuplicateEntryError if the user has a row already."""
        pass

    @abstractmethod
    def remove_member(self, group_id: int, user_id: int) -> GroupMember:
        """Soft delete: JOINED -> LEFT."""
        pass

    @abstractmethod
    def reinstate_member(self, group_id: int, user_id: int) -> GroupMember:
        """LEFT -> JOINED."""
        pass

    @abstractmethod
    def list_members(self, group_id: int, include_inactive: bool = False) -> List[GroupMember]:
        pass

    @abstractmethod
    def history(self, group_id: int, user_id: int) -> List[MembershipEvent]:
        pass


class ExpenseLedger(ABC):
    @abstractmethod
    def insert(self, expense: Expense) -> Expense:
        pass

    @abstractmethod
    def get(self, group_id: int, expense_id: int) -> Expense:
        """Raises NotFoundError if the expense is missing or in another group."""
        pass

    @abstractmethod
    def update(self, expense: Expense) -> Expense:
        """Raises EditConflictError unless ``expense.version`` is current."""
        pass

    @abstractmethod
    def delete(self, group_id: int, expense_id: int) -> None:
        pass

    @abstractmethod
    def list_for_group(
        self,
        group_id: int,
        description: str,
        paid_by: Optional[int],
        filters: Filters,
    ) -> Page:
        pass

    @abstractmethod
    def expense_entries(self, group_id: int) -> List[ExpenseEntry]:
        """Every (expense, share) tuple of the group, ordered by expense then share."""
        pass


class ShareLedger(ABC):
    @abstractmethod
    def insert(self, share: ExpenseShare) -> ExpenseShare:
        pass

    @abstractmethod
    def get(self, share_id: int) -> ExpenseShare:
        pass

    @abstractmethod
    def update(self, share: ExpenseShare) -> ExpenseShare:
        pass

    @abstractmethod
    def delete(self, share_id: int) -> None:
        pass

    @abstractmethod
    def list_for_expense(self, group_id: int, expense_id: int, filters: Filters) -> Page:
        pass

    @abstractmethod
    def total_for_expense(self, expense_id: int, exclude_share_id: Optional[int] = None) -> Decimal:
        pass


class SettlementLedger(ABC):
    @abstractmethod
    def insert(self, settlement: Settlement) -> Settlement:
        pass

    @abstractmethod
    def get(self, group_id: int, settlement_id: int) -> Settlement:
        pass

    @abstractmethod
    def delete(self, group_id: int, settlement_id: int) -> None:
        pass

    @abstractmethod
    def list_for_group(self, group_id: int, filters: Filters) -> Page:
        pass

    @abstractmethod
    def settlement_entries(self, group_id: int) -> List[SettlementEntry]:
        pass
