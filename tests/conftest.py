"""
Shared fixtures.

The service and the engine are exercised against in-memory implementations
of the storage interfaces; the MySQL stores get their own tests with a mocked
``Database``.
"""

import threading
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

import pytest

from splitledger.errors import (
    ConstraintViolationError,
    DuplicateEntryError,
    EditConflictError,
    NotFoundError,
)
from splitledger.filters import Filters, calculate_metadata
from splitledger.interface import ExpenseLedger, GroupLedger, MembershipOracle, SettlementLedger, ShareLedger
from splitledger.membership import LEAVE, REJOIN, next_state
from splitledger.models import (
    ZERO,
    Expense,
    ExpenseEntry,
    ExpenseShare,
    Group,
    GroupMember,
    MembershipEvent,
    MembershipState,
    Settlement,
    SettlementEntry,
)
from splitledger.service import LedgerService
from splitledger.validation import (
    AllocationPolicy,
    ShareValidator,
    require_valid,
    settlement_errors,
)

GROUP_ID = 1
ALICE, BOB, CAROL, DAVE = 1, 2, 3, 4


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _sorted(items: List, filters: Filters) -> List:
    column = filters.sort_column()

    def key(item):
        value = getattr(item, column)
        return (value is None, value if value is not None else 0)

    ordered = sorted(items, key=lambda item: item.id)
    return sorted(ordered, key=key, reverse=filters.sort_direction() == "DESC")


def paginate(items: List, filters: Filters) -> Tuple[List, Dict]:
    start = filters.offset()
    return items[start:start + filters.limit()], calculate_metadata(len(items), filters.page, filters.page_size)


class LedgerState:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.groups: Dict[int, Group] = {}
        self.members: Dict[Tuple[int, int], GroupMember] = {}
        self.events: List[MembershipEvent] = []
        self.expenses: Dict[int, Expense] = {}
        self.shares: Dict[int, ExpenseShare] = {}
        self.settlements: Dict[int, Settlement] = {}
        self._ids = {"group": 0, "member": 0, "expense": 0, "share": 0, "settlement": 0}

    def next_id(self, kind: str) -> int:
        self._ids[kind] += 1
        return self._ids[kind]


class MemoryGroups(GroupLedger):
    def __init__(self, state: LedgerState) -> None:
        self.state = state

    def insert(self, group):
        with self.state.lock:
            now = _now()
            stored = Group(
                name=group.name,
                created_by=group.created_by,
                id=self.state.next_id("group"),
                created_at=now,
                updated_at=now,
            )
            self.state.groups[stored.id] = stored
        MemoryMembers(self.state).add_member(stored.id, group.created_by)
        return Group(**vars(stored))

    def get(self, group_id):
        group = self.state.groups.get(group_id)
        if group is None:
            raise NotFoundError("group not found")
        return Group(**vars(group))

    def update(self, group):
        with self.state.lock:
            stored = self.state.groups.get(group.id)
            if stored is None or stored.version != group.version:
                raise EditConflictError("group was modified concurrently")
            stored.name = group.name
            stored.updated_at = _now()
            stored.version += 1
            return Group(**vars(stored))

    def delete(self, group_id):
        with self.state.lock:
            if self.state.groups.pop(group_id, None) is None:
                raise NotFoundError("group not found")
            expense_ids = {e.id for e in self.state.expenses.values() if e.group_id == group_id}
            self.state.members = {k: m for k, m in self.state.members.items() if k[0] != group_id}
            self.state.events = [e for e in self.state.events if e.group_id != group_id]
            self.state.expenses = {k: e for k, e in self.state.expenses.items() if e.group_id != group_id}
            self.state.shares = {k: s for k, s in self.state.shares.items() if s.expense_id not in expense_ids}
            self.state.settlements = {k: s for k, s in self.state.settlements.items() if s.group_id != group_id}

    def list_for_user(self, user_id, name, created_by, filters):
        needle = (name or "").strip().lower()
        matches = [
            Group(**vars(g))
            for g in self.state.groups.values()
            if (g.id, user_id) in self.state.members
            and (not needle or needle in g.name.lower())
            and (not created_by or g.created_by == created_by)
        ]
        return paginate(_sorted(matches, filters), filters)


class MemoryMembers(MembershipOracle):
    def __init__(self, state: LedgerState) -> None:
        self.state = state

    def is_active_member(self, user_id, group_id):
        member = self.state.members.get((group_id, user_id))
        return member is not None and member.is_active

    def was_ever_member(self, group_id, user_id):
        return (group_id, user_id) in self.state.members

    def add_member(self, group_id, user_id):
        with self.state.lock:
            if (group_id, user_id) in self.state.members:
                raise DuplicateEntryError("already a member")
            member = GroupMember(
                group_id=group_id,
                user_id=user_id,
                id=self.state.next_id("member"),
                joined_at=_now(),
            )
            self.state.members[(group_id, user_id)] = member
            self.state.events.append(MembershipEvent(group_id, user_id, MembershipState.JOINED, _now()))
            return member

    def remove_member(self, group_id, user_id):
        return self._transition(group_id, user_id, LEAVE)

    def reinstate_member(self, group_id, user_id):
        return self._transition(group_id, user_id, REJOIN)

    def list_members(self, group_id, include_inactive=False):
        return sorted(
            (m for (g, _), m in self.state.members.items() if g == group_id and (include_inactive or m.is_active)),
            key=lambda m: m.user_id,
        )

    def history(self, group_id, user_id):
        return [e for e in self.state.events if e.group_id == group_id and e.user_id == user_id]

    def _transition(self, group_id, user_id, action):
        with self.state.lock:
            member = self.state.members.get((group_id, user_id))
            if member is None:
                raise NotFoundError("group member not found")
            target = next_state(member.state, action)
            member.is_active = target is MembershipState.JOINED
            member.left_at = None if member.is_active else _now()
            self.state.events.append(MembershipEvent(group_id, user_id, target, _now()))
            return member


class MemoryExpenses(ExpenseLedger):
    def __init__(self, state: LedgerState) -> None:
        self.state = state

    def insert(self, expense):
        if not expense.group_id:
            raise ConstraintViolationError("expense must belong to a group")
        with self.state.lock:
            now = _now()
            stored = Expense(
                group_id=expense.group_id,
                amount=expense.amount,
                description=expense.description,
                paid_by=expense.paid_by,
                id=self.state.next_id("expense"),
                created_at=now,
                updated_at=now,
                version=1,
            )
            self.state.expenses[stored.id] = stored
            return Expense(**vars(stored))

    def get(self, group_id, expense_id):
        expense = self.state.expenses.get(expense_id)
        if expense is None or expense.group_id != group_id:
            raise NotFoundError("expense not found")
        return Expense(**vars(expense))

    def update(self, expense):
        with self.state.lock:
            stored = self.state.expenses.get(expense.id)
            if stored is None or stored.group_id != expense.group_id or stored.version != expense.version:
                raise EditConflictError("expense was modified concurrently")
            stored.amount = expense.amount
            stored.description = expense.description
            stored.paid_by = expense.paid_by
            stored.updated_at = _now()
            stored.version += 1
            return Expense(**vars(stored))

    def delete(self, group_id, expense_id):
        with self.state.lock:
            expense = self.state.expenses.get(expense_id)
            if expense is None or expense.group_id != group_id:
                raise NotFoundError("expense not found")
            del self.state.expenses[expense_id]
            for share_id in [s.id for s in self.state.shares.values() if s.expense_id == expense_id]:
                del self.state.shares[share_id]

    def list_for_group(self, group_id, description, paid_by, filters):
        needle = (description or "").strip().lower()
        matches = [
            Expense(**vars(e))
            for e in self.state.expenses.values()
            if e.group_id == group_id
            and (not needle or needle in e.description.lower())
            and (not paid_by or e.paid_by == paid_by)
        ]
        return paginate(_sorted(matches, filters), filters)

    def expense_entries(self, group_id):
        entries = []
        for expense in sorted(self.state.expenses.values(), key=lambda e: e.id):
            if expense.group_id != group_id:
                continue
            shares = sorted(
                (s for s in self.state.shares.values() if s.expense_id == expense.id),
                key=lambda s: s.id,
            )
            if not shares:
                entries.append(ExpenseEntry(expense.id, expense.paid_by, expense.amount))
            for share in shares:
                entries.append(
                    ExpenseEntry(expense.id, expense.paid_by, expense.amount, share.user_id, share.amount_owed)
                )
        return entries


class MemoryShares(ShareLedger):
    def __init__(self, state: LedgerState) -> None:
        self.state = state

    def insert(self, share):
        with self.state.lock:
            if share.expense_id not in self.state.expenses:
                raise NotFoundError("expense not found")
            if any(
                s.expense_id == share.expense_id and s.user_id == share.user_id
                for s in self.state.shares.values()
            ):
                raise DuplicateEntryError("participant already exists")
            stored = ExpenseShare(
                expense_id=share.expense_id,
                user_id=share.user_id,
                amount_owed=share.amount_owed,
                id=self.state.next_id("share"),
                updated_at=_now(),
            )
            self.state.shares[stored.id] = stored
            return ExpenseShare(**vars(stored))

    def get(self, share_id):
        share = self.state.shares.get(share_id)
        if share is None:
            raise NotFoundError("participant not found")
        return ExpenseShare(**vars(share))

    def update(self, share):
        with self.state.lock:
            stored = self.state.shares.get(share.id)
            if stored is None or stored.version != share.version:
                raise EditConflictError("participant was modified concurrently")
            stored.amount_owed = share.amount_owed
            stored.updated_at = _now()
            stored.version += 1
            return ExpenseShare(**vars(stored))

    def delete(self, share_id):
        with self.state.lock:
            if self.state.shares.pop(share_id, None) is None:
                raise NotFoundError("participant not found")

    def list_for_expense(self, group_id, expense_id, filters):
        expense = self.state.expenses.get(expense_id)
        if expense is None or expense.group_id != group_id:
            return paginate([], filters)
        matches = [ExpenseShare(**vars(s)) for s in self.state.shares.values() if s.expense_id == expense_id]
        return paginate(_sorted(matches, filters), filters)

    def total_for_expense(self, expense_id, exclude_share_id: Optional[int] = None) -> Decimal:
        return sum(
            (s.amount_owed for s in self.state.shares.values() if s.expense_id == expense_id and s.id != exclude_share_id),
            ZERO,
        )


class MemorySettlements(SettlementLedger):
    def __init__(self, state: LedgerState) -> None:
        self.state = state
        self.fail_reads = None

    def insert(self, settlement):
        require_valid(settlement_errors(settlement))
        with self.state.lock:
            stored = Settlement(
                group_id=settlement.group_id,
                payer_id=settlement.payer_id,
                payee_id=settlement.payee_id,
                amount=settlement.amount,
                id=self.state.next_id("settlement"),
                settled_at=_now(),
            )
            self.state.settlements[stored.id] = stored
            return Settlement(**vars(stored))

    def get(self, group_id, settlement_id):
        settlement = self.state.settlements.get(settlement_id)
        if settlement is None or settlement.group_id != group_id:
            raise NotFoundError("settlement not found")
        return Settlement(**vars(settlement))

    def delete(self, group_id, settlement_id):
        self.get(group_id, settlement_id)
        with self.state.lock:
            del self.state.settlements[settlement_id]

    def list_for_group(self, group_id, filters):
        matches = [Settlement(**vars(s)) for s in self.state.settlements.values() if s.group_id == group_id]
        return paginate(_sorted(matches, filters), filters)

    def settlement_entries(self, group_id):
        if self.fail_reads is not None:
            raise self.fail_reads
        return [
            SettlementEntry(s.payer_id, s.payee_id, s.amount)
            for s in sorted(self.state.settlements.values(), key=lambda s: s.id)
            if s.group_id == group_id
        ]


@pytest.fixture
def state():
    ledger_state = LedgerState()
    group = MemoryGroups(ledger_state).insert(Group(name="Lisbon trip", created_by=ALICE))
    assert group.id == GROUP_ID
    members = MemoryMembers(ledger_state)
    for user_id in (BOB, CAROL):
        members.add_member(GROUP_ID, user_id)
    return ledger_state


def _service(state: LedgerState, policy: AllocationPolicy) -> LedgerService:
    return LedgerService(
        members=MemoryMembers(state),
        expenses=MemoryExpenses(state),
        shares=MemoryShares(state),
        settlements=MemorySettlements(state),
        groups=MemoryGroups(state),
        validator=ShareValidator(policy),
    )


@pytest.fixture
def service(state):
    return _service(state, AllocationPolicy.BATCH)


@pytest.fixture
def cumulative_service(state):
    return _service(state, AllocationPolicy.CUMULATIVE)


@pytest.fixture
def client(service):
    from splitledger.app import create_app

    app = create_app(service)
    app.config["TESTING"] = True
    with app.test_client() as test_client:
        yield test_client
