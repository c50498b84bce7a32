"""
Ledger records.

Money is always ``Decimal`` quantized to cents inside the ledger; it only
becomes a float when rendered into JSON by ``to_dict``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise ValueError("Cannot convert value to Decimal")
    if isinstance(value, Decimal):
        return value.quantize(CENT)
    if isinstance(value, (int, float)):
        return Decimal(str(value)).quantize(CENT)
    if isinstance(value, str):
        try:
            return Decimal(value.strip()).quantize(CENT)
        except InvalidOperation:
            raise ValueError("Cannot convert value to Decimal") from None
    raise ValueError("Cannot convert value to Decimal")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Group:
    name: str
    created_by: Optional[int] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 1

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Group":
        return cls(
            id=row["id"],
            name=row["name"],
            created_by=row.get("created_by"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
            version=row.get("version", 1),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "version": self.version,
        }


@dataclass
class Expense:
    group_id: Optional[int]
    amount: Decimal
    description: str = ""
    paid_by: Optional[int] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 1

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Expense":
        return cls(
            id=row["id"],
            group_id=row["group_id"],
            amount=to_decimal(row["amount"]),
            description=row.get("description") or "",
            paid_by=row.get("paid_by"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
            version=row.get("version", 1),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "group_id": self.group_id,
            "amount": float(self.amount),
            "description": self.description,
            "paid_by": self.paid_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "version": self.version,
        }


@dataclass
class ExpenseShare:
    expense_id: int
    user_id: int
    amount_owed: Decimal
    id: Optional[int] = None
    updated_at: Optional[datetime] = None
    version: int = 1

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ExpenseShare":
        return cls(
            id=row["id"],
            expense_id=row["expense_id"],
            user_id=row["user_id"],
            amount_owed=to_decimal(row["amount_owed"]),
            updated_at=row.get("updated_at"),
            version=row.get("version", 1),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "expense_id": self.expense_id,
            "user_id": self.user_id,
            "amount_owed": float(self.amount_owed),
            "updated_at": _iso(self.updated_at),
            "version": self.version,
        }


@dataclass
class Settlement:
    group_id: int
    payer_id: Optional[int]
    payee_id: Optional[int]
    amount: Decimal
    id: Optional[int] = None
    settled_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Settlement":
        return cls(
            id=row["id"],
            group_id=row["group_id"],
            payer_id=row.get("payer_id"),
            payee_id=row.get("payee_id"),
            amount=to_decimal(row["amount"]),
            settled_at=row.get("settled_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "group_id": self.group_id,
            "payer_id": self.payer_id,
            "payee_id": self.payee_id,
            "amount": float(self.amount),
            "settled_at": _iso(self.settled_at),
        }


class MembershipState(str, Enum):
    JOINED = "joined"
    LEFT = "left"


@dataclass
class GroupMember:
    group_id: int
    user_id: int
    id: Optional[int] = None
    joined_at: Optional[datetime] = None
    is_active: bool = True
    left_at: Optional[datetime] = None

    @property
    def state(self) -> MembershipState:
        return MembershipState.JOINED if self.is_active else MembershipState.LEFT

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "GroupMember":
        return cls(
            id=row["id"],
            group_id=row["group_id"],
            user_id=row["user_id"],
            joined_at=row.get("joined_at"),
            is_active=bool(row["is_active"]),
            left_at=row.get("left_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "group_id": self.group_id,
            "user_id": self.user_id,
            "joined_at": _iso(self.joined_at),
            "is_active": self.is_active,
            "left_at": _iso(self.left_at),
            "state": self.state.value,
        }


@dataclass
class MembershipEvent:
    group_id: int
    user_id: int
    state: MembershipState
    occurred_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "group_id": self.group_id,
            "user_id": self.user_id,
            "state": self.state.value,
            "occurred_at": _iso(self.occurred_at),
        }


@dataclass(frozen=True)
class ExpenseEntry:
    """One (expense, share) tuple as read by the reconciliation engine.

    ``share_user_id`` and ``amount_owed`` are None for an expense that has no
    shares yet.
    """

    expense_id: int
    paid_by: Optional[int]
    amount: Decimal
    share_user_id: Optional[int] = None
    amount_owed: Optional[Decimal] = None


@dataclass(frozen=True)
class SettlementEntry:
    payer_id: Optional[int]
    payee_id: Optional[int]
    amount: Decimal


@dataclass(frozen=True)
class Balance:
    """Net position of one user. Positive: owes the group. Negative: is owed."""

    user_id: int
    balance: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {"user_id": self.user_id, "balance": float(self.balance)}


@dataclass(frozen=True)
class Transfer:
    from_user_id: int
    to_user_id: int
    amount: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_user_id": self.from_user_id,
            "to_user_id": self.to_user_id,
            "amount": float(self.amount),
        }


@dataclass(frozen=True)
class ShareRequest:
    user_id: int
    amount_owed: Decimal


@dataclass
class BatchResult:
    inserted: List[ExpenseShare] = field(default_factory=list)
    membership_failures: List[int] = field(default_factory=list)
    validation_failures: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "new_records": len(self.inserted),
            "membership_failures": len(self.membership_failures),
            "validation_failures": len(self.validation_failures),
            "membership_failed_user_ids": self.membership_failures,
            "validation_failed_user_ids": self.validation_failures,
            "participants": [share.to_dict() for share in self.inserted],
        }
