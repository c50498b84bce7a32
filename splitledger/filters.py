from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, Tuple

from .errors import ValidationError

GROUP_SORT_SAFELIST = ("id", "name", "created_by", "updated_at", "-id", "-name", "-created_by", "-updated_at")
EXPENSE_SORT_SAFELIST = (
    "id", "amount", "description", "paid_by", "updated_at",
    "-id", "-amount", "-description", "-paid_by", "-updated_at",
)
SHARE_SORT_SAFELIST = ("id", "amount_owed", "user_id", "-id", "-amount_owed", "-user_id")
SETTLEMENT_SORT_SAFELIST = (
    "id", "amount", "settled_at", "payer_id", "payee_id",
    "-id", "-amount", "-settled_at", "-payer_id", "-payee_id",
)

MAX_PAGE = 10_000_000
MAX_PAGE_SIZE = 100


@dataclass
class Filters:
    page: int = 1
    page_size: int = 20
    sort: str = "id"
    sort_safelist: Tuple[str, ...] = field(default_factory=tuple)

    def validate(self) -> None:
        errors: Dict[str, str] = {}
        if not 0 < self.page <= MAX_PAGE:
            errors["page"] = f"must be between 1 and {MAX_PAGE}"
        if not 0 < self.page_size <= MAX_PAGE_SIZE:
            errors["page_size"] = f"must be between 1 and {MAX_PAGE_SIZE}"
        if self.sort not in self.sort_safelist:
            errors["sort"] = "invalid sort value"
        if errors:
            raise ValidationError(errors)

    def sort_column(self) -> str:
        # Column names are interpolated into ORDER BY, so only safelisted keys pass
        if self.sort not in self.sort_safelist:
            raise ValidationError({"sort": "invalid sort value"})
        return self.sort.lstrip("-")

    def sort_direction(self) -> str:
        return "DESC" if self.sort.startswith("-") else "ASC"

    def limit(self) -> int:
        return self.page_size

    def offset(self) -> int:
        return (self.page - 1) * self.page_size


def calculate_metadata(total_records: int, page: int, page_size: int) -> Dict[str, Any]:
    if total_records == 0:
        return {}
    return {
        "current_page": page,
        "page_size": page_size,
        "first_page": 1,
        "last_page": math.ceil(total_records / page_size),
        "total_records": total_records,
    }


def like_pattern(text: str) -> str:
    """Case-folded substring pattern for LIKE with its wildcards escaped."""
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped.lower()}%"
