from decimal import Decimal
from typing import List, Optional

from .db import Database, db as default_db
from .errors import ConstraintViolationError, EditConflictError, NotFoundError
from .filters import Filters, calculate_metadata, like_pattern
from .interface import ExpenseLedger, Page, ShareLedger
from .models import ZERO, Expense, ExpenseEntry, ExpenseShare, to_decimal

_EXPENSE_COLUMNS = "id, group_id, amount, description, paid_by, created_at, updated_at, version"
_SHARE_COLUMNS = "id, expense_id, user_id, amount_owed, updated_at, version"


class ExpenseStore(ExpenseLedger):
    def __init__(self, database: Database = None) -> None:
        self.db = database or default_db

    def insert(self, expense: Expense) -> Expense:
        if not expense.group_id:
            raise ConstraintViolationError("expense must belong to a group")

        with self.db.cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO expenses (group_id, amount, description, paid_by)
                VALUES (%s, %s, %s, %s)
                """,
                (expense.group_id, str(expense.amount), expense.description, expense.paid_by),
            )
            cursor.execute(f"SELECT {_EXPENSE_COLUMNS} FROM expenses WHERE id=%s", (cursor.lastrowid,))
            row = cursor.fetchone()
        return Expense.from_row(row)

    def get(self, group_id: int, expense_id: int) -> Expense:
        if expense_id < 1:
            raise NotFoundError("expense not found")

        row = self.db.fetch_one(
            f"SELECT {_EXPENSE_COLUMNS} FROM expenses WHERE id=%s AND group_id=%s",
            (expense_id, group_id),
        )
        if not row:
            raise NotFoundError("expense not found")
        return Expense.from_row(row)

    def update(self, expense: Expense) -> Expense:
        with self.db.cursor() as cursor:
            cursor.execute(
                """
                UPDATE expenses
                SET amount=%s, description=%s, paid_by=%s, updated_at=NOW(), version=version + 1
                WHERE id=%s AND group_id=%s AND version=%s
                """,
                (
                    str(expense.amount),
                    expense.description,
                    expense.paid_by,
                    expense.id,
                    expense.group_id,
                    expense.version,
                ),
            )
            if cursor.rowcount == 0:
                raise EditConflictError("expense was modified concurrently")
            cursor.execute(f"SELECT {_EXPENSE_COLUMNS} FROM expenses WHERE id=%s", (expense.id,))
            row = cursor.fetchone()
        return Expense.from_row(row)

    def delete(self, group_id: int, expense_id: int) -> None:
        with self.db.cursor() as cursor:
            cursor.execute(
                """
                DELETE es FROM expense_shares es
                JOIN expenses e ON es.expense_id = e.id
                WHERE e.id=%s AND e.group_id=%s
                """,
                (expense_id, group_id),
            )
            cursor.execute("DELETE FROM expenses WHERE id=%s AND group_id=%s", (expense_id, group_id))
            if cursor.rowcount == 0:
                raise NotFoundError("expense not found")

    def list_for_group(
        self,
        group_id: int,
        description: str,
        paid_by: Optional[int],
        filters: Filters,
    ) -> Page:
        description = (description or "").strip()
        paid_by = paid_by or 0

        rows = self.db.fetch_all(
            f"""
            SELECT COUNT(*) OVER() AS total_records, {_EXPENSE_COLUMNS}
            FROM expenses
            WHERE group_id=%s
              AND (%s = '' OR LOWER(description) LIKE %s)
              AND (%s = 0 OR paid_by = %s)
            ORDER BY {filters.sort_column()} {filters.sort_direction()}, id ASC
            LIMIT %s OFFSET %s
            """,
            (
                group_id,
                description,
                like_pattern(description),
                paid_by,
                paid_by,
                filters.limit(),
                filters.offset(),
            ),
        )
        total_records = rows[0]["total_records"] if rows else 0
        expenses = [Expense.from_row(row) for row in rows]
        return expenses, calculate_metadata(total_records, filters.page, filters.page_size)

    def expense_entries(self, group_id: int) -> List[ExpenseEntry]:
        rows = self.db.fetch_all(
            """
            SELECT e.id AS expense_id, e.paid_by, e.amount,
                   es.user_id AS share_user_id, es.amount_owed
            FROM expenses e
            LEFT JOIN expense_shares es ON es.expense_id = e.id
            WHERE e.group_id=%s
            ORDER BY e.id, es.id
            """,
            (group_id,),
        )
        return [
            ExpenseEntry(
                expense_id=row["expense_id"],
                paid_by=row["paid_by"],
                amount=to_decimal(row["amount"]),
                share_user_id=row["share_user_id"],
                amount_owed=to_decimal(row["amount_owed"]) if row["amount_owed"] is not None else None,
            )
            for row in rows
        ]


class ExpenseShareStore(ShareLedger):
    def __init__(self, database: Database = None) -> None:
        self.db = database or default_db

    def insert(self, share: ExpenseShare) -> ExpenseShare:
        with self.db.cursor() as cursor:
            cursor.execute(
                "INSERT INTO expense_shares (expense_id, user_id, amount_owed) VALUES (%s, %s, %s)",
                (share.expense_id, share.user_id, str(share.amount_owed)),
            )
            cursor.execute(f"SELECT {_SHARE_COLUMNS} FROM expense_shares WHERE id=%s", (cursor.lastrowid,))
            row = cursor.fetchone()
        return ExpenseShare.from_row(row)

    def get(self, share_id: int) -> ExpenseShare:
        row = self.db.fetch_one(f"SELECT {_SHARE_COLUMNS} FROM expense_shares WHERE id=%s", (share_id,))
        if not row:
            raise NotFoundError("participant not found")
        return ExpenseShare.from_row(row)

    def update(self, share: ExpenseShare) -> ExpenseShare:
        with self.db.cursor() as cursor:
            cursor.execute(
                """
                UPDATE expense_shares
                SET amount_owed=%s, updated_at=NOW(), version=version + 1
                WHERE id=%s AND version=%s
                """,
                (str(share.amount_owed), share.id, share.version),
            )
            if cursor.rowcount == 0:
                raise EditConflictError("participant was modified concurrently")
            cursor.execute(f"SELECT {_SHARE_COLUMNS} FROM expense_shares WHERE id=%s", (share.id,))
            row = cursor.fetchone()
        return ExpenseShare.from_row(row)

    def delete(self, share_id: int) -> None:
        if self.db.execute_rowcount("DELETE FROM expense_shares WHERE id=%s", (share_id,)) == 0:
            raise NotFoundError("participant not found")

    def list_for_expense(self, group_id: int, expense_id: int, filters: Filters) -> Page:
        rows = self.db.fetch_all(
            f"""
            SELECT COUNT(*) OVER() AS total_records, {_SHARE_COLUMNS}
            FROM expense_shares
            WHERE expense_id=%s AND expense_id IN (SELECT id FROM expenses WHERE group_id=%s)
            ORDER BY {filters.sort_column()} {filters.sort_direction()}, id ASC
            LIMIT %s OFFSET %s
            """,
            (expense_id, group_id, filters.limit(), filters.offset()),
        )
        total_records = rows[0]["total_records"] if rows else 0
        shares = [ExpenseShare.from_row(row) for row in rows]
        return shares, calculate_metadata(total_records, filters.page, filters.page_size)

    def total_for_expense(self, expense_id: int, exclude_share_id: Optional[int] = None) -> Decimal:
        row = self.db.fetch_one(
            """
            SELECT COALESCE(SUM(amount_owed), 0) AS total
            FROM expense_shares
            WHERE expense_id=%s AND (%s IS NULL OR id <> %s)
            """,
            (expense_id, exclude_share_id, exclude_share_id),
        )
        return to_decimal(row["total"]) if row else ZERO
