from typing import List

from .db import Database, db as default_db
from .errors import NotFoundError
from .filters import Filters, calculate_metadata
from .interface import Page, SettlementLedger
from .models import Settlement, SettlementEntry, to_decimal
from .validation import require_valid, settlement_errors

_SETTLEMENT_COLUMNS = "id, group_id, payer_id, payee_id, amount, settled_at"


class SettlementStore(SettlementLedger):
    """
    Settlements are immutable once recorded: a wrong payment is reversed by
    deleting it, never edited. Membership of payer and payee is checked by the
    caller before ``insert``.
    """

    def __init__(self, database: Database = None) -> None:
        self.db = database or default_db

    def insert(self, settlement: Settlement) -> Settlement:
        require_valid(settlement_errors(settlement))

        with self.db.cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO settlements (group_id, payer_id, payee_id, amount)
                VALUES (%s, %s, %s, %s)
                """,
                (settlement.group_id, settlement.payer_id, settlement.payee_id, str(settlement.amount)),
            )
            cursor.execute(f"SELECT {_SETTLEMENT_COLUMNS} FROM settlements WHERE id=%s", (cursor.lastrowid,))
            row = cursor.fetchone()
        return Settlement.from_row(row)

    def get(self, group_id: int, settlement_id: int) -> Settlement:
        row = self.db.fetch_one(
            f"SELECT {_SETTLEMENT_COLUMNS} FROM settlements WHERE id=%s AND group_id=%s",
            (settlement_id, group_id),
        )
        if not row:
            raise NotFoundError("settlement not found")
        return Settlement.from_row(row)

    def delete(self, group_id: int, settlement_id: int) -> None:
        deleted = self.db.execute_rowcount(
            "DELETE FROM settlements WHERE id=%s AND group_id=%s",
            (settlement_id, group_id),
        )
        if deleted == 0:
            raise NotFoundError("settlement not found")

    def list_for_group(self, group_id: int, filters: Filters) -> Page:
        rows = self.db.fetch_all(
            f"""
            SELECT COUNT(*) OVER() AS total_records, {_SETTLEMENT_COLUMNS}
            FROM settlements
            WHERE group_id=%s
            ORDER BY {filters.sort_column()} {filters.sort_direction()}, id ASC
            LIMIT %s OFFSET %s
            """,
            (group_id, filters.limit(), filters.offset()),
        )
        total_records = rows[0]["total_records"] if rows else 0
        settlements = [Settlement.from_row(row) for row in rows]
        return settlements, calculate_metadata(total_records, filters.page, filters.page_size)

    def settlement_entries(self, group_id: int) -> List[SettlementEntry]:
        rows = self.db.fetch_all(
            "SELECT payer_id, payee_id, amount FROM settlements WHERE group_id=%s ORDER BY id",
            (group_id,),
        )
        return [
            SettlementEntry(payer_id=row["payer_id"], payee_id=row["payee_id"], amount=to_decimal(row["amount"]))
            for row in rows
        ]
