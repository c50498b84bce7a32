from typing import Optional

from .db import Database, db as default_db
from .errors import EditConflictError, NotFoundError
from .filters import Filters, calculate_metadata, like_pattern
from .interface import GroupLedger, Page
from .log import get_logger
from .membership import insert_member
from .models import Group

log = get_logger(__name__)

_GROUP_COLUMNS = "id, name, created_by, created_at, updated_at, version"


class GroupStore(GroupLedger):
    """
    Groups are the parent of every ledger row. Deleting a group cascades to
    its members, expenses, shares and settlements through the foreign keys.
    """

    def __init__(self, database: Database = None) -> None:
        self.db = database or default_db

    def insert(self, group: Group) -> Group:
        with self.db.cursor() as cursor:
            cursor.execute(
                "INSERT INTO `groups` (name, created_by) VALUES (%s, %s)",
                (group.name, group.created_by),
            )
            group_id = cursor.lastrowid
            # The creator is the first member
            insert_member(cursor, group_id, group.created_by)
            cursor.execute(f"SELECT {_GROUP_COLUMNS} FROM `groups` WHERE id=%s", (group_id,))
            row = cursor.fetchone()
        log.info("group_created", group_id=group_id, created_by=group.created_by)
        return Group.from_row(row)

    def get(self, group_id: int) -> Group:
        if group_id < 1:
            raise NotFoundError("group not found")

        row = self.db.fetch_one(f"SELECT {_GROUP_COLUMNS} FROM `groups` WHERE id=%s", (group_id,))
        if not row:
            raise NotFoundError("group not found")
        return Group.from_row(row)

    def update(self, group: Group) -> Group:
        with self.db.cursor() as cursor:
            cursor.execute(
                """
                UPDATE `groups`
                SET name=%s, updated_at=NOW(), version=version + 1
                WHERE id=%s AND version=%s
                """,
                (group.name, group.id, group.version),
            )
            if cursor.rowcount == 0:
                raise EditConflictError("group was modified concurrently")
            cursor.execute(f"SELECT {_GROUP_COLUMNS} FROM `groups` WHERE id=%s", (group.id,))
            row = cursor.fetchone()
        return Group.from_row(row)

    def delete(self, group_id: int) -> None:
        if group_id < 1:
            raise NotFoundError("group not found")
        if self.db.execute_rowcount("DELETE FROM `groups` WHERE id=%s", (group_id,)) == 0:
            raise NotFoundError("group not found")

    def list_for_user(self, user_id: int, name: str, created_by: Optional[int], filters: Filters) -> Page:
        name = (name or "").strip()
        created_by = created_by or 0

        rows = self.db.fetch_all(
            f"""
            SELECT COUNT(*) OVER() AS total_records, {_GROUP_COLUMNS}
            FROM `groups`
            WHERE id IN (SELECT group_id FROM group_members WHERE user_id=%s)
              AND (%s = '' OR LOWER(name) LIKE %s)
              AND (%s = 0 OR created_by = %s)
            ORDER BY {filters.sort_column()} {filters.sort_direction()}, id ASC
            LIMIT %s OFFSET %s
            """,
            (
                user_id,
                name,
                like_pattern(name),
                created_by,
                created_by,
                filters.limit(),
                filters.offset(),
            ),
        )
        total_records = rows[0]["total_records"] if rows else 0
        groups = [Group.from_row(row) for row in rows]
        return groups, calculate_metadata(total_records, filters.page, filters.page_size)
