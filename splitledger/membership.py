"""
Group membership.

Membership is a two-state machine, JOINED and LEFT, walked through
``join -> leave -> rejoin -> leave -> ...``. Members are never hard-deleted:
leaving only flips ``is_active`` and stamps ``left_at`` so that historical
shares and settlements stay attributed to the user. Every transition is
appended to ``group_member_events``.
"""

from typing import List

from .db import Database, db as default_db
from .errors import InvalidTransitionError, NotFoundError
from .interface import MembershipOracle
from .log import get_logger
from .models import GroupMember, MembershipEvent, MembershipState

log = get_logger(__name__)

LEAVE = "leave"
REJOIN = "rejoin"

_TRANSITIONS = {
    (MembershipState.JOINED, LEAVE): MembershipState.LEFT,
    (MembershipState.LEFT, REJOIN): MembershipState.JOINED,
}


def next_state(current: MembershipState, action: str) -> MembershipState:
    try:
        return _TRANSITIONS[(current, action)]
    except KeyError:
        raise InvalidTransitionError(f"cannot {action} from state {current.value}") from None


_MEMBER_COLUMNS = "id, group_id, user_id, joined_at, is_active, left_at"


def record_event(cursor, member_id: int, state: MembershipState) -> None:
    cursor.execute(
        "INSERT INTO group_member_events (member_id, state) VALUES (%s, %s)",
        (member_id, state.value),
    )


def insert_member(cursor, group_id: int, user_id: int) -> int:
    """Insert a JOINED member row and its event on an open transaction."""
    cursor.execute(
        "INSERT INTO group_members (group_id, user_id) VALUES (%s, %s)",
        (group_id, user_id),
    )
    member_id = cursor.lastrowid
    record_event(cursor, member_id, MembershipState.JOINED)
    return member_id


class GroupMemberStore(MembershipOracle):
    def __init__(self, database: Database = None) -> None:
        self.db = database or default_db

    def is_active_member(self, user_id: int, group_id: int) -> bool:
        record = self.db.fetch_one(
            "SELECT id FROM group_members WHERE group_id=%s AND user_id=%s AND is_active=TRUE",
            (group_id, user_id),
        )
        return record is not None

    def was_ever_member(self, group_id: int, user_id: int) -> bool:
        record = self.db.fetch_one(
            "SELECT id FROM group_members WHERE group_id=%s AND user_id=%s",
            (group_id, user_id),
        )
        return record is not None

    def add_member(self, group_id: int, user_id: int) -> GroupMember:
        with self.db.cursor() as cursor:
            member_id = insert_member(cursor, group_id, user_id)
            cursor.execute(f"SELECT {_MEMBER_COLUMNS} FROM group_members WHERE id=%s", (member_id,))
            row = cursor.fetchone()
        log.info("member_joined", group_id=group_id, user_id=user_id)
        return GroupMember.from_row(row)

    def remove_member(self, group_id: int, user_id: int) -> GroupMember:
        return self._transition(group_id, user_id, LEAVE)

    def reinstate_member(self, group_id: int, user_id: int) -> GroupMember:
        return self._transition(group_id, user_id, REJOIN)

    def list_members(self, group_id: int, include_inactive: bool = False) -> List[GroupMember]:
        query = f"SELECT {_MEMBER_COLUMNS} FROM group_members WHERE group_id=%s"
        if not include_inactive:
            query += " AND is_active=TRUE"
        rows = self.db.fetch_all(query + " ORDER BY user_id", (group_id,))
        return [GroupMember.from_row(row) for row in rows]

    def history(self, group_id: int, user_id: int) -> List[MembershipEvent]:
        rows = self.db.fetch_all(
            """
            SELECT gm.group_id, gm.user_id, ev.state, ev.occurred_at
            FROM group_member_events ev
            JOIN group_members gm ON gm.id = ev.member_id
            WHERE gm.group_id=%s AND gm.user_id=%s
            ORDER BY ev.occurred_at, ev.id
            """,
            (group_id, user_id),
        )
        return [
            MembershipEvent(
                group_id=row["group_id"],
                user_id=row["user_id"],
                state=MembershipState(row["state"]),
                occurred_at=row["occurred_at"],
            )
            for row in rows
        ]

    def _transition(self, group_id: int, user_id: int, action: str) -> GroupMember:
        with self.db.cursor() as cursor:
            cursor.execute(
                f"SELECT {_MEMBER_COLUMNS} FROM group_members WHERE group_id=%s AND user_id=%s FOR UPDATE",
                (group_id, user_id),
            )
            row = cursor.fetchone()
            if not row:
                raise NotFoundError("group member not found")

            member = GroupMember.from_row(row)
            target = next_state(member.state, action)

            if target is MembershipState.LEFT:
                cursor.execute(
                    "UPDATE group_members SET is_active=FALSE, left_at=NOW() WHERE id=%s AND is_active=TRUE",
                    (member.id,),
                )
            else:
                cursor.execute(
                    "UPDATE group_members SET is_active=TRUE, left_at=NULL WHERE id=%s AND is_active=FALSE",
                    (member.id,),
                )
            if cursor.rowcount == 0:
                raise InvalidTransitionError(f"cannot {action} from state {member.state.value}")

            record_event(cursor, member.id, target)
            cursor.execute(f"SELECT {_MEMBER_COLUMNS} FROM group_members WHERE id=%s", (member.id,))
            row = cursor.fetchone()

        log.info("member_transition", group_id=group_id, user_id=user_id, state=target.value)
        return GroupMember.from_row(row)

