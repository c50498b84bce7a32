"""Tests for the membership state machine and its MySQL store."""

from datetime import datetime
from unittest.mock import MagicMock

import pytest

from splitledger.errors import InvalidTransitionError, NotFoundError
from splitledger.membership import LEAVE, REJOIN, GroupMemberStore, next_state
from splitledger.models import MembershipState


def _row(is_active=True, left_at=None):
    return {
        "id": 11,
        "group_id": 1,
        "user_id": 2,
        "joined_at": datetime(2024, 1, 1),
        "is_active": int(is_active),
        "left_at": left_at,
    }


@pytest.fixture
def database():
    database = MagicMock()
    cursor = MagicMock()
    database.cursor.return_value.__enter__.return_value = cursor
    return database


class TestNextState:
    def test_leave_from_joined(self):
        assert next_state(MembershipState.JOINED, LEAVE) is MembershipState.LEFT

    def test_rejoin_from_left(self):
        assert next_state(MembershipState.LEFT, REJOIN) is MembershipState.JOINED

    @pytest.mark.parametrize(
        "current, action",
        [
            (MembershipState.LEFT, LEAVE),
            (MembershipState.JOINED, REJOIN),
            (MembershipState.JOINED, "delete"),
        ],
    )
    def test_invalid_transitions(self, current, action):
        with pytest.raises(InvalidTransitionError):
            next_state(current, action)


class TestGroupMemberStore:
    def test_is_active_member(self, database):
        database.fetch_one.return_value = {"id": 11}
        assert GroupMemberStore(database).is_active_member(2, 1) is True

        query, params = database.fetch_one.call_args[0]
        assert "is_active=TRUE" in query
        assert params == (1, 2)

    def test_former_member_was_ever_member(self, database):
        database.fetch_one.return_value = None
        assert GroupMemberStore(database).was_ever_member(1, 2) is False

    def test_add_member_records_joined_event(self, database):
        cursor = database.cursor.return_value.__enter__.return_value
        cursor.lastrowid = 11
        cursor.fetchone.return_value = _row()

        member = GroupMemberStore(database).add_member(1, 2)

        assert member.state is MembershipState.JOINED
        statements = [c[0][0] for c in cursor.execute.call_args_list]
        assert any("INSERT INTO group_member_events" in s for s in statements)
        assert cursor.execute.call_args_list[1][0][1] == (11, "joined")

    def test_remove_member_soft_deletes(self, database):
        cursor = database.cursor.return_value.__enter__.return_value
        cursor.fetchone.side_effect = [_row(), _row(is_active=False, left_at=datetime(2024, 2, 1))]
        cursor.rowcount = 1

        member = GroupMemberStore(database).remove_member(1, 2)

        assert member.is_active is False
        assert member.left_at == datetime(2024, 2, 1)
        statements = [c[0][0] for c in cursor.execute.call_args_list]
        assert "FOR UPDATE" in statements[0]
        assert statements[1].startswith("UPDATE group_members SET is_active=FALSE")
        assert not any(s.startswith("DELETE") for s in statements)

    def test_remove_unknown_member_is_not_found(self, database):
        cursor = database.cursor.return_value.__enter__.return_value
        cursor.fetchone.return_value = None

        with pytest.raises(NotFoundError):
            GroupMemberStore(database).remove_member(1, 2)

    def test_reinstate_active_member_is_rejected(self, database):
        cursor = database.cursor.return_value.__enter__.return_value
        cursor.fetchone.return_value = _row()

        with pytest.raises(InvalidTransitionError):
            GroupMemberStore(database).reinstate_member(1, 2)
        assert cursor.execute.call_count == 1

    def test_lost_race_is_invalid_transition(self, database):
        """The guarded UPDATE matches nothing when another request already moved the row."""
        cursor = database.cursor.return_value.__enter__.return_value
        cursor.fetchone.return_value = _row()
        cursor.rowcount = 0

        with pytest.raises(InvalidTransitionError):
            GroupMemberStore(database).remove_member(1, 2)

    def test_history_maps_states(self, database):
        database.fetch_all.return_value = [
            {"group_id": 1, "user_id": 2, "state": "joined", "occurred_at": datetime(2024, 1, 1)},
            {"group_id": 1, "user_id": 2, "state": "left", "occurred_at": datetime(2024, 2, 1)},
        ]
        history = GroupMemberStore(database).history(1, 2)
        assert [event.state for event in history] == [MembershipState.JOINED, MembershipState.LEFT]
