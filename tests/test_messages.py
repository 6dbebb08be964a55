"""Tests for the message store (append, history, delivery status)."""

from datetime import timedelta

import pytest

from omnichannel.domain.conversations import get_or_create_conversation
from omnichannel.domain.errors import InvalidArgument, InvalidStateTransition, NotFound
from omnichannel.domain.identity import resolve_contact
from omnichannel.domain.messages import append_message, history, update_status
from omnichannel.domain.models import DeliveryStatus, Direction

from .helpers import BASE_TIME


@pytest.fixture
def conversation(store):
    with store.transaction() as session:
        contact = resolve_contact(session, "whatsapp", "62811", "Budi")
        return get_or_create_conversation(session, contact, "whatsapp")


def _append(store, conversation, content, *, at=BASE_TIME, direction=Direction.INBOUND, status=None):
    status = status or (
        DeliveryStatus.RECEIVED if direction == Direction.INBOUND else DeliveryStatus.PENDING
    )
    with store.transaction() as session:
        return append_message(
            session,
            conversation,
            direction=direction,
            content=content,
            status=status,
            created_at=at,
        )


class TestAppend:
    def test_sequence_ids_increase(self, store, conversation):
        ids = [_append(store, conversation, f"m{i}").id for i in range(3)]
        assert ids == sorted(ids)
        assert len(set(ids)) == 3

    def test_inbound_must_be_received(self, store, conversation):
        with pytest.raises(InvalidArgument):
            _append(store, conversation, "x", status=DeliveryStatus.PENDING)

    def test_outbound_cannot_be_received(self, store, conversation):
        with pytest.raises(InvalidArgument):
            _append(
                store,
                conversation,
                "x",
                direction=Direction.OUTBOUND,
                status=DeliveryStatus.RECEIVED,
            )


class TestHistory:
    def test_oldest_first_with_timestamp_ties(self, store, conversation):
        a = _append(store, conversation, "a", at=BASE_TIME)
        b = _append(store, conversation, "b", at=BASE_TIME)
        c = _append(store, conversation, "c", at=BASE_TIME)
        early = _append(store, conversation, "early", at=BASE_TIME - timedelta(seconds=1))

        with store.transaction() as session:
            result = history(session, conversation, limit=10)

        assert [m.id for m in result] == [early.id, a.id, b.id, c.id]

    def test_limit_keeps_most_recent(self, store, conversation):
        msgs = [
            _append(store, conversation, f"m{i}", at=BASE_TIME + timedelta(seconds=i))
            for i in range(5)
        ]
        with store.transaction() as session:
            result = history(session, conversation, limit=2)
        assert [m.content for m in result] == ["m3", "m4"]
        assert result[-1].id == msgs[-1].id

    def test_before_cursor_pages_backwards(self, store, conversation):
        msgs = [
            _append(store, conversation, f"m{i}", at=BASE_TIME + timedelta(seconds=i))
            for i in range(5)
        ]
        with store.transaction() as session:
            page = history(session, conversation, before=msgs[3].id, limit=2)
            first = history(session, conversation, before=msgs[0].id, limit=2)

        assert [m.content for m in page] == ["m1", "m2"]
        assert first == []

    @pytest.mark.parametrize("limit", [0, -1])
    def test_non_positive_limit(self, store, conversation, limit):
        with store.transaction() as session:
            with pytest.raises(InvalidArgument):
                history(session, conversation, limit=limit)

    def test_cursor_from_other_conversation(self, store, conversation):
        with store.transaction() as session:
            other_contact = resolve_contact(session, "instagram", "siti", "Siti")
            other = get_or_create_conversation(session, other_contact, "instagram")
        foreign = _append(store, other, "x")

        with store.transaction() as session:
            with pytest.raises(InvalidArgument):
                history(session, conversation, before=foreign.id, limit=5)


class TestUpdateStatus:
    @pytest.mark.parametrize("target", [DeliveryStatus.SENT, DeliveryStatus.FAILED])
    def test_pending_moves_once(self, store, conversation, target):
        msg = _append(store, conversation, "Hi", direction=Direction.OUTBOUND)
        with store.transaction() as session:
            updated = update_status(session, msg.id, target, external_id="wamid.9")

        assert updated.status == target
        assert updated.external_id == "wamid.9"
        assert updated.content == "Hi"

    @pytest.mark.parametrize(
        "first, second",
        [
            (DeliveryStatus.SENT, DeliveryStatus.FAILED),
            (DeliveryStatus.FAILED, DeliveryStatus.SENT),
            (DeliveryStatus.SENT, DeliveryStatus.PENDING),
        ],
    )
    def test_illegal_transition_leaves_record(self, store, conversation, first, second):
        msg = _append(store, conversation, "Hi", direction=Direction.OUTBOUND)
        with store.transaction() as session:
            update_status(session, msg.id, first)

        with store.transaction() as session:
            with pytest.raises(InvalidStateTransition):
                update_status(session, msg.id, second)

        assert store.messages[msg.id].status == first

    def test_inbound_status_is_final(self, store, conversation):
        msg = _append(store, conversation, "Halo")
        with store.transaction() as session:
            with pytest.raises(InvalidStateTransition):
                update_status(session, msg.id, DeliveryStatus.SENT)
        assert store.messages[msg.id].status == DeliveryStatus.RECEIVED

    def test_unknown_message(self, store):
        with store.transaction() as session:
            with pytest.raises(NotFound):
                update_status(session, 999, DeliveryStatus.SENT)
