"""Message store - append-only log of messages per conversation.

Ordering within a conversation is (created_at, id); id is the store
sequence, so two messages with the same timestamp keep insertion order.

Content is immutable. The only mutation is the outbound delivery status,
which moves once: pending -> sent or pending -> failed.
"""

from __future__ import annotations

from datetime import datetime

from omnichannel.domain.errors import InvalidArgument, InvalidStateTransition, NotFound
from omnichannel.domain.models import Conversation, DeliveryStatus, Direction, Message
from omnichannel.infra.store import InboxSession
from omnichannel.infra.time import utc_now

# Legal delivery status transitions
STATUS_TRANSITIONS: dict[DeliveryStatus, set[DeliveryStatus]] = {
    DeliveryStatus.PENDING: {DeliveryStatus.SENT, DeliveryStatus.FAILED},
}

MAX_HISTORY_LIMIT = 500


def append_message(
    session: InboxSession,
    conversation: Conversation,
    *,
    direction: Direction,
    content: str,
    content_type: str = "text",
    status: DeliveryStatus,
    created_at: datetime | None = None,
    external_id: str | None = None,
) -> Message:
    """Append a message to a conversation (sole write path).

    Args:
        session: Store session (within transaction).
        conversation: Owning conversation.
        direction: inbound or outbound.
        content: Message body.
        content_type: Content type tag (default "text").
        status: RECEIVED for inbound, PENDING for new outbound.
        created_at: Message timestamp (default: now).
        external_id: Upstream message id, if known.

    Returns:
        The stored Message with its sequence id.

    Raises:
        InvalidArgument: If status does not fit the direction.
    """
    if direction == Direction.INBOUND and status != DeliveryStatus.RECEIVED:
        raise InvalidArgument("inbound messages are stored as received")
    if direction == Direction.OUTBOUND and status == DeliveryStatus.RECEIVED:
        raise InvalidArgument("outbound messages cannot be stored as received")

    return session.insert_message(
        conversation_id=conversation.id,
        direction=direction,
        content=content,
        content_type=content_type or "text",
        status=status,
        created_at=created_at or utc_now(),
        external_id=external_id,
    )


def history(
    session: InboxSession,
    conversation: Conversation,
    *,
    before: int | None = None,
    limit: int = 50,
) -> list[Message]:
    """Messages of a conversation, oldest-first.

    Args:
        session: Store session.
        conversation: Conversation to read.
        before: Optional message id cursor; only messages ordered strictly
            before it are returned.
        limit: Maximum number of messages (the most recent ones).

    Raises:
        InvalidArgument: If limit <= 0 or the cursor is not a message of
            this conversation.
    """
    if limit <= 0:
        raise InvalidArgument("limit must be positive")
    limit = min(limit, MAX_HISTORY_LIMIT)

    cursor = None
    if before is not None:
        cursor = session.get_message(before)
        if cursor is None or cursor.conversation_id != conversation.id:
            raise InvalidArgument(f"cursor {before} is not a message of this conversation")

    return session.list_messages(conversation.id, before=cursor, limit=limit)


def get_message(session: InboxSession, message_id: int, *, for_update: bool = False) -> Message:
    """Raises NotFound if the message does not exist."""
    message = session.get_message(message_id, for_update=for_update)
    if message is None:
        raise NotFound(f"message {message_id} not found")
    return message


def update_status(
    session: InboxSession,
    message_id: int,
    status: DeliveryStatus,
    *,
    external_id: str | None = None,
) -> Message:
    """Move an outbound message to a new delivery status.

    Raises:
        NotFound: If the message does not exist.
        InvalidStateTransition: If the transition is not allowed. The stored
            record is left untouched.
    """
    message = get_message(session, message_id, for_update=True)

    allowed = STATUS_TRANSITIONS.get(message.status, set())
    if message.direction != Direction.OUTBOUND or status not in allowed:
        raise InvalidStateTransition(
            f"cannot move {message.direction.value} message from "
            f"{message.status.value} to {status.value}"
        )

    session.set_message_status(message.id, status, external_id=external_id)
    return session.get_message(message.id) or message
