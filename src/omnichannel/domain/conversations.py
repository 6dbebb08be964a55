"""Conversation tracking - one thread per (contact, platform).

Maintains the last-message preview/time and the unread counter.

Invariants:
- at most one Conversation per (contact_id, platform)
- last_message_at never moves backwards: a delayed webhook older than the
  current preview still counts as unread but does not replace the preview
- unread_count only grows on inbound messages and resets on mark_read

Callers hold the conversation row lock (find/get with for_update=True) for
the rest of the transaction, which serializes updates per conversation.
"""

from __future__ import annotations

import uuid
from dataclasses import replace
from datetime import datetime

from omnichannel.domain.errors import Conflict, NotFound
from omnichannel.domain.models import Contact, Conversation, Platform, parse_platform
from omnichannel.infra.store import InboxSession
from omnichannel.infra.time import utc_now
from omnichannel.observability.logging import get_logger
from omnichannel.observability.redaction import safe_log_context

logger = get_logger(__name__)

CREATE_ATTEMPTS = 3


def get_or_create_conversation(
    session: InboxSession,
    contact: Contact,
    platform: Platform | str,
) -> Conversation:
    """Find the (contact, platform) conversation, creating it if absent.

    The returned conversation is locked for the current transaction.

    Raises:
        InvalidArgument: If platform is malformed.
        Conflict: If creation kept racing with a concurrent writer.
    """
    platform = parse_platform(platform)

    for _ in range(CREATE_ATTEMPTS):
        conversation = session.find_conversation(contact.id, platform, for_update=True)
        if conversation is not None:
            return conversation

        candidate = Conversation(
            id=str(uuid.uuid4()),
            contact_id=contact.id,
            platform=platform,
            created_at=utc_now(),
        )
        if session.insert_conversation(candidate):
            logger.info(
                "conversation created",
                extra={
                    "extra_fields": safe_log_context(
                        conversation_id=candidate.id,
                        contact_id=contact.id,
                        platform=platform,
                    )
                },
            )
            # Re-read under lock
            locked = session.get_conversation(candidate.id, for_update=True)
            return locked or candidate

    raise Conflict(f"could not create conversation for platform {platform.value}")


def _advance_preview(conversation: Conversation, preview: str, at: datetime) -> Conversation:
    current = conversation.last_message_at
    if current is not None and at < current:
        return conversation
    return replace(conversation, last_message_text=preview, last_message_at=at)


def on_inbound_message(
    session: InboxSession,
    contact: Contact,
    platform: Platform | str,
    preview: str,
    at: datetime,
) -> Conversation:
    """Record an inbound message on the contact's conversation.

    Args:
        session: Store session (within transaction).
        contact: Sender contact.
        platform: Platform the message arrived on.
        preview: Message preview text.
        at: Message timestamp (from the gateway event).

    Returns:
        Updated conversation (unread + 1, preview advanced if `at` is not
        older than the current last-message time).
    """
    conversation = get_or_create_conversation(session, contact, platform)
    updated = _advance_preview(conversation, preview, at)
    updated = replace(updated, unread_count=conversation.unread_count + 1)
    session.save_conversation(updated)
    return updated


def on_outbound_message(
    session: InboxSession,
    contact: Contact,
    platform: Platform | str,
    preview: str,
    at: datetime,
) -> Conversation:
    """Record an outbound message on the (contact, platform) conversation.

    Creates the conversation when the business writes first. The unread
    counter is left as is.
    """
    conversation = get_or_create_conversation(session, contact, platform)
    updated = _advance_preview(conversation, preview, at)
    if updated is not conversation:
        session.save_conversation(updated)
    return updated


def mark_read(session: InboxSession, conversation_id: str) -> Conversation:
    """Reset the unread counter. Idempotent.

    Raises:
        NotFound: If the conversation does not exist.
    """
    conversation = session.get_conversation(conversation_id, for_update=True)
    if conversation is None:
        raise NotFound(f"conversation {conversation_id} not found")

    if conversation.unread_count == 0:
        return conversation

    updated = replace(conversation, unread_count=0)
    session.save_conversation(updated)
    return updated
