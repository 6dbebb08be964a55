"""Inbox query service - read side for the presentation layer.

Every call opens its own short transaction. get_conversation is the only
read with a side effect: opening a conversation marks it read.
"""

from __future__ import annotations

from omnichannel.domain.conversations import mark_read
from omnichannel.domain.errors import InvalidArgument, NotFound
from omnichannel.domain.identity import get_contact as _get_contact
from omnichannel.domain.messages import history
from omnichannel.domain.models import Contact, ConversationDetail, InboxItem, Message
from omnichannel.infra.store import InboxStore, get_store

MAX_PAGE_SIZE = 200


def _check_page(limit: int, offset: int) -> int:
    if limit <= 0:
        raise InvalidArgument("limit must be positive")
    if offset < 0:
        raise InvalidArgument("offset cannot be negative")
    return min(limit, MAX_PAGE_SIZE)


def list_conversations(
    *, limit: int = 50, offset: int = 0, store: InboxStore | None = None
) -> tuple[list[InboxItem], int]:
    """Conversations by last-message time (newest first, then id), with total count."""
    limit = _check_page(limit, offset)
    with (store or get_store()).transaction() as session:
        return session.list_conversations(limit=limit, offset=offset)


def get_conversation(
    conversation_id: str, *, limit: int = 50, store: InboxStore | None = None
) -> ConversationDetail:
    """Open a conversation: its contact, latest messages (oldest-first), unread reset.

    Raises:
        NotFound: If the conversation does not exist.
        InvalidArgument: If limit <= 0.
    """
    if limit <= 0:
        raise InvalidArgument("limit must be positive")
    with (store or get_store()).transaction() as session:
        conversation = mark_read(session, conversation_id)
        contact = session.get_contact(conversation.contact_id)
        if contact is None:
            raise NotFound(f"contact {conversation.contact_id} not found")
        messages = history(session, conversation, limit=limit)
    return ConversationDetail(conversation=conversation, contact=contact, messages=messages)


def list_messages(
    conversation_id: str,
    *,
    before: int | None = None,
    limit: int = 50,
    store: InboxStore | None = None,
) -> list[Message]:
    """Page through a conversation's history without marking it read.

    Raises:
        NotFound: If the conversation does not exist.
        InvalidArgument: On bad limit or cursor.
    """
    with (store or get_store()).transaction() as session:
        conversation = session.get_conversation(conversation_id)
        if conversation is None:
            raise NotFound(f"conversation {conversation_id} not found")
        return history(session, conversation, before=before, limit=limit)


def list_contacts(
    *,
    limit: int = 100,
    offset: int = 0,
    search: str | None = None,
    store: InboxStore | None = None,
) -> tuple[list[Contact], int]:
    """Contacts by name, optionally filtered by a case-insensitive substring
    of name, phone or email."""
    limit = _check_page(limit, offset)
    search = search.strip() if search else None
    with (store or get_store()).transaction() as session:
        return session.list_contacts(limit=limit, offset=offset, search=search or None)


def get_contact(contact_id: str, *, store: InboxStore | None = None) -> Contact:
    """Raises NotFound if the contact does not exist."""
    with (store or get_store()).transaction() as session:
        return _get_contact(session, contact_id)
