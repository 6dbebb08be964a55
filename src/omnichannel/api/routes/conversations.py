"""Conversation endpoints for the inbox UI.

GET /api/conversations                     → inbox list (newest first)
GET /api/conversations/{id}                → open conversation (marks read)
GET /api/conversations/{id}/messages       → history page (does not mark read)
"""

from __future__ import annotations

from fastapi import APIRouter, Query

from omnichannel.api.errors import http_error
from omnichannel.api.serializers import (
    contact_to_dict,
    conversation_to_dict,
    inbox_item_to_dict,
    message_to_dict,
)
from omnichannel.domain import inbox
from omnichannel.domain.errors import InboxError

router = APIRouter(prefix="/api/conversations", tags=["conversations"])


@router.get("")
def list_conversations(
    limit: int = Query(50),
    offset: int = Query(0),
) -> dict:
    """List conversations with contact summary, preview and unread count.

    Returns:
        {"conversations": [...], "total": n}
    """
    try:
        items, total = inbox.list_conversations(limit=limit, offset=offset)
    except InboxError as e:
        raise http_error(e) from e

    return {"conversations": [inbox_item_to_dict(i) for i in items], "total": total}


@router.get("/{conversation_id}")
def get_conversation(conversation_id: str, limit: int = Query(50)) -> dict:
    """Open a conversation: resets its unread counter.

    Raises 404 if the conversation does not exist.
    """
    try:
        detail = inbox.get_conversation(conversation_id, limit=limit)
    except InboxError as e:
        raise http_error(e) from e

    return {
        "conversation": conversation_to_dict(detail.conversation),
        "contact": contact_to_dict(detail.contact),
        "messages": [message_to_dict(m) for m in detail.messages],
    }


@router.get("/{conversation_id}/messages")
def list_messages(
    conversation_id: str,
    before: int | None = Query(None),
    limit: int = Query(50),
) -> dict:
    """Older messages before a message id cursor, oldest-first."""
    try:
        messages = inbox.list_messages(conversation_id, before=before, limit=limit)
    except InboxError as e:
        raise http_error(e) from e

    return {"messages": [message_to_dict(m) for m in messages]}
