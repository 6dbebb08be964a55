"""Outbound message endpoints.

POST /api/messages              → send (201 + message)
POST /api/messages/{id}/retry   → re-send a failed message as a new one

Delivery failures answer 502 (unavailable/rejected) or 504 (timeout) with
the stored failed message in the body.
"""

from __future__ import annotations

from fastapi import APIRouter
from pydantic import BaseModel, ConfigDict

from omnichannel.api.errors import http_error
from omnichannel.api.serializers import message_to_dict
from omnichannel.domain.dispatch import retry_message, send_message
from omnichannel.domain.errors import InboxError

router = APIRouter(prefix="/api/messages", tags=["messages"])


class SendMessageRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    conversation_id: str | None = None
    platform: str | None = None
    recipient_id: str | None = None
    content: str
    content_type: str = "text"


@router.post("", status_code=201)
def send(body: SendMessageRequest) -> dict:
    try:
        message = send_message(
            conversation_id=body.conversation_id,
            platform=body.platform,
            recipient_id=body.recipient_id,
            content=body.content,
            content_type=body.content_type,
        )
    except InboxError as e:
        raise http_error(e) from e

    return message_to_dict(message)


@router.post("/{message_id}/retry", status_code=201)
def retry(message_id: int) -> dict:
    """Retry a failed outbound message. 409 if it is not failed."""
    try:
        message = retry_message(message_id)
    except InboxError as e:
        raise http_error(e) from e

    return message_to_dict(message)
