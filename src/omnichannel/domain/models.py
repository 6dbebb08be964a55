"""Inbox data model - contacts, conversations and messages.

All records are frozen dataclasses. State changes produce a new instance
(dataclasses.replace) which the caller hands back to the store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Mapping

from omnichannel.domain.errors import InvalidArgument


class Platform(str, Enum):
    """Messaging channel with its own identifier namespace."""

    WHATSAPP = "whatsapp"
    INSTAGRAM = "instagram"
    MESSENGER = "messenger"


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class DeliveryStatus(str, Enum):
    """Message status.

    Inbound messages are stored as RECEIVED and never change.
    Outbound messages start PENDING and move once to SENT or FAILED.
    """

    RECEIVED = "received"
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


def parse_platform(value: str | Platform | None) -> Platform:
    """Parse a platform tag (case-insensitive).

    Raises:
        InvalidArgument: If the tag is empty or not a supported platform.
    """
    if isinstance(value, Platform):
        return value
    if not value or not str(value).strip():
        raise InvalidArgument("platform is required")
    try:
        return Platform(str(value).strip().lower())
    except ValueError:
        raise InvalidArgument(f"unsupported platform: {value!r}") from None


@dataclass(frozen=True)
class Contact:
    """Canonical person record.

    external_ids holds one slot per platform (platform -> external id).
    """

    id: str
    name: str
    created_at: datetime
    updated_at: datetime
    phone: str | None = None
    email: str | None = None
    external_ids: Mapping[Platform, str] = field(default_factory=dict)

    def external_id_for(self, platform: Platform) -> str | None:
        return self.external_ids.get(platform)


@dataclass(frozen=True)
class Conversation:
    """Thread between one contact and the business on one platform."""

    id: str
    contact_id: str
    platform: Platform
    created_at: datetime
    last_message_text: str = ""
    last_message_at: datetime | None = None
    unread_count: int = 0


@dataclass(frozen=True)
class Message:
    """Single message in a conversation.

    id is the store-assigned sequence number (strictly increasing), used to
    break ties between messages with the same created_at.
    """

    id: int
    conversation_id: str
    direction: Direction
    content: str
    content_type: str
    status: DeliveryStatus
    created_at: datetime
    external_id: str | None = None


@dataclass(frozen=True)
class InboundEvent:
    """Normalized inbound message as delivered by the gateway webhook.

    PII: sender_id, profile_name and content. Never log them.
    """

    platform: Platform
    sender_id: str
    upstream_id: str
    content: str
    content_type: str
    timestamp: datetime
    profile_name: str | None = None


@dataclass(frozen=True)
class DeliveryRequest:
    platform: Platform
    recipient_id: str
    content: str
    content_type: str = "text"


@dataclass(frozen=True)
class DeliveryResult:
    """Gateway answer for one delivery request."""

    accepted: bool
    upstream_id: str | None = None
    reason: str | None = None


@dataclass(frozen=True)
class InboxItem:
    """Conversation row as listed in the inbox, with its contact summary."""

    conversation: Conversation
    contact: Contact


@dataclass(frozen=True)
class ConversationDetail:
    conversation: Conversation
    contact: Contact
    messages: list[Message]
