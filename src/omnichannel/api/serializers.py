"""JSON shapes of inbox records."""

from datetime import datetime

from omnichannel.domain.models import Contact, Conversation, InboxItem, Message


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def contact_to_dict(contact: Contact) -> dict:
    return {
        "id": contact.id,
        "name": contact.name,
        "phone": contact.phone,
        "email": contact.email,
        "external_ids": {p.value: ext for p, ext in sorted(contact.external_ids.items())},
        "created_at": _iso(contact.created_at),
        "updated_at": _iso(contact.updated_at),
    }


def contact_summary(contact: Contact) -> dict:
    return {"id": contact.id, "name": contact.name}


def conversation_to_dict(conversation: Conversation) -> dict:
    return {
        "id": conversation.id,
        "contact_id": conversation.contact_id,
        "platform": conversation.platform.value,
        "last_message": conversation.last_message_text,
        "last_message_at": _iso(conversation.last_message_at),
        "unread_count": conversation.unread_count,
        "created_at": _iso(conversation.created_at),
    }


def inbox_item_to_dict(item: InboxItem) -> dict:
    data = conversation_to_dict(item.conversation)
    data["contact"] = contact_summary(item.contact)
    return data


def message_to_dict(message: Message) -> dict:
    return {
        "id": message.id,
        "conversation_id": message.conversation_id,
        "direction": message.direction.value,
        "content": message.content,
        "content_type": message.content_type,
        "status": message.status.value,
        "external_id": message.external_id,
        "created_at": _iso(message.created_at),
    }
