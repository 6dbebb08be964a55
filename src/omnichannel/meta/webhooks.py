"""Meta webhook payloads - signature check and normalization.

WhatsApp Cloud API payloads:
{
  "object": "whatsapp_business_account",
  "entry": [{"changes": [{"value": {
      "contacts": [{"wa_id": "...", "profile": {"name": "..."}}],
      "messages": [{"from": "...", "id": "wamid...", "timestamp": "1700000000",
                    "type": "text", "text": {"body": "..."}}],
      "statuses": [...]
  }}]}]
}

Instagram / Messenger payloads:
{
  "object": "instagram" | "page",
  "entry": [{"messaging": [{"sender": {"id": "..."}, "recipient": {"id": "..."},
                            "timestamp": 1700000000000,
                            "message": {"mid": "...", "text": "..."}}]}]
}

Every message of every entry is returned. Status updates, reads, echoes of
our own sends and malformed items are skipped.

Security: the returned events carry PII (sender ids, names, text). Never log them.
"""

import hashlib
import hmac
from typing import Any

from omnichannel.domain.models import InboundEvent, Platform
from omnichannel.infra.time import from_epoch

# Fields that carry a caption for media types
_CAPTION_TYPES = ("image", "video", "document")


class InvalidPayloadError(Exception):
    """Raised when a webhook payload has an invalid shape."""

    pass


class SignatureVerificationError(Exception):
    """Raised when HMAC signature verification fails."""

    pass


def verify_signature(payload_bytes: bytes, signature_header: str | None, app_secret: str) -> None:
    """Check the X-Hub-Signature-256 header (sha256=<hex hmac of the body>).

    Raises:
        SignatureVerificationError: If the header is missing, malformed or wrong.
    """
    if not signature_header:
        raise SignatureVerificationError("missing signature header")

    prefix, _, received = signature_header.partition("=")
    if prefix != "sha256" or not received:
        raise SignatureVerificationError("invalid signature format")

    computed = hmac.new(app_secret.encode("utf-8"), payload_bytes, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(computed, received):
        raise SignatureVerificationError("signature mismatch")


def _placeholder(kind: str | None) -> str:
    return f"[{kind or 'unknown'}]"


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _whatsapp_content(message: dict[str, Any]) -> tuple[str, str]:
    """(content, content_type) of a WhatsApp message."""
    kind = str(message.get("type") or "unknown")

    if kind == "text":
        body = _as_dict(message.get("text")).get("body")
        if body:
            return str(body), "text"
    elif kind in _CAPTION_TYPES:
        caption = _as_dict(message.get(kind)).get("caption")
        if caption:
            return str(caption), kind
    elif kind == "button":
        text = _as_dict(message.get("button")).get("text")
        if text:
            return str(text), kind
    elif kind == "interactive":
        interactive = _as_dict(message.get("interactive"))
        reply = _as_dict(interactive.get("button_reply")) or _as_dict(interactive.get("list_reply"))
        if reply.get("title"):
            return str(reply["title"]), kind

    return _placeholder(kind), kind


def normalize_whatsapp(payload: dict[str, Any]) -> list[InboundEvent]:
    """Extract inbound messages from a WhatsApp Cloud API webhook.

    Raises:
        InvalidPayloadError: If the payload is not a JSON object.
    """
    if not isinstance(payload, dict):
        raise InvalidPayloadError("payload must be an object")

    events: list[InboundEvent] = []
    for entry in _as_list(payload.get("entry")):
        for change in _as_list(_as_dict(entry).get("changes")):
            value = _as_dict(_as_dict(change).get("value"))

            names = {}
            for contact in _as_list(value.get("contacts")):
                contact = _as_dict(contact)
                name = _as_dict(contact.get("profile")).get("name")
                if contact.get("wa_id") and name:
                    names[str(contact["wa_id"])] = str(name)

            for message in _as_list(value.get("messages")):
                message = _as_dict(message)
                message_id = message.get("id")
                sender = message.get("from")
                if not message_id or not sender:
                    continue

                content, content_type = _whatsapp_content(message)
                events.append(
                    InboundEvent(
                        platform=Platform.WHATSAPP,
                        sender_id=str(sender),
                        upstream_id=str(message_id),
                        content=content,
                        content_type=content_type,
                        timestamp=from_epoch(message.get("timestamp")),
                        profile_name=names.get(str(sender)),
                    )
                )
    return events


def normalize_messaging(platform: Platform, payload: dict[str, Any]) -> list[InboundEvent]:
    """Extract inbound messages from an Instagram or Messenger webhook.

    Raises:
        InvalidPayloadError: If the payload is not a JSON object.
    """
    if not isinstance(payload, dict):
        raise InvalidPayloadError("payload must be an object")

    events: list[InboundEvent] = []
    for entry in _as_list(payload.get("entry")):
        for item in _as_list(_as_dict(entry).get("messaging")):
            item = _as_dict(item)
            message = item.get("message")
            # Reads, deliveries, reactions, postbacks
            if not isinstance(message, dict):
                continue
            if message.get("is_echo"):
                continue

            message_id = message.get("mid")
            sender = _as_dict(item.get("sender")).get("id")
            if not message_id or not sender:
                continue

            text = message.get("text")
            if text:
                content, content_type = str(text), "text"
            else:
                attachments = _as_list(message.get("attachments"))
                kind = _as_dict(attachments[0]).get("type") if attachments else None
                content, content_type = _placeholder(kind), str(kind or "unknown")

            events.append(
                InboundEvent(
                    platform=platform,
                    sender_id=str(sender),
                    upstream_id=str(message_id),
                    content=content,
                    content_type=content_type,
                    timestamp=from_epoch(item.get("timestamp"), millis=True),
                )
            )
    return events


def normalize(platform: Platform, payload: dict[str, Any]) -> list[InboundEvent]:
    """Normalize a webhook payload for the given platform."""
    if platform == Platform.WHATSAPP:
        return normalize_whatsapp(payload)
    return normalize_messaging(platform, payload)
