"""Identity resolution - platform sender id to canonical Contact.

One Contact per (platform, external_id). Resolution is find-or-create on
top of the store's insert-if-absent primitive, so two concurrent first
contacts from the same sender converge on a single record.

Contacts are never merged automatically. Adding a second platform slot to
an existing contact is the explicit update_contact action.

NO PII in logs: external ids are hashed, names/phones/emails omitted.
"""

from __future__ import annotations

import uuid
from dataclasses import replace
from typing import Mapping

from omnichannel.domain.errors import Conflict, InvalidArgument, NotFound
from omnichannel.domain.models import Contact, Platform, parse_platform
from omnichannel.infra.store import InboxSession
from omnichannel.infra.time import utc_now
from omnichannel.observability.logging import get_logger
from omnichannel.observability.redaction import hash_identifier, safe_log_context

logger = get_logger(__name__)

# Find path retries after losing an insert race
RESOLVE_ATTEMPTS = 3


def _require_external_id(external_id: str | None) -> str:
    if external_id is None or not str(external_id).strip():
        raise InvalidArgument("external_id is required")
    return str(external_id).strip()


def _display_name(profile_hint: str | None, external_id: str) -> str:
    if profile_hint and profile_hint.strip():
        return profile_hint.strip()
    return external_id


def _optional(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def resolve_contact(
    session: InboxSession,
    platform: Platform | str,
    external_id: str,
    profile_hint: str | None = None,
) -> Contact:
    """Map (platform, external_id) to its Contact, creating one if absent.

    An existing contact is returned unchanged: the profile hint only names
    new contacts.

    Args:
        session: Store session (within transaction).
        platform: Platform tag.
        external_id: Platform-scoped sender id (non-empty).
        profile_hint: Best-effort display name. Defaults to external_id.

    Returns:
        The canonical Contact.

    Raises:
        InvalidArgument: If platform or external_id is malformed.
        Conflict: If the key kept flipping between absent and taken.
    """
    platform = parse_platform(platform)
    external_id = _require_external_id(external_id)

    for _ in range(RESOLVE_ATTEMPTS):
        contact = session.find_contact(platform, external_id)
        if contact is not None:
            return contact

        now = utc_now()
        candidate = Contact(
            id=str(uuid.uuid4()),
            name=_display_name(profile_hint, external_id),
            created_at=now,
            updated_at=now,
            external_ids={platform: external_id},
        )
        if session.insert_contact(candidate):
            logger.info(
                "contact created",
                extra={
                    "extra_fields": safe_log_context(
                        contact_id=candidate.id,
                        platform=platform,
                        sender_hash=hash_identifier(external_id),
                    )
                },
            )
            return candidate

    raise Conflict(f"could not resolve contact for platform {platform.value}")


def _attach_identities(
    session: InboxSession,
    contact: Contact,
    identities: Mapping[Platform, str],
) -> Contact:
    slots = dict(contact.external_ids)
    for platform, external_id in identities.items():
        current = slots.get(platform)
        if current == external_id:
            continue
        if current is not None:
            raise Conflict(f"contact already has a {platform.value} id")

        owner = session.find_contact(platform, external_id)
        if owner is not None or not session.add_identity(contact.id, platform, external_id):
            raise Conflict(f"{platform.value} id already belongs to another contact")
        slots[platform] = external_id
    return replace(contact, external_ids=slots)


def _parse_identities(identities: Mapping[str, str] | None) -> dict[Platform, str]:
    parsed: dict[Platform, str] = {}
    for tag, external_id in (identities or {}).items():
        parsed[parse_platform(tag)] = _require_external_id(external_id)
    return parsed


def create_contact(
    session: InboxSession,
    *,
    name: str,
    phone: str | None = None,
    email: str | None = None,
    identities: Mapping[str, str] | None = None,
) -> Contact:
    """Create a contact explicitly (user action).

    Args:
        session: Store session (within transaction).
        name: Display name (non-empty).
        phone: Optional phone.
        email: Optional email.
        identities: Optional platform tag -> external id slots.

    Raises:
        InvalidArgument: On empty name or malformed slots.
        Conflict: If a slot already belongs to another contact.
    """
    if not name or not name.strip():
        raise InvalidArgument("name is required")
    slots = _parse_identities(identities)

    for platform, external_id in slots.items():
        if session.find_contact(platform, external_id) is not None:
            raise Conflict(f"{platform.value} id already belongs to another contact")

    now = utc_now()
    contact = Contact(
        id=str(uuid.uuid4()),
        name=name.strip(),
        phone=_optional(phone),
        email=_optional(email),
        created_at=now,
        updated_at=now,
        external_ids=slots,
    )
    if not session.insert_contact(contact):
        raise Conflict("platform id already belongs to another contact")

    logger.info(
        "contact created",
        extra={"extra_fields": safe_log_context(contact_id=contact.id, slots=len(slots))},
    )
    return contact


_UNSET = object()


def update_contact(
    session: InboxSession,
    contact_id: str,
    *,
    name: str | None = None,
    phone: str | None | object = _UNSET,
    email: str | None | object = _UNSET,
    identities: Mapping[str, str] | None = None,
) -> Contact:
    """Edit a contact (user action).

    name/phone/email are replaced when given (phone/email may be cleared
    with None). identities may add slots for platforms the contact has no
    id for yet; an existing slot is immutable.

    Raises:
        NotFound: If the contact does not exist.
        InvalidArgument: On empty name or malformed slots.
        Conflict: If a slot is taken or would be overwritten.
    """
    contact = session.get_contact(contact_id)
    if contact is None:
        raise NotFound(f"contact {contact_id} not found")

    changes: dict = {}
    if name is not None:
        if not name.strip():
            raise InvalidArgument("name cannot be empty")
        changes["name"] = name.strip()
    if phone is not _UNSET:
        changes["phone"] = _optional(phone)  # type: ignore[arg-type]
    if email is not _UNSET:
        changes["email"] = _optional(email)  # type: ignore[arg-type]

    slots = _parse_identities(identities)
    if slots:
        contact = _attach_identities(session, contact, slots)

    if changes or slots:
        contact = replace(contact, updated_at=utc_now(), **changes)
        session.update_contact(contact)

    return contact


def get_contact(session: InboxSession, contact_id: str) -> Contact:
    """Raises NotFound if the contact does not exist."""
    contact = session.get_contact(contact_id)
    if contact is None:
        raise NotFound(f"contact {contact_id} not found")
    return contact
