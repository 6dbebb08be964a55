"""Contact endpoints.

GET   /api/contacts?search=...   → list / search (name, phone, email)
POST  /api/contacts              → create
GET   /api/contacts/{id}         → read
PATCH /api/contacts/{id}         → update name/phone/email, add a platform id

Platform ids are immutable once set; a platform id owned by another
contact answers 409.
"""

from __future__ import annotations

from fastapi import APIRouter, Query
from pydantic import BaseModel, ConfigDict

from omnichannel.api.errors import http_error
from omnichannel.api.serializers import contact_to_dict
from omnichannel.domain import identity, inbox
from omnichannel.domain.errors import InboxError
from omnichannel.infra.store import get_store

router = APIRouter(prefix="/api/contacts", tags=["contacts"])


# ── Schemas ───────────────────────────────────────────────────────────────────


class CreateContactRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    phone: str | None = None
    email: str | None = None
    external_ids: dict[str, str] | None = None


class UpdateContactRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    phone: str | None = None
    email: str | None = None
    external_ids: dict[str, str] | None = None


# ── Routes ────────────────────────────────────────────────────────────────────


@router.get("")
def list_contacts(
    limit: int = Query(100),
    offset: int = Query(0),
    search: str | None = None,
) -> dict:
    """List contacts by name.

    Args:
        search: Case-insensitive substring matched against name, phone and
                email. When omitted all contacts are returned.

    Returns:
        {"contacts": [...], "total": n}
    """
    try:
        contacts, total = inbox.list_contacts(limit=limit, offset=offset, search=search)
    except InboxError as e:
        raise http_error(e) from e

    return {"contacts": [contact_to_dict(c) for c in contacts], "total": total}


@router.post("", status_code=201)
def create_contact(body: CreateContactRequest) -> dict:
    try:
        with get_store().transaction() as session:
            contact = identity.create_contact(
                session,
                name=body.name,
                phone=body.phone,
                email=body.email,
                identities=body.external_ids,
            )
    except InboxError as e:
        raise http_error(e) from e

    return contact_to_dict(contact)


@router.get("/{contact_id}")
def get_contact(contact_id: str) -> dict:
    try:
        contact = inbox.get_contact(contact_id)
    except InboxError as e:
        raise http_error(e) from e

    return contact_to_dict(contact)


@router.patch("/{contact_id}")
def update_contact(contact_id: str, body: UpdateContactRequest) -> dict:
    """Update only the fields present in the body (null clears phone/email)."""
    fields = body.model_dump(exclude_unset=True)
    changes = {k: fields[k] for k in ("phone", "email") if k in fields}

    try:
        with get_store().transaction() as session:
            contact = identity.update_contact(
                session,
                contact_id,
                name=fields.get("name"),
                identities=fields.get("external_ids"),
                **changes,
            )
    except InboxError as e:
        raise http_error(e) from e

    return contact_to_dict(contact)
