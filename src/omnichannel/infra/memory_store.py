"""In-memory inbox store for development and tests.

One re-entrant lock is held for the whole transaction, so sessions are
serialized (single writer). Writes are journaled in an undo log and
reverted if the transaction body raises.
"""

from __future__ import annotations

import itertools
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Iterator

from omnichannel.domain.models import (
    Contact,
    Conversation,
    DeliveryStatus,
    Direction,
    InboxItem,
    Message,
    Platform,
)
from omnichannel.infra.store import InboxSession, InboxStore

_MISSING = object()


class InMemoryInboxStore(InboxStore):
    """Dict-backed store with the same uniqueness rules as the SQL schema."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.contacts: dict[str, Contact] = {}
        self.identities: dict[tuple[Platform, str], str] = {}
        self.conversations: dict[str, Conversation] = {}
        self.conversation_keys: dict[tuple[str, Platform], str] = {}
        self.messages: dict[int, Message] = {}
        self.conversation_messages: dict[str, list[int]] = {}
        self.events: dict[tuple[Platform, str], bool] = {}
        self._sequence = itertools.count(1)

    def next_message_id(self) -> int:
        return next(self._sequence)

    @contextmanager
    def transaction(self) -> Iterator[InboxSession]:
        with self._lock:
            session = _MemorySession(self)
            try:
                yield session
            except BaseException:
                session.rollback()
                raise


class _MemorySession(InboxSession):
    def __init__(self, store: InMemoryInboxStore) -> None:
        self._store = store
        self._undo: list[Callable[[], None]] = []

    def rollback(self) -> None:
        while self._undo:
            self._undo.pop()()

    def _put(self, mapping: dict, key: Any, value: Any) -> None:
        previous = mapping.get(key, _MISSING)
        if previous is _MISSING:
            self._undo.append(lambda: mapping.pop(key, None))
        else:
            self._undo.append(lambda: mapping.__setitem__(key, previous))
        mapping[key] = value

    # ── contacts ──────────────────────────────────────────────────────────

    def get_contact(self, contact_id: str) -> Contact | None:
        return self._store.contacts.get(contact_id)

    def find_contact(self, platform: Platform, external_id: str) -> Contact | None:
        contact_id = self._store.identities.get((platform, external_id))
        if contact_id is None:
            return None
        return self._store.contacts.get(contact_id)

    def insert_contact(self, contact: Contact) -> bool:
        if contact.id in self._store.contacts:
            return False
        for platform, external_id in contact.external_ids.items():
            if (platform, external_id) in self._store.identities:
                return False
        self._put(self._store.contacts, contact.id, replace(contact, external_ids=dict(contact.external_ids)))
        for platform, external_id in contact.external_ids.items():
            self._put(self._store.identities, (platform, external_id), contact.id)
        return True

    def update_contact(self, contact: Contact) -> None:
        current = self._store.contacts[contact.id]
        self._put(
            self._store.contacts,
            contact.id,
            replace(
                current,
                name=contact.name,
                phone=contact.phone,
                email=contact.email,
                updated_at=contact.updated_at,
            ),
        )

    def add_identity(self, contact_id: str, platform: Platform, external_id: str) -> bool:
        current = self._store.contacts[contact_id]
        if (platform, external_id) in self._store.identities or platform in current.external_ids:
            return False
        slots = dict(current.external_ids)
        slots[platform] = external_id
        self._put(self._store.contacts, contact_id, replace(current, external_ids=slots))
        self._put(self._store.identities, (platform, external_id), contact_id)
        return True

    def list_contacts(
        self, *, limit: int, offset: int, search: str | None = None
    ) -> tuple[list[Contact], int]:
        contacts = list(self._store.contacts.values())
        if search:
            needle = search.casefold()
            contacts = [
                c
                for c in contacts
                if any(needle in (field or "").casefold() for field in (c.name, c.phone, c.email))
            ]
        contacts.sort(key=lambda c: (c.name.casefold(), c.id))
        return contacts[offset : offset + limit], len(contacts)

    # ── conversations ─────────────────────────────────────────────────────

    def get_conversation(
        self, conversation_id: str, *, for_update: bool = False
    ) -> Conversation | None:
        return self._store.conversations.get(conversation_id)

    def find_conversation(
        self, contact_id: str, platform: Platform, *, for_update: bool = False
    ) -> Conversation | None:
        conversation_id = self._store.conversation_keys.get((contact_id, platform))
        if conversation_id is None:
            return None
        return self._store.conversations.get(conversation_id)

    def insert_conversation(self, conversation: Conversation) -> bool:
        key = (conversation.contact_id, conversation.platform)
        if key in self._store.conversation_keys or conversation.id in self._store.conversations:
            return False
        self._put(self._store.conversations, conversation.id, conversation)
        self._put(self._store.conversation_keys, key, conversation.id)
        self._put(self._store.conversation_messages, conversation.id, [])
        return True

    def save_conversation(self, conversation: Conversation) -> None:
        current = self._store.conversations[conversation.id]
        self._put(
            self._store.conversations,
            conversation.id,
            replace(
                current,
                last_message_text=conversation.last_message_text,
                last_message_at=conversation.last_message_at,
                unread_count=conversation.unread_count,
            ),
        )

    def list_conversations(self, *, limit: int, offset: int) -> tuple[list[InboxItem], int]:
        conversations = sorted(self._store.conversations.values(), key=lambda c: c.id)
        # Stable sort: id order survives within equal timestamps
        conversations.sort(
            key=lambda c: c.last_message_at.timestamp() if c.last_message_at else float("-inf"),
            reverse=True,
        )
        page = conversations[offset : offset + limit]
        items = [InboxItem(conversation=c, contact=self._store.contacts[c.contact_id]) for c in page]
        return items, len(conversations)

    # ── messages ──────────────────────────────────────────────────────────

    def insert_message(
        self,
        *,
        conversation_id: str,
        direction: Direction,
        content: str,
        content_type: str,
        status: DeliveryStatus,
        created_at: datetime,
        external_id: str | None = None,
    ) -> Message:
        message = Message(
            id=self._store.next_message_id(),
            conversation_id=conversation_id,
            direction=direction,
            content=content,
            content_type=content_type,
            status=status,
            created_at=created_at,
            external_id=external_id,
        )
        self._put(self._store.messages, message.id, message)
        ids = self._store.conversation_messages.setdefault(conversation_id, [])
        ids.append(message.id)
        self._undo.append(lambda: ids.remove(message.id))
        return message

    def get_message(self, message_id: int, *, for_update: bool = False) -> Message | None:
        return self._store.messages.get(message_id)

    def list_messages(
        self, conversation_id: str, *, before: Message | None, limit: int
    ) -> list[Message]:
        ids = self._store.conversation_messages.get(conversation_id, [])
        messages = sorted(
            (self._store.messages[i] for i in ids),
            key=lambda m: (m.created_at, m.id),
        )
        if before is not None:
            cursor = (before.created_at, before.id)
            messages = [m for m in messages if (m.created_at, m.id) < cursor]
        return messages[-limit:]

    def set_message_status(
        self, message_id: int, status: DeliveryStatus, *, external_id: str | None = None
    ) -> None:
        current = self._store.messages[message_id]
        self._put(
            self._store.messages,
            message_id,
            replace(current, status=status, external_id=external_id or current.external_id),
        )

    # ── idempotency ───────────────────────────────────────────────────────

    def record_event(self, platform: Platform, upstream_id: str) -> bool:
        key = (platform, upstream_id)
        if key in self._store.events:
            return False
        self._put(self._store.events, key, True)
        return True
