"""Inbox storage port.

Domain functions receive an InboxSession (like a cursor inside txn()) and
never open transactions themselves; orchestrators do:

    with get_store().transaction() as session:
        contact = resolve_contact(session, ...)

Backends:
- InMemoryInboxStore: single-process dev/test persistence
- PostgresInboxStore: production persistence (psycopg2)

Selection via INBOX_STORE ("memory" | "postgres"). Defaults to postgres
when DATABASE_URL is set, memory otherwise.
"""

from __future__ import annotations

import os
import threading
from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from datetime import datetime

from omnichannel.domain.models import (
    Contact,
    Conversation,
    DeliveryStatus,
    Direction,
    InboxItem,
    Message,
    Platform,
)


class InboxSession(ABC):
    """Unit of work over contacts, conversations, messages and event receipts.

    insert_* primitives are "insert if absent": they report a taken unique
    key by returning False instead of raising, so callers can go back to
    the find path.
    """

    # ── contacts ──────────────────────────────────────────────────────────

    @abstractmethod
    def get_contact(self, contact_id: str) -> Contact | None:
        pass

    @abstractmethod
    def find_contact(self, platform: Platform, external_id: str) -> Contact | None:
        pass

    @abstractmethod
    def insert_contact(self, contact: Contact) -> bool:
        """Insert contact and its identity slots. False (nothing written) if a slot is taken."""

    @abstractmethod
    def update_contact(self, contact: Contact) -> None:
        """Persist name, phone, email and updated_at."""

    @abstractmethod
    def add_identity(self, contact_id: str, platform: Platform, external_id: str) -> bool:
        """Attach a platform slot to a contact. False if the slot is taken."""

    @abstractmethod
    def list_contacts(
        self, *, limit: int, offset: int, search: str | None = None
    ) -> tuple[list[Contact], int]:
        pass

    # ── conversations ─────────────────────────────────────────────────────

    @abstractmethod
    def get_conversation(
        self, conversation_id: str, *, for_update: bool = False
    ) -> Conversation | None:
        pass

    @abstractmethod
    def find_conversation(
        self, contact_id: str, platform: Platform, *, for_update: bool = False
    ) -> Conversation | None:
        pass

    @abstractmethod
    def insert_conversation(self, conversation: Conversation) -> bool:
        """Insert conversation. False if (contact_id, platform) already exists."""

    @abstractmethod
    def save_conversation(self, conversation: Conversation) -> None:
        """Persist last-message preview/time and unread counter."""

    @abstractmethod
    def list_conversations(self, *, limit: int, offset: int) -> tuple[list[InboxItem], int]:
        """Inbox order: last_message_at desc (never-messaged last), then id."""

    # ── messages ──────────────────────────────────────────────────────────

    @abstractmethod
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
        """Append a message, assigning the next sequence id."""

    @abstractmethod
    def get_message(self, message_id: int, *, for_update: bool = False) -> Message | None:
        pass

    @abstractmethod
    def list_messages(
        self, conversation_id: str, *, before: Message | None, limit: int
    ) -> list[Message]:
        """Newest `limit` messages strictly before `before`, oldest-first."""

    @abstractmethod
    def set_message_status(
        self, message_id: int, status: DeliveryStatus, *, external_id: str | None = None
    ) -> None:
        pass

    # ── idempotency ───────────────────────────────────────────────────────

    @abstractmethod
    def record_event(self, platform: Platform, upstream_id: str) -> bool:
        """Record an upstream message id. False if it was already recorded."""


class InboxStore(ABC):
    """Factory of transactional sessions."""

    @abstractmethod
    def transaction(self) -> AbstractContextManager[InboxSession]:
        """Open a session. Commits on normal exit, rolls back on exception."""


_store: InboxStore | None = None
_store_lock = threading.Lock()


def _create_store() -> InboxStore:
    backend = os.environ.get("INBOX_STORE", "").strip().lower()
    if not backend:
        backend = "postgres" if os.environ.get("DATABASE_URL") else "memory"

    if backend == "postgres":
        from omnichannel.infra.postgres_store import PostgresInboxStore

        return PostgresInboxStore()
    if backend == "memory":
        from omnichannel.infra.memory_store import InMemoryInboxStore

        return InMemoryInboxStore()
    raise RuntimeError(f"Unknown INBOX_STORE backend: {backend!r}")


def get_store() -> InboxStore:
    """Process-wide store, created on first use."""
    global _store
    with _store_lock:
        if _store is None:
            _store = _create_store()
        return _store


def set_store(store: InboxStore) -> None:
    """Replace the process-wide store (tests, app wiring)."""
    global _store
    with _store_lock:
        _store = store


def reset_store() -> None:
    global _store
    with _store_lock:
        _store = None
