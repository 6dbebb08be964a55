"""Postgres inbox store using raw SQL with psycopg2 (no ORM).

Schema: migrations/sql/001_inbox_schema.sql.

Concurrency:
- find-or-create goes through INSERT ... ON CONFLICT DO NOTHING; a zero
  rowcount means a concurrent transaction won the key and the caller
  re-reads it.
- for_update=True appends FOR UPDATE so updates to one conversation
  (preview, unread counter, message sequence) are serialized.
"""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator

from psycopg2.extensions import cursor as PgCursor

from omnichannel.domain.models import (
    Contact,
    Conversation,
    DeliveryStatus,
    Direction,
    InboxItem,
    Message,
    Platform,
)
from omnichannel.infra.db import get_conn, txn
from omnichannel.infra.store import InboxSession, InboxStore

_CONTACT_COLUMNS = """
    c.id, c.name, c.phone, c.email, c.created_at, c.updated_at,
    COALESCE(
        (SELECT json_object_agg(i.platform, i.external_id)
         FROM contact_identities i WHERE i.contact_id = c.id),
        '{}'::json
    )
"""

_CONVERSATION_COLUMNS = """
    cv.id, cv.contact_id, cv.platform, cv.created_at,
    cv.last_message_text, cv.last_message_at, cv.unread_count
"""

_MESSAGE_COLUMNS = """
    id, conversation_id, direction, content, content_type,
    status, created_at, external_id
"""


def _is_uuid(value: str) -> bool:
    """Ids come from URLs; anything that is not a UUID cannot match a row."""
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _like_pattern(search: str) -> str:
    escaped = search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _row_to_contact(row: tuple[Any, ...]) -> Contact:
    slots = row[6] or {}
    return Contact(
        id=str(row[0]),
        name=row[1],
        phone=row[2],
        email=row[3],
        created_at=row[4],
        updated_at=row[5],
        external_ids={Platform(p): ext for p, ext in slots.items()},
    )


def _row_to_conversation(row: tuple[Any, ...]) -> Conversation:
    return Conversation(
        id=str(row[0]),
        contact_id=str(row[1]),
        platform=Platform(row[2]),
        created_at=row[3],
        last_message_text=row[4] or "",
        last_message_at=row[5],
        unread_count=row[6],
    )


def _row_to_message(row: tuple[Any, ...]) -> Message:
    return Message(
        id=row[0],
        conversation_id=str(row[1]),
        direction=Direction(row[2]),
        content=row[3],
        content_type=row[4],
        status=DeliveryStatus(row[5]),
        created_at=row[6],
        external_id=row[7],
    )


class PostgresInboxStore(InboxStore):
    """One connection per transaction, closed on exit."""

    def __init__(self, dsn: str | None = None) -> None:
        self._dsn = dsn

    @contextmanager
    def transaction(self) -> Iterator[InboxSession]:
        conn = get_conn(self._dsn)
        try:
            with txn(conn) as cur:
                yield PostgresSession(cur)
        finally:
            conn.close()


class PostgresSession(InboxSession):
    """InboxSession over a psycopg2 cursor (must be inside a transaction)."""

    def __init__(self, cur: PgCursor) -> None:
        self.cur = cur

    # ── contacts ──────────────────────────────────────────────────────────

    def get_contact(self, contact_id: str) -> Contact | None:
        if not _is_uuid(contact_id):
            return None
        self.cur.execute(
            f"SELECT {_CONTACT_COLUMNS} FROM contacts c WHERE c.id = %s",  # noqa: S608
            (contact_id,),
        )
        row = self.cur.fetchone()
        return _row_to_contact(row) if row else None

    def find_contact(self, platform: Platform, external_id: str) -> Contact | None:
        self.cur.execute(
            f"""
            SELECT {_CONTACT_COLUMNS}
            FROM contact_identities ci
            JOIN contacts c ON c.id = ci.contact_id
            WHERE ci.platform = %s AND ci.external_id = %s
            """,  # noqa: S608
            (platform.value, external_id),
        )
        row = self.cur.fetchone()
        return _row_to_contact(row) if row else None

    def insert_contact(self, contact: Contact) -> bool:
        # Savepoint: a taken identity slot must undo the contact row only,
        # not the caller's whole transaction.
        self.cur.execute("SAVEPOINT insert_contact")
        self.cur.execute(
            """
            INSERT INTO contacts (id, name, phone, email, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (id) DO NOTHING
            """,
            (contact.id, contact.name, contact.phone, contact.email,
             contact.created_at, contact.updated_at),
        )
        inserted = self.cur.rowcount == 1
        if inserted:
            for platform, external_id in contact.external_ids.items():
                if not self.add_identity(contact.id, platform, external_id):
                    inserted = False
                    break

        if not inserted:
            self.cur.execute("ROLLBACK TO SAVEPOINT insert_contact")
        self.cur.execute("RELEASE SAVEPOINT insert_contact")
        return inserted

    def update_contact(self, contact: Contact) -> None:
        self.cur.execute(
            """
            UPDATE contacts
            SET name = %s, phone = %s, email = %s, updated_at = %s
            WHERE id = %s
            """,
            (contact.name, contact.phone, contact.email, contact.updated_at, contact.id),
        )

    def add_identity(self, contact_id: str, platform: Platform, external_id: str) -> bool:
        # Conflicts on either (platform, external_id) or (contact_id, platform)
        self.cur.execute(
            """
            INSERT INTO contact_identities (platform, external_id, contact_id)
            VALUES (%s, %s, %s)
            ON CONFLICT DO NOTHING
            """,
            (platform.value, external_id, contact_id),
        )
        return self.cur.rowcount == 1

    def list_contacts(
        self, *, limit: int, offset: int, search: str | None = None
    ) -> tuple[list[Contact], int]:
        pattern = _like_pattern(search) if search else None
        where = """
            WHERE (%s::text IS NULL
                   OR c.name ILIKE %s
                   OR c.phone ILIKE %s
                   OR c.email ILIKE %s)
        """
        params = (pattern, pattern, pattern, pattern)

        self.cur.execute(f"SELECT count(*) FROM contacts c {where}", params)  # noqa: S608
        total = self.cur.fetchone()[0]

        self.cur.execute(
            f"""
            SELECT {_CONTACT_COLUMNS}
            FROM contacts c
            {where}
            ORDER BY lower(c.name), c.id
            LIMIT %s OFFSET %s
            """,  # noqa: S608
            (*params, limit, offset),
        )
        return [_row_to_contact(r) for r in self.cur.fetchall()], total

    # ── conversations ─────────────────────────────────────────────────────

    def get_conversation(
        self, conversation_id: str, *, for_update: bool = False
    ) -> Conversation | None:
        if not _is_uuid(conversation_id):
            return None
        suffix = " FOR UPDATE" if for_update else ""
        self.cur.execute(
            f"SELECT {_CONVERSATION_COLUMNS} FROM conversations cv WHERE cv.id = %s{suffix}",  # noqa: S608
            (conversation_id,),
        )
        row = self.cur.fetchone()
        return _row_to_conversation(row) if row else None

    def find_conversation(
        self, contact_id: str, platform: Platform, *, for_update: bool = False
    ) -> Conversation | None:
        suffix = " FOR UPDATE" if for_update else ""
        self.cur.execute(
            f"""
            SELECT {_CONVERSATION_COLUMNS}
            FROM conversations cv
            WHERE cv.contact_id = %s AND cv.platform = %s{suffix}
            """,  # noqa: S608
            (contact_id, platform.value),
        )
        row = self.cur.fetchone()
        return _row_to_conversation(row) if row else None

    def insert_conversation(self, conversation: Conversation) -> bool:
        self.cur.execute(
            """
            INSERT INTO conversations (
                id, contact_id, platform, last_message_text,
                last_message_at, unread_count, created_at, updated_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (contact_id, platform) DO NOTHING
            """,
            (
                conversation.id,
                conversation.contact_id,
                conversation.platform.value,
                conversation.last_message_text,
                conversation.last_message_at,
                conversation.unread_count,
                conversation.created_at,
                conversation.created_at,
            ),
        )
        return self.cur.rowcount == 1

    def save_conversation(self, conversation: Conversation) -> None:
        self.cur.execute(
            """
            UPDATE conversations
            SET last_message_text = %s,
                last_message_at   = %s,
                unread_count      = %s,
                updated_at        = now()
            WHERE id = %s
            """,
            (
                conversation.last_message_text,
                conversation.last_message_at,
                conversation.unread_count,
                conversation.id,
            ),
        )

    def list_conversations(self, *, limit: int, offset: int) -> tuple[list[InboxItem], int]:
        self.cur.execute("SELECT count(*) FROM conversations")
        total = self.cur.fetchone()[0]

        self.cur.execute(
            f"""
            SELECT {_CONVERSATION_COLUMNS}, {_CONTACT_COLUMNS}
            FROM conversations cv
            JOIN contacts c ON c.id = cv.contact_id
            ORDER BY cv.last_message_at DESC NULLS LAST, cv.id
            LIMIT %s OFFSET %s
            """,  # noqa: S608
            (limit, offset),
        )
        items = [
            InboxItem(
                conversation=_row_to_conversation(row[:7]),
                contact=_row_to_contact(row[7:]),
            )
            for row in self.cur.fetchall()
        ]
        return items, total

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
        self.cur.execute(
            """
            INSERT INTO messages (
                conversation_id, direction, content, content_type,
                status, external_id, created_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            (conversation_id, direction.value, content, content_type,
             status.value, external_id, created_at),
        )
        message_id = self.cur.fetchone()[0]
        return Message(
            id=message_id,
            conversation_id=conversation_id,
            direction=direction,
            content=content,
            content_type=content_type,
            status=status,
            created_at=created_at,
            external_id=external_id,
        )

    def get_message(self, message_id: int, *, for_update: bool = False) -> Message | None:
        suffix = " FOR UPDATE" if for_update else ""
        self.cur.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = %s{suffix}",  # noqa: S608
            (message_id,),
        )
        row = self.cur.fetchone()
        return _row_to_message(row) if row else None

    def list_messages(
        self, conversation_id: str, *, before: Message | None, limit: int
    ) -> list[Message]:
        conditions = ["conversation_id = %s"]
        params: list[Any] = [conversation_id]
        if before is not None:
            conditions.append("(created_at, id) < (%s, %s)")
            params.extend([before.created_at, before.id])
        params.append(limit)

        # Newest page first, then flipped to oldest-first
        self.cur.execute(
            f"""
            SELECT {_MESSAGE_COLUMNS} FROM (
                SELECT {_MESSAGE_COLUMNS}
                FROM messages
                WHERE {" AND ".join(conditions)}
                ORDER BY created_at DESC, id DESC
                LIMIT %s
            ) recent
            ORDER BY created_at, id
            """,  # noqa: S608
            params,
        )
        return [_row_to_message(r) for r in self.cur.fetchall()]

    def set_message_status(
        self, message_id: int, status: DeliveryStatus, *, external_id: str | None = None
    ) -> None:
        self.cur.execute(
            """
            UPDATE messages
            SET status      = %s,
                external_id = COALESCE(%s, external_id),
                updated_at  = now()
            WHERE id = %s
            """,
            (status.value, external_id, message_id),
        )

    # ── idempotency ───────────────────────────────────────────────────────

    def record_event(self, platform: Platform, upstream_id: str) -> bool:
        self.cur.execute(
            """
            INSERT INTO processed_events (platform, upstream_id)
            VALUES (%s, %s)
            ON CONFLICT (platform, upstream_id) DO NOTHING
            """,
            (platform.value, upstream_id),
        )
        return self.cur.rowcount == 1
