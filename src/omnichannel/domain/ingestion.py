"""Inbound ingestion pipeline.

Each gateway event moves through an explicit state value:

    received -> identity_resolved -> conversation_updated -> stored

with two terminal outcomes besides stored: duplicate (upstream id already
ingested, treated as success) and failed. All steps of one event run in a
single store transaction, so a failure leaves nothing behind: no contact
without its message, no message without the conversation update.

Each step is a plain function of (session, state) that returns the next
state, so partial failures can be exercised step by step.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum

from omnichannel.domain.conversations import on_inbound_message
from omnichannel.domain.errors import (
    DuplicateEvent,
    InboxError,
    InvalidArgument,
    InvalidStateTransition,
)
from omnichannel.domain.identity import resolve_contact
from omnichannel.domain.messages import append_message
from omnichannel.domain.models import (
    Contact,
    Conversation,
    DeliveryStatus,
    Direction,
    InboundEvent,
    Message,
)
from omnichannel.infra.store import InboxSession, InboxStore, get_store
from omnichannel.observability.logging import get_logger
from omnichannel.observability.redaction import hash_identifier, safe_log_context

logger = get_logger(__name__)


class IngestionStage(str, Enum):
    RECEIVED = "received"
    IDENTITY_RESOLVED = "identity_resolved"
    CONVERSATION_UPDATED = "conversation_updated"
    STORED = "stored"
    DUPLICATE = "duplicate"
    FAILED = "failed"


@dataclass(frozen=True)
class IngestionState:
    """Progress of one inbound event through the pipeline."""

    event: InboundEvent
    stage: IngestionStage
    contact: Contact | None = None
    conversation: Conversation | None = None
    message: Message | None = None
    error: str | None = None


def _require_stage(state: IngestionState, expected: IngestionStage) -> None:
    if state.stage != expected:
        raise InvalidStateTransition(
            f"ingestion step expects {expected.value}, event is {state.stage.value}"
        )


def receive(event: InboundEvent) -> IngestionState:
    """Validate a gateway event and open its pipeline state.

    Raises:
        InvalidArgument: If the upstream message id is missing.
    """
    if not event.upstream_id or not str(event.upstream_id).strip():
        raise InvalidArgument("upstream message id is required")
    return IngestionState(event=event, stage=IngestionStage.RECEIVED)


def claim_event(session: InboxSession, state: IngestionState) -> IngestionState:
    """Record the upstream id.

    Raises:
        DuplicateEvent: If the event was already ingested.
    """
    _require_stage(state, IngestionStage.RECEIVED)
    event = state.event
    if not session.record_event(event.platform, event.upstream_id):
        raise DuplicateEvent(f"{event.platform.value} event already ingested")
    return state


def resolve_identity(session: InboxSession, state: IngestionState) -> IngestionState:
    _require_stage(state, IngestionStage.RECEIVED)
    event = state.event
    contact = resolve_contact(session, event.platform, event.sender_id, event.profile_name)
    return replace(state, stage=IngestionStage.IDENTITY_RESOLVED, contact=contact)


def update_conversation(session: InboxSession, state: IngestionState) -> IngestionState:
    _require_stage(state, IngestionStage.IDENTITY_RESOLVED)
    event = state.event
    conversation = on_inbound_message(
        session, state.contact, event.platform, event.content, event.timestamp
    )
    return replace(state, stage=IngestionStage.CONVERSATION_UPDATED, conversation=conversation)


def store_message(session: InboxSession, state: IngestionState) -> IngestionState:
    _require_stage(state, IngestionStage.CONVERSATION_UPDATED)
    event = state.event
    message = append_message(
        session,
        state.conversation,
        direction=Direction.INBOUND,
        content=event.content,
        content_type=event.content_type,
        status=DeliveryStatus.RECEIVED,
        created_at=event.timestamp,
        external_id=event.upstream_id,
    )
    return replace(state, stage=IngestionStage.STORED, message=message)


def ingest_event(event: InboundEvent, *, store: InboxStore | None = None) -> IngestionState:
    """Run one inbound event through the pipeline, all or nothing.

    Args:
        event: Normalized gateway event.
        store: Store to write to (default: process-wide store).

    Returns:
        Terminal state: STORED, DUPLICATE or FAILED (with error set). Domain
        failures are reported in the state; infrastructure errors propagate
        after the transaction rolled back.
    """
    store = store or get_store()
    log_context = {
        "platform": event.platform,
        "upstream_hash": hash_identifier(str(event.upstream_id or "")),
        "sender_hash": hash_identifier(str(event.sender_id or "")),
    }

    try:
        state = receive(event)
    except InvalidArgument as exc:
        logger.warning(
            "inbound event rejected",
            extra={"extra_fields": safe_log_context(**log_context, outcome="failed", error=str(exc))},
        )
        return IngestionState(event=event, stage=IngestionStage.FAILED, error=str(exc))

    try:
        with store.transaction() as session:
            state = claim_event(session, state)
            state = resolve_identity(session, state)
            state = update_conversation(session, state)
            state = store_message(session, state)
    except DuplicateEvent:
        logger.info(
            "inbound event skipped",
            extra={"extra_fields": safe_log_context(**log_context, outcome="duplicate")},
        )
        return replace(state, stage=IngestionStage.DUPLICATE)
    except InboxError as exc:
        logger.warning(
            "inbound event failed",
            extra={
                "extra_fields": safe_log_context(
                    **log_context,
                    outcome="failed",
                    stage=state.stage,
                    error=type(exc).__name__,
                )
            },
        )
        return IngestionState(
            event=event, stage=IngestionStage.FAILED, error=f"{type(exc).__name__}: {exc}"
        )

    logger.info(
        "inbound event stored",
        extra={
            "extra_fields": safe_log_context(
                **log_context,
                outcome="stored",
                conversation_id=state.conversation.id,
                message_id=state.message.id,
                content_len=len(event.content),
            )
        },
    )
    return state
