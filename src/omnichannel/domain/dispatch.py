"""Outbound dispatch - user-composed message to platform delivery.

Two transactions around the gateway call:
1. resolve target, append the message as PENDING, update the preview
   (committed before the gateway is called, so the attempt is never lost)
2. record the outcome: SENT (with the upstream id) or FAILED

The gateway call is bounded by GATEWAY_TIMEOUT_SECONDS. A caller that
abandons a send leaves the PENDING message in place.
"""

from __future__ import annotations

import os
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout

from omnichannel.domain.conversations import get_or_create_conversation, on_outbound_message
from omnichannel.domain.errors import (
    GatewayError,
    GatewayRejected,
    GatewayTimeout,
    GatewayUnavailable,
    InvalidArgument,
    InvalidStateTransition,
    NotFound,
)
from omnichannel.domain.identity import resolve_contact
from omnichannel.domain.messages import append_message, get_message, update_status
from omnichannel.domain.models import (
    Contact,
    Conversation,
    DeliveryRequest,
    DeliveryResult,
    DeliveryStatus,
    Direction,
    Message,
    Platform,
    parse_platform,
)
from omnichannel.infra.store import InboxSession, InboxStore, get_store
from omnichannel.infra.time import utc_now
from omnichannel.meta.gateway import MessagingGateway, get_gateway
from omnichannel.observability.logging import get_logger
from omnichannel.observability.redaction import hash_identifier, safe_log_context

logger = get_logger(__name__)

DEFAULT_GATEWAY_TIMEOUT = 10.0

# Media is not handled: only text goes out
SUPPORTED_CONTENT_TYPES = {"text"}


def gateway_timeout() -> float:
    """Gateway call bound in seconds (GATEWAY_TIMEOUT_SECONDS, default 10)."""
    raw = os.environ.get("GATEWAY_TIMEOUT_SECONDS", "")
    try:
        value = float(raw) if raw else DEFAULT_GATEWAY_TIMEOUT
    except ValueError:
        return DEFAULT_GATEWAY_TIMEOUT
    return value if value > 0 else DEFAULT_GATEWAY_TIMEOUT


def _resolve_target(
    session: InboxSession,
    conversation_id: str | None,
    platform: Platform | str | None,
    recipient_id: str | None,
) -> tuple[Contact, Conversation]:
    """Contact and (locked) conversation the message goes to."""
    if conversation_id:
        conversation = session.get_conversation(conversation_id, for_update=True)
        if conversation is None:
            raise NotFound(f"conversation {conversation_id} not found")
        contact = session.get_contact(conversation.contact_id)
        if contact is None:
            raise NotFound(f"contact {conversation.contact_id} not found")

        if platform is not None and parse_platform(platform) != conversation.platform:
            raise InvalidArgument("platform does not match the conversation")
        if recipient_id and recipient_id != contact.external_id_for(conversation.platform):
            raise InvalidArgument("recipient does not match the conversation")
        return contact, conversation

    if platform is None:
        raise InvalidArgument("platform is required without conversation_id")
    if not recipient_id:
        raise InvalidArgument("recipient_id is required without conversation_id")

    contact = resolve_contact(session, platform, recipient_id)
    conversation = get_or_create_conversation(session, contact, platform)
    return contact, conversation


def _call_gateway(
    gateway: MessagingGateway, request: DeliveryRequest, timeout: float
) -> DeliveryResult:
    """Run gateway.deliver in a worker thread, bounded by timeout.

    Raises:
        GatewayTimeout: If the call did not finish in time.
        GatewayUnavailable: If the gateway failed unexpectedly.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="gateway")
    try:
        future = executor.submit(gateway.deliver, request, timeout=timeout)
        return future.result(timeout=timeout)
    except FutureTimeout as exc:
        raise GatewayTimeout(f"gateway did not answer within {timeout}s") from exc
    except GatewayError:
        raise
    except Exception as exc:
        raise GatewayUnavailable(f"gateway failed: {type(exc).__name__}") from exc
    finally:
        # A stuck call keeps its thread; the request does not wait for it
        executor.shutdown(wait=False)


def _record_outcome(
    store: InboxStore,
    message: Message,
    status: DeliveryStatus,
    external_id: str | None = None,
) -> Message:
    try:
        with store.transaction() as session:
            return update_status(session, message.id, status, external_id=external_id)
    except InvalidStateTransition:
        # Already resolved elsewhere; report what is stored
        with store.transaction() as session:
            return get_message(session, message.id)


def send_message(
    *,
    content: str,
    content_type: str = "text",
    conversation_id: str | None = None,
    platform: Platform | str | None = None,
    recipient_id: str | None = None,
    store: InboxStore | None = None,
    gateway: MessagingGateway | None = None,
    timeout: float | None = None,
) -> Message:
    """Send a message to a contact.

    With conversation_id the platform and recipient come from the
    conversation (explicit values must match). Without it the recipient is
    resolved to a contact and the conversation is found or created.

    Args:
        content: Message text (non-empty).
        content_type: Content type (only "text" is delivered).
        conversation_id: Optional target conversation.
        platform: Target platform (required without conversation_id).
        recipient_id: Recipient external id (required without conversation_id).
        store: Store (default: process-wide store).
        gateway: Gateway (default: process-wide gateway).
        timeout: Gateway bound in seconds (default: GATEWAY_TIMEOUT_SECONDS).

    Returns:
        The message with status SENT.

    Raises:
        InvalidArgument: On empty content, unsupported type or target mismatch.
        NotFound: If conversation_id is unknown.
        GatewayUnavailable, GatewayTimeout, GatewayRejected: Delivery failed.
            The message is stored as FAILED and attached as `record`.
    """
    if not content or not content.strip():
        raise InvalidArgument("content is required")
    content_type = content_type or "text"
    if content_type not in SUPPORTED_CONTENT_TYPES:
        raise InvalidArgument(f"unsupported content type: {content_type!r}")

    store = store or get_store()
    gateway = gateway or get_gateway()
    timeout = timeout or gateway_timeout()

    with store.transaction() as session:
        contact, conversation = _resolve_target(session, conversation_id, platform, recipient_id)
        now = utc_now()
        message = append_message(
            session,
            conversation,
            direction=Direction.OUTBOUND,
            content=content,
            content_type=content_type,
            status=DeliveryStatus.PENDING,
            created_at=now,
        )
        on_outbound_message(session, contact, conversation.platform, content, now)

    recipient = contact.external_id_for(conversation.platform)
    log_ctx = safe_log_context(
        conversation_id=conversation.id,
        message_id=message.id,
        platform=conversation.platform,
        to_hash=hash_identifier(recipient or ""),
        text_len=len(content),
    )

    try:
        if recipient is None:
            raise GatewayRejected("contact has no id on this platform")
        result = _call_gateway(
            gateway,
            DeliveryRequest(
                platform=conversation.platform,
                recipient_id=recipient,
                content=content,
                content_type=content_type,
            ),
            timeout,
        )
        if not result.accepted:
            raise GatewayRejected(result.reason or "rejected by platform")
    except GatewayError as exc:
        failed = _record_outcome(store, message, DeliveryStatus.FAILED)
        logger.warning(
            "outbound message failed",
            extra={
                "extra_fields": safe_log_context(
                    **log_ctx, outcome="failed", error=type(exc).__name__
                )
            },
        )
        exc.record = failed
        raise

    sent = _record_outcome(store, message, DeliveryStatus.SENT, result.upstream_id)
    logger.info(
        "outbound message sent",
        extra={"extra_fields": safe_log_context(**log_ctx, outcome="sent")},
    )
    return sent


def retry_message(
    message_id: int,
    *,
    store: InboxStore | None = None,
    gateway: MessagingGateway | None = None,
    timeout: float | None = None,
) -> Message:
    """Re-send a failed outbound message as a new message.

    The failed message stays as it is.

    Raises:
        NotFound: If the message does not exist.
        InvalidStateTransition: If it is not a failed outbound message.
        GatewayError: As send_message.
    """
    store = store or get_store()
    with store.transaction() as session:
        original = get_message(session, message_id)

    if original.direction != Direction.OUTBOUND or original.status != DeliveryStatus.FAILED:
        raise InvalidStateTransition("only failed outbound messages can be retried")

    logger.info(
        "retrying outbound message",
        extra={
            "extra_fields": safe_log_context(
                message_id=original.id, conversation_id=original.conversation_id
            )
        },
    )
    return send_message(
        content=original.content,
        content_type=original.content_type,
        conversation_id=original.conversation_id,
        store=store,
        gateway=gateway,
        timeout=timeout,
    )
