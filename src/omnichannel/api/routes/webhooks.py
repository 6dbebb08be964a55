"""Meta webhook routes - WhatsApp, Instagram and Messenger.

GET  /webhooks/{platform}   → subscription verification (hub.challenge)
POST /webhooks/{platform}   → ingest every message in the payload

IMPORTANT: POST always answers 200 to Meta, even on errors. Meta retries on
non-2xx, and retries are absorbed by idempotent ingestion anyway.

Security: sender ids, names and text exist only in memory here. Logs carry
hashes, counts and outcomes.
"""

from __future__ import annotations

import os
from dataclasses import replace
from typing import Any

from fastapi import APIRouter, Header, HTTPException, Query, Request, Response
from starlette.concurrency import run_in_threadpool

from omnichannel.domain.errors import InvalidArgument
from omnichannel.domain.ingestion import IngestionStage, ingest_event
from omnichannel.domain.models import InboundEvent, Platform, parse_platform
from omnichannel.infra.store import get_store
from omnichannel.meta.gateway import get_gateway
from omnichannel.meta.webhooks import (
    InvalidPayloadError,
    SignatureVerificationError,
    normalize,
    verify_signature,
)
from omnichannel.observability.logging import get_logger
from omnichannel.observability.redaction import hash_identifier, safe_log_context

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

logger = get_logger(__name__)

# Webhook "object" field per platform
OBJECT_TYPES: dict[Platform, str] = {
    Platform.WHATSAPP: "whatsapp_business_account",
    Platform.INSTAGRAM: "instagram",
    Platform.MESSENGER: "page",
}

_OK = "ok"


def _platform_or_404(tag: str) -> Platform:
    try:
        return parse_platform(tag)
    except InvalidArgument:
        raise HTTPException(status_code=404, detail="unknown platform") from None


def _with_profile_hint(event: InboundEvent) -> InboundEvent:
    """Fill the sender name for unseen Instagram/Messenger senders.

    Their webhooks carry no name, so the gateway is asked once, when the
    contact does not exist yet.
    """
    if event.profile_name or event.platform == Platform.WHATSAPP:
        return event
    with get_store().transaction() as session:
        if session.find_contact(event.platform, event.sender_id) is not None:
            return event
    name = get_gateway().fetch_profile_name(event.platform, event.sender_id)
    return replace(event, profile_name=name) if name else event


def _ingest_all(events: list[InboundEvent]) -> dict[str, int]:
    """Ingest events one by one. Counts outcomes by terminal stage.

    An error on one event is logged and counted as failed; the rest of the
    batch is still ingested.
    """
    outcomes: dict[str, int] = {}
    for event in events:
        try:
            stage = ingest_event(_with_profile_hint(event)).stage
        except Exception:
            logger.exception(
                "meta event ingestion failed",
                extra={
                    "extra_fields": safe_log_context(
                        platform=event.platform,
                        sender_hash=hash_identifier(event.sender_id),
                    )
                },
            )
            stage = IngestionStage.FAILED
        outcomes[stage.value] = outcomes.get(stage.value, 0) + 1
    return outcomes


@router.get("/{platform}")
async def webhook_verify(
    platform: str,
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
    hub_challenge: str = Query(None, alias="hub.challenge"),
) -> Response:
    """Meta webhook verification endpoint.

    Returns:
        200 with hub.challenge if hub.verify_token matches META_VERIFY_TOKEN.
        403 otherwise.
    """
    target = _platform_or_404(platform)
    expected_token = os.environ.get("META_VERIFY_TOKEN", "")

    if expected_token and hub_mode == "subscribe" and hub_verify_token == expected_token:
        logger.info(
            "meta webhook verification successful",
            extra={"extra_fields": safe_log_context(platform=target)},
        )
        return Response(status_code=200, content=hub_challenge or "")

    logger.warning(
        "meta webhook verification failed",
        extra={
            "extra_fields": safe_log_context(
                platform=target,
                hub_mode=hub_mode or "missing",
                token_configured=bool(expected_token),
            )
        },
    )
    return Response(status_code=403, content="verification failed")


@router.post("/{platform}")
async def webhook_receive(
    platform: str,
    request: Request,
    x_hub_signature_256: str | None = Header(None, alias="X-Hub-Signature-256"),
) -> Response:
    """Receive a Meta webhook and ingest its messages.

    Returns:
        200 OK always (Meta requirement), except 404 for an unknown platform.
    """
    target = _platform_or_404(platform)
    body_bytes = await request.body()

    # Verify signature (if META_APP_SECRET configured)
    app_secret = os.environ.get("META_APP_SECRET", "")
    if app_secret:
        try:
            verify_signature(body_bytes, x_hub_signature_256, app_secret)
        except SignatureVerificationError as e:
            logger.warning(
                "meta signature verification failed",
                extra={"extra_fields": safe_log_context(platform=target, error=str(e))},
            )
            return Response(status_code=200, content=_OK)

    try:
        payload: dict[str, Any] = await request.json()
    except ValueError:
        logger.warning(
            "invalid json body",
            extra={"extra_fields": safe_log_context(platform=target)},
        )
        return Response(status_code=200, content=_OK)

    obj_type = payload.get("object") if isinstance(payload, dict) else None
    if obj_type != OBJECT_TYPES[target]:
        logger.debug(
            "webhook for another object ignored",
            extra={
                "extra_fields": safe_log_context(
                    platform=target, object_type=obj_type or "missing"
                )
            },
        )
        return Response(status_code=200, content=_OK)

    try:
        events = normalize(target, payload)
    except InvalidPayloadError as e:
        logger.warning(
            "invalid meta payload",
            extra={"extra_fields": safe_log_context(platform=target, error=str(e))},
        )
        return Response(status_code=200, content=_OK)

    if not events:
        # Status updates, reads, echoes
        return Response(status_code=200, content=_OK)

    try:
        outcomes = await run_in_threadpool(_ingest_all, events)
    except Exception:
        logger.exception(
            "meta webhook processing failed",
            extra={"extra_fields": safe_log_context(platform=target, events=len(events))},
        )
        return Response(status_code=200, content=_OK)

    logger.info(
        "meta webhook processed",
        extra={
            "extra_fields": safe_log_context(
                platform=target,
                events=len(events),
                stored=outcomes.get(IngestionStage.STORED.value, 0),
                duplicate=outcomes.get(IngestionStage.DUPLICATE.value, 0),
                failed=outcomes.get(IngestionStage.FAILED.value, 0),
            )
        },
    )
    return Response(status_code=200, content=_OK)
