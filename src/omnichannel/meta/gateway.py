"""Outbound delivery via the Meta Graph API.

WhatsApp goes through the Cloud API (POST /{phone_number_id}/messages).
Instagram and Messenger go through the Send API (POST /{account_id}/messages).

No automatic retries: a failed delivery is recorded on the message and the
caller decides whether to retry.

Security: NEVER log recipient ids or text. Only log hashes and lengths.
"""

import json
import os
import threading
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from typing import Any

from omnichannel.domain.errors import GatewayTimeout, GatewayUnavailable
from omnichannel.domain.models import DeliveryRequest, DeliveryResult, Platform
from omnichannel.observability.logging import get_logger
from omnichannel.observability.redaction import hash_identifier, safe_log_context

logger = get_logger(__name__)

# Timeout for HTTP requests (seconds)
HTTP_TIMEOUT = 5

DEFAULT_GRAPH_API_VERSION = "v19.0"

GRAPH_BASE_URL = "https://graph.facebook.com"

# Env var holding the sending account id, per platform
ACCOUNT_ENV: dict[Platform, str] = {
    Platform.WHATSAPP: "META_PHONE_NUMBER_ID",
    Platform.INSTAGRAM: "INSTAGRAM_ACCOUNT_ID",
    Platform.MESSENGER: "MESSENGER_PAGE_ID",
}


class MessagingGateway(ABC):
    """Platform delivery port."""

    @abstractmethod
    def deliver(self, request: DeliveryRequest, *, timeout: float) -> DeliveryResult:
        """Deliver one message.

        Returns:
            DeliveryResult(accepted=True, upstream_id=...) on success, or
            accepted=False with a reason when the platform refuses it.

        Raises:
            GatewayUnavailable: Transport failure, 5xx or missing config.
            GatewayTimeout: No answer within timeout.
        """

    def fetch_profile_name(self, platform: Platform, user_id: str) -> str | None:
        """Best-effort display name of a platform user. None if unknown."""
        return None


def _get_config(platform: Platform) -> dict[str, str]:
    """Get Graph API config for a platform from environment.

    Required env vars:
    - META_ACCESS_TOKEN
    - META_PHONE_NUMBER_ID / INSTAGRAM_ACCOUNT_ID / MESSENGER_PAGE_ID

    Optional:
    - META_GRAPH_API_VERSION (default: v19.0)

    Raises:
        GatewayUnavailable: If the platform is not configured.
    """
    account_env = ACCOUNT_ENV[platform]
    account_id = os.environ.get(account_env, "")
    access_token = os.environ.get("META_ACCESS_TOKEN", "")

    if not account_id or not access_token:
        raise GatewayUnavailable(
            f"Missing Meta config: META_ACCESS_TOKEN and {account_env} required"
        )

    return {
        "account_id": account_id,
        "access_token": access_token,
        "api_version": os.environ.get("META_GRAPH_API_VERSION", DEFAULT_GRAPH_API_VERSION),
    }


def _do_request(
    url: str, data: bytes | None, headers: dict[str, str], timeout: float = HTTP_TIMEOUT
) -> dict[str, Any]:
    """Execute HTTP request (POST with data, GET without). Raises on error."""
    method = "POST" if data is not None else "GET"
    req = urllib.request.Request(url, data=data, headers=headers, method=method)
    with urllib.request.urlopen(req, timeout=timeout) as resp:
        return json.loads(resp.read().decode())


def _build_payload(request: DeliveryRequest) -> dict[str, Any]:
    if request.platform == Platform.WHATSAPP:
        return {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": request.recipient_id,
            "type": "text",
            "text": {"body": request.content},
        }
    return {
        "recipient": {"id": request.recipient_id},
        "messaging_type": "RESPONSE",
        "message": {"text": request.content},
    }


def _upstream_id(platform: Platform, body: dict[str, Any]) -> str | None:
    if platform == Platform.WHATSAPP:
        messages = body.get("messages") or []
        return messages[0].get("id") if messages else None
    return body.get("message_id")


def _error_reason(exc: urllib.error.HTTPError) -> str:
    """Graph API error message from a 4xx body, or the HTTP status."""
    try:
        body = json.loads(exc.read().decode())
        message = body.get("error", {}).get("message")
    except (ValueError, AttributeError, OSError):
        message = None
    return message or f"HTTP {exc.code}"


def _is_timeout(exc: BaseException) -> bool:
    if isinstance(exc, TimeoutError):
        return True
    return isinstance(exc, urllib.error.URLError) and isinstance(exc.reason, TimeoutError)


class MetaGateway(MessagingGateway):
    """Graph API gateway for WhatsApp, Instagram and Messenger."""

    def deliver(self, request: DeliveryRequest, *, timeout: float = HTTP_TIMEOUT) -> DeliveryResult:
        config = _get_config(request.platform)

        url = f"{GRAPH_BASE_URL}/{config['api_version']}/{config['account_id']}/messages"
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {config['access_token']}",
        }
        data = json.dumps(_build_payload(request)).encode("utf-8")

        # Safe logging context - NEVER include recipient_id or content
        log_ctx = safe_log_context(
            platform=request.platform,
            to_hash=hash_identifier(request.recipient_id),
            text_len=len(request.content),
            provider="meta",
        )
        logger.info("sending outbound message via meta", extra={"extra_fields": log_ctx})

        try:
            body = _do_request(url, data, headers, timeout)
        except urllib.error.HTTPError as e:
            if 400 <= e.code < 500:
                reason = _error_reason(e)
                logger.warning(
                    "outbound message rejected by meta",
                    extra={"extra_fields": safe_log_context(**log_ctx, status_code=e.code)},
                )
                return DeliveryResult(accepted=False, reason=reason)
            logger.error(
                "outbound send via meta failed",
                extra={"extra_fields": safe_log_context(**log_ctx, status_code=e.code)},
            )
            raise GatewayUnavailable(f"Meta answered HTTP {e.code}") from e
        except (urllib.error.URLError, TimeoutError, OSError) as e:
            logger.error(
                "outbound send via meta failed",
                extra={"extra_fields": safe_log_context(**log_ctx, error_type=type(e).__name__)},
            )
            if _is_timeout(e):
                raise GatewayTimeout("Meta did not answer in time") from e
            raise GatewayUnavailable("Meta unreachable") from e

        logger.info("outbound message sent via meta", extra={"extra_fields": log_ctx})
        return DeliveryResult(accepted=True, upstream_id=_upstream_id(request.platform, body))

    def fetch_profile_name(self, platform: Platform, user_id: str) -> str | None:
        """Look up an Instagram/Messenger user's name (or username).

        Best-effort: any failure returns None and the caller falls back to
        the external id.
        """
        if platform == Platform.WHATSAPP:
            return None
        try:
            config = _get_config(platform)
        except GatewayUnavailable:
            return None

        url = f"{GRAPH_BASE_URL}/{config['api_version']}/{user_id}?fields=name,username"
        headers = {"Authorization": f"Bearer {config['access_token']}"}
        try:
            body = _do_request(url, None, headers)
        except (urllib.error.URLError, TimeoutError, OSError, ValueError) as e:
            logger.warning(
                "profile lookup via meta failed",
                extra={
                    "extra_fields": safe_log_context(
                        platform=platform,
                        user_hash=hash_identifier(user_id),
                        error_type=type(e).__name__,
                    )
                },
            )
            return None

        return body.get("name") or body.get("username") or None


_gateway: MessagingGateway | None = None
_gateway_lock = threading.Lock()


def get_gateway() -> MessagingGateway:
    """Process-wide gateway (MetaGateway unless replaced)."""
    global _gateway
    with _gateway_lock:
        if _gateway is None:
            _gateway = MetaGateway()
        return _gateway


def set_gateway(gateway: MessagingGateway | None) -> None:
    """Replace the process-wide gateway (tests, app wiring). None resets it."""
    global _gateway
    with _gateway_lock:
        _gateway = gateway
