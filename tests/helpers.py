"""Shared test helpers (not fixtures)."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

from omnichannel.domain.models import DeliveryRequest, DeliveryResult, InboundEvent, Platform
from omnichannel.meta.gateway import MessagingGateway

BASE_TIME = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def make_event(
    *,
    platform: Platform = Platform.WHATSAPP,
    sender_id: str = "62811",
    upstream_id: str = "wamid.1",
    content: str = "Halo",
    content_type: str = "text",
    timestamp: datetime | None = None,
    seconds: int = 0,
    profile_name: str | None = "Budi",
) -> InboundEvent:
    return InboundEvent(
        platform=platform,
        sender_id=sender_id,
        upstream_id=upstream_id,
        content=content,
        content_type=content_type,
        timestamp=timestamp or BASE_TIME + timedelta(seconds=seconds),
        profile_name=profile_name,
    )


class FakeGateway(MessagingGateway):
    """Records requests; answers with a fixed result or raises a fixed error."""

    def __init__(self, result: DeliveryResult | None = None, error: Exception | None = None):
        self.result = result or DeliveryResult(accepted=True, upstream_id="up-1")
        self.error = error
        self.requests: list[DeliveryRequest] = []
        self.profiles: dict[str, str] = {}
        self.profile_lookups: list[str] = []

    def deliver(self, request: DeliveryRequest, *, timeout: float) -> DeliveryResult:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.result

    def fetch_profile_name(self, platform: Platform, user_id: str) -> str | None:
        self.profile_lookups.append(user_id)
        return self.profiles.get(user_id)


class BlockingGateway(MessagingGateway):
    """Never answers until released."""

    def __init__(self):
        self.release = threading.Event()

    def deliver(self, request: DeliveryRequest, *, timeout: float) -> DeliveryResult:
        self.release.wait(5)
        return DeliveryResult(accepted=True, upstream_id="late")


class LogRecorder:
    """Simple recorder to capture log calls deterministically."""

    def __init__(self):
        self.calls: list[tuple[str, tuple, dict]] = []

    def _record(self, level: str, *args, **kwargs):
        self.calls.append((level, args, kwargs))

    def info(self, *args, **kwargs):
        self._record("info", *args, **kwargs)

    def warning(self, *args, **kwargs):
        self._record("warning", *args, **kwargs)

    def error(self, *args, **kwargs):
        self._record("error", *args, **kwargs)

    def exception(self, *args, **kwargs):
        self._record("exception", *args, **kwargs)

    def debug(self, *args, **kwargs):
        self._record("debug", *args, **kwargs)

    def get_all_logged_content(self) -> str:
        """Concatenate all args and kwargs from all calls into one string."""
        return " ".join(f"{args} {kwargs}" for _, args, kwargs in self.calls)

    def extra_fields(self) -> list[dict]:
        return [kwargs.get("extra", {}).get("extra_fields", {}) for _, _, kwargs in self.calls]
