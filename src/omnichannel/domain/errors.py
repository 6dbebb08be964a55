"""Inbox error taxonomy.

Routes translate these into HTTP status codes (see omnichannel.api.errors).
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from omnichannel.domain.models import Message


class InboxError(Exception):
    """Base class for all inbox domain errors."""

    pass


class NotFound(InboxError):
    """Unknown contact, conversation or message id."""

    pass


class InvalidArgument(InboxError):
    """Malformed input: bad platform tag, empty id, bad pagination, target mismatch."""

    pass


class InvalidStateTransition(InboxError):
    """Illegal delivery-status change. The stored record is left untouched."""

    pass


class DuplicateEvent(InboxError):
    """Upstream event already ingested. Treated as success by the pipeline."""

    pass


class Conflict(InboxError):
    """Unique key already owned by another record."""

    pass


class GatewayError(InboxError):
    """Downstream delivery failure. The message is recorded as failed.

    record carries the failed Message once dispatch has persisted it.
    """

    retryable = True

    def __init__(self, reason: str = "", *, record: "Message | None" = None):
        super().__init__(reason)
        self.record = record


class GatewayUnavailable(GatewayError):
    """Gateway unreachable, misconfigured or answering 5xx."""

    pass


class GatewayTimeout(GatewayError):
    """Gateway did not answer within the delivery timeout."""

    pass


class GatewayRejected(GatewayError):
    """Platform refused the message (e.g. recipient outside the messaging window)."""

    retryable = False
