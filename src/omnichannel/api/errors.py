"""Domain error -> HTTP status translation for routes."""

from fastapi import HTTPException

from omnichannel.domain.errors import (
    Conflict,
    GatewayError,
    GatewayTimeout,
    InboxError,
    InvalidArgument,
    InvalidStateTransition,
    NotFound,
)

from .serializers import message_to_dict

# Checked in order: most specific first
_STATUS_BY_ERROR: list[tuple[type[InboxError], int]] = [
    (NotFound, 404),
    (InvalidArgument, 400),
    (InvalidStateTransition, 409),
    (Conflict, 409),
    (GatewayTimeout, 504),
    (GatewayError, 502),
]


def status_for(exc: InboxError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


def http_error(exc: InboxError) -> HTTPException:
    """Build the HTTPException for a domain error.

    Gateway failures carry the stored failed message so the client can
    show it (and offer a retry).
    """
    if isinstance(exc, GatewayError):
        return HTTPException(
            status_code=status_for(exc),
            detail={
                "error": type(exc).__name__,
                "reason": str(exc),
                "retryable": exc.retryable,
                "message": message_to_dict(exc.record) if exc.record is not None else None,
            },
        )
    return HTTPException(status_code=status_for(exc), detail=str(exc))
