"""FastAPI application factory."""

from fastapi import FastAPI, Request, Response

from omnichannel.observability.logging import (
    CORRELATION_ID_HEADER,
    generate_correlation_id,
    reset_correlation_id,
    set_correlation_id,
)

from .routes import contacts, conversations, messages, webhooks


def create_app() -> FastAPI:
    """Create the inbox API with correlation id middleware and all routes."""
    app = FastAPI(
        title="Omnichannel Inbox",
        docs_url=None,
        redoc_url=None,
    )

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next) -> Response:
        cid = request.headers.get(CORRELATION_ID_HEADER) or generate_correlation_id()
        token = set_correlation_id(cid)
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = cid
            return response
        finally:
            reset_correlation_id(token)

    @app.get("/health")
    def health() -> dict:
        """Health check endpoint."""
        return {"status": "ok"}

    app.include_router(conversations.router)
    app.include_router(messages.router)
    app.include_router(contacts.router)
    app.include_router(webhooks.router)

    return app
