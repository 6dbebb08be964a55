"""FastAPI application (ASGI app object)."""

from .factory import create_app

app = create_app()
