"""Database URL helpers for Alembic migrations.

Kept apart from env.py so they can be tested without alembic.context.
"""

from __future__ import annotations

import os

from psycopg2.extensions import parse_dsn
from sqlalchemy.engine import URL


def database_url(dsn: str | None = None) -> URL:
    """SQLAlchemy URL for DATABASE_URL (URI or libpq key=value form).

    DB_PASSWORD fills in a missing password. A host that is a directory
    (unix socket) goes to the query string.

    Raises:
        RuntimeError: If no DSN is given and DATABASE_URL is not set.
    """
    dsn = dsn or os.environ.get("DATABASE_URL")
    if not dsn:
        raise RuntimeError("DATABASE_URL is required to run migrations")
    if dsn.startswith("postgres://"):
        dsn = "postgresql://" + dsn[len("postgres://"):]

    params = parse_dsn(dsn)
    password = params.get("password") or os.environ.get("DB_PASSWORD") or None
    host = params.get("host")
    port = params.get("port")

    query = {}
    if host and host.startswith("/"):
        query["host"] = host
        host = None

    return URL.create(
        drivername="postgresql+psycopg2",
        username=params.get("user"),
        password=password,
        host=host,
        port=int(port) if port else None,
        database=params.get("dbname"),
        query=query,
    )
