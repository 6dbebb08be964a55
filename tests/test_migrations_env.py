"""Tests for migrations/env_helpers.py DSN-to-URL conversion."""

from __future__ import annotations

import os
import sys
from unittest.mock import patch

import pytest

# Make migrations importable without alembic context
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from migrations.env_helpers import database_url  # noqa: E402


class TestDatabaseUrl:
    def test_cloudsql_socket(self):
        url = database_url(
            "dbname=inbox user=inbox-sa password=s3cret host=/cloudsql/proj:us-central1:inst"
        )
        assert url.drivername == "postgresql+psycopg2"
        assert url.host is None
        assert url.query["host"] == "/cloudsql/proj:us-central1:inst"
        assert url.username == "inbox-sa"
        assert url.password == "s3cret"
        assert url.database == "inbox"

    def test_tcp_host(self):
        url = database_url("dbname=inbox user=admin password=pw host=localhost port=5433")
        assert url.host == "localhost"
        assert url.port == 5433
        assert url.render_as_string(hide_password=False) == (
            "postgresql+psycopg2://admin:pw@localhost:5433/inbox"
        )

    def test_special_chars_kept(self):
        url = database_url("dbname=db user=u@domain password=p@ss=word host=h port=5432")
        assert url.username == "u@domain"
        assert url.password == "p@ss=word"
        assert "u%40domain" in url.render_as_string(hide_password=False)

    def test_quoted_password_with_spaces(self):
        url = database_url("dbname=db user=u password='p@ss w0rd' host=h")
        assert url.password == "p@ss w0rd"

    def test_db_password_env_fallback(self, monkeypatch):
        monkeypatch.setenv("DB_PASSWORD", "from-env")
        assert database_url("dbname=db user=u host=h").password == "from-env"

    def test_db_password_env_not_used_when_dsn_has_password(self, monkeypatch):
        monkeypatch.setenv("DB_PASSWORD", "from-env")
        assert database_url("dbname=db user=u password=from-dsn host=h").password == "from-dsn"

    @pytest.mark.parametrize(
        "dsn", ["postgres://u:p@h/db", "postgresql://u:p@h/db", "postgresql://u:p@h:5432/db"]
    )
    def test_uri_forms(self, dsn):
        url = database_url(dsn)
        assert url.drivername == "postgresql+psycopg2"
        assert (url.username, url.password, url.host, url.database) == ("u", "p", "h", "db")

    def test_url_db_password_fallback(self, monkeypatch):
        monkeypatch.setenv("DB_PASSWORD", "secret")
        assert database_url("postgresql://u@h/db").password == "secret"

    def test_reads_database_url_env(self):
        with patch.dict(os.environ, {"DATABASE_URL": "postgresql://u:p@h/envdb"}):
            assert database_url().database == "envdb"

    def test_missing_raises(self):
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(RuntimeError, match="DATABASE_URL is required"):
                database_url()
