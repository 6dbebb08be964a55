"""Tests for database layer."""

import os
from unittest.mock import MagicMock, patch

import pytest

from omnichannel.infra.db import get_conn, txn


class TestGetConnPasswordFallback:
    """Tests for DB_PASSWORD fallback in get_conn(); no real DB needed."""

    def test_db_password_fallback_dsn_without_password(self):
        env = {"DATABASE_URL": "dbname=db user=u host=h port=5432", "DB_PASSWORD": "from-env"}
        with patch.dict(os.environ, env, clear=True), \
             patch("omnichannel.infra.db.psycopg2.connect", return_value=MagicMock()) as mock_connect:
            get_conn()
            mock_connect.assert_called_once_with(
                "dbname=db user=u host=h port=5432",
                password="from-env",
            )

    def test_db_password_not_used_when_dsn_has_password(self):
        env = {"DATABASE_URL": "dbname=db user=u password=from-dsn host=h", "DB_PASSWORD": "from-env"}
        with patch.dict(os.environ, env, clear=True), \
             patch("omnichannel.infra.db.psycopg2.connect", return_value=MagicMock()) as mock_connect:
            get_conn()
            mock_connect.assert_called_once_with("dbname=db user=u password=from-dsn host=h")

    def test_db_password_fallback_url_without_password(self):
        env = {"DATABASE_URL": "postgres://u@h/db", "DB_PASSWORD": "from-env"}
        with patch.dict(os.environ, env, clear=True), \
             patch("omnichannel.infra.db.psycopg2.connect", return_value=MagicMock()) as mock_connect:
            get_conn()
            mock_connect.assert_called_once_with("postgres://u@h/db", password="from-env")

    def test_db_password_not_used_when_url_has_password(self):
        env = {"DATABASE_URL": "postgres://u:p@h/db", "DB_PASSWORD": "from-env"}
        with patch.dict(os.environ, env, clear=True), \
             patch("omnichannel.infra.db.psycopg2.connect", return_value=MagicMock()) as mock_connect:
            get_conn()
            mock_connect.assert_called_once_with("postgres://u:p@h/db")

    def test_explicit_dsn_wins_over_env(self):
        env = {"DATABASE_URL": "dbname=other"}
        with patch.dict(os.environ, env, clear=True), \
             patch("omnichannel.infra.db.psycopg2.connect", return_value=MagicMock()) as mock_connect:
            get_conn("dbname=inbox")
            mock_connect.assert_called_once_with("dbname=inbox")

    def test_raises_without_database_url(self):
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(RuntimeError, match="DATABASE_URL"):
                get_conn()


class TestTxn:
    """txn() against a mocked connection."""

    def test_commits_on_success(self):
        conn = MagicMock()
        with txn(conn) as cur:
            cur.execute("SELECT 1")

        conn.commit.assert_called_once()
        conn.rollback.assert_not_called()
        conn.close.assert_not_called()

    def test_rollback_on_exception(self):
        conn = MagicMock()
        with pytest.raises(ValueError, match="rollback test"):
            with txn(conn):
                raise ValueError("rollback test")

        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()

    def test_owns_and_closes_conn_if_none(self):
        conn = MagicMock()
        with patch("omnichannel.infra.db.get_conn", return_value=conn):
            with txn():
                pass

        conn.commit.assert_called_once()
        conn.close.assert_called_once()
