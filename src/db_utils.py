"""
Shared database utilities.
Single source of truth for PostgreSQL connection-string resolution and
connection setup (timeouts applied to every session).
"""

from __future__ import annotations

import os

import psycopg2


class DataAccessError(RuntimeError):
    """A query against the relational store failed after retries."""


def get_conn_str() -> str:
    """Return PostgreSQL connection string.

    Checks POSTGRES_CONNECTION_STRING first, falls back to DATABASE_URL
    (Heroku standard).  Normalises postgres:// to postgresql:// for psycopg2.
    """
    url = os.getenv("POSTGRES_CONNECTION_STRING") or os.getenv("DATABASE_URL") or ""
    url = url.strip()
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url


def connect(conn_str: str, connect_timeout: int = 10, statement_timeout_ms: int = 30_000):
    """Open a psycopg2 connection with connect and statement timeouts set."""
    if not conn_str:
        raise DataAccessError("POSTGRES_CONNECTION_STRING (or DATABASE_URL) is not configured")
    return psycopg2.connect(
        conn_str,
        connect_timeout=connect_timeout,
        options=f"-c statement_timeout={int(statement_timeout_ms)}",
    )
