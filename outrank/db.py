"""
outrank.db

Single source of truth for database connectivity.

Contracts this module provides:
- get_engine(): shared SQLAlchemy Engine, created on first use

Notes:
- DATABASE_URL is expected to be provided via environment (or a .env file
  loaded by the flow entry point).
- We normalize common scheme/driver variants to reduce footguns.
- The engine is built lazily so library code (and the test suite) can import
  this package without a database configured.
"""

from __future__ import annotations

import os
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine


def normalize_database_url(raw: str) -> str:
    """
    Normalize DATABASE_URL variants to something SQLAlchemy can reliably use.

    Normalizations:
    - postgres://  -> postgresql+psycopg2://
    - postgresql:// -> postgresql+psycopg2://
    - postgresql+psycopg:// -> postgresql+psycopg2://
    """
    url = (raw or "").strip()

    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://") :]

    if url.startswith("postgresql+psycopg://"):
        url = "postgresql+psycopg2://" + url[len("postgresql+psycopg://") :]

    if url.startswith("postgresql://"):
        url = "postgresql+psycopg2://" + url[len("postgresql://") :]

    return url


_engine: Optional[Engine] = None


def get_engine() -> Engine:
    """Return the shared SQLAlchemy engine."""
    global _engine
    if _engine is None:
        raw = os.environ.get("DATABASE_URL", "")
        if not raw:
            # Keep this loud and explicit.
            raise RuntimeError(
                "DATABASE_URL is not set in environment. "
                "Load your .env (or equivalent) before running flows."
            )
        _engine = create_engine(normalize_database_url(raw), pool_pre_ping=True, future=True)
    return _engine

