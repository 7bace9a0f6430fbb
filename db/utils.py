"""Shared helpers for working with the games database."""

from __future__ import annotations

import logging
import os
import sqlite3
from pathlib import Path
from threading import Lock
from typing import Any
from urllib.parse import unquote, urlparse

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from db.models import Base

logger = logging.getLogger(__name__)

db_lock = Lock()
"""Process-wide lock serializing reconcile-and-commit work on the games database."""


class DatabaseEngine:
    """Engine wrapper handing out SQLAlchemy sessions."""

    def __init__(self, engine: Engine):
        self._engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    @property
    def engine(self) -> Engine:
        """Return the underlying SQLAlchemy :class:`~sqlalchemy.engine.Engine`."""

        return self._engine

    def new_session(self) -> Session:
        """Return a new :class:`~sqlalchemy.orm.Session`; the caller closes it."""

        return self._session_factory()

    def create_schema(self) -> None:
        """Create every table that does not exist yet."""

        Base.metadata.create_all(self._engine)

    def dispose(self) -> None:
        """Dispose the underlying engine's connection pool."""

        self._engine.dispose()


def _configure_sqlite_connection(conn: Any, *, busy_timeout: float | None = None) -> Any:
    """Apply timeout tuning to SQLite connections when available."""

    if not isinstance(conn, sqlite3.Connection):
        return conn

    busy_timeout_ms = None
    if busy_timeout is not None:
        busy_timeout_ms = int(max(busy_timeout, 0) * 1000)
        if busy_timeout_ms <= 0:
            busy_timeout_ms = None

    pragmas: tuple[tuple[str, str | int | None, bool], ...] = (
        ("busy_timeout", busy_timeout_ms, False),
        ("journal_mode", "WAL", True),
        ("foreign_keys", "ON", False),
    )

    for name, value, fetch_result in pragmas:
        if value is None:
            continue
        try:
            cursor = conn.execute(f"PRAGMA {name}={value}")
            if fetch_result:
                cursor.fetchone()
        except sqlite3.OperationalError:  # pragma: no cover - best effort only
            logger.debug("Could not apply PRAGMA %s", name)
            continue

    return conn


def _configure_mariadb_connection(conn: Any, *, lock_timeout: float | None = None) -> Any:
    """Apply session-level lock timeouts for MariaDB connections."""

    if lock_timeout is None:
        return conn

    timeout_value = max(int(lock_timeout), 1)
    cursor = conn.cursor()
    try:
        cursor.execute("SET SESSION innodb_lock_wait_timeout = %s", (timeout_value,))
    finally:
        cursor.close()
    return conn


def _resolve_sqlite_path_from_dsn(dsn: str) -> str:
    """Extract a filesystem path from a ``sqlite:///`` DSN string."""

    parsed = urlparse(dsn)
    if parsed.scheme != "sqlite":
        raise ValueError(f"Unsupported DSN scheme for SQLite resolver: {parsed.scheme}")

    path = unquote(parsed.path or "")
    if parsed.netloc and parsed.netloc not in {"", "localhost"}:
        # Support UNC-like hosts by prefixing them to the path component.
        path = f"//{parsed.netloc}{path}"

    if not path:
        raise ValueError("SQLite DSN must include a filesystem path")

    candidate = Path(path)
    if not candidate.is_absolute():
        candidate = candidate.resolve()
    return os.fspath(candidate)


def build_engine_from_dsn(
    dsn: str,
    *,
    timeout: float | None = None,
    pool_size: int = 5,
    pool_recycle: int = 1_800,
    pool_pre_ping: bool = True,
) -> DatabaseEngine:
    """Return a :class:`DatabaseEngine` configured from ``dsn``."""

    parsed = urlparse(dsn)
    connect_args: dict[str, object] = {}
    effective_timeout = timeout if timeout is not None else 5.0

    if parsed.scheme == "sqlite":
        sqlite_path = _resolve_sqlite_path_from_dsn(dsn)
        Path(sqlite_path).parent.mkdir(parents=True, exist_ok=True)
        normalized_dsn = f"sqlite:///{sqlite_path}"
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = effective_timeout
    else:
        normalized_dsn = dsn

    dialect_name = parsed.scheme.split("+", 1)[0]

    engine = create_engine(
        normalized_dsn,
        pool_size=pool_size,
        pool_recycle=pool_recycle,
        pool_pre_ping=pool_pre_ping,
        connect_args=connect_args,
    )

    if parsed.scheme == "sqlite":

        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_conn, connection_record):  # type: ignore[override]
            # SQLAlchemy owns BEGIN on SQLite so SAVEPOINT stays inside the transaction.
            dbapi_conn.isolation_level = None
            _configure_sqlite_connection(dbapi_conn, busy_timeout=effective_timeout)

        @event.listens_for(engine, "begin")
        def _on_begin(conn):  # type: ignore[override]
            conn.exec_driver_sql("BEGIN")

    elif dialect_name in {"mysql", "mariadb"}:

        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_conn, connection_record):  # type: ignore[override]
            _configure_mariadb_connection(dbapi_conn, lock_timeout=effective_timeout)

    logger.debug("Database engine ready for %s", engine.url.render_as_string(hide_password=True))
    return DatabaseEngine(engine)


__all__ = [
    "DatabaseEngine",
    "build_engine_from_dsn",
    "db_lock",
]
