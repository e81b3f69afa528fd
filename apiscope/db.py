"""SQLite storage for apiscope.

Holds project records, their discovered route inventories and the
watched-API list.  The file lives at ``$APISCOPE_DATA_DIR/apiscope.db``
(default ``./data``).  Background discovery and request handlers write from
different threads, so every thread gets its own connection and waits up to
``APISCOPE_DB_BUSY_TIMEOUT_MS`` for a competing writer instead of failing.

Usage::

    from apiscope.db import get_db, init_db
    init_db()                  # creates missing tables; repeat calls are no-ops
    conn = get_db()            # this thread's connection
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from pathlib import Path

logger = logging.getLogger(__name__)

DB_FILENAME = "apiscope.db"
BUSY_TIMEOUT_MS = int(os.environ.get("APISCOPE_DB_BUSY_TIMEOUT_MS", "5000"))

_DB_PATH: Path | None = None
_LOCAL = threading.local()


def _db_path() -> Path:
    global _DB_PATH
    if _DB_PATH is None:
        data_dir = Path(os.environ.get("APISCOPE_DATA_DIR", "./data"))
        data_dir.mkdir(parents=True, exist_ok=True)
        _DB_PATH = data_dir / DB_FILENAME
    return _DB_PATH


def set_db_path(path: str | Path) -> None:
    """Point apiscope at another database file (tests use a tmp path)."""
    global _DB_PATH
    _DB_PATH = Path(path)


def _open(path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS:d}")
    logger.debug("opened %s on thread %s", path, threading.current_thread().name)
    return conn


def get_db() -> sqlite3.Connection:
    """Return this thread's connection to the current database file.

    Connections are cached per thread and per path, so switching files with
    :func:`set_db_path` never hands back a connection to the old one.
    """
    path = _db_path()
    conns: dict[Path, sqlite3.Connection] = getattr(_LOCAL, "conns", None) or {}
    _LOCAL.conns = conns
    conn = conns.get(path)
    if conn is None:
        conn = conns[path] = _open(path)
    return conn


def close_db() -> None:
    """Close every connection the calling thread opened."""
    conns: dict[Path, sqlite3.Connection] = getattr(_LOCAL, "conns", None) or {}
    for conn in conns.values():
        conn.close()
    _LOCAL.conns = {}


def init_db(path: str | Path | None = None) -> None:
    """Create the schema in the current (or given) database file."""
    if path:
        set_db_path(path)
    conn = get_db()
    _create_schema(conn)
    conn.commit()


_SCHEMA_SQL = """
-- ───────── Projects ─────────

CREATE TABLE IF NOT EXISTS projects (
    id                               TEXT PRIMARY KEY,
    name                             TEXT NOT NULL,
    api_url                          TEXT NOT NULL,
    store_url                        TEXT NOT NULL,
    api_status                       TEXT NOT NULL DEFAULT 'pending'
                                     CHECK (api_status IN ('success', 'error', 'pending')),
    last_checked                     TIMESTAMP,
    response_time_ms                 REAL,
    error_message                    TEXT,
    total_requests                   INTEGER NOT NULL DEFAULT 0,
    successful_requests              INTEGER NOT NULL DEFAULT 0,
    failed_requests                  INTEGER NOT NULL DEFAULT 0,
    average_response_time_ms         REAL NOT NULL DEFAULT 0,
    running_average_response_time_ms REAL NOT NULL DEFAULT 0,
    created_at                       TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at                       TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_projects_created ON projects(created_at);

CREATE TABLE IF NOT EXISTS project_routes (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id       TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    position         INTEGER NOT NULL,
    path             TEXT NOT NULL,
    method           TEXT NOT NULL,
    status           TEXT NOT NULL CHECK (status IN ('success', 'error')),
    response_time_ms REAL,
    last_checked     TIMESTAMP,
    UNIQUE (project_id, path, method)
);
CREATE INDEX IF NOT EXISTS idx_routes_project ON project_routes(project_id, position);

-- ───────── Watched single APIs ─────────

CREATE TABLE IF NOT EXISTS watched_apis (
    id               TEXT PRIMARY KEY,
    url              TEXT NOT NULL UNIQUE,
    last_status      TEXT NOT NULL DEFAULT 'pending'
                     CHECK (last_status IN ('success', 'error', 'pending')),
    last_response    TEXT,
    last_checked     TIMESTAMP,
    response_time_ms REAL,
    error_message    TEXT,
    created_at       TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at       TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_watched_created ON watched_apis(created_at);
"""


def _create_schema(conn: sqlite3.Connection) -> None:
    """Execute all CREATE TABLE / INDEX statements in one transaction."""
    conn.executescript(_SCHEMA_SQL)
