from __future__ import annotations

import logging
import os
import sqlite3
from datetime import datetime
from typing import Any

from .settings import settings

logger = logging.getLogger("reprox.events")

_LEVELS = {"DEBUG", "INFO", "WARN", "WARNING", "ERROR"}


def utc_now() -> str:
    return datetime.utcnow().strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (Docker creates one when a bind-mounted
    file does not exist yet), the DB file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "reprox.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              host TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            """
        )


def log_event(level: str, message: str, host: str | None = None) -> None:
    """Record an operator event and mirror it to the ``reprox.events`` logger."""
    level = level.upper()
    if level not in _LEVELS:
        level = "INFO"
    py_level = logging.WARNING if level == "WARN" else logging.getLevelName(level)
    logger.log(py_level, "%s%s", f"{host}: " if host else "", message)

    try:
        with connect() as conn:
            conn.execute(
                "INSERT INTO events (ts, level, host, message) VALUES (?, ?, ?, ?)",
                (utc_now(), level, host, message),
            )
            if settings.event_retention > 0:
                # keep only the newest rows
                conn.execute(
                    "DELETE FROM events WHERE id <= (SELECT MAX(id) FROM events) - ?",
                    (settings.event_retention,),
                )
    except sqlite3.Error as e:
        logger.warning("Could not store event: %s", e)


def latest_events(limit: int = 100) -> list[dict[str, Any]]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
