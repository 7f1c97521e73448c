from __future__ import annotations

import os
import sqlite3
from dataclasses import dataclass
from typing import Any, Iterable

from .models import BuildResult, DeploymentRecord, RollbackEvent, utc_now
from .settings import settings


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (docker creates one when a
    bind-mounted file does not exist yet), the DB file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "prc.db")

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
              service_name TEXT,
              version TEXT,
              message TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS builds (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              service_name TEXT NOT NULL,
              status TEXT NOT NULL, -- success|failed|skipped
              image_id TEXT,
              build_time_seconds REAL,
              size_mb REAL,
              detail TEXT,
              created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS deployments (
              id TEXT PRIMARY KEY,
              service_name TEXT NOT NULL,
              version TEXT NOT NULL,
              image TEXT NOT NULL,
              environment_id TEXT NOT NULL,
              status TEXT NOT NULL,
              traffic_percentage INTEGER NOT NULL DEFAULT 0,
              message TEXT NOT NULL DEFAULT '',
              started_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS rollback_events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              service_name TEXT NOT NULL,
              reason TEXT NOT NULL,
              target_version TEXT,
              initiated_by TEXT NOT NULL, -- automatic|manual
              ts TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_deployments_service ON deployments(service_name);
            CREATE INDEX IF NOT EXISTS idx_builds_service ON builds(service_name);
            """
        )


def log_event(level: str, message: str, service_name: str | None = None, version: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, service_name, version, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level.upper(), service_name, version, message),
        )


@dataclass(frozen=True)
class DeploymentRow:
    id: str
    service_name: str
    version: str
    image: str
    environment_id: str
    status: str
    traffic_percentage: int
    message: str
    started_at: str
    updated_at: str


@dataclass(frozen=True)
class RollbackRow:
    id: int
    service_name: str
    reason: str
    target_version: str | None
    initiated_by: str
    ts: str


def _rows_to_dataclass(rows: Iterable[sqlite3.Row], cls: Any) -> list[Any]:
    out: list[Any] = []
    for r in rows:
        out.append(cls(**dict(r)))
    return out


def record_build(result: BuildResult) -> None:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO builds (service_name, status, image_id, build_time_seconds, size_mb, detail, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                result.service,
                result.status.value,
                result.image_id,
                result.build_time_seconds,
                result.size_mb,
                result.error or result.skip_reason,
                utc_now(),
            ),
        )


def latest_builds(service_name: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
    with connect() as conn:
        if service_name:
            rows = conn.execute(
                "SELECT * FROM builds WHERE service_name=? ORDER BY id DESC LIMIT ?", (service_name, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM builds ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]


def upsert_deployment(record: DeploymentRecord) -> None:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO deployments (id, service_name, version, image, environment_id, status, traffic_percentage, message, started_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              status=excluded.status,
              traffic_percentage=excluded.traffic_percentage,
              message=excluded.message,
              updated_at=excluded.updated_at
            """,
            (
                record.id,
                record.service,
                record.version,
                record.image,
                record.green_environment_id,
                record.status.value,
                record.traffic_percentage,
                record.message,
                record.started_at,
                record.updated_at,
            ),
        )


def list_deployments(service_name: str, status: str | None = None) -> list[DeploymentRow]:
    with connect() as conn:
        if status:
            cur = conn.execute(
                "SELECT * FROM deployments WHERE service_name=? AND status=? ORDER BY started_at DESC, rowid DESC",
                (service_name, status),
            )
        else:
            cur = conn.execute(
                "SELECT * FROM deployments WHERE service_name=? ORDER BY started_at DESC, rowid DESC",
                (service_name,),
            )
        return _rows_to_dataclass(cur.fetchall(), DeploymentRow)


def record_rollback(event: RollbackEvent) -> None:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO rollback_events (service_name, reason, target_version, initiated_by, ts)
            VALUES (?, ?, ?, ?, ?)
            """,
            (event.service, event.reason, event.target_version, event.initiated_by, event.timestamp),
        )


def list_rollbacks(service_name: str | None = None, limit: int = 100) -> list[RollbackRow]:
    with connect() as conn:
        if service_name:
            cur = conn.execute(
                "SELECT * FROM rollback_events WHERE service_name=? ORDER BY id DESC LIMIT ?",
                (service_name, limit),
            )
        else:
            cur = conn.execute("SELECT * FROM rollback_events ORDER BY id DESC LIMIT ?", (limit,))
        return _rows_to_dataclass(cur.fetchall(), RollbackRow)


def latest_events(limit: int = 100, service_name: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if service_name:
            rows = conn.execute(
                "SELECT * FROM events WHERE service_name=? ORDER BY id DESC LIMIT ?", (service_name, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
