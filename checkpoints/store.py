from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from typing import Any


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_checkpoint_sync(conn: sqlite3.Connection, key: str) -> str | None:
    cur = conn.cursor()
    cur.execute("SELECT value FROM job_state WHERE key = ? LIMIT 1", (str(key),))
    row = cur.fetchone()
    return str(row[0]) if row is not None else None


def get_checkpoint_version_sync(conn: sqlite3.Connection, key: str) -> int | None:
    cur = conn.cursor()
    cur.execute("SELECT schema_version FROM job_state WHERE key = ? LIMIT 1", (str(key),))
    row = cur.fetchone()
    return int(row[0] or 0) if row is not None else None


def set_checkpoint_sync(conn: sqlite3.Connection, key: str, value: str, schema_version: int = 0) -> None:
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO job_state (key, value, schema_version, updated_at_utc)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET
            value=excluded.value,
            schema_version=excluded.schema_version,
            updated_at_utc=excluded.updated_at_utc
        """,
        (str(key), str(value), int(schema_version), _utc_now_iso()),
    )
    conn.commit()


def delete_checkpoint_sync(conn: sqlite3.Connection, key: str) -> bool:
    cur = conn.cursor()
    cur.execute("DELETE FROM job_state WHERE key = ?", (str(key),))
    conn.commit()
    return cur.rowcount > 0


def list_checkpoint_keys_sync(conn: sqlite3.Connection, prefix: str = "") -> list[str]:
    cur = conn.cursor()
    # substr() instead of LIKE so '_' and '%' in prefixes stay literal
    cur.execute(
        "SELECT key FROM job_state WHERE substr(key, 1, ?) = ? ORDER BY key ASC",
        (len(prefix), prefix),
    )
    return [str(row[0]) for row in cur.fetchall()]


def insert_audit_log_sync(conn: sqlite3.Connection, event_type: str, message: str) -> int:
    cur = conn.cursor()
    cur.execute(
        "INSERT INTO audit_log (created_at_utc, type, message) VALUES (?, ?, ?)",
        (_utc_now_iso(), (event_type or "").strip().lower(), str(message or "")),
    )
    conn.commit()
    return int(cur.lastrowid)


def list_audit_log_sync(
    conn: sqlite3.Connection,
    event_type: str | None = None,
    limit: int = 100,
) -> list[dict[str, Any]]:
    cur = conn.cursor()
    limit = max(1, min(int(limit), 500))
    if event_type:
        cur.execute(
            """
            SELECT id, created_at_utc, type, message
            FROM audit_log
            WHERE type = ?
            ORDER BY id DESC
            LIMIT ?
            """,
            (event_type.strip().lower(), limit),
        )
    else:
        cur.execute(
            "SELECT id, created_at_utc, type, message FROM audit_log ORDER BY id DESC LIMIT ?",
            (limit,),
        )
    return [
        {"id": int(row[0]), "created_at_utc": row[1], "type": row[2], "message": row[3]}
        for row in cur.fetchall()
    ]
