from __future__ import annotations

import sqlite3
from datetime import datetime, timezone


# Checkpoint keys written by the earlier war tracker, renamed to the period:* namespace.
LEGACY_KEY_RENAMES = {
    "war:period:last_capture": "period:last_capture",
    "war:day_snapshot:last_key": "period:last_emitted_key",
    "war:day_snapshot:history": "period:history",
}


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _has_column(conn: sqlite3.Connection, table: str, column: str) -> bool:
    cur = conn.cursor()
    cur.execute(f"PRAGMA table_info({table})")
    return any(str(row[1]) == column for row in cur.fetchall())


def _has_key(cur: sqlite3.Cursor, key: str) -> bool:
    cur.execute("SELECT 1 FROM job_state WHERE key = ? LIMIT 1", (key,))
    return cur.fetchone() is not None


def upgrade(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    conn.execute("BEGIN")
    try:
        if not _has_column(conn, "job_state", "schema_version"):
            # 0 marks untagged values written before checkpoints carried a version.
            cur.execute("ALTER TABLE job_state ADD COLUMN schema_version INTEGER NOT NULL DEFAULT 0")

        now_iso = _utc_now_iso()
        for old_key, new_key in LEGACY_KEY_RENAMES.items():
            if not _has_key(cur, old_key) or _has_key(cur, new_key):
                continue
            cur.execute(
                "UPDATE job_state SET key = ?, updated_at_utc = ? WHERE key = ?",
                (new_key, now_iso, old_key),
            )
            cur.execute(
                "INSERT INTO audit_log (created_at_utc, type, message) VALUES (?, ?, ?)",
                (now_iso, "checkpoint_key_migrated", f"{old_key} -> {new_key}"),
            )
        conn.commit()
    except Exception:
        conn.rollback()
        raise
