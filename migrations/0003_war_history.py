from __future__ import annotations

import sqlite3
from datetime import datetime, timezone


LEGACY_KEY_RENAMES = {
    "war:last_period_type": "period:last_period_type",
}


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def upgrade(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    conn.execute("BEGIN")
    try:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS war_history (
                war_key TEXT PRIMARY KEY,
                clan_tag TEXT NOT NULL,
                season_id INTEGER,
                section_index INTEGER,
                created_date TEXT,
                rank INTEGER,
                raw_json TEXT NOT NULL,
                inserted_at_utc TEXT NOT NULL
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_war_history_clan ON war_history(clan_tag, created_date)")

        now_iso = _utc_now_iso()
        for old_key, new_key in LEGACY_KEY_RENAMES.items():
            cur.execute("SELECT 1 FROM job_state WHERE key = ? LIMIT 1", (new_key,))
            if cur.fetchone() is not None:
                continue
            cur.execute(
                "UPDATE job_state SET key = ?, updated_at_utc = ? WHERE key = ?",
                (new_key, now_iso, old_key),
            )
            if cur.rowcount > 0:
                cur.execute(
                    "INSERT INTO audit_log (created_at_utc, type, message) VALUES (?, ?, ?)",
                    (now_iso, "checkpoint_key_migrated", f"{old_key} -> {new_key}"),
                )
        conn.commit()
    except Exception:
        conn.rollback()
        raise
