from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from typing import Any, Iterable

from reconcile.models import WarLogEntry


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def insert_war_history_sync(conn: sqlite3.Connection, entries: Iterable[WarLogEntry]) -> int:
    """Store finished races; rows already present (by war key) are left alone."""
    now = _utc_now_iso()
    cur = conn.cursor()
    inserted = 0
    try:
        for entry in entries:
            cur.execute(
                """
                INSERT INTO war_history (
                    war_key, clan_tag, season_id, section_index, created_date, rank, raw_json, inserted_at_utc
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(war_key) DO NOTHING
                """,
                (
                    entry.war_key,
                    entry.clan_tag,
                    entry.season_id,
                    entry.section_index,
                    entry.created_date,
                    entry.rank,
                    json.dumps(entry.raw or {}, ensure_ascii=False, sort_keys=True),
                    now,
                ),
            )
            inserted += max(0, cur.rowcount)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    return inserted


def list_war_history_sync(conn: sqlite3.Connection, clan_tag: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
    cur = conn.cursor()
    sql = """
        SELECT war_key, clan_tag, season_id, section_index, created_date, rank, raw_json, inserted_at_utc
        FROM war_history
    """
    params: list[Any] = []
    if clan_tag:
        sql += " WHERE clan_tag = ?"
        params.append(clan_tag)
    sql += " ORDER BY created_date DESC, war_key DESC LIMIT ?"
    params.append(max(1, int(limit)))
    cur.execute(sql, params)
    out: list[dict[str, Any]] = []
    for row in cur.fetchall():
        out.append(
            {
                "war_key": row[0],
                "clan_tag": row[1],
                "season_id": row[2],
                "section_index": row[3],
                "created_date": row[4],
                "rank": row[5],
                "raw": json.loads(row[6] or "{}"),
                "inserted_at_utc": row[7],
            }
        )
    return out
