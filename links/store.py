from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

from reconcile.models import LinkedAccount
from reconcile.models import normalize_member_tag


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def fetch_linked_accounts_sync(conn: sqlite3.Connection) -> list[LinkedAccount]:
    cur = conn.cursor()
    cur.execute(
        """
        SELECT discord_user_id, player_tag, created_at_utc
        FROM user_links
        ORDER BY created_at_utc ASC, discord_user_id ASC
        """
    )
    out: list[LinkedAccount] = []
    for row in cur.fetchall():
        tag = normalize_member_tag(row[1])
        if not tag:
            continue
        out.append(LinkedAccount(account_id=str(row[0]), external_member_id=tag, linked_at=row[2]))
    return out


def get_link_by_user_sync(conn: sqlite3.Connection, discord_user_id: str) -> LinkedAccount | None:
    cur = conn.cursor()
    cur.execute(
        "SELECT discord_user_id, player_tag, created_at_utc FROM user_links WHERE discord_user_id = ? LIMIT 1",
        (str(discord_user_id),),
    )
    row = cur.fetchone()
    if not row:
        return None
    return LinkedAccount(account_id=str(row[0]), external_member_id=str(row[1]), linked_at=row[2])


def upsert_link_sync(
    conn: sqlite3.Connection,
    discord_user_id: str,
    player_tag: str,
    player_name: str | None = None,
) -> LinkedAccount:
    """Link a Discord user to a player tag.

    A tag belongs to one user at a time; linking it again moves it to the new
    user and drops the old link.
    """
    user_id = str(discord_user_id or "").strip()
    tag = normalize_member_tag(player_tag)
    if not user_id or not tag:
        raise ValueError("discord_user_id and player_tag are required")

    now = _utc_now_iso()
    cur = conn.cursor()
    try:
        cur.execute("DELETE FROM user_links WHERE player_tag = ? AND discord_user_id != ?", (tag, user_id))
        cur.execute(
            """
            INSERT INTO user_links (discord_user_id, player_tag, player_name, created_at_utc, updated_at_utc)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(discord_user_id) DO UPDATE SET
                player_tag=excluded.player_tag,
                player_name=excluded.player_name,
                updated_at_utc=excluded.updated_at_utc
            """,
            (user_id, tag, (player_name or "").strip() or None, now, now),
        )
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    linked = get_link_by_user_sync(conn, user_id)
    if linked is None:
        raise RuntimeError(f"link for user {user_id} missing after upsert")
    return linked


def delete_link_sync(conn: sqlite3.Connection, discord_user_id: str) -> bool:
    cur = conn.cursor()
    cur.execute("DELETE FROM user_links WHERE discord_user_id = ?", (str(discord_user_id),))
    conn.commit()
    return cur.rowcount > 0
