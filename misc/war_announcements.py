from __future__ import annotations

import asyncio

import discord

from checkpoints.codec import decode_checkpoint_text
from checkpoints.codec import encode_checkpoint
from checkpoints.store import get_checkpoint_sync
from checkpoints.store import insert_audit_log_sync
from checkpoints.store import set_checkpoint_sync
from config.defaults import CHECKPOINT_PERIOD_LAST_TYPE
from config.defaults import WAR_DAY_STARTED_MESSAGE
from reconcile.models import PeriodIdentity
from reconcile.models import PeriodSnapshot
from reconcile.period_key import is_battle_period


PERIOD_TYPE_KIND = "period_type"
PERIOD_TYPE_VERSION = 1


def should_announce_start(
    previous_type: str | None,
    snapshot: PeriodSnapshot,
    identity: PeriodIdentity | None,
) -> bool:
    """True when the race moved from another period type into battle day 1."""
    current_type = (snapshot.period_type or "").strip()
    if not previous_type or not current_type or previous_type == current_type:
        return False
    if not is_battle_period(current_type, snapshot.explicit_day_index):
        return False
    day = identity.inferred_day_index if identity is not None else None
    return day is None or day == 1


class PeriodStartAnnouncer:
    """Pings the announcements channel when the first battle day begins.

    The last seen period type is checkpointed before posting, so a failed
    post is not retried and a restart never repeats the ping.
    """

    def __init__(self, *, bot, channel_id: int, db_lock, db_conn, message: str = WAR_DAY_STARTED_MESSAGE) -> None:
        self.bot = bot
        self.channel_id = int(channel_id)
        self.db_lock = db_lock
        self.db_conn = db_conn
        self.message = message

    async def _get_channel(self):
        if self.channel_id <= 0:
            return None
        ch = self.bot.get_channel(self.channel_id)
        if ch is not None:
            return ch
        return await self.bot.fetch_channel(self.channel_id)

    async def _audit(self, event_type: str, message: str) -> None:
        try:
            async with self.db_lock:
                await asyncio.to_thread(insert_audit_log_sync, self.db_conn, event_type, message)
        except Exception as e:
            print(f"[War] audit write failed type={event_type}: {e}")

    async def observe(self, snapshot: PeriodSnapshot, identity: PeriodIdentity | None) -> bool:
        current_type = (snapshot.period_type or "").strip()
        if not current_type:
            return False

        async with self.db_lock:
            raw = await asyncio.to_thread(get_checkpoint_sync, self.db_conn, CHECKPOINT_PERIOD_LAST_TYPE)
        previous_type = decode_checkpoint_text(raw, PERIOD_TYPE_KIND)
        if previous_type == current_type:
            return False

        async with self.db_lock:
            await asyncio.to_thread(
                set_checkpoint_sync,
                self.db_conn,
                CHECKPOINT_PERIOD_LAST_TYPE,
                encode_checkpoint(PERIOD_TYPE_KIND, PERIOD_TYPE_VERSION, current_type),
                PERIOD_TYPE_VERSION,
            )
        print(f"[War] period type {previous_type or '-'} -> {current_type}")

        if not should_announce_start(previous_type, snapshot, identity):
            return False

        channel = await self._get_channel()
        if channel is None:
            print(f"[War] announcements channel not found: {self.channel_id}")
            return False
        await channel.send(self.message, allowed_mentions=discord.AllowedMentions(everyone=True))
        await self._audit("period_start_announced", f"{previous_type} -> {current_type}")
        return True

    async def __call__(self, snapshot: PeriodSnapshot, identity: PeriodIdentity | None) -> None:
        try:
            await self.observe(snapshot, identity)
        except Exception as e:
            print(f"[War] announcement failed: {e}")
            await self._audit("period_announcement_error", f"{type(e).__name__}: {e}")
