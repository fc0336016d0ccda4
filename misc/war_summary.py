from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Mapping

from checkpoints.codec import decode_checkpoint_text
from checkpoints.codec import encode_checkpoint
from checkpoints.store import get_checkpoint_sync
from checkpoints.store import insert_audit_log_sync
from checkpoints.store import set_checkpoint_sync
from config.defaults import CHECKPOINT_SINK_POSTED_KEY
from config.defaults import SUMMARY_MAX_CHUNK_CHARS
from config.defaults import SUMMARY_MAX_NO_BATTLE_NAMES
from reconcile.history import SnapshotHistoryStore
from reconcile.models import ClosedPeriodSnapshot
from reconcile.period_key import is_battle_period


POSTED_KEY_KIND = "period_sink_posted_key"
POSTED_KEY_VERSION = 1


@dataclass(frozen=True, slots=True)
class ParticipantDelta:
    tag: str
    name: str
    d_score: int
    d_decks: int


@dataclass(slots=True)
class PeriodSummary:
    header: str
    rows: list[ParticipantDelta] = field(default_factory=list)
    no_battles: list[str] = field(default_factory=list)

    def lines(self) -> list[str]:
        return [f"• **{r.name}**: {r.d_score} points, {r.d_decks} decks" for r in self.rows]

    def no_battles_text(self, limit: int = SUMMARY_MAX_NO_BATTLE_NAMES) -> str:
        if not self.no_battles:
            return "(none)"
        if len(self.no_battles) > limit:
            return f"{', '.join(self.no_battles[:limit])} ... (+{len(self.no_battles) - limit} more)"
        return ", ".join(self.no_battles)


def _non_negative(n: int) -> int:
    return n if n > 0 else 0


def summarize_closed_period(
    closed: ClosedPeriodSnapshot,
    baseline: ClosedPeriodSnapshot | None,
    names: Mapping[str, str] | None = None,
) -> PeriodSummary:
    """Per-member score and deck gains over the closed period.

    Counters are cumulative over the race, so the gain is the difference to
    the previous closed snapshot, floored at zero (the counters reset between
    races). Members are taken from ``names`` when given, else from the
    closed snapshot itself.
    """
    before_all = baseline.counters if baseline is not None else {}
    tags = list(names.keys()) if names else list(closed.counters.keys())

    rows: list[ParticipantDelta] = []
    for tag in tags:
        after = closed.counters.get(tag)
        before = before_all.get(tag)
        d_score = _non_negative(((after.score if after else None) or 0) - ((before.score if before else None) or 0))
        d_decks = _non_negative(
            ((after.decks_cumulative if after else None) or 0) - ((before.decks_cumulative if before else None) or 0)
        )
        name = (names or {}).get(tag) or (after.name if after and after.name else None) or tag
        rows.append(ParticipantDelta(tag=tag, name=name, d_score=d_score, d_decks=d_decks))

    rows.sort(key=lambda r: (-r.d_score, -r.d_decks, r.tag))
    no_battles = [r.name for r in rows if r.d_score <= 0 and r.d_decks <= 0]

    day = f"war day {closed.day_index}" if closed.day_index is not None else closed.period_type
    header = f"War day snapshot ({day}, ending <t:{int(closed.end_at.timestamp())}:f>):"
    return PeriodSummary(header=header, rows=rows, no_battles=no_battles)


def chunk_lines(header: str, lines: list[str], max_len: int = SUMMARY_MAX_CHUNK_CHARS) -> list[str]:
    out: list[str] = []
    cur = header
    for line in lines:
        if len(cur) + 1 + len(line) > max_len:
            out.append(cur)
            cur = f"{header}\n{line}"
        else:
            cur = f"{cur}\n{line}"
    out.append(cur)
    return out


class PeriodSummarySink:
    """Posts a closed battle day to the war-logs channel, once per key.

    Failures are logged and swallowed; the rollover tracker does not wait on
    the post succeeding.
    """

    def __init__(self, *, bot, channel_id: int, history: SnapshotHistoryStore, db_lock, db_conn) -> None:
        self.bot = bot
        self.channel_id = int(channel_id)
        self.history = history
        self.db_lock = db_lock
        self.db_conn = db_conn

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

    async def post(self, closed: ClosedPeriodSnapshot) -> bool:
        if not is_battle_period(closed.period_type, closed.day_index):
            print(f"[War] summary skipped key={closed.key} period_type={closed.period_type}")
            return False

        async with self.db_lock:
            raw = await asyncio.to_thread(get_checkpoint_sync, self.db_conn, CHECKPOINT_SINK_POSTED_KEY)
        if decode_checkpoint_text(raw, POSTED_KEY_KIND) == closed.key:
            return False

        baseline = await self.history.query_before(closed.end_at)
        summary = summarize_closed_period(closed, baseline)

        channel = await self._get_channel()
        if channel is None:
            raise RuntimeError(f"war logs channel not found: {self.channel_id}")

        lines = summary.lines() + [f"No battles: {summary.no_battles_text()}"]
        for part in chunk_lines(summary.header, lines):
            await channel.send(part)

        async with self.db_lock:
            await asyncio.to_thread(
                set_checkpoint_sync,
                self.db_conn,
                CHECKPOINT_SINK_POSTED_KEY,
                encode_checkpoint(POSTED_KEY_KIND, POSTED_KEY_VERSION, closed.key),
                POSTED_KEY_VERSION,
            )
        return True

    async def __call__(self, closed: ClosedPeriodSnapshot) -> None:
        try:
            if await self.post(closed):
                print(f"[War] summary posted key={closed.key} rows={len(closed.counters)}")
        except Exception as e:
            print(f"[War] summary post failed key={closed.key}: {e}")
            await self._audit("period_summary_error", f"key={closed.key} {type(e).__name__}: {e}")
