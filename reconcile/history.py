from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from checkpoints.codec import decode_checkpoint
from checkpoints.codec import encode_checkpoint
from checkpoints.store import get_checkpoint_sync
from checkpoints.store import set_checkpoint_sync
from clash.adapters import parse_clash_time
from config.defaults import CHECKPOINT_PERIOD_HISTORY
from config.defaults import HISTORY_MAX_DRIFT_SECONDS
from config.defaults import MAX_HISTORY
from reconcile.models import ClosedPeriodSnapshot
from reconcile.models import counters_from_dict
from reconcile.models import counters_to_dict


HISTORY_KIND = "period_history"
HISTORY_VERSION = 1


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return _as_utc(dt).isoformat()


def entry_to_dict(entry: ClosedPeriodSnapshot) -> dict[str, Any]:
    return {
        "key": entry.key,
        "end_at": _iso(entry.end_at),
        "period_type": entry.period_type,
        "day_index": entry.day_index,
        "captured_at": _iso(entry.captured_at),
        "counters": counters_to_dict(entry.counters),
    }


def entry_from_dict(data: Any) -> ClosedPeriodSnapshot | None:
    if not isinstance(data, dict):
        return None
    key = data.get("key")
    end_at = parse_clash_time(data.get("end_at") or data.get("endAtIso"))
    if not isinstance(key, str) or not key or end_at is None:
        return None
    day_index = data.get("day_index", data.get("dayIndex"))
    period_type = data.get("period_type", data.get("periodType"))
    return ClosedPeriodSnapshot(
        key=key,
        end_at=end_at,
        period_type=str(period_type or "unknown").strip().lower() or "unknown",
        day_index=day_index if isinstance(day_index, int) and not isinstance(day_index, bool) else None,
        counters=counters_from_dict(data.get("counters", data.get("snapshot"))),
        captured_at=parse_clash_time(data.get("captured_at") or data.get("capturedAtIso")),
    )


def read_history_sync(conn) -> list[ClosedPeriodSnapshot]:
    decoded = decode_checkpoint(get_checkpoint_sync(conn, CHECKPOINT_PERIOD_HISTORY), HISTORY_KIND)
    if decoded is None:
        return []
    _version, data = decoded
    if not isinstance(data, list):
        return []
    entries = [e for e in (entry_from_dict(item) for item in data) if e is not None]
    entries.sort(key=lambda e: e.end_at)
    return entries


def write_history_sync(conn, entries: list[ClosedPeriodSnapshot]) -> None:
    set_checkpoint_sync(
        conn,
        CHECKPOINT_PERIOD_HISTORY,
        encode_checkpoint(HISTORY_KIND, HISTORY_VERSION, [entry_to_dict(e) for e in entries]),
        schema_version=HISTORY_VERSION,
    )


def append_history_sync(conn, entry: ClosedPeriodSnapshot, max_history: int = MAX_HISTORY) -> list[ClosedPeriodSnapshot]:
    entries = [e for e in read_history_sync(conn) if e.key != entry.key]
    entries.append(entry)
    entries.sort(key=lambda e: e.end_at)
    trimmed = entries[-max(1, int(max_history)):]
    write_history_sync(conn, trimmed)
    return trimmed


def latest_entry(entries: list[ClosedPeriodSnapshot]) -> ClosedPeriodSnapshot | None:
    return max(entries, key=lambda e: e.end_at) if entries else None


def entry_for_day_index(entries: list[ClosedPeriodSnapshot], day_index: int) -> ClosedPeriodSnapshot | None:
    matches = [e for e in entries if e.day_index == int(day_index)]
    return latest_entry(matches)


def entry_closest_to(
    entries: list[ClosedPeriodSnapshot],
    instant: datetime,
    max_drift: timedelta,
) -> ClosedPeriodSnapshot | None:
    instant = _as_utc(instant)
    best: ClosedPeriodSnapshot | None = None
    best_diff: float | None = None
    for e in entries:
        diff = abs((e.end_at - instant).total_seconds())
        if best_diff is None or diff < best_diff:
            best, best_diff = e, diff
    if best is None or best_diff is None or best_diff > max_drift.total_seconds():
        return None
    return best


def entry_before(entries: list[ClosedPeriodSnapshot], instant: datetime) -> ClosedPeriodSnapshot | None:
    instant = _as_utc(instant)
    return latest_entry([e for e in entries if e.end_at < instant])


class SnapshotHistoryStore:
    def __init__(self, *, db_lock, db_conn, max_history: int = MAX_HISTORY) -> None:
        self.db_lock = db_lock
        self.db_conn = db_conn
        self.max_history = max(1, int(max_history))

    async def entries(self) -> list[ClosedPeriodSnapshot]:
        async with self.db_lock:
            return await asyncio.to_thread(read_history_sync, self.db_conn)

    async def append(self, entry: ClosedPeriodSnapshot) -> None:
        async with self.db_lock:
            await asyncio.to_thread(append_history_sync, self.db_conn, entry, self.max_history)

    async def contains(self, key: str) -> bool:
        return any(e.key == key for e in await self.entries())

    async def query_latest(self) -> ClosedPeriodSnapshot | None:
        return latest_entry(await self.entries())

    async def query_by_day_index(self, day_index: int) -> ClosedPeriodSnapshot | None:
        return entry_for_day_index(await self.entries(), day_index)

    async def query_closest_to_instant(
        self,
        instant: datetime,
        max_drift: timedelta = timedelta(seconds=HISTORY_MAX_DRIFT_SECONDS),
    ) -> ClosedPeriodSnapshot | None:
        return entry_closest_to(await self.entries(), instant, max_drift)

    async def query_before(self, instant: datetime) -> ClosedPeriodSnapshot | None:
        return entry_before(await self.entries(), instant)


# ---- relative day references ("yesterday", "2 days ago", "war day 3") ----

NUMBER_WORDS = {
    "zero": 0,
    "one": 1,
    "a": 1,
    "an": 1,
    "two": 2,
    "couple": 2,
    "three": 3,
    "few": 3,
    "four": 4,
    "five": 5,
    "six": 6,
    "seven": 7,
    "eight": 8,
    "nine": 9,
    "ten": 10,
}

LIVE_WORDS = {"today", "now", "current", "live"}
LATEST_WORDS = {"last", "latest", "previous", "prev", "last war day", "last warday", "last war"}
PREP_WORDS = {"prep", "training", "prep day"}

_NUMBER = r"(\d{1,2}|" + "|".join(sorted(NUMBER_WORDS, key=len, reverse=True)) + r")"
DAYS_AGO_RE = re.compile(rf"^{_NUMBER}\s*(?:d|day|days)(?:\s*ago)?$")
PREP_DAY_RE = re.compile(r"^(?:prep|training)\s*(?:day\s*)?(\d{1,2})$")
WAR_DAY_RES = (
    re.compile(r"^(?:last\s+)?war\s*day\s*(\d{1,2})$"),
    re.compile(r"^(?:last\s+)?warday\s*(\d{1,2})$"),
    re.compile(r"^(?:last\s+)?war\s*(\d{1,2})$"),
    re.compile(r"^wd\s*(\d{1,2})$"),
)


@dataclass(frozen=True, slots=True)
class DayReference:
    kind: str  # live | latest | days_ago | war_day | prep_day
    value: int = 0


@dataclass(frozen=True, slots=True)
class ResolvedDay:
    label: str
    source: str  # live | snapshot
    entry: ClosedPeriodSnapshot | None = None
    note: str | None = None


def parse_day_reference(raw: str | None) -> DayReference | None:
    text = " ".join(str(raw or "").strip().lower().split())
    if not text:
        return None
    if text in LIVE_WORDS:
        return DayReference("live")
    if text in LATEST_WORDS:
        return DayReference("latest")
    if text == "yesterday":
        return DayReference("days_ago", 1)

    m = DAYS_AGO_RE.match(text)
    if m:
        token = m.group(1)
        n = int(token) if token.isdigit() else NUMBER_WORDS[token]
        return DayReference("days_ago", n)

    if text in PREP_WORDS:
        return DayReference("prep_day", 1)
    m = PREP_DAY_RE.match(text)
    if m and int(m.group(1)) >= 1:
        return DayReference("prep_day", int(m.group(1)))

    for pattern in WAR_DAY_RES:
        m = pattern.match(text)
        if m:
            day = int(m.group(1))
            return DayReference("war_day", day) if 1 <= day <= 4 else None
    return None


def _war_day_label(day_index: int | None, fallback: str) -> str:
    return f"war day {day_index}" if day_index is not None and 1 <= day_index <= 4 else fallback


def resolve_day_reference(
    entries: list[ClosedPeriodSnapshot],
    ref: DayReference,
    now: datetime | None = None,
    max_drift: timedelta = timedelta(seconds=HISTORY_MAX_DRIFT_SECONDS),
) -> ResolvedDay:
    if ref.kind == "live":
        return ResolvedDay(label="live", source="live")
    if ref.kind == "prep_day":
        return ResolvedDay(label=f"prep day {ref.value}", source="live")

    def _missing(label: str) -> ResolvedDay:
        return ResolvedDay(
            label=label,
            source="snapshot",
            note="No saved snapshot for that day. Snapshots only exist for days the bot observed end.",
        )

    if ref.kind == "latest":
        picked = latest_entry(entries)
        if picked is None:
            return _missing("latest war day")
        return ResolvedDay(
            label=f"{_war_day_label(picked.day_index, 'war day')} (ending {_iso(picked.end_at)})",
            source="snapshot",
            entry=picked,
        )

    if ref.kind == "war_day":
        picked = entry_for_day_index(entries, ref.value)
        if picked is None:
            return _missing(f"war day {ref.value}")
        return ResolvedDay(label=f"war day {ref.value} (ending {_iso(picked.end_at)})", source="snapshot", entry=picked)

    now = now or datetime.now(timezone.utc)
    target = now - timedelta(days=ref.value)
    picked = entry_closest_to(entries, target, max_drift)
    if picked is None:
        return _missing(f"{ref.value} days ago")
    return ResolvedDay(
        label=f"{ref.value} days ago ({_war_day_label(picked.day_index, 'snapshot')}, ending {_iso(picked.end_at)})",
        source="snapshot",
        entry=picked,
    )
