from __future__ import annotations

import asyncio
import json
import sqlite3
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from checkpoints.store import set_checkpoint_sync
from db.migrate import apply_sqlite_migrations
from reconcile.history import DayReference
from reconcile.history import SnapshotHistoryStore
from reconcile.history import parse_day_reference
from reconcile.history import read_history_sync
from reconcile.history import resolve_day_reference
from reconcile.models import ClosedPeriodSnapshot
from reconcile.models import ParticipantCounters


T0 = datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


def _new_conn() -> sqlite3.Connection:
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    apply_sqlite_migrations(conn, str(_repo_root() / "migrations"))
    return conn


def _entry(i: int, day_index: int | None = None, hours: float | None = None) -> ClosedPeriodSnapshot:
    end_at = T0 + timedelta(hours=24 * i if hours is None else hours)
    return ClosedPeriodSnapshot(
        key=f"warday:{i}:{day_index or 'na'}@{end_at.isoformat()}",
        end_at=end_at,
        period_type="warday",
        day_index=day_index,
        counters={"#AAA": ParticipantCounters(decks_cumulative=4 * i, score=100 * i)},
        captured_at=end_at,
    )


class SnapshotHistoryStoreTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.conn = _new_conn()
        self.store = SnapshotHistoryStore(db_lock=asyncio.Lock(), db_conn=self.conn)

    async def asyncTearDown(self):
        self.conn.close()

    async def test_keeps_newest_fifty(self):
        for i in range(60):
            await self.store.append(_entry(i))

        entries = await self.store.entries()
        self.assertEqual(len(entries), 50)
        self.assertEqual(entries[0].key, _entry(10).key)
        self.assertEqual(entries[-1].key, _entry(59).key)

    async def test_append_same_key_replaces(self):
        await self.store.append(_entry(1))
        await self.store.append(_entry(2))
        await self.store.append(_entry(1))

        entries = await self.store.entries()
        self.assertEqual([e.key for e in entries], [_entry(1).key, _entry(2).key])
        self.assertTrue(await self.store.contains(_entry(2).key))
        self.assertFalse(await self.store.contains("warday:99:na@never"))

    async def test_ordered_by_end_time_not_insert_order(self):
        await self.store.append(_entry(3))
        await self.store.append(_entry(1))

        self.assertEqual((await self.store.query_latest()).key, _entry(3).key)
        self.assertEqual([e.key for e in await self.store.entries()], [_entry(1).key, _entry(3).key])

    async def test_query_by_day_index_prefers_most_recent(self):
        await self.store.append(_entry(1, day_index=2))
        await self.store.append(_entry(8, day_index=2))
        await self.store.append(_entry(9, day_index=3))

        self.assertEqual((await self.store.query_by_day_index(2)).key, _entry(8, day_index=2).key)
        self.assertIsNone(await self.store.query_by_day_index(4))

    async def test_query_closest_respects_max_drift(self):
        await self.store.append(_entry(0))
        await self.store.append(_entry(5))

        near = await self.store.query_closest_to_instant(T0 + timedelta(hours=20))
        self.assertEqual(near.key, _entry(0).key)
        self.assertIsNone(await self.store.query_closest_to_instant(T0 + timedelta(hours=60)))
        self.assertIsNone(
            await self.store.query_closest_to_instant(T0 + timedelta(hours=2), max_drift=timedelta(hours=1))
        )

    async def test_query_before(self):
        await self.store.append(_entry(1))
        await self.store.append(_entry(2))

        self.assertEqual((await self.store.query_before(_entry(2).end_at)).key, _entry(1).key)
        self.assertIsNone(await self.store.query_before(_entry(1).end_at))

    async def test_naive_instants_are_read_as_utc(self):
        await self.store.append(_entry(0))
        await self.store.append(_entry(1))

        naive = (T0 + timedelta(hours=20)).replace(tzinfo=None)
        self.assertEqual((await self.store.query_closest_to_instant(naive)).key, _entry(1).key)
        self.assertEqual((await self.store.query_before(naive)).key, _entry(0).key)

    async def test_empty_history(self):
        self.assertIsNone(await self.store.query_latest())
        self.assertIsNone(await self.store.query_closest_to_instant(T0))

    async def test_reads_untagged_history(self):
        legacy = [
            {
                "key": "old-1",
                "endAtIso": "2025-12-30T10:00:00.000Z",
                "dayIndex": 3,
                "periodType": "warDay",
                "snapshot": {"#aaa": {"decksUsed": 12, "fame": 2400}},
            },
            {"key": "broken"},
        ]
        set_checkpoint_sync(self.conn, "period:history", json.dumps(legacy))

        entries = read_history_sync(self.conn)
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].day_index, 3)
        self.assertEqual(entries[0].period_type, "warday")
        self.assertEqual(entries[0].counters["#AAA"].score, 2400)

        await self.store.append(_entry(1))
        self.assertEqual(len(await self.store.entries()), 2)


class DayReferenceTests(unittest.TestCase):
    def test_parse(self):
        cases = {
            "today": DayReference("live"),
            "Now": DayReference("live"),
            "last": DayReference("latest"),
            "last war day": DayReference("latest"),
            "yesterday": DayReference("days_ago", 1),
            "2 days ago": DayReference("days_ago", 2),
            "three days": DayReference("days_ago", 3),
            "4d": DayReference("days_ago", 4),
            "war day 3": DayReference("war_day", 3),
            "wd2": DayReference("war_day", 2),
            "last war day 1": DayReference("war_day", 1),
            "prep": DayReference("prep_day", 1),
            "prep day 2": DayReference("prep_day", 2),
        }
        for text, expected in cases.items():
            with self.subTest(text=text):
                self.assertEqual(parse_day_reference(text), expected)

    def test_parse_rejects(self):
        for text in ["", "war day 5", "banana", None]:
            with self.subTest(text=text):
                self.assertIsNone(parse_day_reference(text))

    def test_resolve_days_ago(self):
        entries = [_entry(0, day_index=1), _entry(1, day_index=2)]
        now = T0 + timedelta(days=2, hours=1)

        resolved = resolve_day_reference(entries, DayReference("days_ago", 1), now=now)
        self.assertEqual(resolved.source, "snapshot")
        self.assertEqual(resolved.entry.day_index, 2)
        self.assertIn("war day 2", resolved.label)

    def test_resolve_missing_snapshot_has_note(self):
        resolved = resolve_day_reference([_entry(0)], DayReference("days_ago", 7), now=T0 + timedelta(days=10))
        self.assertIsNone(resolved.entry)
        self.assertIsNotNone(resolved.note)

    def test_resolve_live_and_war_day(self):
        entries = [_entry(0, day_index=3), _entry(7, day_index=3)]
        self.assertEqual(resolve_day_reference(entries, DayReference("live")).source, "live")
        self.assertEqual(resolve_day_reference(entries, DayReference("war_day", 3)).entry.key, entries[1].key)
        self.assertEqual(resolve_day_reference(entries, DayReference("latest")).entry.key, entries[1].key)


if __name__ == "__main__":
    unittest.main()
