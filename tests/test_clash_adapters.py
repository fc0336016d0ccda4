from __future__ import annotations

import unittest
from datetime import datetime, timezone

from clash.adapters import build_period_snapshot
from clash.adapters import build_roster
from clash.adapters import extract_participant
from clash.adapters import parse_clash_time
from clash.adapters import safe_number
from clash.api import ClashApi
from clash.api import encode_tag
from reconcile.models import ClanRank
from reconcile.models import UpstreamUnavailable


class _FakeResponse:
    def __init__(self, status: int, payload=None, reason: str = "OK", body: str = ""):
        self.status = status
        self.reason = reason
        self._payload = payload
        self._body = body

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def text(self):
        return self._body

    async def json(self, content_type=None):
        return self._payload


class _FakeSession:
    def __init__(self, response: _FakeResponse):
        self.response = response
        self.closed = False
        self.calls: list[tuple[str, dict]] = []

    def get(self, url, headers=None):
        self.calls.append((url, dict(headers or {})))
        return self.response


class AdapterTests(unittest.TestCase):
    def test_safe_number(self):
        self.assertEqual(safe_number("12"), 12.0)
        self.assertIsNone(safe_number("nan"))
        self.assertIsNone(safe_number(float("inf")))
        self.assertIsNone(safe_number(True))
        self.assertIsNone(safe_number(" "))
        self.assertIsNone(safe_number(10**400))
        self.assertEqual(safe_number(10**6), 1000000.0)

    def test_first_candidate_field_wins(self):
        tag, counters = extract_participant(
            {
                "playerTag": "#abc",
                "name": " Zed ",
                "decksUsedThisPeriod": "7",
                "decksUsed": None,
                "decksUsedInDay": 3,
                "currentFame": 1500,
                "repairPointsToday": 40,
                "boatAttacksToday": 1,
            }
        )
        self.assertEqual(tag, "#ABC")
        self.assertEqual(counters.decks_cumulative, 7)
        self.assertEqual(counters.decks_today, 3)
        self.assertEqual(counters.score, 1500)
        self.assertEqual(counters.repairs, 40)
        self.assertEqual(counters.boat_attacks, 1)
        self.assertEqual(counters.name, "Zed")

    def test_participant_without_tag_is_dropped(self):
        self.assertIsNone(extract_participant({"name": "nobody", "decksUsed": 4}))
        self.assertIsNone(extract_participant("not a dict"))

    def test_build_period_snapshot(self):
        captured = datetime(2026, 3, 1, tzinfo=timezone.utc)
        snap = build_period_snapshot(
            {
                "periodType": "warDay",
                "sectionIndex": 2,
                "periodEndTime": "20260302T100000.000Z",
                "clan": {"participants": [{"tag": "#A", "decksUsed": 4}, {"tag": "", "decksUsed": 1}]},
            },
            captured_at=captured,
        )
        self.assertEqual(snap.period_type, "warDay")
        self.assertEqual(snap.raw_index, 2)
        self.assertEqual(snap.explicit_day_index, 2)
        self.assertEqual(snap.period_end_raw, "20260302T100000.000Z")
        self.assertEqual(snap.captured_at, captured)
        self.assertEqual(list(snap.participants.keys()), ["#A"])

    def test_build_period_snapshot_from_garbage(self):
        snap = build_period_snapshot(None)
        self.assertIsNone(snap.period_type)
        self.assertEqual(snap.participants, {})

    def test_parse_clash_time(self):
        self.assertEqual(parse_clash_time("20260302T100000.000Z"), datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc))
        self.assertEqual(
            parse_clash_time("2026-03-02T10:00:00+00:00"), datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)
        )
        self.assertIsNone(parse_clash_time("yesterday"))
        self.assertIsNone(parse_clash_time(None))

    def test_build_roster(self):
        roster = build_roster(
            {
                "items": [
                    {"tag": "#aa", "name": "Ann", "role": "coLeader"},
                    {"tag": "#bb", "name": "Bob", "role": "admin"},
                    {"name": "no tag", "role": "member"},
                ]
            }
        )
        self.assertEqual([(r.external_member_id, r.clan_rank) for r in roster], [("#AA", ClanRank.CO_LEADER), ("#BB", ClanRank.NONE)])


class ClashApiTests(unittest.IsolatedAsyncioTestCase):
    def test_encode_tag(self):
        self.assertEqual(encode_tag("#ABC"), "%23ABC")
        self.assertEqual(encode_tag("ABC"), "%23ABC")

    async def test_members_request(self):
        session = _FakeSession(_FakeResponse(200, {"items": [{"tag": "#P1", "name": "P", "role": "elder"}]}))
        api = ClashApi(token="secret", session=session)

        roster = await api.get_clan_members("#CLAN")

        self.assertEqual(roster[0].clan_rank, ClanRank.ELDER)
        url, headers = session.calls[0]
        self.assertTrue(url.endswith("/clans/%23CLAN/members"))
        self.assertEqual(headers["Authorization"], "Bearer secret")

    async def test_error_status_is_upstream_unavailable(self):
        session = _FakeSession(_FakeResponse(503, reason="Service Unavailable", body="maintenance"))
        api = ClashApi(token="secret", session=session)

        with self.assertRaises(UpstreamUnavailable) as ctx:
            await api.fetch_current_period_snapshot("#CLAN")
        self.assertEqual(ctx.exception.code, "upstream_unavailable")

    async def test_non_object_river_race(self):
        api = ClashApi(token="secret", session=_FakeSession(_FakeResponse(200, ["unexpected"])))
        with self.assertRaises(UpstreamUnavailable):
            await api.get_current_river_race("#CLAN")


if __name__ == "__main__":
    unittest.main()
