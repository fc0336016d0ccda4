"""Candidate-extractor table for Clash API payloads.

Field names vary across API revisions and event types. Each logical value has
an ordered list of candidate fields; the first one holding a finite number
wins. Nothing outside this module should look at raw payload field names.
"""

from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from typing import Any

from reconcile.models import ClanRank
from reconcile.models import ParticipantCounters
from reconcile.models import PeriodSnapshot
from reconcile.models import RosterEntry
from reconcile.models import WarLogEntry
from reconcile.models import normalize_member_tag


DECKS_CUMULATIVE_FIELDS = ("decksUsed", "decksUsedThisPeriod", "decksUsedInPeriod")
DECKS_TODAY_FIELDS = ("decksUsedToday", "decksUsedThisDay", "decksUsedInDay")
SCORE_FIELDS = ("fame", "currentFame", "fameToday")
REPAIRS_FIELDS = ("repairPoints", "repairs", "repairsToday", "repairPointsToday")
BOAT_ATTACKS_FIELDS = ("boatAttacks", "boatAttacksToday")
MEMBER_TAG_FIELDS = ("tag", "playerTag", "memberTag")
RAW_INDEX_FIELDS = ("periodIndex", "dayIndex", "warDay", "sectionIndex")
EXPLICIT_DAY_INDEX_FIELDS = ("dayIndex", "warDay", "sectionIndex")
PERIOD_END_FIELDS = ("periodEndTime", "sectionEndTime", "endTime")

CLASH_TIME_RE = re.compile(r"^(\d{4})(\d{2})(\d{2})T(\d{2})(\d{2})(\d{2})(?:\.\d+)?Z$")


def safe_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            n = float(value)
        except OverflowError:
            return None
        return n if math.isfinite(n) else None
    if isinstance(value, str) and value.strip():
        try:
            n = float(value.strip())
        except ValueError:
            return None
        return n if math.isfinite(n) else None
    return None


def first_int(obj: Any, fields: tuple[str, ...]) -> int | None:
    if not isinstance(obj, dict):
        return None
    for name in fields:
        n = safe_number(obj.get(name))
        if n is not None:
            return int(n)
    return None


def first_str(obj: Any, fields: tuple[str, ...]) -> str | None:
    if not isinstance(obj, dict):
        return None
    for name in fields:
        value = obj.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def parse_clash_time(raw: Any) -> datetime | None:
    text = raw.strip() if isinstance(raw, str) else ""
    if not text:
        return None
    m = CLASH_TIME_RE.match(text)
    try:
        if m:
            yy, mo, dd, hh, mi, ss = (int(g) for g in m.groups())
            return datetime(yy, mo, dd, hh, mi, ss, tzinfo=timezone.utc)
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def extract_participant(raw: Any) -> tuple[str, ParticipantCounters] | None:
    if not isinstance(raw, dict):
        return None
    tag = normalize_member_tag(first_str(raw, MEMBER_TAG_FIELDS))
    if not tag:
        return None
    name = raw.get("name")
    return (
        tag,
        ParticipantCounters(
            decks_cumulative=first_int(raw, DECKS_CUMULATIVE_FIELDS),
            decks_today=first_int(raw, DECKS_TODAY_FIELDS),
            score=first_int(raw, SCORE_FIELDS),
            repairs=first_int(raw, REPAIRS_FIELDS),
            boat_attacks=first_int(raw, BOAT_ATTACKS_FIELDS),
            name=name.strip() if isinstance(name, str) and name.strip() else None,
        ),
    )


def extract_participants(payload: Any) -> dict[str, ParticipantCounters]:
    clan = payload.get("clan") if isinstance(payload, dict) else None
    participants = clan.get("participants") if isinstance(clan, dict) else None
    if not isinstance(participants, list):
        return {}
    out: dict[str, ParticipantCounters] = {}
    for p in participants:
        extracted = extract_participant(p)
        if extracted:
            out[extracted[0]] = extracted[1]
    return out


def build_period_snapshot(payload: Any, captured_at: datetime | None = None) -> PeriodSnapshot:
    payload = payload if isinstance(payload, dict) else {}
    period_type = payload.get("periodType")
    return PeriodSnapshot(
        period_type=period_type if isinstance(period_type, str) else None,
        captured_at=captured_at or datetime.now(timezone.utc),
        participants=extract_participants(payload),
        raw_index=first_int(payload, RAW_INDEX_FIELDS),
        explicit_day_index=first_int(payload, EXPLICIT_DAY_INDEX_FIELDS),
        period_end_raw=first_str(payload, PERIOD_END_FIELDS),
    )


def build_roster(payload: Any) -> list[RosterEntry]:
    items = payload.get("items") if isinstance(payload, dict) else payload
    if not isinstance(items, list):
        return []
    roster: list[RosterEntry] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        tag = normalize_member_tag(first_str(item, MEMBER_TAG_FIELDS))
        if not tag:
            continue
        roster.append(
            RosterEntry(
                external_member_id=tag,
                display_name=str(item.get("name") or tag).strip(),
                clan_rank=ClanRank.parse(item.get("role")),
            )
        )
    return roster


def _strict_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def build_war_key(clan_tag: str, item: Any) -> str:
    item = item if isinstance(item, dict) else {}
    season_id = _strict_int(item.get("seasonId"))
    section_index = _strict_int(item.get("sectionIndex"))
    created = item.get("createdDate") if isinstance(item.get("createdDate"), str) else None
    parts = [season_id, section_index, created]
    return ":".join([clan_tag] + ["na" if p is None else str(p) for p in parts])


def our_standing_rank(clan_tag: str, item: Any) -> int | None:
    standings = item.get("standings") if isinstance(item, dict) else None
    if not isinstance(standings, list):
        return None
    for standing in standings:
        if not isinstance(standing, dict):
            continue
        clan = standing.get("clan") if isinstance(standing.get("clan"), dict) else {}
        if normalize_member_tag(clan.get("tag")) == clan_tag:
            return _strict_int(standing.get("rank"))
    return None


def build_war_log(clan_tag: str, payload: Any) -> list[WarLogEntry]:
    """Entries of a river race log response, keyed per clan, season and section."""
    tag = normalize_member_tag(clan_tag) or ""
    items = payload.get("items") if isinstance(payload, dict) else None
    if not tag or not isinstance(items, list):
        return []
    out: list[WarLogEntry] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        created = item.get("createdDate")
        out.append(
            WarLogEntry(
                war_key=build_war_key(tag, item),
                clan_tag=tag,
                season_id=_strict_int(item.get("seasonId")),
                section_index=_strict_int(item.get("sectionIndex")),
                created_date=created if isinstance(created, str) else None,
                rank=our_standing_rank(tag, item),
                raw=item,
            )
        )
    return out
