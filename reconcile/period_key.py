from __future__ import annotations

import math
from typing import Iterable

from config.defaults import DECKS_PER_DAY
from config.defaults import FALLBACK_PERIOD_TYPES
from config.defaults import MAX_WAR_DAY_INDEX
from reconcile.models import ParticipantCounters
from reconcile.models import PeriodIdentity
from reconcile.models import PeriodSnapshot


# Bump when derive_period_identity changes what it produces for the same payload.
# v1: inferred day index added to identities (earlier captures carried none).
DERIVER_VERSION = 1


def normalize_period_type(raw: str | None) -> str:
    text = (raw or "").strip().lower()
    return text or "unknown"


def clamp_day_index(value: int | None, max_day: int = MAX_WAR_DAY_INDEX) -> int | None:
    if value is None:
        return None
    i = int(value)
    if i < 1 or i > max_day:
        return None
    return i


def is_fallback_period_type(period_type: str) -> bool:
    return normalize_period_type(period_type) in FALLBACK_PERIOD_TYPES


def is_battle_period(period_type: str | None, day_index: int | None = None, max_day: int = MAX_WAR_DAY_INDEX) -> bool:
    if day_index is not None:
        return 1 <= int(day_index) <= max_day
    pt = normalize_period_type(period_type)
    if pt in {"warday", "colosseum"}:
        return True
    return "war" in pt and "train" not in pt


def infer_day_index_from_counters(
    participants: Iterable[ParticipantCounters],
    allotment: int = DECKS_PER_DAY,
    max_day: int = MAX_WAR_DAY_INDEX,
) -> int | None:
    """Infer the battle day from cumulative deck usage.

    Day N has room for N * allotment decks, so the busiest participant's total
    bounds the day from below. When a per-day counter is present and every
    participant reads zero while the busiest total is an exact multiple of the
    allotment, the upstream has just reset for the next day; attribute the
    tick to that next day instead of the one that just ended.
    """
    entries = list(participants)
    if not entries:
        return None

    max_total = 0
    max_today = 0
    any_today_observed = False
    for counters in entries:
        total = counters.decks_cumulative or 0
        if total > max_total:
            max_total = total
        if counters.decks_today is not None:
            any_today_observed = True
            if counters.decks_today > max_today:
                max_today = counters.decks_today

    is_reset_boundary = any_today_observed and max_today == 0 and max_total > 0 and max_total % allotment == 0
    if is_reset_boundary:
        inferred = max_total // allotment + 1
    else:
        inferred = max(1, math.ceil((max_total or 1) / allotment))
    return clamp_day_index(inferred, max_day)


def derive_period_identity(
    snapshot: PeriodSnapshot,
    allotment: int = DECKS_PER_DAY,
    max_day: int = MAX_WAR_DAY_INDEX,
) -> PeriodIdentity:
    period_type = normalize_period_type(snapshot.period_type)

    if period_type in FALLBACK_PERIOD_TYPES:
        # Index fields in these weeks are not per-day; only the counters are.
        return PeriodIdentity(
            period_type=period_type,
            raw_index=None,
            inferred_day_index=infer_day_index_from_counters(snapshot.participants.values(), allotment, max_day),
        )

    return PeriodIdentity(
        period_type=period_type,
        raw_index=snapshot.raw_index,
        inferred_day_index=clamp_day_index(snapshot.explicit_day_index, max_day),
    )


def is_migration_artifact(previous: PeriodIdentity, current: PeriodIdentity, previous_version: int) -> bool:
    """True when a change of identity only reflects a newer deriver filling in the day index."""
    if previous_version >= DERIVER_VERSION:
        return False
    return (
        previous.period_type == current.period_type
        and previous.raw_index == current.raw_index
        and previous.inferred_day_index is None
        and current.inferred_day_index is not None
    )
