from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from checkpoints.store import insert_audit_log_sync
from reconcile.models import PeriodIdentity
from reconcile.models import PeriodSnapshot
from reconcile.models import UpstreamUnavailable
from reconcile.rollover import PeriodRolloverTracker
from reconcile.rollover import RolloverOutcome
from warlog.store import insert_war_history_sync


PeriodObservedCallback = Callable[[PeriodSnapshot, PeriodIdentity | None], Awaitable[None]]


async def ingest_river_race_log(*, clan_tag: str, clash_api, db_lock, db_conn) -> int:
    entries = await clash_api.get_river_race_log(clan_tag)
    async with db_lock:
        inserted = await asyncio.to_thread(insert_war_history_sync, db_conn, entries)
    if inserted:
        print(f"[War] river race log stored new={inserted} seen={len(entries)}")
    return inserted


async def period_tracking_tick(
    *,
    clan_tag: str,
    clash_api,
    tracker: PeriodRolloverTracker,
    db_lock,
    db_conn,
    on_period_observed: PeriodObservedCallback | None = None,
    ingest_war_log: bool = True,
) -> RolloverOutcome | None:
    try:
        snapshot = await clash_api.fetch_current_period_snapshot(clan_tag)
    except UpstreamUnavailable as e:
        print(f"[War] river race unavailable, skipping tick: {e}")
        async with db_lock:
            await asyncio.to_thread(insert_audit_log_sync, db_conn, "period_tracking_upstream_unavailable", str(e))
        return None

    if ingest_war_log:
        # Best effort; the race log only feeds war_history.
        try:
            await ingest_river_race_log(clan_tag=clan_tag, clash_api=clash_api, db_lock=db_lock, db_conn=db_conn)
        except Exception as e:
            print(f"[War] river race log ingest failed: {e}")

    outcome = await tracker.observe(snapshot)
    if on_period_observed is not None:
        await on_period_observed(snapshot, outcome.identity)
    return outcome
