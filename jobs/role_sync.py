from __future__ import annotations

import asyncio

from checkpoints.store import insert_audit_log_sync
from reconcile.models import UpstreamUnavailable
from reconcile.role_sync import RoleReconciler
from reconcile.role_sync import RoleSyncReport


async def role_sync_tick(
    *,
    clan_tag: str,
    clash_api,
    reconciler: RoleReconciler,
    db_lock,
    db_conn,
    fetch_linked_accounts_sync,
) -> RoleSyncReport | None:
    try:
        roster = await clash_api.get_clan_members(clan_tag)
    except UpstreamUnavailable as e:
        # No roster, no decisions: settle counters stay where they are.
        print(f"[RoleSync] roster unavailable, skipping tick: {e}")
        async with db_lock:
            await asyncio.to_thread(insert_audit_log_sync, db_conn, "role_sync_upstream_unavailable", str(e))
        return None

    async with db_lock:
        accounts = await asyncio.to_thread(fetch_linked_accounts_sync, db_conn)

    report = await reconciler.run_once(accounts, roster)
    if report.applied or report.failed:
        print(
            f"[RoleSync] checked={report.checked} settled={report.settled} pending={report.pending} "
            f"applied={len(report.applied)} failed={len(report.failed)}"
        )
    return report
