from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Iterable

from checkpoints.codec import decode_checkpoint
from checkpoints.codec import encode_checkpoint
from checkpoints.store import get_checkpoint_sync
from checkpoints.store import insert_audit_log_sync
from checkpoints.store import set_checkpoint_sync
from config.defaults import CHECKPOINT_ROLE_PENDING_PREFIX
from config.defaults import ROLE_SETTLE_CAP
from config.defaults import ROLE_SETTLE_THRESHOLD
from reconcile.models import AccountNotPresent
from reconcile.models import ClanRank
from reconcile.models import LinkedAccount
from reconcile.models import RoleCommand
from reconcile.models import RoleSettleState
from reconcile.models import RosterEntry
from reconcile.models import UNASSIGNED
from reconcile.models import normalize_member_tag


ROLE_SETTLE_KIND = "role_settle"
ROLE_SETTLE_VERSION = 1


def role_state_key(account_id: str) -> str:
    return f"{CHECKPOINT_ROLE_PENDING_PREFIX}{account_id}"


def desired_role_for(account: LinkedAccount, roster_by_tag: dict[str, RosterEntry]) -> ClanRank:
    entry = roster_by_tag.get(normalize_member_tag(account.external_member_id) or "")
    return entry.clan_rank if entry is not None else UNASSIGNED


def decide_role_step(
    state: RoleSettleState,
    new_desired: ClanRank,
    current_role: ClanRank | None,
    *,
    threshold: int = ROLE_SETTLE_THRESHOLD,
    cap: int = ROLE_SETTLE_CAP,
) -> tuple[RoleSettleState, bool]:
    """One settling step for one account; returns (next state, emit a role command)."""
    if current_role is not None and current_role == new_desired:
        return (RoleSettleState(new_desired, threshold), False)

    if state.desired_role == new_desired:
        count = min(state.consecutive_agreements + 1, cap)
    else:
        count = 1
    return (RoleSettleState(new_desired, count), count >= threshold)


def load_role_state_sync(conn, account_id: str) -> RoleSettleState:
    decoded = decode_checkpoint(get_checkpoint_sync(conn, role_state_key(account_id)), ROLE_SETTLE_KIND)
    if decoded is None:
        return RoleSettleState()
    _version, data = decoded
    return RoleSettleState.from_dict(data)


def save_role_state_sync(conn, account_id: str, state: RoleSettleState) -> None:
    set_checkpoint_sync(
        conn,
        role_state_key(account_id),
        encode_checkpoint(ROLE_SETTLE_KIND, ROLE_SETTLE_VERSION, state.to_dict()),
        schema_version=ROLE_SETTLE_VERSION,
    )


@dataclass(slots=True)
class RoleSyncReport:
    checked: int = 0
    settled: int = 0
    pending: int = 0
    applied: list[RoleCommand] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    absent: list[str] = field(default_factory=list)


class RoleReconciler:
    """Maps clan ranks of linked accounts onto downstream roles.

    ``role_sink`` must provide ``async current_role(account_id) -> ClanRank | None``
    and ``async apply_role(command: RoleCommand) -> None``. ``current_role``
    returns None when the applied roles match no single rank exactly.
    """

    def __init__(
        self,
        *,
        db_lock,
        db_conn,
        role_sink,
        threshold: int = ROLE_SETTLE_THRESHOLD,
        cap: int = ROLE_SETTLE_CAP,
    ) -> None:
        self.db_lock = db_lock
        self.db_conn = db_conn
        self.role_sink = role_sink
        self.threshold = max(1, int(threshold))
        self.cap = max(self.threshold, int(cap))

    async def _load_state(self, account_id: str) -> RoleSettleState:
        async with self.db_lock:
            return await asyncio.to_thread(load_role_state_sync, self.db_conn, account_id)

    async def _save_state(self, account_id: str, state: RoleSettleState) -> None:
        async with self.db_lock:
            await asyncio.to_thread(save_role_state_sync, self.db_conn, account_id, state)

    async def _audit(self, event_type: str, message: str) -> None:
        try:
            async with self.db_lock:
                await asyncio.to_thread(insert_audit_log_sync, self.db_conn, event_type, message)
        except Exception as e:
            print(f"[RoleSync] audit write failed type={event_type}: {e}")

    async def reconcile_account(
        self,
        account: LinkedAccount,
        roster_by_tag: dict[str, RosterEntry],
    ) -> tuple[RoleSettleState, RoleCommand | None]:
        new_desired = desired_role_for(account, roster_by_tag)
        state = await self._load_state(account.account_id)
        current = await self.role_sink.current_role(account.account_id)

        next_state, emit = decide_role_step(state, new_desired, current, threshold=self.threshold, cap=self.cap)
        command = RoleCommand(account_id=account.account_id, new_role=new_desired) if emit else None
        try:
            if command is not None:
                await self.role_sink.apply_role(command)
        finally:
            # A failed apply still records the agreement count; the account stays
            # mismatched, so the next pass emits the same command again.
            await self._save_state(account.account_id, next_state)
        return (next_state, command)

    async def run_once(self, linked_accounts: Iterable[LinkedAccount], roster: Iterable[RosterEntry]) -> RoleSyncReport:
        roster_by_tag: dict[str, RosterEntry] = {}
        for entry in roster:
            tag = normalize_member_tag(entry.external_member_id)
            if tag:
                roster_by_tag[tag] = entry

        report = RoleSyncReport()
        for account in linked_accounts:
            report.checked += 1
            try:
                state, command = await self.reconcile_account(account, roster_by_tag)
            except AccountNotPresent:
                # Linked user left the server; nothing to apply until they return.
                report.absent.append(account.account_id)
                continue
            except Exception as e:
                report.failed.append(account.account_id)
                print(f"[RoleSync] account={account.account_id} error: {e}")
                await self._audit("role_sync_account_error", f"account={account.account_id} {type(e).__name__}: {e}")
                continue

            if command is None:
                if state.consecutive_agreements >= self.threshold:
                    report.settled += 1
                else:
                    report.pending += 1
                continue

            report.applied.append(command)
            print(f"[RoleSync] applied role={command.new_role.value} account={command.account_id}")
            await self._audit("role_sync_applied", f"account={command.account_id} role={command.new_role.value}")

        return report
