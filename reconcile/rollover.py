from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from checkpoints.codec import decode_checkpoint
from checkpoints.codec import decode_checkpoint_text
from checkpoints.codec import encode_checkpoint
from checkpoints.store import get_checkpoint_sync
from checkpoints.store import insert_audit_log_sync
from checkpoints.store import set_checkpoint_sync
from clash.adapters import build_period_snapshot
from clash.adapters import parse_clash_time
from config.defaults import CHECKPOINT_PERIOD_LAST_CAPTURE
from config.defaults import CHECKPOINT_PERIOD_LAST_EMITTED_KEY
from config.defaults import CHECKPOINT_PERIOD_LAST_IDENTITY
from config.defaults import DECKS_PER_DAY
from config.defaults import MAX_WAR_DAY_INDEX
from reconcile.history import SnapshotHistoryStore
from reconcile.models import ClosedPeriodSnapshot
from reconcile.models import ParticipantCounters
from reconcile.models import PeriodIdentity
from reconcile.models import PeriodSnapshot
from reconcile.models import counters_from_dict
from reconcile.models import counters_to_dict
from reconcile.period_key import DERIVER_VERSION
from reconcile.period_key import derive_period_identity
from reconcile.period_key import is_migration_artifact


CAPTURE_KIND = "period_capture"
CAPTURE_VERSION = 1
IDENTITY_KIND = "period_identity"
EMITTED_KEY_KIND = "period_emitted_key"

OUTCOME_INITIALIZED = "initialized"
OUTCOME_EXTENDED = "extended"
OUTCOME_CLOSED = "closed"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_MIGRATION_SUPPRESSED = "migration_suppressed"
OUTCOME_FAILED = "failed"


@dataclass(frozen=True, slots=True)
class TrackedCapture:
    """Last snapshot seen for the period currently in progress."""

    identity: PeriodIdentity
    deriver_version: int
    captured_at: datetime
    counters: dict[str, ParticipantCounters] = field(default_factory=dict)
    period_end_raw: str | None = None


@dataclass(frozen=True, slots=True)
class RolloverOutcome:
    kind: str
    closed: ClosedPeriodSnapshot | None = None
    identity: PeriodIdentity | None = None


def _iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def period_key(identity: PeriodIdentity, captured_at: datetime) -> str:
    return f"{identity.label()}@{_iso(captured_at)}"


def capture_from_snapshot(snapshot: PeriodSnapshot, identity: PeriodIdentity) -> TrackedCapture:
    return TrackedCapture(
        identity=identity,
        deriver_version=DERIVER_VERSION,
        captured_at=snapshot.captured_at,
        counters=dict(snapshot.participants),
        period_end_raw=snapshot.period_end_raw,
    )


def encode_capture(capture: TrackedCapture) -> str:
    return encode_checkpoint(
        CAPTURE_KIND,
        CAPTURE_VERSION,
        {
            "identity": capture.identity.to_dict(),
            "deriver_version": int(capture.deriver_version),
            "captured_at": _iso(capture.captured_at),
            "period_end_raw": capture.period_end_raw,
            "counters": counters_to_dict(capture.counters),
        },
    )


def _decode_legacy_capture(data: Any, allotment: int, max_day: int) -> TrackedCapture | None:
    # Shape written by the earlier war tracker: capturedAtIso, periodType,
    # sectionIndex, payload (raw river race) and snapshot (per-tag counters).
    if not isinstance(data, dict):
        return None
    captured_at = parse_clash_time(data.get("capturedAtIso"))
    if captured_at is None:
        return None

    payload = data.get("payload")
    if isinstance(payload, dict) and payload:
        snapshot = build_period_snapshot(payload, captured_at=captured_at)
    else:
        section = data.get("sectionIndex")
        period_type = data.get("periodType")
        snapshot = PeriodSnapshot(
            period_type=period_type if isinstance(period_type, str) else None,
            captured_at=captured_at,
            raw_index=section if isinstance(section, int) and not isinstance(section, bool) else None,
        )
    participants = snapshot.participants or counters_from_dict(data.get("snapshot"))

    derived = derive_period_identity(snapshot, allotment, max_day)
    # Those captures never carried an inferred day.
    identity = PeriodIdentity(period_type=derived.period_type, raw_index=derived.raw_index, inferred_day_index=None)
    return TrackedCapture(
        identity=identity,
        deriver_version=0,
        captured_at=captured_at,
        counters=dict(participants),
        period_end_raw=snapshot.period_end_raw,
    )


def decode_capture(
    raw: str | None,
    allotment: int = DECKS_PER_DAY,
    max_day: int = MAX_WAR_DAY_INDEX,
) -> TrackedCapture | None:
    decoded = decode_checkpoint(raw, CAPTURE_KIND)
    if decoded is None:
        return None
    version, data = decoded
    if version == 0:
        return _decode_legacy_capture(data, allotment, max_day)
    if not isinstance(data, dict):
        return None

    identity = PeriodIdentity.from_dict(data.get("identity"))
    captured_at = parse_clash_time(data.get("captured_at"))
    if identity is None or captured_at is None:
        return None
    try:
        deriver_version = int(data.get("deriver_version") or 0)
    except (TypeError, ValueError):
        deriver_version = 0
    end_raw = data.get("period_end_raw")
    return TrackedCapture(
        identity=identity,
        deriver_version=deriver_version,
        captured_at=captured_at,
        counters=counters_from_dict(data.get("counters")),
        period_end_raw=end_raw if isinstance(end_raw, str) else None,
    )


def close_capture(capture: TrackedCapture) -> ClosedPeriodSnapshot:
    return ClosedPeriodSnapshot(
        key=period_key(capture.identity, capture.captured_at),
        end_at=capture.captured_at,
        period_type=capture.identity.period_type,
        day_index=capture.identity.inferred_day_index,
        counters=dict(capture.counters),
        captured_at=capture.captured_at,
    )


def load_tracking_state_sync(
    conn,
    allotment: int = DECKS_PER_DAY,
    max_day: int = MAX_WAR_DAY_INDEX,
) -> tuple[TrackedCapture | None, str | None]:
    capture = decode_capture(get_checkpoint_sync(conn, CHECKPOINT_PERIOD_LAST_CAPTURE), allotment, max_day)
    last_key = decode_emitted_key(get_checkpoint_sync(conn, CHECKPOINT_PERIOD_LAST_EMITTED_KEY))
    return (capture, last_key)


def save_capture_sync(conn, capture: TrackedCapture) -> None:
    set_checkpoint_sync(conn, CHECKPOINT_PERIOD_LAST_CAPTURE, encode_capture(capture), schema_version=CAPTURE_VERSION)
    set_checkpoint_sync(
        conn,
        CHECKPOINT_PERIOD_LAST_IDENTITY,
        encode_checkpoint(IDENTITY_KIND, CAPTURE_VERSION, capture.identity.to_dict()),
        schema_version=CAPTURE_VERSION,
    )


def encode_emitted_key(key: str) -> str:
    return encode_checkpoint(EMITTED_KEY_KIND, CAPTURE_VERSION, str(key))


def decode_emitted_key(raw: str | None) -> str | None:
    return decode_checkpoint_text(raw, EMITTED_KEY_KIND)


def save_last_emitted_key_sync(conn, key: str) -> None:
    set_checkpoint_sync(
        conn,
        CHECKPOINT_PERIOD_LAST_EMITTED_KEY,
        encode_emitted_key(key),
        schema_version=CAPTURE_VERSION,
    )


PeriodClosedCallback = Callable[[ClosedPeriodSnapshot], Awaitable[None]]


class PeriodRolloverTracker:
    """Turns a stream of live snapshots into exactly one closed snapshot per period.

    Each call to ``observe`` compares the identity of the new snapshot with
    the one stored from the previous poll. A change means the previous period
    ended: its last capture is frozen, written to history and handed to
    ``on_period_closed``. The callback is awaited but its failures are only
    logged; the tracking state does not depend on it.
    """

    def __init__(
        self,
        *,
        db_lock,
        db_conn,
        history: SnapshotHistoryStore,
        on_period_closed: PeriodClosedCallback | None = None,
        allotment: int = DECKS_PER_DAY,
        max_day: int = MAX_WAR_DAY_INDEX,
    ) -> None:
        self.db_lock = db_lock
        self.db_conn = db_conn
        self.history = history
        self.on_period_closed = on_period_closed
        self.allotment = max(1, int(allotment))
        self.max_day = max(1, int(max_day))

    async def _load(self) -> tuple[TrackedCapture | None, str | None]:
        async with self.db_lock:
            return await asyncio.to_thread(load_tracking_state_sync, self.db_conn, self.allotment, self.max_day)

    async def _save_capture(self, capture: TrackedCapture) -> None:
        async with self.db_lock:
            await asyncio.to_thread(save_capture_sync, self.db_conn, capture)

    async def _save_last_emitted_key(self, key: str) -> None:
        async with self.db_lock:
            await asyncio.to_thread(save_last_emitted_key_sync, self.db_conn, key)

    async def _audit(self, event_type: str, payload: dict[str, Any]) -> None:
        try:
            async with self.db_lock:
                await asyncio.to_thread(
                    insert_audit_log_sync,
                    self.db_conn,
                    event_type,
                    json.dumps(payload, ensure_ascii=False, sort_keys=True),
                )
        except Exception as e:
            print(f"[War] audit write failed type={event_type}: {e}")

    async def _notify(self, closed: ClosedPeriodSnapshot) -> None:
        if self.on_period_closed is None:
            return
        try:
            await self.on_period_closed(closed)
        except Exception as e:
            print(f"[War] period sink failed key={closed.key}: {e}")
            await self._audit("period_sink_error", {"key": closed.key, "error": f"{type(e).__name__}: {e}"})

    async def observe(self, snapshot: PeriodSnapshot) -> RolloverOutcome:
        identity = derive_period_identity(snapshot, self.allotment, self.max_day)
        current = capture_from_snapshot(snapshot, identity)
        previous, last_emitted_key = await self._load()

        if previous is None:
            await self._save_capture(current)
            print(f"[War] tracking started period={identity.label()}")
            return RolloverOutcome(OUTCOME_INITIALIZED, identity=identity)

        if previous.identity == identity:
            await self._save_capture(current)
            return RolloverOutcome(OUTCOME_EXTENDED, identity=identity)

        if is_migration_artifact(previous.identity, identity, previous.deriver_version):
            print(f"[War] identity change from older capture ignored {previous.identity.label()} -> {identity.label()}")
            await self._audit(
                "period_migration_suppressed",
                {
                    "previous": previous.identity.to_dict(),
                    "current": identity.to_dict(),
                    "previous_deriver_version": previous.deriver_version,
                },
            )
            await self._save_capture(current)
            return RolloverOutcome(OUTCOME_MIGRATION_SUPPRESSED, identity=identity)

        closed = close_capture(previous)
        if closed.key == last_emitted_key:
            await self._save_capture(current)
            return RolloverOutcome(OUTCOME_DUPLICATE, closed=closed, identity=identity)

        try:
            if await self.history.contains(closed.key):
                # Stored by an earlier attempt that stopped before the key was
                # recorded; the sink dedups on its own key.
                print(f"[War] redelivering closed period key={closed.key}")
            else:
                await self.history.append(closed)
            await self._notify(closed)
            await self._save_last_emitted_key(closed.key)
        except Exception as e:
            # Tracking state stays on the old period so the next poll retries.
            print(f"[War] finalize failed key={closed.key}: {e}")
            await self._audit("period_finalize_error", {"key": closed.key, "error": f"{type(e).__name__}: {e}"})
            return RolloverOutcome(OUTCOME_FAILED, closed=closed, identity=identity)

        await self._save_capture(current)
        print(
            f"[War] period closed key={closed.key} participants={len(closed.counters)} "
            f"next={identity.label()}"
        )
        await self._audit(
            "period_closed",
            {"key": closed.key, "day_index": closed.day_index, "participants": len(closed.counters)},
        )
        return RolloverOutcome(OUTCOME_CLOSED, closed=closed, identity=identity)
