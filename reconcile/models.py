from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ReconcileError(RuntimeError):
    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = str(code)


class UpstreamUnavailable(ReconcileError):
    def __init__(self, message: str):
        super().__init__("upstream_unavailable", message)


class DownstreamApplyFailed(ReconcileError):
    def __init__(self, account_id: str, message: str):
        super().__init__("downstream_apply_failed", message)
        self.account_id = str(account_id)


class AccountNotPresent(DownstreamApplyFailed):
    """The downstream account is gone, e.g. the user left the guild."""

    def __init__(self, account_id: str, message: str):
        super().__init__(account_id, message)
        self.code = "account_not_present"


class ClanRank(str, Enum):
    # NONE is also the "unassigned" sentinel: linked but not in the clan.
    NONE = "none"
    MEMBER = "member"
    ELDER = "elder"
    CO_LEADER = "coLeader"
    LEADER = "leader"

    @classmethod
    def parse(cls, raw: Any) -> "ClanRank":
        text = str(raw or "").strip()
        for rank in cls:
            if rank.value.lower() == text.lower():
                return rank
        return cls.NONE


UNASSIGNED = ClanRank.NONE


def normalize_member_tag(raw: Any) -> str | None:
    text = raw.strip() if isinstance(raw, str) else ""
    if not text:
        return None
    up = text.upper()
    return up if up.startswith("#") else f"#{up}"


@dataclass(frozen=True, slots=True)
class LinkedAccount:
    account_id: str
    external_member_id: str
    linked_at: str | None = None


@dataclass(frozen=True, slots=True)
class RosterEntry:
    external_member_id: str
    display_name: str
    clan_rank: ClanRank


@dataclass(frozen=True, slots=True)
class RoleSettleState:
    desired_role: ClanRank = UNASSIGNED
    consecutive_agreements: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"desired_role": self.desired_role.value, "consecutive_agreements": int(self.consecutive_agreements)}

    @classmethod
    def from_dict(cls, data: Any) -> "RoleSettleState":
        if not isinstance(data, dict):
            return cls()
        try:
            count = max(0, int(data.get("consecutive_agreements") or 0))
        except (TypeError, ValueError):
            count = 0
        return cls(desired_role=ClanRank.parse(data.get("desired_role")), consecutive_agreements=count)


@dataclass(frozen=True, slots=True)
class RoleCommand:
    account_id: str
    new_role: ClanRank


@dataclass(frozen=True, slots=True)
class ParticipantCounters:
    decks_cumulative: int | None = None
    decks_today: int | None = None
    score: int | None = None
    repairs: int | None = None
    boat_attacks: int | None = None
    name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for key in ("decks_cumulative", "decks_today", "score", "repairs", "boat_attacks", "name"):
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        return out

    @classmethod
    def from_dict(cls, data: Any) -> "ParticipantCounters":
        if not isinstance(data, dict):
            return cls()

        def _int(*keys: str) -> int | None:
            for key in keys:
                value = data.get(key)
                if isinstance(value, bool):
                    continue
                if isinstance(value, (int, float)):
                    return int(value)
            return None

        name = data.get("name")
        # decksUsed/fame are the field names of snapshots stored by the earlier war tracker
        return cls(
            decks_cumulative=_int("decks_cumulative", "decksUsed"),
            decks_today=_int("decks_today", "decksUsedToday"),
            score=_int("score", "fame"),
            repairs=_int("repairs"),
            boat_attacks=_int("boat_attacks", "boatAttacks"),
            name=name.strip() if isinstance(name, str) and name.strip() else None,
        )


def counters_to_dict(counters: dict[str, ParticipantCounters]) -> dict[str, dict[str, Any]]:
    return {tag: c.to_dict() for tag, c in sorted(counters.items())}


def counters_from_dict(data: Any) -> dict[str, ParticipantCounters]:
    out: dict[str, ParticipantCounters] = {}
    if not isinstance(data, dict):
        return out
    for tag, raw in data.items():
        norm = normalize_member_tag(tag)
        if norm:
            out[norm] = ParticipantCounters.from_dict(raw)
    return out


@dataclass(frozen=True, slots=True)
class PeriodSnapshot:
    period_type: str | None
    captured_at: datetime
    participants: dict[str, ParticipantCounters] = field(default_factory=dict)
    raw_index: int | None = None
    explicit_day_index: int | None = None
    period_end_raw: str | None = None


@dataclass(frozen=True, slots=True, eq=False)
class PeriodIdentity:
    period_type: str
    raw_index: int | None = None
    inferred_day_index: int | None = None

    def key(self) -> tuple[str, int | None]:
        return (self.period_type, self.raw_index if self.raw_index is not None else self.inferred_day_index)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PeriodIdentity):
            return NotImplemented
        return self.key() == other.key()

    def __hash__(self) -> int:
        return hash(self.key())

    def label(self) -> str:
        raw = "na" if self.raw_index is None else str(self.raw_index)
        day = "na" if self.inferred_day_index is None else str(self.inferred_day_index)
        return f"{self.period_type}:{raw}:{day}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "period_type": self.period_type,
            "raw_index": self.raw_index,
            "inferred_day_index": self.inferred_day_index,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "PeriodIdentity | None":
        if not isinstance(data, dict) or not isinstance(data.get("period_type"), str):
            return None

        def _opt_int(value: Any) -> int | None:
            if isinstance(value, bool) or value is None:
                return None
            try:
                return int(value)
            except (TypeError, ValueError):
                return None

        return cls(
            period_type=data["period_type"],
            raw_index=_opt_int(data.get("raw_index")),
            inferred_day_index=_opt_int(data.get("inferred_day_index")),
        )


@dataclass(frozen=True, slots=True)
class ClosedPeriodSnapshot:
    key: str
    end_at: datetime
    period_type: str
    day_index: int | None
    counters: dict[str, ParticipantCounters]
    captured_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class WarLogEntry:
    """One finished river race from the clan's race log."""

    war_key: str
    clan_tag: str
    season_id: int | None
    section_index: int | None
    created_date: str | None
    rank: int | None
    raw: dict[str, Any] = field(default_factory=dict)
