from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml

from config.defaults import DEFAULT_ROLE_SYNC_INTERVAL_SECONDS
from config.defaults import DEFAULT_SETTINGS_PATH
from config.defaults import DEFAULT_SQLITE_PATH
from config.defaults import DEFAULT_WAR_POLL_INTERVAL_SECONDS
from config.defaults import DECKS_PER_DAY
from config.defaults import MIN_JOB_INTERVAL_SECONDS


# env var -> settings field
ENV_FIELDS = {
    "DISCORD_TOKEN": "discord_token",
    "CLASH_API_TOKEN": "clash_api_token",
    "CLASH_CLAN_TAG": "clan_tag",
    "GUILD_ID": "guild_id",
    "CHANNEL_WAR_LOGS_ID": "war_logs_channel_id",
    "CHANNEL_ANNOUNCEMENTS_ID": "announcements_channel_id",
    "ROLE_MEMBER_ID": "role_member_id",
    "ROLE_ELDER_ID": "role_elder_id",
    "ROLE_COLEADER_ID": "role_coleader_id",
    "ROLE_LEADER_ID": "role_leader_id",
    "ROLE_NON_MEMBER_ID": "role_non_member_id",
    "SQLITE_PATH": "sqlite_path",
    "ROLE_SYNC_INTERVAL_SECONDS": "role_sync_interval_seconds",
    "WAR_POLL_INTERVAL_SECONDS": "war_poll_interval_seconds",
    "DECKS_PER_DAY": "decks_per_day",
}

LEGACY_ENV_FIELDS = {
    "ROLE_VANQUISHED_ID": "role_non_member_id",
}

REQUIRED_FIELDS = (
    "discord_token",
    "clash_api_token",
    "clan_tag",
    "guild_id",
    "war_logs_channel_id",
    "role_member_id",
    "role_elder_id",
    "role_coleader_id",
    "role_leader_id",
    "role_non_member_id",
)

ID_FIELDS = (
    "guild_id",
    "war_logs_channel_id",
    "role_member_id",
    "role_elder_id",
    "role_coleader_id",
    "role_leader_id",
    "role_non_member_id",
)


@dataclass(slots=True)
class ClanSyncSettings:
    discord_token: str
    clash_api_token: str
    clan_tag: str
    guild_id: int
    war_logs_channel_id: int
    role_member_id: int
    role_elder_id: int
    role_coleader_id: int
    role_leader_id: int
    role_non_member_id: int
    sqlite_path: str = DEFAULT_SQLITE_PATH
    role_sync_interval_seconds: int = DEFAULT_ROLE_SYNC_INTERVAL_SECONDS
    war_poll_interval_seconds: int = DEFAULT_WAR_POLL_INTERVAL_SECONDS
    decks_per_day: int = DECKS_PER_DAY
    # 0 disables the war day started announcement
    announcements_channel_id: int = 0


def normalize_clan_tag(raw: str | None) -> str:
    tag = (raw or "").strip().upper()
    if not tag:
        return ""
    return tag if tag.startswith("#") else f"#{tag}"


def _read_settings_file(path: str) -> dict[str, Any]:
    p = Path(path)
    if not p.exists():
        return {}
    raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise RuntimeError(f"Settings file must contain a top-level mapping: {path}")
    return raw


def _flatten_file_settings(raw: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key in (
        "clan_tag",
        "guild_id",
        "war_logs_channel_id",
        "announcements_channel_id",
        "sqlite_path",
        "decks_per_day",
    ):
        if raw.get(key) is not None:
            out[key] = raw[key]

    roles = raw.get("roles") if isinstance(raw.get("roles"), dict) else {}
    for rank_key, field in (
        ("member", "role_member_id"),
        ("elder", "role_elder_id"),
        ("coLeader", "role_coleader_id"),
        ("leader", "role_leader_id"),
        ("non_member", "role_non_member_id"),
    ):
        if roles.get(rank_key) is not None:
            out[field] = roles[rank_key]

    intervals = raw.get("intervals") if isinstance(raw.get("intervals"), dict) else {}
    if intervals.get("role_sync_seconds") is not None:
        out["role_sync_interval_seconds"] = intervals["role_sync_seconds"]
    if intervals.get("war_poll_seconds") is not None:
        out["war_poll_interval_seconds"] = intervals["war_poll_seconds"]
    return out


def _env_overrides(env: Mapping[str, str]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name, field in LEGACY_ENV_FIELDS.items():
        value = (env.get(name) or "").strip()
        if value:
            out[field] = value
    # Preferred names win over legacy ones.
    for name, field in ENV_FIELDS.items():
        value = (env.get(name) or "").strip()
        if value:
            out[field] = value
    return out


def _to_int(field: str, value: Any) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        raise RuntimeError(f"Invalid integer for {field}: {value!r}") from None


def load_settings(path: str | None = None, env: Mapping[str, str] | None = None) -> ClanSyncSettings:
    env = os.environ if env is None else env
    settings_path = path or env.get("CLANSYNC_SETTINGS_PATH") or DEFAULT_SETTINGS_PATH

    merged = _flatten_file_settings(_read_settings_file(settings_path))
    merged.update(_env_overrides(env))

    missing = [f for f in REQUIRED_FIELDS if not str(merged.get(f) or "").strip()]
    if missing:
        raise RuntimeError(f"Invalid configuration, missing: {', '.join(missing)}")

    clan_tag = normalize_clan_tag(str(merged["clan_tag"]))
    if len(clan_tag) < 2:
        raise RuntimeError("Invalid configuration, clan_tag is empty")

    ids = {f: _to_int(f, merged[f]) for f in ID_FIELDS}
    role_sync_interval = _to_int(
        "role_sync_interval_seconds",
        merged.get("role_sync_interval_seconds", DEFAULT_ROLE_SYNC_INTERVAL_SECONDS),
    )
    war_poll_interval = _to_int(
        "war_poll_interval_seconds",
        merged.get("war_poll_interval_seconds", DEFAULT_WAR_POLL_INTERVAL_SECONDS),
    )
    decks_per_day = _to_int("decks_per_day", merged.get("decks_per_day", DECKS_PER_DAY))
    if decks_per_day <= 0:
        raise RuntimeError("Invalid configuration, decks_per_day must be positive")

    return ClanSyncSettings(
        discord_token=str(merged["discord_token"]).strip(),
        clash_api_token=str(merged["clash_api_token"]).strip(),
        clan_tag=clan_tag,
        sqlite_path=str(merged.get("sqlite_path") or DEFAULT_SQLITE_PATH).strip(),
        role_sync_interval_seconds=max(MIN_JOB_INTERVAL_SECONDS, role_sync_interval),
        war_poll_interval_seconds=max(MIN_JOB_INTERVAL_SECONDS, war_poll_interval),
        decks_per_day=decks_per_day,
        announcements_channel_id=_to_int("announcements_channel_id", merged.get("announcements_channel_id") or 0),
        **ids,
    )
