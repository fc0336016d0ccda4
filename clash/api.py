from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

import aiohttp

from clash.adapters import build_period_snapshot
from clash.adapters import build_roster
from clash.adapters import build_war_log
from config.defaults import CLASH_API_BASE_URL
from config.defaults import CLASH_API_TIMEOUT_SECONDS
from reconcile.models import PeriodSnapshot
from reconcile.models import RosterEntry
from reconcile.models import UpstreamUnavailable
from reconcile.models import WarLogEntry


def encode_tag(tag: str) -> str:
    t = tag if tag.startswith("#") else f"#{tag}"
    return quote(t, safe="")


class ClashApi:
    def __init__(
        self,
        *,
        token: str,
        base_url: str = CLASH_API_BASE_URL,
        timeout_seconds: float = CLASH_API_TIMEOUT_SECONDS,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.token = str(token or "").strip()
        self.base_url = (base_url or CLASH_API_BASE_URL).rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout_seconds)))
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def _request(self, path: str) -> Any:
        session = await self._get_session()
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {self.token}", "Accept": "application/json"}
        try:
            async with session.get(url, headers=headers) as resp:
                if resp.status >= 400:
                    body = (await resp.text())[:300]
                    raise UpstreamUnavailable(f"Clash API error {resp.status} {resp.reason}: {body}")
                return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise UpstreamUnavailable(f"Clash API request failed for {path}: {e!r}") from e

    async def get_clan_members(self, clan_tag: str) -> list[RosterEntry]:
        data = await self._request(f"/clans/{encode_tag(clan_tag)}/members")
        return build_roster(data)

    async def get_current_river_race(self, clan_tag: str) -> dict[str, Any]:
        data = await self._request(f"/clans/{encode_tag(clan_tag)}/currentriverrace")
        if not isinstance(data, dict):
            raise UpstreamUnavailable("Clash API returned a non-object river race payload")
        return data

    async def fetch_current_period_snapshot(self, clan_tag: str) -> PeriodSnapshot:
        payload = await self.get_current_river_race(clan_tag)
        return build_period_snapshot(payload, captured_at=datetime.now(timezone.utc))

    async def get_river_race_log(self, clan_tag: str) -> list[WarLogEntry]:
        data = await self._request(f"/clans/{encode_tag(clan_tag)}/riverracelog")
        if not isinstance(data, dict):
            raise UpstreamUnavailable("Clash API returned a non-object river race log")
        return build_war_log(clan_tag, data)
