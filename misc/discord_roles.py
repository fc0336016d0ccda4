from __future__ import annotations

from typing import Mapping

import discord

from reconcile.models import AccountNotPresent
from reconcile.models import ClanRank
from reconcile.models import DownstreamApplyFailed
from reconcile.models import RoleCommand


def role_ids_from_settings(settings) -> dict[ClanRank, int]:
    return {
        ClanRank.MEMBER: int(settings.role_member_id),
        ClanRank.ELDER: int(settings.role_elder_id),
        ClanRank.CO_LEADER: int(settings.role_coleader_id),
        ClanRank.LEADER: int(settings.role_leader_id),
    }


class DiscordRoleSink:
    """Applies clan ranks as Discord roles.

    Each rank maps to one guild role; ``ClanRank.NONE`` maps to the
    restricted role given to linked users who are not in the clan.
    """

    def __init__(self, guild, role_ids: Mapping[ClanRank, int], restricted_role_id: int) -> None:
        self.guild = guild
        self.role_by_rank: dict[ClanRank, int] = {rank: int(rid) for rank, rid in role_ids.items() if rank != ClanRank.NONE}
        self.role_by_rank[ClanRank.NONE] = int(restricted_role_id)
        self.rank_by_role: dict[int, ClanRank] = {rid: rank for rank, rid in self.role_by_rank.items()}

    async def _get_member(self, account_id: str):
        try:
            user_id = int(account_id)
        except (TypeError, ValueError) as e:
            raise DownstreamApplyFailed(account_id, f"invalid Discord user id: {account_id!r}") from e

        member = self.guild.get_member(user_id)
        if member is not None:
            return member
        try:
            return await self.guild.fetch_member(user_id)
        except discord.NotFound as e:
            raise AccountNotPresent(account_id, "member is not in the guild") from e
        except discord.HTTPException as e:
            raise DownstreamApplyFailed(account_id, f"member lookup failed: {e}") from e

    async def current_role(self, account_id: str) -> ClanRank | None:
        member = await self._get_member(account_id)
        held = {self.rank_by_role[r.id] for r in member.roles if r.id in self.rank_by_role}
        if len(held) != 1:
            return None
        return next(iter(held))

    async def apply_role(self, command: RoleCommand) -> None:
        member = await self._get_member(command.account_id)
        target_id = self.role_by_rank.get(command.new_role)
        target = self.guild.get_role(target_id) if target_id else None
        if target is None:
            raise DownstreamApplyFailed(command.account_id, f"no guild role configured for rank {command.new_role.value}")

        stale = [r for r in member.roles if r.id in self.rank_by_role and r.id != target.id]
        reason = f"Clan sync: rank {command.new_role.value}"
        try:
            if stale:
                await member.remove_roles(*stale, reason=reason)
            if all(r.id != target.id for r in member.roles):
                await member.add_roles(target, reason=reason)
        except discord.HTTPException as e:
            raise DownstreamApplyFailed(command.account_id, f"role update failed: {e}") from e
