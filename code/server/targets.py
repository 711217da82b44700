# =============================================================================
#  Cortana
#  Copyright (C) 2025 Cortana contributors
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional
import logging

import discord

logger = logging.getLogger("server.targets")


@dataclass(frozen=True)
class Target:
    id: int
    name: str


@dataclass(frozen=True)
class RemoteEmoji:
    id: int
    name: str
    url: str


class DiscordTargetPlatform:
    """
    Emoji operations on guilds the bot is a member of. Targets are looked up
    by id on every call; the platform never holds on to guild objects.
    """

    def __init__(self, bot, guild_resolver):
        self.bot = bot
        self.guild_resolver = guild_resolver

    def _guild(self, target: Target) -> discord.Guild:
        guild = self.bot.get_guild(int(target.id))
        if guild is None:
            raise LookupError(f"guild {target.id} is not available")
        return guild

    def list_targets(self, source_guild_id: Optional[int] = None) -> set[Target]:
        return {
            Target(id=int(g.id), name=g.name)
            for g in self.guild_resolver.target_guilds(source_guild_id)
        }

    def source_resources(self, guild: discord.Guild) -> list[tuple[str, str]]:
        """(name, url) for every custom emoji of ``guild``."""
        return [(e.name, str(e.url)) for e in guild.emojis]

    async def list_remote_resources(self, target: Target) -> list[RemoteEmoji]:
        guild = self._guild(target)
        emojis = await guild.fetch_emojis()
        return [RemoteEmoji(id=int(e.id), name=e.name, url=str(e.url)) for e in emojis]

    async def delete_remote_resource(self, target: Target, emoji_id: int) -> None:
        guild = self._guild(target)
        await guild.delete_emoji(discord.Object(id=int(emoji_id)))

    async def create_remote_resource(self, target: Target, data: bytes, name: str) -> None:
        guild = self._guild(target)
        await guild.create_custom_emoji(name=name, image=data)
