# =============================================================================
#  Cortana
#  Copyright (C) 2025 Cortana contributors
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================


from __future__ import annotations
from typing import Optional


class GuildResolver:
    def __init__(self, bot, config=None):
        self.bot = bot
        self.config = config

    def source_guild_id(self, fallback: Optional[int] = None) -> Optional[int]:
        """
        The guild whose emoji set is canonical. Configured SOURCE_GUILD_ID
        wins over the guild a command was issued from.
        """
        configured = getattr(self.config, "SOURCE_GUILD_ID", None) if self.config else None
        if configured:
            return int(configured)
        return int(fallback) if fallback else None

    def target_guilds(self, source_guild_id: Optional[int] = None) -> list:
        """
        Every guild the bot is in except the source, narrowed to
        TARGET_GUILD_IDS when that is configured.
        """
        allowed = set(getattr(self.config, "TARGET_GUILD_IDS", set()) or set()) if self.config else set()
        source = int(source_guild_id) if source_guild_id else None

        out = []
        for g in list(self.bot.guilds):
            gid = int(g.id)
            if source is not None and gid == source:
                continue
            if allowed and gid not in allowed:
                continue
            out.append(g)
        return out
