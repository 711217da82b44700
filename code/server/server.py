# =============================================================================
#  Cortana
#  Copyright (C) 2025 Cortana contributors
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================


import contextlib
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Optional

import aiohttp
import discord
import uvicorn
from dotenv import load_dotenv

from admin.app import create_app
from common.config import Config, CURRENT_VERSION
from common.errors import PersistFailure
from common.snapshot import load_snapshot
from common.store import MaterializedStore
from server.emoji_catalog import EmojiCatalog
from server.emojis import EmojiReplicator
from server.fetcher import ResourceFetcher
from server.guild_resolver import GuildResolver
from server.targets import DiscordTargetPlatform

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / ".env")

LEVEL_NAME = os.getenv("LOG_LEVEL", "INFO").upper()
LEVEL = getattr(logging, LEVEL_NAME, logging.INFO)

formatter = logging.Formatter(
    "%(asctime)s | %(levelname)-5s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

logger = logging.getLogger("server")


def configure_logging() -> None:
    root = logging.getLogger()
    root.setLevel(LEVEL)

    ch = logging.StreamHandler()
    ch.setFormatter(formatter)
    ch.setLevel(LEVEL)
    root.addHandler(ch)

    for lib in (
        "discord",
        "discord.client",
        "discord.gateway",
        "discord.state",
        "discord.http",
        "uvicorn.access",
    ):
        logging.getLogger(lib).setLevel(logging.WARNING)
    logging.getLogger("discord.client").setLevel(logging.ERROR)

    logger.setLevel(LEVEL)


class ServerReceiver:
    def __init__(self, config: Optional[Config] = None):
        self.config = config or Config(logger=logger)
        try:
            self.config.ensure_dirs()
        except OSError as e:
            logger.error("[⛔] Could not create data directories: %s", e)
            sys.exit(1)

        self.bot = discord.Bot(intents=discord.Intents.all())
        self.bot.server = self

        self.fetcher = ResourceFetcher(
            timeout_seconds=self.config.REMOTE_TIMEOUT_SECONDS
        )
        self.url_store = MaterializedStore(
            self.config.URL_MAP_PATH,
            self.fetcher,
            static_dir=self.config.STATIC_DIR,
            public_base_url=self.config.PUBLIC_BASE_URL,
            subdir="url",
        )
        self.catalog = EmojiCatalog(
            self.config.EMOJI_MAP_PATH,
            self.fetcher,
            static_dir=self.config.STATIC_DIR,
            public_base_url=self.config.PUBLIC_BASE_URL,
            subdir="emoji",
        )
        try:
            self.url_store.load()
            self.catalog.load()
            self.conversation = [
                line
                for line in load_snapshot(self.config.CONVERSATION_MAP_PATH, [])
                if isinstance(line, str) and line.strip()
            ]
        except (OSError, ValueError, PersistFailure) as e:
            logger.error("[⛔] Could not load snapshots: %s", e)
            sys.exit(1)

        self.guild_resolver = GuildResolver(self.bot, self.config)
        self.platform = DiscordTargetPlatform(self.bot, self.guild_resolver)
        self.emojis = EmojiReplicator(
            self.platform,
            self.catalog,
            timeout_seconds=self.config.REMOTE_TIMEOUT_SECONDS,
        )

        self.session: aiohttp.ClientSession = None
        self._admin_server: Optional[uvicorn.Server] = None
        self._admin_task: Optional[asyncio.Task] = None

        self.bot.event(self.on_ready)
        self.bot.load_extension("server.commands")

    async def on_ready(self):
        logger.info(
            "[🤖] Logged in as %s (%s) in %d guilds",
            self.bot.user,
            CURRENT_VERSION,
            len(self.bot.guilds),
        )
        if not self.config.COMMAND_USERS:
            logger.warning("[⚠️] COMMAND_USERS is empty; everyone may run commands.")

    def _build_admin_server(self) -> uvicorn.Server:
        app = create_app(
            sync_status=self.emojis.status.view(),
            url_store=self.url_store,
            catalog=self.catalog,
            static_dir=self.config.STATIC_DIR,
        )
        cfg = uvicorn.Config(
            app,
            host=self.config.ADMIN_HOST,
            port=self.config.ADMIN_PORT,
            log_level="warning",
        )
        return uvicorn.Server(cfg)

    async def _main(self):
        async with aiohttp.ClientSession() as session:
            self.session = session
            self.fetcher.set_session(session)

            self._admin_server = self._build_admin_server()
            self._admin_task = asyncio.create_task(self._admin_server.serve())
            logger.info(
                "[🌐] Serving files and status on %s:%s (public %s)",
                self.config.ADMIN_HOST,
                self.config.ADMIN_PORT,
                self.config.PUBLIC_BASE_URL,
            )

            try:
                await self.bot.start(self.config.SERVER_TOKEN)
            finally:
                if not self.bot.is_closed():
                    await self.bot.close()
                self._admin_server.should_exit = True
                with contextlib.suppress(asyncio.CancelledError):
                    await self._admin_task

    def run(self):
        if not self.config.SERVER_TOKEN:
            logger.error("[⛔] SERVER_TOKEN is not set.")
            sys.exit(1)
        try:
            asyncio.run(self._main())
        except KeyboardInterrupt:
            logger.info("[👋] Shutting down.")


def main():
    configure_logging()
    ServerReceiver().run()


if __name__ == "__main__":
    main()
