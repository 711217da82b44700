# =============================================================================
#  Cortana
#  Copyright (C) 2025 Cortana contributors
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================


import discord
from discord.ext import commands
from discord import Option
from discord.errors import Forbidden, HTTPException
from discord import errors as discord_errors
import logging
import random
import time
from typing import Optional
from common.config import CURRENT_VERSION
from common.errors import AlreadyExists, AlreadyRunning, CortanaError, NotFound
from server.fetcher import is_web_uri

logger = logging.getLogger("server")

MESSAGE_LIMIT = 2000

HELP_LINES = [
    "/help - Show this help",
    "/info - Get some basic info about me",
    "/list <url|emoji> - List saved urls or the emoji catalog",
    "/save <name> <url> - Save a new url",
    "/update <name> <url> - Update an existing url",
    "/delete <name> - Delete an existing url",
    "/emoji init - Capture this server's emojis into the catalog",
    "/emoji sync - Replace the emojis of every other server with the catalog",
    "/emoji status - Show whether an emoji sync is running",
    "/<name> - Post a saved url",
    "@Cortana - Say hi",
]


def chunk_lines(lines: list[str], header: str = "", limit: int = MESSAGE_LIMIT) -> list[str]:
    """
    Pack lines into as few messages as fit under Discord's length limit.
    A single over-long line is hard-split.
    """
    chunks: list[str] = []
    current = header
    for line in lines:
        while len(line) > limit:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:limit])
            line = line[limit:]
        candidate = f"{current}\n{line}" if current else line
        if len(candidate) > limit:
            chunks.append(current)
            current = line
        else:
            current = candidate
    if current:
        chunks.append(current)
    return chunks


def format_report(report) -> str:
    if not report.results:
        return "Emoji sync finished: there were no servers to sync."

    lines = [
        f"Emoji sync finished: {len(report.succeeded)} ok, {len(report.failed)} failed."
    ]
    for r in sorted(report.failed, key=lambda r: r.target.name):
        lines.append(f"• **{r.target.name}** (`{r.target.id}`): {r.reason}")
    return "\n".join(lines)


def shortcut_key(content: str) -> Optional[str]:
    """The key of a "/<name>" message, or None for anything else."""
    text = (content or "").strip()
    if not text.startswith("/") or len(text) < 2:
        return None
    key = text[1:].strip()
    if not key or " " in key:
        return None
    return key


async def handle_shortcut(store, message) -> bool:
    """
    Answer "/<name>" with the saved url and remove the trigger message.
    Returns True when the message was handled.
    """
    if getattr(message.author, "bot", False):
        return False
    key = shortcut_key(message.content)
    if key is None:
        return False
    url = store.get(key)
    if not url:
        return False

    await message.channel.send(f"{message.author.mention} - {url}")
    try:
        await message.delete()
    except (Forbidden, HTTPException) as e:
        logger.warning("[⚠️] Could not delete shortcut message %s: %s", message.id, e)
    return True


async def handle_mention(lines: list[str], message, bot_user_id: int) -> bool:
    """
    Answer a message that mentions the bot with a random conversation line,
    sent as text-to-speech. Returns True when the bot was mentioned, even if
    there is nothing to say.
    """
    if getattr(message.author, "bot", False):
        return False
    if not any(u.id == bot_user_id for u in message.mentions):
        return False
    if lines:
        await message.channel.send(
            f"{message.author.mention} {random.choice(lines)}", tts=True
        )
    return True


class CortanaCommands(commands.Cog):
    """
    Slash commands for the url store and the emoji catalog, restricted to
    COMMAND_USERS when that is configured.
    """

    emoji_group = discord.SlashCommandGroup(
        "emoji",
        "Capture and sync the shared emoji set.",
    )

    def __init__(self, bot: commands.Bot):
        self.bot = bot
        self.server = bot.server
        self.config = self.server.config
        self.store = self.server.url_store
        self.catalog = self.server.catalog
        self.replicator = self.server.emojis
        self.platform = self.server.platform
        self.conversation = self.server.conversation
        self.start_time = time.time()

    async def cog_check(self, ctx: commands.Context):
        """
        Global check for all commands in this cog. Logs once per executed
        command, skipping the bare group shell for group commands.
        """
        cmd = ctx.command
        guild_name = ctx.guild.name if ctx.guild else "DM"

        if not self.config.is_command_user(ctx.user.id):
            await ctx.respond(
                "You are not authorized to use this command.", ephemeral=True
            )
            logger.warning(
                f"[⚠️] Unauthorized access: {ctx.user.name} ({ctx.user.id}) attempted to run "
                f"command '{cmd.name if cmd else 'unknown'}' in {guild_name}."
            )
            return False

        if isinstance(cmd, discord.SlashCommandGroup):
            return True

        cmd_name = getattr(cmd, "qualified_name", cmd.name if cmd else "unknown")
        logger.info(
            f"[⚡] {ctx.user.name} ({ctx.user.id}) executed the '{cmd_name}' command in {guild_name}."
        )
        return True

    @commands.Cog.listener()
    async def on_application_command_error(self, interaction, error):
        """
        Unwrap ApplicationCommandInvokeError, ignore failed checks (already
        answered in cog_check) and log everything else with a traceback.
        """
        orig = getattr(error, "original", None)
        err = orig or error

        if isinstance(err, (commands.CheckFailure, discord_errors.CheckFailure)):
            return

        cmd = interaction.command.name if interaction.command else "<unknown>"
        logger.exception(f"Error in command '{cmd}':", exc_info=err)

    @commands.Cog.listener()
    async def on_message(self, message: discord.Message):
        me = self.bot.user
        try:
            if me is not None and await handle_mention(self.conversation, message, me.id):
                return
            await handle_shortcut(self.store, message)
        except HTTPException as e:
            logger.warning("[⚠️] Message reply failed: %s", e)

    async def _respond_chunks(self, ctx, chunks: list[str], ephemeral: bool = False):
        for chunk in chunks:
            await ctx.respond(chunk, ephemeral=ephemeral)

    @commands.slash_command(name="help", description="Show the available commands.")
    async def help(self, ctx: discord.ApplicationContext):
        await ctx.respond("\n".join(HELP_LINES), ephemeral=True)

    @commands.slash_command(name="info", description="Get some basic info about me.")
    async def info(self, ctx: discord.ApplicationContext):
        uptime_seconds = time.time() - self.start_time
        hours, remainder = divmod(int(uptime_seconds), 3600)
        minutes, seconds = divmod(remainder, 60)

        embed = discord.Embed(title="Cortana", description="Use `/help` for more commands.")
        embed.add_field(name="Version", value=CURRENT_VERSION, inline=True)
        embed.add_field(name="Uptime", value=f"{hours}h {minutes}m {seconds}s", inline=True)
        embed.add_field(name="Saved urls", value=str(len(self.store)), inline=True)
        embed.add_field(name="Catalog emojis", value=str(len(self.catalog)), inline=True)
        await ctx.respond(embed=embed, ephemeral=True)

    @commands.slash_command(name="save", description="Save a new url under a name.")
    async def save(
        self,
        ctx: discord.ApplicationContext,
        name: str = Option(str, "Name to save the url as", required=True),
        url: str = Option(str, "http(s) url; images are re-hosted", required=True),
    ):
        if not is_web_uri(url):
            return await ctx.respond("Give me an http(s) URL.", ephemeral=True)

        await ctx.defer()
        try:
            final = await self.store.save(name, url.strip())
        except AlreadyExists as e:
            return await ctx.respond(f"**{e.key}** already exists. Try `/update`.")
        except (CortanaError, ValueError) as e:
            return await ctx.respond(f"Could not save **{name}**: {e}")

        await ctx.respond(f"Learned a new trick: **{self.store.normalize_key(name)}** - <{final}>")

    @commands.slash_command(name="update", description="Point an existing name at a new url.")
    async def update(
        self,
        ctx: discord.ApplicationContext,
        name: str = Option(str, "Existing name", required=True),
        url: str = Option(str, "http(s) url; images are re-hosted", required=True),
    ):
        if not is_web_uri(url):
            return await ctx.respond("Give me an http(s) URL.", ephemeral=True)

        await ctx.defer()
        try:
            final = await self.store.update(name, url.strip())
        except NotFound as e:
            return await ctx.respond(f"**{e.key}** does not exist. Try `/save`.")
        except (CortanaError, ValueError) as e:
            return await ctx.respond(f"Could not update **{name}**: {e}")

        await ctx.respond(f"Updated **{self.store.normalize_key(name)}** - <{final}>")

    @commands.slash_command(name="delete", description="Delete a saved url.")
    async def delete(
        self,
        ctx: discord.ApplicationContext,
        name: str = Option(str, "Name to delete", required=True),
    ):
        try:
            existed = await self.store.delete(name)
        except (CortanaError, ValueError) as e:
            return await ctx.respond(f"Could not delete **{name}**: {e}")

        if existed:
            await ctx.respond(f"Deleted **{self.store.normalize_key(name)}**.")
        else:
            await ctx.respond(f"Nothing saved under **{name}**.", ephemeral=True)

    @commands.slash_command(name="list", description="List saved urls or the emoji catalog.")
    async def list_(
        self,
        ctx: discord.ApplicationContext,
        kind: str = Option(str, "What to list", required=True, choices=["url", "emoji"]),
    ):
        if kind == "url":
            lines = [f"{k} - <{v}>" for k, v in self.store.items()]
            header = "This is what I can show you:"
        else:
            lines = [f"{r.name} - <{r.local_uri}>" for r in self.catalog.snapshot()]
            header = "These are the catalog emojis:"

        if not lines:
            return await ctx.respond("Nothing here yet.", ephemeral=True)
        await self._respond_chunks(ctx, chunk_lines(lines, header=header))

    @emoji_group.command(name="init", description="Capture this server's emojis into the catalog.")
    async def emoji_init(self, ctx: discord.ApplicationContext):
        source_id = self.server.guild_resolver.source_guild_id(ctx.guild.id if ctx.guild else None)
        guild = self.bot.get_guild(source_id) if source_id else None
        if guild is None:
            return await ctx.respond("No source server to capture from.", ephemeral=True)

        await ctx.defer()
        try:
            records = await self.replicator.capture(self.platform.source_resources(guild))
        except AlreadyRunning:
            return await ctx.respond("An emoji sync is already running, try again later.")
        except CortanaError as e:
            logger.error("[⛔] Emoji capture failed: %s", e)
            return await ctx.respond(f"Emoji capture failed, catalog unchanged: {e}")

        await ctx.respond(f"Memorized {len(records)} emojis from **{guild.name}**.")

    @emoji_group.command(name="sync", description="Replace every other server's emojis with the catalog.")
    async def emoji_sync(self, ctx: discord.ApplicationContext):
        if self.replicator.status.running:
            return await ctx.respond("An emoji sync is already running.", ephemeral=True)
        if not len(self.catalog):
            return await ctx.respond("The catalog is empty. Run `/emoji init` first.", ephemeral=True)

        source_id = self.server.guild_resolver.source_guild_id(ctx.guild.id if ctx.guild else None)
        targets = self.platform.list_targets(source_id)

        await ctx.defer()
        try:
            report = await self.replicator.replicate(targets)
        except AlreadyRunning:
            return await ctx.respond("An emoji sync is already running.")
        except CortanaError as e:
            logger.error("[⛔] Emoji sync aborted: %s", e)
            return await ctx.respond(f"Emoji sync aborted: {e}")

        await self._respond_chunks(ctx, chunk_lines(format_report(report).split("\n")))

    @emoji_group.command(name="status", description="Show whether an emoji sync is running.")
    async def emoji_status(self, ctx: discord.ApplicationContext):
        snap = self.replicator.status.snapshot()
        if snap["running"]:
            text = f"An emoji {snap['operation']} is running (run `{snap['run_id']}`)."
        else:
            text = "No emoji sync is running."
        last = self.replicator.status.last_report
        if last is not None:
            text += "\nLast sync: " + format_report(last)
        await ctx.respond(text, ephemeral=True)

    @commands.slash_command(name="debug", description="Download a snapshot file.")
    async def debug(
        self,
        ctx: discord.ApplicationContext,
        which: str = Option(str, "Snapshot to download", required=True, choices=["url", "emoji", "conversation"]),
    ):
        path = {
            "url": self.config.URL_MAP_PATH,
            "emoji": self.config.EMOJI_MAP_PATH,
            "conversation": self.config.CONVERSATION_MAP_PATH,
        }[which]
        if not path.exists():
            return await ctx.respond(f"`{path.name}` does not exist yet.", ephemeral=True)
        await ctx.respond(path.name, file=discord.File(str(path)), ephemeral=True)


def setup(bot: commands.Bot):
    bot.add_cog(CortanaCommands(bot))
