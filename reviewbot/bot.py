from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import discord
from discord import app_commands
from discord.ext import commands

from .config import BotConfig, load_config
from .errors import ReviewError
from .health import HealthServer
from .models import SqliteIdentityStore
from .platform import DiscordPlatform, thread_info
from .service import ReviewService

# Default to INFO until the configured level is applied at startup
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
)
LOGGER = logging.getLogger(__name__)

GENERIC_FAILURE = "There was an error processing your request."

CLOSE_RE = re.compile(r"^close_review_(\d+)$")
UPDATE_RE = re.compile(r"^update_thread_([a-z0-9-]+)_([a-z0-9-]+)_(\d+)$")
CANCEL_RE = re.compile(r"^cancel_update_(\d+)$")


@dataclass(frozen=True)
class ButtonAction:
    kind: str
    owner_id: Optional[int] = None
    old_category: Optional[str] = None
    new_category: Optional[str] = None


def parse_custom_id(custom_id: str) -> Optional[ButtonAction]:
    if custom_id == "open_review":
        return ButtonAction("open")
    match = CLOSE_RE.match(custom_id)
    if match:
        return ButtonAction("close", int(match.group(1)))
    match = UPDATE_RE.match(custom_id)
    if match:
        return ButtonAction("update", int(match.group(3)), match.group(1), match.group(2))
    match = CANCEL_RE.match(custom_id)
    if match:
        return ButtonAction("cancel", int(match.group(1)))
    return None


def role_ids(member: discord.abc.User | None) -> frozenset[int]:
    roles = getattr(member, "roles", None) or []
    return frozenset(role.id for role in roles)


def is_admin(member: discord.abc.User | None) -> bool:
    perms = getattr(member, "guild_permissions", None)
    return bool(perms and perms.administrator)


class ReviewBot(commands.Bot):
    def __init__(self, config: BotConfig):
        intents = discord.Intents.default()
        intents.members = True
        intents.guilds = True
        intents.message_content = True
        super().__init__(command_prefix="!", intents=intents)
        self.config = config
        self.platform = DiscordPlatform(self, config.guild_id)
        self.store = SqliteIdentityStore.open(config.name_database_path)
        self.service = ReviewService(config, self.platform, self.store, board=self.platform)
        self.reconcile_task: asyncio.Task[None] | None = None
        self.health: HealthServer | None = None
        if config.health.enabled:
            self.health = HealthServer(
                discord_ready=lambda: self.is_ready() and not self.is_closed(),
                store_ping=self.store.ping,
                host=config.health.host,
                port=config.health.port,
            )
        self._bootstrapped = False

    async def close(self) -> None:
        if self.reconcile_task:
            self.reconcile_task.cancel()
            try:
                await self.reconcile_task
            except asyncio.CancelledError:
                pass
        await self.service.close()
        if self.health:
            await self.health.stop()
        await super().close()
        await self.platform.close()
        self.store.close()

    async def setup_hook(self) -> None:
        await self.tree.sync()
        await self._start_workers()

    async def _start_workers(self):
        if self.reconcile_task:
            return
        self.reconcile_task = self.loop.create_task(self._reconcile_loop())
        if self.health:
            await self.health.start()

    async def _reconcile_loop(self):
        await self.wait_until_ready()
        interval = self.config.timing.reconcile_interval_seconds
        while not self.is_closed():
            await asyncio.sleep(interval)
            try:
                await self.service.sweeper.run_cycle()
                self.service.names.prune()
            except Exception as exc:
                LOGGER.exception("Reconciliation cycle failed: %s", exc)

    async def on_ready(self):
        LOGGER.info("Bot ready as %s", self.user)
        if self._bootstrapped:
            return
        self._bootstrapped = True
        try:
            count = await self.service.startup()
            LOGGER.info("Tracking %s review thread(s)", count)
        except Exception as exc:
            LOGGER.exception("Failed to rebuild review registry: %s", exc)
        if self.config.open_review_channel_id:
            try:
                await self.platform.ensure_open_prompt(self.config.open_review_channel_id)
            except Exception as exc:
                LOGGER.warning("Failed to post open-review prompt: %s", exc)

    def _ours(self, guild: discord.Guild | None) -> bool:
        return guild is not None and guild.id == self.config.guild_id

    async def on_member_update(self, before: discord.Member, after: discord.Member):
        if not self._ours(after.guild):
            return
        old, new = role_ids(before), role_ids(after)
        if old == new:
            return
        try:
            await self.service.on_member_roles_changed(after.id, old, new)
        except Exception as exc:
            LOGGER.exception("Error handling role update for %s: %s", after.id, exc)

    async def on_member_remove(self, member: discord.Member):
        if not self._ours(member.guild):
            return
        await self.service.on_member_left(member.id, str(member))

    async def on_member_join(self, member: discord.Member):
        if not self._ours(member.guild):
            return
        await self.service.on_member_joined(member.id, str(member), role_ids(member))

    async def on_raw_thread_delete(self, payload: discord.RawThreadDeleteEvent):
        if payload.guild_id != self.config.guild_id:
            return
        self.service.on_thread_deleted(payload.thread_id)

    async def on_thread_update(self, before: discord.Thread, after: discord.Thread):
        if not self._ours(after.guild):
            return
        actor_id = None
        if before.name != after.name or before.archived != after.archived:
            actor_id = await self._thread_update_actor(after)
        try:
            await self.service.on_thread_update(thread_info(before), thread_info(after), actor_id)
        except Exception as exc:
            LOGGER.exception("Error handling update of thread %s: %s", after.id, exc)

    async def _thread_update_actor(self, thread: discord.Thread) -> Optional[int]:
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=30)
        try:
            async for entry in thread.guild.audit_logs(
                limit=5, action=discord.AuditLogAction.thread_update
            ):
                target = getattr(entry.target, "id", None)
                if target == thread.id and entry.created_at >= cutoff and entry.user:
                    return entry.user.id
        except discord.Forbidden:
            LOGGER.warning("Missing audit log access to identify who changed thread %s", thread.id)
        return None


async def _reply(interaction: discord.Interaction, message: str) -> None:
    if interaction.response.is_done():
        await interaction.followup.send(message, ephemeral=True)
    else:
        await interaction.response.send_message(message, ephemeral=True)


async def handle_button(bot: ReviewBot, interaction: discord.Interaction, action: ButtonAction):
    service = bot.service
    user = interaction.user
    await interaction.response.defer(ephemeral=True, thinking=True)
    try:
        if action.kind == "open":
            message = await service.press_open(user.id, role_ids(user))
        elif action.kind == "close":
            message = await service.press_close(
                action.owner_id, user.id, role_ids(user), is_admin(user)
            )
        elif action.kind == "update":
            message = await service.press_update(
                action.owner_id,
                user.id,
                action.old_category,
                action.new_category,
                role_ids(user),
            )
        else:
            message = service.press_cancel(action.owner_id, user.id)
            if interaction.message is not None:
                try:
                    await interaction.message.delete()
                except discord.HTTPException as exc:
                    LOGGER.warning("Failed to remove update prompt: %s", exc)
    except ReviewError as exc:
        message = exc.user_message
    except Exception:
        LOGGER.exception("Button %s failed for %s", action.kind, user.id)
        message = GENERIC_FAILURE
    await interaction.followup.send(message, ephemeral=True)


# Command registrations
async def setup_commands(bot: ReviewBot):
    tree = bot.tree
    service = bot.service

    async def require_guild(interaction: discord.Interaction) -> bool:
        if interaction.guild is None or interaction.guild.id != bot.config.guild_id:
            await interaction.response.send_message(
                "Commands must be used inside the review server.", ephemeral=True
            )
            return False
        return True

    @bot.listen("on_interaction")
    async def log_app_command(interaction: discord.Interaction):
        if interaction.type != discord.InteractionType.application_command:
            return
        cmd = interaction.command
        data = getattr(interaction, "namespace", None)
        try:
            payload = vars(data) if data else {}
        except TypeError:
            payload = str(data)
        LOGGER.info(
            "Slash command %s by %s (%s) with options %s",
            cmd.qualified_name if cmd else "unknown",
            interaction.user,
            interaction.user.id,
            payload,
        )

    @bot.listen("on_interaction")
    async def dispatch_button(interaction: discord.Interaction):
        if interaction.type != discord.InteractionType.component:
            return
        custom_id = (interaction.data or {}).get("custom_id", "")
        action = parse_custom_id(custom_id)
        if action is None:
            return
        await handle_button(bot, interaction, action)

    @tree.error
    async def on_app_command_error(
        interaction: discord.Interaction, error: app_commands.AppCommandError
    ):
        if isinstance(error, app_commands.CheckFailure):
            if not interaction.response.is_done():
                await interaction.response.send_message(
                    "You need Administrator permission to use this command.",
                    ephemeral=True,
                )
            return
        original = getattr(error, "original", error)
        if isinstance(original, ReviewError):
            message = original.user_message
        else:
            LOGGER.exception("App command error: %s", error)
            message = GENERIC_FAILURE
        try:
            await _reply(interaction, message)
        except discord.HTTPException as exc:
            LOGGER.warning("Failed sending error response for command: %s", exc)

    @tree.command(name="checkthread", description="Check and repair this review thread now")
    @app_commands.default_permissions(administrator=True)
    @app_commands.checks.has_permissions(administrator=True)
    async def checkthread(interaction: discord.Interaction):
        if not await require_guild(interaction):
            return
        await interaction.response.defer(ephemeral=True, thinking=True)
        message = await service.check_thread(interaction.channel_id)
        await interaction.followup.send(message, ephemeral=True)

    @tree.command(
        name="cleanthreads",
        description="Close review threads of members without a guild role",
    )
    @app_commands.default_permissions(administrator=True)
    @app_commands.checks.has_permissions(administrator=True)
    async def cleanthreads(interaction: discord.Interaction):
        if not await require_guild(interaction):
            return
        await interaction.response.defer(ephemeral=True, thinking=True)

        async def progress(done: int, total: int):
            await interaction.edit_original_response(
                content=f"Processing threads... {done}/{total}"
            )

        report = await service.clean_threads(progress)
        await interaction.edit_original_response(content=report.summary())

    @tree.command(
        name="unreviewed",
        description="List guild members without an open review thread",
    )
    @app_commands.default_permissions(administrator=True)
    @app_commands.checks.has_permissions(administrator=True)
    async def unreviewed(interaction: discord.Interaction):
        if not await require_guild(interaction):
            return
        await interaction.response.defer(ephemeral=True, thinking=True)
        chunks = await service.unreviewed()
        if not chunks:
            await interaction.followup.send(
                "All guild members have active review threads! 🎉", ephemeral=True
            )
            return
        await interaction.followup.send(
            "**Guild members without review threads:**", ephemeral=True
        )
        for chunk in chunks:
            await interaction.followup.send(
                chunk, ephemeral=True, allowed_mentions=discord.AllowedMentions.none()
            )

    @tree.command(name="setname", description="Set your in-game name")
    @app_commands.describe(name="Your in-game name")
    async def setname(interaction: discord.Interaction, name: str):
        if not await require_guild(interaction):
            return
        await interaction.response.defer(ephemeral=True, thinking=True)
        message = await service.set_name(interaction.user.id, name, role_ids(interaction.user))
        await interaction.followup.send(message, ephemeral=True)


async def main():
    bot_config = load_config()
    logging.getLogger().setLevel(bot_config.log_level)
    LOGGER.setLevel(bot_config.log_level)
    bot = ReviewBot(bot_config)
    await setup_commands(bot)
    await bot.start(bot_config.token)


if __name__ == "__main__":
    asyncio.run(main())
