from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, Protocol, Sequence

import aiohttp
import discord

from .embeds import EMBED_COLOR, SummaryPage, footer_prefix
from .errors import ThreadMissing

LOGGER = logging.getLogger(__name__)

MESSAGE_LIMIT = 2000
PRIVATE_THREAD_ARCHIVE_MINUTES = 10080
UPDATE_PROMPT_PREFIX = "update_thread_"


@dataclass(frozen=True)
class ThreadInfo:
    id: int
    parent_id: int
    name: str
    archived: bool = False
    locked: bool = False


@dataclass(frozen=True)
class AttachmentInfo:
    url: str
    filename: str


@dataclass(frozen=True)
class MessageInfo:
    id: int
    author_id: int
    author_label: str
    content: str
    attachments: tuple[AttachmentInfo, ...] = field(default_factory=tuple)
    system: bool = False


class ThreadPlatform(Protocol):
    """What the review core needs from the chat platform.

    Every call may fail; callers retry the idempotent ones.
    """

    @property
    def self_id(self) -> int: ...

    async def fetch_thread(self, thread_id: int) -> Optional[ThreadInfo]: ...

    async def create_thread(self, channel_id: int, name: str) -> ThreadInfo: ...

    async def delete_thread(self, thread_id: int) -> None: ...

    async def set_archived(self, thread_id: int, archived: bool) -> None: ...

    async def set_locked(self, thread_id: int, locked: bool) -> None: ...

    async def rename_thread(self, thread_id: int, name: str) -> None: ...

    async def list_threads(self, channel_id: int) -> List[ThreadInfo]: ...

    async def fetch_thread_members(self, thread_id: int) -> set[int]: ...

    async def add_thread_member(self, thread_id: int, user_id: int) -> None: ...

    async def remove_thread_member(self, thread_id: int, user_id: int) -> None: ...

    async def fetch_messages(self, thread_id: int) -> List[MessageInfo]: ...

    async def send_message(
        self,
        channel_id: int,
        content: str,
        attachments: Sequence[AttachmentInfo] = (),
        mention_user_ids: Iterable[int] = (),
    ) -> None: ...

    async def send_close_prompt(self, thread_id: int, owner_id: int) -> None: ...

    async def send_update_prompt(
        self, thread_id: int, old_category: str, new_category: str, owner_id: int
    ) -> None: ...

    async def has_update_prompt(self, thread_id: int) -> bool: ...

    async def fetch_member_roles(self, user_id: int) -> Optional[frozenset[int]]: ...

    async def fetch_role_holders(self, role_id: int) -> set[int]: ...

    async def display_name(self, user_id: int) -> Optional[str]: ...

    async def add_role(self, user_id: int, role_id: int, reason: str) -> None: ...

    async def remove_role(self, user_id: int, role_id: int, reason: str) -> None: ...


def _chunks(content: str, limit: int = MESSAGE_LIMIT) -> List[str]:
    if len(content) <= limit:
        return [content]
    return [content[i : i + limit] for i in range(0, len(content), limit)]


def thread_info(thread: discord.Thread) -> ThreadInfo:
    return ThreadInfo(
        id=thread.id,
        parent_id=thread.parent_id,
        name=thread.name,
        archived=bool(thread.archived),
        locked=bool(thread.locked),
    )


def close_prompt_view(owner_id: int) -> discord.ui.View:
    view = discord.ui.View(timeout=None)
    view.add_item(
        discord.ui.Button(
            label="Close Review",
            style=discord.ButtonStyle.danger,
            custom_id=f"close_review_{owner_id}",
        )
    )
    return view


def update_prompt_view(old_category: str, new_category: str, owner_id: int) -> discord.ui.View:
    view = discord.ui.View(timeout=None)
    view.add_item(
        discord.ui.Button(
            label="Update Thread Name" if old_category == new_category else "Move Thread",
            style=discord.ButtonStyle.primary,
            custom_id=f"{UPDATE_PROMPT_PREFIX}{old_category}_{new_category}_{owner_id}",
        )
    )
    view.add_item(
        discord.ui.Button(
            label="Cancel",
            style=discord.ButtonStyle.secondary,
            custom_id=f"cancel_update_{owner_id}",
        )
    )
    return view


def open_prompt_view() -> discord.ui.View:
    view = discord.ui.View(timeout=None)
    view.add_item(
        discord.ui.Button(
            label="Open Review",
            style=discord.ButtonStyle.primary,
            custom_id="open_review",
        )
    )
    return view


class DiscordPlatform:
    """``ThreadPlatform`` on top of a discord.py client for a single guild."""

    def __init__(
        self,
        client: discord.Client,
        guild_id: int,
        session: aiohttp.ClientSession | None = None,
    ):
        self.client = client
        self.guild_id = guild_id
        self._session = session
        self._owns_session = session is None

    async def close(self):
        if self._owns_session and self._session:
            await self._session.close()

    @property
    def self_id(self) -> int:
        user = self.client.user
        return user.id if user else 0

    @property
    def guild(self) -> discord.Guild:
        guild = self.client.get_guild(self.guild_id)
        if guild is None:
            raise RuntimeError(f"Guild {self.guild_id} unavailable")
        return guild

    async def _thread(self, thread_id: int) -> Optional[discord.Thread]:
        thread = self.guild.get_thread(thread_id)
        if thread is not None:
            return thread
        try:
            channel = await self.client.fetch_channel(thread_id)
        except discord.NotFound:
            return None
        return channel if isinstance(channel, discord.Thread) else None

    async def _require_thread(self, thread_id: int) -> discord.Thread:
        thread = await self._thread(thread_id)
        if thread is None:
            raise ThreadMissing(f"Thread {thread_id} not found")
        return thread

    async def _messageable(self, channel_id: int) -> Any:
        channel = self.guild.get_channel_or_thread(channel_id)
        if channel is None:
            channel = await self.client.fetch_channel(channel_id)
        return channel

    async def fetch_thread(self, thread_id: int) -> Optional[ThreadInfo]:
        thread = await self._thread(thread_id)
        return thread_info(thread) if thread else None

    async def create_thread(self, channel_id: int, name: str) -> ThreadInfo:
        channel = await self._messageable(channel_id)
        thread = await channel.create_thread(
            name=name,
            auto_archive_duration=PRIVATE_THREAD_ARCHIVE_MINUTES,
            type=discord.ChannelType.private_thread,
            invitable=False,
        )
        return thread_info(thread)

    async def delete_thread(self, thread_id: int) -> None:
        thread = await self._thread(thread_id)
        if thread is None:
            return
        try:
            await thread.delete()
        except discord.NotFound:
            pass

    async def set_archived(self, thread_id: int, archived: bool) -> None:
        thread = await self._require_thread(thread_id)
        await thread.edit(archived=archived)

    async def set_locked(self, thread_id: int, locked: bool) -> None:
        thread = await self._require_thread(thread_id)
        await thread.edit(locked=locked)

    async def rename_thread(self, thread_id: int, name: str) -> None:
        thread = await self._require_thread(thread_id)
        await thread.edit(name=name)

    async def list_threads(self, channel_id: int) -> List[ThreadInfo]:
        channel = await self._messageable(channel_id)
        threads = {
            thread.id: thread_info(thread)
            for thread in await self.guild.active_threads()
            if thread.parent_id == channel_id
        }
        async for thread in channel.archived_threads(private=True, limit=None):
            threads.setdefault(thread.id, thread_info(thread))
        return list(threads.values())

    async def fetch_thread_members(self, thread_id: int) -> set[int]:
        thread = await self._require_thread(thread_id)
        return {member.id for member in await thread.fetch_members()}

    async def add_thread_member(self, thread_id: int, user_id: int) -> None:
        thread = await self._require_thread(thread_id)
        await thread.add_user(discord.Object(id=user_id))

    async def remove_thread_member(self, thread_id: int, user_id: int) -> None:
        thread = await self._require_thread(thread_id)
        await thread.remove_user(discord.Object(id=user_id))

    async def fetch_messages(self, thread_id: int) -> List[MessageInfo]:
        thread = await self._require_thread(thread_id)
        messages: List[MessageInfo] = []
        async for message in thread.history(limit=None, oldest_first=True):
            messages.append(
                MessageInfo(
                    id=message.id,
                    author_id=message.author.id,
                    author_label=str(message.author),
                    content=message.content or "",
                    attachments=tuple(
                        AttachmentInfo(url=a.url, filename=a.filename)
                        for a in message.attachments
                    ),
                    system=message.is_system(),
                )
            )
        return messages

    async def _download(self, attachment: AttachmentInfo) -> discord.File:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        async with self._session.get(attachment.url) as resp:
            resp.raise_for_status()
            data = await resp.read()
        return discord.File(io.BytesIO(data), filename=attachment.filename)

    async def send_message(
        self,
        channel_id: int,
        content: str,
        attachments: Sequence[AttachmentInfo] = (),
        mention_user_ids: Iterable[int] = (),
    ) -> None:
        channel = await self._messageable(channel_id)
        files = [await self._download(a) for a in attachments]
        mentions = list(mention_user_ids)
        allowed = (
            discord.AllowedMentions(
                everyone=False,
                roles=False,
                users=[discord.Object(id=uid) for uid in mentions],
            )
            if mentions
            else discord.AllowedMentions.none()
        )
        parts = _chunks(content or "")
        for index, part in enumerate(parts):
            last = index == len(parts) - 1
            await channel.send(
                content=part or None,
                files=files if last and files else discord.utils.MISSING,
                allowed_mentions=allowed,
            )

    async def send_close_prompt(self, thread_id: int, owner_id: int) -> None:
        thread = await self._require_thread(thread_id)
        await thread.send(
            content="Click the button below to close this review thread:",
            view=close_prompt_view(owner_id),
        )

    async def send_update_prompt(
        self, thread_id: int, old_category: str, new_category: str, owner_id: int
    ) -> None:
        thread = await self._require_thread(thread_id)
        verb = "rename" if old_category == new_category else "move"
        await thread.send(
            content=(
                f"Weapon role change detected! Would you like to {verb} this thread "
                f"to match your new role?\n\nFrom: {old_category}\nTo: {new_category}"
            ),
            view=update_prompt_view(old_category, new_category, owner_id),
        )

    async def has_update_prompt(self, thread_id: int) -> bool:
        thread = await self._require_thread(thread_id)
        async for message in thread.history(limit=10):
            if message.author.id != self.self_id:
                continue
            for row in message.components:
                for component in getattr(row, "children", []):
                    custom_id = getattr(component, "custom_id", None) or ""
                    if custom_id.startswith(UPDATE_PROMPT_PREFIX):
                        return True
        return False

    async def ensure_open_prompt(self, channel_id: int) -> None:
        channel = await self._messageable(channel_id)
        marker = "Click the button below to open a review thread:"
        async for message in channel.history(limit=100):
            if message.author.id == self.self_id and marker in (message.content or ""):
                return
        await channel.send(content=marker, view=open_prompt_view())

    async def _member(self, user_id: int) -> Optional[discord.Member]:
        try:
            return await self.guild.fetch_member(user_id)
        except discord.NotFound:
            return None

    async def fetch_member_roles(self, user_id: int) -> Optional[frozenset[int]]:
        member = await self._member(user_id)
        if member is None:
            return None
        return frozenset(role.id for role in member.roles)

    async def fetch_role_holders(self, role_id: int) -> set[int]:
        role = self.guild.get_role(role_id)
        if role is None:
            LOGGER.warning("Role %s not found in guild %s", role_id, self.guild_id)
            return set()
        return {member.id for member in role.members}

    async def display_name(self, user_id: int) -> Optional[str]:
        member = self.guild.get_member(user_id) or await self._member(user_id)
        return member.display_name if member else None

    async def add_role(self, user_id: int, role_id: int, reason: str) -> None:
        member = self.guild.get_member(user_id) or await self._member(user_id)
        if member is None:
            return
        await member.add_roles(discord.Object(id=role_id), reason=reason)

    async def remove_role(self, user_id: int, role_id: int, reason: str) -> None:
        member = self.guild.get_member(user_id) or await self._member(user_id)
        if member is None:
            return
        await member.remove_roles(discord.Object(id=role_id), reason=reason)

    async def _summary_messages(self, channel_id: int, category: str) -> List[discord.Message]:
        channel = await self._messageable(channel_id)
        prefix = footer_prefix(category)
        found = []
        async for message in channel.history(limit=20):
            if message.author.id != self.self_id or not message.embeds:
                continue
            footer = message.embeds[0].footer.text or ""
            if footer == prefix or footer.startswith(f"{prefix} •"):
                found.append(message)
        found.sort(key=lambda m: m.created_at)
        return found

    async def current_pages(self, channel_id: int, category: str) -> List[SummaryPage]:
        pages = []
        for message in await self._summary_messages(channel_id, category):
            embed = message.embeds[0]
            pages.append(
                SummaryPage(
                    title=embed.title or "",
                    description=embed.description or "",
                    footer=embed.footer.text or "",
                )
            )
        return pages

    async def replace_pages(
        self, channel_id: int, category: str, pages: Sequence[SummaryPage]
    ) -> None:
        channel = await self._messageable(channel_id)
        for message in await self._summary_messages(channel_id, category):
            try:
                await message.delete()
            except discord.NotFound:
                pass
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
        for page in pages:
            embed = discord.Embed(title=page.title, description=page.description, color=EMBED_COLOR)
            embed.set_footer(text=f"{page.footer} • Last updated: {stamp}")
            await channel.send(embed=embed)
