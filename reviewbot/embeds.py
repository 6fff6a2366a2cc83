from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, List, Optional, Protocol, Sequence

from .classifier import RoleClassifier
from .config import CategoryDefinition
from .names import NameResolver
from .registry import ReviewRegistry
from .retry import retry_operation

if TYPE_CHECKING:
    from .platform import ThreadPlatform

LOGGER = logging.getLogger(__name__)

SECTION_LIMIT = 2000
EMBED_LIMIT = 4000
EMBED_COLOR = 0x2B2D31
NO_GUILD_SECTION = "No Longer In Guild"
NEEDS_MIGRATION_SECTION = "Needs Migration"


@dataclass(frozen=True)
class SummaryEntry:
    user_id: int
    thread_id: int
    name: str
    bucket_label: Optional[str]
    in_guild: bool = True


@dataclass(frozen=True)
class SummaryPage:
    title: str
    description: str
    footer: str


class SummaryBoard(Protocol):
    async def current_pages(self, channel_id: int, category: str) -> List[SummaryPage]: ...

    async def replace_pages(
        self, channel_id: int, category: str, pages: Sequence[SummaryPage]
    ) -> None: ...


def footer_prefix(category: str) -> str:
    return f"Review List • {category}"


def entry_line(entry: SummaryEntry, guild_id: int) -> str:
    return f"• [{entry.name}](https://discord.com/channels/{guild_id}/{entry.thread_id})"


def group_entries(
    entries: Iterable[SummaryEntry],
    category: CategoryDefinition,
) -> List[tuple[str, List[SummaryEntry]]]:
    """Bucket sections in configured order, then members without a guild, then
    reviews whose owner no longer holds a bucket role of this category."""
    by_label: dict[str, List[SummaryEntry]] = {b.label: [] for b in category.buckets}
    no_guild: List[SummaryEntry] = []
    needs_migration: List[SummaryEntry] = []
    for entry in entries:
        if not entry.in_guild:
            no_guild.append(entry)
        elif entry.bucket_label is None or entry.bucket_label not in by_label:
            needs_migration.append(entry)
        else:
            by_label[entry.bucket_label].append(entry)

    def ordered(items: List[SummaryEntry]) -> List[SummaryEntry]:
        return sorted(items, key=lambda e: (e.name.casefold(), e.user_id))

    groups = [(label, ordered(items)) for label, items in by_label.items() if items]
    if no_guild:
        groups.append((NO_GUILD_SECTION, ordered(no_guild)))
    if needs_migration:
        groups.append((NEEDS_MIGRATION_SECTION, ordered(needs_migration)))
    return groups


def split_section(name: str, lines: List[str], limit: int = SECTION_LIMIT) -> List[tuple[str, List[str]]]:
    header = len(f"**{name}**\n")
    chunks: List[List[str]] = []
    current: List[str] = []
    size = 0
    for line in lines:
        line_size = len(line) + 1
        if current and size + line_size + header > limit:
            chunks.append(current)
            current, size = [], 0
        current.append(line)
        size += line_size
    if current:
        chunks.append(current)
    if len(chunks) == 1:
        return [(name, chunks[0])]
    return [(f"{name} ({i}/{len(chunks)})", chunk) for i, chunk in enumerate(chunks, start=1)]


def render_summary(
    category: CategoryDefinition,
    entries: Iterable[SummaryEntry],
    guild_id: int,
) -> List[SummaryPage]:
    base_title = f"{category.name.capitalize()} Review Threads"
    prefix = footer_prefix(category.name)
    sections: List[str] = []
    for name, items in group_entries(entries, category):
        lines = [entry_line(e, guild_id) for e in items]
        for section_name, chunk in split_section(name, lines):
            sections.append(f"**{section_name}**\n" + "\n".join(chunk))

    if not sections:
        return [SummaryPage(title=base_title, description="No active review threads", footer=prefix)]

    bodies: List[str] = []
    current = ""
    for section in sections:
        block = section + "\n\n"
        if current and len(current) + len(block) > EMBED_LIMIT:
            bodies.append(current)
            current = ""
        current += block
    if current:
        bodies.append(current)

    total = len(bodies)
    if total == 1:
        return [SummaryPage(title=base_title, description=bodies[0].strip(), footer=prefix)]
    return [
        SummaryPage(
            title=f"{base_title} ({index}/{total})",
            description=body.strip(),
            footer=f"{prefix} • Part {index}/{total}",
        )
        for index, body in enumerate(bodies, start=1)
    ]


def same_pages(current: Sequence[SummaryPage], wanted: Sequence[SummaryPage]) -> bool:
    if len(current) != len(wanted):
        return False
    return all(
        a.title == b.title and a.description == b.description for a, b in zip(current, wanted)
    )


class SummaryPublisher:
    """Renders a category's open reviews and replaces the posted summary when
    its content changed."""

    def __init__(
        self,
        platform: ThreadPlatform,
        board: SummaryBoard,
        registry: ReviewRegistry,
        classifier: RoleClassifier,
        names: NameResolver,
        guild_id: int,
        attempts: int = 3,
        retry_delay: float = 1.0,
    ):
        self.platform = platform
        self.board = board
        self.registry = registry
        self.classifier = classifier
        self.names = names
        self.guild_id = guild_id
        self.attempts = attempts
        self.retry_delay = retry_delay

    async def entries(self, category: CategoryDefinition) -> List[SummaryEntry]:
        entries: List[SummaryEntry] = []
        for record in self.registry.snapshot(category.name):
            if not record.active:
                continue
            roles = await self.platform.fetch_member_roles(record.user_id)
            if roles is None:
                continue
            name = await self.names.display_name(record.user_id, self.platform.display_name)
            if name is None:
                LOGGER.warning(
                    "Failed to fetch in-game name for %s, skipping in summary", record.user_id
                )
                continue
            bucket = self.classifier.owner_bucket(category, roles)
            entries.append(
                SummaryEntry(
                    user_id=record.user_id,
                    thread_id=record.thread_id,
                    name=name,
                    bucket_label=bucket.label if bucket else None,
                    in_guild=self.classifier.guild_affiliation(roles) is not None,
                )
            )
        return entries

    async def publish(self, category_name: str) -> bool:
        """Returns ``True`` when the posted summary was replaced."""
        category = self.classifier.category(category_name)
        if category is None:
            LOGGER.warning("Summary requested for unknown category %s", category_name)
            return False
        pages = render_summary(category, await self.entries(category), self.guild_id)
        current = await retry_operation(
            lambda: self.board.current_pages(category.channel_id, category.name),
            attempts=self.attempts,
            delay=self.retry_delay,
            label=f"fetch {category.name} summary",
        )
        if same_pages(current, pages):
            LOGGER.debug("Skipping %s summary update, content unchanged", category.name)
            return False
        await self.board.replace_pages(category.channel_id, category.name, pages)
        LOGGER.info("Updated %s summary (%s page(s))", category.name, len(pages))
        return True
