from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass
from typing import AbstractSet, Callable, List, Optional

from .classifier import Classification, RoleClassifier
from .config import CategoryDefinition
from .errors import (
    MigrationError,
    NameLookupFailed,
    NameNotSet,
    PermissionDenied,
    ReviewNotFound,
)
from .guard import InFlightDeletions, PendingOperations
from .membership import MembershipReconciler
from .names import NameResolver
from .platform import MessageInfo, ThreadInfo, ThreadPlatform
from .registry import ReviewRecord, ReviewRegistry, format_thread_name, parse_bucket_label
from .retry import retry_operation

LOGGER = logging.getLogger(__name__)

MIGRATED_RE = re.compile(r"^💬 \*\*(.+?)\*\*: (.*)$", re.DOTALL)
MIGRATION_START = "🔄 Starting migration..."


def migrated_line(author: str, content: str) -> str:
    return f"💬 **{author}**: {content}"


class OpenOutcome(enum.Enum):
    CREATED = "created"
    REOPENED = "reopened"
    READDED = "readded"
    ALREADY_OPEN = "already_open"


@dataclass(frozen=True)
class OpenResult:
    outcome: OpenOutcome
    thread_id: int

    @property
    def message(self) -> str:
        link = f"<#{self.thread_id}>"
        if self.outcome is OpenOutcome.CREATED:
            return f"New review thread created: {link}"
        if self.outcome is OpenOutcome.REOPENED:
            return f"Your review thread has been reopened: {link}"
        if self.outcome is OpenOutcome.READDED:
            return f"You were re-added to your existing review thread: {link}"
        return f"You already have an active review thread: {link}"


class CloseOutcome(enum.Enum):
    CLOSED = "closed"
    ALREADY_CLOSED = "already_closed"


@dataclass
class MigrationResult:
    thread_id: int
    migrated: int = 0
    total: int = 0
    failed_attachments: int = 0
    attachment_mismatch: bool = False
    old_thread_deleted: bool = False

    def summary(self, old_category: str, new_category: str) -> str:
        lines = [
            "✅ Migration complete!",
            f"• {self.migrated}/{self.total} messages transferred",
        ]
        if self.failed_attachments:
            lines.append(
                f"• ⚠️ {self.failed_attachments} attachments could not be transferred "
                "(URLs included in messages)"
            )
        lines.append(f"• Review moved from {old_category} to {new_category}")
        return "\n".join(lines)


@dataclass
class _CopyStats:
    migrated: int = 0
    total: int = 0
    failed_attachments: int = 0
    source_attachments: int = 0


class ThreadLifecycle:
    """Opens, reopens, migrates, renames and closes review threads.

    Every user-facing operation claims the user's pending marker first, so a
    second click while one is running fails fast with ``OperationInProgress``.
    The registry is only written once the platform side is in place.
    """

    def __init__(
        self,
        platform: ThreadPlatform,
        registry: ReviewRegistry,
        classifier: RoleClassifier,
        names: NameResolver,
        membership: MembershipReconciler,
        pending: PendingOperations,
        in_flight: InFlightDeletions,
        on_change: Optional[Callable[[str], None]] = None,
        attempts: int = 3,
        retry_delay: float = 1.0,
    ):
        self.platform = platform
        self.registry = registry
        self.classifier = classifier
        self.names = names
        self.membership = membership
        self.pending = pending
        self.in_flight = in_flight
        self.on_change = on_change
        self.attempts = attempts
        self.retry_delay = retry_delay

    async def _retry(self, operation, label: str):
        return await retry_operation(
            operation, attempts=self.attempts, delay=self.retry_delay, label=label
        )

    def _changed(self, *categories: str) -> None:
        if not self.on_change:
            return
        for category in dict.fromkeys(categories):
            self.on_change(category)

    async def _fetch_thread(self, thread_id: int) -> Optional[ThreadInfo]:
        return await self._retry(
            lambda: self.platform.fetch_thread(thread_id), f"fetch thread {thread_id}"
        )

    def bucket_role_for(
        self,
        record: ReviewRecord,
        roles: AbstractSet[int],
        thread_name: Optional[str] = None,
    ) -> Optional[int]:
        category = self.classifier.category(record.category)
        if category is None:
            return None
        bucket = self.classifier.owner_bucket(
            category, roles, parse_bucket_label(thread_name) if thread_name else None
        )
        return bucket.role_id if bucket else None

    # -- open / reopen -------------------------------------------------------

    async def open(self, user_id: int, roles: AbstractSet[int]) -> OpenResult:
        with self.pending.claim(user_id):
            existing = self.registry.get(user_id)
            if existing is not None:
                thread = await self._fetch_thread(existing.thread_id)
                if thread is None:
                    LOGGER.warning(
                        "Review thread %s for %s is gone, purging record",
                        existing.thread_id,
                        user_id,
                    )
                    self.registry.delete(user_id)
                    self._changed(existing.category)
                elif thread.archived or thread.locked:
                    await self._reopen(existing, thread, roles, "Thread reopened.")
                    return OpenResult(OpenOutcome.REOPENED, thread.id)
                else:
                    readded = await self.membership.ensure_member(
                        thread.id, user_id, "owner re-add"
                    )
                    outcome = OpenOutcome.READDED if readded else OpenOutcome.ALREADY_OPEN
                    return OpenResult(outcome, thread.id)

            classification = self.classifier.classify(roles)
            lookup = await self.names.lookup(user_id)
            if lookup.failed:
                raise NameLookupFailed()
            if lookup.unset:
                raise NameNotSet()
            record = await self._create(user_id, classification, lookup.value)
            LOGGER.info(
                "Created review thread %s for %s in %s",
                record.thread_id,
                user_id,
                record.category,
            )
            return OpenResult(OpenOutcome.CREATED, record.thread_id)

    async def _create(
        self,
        user_id: int,
        classification: Classification,
        display_name: Optional[str],
    ) -> ReviewRecord:
        category = classification.category
        title = format_thread_name(display_name, classification.bucket.label, user_id)
        thread = await self.platform.create_thread(category.channel_id, title)
        try:
            await self._retry(
                lambda: self.platform.send_close_prompt(thread.id, user_id),
                f"close prompt in {thread.id}",
            )
            await self.membership.reconcile(
                thread.id, user_id, category, classification.bucket.role_id, "thread created"
            )
        except BaseException:
            LOGGER.exception("Setting up thread %s for %s failed, removing it", thread.id, user_id)
            await self._discard_thread(thread.id)
            raise
        record = self.registry.set(
            ReviewRecord(
                user_id=user_id,
                thread_id=thread.id,
                channel_id=category.channel_id,
                category=category.name,
                lead_role_id=category.lead_role_id,
            )
        )
        self._changed(category.name)
        return record

    async def _discard_thread(self, thread_id: int) -> None:
        self.in_flight.add(thread_id)
        try:
            await self._retry(
                lambda: self.platform.delete_thread(thread_id), f"delete thread {thread_id}"
            )
        except Exception as exc:
            self.in_flight.discard(thread_id)
            LOGGER.error("Failed to delete orphaned thread %s: %s", thread_id, exc)

    async def reopen(
        self,
        user_id: int,
        roles: AbstractSet[int],
        notice: str = "Thread reopened.",
    ) -> Optional[ReviewRecord]:
        """Reopen the user's thread if it is closed; ``None`` when there is none."""
        record = self.registry.get(user_id)
        if record is None:
            return None
        thread = await self._fetch_thread(record.thread_id)
        if thread is None:
            self.registry.delete(user_id)
            self._changed(record.category)
            return None
        return await self._reopen(record, thread, roles, notice)

    async def _reopen(
        self,
        record: ReviewRecord,
        thread: ThreadInfo,
        roles: AbstractSet[int],
        notice: Optional[str],
    ) -> ReviewRecord:
        if thread.archived:
            await self._retry(
                lambda: self.platform.set_archived(thread.id, False), f"unarchive {thread.id}"
            )
        if thread.locked:
            await self._retry(
                lambda: self.platform.set_locked(thread.id, False), f"unlock {thread.id}"
            )
        await self.resync(record, roles, thread.name, reason="thread reopened")
        updated = self.registry.update(record.user_id, archived=False, locked=False) or record
        if notice:
            await self._retry(
                lambda: self.platform.send_message(thread.id, notice), f"notice in {thread.id}"
            )
        self._changed(record.category)
        return updated

    async def resync(
        self,
        record: ReviewRecord,
        roles: AbstractSet[int],
        thread_name: Optional[str] = None,
        reason: str = "sync",
    ):
        category = self.classifier.category(record.category)
        if category is None:
            LOGGER.warning("Record for %s points at unknown category %s", record.user_id, record.category)
            return None
        bucket_role_id = self.bucket_role_for(record, roles, thread_name)
        return await self.membership.reconcile(
            record.thread_id, record.user_id, category, bucket_role_id, reason
        )

    # -- close ---------------------------------------------------------------

    async def close(
        self,
        user_id: int,
        actor_id: int,
        actor_roles: AbstractSet[int],
        is_admin: bool = False,
    ) -> CloseOutcome:
        record = self.registry.get(user_id)
        if record is None:
            raise ReviewNotFound("Could not find review data.")
        allowed = actor_id == user_id or record.lead_role_id in actor_roles or is_admin
        if not allowed:
            raise PermissionDenied()
        with self.pending.claim(user_id):
            return await self._close(record, f"This thread was closed by <@{actor_id}>.")

    async def system_close(self, user_id: int, reason: str) -> CloseOutcome:
        record = self.registry.get(user_id)
        if record is None:
            raise ReviewNotFound()
        with self.pending.claim(user_id):
            return await self._close(record, reason)

    async def _close(self, record: ReviewRecord, message: str) -> CloseOutcome:
        thread = await self._fetch_thread(record.thread_id)
        if thread is None:
            self.registry.delete(record.user_id)
            self._changed(record.category)
            raise ReviewNotFound("Review thread not found.")
        if thread.archived and thread.locked:
            self.registry.update(record.user_id, archived=True, locked=True)
            return CloseOutcome.ALREADY_CLOSED
        if thread.archived:
            await self._retry(
                lambda: self.platform.set_archived(thread.id, False), f"unarchive {thread.id}"
            )
        await self._retry(
            lambda: self.platform.send_message(thread.id, message), f"close notice in {thread.id}"
        )
        await self._retry(lambda: self.platform.set_locked(thread.id, True), f"lock {thread.id}")
        await self._retry(
            lambda: self.platform.set_archived(thread.id, True), f"archive {thread.id}"
        )
        self.registry.update(record.user_id, archived=True, locked=True)
        self._changed(record.category)
        LOGGER.info("Closed review thread %s for %s", thread.id, record.user_id)
        return CloseOutcome.CLOSED

    # -- rename --------------------------------------------------------------

    async def rename(self, user_id: int, roles: AbstractSet[int]) -> bool:
        """Bring the thread title in line with the owner's bucket and name.

        Returns ``True`` when the title changed. Category changes are left to
        ``migrate``.
        """
        record = self.registry.get(user_id)
        if record is None:
            return False
        thread = await self._fetch_thread(record.thread_id)
        if thread is None:
            return False
        try:
            classification = self.classifier.classify(roles)
        except Exception as exc:
            LOGGER.info("Skipping rename for %s: %s", user_id, exc)
            return False
        if classification.category.name != record.category:
            return False
        display = await self.names.display_name(user_id, self.platform.display_name)
        if display is None:
            LOGGER.warning("Skipping rename for %s, name lookup failed", user_id)
            return False
        title = format_thread_name(display, classification.bucket.label, user_id)
        if thread.name == title:
            return False
        old_label = parse_bucket_label(thread.name)
        await self._retry(
            lambda: self.platform.rename_thread(thread.id, title), f"rename {thread.id}"
        )
        LOGGER.info("Renamed thread %s to %r", thread.id, title)
        if old_label != classification.bucket.label:
            await self.membership.reconcile(
                thread.id,
                user_id,
                classification.category,
                classification.bucket.role_id,
                "bucket changed",
            )
        self._changed(record.category)
        return True

    # -- migrate -------------------------------------------------------------

    async def migrate(
        self,
        user_id: int,
        new_category: str,
        roles: AbstractSet[int],
    ) -> MigrationResult:
        with self.pending.claim(user_id):
            record = self.registry.get(user_id)
            if record is None or not record.active:
                raise ReviewNotFound()
            classification = self.classifier.classify(roles)
            category = classification.category
            if category.name != new_category:
                raise MigrationError(
                    f"Your roles now point to {category.name}, not {new_category}."
                )
            lookup = await self.names.lookup(user_id)
            if lookup.failed:
                raise NameLookupFailed()
            display = lookup.value or await self.platform.display_name(user_id)
            old_thread = await self._fetch_thread(record.thread_id)
            if old_thread is None:
                self.registry.delete(user_id)
                self._changed(record.category)
                raise ReviewNotFound("Review thread not found.")
            return await self._migrate(record, old_thread, classification, display)

    async def _migrate(
        self,
        record: ReviewRecord,
        old_thread: ThreadInfo,
        classification: Classification,
        display: Optional[str],
    ) -> MigrationResult:
        category = classification.category
        user_id = record.user_id
        self.in_flight.add(old_thread.id)
        new_thread: Optional[ThreadInfo] = None
        try:
            new_thread = await self.platform.create_thread(
                category.channel_id,
                format_thread_name(display, classification.bucket.label, user_id),
            )
            stats = await self._copy_history(old_thread.id, new_thread.id)
        except BaseException as exc:
            self.in_flight.discard(old_thread.id)
            if new_thread is not None:
                await self._discard_thread(new_thread.id)
            if not isinstance(exc, Exception):
                LOGGER.warning("Migration of %s to %s was interrupted", user_id, category.name)
                raise
            LOGGER.exception("Migration of %s to %s failed", user_id, category.name)
            raise MigrationError() from exc

        self.registry.set(
            ReviewRecord(
                user_id=user_id,
                thread_id=new_thread.id,
                channel_id=category.channel_id,
                category=category.name,
                lead_role_id=category.lead_role_id,
            )
        )
        result = MigrationResult(
            thread_id=new_thread.id,
            migrated=stats.migrated,
            total=stats.total,
            failed_attachments=stats.failed_attachments,
        )
        try:
            await self._finish_migration(record, new_thread.id, classification, stats, result)
        except Exception:
            LOGGER.exception("Post-migration steps failed for thread %s", new_thread.id)

        try:
            await self._retry(
                lambda: self.platform.delete_thread(old_thread.id),
                f"delete thread {old_thread.id}",
            )
            result.old_thread_deleted = True
        except Exception as exc:
            self.in_flight.discard(old_thread.id)
            LOGGER.error(
                "Old thread %s of %s was not deleted after migration, remove it manually: %s",
                old_thread.id,
                user_id,
                exc,
            )
        self._changed(record.category, category.name)
        LOGGER.info(
            "Migrated review of %s from %s to %s (%s/%s messages)",
            user_id,
            record.category,
            category.name,
            result.migrated,
            result.total,
        )
        return result

    async def _finish_migration(
        self,
        record: ReviewRecord,
        thread_id: int,
        classification: Classification,
        stats: _CopyStats,
        result: MigrationResult,
    ) -> None:
        category: CategoryDefinition = classification.category
        await self.membership.reconcile(
            thread_id, record.user_id, category, classification.bucket.role_id, "migrated"
        )
        await self._retry(
            lambda: self.platform.send_close_prompt(thread_id, record.user_id),
            f"close prompt in {thread_id}",
        )
        await self._retry(
            lambda: self.platform.send_message(
                thread_id, result.summary(record.category, category.name)
            ),
            f"migration summary in {thread_id}",
        )
        copied = await self._retry(
            lambda: self.platform.fetch_messages(thread_id), f"fetch messages of {thread_id}"
        )
        copied_attachments = sum(len(m.attachments) for m in copied)
        if copied_attachments < stats.source_attachments - stats.failed_attachments:
            result.attachment_mismatch = True
            LOGGER.warning(
                "Migration attachment mismatch for %s: %s/%s attachments transferred",
                record.user_id,
                copied_attachments,
                stats.source_attachments,
            )
            await self._retry(
                lambda: self.platform.send_message(
                    thread_id,
                    "⚠️ Warning: Some attachments may have been missed during migration.\n"
                    f"Original thread had {stats.source_attachments} attachments, "
                    f"new thread has {copied_attachments}.\n"
                    "Please verify all important attachments were transferred.",
                ),
                f"attachment warning in {thread_id}",
            )

    def _source_line(self, message: MessageInfo) -> Optional[tuple[str, str]]:
        if message.system:
            return None
        if message.author_id == self.platform.self_id:
            match = MIGRATED_RE.match(message.content)
            if not match:
                return None
            return match.group(1), match.group(2)
        return message.author_label, message.content

    async def _copy_history(self, old_thread_id: int, new_thread_id: int) -> _CopyStats:
        messages: List[MessageInfo] = await self._retry(
            lambda: self.platform.fetch_messages(old_thread_id),
            f"fetch messages of {old_thread_id}",
        )
        stats = _CopyStats()
        await self._retry(
            lambda: self.platform.send_message(new_thread_id, MIGRATION_START),
            f"migration notice in {new_thread_id}",
        )
        for message in messages:
            line = self._source_line(message)
            if line is None:
                continue
            stats.total += 1
            body = migrated_line(*line)
            attachments = message.attachments
            stats.source_attachments += len(attachments)
            if attachments:
                try:
                    await self.platform.send_message(new_thread_id, body, attachments)
                except Exception as exc:
                    LOGGER.warning(
                        "Failed to re-upload attachments of message %s: %s", message.id, exc
                    )
                    urls = "\n".join(a.url for a in attachments)
                    fallback = f"{body}\n\n*Attachments:*\n{urls}"
                    await self._retry(
                        lambda: self.platform.send_message(new_thread_id, fallback),
                        f"copy message {message.id}",
                    )
                    stats.failed_attachments += len(attachments)
            else:
                await self._retry(
                    lambda: self.platform.send_message(new_thread_id, body),
                    f"copy message {message.id}",
                )
            stats.migrated += 1
        return stats
