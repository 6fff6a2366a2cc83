from __future__ import annotations

import logging
import time
from typing import AbstractSet, Callable, List, Optional

from .access import LeadAccessUpdater, LeadHierarchy
from .classifier import RoleClassifier
from .config import BotConfig
from .debounce import CoalescingTrigger
from .embeds import SummaryBoard, SummaryPublisher
from .errors import (
    AmbiguousBucket,
    ClassificationError,
    NameNotSet,
    PermissionDenied,
    ReviewError,
    ReviewNotFound,
)
from .guard import InFlightDeletions, KeyedLock, PendingOperations, member_key
from .lifecycle import CloseOutcome, ThreadLifecycle
from .membership import MembershipReconciler
from .models import validate_ingame_name
from .names import NameResolver
from .platform import ThreadInfo, ThreadPlatform
from .registry import ReviewRegistry
from .retry import retry_operation
from .sweeper import ProgressFn, ReconciliationLoop, SweepReport

LOGGER = logging.getLogger(__name__)

OWNER_ONLY = "Only the thread owner can use this button."
MENTION_LIMIT = 2000


def chunk_mentions(user_ids: List[int], limit: int = MENTION_LIMIT) -> List[str]:
    """Mentions joined into messages that each fit the message size limit."""
    chunks: List[str] = []
    current = ""
    for user_id in user_ids:
        mention = f"<@{user_id}>"
        candidate = f"{current} {mention}" if current else mention
        if len(candidate) > limit:
            chunks.append(current)
            candidate = mention
        current = candidate
    if current:
        chunks.append(current)
    return chunks


class ReviewService:
    """Owns the registry and every controller, and maps platform events onto
    them. Everything here works on ids and role snapshots only."""

    def __init__(
        self,
        config: BotConfig,
        platform: ThreadPlatform,
        store,
        board: Optional[SummaryBoard] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        timing = config.timing
        self.config = config
        self.platform = platform
        self.store = store
        self.registry = ReviewRegistry()
        self.classifier = RoleClassifier(
            config.categories, config.guild_roles, config.filter_role_ids
        )
        self.names = NameResolver(
            store,
            attempts=timing.retry_attempts,
            retry_delay=timing.retry_delay_seconds,
            clock=clock,
        )
        self.pending = PendingOperations(timing.pending_timeout_seconds, clock=clock)
        self.in_flight = InFlightDeletions(timing.in_flight_ttl_seconds, clock=clock)
        self.locks = KeyedLock()
        retry = dict(attempts=timing.retry_attempts, retry_delay=timing.retry_delay_seconds)
        self.membership = MembershipReconciler(platform, self.locks, **retry)
        self.lifecycle = ThreadLifecycle(
            platform,
            self.registry,
            self.classifier,
            self.names,
            self.membership,
            self.pending,
            self.in_flight,
            on_change=self.refresh,
            **retry,
        )
        self.access = LeadAccessUpdater(
            platform, self.registry, self.classifier, self.locks, **retry
        )
        self.hierarchy = LeadHierarchy(platform, self.classifier, config.master_lead_role_id)
        self.sweeper = ReconciliationLoop(
            platform,
            self.registry,
            self.classifier,
            self.lifecycle,
            self.locks,
            self.pending,
            self.in_flight,
            prompt_ttl=timing.prompt_ttl_seconds,
            max_runtime=timing.reconcile_max_runtime_seconds,
            sweep_delay=timing.sweep_delay_seconds,
            notifications_channel_id=config.notifications_channel_id,
            on_change=self.refresh,
            clock=clock,
            **retry,
        )
        self.publisher: Optional[SummaryPublisher] = None
        self.summaries: Optional[CoalescingTrigger] = None
        if board is not None:
            self.publisher = SummaryPublisher(
                platform,
                board,
                self.registry,
                self.classifier,
                self.names,
                config.guild_id,
                **retry,
            )
            self.summaries = CoalescingTrigger(
                self._publish,
                min_delay=timing.refresh_min_delay_seconds,
                max_delay=timing.refresh_max_delay_seconds,
                clock=clock,
            )
        self.role_changes = CoalescingTrigger(
            self._bucket_roles_settled,
            min_delay=timing.role_update_delay_seconds,
            max_delay=timing.role_update_delay_seconds * 3,
            clock=clock,
        )

    async def _publish(self, category) -> None:
        if self.publisher:
            await self.publisher.publish(category)

    def refresh(self, category: str) -> None:
        if self.summaries is not None:
            self.summaries.trigger(category)

    async def close(self) -> None:
        await self.role_changes.close()
        if self.summaries is not None:
            await self.summaries.close()

    # -- startup ----------------------------------------------------------------

    async def startup(self) -> int:
        count = await self.sweeper.scan_existing_threads()
        await self.sync_lead_hierarchy()
        return count

    async def sync_lead_hierarchy(self) -> None:
        holders: set[int] = set()
        for role_id in self.classifier.lead_roles():
            holders |= await self.platform.fetch_role_holders(role_id)
        if self.config.master_lead_role_id:
            holders |= await self.platform.fetch_role_holders(self.config.master_lead_role_id)
        for user_id in sorted(holders):
            try:
                await self._sync_hierarchy(user_id)
            except Exception:
                LOGGER.exception("Error managing lead roles for %s", user_id)

    # -- member events ----------------------------------------------------------

    async def on_member_roles_changed(
        self,
        user_id: int,
        before: AbstractSet[int],
        after: AbstractSet[int],
    ) -> None:
        before, after = frozenset(before), frozenset(after)
        changed = before ^ after
        if not changed:
            return
        lead_roles = self.classifier.lead_roles()
        if changed & lead_roles:
            await self._sync_hierarchy(user_id)
            await self.access.apply(user_id, after, changed & lead_roles)

        record = self.registry.get(user_id)
        if record is None:
            return
        if changed & self.classifier.bucket_role_ids:
            self.role_changes.trigger(user_id)
        if changed & set(self.classifier.guild_roles):
            had = self.classifier.guild_affiliation(before)
            has = self.classifier.guild_affiliation(after)
            if had is None and has is not None:
                await self._restore_owner(user_id, after, "Thread reopened - guild role restored.")
            self.refresh(record.category)

    async def _sync_hierarchy(self, user_id: int) -> None:
        async with self.locks.hold(member_key(user_id)):
            roles = await self.platform.fetch_member_roles(user_id)
            if roles is None:
                return
            await self.hierarchy.sync(user_id, roles)

    async def _restore_owner(self, user_id: int, roles: AbstractSet[int], notice: str) -> None:
        record = self.registry.get(user_id)
        if record is None:
            return
        if record.active:
            await self.membership.ensure_member(record.thread_id, user_id, "guild role restored")
            return
        try:
            with self.pending.claim(user_id):
                await self.lifecycle.reopen(user_id, roles, notice)
        except ReviewError as exc:
            LOGGER.info("Could not reopen thread of %s: %s", user_id, exc)

    async def _bucket_roles_settled(self, user_id) -> None:
        async with self.locks.hold(member_key(user_id)):
            await self._apply_bucket_roles(user_id)

    async def _apply_bucket_roles(self, user_id: int) -> None:
        record = self.registry.get(user_id)
        if record is None or not record.active:
            return
        roles = await self.platform.fetch_member_roles(user_id)
        if roles is None:
            return
        try:
            classification = self.classifier.classify(roles)
        except AmbiguousBucket:
            LOGGER.info("Multiple bucket roles for %s, waiting for roles to settle", user_id)
            return
        except ClassificationError:
            self.refresh(record.category)
            return
        if classification.category.name == record.category:
            await self.lifecycle.rename(user_id, roles)
            return
        thread = await self.platform.fetch_thread(record.thread_id)
        if thread is None:
            self.sweeper.handle_thread_deleted(record.thread_id)
            return
        await self.sweeper.prompt_migration(record, thread, classification.category.name)
        self.refresh(record.category)

    async def on_member_left(self, user_id: int, label: str) -> Optional[CloseOutcome]:
        record = self.registry.get(user_id)
        if record is None or not record.active:
            return None
        reason = f"Thread closed automatically - {label} ({user_id}) has left the server."
        try:
            outcome = await self.lifecycle.system_close(user_id, reason)
        except ReviewError as exc:
            LOGGER.warning("Could not close thread of departed member %s: %s", user_id, exc)
            return None
        LOGGER.info("Closed thread for %s (left server)", user_id)
        return outcome

    async def on_member_joined(self, user_id: int, label: str, roles: AbstractSet[int]) -> None:
        record = self.registry.get(user_id)
        if record is None or record.active:
            return
        if self.classifier.guild_affiliation(roles) is None:
            return
        await self._restore_owner(
            user_id, roles, f"Thread reopened automatically - {label} has rejoined the guild."
        )

    # -- thread events ------------------------------------------------------------

    async def on_thread_update(
        self,
        before: ThreadInfo,
        after: ThreadInfo,
        actor_id: Optional[int] = None,
    ) -> None:
        record = self.registry.find_by_thread(after.id)
        if record is None:
            return
        if before.name != after.name and actor_id is not None:
            allowed = {self.platform.self_id, self.config.admin_user_id}
            if actor_id not in allowed:
                await self._revert_rename(before, after, actor_id)

        if (before.archived, before.locked) == (after.archived, after.locked):
            return
        self.registry.update(record.user_id, archived=after.archived, locked=after.locked)
        was_closed = before.archived or before.locked
        is_open = not (after.archived or after.locked)
        if was_closed and is_open and record.user_id not in self.pending:
            roles = await self.platform.fetch_member_roles(record.user_id) or frozenset()
            await self.lifecycle.resync(record, roles, after.name, reason="thread reopened")
            if actor_id is not None and actor_id != self.platform.self_id:
                await self.platform.send_message(
                    after.id, f"Thread reopened by <@{actor_id}> - Members list has been synced."
                )
        self.refresh(record.category)

    async def _revert_rename(self, before: ThreadInfo, after: ThreadInfo, actor_id: int) -> None:
        LOGGER.warning(
            "Unauthorized rename of thread %s by %s: %r -> %r",
            after.id,
            actor_id,
            before.name,
            after.name,
        )
        await retry_operation(
            lambda: self.platform.rename_thread(after.id, before.name),
            attempts=self.lifecycle.attempts,
            delay=self.lifecycle.retry_delay,
            label=f"revert rename of {after.id}",
        )
        admin = self.config.admin_user_id
        notice = (
            "Thread name changes are restricted to bot and administrators only.\n"
            f"Attempted by: <@{actor_id}>"
        )
        await self.platform.send_message(
            after.id, notice, mention_user_ids=[admin] if admin else ()
        )

    def on_thread_deleted(self, thread_id: int) -> None:
        self.sweeper.handle_thread_deleted(thread_id)

    # -- buttons --------------------------------------------------------------------

    async def press_open(self, user_id: int, roles: AbstractSet[int]) -> str:
        try:
            result = await self.lifecycle.open(user_id, frozenset(roles))
        except NameNotSet:
            raise NameNotSet(self.config.name_setup_hint)
        return result.message

    async def press_close(
        self,
        owner_id: int,
        actor_id: int,
        actor_roles: AbstractSet[int],
        is_admin: bool = False,
    ) -> str:
        outcome = await self.lifecycle.close(owner_id, actor_id, frozenset(actor_roles), is_admin)
        if outcome is CloseOutcome.ALREADY_CLOSED:
            return "This thread is already closed."
        return "✅ Review thread closed and archived!"

    async def press_update(
        self,
        owner_id: int,
        actor_id: int,
        old_category: str,
        new_category: str,
        roles: AbstractSet[int],
    ) -> str:
        if actor_id != owner_id:
            raise PermissionDenied(OWNER_ONLY)
        record = self.registry.get(owner_id)
        if record is None or not record.active:
            raise ReviewNotFound()
        if old_category == new_category:
            renamed = await self.lifecycle.rename(owner_id, frozenset(roles))
            return "Thread name updated successfully!" if renamed else "Thread is already up to date!"
        result = await self.lifecycle.migrate(owner_id, new_category, frozenset(roles))
        text = f"Review moved to <#{result.thread_id}>."
        if not result.old_thread_deleted:
            text += " The old thread could not be removed; an administrator will clean it up."
        return text

    def press_cancel(self, owner_id: int, actor_id: int) -> str:
        if actor_id != owner_id:
            raise PermissionDenied(OWNER_ONLY)
        return "Update cancelled."

    # -- commands ---------------------------------------------------------------------

    async def check_thread(self, thread_id: int) -> str:
        record = self.registry.find_by_thread(thread_id)
        if record is None:
            raise ReviewNotFound("This command must be used in a review thread.")
        outcome = await self.sweeper.check_review(record.user_id)
        return f"Thread check complete: {outcome.value}."

    async def clean_threads(self, progress: Optional[ProgressFn] = None) -> SweepReport:
        return await self.sweeper.close_unaffiliated(progress)

    async def unreviewed(self) -> List[str]:
        user_ids = await self.sweeper.members_without_reviews(self.classifier.guild_roles)
        return chunk_mentions(user_ids)

    async def set_name(self, user_id: int, name: str, roles: AbstractSet[int]) -> str:
        try:
            value = validate_ingame_name(name)
        except ValueError as exc:
            raise ReviewError(str(exc)) from exc
        await retry_operation(
            lambda: self.store.set(user_id, value),
            attempts=self.config.timing.retry_attempts,
            delay=self.config.timing.retry_delay_seconds,
            label=f"store name of {user_id}",
        )
        self.names.remember(user_id, value)
        LOGGER.info("In-game name of %s set to %r", user_id, value)
        record = self.registry.get(user_id)
        if record is not None and record.active:
            await self.lifecycle.rename(user_id, frozenset(roles))
        return f"Your in-game name is now **{value}**."
