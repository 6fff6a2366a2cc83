from __future__ import annotations

import asyncio
import enum
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from .classifier import RoleClassifier
from .errors import ClassificationError, ReviewError
from .guard import ExpiringSet, InFlightDeletions, KeyedLock, PendingOperations, member_key
from .lifecycle import ThreadLifecycle
from .platform import ThreadInfo, ThreadPlatform
from .registry import ReviewRecord, ReviewRegistry, parse_owner_id
from .retry import retry_operation

LOGGER = logging.getLogger(__name__)

NO_GUILD_CLOSE_REASON = "Thread closed automatically - User no longer has a guild role."
PROGRESS_EVERY = 5

ProgressFn = Callable[[int, int], Awaitable[None]]


class ReviewCheck(enum.Enum):
    NOT_FOUND = "no review"
    DROPPED = "thread missing, record dropped"
    CLOSED = "closed"
    PENDING = "operation pending"
    MEMBER_GONE = "owner not in guild"
    UNCLASSIFIED = "owner roles unclear"
    MIGRATION_PROMPTED = "migration prompted"
    MIGRATION_WAITING = "migration prompt already posted"
    RENAMED = "renamed"
    RESYNCED = "membership resynced"
    OK = "up to date"


@dataclass
class CycleReport:
    outcomes: Dict[ReviewCheck, int] = field(default_factory=dict)
    failed: List[int] = field(default_factory=list)

    def count(self, outcome: ReviewCheck) -> None:
        self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1

    @property
    def checked(self) -> int:
        return sum(self.outcomes.values()) + len(self.failed)


@dataclass
class SweepReport:
    closed: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)
    exempt: int = 0
    total: int = 0

    def summary(self) -> str:
        text = f"Closed {len(self.closed)} of {self.total} open review thread(s)."
        if self.exempt:
            text += f" Skipped {self.exempt} leadership member(s)."
        if self.failed:
            text += f" {len(self.failed)} failed."
        return text


class ReconciliationLoop:
    """Converges the registry and the threads behind it with the role model.

    ``run_cycle`` is the periodic sweep; ``check_review`` is the per-review
    step it runs and is also what the admin check command uses.
    """

    def __init__(
        self,
        platform: ThreadPlatform,
        registry: ReviewRegistry,
        classifier: RoleClassifier,
        lifecycle: ThreadLifecycle,
        locks: KeyedLock,
        pending: PendingOperations,
        in_flight: InFlightDeletions,
        prompt_ttl: float = 300.0,
        max_runtime: float = 600.0,
        sweep_delay: float = 1.0,
        notifications_channel_id: Optional[int] = None,
        on_change: Optional[Callable[[str], None]] = None,
        attempts: int = 3,
        retry_delay: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.platform = platform
        self.registry = registry
        self.classifier = classifier
        self.lifecycle = lifecycle
        self.locks = locks
        self.pending = pending
        self.in_flight = in_flight
        self.prompts = ExpiringSet(prompt_ttl, clock=clock)
        self.max_runtime = max_runtime
        self.sweep_delay = sweep_delay
        self.notifications_channel_id = notifications_channel_id
        self.on_change = on_change
        self.attempts = attempts
        self.retry_delay = retry_delay
        self._clock = clock
        self._cycle_ids = itertools.count(1)
        self._running: Optional[tuple[int, float]] = None

    async def _retry(self, operation, label: str):
        return await retry_operation(
            operation, attempts=self.attempts, delay=self.retry_delay, label=label
        )

    def _changed(self, category: str) -> None:
        if self.on_change:
            self.on_change(category)

    # -- periodic cycle --------------------------------------------------------

    async def run_cycle(self) -> Optional[CycleReport]:
        if self._running is not None:
            _cycle, started = self._running
            if self._clock() - started < self.max_runtime:
                LOGGER.info("Reconciliation already running, skipping this cycle")
                return None
            LOGGER.warning(
                "Reconciliation has been running for over %ss, clearing the stuck flag",
                self.max_runtime,
            )
        cycle = next(self._cycle_ids)
        self._running = (cycle, self._clock())
        report = CycleReport()
        try:
            for record in self.registry.snapshot():
                try:
                    report.count(await self.check_review(record.user_id))
                except asyncio.CancelledError:
                    raise
                except Exception:
                    LOGGER.exception("Reconciliation failed for %s", record.user_id)
                    report.failed.append(record.user_id)
        finally:
            if self._running and self._running[0] == cycle:
                self._running = None
        LOGGER.info(
            "Reconciliation finished: %s review(s) checked, %s failed",
            report.checked,
            len(report.failed),
        )
        return report

    async def check_review(self, user_id: int) -> ReviewCheck:
        record = self.registry.get(user_id)
        if record is None:
            return ReviewCheck.NOT_FOUND
        thread = await self._retry(
            lambda: self.platform.fetch_thread(record.thread_id),
            f"fetch thread {record.thread_id}",
        )
        if thread is None:
            LOGGER.warning(
                "Thread %s of %s no longer exists, dropping record", record.thread_id, user_id
            )
            self.registry.delete(user_id)
            self._changed(record.category)
            return ReviewCheck.DROPPED
        if thread.archived != record.archived or thread.locked != record.locked:
            record = self.registry.update(user_id, archived=thread.archived, locked=thread.locked) or record
            self._changed(record.category)
        if thread.archived or thread.locked:
            return ReviewCheck.CLOSED
        if user_id in self.pending:
            return ReviewCheck.PENDING

        roles = await self._retry(
            lambda: self.platform.fetch_member_roles(user_id), f"fetch roles of {user_id}"
        )
        if roles is None:
            return ReviewCheck.MEMBER_GONE
        try:
            classification = self.classifier.classify(roles)
        except ClassificationError as exc:
            LOGGER.info("Not reconciling %s: %s", user_id, exc)
            return ReviewCheck.UNCLASSIFIED

        if classification.category.name != record.category:
            posted = await self.prompt_migration(record, thread, classification.category.name)
            return ReviewCheck.MIGRATION_PROMPTED if posted else ReviewCheck.MIGRATION_WAITING

        async with self.locks.hold(member_key(user_id)):
            renamed = await self.lifecycle.rename(user_id, roles)
            result = await self.lifecycle.membership.reconcile(
                record.thread_id,
                user_id,
                classification.category,
                classification.bucket.role_id,
                "periodic check",
            )
        if renamed:
            return ReviewCheck.RENAMED
        return ReviewCheck.RESYNCED if result.changed else ReviewCheck.OK

    async def prompt_migration(
        self, record: ReviewRecord, thread: ThreadInfo, new_category: str
    ) -> bool:
        """Posts the move prompt once; returns ``False`` if one is already up."""
        key = (record.user_id, new_category)
        if key in self.prompts:
            return False
        if await self._retry(
            lambda: self.platform.has_update_prompt(thread.id),
            f"look for prompt in {thread.id}",
        ):
            self.prompts.add(key)
            return False
        await self._retry(
            lambda: self.platform.send_update_prompt(
                thread.id, record.category, new_category, record.user_id
            ),
            f"migration prompt in {thread.id}",
        )
        self.prompts.add(key)
        LOGGER.info(
            "Posted migration prompt for %s (%s -> %s)", record.user_id, record.category, new_category
        )
        return True

    # -- administrative sweep --------------------------------------------------

    async def close_unaffiliated(self, progress: Optional[ProgressFn] = None) -> SweepReport:
        """Closes every open review whose owner holds no guild role."""
        records = [r for r in self.registry.snapshot() if r.active]
        report = SweepReport(total=len(records))
        for done, record in enumerate(records, start=1):
            try:
                roles = await self._retry(
                    lambda: self.platform.fetch_member_roles(record.user_id),
                    f"fetch roles of {record.user_id}",
                )
                if roles is not None and self.classifier.is_exempt(roles):
                    report.exempt += 1
                elif roles is None or self.classifier.guild_affiliation(roles) is None:
                    await self.lifecycle.system_close(record.user_id, NO_GUILD_CLOSE_REASON)
                    report.closed.append(record.user_id)
                    await asyncio.sleep(self.sweep_delay)
            except asyncio.CancelledError:
                raise
            except ReviewError as exc:
                LOGGER.warning("Could not close review of %s: %s", record.user_id, exc)
                report.failed.append(record.user_id)
            except Exception:
                LOGGER.exception("Could not close review of %s", record.user_id)
                report.failed.append(record.user_id)
            if progress and done % PROGRESS_EVERY == 0:
                await progress(done, report.total)
        LOGGER.info(report.summary())
        return report

    async def members_without_reviews(self, guild_role_ids) -> List[int]:
        """Guild-affiliated members with no open review, leadership excluded."""
        affiliated: set[int] = set()
        for role_id in guild_role_ids:
            affiliated |= await self.platform.fetch_role_holders(role_id)
        exempt: set[int] = set()
        for role_id in self.classifier.filter_role_ids:
            exempt |= await self.platform.fetch_role_holders(role_id)
        reviewed = {r.user_id for r in self.registry.snapshot() if r.active}
        return sorted(affiliated - exempt - reviewed)

    # -- startup scan and deletion events --------------------------------------

    async def scan_existing_threads(self) -> int:
        """Rebuilds the registry from the threads in every category channel."""
        found: Dict[int, tuple[ReviewRecord, ThreadInfo]] = {}
        duplicates: List[tuple[int, ThreadInfo, ThreadInfo]] = []
        for category in self.classifier.categories.values():
            try:
                threads = await self._retry(
                    lambda: self.platform.list_threads(category.channel_id),
                    f"list threads of {category.name}",
                )
            except Exception:
                LOGGER.exception("Error scanning %s review channel", category.name)
                continue
            for thread in threads:
                owner = parse_owner_id(thread.name)
                if owner is None:
                    continue
                record = ReviewRecord(
                    user_id=owner,
                    thread_id=thread.id,
                    channel_id=category.channel_id,
                    category=category.name,
                    lead_role_id=category.lead_role_id,
                    archived=thread.archived,
                    locked=thread.locked,
                )
                existing = found.get(owner)
                if existing is None:
                    found[owner] = (record, thread)
                    continue
                kept_record, kept_thread = existing
                duplicates.append((owner, kept_thread, thread))
                if not kept_record.active and record.active:
                    found[owner] = (record, thread)

        self.registry.replace_all([record for record, _thread in found.values()])
        for owner, first, second in duplicates:
            await self._report_duplicate(owner, first, second)
        active = sum(1 for record, _t in found.values() if record.active)
        LOGGER.info(
            "Review registry rebuilt: %s thread(s), %s open, %s duplicate(s)",
            len(found),
            active,
            len(duplicates),
        )
        for category in self.classifier.categories:
            self._changed(category)
        return len(found)

    async def _report_duplicate(self, owner: int, first: ThreadInfo, second: ThreadInfo) -> None:
        LOGGER.warning(
            "User %s has more than one review thread: %s and %s", owner, first.id, second.id
        )
        if not self.notifications_channel_id:
            return
        name = await self.platform.display_name(owner) or str(owner)
        try:
            await self._retry(
                lambda: self.platform.send_message(
                    self.notifications_channel_id,
                    f"⚠️ Multiple threads detected for {name} ({owner}):\n"
                    f"Existing: <#{first.id}>\nNew: <#{second.id}>",
                ),
                "duplicate thread notice",
            )
        except Exception as exc:
            LOGGER.error("Failed to report duplicate threads of %s: %s", owner, exc)

    def handle_thread_deleted(self, thread_id: int) -> Optional[ReviewRecord]:
        """Drops whatever record still points at the deleted thread."""
        ours = thread_id in self.in_flight
        self.in_flight.discard(thread_id)
        record = self.registry.find_by_thread(thread_id)
        if record is None:
            return None
        self.registry.delete(record.user_id)
        if ours:
            LOGGER.info("Thread %s deleted by the bot, record of %s dropped", thread_id, record.user_id)
        else:
            LOGGER.warning("Thread %s of %s was deleted externally", thread_id, record.user_id)
        self._changed(record.category)
        return record
