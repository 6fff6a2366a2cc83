from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import AbstractSet, List, Optional

from .classifier import RoleClassifier
from .config import CategoryDefinition
from .guard import KeyedLock, member_key, thread_key
from .platform import ThreadPlatform
from .registry import ReviewRecord, ReviewRegistry, parse_bucket_label
from .retry import retry_operation

LOGGER = logging.getLogger(__name__)


@dataclass
class AccessUpdate:
    added: List[int] = field(default_factory=list)
    removed: List[int] = field(default_factory=list)
    reverted: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)
    superseded: bool = False


@dataclass
class _Applied:
    thread_id: int
    added: bool


class LeadAccessUpdater:
    """Adds or removes a lead from review threads after their roles changed.

    Updates for one member run one at a time under that member's key. Before
    touching each thread the member's roles are fetched again; if the access
    decision no longer matches the one derived from the triggering snapshot,
    a newer role change is on its way, so the work done so far is undone and
    the update stops.
    """

    def __init__(
        self,
        platform: ThreadPlatform,
        registry: ReviewRegistry,
        classifier: RoleClassifier,
        locks: KeyedLock,
        attempts: int = 3,
        retry_delay: float = 1.0,
    ):
        self.platform = platform
        self.registry = registry
        self.classifier = classifier
        self.locks = locks
        self.attempts = attempts
        self.retry_delay = retry_delay

    async def _retry(self, operation, label: str):
        return await retry_operation(
            operation, attempts=self.attempts, delay=self.retry_delay, label=label
        )

    async def _owner_bucket(self, record: ReviewRecord, category: CategoryDefinition) -> Optional[int]:
        owner_roles = await self._retry(
            lambda: self.platform.fetch_member_roles(record.user_id),
            f"fetch roles of {record.user_id}",
        )
        thread = await self._retry(
            lambda: self.platform.fetch_thread(record.thread_id),
            f"fetch thread {record.thread_id}",
        )
        if thread is None:
            return None
        bucket = self.classifier.owner_bucket(
            category, owner_roles or frozenset(), parse_bucket_label(thread.name)
        )
        return bucket.role_id if bucket else None

    async def apply(
        self,
        member_id: int,
        roles: AbstractSet[int],
        changed_role_ids: AbstractSet[int],
    ) -> AccessUpdate:
        """Apply lead access for ``member_id`` as of the ``roles`` snapshot.

        Only categories whose lead or bucket-lead roles appear in
        ``changed_role_ids`` are considered; each is handled on its own.
        """
        async with self.locks.hold(member_key(member_id)):
            return await self._apply(member_id, frozenset(roles), changed_role_ids)

    async def _apply(
        self,
        member_id: int,
        roles: frozenset[int],
        changed_role_ids: AbstractSet[int],
    ) -> AccessUpdate:
        update = AccessUpdate()
        applied: List[_Applied] = []
        for category in self.classifier.categories_touched_by(changed_role_ids):
            for record in self.registry.snapshot(category.name):
                if record.user_id == member_id or not record.active:
                    continue
                bucket_role_id = await self._owner_bucket(record, category)
                if bucket_role_id is None:
                    continue
                wanted = RoleClassifier.grants_access(category, bucket_role_id, roles)

                current_roles = await self._retry(
                    lambda: self.platform.fetch_member_roles(member_id),
                    f"fetch roles of {member_id}",
                )
                current = current_roles is not None and RoleClassifier.grants_access(
                    category, bucket_role_id, current_roles
                )
                if current != wanted:
                    LOGGER.info(
                        "Lead access update for %s superseded by a newer role change, "
                        "reverting %s change(s)",
                        member_id,
                        len(applied),
                    )
                    update.superseded = True
                    await self._revert(member_id, applied, update)
                    return update

                async with self.locks.hold(thread_key(record.thread_id)):
                    changed = await self._set_access(member_id, record, wanted, update)
                if changed:
                    applied.append(_Applied(record.thread_id, wanted))
        return update

    async def _set_access(
        self,
        member_id: int,
        record: ReviewRecord,
        wanted: bool,
        update: AccessUpdate,
    ) -> bool:
        members = await self._retry(
            lambda: self.platform.fetch_thread_members(record.thread_id),
            f"fetch members of thread {record.thread_id}",
        )
        present = member_id in members
        if present == wanted:
            return False
        call = self.platform.add_thread_member if wanted else self.platform.remove_thread_member
        action = "add" if wanted else "remove"
        try:
            await self._retry(
                lambda: call(record.thread_id, member_id),
                f"{action} lead {member_id} in thread {record.thread_id}",
            )
        except Exception as exc:
            LOGGER.error(
                "Failed to %s lead %s in thread %s: %s", action, member_id, record.thread_id, exc
            )
            update.failed.append(record.thread_id)
            return False
        LOGGER.info(
            "Membership %s: member=%s thread=%s reason=lead role change",
            action,
            member_id,
            record.thread_id,
        )
        (update.added if wanted else update.removed).append(record.thread_id)
        return True

    async def _revert(self, member_id: int, applied: List[_Applied], update: AccessUpdate) -> None:
        for step in reversed(applied):
            call = (
                self.platform.remove_thread_member
                if step.added
                else self.platform.add_thread_member
            )
            try:
                async with self.locks.hold(thread_key(step.thread_id)):
                    await self._retry(
                        lambda: call(step.thread_id, member_id),
                        f"revert access of {member_id} in thread {step.thread_id}",
                    )
            except Exception as exc:
                LOGGER.error(
                    "Failed to revert access of %s in thread %s: %s",
                    member_id,
                    step.thread_id,
                    exc,
                )
                update.failed.append(step.thread_id)
                continue
            update.reverted.append(step.thread_id)


class LeadHierarchy:
    """Keeps category lead and master lead roles in step with bucket-lead roles."""

    def __init__(
        self,
        platform: ThreadPlatform,
        classifier: RoleClassifier,
        master_lead_role_id: Optional[int] = None,
    ):
        self.platform = platform
        self.classifier = classifier
        self.master_lead_role_id = master_lead_role_id

    async def sync(self, member_id: int, roles: AbstractSet[int]) -> tuple[list[int], list[int]]:
        """Returns the role ids granted and revoked."""
        granted: list[int] = []
        revoked: list[int] = []
        holds_category_lead = False
        for category in self.classifier.categories.values():
            bucket_leads = category.bucket_lead_role_ids
            if not bucket_leads:
                if category.lead_role_id in roles:
                    holds_category_lead = True
                continue
            has_bucket_lead = any(rid in roles for rid in bucket_leads)
            has_category_lead = category.lead_role_id in roles
            if has_bucket_lead and not has_category_lead:
                await self.platform.add_role(
                    member_id, category.lead_role_id, f"Holds a {category.name} bucket lead role"
                )
                granted.append(category.lead_role_id)
                LOGGER.info("Added %s lead role to %s", category.name, member_id)
            elif not has_bucket_lead and has_category_lead:
                await self.platform.remove_role(
                    member_id, category.lead_role_id, "Lost all bucket lead roles"
                )
                revoked.append(category.lead_role_id)
                LOGGER.info("Removed %s lead role from %s", category.name, member_id)
            holds_category_lead = holds_category_lead or has_bucket_lead

        master = self.master_lead_role_id
        if master:
            if holds_category_lead and master not in roles:
                await self.platform.add_role(member_id, master, "Holds a category lead role")
                granted.append(master)
                LOGGER.info("Added master lead role to %s", member_id)
            elif not holds_category_lead and master in roles:
                await self.platform.remove_role(member_id, master, "Lost all category lead roles")
                revoked.append(master)
                LOGGER.info("Removed master lead role from %s", member_id)
        return granted, revoked
