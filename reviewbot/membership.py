from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .config import CategoryDefinition
from .guard import KeyedLock, thread_key
from .platform import ThreadPlatform
from .retry import retry_operation

LOGGER = logging.getLogger(__name__)


@dataclass
class MembershipResult:
    added: List[int] = field(default_factory=list)
    removed: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)

    @property
    def ok(self) -> bool:
        return not self.failed


class MembershipReconciler:
    """Brings a review thread's member list in line with the role model.

    The desired set is the owner plus everyone holding both the category lead
    role and the lead role of the owner's bucket. Only the difference is
    applied, so a second run right after the first does nothing. Changes to
    one thread run under that thread's key in the shared ``KeyedLock``.
    """

    def __init__(
        self,
        platform: ThreadPlatform,
        locks: Optional[KeyedLock] = None,
        attempts: int = 3,
        retry_delay: float = 1.0,
    ):
        self.platform = platform
        self.locks = locks if locks is not None else KeyedLock()
        self.attempts = attempts
        self.retry_delay = retry_delay

    async def _retry(self, operation, label: str):
        return await retry_operation(
            operation, attempts=self.attempts, delay=self.retry_delay, label=label
        )

    async def desired_members(
        self,
        owner_id: int,
        category: CategoryDefinition,
        bucket_role_id: Optional[int],
    ) -> set[int]:
        desired = {owner_id}
        bucket_lead = category.bucket_lead_for(bucket_role_id) if bucket_role_id else None
        if not bucket_lead:
            return desired
        category_leads = await self._retry(
            lambda: self.platform.fetch_role_holders(category.lead_role_id),
            f"fetch holders of {category.lead_role_id}",
        )
        bucket_leads = await self._retry(
            lambda: self.platform.fetch_role_holders(bucket_lead),
            f"fetch holders of {bucket_lead}",
        )
        return desired | (set(category_leads) & set(bucket_leads))

    async def reconcile(
        self,
        thread_id: int,
        owner_id: int,
        category: CategoryDefinition,
        bucket_role_id: Optional[int],
        reason: str = "sync",
    ) -> MembershipResult:
        async with self.locks.hold(thread_key(thread_id)):
            return await self._reconcile(thread_id, owner_id, category, bucket_role_id, reason)

    async def _reconcile(
        self,
        thread_id: int,
        owner_id: int,
        category: CategoryDefinition,
        bucket_role_id: Optional[int],
        reason: str,
    ) -> MembershipResult:
        desired = await self.desired_members(owner_id, category, bucket_role_id)
        actual = await self._retry(
            lambda: self.platform.fetch_thread_members(thread_id),
            f"fetch members of thread {thread_id}",
        )
        protected = {owner_id, self.platform.self_id}
        result = MembershipResult()

        for user_id in sorted(set(actual) - desired - protected):
            await self._apply(
                thread_id,
                user_id,
                add=False,
                reason=reason,
                result=result,
            )
        for user_id in sorted(desired - set(actual)):
            await self._apply(
                thread_id,
                user_id,
                add=True,
                reason=reason,
                result=result,
            )

        if result.changed or result.failed:
            LOGGER.info(
                "Membership sync for thread %s (owner %s, %s): +%s -%s failed=%s",
                thread_id,
                owner_id,
                reason,
                len(result.added),
                len(result.removed),
                len(result.failed),
            )
        return result

    async def ensure_member(self, thread_id: int, user_id: int, reason: str) -> bool:
        async with self.locks.hold(thread_key(thread_id)):
            members = await self._retry(
                lambda: self.platform.fetch_thread_members(thread_id),
                f"fetch members of thread {thread_id}",
            )
            if user_id in members:
                return False
            result = MembershipResult()
            await self._apply(thread_id, user_id, add=True, reason=reason, result=result)
            return bool(result.added)

    async def _apply(
        self,
        thread_id: int,
        user_id: int,
        add: bool,
        reason: str,
        result: MembershipResult,
    ) -> None:
        action = "add" if add else "remove"
        call = self.platform.add_thread_member if add else self.platform.remove_thread_member
        try:
            await self._retry(
                lambda: call(thread_id, user_id),
                f"{action} {user_id} in thread {thread_id}",
            )
        except Exception as exc:
            LOGGER.error(
                "Failed to %s member %s in thread %s (%s): %s",
                action,
                user_id,
                thread_id,
                reason,
                exc,
            )
            result.failed.append(user_id)
            return
        LOGGER.info("Membership %s: member=%s thread=%s reason=%s", action, user_id, thread_id, reason)
        (result.added if add else result.removed).append(user_id)
