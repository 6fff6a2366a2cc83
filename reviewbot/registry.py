from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, List, Optional

from .models import utcnow_naive

LOGGER = logging.getLogger(__name__)

TITLE_RE = re.compile(r"^(?P<name>.*) - (?P<bucket>.*) Review \[(?P<owner>\d+)\]$")
OWNER_SUFFIX_RE = re.compile(r"\[(\d+)\]$")


def format_thread_name(display_name: Optional[str], bucket_label: str, user_id: int) -> str:
    return f"{display_name or 'Unknown'} - {bucket_label} Review [{user_id}]"


def parse_owner_id(thread_name: str) -> Optional[int]:
    match = OWNER_SUFFIX_RE.search(thread_name or "")
    return int(match.group(1)) if match else None


def parse_bucket_label(thread_name: str) -> Optional[str]:
    match = TITLE_RE.match(thread_name or "")
    return match.group("bucket") if match else None


@dataclass(frozen=True)
class ReviewRecord:
    user_id: int
    thread_id: int
    channel_id: int
    category: str
    lead_role_id: int
    archived: bool = False
    locked: bool = False
    archived_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utcnow_naive)

    @property
    def active(self) -> bool:
        return not (self.archived or self.locked)


class ReviewRegistry:
    """In-memory map of user id to their current review thread.

    Records are immutable; every change stores a new record. Mutations never
    await, so each one is atomic on the event loop.
    """

    def __init__(self):
        self._records: Dict[int, ReviewRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, user_id: int) -> bool:
        return user_id in self._records

    def get(self, user_id: int) -> Optional[ReviewRecord]:
        return self._records.get(user_id)

    def set(self, record: ReviewRecord) -> ReviewRecord:
        self._records[record.user_id] = record
        return record

    def update(self, user_id: int, **changes) -> Optional[ReviewRecord]:
        current = self._records.get(user_id)
        if current is None:
            LOGGER.error("No existing review state found for %s", user_id)
            return None
        if "archived" in changes:
            if changes["archived"] and not current.archived:
                changes.setdefault("archived_at", utcnow_naive())
            elif not changes["archived"]:
                changes["archived_at"] = None
        updated = replace(current, updated_at=utcnow_naive(), **changes)
        self._records[user_id] = updated
        return updated

    def delete(self, user_id: int) -> Optional[ReviewRecord]:
        return self._records.pop(user_id, None)

    def find_by_thread(self, thread_id: int) -> Optional[ReviewRecord]:
        for record in self._records.values():
            if record.thread_id == thread_id:
                return record
        return None

    def snapshot(self, category: Optional[str] = None) -> List[ReviewRecord]:
        records = list(self._records.values())
        if category is not None:
            records = [r for r in records if r.category == category]
        return records

    def replace_all(self, records: List[ReviewRecord]) -> None:
        self._records = {r.user_id: r for r in records}
