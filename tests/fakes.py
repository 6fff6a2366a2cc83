import itertools
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence

from reviewbot.config import (
    BotConfig,
    BucketDefinition,
    CategoryDefinition,
    TimingConfig,
)
from reviewbot.embeds import SummaryPage
from reviewbot.platform import AttachmentInfo, MessageInfo, ThreadInfo

GUILD_ID = 1
BOT_ID = 1

TANK_CHANNEL = 100
TANK_LEAD = 10
SNS_GS = 11
SNS_WAND = 12
SNS_GS_LEAD = 111
SNS_WAND_LEAD = 112

HEALER_CHANNEL = 200
HEALER_LEAD = 20
WAND_BOW = 21
WAND_STAFF = 22
WAND_BOW_LEAD = 121
WAND_STAFF_LEAD = 122

GUILD_ROLE = 50
FILTER_ROLE = 60
MASTER_LEAD = 70


def make_categories() -> List[CategoryDefinition]:
    return [
        CategoryDefinition(
            name="tank",
            channel_id=TANK_CHANNEL,
            lead_role_id=TANK_LEAD,
            buckets=(
                BucketDefinition(SNS_GS, "SNS / GS", SNS_GS_LEAD),
                BucketDefinition(SNS_WAND, "SNS / Wand", SNS_WAND_LEAD),
            ),
        ),
        CategoryDefinition(
            name="healer",
            channel_id=HEALER_CHANNEL,
            lead_role_id=HEALER_LEAD,
            buckets=(
                BucketDefinition(WAND_BOW, "Wand / Bow", WAND_BOW_LEAD),
                BucketDefinition(WAND_STAFF, "Wand / Staff", WAND_STAFF_LEAD),
            ),
        ),
    ]


def make_config(**overrides) -> BotConfig:
    timing = TimingConfig(
        sweep_delay_seconds=0,
        refresh_min_delay_seconds=0,
        refresh_max_delay_seconds=0,
        role_update_delay_seconds=0,
        retry_delay_seconds=0,
    )
    config = BotConfig(
        token="token",
        log_level="INFO",
        guild_id=GUILD_ID,
        categories=make_categories(),
        notifications_channel_id=900,
        admin_user_id=999,
        guild_roles={GUILD_ROLE: "Vanguard"},
        filter_role_ids=[FILTER_ROLE],
        master_lead_role_id=MASTER_LEAD,
        timing=timing,
    )
    return replace(config, **overrides)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StoreUnavailable(Exception):
    pass


class FakeIdentityStore:
    def __init__(self, names: Optional[Dict[int, str]] = None, fail: bool = False):
        self.names = dict(names or {})
        self.fail = fail
        self.get_calls = 0

    async def get(self, user_id: int) -> Optional[str]:
        self.get_calls += 1
        if self.fail:
            raise StoreUnavailable("database unreachable")
        return self.names.get(user_id)

    async def set(self, user_id: int, name: str) -> None:
        if self.fail:
            raise StoreUnavailable("database unreachable")
        self.names[user_id] = name

    async def ping(self) -> bool:
        if self.fail:
            raise StoreUnavailable("database unreachable")
        return True


class PlatformError(Exception):
    pass


@dataclass
class FakeThread:
    id: int
    parent_id: int
    name: str
    archived: bool = False
    locked: bool = False
    members: set = field(default_factory=set)
    messages: List[MessageInfo] = field(default_factory=list)
    prompts: List[tuple] = field(default_factory=list)

    def info(self) -> ThreadInfo:
        return ThreadInfo(
            id=self.id,
            parent_id=self.parent_id,
            name=self.name,
            archived=self.archived,
            locked=self.locked,
        )


class FakePlatform:
    """In-memory stand-in for Discord: threads, members, roles and messages."""

    def __init__(self, self_id: int = BOT_ID):
        self._self_id = self_id
        self.threads: Dict[int, FakeThread] = {}
        self.member_roles: Dict[int, frozenset] = {}
        self.display_names: Dict[int, str] = {}
        self.role_scripts: Dict[int, List[frozenset]] = {}
        self.channel_messages: Dict[int, List[str]] = {}
        self.pages: Dict[tuple, List[SummaryPage]] = {}
        self.failures: Dict[str, int] = {}
        self.fail_uploads = False
        self.calls: List[tuple] = []
        self._ids = itertools.count(5000)
        self._message_ids = itertools.count(1)

    @property
    def self_id(self) -> int:
        return self._self_id

    # -- test helpers --------------------------------------------------------

    def add_member(self, user_id: int, roles=(), display_name: Optional[str] = None):
        self.member_roles[user_id] = frozenset(roles)
        self.display_names[user_id] = display_name or f"user{user_id}"

    def add_thread(
        self,
        parent_id: int,
        name: str,
        members=(),
        archived: bool = False,
        locked: bool = False,
        thread_id: Optional[int] = None,
    ) -> FakeThread:
        tid = thread_id or next(self._ids)
        thread = FakeThread(
            id=tid,
            parent_id=parent_id,
            name=name,
            archived=archived,
            locked=locked,
            members={self._self_id, *members},
        )
        self.threads[tid] = thread
        return thread

    def post(self, thread_id: int, author_id: int, author_label: str, content: str,
             attachments: Sequence[AttachmentInfo] = (), system: bool = False) -> MessageInfo:
        message = MessageInfo(
            id=next(self._message_ids),
            author_id=author_id,
            author_label=author_label,
            content=content,
            attachments=tuple(attachments),
            system=system,
        )
        self.threads[thread_id].messages.append(message)
        return message

    def fail_next(self, operation: str, times: int = 1) -> None:
        self.failures[operation] = self.failures.get(operation, 0) + times

    def mutations(self, *names: str) -> List[tuple]:
        return [call for call in self.calls if call[0] in names]

    def _check(self, operation: str) -> None:
        remaining = self.failures.get(operation, 0)
        if remaining:
            self.failures[operation] = remaining - 1
            raise PlatformError(f"{operation} failed")

    def _thread(self, thread_id: int) -> FakeThread:
        thread = self.threads.get(thread_id)
        if thread is None:
            raise PlatformError(f"thread {thread_id} not found")
        return thread

    # -- ThreadPlatform ------------------------------------------------------

    async def fetch_thread(self, thread_id: int) -> Optional[ThreadInfo]:
        self._check("fetch_thread")
        thread = self.threads.get(thread_id)
        return thread.info() if thread else None

    async def create_thread(self, channel_id: int, name: str) -> ThreadInfo:
        self._check("create_thread")
        thread = self.add_thread(channel_id, name)
        self.calls.append(("create_thread", thread.id, channel_id, name))
        return thread.info()

    async def delete_thread(self, thread_id: int) -> None:
        self._check("delete_thread")
        self.calls.append(("delete_thread", thread_id))
        self.threads.pop(thread_id, None)

    async def set_archived(self, thread_id: int, archived: bool) -> None:
        self._check("set_archived")
        self._thread(thread_id).archived = archived
        self.calls.append(("set_archived", thread_id, archived))

    async def set_locked(self, thread_id: int, locked: bool) -> None:
        self._check("set_locked")
        self._thread(thread_id).locked = locked
        self.calls.append(("set_locked", thread_id, locked))

    async def rename_thread(self, thread_id: int, name: str) -> None:
        self._check("rename_thread")
        self._thread(thread_id).name = name
        self.calls.append(("rename_thread", thread_id, name))

    async def list_threads(self, channel_id: int) -> List[ThreadInfo]:
        self._check("list_threads")
        return [t.info() for t in self.threads.values() if t.parent_id == channel_id]

    async def fetch_thread_members(self, thread_id: int) -> set:
        self._check("fetch_thread_members")
        return set(self._thread(thread_id).members)

    async def add_thread_member(self, thread_id: int, user_id: int) -> None:
        self._check("add_thread_member")
        self._thread(thread_id).members.add(user_id)
        self.calls.append(("add_thread_member", thread_id, user_id))

    async def remove_thread_member(self, thread_id: int, user_id: int) -> None:
        self._check("remove_thread_member")
        self._thread(thread_id).members.discard(user_id)
        self.calls.append(("remove_thread_member", thread_id, user_id))

    async def fetch_messages(self, thread_id: int) -> List[MessageInfo]:
        self._check("fetch_messages")
        return list(self._thread(thread_id).messages)

    async def send_message(self, channel_id: int, content: str, attachments=(), mention_user_ids=()) -> None:
        self._check("send_message")
        if attachments and self.fail_uploads:
            raise PlatformError("upload failed")
        self.calls.append(("send_message", channel_id, content))
        if channel_id in self.threads:
            self.post(channel_id, self._self_id, "ReviewBot#0001", content, attachments)
        else:
            self.channel_messages.setdefault(channel_id, []).append(content)

    async def send_close_prompt(self, thread_id: int, owner_id: int) -> None:
        self._check("send_close_prompt")
        self._thread(thread_id).prompts.append(("close", owner_id))
        self.post(thread_id, self._self_id, "ReviewBot#0001", "Click the button below to close this review thread:")

    async def send_update_prompt(self, thread_id: int, old_category: str, new_category: str, owner_id: int) -> None:
        self._check("send_update_prompt")
        self._thread(thread_id).prompts.append(("update", old_category, new_category, owner_id))
        self.calls.append(("send_update_prompt", thread_id, old_category, new_category, owner_id))

    async def has_update_prompt(self, thread_id: int) -> bool:
        return any(p[0] == "update" for p in self._thread(thread_id).prompts)

    async def fetch_member_roles(self, user_id: int) -> Optional[frozenset]:
        self._check("fetch_member_roles")
        script = self.role_scripts.get(user_id)
        if script:
            roles = script.pop(0)
            self.member_roles[user_id] = roles
            return roles
        return self.member_roles.get(user_id)

    async def fetch_role_holders(self, role_id: int) -> set:
        return {uid for uid, roles in self.member_roles.items() if role_id in roles}

    async def display_name(self, user_id: int) -> Optional[str]:
        return self.display_names.get(user_id)

    async def add_role(self, user_id: int, role_id: int, reason: str) -> None:
        self.member_roles[user_id] = self.member_roles.get(user_id, frozenset()) | {role_id}
        self.calls.append(("add_role", user_id, role_id))

    async def remove_role(self, user_id: int, role_id: int, reason: str) -> None:
        self.member_roles[user_id] = self.member_roles.get(user_id, frozenset()) - {role_id}
        self.calls.append(("remove_role", user_id, role_id))

    # -- SummaryBoard --------------------------------------------------------

    async def current_pages(self, channel_id: int, category: str) -> List[SummaryPage]:
        return list(self.pages.get((channel_id, category), []))

    async def replace_pages(self, channel_id: int, category: str, pages) -> None:
        self.pages[(channel_id, category)] = list(pages)
        self.calls.append(("replace_pages", channel_id, category, len(pages)))
