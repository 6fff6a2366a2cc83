import asyncio

import pytest

from reviewbot.errors import (
    NameLookupFailed,
    NameNotSet,
    NoBucketRole,
    OperationInProgress,
    PermissionDenied,
)
from reviewbot.lifecycle import CloseOutcome, OpenOutcome
from reviewbot.registry import ReviewRecord
from reviewbot.service import ReviewService
from tests.fakes import (
    BOT_ID,
    GUILD_ROLE,
    SNS_GS,
    SNS_GS_LEAD,
    SNS_WAND,
    SNS_WAND_LEAD,
    TANK_CHANNEL,
    TANK_LEAD,
    FakeIdentityStore,
    FakePlatform,
    make_config,
)

OWNER = 7
GS_LEAD = 30
WAND_LEAD = 31
OWNER_ROLES = frozenset({GUILD_ROLE, SNS_GS})


def make_service(names=None, fail_store=False):
    platform = FakePlatform()
    platform.add_member(OWNER, OWNER_ROLES, display_name="zed_discord")
    platform.add_member(GS_LEAD, {TANK_LEAD, SNS_GS_LEAD})
    platform.add_member(WAND_LEAD, {TANK_LEAD, SNS_WAND_LEAD})
    store = FakeIdentityStore({OWNER: "Zed"} if names is None else names, fail=fail_store)
    return ReviewService(make_config(), platform, store), platform


def seed_review(service, platform, archived=False, locked=False, members=()):
    thread = platform.add_thread(
        TANK_CHANNEL,
        "Zed - SNS / GS Review [7]",
        members=members,
        archived=archived,
        locked=locked,
    )
    service.registry.set(
        ReviewRecord(
            user_id=OWNER,
            thread_id=thread.id,
            channel_id=TANK_CHANNEL,
            category="tank",
            lead_role_id=TANK_LEAD,
            archived=archived,
            locked=locked,
        )
    )
    return thread


def test_open_creates_thread_with_members_and_record():
    service, platform = make_service()

    result = asyncio.run(service.lifecycle.open(OWNER, OWNER_ROLES))

    assert result.outcome is OpenOutcome.CREATED
    thread = platform.threads[result.thread_id]
    assert thread.name == "Zed - SNS / GS Review [7]"
    assert thread.parent_id == TANK_CHANNEL
    assert thread.members == {BOT_ID, OWNER, GS_LEAD}
    assert ("close", OWNER) in thread.prompts
    record = service.registry.get(OWNER)
    assert record.thread_id == thread.id
    assert record.category == "tank"
    assert OWNER not in service.pending


def test_open_without_bucket_role_mutates_nothing():
    service, platform = make_service()

    with pytest.raises(NoBucketRole):
        asyncio.run(service.lifecycle.open(OWNER, frozenset({GUILD_ROLE})))

    assert platform.calls == []
    assert len(service.registry) == 0
    assert OWNER not in service.pending


def test_open_with_unset_name_asks_to_set_it_first():
    service, platform = make_service(names={})

    with pytest.raises(NameNotSet):
        asyncio.run(service.lifecycle.open(OWNER, OWNER_ROLES))

    assert platform.mutations("create_thread") == []


def test_open_during_name_store_outage_fails_with_retry_later():
    service, platform = make_service(fail_store=True)

    with pytest.raises(NameLookupFailed) as excinfo:
        asyncio.run(service.lifecycle.open(OWNER, OWNER_ROLES))

    assert "try again later" in excinfo.value.user_message
    assert platform.mutations("create_thread") == []
    assert len(service.registry) == 0


def test_open_removes_thread_when_setup_fails():
    service, platform = make_service()
    platform.fail_next("send_close_prompt", times=3)

    with pytest.raises(Exception):
        asyncio.run(service.lifecycle.open(OWNER, OWNER_ROLES))

    assert platform.threads == {}
    assert len(service.registry) == 0
    assert OWNER not in service.pending


def test_open_removes_thread_when_cancelled_during_setup():
    service, platform = make_service()

    async def interrupted(thread_id, owner_id):
        raise asyncio.CancelledError()

    platform.send_close_prompt = interrupted

    with pytest.raises(asyncio.CancelledError):
        asyncio.run(service.lifecycle.open(OWNER, OWNER_ROLES))

    assert platform.threads == {}
    assert len(service.registry) == 0
    assert OWNER not in service.pending


def test_open_reopens_closed_thread_even_without_name():
    service, platform = make_service(names={})
    thread = seed_review(service, platform, archived=True, locked=True, members={WAND_LEAD})

    result = asyncio.run(service.lifecycle.open(OWNER, OWNER_ROLES))

    assert result.outcome is OpenOutcome.REOPENED
    assert not thread.archived and not thread.locked
    assert thread.members == {BOT_ID, OWNER, GS_LEAD}
    assert thread.messages[-1].content == "Thread reopened."
    record = service.registry.get(OWNER)
    assert record.active
    assert record.archived_at is None


def test_open_readds_owner_to_live_thread():
    service, platform = make_service()
    thread = seed_review(service, platform)

    first = asyncio.run(service.lifecycle.open(OWNER, OWNER_ROLES))
    second = asyncio.run(service.lifecycle.open(OWNER, OWNER_ROLES))

    assert first.outcome is OpenOutcome.READDED
    assert second.outcome is OpenOutcome.ALREADY_OPEN
    assert OWNER in thread.members


def test_open_purges_record_of_missing_thread_and_creates_new():
    service, platform = make_service()
    thread = seed_review(service, platform)
    del platform.threads[thread.id]

    result = asyncio.run(service.lifecycle.open(OWNER, OWNER_ROLES))

    assert result.outcome is OpenOutcome.CREATED
    assert service.registry.get(OWNER).thread_id == result.thread_id != thread.id


def test_open_rejected_while_operation_pending():
    service, platform = make_service()
    service.pending.add(OWNER)

    with pytest.raises(OperationInProgress):
        asyncio.run(service.lifecycle.open(OWNER, OWNER_ROLES))

    assert platform.calls == []


def test_close_by_owner_is_idempotent():
    service, platform = make_service()
    thread = seed_review(service, platform, members={OWNER})

    first = asyncio.run(service.lifecycle.close(OWNER, OWNER, OWNER_ROLES))
    second = asyncio.run(service.lifecycle.close(OWNER, OWNER, OWNER_ROLES))

    assert first is CloseOutcome.CLOSED
    assert second is CloseOutcome.ALREADY_CLOSED
    assert thread.archived and thread.locked
    record = service.registry.get(OWNER)
    assert record.archived and record.archived_at is not None


def test_close_permissions():
    service, platform = make_service()
    seed_review(service, platform)

    with pytest.raises(PermissionDenied):
        asyncio.run(service.lifecycle.close(OWNER, 99, frozenset()))

    outcome = asyncio.run(service.lifecycle.close(OWNER, GS_LEAD, frozenset({TANK_LEAD})))
    assert outcome is CloseOutcome.CLOSED


def test_close_by_administrator():
    service, platform = make_service()
    seed_review(service, platform)

    outcome = asyncio.run(service.lifecycle.close(OWNER, 99, frozenset(), is_admin=True))

    assert outcome is CloseOutcome.CLOSED


def test_system_close_posts_reason():
    service, platform = make_service()
    thread = seed_review(service, platform)

    asyncio.run(service.lifecycle.system_close(OWNER, "Member left the server."))

    assert "Member left the server." in [m.content for m in thread.messages]
    assert thread.archived and thread.locked


def test_rename_after_bucket_change_moves_leads():
    service, platform = make_service()
    thread = seed_review(service, platform, members={OWNER, GS_LEAD})
    roles = frozenset({GUILD_ROLE, SNS_WAND})

    renamed = asyncio.run(service.lifecycle.rename(OWNER, roles))

    assert renamed
    assert thread.name == "Zed - SNS / Wand Review [7]"
    assert thread.members == {BOT_ID, OWNER, WAND_LEAD}


def test_rename_is_noop_when_title_matches():
    service, platform = make_service()
    seed_review(service, platform)

    assert not asyncio.run(service.lifecycle.rename(OWNER, OWNER_ROLES))
    assert platform.mutations("rename_thread") == []


def test_rename_uses_display_name_when_unset_and_skips_on_failure():
    service, platform = make_service(names={})
    thread = seed_review(service, platform)

    assert asyncio.run(service.lifecycle.rename(OWNER, OWNER_ROLES))
    assert thread.name == "zed_discord - SNS / GS Review [7]"

    broken, broken_platform = make_service(fail_store=True)
    seed_review(broken, broken_platform)
    assert not asyncio.run(broken.lifecycle.rename(OWNER, frozenset({GUILD_ROLE, SNS_WAND})))
    assert broken_platform.mutations("rename_thread") == []
