import asyncio

import pytest

from reviewbot.errors import ReviewError
from reviewbot.guard import thread_key
from reviewbot.platform import ThreadInfo
from reviewbot.service import ReviewService, chunk_mentions
from tests.fakes import (
    BOT_ID,
    GUILD_ROLE,
    MASTER_LEAD,
    SNS_GS,
    SNS_GS_LEAD,
    SNS_WAND,
    SNS_WAND_LEAD,
    TANK_CHANNEL,
    TANK_LEAD,
    WAND_BOW,
    FakeIdentityStore,
    FakePlatform,
    make_config,
)

OWNER = 7
LEAD = 30
ADMIN = 999
OWNER_ROLES = frozenset({GUILD_ROLE, SNS_GS})


def make_service(with_board=False):
    platform = FakePlatform()
    platform.add_member(OWNER, OWNER_ROLES)
    store = FakeIdentityStore({OWNER: "Zed"})
    board = platform if with_board else None
    return ReviewService(make_config(), platform, store, board=board), platform


def open_review(service, platform):
    result = asyncio.run(service.lifecycle.open(OWNER, OWNER_ROLES))
    return platform.threads[result.thread_id]


def test_chunk_mentions_respects_limit():
    chunks = chunk_mentions(list(range(100, 400)), limit=100)

    assert all(len(chunk) <= 100 for chunk in chunks)
    assert " ".join(chunks).split() == [f"<@{i}>" for i in range(100, 400)]
    assert chunk_mentions([]) == []


def test_rename_by_member_is_reverted_and_admin_is_notified():
    service, platform = make_service()
    thread = open_review(service, platform)
    before = thread.info()
    thread.name = "my thread"

    asyncio.run(service.on_thread_update(before, thread.info(), actor_id=LEAD))

    assert thread.name == before.name
    assert thread.messages[-1].content.endswith(f"Attempted by: <@{LEAD}>")


@pytest.mark.parametrize("actor", [BOT_ID, ADMIN, None])
def test_rename_by_bot_or_admin_is_kept(actor):
    service, platform = make_service()
    thread = open_review(service, platform)
    before = thread.info()
    thread.name = "Zed - renamed"

    asyncio.run(service.on_thread_update(before, thread.info(), actor_id=actor))

    assert thread.name == "Zed - renamed"


def test_external_reopen_resyncs_members_and_announces():
    service, platform = make_service()
    platform.add_member(LEAD, {TANK_LEAD, SNS_GS_LEAD})
    thread = open_review(service, platform)
    asyncio.run(service.lifecycle.close(OWNER, OWNER, OWNER_ROLES))
    thread.members.discard(LEAD)
    before = thread.info()
    thread.archived = thread.locked = False

    asyncio.run(service.on_thread_update(before, thread.info(), actor_id=ADMIN))

    assert service.registry.get(OWNER).active
    assert LEAD in thread.members
    assert thread.messages[-1].content == (
        f"Thread reopened by <@{ADMIN}> - Members list has been synced."
    )


def test_external_archive_is_mirrored():
    service, platform = make_service()
    thread = open_review(service, platform)
    before = thread.info()
    thread.archived = True

    asyncio.run(service.on_thread_update(before, thread.info()))

    assert service.registry.get(OWNER).archived


def test_update_of_untracked_thread_is_ignored():
    service, platform = make_service()
    before = ThreadInfo(id=1, parent_id=TANK_CHANNEL, name="a")
    after = ThreadInfo(id=1, parent_id=TANK_CHANNEL, name="b")

    asyncio.run(service.on_thread_update(before, after, actor_id=LEAD))

    assert platform.calls == []


def test_member_leaving_closes_and_rejoining_reopens():
    service, platform = make_service()
    thread = open_review(service, platform)

    outcome = asyncio.run(service.on_member_left(OWNER, "zed#0001"))
    assert outcome is not None
    assert thread.archived and thread.locked
    assert "zed#0001 (7) has left the server" in thread.messages[-1].content

    asyncio.run(service.on_member_joined(OWNER, "zed#0001", OWNER_ROLES))
    assert not thread.archived and not thread.locked
    assert thread.messages[-1].content == (
        "Thread reopened automatically - zed#0001 has rejoined the guild."
    )


def test_rejoin_without_guild_role_keeps_thread_closed():
    service, platform = make_service()
    thread = open_review(service, platform)
    asyncio.run(service.on_member_left(OWNER, "zed#0001"))

    asyncio.run(service.on_member_joined(OWNER, "zed#0001", frozenset({SNS_GS})))

    assert thread.archived


def test_regaining_guild_role_reopens_closed_thread():
    service, platform = make_service()
    thread = open_review(service, platform)
    asyncio.run(service.lifecycle.system_close(OWNER, "closed"))

    async def run():
        await service.on_member_roles_changed(OWNER, {SNS_GS}, OWNER_ROLES)
        await service.close()

    asyncio.run(run())

    assert not thread.archived
    assert thread.messages[-1].content == "Thread reopened - guild role restored."


def test_bucket_change_in_same_category_renames_after_settling():
    service, platform = make_service()
    thread = open_review(service, platform)
    new_roles = frozenset({GUILD_ROLE, SNS_WAND})
    platform.member_roles[OWNER] = new_roles

    async def run():
        await service.on_member_roles_changed(OWNER, OWNER_ROLES, new_roles)
        assert service.role_changes.pending(OWNER)
        await service.role_changes.flush(OWNER)
        await service.close()

    asyncio.run(run())

    assert thread.name == "Zed - SNS / Wand Review [7]"


def test_bucket_change_to_other_category_prompts_migration():
    service, platform = make_service()
    thread = open_review(service, platform)
    new_roles = frozenset({GUILD_ROLE, WAND_BOW})
    platform.member_roles[OWNER] = new_roles

    async def run():
        await service.on_member_roles_changed(OWNER, OWNER_ROLES, new_roles)
        await service.role_changes.flush(OWNER)
        await service.close()

    asyncio.run(run())

    assert thread.prompts[-1] == ("update", "tank", "healer", OWNER)
    assert service.registry.get(OWNER).thread_id == thread.id


def test_ambiguous_bucket_roles_wait():
    service, platform = make_service()
    thread = open_review(service, platform)
    new_roles = frozenset({GUILD_ROLE, SNS_GS, WAND_BOW})
    platform.member_roles[OWNER] = new_roles

    async def run():
        await service.on_member_roles_changed(OWNER, OWNER_ROLES, new_roles)
        await service.role_changes.flush(OWNER)
        await service.close()

    asyncio.run(run())

    assert [p for p in thread.prompts if p[0] == "update"] == []
    assert thread.name == "Zed - SNS / GS Review [7]"


def test_owner_bucket_flipping_back_leaves_thread_untouched():
    service, platform = make_service()
    platform.add_member(LEAD, {TANK_LEAD, SNS_GS_LEAD})
    thread = open_review(service, platform)
    settled = len(platform.calls)
    wand_roles = frozenset({GUILD_ROLE, SNS_WAND})

    async def run():
        await service.on_member_roles_changed(OWNER, OWNER_ROLES, wand_roles)
        await service.on_member_roles_changed(OWNER, wand_roles, OWNER_ROLES)
        await service.role_changes.flush(OWNER)
        await service.close()

    asyncio.run(run())

    assert thread.name == "Zed - SNS / GS Review [7]"
    assert thread.members == {BOT_ID, OWNER, LEAD}
    assert platform.calls[settled:] == []


def test_bucket_change_waits_for_thread_lock():
    service, platform = make_service()
    platform.add_member(LEAD, {TANK_LEAD, SNS_WAND_LEAD})
    thread = open_review(service, platform)
    platform.member_roles[OWNER] = frozenset({GUILD_ROLE, SNS_WAND})
    order = []

    async def hold_thread(release):
        async with service.locks.hold(thread_key(thread.id)):
            order.append("held")
            await release.wait()
            order.append(f"lead added while held: {LEAD in thread.members}")

    async def run():
        release = asyncio.Event()
        holder = asyncio.create_task(hold_thread(release))
        await asyncio.sleep(0)
        settle = asyncio.create_task(service._bucket_roles_settled(OWNER))
        await asyncio.sleep(0.01)
        release.set()
        await asyncio.gather(holder, settle)

    asyncio.run(run())

    assert order == ["held", "lead added while held: False"]
    assert thread.name == "Zed - SNS / Wand Review [7]"
    assert LEAD in thread.members


def test_lead_hierarchy_follows_current_roles_not_event_payload():
    service, platform = make_service()
    platform.add_member(LEAD, set())

    asyncio.run(service.on_member_roles_changed(LEAD, set(), {SNS_GS_LEAD}))

    assert platform.member_roles[LEAD] == frozenset()
    assert platform.mutations("add_role", "remove_role") == []


def test_new_bucket_lead_gets_hierarchy_and_access():
    service, platform = make_service()
    thread = open_review(service, platform)
    platform.add_member(LEAD, {SNS_GS_LEAD})

    async def run():
        await service.on_member_roles_changed(LEAD, set(), {SNS_GS_LEAD})
        granted = platform.member_roles[LEAD]
        await service.on_member_roles_changed(LEAD, {SNS_GS_LEAD}, granted)
        await service.close()

    asyncio.run(run())

    assert platform.member_roles[LEAD] == {SNS_GS_LEAD, TANK_LEAD, MASTER_LEAD}
    assert LEAD in thread.members


def test_press_update_renames_or_migrates():
    service, platform = make_service()
    thread = open_review(service, platform)

    same = asyncio.run(service.press_update(OWNER, OWNER, "tank", "tank", OWNER_ROLES))
    assert same == "Thread is already up to date!"

    healer_roles = frozenset({GUILD_ROLE, WAND_BOW})
    platform.member_roles[OWNER] = healer_roles
    moved = asyncio.run(service.press_update(OWNER, OWNER, "tank", "healer", healer_roles))

    record = service.registry.get(OWNER)
    assert moved == f"Review moved to <#{record.thread_id}>."
    assert record.category == "healer"
    assert thread.id not in platform.threads


def test_check_thread_reports_outcome():
    service, platform = make_service()
    thread = open_review(service, platform)

    assert asyncio.run(service.check_thread(thread.id)) == "Thread check complete: up to date."


def test_set_name_renames_open_thread():
    service, platform = make_service()
    thread = open_review(service, platform)

    message = asyncio.run(service.set_name(OWNER, "Zeddy", OWNER_ROLES))

    assert message == "Your in-game name is now **Zeddy**."
    assert service.store.names[OWNER] == "Zeddy"
    assert thread.name == "Zeddy - SNS / GS Review [7]"

    with pytest.raises(ReviewError):
        asyncio.run(service.set_name(OWNER, "x", OWNER_ROLES))


def test_changes_refresh_the_summary():
    service, platform = make_service(with_board=True)

    async def run():
        await service.lifecycle.open(OWNER, OWNER_ROLES)
        await service.summaries.flush("tank")
        await service.close()

    asyncio.run(run())

    (page,) = platform.pages[(TANK_CHANNEL, "tank")]
    assert "[Zed]" in page.description
