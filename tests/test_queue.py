import pytest

from battlebox.queue import describe_priority
from conftest import make_user, seat


def test_describe_priority():
    assert describe_priority(True, True, 3) == "VIP + Boost +3"
    assert describe_priority(False, True, 0) == "Fan"
    assert describe_priority(False, False, 2) == "Boost +2"
    assert describe_priority(False, False, 0) == "Standard"


@pytest.mark.asyncio
async def test_join_then_leave_without_boost_refunds_nothing(session):
    await make_user(session, "u1", "Alice")
    result = await session.queue.join("u1")
    assert result.success

    assert await session.queue.leave("u1") == 0
    assert not await session.queue.contains("u1")


@pytest.mark.asyncio
async def test_leave_when_not_queued_is_noop(session):
    await make_user(session, "u1", "Alice")
    assert await session.queue.leave("u1") == 0


@pytest.mark.asyncio
async def test_blocked_user_cannot_join(session):
    await make_user(session, "u1", "Alice")
    await session.storage.set_user_flag("u1", "block_queue", True)

    result = await session.queue.join("u1")
    assert result.code == "already_blocked"
    assert not await session.queue.contains("u1")

    forced = await session.queue.admin_add("u1")
    assert forced.success


@pytest.mark.asyncio
async def test_duplicate_join_is_already_satisfied(session, clock):
    await make_user(session, "u1", "Alice")
    await session.queue.join("u1")
    first = (await session.queue.snapshot())[0].joined_at

    clock.advance(30)
    again = await session.queue.join("u1")
    assert again.code == "already_queued"
    assert (await session.queue.snapshot())[0].joined_at == first


@pytest.mark.asyncio
async def test_arena_player_cannot_queue(session):
    await seat(session, "u1", "Alice")
    result = await session.queue.join("u1")
    assert result.code == "in_arena"


@pytest.mark.asyncio
async def test_boost_requires_queue_membership(session):
    await make_user(session, "u1", "Alice", bp=1000)
    result = await session.queue.boost("u1", 1)
    assert result.code == "not_queued"
    assert await session.ledger.balance("u1") == 1000


@pytest.mark.asyncio
async def test_boost_with_insufficient_funds_changes_nothing(session):
    await make_user(session, "u1", "Alice", bp=150)
    await session.queue.join("u1")

    result = await session.queue.boost("u1", 1)
    assert result.code == "insufficient_funds"
    assert (await session.queue.snapshot())[0].boost_spots == 0
    assert await session.ledger.balance("u1") == 150


@pytest.mark.asyncio
async def test_boost_slots_are_clamped(session):
    await make_user(session, "u1", "Alice", bp=2000)
    await session.queue.join("u1")

    big = await session.queue.boost("u1", 9)
    assert big.data == {"boost": 5, "cost": 1000}

    small = await session.queue.boost("u1", 0)
    assert small.data == {"boost": 6, "cost": 200}
    assert await session.ledger.balance("u1") == 800


@pytest.mark.asyncio
async def test_leave_refunds_half_of_boost_cost(session):
    await make_user(session, "u1", "Alice", bp=1000)
    await session.queue.join("u1")
    await session.queue.boost("u1", 3)
    assert await session.ledger.balance("u1") == 400

    refund = await session.queue.leave("u1")
    assert refund == 300
    assert await session.ledger.balance("u1") == 700


@pytest.mark.asyncio
async def test_vip_outranks_earlier_join(session, clock):
    await make_user(session, "u2", "Bob")
    await make_user(session, "u3", "Cleo", vip=True)

    await session.queue.join("u2")
    clock.advance(1)
    await session.queue.join("u3")

    ranked = await session.queue.snapshot()
    assert [slot.tiktok_id for slot in ranked] == ["u3", "u2"]
    assert ranked[0].reason == "VIP"
    assert ranked[0].priority == 5
    assert ranked[1].reason == "Standard"


@pytest.mark.asyncio
async def test_snapshot_is_a_stable_total_order(session, clock):
    for tiktok_id, name in (("a", "Anna"), ("b", "Ben"), ("c", "Cas"), ("d", "Dirk")):
        await make_user(session, tiktok_id, name, bp=1000)
        await session.queue.join(tiktok_id)
        clock.advance(1)

    await session.queue.boost("c", 2)
    await session.queue.boost("d", 2)

    first = await session.queue.snapshot()
    assert [slot.tiktok_id for slot in first] == ["c", "d", "a", "b"]
    assert [slot.rank for slot in first] == [1, 2, 3, 4]
    assert first[0].reason == "Boost +2"

    second = await session.queue.snapshot()
    assert [slot.tiktok_id for slot in second] == [slot.tiktok_id for slot in first]


@pytest.mark.asyncio
async def test_equal_timestamps_fall_back_to_insertion_order(session):
    await make_user(session, "x", "Xena")
    await make_user(session, "y", "Yuri")
    await session.queue.join("x")
    await session.queue.join("y")

    ranked = await session.queue.snapshot()
    assert [slot.tiktok_id for slot in ranked] == ["x", "y"]


@pytest.mark.asyncio
async def test_snapshot_reflects_current_vip_status(session, clock):
    await make_user(session, "u1", "Alice")
    await make_user(session, "u2", "Bob")
    await session.storage.set_user_flag("u2", "is_vip", True, expires_at=clock() + 60)

    await session.queue.join("u1")
    clock.advance(1)
    await session.queue.join("u2")
    assert (await session.queue.snapshot())[0].tiktok_id == "u2"

    clock.advance(120)
    ranked = await session.queue.snapshot()
    assert [slot.tiktok_id for slot in ranked] == ["u1", "u2"]
    assert not ranked[1].is_vip


@pytest.mark.asyncio
async def test_admin_promote_and_demote_adjust_boost_for_free(session):
    await make_user(session, "u1", "Alice")
    await session.queue.join("u1")

    assert (await session.queue.adjust_boost("u1", 1)).data["boost"] == 1
    assert (await session.queue.adjust_boost("u1", -1)).data["boost"] == 0
    assert (await session.queue.adjust_boost("u1", -1)).data["boost"] == 0
    assert await session.ledger.balance("u1") == 0

    missing = await session.queue.adjust_boost("nobody", 1)
    assert missing.code == "not_queued"
