import pytest

from battlebox.twists import TWISTS, resolve_kind, twist_for_gift
from conftest import seat


def test_aliases_resolve_case_insensitively():
    assert resolve_kind("MG") == "moneygun"
    assert resolve_kind("dp") == "diamond_pistol"
    assert resolve_kind("DiamondPistol") == "diamond_pistol"
    assert resolve_kind("diamond_pistol") == "diamond_pistol"
    assert resolve_kind(" Reverse ") == "galaxy"
    assert resolve_kind("nope") is None
    assert resolve_kind("") is None


def test_gift_mapping():
    assert twist_for_gift(7168) == "moneygun"
    assert twist_for_gift(None, "galaxy globe") == "heal"
    assert twist_for_gift(5655, "Rose") is None
    assert TWISTS["diamond_pistol"].once_per_round


@pytest.fixture()
async def arena_of_three(session):
    for tiktok_id, name in (("a", "Anna"), ("b", "Ben"), ("c", "Cas")):
        await seat(session, tiktok_id, name)
    await session.start_round("qualifying")
    return session


@pytest.mark.asyncio
async def test_grant_increments_inventory(session, recorder):
    await seat(session, "a", "Anna")
    await session.twists.grant("a", "mg")
    result = await session.twists.grant("a", "moneygun", 2)

    assert result.data == {"kind": "moneygun", "count": 3}
    assert await session.twists.inventory("a") == {"moneygun": 3}
    assert recorder.topic("inventory")[-1] == {"tiktok_id": "a", "twists": {"moneygun": 3}}


@pytest.mark.asyncio
async def test_unknown_twist_is_rejected(arena_of_three):
    result = await arena_of_three.twists.use("a", "laser", "b")
    assert result.code == "unknown_twist"


@pytest.mark.asyncio
async def test_use_without_inventory_changes_nothing(arena_of_three):
    session = arena_of_three
    result = await session.twists.use("a", "moneygun", "@ben")

    assert not result.success
    assert result.code == "no_inventory"
    assert not session.arena.get("b").marked
    assert await session.twists.inventory("a") == {}


@pytest.mark.asyncio
async def test_caster_must_be_in_arena(arena_of_three):
    session = arena_of_three
    await session.identity.resolve("z", "Zed", "zed")
    await session.twists.grant("z", "moneygun")

    result = await session.twists.use("z", "moneygun", "a")
    assert result.code == "not_in_arena"
    assert await session.twists.inventory("z") == {"moneygun": 1}


@pytest.mark.asyncio
async def test_target_rules(arena_of_three):
    session = arena_of_three
    await session.twists.grant("a", "moneygun")

    assert (await session.twists.use("a", "moneygun")).code == "target_required"
    assert (await session.twists.use("a", "moneygun", "@nobody")).code == "target_not_in_arena"
    assert await session.twists.inventory("a") == {"moneygun": 1}


@pytest.mark.asyncio
async def test_moneygun_marks_target_and_consumes(arena_of_three):
    session = arena_of_three
    await session.twists.grant("a", "moneygun")

    result = await session.twists.use("a", "gun", "@ben")
    assert result.success
    assert result.consumed
    assert session.arena.get("b").marked
    assert await session.twists.inventory("a") == {}

    statuses = {s.tiktok_id: s.status for s in session.arena.standings()}
    assert statuses["b"] == "elimination"


@pytest.mark.asyncio
async def test_immune_target_blocks_offense_but_charge_is_spent(arena_of_three):
    session = arena_of_three
    await session.twists.grant("b", "immune")
    await session.twists.grant("a", "moneygun")

    shield = await session.twists.use("b", "shield", "b")
    assert shield.success
    assert session.arena.get("b").immune

    result = await session.twists.use("a", "moneygun", "b")
    assert not result.success
    assert result.code == "blocked_by_immune"
    assert result.consumed
    assert not session.arena.get("b").marked
    assert await session.twists.inventory("a") == {}


@pytest.mark.asyncio
async def test_diamond_pistol_once_per_round(arena_of_three):
    session = arena_of_three
    await session.twists.grant("a", "diamond_pistol", 2)

    first = await session.twists.use("a", "dp", "c")
    assert first.success
    assert sorted(first.data["marked"]) == ["a", "b"]
    assert session.arena.get("c").immune
    assert session.arena.danger_zone() == []

    second = await session.twists.use("a", "dp", "b")
    assert not second.success
    assert second.code == "round_locked"
    assert await session.twists.inventory("a") == {}
    assert not session.arena.get("b").immune


@pytest.mark.asyncio
async def test_diamond_pistol_lock_clears_on_reset(arena_of_three):
    session = arena_of_three
    await session.twists.use("a", "dp", "c", bypass_inventory=True)
    await session.end_round()
    await session.reset_round(clear_roster=False)
    await session.start_round("qualifying")

    again = await session.twists.use("c", "dp", "c", bypass_inventory=True)
    assert again.success


@pytest.mark.asyncio
async def test_bypass_leaves_inventory_alone(arena_of_three):
    session = arena_of_three
    await session.twists.grant("a", "moneygun")
    result = await session.twists.use("a", "moneygun", "b", bypass_inventory=True)
    assert result.success
    assert not result.consumed
    assert await session.twists.inventory("a") == {"moneygun": 1}


@pytest.mark.asyncio
async def test_bomb_picks_a_non_immune_player(arena_of_three):
    session = arena_of_three
    session.arena.add_effect("a", "immune")
    session.arena.add_effect("b", "immune")
    await session.twists.grant("a", "bomb")

    result = await session.twists.use("a", "boom")
    assert result.success
    assert result.target_id == "c"
    assert session.arena.get("c").marked


@pytest.mark.asyncio
async def test_bomb_without_targets_is_a_free_noop(arena_of_three):
    session = arena_of_three
    for tiktok_id in ("a", "b", "c"):
        session.arena.add_effect(tiktok_id, "immune")
    await session.twists.grant("a", "bomb")

    result = await session.twists.use("a", "bomb")
    assert result.code == "no_target"
    assert await session.twists.inventory("a") == {"bomb": 1}


@pytest.mark.asyncio
async def test_heal_clears_mark(arena_of_three):
    session = arena_of_three
    await session.twists.use("a", "moneygun", "b", bypass_inventory=True)
    assert session.arena.get("b").marked

    result = await session.twists.use("c", "revive", "b", bypass_inventory=True)
    assert result.success
    assert not session.arena.get("b").marked


@pytest.mark.asyncio
async def test_breaker_strips_immunity(arena_of_three):
    session = arena_of_three
    await session.twists.use("b", "immune", "b", bypass_inventory=True)
    await session.twists.use("a", "breaker", "b", bypass_inventory=True)

    player = session.arena.get("b")
    assert not player.immune
    assert "immune_broken" in player.effects

    await session.twists.use("c", "heal", "b", bypass_inventory=True)
    assert "immune_broken" not in session.arena.get("b").effects


@pytest.mark.asyncio
async def test_galaxy_toggles_reversal(arena_of_three, recorder):
    session = arena_of_three
    session.arena.credit_score("a", 300)
    session.arena.credit_score("b", 200)

    result = await session.twists.use("c", "galaxy", bypass_inventory=True)
    assert result.data == {"reversed": True}
    assert [p.tiktok_id for p in session.arena.ranking()][0] == "c"
    assert recorder.logs("twist")

    await session.twists.use("c", "flip", bypass_inventory=True)
    assert not session.arena.round.reversed


@pytest.mark.asyncio
async def test_blocked_user_cannot_use_twists(arena_of_three):
    session = arena_of_three
    await session.storage.set_user_flag("a", "block_twists", True)
    await session.twists.grant("a", "moneygun")

    result = await session.twists.use("a", "moneygun", "b")
    assert result.code == "blocked"
    assert await session.twists.inventory("a") == {"moneygun": 1}
