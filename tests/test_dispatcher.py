import asyncio

import pytest

from battlebox.dispatcher import parse_command
from battlebox.events import GiftEvent, MalformedEvent, normalize
from conftest import chat, gift, make_user, seat


def test_parse_command():
    assert parse_command("!boost 3", "!") == ("boost", ["3"])
    assert parse_command("!JOIN", "!") == ("join", [])
    assert parse_command("hello !join", "!") is None
    assert parse_command("!", "!") is None


def test_normalize_accepts_snake_case_and_nested_data():
    event = normalize({
        "type": "gift",
        "data": {
            "msg_id": 77,
            "sender": {"user_id": 42, "nickname": "Zoe", "unique_id": "zoe"},
            "to_user": None,
            "gift_name": "Rose",
            "diamond_count": "1",
            "gift_type": 1,
            "repeat_count": 4,
            "repeat_end": "true",
        },
    })
    assert isinstance(event, GiftEvent)
    assert event.msg_id == "77"
    assert event.sender.user_id == "42"
    assert event.receiver is None
    assert event.settled
    assert event.total_diamonds == 4


@pytest.mark.parametrize("raw", [
    None,
    {"type": "gift"},
    {"comment": "no type"},
    {"type": "chat", "user": {"userId": "1"}},
    {"type": "gift", "user": {"userId": "1"}, "diamondCount": "lots"},
    {"type": "like", "user": {"userId": "1"}},
])
def test_normalize_rejects_malformed(raw):
    with pytest.raises(MalformedEvent):
        normalize(raw)


@pytest.mark.asyncio
async def test_chat_then_gift_scenario(session):
    await seat(session, "u1", "Alice")
    await session.start_round("qualifying")

    await session.dispatcher.dispatch(chat("m1", "u1", "hello", nickname="Alice"))
    assert await session.ledger.balance("u1") == 3

    result = await session.dispatcher.dispatch(gift("m2", "u1", 100, receiver_id="u1", nickname="Alice"))
    assert result.success
    assert result.data["scored"]

    assert session.arena.get("u1").score == 100
    user = await session.storage.get_user("u1")
    assert (user.diamonds_round, user.diamonds_stream, user.diamonds_total) == (100, 100, 100)
    assert user.bp_total == 23


@pytest.mark.asyncio
async def test_duplicate_gift_is_credited_once(session):
    await seat(session, "p1", "Pia")
    await session.start_round("qualifying")

    packet = gift("dup-1", "fan1", 50, receiver_id="p1")
    await session.dispatcher.dispatch(packet)
    assert await session.dispatcher.dispatch(packet) is None

    sender = await session.storage.get_user("fan1")
    assert sender.diamonds_total == 50
    assert session.arena.get("p1").score == 50


@pytest.mark.asyncio
async def test_dedup_window_expires(session, clock):
    packet = gift("again-1", "fan1", 10)
    await session.dispatcher.dispatch(packet)
    clock.advance(61)
    await session.dispatcher.dispatch(packet)
    assert (await session.storage.get_user("fan1")).diamonds_total == 20


@pytest.mark.asyncio
async def test_streak_gift_credits_on_settlement_only(session):
    await seat(session, "p1", "Pia")
    await session.start_round("qualifying")

    pending = await session.dispatcher.dispatch(
        gift("streak-1", "fan1", 1, receiver_id="p1", gift_type=1, repeat_count=3))
    assert pending.code == "pending"
    assert await session.storage.get_user("fan1") is None

    settled = await session.dispatcher.dispatch(
        gift("streak-1", "fan1", 1, receiver_id="p1", gift_type=1, repeat_count=5, repeat_end=True))
    assert settled.data["diamonds"] == 5
    assert session.arena.get("p1").score == 5
    assert (await session.storage.get_user("fan1")).diamonds_total == 5


@pytest.mark.asyncio
async def test_zero_value_gift_is_ignored(session):
    result = await session.dispatcher.dispatch(gift("zero-1", "fan1", 0))
    assert result.code == "ignored"
    assert await session.storage.get_user("fan1") is None


@pytest.mark.asyncio
async def test_host_gift_credits_sender_but_not_arena(session, recorder):
    await seat(session, "p1", "Pia")
    await session.start_round("qualifying")

    to_host = await session.dispatcher.dispatch(gift("h1", "fan1", 30, receiver_id="host-1"))
    no_receiver = await session.dispatcher.dispatch(gift("h2", "fan1", 20))

    assert not to_host.data["scored"]
    assert not no_receiver.data["scored"]
    assert session.arena.get("p1").score == 0
    assert (await session.storage.get_user("fan1")).diamonds_total == 50
    assert "→ host" in recorder.logs("gift")[-1]["message"]


@pytest.mark.asyncio
async def test_gift_to_player_outside_round_is_dropped(session):
    await seat(session, "p1", "Pia")
    result = await session.dispatcher.dispatch(gift("idle-1", "fan1", 40, receiver_id="p1"))
    assert result.code == "ignored"
    assert session.arena.get("p1").score == 0
    assert await session.storage.get_user("fan1") is None

    await session.start_round("qualifying")
    assert await session.dispatcher.dispatch(gift("idle-1", "fan1", 40, receiver_id="p1")) is None


@pytest.mark.asyncio
async def test_host_gift_outside_round_still_credits_sender(session):
    result = await session.dispatcher.dispatch(gift("idle-2", "fan1", 40, receiver_id="host-1"))
    assert result.success
    assert (await session.storage.get_user("fan1")).diamonds_total == 40


@pytest.mark.asyncio
async def test_failed_gift_is_not_credited_again_on_replay(session, monkeypatch):
    grant = session.twists.grant
    calls = []

    async def flaky_grant(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise RuntimeError("disk full")
        return await grant(*args, **kwargs)

    monkeypatch.setattr(session.twists, "grant", flaky_grant)
    packet = gift("g1", "fan1", 500, gift_name="Money Gun", gift_id=7168)

    with pytest.raises(RuntimeError):
        await session.dispatcher.dispatch(packet)
    assert await session.dispatcher.dispatch(packet) is None

    sender = await session.storage.get_user("fan1")
    assert sender.diamonds_total == 500
    assert sender.bp_total == 100
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_twist_gift_grants_inventory_to_sender(session):
    await session.dispatcher.dispatch(gift("tw-1", "fan1", 500, gift_name="Money Gun", gift_id=7168))
    assert await session.twists.inventory("fan1") == {"moneygun": 1}


@pytest.mark.asyncio
async def test_join_command_requires_fan(session, recorder):
    await make_user(session, "u1", "Alice")
    rejected = await session.dispatcher.dispatch(chat("c1", "u1", "!join", nickname="Alice"))
    assert rejected.code == "not_fan"
    assert "become a fan" in rejected.public_message
    assert not await session.queue.contains("u1")

    await session.storage.set_user_flag("u1", "is_fan", True)
    accepted = await session.dispatcher.dispatch(chat("c2", "u1", "!join", nickname="Alice"))
    assert accepted.success
    assert await session.queue.contains("u1")
    assert recorder.logs("queue")


@pytest.mark.asyncio
async def test_boost_and_leave_commands(session, recorder):
    await make_user(session, "u1", "Alice", bp=1000, fan=True)
    await session.dispatcher.dispatch(chat("c1", "u1", "!join", nickname="Alice"))

    bad = await session.dispatcher.dispatch(chat("c2", "u1", "!boost lots", nickname="Alice"))
    assert bad.code == "invalid_command"

    boosted = await session.dispatcher.dispatch(chat("c3", "u1", "!boost 2", nickname="Alice"))
    assert boosted.success
    assert (await session.queue.snapshot())[0].boost_spots == 2
    assert recorder.logs("booster")

    left = await session.dispatcher.dispatch(chat("c4", "u1", "!leave", nickname="Alice"))
    assert left.refund == 200
    # four chat bonuses, minus 400 for the boost, plus the 200 refund
    assert await session.ledger.balance("u1") == 1000 + 4 * 3 - 400 + 200


@pytest.mark.asyncio
async def test_use_command_runs_twist(session):
    await seat(session, "a", "Anna")
    await seat(session, "b", "Ben")
    await session.start_round("qualifying")
    await session.twists.grant("a", "moneygun")

    result = await session.dispatcher.dispatch(chat("u-1", "a", "!use mg @ben", nickname="Anna"))
    assert result.success
    assert session.arena.get("b").marked


@pytest.mark.asyncio
async def test_membership_events_give_small_bonuses(session, recorder):
    await session.dispatcher.dispatch({"type": "member", "msgId": "j1", "action": 1,
                                       "user": {"userId": "v1", "nickname": "Vic", "uniqueId": "vic"}})
    await session.dispatcher.dispatch({"type": "follow", "msgId": "f1",
                                       "user": {"userId": "v1", "nickname": "Vic", "uniqueId": "vic"}})
    await session.dispatcher.dispatch({"type": "member", "msgId": "l1", "action": 2,
                                       "user": {"userId": "v1", "nickname": "Vic", "uniqueId": "vic"}})

    assert await session.ledger.balance("v1") == 60
    assert (await session.storage.get_user("v1")).display_name == "Vic"
    assert len(recorder.logs("join")) == 2


@pytest.mark.asyncio
async def test_malformed_event_is_dropped(session):
    assert await session.dispatcher.dispatch({"type": "gift", "diamondCount": 5}) is None


@pytest.mark.asyncio
async def test_consumer_survives_a_failing_event(session, recorder, monkeypatch):
    async def explode(event):
        raise RuntimeError("storage went away")

    monkeypatch.setattr(session.dispatcher, "on_join", explode)
    consumer = asyncio.create_task(session.dispatcher.run())
    try:
        await session.dispatcher.submit({"type": "member", "msgId": "x1", "user": {"userId": "v1"}})
        await session.dispatcher.submit(chat("x2", "v2", "still alive"))
        await asyncio.wait_for(session.dispatcher.inbox.join(), timeout=5)
    finally:
        consumer.cancel()

    assert session.dispatcher.failed == 1
    assert session.dispatcher.processed == 1
    assert await session.ledger.balance("v2") == 3
    assert recorder.topic("error")[0]["error"] == "storage went away"


@pytest.mark.asyncio
async def test_stream_end_stops_session(session):
    await session.start_session()
    await session.dispatcher.dispatch({"type": "stream_end"})
    assert not session.live
