import random

import pytest

from battlebox.config import Settings
from battlebox.session import GameSession

START = 1767268800.0  # 2026-01-01 12:00:00 UTC


class FakeClock:
    """Manually advanced clock shared by every component under test."""

    def __init__(self, start: float = START):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class Recorder:
    """Notification listener that keeps everything it hears."""

    def __init__(self):
        self.events = []

    async def __call__(self, topic, payload):
        self.events.append((topic, payload))

    def topic(self, name):
        return [payload for topic, payload in self.events if topic == name]

    def logs(self, log_type=None):
        return [p for p in self.topic("log") if log_type is None or p["type"] == log_type]


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def settings(tmp_path):
    return Settings(
        database_path=str(tmp_path / "battlebox-test.db"),
        host_id="host-1",
        host_username="thehost",
    )


@pytest.fixture()
async def session(settings, clock):
    game = GameSession(settings, clock=clock, rng=random.Random(7))
    await game.initialize()
    return game


@pytest.fixture()
def recorder(session):
    listener = Recorder()
    session.hub.subscribe(listener)
    return listener


async def make_user(session, tiktok_id, name, bp=0, fan=False, vip=False):
    """Create a user with a handle derived from the name and an optional balance."""
    user = await session.identity.resolve(tiktok_id, name, name.lower())
    if bp:
        await session.storage.credit_points(tiktok_id, bp, "TEST", session.clock())
    if fan:
        await session.storage.set_user_flag(tiktok_id, "is_fan", True)
    if vip:
        await session.storage.set_user_flag(tiktok_id, "is_vip", True)
    return user


async def seat(session, tiktok_id, name):
    """Create a user and give them an arena slot."""
    await make_user(session, tiktok_id, name)
    result = await session.promote(tiktok_id)
    assert result.success, result.message
    return result


def gift(msg_id, sender_id, diamonds, receiver_id=None, gift_name="Rose", gift_id=5655,
         gift_type=0, repeat_count=1, repeat_end=False, nickname=None):
    packet = {
        "type": "gift",
        "msgId": msg_id,
        "user": {"userId": sender_id, "nickname": nickname or f"User {sender_id}", "uniqueId": f"user_{sender_id}"},
        "giftName": gift_name,
        "giftId": gift_id,
        "diamondCount": diamonds,
        "giftType": gift_type,
        "repeatCount": repeat_count,
        "repeatEnd": repeat_end,
    }
    if receiver_id is not None:
        packet["receiver"] = {"userId": receiver_id}
    return packet


def chat(msg_id, sender_id, text, nickname=None):
    return {
        "type": "chat",
        "msgId": msg_id,
        "user": {"userId": sender_id, "nickname": nickname or f"User {sender_id}", "uniqueId": f"user_{sender_id}"},
        "comment": text,
    }
