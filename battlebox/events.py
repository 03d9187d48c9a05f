"""Normalization of raw live-feed packets into typed event records.

The feed is loose about its schema: ids may be numbers or strings, keys may
be camelCase or snake_case, and the sender may sit under ``user`` or
``sender``. Everything is validated here once; anything that cannot be
normalized raises ``MalformedEvent`` and goes no further.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Union


class MalformedEvent(ValueError):
    """A raw packet that cannot be turned into an event record."""


@dataclass(frozen=True)
class Party:
    """A user reference as seen in a packet."""
    user_id: Optional[str]
    nickname: Optional[str] = None
    unique_id: Optional[str] = None


@dataclass(frozen=True)
class GiftEvent:
    msg_id: Optional[str]
    sender: Party
    receiver: Optional[Party]
    gift_id: Optional[int]
    gift_name: str
    diamonds: int
    repeat_count: int = 1
    repeat_end: bool = False
    streakable: bool = False

    @property
    def settled(self) -> bool:
        """Whether this packet carries a creditable value."""
        return not self.streakable or self.repeat_end

    @property
    def total_diamonds(self) -> int:
        if self.streakable:
            return self.diamonds * max(1, self.repeat_count)
        return self.diamonds


@dataclass(frozen=True)
class ChatEvent:
    msg_id: Optional[str]
    sender: Party
    text: str


@dataclass(frozen=True)
class MemberEvent:
    msg_id: Optional[str]
    sender: Party
    action: str  # join, leave, follow


@dataclass(frozen=True)
class ControlEvent:
    msg_id: Optional[str]
    action: str  # stream_end


Event = Union[GiftEvent, ChatEvent, MemberEvent, ControlEvent]

STREAK_GIFT_TYPE = 1
MEMBER_ACTIONS = {1: "join", 2: "leave", "join": "join", "leave": "leave"}


def _first(data: Dict[str, Any], *keys: str):
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


def _as_str(value) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _as_int(value, name: str, default: int = 0) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise MalformedEvent(f"{name} is not a number: {value!r}")


def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


SENDER_FALLBACK = (("userId", "user_id"), ("nickname",), ("uniqueId", "unique_id"))
RECEIVER_FALLBACK = (("receiverUserId", "toUserId"), ("receiverNickname",), ("receiverUniqueId",))


def _party(data: Optional[Dict[str, Any]], payload: Dict[str, Any], fallback) -> Optional[Party]:
    data = data if isinstance(data, dict) else {}
    id_keys, nick_keys, unique_keys = fallback
    user_id = _as_str(_first(data, "userId", "user_id", "id") or _first(payload, *id_keys))
    nickname = _as_str(_first(data, "nickname", "displayName", "display_name") or _first(payload, *nick_keys))
    unique_id = _as_str(_first(data, "uniqueId", "unique_id", "username") or _first(payload, *unique_keys))
    if user_id is None and nickname is None and unique_id is None:
        return None
    return Party(user_id=user_id, nickname=nickname, unique_id=unique_id)


def _member_action(code) -> str:
    if code is None:
        return "join"
    if isinstance(code, str) and code.strip().isdigit():
        code = int(code)
    if isinstance(code, str):
        code = code.strip().lower()
    return MEMBER_ACTIONS.get(code, "join")


def normalize(raw: Any) -> Event:
    """Turn one raw packet into a typed event, or raise MalformedEvent."""
    if not isinstance(raw, dict):
        raise MalformedEvent(f"packet is not an object: {type(raw).__name__}")

    kind = _as_str(raw.get("type") or raw.get("event"))
    if kind is None:
        raise MalformedEvent("packet has no type")
    kind = kind.lower()

    payload = raw.get("data") if isinstance(raw.get("data"), dict) else raw
    msg_id = _as_str(_first(payload, "msgId", "msg_id", "id", "logId"))

    if kind == "stream_end":
        return ControlEvent(msg_id=msg_id, action="stream_end")

    sender = _party(_first(payload, "user", "sender"), payload, SENDER_FALLBACK)
    if sender is None or sender.user_id is None:
        raise MalformedEvent(f"{kind} packet has no sender id")

    if kind == "gift":
        receiver = _party(_first(payload, "receiver", "toUser"), payload, RECEIVER_FALLBACK)
        gift_name = _as_str(_first(payload, "giftName", "gift_name")) or "unknown"
        return GiftEvent(
            msg_id=msg_id,
            sender=sender,
            receiver=receiver,
            gift_id=_as_int(_first(payload, "giftId", "gift_id"), "giftId", default=None),
            gift_name=gift_name,
            diamonds=_as_int(_first(payload, "diamondCount", "diamond_count", "diamonds"), "diamondCount"),
            repeat_count=_as_int(_first(payload, "repeatCount", "repeat_count"), "repeatCount", default=1),
            repeat_end=_as_bool(_first(payload, "repeatEnd", "repeat_end")),
            streakable=_as_int(_first(payload, "giftType", "gift_type"), "giftType") == STREAK_GIFT_TYPE,
        )

    if kind == "chat":
        text = _first(payload, "comment", "text")
        if not isinstance(text, str):
            raise MalformedEvent("chat packet has no text")
        return ChatEvent(msg_id=msg_id, sender=sender, text=text.strip())

    if kind in ("member", "join"):
        action = _member_action(_first(payload, "action", "actionId"))
        return MemberEvent(msg_id=msg_id, sender=sender, action=action)

    if kind == "follow":
        return MemberEvent(msg_id=msg_id, sender=sender, action="follow")

    raise MalformedEvent(f"unsupported packet type '{kind}'")
