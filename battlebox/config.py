"""Game configuration constants and settings."""

import os
from dataclasses import dataclass, fields, replace
from typing import Optional

DATABASE_PATH = "battlebox.db"

ARENA_CAPACITY = 8
DANGER_ZONE_SIZE = 3
FINAL_DANGER_ZONE_SIZE = 1

ROUND_DURATION_PRE = 180  # qualifying and semifinal rounds
ROUND_DURATION_FINAL = 300
GRACE_SECONDS = 5

DAILY_BP_CAP = 1000
BOOST_COST = 200  # BP per boost slot
MAX_BOOST_PER_COMMAND = 5
REFUND_RATE = 0.5
VIP_WEIGHT = 5

GIFT_BP_RATE = 0.2  # BP per diamond
CHAT_BP = 3
JOIN_BP = 10
FOLLOW_BP = 50

COMMAND_PREFIX = "!"
DEDUP_WINDOW_SECONDS = 60
EVENT_QUEUE_SIZE = 1000
ELIMINATION_POLICY = "remove"  # 'remove' or 'tag'

FEED_MAX_ATTEMPTS = 8
FEED_BACKOFF_BASE = 3.0
FEED_BACKOFF_CAP = 30.0
FEED_HEARTBEAT = 12.0

LOG_HISTORY = 200

ROUND_KINDS = ("qualifying", "semifinal", "final")
ELIMINATION_POLICIES = ("remove", "tag")

# Keys an admin may change at runtime, persisted in the state table
ADJUSTABLE_SETTINGS = (
    "round_duration_pre",
    "round_duration_final",
    "grace_seconds",
    "daily_bp_cap",
    "boost_cost",
    "max_boost_per_command",
    "danger_zone_size",
    "final_danger_zone_size",
    "elimination_policy",
)


@dataclass
class Settings:
    """Runtime settings for one game session."""
    database_path: str = DATABASE_PATH
    arena_capacity: int = ARENA_CAPACITY
    danger_zone_size: int = DANGER_ZONE_SIZE
    final_danger_zone_size: int = FINAL_DANGER_ZONE_SIZE
    round_duration_pre: int = ROUND_DURATION_PRE
    round_duration_final: int = ROUND_DURATION_FINAL
    grace_seconds: int = GRACE_SECONDS
    daily_bp_cap: int = DAILY_BP_CAP
    boost_cost: int = BOOST_COST
    max_boost_per_command: int = MAX_BOOST_PER_COMMAND
    refund_rate: float = REFUND_RATE
    vip_weight: int = VIP_WEIGHT
    gift_bp_rate: float = GIFT_BP_RATE
    chat_bp: int = CHAT_BP
    join_bp: int = JOIN_BP
    follow_bp: int = FOLLOW_BP
    command_prefix: str = COMMAND_PREFIX
    dedup_window_seconds: int = DEDUP_WINDOW_SECONDS
    event_queue_size: int = EVENT_QUEUE_SIZE
    elimination_policy: str = ELIMINATION_POLICY
    host_id: Optional[str] = None
    host_username: Optional[str] = None
    feed_url: Optional[str] = None
    feed_api_key: Optional[str] = None
    feed_max_attempts: int = FEED_MAX_ATTEMPTS
    feed_backoff_base: float = FEED_BACKOFF_BASE
    feed_backoff_cap: float = FEED_BACKOFF_CAP
    log_channel_id: Optional[int] = None

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from BB_* environment variables, falling back to defaults."""
        overrides = {}
        for field in fields(cls):
            raw = os.getenv(f"BB_{field.name.upper()}")
            if raw is None or raw == "":
                continue
            overrides[field.name] = _coerce(field.name, raw)
        return replace(cls(), **overrides)

    def adjust(self, key: str, raw_value: str):
        """Validate and apply an admin change. Returns the coerced value."""
        if key not in ADJUSTABLE_SETTINGS:
            raise ValueError(f"Unknown or read-only setting: {key}")

        value = _coerce(key, raw_value)
        if key == "elimination_policy":
            if value not in ELIMINATION_POLICIES:
                raise ValueError(f"elimination_policy must be one of {', '.join(ELIMINATION_POLICIES)}")
        elif value < 0:
            raise ValueError(f"{key} cannot be negative")
        elif key == "max_boost_per_command" and value < 1:
            raise ValueError("max_boost_per_command must be at least 1")

        setattr(self, key, value)
        return value


def _coerce(name: str, raw: str):
    """Convert a string value to the declared type of a settings field."""
    default = getattr(Settings, name, None)
    if name in ("log_channel_id",):
        return int(raw)
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw.strip()
