"""Data models for the BattleBox game."""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set


@dataclass
class User:
    """A viewer as seen across sessions."""
    tiktok_id: str
    display_name: str
    username: str
    diamonds_total: int = 0
    diamonds_stream: int = 0
    diamonds_round: int = 0
    bp_total: float = 0
    bp_today: float = 0
    bp_reset_date: Optional[str] = None
    is_fan: int = 0
    fan_expires_at: Optional[float] = None
    is_vip: int = 0
    vip_expires_at: Optional[float] = None
    block_queue: int = 0
    block_twists: int = 0
    block_boosters: int = 0
    created_at: Optional[float] = None
    last_seen_at: Optional[float] = None

    def fan_active(self, at: float) -> bool:
        return bool(self.is_fan) and (self.fan_expires_at is None or self.fan_expires_at > at)

    def vip_active(self, at: float) -> bool:
        return bool(self.is_vip) and (self.vip_expires_at is None or self.vip_expires_at > at)


@dataclass
class QueueEntry:
    """A stored request to enter the arena."""
    position: int
    tiktok_id: str
    boost_spots: int
    joined_at: float


@dataclass
class QueueSlot:
    """One ranked line of a queue snapshot."""
    rank: int
    tiktok_id: str
    display_name: str
    username: str
    priority: int
    boost_spots: int
    is_vip: bool
    is_fan: bool
    joined_at: float
    reason: str


@dataclass
class ArenaPlayer:
    """A user holding one of the arena slots."""
    tiktok_id: str
    display_name: str
    username: str
    joined_seq: int
    score: int = 0
    effects: Set[str] = field(default_factory=set)
    eliminated: bool = False

    @property
    def immune(self) -> bool:
        return "immune" in self.effects

    @property
    def marked(self) -> bool:
        return "marked" in self.effects


@dataclass
class Round:
    """The current competitive round."""
    number: int = 0
    kind: str = "qualifying"
    phase: str = "idle"  # idle -> active -> grace -> ended -> idle
    started_at: Optional[float] = None
    duration: int = 0
    grace: int = 0
    locks: Set[str] = field(default_factory=set)
    reversed: bool = False


@dataclass
class PlayerStanding:
    """A ranked arena player with a derived status."""
    position: int
    tiktok_id: str
    display_name: str
    username: str
    score: int
    status: str  # alive, danger, elimination, immune, eliminated
    effects: List[str]


@dataclass
class ActionResult:
    """Result of performing a game action."""
    success: bool
    message: str
    code: str = "ok"
    public_message: Optional[str] = None
    refund: Optional[int] = None
    target_id: Optional[str] = None
    eliminated: List[str] = field(default_factory=list)
    consumed: bool = False
    data: Dict = field(default_factory=dict)
