"""Arena roster and round state machine."""

import logging
from typing import Callable, Dict, List, Optional

from .config import Settings, ROUND_KINDS
from .identity import is_unknown
from .models import ActionResult, ArenaPlayer, PlayerStanding, Round, User
from .timeutils import timestamp, seconds_since

logger = logging.getLogger(__name__)

LIVE_PHASES = ("active", "grace")
ROUND_EFFECTS = ("marked", "survivor", "immune_broken")
DECISIVE_LOCK = "diamond_pistol"


class ArenaState:
    """In-memory arena: the roster, the current round and its timers.

    A single writer is assumed. Callers serialize access through the
    session lock; nothing here awaits.
    """

    def __init__(self, settings: Settings, clock: Callable[[], float] = timestamp):
        self.settings = settings
        self.clock = clock
        self.round = Round()
        self._players: Dict[str, ArenaPlayer] = {}
        self._seq = 0

    # Roster

    def __contains__(self, tiktok_id: str) -> bool:
        return tiktok_id in self._players

    def __len__(self) -> int:
        return len(self._players)

    def has_player(self, tiktok_id: str) -> bool:
        return tiktok_id in self._players

    def get(self, tiktok_id: str) -> Optional[ArenaPlayer]:
        return self._players.get(tiktok_id)

    def players(self) -> List[ArenaPlayer]:
        return list(self._players.values())

    def find(self, identifier: str) -> Optional[ArenaPlayer]:
        """Find a current player by id, @handle or display name."""
        if not identifier:
            return None
        ident = identifier.strip()
        if ident in self._players:
            return self._players[ident]
        handle = ident.lstrip("@").lower()
        for player in self._players.values():
            if player.username == handle or player.display_name.lower() == ident.lower():
                return player
        return None

    def promote(self, user: User) -> ActionResult:
        """Give a user an arena slot with a zero score."""
        if is_unknown(user.tiktok_id):
            return ActionResult(False, "Cannot seat an unidentified user.", "not_eligible")
        if user.tiktok_id in self._players:
            return ActionResult(False, f"{user.display_name} is already in the arena.", "already_in",
                                public_message=f"@{user.username} is already in the arena.")
        if len(self._players) >= self.settings.arena_capacity:
            return ActionResult(False, f"Arena is full ({self.settings.arena_capacity} players).", "arena_full",
                                public_message="The arena is full.")

        self._seq += 1
        self._players[user.tiktok_id] = ArenaPlayer(
            tiktok_id=user.tiktok_id,
            display_name=user.display_name,
            username=user.username,
            joined_seq=self._seq,
        )
        logger.info(f"{user.display_name} ({user.tiktok_id}) entered the arena ({len(self._players)}/{self.settings.arena_capacity})")
        return ActionResult(True, f"{user.display_name} entered the arena.",
                            public_message=f"@{user.username} entered the arena!")

    def remove(self, tiktok_id: str) -> ActionResult:
        player = self._players.pop(tiktok_id, None)
        if player is None:
            return ActionResult(False, f"{tiktok_id} is not in the arena.", "not_in_arena")
        logger.info(f"{player.display_name} ({tiktok_id}) left the arena")
        return ActionResult(True, f"{player.display_name} removed from the arena.", target_id=tiktok_id)

    def credit_score(self, tiktok_id: str, amount: int, from_twist: bool = False) -> bool:
        """Add to a live player's round score. Gift credit can never be negative."""
        if self.round.phase not in LIVE_PHASES:
            return False
        player = self._players.get(tiktok_id)
        if player is None or player.eliminated:
            return False
        if amount < 0 and not from_twist:
            return False
        player.score += amount
        return True

    # Round lifecycle

    def start_round(self, kind: str) -> ActionResult:
        if kind not in ROUND_KINDS:
            return ActionResult(False, f"Unknown round kind '{kind}'. Use one of: {', '.join(ROUND_KINDS)}.", "invalid_kind")
        if self.round.phase != "idle":
            return ActionResult(False, f"Round {self.round.number} is {self.round.phase}; reset it first.", "round_active")

        duration = self.settings.round_duration_final if kind == "final" else self.settings.round_duration_pre
        self.round = Round(
            number=self.round.number + 1,
            kind=kind,
            phase="active",
            started_at=self.clock(),
            duration=duration,
            grace=self.settings.grace_seconds,
        )
        for player in self._players.values():
            player.score = 0
        logger.info(f"Round {self.round.number} ({kind}) started, {duration}s + {self.round.grace}s grace")
        return ActionResult(True, f"Round {self.round.number} ({kind}) started for {duration}s.",
                            data=self.round_marker("start"))

    def tick(self, now: Optional[float] = None) -> List[dict]:
        """Advance timer-driven phases. Returns a marker per transition made."""
        if self.round.phase not in LIVE_PHASES:
            return []

        elapsed = seconds_since(self.round.started_at, self.clock() if now is None else now)
        markers = []

        if self.round.phase == "active" and elapsed >= self.round.duration:
            self.round.phase = "grace"
            logger.info(f"Round {self.round.number} entered grace period")
            markers.append(self.round_marker("grace"))

        if self.round.phase == "grace" and elapsed >= self.round.duration + self.round.grace:
            markers.append(self._finish())

        return markers

    def end_round(self) -> ActionResult:
        """Force the round closed immediately, skipping any remaining grace."""
        if self.round.phase not in LIVE_PHASES:
            return ActionResult(False, f"No live round to end (phase is {self.round.phase}).", "no_round")
        marker = self._finish()
        return ActionResult(True, f"Round {self.round.number} ended.", eliminated=marker["eliminated"], data=marker)

    def _finish(self) -> dict:
        """Move to ended and finalize eliminations."""
        doomed = [p.tiktok_id for p in self.players() if p.marked and not p.immune and not p.eliminated]
        doomed.extend(pid for pid in self.danger_zone() if pid not in doomed)

        self.round.phase = "ended"
        for pid in doomed:
            if self.settings.elimination_policy == "remove":
                self._players.pop(pid, None)
            else:
                self._players[pid].eliminated = True

        logger.info(f"Round {self.round.number} ended; eliminated {len(doomed)} player(s) ({self.settings.elimination_policy})")
        marker = self.round_marker("end")
        marker["eliminated"] = doomed
        return marker

    def reset_round(self, clear_roster: Optional[bool] = None) -> ActionResult:
        """Return to idle. Qualifying and semifinal rosters clear by default; finals persist."""
        if self.round.phase in LIVE_PHASES:
            return ActionResult(False, "End the live round before resetting.", "round_active")

        if clear_roster is None:
            clear_roster = self.round.kind != "final"

        released = []
        if clear_roster:
            released = list(self._players)
            self._players.clear()
        else:
            for player in self._players.values():
                player.score = 0
                player.effects.difference_update(ROUND_EFFECTS)

        self.round.phase = "idle"
        self.round.started_at = None
        self.round.locks.clear()
        self.round.reversed = False
        logger.info(f"Round reset to idle ({'roster cleared' if clear_roster else 'roster kept'})")
        return ActionResult(True, "Round reset.", data={"released": released, "cleared": clear_roster})

    def round_marker(self, marker: str) -> dict:
        return {
            "marker": marker,
            "number": self.round.number,
            "kind": self.round.kind,
            "duration": self.round.duration,
            "grace": self.round.grace,
        }

    def remaining(self, now: Optional[float] = None) -> float:
        """Seconds left in the current phase."""
        if self.round.phase not in LIVE_PHASES:
            return 0
        elapsed = seconds_since(self.round.started_at, self.clock() if now is None else now)
        if self.round.phase == "active":
            return max(0.0, self.round.duration - elapsed)
        return max(0.0, self.round.duration + self.round.grace - elapsed)

    # Twist hooks

    def is_locked(self, lock: str) -> bool:
        return lock in self.round.locks

    def set_lock(self, lock: str):
        self.round.locks.add(lock)

    def toggle_reversal(self) -> bool:
        self.round.reversed = not self.round.reversed
        return self.round.reversed

    def add_effect(self, tiktok_id: str, effect: str):
        self._players[tiktok_id].effects.add(effect)

    def clear_effects(self, tiktok_id: str, *effects: str):
        self._players[tiktok_id].effects.difference_update(effects)

    def heal(self, tiktok_id: str):
        player = self._players[tiktok_id]
        player.effects.difference_update(("marked", "immune_broken"))
        player.eliminated = False

    def apply_decisive(self, survivor_id: str) -> List[str]:
        """One survivor becomes immune, everyone else is marked."""
        self.set_lock(DECISIVE_LOCK)
        marked = []
        for player in self._players.values():
            if player.tiktok_id == survivor_id:
                player.effects.update(("immune", "survivor"))
                player.effects.discard("marked")
            else:
                player.effects.add("marked")
                marked.append(player.tiktok_id)
        return marked

    # Ranking

    def ranking(self) -> List[ArenaPlayer]:
        ranked = sorted(self._players.values(), key=lambda p: (-p.score, p.joined_seq))
        if self.round.reversed:
            ranked.reverse()
        return ranked

    def danger_zone(self) -> List[str]:
        """Ids of the lowest ranked players at risk while a round is live."""
        if self.round.phase not in LIVE_PHASES or self.is_locked(DECISIVE_LOCK):
            return []

        ranked = self.ranking()
        alive = [p for p in ranked if not p.eliminated]
        candidates = [p for p in alive if not p.immune and not p.marked]
        size = self.settings.final_danger_zone_size if self.round.kind == "final" else self.settings.danger_zone_size
        size = min(size, len(alive) - 1, len(candidates))
        if size <= 0:
            return []
        return [p.tiktok_id for p in candidates[-size:]]

    def standings(self) -> List[PlayerStanding]:
        danger = set(self.danger_zone())
        result = []
        for position, player in enumerate(self.ranking(), start=1):
            if player.eliminated:
                status = "eliminated"
            elif player.immune:
                status = "immune"
            elif player.marked:
                status = "elimination"
            elif player.tiktok_id in danger:
                status = "danger"
            else:
                status = "alive"
            result.append(PlayerStanding(
                position=position,
                tiktok_id=player.tiktok_id,
                display_name=player.display_name,
                username=player.username,
                score=player.score,
                status=status,
                effects=sorted(player.effects),
            ))
        return result

    def snapshot(self) -> dict:
        """Roster, scores and round state for display collaborators."""
        return {
            "round": {
                "number": self.round.number,
                "kind": self.round.kind,
                "phase": self.round.phase,
                "duration": self.round.duration,
                "grace": self.round.grace,
                "remaining": self.remaining(),
                "reversed": self.round.reversed,
                "locks": sorted(self.round.locks),
            },
            "players": [vars(standing) for standing in self.standings()],
            "capacity": self.settings.arena_capacity,
        }
