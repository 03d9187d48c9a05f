"""Composition of the game components and the admin control surface."""

import asyncio
import logging
from typing import Callable, Optional

from .arena import ArenaState
from .config import Settings, ADJUSTABLE_SETTINGS
from .dispatcher import EventDispatcher
from .identity import IdentityResolver
from .ledger import Ledger
from .models import ActionResult
from .notifications import NotificationHub
from .queue import ArenaQueue
from .storage import GameStorage
from .timeutils import timestamp
from .twists import TwistEngine

logger = logging.getLogger(__name__)

SETTINGS_PREFIX = "setting:"


class GameSession:
    """Owns every component and serializes all mutations behind one lock.

    Admin methods take the lock themselves; methods ending in ``_locked``
    expect the caller to hold it already.
    """

    def __init__(self, settings: Settings, storage: Optional[GameStorage] = None,
                 clock: Callable[[], float] = timestamp, rng=None):
        self.settings = settings
        self.clock = clock
        self.storage = storage or GameStorage(settings.database_path)
        self.lock = asyncio.Lock()
        self.hub = NotificationHub(clock=clock)
        self.identity = IdentityResolver(self.storage)
        self.ledger = Ledger(self.storage, self.identity, settings, clock=clock)
        self.arena = ArenaState(settings, clock=clock)
        self.queue = ArenaQueue(self.storage, self.ledger, settings, in_arena=self.arena.has_player, clock=clock)
        self.twists = TwistEngine(self.storage, self.arena, self.hub, rng=rng)
        self.dispatcher = EventDispatcher(
            settings, self.identity, self.ledger, self.queue, self.arena, self.twists, self.hub,
            self.lock, clock=clock, on_stream_end=self._stop_session_locked,
        )
        self.live = False
        self.started_at: Optional[float] = None

    async def initialize(self):
        """Create tables and re-apply settings saved by earlier admin changes."""
        await self.storage.initialize()
        for key, value in (await self.storage.get_states(SETTINGS_PREFIX)).items():
            try:
                self.settings.adjust(key, value)
            except ValueError as e:
                logger.warning(f"Ignoring saved setting {key}={value!r}: {e}")
        self.hub.subscribe(self._persist_log)

    async def _persist_log(self, topic: str, payload: dict):
        if topic == "log":
            await self.storage.append_event_log(payload["type"], payload["message"], payload["at"])

    # Session

    async def start_session(self) -> ActionResult:
        async with self.lock:
            if self.live:
                return ActionResult(False, "A session is already running.", "session_active")
            self.live = True
            self.started_at = self.clock()
            logger.info("Game session started")
            await self.hub.emit("session", {"live": True, "started_at": self.started_at})
            return ActionResult(True, "Session started.")

    async def stop_session(self) -> ActionResult:
        async with self.lock:
            return await self._stop_session_locked()

    async def _stop_session_locked(self) -> ActionResult:
        if not self.live:
            return ActionResult(False, "No session is running.", "no_session")

        if self.arena.round.phase in ("active", "grace"):
            await self._finish_round_locked(self.arena.end_round().data)
        self.arena.reset_round(clear_roster=True)
        await self.storage.reset_session_fields()
        await self.twists.clear_all()
        self.live = False
        logger.info("Game session stopped; session counters and inventories cleared")
        await self.hub.emit("session", {"live": False})
        await self.hub.emit("arena", self.arena.snapshot())
        return ActionResult(True, "Session stopped.")

    # Rounds

    async def start_round(self, kind: str) -> ActionResult:
        async with self.lock:
            result = self.arena.start_round(kind)
            if result.success:
                await self.storage.reset_round_currency()
                await self.hub.emit("round", result.data)
                await self.hub.emit("arena", self.arena.snapshot())
            return result

    async def end_round(self) -> ActionResult:
        async with self.lock:
            result = self.arena.end_round()
            if result.success:
                await self._finish_round_locked(result.data)
            return result

    async def reset_round(self, clear_roster: Optional[bool] = None) -> ActionResult:
        async with self.lock:
            result = self.arena.reset_round(clear_roster)
            if result.success:
                await self.storage.reset_round_currency()
                await self.hub.emit("round", self.arena.round_marker("reset"))
                await self.hub.emit("arena", self.arena.snapshot())
            return result

    async def tick(self):
        """Advance the round clock. Called by the round timer."""
        async with self.lock:
            for marker in self.arena.tick():
                if marker["marker"] == "end":
                    await self._finish_round_locked(marker)
                else:
                    await self.hub.emit("round", marker)
                    await self.hub.emit("arena", self.arena.snapshot())

    async def _finish_round_locked(self, marker: dict):
        eliminated = marker.get("eliminated", [])
        for tiktok_id in eliminated:
            user = await self.storage.get_user(tiktok_id)
            name = user.display_name if user else tiktok_id
            await self.hub.log("elim", f"{name} was eliminated in round {marker['number']}")
        if eliminated and self.settings.elimination_policy == "remove":
            await self.storage.reset_round_currency(eliminated)
        await self.hub.emit("round", marker)
        await self.hub.emit("arena", self.arena.snapshot())

    # Arena roster

    async def promote(self, identifier: str) -> ActionResult:
        """Seat a known user in the arena, taking them out of the queue."""
        async with self.lock:
            user = await self.identity.find(identifier)
            if user is None:
                return ActionResult(False, f"No user matches '{identifier}'.", "not_eligible")
            return await self._promote_locked(user)

    async def promote_next(self) -> ActionResult:
        """Seat whoever is first in the queue."""
        async with self.lock:
            ranked = await self.queue.snapshot()
            if not ranked:
                return ActionResult(False, "The queue is empty.", "queue_empty")
            user = await self.storage.get_user(ranked[0].tiktok_id)
            return await self._promote_locked(user)

    async def _promote_locked(self, user) -> ActionResult:
        result = self.arena.promote(user)
        if result.success:
            await self.queue.remove(user.tiktok_id)
            await self.hub.log("queue", result.public_message)
            await self.hub.emit("arena", self.arena.snapshot())
            await self._emit_queue()
        return result

    async def remove_player(self, identifier: str) -> ActionResult:
        async with self.lock:
            player = self.arena.find(identifier)
            if player is None:
                return ActionResult(False, f"'{identifier}' is not in the arena.", "not_in_arena")
            result = self.arena.remove(player.tiktok_id)
            await self.storage.reset_round_currency([player.tiktok_id])
            await self.hub.log("elim", f"{player.display_name} was removed from the arena")
            await self.hub.emit("arena", self.arena.snapshot())
            return result

    # Queue

    async def queue_add(self, identifier: str) -> ActionResult:
        return await self._queue_op(identifier, lambda user: self.queue.admin_add(user.tiktok_id))

    async def queue_remove(self, identifier: str) -> ActionResult:
        async def op(user):
            if await self.queue.remove(user.tiktok_id):
                return ActionResult(True, f"{user.display_name} removed from the queue.")
            return ActionResult(False, f"{user.display_name} is not in the queue.", "not_queued")
        return await self._queue_op(identifier, op)

    async def queue_promote(self, identifier: str) -> ActionResult:
        return await self._queue_op(identifier, lambda user: self.queue.adjust_boost(user.tiktok_id, 1))

    async def queue_demote(self, identifier: str) -> ActionResult:
        return await self._queue_op(identifier, lambda user: self.queue.adjust_boost(user.tiktok_id, -1))

    async def _queue_op(self, identifier: str, op) -> ActionResult:
        async with self.lock:
            user = await self.identity.find(identifier)
            if user is None:
                return ActionResult(False, f"No user matches '{identifier}'.", "not_eligible")
            result = await op(user)
            if result.success:
                await self.hub.log("queue", f"[admin] {result.message}")
                await self._emit_queue()
            return result

    async def _emit_queue(self):
        await self.hub.emit("queue", {"entries": [vars(slot) for slot in await self.queue.snapshot()]})

    # Twists

    async def grant_twist(self, identifier: str, kind: str, qty: int = 1) -> ActionResult:
        async with self.lock:
            user = await self.identity.find(identifier)
            if user is None:
                return ActionResult(False, f"No user matches '{identifier}'.", "not_eligible")
            return await self.twists.grant(user.tiktok_id, kind, qty)

    async def use_twist(self, caster: str, kind: str, target: Optional[str] = None,
                        bypass_inventory: bool = False) -> ActionResult:
        async with self.lock:
            player = self.arena.find(caster)
            caster_id = player.tiktok_id if player else caster
            return await self.twists.use(caster_id, kind, target, bypass_inventory=bypass_inventory)

    # Users and settings

    async def set_user_flag(self, identifier: str, flag: str, value: bool,
                            expires_at: Optional[float] = None) -> ActionResult:
        async with self.lock:
            user = await self.identity.find(identifier)
            if user is None:
                return ActionResult(False, f"No user matches '{identifier}'.", "not_eligible")
            try:
                await self.storage.set_user_flag(user.tiktok_id, flag, value, expires_at)
            except ValueError as e:
                return ActionResult(False, str(e), "invalid_setting")
            return ActionResult(True, f"{flag} for {user.display_name} set to {value}.")

    async def adjust_setting(self, key: str, value: str) -> ActionResult:
        async with self.lock:
            try:
                applied = self.settings.adjust(key, value)
            except ValueError as e:
                return ActionResult(False, str(e), "invalid_setting")
            await self.storage.set_state(SETTINGS_PREFIX + key, str(applied))
            logger.info(f"Setting {key} changed to {applied}")
            return ActionResult(True, f"{key} = {applied}", data={"key": key, "value": applied})

    def adjustable_settings(self) -> dict:
        return {key: getattr(self.settings, key) for key in ADJUSTABLE_SETTINGS}
