"""Priority waiting list for arena entry."""

import logging
import math
from typing import Callable, List

from .config import Settings
from .ledger import Ledger
from .models import ActionResult, QueueSlot
from .storage import GameStorage
from .timeutils import timestamp

logger = logging.getLogger(__name__)


def describe_priority(vip: bool, fan: bool, boost: int) -> str:
    """Human readable reason for a queue position, e.g. 'VIP + Boost +3'."""
    parts = []
    if vip:
        parts.append("VIP")
    elif fan:
        parts.append("Fan")
    if boost > 0:
        parts.append(f"Boost +{boost}")
    return " + ".join(parts) if parts else "Standard"


class ArenaQueue:
    """Queue entries live in storage; ranking is computed on every snapshot."""

    def __init__(self, storage: GameStorage, ledger: Ledger, settings: Settings,
                 in_arena: Callable[[str], bool] = lambda tiktok_id: False,
                 clock: Callable[[], float] = timestamp):
        self.storage = storage
        self.ledger = ledger
        self.settings = settings
        self.in_arena = in_arena
        self.clock = clock

    async def join(self, tiktok_id: str) -> ActionResult:
        user = await self.storage.get_user(tiktok_id)
        if user is None:
            return ActionResult(False, f"Unknown user {tiktok_id}.", "not_eligible")
        if user.block_queue:
            return ActionResult(
                False, f"{user.display_name} is blocked from the queue.", "already_blocked",
                public_message=f"@{user.username} cannot join the queue right now."
            )
        return await self._enter(user)

    async def admin_add(self, tiktok_id: str) -> ActionResult:
        """Queue a user regardless of block flags."""
        user = await self.storage.get_user(tiktok_id)
        if user is None:
            return ActionResult(False, f"Unknown user {tiktok_id}.", "not_eligible")
        return await self._enter(user)

    async def _enter(self, user) -> ActionResult:
        if self.in_arena(user.tiktok_id):
            return ActionResult(False, f"{user.display_name} is already in the arena.", "in_arena",
                                public_message=f"@{user.username} is already in the arena.")

        if await self.storage.get_queue_entry(user.tiktok_id):
            return ActionResult(False, f"{user.display_name} is already queued.", "already_queued",
                                public_message=f"@{user.username} is already in the queue.")

        await self.storage.insert_queue_entry(user.tiktok_id, self.clock())
        logger.info(f"{user.display_name} ({user.tiktok_id}) joined the queue")
        return ActionResult(True, f"{user.display_name} joined the queue.",
                            public_message=f"@{user.username} joined the queue!")

    async def leave(self, tiktok_id: str) -> int:
        """Remove a user's entry and refund half of what their boosts cost."""
        entry = await self.storage.delete_queue_entry(tiktok_id)
        if entry is None:
            return 0

        refund = math.floor(entry.boost_spots * self.settings.boost_cost * self.settings.refund_rate)
        if refund > 0:
            await self.ledger.refund_points(tiktok_id, refund, "QUEUE_REFUND")
        logger.info(f"{tiktok_id} left the queue (boost {entry.boost_spots}, refund {refund} BP)")
        return refund

    async def remove(self, tiktok_id: str) -> bool:
        """Drop an entry without refund. Used for admin removal and promotion."""
        return await self.storage.delete_queue_entry(tiktok_id) is not None

    async def boost(self, tiktok_id: str, slots: int = 1) -> ActionResult:
        slots = max(1, min(int(slots), self.settings.max_boost_per_command))

        entry = await self.storage.get_queue_entry(tiktok_id)
        if entry is None:
            return ActionResult(False, f"{tiktok_id} is not in the queue.", "not_queued",
                                public_message="Join the queue with !join before boosting.")

        user = await self.storage.get_user(tiktok_id)
        if user and user.block_boosters:
            return ActionResult(False, f"{user.display_name} is blocked from boosting.", "blocked")

        cost = slots * self.settings.boost_cost
        spent = await self.ledger.spend_points(tiktok_id, cost, f"BOOST x{slots}")
        if not spent.success:
            return ActionResult(False, spent.message, spent.code,
                                public_message=f"Boost costs {cost} BP. {spent.public_message}")

        new_boost = await self.storage.add_queue_boost(tiktok_id, slots)
        if new_boost is None:
            # Entry vanished after payment; give the BP back
            await self.ledger.refund_points(tiktok_id, cost, "BOOST_REVERSAL")
            return ActionResult(False, f"{tiktok_id} left the queue before the boost landed.", "not_queued")

        name = user.username if user else tiktok_id
        return ActionResult(True, f"Boosted {name} by {slots} (now +{new_boost}) for {cost} BP.",
                            public_message=f"@{name} boosted +{slots} (total +{new_boost})",
                            data={"boost": new_boost, "cost": cost})

    async def adjust_boost(self, tiktok_id: str, delta: int) -> ActionResult:
        """Admin promote/demote: move a user's boost by delta at no cost."""
        new_boost = await self.storage.add_queue_boost(tiktok_id, delta)
        if new_boost is None:
            return ActionResult(False, f"{tiktok_id} is not in the queue.", "not_queued")
        return ActionResult(True, f"Boost for {tiktok_id} is now {new_boost}.", data={"boost": new_boost})

    async def contains(self, tiktok_id: str) -> bool:
        return await self.storage.get_queue_entry(tiktok_id) is not None

    async def clear(self):
        await self.storage.clear_queue()

    async def snapshot(self) -> List[QueueSlot]:
        """Rank the queue: priority desc, then join time asc, then insertion order."""
        at = self.clock()
        ranked = []
        for entry, user in await self.storage.get_queue_rows():
            vip = user.vip_active(at)
            fan = user.fan_active(at)
            priority = (self.settings.vip_weight if vip else 0) + entry.boost_spots
            ranked.append((priority, entry, user, vip, fan))

        ranked.sort(key=lambda item: (-item[0], item[1].joined_at, item[1].position))

        return [
            QueueSlot(
                rank=index,
                tiktok_id=user.tiktok_id,
                display_name=user.display_name,
                username=user.username,
                priority=priority,
                boost_spots=entry.boost_spots,
                is_vip=vip,
                is_fan=fan,
                joined_at=entry.joined_at,
                reason=describe_priority(vip, fan, entry.boost_spots),
            )
            for index, (priority, entry, user, vip, fan) in enumerate(ranked, start=1)
        ]
