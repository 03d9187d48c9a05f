"""Diamond and BP accounting."""

import logging
from typing import Callable, Optional

from .config import Settings
from .identity import IdentityResolver, is_unknown
from .models import ActionResult
from .storage import GameStorage, CURRENCY_COLUMNS
from .timeutils import timestamp, today_key

logger = logging.getLogger(__name__)


class Ledger:
    """Credits currency buckets and spendable points for users."""

    def __init__(self, storage: GameStorage, identity: IdentityResolver, settings: Settings,
                 clock: Callable[[], float] = timestamp):
        self.storage = storage
        self.identity = identity
        self.settings = settings
        self.clock = clock

    async def add_currency(self, tiktok_id: str, amount: int, bucket: str):
        """Add diamonds to one bucket: 'round', 'stream' or 'total'."""
        if bucket not in CURRENCY_COLUMNS:
            raise ValueError(f"Unknown currency bucket: {bucket}")
        if amount <= 0 or is_unknown(tiktok_id):
            return
        await self.identity.resolve(tiktok_id)
        await self.storage.add_currency(tiktok_id, amount, (bucket,))

    async def add_gift_currency(self, tiktok_id: str, amount: int):
        """Add diamonds to the round, stream and all-time buckets together."""
        if amount <= 0 or is_unknown(tiktok_id):
            return
        await self.identity.resolve(tiktok_id)
        await self.storage.add_currency(tiktok_id, amount, ("round", "stream", "total"))

    async def add_points(self, tiktok_id: str, amount: float, reason: str) -> float:
        """Credit BP up to today's cap. Returns what was actually credited."""
        if amount <= 0 or is_unknown(tiktok_id):
            return 0

        await self.identity.resolve(tiktok_id)
        at = self.clock()
        credited = await self.storage.add_points_capped(
            tiktok_id, round(amount, 2), reason,
            cap=self.settings.daily_bp_cap, day=today_key(at), at=at
        )
        if credited < amount:
            logger.debug(f"Daily cap reached for {tiktok_id}: requested {amount} BP ({reason}), credited {credited}")
        return credited

    async def refund_points(self, tiktok_id: str, amount: float, reason: str):
        """Return spent BP to a user. Refunds do not count against the daily cap."""
        if amount <= 0 or is_unknown(tiktok_id):
            return
        await self.storage.credit_points(tiktok_id, amount, reason, self.clock())

    async def spend_points(self, tiktok_id: str, amount: float, reason: str = "SPEND") -> ActionResult:
        """Debit BP atomically, refusing anything that would go below zero."""
        if amount < 0:
            return ActionResult(False, "Cannot spend a negative amount.", "invalid_amount")

        if await self.storage.spend_points(tiktok_id, amount, reason, self.clock()):
            return ActionResult(True, f"Spent {amount} BP.")

        balance = await self.balance(tiktok_id)
        return ActionResult(
            False,
            f"Insufficient BP: {amount} needed, {balance:g} available.",
            "insufficient_funds",
            public_message="Not enough BP."
        )

    async def balance(self, tiktok_id: str) -> float:
        user = await self.storage.get_user(tiktok_id)
        return user.bp_total if user else 0

    async def audit_trail(self, tiktok_id: str, limit: Optional[int] = None):
        entries = await self.storage.get_points_log(tiktok_id)
        return entries[-limit:] if limit else entries
