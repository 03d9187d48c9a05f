"""Single entry point for live-feed events."""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from .arena import ArenaState, LIVE_PHASES
from .config import Settings
from .events import (
    ChatEvent, ControlEvent, GiftEvent, MalformedEvent, MemberEvent, Party, normalize,
)
from .identity import IdentityResolver, normalize_handle
from .ledger import Ledger
from .models import ActionResult, User
from .notifications import NotificationHub
from .queue import ArenaQueue
from .timeutils import timestamp
from .twists import TwistEngine, twist_for_gift

logger = logging.getLogger(__name__)


def parse_command(text: str, prefix: str) -> Optional[Tuple[str, List[str]]]:
    """Split '!boost 3' into ('boost', ['3']). Returns None for plain chat."""
    if not text or not text.startswith(prefix):
        return None
    parts = text[len(prefix):].split()
    if not parts:
        return None
    return parts[0].lower(), parts[1:]


class EventDispatcher:
    """Deduplicates, classifies and routes feed events into the game.

    Raw packets are queued by ``submit`` and drained one at a time by
    ``run`` while holding the session lock, so every event finishes all of
    its mutations before the next one starts.
    """

    def __init__(self, settings: Settings, identity: IdentityResolver, ledger: Ledger,
                 queue: ArenaQueue, arena: ArenaState, twists: TwistEngine, hub: NotificationHub,
                 lock: asyncio.Lock, clock: Callable[[], float] = timestamp,
                 on_stream_end: Optional[Callable[[], Awaitable[None]]] = None):
        self.settings = settings
        self.identity = identity
        self.ledger = ledger
        self.queue = queue
        self.arena = arena
        self.twists = twists
        self.hub = hub
        self.lock = lock
        self.clock = clock
        self.on_stream_end = on_stream_end
        self.inbox: asyncio.Queue = asyncio.Queue(maxsize=settings.event_queue_size)
        self._seen: Dict[str, float] = {}
        self.processed = 0
        self.failed = 0

    # Inbound queue

    async def submit(self, raw: dict):
        """Queue a raw packet, waiting for room when the inbox is full."""
        await self.inbox.put(raw)

    async def run(self):
        """Drain the inbox forever. One failing event never stops the loop."""
        logger.info("Event dispatcher started")
        while True:
            raw = await self.inbox.get()
            try:
                async with self.lock:
                    await self.dispatch(raw)
                self.processed += 1
            except Exception as e:
                self.failed += 1
                logger.error(f"Failed to process event {str(raw)[:200]}: {e}", exc_info=True)
                await self.hub.emit("error", {"error": str(e), "event": raw})
            finally:
                self.inbox.task_done()

    # Dedup window

    def _prune_seen(self):
        cutoff = self.clock() - self.settings.dedup_window_seconds
        for msg_id in [m for m, at in self._seen.items() if at < cutoff]:
            del self._seen[msg_id]

    def is_duplicate(self, msg_id: Optional[str]) -> bool:
        if not msg_id:
            return False
        self._prune_seen()
        return msg_id in self._seen

    def remember(self, msg_id: Optional[str]):
        if msg_id:
            self._seen[msg_id] = self.clock()

    # Routing

    async def dispatch(self, raw: dict):
        """Normalize and route one packet. Caller holds the session lock."""
        try:
            event = normalize(raw)
        except MalformedEvent as e:
            logger.warning(f"Dropped malformed event: {e}")
            return None

        if self.is_duplicate(event.msg_id):
            logger.debug(f"Dropped duplicate event {event.msg_id}")
            return None

        if isinstance(event, GiftEvent):
            return await self.on_gift(event)
        if isinstance(event, ChatEvent):
            return await self.on_chat(event)
        if isinstance(event, MemberEvent):
            if event.action == "follow":
                return await self.on_follow(event)
            return await self.on_join(event)
        if isinstance(event, ControlEvent):
            return await self.on_control(event)
        return None

    def is_host(self, receiver: Optional[Party]) -> bool:
        """Gifts without a receiver, or addressed to the host, are host gifts."""
        if receiver is None or (receiver.user_id is None and receiver.unique_id is None):
            return True
        if self.settings.host_id and receiver.user_id == str(self.settings.host_id):
            return True
        host_handle = normalize_handle(self.settings.host_username)
        return bool(host_handle) and normalize_handle(receiver.unique_id) == host_handle

    async def _resolve(self, party: Party) -> User:
        return await self.identity.resolve(party.user_id, party.nickname, party.unique_id)

    async def on_gift(self, event: GiftEvent) -> ActionResult:
        if not event.settled:
            logger.debug(f"Streak of {event.gift_name} in progress (x{event.repeat_count})")
            return ActionResult(False, "Streak not settled yet.", "pending")

        diamonds = event.total_diamonds
        if diamonds <= 0:
            self.remember(event.msg_id)
            return ActionResult(False, f"Ignored {event.gift_name} with no value.", "ignored")

        host_gift = self.is_host(event.receiver)
        if not host_gift and self.arena.round.phase not in LIVE_PHASES:
            self.remember(event.msg_id)
            logger.info(f"Ignored {event.gift_name} to {event.receiver.nickname or event.receiver.user_id} outside a live round")
            return ActionResult(False, f"Ignored {event.gift_name}: no live round.", "ignored")

        # At most one credit per id, even if a step below raises
        self.remember(event.msg_id)
        sender = await self._resolve(event.sender)
        receiver = None if host_gift else await self._resolve(event.receiver)

        await self.ledger.add_gift_currency(sender.tiktok_id, diamonds)
        bp = await self.ledger.add_points(sender.tiktok_id, diamonds * self.settings.gift_bp_rate, "GIFT")

        scored = False
        if receiver is not None and self.arena.credit_score(receiver.tiktok_id, diamonds):
            scored = True
            await self.hub.emit("arena", self.arena.snapshot())

        twist_kind = twist_for_gift(event.gift_id, event.gift_name)
        if twist_kind:
            qty = max(1, event.repeat_count) if event.streakable else 1
            await self.twists.grant(sender.tiktok_id, twist_kind, qty)

        target = "host" if receiver is None else receiver.display_name
        await self.hub.log("gift", f"{sender.display_name} (@{sender.username}) → {target}: "
                                   f"{event.gift_name} ({diamonds}💎, +{bp:g} BP)")
        return ActionResult(True, f"Credited {diamonds} diamonds from {sender.display_name}.",
                            target_id=receiver.tiktok_id if receiver else None,
                            data={"diamonds": diamonds, "bp": bp, "scored": scored, "twist": twist_kind})

    async def on_chat(self, event: ChatEvent) -> Optional[ActionResult]:
        self.remember(event.msg_id)
        user = await self._resolve(event.sender)
        if event.text:
            await self.ledger.add_points(user.tiktok_id, self.settings.chat_bp, "CHAT")

        command = parse_command(event.text, self.settings.command_prefix)
        if command is None:
            return None

        name, args = command
        handler = {
            "join": self._cmd_join,
            "leave": self._cmd_leave,
            "boost": self._cmd_boost,
            "use": self._cmd_use,
        }.get(name)
        if handler is None:
            logger.debug(f"Ignored unknown command '{name}' from {user.tiktok_id}")
            return None
        return await handler(user, args)

    async def _cmd_join(self, user: User, args: List[str]) -> ActionResult:
        at = self.clock()
        if not (user.fan_active(at) or user.vip_active(at)):
            result = ActionResult(False, f"{user.display_name} is not a fan.", "not_fan",
                                  public_message=f"@{user.username}, become a fan to join the queue!")
        else:
            result = await self.queue.join(user.tiktok_id)
            if result.success:
                await self.hub.emit("queue", {"entries": [vars(s) for s in await self.queue.snapshot()]})
        await self.hub.log("queue", result.public_message or result.message)
        return result

    async def _cmd_leave(self, user: User, args: List[str]) -> ActionResult:
        queued = await self.queue.contains(user.tiktok_id)
        refund = await self.queue.leave(user.tiktok_id)
        if not queued:
            return ActionResult(False, f"{user.display_name} is not in the queue.", "not_queued", refund=0)

        message = f"@{user.username} left the queue" + (f" (refund {refund} BP)" if refund else "")
        await self.hub.log("queue", message)
        await self.hub.emit("queue", {"entries": [vars(s) for s in await self.queue.snapshot()]})
        return ActionResult(True, message, refund=refund, public_message=message)

    async def _cmd_boost(self, user: User, args: List[str]) -> ActionResult:
        if args and not args[0].isdigit():
            result = ActionResult(False, f"Bad boost amount '{args[0]}'.", "invalid_command",
                                  public_message="Usage: !boost <1-5>")
        else:
            result = await self.queue.boost(user.tiktok_id, int(args[0]) if args else 1)
            if result.success:
                await self.hub.emit("queue", {"entries": [vars(s) for s in await self.queue.snapshot()]})
        await self.hub.log("booster", result.public_message or result.message)
        return result

    async def _cmd_use(self, user: User, args: List[str]) -> ActionResult:
        if not args:
            return ActionResult(False, "No twist given.", "invalid_command",
                                public_message="Usage: !use <twist> [@target]")
        target = args[1] if len(args) > 1 else None
        return await self.twists.use(user.tiktok_id, args[0], target)

    async def on_join(self, event: MemberEvent) -> ActionResult:
        self.remember(event.msg_id)
        user = await self._resolve(event.sender)
        if event.action != "join":
            return ActionResult(True, f"{user.display_name} left the stream.")

        bp = await self.ledger.add_points(user.tiktok_id, self.settings.join_bp, "JOIN")
        await self.hub.log("join", f"{user.display_name} joined the stream")
        return ActionResult(True, f"{user.display_name} joined the stream.", data={"bp": bp})

    async def on_follow(self, event: MemberEvent) -> ActionResult:
        self.remember(event.msg_id)
        user = await self._resolve(event.sender)
        bp = await self.ledger.add_points(user.tiktok_id, self.settings.follow_bp, "FOLLOW")
        await self.hub.log("join", f"{user.display_name} followed")
        return ActionResult(True, f"{user.display_name} followed.", data={"bp": bp})

    async def on_control(self, event: ControlEvent):
        self.remember(event.msg_id)
        logger.warning("Live stream ended upstream")
        if self.on_stream_end:
            await self.on_stream_end()
