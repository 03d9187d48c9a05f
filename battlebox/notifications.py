"""Outbound notifications: state changes, typed log lines and the Discord log channel."""

import logging
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, List, Optional

import discord

from .config import LOG_HISTORY
from .timeutils import timestamp

logger = logging.getLogger(__name__)

LOG_TYPES = ("gift", "queue", "booster", "twist", "elim", "join")

Listener = Callable[[str, dict], Awaitable[None]]

LOG_ICONS = {
    "gift": "🎁",
    "queue": "📋",
    "booster": "🚀",
    "twist": "🌀",
    "elim": "💀",
    "join": "👋",
}


class NotificationHub:
    """Fans notifications out to registered listeners.

    Topics: arena, queue, log, inventory, round, session, error.
    A listener that fails is logged and skipped; it never breaks the emitter.
    """

    def __init__(self, clock: Callable[[], float] = timestamp, history: int = LOG_HISTORY):
        self.clock = clock
        self.listeners: List[Listener] = []
        self.recent: Deque[dict] = deque(maxlen=history)

    def subscribe(self, listener: Listener):
        self.listeners.append(listener)

    def unsubscribe(self, listener: Listener):
        if listener in self.listeners:
            self.listeners.remove(listener)

    async def emit(self, topic: str, payload: dict):
        for listener in list(self.listeners):
            try:
                await listener(topic, payload)
            except Exception as e:
                logger.error(f"Notification listener failed on '{topic}': {e}", exc_info=True)

    async def log(self, log_type: str, message: str):
        """Emit a typed log line (gift, queue, booster, twist, elim, join)."""
        if log_type not in LOG_TYPES:
            raise ValueError(f"Unknown log type: {log_type}")
        line = {"type": log_type, "message": message, "at": self.clock()}
        self.recent.append(line)
        logger.debug(f"[{log_type}] {message}")
        await self.emit("log", line)

    def history(self, log_type: Optional[str] = None, limit: int = 20) -> List[dict]:
        lines = [line for line in self.recent if log_type is None or line["type"] == log_type]
        return lines[-limit:]


class DiscordLogSink:
    """Posts game log lines and round markers to a Discord channel."""

    def __init__(self, bot, channel_id: int):
        self.bot = bot
        self.channel_id = channel_id

    async def __call__(self, topic: str, payload: Dict):
        if topic == "log":
            content = f"{LOG_ICONS.get(payload['type'], '')} {payload['message']}"
        elif topic == "round":
            content = f"⏱️ Round {payload['number']} ({payload['kind']}): {payload['marker']}"
            if payload.get("eliminated"):
                content += f" | eliminated {len(payload['eliminated'])}"
        else:
            return
        await self.send(content)

    async def send(self, content: str):
        channel = self.bot.get_channel(self.channel_id)
        if channel is None:
            logger.warning(f"Log channel {self.channel_id} not accessible")
            return
        try:
            await channel.send(content[:2000])
        except discord.HTTPException as e:
            logger.error(f"Failed to post to log channel {self.channel_id}: {e}")
