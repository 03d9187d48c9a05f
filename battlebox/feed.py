"""Websocket client for the upstream live-event feed."""

import asyncio
import json
import logging
from typing import Awaitable, Callable, Optional

import aiohttp

from .config import Settings, FEED_HEARTBEAT

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 8.0


class FeedExhausted(Exception):
    """Raised when the feed cannot be reconnected within the attempt limit."""

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Live feed unreachable after {attempts} attempts: {last_error}")


class LiveFeed:
    """Reads JSON packets from the feed and hands each one to ``on_packet``.

    Connection failures are retried with a linear backoff capped at
    ``feed_backoff_cap`` seconds. ``feed_max_attempts`` failures in a row
    raise ``FeedExhausted``. A successful connect resets the counter.
    """

    def __init__(self, settings: Settings, on_packet: Callable[[dict], Awaitable[None]],
                 session_factory: Callable[[], aiohttp.ClientSession] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 idle_timeout: float = FEED_HEARTBEAT):
        self.settings = settings
        self.on_packet = on_packet
        self.session_factory = session_factory or self._default_session
        self.sleep = sleep
        self.idle_timeout = idle_timeout
        self.attempt = 0
        self.connected = False
        self.packets = 0
        self._stopping = False

    def _default_session(self) -> aiohttp.ClientSession:
        headers = {}
        if self.settings.feed_api_key:
            headers["Authorization"] = f"Bearer {self.settings.feed_api_key}"
        return aiohttp.ClientSession(headers=headers, timeout=aiohttp.ClientTimeout(connect=CONNECT_TIMEOUT))

    def backoff(self, attempt: int) -> float:
        return min(self.settings.feed_backoff_base * attempt, self.settings.feed_backoff_cap)

    def stop(self):
        self._stopping = True

    async def run(self):
        """Keep a connection open until stopped or until attempts run out."""
        if not self.settings.feed_url:
            raise ValueError("No feed URL configured (BB_FEED_URL)")

        last_error: Optional[BaseException] = None
        async with self.session_factory() as http:
            while not self._stopping:
                self.attempt += 1
                logger.info(f"Connecting to live feed (attempt {self.attempt}/{self.settings.feed_max_attempts})")
                try:
                    async with http.ws_connect(self.settings.feed_url, heartbeat=FEED_HEARTBEAT) as ws:
                        self.connected = True
                        self.attempt = 0
                        logger.info("Live feed connected")
                        await self._read(ws)
                    logger.warning("Live feed closed")
                except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                    last_error = e
                    logger.warning(f"Live feed connection failed: {e}")
                finally:
                    self.connected = False

                if self._stopping:
                    break
                if self.attempt >= self.settings.feed_max_attempts:
                    logger.critical(f"Giving up on live feed after {self.attempt} attempts")
                    raise FeedExhausted(self.attempt, last_error)

                delay = self.backoff(max(1, self.attempt))
                logger.info(f"Reconnecting to live feed in {delay:.0f}s")
                await self.sleep(delay)

    async def _read(self, ws):
        while not self._stopping:
            try:
                msg = await ws.receive(timeout=self.idle_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"No packets for {self.idle_timeout:.0f}s, forcing reconnect")
                return

            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    packet = json.loads(msg.data)
                except json.JSONDecodeError as e:
                    logger.warning(f"Dropped unparseable packet: {e}")
                    continue
                self.packets += 1
                await self.on_packet(packet)
            elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING,
                              aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                return
