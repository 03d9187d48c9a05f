"""Background round timer and event consumer for BattleBox."""

import asyncio
import logging
from typing import Optional

from discord.ext import commands, tasks

from .session import GameSession

logger = logging.getLogger(__name__)


class RoundScheduler:
    """Drives round phases once per second and keeps the event consumer alive."""

    def __init__(self, bot: commands.Bot, session: GameSession):
        self.bot = bot
        self.session = session
        self.consumer: Optional[asyncio.Task] = None

    def start(self):
        if not self.round_clock.is_running():
            self.round_clock.start()
        if self.consumer is None or self.consumer.done():
            self.consumer = asyncio.create_task(self.session.dispatcher.run(), name="battlebox-dispatcher")
            logger.info("Event consumer task started")

    def stop(self):
        """Clean shutdown of the scheduler."""
        self.round_clock.cancel()
        if self.consumer is not None:
            self.consumer.cancel()

    @tasks.loop(seconds=1.0)
    async def round_clock(self):
        """Advance the live round, independent of event arrival."""
        try:
            await self.session.tick()
        except Exception as e:
            logger.error(f"Error in round clock: {e}", exc_info=True)

    @round_clock.before_loop
    async def before_round_clock(self):
        """Wait for bot to be ready before ticking."""
        await self.bot.wait_until_ready()
        logger.info("Round clock initialized")


async def setup(bot: commands.Bot):
    """Setup function to start the scheduler on the bot's session."""
    scheduler = RoundScheduler(bot, bot.session)
    scheduler.start()
    # Store reference so it doesn't get garbage collected
    bot.round_scheduler = scheduler


async def teardown(bot: commands.Bot):
    """Stop the round clock and event consumer when the extension unloads."""
    scheduler = getattr(bot, "round_scheduler", None)
    if scheduler is not None:
        scheduler.stop()
        logger.info("Round scheduler stopped")
