"""Main entry point for the BattleBox Discord bot."""

import os
import sys
import asyncio
import logging
from pathlib import Path
from typing import Optional

import discord
from discord.ext import commands
from dotenv import load_dotenv

from error_handler import ErrorHandler
from battlebox.config import Settings
from battlebox.feed import FeedExhausted, LiveFeed
from battlebox.notifications import DiscordLogSink
from battlebox.session import GameSession

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(),
        logging.FileHandler('battlebox.log')
    ]
)
logger = logging.getLogger(__name__)


def load_or_prompt_env():
    """Load environment variables or prompt for token if missing."""
    load_dotenv()

    token = os.getenv('DISCORD_TOKEN')
    if not token:
        logger.warning("DISCORD_TOKEN not found in .env file")
        token = input("Please enter your Discord bot token: ").strip()

        if not token:
            logger.error("No token provided. Exiting.")
            sys.exit(1)

        # Save token to .env file
        env_path = Path('.env')
        with env_path.open('a') as f:
            f.write(f"\nDISCORD_TOKEN={token}\n")
        logger.info("Token saved to .env file")

    return token


class BattleBoxBot(commands.Bot):
    """Hosts the game session, its admin commands and the live feed."""

    def __init__(self, settings: Settings):
        intents = discord.Intents.default()
        intents.message_content = False  # We only use slash commands

        super().__init__(
            command_prefix='!',  # Unused but required
            intents=intents,
            description="BattleBox - live audience arena game control"
        )

        self.settings = settings
        self.session = GameSession(settings)
        self.feed: Optional[LiveFeed] = None
        self.feed_task: Optional[asyncio.Task] = None

        owner_id = int(os.getenv('BOT_OWNER_ID', '0'))
        self.error_handler = ErrorHandler(self, owner_id)

    async def setup_hook(self):
        """Setup hook called before the bot connects."""
        logger.info("Setting up BattleBox bot...")

        await self.session.initialize()
        self.session.hub.subscribe(self._on_notification)
        if self.settings.log_channel_id:
            self.session.hub.subscribe(DiscordLogSink(self, self.settings.log_channel_id))

        try:
            await self.load_extension('battlebox.admin_commands')
            logger.info("Loaded admin commands")
        except Exception as e:
            await self.error_handler.notify_owner("Failed to load admin commands", str(e), e)
            logger.error(f"Failed to load admin commands: {e}")
            raise

        try:
            await self.load_extension('battlebox.scheduler')
            logger.info("Loaded round scheduler")
        except Exception as e:
            await self.error_handler.notify_owner("Failed to load scheduler", str(e), e)
            logger.error(f"Failed to load scheduler: {e}")
            raise

        if self.settings.feed_url:
            self.start_feed()
        else:
            logger.warning("BB_FEED_URL not set; running without a live feed")

        try:
            synced = await self.tree.sync()
            logger.info(f"Synced {len(synced)} command(s)")
        except discord.HTTPException as e:
            await self.error_handler.notify_owner("Failed to sync commands", str(e), e)
            logger.error(f"Failed to sync commands: {e}")

    def start_feed(self):
        self.feed = LiveFeed(self.settings, self.session.dispatcher.submit)
        self.feed_task = asyncio.create_task(self.feed.run(), name="battlebox-feed")
        self.feed_task.add_done_callback(self._on_feed_done)

    def _on_feed_done(self, task: asyncio.Task):
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            logger.info("Live feed stopped")
            return
        asyncio.create_task(self._handle_feed_failure(error))

    async def _handle_feed_failure(self, error: BaseException):
        if isinstance(error, FeedExhausted):
            await self.session.stop_session()
            await self.error_handler.report_feed_lost(error)
        else:
            logger.error(f"Live feed crashed: {error}", exc_info=error)
            await self.session.stop_session()
            await self.error_handler.notify_owner("Live Feed Crashed", "The feed task stopped unexpectedly.", error)

    async def _on_notification(self, topic: str, payload: dict):
        if topic == "error":
            await self.error_handler.report_event_failure(payload)

    async def on_ready(self):
        """Called when the bot is ready."""
        logger.info(f"BattleBox bot is ready! Logged in as {self.user}")

        try:
            activity = discord.Game(name="BattleBox | /bb_arena")
            await self.change_presence(activity=activity)
            await self.error_handler.send_startup_notification(self.feed is not None)
        except discord.HTTPException as e:
            logger.error(f"Error in on_ready: {e}")

    async def on_app_command_error(self, interaction, error):
        """Handle application command errors."""
        await self.error_handler.handle_interaction_error(interaction, error)

    async def on_error(self, event, *args, **kwargs):
        """Handle general bot errors."""
        exc_type, exc_value, exc_traceback = sys.exc_info()
        logger.error(f"Bot error in event {event}", exc_info=True)
        if exc_value:
            context = {"event": event, "args": str(args)[:500]}
            await self.error_handler.notify_owner(f"Bot Error in {event}", str(context), exc_value)

    async def close(self):
        """Clean shutdown."""
        logger.info("Shutting down BattleBox bot...")
        if self.feed is not None:
            self.feed.stop()
        if self.feed_task is not None:
            self.feed_task.cancel()
        await super().close()


async def main():
    """Main function to run the bot."""
    token = load_or_prompt_env()
    bot = BattleBoxBot(Settings.from_env())
    # The app command tree reports errors through this hook
    bot.tree.on_error = bot.on_app_command_error

    try:
        await bot.start(token)
    except Exception as e:
        logger.error(f"Bot crashed: {e}", exc_info=True)
        await bot.error_handler.notify_owner("Bot Crashed", "Fatal error while running", e)
        raise
    finally:
        if not bot.is_closed():
            await bot.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Bot stopped by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
