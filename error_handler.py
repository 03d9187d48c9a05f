"""Error handling and owner notifications for the BattleBox bot."""

import logging
import traceback
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import discord
from discord import app_commands
from discord.ext import commands


logger = logging.getLogger(__name__)


class ErrorHandler:
    """Centralized error handling and notification system."""

    def __init__(self, bot: commands.Bot, owner_id: int):
        self.bot = bot
        self.owner_id = owner_id
        self.error_counts: Dict[str, int] = {}
        self.last_notification: Dict[str, datetime] = {}
        self.notification_cooldown = 300  # seconds between alerts of the same type

    async def notify_owner(self, title: str, description: str, error: Optional[BaseException] = None):
        """Send a DM notification to the bot owner."""
        if not self.owner_id:
            logger.warning(f"No BOT_OWNER_ID configured; owner alert not sent: {title}")
            return

        try:
            owner = self.bot.get_user(self.owner_id) or await self.bot.fetch_user(self.owner_id)

            embed = discord.Embed(
                title=f"🚨 {title}",
                description=description[:4000],
                color=0xff0000,
                timestamp=datetime.now(timezone.utc)
            )

            if error:
                embed.add_field(name="Error Details", value=f"```{str(error)[:1000]}```", inline=False)

                tb = ''.join(traceback.format_exception(type(error), error, error.__traceback__))
                embed.add_field(name="Traceback", value=f"```{tb[-1000:]}```", inline=False)

            embed.set_footer(text="BattleBox Error Handler")

            await owner.send(embed=embed)
            logger.info(f"Sent error notification to owner: {title}")

        except discord.HTTPException as e:
            logger.error(f"Failed to send error notification: {e}")

    def should_notify(self, key: str) -> bool:
        """Count an error and decide whether its cooldown allows another alert."""
        now = datetime.now(timezone.utc)
        self.error_counts[key] = self.error_counts.get(key, 0) + 1
        last = self.last_notification.get(key)
        if last is None or now - last > timedelta(seconds=self.notification_cooldown):
            self.last_notification[key] = now
            return True
        return False

    async def report_feed_lost(self, error: BaseException):
        """The live feed is gone for good; nothing more can be credited until it is restarted."""
        logger.critical(f"Live feed lost: {error}")
        await self.notify_owner(
            "Live Feed Lost",
            "The live-event feed could not be reconnected. The session has been stopped; "
            "no gifts or chat will be credited until the feed is restarted.",
            error
        )

    async def report_event_failure(self, payload: dict):
        """Alert on dispatcher failures, rate limited per error text."""
        if self.should_notify(f"event:{payload.get('error', '')[:80]}"):
            await self.notify_owner("Event Processing Error", f"Event: ```{str(payload.get('event'))[:1500]}```\n{payload.get('error')}")

    async def handle_interaction_error(self, interaction: discord.Interaction, error: Exception):
        """Handle slash command interaction errors."""
        if isinstance(error, app_commands.CheckFailure):
            # Owner gate already answered the user
            return

        error_type = type(error).__name__
        command_name = interaction.command.name if interaction.command else "unknown"

        if self.should_notify(error_type):
            user = f"{interaction.user.display_name} ({interaction.user.id})"
            guild = f"{interaction.guild.name} ({interaction.guild.id})" if interaction.guild else "DM"

            description = (
                f"**Command:** /{command_name}\n"
                f"**User:** {user}\n"
                f"**Guild:** {guild}\n"
                f"**Error Count:** {self.error_counts[error_type]} (since restart)"
            )
            await self.notify_owner(f"Slash Command Error: {error_type}", description, error)

        logger.error(f"Interaction error in {command_name}: {error}")

        try:
            error_embed = discord.Embed(
                title="❌ Command Error",
                description="An error occurred while processing your command. The bot owner has been notified.",
                color=0xff0000
            )

            if isinstance(error, discord.errors.NotFound) and "10062" in str(error):
                error_embed.description = "⏱️ The command took too long to process. Please try again."

            if not interaction.response.is_done():
                await interaction.response.send_message(embed=error_embed, ephemeral=True)
            else:
                await interaction.followup.send(embed=error_embed, ephemeral=True)

        except discord.HTTPException as followup_error:
            logger.error(f"Failed to send error message to user: {followup_error}")

    async def send_startup_notification(self, feed_enabled: bool):
        """Send notification when bot starts successfully."""
        feed = "connected to the live feed" if feed_enabled else "running without a live feed (BB_FEED_URL unset)"
        try:
            owner = self.bot.get_user(self.owner_id) or await self.bot.fetch_user(self.owner_id)

            embed = discord.Embed(
                title="✅ BattleBox Started",
                description=f"Bot is online and {feed}.",
                color=0x00ff00,
                timestamp=datetime.now(timezone.utc)
            )

            await owner.send(embed=embed)
            logger.info("Sent startup notification to owner")

        except discord.HTTPException as e:
            logger.error(f"Failed to send startup notification: {e}")
