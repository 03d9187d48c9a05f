"""Admin commands for running a BattleBox session."""

import os
import logging
from typing import Optional

import aiosqlite
import discord
from discord.ext import commands
from discord import app_commands

from .config import ROUND_KINDS, ADJUSTABLE_SETTINGS
from .storage import USER_FLAGS
from .session import GameSession
from .twists import TWISTS
from .view import GameView

logger = logging.getLogger(__name__)

ROUND_CHOICES = [app_commands.Choice(name=kind, value=kind) for kind in ROUND_KINDS]
TWIST_CHOICES = [app_commands.Choice(name=d.name, value=d.kind) for d in TWISTS.values()]
SETTING_CHOICES = [app_commands.Choice(name=key, value=key) for key in ADJUSTABLE_SETTINGS]
FLAG_CHOICES = [app_commands.Choice(name=flag, value=flag) for flag in USER_FLAGS]


class AdminCommands(commands.Cog):
    """Owner-only control surface for the game session."""

    def __init__(self, bot: commands.Bot, session: GameSession):
        self.bot = bot
        self.session = session
        self.view = GameView()

        # Get owner ID from environment or set a default for testing
        self.owner_id = int(os.getenv('BOT_OWNER_ID', '0'))

    def is_owner(self, user_id: int) -> bool:
        """Check if user is the bot owner."""
        if user_id == self.owner_id:
            return True

        application = getattr(self.bot, "application", None)
        owner = getattr(application, "owner", None) if application else None
        return owner is not None and user_id == owner.id

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        if self.is_owner(interaction.user.id):
            return True
        await interaction.response.send_message("❌ This command is restricted to bot owners.", ephemeral=True)
        return False

    async def _reply(self, interaction: discord.Interaction, action):
        """Run a session action and report its result."""
        try:
            result = await action
        except aiosqlite.Error as e:
            logger.error(f"Storage error in /{interaction.command.name}: {e}", exc_info=True)
            await interaction.response.send_message(embed=self.view.format_error(f"Storage error: {e}"), ephemeral=True)
            return
        await interaction.response.send_message(embed=self.view.format_result(result), ephemeral=True)

    # Session and rounds

    @app_commands.command(name="bb_session_start", description="[ADMIN] Start a game session")
    async def session_start(self, interaction: discord.Interaction):
        await self._reply(interaction, self.session.start_session())

    @app_commands.command(name="bb_session_stop", description="[ADMIN] Stop the session and clear session counters")
    async def session_stop(self, interaction: discord.Interaction):
        await self._reply(interaction, self.session.stop_session())

    @app_commands.command(name="bb_round_start", description="[ADMIN] Start a round")
    @app_commands.describe(kind="Round kind")
    @app_commands.choices(kind=ROUND_CHOICES)
    async def round_start(self, interaction: discord.Interaction, kind: app_commands.Choice[str]):
        await self._reply(interaction, self.session.start_round(kind.value))

    @app_commands.command(name="bb_round_end", description="[ADMIN] End the live round now, skipping grace")
    async def round_end(self, interaction: discord.Interaction):
        await self._reply(interaction, self.session.end_round())

    @app_commands.command(name="bb_round_reset", description="[ADMIN] Reset the round to idle")
    @app_commands.describe(clear_roster="Clear the arena roster (default: yes unless the round was a final)")
    async def round_reset(self, interaction: discord.Interaction, clear_roster: Optional[bool] = None):
        await self._reply(interaction, self.session.reset_round(clear_roster))

    # Arena

    @app_commands.command(name="bb_promote", description="[ADMIN] Seat a player, or the next in queue")
    @app_commands.describe(user="Handle, display name or id; empty for the next in queue")
    async def promote(self, interaction: discord.Interaction, user: Optional[str] = None):
        action = self.session.promote(user) if user else self.session.promote_next()
        await self._reply(interaction, action)

    @app_commands.command(name="bb_remove", description="[ADMIN] Remove a player from the arena")
    async def remove(self, interaction: discord.Interaction, user: str):
        await self._reply(interaction, self.session.remove_player(user))

    @app_commands.command(name="bb_arena", description="[ADMIN] Show the arena")
    async def arena(self, interaction: discord.Interaction):
        await interaction.response.send_message(embed=self.view.format_arena(self.session.arena.snapshot()), ephemeral=True)

    # Queue

    @app_commands.command(name="bb_queue", description="[ADMIN] Show the queue")
    async def queue(self, interaction: discord.Interaction):
        slots = await self.session.queue.snapshot()
        await interaction.response.send_message(embed=self.view.format_queue(slots), ephemeral=True)

    @app_commands.command(name="bb_queue_add", description="[ADMIN] Add a user to the queue")
    async def queue_add(self, interaction: discord.Interaction, user: str):
        await self._reply(interaction, self.session.queue_add(user))

    @app_commands.command(name="bb_queue_remove", description="[ADMIN] Remove a user from the queue")
    async def queue_remove(self, interaction: discord.Interaction, user: str):
        await self._reply(interaction, self.session.queue_remove(user))

    @app_commands.command(name="bb_queue_promote", description="[ADMIN] Give a queued user one free boost")
    async def queue_promote(self, interaction: discord.Interaction, user: str):
        await self._reply(interaction, self.session.queue_promote(user))

    @app_commands.command(name="bb_queue_demote", description="[ADMIN] Take one boost from a queued user")
    async def queue_demote(self, interaction: discord.Interaction, user: str):
        await self._reply(interaction, self.session.queue_demote(user))

    # Twists

    @app_commands.command(name="bb_twist_give", description="[ADMIN] Grant twists to a user")
    @app_commands.choices(twist=TWIST_CHOICES)
    async def twist_give(self, interaction: discord.Interaction, user: str,
                         twist: app_commands.Choice[str], amount: app_commands.Range[int, 1, 100] = 1):
        await self._reply(interaction, self.session.grant_twist(user, twist.value, amount))

    @app_commands.command(name="bb_twist_use", description="[ADMIN] Use a twist for an arena player")
    @app_commands.describe(bypass="Skip the inventory check")
    @app_commands.choices(twist=TWIST_CHOICES)
    async def twist_use(self, interaction: discord.Interaction, caster: str, twist: app_commands.Choice[str],
                        target: Optional[str] = None, bypass: bool = True):
        await self._reply(interaction, self.session.use_twist(caster, twist.value, target, bypass_inventory=bypass))

    # Users and settings

    @app_commands.command(name="bb_flag", description="[ADMIN] Set a fan, VIP or block flag on a user")
    @app_commands.choices(flag=FLAG_CHOICES)
    @app_commands.describe(hours="Expiry in hours for fan/VIP (empty for none)")
    async def flag(self, interaction: discord.Interaction, user: str, flag: app_commands.Choice[str],
                   value: bool, hours: Optional[float] = None):
        expires_at = self.session.clock() + hours * 3600 if hours else None
        await self._reply(interaction, self.session.set_user_flag(user, flag.value, value, expires_at))

    @app_commands.command(name="bb_setting", description="[ADMIN] Change a game setting")
    @app_commands.choices(key=SETTING_CHOICES)
    async def setting(self, interaction: discord.Interaction, key: app_commands.Choice[str], value: str):
        await self._reply(interaction, self.session.adjust_setting(key.value, value))

    @app_commands.command(name="bb_settings", description="[ADMIN] Show current settings")
    async def settings(self, interaction: discord.Interaction):
        lines = [f"**{key}**: {value}" for key, value in self.session.adjustable_settings().items()]
        embed = discord.Embed(title="⚙️ Settings", description="\n".join(lines), color=0x0099ff)
        await interaction.response.send_message(embed=embed, ephemeral=True)

    @app_commands.command(name="bb_log", description="[ADMIN] Show recent game events")
    async def log(self, interaction: discord.Interaction):
        embed = self.view.format_log(self.session.hub.history(limit=20))
        await interaction.response.send_message(embed=embed, ephemeral=True)


async def setup(bot: commands.Bot):
    """Setup function to add the admin cog to the bot."""
    await bot.add_cog(AdminCommands(bot, bot.session))
