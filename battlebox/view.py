"""View formatting for BattleBox admin displays."""

from typing import Dict, List

import discord

from .models import ActionResult, QueueSlot
from .timeutils import format_remaining

STATUS_ICONS = {
    "alive": "🟢",
    "danger": "⚠️",
    "elimination": "💀",
    "immune": "🛡️",
    "eliminated": "❌",
}

PHASE_COLORS = {
    "idle": 0x808080,
    "active": 0x00ff00,
    "grace": 0xffa500,
    "ended": 0xff0000,
}


class GameView:
    """Handles formatting of game displays."""

    def format_arena(self, snapshot: Dict) -> discord.Embed:
        """Format the arena roster with round state."""
        round_info = snapshot["round"]
        title = f"🏟️ Arena: round {round_info['number']} ({round_info['kind']})"
        embed = discord.Embed(title=title, color=PHASE_COLORS.get(round_info["phase"], 0x800080))

        players = snapshot["players"]
        if not players:
            embed.description = "The arena is empty. Use `/bb_promote` to seat players."
        else:
            lines = []
            for player in players:
                icon = STATUS_ICONS.get(player["status"], "")
                lines.append(f"`#{player['position']}` {icon} **{player['display_name']}** (@{player['username']}) {player['score']}💎")
            embed.description = "\n".join(lines)

        phase = round_info["phase"]
        if phase in ("active", "grace"):
            phase = f"{phase} ({format_remaining(round_info['remaining'])} left)"
        embed.add_field(name="Phase", value=phase, inline=True)
        embed.add_field(name="Players", value=f"{len(players)}/{snapshot['capacity']}", inline=True)

        flags = []
        if round_info["reversed"]:
            flags.append("🌌 Ranking reversed")
        if round_info["locks"]:
            flags.append("🔒 Used: " + ", ".join(round_info["locks"]))
        if flags:
            embed.set_footer(text=" | ".join(flags))
        return embed

    def format_queue(self, slots: List[QueueSlot]) -> discord.Embed:
        embed = discord.Embed(title="📋 Queue", color=0x0099ff)
        if not slots:
            embed.description = "Nobody is waiting. Viewers type `!join` to enter."
            return embed
        embed.description = "\n".join(
            f"`{slot.rank}.` **{slot.display_name}** (@{slot.username}) {slot.reason}"
            for slot in slots[:25]
        )
        if len(slots) > 25:
            embed.set_footer(text=f"+{len(slots) - 25} more")
        return embed

    def format_log(self, lines: List[dict]) -> discord.Embed:
        embed = discord.Embed(title="📜 Recent events", color=0x800080)
        embed.description = "\n".join(f"[{line['type']}] {line['message']}" for line in lines) or "No events yet."
        return embed

    def format_result(self, result: ActionResult) -> discord.Embed:
        """Format an action result as a success or error embed."""
        if result.success:
            return self.format_success(result.message)
        return self.format_error(result.message)

    def format_error(self, message: str) -> discord.Embed:
        """Format an error message."""
        embed = discord.Embed(
            title="❌ Error",
            description=message,
            color=0xff0000
        )
        return embed

    def format_success(self, message: str) -> discord.Embed:
        """Format a success message."""
        embed = discord.Embed(
            title="✅ Success",
            description=message,
            color=0x00ff00
        )
        return embed
