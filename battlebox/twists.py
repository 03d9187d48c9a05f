"""Twist definitions, inventory and resolution against the arena."""

import logging
import random
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .arena import ArenaState, DECISIVE_LOCK
from .models import ActionResult
from .notifications import NotificationHub
from .storage import GameStorage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TwistDefinition:
    """A special action and the gift that grants it."""
    kind: str
    name: str
    category: str  # offense, random_offense, defense, heal, reversal, decisive, breaker
    requires_target: bool
    aliases: Tuple[str, ...]
    gift_id: Optional[int] = None
    gift_name: Optional[str] = None
    diamonds: Optional[int] = None
    once_per_round: bool = False


TWISTS: Dict[str, TwistDefinition] = {
    "galaxy": TwistDefinition(
        "galaxy", "Galaxy", "reversal", False,
        ("galaxy", "sterrenstelsel", "reverse", "flip"),
        gift_id=11046, gift_name="Galaxy", diamonds=1000,
    ),
    "moneygun": TwistDefinition(
        "moneygun", "Money Gun", "offense", True,
        ("moneygun", "mg", "gun"),
        gift_id=7168, gift_name="Money Gun", diamonds=500,
    ),
    "immune": TwistDefinition(
        "immune", "Immune", "defense", True,
        ("immune", "immuun", "shield", "protect"),
        gift_id=14658, gift_name="Blooming Heart", diamonds=1599,
    ),
    "diamond_pistol": TwistDefinition(
        "diamond_pistol", "Diamond Pistol", "decisive", True,
        ("diamondpistol", "diamantpistool", "dp", "wipe"),
        gift_id=14768, gift_name="Diamond Gun", diamonds=5000, once_per_round=True,
    ),
    "bomb": TwistDefinition(
        "bomb", "Bomb", "random_offense", False,
        ("bomb", "bom", "boom"),
        gift_id=16101, gift_name="Space Dog", diamonds=2500,
    ),
    "heal": TwistDefinition(
        "heal", "Heal", "heal", True,
        ("heal", "revive", "hp", "reanimate"),
        gift_id=14210, gift_name="Galaxy Globe", diamonds=1500,
    ),
    "breaker": TwistDefinition(
        "breaker", "Breaker", "breaker", True,
        ("breaker", "break", "crack"),
    ),
}

ALIASES: Dict[str, str] = {}
for _definition in TWISTS.values():
    ALIASES[_definition.kind] = _definition.kind
    ALIASES[_definition.kind.replace("_", "")] = _definition.kind
    for _alias in _definition.aliases:
        ALIASES[_alias] = _definition.kind


def resolve_kind(text: Optional[str]) -> Optional[str]:
    """Map a chat spelling to its canonical twist kind."""
    if not text:
        return None
    return ALIASES.get(text.strip().lower())


def twist_for_gift(gift_id: Optional[int] = None, gift_name: Optional[str] = None) -> Optional[str]:
    """Find the twist a gift grants, matching on id first and then on name."""
    if gift_id is not None:
        for definition in TWISTS.values():
            if definition.gift_id == gift_id:
                return definition.kind
    if gift_name:
        wanted = gift_name.strip().lower()
        for definition in TWISTS.values():
            if definition.gift_name and definition.gift_name.lower() == wanted:
                return definition.kind
    return None


class TwistEngine:
    """Handles inventory and applies twist effects to the arena."""

    def __init__(self, storage: GameStorage, arena: ArenaState, hub: NotificationHub,
                 rng: Optional[random.Random] = None):
        self.storage = storage
        self.arena = arena
        self.hub = hub
        self.rng = rng or random.Random()

    async def grant(self, tiktok_id: str, kind: str, qty: int = 1) -> ActionResult:
        kind = resolve_kind(kind)
        if kind is None:
            return ActionResult(False, "Unknown twist.", "unknown_twist")
        if qty < 1:
            return ActionResult(False, "Quantity must be at least 1.", "invalid_amount")

        count = await self.storage.add_twists(tiktok_id, kind, qty)
        logger.info(f"Granted {qty}x {kind} to {tiktok_id} (now {count})")
        await self._inventory_changed(tiktok_id)
        return ActionResult(True, f"Granted {qty}x {TWISTS[kind].name} (now {count}).",
                            data={"kind": kind, "count": count})

    async def inventory(self, tiktok_id: str) -> Dict[str, int]:
        return await self.storage.get_twists(tiktok_id)

    async def clear_all(self):
        """Drop every inventory. Called when a session stops."""
        await self.storage.clear_twists()
        logger.info("Cleared all twist inventories")

    async def use(self, caster_id: str, kind_text: str, target: Optional[str] = None,
                  bypass_inventory: bool = False) -> ActionResult:
        """Resolve a twist. Never raises for rule violations.

        A charge that has been taken stays taken, even when the effect is then
        refused by a round lock or an immune target. Decisions that end in a
        no-op before the charge is taken leave the inventory alone.
        """
        kind = resolve_kind(kind_text)
        if kind is None:
            return ActionResult(False, f"Unknown twist '{kind_text}'.", "unknown_twist",
                                public_message="Unknown twist.")
        definition = TWISTS[kind]

        caster = self.arena.get(caster_id)
        if caster is None:
            return ActionResult(False, f"{caster_id} is not in the arena.", "not_in_arena",
                                public_message="Only arena players can use twists.")

        if not bypass_inventory:
            user = await self.storage.get_user(caster_id)
            if user and user.block_twists:
                return ActionResult(False, f"{caster.display_name} is blocked from twists.", "blocked")

        target_player = None
        if definition.requires_target:
            if not target:
                return ActionResult(False, f"{definition.name} needs a target.", "target_required",
                                    public_message=f"Usage: !use {kind} @target")
            target_player = self.arena.find(target)
            if target_player is None:
                return ActionResult(False, f"Target '{target}' is not in the arena.", "target_not_in_arena",
                                    public_message="That target is not in the arena.")
        elif definition.category == "random_offense":
            eligible = [p for p in self.arena.players() if not p.immune and not p.eliminated]
            if not eligible:
                return ActionResult(False, f"{definition.name} found no target; nothing happened.", "no_target",
                                    public_message="No valid targets.")
            target_player = self.rng.choice(eligible)

        consumed = False
        if not bypass_inventory:
            if not await self.storage.consume_twist(caster_id, kind):
                return ActionResult(False, f"{caster.display_name} has no {definition.name} left.", "no_inventory",
                                    public_message=f"You don't have a {definition.name}.")
            consumed = True
            await self._inventory_changed(caster_id)

        if definition.once_per_round and self.arena.is_locked(DECISIVE_LOCK):
            result = ActionResult(False, f"{definition.name} was already used this round.", "round_locked",
                                  public_message=f"{definition.name} was already used this round.",
                                  consumed=consumed)
            await self._log(result)
            return result

        result = self._apply(definition, caster, target_player)
        result.consumed = consumed
        await self._log(result)
        return result

    def _apply(self, definition: TwistDefinition, caster, target) -> ActionResult:
        category = definition.category
        label = f"{caster.display_name} used {definition.name}"

        if category in ("offense", "random_offense"):
            if target.immune:
                return ActionResult(False, f"{label} on {target.display_name}, but they are immune.",
                                    "blocked_by_immune", target_id=target.tiktok_id,
                                    public_message=f"@{target.username} is immune! {definition.name} blocked.")
            self.arena.add_effect(target.tiktok_id, "marked")
            return ActionResult(True, f"{label} on {target.display_name}.", target_id=target.tiktok_id,
                                public_message=f"@{caster.username} hit @{target.username} with {definition.name}!")

        if category == "defense":
            self.arena.add_effect(target.tiktok_id, "immune")
            self.arena.clear_effects(target.tiktok_id, "immune_broken")
            return ActionResult(True, f"{label}: {target.display_name} is immune.", target_id=target.tiktok_id,
                                public_message=f"@{target.username} is now immune!")

        if category == "heal":
            self.arena.heal(target.tiktok_id)
            return ActionResult(True, f"{label} on {target.display_name}.", target_id=target.tiktok_id,
                                public_message=f"@{target.username} has been healed!")

        if category == "reversal":
            reversed_now = self.arena.toggle_reversal()
            state = "reversed" if reversed_now else "restored"
            return ActionResult(True, f"{label}: ranking {state}.",
                                public_message=f"@{caster.username} flipped the ranking!",
                                data={"reversed": reversed_now})

        if category == "decisive":
            marked = self.arena.apply_decisive(target.tiktok_id)
            return ActionResult(True, f"{label}: only {target.display_name} survives.", target_id=target.tiktok_id,
                                public_message=f"@{caster.username} fired the {definition.name}! Only @{target.username} is safe.",
                                data={"marked": marked})

        if category == "breaker":
            self.arena.clear_effects(target.tiktok_id, "immune")
            self.arena.add_effect(target.tiktok_id, "immune_broken")
            return ActionResult(True, f"{label}: {target.display_name} lost immunity.", target_id=target.tiktok_id,
                                public_message=f"@{target.username}'s immunity was broken!")

        raise ValueError(f"Unhandled twist category: {category}")

    async def _inventory_changed(self, tiktok_id: str):
        await self.hub.emit("inventory", {
            "tiktok_id": tiktok_id,
            "twists": await self.storage.get_twists(tiktok_id),
        })

    async def _log(self, result: ActionResult):
        await self.hub.log("twist", result.message)
        if result.success:
            await self.hub.emit("arena", self.arena.snapshot())
