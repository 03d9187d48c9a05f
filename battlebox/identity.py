"""Resolve raw platform user ids into stable user records."""

import logging
import re
from typing import Optional

from .models import User
from .storage import GameStorage

logger = logging.getLogger(__name__)

UNKNOWN_ID = "unknown"
PLACEHOLDER_NAME = "Unknown"
PLACEHOLDER_HANDLE = "unknown"

_HANDLE_STRIP = re.compile(r"[^a-z0-9_]")


def normalize_handle(value: Optional[str]) -> str:
    """Lower-case a handle and keep only letters, digits and underscores."""
    if not value:
        return ""
    return _HANDLE_STRIP.sub("", value.strip().lstrip("@").lower())


def is_placeholder_name(name: Optional[str]) -> bool:
    if not name or not name.strip():
        return True
    lowered = name.strip().lower()
    return lowered == "unknown" or lowered.startswith("unknown#")


def is_placeholder_handle(handle: Optional[str], tiktok_id: Optional[str] = None) -> bool:
    """A missing handle, or one generated by placeholder_handle for this id."""
    if not handle or handle == PLACEHOLDER_HANDLE:
        return True
    return bool(tiktok_id) and handle == placeholder_handle(tiktok_id)


def placeholder_name(tiktok_id: str) -> str:
    return f"{PLACEHOLDER_NAME}#{tiktok_id[-5:]}"


def placeholder_handle(tiktok_id: str) -> str:
    return f"{PLACEHOLDER_HANDLE}{normalize_handle(tiktok_id[-5:])}"


def unknown_user() -> User:
    """The fixed record used for events without a usable sender id."""
    return User(tiktok_id=UNKNOWN_ID, display_name=PLACEHOLDER_NAME, username=PLACEHOLDER_HANDLE)


def is_unknown(tiktok_id: Optional[str]) -> bool:
    return not tiktok_id or str(tiktok_id).strip().lower() == UNKNOWN_ID


class IdentityResolver:
    """Maps external ids plus observed names onto persisted users."""

    def __init__(self, storage: GameStorage):
        self.storage = storage

    async def resolve(self, tiktok_id: Optional[str], observed_name: Optional[str] = None,
                      observed_handle: Optional[str] = None) -> User:
        """Get or create the user for an id, upgrading placeholder names when a real one shows up."""
        if is_unknown(tiktok_id):
            return unknown_user()

        tiktok_id = str(tiktok_id).strip()
        name = observed_name.strip() if observed_name else None
        if is_placeholder_name(name):
            name = None
        handle = normalize_handle(observed_handle)
        if is_placeholder_handle(handle, tiktok_id):
            handle = ""

        user = await self.storage.get_user(tiktok_id)
        if user is None:
            display_name = name or placeholder_name(tiktok_id)
            username = handle or normalize_handle(name) or placeholder_handle(tiktok_id)
            created = await self.storage.insert_user_if_absent(
                User(tiktok_id=tiktok_id, display_name=display_name, username=username)
            )
            user = await self.storage.get_user(tiktok_id)
            if created:
                logger.debug(f"Created user {tiktok_id} as {display_name} (@{username})")
                return user
            # Lost an insert race; the other writer's record may still need the upgrade below

        new_name = user.display_name
        new_handle = user.username

        if name and (name != user.display_name
                     or is_placeholder_name(user.display_name)
                     or is_placeholder_handle(user.username, tiktok_id)):
            new_name = name
            new_handle = handle or normalize_handle(name) or user.username
        elif handle and handle != user.username:
            new_handle = handle

        if new_name == user.display_name and new_handle == user.username:
            return user

        await self.storage.update_identity(tiktok_id, new_name, new_handle)
        logger.info(f"Upgraded user {tiktok_id}: {user.display_name} (@{user.username}) -> {new_name} (@{new_handle})")
        user.display_name = new_name
        user.username = new_handle
        return user

    async def find(self, identifier: Optional[str]) -> Optional[User]:
        """Look up a known user by id, @handle or display name."""
        if not identifier or not identifier.strip():
            return None
        return await self.storage.find_user(identifier)
