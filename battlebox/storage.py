"""Database storage layer for BattleBox."""

import aiosqlite
from typing import List, Optional, Dict, Tuple
from .models import User, QueueEntry
from .config import DATABASE_PATH
from .timeutils import timestamp

CURRENCY_COLUMNS = {
    "round": "diamonds_round",
    "stream": "diamonds_stream",
    "total": "diamonds_total",
}

USER_FLAGS = ("is_fan", "is_vip", "block_queue", "block_twists", "block_boosters")


class GameStorage:
    """Handles all database operations for the game."""

    def __init__(self, db_path: str = DATABASE_PATH):
        self.db_path = db_path

    async def initialize(self):
        """Initialize the database with required tables."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    tiktok_id TEXT PRIMARY KEY,
                    display_name TEXT NOT NULL,
                    username TEXT NOT NULL,
                    diamonds_total INTEGER NOT NULL DEFAULT 0,
                    diamonds_stream INTEGER NOT NULL DEFAULT 0,
                    diamonds_round INTEGER NOT NULL DEFAULT 0,
                    bp_total REAL NOT NULL DEFAULT 0 CHECK(bp_total >= 0),
                    bp_today REAL NOT NULL DEFAULT 0,
                    bp_reset_date TEXT,
                    is_fan INTEGER NOT NULL DEFAULT 0,
                    fan_expires_at REAL,
                    is_vip INTEGER NOT NULL DEFAULT 0,
                    vip_expires_at REAL,
                    block_queue INTEGER NOT NULL DEFAULT 0,
                    block_twists INTEGER NOT NULL DEFAULT 0,
                    block_boosters INTEGER NOT NULL DEFAULT 0,
                    created_at REAL,
                    last_seen_at REAL
                )
            """)

            await db.execute("CREATE INDEX IF NOT EXISTS idx_users_username ON users(username)")

            await db.execute("""
                CREATE TABLE IF NOT EXISTS queue (
                    position INTEGER PRIMARY KEY AUTOINCREMENT,
                    tiktok_id TEXT NOT NULL UNIQUE,
                    boost_spots INTEGER NOT NULL DEFAULT 0 CHECK(boost_spots >= 0),
                    joined_at REAL NOT NULL
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS user_twists (
                    tiktok_id TEXT NOT NULL,
                    twist_type TEXT NOT NULL,
                    amount INTEGER NOT NULL DEFAULT 0 CHECK(amount >= 0),
                    PRIMARY KEY(tiktok_id, twist_type)
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS points_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tiktok_id TEXT NOT NULL,
                    amount REAL NOT NULL,
                    credited REAL NOT NULL,
                    reason TEXT NOT NULL,
                    created_at REAL NOT NULL
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS event_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    type TEXT NOT NULL,
                    message TEXT NOT NULL,
                    created_at REAL NOT NULL
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)

            await db.commit()

    # Users

    async def get_user(self, tiktok_id: str) -> Optional[User]:
        """Get a user by external id."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM users WHERE tiktok_id = ?", (tiktok_id,)) as cursor:
                row = await cursor.fetchone()
                if row:
                    return User(**dict(row))
                return None

    async def find_user(self, identifier: str) -> Optional[User]:
        """Find a user by id, @handle or display name."""
        ident = identifier.strip()
        handle = ident.lstrip("@").lower()
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT * FROM users
                WHERE tiktok_id = ? OR username = ? OR lower(display_name) = ?
                ORDER BY (tiktok_id = ?) DESC, last_seen_at DESC
                LIMIT 1
                """,
                (ident, handle, ident.lower(), ident)
            ) as cursor:
                row = await cursor.fetchone()
                return User(**dict(row)) if row else None

    async def insert_user_if_absent(self, user: User) -> bool:
        """Insert a user unless the id exists. Returns True if this call created it."""
        at = timestamp()
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute("""
                INSERT OR IGNORE INTO users (tiktok_id, display_name, username, created_at, last_seen_at)
                VALUES (?, ?, ?, ?, ?)
            """, (user.tiktok_id, user.display_name, user.username, at, at))
            await db.commit()
            return cursor.rowcount == 1

    async def update_identity(self, tiktok_id: str, display_name: str, username: str):
        """Overwrite a user's display name and handle."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "UPDATE users SET display_name = ?, username = ?, last_seen_at = ? WHERE tiktok_id = ?",
                (display_name, username, timestamp(), tiktok_id)
            )
            await db.commit()

    async def set_user_flag(self, tiktok_id: str, flag: str, value: bool, expires_at: Optional[float] = None):
        """Set a fan, VIP or block flag."""
        if flag not in USER_FLAGS:
            raise ValueError(f"Unknown user flag: {flag}")

        async with aiosqlite.connect(self.db_path) as db:
            if flag in ("is_fan", "is_vip"):
                expiry_column = "fan_expires_at" if flag == "is_fan" else "vip_expires_at"
                await db.execute(
                    f"UPDATE users SET {flag} = ?, {expiry_column} = ? WHERE tiktok_id = ?",
                    (int(value), expires_at, tiktok_id)
                )
            else:
                await db.execute(f"UPDATE users SET {flag} = ? WHERE tiktok_id = ?", (int(value), tiktok_id))
            await db.commit()

    # Currency and points

    async def add_currency(self, tiktok_id: str, amount: int, buckets: Tuple[str, ...]):
        """Increment one or more diamond buckets in a single statement."""
        columns = [CURRENCY_COLUMNS[bucket] for bucket in buckets]
        assignments = ", ".join(f"{col} = {col} + ?" for col in columns)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                f"UPDATE users SET {assignments} WHERE tiktok_id = ?",
                (*([amount] * len(columns)), tiktok_id)
            )
            await db.commit()

    async def reset_round_currency(self, tiktok_ids: Optional[List[str]] = None):
        """Zero the round bucket for some users, or for everyone."""
        async with aiosqlite.connect(self.db_path) as db:
            if tiktok_ids is None:
                await db.execute("UPDATE users SET diamonds_round = 0")
            else:
                await db.executemany(
                    "UPDATE users SET diamonds_round = 0 WHERE tiktok_id = ?",
                    [(tid,) for tid in tiktok_ids]
                )
            await db.commit()

    async def reset_session_fields(self):
        """Clear session-scoped diamond counters for all users."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("UPDATE users SET diamonds_round = 0, diamonds_stream = 0")
            await db.commit()

    async def add_points_capped(self, tiktok_id: str, amount: float, reason: str,
                                cap: float, day: str, at: float) -> float:
        """Credit points up to the daily cap inside one write transaction.

        Returns the amount actually credited. The requested amount is always
        written to the audit log.
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                async with db.execute(
                    "SELECT bp_today, bp_reset_date FROM users WHERE tiktok_id = ?", (tiktok_id,)
                ) as cursor:
                    row = await cursor.fetchone()
                if row is None:
                    await db.rollback()
                    return 0

                today_total = row[0] if row[1] == day else 0
                credit = max(0, min(amount, cap - today_total))

                await db.execute(
                    "UPDATE users SET bp_total = bp_total + ?, bp_today = ?, bp_reset_date = ? WHERE tiktok_id = ?",
                    (credit, today_total + credit, day, tiktok_id)
                )
                await db.execute(
                    "INSERT INTO points_log (tiktok_id, amount, credited, reason, created_at) VALUES (?, ?, ?, ?, ?)",
                    (tiktok_id, amount, credit, reason, at)
                )
                await db.commit()
                return credit
            except Exception:
                await db.rollback()
                raise

    async def credit_points(self, tiktok_id: str, amount: float, reason: str, at: float):
        """Credit points without touching the daily cap counters."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("UPDATE users SET bp_total = bp_total + ? WHERE tiktok_id = ?", (amount, tiktok_id))
            await db.execute(
                "INSERT INTO points_log (tiktok_id, amount, credited, reason, created_at) VALUES (?, ?, ?, ?, ?)",
                (tiktok_id, amount, amount, reason, at)
            )
            await db.commit()

    async def spend_points(self, tiktok_id: str, amount: float, reason: str, at: float) -> bool:
        """Debit points if the balance covers it. Returns False otherwise."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute(
                "UPDATE users SET bp_total = bp_total - ? WHERE tiktok_id = ? AND bp_total >= ?",
                (amount, tiktok_id, amount)
            )
            if cursor.rowcount != 1:
                await db.rollback()
                return False
            await db.execute(
                "INSERT INTO points_log (tiktok_id, amount, credited, reason, created_at) VALUES (?, ?, ?, ?, ?)",
                (tiktok_id, -amount, -amount, reason, at)
            )
            await db.commit()
            return True

    async def get_points_log(self, tiktok_id: str) -> List[Dict]:
        """Get the points audit trail for a user, oldest first."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT amount, credited, reason, created_at FROM points_log WHERE tiktok_id = ? ORDER BY id",
                (tiktok_id,)
            ) as cursor:
                return [dict(row) for row in await cursor.fetchall()]

    # Queue

    async def get_queue_entry(self, tiktok_id: str) -> Optional[QueueEntry]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM queue WHERE tiktok_id = ?", (tiktok_id,)) as cursor:
                row = await cursor.fetchone()
                return QueueEntry(**dict(row)) if row else None

    async def insert_queue_entry(self, tiktok_id: str, joined_at: float) -> QueueEntry:
        """Replace any stale row for the user with a fresh entry."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM queue WHERE tiktok_id = ?", (tiktok_id,))
            cursor = await db.execute(
                "INSERT INTO queue (tiktok_id, boost_spots, joined_at) VALUES (?, 0, ?)",
                (tiktok_id, joined_at)
            )
            position = cursor.lastrowid
            await db.commit()
        return QueueEntry(position=position, tiktok_id=tiktok_id, boost_spots=0, joined_at=joined_at)

    async def delete_queue_entry(self, tiktok_id: str) -> Optional[QueueEntry]:
        """Remove a user's entry. Returns the removed entry, if there was one."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            async with db.execute("SELECT * FROM queue WHERE tiktok_id = ?", (tiktok_id,)) as cursor:
                row = await cursor.fetchone()
            if row is None:
                await db.rollback()
                return None
            await db.execute("DELETE FROM queue WHERE tiktok_id = ?", (tiktok_id,))
            await db.commit()
            return QueueEntry(**dict(row))

    async def add_queue_boost(self, tiktok_id: str, delta: int) -> Optional[int]:
        """Shift a user's boost count, never below zero. Returns the new count."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE queue SET boost_spots = MAX(0, boost_spots + ?) WHERE tiktok_id = ?",
                (delta, tiktok_id)
            )
            if cursor.rowcount != 1:
                await db.rollback()
                return None
            await db.commit()
            async with db.execute("SELECT boost_spots FROM queue WHERE tiktok_id = ?", (tiktok_id,)) as cursor:
                row = await cursor.fetchone()
                return row[0]

    async def get_queue_rows(self) -> List[Tuple[QueueEntry, User]]:
        """Get every queue entry joined with its user, unordered."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("""
                SELECT q.position AS q_position, q.boost_spots AS q_boost_spots, q.joined_at AS q_joined_at, u.*
                FROM queue q JOIN users u ON u.tiktok_id = q.tiktok_id
            """) as cursor:
                rows = await cursor.fetchall()

        result = []
        for row in rows:
            data = dict(row)
            entry = QueueEntry(
                position=data.pop("q_position"),
                tiktok_id=data["tiktok_id"],
                boost_spots=data.pop("q_boost_spots"),
                joined_at=data.pop("q_joined_at"),
            )
            result.append((entry, User(**data)))
        return result

    async def clear_queue(self):
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM queue")
            await db.commit()

    # Twist inventory

    async def add_twists(self, tiktok_id: str, twist_type: str, amount: int) -> int:
        """Increment a twist count. Returns the new count."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                INSERT INTO user_twists (tiktok_id, twist_type, amount) VALUES (?, ?, ?)
                ON CONFLICT(tiktok_id, twist_type) DO UPDATE SET amount = amount + excluded.amount
            """, (tiktok_id, twist_type, amount))
            await db.commit()
            async with db.execute(
                "SELECT amount FROM user_twists WHERE tiktok_id = ? AND twist_type = ?", (tiktok_id, twist_type)
            ) as cursor:
                row = await cursor.fetchone()
                return row[0]

    async def consume_twist(self, tiktok_id: str, twist_type: str) -> bool:
        """Take one charge if the user holds any. Returns False when empty."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute(
                "UPDATE user_twists SET amount = amount - 1 WHERE tiktok_id = ? AND twist_type = ? AND amount > 0",
                (tiktok_id, twist_type)
            )
            consumed = cursor.rowcount == 1
            await db.commit()
            return consumed

    async def get_twists(self, tiktok_id: str) -> Dict[str, int]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT twist_type, amount FROM user_twists WHERE tiktok_id = ? AND amount > 0 ORDER BY twist_type",
                (tiktok_id,)
            ) as cursor:
                return {twist_type: amount for twist_type, amount in await cursor.fetchall()}

    async def clear_twists(self):
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM user_twists")
            await db.commit()

    # Event log and key/value state

    async def append_event_log(self, log_type: str, message: str, at: float):
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT INTO event_log (type, message, created_at) VALUES (?, ?, ?)",
                (log_type, message, at)
            )
            await db.commit()

    async def get_event_log(self, limit: int = 50) -> List[Dict]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT type, message, created_at FROM event_log ORDER BY id DESC LIMIT ?", (limit,)
            ) as cursor:
                return [dict(row) for row in await cursor.fetchall()]

    async def get_state(self, key: str) -> Optional[str]:
        """Get a state value."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT value FROM state WHERE key = ?", (key,)) as cursor:
                row = await cursor.fetchone()
                return row[0] if row else None

    async def set_state(self, key: str, value: str):
        """Set a state value."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("INSERT OR REPLACE INTO state (key, value) VALUES (?, ?)", (key, value))
            await db.commit()

    async def get_states(self, prefix: str) -> Dict[str, str]:
        """Get all state values whose key starts with a prefix, prefix stripped."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT key, value FROM state WHERE key LIKE ?", (prefix + "%",)
            ) as cursor:
                return {key[len(prefix):]: value for key, value in await cursor.fetchall()}
