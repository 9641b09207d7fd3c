"""SQLite storage backend for the hybrid memory system.

Persists long-term memory entries, user profile facts and session records
with aiosqlite. All rows for a user can be removed in one call, which backs
the erasure operation.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator

import aiosqlite
from loguru import logger

from ..embedding import deserialize_embedding, serialize_embedding
from ..exceptions import StorageError
from ..models import MemoryEntry, ProfileFact, Role, UserProfile


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_time(value: str | None) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    return datetime.fromisoformat(value)


class SQLiteStore:
    """SQLite storage backend.

    Uses WAL mode for concurrent reads. aiosqlite errors are re-raised as
    :class:`StorageError`.
    """

    def __init__(self, db_path: str = "./memory/hybrid_memory.db"):
        """Initialize SQLite store.

        Args:
            db_path: Path to SQLite database file, or ``:memory:``
        """
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None
        logger.info(f"SQLiteStore initialized with db_path: {db_path}")

    @property
    def is_initialized(self) -> bool:
        return self._db is not None

    async def initialize(self) -> None:
        """Create database tables and indexes if they don't exist."""
        if self._db is not None:
            return

        try:
            if self.db_path != ":memory:":
                db_dir = Path(self.db_path).parent
                db_dir.mkdir(parents=True, exist_ok=True)
                logger.debug(f"Ensured database directory exists: {db_dir}")

            self._db = await aiosqlite.connect(self.db_path)
            await self._db.execute("PRAGMA journal_mode=WAL")
            await self._create_tables()
            await self._create_indexes()
            await self._db.commit()
        except (aiosqlite.Error, OSError) as e:
            raise StorageError(f"Failed to initialize database: {e}", path=self.db_path) from e

        logger.info("SQLite database initialized successfully")

    async def _create_tables(self) -> None:
        # Long-term memory: one row per turn, partitioned by user_id
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS memory_entries (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                session_id TEXT,
                seq INTEGER NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                embedding BLOB NOT NULL,
                dimension INTEGER NOT NULL,
                created_at TEXT NOT NULL
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS user_profiles (
                user_id TEXT PRIMARY KEY,
                last_updated TEXT NOT NULL
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS profile_facts (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                attribute TEXT,
                statement TEXT NOT NULL,
                embedding BLOB,
                position INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS sessions (
                session_id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                started_at TEXT NOT NULL,
                ended_at TEXT,
                turn_count INTEGER DEFAULT 0
            )
        """)

    async def _create_indexes(self) -> None:
        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_memory_user
            ON memory_entries(user_id)
        """)
        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_memory_user_session
            ON memory_entries(user_id, session_id, seq)
        """)
        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_facts_user
            ON profile_facts(user_id, position)
        """)
        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_sessions_user
            ON sessions(user_id)
        """)

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("SQLite database connection closed")

    @asynccontextmanager
    async def _connection(self, operation: str) -> AsyncIterator[aiosqlite.Connection]:
        if not self._db:
            raise StorageError(
                "Database not initialized. Call initialize() first.", path=self.db_path
            )
        try:
            yield self._db
        except aiosqlite.Error as e:
            raise StorageError(f"{operation} failed: {e}", path=self.db_path) from e

    # ------------------------------------------------------------------
    # Memory entries
    # ------------------------------------------------------------------

    async def insert_memory_entry(self, entry: MemoryEntry) -> str:
        """Persist a long-term memory entry.

        Returns:
            Entry ID
        """
        async with self._connection("insert_memory_entry") as db:
            await db.execute(
                """
                INSERT INTO memory_entries (
                    id, user_id, session_id, seq, role, content,
                    embedding, dimension, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    entry.user_id,
                    entry.session_id,
                    entry.seq,
                    entry.role.value,
                    entry.content,
                    serialize_embedding(entry.embedding),
                    len(entry.embedding),
                    entry.timestamp.isoformat(),
                ),
            )
            await db.commit()

        logger.debug(f"Inserted memory entry {entry.id} for user {entry.user_id}")
        return entry.id

    async def get_memory_entries(self, user_id: str) -> list[MemoryEntry]:
        """Get every entry in one user's partition, oldest first."""
        async with self._connection("get_memory_entries") as db:
            async with db.execute(
                """
                SELECT id, user_id, session_id, seq, role, content,
                       embedding, created_at
                FROM memory_entries
                WHERE user_id = ?
                ORDER BY created_at ASC
                """,
                (user_id,),
            ) as cursor:
                rows = await cursor.fetchall()

        return [
            MemoryEntry(
                id=row[0],
                user_id=row[1],
                session_id=row[2],
                seq=row[3],
                role=Role(row[4]),
                content=row[5],
                embedding=deserialize_embedding(row[6]),
                timestamp=_parse_time(row[7]),
            )
            for row in rows
        ]

    async def count_memory_entries(self, user_id: str) -> int:
        async with self._connection("count_memory_entries") as db:
            async with db.execute(
                "SELECT COUNT(*) FROM memory_entries WHERE user_id = ?",
                (user_id,),
            ) as cursor:
                row = await cursor.fetchone()
        return row[0] if row else 0

    async def get_max_seq(self, session_id: str) -> int:
        """Highest turn seq stored for a session id, 0 if none."""
        async with self._connection("get_max_seq") as db:
            async with db.execute(
                "SELECT MAX(seq) FROM memory_entries WHERE session_id = ?",
                (session_id,),
            ) as cursor:
                row = await cursor.fetchone()
        return row[0] if row and row[0] is not None else 0

    async def delete_memory_entries(self, user_id: str) -> int:
        """Delete a user's whole partition.

        Returns:
            Number of rows deleted
        """
        async with self._connection("delete_memory_entries") as db:
            cursor = await db.execute(
                "DELETE FROM memory_entries WHERE user_id = ?", (user_id,)
            )
            await db.commit()
            deleted = cursor.rowcount

        logger.info(f"Deleted {deleted} memory entries for user {user_id}")
        return deleted

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    async def get_profile(self, user_id: str) -> UserProfile | None:
        async with self._connection("get_profile") as db:
            async with db.execute(
                "SELECT last_updated FROM user_profiles WHERE user_id = ?",
                (user_id,),
            ) as cursor:
                profile_row = await cursor.fetchone()

            if profile_row is None:
                return None

            async with db.execute(
                """
                SELECT id, attribute, statement, embedding, created_at, updated_at
                FROM profile_facts
                WHERE user_id = ?
                ORDER BY position ASC
                """,
                (user_id,),
            ) as cursor:
                fact_rows = await cursor.fetchall()

        facts = [
            ProfileFact(
                id=row[0],
                attribute=row[1],
                statement=row[2],
                embedding=deserialize_embedding(row[3]) if row[3] else None,
                created_at=_parse_time(row[4]),
                updated_at=_parse_time(row[5]),
            )
            for row in fact_rows
        ]
        return UserProfile(
            user_id=user_id,
            facts=facts,
            last_updated=_parse_time(profile_row[0]),
        )

    async def save_profile(self, profile: UserProfile) -> None:
        """Replace the stored facts for ``profile.user_id`` in one transaction."""
        async with self._connection("save_profile") as db:
            try:
                await db.execute(
                    """
                    INSERT INTO user_profiles (user_id, last_updated)
                    VALUES (?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                        last_updated = excluded.last_updated
                    """,
                    (profile.user_id, profile.last_updated.isoformat()),
                )
                await db.execute(
                    "DELETE FROM profile_facts WHERE user_id = ?", (profile.user_id,)
                )
                await db.executemany(
                    """
                    INSERT INTO profile_facts (
                        id, user_id, attribute, statement, embedding,
                        position, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            fact.id,
                            profile.user_id,
                            fact.attribute,
                            fact.statement,
                            serialize_embedding(fact.embedding) if fact.embedding else None,
                            position,
                            fact.created_at.isoformat(),
                            fact.updated_at.isoformat(),
                        )
                        for position, fact in enumerate(profile.facts)
                    ],
                )
                await db.commit()
            except aiosqlite.Error:
                await db.rollback()
                raise

        logger.debug(f"Saved profile for {profile.user_id} ({len(profile.facts)} facts)")

    async def delete_profile(self, user_id: str) -> bool:
        """Delete a user's profile and facts.

        Returns:
            True if a profile existed
        """
        async with self._connection("delete_profile") as db:
            await db.execute("DELETE FROM profile_facts WHERE user_id = ?", (user_id,))
            cursor = await db.execute(
                "DELETE FROM user_profiles WHERE user_id = ?", (user_id,)
            )
            await db.commit()
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def insert_session(self, session_id: str, user_id: str) -> str:
        async with self._connection("insert_session") as db:
            await db.execute(
                """
                INSERT INTO sessions (session_id, user_id, started_at)
                VALUES (?, ?, ?)
                ON CONFLICT(session_id) DO NOTHING
                """,
                (session_id, user_id, _now()),
            )
            await db.commit()
        logger.debug(f"Recorded session start {session_id} for user {user_id}")
        return session_id

    async def end_session(self, session_id: str, turn_count: int) -> None:
        async with self._connection("end_session") as db:
            await db.execute(
                """
                UPDATE sessions
                SET ended_at = ?, turn_count = ?
                WHERE session_id = ?
                """,
                (_now(), turn_count, session_id),
            )
            await db.commit()

    async def get_session(self, session_id: str) -> dict | None:
        async with self._connection("get_session") as db:
            async with db.execute(
                """
                SELECT session_id, user_id, started_at, ended_at, turn_count
                FROM sessions
                WHERE session_id = ?
                """,
                (session_id,),
            ) as cursor:
                row = await cursor.fetchone()

        if row is None:
            return None
        return {
            "session_id": row[0],
            "user_id": row[1],
            "started_at": row[2],
            "ended_at": row[3],
            "turn_count": row[4],
        }

    async def delete_sessions(self, user_id: str) -> int:
        async with self._connection("delete_sessions") as db:
            cursor = await db.execute(
                "DELETE FROM sessions WHERE user_id = ?", (user_id,)
            )
            await db.commit()
            return cursor.rowcount
