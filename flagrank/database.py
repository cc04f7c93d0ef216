"""
Database operations for the competition store.
"""

import asyncio
import functools
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import aiosqlite

from .errors import DuplicateEvent, ReferenceMissing, StoreError, StoreTimeout
from .models import (
    Announcement,
    EventConfig,
    HintUsed,
    LeaderboardEntry,
    Level,
    SubmissionRecorded,
    Team,
    now_ms,
)
from .repository import AggregateDelta, CompetitionRepository

logger = logging.getLogger(__name__)

# Tables a reset pass may purge
_PURGEABLE = ("submissions", "hint_usage", "solves", "leaderboard")


def bounded(method):
    """Run a store coroutine under the manager's timeout and map driver errors."""

    @functools.wraps(method)
    async def wrapper(self, *args, **kwargs):
        try:
            return await asyncio.wait_for(
                method(self, *args, **kwargs), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            raise StoreTimeout(
                f"{method.__name__} timed out after {self.timeout}s"
            ) from e
        except aiosqlite.Error as e:
            raise StoreError(f"{method.__name__} failed: {e}") from e

    return wrapper


class DatabaseManager(CompetitionRepository):
    """SQLite-backed store: teams, levels, the event log and derived tables."""

    def __init__(
        self,
        db_path: str,
        config: Any = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.db_path = db_path
        self.config = config

        if timeout is None and config is not None:
            timeout = config.get("store", "timeout_seconds")
        self.timeout = timeout or 5.0

        # Levels rarely change during an event; short TTL cache
        self._cache: Dict[str, Tuple[Any, float]] = {}
        self._cache_ttl = 30

    def _get_cache_key(self, *args: Any) -> str:
        """
        Generate a cache key from arguments.

        @param args: Variable arguments to create cache key from
        @return: String cache key generated from arguments
        """
        return ":".join(str(arg) for arg in args)

    def _get_from_cache(
        self,
        cache_key: str,
    ) -> Optional[Any]:
        """
        Get value from cache if valid.

        @param cache_key: String cache key to lookup
        @return: Cached data if valid, None if expired or not found
        """
        if cache_key in self._cache:
            data, timestamp = self._cache[cache_key]

            if time.time() - timestamp < self._cache_ttl:
                return data
            else:
                del self._cache[cache_key]
        return None

    def _set_cache(
        self,
        cache_key: str,
        data: Any,
    ) -> None:
        self._cache[cache_key] = (data, time.time())

    def _invalidate_cache(
        self,
        pattern: Optional[str] = None,
    ) -> None:
        """
        Invalidate cache entries matching pattern or all if None.

        @param pattern: Optional string pattern to match cache keys against
        """
        if pattern is None:
            self._cache.clear()
        else:
            keys_to_remove = [k for k in self._cache if pattern in k]
            for key in keys_to_remove:
                del self._cache[key]

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            yield db

    async def init_db(self) -> None:
        """
        Initialize the SQLite database with schema and indexes.

        Creates tables, indexes, and performs schema migrations if needed.
        """
        async with self._connect() as db:
            # WAL lets readers run while an event is being applied
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute("PRAGMA synchronous=NORMAL")

            await db.executescript("""
                CREATE TABLE IF NOT EXISTS teams (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL DEFAULT '',
                    group_id TEXT,
                    score INTEGER NOT NULL DEFAULT 0,
                    levels_completed INTEGER NOT NULL DEFAULT 0,
                    time_penalty INTEGER NOT NULL DEFAULT 0,
                    hints_used INTEGER NOT NULL DEFAULT 0,
                    last_submission_at INTEGER,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS levels (
                    id TEXT PRIMARY KEY,
                    group_id TEXT,
                    number INTEGER NOT NULL DEFAULT 0,
                    title TEXT NOT NULL DEFAULT '',
                    base_points INTEGER NOT NULL DEFAULT 0,
                    difficulty TEXT NOT NULL DEFAULT 'easy',
                    hint_type TEXT NOT NULL DEFAULT 'points',
                    hints_available INTEGER NOT NULL DEFAULT 0,
                    point_deduction INTEGER NOT NULL DEFAULT 0,
                    time_penalty_minutes INTEGER NOT NULL DEFAULT 0,
                    is_active INTEGER NOT NULL DEFAULT 1
                );

                CREATE TABLE IF NOT EXISTS submissions (
                    id TEXT PRIMARY KEY,
                    team_id TEXT NOT NULL,
                    level_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    score_awarded INTEGER NOT NULL DEFAULT 0,
                    time_penalty INTEGER NOT NULL DEFAULT 0,
                    time_taken REAL NOT NULL DEFAULT 0,
                    hints_used INTEGER NOT NULL DEFAULT 0,
                    submitted_at INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS hint_usage (
                    id TEXT PRIMARY KEY,
                    team_id TEXT NOT NULL,
                    level_id TEXT NOT NULL,
                    hint_type TEXT NOT NULL,
                    penalty INTEGER NOT NULL DEFAULT 0,
                    hint_number INTEGER NOT NULL DEFAULT 1,
                    used_at INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS processed_events (
                    event_id TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    processed_at INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS solves (
                    team_id TEXT NOT NULL,
                    level_id TEXT NOT NULL,
                    event_id TEXT NOT NULL,
                    solved_at INTEGER NOT NULL,
                    PRIMARY KEY (team_id, level_id)
                );

                CREATE TABLE IF NOT EXISTS leaderboard (
                    id TEXT PRIMARY KEY,
                    team_name TEXT NOT NULL DEFAULT '',
                    group_id TEXT,
                    score INTEGER NOT NULL DEFAULT 0,
                    levels_completed INTEGER NOT NULL DEFAULT 0,
                    total_time_penalty INTEGER NOT NULL DEFAULT 0,
                    last_submission_at INTEGER,
                    updated_at INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS event_config (
                    id TEXT PRIMARY KEY,
                    payload TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS announcements (
                    id TEXT PRIMARY KEY,
                    message TEXT NOT NULL,
                    priority TEXT NOT NULL DEFAULT 'normal',
                    created_at INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS maintenance (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at INTEGER NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_submissions_team_level
                ON submissions(team_id, level_id);
                CREATE INDEX IF NOT EXISTS idx_submissions_submitted_at
                ON submissions(submitted_at DESC);
                CREATE INDEX IF NOT EXISTS idx_submissions_status
                ON submissions(status);
                CREATE INDEX IF NOT EXISTS idx_hint_usage_team_level
                ON hint_usage(team_id, level_id);
                CREATE INDEX IF NOT EXISTS idx_teams_group ON teams(group_id);
                CREATE INDEX IF NOT EXISTS idx_levels_group_number
                ON levels(group_id, number);
                CREATE INDEX IF NOT EXISTS idx_leaderboard_group
                ON leaderboard(group_id);
            """)
            await db.commit()

            await self._migrate_schema(db)

    async def _migrate_schema(
        self,
        db: aiosqlite.Connection,
    ) -> None:
        """
        Handle database schema migrations.

        Databases created before hint counting and submission timestamps were
        tracked on the team row get the missing columns.

        @param db: Active database connection
        """
        cursor = await db.execute("PRAGMA table_info(teams)")
        columns = await cursor.fetchall()
        column_names = [column[1] for column in columns]

        migrations = {
            "hints_used": "ALTER TABLE teams ADD COLUMN hints_used INTEGER NOT NULL DEFAULT 0",
            "last_submission_at": "ALTER TABLE teams ADD COLUMN last_submission_at INTEGER",
        }
        for column, statement in migrations.items():
            if column not in column_names:
                logger.info("Migrating teams table: adding %s column", column)
                await db.execute(statement)
        await db.commit()

    # teams and levels

    @bounded
    async def save_team(self, team: Team) -> None:
        """
        Insert or replace a team row.

        @param team: Team to store
        """
        async with self._connect() as db:
            await db.execute(
                "INSERT OR REPLACE INTO teams (id, name, group_id, score, levels_completed, "
                "time_penalty, hints_used, last_submission_at, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    team.id,
                    team.name,
                    team.group_id,
                    team.score,
                    team.levels_completed,
                    team.time_penalty,
                    team.hints_used,
                    team.last_submission_at,
                    team.created_at,
                    team.updated_at,
                ),
            )
            await db.commit()

    @bounded
    async def get_team(self, team_id: str) -> Optional[Team]:
        async with self._connect() as db:
            cursor = await db.execute("SELECT * FROM teams WHERE id = ?", (team_id,))
            row = await cursor.fetchone()
            return Team(**dict(row)) if row else None

    @bounded
    async def list_teams(self, group_id: Optional[str] = None) -> List[Team]:
        """
        List teams in creation order.

        @param group_id: Restrict to one group when given
        @return: List of Team models
        """
        query = "SELECT * FROM teams"
        params: Tuple[Any, ...] = ()
        if group_id is not None:
            query += " WHERE group_id = ?"
            params = (group_id,)
        query += " ORDER BY created_at ASC, id ASC"

        async with self._connect() as db:
            cursor = await db.execute(query, params)
            return [Team(**dict(row)) for row in await cursor.fetchall()]

    @bounded
    async def save_level(self, level: Level) -> None:
        async with self._connect() as db:
            await db.execute(
                "INSERT OR REPLACE INTO levels (id, group_id, number, title, base_points, "
                "difficulty, hint_type, hints_available, point_deduction, "
                "time_penalty_minutes, is_active) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    level.id,
                    level.group_id,
                    level.number,
                    level.title,
                    level.base_points,
                    level.difficulty,
                    level.hint_type,
                    level.hints_available,
                    level.point_deduction,
                    level.time_penalty_minutes,
                    int(level.is_active),
                ),
            )
            await db.commit()

        self._invalidate_cache("levels")

    @bounded
    async def get_level(self, level_id: str) -> Optional[Level]:
        async with self._connect() as db:
            cursor = await db.execute("SELECT * FROM levels WHERE id = ?", (level_id,))
            row = await cursor.fetchone()
            return Level(**dict(row)) if row else None

    @bounded
    async def list_levels(self, group_id: Optional[str] = None) -> List[Level]:
        """
        List levels ordered by number.

        Uses the TTL cache; any level write invalidates it.

        @param group_id: Restrict to one group when given
        @return: List of Level models
        """
        cache_key = self._get_cache_key("levels", group_id)
        cached = self._get_from_cache(cache_key)
        if cached is not None:
            return list(cached)

        query = "SELECT * FROM levels"
        params: Tuple[Any, ...] = ()
        if group_id is not None:
            query += " WHERE group_id = ?"
            params = (group_id,)
        query += " ORDER BY number ASC, id ASC"

        async with self._connect() as db:
            cursor = await db.execute(query, params)
            levels = [Level(**dict(row)) for row in await cursor.fetchall()]

        self._set_cache(cache_key, levels)
        return list(levels)

    # event log

    @bounded
    async def append_submission(self, event: SubmissionRecorded) -> bool:
        """
        Append a submission to the event log.

        @param event: Submission event
        @return: True if appended, False if an entry with this id already exists
        """
        async with self._connect() as db:
            cursor = await db.execute(
                "INSERT OR IGNORE INTO submissions (id, team_id, level_id, status, "
                "score_awarded, time_penalty, time_taken, hints_used, submitted_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    event.id,
                    event.team_id,
                    event.level_id,
                    event.status,
                    event.score_awarded,
                    event.time_penalty,
                    event.time_taken,
                    event.hints_used,
                    event.submitted_at,
                ),
            )
            await db.commit()
            return cursor.rowcount > 0

    @bounded
    async def append_hint(self, event: HintUsed) -> bool:
        async with self._connect() as db:
            cursor = await db.execute(
                "INSERT OR IGNORE INTO hint_usage (id, team_id, level_id, hint_type, "
                "penalty, hint_number, used_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    event.id,
                    event.team_id,
                    event.level_id,
                    event.hint_type,
                    event.penalty,
                    event.hint_number,
                    event.used_at,
                ),
            )
            await db.commit()
            return cursor.rowcount > 0

    @bounded
    async def list_submissions(
        self,
        team_id: Optional[str] = None,
        level_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[SubmissionRecorded]:
        """
        Query the submission log, oldest first.

        @param team_id: Optional team filter
        @param level_id: Optional level filter
        @param status: Optional status filter ("correct" or "incorrect")
        @return: List of SubmissionRecorded events
        """
        clauses = []
        params: List[Any] = []
        for column, value in (
            ("team_id", team_id),
            ("level_id", level_id),
            ("status", status),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)

        query = "SELECT * FROM submissions"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY submitted_at ASC, id ASC"

        async with self._connect() as db:
            cursor = await db.execute(query, params)
            return [SubmissionRecorded(**dict(row)) for row in await cursor.fetchall()]

    @bounded
    async def recent_submissions(
        self,
        limit: int,
        offset: int = 0,
    ) -> List[SubmissionRecorded]:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT * FROM submissions ORDER BY submitted_at DESC, id DESC "
                "LIMIT ? OFFSET ?",
                (limit, offset),
            )
            return [SubmissionRecorded(**dict(row)) for row in await cursor.fetchall()]

    @bounded
    async def count_submissions(self) -> int:
        async with self._connect() as db:
            cursor = await db.execute("SELECT COUNT(*) FROM submissions")
            row = await cursor.fetchone()
            return row[0]

    @bounded
    async def list_hints(
        self,
        team_id: Optional[str] = None,
        level_id: Optional[str] = None,
    ) -> List[HintUsed]:
        clauses = []
        params: List[Any] = []
        if team_id is not None:
            clauses.append("team_id = ?")
            params.append(team_id)
        if level_id is not None:
            clauses.append("level_id = ?")
            params.append(level_id)

        query = "SELECT * FROM hint_usage"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY used_at ASC, id ASC"

        async with self._connect() as db:
            cursor = await db.execute(query, params)
            return [HintUsed(**dict(row)) for row in await cursor.fetchall()]

    # team aggregate

    @bounded
    async def is_processed(self, event_id: str) -> bool:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT 1 FROM processed_events WHERE event_id = ?", (event_id,)
            )
            return await cursor.fetchone() is not None

    @bounded
    async def apply_team_delta(
        self,
        event_id: str,
        kind: str,
        team_id: str,
        delta: AggregateDelta,
    ) -> bool:
        """
        Mark an event processed and apply its aggregate change atomically.

        The processed-event ledger row and the team update commit together,
        so a redelivered event id can never be counted twice.

        @param event_id: Idempotency key of the event
        @param kind: Event kind, kept for auditing
        @param team_id: Team whose aggregate changes
        @param delta: Additive change to apply
        @return: True if applied, False if the level was already credited
        """
        now = now_ms()

        async with self._connect() as db:
            cursor = await db.execute(
                "INSERT OR IGNORE INTO processed_events (event_id, kind, processed_at) "
                "VALUES (?, ?, ?)",
                (event_id, kind, now),
            )
            if cursor.rowcount == 0:
                await db.rollback()
                raise DuplicateEvent(event_id)

            if delta.solved_level_id is not None:
                cursor = await db.execute(
                    "INSERT OR IGNORE INTO solves (team_id, level_id, event_id, solved_at) "
                    "VALUES (?, ?, ?, ?)",
                    (team_id, delta.solved_level_id, event_id, now),
                )
                if cursor.rowcount == 0:
                    # Processed, but the level was credited by an earlier event
                    await db.commit()
                    return False

            if not delta.is_empty():
                cursor = await db.execute(
                    """
                    UPDATE teams SET
                        score = score + ?,
                        levels_completed = levels_completed + ?,
                        time_penalty = time_penalty + ?,
                        hints_used = hints_used + ?,
                        last_submission_at = CASE
                            WHEN ? IS NULL THEN last_submission_at
                            WHEN last_submission_at IS NULL THEN ?
                            ELSE MAX(last_submission_at, ?)
                        END,
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        delta.score,
                        delta.levels_completed,
                        delta.time_penalty,
                        delta.hints_used,
                        delta.last_submission_at,
                        delta.last_submission_at,
                        delta.last_submission_at,
                        now,
                        team_id,
                    ),
                )
                if cursor.rowcount == 0:
                    await db.rollback()
                    raise ReferenceMissing("team", team_id)

            await db.commit()
            return True

    # leaderboard projection

    @staticmethod
    def _entry_params(entry: LeaderboardEntry, now: int) -> Tuple[Any, ...]:
        return (
            entry.id,
            entry.team_name,
            entry.group_id,
            entry.score,
            entry.levels_completed,
            entry.total_time_penalty,
            entry.last_submission_at,
            now,
        )

    _UPSERT_ENTRY = (
        "INSERT INTO leaderboard (id, team_name, group_id, score, levels_completed, "
        "total_time_penalty, last_submission_at, updated_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
        "ON CONFLICT(id) DO UPDATE SET team_name = excluded.team_name, "
        "group_id = excluded.group_id, score = excluded.score, "
        "levels_completed = excluded.levels_completed, "
        "total_time_penalty = excluded.total_time_penalty, "
        "last_submission_at = excluded.last_submission_at, "
        "updated_at = excluded.updated_at"
    )

    @bounded
    async def upsert_leaderboard_entry(self, entry: LeaderboardEntry) -> None:
        async with self._connect() as db:
            await db.execute(self._UPSERT_ENTRY, self._entry_params(entry, now_ms()))
            await db.commit()

    @bounded
    async def upsert_leaderboard_entries(self, entries: List[LeaderboardEntry]) -> None:
        now = now_ms()
        async with self._connect() as db:
            await db.executemany(
                self._UPSERT_ENTRY, [self._entry_params(e, now) for e in entries]
            )
            await db.commit()

    @bounded
    async def list_leaderboard_entries(
        self,
        group_id: Optional[str] = None,
    ) -> List[LeaderboardEntry]:
        """
        Read the stored projection. Rows carry no rank; ranks are computed on read.

        @param group_id: Restrict to one group when given
        @return: Unranked leaderboard entries
        """
        query = (
            "SELECT id, team_name, group_id, score, levels_completed, "
            "total_time_penalty, last_submission_at FROM leaderboard"
        )
        params: Tuple[Any, ...] = ()
        if group_id is not None:
            query += " WHERE group_id = ?"
            params = (group_id,)

        async with self._connect() as db:
            cursor = await db.execute(query, params)
            return [LeaderboardEntry(**dict(row)) for row in await cursor.fetchall()]

    # reset passes

    @bounded
    async def _delete_batch(self, table: str, batch_size: int) -> int:
        if table not in _PURGEABLE:
            raise ValueError(f"refusing to purge table {table!r}")

        async with self._connect() as db:
            cursor = await db.execute(
                f"DELETE FROM {table} WHERE rowid IN "
                f"(SELECT rowid FROM {table} LIMIT ?)",
                (batch_size,),
            )
            await db.commit()
            return cursor.rowcount

    async def _purge(self, table: str, batch_size: int) -> int:
        """
        Delete every row of a table in committed batches.

        Each batch runs under its own timeout; re-running after a failure
        simply continues with whatever rows are left.

        @param table: One of the purgeable tables
        @param batch_size: Rows per batch
        @return: Total rows deleted
        """
        total = 0
        while True:
            deleted = await self._delete_batch(table, batch_size)
            total += deleted
            if deleted < batch_size:
                return total

    async def delete_submissions(self, batch_size: int) -> int:
        return await self._purge("submissions", batch_size)

    async def delete_hints(self, batch_size: int) -> int:
        return await self._purge("hint_usage", batch_size)

    async def delete_solves(self, batch_size: int) -> int:
        return await self._purge("solves", batch_size)

    async def delete_leaderboard_entries(self, batch_size: int) -> int:
        return await self._purge("leaderboard", batch_size)

    @bounded
    async def _zero_team_batch(self, batch_size: int) -> int:
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE teams SET score = 0, levels_completed = 0, time_penalty = 0,
                    hints_used = 0, last_submission_at = NULL, updated_at = ?
                WHERE id IN (
                    SELECT id FROM teams
                    WHERE score != 0 OR levels_completed != 0 OR time_penalty != 0
                        OR hints_used != 0 OR last_submission_at IS NOT NULL
                    LIMIT ?
                )
                """,
                (now_ms(), batch_size),
            )
            await db.commit()
            return cursor.rowcount

    async def zero_team_aggregates(self, batch_size: int) -> int:
        total = 0
        while True:
            updated = await self._zero_team_batch(batch_size)
            total += updated
            if updated < batch_size:
                return total

    @bounded
    async def set_reset_marker(self, stage: str) -> None:
        async with self._connect() as db:
            await db.execute(
                "INSERT OR REPLACE INTO maintenance (key, value, updated_at) "
                "VALUES ('reset', ?, ?)",
                (stage, now_ms()),
            )
            await db.commit()

    @bounded
    async def get_reset_marker(self) -> Optional[str]:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT value FROM maintenance WHERE key = 'reset'"
            )
            row = await cursor.fetchone()
            return row[0] if row else None

    @bounded
    async def clear_reset_marker(self) -> None:
        async with self._connect() as db:
            await db.execute("DELETE FROM maintenance WHERE key = 'reset'")
            await db.commit()

    # event configuration and announcements

    @bounded
    async def save_event_config(self, config: EventConfig) -> None:
        async with self._connect() as db:
            await db.execute(
                "INSERT OR REPLACE INTO event_config (id, payload) VALUES (?, ?)",
                (config.id, json.dumps(config.model_dump(mode="json"))),
            )
            await db.commit()

    @bounded
    async def get_event_config(self) -> Optional[EventConfig]:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT payload FROM event_config WHERE id = 'event'"
            )
            row = await cursor.fetchone()
            return EventConfig(**json.loads(row[0])) if row else None

    @bounded
    async def save_announcement(self, announcement: Announcement) -> None:
        async with self._connect() as db:
            await db.execute(
                "INSERT OR REPLACE INTO announcements (id, message, priority, created_at) "
                "VALUES (?, ?, ?, ?)",
                (
                    announcement.id,
                    announcement.message,
                    announcement.priority,
                    announcement.created_at,
                ),
            )
            await db.commit()

    @bounded
    async def list_announcements(self, limit: int = 20) -> List[Announcement]:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT * FROM announcements ORDER BY created_at DESC, id DESC LIMIT ?",
                (limit,),
            )
            return [Announcement(**dict(row)) for row in await cursor.fetchall()]
