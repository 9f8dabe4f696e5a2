# d2stats/store.py

from __future__ import annotations

import logging
import os
import sqlite3
import time
from typing import Any, Dict, Iterable, List, Optional, Set

from d2stats.enums import Mode, Platform
from d2stats.settings import resolve_db_path

logger = logging.getLogger(__name__)

# Column order for character_activity_stats metric values
STAT_COLUMNS = (
    "assists",
    "score",
    "kills",
    "deaths",
    "average_score_per_kill",
    "average_score_per_life",
    "completed",
    "opponents_defeated",
    "activity_duration_seconds",
    "standing",
    "team",
    "completion_reason",
    "start_seconds",
    "time_played_seconds",
    "player_count",
    "team_score",
    "precision_kills",
    "weapon_kills_ability",
    "weapon_kills_grenade",
    "weapon_kills_melee",
    "weapon_kills_super",
)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS member (
        id              INTEGER PRIMARY KEY AUTOINCREMENT,
        member_id       TEXT NOT NULL,
        platform_id     INTEGER NOT NULL,
        created_at      TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (member_id, platform_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS character (
        id              INTEGER PRIMARY KEY AUTOINCREMENT,
        character_id    TEXT NOT NULL,
        member          INTEGER NOT NULL,
        created_at      TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (character_id, member),
        FOREIGN KEY (member) REFERENCES member(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS activity (
        id                      INTEGER PRIMARY KEY AUTOINCREMENT,
        activity_id             TEXT UNIQUE NOT NULL,
        period                  TEXT NOT NULL,
        mode                    INTEGER NOT NULL,
        platform                INTEGER NOT NULL,
        director_activity_hash  INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS character_activity_stats (
        id                          INTEGER PRIMARY KEY AUTOINCREMENT,
        character                   INTEGER NOT NULL,
        activity                    INTEGER NOT NULL,

        -- Core stats
        assists                     INTEGER NOT NULL,
        score                       INTEGER NOT NULL,
        kills                       INTEGER NOT NULL,
        deaths                      INTEGER NOT NULL,
        average_score_per_kill      REAL NOT NULL,
        average_score_per_life      REAL NOT NULL,
        completed                   INTEGER NOT NULL,
        opponents_defeated          INTEGER NOT NULL,
        activity_duration_seconds   INTEGER NOT NULL,
        standing                    INTEGER NOT NULL,
        team                        INTEGER NOT NULL,
        completion_reason           INTEGER NOT NULL,
        start_seconds               INTEGER NOT NULL,
        time_played_seconds         INTEGER NOT NULL,
        player_count                INTEGER NOT NULL,
        team_score                  INTEGER NOT NULL,

        -- Extended stats
        precision_kills             INTEGER NOT NULL,
        weapon_kills_ability        INTEGER NOT NULL,
        weapon_kills_grenade        INTEGER NOT NULL,
        weapon_kills_melee          INTEGER NOT NULL,
        weapon_kills_super          INTEGER NOT NULL,

        created_at                  TIMESTAMP DEFAULT CURRENT_TIMESTAMP,

        UNIQUE (character, activity),
        FOREIGN KEY (character) REFERENCES character(id),
        FOREIGN KEY (activity) REFERENCES activity(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS activity_queue (
        id              INTEGER PRIMARY KEY AUTOINCREMENT,
        character       INTEGER NOT NULL,
        activity_id     TEXT NOT NULL,
        queued_at       TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (character, activity_id),
        FOREIGN KEY (character) REFERENCES character(id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_cas_character ON character_activity_stats(character)",
    "CREATE INDEX IF NOT EXISTS idx_activity_period ON activity(period)",
)


class StoreError(RuntimeError):
    """Raised when the activity store cannot complete an operation."""


class PersistenceError(StoreError):
    """A single fetched record could not be persisted consistently."""


class MissingCharacterError(PersistenceError):
    """Detail fetched for a character that has no row in the store."""


class CharacterNotInReportError(PersistenceError):
    """The fetched report has no entry for the requested character."""


class DuplicateStatError(PersistenceError):
    """Stats for this character and activity were already stored."""


def _platform_id(platform: Any) -> int:
    if isinstance(platform, Platform):
        return platform.to_id()
    return int(platform)


def _normalize_activity_id(activity_id: Any) -> str:
    text = "" if activity_id is None else str(activity_id).strip()
    if not text.isdigit():
        raise ValueError(f"Invalid activity id '{activity_id}'")
    return text


def find_character_entry(detail: Dict[str, Any], character_id: str) -> Optional[Dict[str, Any]]:
    """Return the report entry for one character, or None if it did not take part."""
    for entry in detail.get("entries") or []:
        if str(entry.get("character_id")) == str(character_id):
            return entry
    return None


class ActivityStore:
    """SQLite store for synced activities, per-character stats and the fetch queue."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = resolve_db_path(db_path)
        self.conn = None
        self.init_database()

    def init_database(self):
        """Open the connection and create tables if they don't exist."""
        try:
            db_dir = os.path.dirname(self.db_path)
            if db_dir:
                try:
                    os.makedirs(db_dir, exist_ok=True)
                except OSError as e:
                    raise StoreError(f"Failed to create database directory '{db_dir}': {e}") from e

            self.conn = sqlite3.connect(self.db_path, timeout=30.0)
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA busy_timeout = 30000")
            self.conn.execute("PRAGMA foreign_keys = ON")
            self._set_wal_mode_best_effort()

            cursor = self.conn.cursor()
            for statement in SCHEMA:
                cursor.execute(statement)
            self._commit_with_retry(context="init schema commit")
        except sqlite3.Error as e:
            raise StoreError(f"Failed to initialize database at '{self.db_path}': {e}") from e

    def _commit_with_retry(self, retries: int = 8, delay_seconds: float = 0.25, context: str = "commit") -> None:
        """
        Retry commit on transient SQLITE_BUSY/locked errors.
        """
        last_error = None
        for attempt in range(retries):
            try:
                self.conn.commit()
                return
            except sqlite3.OperationalError as e:
                last_error = e
                if "locked" not in str(e).lower() and "busy" not in str(e).lower():
                    raise
                if attempt == retries - 1:
                    break
                time.sleep(delay_seconds)
        raise StoreError(
            f"Failed to {context}: database remained locked after {retries} attempts ({last_error})"
        )

    def _set_wal_mode_best_effort(self, retries: int = 5, delay_seconds: float = 0.2) -> None:
        """Try to enable WAL without failing startup if the DB is temporarily locked."""
        for attempt in range(retries):
            try:
                self.conn.execute("PRAGMA journal_mode = WAL")
                return
            except sqlite3.OperationalError as e:
                msg = str(e).lower()
                if "locked" not in msg and "busy" not in msg:
                    raise
                if attempt == retries - 1:
                    logger.warning("Could not enable WAL mode (database locked); continuing. (%s)", e)
                    return
                time.sleep(delay_seconds)

    # --- Members and characters ---

    def insert_member(self, member_id: str, platform: Platform) -> int:
        """Add a member or return the existing row id."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "INSERT OR IGNORE INTO member (member_id, platform_id) VALUES (?, ?)",
                (str(member_id), _platform_id(platform)),
            )
            self._commit_with_retry(context="insert member commit")
            cursor.execute(
                "SELECT id FROM member WHERE member_id = ? AND platform_id = ?",
                (str(member_id), _platform_id(platform)),
            )
            return cursor.fetchone()["id"]
        except sqlite3.Error as e:
            self.conn.rollback()
            raise StoreError(f"Failed to add member '{member_id}': {e}") from e

    def insert_character(self, character_id: str, member_rowid: int) -> int:
        """Add a character for a member row or return the existing row id."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "INSERT OR IGNORE INTO character (character_id, member) VALUES (?, ?)",
                (str(character_id), member_rowid),
            )
            self._commit_with_retry(context="insert character commit")
            cursor.execute(
                "SELECT id FROM character WHERE character_id = ? AND member = ?",
                (str(character_id), member_rowid),
            )
            return cursor.fetchone()["id"]
        except sqlite3.Error as e:
            self.conn.rollback()
            raise StoreError(f"Failed to add character '{character_id}': {e}") from e

    def get_character_rowid(self, member_id: str, character_id: str, platform: Platform) -> Optional[int]:
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT character.id AS id
            FROM character
            JOIN member ON character.member = member.id
            WHERE character.character_id = ?
              AND member.member_id = ?
              AND member.platform_id = ?
            """,
            (str(character_id), str(member_id), _platform_id(platform)),
        )
        row = cursor.fetchone()
        return row["id"] if row else None

    # --- High-water mark ---

    def get_max_activity_id(self, member_id: str, character_id: str, platform: Platform) -> Optional[int]:
        """Return the largest persisted activity id for a character, or None if nothing is stored."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                SELECT MAX(CAST(activity.activity_id AS INTEGER)) AS max_activity_id
                FROM activity
                JOIN character_activity_stats cas ON cas.activity = activity.id
                JOIN character ON cas.character = character.id
                JOIN member ON character.member = member.id
                WHERE character.character_id = ?
                  AND member.member_id = ?
                  AND member.platform_id = ?
                """,
                (str(character_id), str(member_id), _platform_id(platform)),
            )
            row = cursor.fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to read max activity id for character '{character_id}': {e}") from e
        if row is None or row["max_activity_id"] is None:
            return None
        return int(row["max_activity_id"])

    def get_persisted_activity_ids(self, member_id: str, character_id: str, platform: Platform) -> Set[str]:
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT activity.activity_id AS activity_id
            FROM activity
            JOIN character_activity_stats cas ON cas.activity = activity.id
            JOIN character ON cas.character = character.id
            JOIN member ON character.member = member.id
            WHERE character.character_id = ?
              AND member.member_id = ?
              AND member.platform_id = ?
            """,
            (str(character_id), str(member_id), _platform_id(platform)),
        )
        return {row["activity_id"] for row in cursor.fetchall()}

    # --- Activity queue ---

    def enqueue_activities(
        self,
        character_rowid: int,
        activity_ids: Iterable[Any],
        chunk_size: Optional[int] = None,
    ) -> int:
        """
        Queue activity ids for a character row.

        With no chunk_size every id is inserted in one transaction: any failure
        rolls back the whole batch. With a chunk_size each chunk commits on its
        own, so chunks committed before a failure stay queued.

        Ids already queued, or already stored for this character, are skipped.
        Returns the number of newly queued ids.
        """
        ids = list(activity_ids)
        step = chunk_size if chunk_size and chunk_size > 0 else max(len(ids), 1)
        queued = 0
        cursor = self.conn.cursor()

        for start in range(0, len(ids), step):
            chunk = ids[start:start + step]
            chunk_queued = 0
            try:
                for raw_id in chunk:
                    activity_id = _normalize_activity_id(raw_id)
                    cursor.execute(
                        """
                        INSERT OR IGNORE INTO activity_queue (character, activity_id)
                        SELECT ?, ?
                        WHERE NOT EXISTS (
                            SELECT 1
                            FROM character_activity_stats cas
                            JOIN activity ON cas.activity = activity.id
                            WHERE cas.character = ? AND activity.activity_id = ?
                        )
                        """,
                        (character_rowid, activity_id, character_rowid, activity_id),
                    )
                    chunk_queued += max(cursor.rowcount, 0)
                self._commit_with_retry(context="enqueue commit")
            except (sqlite3.Error, ValueError, StoreError) as e:
                self.conn.rollback()
                raise StoreError(
                    f"Failed to queue activities for character row {character_rowid}; "
                    f"{queued} committed before failure: {e}"
                ) from e
            queued += chunk_queued
            logger.debug("Queued %s activities for character row %s", chunk_queued, character_rowid)

        return queued

    def get_queued_activities(
        self,
        member_id: Optional[str] = None,
        character_id: Optional[str] = None,
        platform: Optional[Platform] = None,
    ) -> List[Dict[str, Any]]:
        """
        Return pending queue entries in insertion order, each with its owner.

        Pass member_id, character_id and platform to scope the read to one
        character; pass none of them to read the whole queue.
        """
        query = """
            SELECT q.activity_id AS activity_id,
                   character.character_id AS character_id,
                   member.member_id AS member_id,
                   member.platform_id AS platform_id
            FROM activity_queue q
            JOIN character ON q.character = character.id
            JOIN member ON character.member = member.id
        """
        params: List[Any] = []
        if character_id is not None:
            if member_id is None or platform is None:
                raise ValueError("member_id and platform are required when scoping by character")
            query += " WHERE character.character_id = ? AND member.member_id = ? AND member.platform_id = ?"
            params.extend([str(character_id), str(member_id), _platform_id(platform)])
        query += " ORDER BY q.id"
        try:
            cursor = self.conn.cursor()
            cursor.execute(query, tuple(params))
            return [dict(row) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            raise StoreError(f"Failed to read activity queue: {e}") from e

    def queue_size(self) -> int:
        cursor = self.conn.cursor()
        cursor.execute("SELECT COUNT(*) FROM activity_queue")
        return cursor.fetchone()[0]

    # --- Detail persistence ---

    def persist_activity_detail(
        self,
        detail: Dict[str, Any],
        member_id: str,
        character_id: str,
        platform: Platform,
    ) -> int:
        """
        Store one post game carnage report for a character and clear its queue entry.

        The activity row, the stats row and the queue delete commit together.
        Raises a PersistenceError subclass for record-level problems (unknown
        character, character missing from the report, stats already stored);
        the unit of work is rolled back in every failure case.

        Returns the stats row id.
        """
        try:
            activity_id = _normalize_activity_id(detail.get("activity_id"))
        except ValueError as e:
            raise PersistenceError(str(e)) from e

        cursor = self.conn.cursor()
        try:
            cursor.execute(
                """
                INSERT OR IGNORE INTO activity (activity_id, period, mode, platform, director_activity_hash)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    activity_id,
                    detail.get("period"),
                    detail.get("mode"),
                    detail.get("platform"),
                    detail.get("director_activity_hash"),
                ),
            )
            cursor.execute("SELECT id FROM activity WHERE activity_id = ?", (activity_id,))
            row = cursor.fetchone()
            if row is None:
                raise PersistenceError(f"Activity {activity_id} could not be stored (incomplete report)")
            activity_rowid = row["id"]

            character_rowid = self.get_character_rowid(member_id, character_id, platform)
            if character_rowid is None:
                raise MissingCharacterError(
                    f"Character '{character_id}' for member '{member_id}' is not in the store"
                )

            entry = find_character_entry(detail, character_id)
            if entry is None:
                raise CharacterNotInReportError(
                    f"Character '{character_id}' not found in report for activity {activity_id}"
                )

            columns = ", ".join(STAT_COLUMNS)
            placeholders = ", ".join("?" for _ in range(len(STAT_COLUMNS) + 2))
            try:
                cursor.execute(
                    f"INSERT INTO character_activity_stats (character, activity, {columns}) VALUES ({placeholders})",
                    (character_rowid, activity_rowid, *[entry.get(col) for col in STAT_COLUMNS]),
                )
            except sqlite3.IntegrityError as e:
                if "unique" in str(e).lower():
                    raise DuplicateStatError(
                        f"Stats for character '{character_id}' in activity {activity_id} already stored"
                    ) from e
                raise PersistenceError(f"Invalid stats for activity {activity_id}: {e}") from e
            stat_rowid = cursor.lastrowid

            cursor.execute(
                "DELETE FROM activity_queue WHERE character = ? AND activity_id = ?",
                (character_rowid, activity_id),
            )
            self._commit_with_retry(context="persist activity commit")
            return stat_rowid
        except StoreError:
            self.conn.rollback()
            raise
        except sqlite3.Error as e:
            self.conn.rollback()
            raise StoreError(f"Failed to persist activity {activity_id}: {e}") from e

    # --- Reads for aggregation ---

    def get_character_activity_stats(
        self,
        member_id: str,
        character_id: Optional[str],
        platform: Platform,
        mode: Optional[Mode] = None,
        since: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Fetch stored stats rows joined with their activity.

        character_id=None returns rows for every character of the member.
        """
        query = """
            SELECT cas.*, activity.activity_id AS activity_id, activity.period AS period,
                   activity.mode AS mode, activity.director_activity_hash AS director_activity_hash
            FROM character_activity_stats cas
            JOIN activity ON cas.activity = activity.id
            JOIN character ON cas.character = character.id
            JOIN member ON character.member = member.id
            WHERE member.member_id = ?
              AND member.platform_id = ?
        """
        params: List[Any] = [str(member_id), _platform_id(platform)]
        if character_id is not None:
            query += " AND character.character_id = ?"
            params.append(str(character_id))
        if mode is not None and mode is not Mode.ALL_PVP:
            query += " AND activity.mode = ?"
            params.append(mode.to_id())
        if since:
            query += " AND activity.period >= ?"
            params.append(since)
        query += " ORDER BY activity.period, CAST(activity.activity_id AS INTEGER)"
        cursor = self.conn.cursor()
        cursor.execute(query, tuple(params))
        return [dict(row) for row in cursor.fetchall()]

    def close(self):
        """Close database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
