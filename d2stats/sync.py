# d2stats/sync.py
"""
Queue driven activity sync.

A sync runs in three steps against one ActivityStore:

  1. drain    - fetch and store reports for ids already in activity_queue
                (work left over from an interrupted or partly failed run)
  2. discover - ask Bungie for activities newer than the character's
                high-water mark and queue them
  3. drain    - fetch and store what discovery just queued

The queue is the only record of outstanding work. An id leaves it only in
the same commit that stores its stats, so anything that fails to fetch or
persist stays queued and is picked up by the next run.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from d2stats.enums import Mode, Platform
from d2stats.settings import DEFAULT_DRAIN_SCOPE, DEFAULT_SYNC_MODE, DETAIL_BATCH_SIZE, DRAIN_SCOPES
from d2stats.store import ActivityStore, PersistenceError

logger = logging.getLogger(__name__)


class ActivityFetcher(Protocol):
    async def fetch_detail(self, activity_id: str) -> Optional[Dict[str, Any]]:
        ...

    async def fetch_since(
        self,
        member_id: str,
        character_id: str,
        platform: Platform,
        mode: Mode,
        since_id: Optional[int],
    ) -> Optional[List[Dict[str, Any]]]:
        ...


class OutcomeStatus(Enum):
    PERSISTED = "persisted"
    DEFERRED = "deferred"
    FAILED = "failed"


@dataclass
class ActivityOutcome:
    activity_id: str
    character_id: str
    status: OutcomeStatus
    reason: Optional[str] = None


@dataclass
class DrainReport:
    outcomes: List[ActivityOutcome] = field(default_factory=list)
    batch_sizes: List[int] = field(default_factory=list)

    def _ids_with(self, status: OutcomeStatus) -> List[str]:
        return [o.activity_id for o in self.outcomes if o.status is status]

    @property
    def persisted(self) -> List[str]:
        return self._ids_with(OutcomeStatus.PERSISTED)

    @property
    def deferred(self) -> List[str]:
        return self._ids_with(OutcomeStatus.DEFERRED)

    @property
    def failed(self) -> List[str]:
        return self._ids_with(OutcomeStatus.FAILED)

    @property
    def pending(self) -> int:
        return len(self.outcomes) - len(self.persisted)


@dataclass
class SyncReport:
    member_id: str
    character_id: str
    platform: Platform
    resumed: DrainReport
    discovered: int
    drained: DrainReport
    high_water_mark: Optional[int] = None

    @property
    def persisted_count(self) -> int:
        return len(self.resumed.persisted) + len(self.drained.persisted)

    @property
    def pending_count(self) -> int:
        return self.drained.pending


def chunked(items: List[Any], size: int) -> List[List[Any]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class SyncEngine:
    """Sync one character's activity history into an ActivityStore."""

    def __init__(
        self,
        store: ActivityStore,
        fetcher: ActivityFetcher,
        batch_size: int = DETAIL_BATCH_SIZE,
        mode: Mode = DEFAULT_SYNC_MODE,
        drain_scope: str = DEFAULT_DRAIN_SCOPE,
        enqueue_chunk_size: Optional[int] = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if drain_scope not in DRAIN_SCOPES:
            raise ValueError(f"drain_scope must be one of {DRAIN_SCOPES}")
        self.store = store
        self.fetcher = fetcher
        self.batch_size = batch_size
        self.mode = mode
        self.drain_scope = drain_scope
        self.enqueue_chunk_size = enqueue_chunk_size

    async def sync(self, member_id: str, character_id: str, platform: Platform) -> SyncReport:
        """Drain leftovers, discover new activities, then drain again."""
        logger.info("Syncing character %s (member %s, %s)", character_id, member_id, platform)
        resumed = await self.drain_queue(member_id, character_id, platform)
        discovered = await self.populate_queue(member_id, character_id, platform)
        drained = await self.drain_queue(member_id, character_id, platform)

        report = SyncReport(
            member_id=member_id,
            character_id=character_id,
            platform=platform,
            resumed=resumed,
            discovered=discovered,
            drained=drained,
            high_water_mark=self.store.get_max_activity_id(member_id, character_id, platform),
        )
        logger.info(
            "Sync complete: %s stored, %s still queued",
            report.persisted_count,
            report.pending_count,
        )
        return report

    async def populate_queue(self, member_id: str, character_id: str, platform: Platform) -> int:
        """Queue every activity newer than the character's high-water mark. Returns ids queued."""
        max_id = self.store.get_max_activity_id(member_id, character_id, platform)
        logger.debug("High-water mark for %s: %s", character_id, max_id)

        summaries = await self.fetcher.fetch_since(member_id, character_id, platform, self.mode, max_id)
        if not summaries:
            logger.info("No new activities found")
            return 0

        logger.info("Activities found: %s", len(summaries))
        # Bungie returns newest first; queue oldest first
        activity_ids = [s["activity_id"] for s in reversed(summaries)]

        member_rowid = self.store.insert_member(member_id, platform)
        character_rowid = self.store.insert_character(character_id, member_rowid)
        return self.store.enqueue_activities(
            character_rowid,
            activity_ids,
            chunk_size=self.enqueue_chunk_size,
        )

    def _pending_entries(self, member_id: str, character_id: str, platform: Platform) -> List[Dict[str, Any]]:
        if self.drain_scope == "global":
            return self.store.get_queued_activities()
        return self.store.get_queued_activities(member_id, character_id, platform)

    async def drain_queue(self, member_id: str, character_id: str, platform: Platform) -> DrainReport:
        """Fetch and store queued activities in concurrent batches."""
        entries = self._pending_entries(member_id, character_id, platform)
        report = DrainReport()
        if not entries:
            return report

        total = len(entries)
        done = 0
        for batch in chunked(entries, self.batch_size):
            report.batch_sizes.append(len(batch))
            results = await asyncio.gather(
                *(self.fetcher.fetch_detail(entry["activity_id"]) for entry in batch),
                return_exceptions=True,
            )
            for entry, result in zip(batch, results):
                report.outcomes.append(self._apply_result(entry, result))
            done += len(batch)
            logger.info("%s of %s", done, total)

        return report

    def _apply_result(self, entry: Dict[str, Any], result: Any) -> ActivityOutcome:
        activity_id = entry["activity_id"]
        owner_character = entry["character_id"]

        if isinstance(result, BaseException):
            if not isinstance(result, Exception):
                raise result
            logger.warning("Fetch failed for activity %s: %s", activity_id, result)
            return ActivityOutcome(activity_id, owner_character, OutcomeStatus.FAILED, f"fetch: {result}")

        if result is None:
            logger.debug("No data for activity %s; left in queue", activity_id)
            return ActivityOutcome(activity_id, owner_character, OutcomeStatus.DEFERRED, "no data")

        try:
            self.store.persist_activity_detail(
                result,
                entry["member_id"],
                owner_character,
                Platform.from_id(entry["platform_id"]),
            )
        except PersistenceError as e:
            logger.warning("Error inserting stats for activity %s: %s", activity_id, e)
            return ActivityOutcome(activity_id, owner_character, OutcomeStatus.FAILED, f"persist: {e}")

        return ActivityOutcome(activity_id, owner_character, OutcomeStatus.PERSISTED)
