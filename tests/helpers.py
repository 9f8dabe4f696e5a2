# tests/helpers.py

import asyncio
import os
import tempfile
from typing import Dict, Iterable, List, Optional

from d2stats.enums import Platform
from d2stats.store import ActivityStore

MEMBER_ID = "4611686018429783292"
CHARACTER_ID = "2305843009264966985"
OTHER_CHARACTER_ID = "2305843009264966986"
PLATFORM = Platform.XBOX


def create_temp_store():
    """Create a fresh store in a temp file. Returns (store, path)."""
    fd, db_path = tempfile.mkstemp(suffix='.db')
    os.close(fd)
    return ActivityStore(db_path), db_path


def remove_store(store: ActivityStore, db_path: str) -> None:
    store.close()
    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(db_path + suffix):
            os.remove(db_path + suffix)


def make_entry(character_id: str, kills: int = 10, deaths: int = 5, assists: int = 3,
               standing: int = 0, member_id: str = MEMBER_ID) -> Dict:
    """Parsed carnage report entry for one character."""
    return {
        "character_id": character_id,
        "member_id": member_id,
        "platform": PLATFORM.to_id(),
        "assists": assists,
        "score": kills * 100,
        "kills": kills,
        "deaths": deaths,
        "average_score_per_kill": 100.0,
        "average_score_per_life": round(kills * 100 / max(deaths, 1), 2),
        "completed": 1,
        "opponents_defeated": kills + assists,
        "activity_duration_seconds": 600,
        "standing": standing,
        "team": 17,
        "completion_reason": 0,
        "start_seconds": 0,
        "time_played_seconds": 590,
        "player_count": 12,
        "team_score": 150,
        "precision_kills": kills // 2,
        "weapon_kills_ability": 1,
        "weapon_kills_grenade": 1,
        "weapon_kills_melee": 0,
        "weapon_kills_super": 2,
    }


def make_detail(activity_id, character_ids: Iterable[str] = (CHARACTER_ID,),
                period: str = "2020-10-05T20:48:21Z", mode: int = 10, **entry_kwargs) -> Dict:
    """Parsed post game carnage report as returned by the fetch capability."""
    return {
        "activity_id": str(activity_id),
        "period": period,
        "mode": mode,
        "platform": PLATFORM.to_id(),
        "director_activity_hash": 2259621230,
        "entries": [make_entry(cid, **entry_kwargs) for cid in character_ids],
    }


def make_summary(activity_id) -> Dict:
    return {
        "activity_id": str(activity_id),
        "period": "2020-10-05T20:48:21Z",
        "mode": 10,
        "platform": PLATFORM.to_id(),
        "director_activity_hash": 2259621230,
    }


class FakeFetcher:
    """In-memory fetch capability.

    details: activity id -> detail dict returned by fetch_detail
    failing: ids whose fetch_detail raises
    summaries: newest-first summaries returned by fetch_since (filtered by since_id)
    """

    def __init__(self, details: Optional[Dict[str, Dict]] = None, failing: Iterable[str] = (),
                 summaries: Optional[List[Dict]] = None):
        self.details = dict(details or {})
        self.failing = set(failing)
        self.summaries = list(summaries or [])
        self.detail_calls: List[str] = []
        self.since_calls: List[Optional[int]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def fetch_detail(self, activity_id):
        self.detail_calls.append(activity_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if activity_id in self.failing:
                raise ConnectionError(f"network down for {activity_id}")
            return self.details.get(activity_id)
        finally:
            self.in_flight -= 1

    async def fetch_since(self, member_id, character_id, platform, mode, since_id):
        self.since_calls.append(since_id)
        newer = [s for s in self.summaries if since_id is None or int(s["activity_id"]) > since_id]
        return newer or None
