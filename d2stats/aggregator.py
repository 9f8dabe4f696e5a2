# d2stats/aggregator.py

from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from d2stats.enums import Mode, Platform, TimePeriod
from d2stats.store import ActivityStore

PERIOD_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


@dataclass
class CrucibleStats:
    """Summed Crucible stats over a set of activities."""

    activities: int = 0
    wins: int = 0
    kills: int = 0
    deaths: int = 0
    assists: int = 0
    opponents_defeated: int = 0
    score: int = 0
    time_played_seconds: int = 0
    precision_kills: int = 0
    weapon_kills_ability: int = 0
    weapon_kills_grenade: int = 0
    weapon_kills_melee: int = 0
    weapon_kills_super: int = 0

    def __add__(self, other: "CrucibleStats") -> "CrucibleStats":
        if not isinstance(other, CrucibleStats):
            return NotImplemented
        return CrucibleStats(**{f.name: getattr(self, f.name) + getattr(other, f.name) for f in fields(self)})

    @staticmethod
    def _safe_div(numerator: float, denominator: float) -> float:
        return numerator / denominator if denominator > 0 else float(numerator)

    @property
    def kills_deaths_ratio(self) -> float:
        return self._safe_div(self.kills, self.deaths)

    @property
    def kills_deaths_assists(self) -> float:
        return self._safe_div(self.kills + self.assists / 2, self.deaths)

    @property
    def efficiency(self) -> float:
        return self._safe_div(self.kills + self.assists, self.deaths)

    @property
    def win_rate(self) -> float:
        return self.wins / self.activities * 100 if self.activities else 0.0

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CrucibleStats":
        stats = cls(activities=1, wins=1 if row.get("standing") == 0 else 0)
        for f in fields(cls):
            if f.name in ("activities", "wins"):
                continue
            setattr(stats, f.name, int(row.get(f.name) or 0))
        return stats


def aggregate(rows: Iterable[Dict[str, Any]]) -> CrucibleStats:
    total = CrucibleStats()
    for row in rows:
        total = total + CrucibleStats.from_row(row)
    return total


def summarize(
    store: ActivityStore,
    member_id: str,
    character_id: Optional[str],
    platform: Platform,
    mode: Mode = Mode.ALL_PVP,
    period: TimePeriod = TimePeriod.ALLTIME,
    now: Optional[datetime] = None,
) -> CrucibleStats:
    """Sum stored stats for a character, or all of a member's characters, over a time period."""
    start = period.start_time(now)
    since = start.strftime(PERIOD_FORMAT) if start else None
    rows = store.get_character_activity_stats(member_id, character_id, platform, mode=mode, since=since)
    return aggregate(rows)
