# d2stats/enums.py

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

# Weekly reset: Tuesday 17:00 UTC
RESET_WEEKDAY = 1
RESET_HOUR = 17


class Platform(Enum):
    """Bungie membership types."""

    XBOX = 1
    PLAYSTATION = 2
    STEAM = 3
    BLIZZARD = 4
    STADIA = 5

    @classmethod
    def from_name(cls, name: str) -> "Platform":
        key = (name or "").strip().lower()
        aliases = {"xb": "xbox", "ps": "playstation", "psn": "playstation", "pc": "steam"}
        key = aliases.get(key, key)
        for member in cls:
            if member.name.lower() == key:
                return member
        raise ValueError(f"Unknown platform '{name}'")

    @classmethod
    def from_id(cls, platform_id: int) -> "Platform":
        try:
            return cls(int(platform_id))
        except (TypeError, ValueError):
            raise ValueError(f"Unknown platform id '{platform_id}'")

    def to_id(self) -> int:
        return self.value

    def __str__(self) -> str:
        return self.name.lower()


class Mode(Enum):
    """Crucible activity modes and their Bungie mode ids."""

    ALL_PVP = 5
    CONTROL = 10
    CLASH = 12
    IRON_BANNER = 19
    MAYHEM = 25
    SUPREMACY = 31
    PRIVATE = 32
    SURVIVAL = 37
    COUNTDOWN = 38
    TRIALS_OF_NINE = 39
    RUMBLE = 48
    DOUBLES = 50
    SHOWDOWN = 59
    LOCKDOWN = 60
    SCORCHED = 61
    BREAKTHROUGH = 65
    SALVAGE = 67
    COMP = 69
    QUICKPLAY = 70
    CLASH_QUICKPLAY = 71
    CLASH_COMPETITIVE = 72
    CONTROL_QUICKPLAY = 73
    CONTROL_COMPETITIVE = 74
    ELIMINATION = 80
    MOMENTUM = 81
    TRIALS_OF_OSIRIS = 84

    @classmethod
    def from_name(cls, name: str) -> "Mode":
        key = (name or "").strip().lower().replace("-", "_").replace(" ", "_")
        aliases = {"all": "all_pvp", "allpvp": "all_pvp", "ironbanner": "iron_banner", "trials": "trials_of_osiris"}
        key = aliases.get(key, key)
        for member in cls:
            if member.name.lower() == key:
                return member
        raise ValueError(f"Unknown mode '{name}'")

    @classmethod
    def from_id(cls, mode_id: int) -> Optional["Mode"]:
        try:
            return cls(int(mode_id))
        except (TypeError, ValueError):
            return None

    def to_id(self) -> int:
        return self.value

    def __str__(self) -> str:
        return self.name.lower()


class TimePeriod(Enum):
    DAY = "day"
    RESET = "reset"
    WEEK = "week"
    MONTH = "month"
    ALLTIME = "alltime"

    @classmethod
    def from_name(cls, name: str) -> "TimePeriod":
        key = (name or "").strip().lower()
        for member in cls:
            if member.value == key:
                return member
        raise ValueError(f"Unknown time period '{name}'")

    def start_time(self, now: Optional[datetime] = None) -> Optional[datetime]:
        """Return the UTC start of the period, or None for all time."""
        if now is None:
            now = datetime.now(timezone.utc)
        elif now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)

        if self is TimePeriod.DAY:
            return now - timedelta(days=1)
        if self is TimePeriod.WEEK:
            return now - timedelta(weeks=1)
        if self is TimePeriod.MONTH:
            return now - timedelta(days=30)
        if self is TimePeriod.RESET:
            reset = now.replace(hour=RESET_HOUR, minute=0, second=0, microsecond=0)
            reset -= timedelta(days=(now.weekday() - RESET_WEEKDAY) % 7)
            if reset > now:
                reset -= timedelta(weeks=1)
            return reset
        return None

    def __str__(self) -> str:
        return self.value
