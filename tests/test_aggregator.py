# tests/test_aggregator.py

from datetime import datetime, timezone

import pytest

from d2stats.aggregator import CrucibleStats, aggregate, summarize
from d2stats.enums import Mode, Platform, TimePeriod
from tests.helpers import (
    CHARACTER_ID,
    MEMBER_ID,
    PLATFORM,
    create_temp_store,
    make_detail,
    remove_store,
)

NOW = datetime(2020, 10, 8, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    store, db_path = create_temp_store()
    member_rowid = store.insert_member(MEMBER_ID, PLATFORM)
    store.insert_character(CHARACTER_ID, member_rowid)
    try:
        yield store
    finally:
        remove_store(store, db_path)


class TestCrucibleStats:
    def test_ratios(self):
        stats = CrucibleStats(activities=4, wins=3, kills=20, deaths=10, assists=6)
        assert stats.kills_deaths_ratio == pytest.approx(2.0)
        assert stats.kills_deaths_assists == pytest.approx(2.3)
        assert stats.efficiency == pytest.approx(2.6)
        assert stats.win_rate == pytest.approx(75.0)

    def test_ratios_without_deaths(self):
        stats = CrucibleStats(kills=7, assists=2)
        assert stats.kills_deaths_ratio == 7.0
        assert stats.efficiency == 9.0
        assert stats.win_rate == 0.0

    def test_add(self):
        total = CrucibleStats(activities=1, kills=5) + CrucibleStats(activities=2, kills=3, deaths=4)
        assert total.activities == 3
        assert total.kills == 8
        assert total.deaths == 4

    def test_from_row_counts_victory(self):
        win = CrucibleStats.from_row({"standing": 0, "kills": 12, "deaths": 4})
        loss = CrucibleStats.from_row({"standing": 1, "kills": 3, "deaths": 9})
        assert (win.activities, win.wins, win.kills) == (1, 1, 12)
        assert (loss.activities, loss.wins) == (1, 0)

    def test_aggregate(self):
        rows = [
            {"standing": 0, "kills": 10, "deaths": 5, "assists": 2},
            {"standing": 1, "kills": 4, "deaths": 8, "assists": 1},
        ]
        total = aggregate(rows)
        assert total.activities == 2
        assert total.wins == 1
        assert total.kills == 14
        assert aggregate([]) == CrucibleStats()


class TestSummarize:
    def _persist(self, store, activity_id, period, mode=Mode.CONTROL, **kwargs):
        store.persist_activity_detail(
            make_detail(activity_id, period=period, mode=mode.to_id(), **kwargs),
            MEMBER_ID, CHARACTER_ID, PLATFORM,
        )

    def test_alltime_sums_everything(self, store):
        self._persist(store, 101, "2020-01-01T10:00:00Z", kills=10, deaths=5)
        self._persist(store, 102, "2020-10-08T10:00:00Z", kills=6, deaths=3, standing=1)

        stats = summarize(store, MEMBER_ID, CHARACTER_ID, PLATFORM, now=NOW)
        assert stats.activities == 2
        assert stats.wins == 1
        assert stats.kills == 16

    def test_period_and_mode_filters(self, store):
        self._persist(store, 101, "2020-10-01T13:00:00Z")
        self._persist(store, 102, "2020-10-07T10:00:00Z")
        self._persist(store, 103, "2020-10-08T10:00:00Z", mode=Mode.RUMBLE)

        assert summarize(store, MEMBER_ID, CHARACTER_ID, PLATFORM, period=TimePeriod.DAY, now=NOW).activities == 1
        assert summarize(store, MEMBER_ID, CHARACTER_ID, PLATFORM, period=TimePeriod.RESET, now=NOW).activities == 2
        assert summarize(store, MEMBER_ID, CHARACTER_ID, PLATFORM, period=TimePeriod.WEEK, now=NOW).activities == 3
        weekly_control = summarize(
            store, MEMBER_ID, CHARACTER_ID, PLATFORM, mode=Mode.CONTROL, period=TimePeriod.WEEK, now=NOW
        )
        assert weekly_control.activities == 2

    def test_unknown_character_is_empty(self, store):
        stats = summarize(store, MEMBER_ID, "999", PLATFORM)
        assert stats == CrucibleStats()


class TestTimePeriod:
    def test_reset_is_last_tuesday_at_1700_utc(self):
        # Thursday
        assert TimePeriod.RESET.start_time(NOW) == datetime(2020, 10, 6, 17, 0, tzinfo=timezone.utc)

    def test_reset_before_tuesday_cutoff_uses_previous_week(self):
        tuesday_morning = datetime(2020, 10, 6, 9, 0, tzinfo=timezone.utc)
        assert TimePeriod.RESET.start_time(tuesday_morning) == datetime(2020, 9, 29, 17, 0, tzinfo=timezone.utc)

    def test_relative_periods(self):
        assert TimePeriod.DAY.start_time(NOW) == datetime(2020, 10, 7, 12, 0, tzinfo=timezone.utc)
        assert TimePeriod.WEEK.start_time(NOW) == datetime(2020, 10, 1, 12, 0, tzinfo=timezone.utc)
        assert TimePeriod.MONTH.start_time(NOW) == datetime(2020, 9, 8, 12, 0, tzinfo=timezone.utc)
        assert TimePeriod.ALLTIME.start_time(NOW) is None

    def test_naive_now_treated_as_utc(self):
        naive = datetime(2020, 10, 8, 12, 0, 0)
        assert TimePeriod.DAY.start_time(naive) == datetime(2020, 10, 7, 12, 0, tzinfo=timezone.utc)


class TestEnums:
    def test_platform_names_and_ids(self):
        assert Platform.from_name("xbox") is Platform.XBOX
        assert Platform.from_name("PSN") is Platform.PLAYSTATION
        assert Platform.from_name("pc") is Platform.STEAM
        assert Platform.from_id(3) is Platform.STEAM
        assert str(Platform.STADIA) == "stadia"
        with pytest.raises(ValueError):
            Platform.from_id(99)
        with pytest.raises(ValueError):
            Platform.from_name("dreamcast")

    def test_mode_names_and_ids(self):
        assert Mode.from_name("control") is Mode.CONTROL
        assert Mode.from_name("iron-banner") is Mode.IRON_BANNER
        assert Mode.from_name("trials") is Mode.TRIALS_OF_OSIRIS
        assert Mode.ALL_PVP.to_id() == 5
        assert Mode.from_id(73) is Mode.CONTROL_QUICKPLAY
        assert Mode.from_id(999) is None

    def test_time_period_names(self):
        assert TimePeriod.from_name("Week") is TimePeriod.WEEK
        with pytest.raises(ValueError):
            TimePeriod.from_name("fortnight")
