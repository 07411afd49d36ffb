"""Tests for schedule parsing and time-of-day lookups."""

from datetime import datetime, timedelta, timezone

import pytest

from autotune_prep.interface.autotune_interface import (
    INVALID_SENSITIVITY,
    MalformedScheduleError,
)
from autotune_prep.profile import (
    BasalScheduleEntry,
    ISFScheduleEntry,
    IsfMemo,
    Profile,
    basal_lookup,
    basal_schedule_from_records,
    isf_lookup,
    isf_schedule_from_records,
    max_basal_lookup,
    max_daily_basal,
)


def at_clock(hour: int, minute: int = 0) -> datetime:
    return datetime(2024, 1, 1, hour, minute, tzinfo=timezone.utc)


@pytest.fixture
def basal_schedule():
    return (
        BasalScheduleEntry(minutes=0, rate=1.0),
        BasalScheduleEntry(minutes=360, rate=0.8),
        BasalScheduleEntry(minutes=1320, rate=1.2),
    )


@pytest.fixture
def isf_schedule():
    return (
        ISFScheduleEntry(offset=0, sensitivity=50),
        ISFScheduleEntry(offset=480, sensitivity=40),
        ISFScheduleEntry(offset=1200, sensitivity=60),
    )


class TestBasalLookup:
    """Basal rate active at a time of day."""

    @pytest.mark.parametrize("hour,minute,expected", [
        (0, 0, 1.0),
        (5, 59, 1.0),
        (6, 0, 0.8),
        (21, 59, 0.8),
        (22, 0, 1.2),
        (23, 59, 1.2),
    ])
    def test_active_entry(self, basal_schedule, hour, minute, expected):
        assert basal_lookup(basal_schedule, at_clock(hour, minute)) == expected

    def test_unsorted_schedule(self, basal_schedule):
        shuffled = (basal_schedule[2], basal_schedule[0], basal_schedule[1])
        assert basal_lookup(shuffled, at_clock(7)) == 0.8

    def test_rounded_to_three_decimals(self):
        schedule = (BasalScheduleEntry(minutes=0, rate=0.12345),)
        assert basal_lookup(schedule, at_clock(12)) == 0.123

    def test_zero_final_rate_is_invalid(self):
        schedule = (
            BasalScheduleEntry(minutes=0, rate=1.0),
            BasalScheduleEntry(minutes=720, rate=0),
        )
        assert basal_lookup(schedule, at_clock(3)) is None

    def test_uses_wall_clock_of_given_timestamp(self, basal_schedule):
        # 05:30 UTC is 06:30 at UTC+1
        local = at_clock(5, 30).astimezone(timezone(timedelta(hours=1)))
        assert basal_lookup(basal_schedule, local) == 0.8

    def test_max_daily_basal(self, basal_schedule):
        assert max_daily_basal(basal_schedule) == 1.2

    def test_max_basal_lookup(self):
        assert max_basal_lookup({"maxBasal": "3.5"}) == 3.5
        assert max_basal_lookup({}) is None


class TestIsfLookup:
    """ISF active at a time of day, with the one-slot memo."""

    def test_active_entry_and_memo(self, isf_schedule):
        result = isf_lookup(isf_schedule, at_clock(7, 59))
        assert result.sensitivity == 50
        assert result.memo == IsfMemo(0, 480, 50)
        assert result.is_valid

    def test_last_entry_runs_to_midnight(self, isf_schedule):
        result = isf_lookup(isf_schedule, at_clock(23, 0))
        assert result.sensitivity == 60
        assert result.memo == IsfMemo(1200, 1440, 60)

    def test_memo_hit_skips_scan(self):
        memo = IsfMemo(0, 480, 50)
        # an empty schedule would be invalid; the memo answers first
        result = isf_lookup((), at_clock(3), memo)
        assert result.sensitivity == 50
        assert result.memo is memo

    def test_memo_matches_fresh_lookup_over_a_day(self, isf_schedule):
        memo = None
        for minute in range(0, 1440, 7):
            timestamp = at_clock(0) + timedelta(minutes=minute)
            memoized = isf_lookup(isf_schedule, timestamp, memo)
            fresh = isf_lookup(isf_schedule, timestamp)
            assert memoized.sensitivity == fresh.sensitivity
            memo = memoized.memo

    def test_schedule_not_starting_at_midnight(self):
        schedule = (ISFScheduleEntry(offset=60, sensitivity=50),)
        memo = IsfMemo(120, 240, 45)
        result = isf_lookup(schedule, at_clock(0, 30), memo)
        assert result.sensitivity == INVALID_SENSITIVITY
        assert not result.is_valid
        assert result.memo is memo


class TestScheduleParsing:
    """Building schedules from raw records."""

    def test_basal_start_strings(self):
        schedule = basal_schedule_from_records([
            {"start": "06:00:00", "rate": 0.8},
            {"start": "00:00:00", "rate": 1.0},
        ])
        assert schedule == (
            BasalScheduleEntry(minutes=0, rate=1.0),
            BasalScheduleEntry(minutes=360, rate=0.8),
        )

    def test_basal_empty(self):
        with pytest.raises(MalformedScheduleError):
            basal_schedule_from_records([])

    def test_basal_unreadable(self):
        with pytest.raises(MalformedScheduleError):
            basal_schedule_from_records([{"minutes": 0}])

    def test_isf_document_and_list(self):
        records = [{"offset": 0, "sensitivity": 50}, {"offset": 480, "sensitivity": "40"}]
        assert isf_schedule_from_records({"sensitivities": records}) == isf_schedule_from_records(records)
        assert isf_schedule_from_records(records)[1] == ISFScheduleEntry(offset=480, sensitivity=40.0)

    def test_isf_empty(self):
        with pytest.raises(MalformedScheduleError):
            isf_schedule_from_records({"sensitivities": []})


class TestProfile:
    """Profile construction from oref0-style JSON."""

    def test_defaults(self, profile_data):
        data = {
            "carb_ratio": 10,
            "isfProfile": profile_data["isfProfile"],
            "basalprofile": profile_data["basalprofile"],
        }
        profile = Profile.from_dict(data)
        assert profile.min_5m_carbimpact == 8.0
        assert profile.dia == 3.0
        assert profile.curve == "rapid-acting"
        assert profile.max_cob == 120.0
        assert profile.pump_basal_profile == profile.basal_profile

    def test_pump_basal_override(self, profile_data):
        profile = Profile.from_dict(profile_data, pump_basal_records=[{"minutes": 0, "rate": 0.5}])
        assert profile.pump_basal_profile == (BasalScheduleEntry(minutes=0, rate=0.5),)
        assert profile.basal_profile == (BasalScheduleEntry(minutes=0, rate=1.0),)

    def test_unknown_keys_kept(self, profile_data):
        profile = Profile.from_dict({**profile_data, "timezone": "Europe/Berlin"})
        assert profile.extra == {"timezone": "Europe/Berlin"}

    def test_missing_schedule(self, profile_data):
        data = dict(profile_data)
        del data["isfProfile"]
        with pytest.raises(MalformedScheduleError):
            Profile.from_dict(data)
