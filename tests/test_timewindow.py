"""
Tests for voting window resolution.
"""

import math
from datetime import datetime, timedelta, timezone

import pytest

from carbonclaims.core.timewindow import (
    MS_PER_DAY,
    TimeResolutionError,
    resolve_record_window,
    resolve_window,
    voting_ends_at,
    voting_period_seconds_until,
)
from carbonclaims.schemas import ClaimRecord


ISSUED_MS = 1_700_000_000_000


class TestResolveWindow:
    """Unit inference from magnitude."""

    def test_period_in_days(self):
        window = resolve_window(ISSUED_MS, 7)
        assert window.valid
        assert window.start_ms == ISSUED_MS
        assert window.end_ms == ISSUED_MS + 604_800_000

    def test_period_in_seconds(self):
        window = resolve_window(ISSUED_MS, 2_000_000_000)
        assert window.end_ms == ISSUED_MS + 2_000_000_000 * 1000

    def test_period_in_milliseconds(self):
        window = resolve_window(ISSUED_MS, 2_000_000_000_000)
        assert window.end_ms == ISSUED_MS + 2_000_000_000_000

    def test_small_second_counts_read_as_days(self):
        # One week in seconds is below the seconds threshold
        window = resolve_window(ISSUED_MS, 604_800)
        assert window.end_ms == ISSUED_MS + 604_800 * MS_PER_DAY

    def test_issue_time_below_threshold_passes_through(self):
        window = resolve_window(1_000, 1)
        assert window.start_ms == 1_000
        assert window.end_ms == 1_000 + MS_PER_DAY

    def test_numeric_strings(self):
        assert resolve_window(str(ISSUED_MS), "7") == resolve_window(ISSUED_MS, 7)

    def test_zero_period_is_a_point_window(self):
        window = resolve_window(ISSUED_MS, 0)
        assert window.valid
        assert window.start_ms == window.end_ms

    @pytest.mark.parametrize("issued_at,period", [
        ("soon", 7),
        (ISSUED_MS, "a week"),
        (None, 7),
        (ISSUED_MS, None),
        (True, 7),
        (math.nan, 7),
        (ISSUED_MS, math.inf),
        (-1, 7),
        (ISSUED_MS, -7),
        (ISSUED_MS, 10**9),
    ])
    def test_invalid_inputs(self, issued_at, period):
        window = resolve_window(issued_at, period)
        assert not window.valid
        assert not window.contains(ISSUED_MS)

    @pytest.mark.parametrize("issued_at,period", [
        ("1" + "0" * 400, 7),
        (10**400, 7),
        (ISSUED_MS, "1" + "0" * 400),
        (ISSUED_MS, 10**400),
        (10**308, 10**308),
    ])
    def test_values_beyond_float_range_are_invalid(self, issued_at, period):
        assert not resolve_window(issued_at, period).valid

    def test_contains_is_inclusive_of_end(self):
        window = resolve_window(ISSUED_MS, 1)
        assert window.contains(window.end_ms)
        assert not window.contains(window.end_ms + 1)

    def test_record_window(self):
        record = ClaimRecord(claim_id="0xc", issued_at=ISSUED_MS, voting_period=3)
        assert resolve_record_window(record).end_ms == ISSUED_MS + 3 * MS_PER_DAY


class TestVotingEndsAt:

    def test_utc_end(self):
        ends = voting_ends_at(resolve_window(ISSUED_MS, 1))
        assert ends.tzinfo is not None
        assert ends == datetime.fromtimestamp(ISSUED_MS / 1000, tz=timezone.utc) + timedelta(days=1)

    def test_invalid_window_has_no_end(self):
        assert voting_ends_at(resolve_window("x", 1)) is None


class TestVotingPeriodSecondsUntil:

    def test_whole_seconds(self):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        deadline = now + timedelta(days=7, milliseconds=900)
        assert voting_period_seconds_until(deadline, now=now) == 604_800

    def test_past_deadline(self):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        with pytest.raises(TimeResolutionError, match="future"):
            voting_period_seconds_until(now - timedelta(seconds=1), now=now)

    def test_deadline_equal_to_now(self):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        with pytest.raises(TimeResolutionError):
            voting_period_seconds_until(now, now=now)

    def test_naive_deadline(self):
        with pytest.raises(TimeResolutionError, match="naive"):
            voting_period_seconds_until(datetime(2099, 1, 1))
