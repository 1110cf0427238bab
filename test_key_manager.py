"""Tests for KeyRotator selection, counting and the daily reset."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from key_manager import KeyRotator, KeySelection, load_api_keys, mask_key


class FakeClock:
    def __init__(self, now=None):
        self.now = now or datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


def make_rotator(clock, keys=("key-aaaa-1111", "key-bbbb-2222", "key-cccc-3333"), limit=2):
    return KeyRotator(list(keys), daily_limit=limit, clock=clock)


class TestAcquire:
    def test_single_key_exhausts_after_limit(self, clock):
        rotator = make_rotator(clock, keys=["only-key-0000"], limit=2)

        assert rotator.acquire() == KeySelection("only-key-0000", 0)
        rotator.record(0)
        assert rotator.acquire().index == 0
        rotator.record(0)
        assert rotator.acquire() is None

    def test_two_keys_wrap_then_exhaust(self, clock):
        rotator = make_rotator(clock, keys=["key-a-000000", "key-b-000000"], limit=1)

        assert rotator.acquire().index == 0
        rotator.record(0)
        assert rotator.acquire().index == 1
        rotator.record(1)
        assert rotator.acquire() is None

    def test_every_key_at_limit_is_exhausted(self, clock):
        rotator = make_rotator(clock, limit=3)
        for index in range(3):
            for _ in range(3):
                rotator.record(index)
        assert rotator.acquire() is None

    def test_cursor_sticks_until_key_is_exhausted(self, clock):
        rotator = make_rotator(clock, limit=2)

        picks = []
        for _ in range(6):
            selection = rotator.acquire()
            picks.append(selection.index)
            rotator.record(selection.index)

        assert picks == [0, 0, 1, 1, 2, 2]
        assert rotator.acquire() is None

    def test_acquire_does_not_count_calls(self, clock):
        rotator = make_rotator(clock, limit=1)
        for _ in range(5):
            assert rotator.acquire().index == 0
        assert rotator.status()["usage"][0]["callsMade"] == 0

    def test_scan_wraps_around_from_cursor(self, clock):
        rotator = make_rotator(clock, limit=1)
        rotator.record(0)
        rotator.record(1)
        assert rotator.acquire().index == 2

        # On a new day the cursor stays on key 3; once it is spent the scan wraps to key 1.
        clock.advance(days=1)
        assert rotator.acquire().index == 2
        rotator.record(2)
        assert rotator.acquire().index == 0

    def test_scan_skips_exhausted_keys(self, clock):
        rotator = make_rotator(clock, limit=1)
        rotator.record(0)
        rotator.record(1)
        selection = rotator.acquire()
        assert selection.key == "key-cccc-3333"
        assert selection.key_number == 3

    def test_no_keys_is_inert(self, clock):
        rotator = KeyRotator([], clock=clock)
        assert len(rotator) == 0
        assert rotator.acquire() is None

    def test_invalid_limit_rejected(self, clock):
        with pytest.raises(ValueError):
            KeyRotator(["key-a-000000"], daily_limit=0, clock=clock)


class TestDailyReset:
    def test_new_day_zeros_counters(self, clock):
        rotator = make_rotator(clock, keys=["key-a-000000"], limit=1)
        rotator.record(0)
        assert rotator.acquire() is None

        clock.advance(days=1)
        assert rotator.acquire().index == 0
        assert rotator.status()["usage"][0]["callsMade"] == 0

    def test_same_day_keeps_counters(self, clock):
        rotator = make_rotator(clock, keys=["key-a-000000"], limit=1)
        rotator.record(0)
        clock.advance(hours=11, minutes=59)
        assert rotator.acquire() is None

    def test_reset_follows_utc_midnight(self):
        clock = FakeClock(datetime(2026, 10, 19, 23, 59, tzinfo=timezone.utc))
        rotator = make_rotator(clock, keys=["key-a-000000"], limit=1)
        rotator.record(0)

        clock.advance(minutes=2)
        assert rotator.acquire() is not None
        assert rotator.status()["lastReset"] == "Tue Oct 20 2026"

    def test_status_triggers_reset(self, clock):
        rotator = make_rotator(clock, limit=2)
        rotator.record(1)
        clock.advance(days=1)

        status = rotator.status()
        assert [entry["callsMade"] for entry in status["usage"]] == [0, 0, 0]
        assert status["lastReset"] == "Tue Oct 20 2026"


class TestRecordAndStatus:
    def test_record_returns_new_count(self, clock):
        rotator = make_rotator(clock)
        assert rotator.record(1) == 1
        assert rotator.record(1) == 2
        assert rotator.status()["usage"][1]["callsRemaining"] == 0

    def test_record_allows_overshoot(self, clock):
        rotator = make_rotator(clock, keys=["key-a-000000"], limit=1)
        rotator.record(0)
        rotator.record(0)
        entry = rotator.status()["usage"][0]
        assert entry["callsMade"] == 2
        assert entry["callsRemaining"] == 0
        assert entry["percentageUsed"] == 200

    def test_record_unknown_index(self, clock):
        rotator = make_rotator(clock)
        with pytest.raises(IndexError):
            rotator.record(3)

    def test_status_shape(self, clock):
        rotator = make_rotator(clock, limit=3)
        rotator.record(0)
        rotator.record(1)
        rotator.record(1)

        assert rotator.status() == {
            "totalKeys": 3,
            "dailyLimit": 3,
            "usage": [
                {"keyNumber": 1, "callsMade": 1, "callsRemaining": 2, "percentageUsed": 33},
                {"keyNumber": 2, "callsMade": 2, "callsRemaining": 1, "percentageUsed": 67},
                {"keyNumber": 3, "callsMade": 0, "callsRemaining": 3, "percentageUsed": 0},
            ],
            "lastReset": "Mon Oct 19 2026",
        }

    def test_percentage_rounds_half_up(self, clock):
        rotator = make_rotator(clock, keys=["key-a-000000"], limit=8)
        rotator.record(0)
        assert rotator.status()["usage"][0]["percentageUsed"] == 13

    def test_concurrent_records_are_all_counted(self, clock):
        rotator = make_rotator(clock, keys=["key-a-000000"], limit=10000)

        def worker():
            for _ in range(250):
                selection = rotator.acquire()
                rotator.record(selection.index)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert rotator.status()["usage"][0]["callsMade"] == 2000


class TestKeyLoading:
    def test_numbered_keys_ordered_by_number(self):
        environ = {
            "OPENWEATHER_KEY_10": "tenth",
            "OPENWEATHER_KEY_2": "second",
            "OPENWEATHER_KEY_1": "first",
            "OTHER": "ignored",
        }
        assert load_api_keys(environ) == ["first", "second", "tenth"]

    def test_blank_entries_dropped(self):
        environ = {"OPENWEATHER_KEY_1": "first", "OPENWEATHER_KEY_2": "  ", "OPENWEATHER_KEY_3": "third"}
        assert load_api_keys(environ) == ["first", "third"]

    def test_list_variable_appended(self):
        environ = {"OPENWEATHER_KEY_1": "first", "OPENWEATHER_API_KEYS": " extra-a, ,extra-b "}
        assert load_api_keys(environ) == ["first", "extra-a", "extra-b"]

    def test_nothing_configured(self):
        assert load_api_keys({}) == []


def test_mask_key():
    assert mask_key("abcdef0123456789") == "abcd...6789"
    assert mask_key("short") == "****"
