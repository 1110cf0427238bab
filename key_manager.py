# key_manager.py - Daily quota tracking and rotation across OpenWeather keys
import math
import os
import re
import threading
import logging
from collections import namedtuple
from datetime import datetime, timezone

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

DEFAULT_DAILY_LIMIT = 900
NUMBERED_KEY_PATTERN = re.compile(r"^OPENWEATHER_KEY_(\d+)$")


def utc_now():
    return datetime.now(timezone.utc)


def mask_key(key):
    """Shortens a key to its first and last four characters for logging."""
    if len(key) <= 8:
        return "****"
    return key[:4] + "..." + key[-4:]


def load_api_keys(environ=None):
    """
    Collects the configured keys from the environment.

    Numbered variables (OPENWEATHER_KEY_1, OPENWEATHER_KEY_2, ...) come first,
    ordered by their number; blank or unset entries are dropped. Any keys in
    the comma-separated OPENWEATHER_API_KEYS variable are appended after them.
    """
    if environ is None:
        environ = os.environ
    numbered = []
    for name, value in environ.items():
        match = NUMBERED_KEY_PATTERN.match(name)
        if match and value and value.strip():
            numbered.append((int(match.group(1)), value.strip()))
    keys = [value for _, value in sorted(numbered)]

    keys_str = environ.get("OPENWEATHER_API_KEYS", "")
    keys.extend(key.strip() for key in keys_str.split(',') if key.strip())
    return keys


class KeySelection(namedtuple("KeySelection", ["key", "index"])):
    __slots__ = ()

    @property
    def key_number(self):
        return self.index + 1


class KeyRotator:
    """
    Hands out OpenWeather keys while keeping each one under a daily call limit.

    The rotator sticks with the current key until its counter reaches the
    limit, then moves round-robin to the next key that still has calls left.
    Counters live in memory only and are zeroed lazily the first time any
    operation runs on a new UTC day.

    Every public method is a short critical section of its own. Callers must
    not hold a selection "open" across the upstream request: acquire() and
    record() are separate steps, so two concurrent requests may both be
    handed the same key before either of them records its call.
    """

    def __init__(self, api_keys, daily_limit=DEFAULT_DAILY_LIMIT, clock=None):
        if daily_limit < 1:
            raise ValueError(f"Daily limit must be at least 1, got {daily_limit}.")
        self.api_keys = tuple(api_keys)
        self.daily_limit = daily_limit
        self._clock = clock or utc_now
        self._lock = threading.Lock()
        self._current_index = 0
        self._usage = {index: 0 for index in range(len(self.api_keys))}
        self._last_reset = self._clock().date()
        if self.api_keys:
            logging.info(f"Loaded {len(self.api_keys)} API keys with a daily limit of {daily_limit} calls each.")
        else:
            logging.warning("No API keys configured; every request will be rejected as rate limited.")

    def __len__(self):
        return len(self.api_keys)

    def _ensure_fresh(self):
        # Caller must hold self._lock.
        today = self._clock().date()
        if today != self._last_reset:
            logging.info(f"Resetting daily usage counters ({self._last_reset} -> {today}).")
            self._usage = {index: 0 for index in range(len(self.api_keys))}
            self._last_reset = today

    def acquire(self):
        """
        Returns a KeySelection for a key that still has calls left today, or
        None when every key has reached the daily limit. Does not count a call.
        """
        with self._lock:
            self._ensure_fresh()
            total = len(self.api_keys)
            if not total:
                return None

            if self._usage[self._current_index] < self.daily_limit:
                return KeySelection(self.api_keys[self._current_index], self._current_index)

            for offset in range(1, total):
                index = (self._current_index + offset) % total
                if self._usage[index] < self.daily_limit:
                    self._current_index = index
                    logging.warning(f"Switched to API key {index + 1} ({mask_key(self.api_keys[index])}).")
                    return KeySelection(self.api_keys[index], index)

            return None

    def record(self, index):
        """
        Counts one successful upstream call against the key at index and
        returns the new count. The limit is not enforced here, only in
        acquire(), so a caller recording without acquiring can overshoot it.
        """
        with self._lock:
            if index not in self._usage:
                raise IndexError(f"No API key at index {index}.")
            self._usage[index] += 1
            count = self._usage[index]
        logging.info(f"Key {index + 1} usage: {count}/{self.daily_limit}")
        return count

    def status(self):
        with self._lock:
            self._ensure_fresh()
            usage = []
            for index in range(len(self.api_keys)):
                made = self._usage[index]
                usage.append({
                    "keyNumber": index + 1,
                    "callsMade": made,
                    "callsRemaining": max(0, self.daily_limit - made),
                    # Half rounds up, not to even.
                    "percentageUsed": math.floor(100 * made / self.daily_limit + 0.5),
                })
            return {
                "totalKeys": len(self.api_keys),
                "dailyLimit": self.daily_limit,
                "usage": usage,
                "lastReset": self._last_reset.strftime("%a %b %d %Y"),
            }
