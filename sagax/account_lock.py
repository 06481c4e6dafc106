"""Distributed per-account locks on Redis, kept alive while held."""

from __future__ import annotations

import base64
import secrets
import threading
import time
from datetime import timedelta
from typing import Any, Callable, Optional, Union

DEFAULT_EXPIRY = 8.0
DEFAULT_MAX_TRIES = 32

_MIN_RETRY_DELAY_MS = 50
_MAX_RETRY_DELAY_MS = 250
_DRIFT_FACTOR = 0.01

_DELETE_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
else
    return 0
end
"""

_TOUCH_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("PEXPIRE", KEYS[1], ARGV[2])
else
    return 0
end
"""

DelayFunc = Callable[[int], float]


class LockError(Exception):
    """Raised when a lock cannot be acquired, extended or released."""


def _seconds(value: Union[float, timedelta, None]) -> float:
    if value is None:
        return 0.0
    return value.total_seconds() if isinstance(value, timedelta) else float(value)


def _default_delay(_tries: int) -> float:
    ms = secrets.randbelow(_MAX_RETRY_DELAY_MS - _MIN_RETRY_DELAY_MS) + _MIN_RETRY_DELAY_MS
    return ms / 1000


class _Mutex:
    """A single-instance Redis lock with a random owner token."""

    def __init__(self, client: Any, name: str, expiry: float, tries: int, delay: DelayFunc) -> None:
        self._client = client
        self._name = name
        self._expiry = expiry
        self._tries = tries
        self._delay = delay
        self._value = ""
        self.until = 0.0

    @property
    def _expiry_ms(self) -> int:
        return max(1, int(self._expiry * 1000))

    @property
    def _drift(self) -> float:
        return self._expiry * _DRIFT_FACTOR + 0.002

    def _release(self, value: str) -> bool:
        return bool(self._client.eval(_DELETE_SCRIPT, 1, self._name, value))

    def lock(self) -> None:
        value = base64.b64encode(secrets.token_bytes(16)).decode("ascii")
        for attempt in range(self._tries):
            if attempt:
                time.sleep(self._delay(attempt))
            start = time.monotonic()
            try:
                ok = bool(self._client.set(self._name, value, nx=True, px=self._expiry_ms))
            except Exception:
                ok = False
            now = time.monotonic()
            until = now + self._expiry - (now - start) - self._drift
            if ok and now < until:
                self._value = value
                self.until = until
                return
            try:
                self._release(value)
            except Exception:
                pass
        raise LockError(f"failed to acquire lock {self._name!r}")

    def extend(self) -> None:
        start = time.monotonic()
        ok = bool(self._client.eval(_TOUCH_SCRIPT, 1, self._name, self._value, self._expiry_ms))
        now = time.monotonic()
        until = now + self._expiry - (now - start) - self._drift
        if not ok or now >= until:
            raise LockError(f"failed to extend lock {self._name!r}")
        self.until = until

    def unlock(self) -> bool:
        if not self._release(self._value):
            raise LockError(f"failed to unlock {self._name!r}, lock was already expired")
        return True


class Lock:
    """An account lock that extends itself every 3/4 of its TTL until released.

    Acquiring an acquired lock, or releasing a released one, does nothing.
    """

    def __init__(self, mutex: _Mutex, ttl: float) -> None:
        self._mutex = mutex
        self.ttl = ttl
        self._guard = threading.Lock()
        self._acquired = False
        self._stop: Optional[threading.Event] = None

    def acquire(self) -> None:
        """Take the lock; raise LockError if it cannot be taken."""
        if self._acquired:
            return
        with self._guard:
            if self._acquired:
                return
            self._mutex.lock()
            self._acquired = True
            self._stop = self._start_watchdog(self.ttl * 3 / 4)

    def release(self) -> bool:
        """Give the lock up; return False if it was not held."""
        if not self._acquired:
            return False
        with self._guard:
            if not self._acquired:
                return False
            if self._stop is not None:
                self._stop.set()
            result = self._mutex.unlock()
            self._acquired = False
            return result

    def valid(self) -> bool:
        """Return whether the lock is still held at this moment."""
        with self._guard:
            return self._mutex.until > time.monotonic()

    def _start_watchdog(self, interval: float) -> threading.Event:
        stop = threading.Event()

        def run() -> None:
            while not stop.wait(interval):
                with self._guard:
                    if stop.is_set():
                        return
                    try:
                        self._mutex.extend()
                    except Exception:
                        pass

        threading.Thread(target=run, daemon=True).start()
        return stop


class Producer:
    """Creates account locks on one Redis client."""

    def __init__(self, client: Any) -> None:
        self.client = client
        self.max_tries = DEFAULT_MAX_TRIES
        self.retry_delay: Optional[DelayFunc] = None

    def new(self, account_id: str, ttl: Union[float, timedelta, None]) -> Lock:
        """Create a lock for ``account_id``; a TTL of zero or less means 8 seconds."""
        seconds = _seconds(ttl)
        if seconds <= 0:
            seconds = DEFAULT_EXPIRY
        mutex = _Mutex(self.client, account_id, seconds, self.max_tries, self.retry_delay or _default_delay)
        return Lock(mutex, seconds)


Option = Callable[[Producer], None]


def new_producer(client: Any, *options: Option) -> Producer:
    producer = Producer(client)
    for option in options:
        option(producer)
    return producer


def with_max_tries(max_tries: int) -> Option:
    """Override how many times acquiring is attempted (default 32)."""

    def apply(producer: Producer) -> None:
        producer.max_tries = max_tries

    return apply


def with_retry_delay_with_jitter(
    min_delay: Union[float, timedelta], max_delay: Union[float, timedelta]
) -> Option:
    """Wait min_delay plus a random part below max_delay plus a jitter below the attempt number (ns)."""
    min_ns = int(_seconds(min_delay) * 1_000_000_000)
    max_ns = int(_seconds(max_delay) * 1_000_000_000)

    def delay(tries: int) -> float:
        jitter = secrets.randbelow(tries)
        n = secrets.randbelow(max_ns)
        return (n + min_ns + jitter) / 1_000_000_000

    def apply(producer: Producer) -> None:
        producer.retry_delay = delay

    return apply