import threading
import time

import pytest

from sagax.account_lock import DEFAULT_EXPIRY, LockError, new_producer, with_max_tries, with_retry_delay_with_jitter


class FakeRedis:
    def __init__(self):
        self.store = {}
        self.mu = threading.Lock()

    def _live(self, key):
        item = self.store.get(key)
        if item is None:
            return None
        value, expires = item
        if expires is not None and time.monotonic() >= expires:
            del self.store[key]
            return None
        return value

    def set(self, key, value, nx=False, px=None):
        with self.mu:
            if nx and self._live(key) is not None:
                return None
            expires = time.monotonic() + px / 1000 if px else None
            self.store[key] = (value, expires)
            return True

    def eval(self, script, numkeys, key, value, *rest):
        with self.mu:
            if self._live(key) != value:
                return 0
            if "DEL" in script:
                del self.store[key]
                return 1
            self.store[key] = (value, time.monotonic() + int(rest[0]) / 1000)
            return 1


@pytest.fixture
def fake():
    return FakeRedis()


def test_default_ttl(fake):
    lock = new_producer(fake).new("acc", 0)
    assert lock.ttl == DEFAULT_EXPIRY


def test_acquire_and_release(fake):
    lock = new_producer(fake).new("acc", 5)
    assert lock.valid() is False
    lock.acquire()
    assert lock.valid() is True
    assert "acc" in fake.store
    assert lock.release() is True
    assert "acc" not in fake.store
    assert lock.release() is False


def test_acquire_twice_is_idempotent(fake):
    lock = new_producer(fake).new("acc", 5)
    lock.acquire()
    token = fake.store["acc"][0]
    lock.acquire()
    assert fake.store["acc"][0] == token
    assert lock.release() is True


def test_contention(fake):
    first = new_producer(fake).new("acc", 5)
    second = new_producer(fake, with_max_tries(1)).new("acc", 5)
    first.acquire()
    with pytest.raises(LockError):
        second.acquire()
    assert second.valid() is False
    assert second.release() is False
    first.release()
    second.acquire()
    assert second.valid() is True
    second.release()


def test_retry_with_jitter_gives_up(fake):
    holder = new_producer(fake).new("acc", 5)
    holder.acquire()
    waiter = new_producer(
        fake, with_max_tries(3), with_retry_delay_with_jitter(0.001, 0.002)
    ).new("acc", 5)
    started = time.monotonic()
    with pytest.raises(LockError):
        waiter.acquire()
    assert time.monotonic() - started < 1.0
    holder.release()


def test_watchdog_keeps_lock_alive(fake):
    lock = new_producer(fake).new("acc", 0.2)
    lock.acquire()
    time.sleep(0.5)
    assert lock.valid() is True
    assert fake._live("acc") is not None
    assert lock.release() is True


def test_release_after_loss_raises(fake):
    lock = new_producer(fake).new("acc", 5)
    lock.acquire()
    fake.store.clear()
    with pytest.raises(LockError):
        lock.release()