"""A key/value cache interface and its Redis implementation."""

from __future__ import annotations

import abc
from datetime import timedelta
from typing import Any, Callable, Optional, Union

Expiration = Union[float, timedelta, None]


class CacheMiss(KeyError):
    """Raised when a key is not in the cache."""


class Cache(abc.ABC):
    """A string-valued cache with expiring entries."""

    @abc.abstractmethod
    def get(self, key: str) -> str:
        """Return the value of ``key``; raise CacheMiss if there is none."""

    @abc.abstractmethod
    def set(self, key: str, value: Any, expiration: Expiration) -> None:
        """Store ``value`` under ``key``; an expiration of zero never expires."""

    @abc.abstractmethod
    def set_if_not_exist(self, key: str, value: Any, expiration: Expiration) -> bool:
        """Store ``value`` only if ``key`` is absent; return whether it was stored."""

    @abc.abstractmethod
    def delete_if_exist(self, lock_key: str) -> None:
        """Remove ``lock_key`` if it holds a non-empty value."""


def _expiration_ms(expiration: Expiration) -> Optional[int]:
    if expiration is None:
        return None
    seconds = expiration.total_seconds() if isinstance(expiration, timedelta) else float(expiration)
    if seconds <= 0:
        return None
    return max(1, round(seconds * 1000))


def _text(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, (bytes, bytearray)) else str(value)


class RedisCache(Cache):
    """A cache backed by a Redis client exposing get, set, delete and close."""

    def __init__(self, client: Any) -> None:
        self.client = client

    def get(self, key: str) -> str:
        value = self.client.get(key)
        if value is None:
            raise CacheMiss(key)
        return _text(value)

    def set(self, key: str, value: Any, expiration: Expiration) -> None:
        self.client.set(key, value, px=_expiration_ms(expiration))

    def set_if_not_exist(self, key: str, value: Any, expiration: Expiration) -> bool:
        return bool(self.client.set(key, value, px=_expiration_ms(expiration), nx=True))

    def delete_if_exist(self, lock_key: str) -> None:
        value = self.client.get(lock_key)
        if value is not None and len(value) > 0:
            self.client.delete(lock_key)

    def close(self) -> None:
        self.client.close()


def new_redis_cache(client: Any) -> tuple[RedisCache, Callable[[float], None]]:
    """Wrap ``client`` and return the cache with a stopper that closes it."""
    cache = RedisCache(client)

    def stopper(_timeout: float) -> None:
        cache.close()

    return cache, stopper