"""Get-or-compute memoization for expensive async operations.

Results are stored as JSON in a shared key-value store with a TTL. Failures
are never cached, and an unreachable store degrades to direct execution.
Concurrent identical calls may both miss and both run the operation; the last
write wins.
"""

from __future__ import annotations

import dataclasses
import functools
import json
from hashlib import sha256
from typing import Any, Awaitable, Callable, Protocol, TypeVar

import redis.asyncio as aioredis
from loguru import logger
from pydantic import BaseModel
from redis.exceptions import RedisError

from deepsearch.errors import CacheBackingUnavailable

CACHE_VERSION = 1

T = TypeVar("T")


class CacheStore(Protocol):
    async def get(self, key: str) -> str | None: ...
    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...


class RedisCacheStore:
    """Cache store on a Redis-compatible service (GET / SET EX)."""

    def __init__(self, client: aioredis.Redis):
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCacheStore":
        return cls(aioredis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> str | None:
        try:
            value = await self._client.get(key)
        except (RedisError, OSError) as exc:
            raise CacheBackingUnavailable(f"Cache GET failed: {exc}") from exc
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self._client.set(key, value, ex=max(int(ttl_seconds), 1))
        except (RedisError, OSError) as exc:
            raise CacheBackingUnavailable(f"Cache SET failed: {exc}") from exc

    async def close(self) -> None:
        await self._client.aclose()


def _json_default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    raise TypeError(f"Object of type {type(value).__name__} is not cacheable")


def _tag_tuples(value: Any) -> Any:
    # Tuples and lists with the same items must not share a key.
    if isinstance(value, tuple):
        return {"__tuple__": [_tag_tuples(v) for v in value]}
    if isinstance(value, list):
        return [_tag_tuples(v) for v in value]
    if isinstance(value, dict):
        return {k: _tag_tuples(v) for k, v in value.items()}
    return value


def serialize_args(args: tuple[Any, ...], kwargs: dict[str, Any]) -> str:
    """Deterministic JSON for call arguments (stable key ordering)."""
    return json.dumps(
        {"args": [_tag_tuples(a) for a in args], "kwargs": _tag_tuples(kwargs)},
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=True,
        default=_json_default,
    )


def cache_key(operation_name: str, args: tuple[Any, ...], kwargs: dict[str, Any], *, prefix: str = "") -> str:
    material = json.dumps(
        [CACHE_VERSION, operation_name, serialize_args(args, kwargs)],
        separators=(",", ":"),
    )
    digest = sha256(material.encode("utf-8")).hexdigest()
    return f"{prefix}:{operation_name}:{digest}" if prefix else digest


def memoize(
    operation_name: str,
    fn: Callable[..., Awaitable[T]],
    *,
    store: CacheStore | None,
    ttl_seconds: int,
    prefix: str = "",
    should_cache: Callable[[T], bool] | None = None,
) -> Callable[..., Awaitable[T]]:
    """Wrap ``fn`` so identical calls within ``ttl_seconds`` skip it.

    ``fn`` must return JSON-serializable data; a hit returns the decoded JSON.
    ``should_cache`` can veto storing a successful result.
    """

    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        if store is None:
            return await fn(*args, **kwargs)

        key = cache_key(operation_name, args, kwargs, prefix=prefix)

        try:
            cached = await store.get(key)
        except CacheBackingUnavailable as exc:
            logger.warning(f"Cache unavailable for {operation_name}, running uncached: {exc}")
            return await fn(*args, **kwargs)

        if cached is not None:
            try:
                value = json.loads(cached)
            except json.JSONDecodeError:
                logger.warning(f"Discarding unreadable cache entry for {operation_name}")
            else:
                logger.debug(f"Cache hit for {operation_name} ({key[-12:]})")
                return value

        result = await fn(*args, **kwargs)

        if should_cache is not None and not should_cache(result):
            return result

        try:
            payload = json.dumps(result, ensure_ascii=True, default=_json_default)
            await store.set(key, payload, ttl_seconds)
        except CacheBackingUnavailable as exc:
            logger.warning(f"Cache write skipped for {operation_name}: {exc}")
        return result

    return wrapper


def get_cache_store(*, enabled: bool, redis_url: str) -> CacheStore | None:
    """Build the shared store, or None when caching is disabled/unconfigured."""
    if not enabled or not redis_url.strip():
        return None
    return RedisCacheStore.from_url(redis_url.strip())
