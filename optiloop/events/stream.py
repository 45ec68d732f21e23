"""Durable stream backends: bounded append-only logs.

The orchestrator only ever talks to ``StreamBackend``. Which backend it
gets is decided once, at construction time:

    MemoryStream: per-key ring buffer, for tests and development
    RedisStream:  Redis Streams (XADD / XRANGE / XLEN / XTRIM)
"""

from __future__ import annotations

import math
import time
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from typing import Any

import orjson
import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

from optiloop.exceptions import ConfigurationError, StreamBackendError

DEFAULT_STREAM_LENGTH = 200


class StreamEntry(BaseModel):
    """One raw log entry. ``data`` is the serialized event, unparsed."""

    id: str
    data: str


def encode_entry(event: dict[str, Any]) -> dict[str, str]:
    return {
        "event": orjson.dumps(event).decode(),
        "traceId": str(event.get("traceId", "")),
        "priority": str(event.get("priority", "")),
    }


def _entry_bound(entry_id: str, upper: bool) -> tuple[float, float]:
    """Order stream ids like Redis: ``-``/``+`` are open ends, a bare ``ms`` covers every seq."""
    if entry_id == "-":
        return (-math.inf, -math.inf)
    if entry_id == "+":
        return (math.inf, math.inf)
    ms, _, seq = entry_id.partition("-")
    if not seq:
        return (int(ms), math.inf if upper else 0)
    return (int(ms), int(seq))


class StreamBackend(ABC):
    """Append-only, length-bounded log keyed by stream name."""

    @abstractmethod
    async def append(self, key: str, event: dict[str, Any]) -> str:
        """Append an event; returns the entry id."""

    @abstractmethod
    async def range(
        self, key: str, start: str = "-", end: str = "+", limit: int | None = None,
    ) -> list[StreamEntry]:
        """Read entries oldest-first. With ``limit``, only the newest ``limit``."""

    @abstractmethod
    async def length(self, key: str) -> int:
        ...

    @abstractmethod
    async def trim(self, key: str, max_len: int) -> int:
        """Drop the oldest entries beyond ``max_len``; returns how many."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    async def close(self) -> None:
        return None


class MemoryStream(StreamBackend):
    """In-process ring buffer. Oldest entries fall off past ``max_length``."""

    def __init__(self, max_length: int = DEFAULT_STREAM_LENGTH) -> None:
        self._max_length = max_length
        self._streams: dict[str, deque[StreamEntry]] = defaultdict(
            lambda: deque(maxlen=self._max_length)
        )
        self._seq = 0

    async def append(self, key: str, event: dict[str, Any]) -> str:
        self._seq += 1
        entry_id = f"{int(time.time() * 1000)}-{self._seq}"
        self._streams[key].append(
            StreamEntry(id=entry_id, data=encode_entry(event)["event"])
        )
        return entry_id

    async def range(
        self, key: str, start: str = "-", end: str = "+", limit: int | None = None,
    ) -> list[StreamEntry]:
        low = _entry_bound(start, upper=False)
        high = _entry_bound(end, upper=True)
        entries = [
            e for e in self._streams.get(key, ())
            if low <= _entry_bound(e.id, upper=False) <= high
        ]
        if limit:
            entries = entries[-limit:]
        return entries

    async def length(self, key: str) -> int:
        return len(self._streams.get(key, ()))

    async def trim(self, key: str, max_len: int) -> int:
        stream = self._streams.get(key)
        if not stream or len(stream) <= max_len:
            return 0
        removed = 0
        while len(stream) > max_len:
            stream.popleft()
            removed += 1
        return removed

    async def delete(self, key: str) -> None:
        self._streams.pop(key, None)


class RedisStream(StreamBackend):
    """Redis Streams backend for multi-process deployments."""

    def __init__(self, client: aioredis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> RedisStream:
        return cls(aioredis.from_url(url, decode_responses=True))

    async def append(self, key: str, event: dict[str, Any]) -> str:
        try:
            entry_id = await self._client.xadd(key, encode_entry(event))
        except RedisError as e:
            raise StreamBackendError(f"XADD {key} failed: {e}") from e
        return entry_id.decode() if isinstance(entry_id, bytes) else str(entry_id)

    async def range(
        self, key: str, start: str = "-", end: str = "+", limit: int | None = None,
    ) -> list[StreamEntry]:
        try:
            if limit:
                # XRANGE COUNT returns the oldest entries; read newest-first instead
                raw = await self._client.xrevrange(key, max=end, min=start, count=limit)
                raw = list(reversed(raw))
            else:
                raw = await self._client.xrange(key, min=start, max=end)
        except RedisError as e:
            raise StreamBackendError(f"XRANGE {key} failed: {e}") from e

        entries = []
        for entry_id, fields in raw:
            data = fields.get("event")
            if data is None:
                continue
            entries.append(StreamEntry(id=str(entry_id), data=data))
        return entries

    async def length(self, key: str) -> int:
        try:
            return int(await self._client.xlen(key))
        except RedisError as e:
            raise StreamBackendError(f"XLEN {key} failed: {e}") from e

    async def trim(self, key: str, max_len: int) -> int:
        try:
            return int(await self._client.xtrim(key, maxlen=max_len, approximate=False))
        except RedisError as e:
            raise StreamBackendError(f"XTRIM {key} failed: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(key)
        except RedisError as e:
            raise StreamBackendError(f"DEL {key} failed: {e}") from e

    async def close(self) -> None:
        await self._client.aclose()


def create_stream_backend(
    kind: str, redis_url: str = "", max_length: int = DEFAULT_STREAM_LENGTH,
) -> StreamBackend:
    """Pick the backend once, at startup."""
    if kind == "memory":
        return MemoryStream(max_length=max_length)
    if kind == "redis":
        if not redis_url:
            raise ConfigurationError("stream_backend=redis requires a redis_url")
        return RedisStream.from_url(redis_url)
    raise ConfigurationError(f"Unknown stream backend: {kind!r}")
