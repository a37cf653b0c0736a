from __future__ import annotations

import asyncio
import copy
import logging
import os
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

from authstore.document_codec import DocumentSchema, decode, encode
from authstore.errors import ApiError, is_conflict
from authstore.object_storage import ObjectStoreBackend
from authstore.runtime_profile import env_int

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CacheEntry:
    document: dict[str, Any]
    sha: str | None
    fetched_at: float


class SkipWrite(Exception):
    """Raised from a mutation to end a transaction without writing; ``result`` is returned instead."""

    def __init__(self, result: Any = None) -> None:
        super().__init__("transaction ended without a write")
        self.result = result


class WriteSerializer:
    """Single-flight FIFO queue: one write in flight per store, in arrival order.

    asyncio.Lock wakes waiters first-in first-out, and a job that fails
    releases the slot exactly like one that succeeds.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self.pending = 0

    async def run(self, job: Callable[[], Awaitable[T]]) -> T:
        self.pending += 1
        try:
            async with self._lock:
                return await job()
        finally:
            self.pending -= 1


class DocumentStore:
    """Whole-document read cache and serialized compare-and-swap writer for one remote file."""

    def __init__(
        self,
        backend: ObjectStoreBackend,
        schema: DocumentSchema,
        *,
        cache_ttl_s: float = 3.0,
        recent_write_window_s: float = 10.0,
        post_write_delay_s: float = 0.8,
        conflict_retries: int = 3,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._backend = backend
        self._schema = schema
        self._cache_ttl_s = cache_ttl_s
        self._recent_write_window_s = recent_write_window_s
        self._post_write_delay_s = post_write_delay_s
        self._conflict_retries = conflict_retries
        self._clock = clock
        self._sleep = sleep
        self._serializer = WriteSerializer()
        self._cache: CacheEntry | None = None
        self._last_write_at: float | None = None
        self.fetch_count = 0

    @property
    def path(self) -> str:
        return self._backend.path

    @property
    def backend(self) -> ObjectStoreBackend:
        return self._backend

    @property
    def schema(self) -> DocumentSchema:
        return self._schema

    def _written_recently(self) -> bool:
        if self._last_write_at is None:
            return False
        return self._clock() - self._last_write_at < self._recent_write_window_s

    def _cache_fresh(self) -> bool:
        if self._cache is None:
            return False
        return self._clock() - self._cache.fetched_at < self._cache_ttl_s

    def invalidate(self) -> None:
        self._cache = None

    async def _fetch(self) -> CacheEntry:
        self.fetch_count += 1
        remote = await self._backend.fetch_document()
        if remote is None:
            logger.info("store_document_missing path=%s initializing=empty", self.path)
            entry = CacheEntry(document=self._schema.empty(), sha=None, fetched_at=self._clock())
        else:
            entry = CacheEntry(
                document=decode(remote.content, self._schema),
                sha=remote.sha or None,
                fetched_at=self._clock(),
            )
        self._cache = entry
        return entry

    async def _load(self, *, force_refresh: bool = False) -> CacheEntry:
        if not force_refresh and self._written_recently():
            # the remote may still be serving the pre-write blob
            force_refresh = True
        if force_refresh:
            self.invalidate()
        if self._cache is not None and self._cache_fresh():
            return self._cache
        return await self._fetch()

    async def read(self, *, force_refresh: bool = False) -> dict[str, Any]:
        entry = await self._load(force_refresh=force_refresh)
        return copy.deepcopy(entry.document)

    def peek(self) -> dict[str, Any] | None:
        """Cached document without touching the remote, or None when nothing is cached."""
        if self._cache is None:
            return None
        return copy.deepcopy(self._cache.document)

    async def transact(self, mutate: Callable[[dict[str, Any]], T], *, message: str) -> T:
        """Read, apply ``mutate`` to a private copy, and write the whole document back.

        ``mutate`` may run more than once: on a stale-sha conflict the cycle
        restarts from a fresh read. Anything it raises aborts the transaction
        before a write is attempted; ``SkipWrite`` does so without an error.
        """
        return await self._serializer.run(lambda: self._run_transaction(mutate, message))

    async def _run_transaction(self, mutate: Callable[[dict[str, Any]], T], message: str) -> T:
        attempt = 0
        while True:
            entry = await self._load(force_refresh=attempt > 0)
            document = copy.deepcopy(entry.document)
            try:
                result = mutate(document)
            except SkipWrite as skip:
                return skip.result
            content = encode(document, self._schema, previous=entry.document)
            try:
                new_sha = await self._backend.write_document(content, expected_sha=entry.sha, message=message)
            except ApiError as exc:
                self.invalidate()
                if not is_conflict(exc) or attempt >= self._conflict_retries:
                    logger.error(
                        "store_write_failed path=%s code=%s attempts=%s message=%s",
                        self.path,
                        exc.code,
                        attempt + 1,
                        message,
                    )
                    raise
                attempt += 1
                logger.warning("store_write_conflict path=%s attempt=%s message=%s", self.path, attempt, message)
                continue
            await self._after_write(new_sha)
            return result

    async def _after_write(self, new_sha: str) -> None:
        self._last_write_at = self._clock()
        self.invalidate()
        if self._post_write_delay_s > 0:
            await self._sleep(self._post_write_delay_s)
        try:
            entry = await self._fetch()
        except ApiError as exc:
            self.invalidate()
            logger.warning("store_post_write_refresh_failed path=%s code=%s", self.path, exc.code)
            return
        if new_sha and entry.sha != new_sha:
            logger.info("store_post_write_sha_lag path=%s written=%s served=%s", self.path, new_sha, entry.sha)

    async def force_refresh(self) -> dict[str, Any]:
        await self._load(force_refresh=True)
        return self.cache_status()

    def cache_status(self) -> dict[str, Any]:
        status: dict[str, Any] = {
            "path": self.path,
            "cached": self._cache is not None,
            "age_s": 0.0,
            "sha": None,
            "stale": True,
            "pending_writes": self._serializer.pending,
            "fetch_count": self.fetch_count,
        }
        if self._cache is not None:
            status["age_s"] = round(self._clock() - self._cache.fetched_at, 3)
            status["sha"] = self._cache.sha
            status["stale"] = not self._cache_fresh() or self._written_recently()
        return status


def create_document_store(
    backend: ObjectStoreBackend,
    schema: DocumentSchema,
    environ: Mapping[str, str] | None = None,
) -> DocumentStore:
    env = os.environ if environ is None else environ
    return DocumentStore(
        backend,
        schema,
        cache_ttl_s=env_int(env, "AUTHSTORE_CACHE_TTL_MS", default=3000) / 1000.0,
        recent_write_window_s=env_int(env, "AUTHSTORE_RECENT_WRITE_WINDOW_MS", default=10000) / 1000.0,
        post_write_delay_s=env_int(env, "AUTHSTORE_POST_WRITE_DELAY_MS", default=800) / 1000.0,
        conflict_retries=env_int(env, "AUTHSTORE_CONFLICT_RETRIES", default=3),
    )
