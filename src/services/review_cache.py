"""Redis-backed cache of review verdicts per file chunk.

Entries are content addressed: the key holds the repository id, the file
path and the SHA-256 of the chunk text, never line numbers or timestamps.
"""

import hashlib
import json
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import BaseModel, Field, ValidationError
from redis import Redis
from redis.exceptions import RedisError

from src.models.outputs import ReviewComment

logger = logging.getLogger(__name__)

KEY_PREFIX = "review:cache"


class CacheError(RuntimeError):
    """The cache store could not be read or written."""


class CacheEntry(BaseModel):
    """A cached verdict fragment for one chunk."""

    comments: list[ReviewComment] = Field(default_factory=list)
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


def compute_chunk_hash(content: str) -> str:
    """SHA-256 fingerprint of a chunk's text."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReviewCache:
    """Content-hash keyed store of prior review verdicts with TTL eviction."""

    def __init__(
        self,
        redis: Redis,
        ttl: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.redis = redis
        self.ttl = ttl
        self.clock = clock

    @staticmethod
    def make_key(repo_id: int, file_path: str, chunk_hash: str) -> str:
        return f"{KEY_PREFIX}:{repo_id}:{file_path}:{chunk_hash}"

    def get(self, repo_id: int, file_path: str, chunk_hash: str) -> CacheEntry | None:
        """Return the live entry for the key, or None.

        Entries past their expiry are deleted on access and never returned,
        even while Redis still holds them.
        """
        key = self.make_key(repo_id, file_path, chunk_hash)
        try:
            raw = self.redis.get(key)
        except RedisError as e:
            raise CacheError(f"cache read failed for {file_path}: {e}") from e
        if raw is None:
            return None

        try:
            entry = CacheEntry.model_validate_json(raw)
        except ValidationError:
            logger.warning(f"Discarding malformed cache entry {key}")
            self._delete(key)
            return None

        if entry.is_expired(self.clock()):
            self._delete(key)
            return None
        return entry

    def set(
        self,
        repo_id: int,
        file_path: str,
        chunk_hash: str,
        comments: list[ReviewComment],
        ttl: timedelta | None = None,
    ) -> CacheEntry:
        """Upsert the verdict for a chunk; the latest write wins."""
        ttl = ttl or self.ttl
        now = self.clock()
        entry = CacheEntry(comments=comments, created_at=now, expires_at=now + ttl)
        key = self.make_key(repo_id, file_path, chunk_hash)
        try:
            self.redis.set(key, entry.model_dump_json(), ex=max(1, int(ttl.total_seconds())))
        except RedisError as e:
            raise CacheError(f"cache write failed for {file_path}: {e}") from e
        return entry

    def invalidate(self, repo_id: int, file_path: str | None = None) -> int:
        """Delete every entry for a repository, or for one file in it."""
        pattern = (
            f"{KEY_PREFIX}:{repo_id}:{file_path}:*"
            if file_path
            else f"{KEY_PREFIX}:{repo_id}:*"
        )
        removed = 0
        try:
            for key in self.redis.scan_iter(match=pattern, count=100):
                removed += self.redis.delete(key)
        except RedisError as e:
            raise CacheError(f"cache invalidation failed: {e}") from e
        return removed

    def stats(self, repo_id: int) -> dict[str, Any]:
        try:
            keys = list(self.redis.scan_iter(match=f"{KEY_PREFIX}:{repo_id}:*", count=100))
        except RedisError as e:
            raise CacheError(f"cache stats failed: {e}") from e
        return {"repo_id": repo_id, "total_keys": len(keys)}

    def purge_expired(self) -> int:
        """Background sweep: delete entries whose expiry has passed."""
        now = self.clock()
        removed = 0
        try:
            for key in self.redis.scan_iter(match=f"{KEY_PREFIX}:*", count=100):
                raw = self.redis.get(key)
                if raw is None:
                    continue
                try:
                    expires_at = json.loads(raw)["expires_at"].replace("Z", "+00:00")
                    expired = datetime.fromisoformat(expires_at) <= now
                except (ValueError, KeyError, TypeError):
                    expired = True
                if expired:
                    removed += self.redis.delete(key)
        except RedisError as e:
            raise CacheError(f"cache sweep failed: {e}") from e
        if removed:
            logger.info(f"Purged {removed} expired cache entries")
        return removed

    def _delete(self, key: str) -> None:
        try:
            self.redis.delete(key)
        except RedisError:
            logger.warning(f"Failed to delete cache key {key}")
