from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from everest.logging import get_logger
from everest.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


class TokenRevocationList:
    """TTL-bounded set of revoked token hashes.

    Entries live in Redis when a cache is configured so every instance sees
    them; a lock-protected local map is always written as well and serves
    alone when Redis is disabled. Entries expire with the token they name.
    """

    def __init__(
        self,
        cache: Optional[RedisCache | SyncRedisCache] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.cache = cache
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._local: Dict[str, datetime] = {}

    def _prune_locked(self, now: datetime) -> None:
        expired = [key for key, expires in self._local.items() if expires <= now]
        for key in expired:
            self._local.pop(key, None)

    async def revoke(self, token_hash: str, expires_at: datetime) -> None:
        now = self.clock()
        ttl_seconds = int((expires_at - now).total_seconds())
        if ttl_seconds <= 0:
            return
        with self._lock:
            self._prune_locked(now)
            self._local[token_hash] = expires_at
        if self.cache is None:
            return
        try:
            await self.cache.revoke_token(token_hash, ttl_seconds)
        except Exception as exc:
            # The persisted session version still invalidates the token everywhere.
            logger.error("token_revocation_cache_write_failed", error=str(exc))

    async def is_revoked(self, token_hash: str) -> bool:
        now = self.clock()
        with self._lock:
            expires = self._local.get(token_hash)
            if expires is not None:
                if expires > now:
                    return True
                self._local.pop(token_hash, None)
        if self.cache is None:
            return False
        try:
            return await self.cache.is_token_revoked(token_hash)
        except Exception as exc:
            # Session version and refresh hash checks still decide validity.
            logger.error("token_revocation_check_failed", error=str(exc))
            return False

    def local_size(self) -> int:
        with self._lock:
            self._prune_locked(self.clock())
            return len(self._local)
