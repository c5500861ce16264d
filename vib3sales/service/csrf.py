from __future__ import annotations

import hmac
import threading
from datetime import datetime, timedelta
from typing import Dict, Optional, Protocol, Tuple

from vib3sales.logging import get_logger
from vib3sales.service.tokens import generate_secure_token
from vib3sales.storage.models import utcnow

logger = get_logger(__name__)


class CsrfStore(Protocol):
    async def issue(self, session_id: str) -> str: ...

    async def verify(self, session_id: str, token: Optional[str]) -> bool: ...

    async def revoke(self, session_id: str) -> None: ...

    async def sweep(self) -> int: ...


def _tokens_match(expected: Optional[str], supplied: Optional[str]) -> bool:
    if not expected or not supplied:
        return False
    return hmac.compare_digest(expected.encode(), supplied.encode())


class InMemoryCsrfStore:
    """Process-local session id -> (token, created_at) map."""

    def __init__(self, ttl: timedelta = timedelta(hours=24)) -> None:
        self.ttl = ttl
        self._tokens: Dict[str, Tuple[str, datetime]] = {}
        self._lock = threading.Lock()

    async def issue(self, session_id: str) -> str:
        token = generate_secure_token()
        with self._lock:
            self._tokens[session_id] = (token, utcnow())
        return token

    async def verify(self, session_id: str, token: Optional[str]) -> bool:
        with self._lock:
            entry = self._tokens.get(session_id)
            if entry is None:
                return False
            expected, created_at = entry
            if utcnow() - created_at > self.ttl:
                self._tokens.pop(session_id, None)
                return False
        return _tokens_match(expected, token)

    async def revoke(self, session_id: str) -> None:
        with self._lock:
            self._tokens.pop(session_id, None)

    async def sweep(self) -> int:
        cutoff = utcnow() - self.ttl
        with self._lock:
            stale = [sid for sid, (_, created_at) in self._tokens.items() if created_at < cutoff]
            for sid in stale:
                self._tokens.pop(sid, None)
        if stale:
            logger.info("csrf_tokens_swept", count=len(stale))
        return len(stale)


class RedisCsrfStore:
    """CSRF tokens held in Redis so every worker sees the same map.

    Expiry is delegated to Redis key TTLs, so ``sweep`` has nothing to do.
    """

    def __init__(self, cache, ttl: timedelta = timedelta(hours=24)) -> None:
        self.cache = cache
        self.ttl = ttl

    async def issue(self, session_id: str) -> str:
        token = generate_secure_token()
        await self.cache.set_csrf_token(session_id, token, int(self.ttl.total_seconds()))
        return token

    async def verify(self, session_id: str, token: Optional[str]) -> bool:
        expected = await self.cache.get_csrf_token(session_id)
        return _tokens_match(expected, token)

    async def revoke(self, session_id: str) -> None:
        await self.cache.delete_csrf_token(session_id)

    async def sweep(self) -> int:
        return 0


__all__ = ["CsrfStore", "InMemoryCsrfStore", "RedisCsrfStore"]
