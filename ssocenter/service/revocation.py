from __future__ import annotations

import asyncio
import math
import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol

from ssocenter.logging import get_logger

logger = get_logger(__name__)

MODE_REDIS = "redis"
MODE_LOCAL = "local"


class BlacklistBackend(Protocol):
    def verify_connection(self) -> None: ...

    async def blacklist(self, session_token_id: str, ttl_seconds: int) -> None: ...

    async def is_blacklisted(self, session_token_id: str) -> bool: ...


def session_token_id(user_id: str, session_id: str) -> str:
    return f"{user_id}:{session_id}"


class RevocationCache:
    """Revoked session identifiers held in Redis with an in-process fallback.

    The backend is chosen once, by a connectivity probe at construction,
    and never re-probed. Every add is mirrored into the local map so a
    Redis outage after startup still answers for sessions revoked by this
    process. Redis calls are bounded by ``timeout_seconds``; a failed or
    timed-out check falls back to the local map unless ``fail_closed`` is
    set, in which case the session is treated as revoked.
    """

    def __init__(
        self,
        backend: Optional[BlacklistBackend] = None,
        *,
        timeout_seconds: float = 2.0,
        fail_closed: bool = False,
    ) -> None:
        self.backend = backend
        self.timeout_seconds = timeout_seconds
        self.fail_closed = fail_closed
        self._local: Dict[str, datetime] = {}
        self._lock = threading.Lock()
        self._use_backend = self._probe()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _probe(self) -> bool:
        if self.backend is None:
            logger.info("revocation_cache_mode", mode=MODE_LOCAL, reason="no_backend")
            return False
        try:
            self.backend.verify_connection()
        except Exception as exc:
            logger.warning(
                "revocation_cache_probe_failed",
                error=str(exc),
                error_type=type(exc).__name__,
                mode=MODE_LOCAL,
            )
            return False
        logger.info("revocation_cache_mode", mode=MODE_REDIS)
        return True

    @property
    def mode(self) -> str:
        return MODE_REDIS if self._use_backend else MODE_LOCAL

    @property
    def local_size(self) -> int:
        with self._lock:
            return len(self._local)

    async def add(self, token_id: str, expires_at: datetime) -> None:
        """Blacklist ``token_id`` until ``expires_at``; past expiries are ignored."""
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        remaining = (expires_at - self._now()).total_seconds()
        if remaining <= 0:
            return

        with self._lock:
            current = self._local.get(token_id)
            if current is None or current < expires_at:
                self._local[token_id] = expires_at

        if not self._use_backend:
            return
        try:
            await asyncio.wait_for(
                self.backend.blacklist(token_id, max(1, math.ceil(remaining))),
                timeout=self.timeout_seconds,
            )
        except Exception as exc:
            logger.warning(
                "revocation_write_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def revoke_session(
        self, user_id: str, session_id: str, expires_at: datetime
    ) -> None:
        await self.add(session_token_id(user_id, session_id), expires_at)

    async def is_revoked(self, token_id: str) -> bool:
        if self._use_backend:
            try:
                if await asyncio.wait_for(
                    self.backend.is_blacklisted(token_id),
                    timeout=self.timeout_seconds,
                ):
                    return True
            except Exception as exc:
                logger.warning(
                    "revocation_check_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    fail_closed=self.fail_closed,
                )
                if self.fail_closed:
                    return True
        return self._is_locally_revoked(token_id)

    def _is_locally_revoked(self, token_id: str) -> bool:
        now = self._now()
        with self._lock:
            expires_at = self._local.get(token_id)
            if expires_at is None:
                return False
            if now < expires_at:
                return True
            del self._local[token_id]
            return False

    def purge_expired(self) -> int:
        """Drop local entries at or past expiry; Redis expires its own keys."""
        now = self._now()
        with self._lock:
            expired = [key for key, expires_at in self._local.items() if expires_at <= now]
            for key in expired:
                del self._local[key]
        return len(expired)
