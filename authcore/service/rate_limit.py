from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple, Union

from authcore.config import RateLimitedEndpoint, RateLimitPolicy
from authcore.logging import get_logger
from authcore.service.audit import AuditSink, StructlogAuditSink
from authcore.service.errors import RateLimitedError
from authcore.storage.models import RateLimitWindow, utcnow
from authcore.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

# Local windows are pruned once the table grows past this size.
_LOCAL_PRUNE_THRESHOLD = 10_000


@dataclass(frozen=True)
class RateLimitResult:
    limited: bool
    remaining: int
    reset_at: datetime
    limit: int
    retry_after_seconds: int = 0


class RateLimiter:
    """Fixed-window attempt counter keyed by ``(identifier, endpoint)``.

    The window opens at the first attempt and lasts ``window_minutes``; the
    attempt that pushes the count past ``max_attempts`` and every later one in
    the same window is limited. Counters live in Redis when a cache is given,
    otherwise in a lock-protected in-process table.
    """

    def __init__(
        self,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
        *,
        audit: Optional[AuditSink] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cache = cache
        self.audit = audit or StructlogAuditSink()
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: Dict[Tuple[str, str], RateLimitWindow] = {}

    @staticmethod
    def _endpoint_name(endpoint: Union[RateLimitedEndpoint, str]) -> str:
        if isinstance(endpoint, RateLimitedEndpoint):
            return endpoint.value
        return str(endpoint)

    def _hit_local(
        self, identifier: str, endpoint: str, window: timedelta, now: datetime
    ) -> Tuple[int, datetime]:
        with self._lock:
            key = (identifier, endpoint)
            current = self._windows.get(key)
            if current is None or now >= current.window_ends:
                if len(self._windows) > _LOCAL_PRUNE_THRESHOLD:
                    self._prune_locked(now)
                current = RateLimitWindow(
                    identifier=identifier,
                    endpoint=endpoint,
                    window_start=now,
                    window_ends=now + window,
                )
                self._windows[key] = current
            current.attempt_count += 1
            return current.attempt_count, current.window_ends

    def _prune_locked(self, now: datetime) -> None:
        expired = [key for key, w in self._windows.items() if now >= w.window_ends]
        for key in expired:
            del self._windows[key]

    async def check(
        self,
        identifier: str,
        endpoint: Union[RateLimitedEndpoint, str],
        max_attempts: int,
        window_minutes: int,
    ) -> RateLimitResult:
        """Record one attempt and report whether it is over the limit."""

        endpoint_name = self._endpoint_name(endpoint)
        now = self._clock()
        window = timedelta(minutes=window_minutes)
        if self.cache is not None:
            count, ttl_ms = await self.cache.hit_window(
                f"{endpoint_name}:{identifier}", int(window.total_seconds())
            )
            reset_at = now + timedelta(milliseconds=max(0, ttl_ms))
        else:
            count, reset_at = self._hit_local(identifier, endpoint_name, window, now)

        limited = count > max_attempts
        retry_after = 0
        if limited:
            retry_after = max(1, math.ceil((reset_at - now).total_seconds()))
            logger.warning(
                "rate_limit_exceeded",
                endpoint=endpoint_name,
                attempts=count,
                limit=max_attempts,
                retry_after=retry_after,
            )
            self.audit.record(
                "rate_limit_tripped",
                {"endpoint": endpoint_name, "identifier": identifier, "attempts": count},
            )
        return RateLimitResult(
            limited=limited,
            remaining=max(0, max_attempts - count),
            reset_at=reset_at,
            limit=max_attempts,
            retry_after_seconds=retry_after,
        )

    async def enforce(
        self,
        identifier: str,
        endpoint: Union[RateLimitedEndpoint, str],
        policy: RateLimitPolicy,
    ) -> RateLimitResult:
        """Like ``check`` but raises ``RateLimitedError`` when limited."""

        result = await self.check(
            identifier, endpoint, policy.max_attempts, policy.window_minutes
        )
        if result.limited:
            raise RateLimitedError(
                "too many attempts, please try again later",
                retry_after_seconds=result.retry_after_seconds,
                remaining=result.remaining,
                limit=result.limit,
            )
        return result
