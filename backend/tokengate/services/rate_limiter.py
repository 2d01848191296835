"""Fixed-window admission control per identity."""

import asyncio
import math
from collections import defaultdict
from datetime import UTC, datetime, timedelta
from typing import Protocol

import structlog

from tokengate.config import RateLimitConfig
from tokengate.errors import RateLimitExceeded, UpstreamFailure
from tokengate.models.identity import AnonymousIdentity, AnyIdentity, AuthenticatedIdentity, identity_key
from tokengate.models.plans import Plan
from tokengate.services import supabase_client as db
from tokengate.services.store import call_store

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RateLimitStore(Protocol):
    """Storage contract for request windows."""

    async def acquire(self, identity_key: str, window_start: datetime, limit: int) -> int | None:
        """Take one slot in the window starting at ``window_start``.

        Check and increment happen as one atomic step. Returns the new request
        count, or None when the window is already full.
        """


class InMemoryRateLimitStore:
    """In-memory windows used for tests and local fallback."""

    def __init__(self) -> None:
        self.windows: dict[str, tuple[datetime, int]] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def acquire(self, identity_key: str, window_start: datetime, limit: int) -> int | None:
        async with self._locks[identity_key]:
            current_start, count = self.windows.get(identity_key, (window_start, 0))
            if current_start != window_start:
                count = 0
            if count >= limit:
                return None
            count += 1
            self.windows[identity_key] = (window_start, count)
            return count


class SupabaseRateLimitStore:
    """Supabase-backed windows; the conditional increment runs in Postgres."""

    def __init__(self, client) -> None:
        self.client = client

    async def acquire(self, identity_key: str, window_start: datetime, limit: int) -> int | None:
        row = await db.call_rpc_single(
            self.client,
            "acquire_rate_limit_slot",
            {
                "p_identity_key": identity_key,
                "p_window_start": window_start.isoformat(),
                "p_limit": limit,
            },
        )
        if row is None:
            return None
        return int(row["request_count"])


class RateLimiter:
    """Bounds request frequency per identity, independent of token cost."""

    def __init__(
        self,
        store: RateLimitStore,
        config: RateLimitConfig | None = None,
        *,
        store_timeout: float = 5.0,
        now_provider=_utcnow,
    ) -> None:
        self.store = store
        self.config = config or RateLimitConfig()
        self.store_timeout = store_timeout
        self.now_provider = now_provider

    def limit_for(self, identity: AnyIdentity, plan: Plan) -> int:
        match identity:
            case AnonymousIdentity():
                return self.config.anonymous_requests_per_window
            case AuthenticatedIdentity():
                return self.config.requests_per_window[plan]
            case _:
                raise TypeError(f"Unknown identity type: {type(identity).__name__}")

    def window_start(self, now: datetime) -> datetime:
        epoch = int(now.timestamp())
        return datetime.fromtimestamp(epoch - epoch % self.config.window_seconds, tz=UTC)

    async def enforce(self, identity: AnyIdentity, plan: Plan) -> None:
        """Admit the request or raise ``RateLimitExceeded``."""
        if not self.config.enabled:
            return

        key = identity_key(identity)
        limit = self.limit_for(identity, plan)
        now = self.now_provider()
        window_start = self.window_start(now)

        try:
            count = await call_store(
                self.store.acquire(key, window_start, limit),
                timeout=self.store_timeout,
                operation="rate_limit_acquire",
            )
        except UpstreamFailure as e:
            if not self.config.fail_open:
                raise
            # Fail open: the request proceeds unthrottled
            logger.warning("rate_limit_check_skipped", identity_key=key, error=e.message)
            return

        if count is None:
            window_end = window_start + timedelta(seconds=self.config.window_seconds)
            retry_after = max(1, math.ceil((window_end - now).total_seconds()))
            logger.info(
                "rate_limit_exceeded",
                identity_key=key,
                plan=plan.value,
                limit=limit,
                retry_after=retry_after,
            )
            raise RateLimitExceeded(
                f"Rate limit of {limit} requests per {self.config.window_seconds}s exceeded",
                retry_after=retry_after,
                limit=limit,
                window_seconds=self.config.window_seconds,
            )
