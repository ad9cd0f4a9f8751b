import logging
import threading
import time
from typing import Tuple

from fastapi import Request
from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine

from tms_billing.config import Settings
from tms_billing.models import RateLimitBucket

logger = logging.getLogger(__name__)

UPSERT_BY_DIALECT = {"postgresql": postgresql_insert, "sqlite": sqlite_insert}


def _window(now: float, window_seconds: int) -> Tuple[int, int]:
    """Start of the fixed window containing `now` and the seconds until it closes."""
    window_seconds = max(window_seconds, 1)
    window_start = int(now) - (int(now) % window_seconds)
    return window_start, max(1, window_start + window_seconds - int(now))


class InMemoryRateLimiter:
    """
    Fixed-window counters held in process memory.
    Suitable for local/single-instance deployments.
    """

    def __init__(self) -> None:
        self._windows: dict[str, Tuple[int, int]] = {}
        self._lock = threading.Lock()

    def allow(self, key: str, limit: int, window_seconds: int) -> Tuple[bool, int]:
        window_start, retry_after = _window(time.time(), window_seconds)
        with self._lock:
            current_start, count = self._windows.get(key, (window_start, 0))
            if current_start != window_start:
                count = 0
            if count >= limit:
                return False, retry_after
            self._windows[key] = (window_start, count + 1)
            return True, 0

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()


class DatabaseRateLimiter:
    """
    Fixed-window counters in the rate_limit_buckets table.
    Works across multiple app instances sharing the same DB.
    """

    def allow(self, engine: Engine, key: str, limit: int, window_seconds: int) -> Tuple[bool, int]:
        now = time.time()
        window_start, retry_after = _window(now, window_seconds)
        upsert = UPSERT_BY_DIALECT[engine.dialect.name](RateLimitBucket).values(
            rate_key=key,
            window_start=window_start,
            request_count=1,
            updated_at=int(now),
        )
        upsert = upsert.on_conflict_do_update(
            index_elements=[RateLimitBucket.rate_key, RateLimitBucket.window_start],
            set_={
                "request_count": RateLimitBucket.request_count + 1,
                "updated_at": int(now),
            },
        )

        with engine.begin() as conn:
            # Earlier windows for this key can never be read again.
            conn.execute(
                delete(RateLimitBucket).where(
                    RateLimitBucket.rate_key == key,
                    RateLimitBucket.window_start < window_start,
                )
            )
            conn.execute(upsert)
            request_count = conn.execute(
                select(RateLimitBucket.request_count).where(
                    RateLimitBucket.rate_key == key,
                    RateLimitBucket.window_start == window_start,
                )
            ).scalar_one()

        if request_count > limit:
            return False, retry_after
        return True, 0


in_memory_rate_limiter = InMemoryRateLimiter()
database_rate_limiter = DatabaseRateLimiter()


def extract_client_ip(request: Request, settings: Settings) -> str:
    """
    Resolve client IP. Proxy headers count only from pinned proxy addresses.
    """
    remote_host = request.client.host if request.client and request.client.host else ""
    if settings.trust_proxy_headers and remote_host in settings.trusted_proxy_ips:
        for header in ("cf-connecting-ip", "x-forwarded-for", "x-real-ip"):
            value = request.headers.get(header)
            if value:
                return value.split(",")[0].strip()
    return remote_host or "unknown"


def check_ip_rate_limit(
    request: Request,
    settings: Settings,
    scope: str,
    limit: int,
    window_seconds: int,
    engine: Engine | None = None,
    user_id: str | None = None,
) -> Tuple[bool, int]:
    """Count the request against `scope` for the client IP, and the user when one is named."""
    key = ":".join(str(part) for part in (scope, extract_client_ip(request, settings), user_id) if part)

    if settings.rate_limit_backend == "database" and engine is not None and engine.dialect.name in UPSERT_BY_DIALECT:
        try:
            return database_rate_limiter.allow(engine, key=key, limit=limit, window_seconds=window_seconds)
        except Exception:
            # Payment flows keep working on the per-process limiter while the DB is unavailable.
            logger.warning("Database rate limiter unavailable scope=%s, using in-memory backend", scope, exc_info=True)

    return in_memory_rate_limiter.allow(key=key, limit=limit, window_seconds=window_seconds)
