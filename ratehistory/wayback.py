"""
Wayback Machine (Internet Archive) client: snapshot index queries with
retry/backoff, raw snapshot fetches, and snapshot list utilities.

The client takes an aiohttp session from the caller; tests hand it a fake.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout

logger = logging.getLogger(__name__)

WAYBACK_BASE = "https://web.archive.org"
CDX_URL = f"{WAYBACK_BASE}/cdx/search/cdx"
CDX_FIELDS = "timestamp,original,mimetype,statuscode,digest"

TRANSIENT_STATUSES = (502, 503, 504)


# ─────────────────────────────────────────────────────────────
# Exceptions
# ─────────────────────────────────────────────────────────────

class ArchiveError(Exception):
    """Base class for archive failures."""
    pass


class ArchiveHTTPError(ArchiveError):
    """Non-2xx response from the archive."""

    def __init__(self, message: str, status: int, url: str):
        super().__init__(message)
        self.status = status
        self.url = url

    @property
    def transient(self) -> bool:
        return self.status in TRANSIENT_STATUSES


class RetryExhausted(ArchiveError):
    """Raised after all retry attempts fail."""
    pass


# ─────────────────────────────────────────────────────────────
# Snapshot model
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class WaybackSnapshot:
    timestamp: str      # YYYYMMDDhhmmss
    url: str            # original URL
    mime_type: str
    status_code: str
    digest: str         # archive content hash, only used for dedup


# ─────────────────────────────────────────────────────────────
# Retry Configuration
# ─────────────────────────────────────────────────────────────

@dataclass
class RetryPolicy:
    attempts: int = 3         # total attempts, including the first
    step: float = 2.0         # sleep attempt * step seconds between attempts

    def __post_init__(self):
        if self.attempts < 1:
            raise ValueError(f"retry attempts must be at least 1, got {self.attempts}")


# ─────────────────────────────────────────────────────────────
# Rate Limiter (token bucket)
# ─────────────────────────────────────────────────────────────

class RateLimiter:
    """
    Simple token bucket rate limiter.
    Keeps request volume to the archive polite.
    """
    def __init__(self, rate_per_sec: float, capacity: int):
        self.rate = rate_per_sec
        self.capacity = capacity
        self.tokens = float(capacity)
        self.t = time.monotonic()

    async def acquire(self):
        while True:
            now = time.monotonic()
            self.tokens = min(
                self.capacity,
                self.tokens + (now - self.t) * self.rate
            )
            self.t = now

            if self.tokens >= 1.0:
                self.tokens -= 1.0
                return

            await asyncio.sleep(0.05)


# ─────────────────────────────────────────────────────────────
# HTTP Session Context Manager
# ─────────────────────────────────────────────────────────────

@asynccontextmanager
async def session(user_agent: Optional[str] = None) -> ClientSession:
    """
    aiohttp session with explicit timeouts; the archive can hang on
    slow index queries.
    """
    headers = {
        "User-Agent": user_agent or "RateHistoryBot/1.0 (+https://example.com)"
    }
    timeout = ClientTimeout(
        total=30,
        connect=10,
        sock_read=20
    )
    async with ClientSession(headers=headers, timeout=timeout) as s:
        yield s


# ─────────────────────────────────────────────────────────────
# Linear Backoff Executor
# ─────────────────────────────────────────────────────────────

def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, ArchiveHTTPError):
        return exc.transient
    return isinstance(exc, (ClientError, asyncio.TimeoutError))


async def linear_backoff_call(fn: Callable[[], Awaitable], policy: RetryPolicy):
    """
    Execute fn(), retrying transient failures (502/503/504, connection
    errors, timeouts) with a linear delay of attempt * step seconds.

    Terminal failures propagate immediately. When the last attempt fails,
    RetryExhausted is raised from the last error.
    """
    last_exc = None

    for attempt in range(1, policy.attempts + 1):
        try:
            return await fn()

        except Exception as e:
            if not is_transient(e):
                raise
            last_exc = e

            if attempt < policy.attempts:
                delay = attempt * policy.step
                logger.warning(
                    f"transient archive failure, retrying in {delay:g}s ({e})",
                    extra={"step": "retry", "error_code": "ARCHIVE_TRANSIENT"},
                )
                await asyncio.sleep(delay)

    raise RetryExhausted(
        f"{policy.attempts} attempts failed: {last_exc}"
    ) from last_exc


# ─────────────────────────────────────────────────────────────
# Archive Client
# ─────────────────────────────────────────────────────────────

class WaybackClient:

    def __init__(
        self,
        http: ClientSession,
        retry: Optional[RetryPolicy] = None,
        limiter: Optional[RateLimiter] = None,
    ):
        self.http = http
        self.retry = retry or RetryPolicy()
        self.limiter = limiter

    async def _throttle(self):
        if self.limiter is not None:
            await self.limiter.acquire()

    async def get_snapshots(
        self,
        url: str,
        from_date: Optional[str] = None,
        to_date: Optional[str] = None,
        limit: Optional[int] = None,
        status_filter: Optional[str] = None,
    ) -> List[WaybackSnapshot]:
        """
        Query the CDX index for snapshots of `url`, collapsed by digest.

        `from_date`/`to_date` use the archive's YYYYMMDD form.
        """
        params: Dict[str, str] = {
            "url": url,
            "output": "json",
            "fl": CDX_FIELDS,
            "collapse": "digest",
        }
        if from_date:
            params["from"] = from_date
        if to_date:
            params["to"] = to_date
        if limit:
            params["limit"] = str(limit)
        if status_filter:
            params["filter"] = f"statuscode:{status_filter}"

        async def _query():
            await self._throttle()
            async with self.http.get(CDX_URL, params=params) as r:
                if r.status >= 300:
                    raise ArchiveHTTPError(
                        f"Wayback CDX API error: {r.status} {r.reason} ({url})",
                        r.status,
                        url,
                    )
                return await r.json(content_type=None)

        rows = await linear_backoff_call(_query, self.retry)
        return parse_cdx_rows(rows)

    async def fetch_snapshot(self, snapshot: WaybackSnapshot) -> str:
        """Fetch the raw archived page (no toolbar injection)."""
        url = snapshot_url(snapshot)
        await self._throttle()
        async with self.http.get(url) as r:
            if r.status >= 300:
                raise ArchiveHTTPError(
                    f"Failed to fetch snapshot: {r.status} {r.reason} ({url})",
                    r.status,
                    url,
                )
            return await r.text()


# ─────────────────────────────────────────────────────────────
# Snapshot Utilities
# ─────────────────────────────────────────────────────────────

def parse_cdx_rows(rows) -> List[WaybackSnapshot]:
    """CDX JSON output is a table whose first row is the header."""
    if not rows or len(rows) <= 1:
        return []
    return [
        WaybackSnapshot(
            timestamp=timestamp,
            url=original,
            mime_type=mimetype,
            status_code=statuscode,
            digest=digest,
        )
        for timestamp, original, mimetype, statuscode, digest in rows[1:]
    ]


def snapshot_url(snapshot: WaybackSnapshot) -> str:
    # id_ returns the page as captured, without the archive toolbar
    return f"{WAYBACK_BASE}/web/{snapshot.timestamp}id_/{snapshot.url}"


def parse_wayback_timestamp(timestamp: str) -> datetime:
    """YYYYMMDDhhmmss (time part optional) -> aware UTC datetime."""
    padded = timestamp[:14].ljust(14, "0")
    return datetime.strptime(padded, "%Y%m%d%H%M%S").replace(tzinfo=timezone.utc)


def timestamp_to_iso(timestamp: str) -> str:
    return parse_wayback_timestamp(timestamp).strftime("%Y-%m-%dT%H:%M:%SZ")


def date_to_wayback_format(date: str) -> str:
    """'2024-03-01' or an ISO datetime -> '20240301'."""
    return date.replace("-", "")[:8]


def deduplicate_snapshots(snapshots: Iterable[WaybackSnapshot]) -> List[WaybackSnapshot]:
    """Keep the first snapshot seen for each digest."""
    seen = set()
    unique = []
    for s in snapshots:
        if s.digest in seen:
            continue
        seen.add(s.digest)
        unique.append(s)
    return unique


def merge_snapshot_lists(*lists: Iterable[WaybackSnapshot]) -> List[WaybackSnapshot]:
    """Merge index lists from several URLs: dedup by digest, then oldest first."""
    merged = deduplicate_snapshots(s for snapshots in lists for s in snapshots)
    return sorted(merged, key=lambda s: s.timestamp)


def find_closest_snapshot(
    snapshots: Iterable[WaybackSnapshot],
    target_timestamp: str,
    max_diff_days: float = 30,
) -> Optional[WaybackSnapshot]:
    """
    Snapshot nearest in time to `target_timestamp`, or None when even the
    nearest is more than `max_diff_days` away. Ties keep the earlier entry.
    """
    target = parse_wayback_timestamp(target_timestamp)
    max_diff = timedelta(days=max_diff_days)

    closest = None
    closest_diff = None
    for snapshot in snapshots:
        diff = abs(parse_wayback_timestamp(snapshot.timestamp) - target)
        if diff > max_diff:
            continue
        if closest_diff is None or diff < closest_diff:
            closest, closest_diff = snapshot, diff

    return closest
