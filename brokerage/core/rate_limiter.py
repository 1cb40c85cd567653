"""Per API key call limits, counted from usage-metric rows.

Each metered request appends one ``call`` row. A window check counts the
rows whose window start falls inside the last 60s / 3600s, an approximation
of a sliding window.
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from brokerage.core.exceptions import RateLimitExceededError
from brokerage.models.api_key import ApiKey
from brokerage.models.product import ApiUsageMetric


def _aware(dt: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class KeyRateLimiter:
    windows = (("minute", 60), ("hour", 3600))

    async def count_calls(
        self, db: AsyncSession, key_id: str, seconds: int, now: datetime | None = None,
    ) -> int:
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=seconds)
        result = await db.execute(
            select(func.count(ApiUsageMetric.id)).where(
                ApiUsageMetric.consumer_id == key_id,
                ApiUsageMetric.time_granularity == "call",
                ApiUsageMetric.time_window >= cutoff,
            )
        )
        return int(result.scalar() or 0)

    async def _retry_after(
        self, db: AsyncSession, key_id: str, seconds: int, now: datetime,
    ) -> int:
        cutoff = now - timedelta(seconds=seconds)
        result = await db.execute(
            select(func.min(ApiUsageMetric.time_window)).where(
                ApiUsageMetric.consumer_id == key_id,
                ApiUsageMetric.time_granularity == "call",
                ApiUsageMetric.time_window >= cutoff,
            )
        )
        oldest = result.scalar()
        if oldest is None:
            return 1
        return max(1, int((_aware(oldest) + timedelta(seconds=seconds) - now).total_seconds()))

    async def check(self, db: AsyncSession, key: ApiKey, now: datetime | None = None) -> dict:
        """Raise RateLimitExceededError if either window is full, else return headers."""
        now = now or datetime.now(timezone.utc)
        limits = {
            "minute": key.rate_limit_per_minute,
            "hour": key.rate_limit_per_hour,
        }
        headers: dict[str, str] = {}
        for window, seconds in self.windows:
            limit = limits[window]
            used = await self.count_calls(db, key.id, seconds, now)
            if used >= limit:
                retry_after = await self._retry_after(db, key.id, seconds, now)
                raise RateLimitExceededError(window, limit, retry_after)
            if window == "minute":
                headers = {
                    "X-RateLimit-Limit": str(limit),
                    "X-RateLimit-Remaining": str(max(0, limit - used - 1)),
                }
        return headers


rate_limiter = KeyRateLimiter()
