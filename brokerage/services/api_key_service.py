"""API keys for direct execution: authentication, permissions, metering and daily budget."""

import json
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from brokerage.config import settings
from brokerage.core.exceptions import ForbiddenKeyError, InsufficientBudgetError, MissingApiKeyError
from brokerage.core.hashing import display_prefix, generate_api_key, hash_api_key
from brokerage.models.api_key import ApiKey
from brokerage.models.execution import ExecutionLog
from brokerage.models.product import ApiUsageMetric
from brokerage.services.billing_service import to_decimal

logger = logging.getLogger(__name__)

PERMISSIONS = ("execute", "status", "balance")

# SQLite evaluates NUMERIC arithmetic in floating point
_BUDGET_EPSILON = Decimal("0.0000005")


def _utcnow():
    return datetime.now(timezone.utc)


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


async def create_api_key(
    db: AsyncSession,
    owner_id: str,
    name: str = "",
    permissions: list[str] | None = None,
    rate_limit_per_minute: int | None = None,
    rate_limit_per_hour: int | None = None,
    daily_budget: float | None = None,
    expires_in_days: int | None = None,
) -> tuple[ApiKey, str]:
    """Create a key and return it with the plaintext, which is never stored."""
    permissions = list(permissions) if permissions is not None else list(PERMISSIONS)
    unknown = set(permissions) - set(PERMISSIONS)
    if unknown:
        raise ValueError(f"Unknown permissions: {sorted(unknown)}")

    raw_key = generate_api_key()
    key = ApiKey(
        key_hash=hash_api_key(raw_key),
        key_prefix=display_prefix(raw_key),
        name=name,
        owner_id=owner_id,
        permissions=json.dumps(permissions),
        rate_limit_per_minute=rate_limit_per_minute or settings.default_rate_limit_per_minute,
        rate_limit_per_hour=rate_limit_per_hour or settings.default_rate_limit_per_hour,
        daily_budget=daily_budget if daily_budget is not None else settings.default_daily_budget,
        expires_at=_utcnow() + timedelta(days=expires_in_days) if expires_in_days else None,
    )
    db.add(key)
    await db.commit()
    await db.refresh(key)
    logger.info("API key %s... created for owner %s", key.key_prefix, owner_id)
    return key, raw_key


async def authenticate_key(db: AsyncSession, raw_key: str | None) -> ApiKey:
    """Resolve a raw key. 401 when absent, 403 when unknown, inactive or expired."""
    if not raw_key:
        raise MissingApiKeyError()
    result = await db.execute(select(ApiKey).where(ApiKey.key_hash == hash_api_key(raw_key)))
    key = result.scalar_one_or_none()
    if key is None or not key.is_active:
        logger.warning("[authorization] Rejected unknown or inactive API key %s...", display_prefix(raw_key))
        raise ForbiddenKeyError("Invalid or inactive API key")
    if key.expires_at is not None and _aware(key.expires_at) <= _utcnow():
        logger.warning("[authorization] Rejected expired API key %s...", key.key_prefix)
        raise ForbiddenKeyError("API key expired")
    return key


def key_permissions(key: ApiKey) -> list[str]:
    try:
        return list(json.loads(key.permissions or "[]"))
    except (TypeError, ValueError):
        return []


def require_permission(key: ApiKey, permission: str) -> None:
    if permission not in key_permissions(key):
        logger.warning("[authorization] API key %s... lacks '%s'", key.key_prefix, permission)
        raise ForbiddenKeyError(f"API key lacks '{permission}' permission")


async def record_call(db: AsyncSession, key: ApiKey, cost=0) -> ApiUsageMetric:
    """Append the per-call usage row the rate limiter counts."""
    metric = ApiUsageMetric(
        consumer_id=key.id,
        time_window=_utcnow(),
        time_granularity="call",
        call_count=1,
        total_cost=to_decimal(cost),
    )
    db.add(metric)
    key.last_used_at = _utcnow()
    await db.flush()
    return metric


async def _roll_daily_counter(db: AsyncSession, key_id: str, today: str) -> None:
    await db.execute(
        update(ApiKey)
        .where(
            ApiKey.id == key_id,
            or_(ApiKey.daily_spent_date.is_(None), ApiKey.daily_spent_date != today),
        )
        .values(daily_spent=0, daily_spent_date=today)
        .execution_options(synchronize_session=False)
    )


async def reserve_spend(db: AsyncSession, key: ApiKey, cost) -> None:
    """Atomically add ``cost`` to today's spend, or raise 402.

    The comparison and the increment are one conditional UPDATE, so two
    concurrent requests cannot both pass the check and overspend.
    """
    cost_d = to_decimal(cost)
    today = _utcnow().date().isoformat()
    await _roll_daily_counter(db, key.id, today)

    result = await db.execute(
        update(ApiKey)
        .where(
            ApiKey.id == key.id,
            ApiKey.daily_spent + cost_d <= ApiKey.daily_budget + _BUDGET_EPSILON,
        )
        .values(daily_spent=ApiKey.daily_spent + cost_d)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await db.rollback()
        await db.refresh(key)
        remaining = max(Decimal("0"), to_decimal(key.daily_budget) - to_decimal(key.daily_spent or 0))
        logger.warning(
            "[budget_check] API key %s... over daily budget (required=%s remaining=%s)",
            key.key_prefix, cost_d, remaining,
        )
        raise InsufficientBudgetError(cost_d, remaining)
    await db.commit()
    await db.refresh(key)


async def release_spend(db: AsyncSession, key_id: str, cost) -> None:
    """Return a reservation after a failed execution. The caller commits."""
    cost_d = to_decimal(cost)
    await db.execute(
        update(ApiKey)
        .where(ApiKey.id == key_id, ApiKey.daily_spent >= cost_d - _BUDGET_EPSILON)
        .values(daily_spent=ApiKey.daily_spent - cost_d)
        .execution_options(synchronize_session=False)
    )


def remaining_budget(key: ApiKey) -> Decimal:
    today = _utcnow().date().isoformat()
    spent = to_decimal(key.daily_spent or 0) if key.daily_spent_date == today else Decimal("0")
    return max(Decimal("0"), to_decimal(key.daily_budget) - spent)


async def get_balance_view(db: AsyncSession, key: ApiKey) -> dict:
    from brokerage.core.rate_limiter import rate_limiter

    logs = (await db.execute(
        select(ExecutionLog.execution_id)
        .where(ExecutionLog.api_key_id == key.id)
        .order_by(ExecutionLog.created_at.desc())
        .limit(10)
    )).scalars().all()
    recent_ids = list(dict.fromkeys(logs))

    today = _utcnow().date().isoformat()
    spent_today = to_decimal(key.daily_spent or 0) if key.daily_spent_date == today else Decimal("0")
    return {
        "api_key": {
            "id": key.id,
            "name": key.name,
            "prefix": key.key_prefix,
            "permissions": key_permissions(key),
            "expires_at": key.expires_at.isoformat() if key.expires_at else None,
        },
        "usage": {
            "total_executions": key.total_executions or 0,
            "total_spent": float(key.total_spent or 0),
            "spent_today": float(spent_today),
            "daily_budget": float(key.daily_budget),
            "remaining_budget": float(remaining_budget(key)),
        },
        "rate_limits": {
            "per_minute": key.rate_limit_per_minute,
            "per_hour": key.rate_limit_per_hour,
            "used_last_minute": await rate_limiter.count_calls(db, key.id, 60),
            "used_last_hour": await rate_limiter.count_calls(db, key.id, 3600),
        },
        "recent_execution_ids": recent_ids,
    }
