import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from brokerage.core.auth import get_current_operator
from brokerage.core.exceptions import ValidationFailedError
from brokerage.database import get_db
from brokerage.schemas.api_key import ApiKeyCreateRequest, ApiKeyCreateResponse
from brokerage.services import api_key_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api-keys", tags=["api-keys"])


@router.post("", response_model=ApiKeyCreateResponse, status_code=201)
async def create_api_key(
    req: ApiKeyCreateRequest,
    db: AsyncSession = Depends(get_db),
    operator_id: str = Depends(get_current_operator),
):
    """Issue a key for direct execution. The plaintext is returned only here."""
    try:
        key, raw_key = await api_key_service.create_api_key(
            db,
            owner_id=req.owner_id,
            name=req.name,
            permissions=req.permissions,
            rate_limit_per_minute=req.rate_limit_per_minute,
            rate_limit_per_hour=req.rate_limit_per_hour,
            daily_budget=req.daily_budget,
            expires_in_days=req.expires_in_days,
        )
    except ValueError as exc:
        raise ValidationFailedError(str(exc))
    logger.info("Operator %s issued API key %s... to %s", operator_id, key.key_prefix, key.owner_id)
    return ApiKeyCreateResponse(
        id=key.id,
        key=raw_key,
        key_prefix=key.key_prefix,
        owner_id=key.owner_id,
        permissions=api_key_service.key_permissions(key),
        rate_limit_per_minute=key.rate_limit_per_minute,
        rate_limit_per_hour=key.rate_limit_per_hour,
        daily_budget=float(key.daily_budget),
        expires_at=key.expires_at,
    )
