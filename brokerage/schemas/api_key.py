from datetime import datetime

from pydantic import BaseModel, Field


class ApiKeyCreateRequest(BaseModel):
    owner_id: str = Field(..., min_length=1, max_length=100)
    name: str = Field(default="", max_length=100)
    permissions: list[str] | None = None
    rate_limit_per_minute: int | None = Field(default=None, gt=0)
    rate_limit_per_hour: int | None = Field(default=None, gt=0)
    daily_budget: float | None = Field(default=None, ge=0)
    expires_in_days: int | None = Field(default=None, gt=0)


class ApiKeyCreateResponse(BaseModel):
    id: str
    key: str
    key_prefix: str
    owner_id: str
    permissions: list[str]
    rate_limit_per_minute: int
    rate_limit_per_hour: int
    daily_budget: float
    expires_at: datetime | None = None
    message: str = "Store this key now; it cannot be shown again"
