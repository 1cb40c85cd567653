from typing import Literal

from pydantic import BaseModel, Field


class ExecuteRequest(BaseModel):
    task_type: Literal["payment", "data", "automation", "ai"]
    payload: dict = Field(default_factory=dict)
    priority: int = Field(default=3, ge=1, le=5)


class AssignedAgent(BaseModel):
    id: str
    name: str
    type: str


class ExecutionCost(BaseModel):
    amount: float
    currency: str = "USD"
    platform_fee: float


class ExecuteResponse(BaseModel):
    success: bool = True
    execution_id: str
    status: str
    agent: AssignedAgent
    cost: ExecutionCost
    message: str
    request_time_ms: int
