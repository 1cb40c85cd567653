from pydantic import BaseModel


class ErrorResponse(BaseModel):
    detail: str | dict | list
    step: str | None = None


class HealthResponse(BaseModel):
    status: str
    version: str
    environment: str
    agents_count: int
    executions_count: int
    queue_depth: int | None = None
