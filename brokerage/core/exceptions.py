from decimal import Decimal

from fastapi import HTTPException, status


class BrokerageError(HTTPException):
    """HTTP error tagged with the pipeline step that raised it."""

    def __init__(self, status_code: int, detail, step: str = "request", headers: dict | None = None):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.step = step


class ValidationFailedError(BrokerageError):
    def __init__(self, detail: str, step: str = "validation"):
        super().__init__(status.HTTP_400_BAD_REQUEST, detail, step=step)


class NotFoundError(BrokerageError):
    def __init__(self, kind: str, item_id: str):
        super().__init__(status.HTTP_404_NOT_FOUND, f"{kind} {item_id} not found", step="lookup")


class UnauthorizedError(BrokerageError):
    def __init__(self, detail: str = "Invalid or missing authentication"):
        super().__init__(status.HTTP_401_UNAUTHORIZED, detail, step="authentication")


class MissingApiKeyError(BrokerageError):
    def __init__(self):
        super().__init__(
            status.HTTP_401_UNAUTHORIZED,
            "API key required (Authorization: Bearer <key> or X-API-Key)",
            step="authentication",
        )


class ForbiddenKeyError(BrokerageError):
    def __init__(self, detail: str = "Invalid API key"):
        super().__init__(status.HTTP_403_FORBIDDEN, detail, step="authorization")


class InsufficientBudgetError(BrokerageError):
    def __init__(self, required: Decimal, remaining: Decimal):
        super().__init__(
            status.HTTP_402_PAYMENT_REQUIRED,
            {
                "error": "Insufficient budget",
                "required": float(required),
                "remaining": float(remaining),
            },
            step="budget_check",
        )


class InsufficientCreditsError(BrokerageError):
    def __init__(self, required: Decimal, available: Decimal):
        super().__init__(
            status.HTTP_402_PAYMENT_REQUIRED,
            {
                "error": "Insufficient credits",
                "required": float(required),
                "available": float(available),
            },
            step="credit_check",
        )


class RateLimitExceededError(BrokerageError):
    def __init__(self, window: str, limit: int, retry_after: int):
        super().__init__(
            status.HTTP_429_TOO_MANY_REQUESTS,
            f"Rate limit exceeded: {limit} calls per {window}",
            step="rate_limit",
            headers={
                "Retry-After": str(retry_after),
                "X-RateLimit-Limit": str(limit),
                "X-RateLimit-Remaining": "0",
            },
        )


class NoAvailableWorkerError(BrokerageError):
    def __init__(self, task_type: str):
        super().__init__(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            f"No available agent for task type '{task_type}'",
            step="agent_assignment",
        )


class InvalidExecutionTransitionError(BrokerageError):
    def __init__(self, current: str, target: str):
        super().__init__(
            status.HTTP_409_CONFLICT,
            f"Execution cannot move from '{current}' to '{target}'",
            step="state_transition",
        )


class ConflictError(BrokerageError):
    def __init__(self, detail: str, step: str = "state_transition"):
        super().__init__(status.HTTP_409_CONFLICT, detail, step=step)
