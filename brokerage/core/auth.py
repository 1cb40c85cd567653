from datetime import datetime, timedelta, timezone

from fastapi import Header
from jose import JWTError, jwt

from brokerage.config import settings
from brokerage.core.exceptions import MissingApiKeyError, UnauthorizedError


def create_access_token(operator_id: str, operator_name: str) -> str:
    """Create a JWT for a dashboard operator."""
    expire = datetime.now(timezone.utc) + timedelta(hours=settings.jwt_expire_hours)
    payload = {
        "sub": operator_id,
        "name": operator_name,
        "type": "operator",
        "exp": expire,
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    """Decode and validate an operator JWT. Returns the payload."""
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise UnauthorizedError("Invalid or expired token")
    if payload.get("sub") is None:
        raise UnauthorizedError("Token missing subject")
    if payload.get("type") != "operator":
        raise UnauthorizedError("Operator token required")
    return payload


def get_current_operator(authorization: str = Header(None)) -> str:
    """FastAPI dependency that extracts the operator id from the Authorization header."""
    if not authorization:
        raise UnauthorizedError("Missing Authorization header")

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise UnauthorizedError("Authorization header must be: Bearer <token>")

    payload = decode_token(parts[1])
    return payload["sub"]


def get_raw_api_key(
    authorization: str = Header(None),
    x_api_key: str = Header(None),
) -> str:
    """FastAPI dependency returning the raw API key from either supported header."""
    if x_api_key:
        return x_api_key.strip()
    if authorization:
        parts = authorization.split()
        if len(parts) == 2 and parts[0].lower() == "bearer":
            return parts[1]
    raise MissingApiKeyError()
