"""
Security utilities
JWT verification and operator credentials

Access tokens are issued by the external auth provider and signed with
JWT_SECRET; this service only verifies them. create_access_token exists
for tooling and tests.
"""

import hmac
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from uuid import UUID

import jwt
import structlog
from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer
from jwt.exceptions import PyJWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from graymall.core.config import settings
from graymall.core.database import get_db
from graymall.core.monitoring import AUTH_FAILURES, AUTH_SUCCESS
from graymall.models.user import User, UserRole

logger = structlog.get_logger()

# Security schemes
bearer_scheme = HTTPBearer(auto_error=False)
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token"""
    to_encode = data.copy()
    now = datetime.now(timezone.utc)

    if expires_delta:
        expire = now + expires_delta
    else:
        expire = now + timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode.update({"exp": expire, "iat": now, "type": "access"})

    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str, expected_type: str = "access") -> Optional[Dict[str, Any]]:
    """Decode and validate a JWT; None when invalid, expired or of another type."""
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            options={"require": ["exp", "iat", "type"]}
        )
        if payload.get("type") != expected_type:
            return None
        return payload
    except PyJWTError:
        return None


def _extract_token(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials],
) -> Optional[str]:
    """
    Extract JWT token from request.
    Priority: Authorization header > httpOnly cookie
    """
    if credentials and credentials.credentials:
        return credentials.credentials

    cookie_token = request.cookies.get(settings.COOKIE_ACCESS_TOKEN_NAME)
    if cookie_token:
        return cookie_token

    return None


async def _user_from_token(db: AsyncSession, token: str) -> User:
    payload = decode_token(token)
    if not payload:
        AUTH_FAILURES.labels(type="jwt", reason="invalid").inc()
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        AUTH_FAILURES.labels(type="jwt", reason="invalid_payload").inc()
        raise HTTPException(status_code=401, detail="Invalid token payload")

    try:
        result = await db.execute(select(User).where(User.id == UUID(str(user_id))))
    except ValueError:
        AUTH_FAILURES.labels(type="jwt", reason="invalid_payload").inc()
        raise HTTPException(status_code=401, detail="Invalid token payload")
    user = result.scalar_one_or_none()

    if not user:
        AUTH_FAILURES.labels(type="jwt", reason="user_not_found").inc()
        raise HTTPException(status_code=401, detail="User not found")

    if not user.is_active:
        AUTH_FAILURES.labels(type="jwt", reason="user_inactive").inc()
        raise HTTPException(status_code=401, detail="User is inactive")

    AUTH_SUCCESS.labels(type="jwt").inc()
    return user


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Get current authenticated user from JWT token.

    Token can be provided via:
    1. Authorization header (Bearer token) - for API clients
    2. httpOnly cookie (access_token) - for browser clients
    """
    token = _extract_token(request, credentials)

    if not token:
        AUTH_FAILURES.labels(type="jwt", reason="missing").inc()
        raise HTTPException(status_code=401, detail="Not authenticated")

    return await _user_from_token(db, token)


async def get_optional_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> Optional[User]:
    """Get current user if authenticated, None otherwise (guest checkout)"""
    token = _extract_token(request, credentials)
    if not token:
        return None

    try:
        return await _user_from_token(db, token)
    except HTTPException:
        return None


async def require_operator(
    request: Request,
    api_key: Optional[str] = Security(api_key_header),
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> str:
    """
    Operator credential for batch endpoints: the BATCH_API_KEY in
    X-API-Key, or an admin session. Returns who authenticated.

    Anything else, including a valid non-admin session, is a 401.
    """
    if api_key:
        if settings.BATCH_API_KEY and hmac.compare_digest(api_key.encode(), settings.BATCH_API_KEY.encode()):
            AUTH_SUCCESS.labels(type="api_key").inc()
            return "api_key"
        AUTH_FAILURES.labels(type="api_key", reason="invalid").inc()
        raise HTTPException(status_code=401, detail="Invalid operator credential")

    token = _extract_token(request, credentials)
    if not token:
        AUTH_FAILURES.labels(type="api_key", reason="missing").inc()
        raise HTTPException(status_code=401, detail="Operator credential required")

    user = await _user_from_token(db, token)
    if user.role != UserRole.ADMIN.value:
        AUTH_FAILURES.labels(type="jwt", reason="not_admin").inc()
        logger.warning("Operator access denied", user_id=str(user.id), role=user.role)
        raise HTTPException(status_code=401, detail="Invalid operator credential")

    return f"admin:{user.id}"
