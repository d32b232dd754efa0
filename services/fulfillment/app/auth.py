"""
Authentication and authorization utilities for the Fulfillment service.

Two kinds of callers reach the API:

- Platform users, with JWT bearer tokens issued by the identity provider.
- Merchant integrations, with an API key sent as a bearer token to the
  ``/external`` routes. Keys carry a permissions document and an hourly
  request budget.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel
from sqlalchemy.orm import Session

from . import cache, models
from .config import ACCESS_TOKEN_EXPIRE_MINUTES, ALGORITHM, SECRET_KEY
from .database import get_db

logger = logging.getLogger(__name__)

# Security scheme for JWT bearer tokens
security = HTTPBearer(auto_error=False)

ADMIN_ROLES = {models.Role.SJFS_ADMIN.value}
MERCHANT_ROLES = {models.Role.MERCHANT_ADMIN.value, models.Role.MERCHANT_STAFF.value}
OPERATIONS_ROLES = {models.Role.WAREHOUSE_STAFF.value, models.Role.LOGISTICS_PARTNER.value}


class CurrentUser(BaseModel):
    """Current authenticated user information."""
    id: int
    email: str
    role: str
    merchant_id: Optional[int] = None
    token: str

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    @property
    def is_merchant(self) -> bool:
        return self.role in MERCHANT_ROLES


class ApiKeyContext(BaseModel):
    """Resolved API key for an external request."""
    api_key_id: int
    merchant_id: int
    permissions: Dict[str, Any]


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT access token.

    Args:
        data: Dictionary containing the claims to encode in the token
        expires_delta: Optional custom expiration time delta

    Returns:
        Encoded JWT token string
    """
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> CurrentUser:
    """
    FastAPI dependency to get the current authenticated user from JWT token.

    Args:
        credentials: HTTP Authorization credentials (injected)

    Returns:
        Current authenticated user information

    Raises:
        HTTPException: 401 if the token is missing or invalid
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None:
        raise credentials_exception

    try:
        token = credentials.credentials
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        user_id_str: str = payload.get("sub")
        email: str = payload.get("email")
        role: str = payload.get("role")
        merchant_id = payload.get("merchant_id")

        if user_id_str is None or email is None or role is None:
            raise credentials_exception

        return CurrentUser(
            id=int(user_id_str),
            email=email,
            role=role,
            merchant_id=int(merchant_id) if merchant_id is not None else None,
            token=token,
        )
    except (JWTError, ValueError) as e:
        logger.error(f"JWT validation error: {e}")
        raise credentials_exception


def require_roles(*roles: models.Role):
    """
    Build a dependency that only lets the given roles through.

    Example:
        @app.put("/orders/{order_id}")
        def update(current_user = Depends(require_roles(Role.SJFS_ADMIN))): ...
    """
    allowed = {models.Role(role).value for role in roles}

    def dependency(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if current_user.role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions"
            )
        return current_user

    return dependency


def merchant_scope(current_user: CurrentUser) -> Optional[int]:
    """
    Merchant a caller is confined to, or None for platform-wide roles.

    Raises:
        HTTPException: 403 if a merchant role carries no merchant
    """
    if not current_user.is_merchant:
        return None
    if current_user.merchant_id is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User is not linked to a merchant"
        )
    return current_user.merchant_id


def has_api_permission(permissions: Optional[Dict[str, Any]], required: str) -> bool:
    """
    Check a key's permissions document for ``resource:action``.

    Accepts exact keys ("orders:write"), the wildcard ("*") and nested
    resources ({"orders": {"write": true}}).
    """
    if not permissions:
        return False
    if permissions.get("*") is True or permissions.get(required) is True:
        return True

    resource, _, action = required.partition(":")
    nested = permissions.get(resource)
    if isinstance(nested, dict):
        return nested.get(action) is True or nested.get("*") is True
    return False


def get_api_key(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> ApiKeyContext:
    """
    FastAPI dependency resolving the API key of an external request.

    Raises:
        HTTPException: 401 for a missing, unknown or inactive key,
            403 when the merchant may not use the API,
            429 when the key's hourly budget is spent
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    api_key = (
        db.query(models.ApiKey)
        .filter(models.ApiKey.public_key == credentials.credentials)
        .first()
    )
    if api_key is None or not api_key.is_active:
        logger.warning("Rejected external request with unknown or inactive API key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or inactive API key",
            headers={"WWW-Authenticate": "Bearer"},
        )

    merchant = api_key.merchant
    if merchant is None or not merchant.is_active or merchant.onboarding_status != "APPROVED":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Merchant account is not active"
        )

    used = cache.hit_rate_window(api_key.id)
    if used is not None and used > api_key.rate_limit:
        logger.warning(f"API key {api_key.id} exceeded its rate limit of {api_key.rate_limit}/hour")
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded"
        )

    api_key.usage_count = (api_key.usage_count or 0) + 1
    api_key.last_used = datetime.utcnow()
    db.commit()

    return ApiKeyContext(
        api_key_id=api_key.id,
        merchant_id=api_key.merchant_id,
        permissions=api_key.permissions or {},
    )
