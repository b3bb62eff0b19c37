# ============================================================
# feeledger/core/security.py
#
# The identity service signs JWTs; we verify them here and turn
# them into a CurrentUser carrying the tenant (school_id) and
# role. Every ledger call is scoped and attributed from this.
#
# How it flows:
#   Request → get_current_user() verifies JWT
#           → returns CurrentUser (has school_id, role)
#           → endpoint function receives it as a parameter
#           → optional require_roles() checks role
#           → get_request_meta() captures IP / user agent for audit
# ============================================================

from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from pydantic import BaseModel

from feeledger.core.config import settings

# Reads: Authorization: Bearer <token>
bearer_scheme = HTTPBearer()


# ── Token payload model ──────────────────────────────────────
class TokenData(BaseModel):
    """What the identity service embeds inside the JWT."""
    user_id: str
    school_id: str
    role: str                   # school_admin | bursar | staff
    email: str
    full_name: str


class CurrentUser(BaseModel):
    """Available in every protected endpoint via Depends."""
    user_id: UUID
    school_id: UUID
    role: str
    email: str
    full_name: str


class RequestMeta(BaseModel):
    """Requester details stamped on every audit entry."""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


# ── Token creation ───────────────────────────────────────────
def create_access_token(data: TokenData) -> str:
    """
    Sign a JWT the same way the identity service does.
    Used by internal tooling and tests; users log in elsewhere.
    """
    expire = datetime.now(timezone.utc) + timedelta(
        minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES
    )
    payload = {
        **data.model_dump(),
        "exp": expire,
        "iat": datetime.now(timezone.utc),
        "type": "access",
    }
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


# ── Token verification ───────────────────────────────────────
def verify_token(token: str) -> TokenData:
    """
    Decode and verify a JWT. Raises HTTPException if invalid.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
        if payload.get("type") != "access":
            raise credentials_exception
        return TokenData(**payload)
    except (JWTError, ValueError):
        raise credentials_exception


# ── FastAPI dependency: get current user ─────────────────────
async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
) -> CurrentUser:
    """
    Add to any endpoint:
        async def my_endpoint(user: CurrentUser = Depends(get_current_user)):
    Missing/invalid token → 401. A token without a tenant → 403.
    """
    token_data = verify_token(credentials.credentials)
    if not token_data.school_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token carries no school scope",
        )
    try:
        return CurrentUser(
            user_id=UUID(token_data.user_id),
            school_id=UUID(token_data.school_id),
            role=token_data.role,
            email=token_data.email,
            full_name=token_data.full_name,
        )
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )


# ── Role guard factory ───────────────────────────────────────
def require_roles(*allowed_roles: str):
    """
    Dependency factory:
        user: CurrentUser = Depends(require_roles("school_admin", "bursar"))
    Wrong role → 403 Forbidden.
    """
    async def check_role(
        current_user: CurrentUser = Depends(get_current_user)
    ) -> CurrentUser:
        if current_user.role not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required role: {' or '.join(allowed_roles)}",
            )
        return current_user
    return check_role


async def get_request_meta(request: Request) -> RequestMeta:
    return RequestMeta(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
