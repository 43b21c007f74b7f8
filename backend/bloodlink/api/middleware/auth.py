"""
Bearer-token identity for the API.

Tokens carry the user id (``sub``) and the role the user had when the token
was issued.  A token whose role no longer matches the stored account is
refused, so a demoted user cannot keep acting with an old token.  Route
access is declared per operation with ``require_operation``, which checks
the same role table the services enforce.
"""

from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from bloodlink.config import get_settings
from bloodlink.db.session import get_db
from bloodlink.models.user import User, UserRole
from bloodlink.services.permissions import OPERATION_ROLES, authorize

settings = get_settings()
security = HTTPBearer()


class TokenData(BaseModel):
    user_id: UUID
    role: UserRole


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def token_for(user: User, expires_delta: Optional[timedelta] = None) -> str:
    """Issue a signed token carrying the user's id and current role."""
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=settings.JWT_EXPIRATION_MINUTES))
    claims = {"sub": str(user.id), "role": user.role.value, "exp": expire}
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> TokenData:
    try:
        claims = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
        return TokenData(user_id=claims["sub"], role=claims["role"])
    except (JWTError, KeyError, ValueError):
        raise _unauthorized("Invalid token")


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    token = decode_token(credentials.credentials)
    user = await db.get(User, token.user_id)
    if user is None:
        raise _unauthorized("User not found")
    if user.role != token.role:
        raise _unauthorized("Token role is out of date; sign in again")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Inactive user")
    return user


def require_operation(operation: str):
    """Dependency that admits only the roles allowed to perform *operation*.

    A refusal raises the service-level ``AuthorizationError``, so it is
    rendered like any other 403 from the services.
    """
    if operation not in OPERATION_ROLES:
        raise KeyError(f"Unknown operation {operation!r}")

    async def operation_checker(current_user: User = Depends(get_current_user)) -> User:
        authorize(operation, current_user.role)
        return current_user

    return operation_checker
