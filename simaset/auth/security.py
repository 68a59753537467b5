"""
Bearer token authentication.

Tokens are issued elsewhere (the login surface is not part of this service);
here they are minted for tooling and verified on every request.
"""
import uuid
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

import jwt
import structlog
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..models.models import User
from .authorization import UserAuthorization, has_permission


logger = structlog.get_logger(__name__)

http_bearer = HTTPBearer(auto_error=False)

ACCESS_TOKEN_TYPE = "access"


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def create_access_token(user_id: str, roles: Optional[Iterable[str]] = None, ttl_seconds: Optional[int] = None) -> str:
    issued = datetime.now(tz=timezone.utc)
    claims = {
        "sub": str(user_id),
        "type": ACCESS_TOKEN_TYPE,
        "roles": list(roles or []),
        "iat": issued,
        "exp": issued + timedelta(seconds=ttl_seconds or settings.jwt_ttl_seconds),
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token expired")
    except jwt.InvalidTokenError:
        raise _unauthorized("Invalid token")
    if claims.get("type", ACCESS_TOKEN_TYPE) != ACCESS_TOKEN_TYPE:
        raise _unauthorized("Not an access token")
    return claims


def get_current_user(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    db: Session = Depends(get_db),
) -> User:
    if creds is None:
        raise _unauthorized("Not authenticated")
    claims = decode_token(creds.credentials)
    try:
        user_id = uuid.UUID(str(claims.get("sub")))
    except ValueError:
        raise _unauthorized("Invalid subject")
    user = db.get(User, user_id)
    if user is None or not user.is_active:
        raise _unauthorized("User not active")
    return user


def get_authorization(user: User = Depends(get_current_user)) -> UserAuthorization:
    return UserAuthorization(user)


def require_permissions(*permissions: str):
    """Dependency that passes when the user holds at least one of ``permissions``."""

    def _dep(user: User = Depends(get_current_user)) -> User:
        if not any(has_permission(user, perm) for perm in permissions):
            logger.info("permission_denied", user_id=str(user.id), required=list(permissions))
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
        return user

    return _dep
