"""Bearer-token identity for API endpoints."""
from uuid import UUID

from fastapi import Depends, Header
from jose import ExpiredSignatureError, JWTError, jwt

from .config import get_settings
from .errors import AuthenticationError, ForbiddenError


def require_user(authorization: str = Header(default=None)) -> dict:
    """Decode the bearer token and return its claims plus ``user_id``."""
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("Missing bearer token")

    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise AuthenticationError("Missing bearer token")

    settings = get_settings()
    try:
        claims = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"verify_aud": bool(settings.jwt_audience)},
        )
    except ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except JWTError:
        raise AuthenticationError("Invalid token")

    try:
        claims["user_id"] = UUID(str(claims.get("sub")))
    except ValueError:
        raise AuthenticationError("Token subject is not a user id")

    return claims


def require_admin(claims: dict = Depends(require_user)) -> dict:
    if not claims.get("is_admin"):
        raise ForbiddenError("Admin only")
    return claims


def is_admin(claims: dict) -> bool:
    return bool(claims.get("is_admin"))
