"""JWT verification for tokens issued by the hosted auth provider.

This service never issues tokens. It verifies the HS256 signature with the
shared secret and takes the user id from ``sub``.
"""

import uuid
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from app.core.config import settings


class TokenPayload(BaseModel):
    """Claims this service relies on."""

    sub: uuid.UUID  # User ID
    email: Optional[str] = None


def decode_token(token: str) -> TokenPayload | None:
    """Decode and validate a JWT token.

    Args:
        token: Encoded JWT token

    Returns:
        TokenPayload | None: Decoded payload if valid, None otherwise
    """
    if not settings.SECRET_KEY:
        return None
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_aud": False},
        )
        return TokenPayload(sub=payload["sub"], email=payload.get("email"))
    except (JWTError, KeyError, ValueError):
        return None


# FastAPI dependencies
security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> TokenPayload:
    """Verified claims of the caller's bearer token.

    Raises:
        HTTPException: 401 if the token is missing, invalid or expired
    """
    if credentials is None:
        raise _unauthorized("Not authenticated")

    payload = decode_token(credentials.credentials)
    if payload is None:
        raise _unauthorized("Invalid or expired token")
    return payload


async def get_current_user_id(
    token: TokenPayload = Depends(get_current_token),
) -> uuid.UUID:
    """User id of the authenticated caller."""
    return token.sub
