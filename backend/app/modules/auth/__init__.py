"""Authentication module."""

from app.modules.auth.jwt import (
    TokenPayload,
    decode_token,
    get_current_token,
    get_current_user_id,
)

__all__ = [
    "TokenPayload",
    "decode_token",
    "get_current_token",
    "get_current_user_id",
]
