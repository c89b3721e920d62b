"""
JWT Token Management for AgentOS

Bearer access tokens identifying the calling principal. The `sub` claim is
the principal id that owns identities, agents, teams and listings.
"""

from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

import jwt as pyjwt
import structlog
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError
from pydantic import BaseModel

from agentos.config import get_settings

logger = structlog.get_logger(__name__)

# Hardcoded whitelist against algorithm confusion
ALLOWED_JWT_ALGORITHMS = ["HS256", "HS384", "HS512"]

MAX_TOKEN_SIZE_BYTES = 16 * 1024


class TokenError(Exception):
    """Base exception for token-related errors."""

    pass


class TokenExpiredError(TokenError):
    """Token has expired."""

    pass


class TokenInvalidError(TokenError):
    """Token is invalid or malformed."""

    pass


class TokenPayload(BaseModel):
    """Decoded access token claims."""

    sub: str
    exp: int | None = None
    iat: int | None = None
    jti: str | None = None
    type: str = "access"
    roles: list[str] = []


class Token(BaseModel):
    """Issued token response."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int


def _algorithm() -> str:
    algorithm = get_settings().jwt_algorithm
    if algorithm not in ALLOWED_JWT_ALGORITHMS:
        raise TokenInvalidError(f"Disallowed algorithm: {algorithm}")
    return algorithm


def create_access_token(
    principal_id: str,
    roles: list[str] | None = None,
    expires_minutes: int | None = None,
) -> str:
    """
    Create a JWT access token.

    Args:
        principal_id: Caller identity placed in the `sub` claim
        roles: Optional roles (e.g. "governance" for certification)
        expires_minutes: Override of the configured lifetime

    Returns:
        Encoded JWT access token
    """
    settings = get_settings()
    now = datetime.now(UTC)
    lifetime = expires_minutes or settings.jwt_access_token_expire_minutes
    payload: dict[str, Any] = {
        "sub": principal_id,
        "roles": roles or [],
        "exp": now + timedelta(minutes=lifetime),
        "iat": now,
        "jti": str(uuid4()),
        "type": "access",
    }
    return pyjwt.encode(payload, settings.jwt_secret_key, algorithm=_algorithm())


def issue_token(principal_id: str, roles: list[str] | None = None) -> Token:
    """Create an access token wrapped in a response model."""
    settings = get_settings()
    return Token(
        access_token=create_access_token(principal_id, roles=roles),
        expires_in=settings.jwt_access_token_expire_minutes * 60,
    )


def decode_token(token: str) -> TokenPayload:
    """
    Decode and validate a JWT token.

    Raises:
        TokenExpiredError: If token has expired
        TokenInvalidError: If token is invalid, oversized or not an access token
    """
    if len(token.encode("utf-8")) > MAX_TOKEN_SIZE_BYTES:
        logger.warning("token_too_large", size=len(token))
        raise TokenInvalidError("Token exceeds maximum allowed size")

    try:
        claims = pyjwt.decode(
            token,
            get_settings().jwt_secret_key,
            algorithms=ALLOWED_JWT_ALGORITHMS,
            options={"require": ["sub", "exp", "iat"]},
        )
    except ExpiredSignatureError:
        raise TokenExpiredError("Token has expired")
    except InvalidTokenError as e:
        raise TokenInvalidError(f"Invalid token: {e}")

    payload = TokenPayload(
        sub=claims["sub"],
        exp=claims.get("exp"),
        iat=claims.get("iat"),
        jti=claims.get("jti"),
        type=claims.get("type", "access"),
        roles=claims.get("roles") or [],
    )
    if payload.type != "access":
        raise TokenInvalidError("Not an access token")
    return payload
