"""
Authentication Routes

Principals are opaque ids carried in the `sub` claim of a Bearer JWT.
Token issuance here is a development convenience and is disabled in
production, where tokens come from an external identity provider that
shares the signing secret.
"""

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field

from agentos.api.dependencies import SettingsDep, TokenDep
from agentos.security.tokens import Token, issue_token

router = APIRouter()


class TokenRequest(BaseModel):
    principal_id: str = Field(min_length=1, max_length=128, pattern=r"^[A-Za-z0-9_.@:-]+$")
    roles: list[str] = Field(default_factory=list, max_length=10)


class PrincipalResponse(BaseModel):
    principal_id: str
    roles: list[str]


@router.post("/token", response_model=Token)
async def create_token(request: TokenRequest, settings: SettingsDep) -> Token:
    """Issue an access token for a principal (non-production only)."""
    if settings.app_env == "production":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token issuance is disabled in production",
        )
    return issue_token(request.principal_id, roles=request.roles)


@router.get("/me", response_model=PrincipalResponse)
async def whoami(token: TokenDep) -> PrincipalResponse:
    return PrincipalResponse(principal_id=token.sub, roles=token.roles)
