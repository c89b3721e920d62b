"""
AgentOS - FastAPI Dependencies
Dependency injection for API routes.

Provides:
- Service access from the application container
- Current principal extraction from the Bearer JWT
- Error translation from service exceptions to HTTP errors
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Annotated, Iterator

import structlog
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import ValidationError

from agentos.api.app import AgentOSApp
from agentos.config import Settings, get_settings
from agentos.kernel.event_system import EventBus
from agentos.security.tokens import TokenError, TokenPayload, decode_token
from agentos.services.agents import AgentRegistry
from agentos.services.identity import IdentityService
from agentos.services.ledger import LedgerService
from agentos.services.marketplace import MarketplaceService
from agentos.services.runtime import RuntimeService
from agentos.services.teams import TeamService
from agentos.services.trust import TrustService

logger = structlog.get_logger(__name__)

# Security scheme
security = HTTPBearer(auto_error=False)


# =============================================================================
# Settings
# =============================================================================

def get_app_settings() -> Settings:
    """Get application settings."""
    return get_settings()


SettingsDep = Annotated[Settings, Depends(get_app_settings)]


# =============================================================================
# AgentOS App Access
# =============================================================================

def get_agentos_app(request: Request) -> AgentOSApp:
    """Get the AgentOSApp container, which must be initialized."""
    agentos_app = getattr(request.app.state, "agentos", None)
    if agentos_app is None or not agentos_app.is_ready:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="AgentOS application not initialized",
        )
    return agentos_app


AppDep = Annotated[AgentOSApp, Depends(get_agentos_app)]


def get_identity_service(app: AppDep) -> IdentityService:
    return app.identity


def get_trust_service(app: AppDep) -> TrustService:
    return app.trust


def get_agent_registry(app: AppDep) -> AgentRegistry:
    return app.registry


def get_runtime_service(app: AppDep) -> RuntimeService:
    return app.runtime


def get_team_service(app: AppDep) -> TeamService:
    return app.teams


def get_ledger_service(app: AppDep) -> LedgerService:
    return app.ledger


def get_marketplace_service(app: AppDep) -> MarketplaceService:
    return app.marketplace


def get_event_bus(app: AppDep) -> EventBus:
    return app.event_bus


IdentityDep = Annotated[IdentityService, Depends(get_identity_service)]
TrustDep = Annotated[TrustService, Depends(get_trust_service)]
RegistryDep = Annotated[AgentRegistry, Depends(get_agent_registry)]
RuntimeDep = Annotated[RuntimeService, Depends(get_runtime_service)]
TeamsDep = Annotated[TeamService, Depends(get_team_service)]
LedgerDep = Annotated[LedgerService, Depends(get_ledger_service)]
MarketplaceDep = Annotated[MarketplaceService, Depends(get_marketplace_service)]
EventBusDep = Annotated[EventBus, Depends(get_event_bus)]


# =============================================================================
# Authentication
# =============================================================================

async def get_token_payload(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> TokenPayload:
    """Require a valid Bearer access token."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return decode_token(credentials.credentials)
    except TokenError as e:
        logger.info("token_rejected", reason=type(e).__name__)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


TokenDep = Annotated[TokenPayload, Depends(get_token_payload)]


async def get_current_principal(token: TokenDep) -> str:
    """Principal id (the `sub` claim) of the caller."""
    return token.sub


PrincipalDep = Annotated[str, Depends(get_current_principal)]


def require_role(role: str):
    """Dependency factory requiring a role claim on the token."""
    async def dependency(token: TokenDep) -> str:
        if role not in token.roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{role}' required",
            )
        return token.sub
    return dependency


GovernanceDep = Annotated[str, Depends(require_role("governance"))]


# =============================================================================
# Error Translation
# =============================================================================

@contextmanager
def service_errors() -> Iterator[None]:
    """
    Map service exceptions to HTTP errors.

    PermissionError -> 403, ValueError -> 404 when the message says
    "not found", otherwise 400.
    """
    try:
        yield
    except PermissionError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e)) from e
    except ValidationError as e:
        detail = "; ".join(err.get("msg", "invalid value") for err in e.errors())
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail) from e
    except ValueError as e:
        message = str(e).splitlines()[0] if str(e) else "Invalid request"
        code = (
            status.HTTP_404_NOT_FOUND
            if "not found" in message.lower()
            else status.HTTP_400_BAD_REQUEST
        )
        raise HTTPException(status_code=code, detail=message) from e


def not_found(what: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{what} not found")
