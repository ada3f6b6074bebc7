"""Bearer-token authentication for the admin API."""

import hmac
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.config import get_settings

_bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AdminPrincipal:
    """Caller authenticated with the shared admin token."""

    token_suffix: str


async def require_admin(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> AdminPrincipal:
    """FastAPI dependency guarding admin routes.

    Raises ``HTTPException(503)`` when no ADMIN_API_TOKEN is configured (fail
    closed) and ``HTTPException(401)`` on a missing or wrong token.

    Usage::

        @router.post("/sync/run")
        async def run(admin: AdminPrincipal = Depends(require_admin)):
            ...
    """
    expected = get_settings().admin_api_token
    if not expected:
        raise HTTPException(status_code=503, detail="Admin API is not configured")

    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing authorization header")

    if not hmac.compare_digest(credentials.credentials.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Invalid admin token")

    principal = AdminPrincipal(token_suffix=expected[-4:])
    # Set on request state for downstream use (error handlers, audit logging)
    request.state.user_id = f"admin:{principal.token_suffix}"
    return principal
