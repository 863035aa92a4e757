"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Access tokens arrive as `Authorization: Bearer <token>`. The token is handed
to AuthService.authenticate(); the resulting VerifiedIdentity is what route
handlers receive.

get_bearer_token() extracts the raw token (401 when absent).
get_current_identity() validates it and raises HTTP 401/503 on failure.
require_role(role) builds a dependency that also raises HTTP 403 when the
identity lacks the role.

failure_to_http() is the single place a core Failure becomes an HTTP error.
The response body only ever carries Failure.public_message, so wrong
password / unknown user and forged / expired / revoked tokens look the same
from outside.

Layer rule: no imports from api/. This module may import from fastapi
because it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import ACCOUNT_FAILURES, CREDENTIAL_FAILURES, TOKEN_FAILURES, Failure, VerifiedIdentity
from auth.service import AuthService


def failure_to_http(failure: Failure) -> HTTPException:
    """Map a core Failure to an HTTPException with the generic public message."""
    if failure.reason in CREDENTIAL_FAILURES:
        status, code = 401, "invalid_credentials"
    elif failure.reason in TOKEN_FAILURES:
        status, code = 401, "invalid_token"
    elif failure.reason in ACCOUNT_FAILURES:
        status, code = 403, failure.reason.value
    else:
        status, code = 503, "unavailable"
    exc = HTTPException(
        status_code=status,
        detail={"code": code, "message": failure.public_message},
    )
    if status == 401:
        exc.headers = {"WWW-Authenticate": "Bearer"}
    elif status == 503:
        exc.headers = {"Retry-After": "5"}
    return exc


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_bearer_token(request: Request) -> str:
    """Return the raw bearer token or raise HTTP 401."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return token.strip()


def get_current_identity(request: Request) -> VerifiedIdentity:
    """Require a valid access token.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(identity: VerifiedIdentity = Depends(get_current_identity)): ...
    """
    token = get_bearer_token(request)
    result = get_auth_service(request).authenticate(token)
    if isinstance(result, Failure):
        raise failure_to_http(result)
    return result


def require_role(role: str):
    """Build a dependency that requires `role`. 401 if unauthenticated, 403 if missing the role.

    Use as a FastAPI dependency:
        @router.post("/admin-only")
        async def route(identity: VerifiedIdentity = Depends(require_role("admin"))): ...
    """

    def dependency(request: Request) -> VerifiedIdentity:
        identity = get_current_identity(request)
        if not identity.has_role(role):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": f"Role '{role}' required."},
            )
        return identity

    return dependency


require_admin = require_role("admin")
