"""
api/routes/v1/auth.py -- Authentication and user management REST endpoints.

Routes:
  POST   /api/v1/auth/register                -- self-registration (if enabled)
  POST   /api/v1/auth/login                   -- password login; returns token pair
  POST   /api/v1/auth/refresh                 -- rotate refresh token; returns new pair
  POST   /api/v1/auth/logout                  -- revoke access (+ optional refresh) token
  GET    /api/v1/auth/me                      -- current user (requires auth)
  POST   /api/v1/auth/introspect              -- is this token active? (public)
  POST   /api/v1/auth/users                   -- create user (admin only)
  GET    /api/v1/auth/users                   -- list users (admin only)
  PATCH  /api/v1/auth/users/{id}              -- update status flags (admin only)
  POST   /api/v1/auth/users/{id}/roles        -- grant role (admin only)
  DELETE /api/v1/auth/users/{id}/roles/{role} -- revoke role (admin only)

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT, default 10/minute).
  [C1] AuthService.login() goes through CredentialVerifier, which equalizes
       timing. Never inline a store lookup + password check here.
  [M4] PATCH /users/{id} blocks self-disable.
  [M5] Cache-Control: no-store on every response that carries tokens.
  Failures leave through failure_to_http(), which only exposes the generic
  public message.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import limiter
from api.models import (
    IntrospectRequest,
    IntrospectResponse,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    RoleGrant,
    TokenPairResponse,
    UserCreate,
    UserResponse,
    UserStatusPatch,
)
from auth.dependencies import (
    failure_to_http,
    get_auth_service,
    get_bearer_token,
    get_current_identity,
    require_admin,
)
from auth.models import Failure, TokenPair, VerifiedIdentity
from auth.service import AuthService
from auth.store import UserStore
from core.config import get_settings

# Auth policy:
# - POST   /auth/register, /auth/login, /auth/refresh, /auth/introspect: public
# - POST   /auth/logout, GET /auth/me: requires a valid access token
# - everything under /auth/users: requires role "admin"
router = APIRouter()


def _login_rate_limit() -> str:
    return get_settings().login_rate_limit


def _token_response(pair: TokenPair) -> JSONResponse:
    body = TokenPairResponse(
        access_token=pair.access.value,
        refresh_token=pair.refresh.value,
        token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
        expires_in=int((pair.access.expires_at - pair.access.issued_at).total_seconds()),
        refresh_expires_in=int((pair.refresh.expires_at - pair.refresh.issued_at).total_seconds()),
    )
    resp = JSONResponse(status_code=200, content=body.model_dump())
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _conflict() -> HTTPException:
    return HTTPException(
        status_code=409,
        detail={"code": "conflict", "message": "A user with that username or email already exists."},
    )


# register() raises ValueError for an invalid role or a password over
# 72 UTF-8 bytes; the message names the rule, never the value.
def _invalid(exc: ValueError) -> HTTPException:
    return HTTPException(
        status_code=422,
        detail={"code": "validation_error", "message": str(exc)},
    )


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=UserResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> UserResponse:
    """Create an account with the default roles. Disabled by SELF_REGISTRATION_ENABLED=false."""
    if not request.app.state.settings.self_registration_enabled:
        raise HTTPException(
            status_code=403,
            detail={"code": "registration_disabled", "message": "Self-registration is disabled."},
        )
    service: AuthService = get_auth_service(request)
    try:
        user = service.register(body.username, body.email, body.password)
    except IntegrityError as exc:
        raise _conflict() from exc
    except ValueError as exc:
        raise _invalid(exc) from exc
    return UserResponse.from_record(user)


@limiter.limit(_login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=TokenPairResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username-or-email and password; return an access/refresh pair.

    Unknown identifier and wrong password produce the same 401 body.
    """
    service: AuthService = get_auth_service(request)
    result = service.login(body.identifier, body.password)
    if isinstance(result, Failure):
        exc = failure_to_http(result)
        resp = JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp
    return _token_response(result)


@router.post("/auth/refresh", response_model=TokenPairResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented refresh token is revoked."""
    service: AuthService = get_auth_service(request)
    result = service.refresh(body.refresh_token)
    if isinstance(result, Failure):
        raise failure_to_http(result)
    return _token_response(result)


@router.post("/auth/introspect", response_model=IntrospectResponse)
def introspect(request: Request, body: IntrospectRequest) -> IntrospectResponse:
    """Report whether a token is currently valid (signature, expiry, revocation)."""
    service: AuthService = get_auth_service(request)
    result = service.validator.validate(body.token)
    if isinstance(result, Failure):
        if result.is_transient:
            raise failure_to_http(result)
        return IntrospectResponse(active=False)
    return IntrospectResponse(
        active=True,
        sub=result.subject_id,
        roles=sorted(result.roles),
        token_type=result.token_type.value,
        exp=result.expires_at,
        remaining_seconds=int(result.remaining.total_seconds()),
    )


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, body: LogoutRequest | None = None) -> MessageResponse:
    """Revoke the bearer access token and, if supplied, the refresh token."""
    service: AuthService = get_auth_service(request)
    refresh_token = body.refresh_token if body is not None else None
    result = service.logout(get_bearer_token(request), refresh_token=refresh_token)
    if isinstance(result, Failure):
        raise failure_to_http(result)
    return MessageResponse(message="Logged out.")


@router.get("/auth/me", response_model=UserResponse)
def me(request: Request, identity: VerifiedIdentity = Depends(get_current_identity)) -> UserResponse:
    """Return the stored record of the currently authenticated user."""
    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_id(identity.subject_id)
    if user is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    return UserResponse.from_record(user)


# ---------------------------------------------------------------------------
# User management (admin only)
# ---------------------------------------------------------------------------


@router.post("/auth/users", response_model=UserResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    identity: VerifiedIdentity = Depends(require_admin),
) -> UserResponse:
    """Create a user with explicit roles. Admin only."""
    service: AuthService = get_auth_service(request)
    try:
        user = service.register(
            body.username, body.email, body.password, roles=body.roles, bucket_id=body.bucket_id
        )
    except IntegrityError as exc:
        raise _conflict() from exc
    except ValueError as exc:
        raise _invalid(exc) from exc
    return UserResponse.from_record(user)


@router.get("/auth/users", response_model=list[UserResponse])
def list_users(request: Request, identity: VerifiedIdentity = Depends(require_admin)) -> list[UserResponse]:
    """List all user accounts. Admin only."""
    user_store: UserStore = request.app.state.user_store
    return [UserResponse.from_record(u) for u in user_store.list_users()]


@router.patch("/auth/users/{user_id}", response_model=UserResponse)
def update_user_status(
    request: Request,
    user_id: str,
    body: UserStatusPatch,
    identity: VerifiedIdentity = Depends(require_admin),
) -> UserResponse:
    """Update account status flags. Admin only.

    [M4] An admin cannot disable or lock their own account.
    """
    user_store: UserStore = request.app.state.user_store
    updates = body.model_dump(exclude_none=True)
    if not updates:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    locking_out = updates.get("enabled") is False or updates.get("account_non_locked") is False
    if user_id == identity.subject_id and locking_out:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deactivation", "message": "You cannot disable or lock your own account."},
        )
    if not user_store.set_status(user_id, **updates):
        raise _user_not_found()
    return UserResponse.from_record(user_store.get_by_id(user_id))


@router.post("/auth/users/{user_id}/roles", response_model=UserResponse)
def grant_role(
    request: Request,
    user_id: str,
    body: RoleGrant,
    identity: VerifiedIdentity = Depends(require_admin),
) -> UserResponse:
    """Grant a role. Granting a role the user already holds is a no-op. Admin only."""
    user_store: UserStore = request.app.state.user_store
    user_store.add_role(user_id, body.role)
    user = user_store.get_by_id(user_id)
    if user is None:
        raise _user_not_found()
    return UserResponse.from_record(user)


@router.delete("/auth/users/{user_id}/roles/{role}", status_code=204)
def revoke_role(
    request: Request,
    user_id: str,
    role: str,
    identity: VerifiedIdentity = Depends(require_admin),
) -> Response:
    """Remove a role. Takes effect on the user's next login or refresh. Admin only."""
    user_store: UserStore = request.app.state.user_store
    if user_id == identity.subject_id and role == "admin":
        raise HTTPException(
            status_code=400,
            detail={"code": "self_demotion", "message": "You cannot remove your own admin role."},
        )
    if not user_store.remove_role(user_id, role):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User or role not found."},
        )
    return Response(status_code=204)


def _user_not_found() -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={"code": "not_found", "message": "User not found."},
    )
