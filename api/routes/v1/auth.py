"""
api/routes/v1/auth.py -- Session lifecycle REST endpoints.

Routes:
  POST /api/v1/auth/login              -- email + password -> token pair + identity
  POST /api/v1/auth/refresh            -- refresh token -> new token pair + identity
  POST /api/v1/auth/logout             -- revoke the presented session; always 200
  GET  /api/v1/auth/me                 -- identity of the bearer token (requires auth)
  POST /api/v1/auth/password           -- change own password; returns a fresh pair
  POST /api/v1/auth/sessions/revoke    -- sign out every session of the caller

Security:
  [H2] POST /login and /refresh are rate-limited per IP (settings-driven).
  [C1] Unknown email and wrong password produce the same 401 body, in the
       same time (SessionManager -> CredentialVerifier).
  [M5] Cache-Control: no-store on every response that carries tokens.
  Every AuthFailure / TokenError collapses to one 401 in api/main.py.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_limit, refresh_limit
from api.models import IdentityResponse, LoginRequest, LoginResponse, LogoutRequest, MessageResponse, PasswordChangeRequest, RefreshRequest
from auth.dependencies import get_current_identity, get_session_manager
from auth.errors import PasswordPolicyError
from auth.models import Identity, SessionGrant

# Auth policy:
# - POST /api/v1/auth/login:            public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/refresh:          public -- the refresh token is the credential
# - POST /api/v1/auth/logout:           public -- idempotent, never fails
# - GET  /api/v1/auth/me:               requires auth (get_current_identity)
# - POST /api/v1/auth/password:         requires auth + current password
# - POST /api/v1/auth/sessions/revoke:  requires auth (get_current_identity)
router = APIRouter()


def _grant_response(grant: SessionGrant) -> JSONResponse:
    resp = JSONResponse(status_code=200, content=LoginResponse.from_grant(grant).model_dump(mode="json"))
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; return a token pair.

    Returns the same generic 401 for unknown email, wrong password and a
    disabled account, so the response never reveals whether an email exists.
    """
    grant = get_session_manager(request).login(body.email, body.password)
    return _grant_response(grant)


@limiter.limit(refresh_limit)
@router.post("/auth/refresh", response_model=LoginResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new pair.

    Role, tenant and tenant status are re-read from the store, so changes
    take effect here. A reused (already rotated) refresh token is a 401.
    """
    grant = get_session_manager(request).refresh(body.refresh_token)
    return _grant_response(grant)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, body: Optional[LogoutRequest] = None) -> MessageResponse:
    """End the session owning the refresh token. Always 200, even for unknown tokens."""
    get_session_manager(request).logout(body.refresh_token if body else None)
    return MessageResponse(message="Logged out.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=IdentityResponse)
def me(identity: Identity = Depends(get_current_identity)) -> IdentityResponse:
    """Return identity information from the caller's access token."""
    return IdentityResponse.from_identity(identity)


@router.post("/auth/password", response_model=LoginResponse)
def change_password(
    request: Request,
    body: PasswordChangeRequest,
    identity: Identity = Depends(get_current_identity),
) -> JSONResponse:
    """Change the caller's password.

    Every previously issued token (this session included) stops working;
    the response carries a fresh pair so the caller stays signed in.
    """
    try:
        grant = get_session_manager(request).change_password(identity, body.current_password, body.new_password)
    except PasswordPolicyError as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "weak_password", "message": str(exc)},
        ) from exc
    return _grant_response(grant)


@router.post("/auth/sessions/revoke", response_model=MessageResponse)
def revoke_own_sessions(
    request: Request,
    identity: Identity = Depends(get_current_identity),
) -> MessageResponse:
    """Sign out everywhere: every token issued to the caller stops working."""
    get_session_manager(request).revoke_sessions(identity.user_id)
    return MessageResponse(message="All sessions revoked.")
