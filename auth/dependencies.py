"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Protected requests carry the access token in the standard bearer field:

    Authorization: Bearer <access token>

The token is validated by the SessionManager held on app.state (signature,
expiry, type, sequence number). Role and tenant come from the verified
claims; there is no per-request account lookup beyond the sequence check.

get_current_identity() raises HTTP 401 when no bearer token is present.
A present-but-invalid token raises TokenError, which the API's exception
handler maps to the SAME 401 body -- callers cannot tell "missing" from
"expired" from "revoked".
require_admin() wraps get_current_identity() and raises HTTP 403 otherwise.

get_store() hands routes the portal store behind the SessionManager's
bounded worker calls, so a hung or failing database is a 503 on every
endpoint, not only on the auth flows.

Layer rule: no imports from api/ or cache/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import functools
from typing import Any

from fastapi import HTTPException, Request

from auth.models import Identity, Role
from auth.sessions import SessionManager
from auth.store import PortalStore


def get_session_manager(request: Request) -> SessionManager:
    return request.app.state.session_manager


class BoundedStore:
    """PortalStore facade whose methods run through SessionManager.call().

    Store errors surface as Unavailable (503); IntegrityError still reaches
    the route so duplicates stay a 409.
    """

    def __init__(self, store: PortalStore, manager: SessionManager) -> None:
        self._store = store
        self._manager = manager

    def __getattr__(self, name: str) -> Any:
        attr = getattr(self._store, name)
        if not callable(attr):
            return attr
        return functools.partial(self._manager.call, attr)


def get_store(request: Request) -> BoundedStore:
    return BoundedStore(request.app.state.store, get_session_manager(request))


def bearer_token(request: Request) -> str | None:
    """Return the bearer token from the Authorization header, or None."""
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_current_identity(request: Request) -> Identity:
    """Require authentication. Raises HTTP 401 if the request carries no token.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(identity: Identity = Depends(get_current_identity)): ...
    """
    token = bearer_token(request)
    if token is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return get_session_manager(request).authenticate(token)


def require_admin(request: Request) -> Identity:
    """Require the admin role. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin."""
    identity = get_current_identity(request)
    if identity.role is not Role.ADMIN:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Access denied."},
        )
    return identity
