"""
api/routes/v1/accounts.py -- Account (team member) management.

Routes:
  POST   /api/v1/accounts                        -- create a tenant account
  GET    /api/v1/accounts                        -- accounts visible to the caller
  GET    /api/v1/accounts/{id}                   -- one account
  PATCH  /api/v1/accounts/{id}                   -- display name / role / active flag
  DELETE /api/v1/accounts/{id}                   -- delete an account
  POST   /api/v1/accounts/{id}/sessions/revoke   -- sign the account out everywhere

Every route runs through the authorization policy (auth/policy.py):
admins manage everything, client owners manage `user` accounts of their own
tenant, users reach only their own record. Denials are one generic 403.

Security:
  [M4] PATCH / DELETE block self-deactivation, self-deletion and removal of
       the last active admin.
  Escalation guard: a role change is checked against the NEW role too, and
       nobody changes their own role.
  Deactivation bumps the account's sequence number, so its tokens stop
       working immediately rather than at the next refresh.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import IntegrityError

from api.models import AccountCreate, AccountPatch, AccountResponse, MessageResponse
from auth.dependencies import BoundedStore, get_current_identity, get_session_manager, get_store
from auth.models import Account, Action, Identity, ResourceKind, ResourceRef, Role
from auth.passwords import hash_password
from auth.policy import enforce, filter_visible

audit = logging.getLogger("tenantportal.audit")

router = APIRouter()


def account_ref(account: Account) -> ResourceRef:
    return ResourceRef(
        kind=ResourceKind.ACCOUNT,
        tenant_id=account.tenant_id,
        owner_id=account.id,
        subject_role=account.role,
    )


def _load_account(store: BoundedStore, identity: Identity, account_id: str, action: Action) -> Account:
    """Fetch an account and enforce the policy on it.

    A missing account is a 404 for admins only. Everyone else gets the same
    403 as for an account of another tenant, so ids cannot be enumerated.
    """
    account = store.get_account(account_id)
    if account is None:
        if identity.role is Role.ADMIN:
            raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Account not found."})
        enforce(identity, action, ResourceRef(kind=ResourceKind.ACCOUNT, tenant_id=None))
    enforce(identity, action, account_ref(account))
    return account


def _guard_last_admin(store: BoundedStore, target: Account) -> None:
    if target.role is Role.ADMIN and target.is_active and store.count_active_admins() <= 1:
        raise HTTPException(
            status_code=400,
            detail={"code": "last_admin", "message": "Cannot remove the last active admin account."},
        )


@router.post("/accounts", response_model=AccountResponse, status_code=201)
def create_account(
    request: Request,
    body: AccountCreate,
    identity: Identity = Depends(get_current_identity),
) -> AccountResponse:
    """Create a client_owner or user account in a tenant.

    Client owners may only add `user` accounts to their own tenant; admins
    must name the tenant explicitly.
    """
    store = get_store(request)
    tenant_id = body.tenant_id or identity.tenant_id
    if tenant_id is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "tenant_required", "message": "tenant_id is required."},
        )
    enforce(identity, Action.CREATE, ResourceRef(kind=ResourceKind.ACCOUNT, tenant_id=tenant_id, subject_role=body.role))
    if store.get_tenant(tenant_id) is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Tenant not found."})

    account = Account(
        email=body.email,
        display_name=body.display_name,
        role=body.role,
        tenant_id=tenant_id,
        hashed_password=hash_password(body.password),
    )
    try:
        account_id = store.create_account(account)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "An account with that email already exists."},
        ) from exc
    audit.info("account created account=%s role=%s tenant=%s by=%s", account_id, body.role.value, tenant_id, identity.user_id)
    return AccountResponse.from_account(store.get_account(account_id))


@router.get("/accounts", response_model=list[AccountResponse])
def list_accounts(
    request: Request,
    tenant_id: Optional[str] = None,
    identity: Identity = Depends(get_current_identity),
) -> list[AccountResponse]:
    """List accounts the caller may read, optionally narrowed to one tenant (admins)."""
    store = get_store(request)
    scope = tenant_id if identity.role is Role.ADMIN else identity.tenant_id
    accounts = store.list_accounts(scope)
    return [AccountResponse.from_account(a) for a in filter_visible(identity, accounts, account_ref)]


@router.get("/accounts/{account_id}", response_model=AccountResponse)
def get_account(
    request: Request,
    account_id: str,
    identity: Identity = Depends(get_current_identity),
) -> AccountResponse:
    store = get_store(request)
    return AccountResponse.from_account(_load_account(store, identity, account_id, Action.READ))


@router.patch("/accounts/{account_id}", response_model=AccountResponse)
def update_account(
    request: Request,
    account_id: str,
    body: AccountPatch,
    identity: Identity = Depends(get_current_identity),
) -> AccountResponse:
    """Update display name, role or active flag.

    [M4] Prevents:
      - Self-deactivation and changing one's own role.
      - Deactivating the last active admin (no recovery path without DB access).
    """
    store = get_store(request)
    target = _load_account(store, identity, account_id, Action.UPDATE)

    updates: dict = {}
    if body.display_name is not None:
        updates["display_name"] = body.display_name
    if body.role is not None and body.role is not target.role:
        if target.id == identity.user_id:
            raise HTTPException(
                status_code=400,
                detail={"code": "self_role_change", "message": "You cannot change your own role."},
            )
        if target.role is Role.ADMIN:
            raise HTTPException(
                status_code=400,
                detail={"code": "admin_role", "message": "Admin accounts have no tenant role to change."},
            )
        # The caller must be allowed to manage an account of the new role as well.
        enforce(
            identity,
            Action.UPDATE,
            ResourceRef(kind=ResourceKind.ACCOUNT, tenant_id=target.tenant_id, subject_role=body.role),
        )
        updates["role"] = body.role
    if body.is_active is not None and body.is_active != target.is_active:
        if not body.is_active:
            if target.id == identity.user_id:
                raise HTTPException(
                    status_code=400,
                    detail={"code": "self_deactivation", "message": "You cannot deactivate your own account."},
                )
            _guard_last_admin(store, target)
        updates["is_active"] = body.is_active

    if not updates:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )

    store.update_account(account_id, **updates)
    if updates.get("is_active") is False:
        get_session_manager(request).revoke_sessions(account_id)
    audit.info("account updated account=%s fields=%s by=%s", account_id, ",".join(sorted(updates)), identity.user_id)
    return AccountResponse.from_account(store.get_account(account_id))


@router.delete("/accounts/{account_id}", status_code=204)
def delete_account(
    request: Request,
    account_id: str,
    identity: Identity = Depends(get_current_identity),
) -> None:
    store = get_store(request)
    target = _load_account(store, identity, account_id, Action.DELETE)
    if target.id == identity.user_id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deletion", "message": "You cannot delete your own account."},
        )
    _guard_last_admin(store, target)
    store.delete_account(account_id)
    audit.info("account deleted account=%s by=%s", account_id, identity.user_id)


@router.post("/accounts/{account_id}/sessions/revoke", response_model=MessageResponse)
def revoke_account_sessions(
    request: Request,
    account_id: str,
    identity: Identity = Depends(get_current_identity),
) -> MessageResponse:
    """Invalidate every token issued to the account (bumps its sequence number)."""
    store = get_store(request)
    _load_account(store, identity, account_id, Action.UPDATE)
    get_session_manager(request).revoke_sessions(account_id)
    return MessageResponse(message="Sessions revoked.")
