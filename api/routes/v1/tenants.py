"""
api/routes/v1/tenants.py -- Tenant (client organization) administration.

Routes:
  POST   /api/v1/tenants            -- create tenant, optionally with its first client_owner (admin)
  GET    /api/v1/tenants            -- tenants visible to the caller
  GET    /api/v1/tenants/{id}       -- one tenant (policy-checked)
  PATCH  /api/v1/tenants/{id}       -- rename / activate / deactivate (admin)
  DELETE /api/v1/tenants/{id}       -- delete tenant and all its accounts (admin)

Deactivating a tenant suspends its members: login fails with the generic
401, and sessions pick up tenant_active=false on their next refresh, after
which every tenant-scoped action is a 403.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import IntegrityError

from api.models import TenantCreate, TenantDeleteResponse, TenantPatch, TenantResponse
from auth.dependencies import get_current_identity, get_store, require_admin
from auth.models import Account, Action, Identity, ResourceKind, ResourceRef, Role, Tenant
from auth.passwords import hash_password
from auth.policy import enforce, filter_visible

audit = logging.getLogger("tenantportal.audit")

router = APIRouter()


def tenant_ref(tenant: Tenant) -> ResourceRef:
    # Every member may read its own tenant record.
    return ResourceRef(kind=ResourceKind.TENANT, tenant_id=tenant.id, tenant_wide=True)


def _not_found() -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "not_found", "message": "Tenant not found."})


@router.post("/tenants", response_model=TenantResponse, status_code=201)
def create_tenant(
    request: Request,
    body: TenantCreate,
    identity: Identity = Depends(require_admin),
) -> TenantResponse:
    """Create a tenant. Admin only.

    With `owner`, the tenant's first client_owner account is created in the
    same request; a duplicate owner email rolls the tenant back (409).
    """
    store = get_store(request)
    tenant_id = store.create_tenant(Tenant(name=body.name, contact_email=body.contact_email))
    if body.owner is not None:
        owner = Account(
            email=body.owner.email,
            display_name=body.owner.display_name,
            role=Role.CLIENT_OWNER,
            tenant_id=tenant_id,
            hashed_password=hash_password(body.owner.password),
        )
        try:
            store.create_account(owner)
        except IntegrityError as exc:
            store.delete_tenant(tenant_id)
            raise HTTPException(
                status_code=409,
                detail={"code": "conflict", "message": "An account with that email already exists."},
            ) from exc
    audit.info("tenant created tenant=%s by=%s", tenant_id, identity.user_id)
    return TenantResponse.from_tenant(store.get_tenant(tenant_id))


@router.get("/tenants", response_model=list[TenantResponse])
def list_tenants(
    request: Request,
    identity: Identity = Depends(get_current_identity),
) -> list[TenantResponse]:
    """List tenants visible to the caller: all for admins, the caller's own otherwise."""
    store = get_store(request)
    if identity.role is Role.ADMIN:
        tenants = store.list_tenants()
    else:
        own = store.get_tenant(identity.tenant_id)
        tenants = [own] if own is not None else []
    return [TenantResponse.from_tenant(t) for t in filter_visible(identity, tenants, tenant_ref)]


@router.get("/tenants/{tenant_id}", response_model=TenantResponse)
def get_tenant(
    request: Request,
    tenant_id: str,
    identity: Identity = Depends(get_current_identity),
) -> TenantResponse:
    """Return one tenant. Cross-tenant requests get the generic 403.

    The policy runs before the lookup for non-admins, so a 404 never tells a
    tenant member whether some other tenant id exists.
    """
    store = get_store(request)
    enforce(identity, Action.READ, ResourceRef(kind=ResourceKind.TENANT, tenant_id=tenant_id, tenant_wide=True))
    tenant = store.get_tenant(tenant_id)
    if tenant is None:
        raise _not_found()
    return TenantResponse.from_tenant(tenant)


@router.patch("/tenants/{tenant_id}", response_model=TenantResponse)
def update_tenant(
    request: Request,
    tenant_id: str,
    body: TenantPatch,
    identity: Identity = Depends(require_admin),
) -> TenantResponse:
    """Rename and/or change the status of a tenant. Admin only."""
    store = get_store(request)
    if body.name is None and body.status is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    if not store.update_tenant(tenant_id, name=body.name, status=body.status):
        raise _not_found()
    if body.status is not None:
        audit.info("tenant status tenant=%s status=%s by=%s", tenant_id, body.status.value, identity.user_id)
    return TenantResponse.from_tenant(store.get_tenant(tenant_id))


@router.delete("/tenants/{tenant_id}", response_model=TenantDeleteResponse)
def delete_tenant(
    request: Request,
    tenant_id: str,
    identity: Identity = Depends(require_admin),
) -> TenantDeleteResponse:
    """Delete a tenant together with every account bound to it. Admin only."""
    store = get_store(request)
    deleted = store.delete_tenant(tenant_id)
    if deleted is None:
        raise _not_found()
    audit.info("tenant deleted tenant=%s accounts=%d by=%s", tenant_id, len(deleted), identity.user_id)
    return TenantDeleteResponse(id=tenant_id, deleted_accounts=len(deleted))
