"""
auth/policy.py -- Role / tenant authorization policy.

authorize() is a deterministic, side-effect-free function of the validated
Identity (from token claims) and the resource's declared tenant / owner /
addressees. It never touches a database.

Decision table (role x scope):

  | Role         | Same-tenant resource           | Cross-tenant | Own record |
  |--------------|--------------------------------|--------------|------------|
  | admin        | allow                          | allow        | allow      |
  | client_owner | allow                          | deny         | allow      |
  | user         | allow only if owner/addressee  | deny         | allow      |

Refinements on top of the table:
  - A non-admin identity whose tenant is inactive is denied everything
    (TENANT_INACTIVE) until the tenant is reactivated.
  - Addressees (and every member, for tenant_wide resources) may READ; only
    the owner may mutate.
  - A client_owner may manage `user` accounts of its own tenant, but may not
    create or change admin / client_owner accounts other than its own, and may
    not delete the tenant record (INSUFFICIENT_ROLE). This is the privilege-
    escalation guard for team management.

Every Deny carries a reason for the audit log. The transport maps every
denial to one generic 403 -- reasons never reach the caller.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import TypeVar

from auth.errors import DenyReason, Forbidden
from auth.models import Action, Identity, ResourceKind, ResourceRef, Role

audit = logging.getLogger("tenantportal.audit")

T = TypeVar("T")


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: DenyReason | None = None

    def __bool__(self) -> bool:
        return self.allowed


ALLOW = Decision(True)


def deny(reason: DenyReason) -> Decision:
    return Decision(False, reason)


# ---------------------------------------------------------------------------
# Per-role rules. Each is called only for a same-tenant resource of an
# identity whose tenant is active.
# ---------------------------------------------------------------------------


def _is_own_record(identity: Identity, resource: ResourceRef) -> bool:
    return resource.owner_id is not None and resource.owner_id == identity.user_id


def _admin_rule(identity: Identity, action: Action, resource: ResourceRef) -> Decision:
    return ALLOW


def _client_owner_rule(identity: Identity, action: Action, resource: ResourceRef) -> Decision:
    if action is Action.READ or _is_own_record(identity, resource):
        return ALLOW
    if resource.kind is ResourceKind.TENANT and action is Action.DELETE:
        return deny(DenyReason.INSUFFICIENT_ROLE)
    if resource.kind is ResourceKind.ACCOUNT and resource.subject_role is not Role.USER:
        return deny(DenyReason.INSUFFICIENT_ROLE)
    return ALLOW


def _user_rule(identity: Identity, action: Action, resource: ResourceRef) -> Decision:
    if _is_own_record(identity, resource):
        return ALLOW
    if action is Action.READ and (resource.tenant_wide or identity.user_id in resource.addressee_ids):
        return ALLOW
    return deny(DenyReason.NOT_OWNER)


_RULES: dict[Role, Callable[[Identity, Action, ResourceRef], Decision]] = {
    Role.ADMIN: _admin_rule,
    Role.CLIENT_OWNER: _client_owner_rule,
    Role.USER: _user_rule,
}

# Import-time exhaustiveness check: adding a Role without a rule fails loudly.
if set(_RULES) != set(Role):
    raise RuntimeError("every Role needs an authorization rule")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def authorize(identity: Identity, action: Action, resource: ResourceRef) -> Decision:
    """Decide whether identity may perform action on resource."""
    if identity.role is Role.ADMIN:
        return ALLOW
    if not identity.tenant_active:
        return deny(DenyReason.TENANT_INACTIVE)
    if resource.tenant_id is None or resource.tenant_id != identity.tenant_id:
        return deny(DenyReason.WRONG_TENANT)
    return _RULES[identity.role](identity, action, resource)


def enforce(identity: Identity, action: Action, resource: ResourceRef) -> None:
    """Raise Forbidden(reason) unless authorize() allows the request."""
    decision = authorize(identity, action, resource)
    if not decision:
        audit.info(
            "denied user=%s role=%s action=%s kind=%s reason=%s",
            identity.user_id,
            identity.role.value,
            action.value,
            resource.kind.value,
            decision.reason.value,
        )
        raise Forbidden(decision.reason)


def filter_visible(
    identity: Identity,
    items: Iterable[T],
    ref: Callable[[T], ResourceRef] | None = None,
    action: Action = Action.READ,
) -> list[T]:
    """Return the items identity may perform action on (READ by default).

    `ref` maps an item to its ResourceRef; omit it when the items already are
    ResourceRefs.
    """
    to_ref = ref or (lambda item: item)
    return [item for item in items if authorize(identity, action, to_ref(item))]
