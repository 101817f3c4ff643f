"""
auth/verifier.py -- Credential verification (email + password -> Identity).

Enumeration resistance [C1]:
  "No such email" and "wrong password" raise the same
  AuthFailure(INVALID_CREDENTIALS), and both paths run exactly one bcrypt
  comparison (against DUMMY_HASH when there is no account), so neither the
  error nor the response time tells a caller whether an email exists.

  ACCOUNT_DISABLED is only ever raised AFTER the password matched, so it
  does not leak account state to someone without the password either.

A non-admin account whose tenant is inactive (or missing) is disabled.
Admins have no tenant binding and are exempt.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
import re

from auth.errors import AuthFailure, ErrorKind
from auth.models import Account, Identity, Role, TenantStatus
from auth.passwords import DUMMY_HASH, verify_password
from auth.store import CredentialStore, normalize_email

audit = logging.getLogger("tenantportal.audit")

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_MAX_EMAIL_LENGTH = 254


def is_valid_email(email: str) -> bool:
    return 0 < len(email) <= _MAX_EMAIL_LENGTH and _EMAIL_RE.match(email) is not None


class CredentialVerifier:
    """Checks submitted credentials against the credential store."""

    def __init__(self, store: CredentialStore) -> None:
        self._store = store

    def verify(self, email: str, password: str) -> Identity:
        """Return the verified Identity or raise AuthFailure."""
        normalized = normalize_email(email or "")
        account: Account | None = None
        if password and is_valid_email(normalized):
            account = self._store.get_account_by_email(normalized)

        if account is None or account.hashed_password is None:
            # Equalize timing -- do NOT return early before running bcrypt [C1]
            verify_password(password or "", DUMMY_HASH)
            audit.info("login failed kind=%s", ErrorKind.INVALID_CREDENTIALS.value)
            raise AuthFailure(ErrorKind.INVALID_CREDENTIALS)
        if not verify_password(password, account.hashed_password):
            audit.info("login failed kind=%s account=%s", ErrorKind.INVALID_CREDENTIALS.value, account.id)
            raise AuthFailure(ErrorKind.INVALID_CREDENTIALS)

        if not account.is_active:
            audit.info("login refused kind=%s account=%s", ErrorKind.ACCOUNT_DISABLED.value, account.id)
            raise AuthFailure(ErrorKind.ACCOUNT_DISABLED)
        identity = identity_for(self._store, account)
        if identity.role is not Role.ADMIN and not identity.tenant_active:
            audit.info("login refused kind=%s account=%s tenant inactive", ErrorKind.ACCOUNT_DISABLED.value, account.id)
            raise AuthFailure(ErrorKind.ACCOUNT_DISABLED)
        return identity


def identity_for(store: CredentialStore, account: Account) -> Identity:
    """Build the Identity for an account from the store's CURRENT tenant state.

    Used at login and on every refresh, so role changes and tenant
    deactivation are picked up within one refresh cycle.
    """
    tenant_active = True
    tenant_id: str | None = None
    if account.role is not Role.ADMIN:
        tenant_id = account.tenant_id
        tenant = store.get_tenant(tenant_id) if tenant_id else None
        tenant_active = tenant is not None and tenant.status is TenantStatus.ACTIVE
    return Identity(
        user_id=account.id,
        email=account.email,
        display_name=account.display_name,
        role=account.role,
        tenant_id=tenant_id,
        tenant_active=tenant_active,
    )
