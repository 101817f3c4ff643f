"""
auth/models.py -- Domain dataclasses and enums for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; the codec, store, policy and session manager do the work.

Role is a closed enum rather than a free-form string so every role-dependent
decision table can be checked for exhaustiveness (see auth/policy.py).

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Role(str, Enum):
    ADMIN = "admin"
    CLIENT_OWNER = "client_owner"
    USER = "user"


class TenantStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class Action(str, Enum):
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ResourceKind(str, Enum):
    FILE = "file"
    MESSAGE = "message"
    NEWS = "news"
    ACCOUNT = "account"
    TENANT = "tenant"


@dataclass(frozen=True)
class Identity:
    """A verified caller, as carried in access-token claims.

    tenant_id is None for admins (they are tenant-exempt). tenant_active is
    a snapshot of the tenant's status at issue time; the session manager
    re-reads it on every refresh so deactivation takes effect within one
    refresh cycle.
    """

    user_id: str
    email: str
    display_name: str
    role: Role
    tenant_id: str | None = None
    tenant_active: bool = True


@dataclass
class Tenant:
    """An organizational boundary ("client") that scopes owners and users."""

    name: str
    status: TenantStatus = TenantStatus.ACTIVE
    id: str | None = None
    contact_email: str | None = None
    created_at: str | None = None


@dataclass
class Account:
    """A credential-store record.

    token_sequence is the per-account counter embedded in every token. Bumping
    it (password change, revoke, logout, deactivation) invalidates every token
    issued before the bump without a blocklist.

    hashed_password is None for accounts that have not set a password yet;
    such accounts cannot log in.
    """

    email: str
    display_name: str
    role: Role
    tenant_id: str | None = None
    hashed_password: str | None = None
    token_sequence: int = 0
    is_active: bool = True
    id: str | None = None
    created_at: str | None = None
    last_login: str | None = None


@dataclass(frozen=True)
class TokenPair:
    """Access + refresh tokens with their absolute expiry (UNIX seconds)."""

    access_token: str
    refresh_token: str
    access_expires_at: int
    refresh_expires_at: int


@dataclass(frozen=True)
class Claims:
    """Verified token claims.

    identity is populated for access tokens only. A refresh token decodes to
    user_id + sequence + expiry and nothing usable against a resource.
    """

    token_type: TokenType
    user_id: str
    sequence: int
    issued_at: int
    expires_at: int
    token_id: str
    identity: Identity | None = None


@dataclass(frozen=True)
class SessionGrant:
    """Result of a successful login or refresh."""

    identity: Identity
    tokens: TokenPair


@dataclass(frozen=True)
class ResourceRef:
    """The authorization-relevant shape of any protected entity.

    tenant_id    -- owning tenant; None only for platform-level records.
    owner_id     -- owning / uploading / sending user, when per-user.
    addressee_ids -- users the entity is addressed or assigned to.
    tenant_wide  -- assigned to every member of the tenant (broadcasts,
                    files assigned to the whole client).
    subject_role -- for ACCOUNT resources, the role of the target account.
    """

    kind: ResourceKind
    tenant_id: str | None
    owner_id: str | None = None
    addressee_ids: frozenset[str] = field(default_factory=frozenset)
    tenant_wide: bool = False
    subject_role: Role | None = None
