"""
API request and response models for the tenant portal REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.errors import PasswordPolicyError
from auth.models import Account, Action, Identity, ResourceKind, ResourceRef, Role, SessionGrant, Tenant, TenantStatus
from auth.passwords import check_password_policy
from core.config import get_settings

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^\s@]+@[^\s@]+\.[^\s@]+$"

# Upper bound for any submitted password before it reaches bcrypt. The policy
# itself caps new passwords at 72 UTF-8 bytes.
_MAX_PASSWORD_CHARS = 256


def _enforce_policy(value: str) -> str:
    try:
        check_password_policy(value, get_settings().password_min_length)
    except PasswordPolicyError as exc:
        raise ValueError(str(exc)) from exc
    return value


# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    Email syntax is checked here so malformed input is a 422, but a
    well-formed unknown email is indistinguishable from a wrong password.
    """

    email: str = Field(min_length=3, max_length=254, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=1, max_length=_MAX_PASSWORD_CHARS)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1, max_length=4096)


class LogoutRequest(BaseModel):
    """Logout accepts an absent or unusable token; the endpoint always succeeds."""

    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=_MAX_PASSWORD_CHARS)
    new_password: str = Field(min_length=1, max_length=_MAX_PASSWORD_CHARS)

    @field_validator("new_password")
    @classmethod
    def check_policy(cls, value: str) -> str:
        return _enforce_policy(value)


# ---------------------------------------------------------------------------
# Auth -- response models
# ---------------------------------------------------------------------------


class IdentityResponse(BaseModel):
    """Identity summary returned by login, refresh and GET /auth/me."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    email: str
    display_name: str
    role: Role
    tenant_id: Optional[str]
    tenant_active: bool

    @classmethod
    def from_identity(cls, identity: Identity) -> "IdentityResponse":
        return cls(
            user_id=identity.user_id,
            email=identity.email,
            display_name=identity.display_name,
            role=identity.role,
            tenant_id=identity.tenant_id,
            tenant_active=identity.tenant_active,
        )


class LoginResponse(BaseModel):
    """Token pair plus identity summary. Shared by login, refresh and password change."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: int
    refresh_expires_at: int
    identity: IdentityResponse

    @classmethod
    def from_grant(cls, grant: SessionGrant) -> "LoginResponse":
        return cls(
            access_token=grant.tokens.access_token,
            refresh_token=grant.tokens.refresh_token,
            access_expires_at=grant.tokens.access_expires_at,
            refresh_expires_at=grant.tokens.refresh_expires_at,
            identity=IdentityResponse.from_identity(grant.identity),
        )


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Tenants
# ---------------------------------------------------------------------------


class TenantOwner(BaseModel):
    """Optional first client_owner account created together with a tenant."""

    email: str = Field(min_length=3, max_length=254, pattern=EMAIL_PATTERN)
    display_name: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=_MAX_PASSWORD_CHARS)

    @field_validator("password")
    @classmethod
    def check_policy(cls, value: str) -> str:
        return _enforce_policy(value)


class TenantCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    contact_email: Optional[str] = Field(default=None, max_length=254, pattern=EMAIL_PATTERN)
    owner: Optional[TenantOwner] = None


class TenantPatch(BaseModel):
    """Rename and/or (de)activate a tenant. At least one field is required."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    status: Optional[TenantStatus] = None


class TenantResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    status: TenantStatus
    contact_email: Optional[str]
    created_at: str

    @classmethod
    def from_tenant(cls, tenant: Tenant) -> "TenantResponse":
        return cls(
            id=tenant.id,
            name=tenant.name,
            status=tenant.status,
            contact_email=tenant.contact_email,
            created_at=tenant.created_at or "",
        )


class TenantDeleteResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    deleted_accounts: int


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class AccountCreate(BaseModel):
    """Request body for POST /api/v1/accounts.

    tenant_id defaults to the caller's tenant for client owners. Admin
    accounts are created with the operator CLI, not over HTTP.
    """

    email: str = Field(min_length=3, max_length=254, pattern=EMAIL_PATTERN)
    display_name: str = Field(min_length=1, max_length=255)
    role: Role = Role.USER
    tenant_id: Optional[str] = Field(default=None, max_length=64)
    password: str = Field(min_length=1, max_length=_MAX_PASSWORD_CHARS)

    @field_validator("password")
    @classmethod
    def check_policy(cls, value: str) -> str:
        return _enforce_policy(value)

    @field_validator("role")
    @classmethod
    def tenant_roles_only(cls, value: Role) -> Role:
        if value is Role.ADMIN:
            raise ValueError("admin accounts cannot be created over the API")
        return value


class AccountPatch(BaseModel):
    display_name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    role: Optional[Role] = None
    is_active: Optional[bool] = None

    @field_validator("role")
    @classmethod
    def tenant_roles_only(cls, value: Optional[Role]) -> Optional[Role]:
        if value is Role.ADMIN:
            raise ValueError("the admin role cannot be assigned over the API")
        return value


class AccountResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    display_name: str
    role: Role
    tenant_id: Optional[str]
    is_active: bool
    created_at: str
    last_login: Optional[str]

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            email=account.email,
            display_name=account.display_name,
            role=account.role,
            tenant_id=account.tenant_id,
            is_active=account.is_active,
            created_at=account.created_at or "",
            last_login=account.last_login,
        )


# ---------------------------------------------------------------------------
# Authorization decisions
# ---------------------------------------------------------------------------


class ResourceRefModel(BaseModel):
    """Wire form of a resource reference for POST /api/v1/authorize."""

    kind: ResourceKind
    tenant_id: Optional[str] = Field(default=None, max_length=64)
    owner_id: Optional[str] = Field(default=None, max_length=64)
    addressee_ids: list[str] = Field(default_factory=list, max_length=500)
    tenant_wide: bool = False
    subject_role: Optional[Role] = None

    def to_ref(self) -> ResourceRef:
        return ResourceRef(
            kind=self.kind,
            tenant_id=self.tenant_id,
            owner_id=self.owner_id,
            addressee_ids=frozenset(self.addressee_ids),
            tenant_wide=self.tenant_wide,
            subject_role=self.subject_role,
        )


class AuthorizeRequest(BaseModel):
    action: Action
    resource: ResourceRefModel


class AuthorizeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool = True


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
