"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
PortalStore is the repository; _row_to_tenant / _row_to_account are the
mappers. Session and route code never touches SQL directly.

The session manager depends on two narrow protocols rather than on this
class, so a different database or key-value backend can be swapped in:
  CredentialStore -- account and tenant lookups, sequence numbers
  TokenStore      -- single-use consumption of refresh tokens

Security:
  All queries use bound parameters. No f-strings in SQL.

  Sequence numbers are only ever changed by a single UPDATE statement that
  increments in SQL (token_sequence = token_sequence + 1), optionally guarded
  by the expected current value in the WHERE clause. Two concurrent bumps can
  never collapse into one, so no invalidation is lost.

  Refresh-token consumption is an INSERT keyed by the token's jti. The
  primary key makes the second consumer fail with IntegrityError, which is
  how exactly one concurrent rotation wins, even across processes. An
  optional consumer tag makes the insert idempotent for its own caller: a
  retry after a timed-out (but committed) consume still counts as a win.

  Emails are stored lower-cased and looked up case-insensitively.

DB path: auth/portal_auth.db unless Settings.database_url is set.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import Account, Role, Tenant, TenantStatus

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'portal_auth.db'}"

# ---------------------------------------------------------------------------
# Protocols (the external-collaborator interfaces)
# ---------------------------------------------------------------------------


class CredentialStore(Protocol):
    def get_account(self, account_id: str) -> Account | None: ...

    def get_account_by_email(self, email: str) -> Account | None: ...

    def get_tenant(self, tenant_id: str) -> Tenant | None: ...

    def get_token_sequence(self, account_id: str) -> int | None: ...

    def increment_token_sequence(self, account_id: str, expected: int | None = None) -> int | None: ...

    def update_account(self, account_id: str, **fields) -> bool: ...

    def update_last_login(self, account_id: str) -> None: ...


class TokenStore(Protocol):
    def consume_refresh_token(
        self, token_id: str, account_id: str, expires_at: int, consumer: str | None = None
    ) -> bool: ...

    def purge_consumed_tokens(self, now: float) -> int: ...


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_tenants = Table(
    "tenants",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("status", String(16), nullable=False, server_default=TenantStatus.ACTIVE.value),
    Column("contact_email", String(255)),
    Column("created_at", String(32), nullable=False),
)

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("display_name", String(255), nullable=False),
    Column("hashed_password", Text),  # NULL until a password is set
    Column("role", String(30), nullable=False, server_default=Role.USER.value),
    Column("tenant_id", String(32), ForeignKey("tenants.id"), index=True),  # NULL for admins
    Column("token_sequence", Integer, nullable=False, server_default="0"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", Text),
)

_consumed_refresh_tokens = Table(
    "consumed_refresh_tokens",
    _metadata,
    Column("token_id", String(64), primary_key=True),  # the refresh token's jti
    Column("account_id", String(32), nullable=False, index=True),
    Column("expires_at", Integer, nullable=False),  # purge after this instant
    Column("consumed_at", String(32), nullable=False),
    Column("consumer", String(32)),  # tag of the rotation that consumed it
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign keys on every new connection.

    WAL lets readers proceed while a writer holds the lock. SQLite PRAGMAs
    are per-connection, so they are applied on each pool checkout source.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return uuid.uuid4().hex


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class PortalStore:
    """Repository for Tenant and Account entities and consumed refresh tokens.

    Usage:
        store = PortalStore()
        tenant_id = store.create_tenant(Tenant(name="Acme"))
        store.create_account(Account(email="owner@acme.test", display_name="Owner",
                                     role=Role.CLIENT_OWNER, tenant_id=tenant_id,
                                     hashed_password=hash_password("...")))
        account = store.get_account_by_email("OWNER@acme.test")
        store.close()
    """

    # Columns update_account() may change. Anything else is a programming error.
    _MUTABLE_ACCOUNT_FIELDS: frozenset[str] = frozenset({"display_name", "role", "is_active", "hashed_password"})

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    # ------------------------------------------------------------------
    # Tenants
    # ------------------------------------------------------------------

    def create_tenant(self, tenant: Tenant) -> str:
        """Insert a tenant and return its new id."""
        tenant_id = tenant.id or _new_id()
        with self.engine.begin() as conn:
            conn.execute(
                _tenants.insert().values(
                    id=tenant_id,
                    name=tenant.name,
                    status=TenantStatus(tenant.status).value,
                    contact_email=normalize_email(tenant.contact_email) if tenant.contact_email else None,
                    created_at=_now_iso(),
                )
            )
        return tenant_id

    def get_tenant(self, tenant_id: str) -> Tenant | None:
        with self.engine.connect() as conn:
            row = conn.execute(_tenants.select().where(_tenants.c.id == tenant_id)).fetchone()
        return _row_to_tenant(row) if row is not None else None

    def list_tenants(self) -> list[Tenant]:
        """Return all tenants ordered by name. Admin-only operation."""
        with self.engine.connect() as conn:
            rows = conn.execute(_tenants.select().order_by(_tenants.c.name)).fetchall()
        return [_row_to_tenant(r) for r in rows]

    def update_tenant(self, tenant_id: str, *, name: str | None = None, status: TenantStatus | None = None) -> bool:
        """Rename and/or change the status of a tenant. Returns False if not found."""
        values: dict = {}
        if name is not None:
            values["name"] = name
        if status is not None:
            values["status"] = TenantStatus(status).value
        if not values:
            return self.get_tenant(tenant_id) is not None
        with self.engine.begin() as conn:
            result = conn.execute(_tenants.update().where(_tenants.c.id == tenant_id).values(**values))
        return result.rowcount > 0

    def delete_tenant(self, tenant_id: str) -> list[str] | None:
        """Delete a tenant and every account bound to it, in one transaction.

        Returns the ids of the deleted accounts, or None if the tenant did not
        exist. Their tokens become unusable because the accounts are gone.
        """
        with self.engine.begin() as conn:
            exists = conn.execute(select(_tenants.c.id).where(_tenants.c.id == tenant_id)).fetchone()
            if exists is None:
                return None
            account_ids = [
                row.id for row in conn.execute(select(_accounts.c.id).where(_accounts.c.tenant_id == tenant_id))
            ]
            conn.execute(_accounts.delete().where(_accounts.c.tenant_id == tenant_id))
            conn.execute(_tenants.delete().where(_tenants.c.id == tenant_id))
        return account_ids

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def has_accounts(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_accounts)).scalar()
        return (result or 0) > 0

    def create_account(self, account: Account) -> str:
        """Insert a new account and return its id.

        Raises sqlalchemy.exc.IntegrityError if the email already exists or
        the tenant does not. Callers map that to a 409.
        """
        account_id = account.id or _new_id()
        with self.engine.begin() as conn:
            conn.execute(
                _accounts.insert().values(
                    id=account_id,
                    email=normalize_email(account.email),
                    display_name=account.display_name,
                    hashed_password=account.hashed_password,
                    role=Role(account.role).value,
                    tenant_id=account.tenant_id,
                    token_sequence=account.token_sequence,
                    is_active=1 if account.is_active else 0,
                    created_at=_now_iso(),
                )
            )
        return account_id

    def get_account(self, account_id: str) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_account_by_email(self, email: str) -> Account | None:
        """Case-insensitive exact match on email. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _accounts.select().where(func.lower(_accounts.c.email) == normalize_email(email))
            ).fetchone()
        return _row_to_account(row) if row is not None else None

    def list_accounts(self, tenant_id: str | None = None) -> list[Account]:
        """Return accounts ordered by email, optionally limited to one tenant."""
        query = _accounts.select().order_by(_accounts.c.email)
        if tenant_id is not None:
            query = query.where(_accounts.c.tenant_id == tenant_id)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_account(r) for r in rows]

    def update_account(self, account_id: str, **fields) -> bool:
        """Update mutable fields on an existing account.

        Accepted fields: display_name, role, is_active, hashed_password.
        Returns True if a row was updated, False if account_id was not found.
        """
        unknown = set(fields) - self._MUTABLE_ACCOUNT_FIELDS
        if unknown:
            raise ValueError(f"Unknown account fields: {unknown!r}")
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        if "role" in fields:
            fields["role"] = Role(fields["role"]).value
        if not fields:
            return self.get_account(account_id) is not None
        with self.engine.begin() as conn:
            result = conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(**fields))
        return result.rowcount > 0

    def delete_account(self, account_id: str) -> bool:
        """Permanently delete an account. Returns True if deleted, False if not found.

        Callers must check last-admin invariants before calling this method.
        """
        with self.engine.begin() as conn:
            result = conn.execute(_accounts.delete().where(_accounts.c.id == account_id))
        return result.rowcount > 0

    def count_active_admins(self) -> int:
        """Return the number of active admin accounts (last-admin guard)."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_accounts)
                .where((_accounts.c.role == Role.ADMIN.value) & (_accounts.c.is_active == 1))
            ).scalar()
        return result or 0

    def update_last_login(self, account_id: str) -> None:
        """Stamp the current UTC timestamp as last_login for the account."""
        with self.engine.begin() as conn:
            conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(last_login=_now_iso()))

    # ------------------------------------------------------------------
    # Sequence numbers
    # ------------------------------------------------------------------

    def get_token_sequence(self, account_id: str) -> int | None:
        """Return the account's current sequence number, or None if it does not exist."""
        with self.engine.connect() as conn:
            return conn.execute(
                select(_accounts.c.token_sequence).where(_accounts.c.id == account_id)
            ).scalar_one_or_none()

    def increment_token_sequence(self, account_id: str, expected: int | None = None) -> int | None:
        """Atomically bump the sequence number and return the new value.

        With `expected`, this is a compare-and-increment: the UPDATE only
        matches while the stored value still equals `expected`, and None is
        returned when it does not (someone else bumped it first) or when the
        account does not exist. Without `expected` the increment is
        unconditional.
        """
        condition = _accounts.c.id == account_id
        if expected is not None:
            condition = condition & (_accounts.c.token_sequence == expected)
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update().where(condition).values(token_sequence=_accounts.c.token_sequence + 1)
            )
            if result.rowcount == 0:
                return None
            return conn.execute(
                select(_accounts.c.token_sequence).where(_accounts.c.id == account_id)
            ).scalar_one()

    # ------------------------------------------------------------------
    # Refresh-token consumption
    # ------------------------------------------------------------------

    def consume_refresh_token(
        self, token_id: str, account_id: str, expires_at: int, consumer: str | None = None
    ) -> bool:
        """Mark a refresh token as used. Returns False if it was already consumed.

        A repeat call carrying the same non-empty *consumer* tag as the
        stored record returns True, so one rotation can safely retry.
        """
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _consumed_refresh_tokens.insert().values(
                        token_id=token_id,
                        account_id=account_id,
                        expires_at=expires_at,
                        consumed_at=_now_iso(),
                        consumer=consumer,
                    )
                )
        except IntegrityError:
            if consumer is None:
                return False
            with self.engine.connect() as conn:
                stored = conn.execute(
                    select(_consumed_refresh_tokens.c.consumer).where(
                        _consumed_refresh_tokens.c.token_id == token_id
                    )
                ).scalar_one_or_none()
            return stored == consumer
        return True

    def is_refresh_token_consumed(self, token_id: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_consumed_refresh_tokens.c.token_id).where(_consumed_refresh_tokens.c.token_id == token_id)
            ).fetchone()
        return row is not None

    def purge_consumed_tokens(self, now: float) -> int:
        """Delete consumed-token records that expired before *now*. Returns rows removed.

        Callers pass a cutoff already reduced by the token clock-skew leeway.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _consumed_refresh_tokens.delete().where(_consumed_refresh_tokens.c.expires_at < int(now))
            )
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_tenant(row) -> Tenant:
    return Tenant(
        id=row.id,
        name=row.name,
        status=TenantStatus(row.status),
        contact_email=row.contact_email,
        created_at=row.created_at,
    )


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        display_name=row.display_name,
        hashed_password=row.hashed_password,
        role=Role(row.role),
        tenant_id=row.tenant_id,
        token_sequence=row.token_sequence,
        is_active=bool(row.is_active),
        created_at=row.created_at,
        last_login=row.last_login,
    )
