"""
auth/passwords.py -- Password hashing and the password policy.

Hashing: bcrypt used directly (no passlib wrapper). passlib's internal
wrap-bug detection builds a password longer than 72 bytes, which bcrypt 4.x+
rejects. Direct bcrypt usage has no compatibility shim and is maintained.

Policy: one rule set for every flow that sets a password (admin-created
accounts, tenant owners, team members, password change, CLI bootstrap):
  - at least `min_length` characters (12 by default)
  - at most 72 UTF-8 bytes -- bcrypt's input limit. Longer inputs would be
    rejected (bcrypt 5) or silently truncated (bcrypt 4).
  - at least one upper-case, lower-case, digit and non-alphanumeric char.
Login never re-checks the policy; a stored hash is the only authority there.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import bcrypt

from auth.errors import PasswordPolicyError

BCRYPT_MAX_BYTES = 72
DEFAULT_MIN_LENGTH = 12


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    bcrypt.checkpw compares in constant time. Any error (malformed stored
    hash, over-long input) is a mismatch, not an exception.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones. The verifier always runs verify_password() even
# when the email does not exist, so response time does not reveal whether an
# account exists.
DUMMY_HASH: str = hash_password("tenantportal_timing_dummy")


def check_password_policy(password: str, min_length: int = DEFAULT_MIN_LENGTH) -> None:
    """Raise PasswordPolicyError describing the first rule the password breaks."""
    if len(password) < min_length:
        raise PasswordPolicyError(f"Password must be at least {min_length} characters.")
    if len(password.encode("utf-8")) > BCRYPT_MAX_BYTES:
        raise PasswordPolicyError(f"Password must be at most {BCRYPT_MAX_BYTES} bytes.")
    if not any(c.isupper() for c in password):
        raise PasswordPolicyError("Password must contain an upper-case letter.")
    if not any(c.islower() for c in password):
        raise PasswordPolicyError("Password must contain a lower-case letter.")
    if not any(c.isdigit() for c in password):
        raise PasswordPolicyError("Password must contain a digit.")
    if all(c.isalnum() for c in password):
        raise PasswordPolicyError("Password must contain a special character.")
