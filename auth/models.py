"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
domain shape; the verifier, issuer, validator and stores do the work.

Every operation in the auth core returns either a success value or a Failure.
Failure carries a FailureReason that stays distinct internally (logs, events)
while public_message collapses it to the generic wording clients see, so a
caller cannot tell a wrong password from an unknown username, or an expired
token from a forged one.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum


def normalize_roles(roles: Iterable[str]) -> frozenset[str]:
    """Return roles as a frozenset of stripped, non-empty strings.

    Raises ValueError on an empty or non-string role rather than silently
    dropping it -- a typo in a grant should fail loudly.
    """
    result: set[str] = set()
    for role in roles:
        if not isinstance(role, str) or not role.strip():
            raise ValueError(f"Invalid role: {role!r}")
        result.add(role.strip())
    return frozenset(result)


@dataclass
class UserRecord:
    """A persisted user identity.

    id is an opaque hex string assigned by the store on create. roles is a
    frozenset snapshot: the store is the only place roles change (add_role /
    remove_role), never a caller-held copy.

    Records are never hard-deleted; disabling sets enabled=False.

    bucket_id links the user to an external storage bucket. It is carried
    as-is and never interpreted here.
    """

    username: str
    email: str
    hashed_password: str
    roles: frozenset[str] = field(default_factory=frozenset)
    id: str | None = None
    enabled: bool = True
    account_non_expired: bool = True
    account_non_locked: bool = True
    credentials_non_expired: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_login_at: datetime | None = None
    bucket_id: str | None = None

    def __post_init__(self) -> None:
        self.roles = normalize_roles(self.roles)

    def has_role(self, role: str) -> bool:
        return role in self.roles


@dataclass(frozen=True)
class Credential:
    """An (identifier, secret) pair presented at login. Never persisted.

    identifier is a username or an email address. The secret is excluded
    from repr so it cannot leak through a log line or a traceback.
    """

    identifier: str
    secret: str = field(repr=False)


class TokenType(str, Enum):
    access = "access"
    refresh = "refresh"


@dataclass(frozen=True)
class Token:
    """A signed token as handed to a client.

    value is the compact header.payload.signature string; the other fields
    mirror its claims so callers do not need to decode what they just minted.
    """

    value: str = field(repr=False)
    token_id: str
    subject_id: str
    roles: frozenset[str]
    token_type: TokenType
    issued_at: datetime
    expires_at: datetime

    def __post_init__(self) -> None:
        if self.expires_at <= self.issued_at:
            raise ValueError("Token expires_at must be later than issued_at")


@dataclass(frozen=True)
class TokenPair:
    access: Token
    refresh: Token


@dataclass(frozen=True)
class VerifiedIdentity:
    """The subject a credential check or token validation vouched for.

    The token_* fields and remaining are only set when the identity came
    from a token; a password verification leaves them None.
    """

    subject_id: str
    roles: frozenset[str]
    token_id: str | None = None
    token_type: TokenType | None = None
    expires_at: datetime | None = None
    remaining: timedelta | None = None

    def has_role(self, role: str) -> bool:
        return role in self.roles


@dataclass(frozen=True)
class RevocationEntry:
    """A revoked token id, kept only until the token would have expired anyway."""

    token_id: str
    expires_at: datetime


class FailureReason(str, Enum):
    not_found = "not_found"
    account_disabled = "account_disabled"
    account_expired = "account_expired"
    account_locked = "account_locked"
    credentials_expired = "credentials_expired"
    bad_credentials = "bad_credentials"
    malformed_token = "malformed_token"
    bad_signature = "bad_signature"
    expired = "expired"
    revoked = "revoked"
    wrong_token_type = "wrong_token_type"
    signing_unavailable = "signing_unavailable"
    store_unavailable = "store_unavailable"


CREDENTIAL_FAILURES = frozenset({FailureReason.not_found, FailureReason.bad_credentials})

ACCOUNT_FAILURES = frozenset(
    {
        FailureReason.account_disabled,
        FailureReason.account_expired,
        FailureReason.account_locked,
        FailureReason.credentials_expired,
    }
)

TOKEN_FAILURES = frozenset(
    {
        FailureReason.malformed_token,
        FailureReason.bad_signature,
        FailureReason.expired,
        FailureReason.revoked,
        FailureReason.wrong_token_type,
    }
)

# Only the values clients may see. NotFound and BadCredentials share one
# message; every token failure shares another.
_PUBLIC_MESSAGES: dict[FailureReason, str] = {
    FailureReason.not_found: "Invalid credentials.",
    FailureReason.bad_credentials: "Invalid credentials.",
    FailureReason.account_disabled: "Account is disabled.",
    FailureReason.account_expired: "Account has expired.",
    FailureReason.account_locked: "Account is locked.",
    FailureReason.credentials_expired: "Credentials have expired.",
    FailureReason.signing_unavailable: "Service temporarily unavailable.",
    FailureReason.store_unavailable: "Service temporarily unavailable.",
}


@dataclass(frozen=True)
class Failure:
    """A typed failure result.

    detail is for logs only and must never carry a secret, hash, or raw token.
    Failure is falsy, so callers can write `if not result: ...`.
    """

    reason: FailureReason
    detail: str | None = None

    def __bool__(self) -> bool:
        return False

    @property
    def public_message(self) -> str:
        if self.reason in TOKEN_FAILURES:
            return "Invalid token."
        return _PUBLIC_MESSAGES[self.reason]

    @property
    def is_transient(self) -> bool:
        """True only for failures a caller may retry."""
        return self.reason is FailureReason.store_unavailable
