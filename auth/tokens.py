"""
auth/tokens.py -- Token issuance and validation.

Security design decisions:
  Wire format: compact JWS (header.payload.signature, base64url) produced by
       python-jose. Header: alg, typ, kid. Payload claims:
         sub    subject (user id)
         roles  sorted list of role strings
         iat    issued-at, integer epoch seconds
         exp    expires-at, integer epoch seconds (always > iat)
         jti    128-bit random token id, the revocation handle
         typ    "access" or "refresh"

  Signing: HMAC (HS256 by default) with the process-wide key from
       KeyProvider. The key never leaves the process. If no key is loaded
       the issuer returns a SigningUnavailable failure -- it does not fall
       back to an ephemeral key.

  Validation order is fixed and every step maps to one FailureReason:
       1. structure  -> MalformedToken (including any segment that is not
                                        canonical base64url: spare low bits
                                        in the last character must be zero,
                                        so one signature has one spelling)
       2. signature  -> BadSignature   (alg pinned to the key's algorithm;
                                        a header asking for anything else,
                                        including "none", fails here)
       3. expiry     -> Expired        (now >= exp, now from the injected clock)
       4. revocation -> Revoked        (registry errors -> StoreUnavailable)
       5. type       -> WrongTokenType (only when the caller asks for one)

       python-jose's jwt.decode() folds all of these into one JWTError and
       reads the OS clock for exp, so the validator drives jose.jws directly:
       the unverified header/claims calls can only fail on structure, which
       makes any later JWSError from jws.verify() a signature failure.

  Validation is a pure function of (token, clock.now(), key, registry): no
  writes, no caching.

Logging: failures log the reason and the token id when one could be read.
Raw token strings are never logged.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import json
import logging
import secrets
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import jws, jwt
from jose.exceptions import JWSError
from jose.utils import base64url_decode, base64url_encode

from auth.keys import KeyProvider
from auth.models import (
    Failure,
    FailureReason,
    Token,
    TokenPair,
    TokenType,
    VerifiedIdentity,
    normalize_roles,
)
from auth.revocation import RevocationRegistry
from auth.store import StoreUnavailable
from core.clock import Clock
from core.config import Settings

logger = logging.getLogger("authservice.auth.tokens")

DEFAULT_ACCESS_TTL = timedelta(minutes=15)
DEFAULT_REFRESH_TTL = timedelta(days=7)

_REQUIRED_CLAIMS = ("sub", "roles", "iat", "exp", "jti", "typ")


def new_token_id() -> str:
    """128 bits from the OS CSPRNG, hex encoded."""
    return secrets.token_hex(16)


def _to_datetime(epoch: int) -> datetime:
    return datetime.fromtimestamp(epoch, timezone.utc)


def is_canonical_segment(segment: str) -> bool:
    """True if segment is the one base64url spelling of the bytes it decodes to."""
    try:
        raw = segment.encode("ascii")
        return base64url_encode(base64url_decode(raw)) == raw
    except (ValueError, TypeError):
        return False


# ---------------------------------------------------------------------------
# Issuer
# ---------------------------------------------------------------------------


class TokenIssuer:
    """Mints signed access and refresh tokens.

    Usage:
        issuer = TokenIssuer(keys, clock)
        token = issuer.issue(user.id, user.roles, TokenType.access)
        if not token:
            ...  # Failure(SigningUnavailable)
    """

    def __init__(
        self,
        keys: KeyProvider,
        clock: Clock,
        access_ttl: timedelta = DEFAULT_ACCESS_TTL,
        refresh_ttl: timedelta = DEFAULT_REFRESH_TTL,
    ) -> None:
        for ttl in (access_ttl, refresh_ttl):
            if ttl.total_seconds() < 1:
                raise ValueError("Token lifetimes must be at least one second.")
        self.keys = keys
        self.clock = clock
        self._ttl = {TokenType.access: access_ttl, TokenType.refresh: refresh_ttl}

    @classmethod
    def from_settings(cls, settings: Settings, keys: KeyProvider, clock: Clock) -> TokenIssuer:
        return cls(
            keys,
            clock,
            access_ttl=timedelta(seconds=settings.access_token_expire_seconds),
            refresh_ttl=timedelta(seconds=settings.refresh_token_expire_seconds),
        )

    def lifetime(self, token_type: TokenType | str) -> timedelta:
        return self._ttl[TokenType(token_type)]

    def issue(self, subject_id: str, roles: Iterable[str], token_type: TokenType | str) -> Token | Failure:
        """Sign a token for subject_id carrying roles.

        Returns Failure(SigningUnavailable) when no key is loaded. Raises
        ValueError for an empty subject or invalid roles -- those are caller
        bugs, not runtime conditions.
        """
        if not subject_id:
            raise ValueError("subject_id must not be empty")
        token_type = TokenType(token_type)
        role_set = normalize_roles(roles)

        key = self.keys.current()
        if key is None:
            logger.error("Token issue refused: no signing key loaded (sub=%s)", subject_id)
            return Failure(FailureReason.signing_unavailable, "no signing key loaded")

        # Whole seconds on the wire; the Token mirrors exactly what is signed.
        iat = int(self.clock.now().timestamp())
        exp = iat + int(self._ttl[token_type].total_seconds())
        token_id = new_token_id()
        claims = {
            "sub": subject_id,
            "roles": sorted(role_set),
            "iat": iat,
            "exp": exp,
            "jti": token_id,
            "typ": token_type.value,
        }
        value = jwt.encode(claims, key.secret, algorithm=key.algorithm, headers={"kid": key.key_id})
        logger.debug("Issued %s token (sub=%s, jti=%s)", token_type.value, subject_id, token_id)
        return Token(
            value=value,
            token_id=token_id,
            subject_id=subject_id,
            roles=role_set,
            token_type=token_type,
            issued_at=_to_datetime(iat),
            expires_at=_to_datetime(exp),
        )

    def issue_pair(self, subject_id: str, roles: Iterable[str]) -> TokenPair | Failure:
        access = self.issue(subject_id, roles, TokenType.access)
        if isinstance(access, Failure):
            return access
        refresh = self.issue(subject_id, roles, TokenType.refresh)
        if isinstance(refresh, Failure):
            return refresh
        return TokenPair(access=access, refresh=refresh)


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _Claims:
    subject_id: str
    roles: frozenset[str]
    issued_at: int
    expires_at: int
    token_id: str
    token_type: TokenType


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def parse_claims(payload: bytes) -> _Claims | None:
    """Parse and type-check the payload segment. None means malformed."""
    try:
        data = json.loads(payload)
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(data, dict) or any(name not in data for name in _REQUIRED_CLAIMS):
        return None
    sub, roles, jti = data["sub"], data["roles"], data["jti"]
    iat, exp = data["iat"], data["exp"]
    if not isinstance(sub, str) or not sub or not isinstance(jti, str) or not jti:
        return None
    if not _is_int(iat) or not _is_int(exp) or exp <= iat:
        return None
    if not isinstance(roles, list):
        return None
    try:
        role_set = normalize_roles(roles)
        token_type = TokenType(data["typ"])
    except ValueError:
        return None
    if len(role_set) != len(roles):
        return None
    return _Claims(sub, role_set, iat, exp, jti, token_type)


class TokenValidator:
    """Checks presented tokens. See the module docstring for the check order.

    Usage:
        validator = TokenValidator(keys, registry, clock)
        result = validator.validate(raw, expected_type=TokenType.access)
        if isinstance(result, Failure):
            ...  # result.reason is distinct; result.public_message is generic
    """

    def __init__(self, keys: KeyProvider, registry: RevocationRegistry, clock: Clock) -> None:
        self.keys = keys
        self.registry = registry
        self.clock = clock

    def validate(self, token: str, expected_type: TokenType | str | None = None) -> VerifiedIdentity | Failure:
        if not isinstance(token, str) or token.count(".") != 2:
            return self._fail(FailureReason.malformed_token, "not a compact JWS")
        if not all(is_canonical_segment(segment) for segment in token.split(".")):
            return self._fail(FailureReason.malformed_token, "non-canonical base64url segment")

        # 1. Structure. Both calls decode every segment without verifying.
        try:
            header = jws.get_unverified_header(token)
            claims = parse_claims(jws.get_unverified_claims(token))
        except JWSError as exc:
            return self._fail(FailureReason.malformed_token, str(exc))
        if claims is None:
            return self._fail(FailureReason.malformed_token, "missing or mistyped claims")

        # 2. Signature
        key = self.keys.current()
        if key is None:
            return self._fail(FailureReason.signing_unavailable, "no signing key loaded", claims.token_id)
        try:
            jws.verify(token, key.secret, algorithms=[key.algorithm])
        except JWSError:
            return self._fail(
                FailureReason.bad_signature,
                f"kid={header.get('kid')!r} alg={header.get('alg')!r}",
                claims.token_id,
            )

        # 3. Expiry
        now = self.clock.now()
        expires_at = _to_datetime(claims.expires_at)
        if now >= expires_at:
            return self._fail(FailureReason.expired, f"expired at {expires_at.isoformat()}", claims.token_id)

        # 4. Revocation
        try:
            revoked = self.registry.is_revoked(claims.token_id)
        except StoreUnavailable:
            return self._fail(FailureReason.store_unavailable, "revocation lookup failed", claims.token_id)
        if revoked:
            return self._fail(FailureReason.revoked, None, claims.token_id)

        # 5. Type
        if expected_type is not None and claims.token_type is not TokenType(expected_type):
            return self._fail(
                FailureReason.wrong_token_type,
                f"expected {TokenType(expected_type).value}, got {claims.token_type.value}",
                claims.token_id,
            )

        return VerifiedIdentity(
            subject_id=claims.subject_id,
            roles=claims.roles,
            token_id=claims.token_id,
            token_type=claims.token_type,
            expires_at=expires_at,
            remaining=expires_at - now,
        )

    @staticmethod
    def _fail(reason: FailureReason, detail: str | None, token_id: str | None = None) -> Failure:
        logger.info("Token rejected: %s (jti=%s)", reason.value, token_id)
        return Failure(reason, detail)
