"""
auth/service.py -- AuthService: the four core components wired together.

Flow:
  login()        CredentialVerifier -> TokenIssuer (access + refresh pair)
  authenticate() TokenValidator (access tokens only)
  refresh()      TokenValidator (refresh tokens only) -> revoke presented
                 refresh token -> TokenIssuer (new pair). Roles and account
                 status are re-read from the store, so a role change or a
                 disable takes effect at the next refresh. A refresh
                 token works once, even under concurrent use.
  logout()       TokenValidator -> RevocationRegistry.revoke()
  revoke()       same as logout for a single token; already-revoked is a no-op

Everything is passed in explicitly. AuthService.build() is the one place
that turns Settings into components; the FastAPI lifespan and the CLI both
call it.

All operations return a success value or a Failure; nothing here raises for
an authentication outcome. register() is the exception: duplicate
username/email surfaces as sqlalchemy IntegrityError for the caller to map.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from concurrent.futures import Executor

from auth.events import AuthEvent, EventPublisher, LoggingEventPublisher
from auth.keys import KeyProvider
from auth.models import (
    Failure,
    FailureReason,
    TokenPair,
    TokenType,
    UserRecord,
    VerifiedIdentity,
    normalize_roles,
)
from auth.passwords import DEFAULT_ROUNDS, hash_password
from auth.revocation import RevocationRegistry
from auth.store import StoreUnavailable, UserStore
from auth.tokens import TokenIssuer, TokenValidator
from auth.verifier import CredentialVerifier, status_failure
from core.clock import Clock
from core.config import Settings

logger = logging.getLogger("authservice.auth.service")


class AuthService:
    def __init__(
        self,
        users: UserStore,
        registry: RevocationRegistry,
        verifier: CredentialVerifier,
        issuer: TokenIssuer,
        validator: TokenValidator,
        clock: Clock,
        events: EventPublisher | None = None,
        password_rounds: int = DEFAULT_ROUNDS,
        default_roles: Iterable[str] = ("user",),
    ) -> None:
        self.users = users
        self.registry = registry
        self.verifier = verifier
        self.issuer = issuer
        self.validator = validator
        self.clock = clock
        self.events = events or LoggingEventPublisher()
        self.password_rounds = password_rounds
        self.default_roles = normalize_roles(default_roles)

    @classmethod
    def build(
        cls,
        settings: Settings,
        users: UserStore,
        registry: RevocationRegistry,
        keys: KeyProvider,
        clock: Clock,
        events: EventPublisher | None = None,
        executor: Executor | None = None,
    ) -> AuthService:
        """Construct every component from settings and explicit handles."""
        return cls(
            users=users,
            registry=registry,
            verifier=CredentialVerifier(users, clock, executor=executor, dummy_rounds=settings.bcrypt_rounds),
            issuer=TokenIssuer.from_settings(settings, keys, clock),
            validator=TokenValidator(keys, registry, clock),
            clock=clock,
            events=events,
            password_rounds=settings.bcrypt_rounds,
            default_roles=settings.default_roles,
        )

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        username: str,
        email: str,
        password: str,
        roles: Iterable[str] | None = None,
        bucket_id: str | None = None,
    ) -> UserRecord:
        """Create a user with a freshly salted hash and return the stored record.

        Raises sqlalchemy.exc.IntegrityError on a duplicate username or email,
        ValueError on an invalid role or over-long password, and
        StoreUnavailable if the store is down.
        """
        record = UserRecord(
            username=username,
            email=email,
            hashed_password=hash_password(password, self.password_rounds),
            roles=normalize_roles(roles) if roles is not None else self.default_roles,
            bucket_id=bucket_id,
        )
        user_id = self.users.create_user(record)
        self._publish("user_registered", user_id, username=username)
        created = self.users.get_by_id(user_id)
        if created is None:
            raise StoreUnavailable("user vanished after insert")
        return created

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def login(self, identifier: str, secret: str) -> TokenPair | Failure:
        identity = self.verifier.verify(identifier, secret)
        if isinstance(identity, Failure):
            self._publish("login_failure", None, identifier=identifier, reason=identity.reason.value)
            return identity
        pair = self.issuer.issue_pair(identity.subject_id, identity.roles)
        if isinstance(pair, Failure):
            return pair
        self._publish("login_success", identity.subject_id, jti=pair.access.token_id)
        return pair

    def authenticate(self, access_token: str) -> VerifiedIdentity | Failure:
        return self.validator.validate(access_token, expected_type=TokenType.access)

    def refresh(self, refresh_token: str) -> TokenPair | Failure:
        """Rotate a refresh token: the presented one is revoked, a new pair issued."""
        identity = self.validator.validate(refresh_token, expected_type=TokenType.refresh)
        if isinstance(identity, Failure):
            return identity

        try:
            user = self.users.get_by_id(identity.subject_id)
        except StoreUnavailable:
            return Failure(FailureReason.store_unavailable, "user lookup failed")
        if user is None:
            return Failure(FailureReason.not_found, "subject no longer exists")
        status = status_failure(user)
        if status is not None:
            return Failure(status)

        # Single use: of two concurrent refreshes with one token, only the
        # one whose revoke inserted the entry gets a new pair.
        revoked = self._revoke(identity, exclusive=True)
        if isinstance(revoked, Failure):
            return revoked
        pair = self.issuer.issue_pair(user.id, user.roles)
        if isinstance(pair, Failure):
            return pair
        self._publish("token_refreshed", user.id, old_jti=identity.token_id, jti=pair.refresh.token_id)
        return pair

    def logout(self, token: str, refresh_token: str | None = None) -> VerifiedIdentity | Failure:
        """Revoke a token of either type. Returns the identity it belonged to.

        refresh_token, when given, is revoked too -- but only if it is a
        valid refresh token for the same subject. An invalid or foreign
        refresh token is ignored; a registry outage is still reported.
        """
        identity = self.validator.validate(token)
        if isinstance(identity, Failure):
            return identity
        revoked = self._revoke(identity)
        if isinstance(revoked, Failure):
            return revoked
        if refresh_token:
            companion = self.validator.validate(refresh_token, expected_type=TokenType.refresh)
            if isinstance(companion, Failure):
                if companion.is_transient:
                    return companion
                logger.info("Logout ignored refresh token: %s", companion.reason.value)
            elif companion.subject_id != identity.subject_id:
                logger.warning("Logout ignored refresh token of another subject (sub=%s)", identity.subject_id)
            else:
                revoked = self._revoke(companion)
                if isinstance(revoked, Failure):
                    return revoked
        return identity

    def revoke(self, token: str) -> None | Failure:
        """Revoke a single token of either type. Revoking twice is not an error."""
        identity = self.validator.validate(token)
        if isinstance(identity, Failure):
            if identity.reason is FailureReason.revoked:
                return None
            return identity
        return self._revoke(identity)

    def prune_revocations(self) -> int:
        """Drop revocation entries for tokens that have expired anyway."""
        removed = self.registry.prune(self.clock.now())
        if removed:
            logger.info("Pruned %d expired revocation entries", removed)
        return removed

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _revoke(self, identity: VerifiedIdentity, exclusive: bool = False) -> None | Failure:
        """Record the revocation. With exclusive=True, losing a race is Revoked."""
        try:
            inserted = self.registry.revoke(identity.token_id, identity.expires_at)
        except StoreUnavailable:
            return Failure(FailureReason.store_unavailable, "revocation write failed")
        if not inserted:
            if exclusive:
                return Failure(FailureReason.revoked, "token already used")
            return None
        self._publish(
            "token_revoked",
            identity.subject_id,
            jti=identity.token_id,
            type=identity.token_type.value if identity.token_type else None,
        )
        return None

    def _publish(self, event_type: str, subject_id: str | None, **metadata) -> None:
        event = AuthEvent(event_type, self.clock.now(), subject_id, metadata)
        try:
            self.events.publish(event)
        except Exception:
            # Event delivery never decides an auth outcome.
            logger.exception("Failed to publish %s event", event_type)
