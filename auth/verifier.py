"""
auth/verifier.py -- Credential verification (constant-time) [C1].

CredentialVerifier.verify(identifier, secret) looks the user up by username
or email, compares the secret against the stored bcrypt hash, then checks
account status.

Every path spends one bcrypt check:
  - unknown identifier: bcrypt against a dummy hash of the same cost
  - otherwise: bcrypt against the real hash
so response time does not reveal whether an identifier exists. Status
failures (disabled, locked, ...) are only reported once the secret has
matched; a wrong secret is BadCredentials whatever the account state.

On success last_login_at is stamped. The stamp is best effort: it never
changes the verification result, and with an executor it does not delay
the caller either.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from concurrent.futures import Executor
from datetime import datetime
from typing import Protocol

from auth.models import Credential, Failure, FailureReason, UserRecord, VerifiedIdentity
from auth.passwords import DEFAULT_ROUNDS, equalize_timing, verify_password
from auth.store import StoreUnavailable
from core.clock import Clock

logger = logging.getLogger("authservice.auth.verifier")


class UserLookup(Protocol):
    """The slice of UserStore the verifier needs."""

    def find_by_identifier(self, identifier: str) -> UserRecord | None: ...

    def touch_last_login(self, user_id: str, timestamp: datetime) -> None: ...


def status_failure(user: UserRecord) -> FailureReason | None:
    """Account status rules shared by password login and token refresh."""
    if not user.enabled:
        return FailureReason.account_disabled
    if not user.account_non_expired:
        return FailureReason.account_expired
    if not user.account_non_locked:
        return FailureReason.account_locked
    if not user.credentials_non_expired:
        return FailureReason.credentials_expired
    return None


class CredentialVerifier:
    """Usage:
    verifier = CredentialVerifier(store, clock)
    result = verifier.verify("alice", "secret123")
    if isinstance(result, Failure): ...
    """

    def __init__(
        self,
        users: UserLookup,
        clock: Clock,
        executor: Executor | None = None,
        dummy_rounds: int = DEFAULT_ROUNDS,
    ) -> None:
        self.users = users
        self.clock = clock
        self.executor = executor
        self.dummy_rounds = dummy_rounds

    def verify(self, identifier: str, secret: str) -> VerifiedIdentity | Failure:
        try:
            user = self.users.find_by_identifier(identifier)
        except StoreUnavailable:
            logger.warning("Credential check aborted: user store unavailable")
            return Failure(FailureReason.store_unavailable, "user lookup failed")

        if user is None or user.id is None:
            equalize_timing(secret, self.dummy_rounds)
            return self._fail(FailureReason.not_found, identifier)

        # Password before status: account state is only disclosed to a
        # caller who already holds the secret.
        if not verify_password(secret, user.hashed_password):
            return self._fail(FailureReason.bad_credentials, identifier)

        status = status_failure(user)
        if status is not None:
            return self._fail(status, identifier)

        self._stamp_login(user.id)
        logger.info("Credentials verified (sub=%s)", user.id)
        return VerifiedIdentity(subject_id=user.id, roles=frozenset(user.roles))

    def verify_credential(self, credential: Credential) -> VerifiedIdentity | Failure:
        return self.verify(credential.identifier, credential.secret)

    def _stamp_login(self, user_id: str) -> None:
        timestamp = self.clock.now()
        if self.executor is not None:
            future = self.executor.submit(self.users.touch_last_login, user_id, timestamp)
            future.add_done_callback(_log_stamp_error)
            return
        try:
            self.users.touch_last_login(user_id, timestamp)
        except StoreUnavailable:
            logger.warning("last_login_at not updated for %s: user store unavailable", user_id)

    @staticmethod
    def _fail(reason: FailureReason, identifier: str) -> Failure:
        logger.info("Credential check failed: %s (identifier=%s)", reason.value, identifier)
        return Failure(reason)


def _log_stamp_error(future) -> None:
    exc = future.exception()
    if exc is not None:
        logger.warning("last_login_at update failed: %s", exc.__class__.__name__)
