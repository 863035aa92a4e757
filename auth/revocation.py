"""
auth/revocation.py -- Registry of tokens invalidated before their natural expiry.

Contract (RevocationRegistry protocol):
  revoke(token_id, expires_at) -> bool
                                idempotent; the first recorded expiry wins.
                                True only for the call that inserted the
                                entry, so callers can make a token single-use
  is_revoked(token_id) -> bool  never a false negative for an entry whose
                                revoke() returned before the call started
  prune(now) -> int             drop entries with expires_at < now

An entry only needs to live as long as the token it blocks: once the token
is past expires_at the validator rejects it as Expired anyway. prune() keeps
the registry bounded by the number of outstanding tokens rather than by the
number ever revoked. The API calls prune() from a background loop.

Two backings:
  InMemoryRevocationRegistry -- dict behind a threading.Lock. Each call holds
      the lock for one dict operation (prune: one pass), so readers and
      writers never wait on each other for long.
  SqlRevocationRegistry -- SQLAlchemy Core table, same engine conventions as
      UserStore. Survives restarts and can be shared between processes.
      Database errors surface as StoreUnavailable.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import BigInteger, Column, MetaData, String, Table, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.models import RevocationEntry
from auth.store import StoreUnavailable, make_engine
from core.clock import Clock, SystemClock

logger = logging.getLogger("authservice.auth.revocation")


class RevocationRegistry(Protocol):
    def revoke(self, token_id: str, expires_at: datetime) -> bool: ...

    def is_revoked(self, token_id: str) -> bool: ...

    def prune(self, now: datetime) -> int: ...

    def __len__(self) -> int: ...


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemoryRevocationRegistry:
    """Process-local registry. Lost on restart, which is acceptable for
    short-lived access tokens and for single-instance deployments."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, datetime] = {}

    def revoke(self, token_id: str, expires_at: datetime) -> bool:
        with self._lock:
            if token_id in self._entries:
                return False
            self._entries[token_id] = expires_at
            return True

    def is_revoked(self, token_id: str) -> bool:
        with self._lock:
            return token_id in self._entries

    def prune(self, now: datetime) -> int:
        with self._lock:
            stale = [token_id for token_id, expires_at in self._entries.items() if expires_at < now]
            for token_id in stale:
                del self._entries[token_id]
        if stale:
            logger.debug("Pruned %d revocation entries", len(stale))
        return len(stale)

    def entries(self) -> list[RevocationEntry]:
        with self._lock:
            snapshot = list(self._entries.items())
        return [RevocationEntry(token_id, expires_at) for token_id, expires_at in snapshot]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# ---------------------------------------------------------------------------
# SQL-backed
# ---------------------------------------------------------------------------

_metadata = MetaData()

# expires_at / revoked_at are integer epoch seconds so prune() is a plain
# numeric comparison regardless of backend.
_revoked_tokens = Table(
    "revoked_tokens",
    _metadata,
    Column("token_id", String(64), primary_key=True),
    Column("expires_at", BigInteger, nullable=False, index=True),
    Column("revoked_at", BigInteger, nullable=False),
)


def _epoch(value: datetime) -> int:
    return int(value.timestamp())


class SqlRevocationRegistry:
    """Registry persisted in a revoked_tokens table.

    Usage:
        registry = SqlRevocationRegistry("sqlite:///authservice.db")
        registry.revoke(token.token_id, token.expires_at)
        registry.is_revoked(token.token_id)   # True
        registry.close()
    """

    def __init__(self, db_url: str, clock: Clock | None = None) -> None:
        self.clock = clock or SystemClock()
        self.engine = make_engine(db_url)
        try:
            _metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise StoreUnavailable("revocation store unavailable") from exc

    def revoke(self, token_id: str, expires_at: datetime) -> bool:
        # The primary key decides which of several concurrent revokes inserted.
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _revoked_tokens.insert().values(
                        token_id=token_id,
                        expires_at=_epoch(expires_at),
                        revoked_at=_epoch(self.clock.now()),
                    )
                )
        except IntegrityError:
            logger.debug("Token %s already revoked", token_id)
            return False
        except SQLAlchemyError as exc:
            raise StoreUnavailable("revocation store unavailable") from exc
        return True

    def is_revoked(self, token_id: str) -> bool:
        try:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(_revoked_tokens.c.token_id).where(_revoked_tokens.c.token_id == token_id)
                ).fetchone()
        except SQLAlchemyError as exc:
            raise StoreUnavailable("revocation store unavailable") from exc
        return row is not None

    def prune(self, now: datetime) -> int:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(_revoked_tokens.delete().where(_revoked_tokens.c.expires_at < _epoch(now)))
        except SQLAlchemyError as exc:
            raise StoreUnavailable("revocation store unavailable") from exc
        return result.rowcount

    def entries(self) -> list[RevocationEntry]:
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(select(_revoked_tokens.c.token_id, _revoked_tokens.c.expires_at)).fetchall()
        except SQLAlchemyError as exc:
            raise StoreUnavailable("revocation store unavailable") from exc
        return [RevocationEntry(row.token_id, datetime.fromtimestamp(row.expires_at, timezone.utc)) for row in rows]

    def __len__(self) -> int:
        try:
            with self.engine.connect() as conn:
                count = conn.execute(select(func.count()).select_from(_revoked_tokens)).scalar()
        except SQLAlchemyError as exc:
            raise StoreUnavailable("revocation store unavailable") from exc
        return count or 0

    def close(self) -> None:
        self.engine.dispose()
