"""
auth/keys.py -- Process-wide signing key.

The signing key is loaded once at startup and treated as immutable. Rotation
replaces the whole SigningKey reference under a lock; a key object is never
mutated in place, so a caller that grabbed current() mid-rotation still holds
a complete, consistent key.

HMAC keys never leave the process. The key_id travels in the token header
("kid") so logs can tell which key a rejected token claimed.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from core.config import SUPPORTED_ALGORITHMS, Settings

logger = logging.getLogger("authservice.auth.keys")

MIN_SECRET_LENGTH = 32


@dataclass(frozen=True)
class SigningKey:
    key_id: str
    secret: str = field(repr=False)
    algorithm: str = "HS256"

    def __post_init__(self) -> None:
        if self.algorithm not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"Unsupported signing algorithm: {self.algorithm}")
        if len(self.secret) < MIN_SECRET_LENGTH:
            raise ValueError(f"Signing secret must be at least {MIN_SECRET_LENGTH} characters.")
        if not self.key_id:
            raise ValueError("Signing key_id must not be empty.")


class KeyProvider:
    """Holder for the current signing key.

    Usage:
        keys = KeyProvider.from_settings(get_settings())
        key = keys.current()          # None until load() has run
        keys.rotate(SigningKey("2026-10", new_secret))
    """

    def __init__(self, key: SigningKey | None = None) -> None:
        self._lock = threading.Lock()
        self._key = key

    @classmethod
    def from_settings(cls, settings: Settings) -> KeyProvider:
        return cls(
            SigningKey(
                key_id=settings.signing_key_id,
                secret=settings.secret_key,
                algorithm=settings.jwt_algorithm,
            )
        )

    def current(self) -> SigningKey | None:
        # Reading one attribute is atomic; the lock only orders writers.
        return self._key

    def load(self, key: SigningKey) -> None:
        with self._lock:
            self._key = key
        logger.info("Signing key loaded (kid=%s, alg=%s)", key.key_id, key.algorithm)

    def rotate(self, key: SigningKey) -> SigningKey | None:
        """Swap in a new key and return the one it replaced."""
        with self._lock:
            previous, self._key = self._key, key
        logger.info(
            "Signing key rotated (kid %s -> %s)",
            previous.key_id if previous else None,
            key.key_id,
        )
        return previous

    def unload(self) -> None:
        with self._lock:
            self._key = None
        logger.warning("Signing key unloaded -- token issuance is unavailable")
