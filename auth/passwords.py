"""
auth/passwords.py -- Salted password hashing (bcrypt, direct usage).

Passwords: bcrypt via the bcrypt package. bcrypt embeds a random per-record
salt and its cost factor in the hash string, so verify_password() always
re-hashes with the same algorithm and parameters the record was created with.
bcrypt.checkpw compares digests in constant time.

Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
wrap-bug detection hashes a password longer than 72 bytes, and bcrypt
releases disagree on such input (older ones truncate it, newer ones raise
ValueError).

72-byte limit: bcrypt only reads the first 72 bytes of its input. Rather
than depend on the installed release's behaviour, both functions here
refuse longer input themselves: hash_password() raises ValueError and
verify_password() reports a mismatch. The limit is on UTF-8 bytes, not
characters -- "é" counts twice.

Timing equalization [C1]: equalize_timing() runs one bcrypt check against a
dummy hash of the same cost. The verifier calls it when the identifier is
unknown so response time does not reveal which usernames exist.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from functools import lru_cache

import bcrypt

logger = logging.getLogger("authservice.auth.passwords")

DEFAULT_ROUNDS = 12
MAX_PASSWORD_BYTES = 72


def password_too_long(plain: str) -> bool:
    return len(plain.encode("utf-8")) > MAX_PASSWORD_BYTES


def hash_password(plain: str, rounds: int = DEFAULT_ROUNDS) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Raises ValueError when the password exceeds 72 bytes UTF-8 encoded.
    """
    if password_too_long(plain):
        raise ValueError(f"Password must not exceed {MAX_PASSWORD_BYTES} bytes when UTF-8 encoded.")
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    An over-long password or a malformed stored hash counts as a mismatch.
    """
    if password_too_long(plain):
        logger.info("Password check failed: supplied password exceeds %d bytes", MAX_PASSWORD_BYTES)
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        logger.warning("Password check failed: stored hash is not a valid bcrypt hash")
        return False


@lru_cache(maxsize=8)
def _dummy_hash(rounds: int) -> str:
    # One dummy per cost factor, computed once and cached.
    return hash_password("authservice_timing_dummy", rounds)


def equalize_timing(plain: str, rounds: int = DEFAULT_ROUNDS) -> None:
    """Spend one bcrypt check of the given cost without comparing anything real."""
    verify_password(plain, _dummy_hash(rounds))
