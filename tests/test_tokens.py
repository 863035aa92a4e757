"""Unit tests for auth/tokens.py -- TokenIssuer and TokenValidator.

Covers:
- issue -> validate round trip returns the same subject and roles
- 5-minute access token: valid at T0+4min, Expired at T0+6min (and exactly at exp)
- every single-bit flip in payload or signature fails (BadSignature / MalformedToken)
- forged tokens: wrong key, alg=none, different HMAC algorithm
- structurally broken tokens -> MalformedToken
- alternate base64url spellings of the same bytes -> MalformedToken
- revoke -> Revoked before natural expiry; registry outage -> StoreUnavailable
- SigningUnavailable when no key is loaded; key rotation
- expected_type mismatch -> WrongTokenType
"""

from __future__ import annotations

import base64
import json
import string
from datetime import timedelta

import pytest
from jose import jwt

from auth.keys import KeyProvider, SigningKey
from auth.models import Failure, FailureReason, Token, TokenType, VerifiedIdentity
from auth.store import StoreUnavailable
from auth.tokens import TokenIssuer, TokenValidator, parse_claims

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _b64decode(segment: str) -> bytes:
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _flip_bit(segment: str, byte_index: int, bit: int) -> str:
    data = bytearray(_b64decode(segment))
    data[byte_index] ^= 1 << bit
    return _b64encode(bytes(data))


_B64URL_ALPHABET = string.ascii_uppercase + string.ascii_lowercase + string.digits + "-_"


def _spare_bit_twin(segment: str) -> str:
    """Flip the lowest bit of the last character, which base64 decoding ignores."""
    index = _B64URL_ALPHABET.index(segment[-1])
    return segment[:-1] + _B64URL_ALPHABET[index ^ 1]


def _assert_failure(result, *reasons: FailureReason) -> None:
    assert isinstance(result, Failure), f"expected failure, got {result!r}"
    assert result.reason in reasons, f"unexpected reason {result.reason}"


class _BrokenRegistry:
    def revoke(self, token_id, expires_at):
        raise StoreUnavailable("down")

    def is_revoked(self, token_id):
        raise StoreUnavailable("down")

    def prune(self, now):
        raise StoreUnavailable("down")

    def __len__(self):
        return 0


# ---------------------------------------------------------------------------
# Issue / validate
# ---------------------------------------------------------------------------


class TestIssue:
    def test_issue_then_validate_round_trip(self, issuer, validator):
        token = issuer.issue("user-1", {"user", "auditor"}, TokenType.access)
        assert isinstance(token, Token)

        result = validator.validate(token.value)

        assert isinstance(result, VerifiedIdentity)
        assert result.subject_id == "user-1"
        assert result.roles == frozenset({"user", "auditor"})
        assert result.token_id == token.token_id
        assert result.token_type is TokenType.access

    def test_token_fields_match_clock_and_lifetime(self, issuer, clock):
        token = issuer.issue("user-1", {"user"}, "refresh")
        assert token.issued_at == clock.now()
        assert token.expires_at - token.issued_at == timedelta(days=7)
        assert token.token_type is TokenType.refresh

    def test_token_ids_are_unique_128_bit(self, issuer):
        ids = {issuer.issue("user-1", {"user"}, "access").token_id for _ in range(200)}
        assert len(ids) == 200
        assert all(len(token_id) == 32 for token_id in ids)

    def test_claims_carry_type_and_kid(self, issuer):
        token = issuer.issue("user-1", {"user"}, TokenType.access)
        assert jwt.get_unverified_header(token.value)["kid"] == "test"
        claims = jwt.get_unverified_claims(token.value)
        assert claims["typ"] == "access"
        assert claims["roles"] == ["user"]
        assert claims["exp"] > claims["iat"]

    def test_pair_has_one_of_each_type(self, issuer):
        pair = issuer.issue_pair("user-1", {"user"})
        assert pair.access.token_type is TokenType.access
        assert pair.refresh.token_type is TokenType.refresh
        assert pair.refresh.expires_at > pair.access.expires_at

    def test_signing_unavailable_without_key(self, clock):
        issuer = TokenIssuer(KeyProvider(), clock)
        result = issuer.issue("user-1", {"user"}, TokenType.access)
        _assert_failure(result, FailureReason.signing_unavailable)
        _assert_failure(issuer.issue_pair("user-1", {"user"}), FailureReason.signing_unavailable)

    def test_invalid_inputs_raise(self, issuer):
        with pytest.raises(ValueError):
            issuer.issue("", {"user"}, TokenType.access)
        with pytest.raises(ValueError):
            issuer.issue("user-1", {""}, TokenType.access)
        with pytest.raises(ValueError):
            issuer.issue("user-1", {"user"}, "session")

    def test_token_requires_expiry_after_issue(self, clock):
        with pytest.raises(ValueError):
            Token("v", "id", "sub", frozenset(), TokenType.access, clock.now(), clock.now())


# ---------------------------------------------------------------------------
# Expiry
# ---------------------------------------------------------------------------


class TestExpiry:
    @pytest.fixture
    def short_issuer(self, keys, clock):
        return TokenIssuer(keys, clock, access_ttl=timedelta(minutes=5))

    def test_valid_at_four_minutes_expired_at_six(self, short_issuer, validator, clock):
        token = short_issuer.issue("user-1", {"user"}, TokenType.access)

        clock.advance(minutes=4)
        ok = validator.validate(token.value)
        assert isinstance(ok, VerifiedIdentity)
        assert ok.remaining == timedelta(minutes=1)

        clock.advance(minutes=2)
        _assert_failure(validator.validate(token.value), FailureReason.expired)

    def test_expired_exactly_at_expiry(self, short_issuer, validator, clock):
        token = short_issuer.issue("user-1", {"user"}, TokenType.access)
        clock.set(token.expires_at)
        _assert_failure(validator.validate(token.value), FailureReason.expired)

    def test_expiry_takes_precedence_over_revocation(self, short_issuer, validator, registry, clock):
        token = short_issuer.issue("user-1", {"user"}, TokenType.access)
        registry.revoke(token.token_id, token.expires_at)
        clock.advance(minutes=10)
        _assert_failure(validator.validate(token.value), FailureReason.expired)


# ---------------------------------------------------------------------------
# Tampering and forgery
# ---------------------------------------------------------------------------


class TestTampering:
    def test_every_payload_bit_flip_fails(self, issuer, validator):
        token = issuer.issue("user-1", {"user"}, TokenType.access)
        header, payload, signature = token.value.split(".")
        for index in range(len(_b64decode(payload))):
            tampered = ".".join([header, _flip_bit(payload, index, index % 8), signature])
            _assert_failure(
                validator.validate(tampered),
                FailureReason.bad_signature,
                FailureReason.malformed_token,
            )

    def test_every_signature_bit_flip_fails(self, issuer, validator):
        token = issuer.issue("user-1", {"user"}, TokenType.access)
        header, payload, signature = token.value.split(".")
        for index in range(len(_b64decode(signature))):
            tampered = ".".join([header, payload, _flip_bit(signature, index, index % 8)])
            _assert_failure(validator.validate(tampered), FailureReason.bad_signature)

    def test_alternate_spelling_of_signature_is_rejected(self, issuer, validator):
        for _ in range(20):
            token = issuer.issue("user-1", {"user"}, TokenType.access)
            header, payload, signature = token.value.split(".")
            twin = _spare_bit_twin(signature)
            assert twin != signature
            assert _b64decode(twin) == _b64decode(signature)

            result = validator.validate(".".join([header, payload, twin]))

            _assert_failure(result, FailureReason.malformed_token)
            assert isinstance(validator.validate(token.value), VerifiedIdentity)

    def test_padded_segment_is_malformed(self, issuer, validator):
        token = issuer.issue("user-1", {"user"}, TokenType.access)
        header, payload, signature = token.value.split(".")
        _assert_failure(
            validator.validate(".".join([header, payload, signature + "="])),
            FailureReason.malformed_token,
        )

    def test_role_escalation_in_payload_is_bad_signature(self, issuer, validator):
        token = issuer.issue("user-1", {"user"}, TokenType.access)
        header, payload, signature = token.value.split(".")
        claims = json.loads(_b64decode(payload))
        claims["roles"] = ["admin", "user"]
        forged = ".".join([header, _b64encode(json.dumps(claims).encode()), signature])
        _assert_failure(validator.validate(forged), FailureReason.bad_signature)

    def test_token_from_another_key_is_bad_signature(self, validator, clock):
        other = TokenIssuer(KeyProvider(SigningKey("other", "another-secret-" + "x" * 32)), clock)
        token = other.issue("user-1", {"user"}, TokenType.access)
        _assert_failure(validator.validate(token.value), FailureReason.bad_signature)

    def test_alg_none_is_rejected(self, issuer, validator):
        token = issuer.issue("user-1", {"admin"}, TokenType.access)
        _, payload, _ = token.value.split(".")
        header = _b64encode(json.dumps({"alg": "none", "typ": "JWT"}).encode())
        _assert_failure(validator.validate(f"{header}.{payload}."), FailureReason.bad_signature)

    def test_other_hmac_algorithm_with_same_secret_is_rejected(self, issuer, validator, keys):
        token = issuer.issue("user-1", {"user"}, TokenType.access)
        claims = jwt.get_unverified_claims(token.value)
        resigned = jwt.encode(claims, keys.current().secret, algorithm="HS512")
        _assert_failure(validator.validate(resigned), FailureReason.bad_signature)


class TestMalformed:
    @pytest.mark.parametrize(
        "raw",
        [
            "",
            "not-a-token",
            "a.b",
            "a.b.c",
            "a.b.c.d",
            "....",
        ],
    )
    def test_structurally_invalid(self, validator, raw):
        _assert_failure(validator.validate(raw), FailureReason.malformed_token)

    def test_non_string_is_malformed(self, validator):
        _assert_failure(validator.validate(None), FailureReason.malformed_token)

    def test_signed_but_missing_claims_is_malformed(self, validator, keys):
        raw = jwt.encode({"sub": "user-1"}, keys.current().secret, algorithm="HS256")
        _assert_failure(validator.validate(raw), FailureReason.malformed_token)

    @pytest.mark.parametrize(
        "claims",
        [
            {"sub": "", "roles": [], "iat": 1, "exp": 2, "jti": "x", "typ": "access"},
            {"sub": "u", "roles": "user", "iat": 1, "exp": 2, "jti": "x", "typ": "access"},
            {"sub": "u", "roles": ["", "user"], "iat": 1, "exp": 2, "jti": "x", "typ": "access"},
            {"sub": "u", "roles": ["user", "user"], "iat": 1, "exp": 2, "jti": "x", "typ": "access"},
            {"sub": "u", "roles": [], "iat": 5, "exp": 5, "jti": "x", "typ": "access"},
            {"sub": "u", "roles": [], "iat": True, "exp": 2, "jti": "x", "typ": "access"},
            {"sub": "u", "roles": [], "iat": 1, "exp": 2, "jti": "x", "typ": "session"},
        ],
    )
    def test_parse_claims_rejects_bad_shapes(self, claims):
        assert parse_claims(json.dumps(claims).encode()) is None

    def test_parse_claims_rejects_non_json(self):
        assert parse_claims(b"\xff\xfe") is None
        assert parse_claims(b"[1, 2]") is None


# ---------------------------------------------------------------------------
# Revocation, type, key availability
# ---------------------------------------------------------------------------


class TestRevocationAndType:
    def test_revoked_token_fails_before_expiry(self, issuer, validator, registry):
        token = issuer.issue("user-1", {"user"}, TokenType.access)
        registry.revoke(token.token_id, token.expires_at)
        _assert_failure(validator.validate(token.value), FailureReason.revoked)

    def test_revoking_one_token_leaves_others_valid(self, issuer, validator, registry):
        first = issuer.issue("user-1", {"user"}, TokenType.access)
        second = issuer.issue("user-1", {"user"}, TokenType.access)
        registry.revoke(first.token_id, first.expires_at)
        assert isinstance(validator.validate(second.value), VerifiedIdentity)

    def test_registry_outage_is_store_unavailable(self, issuer, keys, clock):
        validator = TokenValidator(keys, _BrokenRegistry(), clock)
        token = issuer.issue("user-1", {"user"}, TokenType.access)
        _assert_failure(validator.validate(token.value), FailureReason.store_unavailable)

    def test_wrong_type(self, issuer, validator):
        refresh = issuer.issue("user-1", {"user"}, TokenType.refresh)
        _assert_failure(
            validator.validate(refresh.value, expected_type=TokenType.access),
            FailureReason.wrong_token_type,
        )
        assert validator.validate(refresh.value, expected_type="refresh")

    def test_validation_without_key_is_signing_unavailable(self, issuer, registry, clock):
        token = issuer.issue("user-1", {"user"}, TokenType.access)
        validator = TokenValidator(KeyProvider(), registry, clock)
        _assert_failure(validator.validate(token.value), FailureReason.signing_unavailable)

    def test_rotation_invalidates_tokens_signed_by_old_key(self, issuer, validator, keys):
        old = issuer.issue("user-1", {"user"}, TokenType.access)
        previous = keys.rotate(SigningKey("next", "rotated-secret-" + "y" * 32))
        assert previous.key_id == "test"

        _assert_failure(validator.validate(old.value), FailureReason.bad_signature)
        fresh = issuer.issue("user-1", {"user"}, TokenType.access)
        assert isinstance(validator.validate(fresh.value), VerifiedIdentity)

    def test_validation_has_no_side_effects(self, issuer, validator, registry):
        token = issuer.issue("user-1", {"user"}, TokenType.access)
        for _ in range(3):
            validator.validate(token.value)
        assert len(registry) == 0

    def test_public_message_is_generic_for_all_token_failures(self):
        reasons = [
            FailureReason.malformed_token,
            FailureReason.bad_signature,
            FailureReason.expired,
            FailureReason.revoked,
            FailureReason.wrong_token_type,
        ]
        assert {Failure(reason).public_message for reason in reasons} == {"Invalid token."}
