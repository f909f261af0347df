import base64
import json
import time

import pytest

from coursegate.service.tokens import (
    ACCESS_TOKEN_TYPE,
    TokenCodec,
    generate_rotation_secret,
    hash_rotation_secret,
)
from coursegate.storage.models import MembershipSnapshot, User


@pytest.fixture
def codec():
    return TokenCodec(
        "unit-test-signing-secret-0123456789abcdef",
        issuer="coursegate",
        audience="coursegate-clients",
        access_ttl_minutes=15,
    )


@pytest.fixture
def user():
    return User(id="u-1", email="ravi@ncu.edu", role="student")


def _tamper_payload(token: str, **changes) -> str:
    header, payload, sig = token.split(".")
    padded = payload + "=" * (-len(payload) % 4)
    data = json.loads(base64.urlsafe_b64decode(padded))
    data.update(changes)
    forged = base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")
    return f"{header}.{forged}.{sig}"


class TestTokenCodec:
    def test_access_token_carries_identity_and_memberships(self, codec, user):
        snapshot = MembershipSnapshot(
            organization_id="org-1",
            organization_name="North Campus University",
            role="student",
            is_verified=True,
            batch_id="b-1",
        )
        token = codec.issue_access_token(user, [snapshot])
        payload = codec.decode(token)

        assert payload["sub"] == "u-1"
        assert payload["email"] == "ravi@ncu.edu"
        assert payload["role"] == "student"
        assert payload["token_type"] == ACCESS_TOKEN_TYPE
        assert payload["exp"] - payload["iat"] == 15 * 60
        assert MembershipSnapshot.from_claim(payload["memberships"][0]) == snapshot

    def test_expired_token_rejected(self, codec, user):
        issued = time.time() - 16 * 60
        token = codec.issue_access_token(user, [], now=issued)
        assert codec.decode(token) is None

    def test_leeway_accepts_recently_expired_token(self, user):
        lenient = TokenCodec(
            "unit-test-signing-secret-0123456789abcdef",
            issuer="coursegate",
            audience="coursegate-clients",
            access_ttl_minutes=1,
            leeway_seconds=30,
        )
        token = lenient.issue_access_token(user, [], now=time.time() - 70)
        assert lenient.decode(token) is not None

    def test_tampered_payload_rejected(self, codec, user):
        token = codec.issue_access_token(user, [])
        forged = _tamper_payload(token, role="platform_admin")
        assert codec.decode(forged) is None

    def test_wrong_secret_rejected(self, codec, user):
        other = TokenCodec(
            "a-completely-different-secret-value-000000",
            issuer="coursegate",
            audience="coursegate-clients",
        )
        assert codec.decode(other.issue_access_token(user, [])) is None

    def test_wrong_audience_or_issuer_rejected(self, codec):
        base = {"sub": "u-1", "exp": time.time() + 60, "token_type": "access"}
        assert codec.decode(codec.encode({**base, "iss": "coursegate", "aud": "other"})) is None
        assert codec.decode(codec.encode({**base, "iss": "other", "aud": "coursegate-clients"})) is None
        listed = codec.encode({**base, "iss": "coursegate", "aud": ["x", "coursegate-clients"]})
        assert codec.decode(listed) is not None

    def test_alg_none_rejected(self, codec, user):
        token = codec.issue_access_token(user, [])
        _, payload, _ = token.split(".")
        header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")
        assert codec.decode(f"{header}.{payload}.") is None

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "!!!.@@@.###"])
    def test_malformed_tokens_rejected(self, codec, garbage):
        assert codec.decode(garbage) is None

    def test_non_ascii_signature_rejected(self, codec, user):
        header, payload, _ = codec.issue_access_token(user, []).split(".")
        assert codec.decode("eyJhbGciOiJIUzI1NiJ9.e30.é") is None
        assert codec.decode(f"{header}.{payload}.sïgnature") is None

    def test_secret_required(self):
        with pytest.raises(ValueError):
            TokenCodec("", issuer="i", audience="a")


class TestRotationSecrets:
    def test_secrets_are_random_and_hash_is_stable(self):
        first, second = generate_rotation_secret(), generate_rotation_secret()
        assert first != second
        assert len(first) >= 64
        assert hash_rotation_secret(first) == hash_rotation_secret(first)
        assert hash_rotation_secret(first) != first
        assert len(hash_rotation_secret(first)) == 64
