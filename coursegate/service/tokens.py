from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from typing import Any, Iterable, Optional

from coursegate.logging import get_logger
from coursegate.storage.models import MembershipSnapshot, User

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"


def generate_rotation_secret() -> str:
    return secrets.token_urlsafe(48)


def hash_rotation_secret(secret: str) -> str:
    """One-way digest stored in place of the raw rotation secret.

    Independent of the signing key, so swapping JWT_SECRET leaves stored
    rotation tokens valid.
    """
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


class TokenCodec:
    """HS256 signing and verification of short-lived access tokens.

    The secret is handed in at construction; nothing here reads process state.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl_minutes: int = 15,
        leeway_seconds: int = 0,
    ) -> None:
        if not secret:
            raise ValueError("signing secret is required")
        self._secret = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self.access_ttl_seconds = access_ttl_minutes * 60
        self.leeway_seconds = leeway_seconds

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode("utf-8"), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def encode(self, payload: dict[str, Any]) -> str:
        header_enc = self._encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str, *, now: Optional[float] = None) -> Optional[dict[str, Any]]:
        """Return the verified payload, or None for any malformed, forged or expired token."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            return None
        expected = self._sign(f"{header_b64}.{payload_b64}").encode("ascii")
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            if self.audience not in aud:
                return None
        elif aud != self.audience:
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        current = time.time() if now is None else now
        if exp_ts <= current - self.leeway_seconds:
            return None
        return payload

    def issue_access_token(
        self,
        user: User,
        memberships: Iterable[MembershipSnapshot],
        *,
        now: Optional[float] = None,
    ) -> str:
        issued_at = int(time.time() if now is None else now)
        return self.encode(
            {
                "sub": user.id,
                "email": user.email,
                "role": user.role,
                "memberships": [m.to_claim() for m in memberships],
                "iss": self.issuer,
                "aud": self.audience,
                "iat": issued_at,
                "exp": issued_at + self.access_ttl_seconds,
                "token_type": ACCESS_TOKEN_TYPE,
            }
        )
