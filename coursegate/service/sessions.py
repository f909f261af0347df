from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol

from coursegate.logging import get_logger
from coursegate.service.errors import (
    AccountDeactivatedError,
    AuthenticationError,
    ReuseDetected,
)
from coursegate.service.tokens import (
    TokenCodec,
    generate_rotation_secret,
    hash_rotation_secret,
)
from coursegate.storage.models import MembershipSnapshot, RotationToken, User, utcnow

logger = get_logger(__name__)


class TokenStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def list_membership_snapshots(self, user_id: str) -> List[MembershipSnapshot]: ...

    def create_rotation_token(self, token: RotationToken) -> RotationToken: ...

    def get_rotation_token(self, token_hash: str) -> Optional[RotationToken]: ...

    def rotate_rotation_token(
        self, old_hash: str, replacement: RotationToken, now: Optional[datetime] = None
    ) -> bool: ...

    def revoke_rotation_token(self, token_hash: str) -> bool: ...

    def revoke_user_rotation_tokens(self, user_id: str) -> int: ...

    def prune_rotation_tokens(self, before: datetime) -> int: ...


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_in: int
    token_type: str = "bearer"


class SessionManager:
    """Issues, rotates and revokes credential pairs.

    Access tokens are stateless and live for ``codec.access_ttl_seconds``; a
    logout therefore takes at most that long to apply everywhere. Rotation
    secrets are single-use: presenting a spent one revokes every rotation
    token the owner holds.
    """

    def __init__(self, store: TokenStore, codec: TokenCodec, *, refresh_ttl_days: int = 7) -> None:
        self.store = store
        self.codec = codec
        self.refresh_ttl_days = refresh_ttl_days

    def _mint(self, user: User) -> tuple[TokenPair, RotationToken]:
        memberships = self.store.list_membership_snapshots(user.id)
        secret = generate_rotation_secret()
        row = RotationToken.new(
            user.id, hash_rotation_secret(secret), ttl_days=self.refresh_ttl_days
        )
        pair = TokenPair(
            access_token=self.codec.issue_access_token(user, memberships),
            refresh_token=secret,
            expires_in=self.codec.access_ttl_seconds,
            refresh_expires_in=self.refresh_ttl_days * 86400,
        )
        return pair, row

    def issue(self, user: User) -> TokenPair:
        pair, row = self._mint(user)
        self.store.create_rotation_token(row)
        logger.info("session_issued", user_id=user.id)
        return pair

    def rotate(self, secret: Optional[str]) -> tuple[User, TokenPair]:
        """Exchange a live rotation secret for a fresh pair.

        Raises AuthenticationError for unknown, expired, revoked or raced
        secrets and AccountDeactivatedError when the owner is switched off.
        """
        if not secret:
            raise AuthenticationError("refresh token required")
        try:
            return self._rotate(secret)
        except ReuseDetected as signal:
            revoked = self.store.revoke_user_rotation_tokens(signal.user_id)
            logger.warning(
                "rotation_reuse_detected", user_id=signal.user_id, revoked=revoked
            )
            raise AuthenticationError("invalid refresh token")

    def _rotate(self, secret: str) -> tuple[User, TokenPair]:
        now = utcnow()
        old_hash = hash_rotation_secret(secret)
        current = self.store.get_rotation_token(old_hash)
        if not current:
            raise AuthenticationError("invalid refresh token")
        # expired rows never signal reuse, so pruning them is always safe
        if current.is_expired(now):
            raise AuthenticationError("refresh token expired")
        if current.revoked:
            raise ReuseDetected(current.user_id)
        user = self.store.get_user(current.user_id)
        if not user:
            raise AuthenticationError("invalid refresh token")
        if not user.is_active:
            raise AccountDeactivatedError("account is deactivated")
        pair, replacement = self._mint(user)
        if not self.store.rotate_rotation_token(old_hash, replacement, now):
            # lost the conditional update to a concurrent exchange of the same secret
            raise ReuseDetected(user.id)
        logger.info("session_rotated", user_id=user.id)
        return user, pair

    def revoke(self, secret: Optional[str]) -> bool:
        if not secret:
            return False
        revoked = self.store.revoke_rotation_token(hash_rotation_secret(secret))
        if revoked:
            logger.info("session_revoked")
        return revoked

    def revoke_all(self, user_id: str) -> int:
        count = self.store.revoke_user_rotation_tokens(user_id)
        logger.info("sessions_revoked_all", user_id=user_id, revoked=count)
        return count

    def prune_expired(self, before: Optional[datetime] = None) -> int:
        cutoff = before or utcnow()
        removed = self.store.prune_rotation_tokens(cutoff)
        if removed:
            logger.info("rotation_tokens_pruned", removed=removed)
        return removed
