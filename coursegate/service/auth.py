from __future__ import annotations

import hashlib
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from coursegate.config import Settings, UserRole
from coursegate.logging import get_logger
from coursegate.service.claims import resolve_organization
from coursegate.service.errors import (
    AccountDeactivatedError,
    AuthenticationError,
    BadRequestError,
    ConflictError,
    EmailNotVerifiedError,
    ForbiddenError,
    NotFoundError,
)
from coursegate.service.sessions import SessionManager, TokenPair
from coursegate.storage.errors import ConstraintViolation
from coursegate.storage.models import Organization, User, utcnow
from coursegate.storage.redis_cache import RedisCache

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
RESET_TOKEN_TTL = timedelta(minutes=15)
VERIFY_TOKEN_TTL = timedelta(hours=24)
_RESET_PURPOSE = "reset"
_VERIFY_PURPOSE = "verify"


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        role: str = "student",
        is_active: bool = True,
        email_verified: bool = False,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(
        self, user_id: str, *, role: Optional[str] = None, is_active: Optional[bool] = None
    ) -> Optional[User]: ...

    def mark_email_verified(self, user_id: str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def has_verified_membership(self, user_id: str) -> bool: ...

    def find_organization_by_domain(self, domain: str) -> Optional[Organization]: ...


@dataclass
class LoginResult:
    user: User
    tokens: TokenPair
    requires_institution_verification: bool = False
    organization_slug: Optional[str] = None


class AuthService:
    """Password credentials and one-time email tokens around the session manager.

    One-time tokens live in Redis when a cache is configured, otherwise in an
    in-process map guarded by ``_state_lock``.
    """

    def __init__(
        self,
        store: AuthStore,
        sessions: SessionManager,
        cache: Optional[RedisCache],
        settings: Settings,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.cache = cache
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._state_lock = threading.Lock()
        self._one_time_tokens: dict[tuple[str, str], tuple[str, datetime]] = {}

    # passwords
    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    # accounts
    async def register(self, email: str, password: str, name: Optional[str] = None) -> User:
        if not self.settings.allow_registration:
            raise ForbiddenError("registration is disabled")
        try:
            user = self.store.create_user(email, name, role=UserRole.STUDENT.value)
        except ConstraintViolation:
            raise ConflictError("An account with this email already exists")
        self.save_password(user.id, password)
        logger.info("user_registered", user_id=user.id)
        return user

    async def login(self, email: str, password: str) -> LoginResult:
        user = self.store.get_user_by_email(email)
        if not user or not self.verify_password(user.id, password):
            logger.info(
                "login_failed",
                email_hash=hashlib.sha256(email.strip().lower().encode()).hexdigest(),
            )
            raise AuthenticationError("invalid email or password")
        if not user.is_active:
            raise AccountDeactivatedError("account is deactivated")
        if self.settings.require_email_verification and not user.email_verified:
            raise EmailNotVerifiedError("verify your email address before signing in")
        tokens = self.sessions.issue(user)
        result = LoginResult(user=user, tokens=tokens)
        if not self.store.has_verified_membership(user.id):
            org = resolve_organization(self.store, user.email)
            if org:
                result.requires_institution_verification = True
                result.organization_slug = org.slug
        logger.info("login_succeeded", user_id=user.id)
        return result

    async def refresh(self, refresh_token: Optional[str]) -> tuple[User, TokenPair]:
        return self.sessions.rotate(refresh_token)

    async def logout(self, refresh_token: Optional[str]) -> bool:
        return self.sessions.revoke(refresh_token)

    async def logout_everywhere(self, user_id: str) -> int:
        return self.sessions.revoke_all(user_id)

    async def set_user_status(
        self,
        user_id: str,
        *,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> User:
        if role is not None and role not in {r.value for r in UserRole}:
            raise BadRequestError("unknown role", detail={"role": role})
        user = self.store.update_user(user_id, role=role, is_active=is_active)
        if not user:
            raise NotFoundError("user not found")
        if is_active is False:
            self.sessions.revoke_all(user.id)
        logger.info("user_status_updated", user_id=user.id, role=user.role, is_active=user.is_active)
        return user

    # one-time tokens
    async def _store_token(self, purpose: str, user_id: str, ttl: timedelta) -> str:
        token = secrets.token_urlsafe(32)
        if self.cache:
            await self.cache.store_one_time_token(
                purpose, token, user_id, int(ttl.total_seconds())
            )
        else:
            with self._state_lock:
                self._one_time_tokens[(purpose, token)] = (user_id, utcnow() + ttl)
        return token

    async def _consume_token(self, purpose: str, token: str) -> Optional[str]:
        if not token:
            return None
        if self.cache:
            return await self.cache.consume_one_time_token(purpose, token)
        with self._state_lock:
            stored = self._one_time_tokens.pop((purpose, token), None)
        if not stored:
            return None
        user_id, expires_at = stored
        if expires_at <= utcnow():
            return None
        return user_id

    def cleanup_expired_tokens(self) -> int:
        now = utcnow()
        with self._state_lock:
            stale = [key for key, (_, exp) in self._one_time_tokens.items() if exp <= now]
            for key in stale:
                self._one_time_tokens.pop(key, None)
        return len(stale)

    async def request_email_verification(self, user: User) -> str:
        token = await self._store_token(_VERIFY_PURPOSE, user.id, VERIFY_TOKEN_TTL)
        logger.info("email_verification_requested", user_id=user.id)
        return token

    async def complete_email_verification(self, token: str) -> bool:
        user_id = await self._consume_token(_VERIFY_PURPOSE, token)
        if not user_id:
            logger.warning("email_verification_invalid_token")
            return False
        user = self.store.mark_email_verified(user_id)
        if not user:
            logger.warning("email_verification_missing_user", user_id=user_id)
            return False
        logger.info("email_verified", user_id=user.id)
        return True

    async def initiate_password_reset(self, email: str) -> Optional[str]:
        """Return a reset token, or None when no account matches.

        Callers must respond identically in both cases.
        """
        user = self.store.get_user_by_email(email)
        if not user:
            return None
        token = await self._store_token(_RESET_PURPOSE, user.id, RESET_TOKEN_TTL)
        logger.info("password_reset_requested", user_id=user.id)
        return token

    async def complete_password_reset(self, token: str, new_password: str) -> bool:
        user_id = await self._consume_token(_RESET_PURPOSE, token)
        if not user_id:
            logger.warning("password_reset_invalid_token")
            return False
        user = self.store.get_user(user_id)
        if not user:
            logger.warning("password_reset_user_missing", user_id=user_id)
            return False
        self.save_password(user.id, new_password)
        self.sessions.revoke_all(user.id)
        logger.info("password_reset_completed", user_id=user.id)
        return True
