from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from coursegate.config import OrgRole, UserRole
from coursegate.service.errors import AuthenticationError, BadRequestError, ForbiddenError
from coursegate.service.tokens import ACCESS_TOKEN_TYPE, TokenCodec
from coursegate.storage.models import MembershipSnapshot


@dataclass
class AuthContext:
    """Principal decoded from an access token; no datastore lookup involved."""

    user_id: str
    email: str
    role: str
    memberships: List[MembershipSnapshot] = field(default_factory=list)

    @property
    def is_platform_admin(self) -> bool:
        return self.role == UserRole.PLATFORM_ADMIN.value

    def membership_for(self, org_id: str) -> Optional[MembershipSnapshot]:
        return next((m for m in self.memberships if m.organization_id == org_id), None)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def authenticate_access_token(codec: TokenCodec, token: Optional[str]) -> AuthContext:
    if not token:
        raise AuthenticationError("authentication required")
    payload = codec.decode(token)
    if not payload or payload.get("token_type") != ACCESS_TOKEN_TYPE:
        raise AuthenticationError("invalid or expired access token")
    sub = payload.get("sub")
    if not sub:
        raise AuthenticationError("invalid or expired access token")
    try:
        memberships = [
            MembershipSnapshot.from_claim(raw) for raw in payload.get("memberships") or []
        ]
    except (KeyError, TypeError, AttributeError):
        raise AuthenticationError("invalid or expired access token")
    return AuthContext(
        user_id=str(sub),
        email=str(payload.get("email", "")),
        role=str(payload.get("role", UserRole.STUDENT.value)),
        memberships=memberships,
    )


def check_role(ctx: Optional[AuthContext], *roles: str) -> AuthContext:
    if ctx is None:
        raise AuthenticationError("authentication required")
    allowed = {getattr(r, "value", r) for r in roles}
    if ctx.role not in allowed:
        raise ForbiddenError("insufficient role")
    return ctx


def check_org_role(ctx: Optional[AuthContext], org_id: Optional[str], *roles: str) -> AuthContext:
    """Require a verified membership in ``org_id`` with one of ``roles``.

    Platform admins pass for every organization.
    """
    if ctx is None:
        raise AuthenticationError("authentication required")
    if ctx.is_platform_admin:
        return ctx
    if not org_id:
        raise BadRequestError("organization id is required")
    allowed = {getattr(r, "value", r) for r in roles} or {OrgRole.ADMIN.value}
    membership = ctx.membership_for(org_id)
    if not membership or not membership.is_verified or membership.role not in allowed:
        raise ForbiddenError("insufficient organization role")
    return ctx
