from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

MAX_ROSTER_ROWS = 5000

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "account_deactivated",
    "email_not_verified",
    "no_institution",
    "already_verified",
    "claim_rejected",
    "no_subscription",
})


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    hidden = {"\u200b", "\u200c", "\u200d", "\ufeff"}
    hidden.update(chr(c) for c in range(0x202A, 0x202F))
    hidden.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in hidden)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    labels = domain.split(".")
    if len(labels) < 2:
        raise ValueError("invalid email address format")
    for label in labels:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class RegisterRequest(BaseModel):
    email: str
    password: str
    name: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        cleaned = _normalize_unicode(value).strip()
        return cleaned or None


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenRefreshRequest(BaseModel):
    # Browsers send the cookie instead
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class EmailVerificationRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class VerifyInstitutionRequest(BaseModel):
    enrollment_id: str = Field(..., min_length=1, max_length=128)

    @field_validator("enrollment_id")
    @classmethod
    def _strip_code(cls, value: str) -> str:
        cleaned = _normalize_unicode(value).strip()
        if not cleaned:
            raise ValueError("enrollment id is required")
        return cleaned


class CourseGrantRequest(BaseModel):
    course_id: str = Field(..., min_length=1, max_length=64)
    batch_id: Optional[str] = Field(default=None, max_length=64)


class RosterRowPayload(BaseModel):
    email: str
    name: str = Field(default="", max_length=256)
    enrollment_id: str = Field(..., max_length=128)
    batch: Optional[str] = Field(default=None, max_length=128)


class RosterUploadRequest(BaseModel):
    """Pre-parsed roster rows; row-level problems are reported, not rejected."""

    rows: List[RosterRowPayload] = Field(..., max_length=MAX_ROSTER_ROWS)


class AdminUserUpdateRequest(BaseModel):
    role: Optional[
        Literal["platform_admin", "institution_admin", "instructor", "student"]
    ] = None
    is_active: Optional[bool] = None


class SubscriptionUpdateRequest(BaseModel):
    is_premium: bool


class OrganizationCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    slug: str = Field(..., min_length=1, max_length=64)
    email_domains: List[str] = Field(..., min_length=1, max_length=50)


class OrganizationUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    slug: Optional[str] = Field(default=None, min_length=1, max_length=64)
    email_domains: Optional[List[str]] = Field(default=None, min_length=1, max_length=50)
    is_active: Optional[bool] = None


class OrgAdminRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    email: str
    # Omitted: the admin signs in after a password reset
    password: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_admin_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_admin_password(cls, value: Optional[str]) -> Optional[str]:
        return _validate_password_strength(value) if value is not None else None


class PaymentWebhookPayload(BaseModel):
    event: Literal["payment.captured", "payment.failed"]
    order_id: str = Field(..., min_length=1, max_length=128)
    gateway_payment_id: Optional[str] = Field(default=None, max_length=128)


class UserResponse(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    role: str
    is_active: bool = True
    is_premium: bool = False
    email_verified: bool = False
    created_at: datetime


class MembershipResponse(BaseModel):
    organization_id: str
    organization_name: str
    role: str
    is_verified: bool
    batch_id: Optional[str] = None


class MeResponse(BaseModel):
    user_id: str
    email: str
    role: str
    memberships: List[MembershipResponse] = Field(default_factory=list)


class AuthResponse(BaseModel):
    user_id: str
    role: str
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    requires_institution_verification: bool = False
    organization_slug: Optional[str] = None


class RegisterResponse(BaseModel):
    user: UserResponse
    verification_required: bool


class AccessResponse(BaseModel):
    allowed: bool
    source: Optional[str] = None


class FanOutResponse(BaseModel):
    enrolled: int = 0
    already_enrolled: int = 0
    failed: int = 0


class CourseGrantResponse(BaseModel):
    organization_id: str
    course_id: str
    batch_id: Optional[str] = None
    created_at: datetime


class CourseGrantListResponse(BaseModel):
    items: List[CourseGrantResponse]


class AssignCourseResponse(BaseModel):
    grant: CourseGrantResponse
    enrollments: FanOutResponse


class ClaimResponse(BaseModel):
    organization_id: str
    organization_name: str
    organization_slug: str
    batch_id: Optional[str] = None
    enrollment_id: str
    enrollments: FanOutResponse


class InstitutionStatusResponse(BaseModel):
    has_institution: bool
    is_verified: bool = False
    organization_id: Optional[str] = None
    organization_name: Optional[str] = None
    organization_slug: Optional[str] = None


class RosterUploadResponse(BaseModel):
    added: int
    updated: int
    already_claimed: int
    auto_linked: int
    total_processed: int
    errors: List[dict] = Field(default_factory=list)


class OrganizationResponse(BaseModel):
    id: str
    name: str
    slug: str
    email_domains: List[str]
    is_active: bool
    created_at: datetime


class OrganizationListResponse(BaseModel):
    items: List[OrganizationResponse]


class OrgAdminResponse(BaseModel):
    user: UserResponse
    organization_id: str
    membership_role: str
    is_verified: bool
    created_user: bool


class RosterRecordResponse(BaseModel):
    id: str
    organization_id: str
    email: str
    name: str
    enrollment_id: str
    batch_id: Optional[str] = None
    is_claimed: bool
    claimed_by_user_id: Optional[str] = None
    created_at: datetime


class RosterListResponse(BaseModel):
    items: List[RosterRecordResponse]
    total: int
    page: int
    limit: int


class RosterRemovalResponse(BaseModel):
    removed: bool = True
    was_claimed: bool
    enrollments_removed: int = 0


class EnrollmentResponse(BaseModel):
    course_id: str
    title: Optional[str] = None
    slug: Optional[str] = None
    access_source: str
    progress_percentage: int = 0
    enrolled_at: datetime


class EnrollmentListResponse(BaseModel):
    items: List[EnrollmentResponse]
