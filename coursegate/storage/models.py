from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    role: str = "student"
    is_active: bool = True
    is_premium: bool = False
    email_verified_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def email_verified(self) -> bool:
        return self.email_verified_at is not None


@dataclass
class RotationToken:
    """Persisted half of a refresh credential; only the sha256 of the secret is kept."""

    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    revoked: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, user_id: str, token_hash: str, ttl_days: int = 7) -> "RotationToken":
        now = utcnow()
        return cls(
            id=new_id(),
            user_id=user_id,
            token_hash=token_hash,
            expires_at=now + timedelta(days=ttl_days),
            created_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class Organization:
    id: str
    name: str
    slug: str
    email_domains: List[str] = field(default_factory=list)
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Batch:
    id: str
    organization_id: str
    name: str
    is_active: bool = True


@dataclass
class Membership:
    id: str
    user_id: str
    organization_id: str
    role: str = "student"
    batch_id: Optional[str] = None
    enrollment_id: Optional[str] = None
    is_verified: bool = False
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class MembershipSnapshot:
    """Membership as embedded in access tokens."""

    organization_id: str
    organization_name: str
    role: str
    is_verified: bool
    batch_id: Optional[str] = None

    def to_claim(self) -> dict:
        return asdict(self)

    @classmethod
    def from_claim(cls, raw: dict) -> "MembershipSnapshot":
        return cls(
            organization_id=str(raw["organization_id"]),
            organization_name=str(raw.get("organization_name", "")),
            role=str(raw.get("role", "student")),
            is_verified=bool(raw.get("is_verified", False)),
            batch_id=raw.get("batch_id"),
        )


@dataclass
class RosterRecord:
    id: str
    organization_id: str
    email: str
    name: str
    enrollment_id: str
    batch_id: Optional[str] = None
    is_claimed: bool = False
    claimed_by_user_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Course:
    id: str
    title: str
    slug: str
    is_published: bool = False
    price: float = 0.0


@dataclass
class Module:
    id: str
    course_id: str
    title: str
    position: int = 0


@dataclass
class Lesson:
    id: str
    module_id: str
    title: str
    position: int = 0
    is_free: bool = False


@dataclass
class LessonView:
    """A lesson joined with its module's course, as read on the content path."""

    lesson: Lesson
    course: Course


@dataclass
class CourseGrant:
    """Organization-wide grant when batch_id is None, batch grant otherwise."""

    organization_id: str
    course_id: str
    batch_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Enrollment:
    id: str
    user_id: str
    course_id: str
    access_source: str = "individual"
    progress_percentage: int = 0
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Payment:
    id: str
    user_id: str
    order_id: str
    amount: int
    currency: str = "INR"
    status: str = "created"
    gateway_payment_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
