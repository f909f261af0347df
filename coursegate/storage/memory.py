from __future__ import annotations

import threading
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from coursegate.logging import get_logger
from coursegate.storage.errors import ConstraintViolation
from coursegate.storage.models import (
    Batch,
    Course,
    CourseGrant,
    Enrollment,
    Lesson,
    LessonView,
    Membership,
    MembershipSnapshot,
    Module,
    Organization,
    Payment,
    RosterRecord,
    RotationToken,
    User,
    new_id,
    utcnow,
)


class MemoryStore:
    """In-process store with the same method surface as PostgresStore.

    Every method takes ``_data_lock`` so that conditional updates (token
    rotation, roster claims, payment capture) are linearizable across threads.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.rotation_tokens: Dict[str, RotationToken] = {}  # keyed by token_hash
        self.organizations: Dict[str, Organization] = {}
        self.batches: Dict[str, Batch] = {}
        self.memberships: Dict[Tuple[str, str], Membership] = {}  # (user_id, org_id)
        self.roster: Dict[Tuple[str, str], RosterRecord] = {}  # (org_id, email)
        self.courses: Dict[str, Course] = {}
        self.modules: Dict[str, Module] = {}
        self.lessons: Dict[str, Lesson] = {}
        self.grants: Dict[Tuple[str, str, Optional[str]], CourseGrant] = {}
        self.enrollments: Dict[Tuple[str, str], Enrollment] = {}
        self.payments: Dict[str, Payment] = {}  # keyed by order_id
        # RLock so helpers can be called from inside other locked methods
        self._data_lock = threading.RLock()

    # users
    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        role: str = "student",
        is_active: bool = True,
        email_verified: bool = False,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=new_id(),
                email=normalized,
                name=name,
                role=role,
                is_active=is_active,
                email_verified_at=utcnow() if email_verified else None,
            )
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def update_user(
        self,
        user_id: str,
        *,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if role is not None:
                user.role = role
            if is_active is not None:
                user.is_active = is_active
            return user

    def set_premium(self, user_id: str, is_premium: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.is_premium = is_premium
            return user

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if user.email_verified_at is None:
                user.email_verified_at = utcnow()
            return user

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # rotation tokens
    def create_rotation_token(self, token: RotationToken) -> RotationToken:
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("token user missing", {"user_id": token.user_id})
            if token.token_hash in self.rotation_tokens:
                raise ConstraintViolation("token hash collision", {"field": "token_hash"})
            self.rotation_tokens[token.token_hash] = token
            return token

    def get_rotation_token(self, token_hash: str) -> Optional[RotationToken]:
        with self._data_lock:
            return self.rotation_tokens.get(token_hash)

    def rotate_rotation_token(
        self, old_hash: str, replacement: RotationToken, now: Optional[datetime] = None
    ) -> bool:
        """Revoke ``old_hash`` and store ``replacement`` if the old row is still live."""
        now = now or utcnow()
        with self._data_lock:
            current = self.rotation_tokens.get(old_hash)
            if not current or current.revoked or current.expires_at <= now:
                return False
            current.revoked = True
            self.create_rotation_token(replacement)
            return True

    def revoke_rotation_token(self, token_hash: str) -> bool:
        with self._data_lock:
            current = self.rotation_tokens.get(token_hash)
            if not current or current.revoked:
                return False
            current.revoked = True
            return True

    def revoke_user_rotation_tokens(self, user_id: str) -> int:
        with self._data_lock:
            count = 0
            for token in self.rotation_tokens.values():
                if token.user_id == user_id and not token.revoked:
                    token.revoked = True
                    count += 1
            return count

    def list_rotation_tokens(self, user_id: str) -> List[RotationToken]:
        with self._data_lock:
            tokens = [t for t in self.rotation_tokens.values() if t.user_id == user_id]
            return sorted(tokens, key=lambda t: t.created_at)

    def prune_rotation_tokens(self, before: datetime) -> int:
        with self._data_lock:
            stale = [h for h, t in self.rotation_tokens.items() if t.expires_at <= before]
            for token_hash in stale:
                self.rotation_tokens.pop(token_hash, None)
            return len(stale)

    # organizations
    def create_organization(
        self,
        name: str,
        slug: str,
        email_domains: Optional[List[str]] = None,
        *,
        is_active: bool = True,
    ) -> Organization:
        with self._data_lock:
            if any(o.slug == slug for o in self.organizations.values()):
                raise ConstraintViolation("organization slug already exists", {"field": "slug"})
            org = Organization(
                id=new_id(),
                name=name,
                slug=slug,
                email_domains=[d.lower() for d in (email_domains or [])],
                is_active=is_active,
            )
            self.organizations[org.id] = org
            return org

    def get_organization(self, org_id: str) -> Optional[Organization]:
        with self._data_lock:
            return self.organizations.get(org_id)

    def set_organization_active(self, org_id: str, is_active: bool) -> Optional[Organization]:
        with self._data_lock:
            org = self.organizations.get(org_id)
            if org:
                org.is_active = is_active
            return org

    def find_organization_by_domain(self, domain: str) -> Optional[Organization]:
        domain = domain.lower()
        with self._data_lock:
            return next(
                (
                    o
                    for o in self.organizations.values()
                    if o.is_active and domain in o.email_domains
                ),
                None,
            )

    def list_organizations(self) -> List[Organization]:
        with self._data_lock:
            return sorted(self.organizations.values(), key=lambda o: o.created_at, reverse=True)

    def update_organization(
        self,
        org_id: str,
        *,
        name: Optional[str] = None,
        slug: Optional[str] = None,
        email_domains: Optional[List[str]] = None,
        is_active: Optional[bool] = None,
    ) -> Optional[Organization]:
        with self._data_lock:
            org = self.organizations.get(org_id)
            if not org:
                return None
            if slug is not None and any(
                o.slug == slug and o.id != org_id for o in self.organizations.values()
            ):
                raise ConstraintViolation("organization slug already exists", {"field": "slug"})
            if name is not None:
                org.name = name
            if slug is not None:
                org.slug = slug
            if email_domains is not None:
                org.email_domains = [d.lower() for d in email_domains]
            if is_active is not None:
                org.is_active = is_active
            return org

    def get_batch(self, batch_id: str) -> Optional[Batch]:
        with self._data_lock:
            return self.batches.get(batch_id)

    def upsert_batch(self, org_id: str, name: str) -> Batch:
        with self._data_lock:
            if org_id not in self.organizations:
                raise ConstraintViolation("organization missing", {"organization_id": org_id})
            for batch in self.batches.values():
                if batch.organization_id == org_id and batch.name == name:
                    return batch
            batch = Batch(id=new_id(), organization_id=org_id, name=name)
            self.batches[batch.id] = batch
            return batch

    # memberships
    def get_membership(self, user_id: str, org_id: str) -> Optional[Membership]:
        with self._data_lock:
            return self.memberships.get((user_id, org_id))

    def upsert_membership(
        self,
        user_id: str,
        org_id: str,
        *,
        role: str = "student",
        batch_id: Optional[str] = None,
        enrollment_id: Optional[str] = None,
        is_verified: bool = False,
    ) -> Membership:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("membership user missing", {"user_id": user_id})
            if org_id not in self.organizations:
                raise ConstraintViolation("organization missing", {"organization_id": org_id})
            if enrollment_id:
                for (uid, oid), other in self.memberships.items():
                    if oid == org_id and uid != user_id and other.enrollment_id == enrollment_id:
                        raise ConstraintViolation(
                            "enrollment id already linked", {"field": "enrollment_id"}
                        )
            existing = self.memberships.get((user_id, org_id))
            if existing:
                existing.role = role
                existing.batch_id = batch_id if batch_id is not None else existing.batch_id
                existing.enrollment_id = enrollment_id or existing.enrollment_id
                existing.is_verified = existing.is_verified or is_verified
                existing.is_active = True
                return existing
            membership = Membership(
                id=new_id(),
                user_id=user_id,
                organization_id=org_id,
                role=role,
                batch_id=batch_id,
                enrollment_id=enrollment_id,
                is_verified=is_verified,
            )
            self.memberships[(user_id, org_id)] = membership
            return membership

    def set_membership_active(self, user_id: str, org_id: str, is_active: bool) -> bool:
        with self._data_lock:
            membership = self.memberships.get((user_id, org_id))
            if not membership:
                return False
            membership.is_active = is_active
            return True

    def list_membership_snapshots(self, user_id: str) -> List[MembershipSnapshot]:
        with self._data_lock:
            snapshots = []
            for (uid, org_id), m in self.memberships.items():
                if uid != user_id or not m.is_active:
                    continue
                org = self.organizations.get(org_id)
                snapshots.append(
                    MembershipSnapshot(
                        organization_id=org_id,
                        organization_name=org.name if org else "",
                        role=m.role,
                        is_verified=m.is_verified,
                        batch_id=m.batch_id,
                    )
                )
            return snapshots

    def has_verified_membership(self, user_id: str) -> bool:
        with self._data_lock:
            for (uid, org_id), m in self.memberships.items():
                if uid != user_id or not (m.is_active and m.is_verified):
                    continue
                org = self.organizations.get(org_id)
                if org and org.is_active:
                    return True
            return False

    def list_verified_member_ids(
        self, org_id: str, batch_id: Optional[str] = None
    ) -> List[str]:
        with self._data_lock:
            org = self.organizations.get(org_id)
            if not org or not org.is_active:
                return []
            return [
                m.user_id
                for (_, oid), m in self.memberships.items()
                if oid == org_id
                and m.is_active
                and m.is_verified
                and (batch_id is None or m.batch_id == batch_id)
            ]

    # roster
    def get_roster_record(self, org_id: str, email: str) -> Optional[RosterRecord]:
        with self._data_lock:
            return self.roster.get((org_id, email.strip().lower()))

    def upsert_roster_record(
        self,
        org_id: str,
        email: str,
        name: str,
        enrollment_id: str,
        batch_id: Optional[str] = None,
    ) -> tuple[RosterRecord, str]:
        """Insert or refresh an unclaimed seat; returns the row and added/updated/already_claimed."""
        key = (org_id, email.strip().lower())
        with self._data_lock:
            for (oid, other_email), other in self.roster.items():
                if oid == org_id and other_email != key[1] and other.enrollment_id == enrollment_id:
                    raise ConstraintViolation(
                        "enrollment id already used in organization",
                        {"field": "enrollment_id"},
                    )
            existing = self.roster.get(key)
            if existing and existing.is_claimed:
                return existing, "already_claimed"
            if existing:
                existing.name = name
                existing.enrollment_id = enrollment_id
                existing.batch_id = batch_id
                return existing, "updated"
            record = RosterRecord(
                id=new_id(),
                organization_id=org_id,
                email=key[1],
                name=name,
                enrollment_id=enrollment_id,
                batch_id=batch_id,
            )
            self.roster[key] = record
            return record, "added"

    def claim_roster_record(
        self,
        org_id: str,
        email: str,
        user_id: str,
        *,
        enrollment_code: Optional[str] = None,
    ) -> Optional[tuple[RosterRecord, Membership]]:
        """Claim an unclaimed seat and verify the matching membership in one step.

        When ``enrollment_code`` is None the seat is matched on email alone
        (roster auto-link). Returns None when no unclaimed seat matches.
        """
        with self._data_lock:
            record = self.roster.get((org_id, email.strip().lower()))
            if not record or record.is_claimed:
                return None
            if enrollment_code is not None and record.enrollment_id != enrollment_code:
                return None
            existing = self.memberships.get((user_id, org_id))
            membership = self.upsert_membership(
                user_id,
                org_id,
                role=existing.role if existing else "student",
                batch_id=record.batch_id,
                enrollment_id=record.enrollment_id,
                is_verified=True,
            )
            record.is_claimed = True
            record.claimed_by_user_id = user_id
            return record, membership

    def list_roster_records(
        self,
        org_id: str,
        *,
        batch_id: Optional[str] = None,
        claimed: Optional[bool] = None,
        search: Optional[str] = None,
    ) -> List[RosterRecord]:
        needle = (search or "").strip().lower()
        with self._data_lock:
            records = [
                r
                for (oid, _), r in self.roster.items()
                if oid == org_id
                and (batch_id is None or r.batch_id == batch_id)
                and (claimed is None or r.is_claimed == claimed)
                and (
                    not needle
                    or needle in r.email
                    or needle in r.name.lower()
                    or needle in r.enrollment_id.lower()
                )
            ]
            return sorted(records, key=lambda r: r.created_at, reverse=True)

    def delete_roster_record(
        self, org_id: str, record_id: str
    ) -> Optional[tuple[RosterRecord, int]]:
        """Remove a seat; a claimed seat takes the claimant's membership and institution enrollments with it.

        Returns the removed record and the number of enrollments dropped, or None.
        """
        with self._data_lock:
            key = next(
                (k for k, r in self.roster.items() if k[0] == org_id and r.id == record_id), None
            )
            if key is None:
                return None
            record = self.roster.pop(key)
            if not (record.is_claimed and record.claimed_by_user_id):
                return record, 0
            user_id = record.claimed_by_user_id
            self.memberships.pop((user_id, org_id), None)
            stale = [
                k
                for k, e in self.enrollments.items()
                if k[0] == user_id and e.access_source == "institution"
            ]
            for k in stale:
                del self.enrollments[k]
            return record, len(stale)

    # catalog
    def create_course(
        self, title: str, slug: str, *, is_published: bool = False, price: float = 0.0
    ) -> Course:
        with self._data_lock:
            if any(c.slug == slug for c in self.courses.values()):
                raise ConstraintViolation("course slug already exists", {"field": "slug"})
            course = Course(
                id=new_id(), title=title, slug=slug, is_published=is_published, price=price
            )
            self.courses[course.id] = course
            return course

    def set_course_published(self, course_id: str, is_published: bool) -> Optional[Course]:
        with self._data_lock:
            course = self.courses.get(course_id)
            if course:
                course.is_published = is_published
            return course

    def create_module(self, course_id: str, title: str, position: int = 0) -> Module:
        with self._data_lock:
            if course_id not in self.courses:
                raise ConstraintViolation("course missing", {"course_id": course_id})
            module = Module(id=new_id(), course_id=course_id, title=title, position=position)
            self.modules[module.id] = module
            return module

    def create_lesson(
        self, module_id: str, title: str, position: int = 0, *, is_free: bool = False
    ) -> Lesson:
        with self._data_lock:
            if module_id not in self.modules:
                raise ConstraintViolation("module missing", {"module_id": module_id})
            lesson = Lesson(
                id=new_id(), module_id=module_id, title=title, position=position, is_free=is_free
            )
            self.lessons[lesson.id] = lesson
            return lesson

    def get_course(self, course_id: str) -> Optional[Course]:
        with self._data_lock:
            return self.courses.get(course_id)

    def get_lesson_view(self, lesson_id: str) -> Optional[LessonView]:
        with self._data_lock:
            lesson = self.lessons.get(lesson_id)
            if not lesson:
                return None
            module = self.modules.get(lesson.module_id)
            course = self.courses.get(module.course_id) if module else None
            if not course:
                return None
            return LessonView(lesson=lesson, course=course)

    def list_published_course_ids(self) -> List[str]:
        with self._data_lock:
            return [c.id for c in self.courses.values() if c.is_published]

    # grants
    def upsert_course_grant(
        self, org_id: str, course_id: str, batch_id: Optional[str] = None
    ) -> CourseGrant:
        with self._data_lock:
            if org_id not in self.organizations:
                raise ConstraintViolation("organization missing", {"organization_id": org_id})
            if course_id not in self.courses:
                raise ConstraintViolation("course missing", {"course_id": course_id})
            key = (org_id, course_id, batch_id)
            grant = self.grants.get(key)
            if grant:
                return grant
            grant = CourseGrant(organization_id=org_id, course_id=course_id, batch_id=batch_id)
            self.grants[key] = grant
            return grant

    def delete_course_grant(
        self, org_id: str, course_id: str, batch_id: Optional[str] = None
    ) -> bool:
        with self._data_lock:
            return self.grants.pop((org_id, course_id, batch_id), None) is not None

    def list_course_grants(self, org_id: str) -> List[CourseGrant]:
        with self._data_lock:
            grants = [g for g in self.grants.values() if g.organization_id == org_id]
            return sorted(grants, key=lambda g: g.created_at)

    def list_granted_course_ids(self, org_id: str, batch_id: Optional[str] = None) -> List[str]:
        with self._data_lock:
            course_ids: List[str] = []
            for grant in self.grants.values():
                if grant.organization_id != org_id:
                    continue
                if grant.batch_id is None or grant.batch_id == batch_id:
                    if grant.course_id not in course_ids:
                        course_ids.append(grant.course_id)
            return course_ids

    # enrollments
    def upsert_enrollment(self, user_id: str, course_id: str, access_source: str) -> bool:
        """Create the enrollment if absent; an existing row is left untouched."""
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("enrollment user missing", {"user_id": user_id})
            if course_id not in self.courses:
                raise ConstraintViolation("enrollment course missing", {"course_id": course_id})
            key = (user_id, course_id)
            if key in self.enrollments:
                return False
            self.enrollments[key] = Enrollment(
                id=new_id(), user_id=user_id, course_id=course_id, access_source=access_source
            )
            return True

    def get_enrollment(self, user_id: str, course_id: str) -> Optional[Enrollment]:
        with self._data_lock:
            return self.enrollments.get((user_id, course_id))

    def list_enrollments(self, user_id: str) -> List[Enrollment]:
        with self._data_lock:
            return [e for (uid, _), e in self.enrollments.items() if uid == user_id]

    def set_enrollment_progress(self, user_id: str, course_id: str, percentage: int) -> bool:
        with self._data_lock:
            enrollment = self.enrollments.get((user_id, course_id))
            if not enrollment:
                return False
            enrollment.progress_percentage = max(0, min(100, percentage))
            return True

    # payments
    def create_payment(
        self, user_id: str, order_id: str, amount: int, currency: str = "INR"
    ) -> Payment:
        with self._data_lock:
            if order_id in self.payments:
                raise ConstraintViolation("order already recorded", {"field": "order_id"})
            payment = Payment(
                id=new_id(), user_id=user_id, order_id=order_id, amount=amount, currency=currency
            )
            self.payments[order_id] = payment
            return payment

    def get_payment_by_order(self, order_id: str) -> Optional[Payment]:
        with self._data_lock:
            return self.payments.get(order_id)

    def capture_payment(
        self, order_id: str, gateway_payment_id: str
    ) -> tuple[Optional[Payment], bool]:
        """Mark paid and set the owner premium together; returns (payment, newly_paid)."""
        with self._data_lock:
            payment = self.payments.get(order_id)
            if not payment:
                return None, False
            if payment.status == "paid":
                return payment, False
            payment.status = "paid"
            payment.gateway_payment_id = gateway_payment_id
            user = self.users.get(payment.user_id)
            if user:
                user.is_premium = True
            return payment, True

    def fail_payment(self, order_id: str) -> bool:
        with self._data_lock:
            payment = self.payments.get(order_id)
            if not payment or payment.status == "paid":
                return False
            payment.status = "failed"
            return True
