from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Protocol

from coursegate.logging import get_logger
from coursegate.config import UserRole
from coursegate.service.errors import (
    BadRequestError,
    ConflictError,
    NoSubscriptionError,
    NotFoundError,
)
from coursegate.storage.models import Batch, Course, CourseGrant, Enrollment, Organization, User

logger = get_logger(__name__)

SOURCE_INDIVIDUAL = "individual"
SOURCE_INSTITUTION = "institution"

SCOPE_ORGANIZATION = "organization"
SCOPE_BATCH = "batch"
SCOPE_GLOBAL = "global"


class FanOutStore(Protocol):
    def upsert_enrollment(self, user_id: str, course_id: str, access_source: str) -> bool: ...

    def list_verified_member_ids(
        self, org_id: str, batch_id: Optional[str] = None
    ) -> List[str]: ...

    def list_granted_course_ids(self, org_id: str, batch_id: Optional[str] = None) -> List[str]: ...

    def list_published_course_ids(self) -> List[str]: ...

    def get_batch(self, batch_id: str) -> Optional[Batch]: ...

    def get_organization(self, org_id: str) -> Optional[Organization]: ...

    def get_course(self, course_id: str) -> Optional[Course]: ...

    def upsert_course_grant(
        self, org_id: str, course_id: str, batch_id: Optional[str] = None
    ) -> CourseGrant: ...

    def delete_course_grant(
        self, org_id: str, course_id: str, batch_id: Optional[str] = None
    ) -> bool: ...

    def list_course_grants(self, org_id: str) -> List[CourseGrant]: ...


@dataclass
class FanOutResult:
    enrolled: int = 0
    already_enrolled: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.enrolled + self.already_enrolled + self.failed

    def to_dict(self) -> dict:
        return {
            "enrolled": self.enrolled,
            "already_enrolled": self.already_enrolled,
            "failed": self.failed,
        }


class EnrollmentFanout:
    """Materializes enrollments for everyone a grant event covers.

    Each upsert stands alone: a failed row is logged and counted, the run
    continues, and re-running the same event is harmless because existing
    (user, course) rows are left untouched.
    """

    def __init__(self, store: FanOutStore) -> None:
        self.store = store

    def _apply(
        self, pairs: Iterable[tuple[str, str]], access_source: str, result: FanOutResult
    ) -> FanOutResult:
        for user_id, course_id in pairs:
            try:
                created = self.store.upsert_enrollment(user_id, course_id, access_source)
            except Exception as exc:
                result.failed += 1
                logger.warning(
                    "fan_out_upsert_failed",
                    user_id=user_id,
                    course_id=course_id,
                    error=str(exc),
                )
                continue
            if created:
                result.enrolled += 1
            else:
                result.already_enrolled += 1
        return result

    def fan_out_organization(self, org_id: str, course_id: str) -> FanOutResult:
        members = self.store.list_verified_member_ids(org_id)
        result = self._apply(
            ((user_id, course_id) for user_id in members), SOURCE_INSTITUTION, FanOutResult()
        )
        logger.info(
            "fan_out_organization_complete",
            organization_id=org_id,
            course_id=course_id,
            **result.to_dict(),
        )
        return result

    def fan_out_batch(self, batch_id: str, course_id: str) -> FanOutResult:
        batch = self.store.get_batch(batch_id)
        if not batch:
            raise NotFoundError("batch not found")
        members = self.store.list_verified_member_ids(batch.organization_id, batch_id)
        result = self._apply(
            ((user_id, course_id) for user_id in members), SOURCE_INSTITUTION, FanOutResult()
        )
        logger.info(
            "fan_out_batch_complete", batch_id=batch_id, course_id=course_id, **result.to_dict()
        )
        return result

    def enroll_subscriber(self, user_id: str) -> FanOutResult:
        courses = self.store.list_published_course_ids()
        result = self._apply(
            ((user_id, course_id) for course_id in courses), SOURCE_INDIVIDUAL, FanOutResult()
        )
        logger.info("fan_out_subscriber_complete", user_id=user_id, **result.to_dict())
        return result

    def enroll_member(
        self, user_id: str, org_id: str, batch_id: Optional[str] = None
    ) -> FanOutResult:
        courses = self.store.list_granted_course_ids(org_id, batch_id)
        return self._apply(
            ((user_id, course_id) for course_id in courses), SOURCE_INSTITUTION, FanOutResult()
        )

    def trigger(
        self,
        scope: str,
        *,
        course_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        batch_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> FanOutResult:
        """Single entry point for grant administration and payment webhooks."""
        if scope == SCOPE_ORGANIZATION:
            if not organization_id or not course_id:
                raise BadRequestError("organization fan-out needs organization_id and course_id")
            return self.fan_out_organization(organization_id, course_id)
        if scope == SCOPE_BATCH:
            if not batch_id or not course_id:
                raise BadRequestError("batch fan-out needs batch_id and course_id")
            return self.fan_out_batch(batch_id, course_id)
        if scope == SCOPE_GLOBAL:
            if not user_id:
                raise BadRequestError("global fan-out needs user_id")
            return self.enroll_subscriber(user_id)
        raise BadRequestError(f"unknown fan-out scope: {scope}")


class GrantService:
    """Course grants for organizations and batches.

    Removing a grant never touches enrollments that were already materialized.
    """

    def __init__(self, store: FanOutStore, fanout: EnrollmentFanout) -> None:
        self.store = store
        self.fanout = fanout

    def _check_targets(self, org_id: str, course_id: str, batch_id: Optional[str]) -> None:
        if not self.store.get_organization(org_id):
            raise NotFoundError("organization not found")
        if not self.store.get_course(course_id):
            raise NotFoundError("course not found")
        if batch_id:
            batch = self.store.get_batch(batch_id)
            if not batch or batch.organization_id != org_id:
                raise BadRequestError("batch does not belong to organization")

    def assign_course(
        self, org_id: str, course_id: str, batch_id: Optional[str] = None
    ) -> tuple[CourseGrant, FanOutResult]:
        self._check_targets(org_id, course_id, batch_id)
        grant = self.store.upsert_course_grant(org_id, course_id, batch_id)
        if batch_id:
            result = self.fanout.trigger(SCOPE_BATCH, course_id=course_id, batch_id=batch_id)
        else:
            result = self.fanout.trigger(
                SCOPE_ORGANIZATION, course_id=course_id, organization_id=org_id
            )
        logger.info(
            "course_grant_assigned",
            organization_id=org_id,
            course_id=course_id,
            batch_id=batch_id,
        )
        return grant, result

    def remove_course(self, org_id: str, course_id: str, batch_id: Optional[str] = None) -> bool:
        removed = self.store.delete_course_grant(org_id, course_id, batch_id)
        if not removed:
            raise NotFoundError("course grant not found")
        logger.info(
            "course_grant_removed", organization_id=org_id, course_id=course_id, batch_id=batch_id
        )
        return removed

    def list_grants(self, org_id: str) -> List[CourseGrant]:
        if not self.store.get_organization(org_id):
            raise NotFoundError("organization not found")
        return self.store.list_course_grants(org_id)


class LearnerStore(FanOutStore, Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def has_verified_membership(self, user_id: str) -> bool: ...

    def get_enrollment(self, user_id: str, course_id: str) -> Optional[Enrollment]: ...

    def list_enrollments(self, user_id: str) -> List[Enrollment]: ...


@dataclass
class EnrolledCourse:
    enrollment: Enrollment
    course: Optional[Course]


class LearnerEnrollments:
    """A learner's own enrollment list and the self-enroll gate."""

    def __init__(self, store: LearnerStore) -> None:
        self.store = store

    def list_for_user(self, user_id: str) -> List[EnrolledCourse]:
        return [
            EnrolledCourse(enrollment=e, course=self.store.get_course(e.course_id))
            for e in self.store.list_enrollments(user_id)
        ]

    def enroll(self, user_id: str, course_id: str) -> EnrolledCourse:
        """Individual enrollment in a published course.

        Platform admins pass freely; everyone else needs a premium
        subscription or a verified institution membership.
        """
        course = self.store.get_course(course_id)
        if not course or not course.is_published:
            raise NotFoundError("course not found")
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        if user.role != UserRole.PLATFORM_ADMIN.value and not user.is_premium:
            if not self.store.has_verified_membership(user.id):
                raise NoSubscriptionError("Payment required to access courses")
        if not self.store.upsert_enrollment(user.id, course.id, SOURCE_INDIVIDUAL):
            raise ConflictError("Already enrolled in this course")
        logger.info("self_enrolled", user_id=user.id, course_id=course.id)
        enrollment = self.store.get_enrollment(user.id, course.id)
        return EnrolledCourse(enrollment=enrollment, course=course)
