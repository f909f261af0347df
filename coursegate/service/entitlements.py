from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional, Protocol

from coursegate.logging import get_logger
from coursegate.service.errors import AuthenticationError, NoSubscriptionError, NotFoundError
from coursegate.storage.models import Enrollment, LessonView

logger = get_logger(__name__)

REASON_NOT_FOUND = "not_found"
REASON_UNAUTHENTICATED = "unauthenticated"
REASON_NO_SUBSCRIPTION = "no_subscription"


class EntitlementStore(Protocol):
    def get_enrollment(self, user_id: str, course_id: str) -> Optional[Enrollment]: ...

    def has_verified_membership(self, user_id: str) -> bool: ...

    def get_lesson_view(self, lesson_id: str) -> Optional[LessonView]: ...


@dataclass(frozen=True)
class AccessDecision:
    """Outcome of an entitlement check.

    ``source`` names the path that granted access (enrollment, membership,
    free_lesson); ``reason`` is set only on denial.
    """

    allowed: bool
    reason: Optional[str] = None
    source: Optional[str] = None

    @classmethod
    def grant(cls, source: str) -> "AccessDecision":
        return cls(allowed=True, source=source)

    @classmethod
    def deny(cls, reason: str) -> "AccessDecision":
        return cls(allowed=False, reason=reason)

    def raise_for_denial(self) -> None:
        if self.allowed:
            return
        if self.reason == REASON_NOT_FOUND:
            raise NotFoundError("resource not found")
        if self.reason == REASON_UNAUTHENTICATED:
            raise AuthenticationError("authentication required")
        raise NoSubscriptionError("an active subscription or institution membership is required")


class EntitlementResolver:
    """Answers whether a principal may read a course or lesson.

    Results are never cached: a grant written a moment ago must be honoured on
    the next call.
    """

    def __init__(self, store: EntitlementStore) -> None:
        self.store = store

    async def can_access_course(self, user_id: str, course_id: str) -> AccessDecision:
        enrollment, has_membership = await asyncio.gather(
            asyncio.to_thread(self.store.get_enrollment, user_id, course_id),
            asyncio.to_thread(self.store.has_verified_membership, user_id),
        )
        if enrollment is not None:
            return AccessDecision.grant("enrollment")
        if has_membership:
            return AccessDecision.grant("membership")
        logger.info("course_access_denied", user_id=user_id, course_id=course_id)
        return AccessDecision.deny(REASON_NO_SUBSCRIPTION)

    async def can_access_lesson(
        self,
        user_id: Optional[str],
        lesson_id: str,
        *,
        lesson: Optional[LessonView] = None,
    ) -> AccessDecision:
        """Lesson gate; pass ``lesson`` when the caller already fetched it."""
        view = lesson
        if view is None:
            view = await asyncio.to_thread(self.store.get_lesson_view, lesson_id)
        if view is None:
            return AccessDecision.deny(REASON_NOT_FOUND)
        # free preview wins before any authentication requirement
        if view.lesson.is_free:
            return AccessDecision.grant("free_lesson")
        if not view.course.is_published:
            return AccessDecision.deny(REASON_NOT_FOUND)
        if not user_id:
            return AccessDecision.deny(REASON_UNAUTHENTICATED)
        return await self.can_access_course(user_id, view.course.id)
