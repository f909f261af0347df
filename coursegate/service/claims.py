from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Protocol

from coursegate.config import COMMON_EMAIL_PROVIDERS, Settings
from coursegate.logging import get_logger
from coursegate.service.enrollment import EnrollmentFanout, FanOutResult
from coursegate.service.errors import (
    AlreadyVerifiedError,
    BadRequestError,
    ClaimRejectedError,
    NoInstitutionError,
    NotFoundError,
)
from coursegate.storage.errors import ConstraintViolation
from coursegate.storage.models import (
    Batch,
    Membership,
    MembershipSnapshot,
    Organization,
    RosterRecord,
    User,
)

logger = get_logger(__name__)

CLAIM_REJECTED_MESSAGE = (
    "Enrollment ID could not be verified. Check the ID or contact your institution."
)


class ClaimStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_organization(self, org_id: str) -> Optional[Organization]: ...

    def find_organization_by_domain(self, domain: str) -> Optional[Organization]: ...

    def get_membership(self, user_id: str, org_id: str) -> Optional[Membership]: ...

    def list_membership_snapshots(self, user_id: str) -> List[MembershipSnapshot]: ...

    def upsert_batch(self, org_id: str, name: str) -> Batch: ...

    def upsert_roster_record(
        self,
        org_id: str,
        email: str,
        name: str,
        enrollment_id: str,
        batch_id: Optional[str] = None,
    ) -> tuple[RosterRecord, str]: ...

    def claim_roster_record(
        self,
        org_id: str,
        email: str,
        user_id: str,
        *,
        enrollment_code: Optional[str] = None,
    ) -> Optional[tuple[RosterRecord, Membership]]: ...

    def list_roster_records(
        self,
        org_id: str,
        *,
        batch_id: Optional[str] = None,
        claimed: Optional[bool] = None,
        search: Optional[str] = None,
    ) -> List[RosterRecord]: ...

    def delete_roster_record(
        self, org_id: str, record_id: str
    ) -> Optional[tuple[RosterRecord, int]]: ...


def email_domain(email: str) -> Optional[str]:
    _, sep, domain = email.strip().rpartition("@")
    if not sep or not domain:
        return None
    return domain.lower()


def resolve_organization(store: ClaimStore, email: str) -> Optional[Organization]:
    """Active organization registered for the email's domain, if any.

    Consumer mail providers never resolve to an institution.
    """
    domain = email_domain(email)
    if not domain or domain in COMMON_EMAIL_PROVIDERS:
        return None
    return store.find_organization_by_domain(domain)


@dataclass
class ClaimResult:
    organization_id: str
    organization_name: str
    organization_slug: str
    batch_id: Optional[str]
    enrollment_id: str
    enrollments: FanOutResult


@dataclass
class InstitutionStatus:
    has_institution: bool
    is_verified: bool = False
    organization_id: Optional[str] = None
    organization_name: Optional[str] = None
    organization_slug: Optional[str] = None


@dataclass
class RosterRow:
    email: str
    name: str
    enrollment_id: str
    batch: Optional[str] = None


@dataclass
class RosterIngestStats:
    added: int = 0
    updated: int = 0
    already_claimed: int = 0
    auto_linked: int = 0
    total_processed: int = 0
    errors: List[dict] = field(default_factory=list)


@dataclass
class RosterPage:
    records: List[RosterRecord]
    total: int
    page: int
    limit: int


class IdentityClaimWorkflow:
    """Binds accounts to pre-provisioned roster seats.

    Two paths lead to a verified membership: the code-based claim made by the
    student, and auto-link during roster upload, where the uploading
    institution admin vouches for the email alone. Auto-link is controlled by
    ``Settings.roster_auto_link``.
    """

    def __init__(self, store: ClaimStore, fanout: EnrollmentFanout, settings: Settings) -> None:
        self.store = store
        self.fanout = fanout
        self.settings = settings

    def verify_institution(self, user_id: str, enrollment_code: str) -> ClaimResult:
        code = (enrollment_code or "").strip()
        if not code:
            raise BadRequestError("enrollment code is required")
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        org = resolve_organization(self.store, user.email)
        if not org:
            raise NoInstitutionError("No institution found for your email domain")
        existing = self.store.get_membership(user.id, org.id)
        if existing and existing.is_verified:
            raise AlreadyVerifiedError("You are already verified with this institution")
        try:
            claimed = self.store.claim_roster_record(
                org.id, user.email, user.id, enrollment_code=code
            )
        except ConstraintViolation as exc:
            logger.warning(
                "institution_claim_constraint", user_id=user.id, organization_id=org.id, detail=exc.detail
            )
            claimed = None
        if not claimed:
            logger.info("institution_claim_rejected", user_id=user.id, organization_id=org.id)
            raise ClaimRejectedError(CLAIM_REJECTED_MESSAGE)
        record, membership = claimed
        enrollments = self.fanout.enroll_member(user.id, org.id, membership.batch_id)
        logger.info(
            "institution_claimed",
            user_id=user.id,
            organization_id=org.id,
            batch_id=membership.batch_id,
            **enrollments.to_dict(),
        )
        return ClaimResult(
            organization_id=org.id,
            organization_name=org.name,
            organization_slug=org.slug,
            batch_id=membership.batch_id,
            enrollment_id=record.enrollment_id,
            enrollments=enrollments,
        )

    def institution_status(self, user_id: str) -> InstitutionStatus:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        for snapshot in self.store.list_membership_snapshots(user.id):
            if snapshot.is_verified:
                org = self.store.get_organization(snapshot.organization_id)
                return InstitutionStatus(
                    has_institution=True,
                    is_verified=True,
                    organization_id=snapshot.organization_id,
                    organization_name=snapshot.organization_name,
                    organization_slug=org.slug if org else None,
                )
        org = resolve_organization(self.store, user.email)
        if not org:
            return InstitutionStatus(has_institution=False)
        return InstitutionStatus(
            has_institution=True,
            is_verified=False,
            organization_id=org.id,
            organization_name=org.name,
            organization_slug=org.slug,
        )

    def ingest_roster(self, org_id: str, rows: Iterable[RosterRow]) -> RosterIngestStats:
        org = self.store.get_organization(org_id)
        if not org:
            raise NotFoundError("organization not found")
        stats = RosterIngestStats()
        batches: dict[str, str] = {}
        for index, row in enumerate(rows, start=1):
            stats.total_processed += 1
            email = row.email.strip().lower()
            if not email_domain(email) or not row.enrollment_id.strip():
                stats.errors.append({"row": index, "message": "email and enrollment id are required"})
                continue
            batch_id = None
            if row.batch and row.batch.strip():
                name = row.batch.strip()
                if name not in batches:
                    batches[name] = self.store.upsert_batch(org.id, name).id
                batch_id = batches[name]
            try:
                _, outcome = self.store.upsert_roster_record(
                    org.id, email, row.name.strip(), row.enrollment_id.strip(), batch_id
                )
            except ConstraintViolation as exc:
                stats.errors.append({"row": index, "message": exc.message})
                continue
            if outcome == "already_claimed":
                stats.already_claimed += 1
                continue
            if outcome == "added":
                stats.added += 1
            else:
                stats.updated += 1
            if self.settings.roster_auto_link and self._auto_link(org, email):
                stats.auto_linked += 1
        logger.info(
            "roster_ingested",
            organization_id=org.id,
            added=stats.added,
            updated=stats.updated,
            already_claimed=stats.already_claimed,
            auto_linked=stats.auto_linked,
            rejected=len(stats.errors),
        )
        return stats

    def list_roster(
        self,
        org_id: str,
        *,
        batch_id: Optional[str] = None,
        claimed: Optional[bool] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> RosterPage:
        if not self.store.get_organization(org_id):
            raise NotFoundError("organization not found")
        records = self.store.list_roster_records(
            org_id, batch_id=batch_id, claimed=claimed, search=search
        )
        start = (page - 1) * limit
        return RosterPage(
            records=records[start : start + limit], total=len(records), page=page, limit=limit
        )

    def remove_roster_record(self, org_id: str, record_id: str) -> tuple[RosterRecord, int]:
        """Drop a seat. Removing a claimed seat also revokes the claimant's institutional access."""
        removed = self.store.delete_roster_record(org_id, record_id)
        if not removed:
            raise NotFoundError("roster record not found")
        record, enrollments = removed
        logger.info(
            "roster_record_removed",
            organization_id=org_id,
            record_id=record.id,
            was_claimed=record.is_claimed,
            claimed_by_user_id=record.claimed_by_user_id,
            enrollments_removed=enrollments,
        )
        return record, enrollments

    def _auto_link(self, org: Organization, email: str) -> bool:
        user = self.store.get_user_by_email(email)
        if not user or not user.is_active:
            return False
        existing = self.store.get_membership(user.id, org.id)
        if existing and existing.is_verified:
            return False
        try:
            claimed = self.store.claim_roster_record(org.id, email, user.id)
        except ConstraintViolation as exc:
            logger.warning("roster_auto_link_constraint", user_id=user.id, detail=exc.detail)
            return False
        if not claimed:
            return False
        _, membership = claimed
        self.fanout.enroll_member(user.id, org.id, membership.batch_id)
        logger.info("roster_auto_linked", user_id=user.id, organization_id=org.id)
        return True
