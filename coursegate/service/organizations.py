from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional, Protocol

from coursegate.config import COMMON_EMAIL_PROVIDERS, OrgRole, UserRole
from coursegate.logging import get_logger
from coursegate.service.auth import AuthService
from coursegate.service.errors import BadRequestError, ConflictError, NotFoundError
from coursegate.storage.errors import ConstraintViolation
from coursegate.storage.models import Membership, Organization, User

logger = get_logger(__name__)

_SLUG = re.compile(r"^[a-z0-9-]+$")
_DOMAIN = re.compile(r"^(?=.{1,253}$)[a-z0-9](?:[a-z0-9-]*[a-z0-9])?(?:\.[a-z0-9](?:[a-z0-9-]*[a-z0-9])?)+$")


class OrganizationStore(Protocol):
    def create_organization(
        self, name: str, slug: str, email_domains: Optional[List[str]] = None
    ) -> Organization: ...

    def get_organization(self, org_id: str) -> Optional[Organization]: ...

    def list_organizations(self) -> List[Organization]: ...

    def update_organization(
        self,
        org_id: str,
        *,
        name: Optional[str] = None,
        slug: Optional[str] = None,
        email_domains: Optional[List[str]] = None,
        is_active: Optional[bool] = None,
    ) -> Optional[Organization]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        role: str = "student",
        is_active: bool = True,
        email_verified: bool = False,
    ) -> User: ...

    def update_user(
        self, user_id: str, *, role: Optional[str] = None, is_active: Optional[bool] = None
    ) -> Optional[User]: ...

    def upsert_membership(
        self,
        user_id: str,
        org_id: str,
        *,
        role: str = "student",
        batch_id: Optional[str] = None,
        enrollment_id: Optional[str] = None,
        is_verified: bool = False,
    ) -> Membership: ...


@dataclass
class OrgAdminResult:
    user: User
    membership: Membership
    created_user: bool


def _clean_domains(domains: List[str]) -> List[str]:
    cleaned: List[str] = []
    for raw in domains:
        domain = raw.strip().lower().lstrip("@")
        if not _DOMAIN.match(domain):
            raise BadRequestError("invalid email domain", detail={"domain": raw})
        if domain in COMMON_EMAIL_PROVIDERS:
            raise BadRequestError(
                "consumer email providers cannot identify an institution",
                detail={"domain": domain},
            )
        if domain not in cleaned:
            cleaned.append(domain)
    return cleaned


def _check_slug(slug: str) -> str:
    slug = slug.strip()
    if not _SLUG.match(slug):
        raise BadRequestError("slug may contain only lowercase letters, digits and hyphens")
    return slug


class OrganizationService:
    """Platform-admin provisioning of institutions and their admins."""

    def __init__(self, store: OrganizationStore, auth: AuthService) -> None:
        self.store = store
        self.auth = auth

    def list_organizations(self) -> List[Organization]:
        return self.store.list_organizations()

    def create_organization(self, name: str, slug: str, email_domains: List[str]) -> Organization:
        slug = _check_slug(slug)
        domains = _clean_domains(email_domains)
        try:
            org = self.store.create_organization(name.strip(), slug, domains)
        except ConstraintViolation:
            raise ConflictError("slug already in use", detail={"field": "slug"})
        logger.info("organization_created", organization_id=org.id, slug=org.slug)
        return org

    def update_organization(
        self,
        org_id: str,
        *,
        name: Optional[str] = None,
        slug: Optional[str] = None,
        email_domains: Optional[List[str]] = None,
        is_active: Optional[bool] = None,
    ) -> Organization:
        try:
            org = self.store.update_organization(
                org_id,
                name=name.strip() if name is not None else None,
                slug=_check_slug(slug) if slug is not None else None,
                email_domains=_clean_domains(email_domains) if email_domains is not None else None,
                is_active=is_active,
            )
        except ConstraintViolation:
            raise ConflictError("slug already in use", detail={"field": "slug"})
        if not org:
            raise NotFoundError("organization not found")
        logger.info("organization_updated", organization_id=org.id, is_active=org.is_active)
        return org

    def add_admin(
        self, org_id: str, email: str, name: str, password: Optional[str] = None
    ) -> OrgAdminResult:
        """Create or promote ``email`` and give it a verified admin membership in ``org_id``.

        New accounts are created with a verified email. An existing student is
        promoted to institution admin; other global roles are left alone. A
        given password replaces the stored one.
        """
        org = self.store.get_organization(org_id)
        if not org:
            raise NotFoundError("organization not found")
        email = email.strip().lower()
        user = self.store.get_user_by_email(email)
        created = user is None
        if user is None:
            try:
                user = self.store.create_user(
                    email,
                    name.strip() or None,
                    role=UserRole.INSTITUTION_ADMIN.value,
                    email_verified=True,
                )
            except ConstraintViolation:
                raise ConflictError("An account with this email already exists")
        elif user.role == UserRole.STUDENT.value:
            user = self.store.update_user(user.id, role=UserRole.INSTITUTION_ADMIN.value) or user
        if password:
            self.auth.save_password(user.id, password)
        membership = self.store.upsert_membership(
            user.id, org.id, role=OrgRole.ADMIN.value, is_verified=True
        )
        logger.info(
            "organization_admin_added",
            organization_id=org.id,
            user_id=user.id,
            created_user=created,
        )
        return OrgAdminResult(user=user, membership=membership, created_user=created)
