from __future__ import annotations

import asyncio
import hashlib
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Path, Query, Request, Response

from coursegate.api.error_handling import _error_response
from coursegate.api.schemas import (
    AccessResponse,
    AdminUserUpdateRequest,
    AssignCourseResponse,
    AuthResponse,
    ClaimResponse,
    CourseGrantListResponse,
    CourseGrantRequest,
    CourseGrantResponse,
    EmailVerificationRequest,
    EnrollmentListResponse,
    EnrollmentResponse,
    Envelope,
    FanOutResponse,
    InstitutionStatusResponse,
    LoginRequest,
    MeResponse,
    MembershipResponse,
    OrgAdminRequest,
    OrgAdminResponse,
    OrganizationCreateRequest,
    OrganizationListResponse,
    OrganizationResponse,
    OrganizationUpdateRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    PaymentWebhookPayload,
    RegisterRequest,
    RegisterResponse,
    RosterListResponse,
    RosterRecordResponse,
    RosterRemovalResponse,
    RosterUploadRequest,
    RosterUploadResponse,
    SubscriptionUpdateRequest,
    TokenRefreshRequest,
    UserResponse,
    VerifyInstitutionRequest,
)
from coursegate.config import OrgRole, UserRole
from coursegate.logging import get_logger, sanitize_error_message
from coursegate.service.claims import RosterRow
from coursegate.service.enrollment import EnrolledCourse, FanOutResult
from coursegate.service.errors import AuthenticationError, ServiceError
from coursegate.service.guards import (
    AuthContext,
    authenticate_access_token,
    check_org_role,
    check_role,
    extract_bearer,
)
from coursegate.service.payments import verify_signature
from coursegate.service.runtime import Runtime, check_rate_limit, get_runtime
from coursegate.service.sessions import TokenPair
from coursegate.storage.models import CourseGrant, Organization, RosterRecord, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"
SIGNATURE_HEADER = "X-Payment-Signature"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Raise 429 once ``key`` has spent its budget for the window."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.info("rate_limited", key=key.split(":", 1)[0])
        raise _http_error(
            "rate_limited", "rate limit exceeded", status_code=429
        )
    return info


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _email_key(email: str) -> str:
    return hashlib.sha256(email.encode("utf-8")).hexdigest()[:32]


# cookies


def _set_auth_cookies(response: Response, tokens: TokenPair, *, secure: bool) -> None:
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access_token,
        httponly=True,
        secure=secure,
        samesite="lax",
        max_age=tokens.expires_in,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        httponly=True,
        secure=secure,
        samesite="lax",
        max_age=tokens.refresh_expires_in,
        path="/",
    )


def _clear_auth_cookies(response: Response, *, secure: bool) -> None:
    response.delete_cookie(ACCESS_COOKIE, path="/", secure=secure, httponly=True, samesite="lax")
    response.delete_cookie(REFRESH_COOKIE, path="/", secure=secure, httponly=True, samesite="lax")


# principal resolution


async def get_optional_principal(
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None),
) -> Optional[AuthContext]:
    token = extract_bearer(authorization) or access_token
    if not token:
        return None
    try:
        return authenticate_access_token(get_runtime().codec, token)
    except AuthenticationError:
        # stale or forged credentials read as anonymous; get_principal still rejects them
        logger.info("optional_auth_token_ignored")
        return None


async def get_principal(
    principal: Optional[AuthContext] = Depends(get_optional_principal),
) -> AuthContext:
    if principal is None:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    return principal


def require_role(*roles: str):
    async def _dependency(principal: AuthContext = Depends(get_principal)) -> AuthContext:
        return check_role(principal, *roles)

    return _dependency


def require_org_role(*roles: str):
    async def _dependency(
        org_id: str = Path(..., min_length=1, max_length=64),
        principal: AuthContext = Depends(get_principal),
    ) -> AuthContext:
        return check_org_role(principal, org_id, *roles)

    return _dependency


get_platform_admin = require_role(UserRole.PLATFORM_ADMIN)
get_org_admin = require_org_role(OrgRole.ADMIN)


# serialization


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        is_active=user.is_active,
        is_premium=user.is_premium,
        email_verified=user.email_verified,
        created_at=user.created_at,
    )


def _fan_out_response(result: Optional[FanOutResult]) -> FanOutResponse:
    return FanOutResponse(**result.to_dict()) if result else FanOutResponse()


def _grant_response(grant: CourseGrant) -> CourseGrantResponse:
    return CourseGrantResponse(
        organization_id=grant.organization_id,
        course_id=grant.course_id,
        batch_id=grant.batch_id,
        created_at=grant.created_at,
    )


def _org_response(org: Organization) -> OrganizationResponse:
    return OrganizationResponse(
        id=org.id,
        name=org.name,
        slug=org.slug,
        email_domains=list(org.email_domains),
        is_active=org.is_active,
        created_at=org.created_at,
    )


def _roster_response(record: RosterRecord) -> RosterRecordResponse:
    return RosterRecordResponse(**asdict(record))


def _enrollment_response(item: EnrolledCourse) -> EnrollmentResponse:
    return EnrollmentResponse(
        course_id=item.enrollment.course_id,
        title=item.course.title if item.course else None,
        slug=item.course.slug if item.course else None,
        access_source=item.enrollment.access_source,
        progress_percentage=item.enrollment.progress_percentage,
        enrolled_at=item.enrollment.created_at,
    )


def _auth_response(user: User, tokens: TokenPair, **hints) -> AuthResponse:
    return AuthResponse(
        user_id=user.id,
        role=user.role,
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_in=tokens.expires_in,
        **hints,
    )


# authentication


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{_client_ip(request)}",
        runtime.settings.register_rate_limit_per_minute,
        60,
        response=response,
    )
    user = await runtime.auth.register(body.email, body.password, body.name)
    verification_required = runtime.settings.require_email_verification
    if verification_required:
        token = await runtime.auth.request_email_verification(user)
        await asyncio.to_thread(runtime.email.send_email_verification, user.email, token)
    return Envelope(
        status="ok",
        data=RegisterResponse(
            user=_user_response(user), verification_required=verification_required
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{_email_key(body.email)}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.auth.login(body.email, body.password)
    _set_auth_cookies(response, result.tokens, secure=runtime.settings.secure_cookies)
    return Envelope(
        status="ok",
        data=_auth_response(
            result.user,
            result.tokens,
            requires_institution_verification=result.requires_institution_verification,
            organization_slug=result.organization_slug,
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"refresh:{_client_ip(request)}",
        runtime.settings.refresh_rate_limit_per_minute,
        60,
        response=response,
    )
    secure = runtime.settings.secure_cookies
    presented = (body.refresh_token if body else None) or refresh_cookie
    try:
        user, tokens = await runtime.auth.refresh(presented)
    except ServiceError as exc:
        failure = _error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)
        _clear_auth_cookies(failure, secure=secure)
        return failure
    _set_auth_cookies(response, tokens, secure=secure)
    return Envelope(status="ok", data=_auth_response(user, tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    presented = (body.refresh_token if body else None) or refresh_cookie
    revoked = await runtime.auth.logout(presented)
    _clear_auth_cookies(response, secure=runtime.settings.secure_cookies)
    return Envelope(status="ok", data={"revoked": revoked})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(response: Response, principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    count = await runtime.auth.logout_everywhere(principal.user_id)
    _clear_auth_cookies(response, secure=runtime.settings.secure_cookies)
    return Envelope(status="ok", data={"revoked": count})


@router.post("/auth/reset/request", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{_email_key(body.email)}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
        response=response,
    )
    token = await runtime.auth.initiate_password_reset(body.email)
    if token:
        await asyncio.to_thread(runtime.email.send_password_reset, body.email, token)
    # identical answer whether or not the account exists
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(body: PasswordResetConfirm, response: Response):
    runtime = get_runtime()
    ok = await runtime.auth.complete_password_reset(body.token, body.new_password)
    if not ok:
        raise _http_error("validation_error", "invalid or expired reset token", status_code=400)
    _clear_auth_cookies(response, secure=runtime.settings.secure_cookies)
    return Envelope(status="ok", data={"status": "password_reset"})


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest):
    runtime = get_runtime()
    ok = await runtime.auth.complete_email_verification(body.token)
    if not ok:
        raise _http_error(
            "validation_error", "invalid or expired verification token", status_code=400
        )
    return Envelope(status="ok", data={"status": "verified"})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_principal)):
    return Envelope(
        status="ok",
        data=MeResponse(
            user_id=principal.user_id,
            email=principal.email,
            role=principal.role,
            memberships=[MembershipResponse(**asdict(m)) for m in principal.memberships],
        ),
    )


@router.get("/me/enrollments", response_model=Envelope, tags=["learners"])
async def my_enrollments(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    items = await asyncio.to_thread(runtime.learners.list_for_user, principal.user_id)
    return Envelope(
        status="ok",
        data=EnrollmentListResponse(items=[_enrollment_response(i) for i in items]),
    )


# institutional identity


@router.post("/auth/verify-institution", response_model=Envelope, tags=["institutions"])
async def verify_institution(
    body: VerifyInstitutionRequest,
    response: Response,
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"claim:{principal.user_id}",
        runtime.settings.claim_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await asyncio.to_thread(
        runtime.claims.verify_institution, principal.user_id, body.enrollment_id
    )
    await asyncio.to_thread(
        runtime.email.send_institution_linked, principal.email, result.organization_name
    )
    return Envelope(
        status="ok",
        data=ClaimResponse(
            organization_id=result.organization_id,
            organization_name=result.organization_name,
            organization_slug=result.organization_slug,
            batch_id=result.batch_id,
            enrollment_id=result.enrollment_id,
            enrollments=_fan_out_response(result.enrollments),
        ),
    )


@router.get("/auth/institution-status", response_model=Envelope, tags=["institutions"])
async def institution_status(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    result = await asyncio.to_thread(runtime.claims.institution_status, principal.user_id)
    return Envelope(status="ok", data=InstitutionStatusResponse(**asdict(result)))


# content access


@router.get("/courses/{course_id}/access", response_model=Envelope, tags=["access"])
async def course_access(
    course_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    course = await asyncio.to_thread(runtime.store.get_course, course_id)
    if not course or not course.is_published:
        raise _http_error("not_found", "course not found", status_code=404)
    decision = await runtime.entitlements.can_access_course(principal.user_id, course.id)
    decision.raise_for_denial()
    return Envelope(status="ok", data=AccessResponse(allowed=True, source=decision.source))


@router.get("/lessons/{lesson_id}/access", response_model=Envelope, tags=["access"])
async def lesson_access(
    lesson_id: str = Path(..., min_length=1, max_length=64),
    principal: Optional[AuthContext] = Depends(get_optional_principal),
):
    runtime = get_runtime()
    decision = await runtime.entitlements.can_access_lesson(
        principal.user_id if principal else None, lesson_id
    )
    decision.raise_for_denial()
    return Envelope(status="ok", data=AccessResponse(allowed=True, source=decision.source))


@router.post(
    "/courses/{course_id}/enroll",
    response_model=Envelope,
    status_code=201,
    tags=["learners"],
)
async def enroll_in_course(
    course_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    item = await asyncio.to_thread(runtime.learners.enroll, principal.user_id, course_id)
    return Envelope(status="ok", data=_enrollment_response(item))


# institution administration


@router.get("/institutions/{org_id}/courses", response_model=Envelope, tags=["institutions"])
async def list_institution_courses(
    org_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_org_admin),
):
    runtime = get_runtime()
    grants = await asyncio.to_thread(runtime.grants.list_grants, org_id)
    return Envelope(
        status="ok",
        data=CourseGrantListResponse(items=[_grant_response(g) for g in grants]),
    )


@router.post(
    "/institutions/{org_id}/courses",
    response_model=Envelope,
    status_code=201,
    tags=["institutions"],
)
async def assign_institution_course(
    body: CourseGrantRequest,
    org_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_org_admin),
):
    runtime = get_runtime()
    grant, enrollments = await asyncio.to_thread(
        runtime.grants.assign_course, org_id, body.course_id, body.batch_id
    )
    logger.info(
        "course_assigned",
        organization_id=org_id,
        course_id=body.course_id,
        batch_id=body.batch_id,
        actor_id=principal.user_id,
    )
    return Envelope(
        status="ok",
        data=AssignCourseResponse(
            grant=_grant_response(grant), enrollments=_fan_out_response(enrollments)
        ),
    )


@router.delete("/institutions/{org_id}/courses", response_model=Envelope, tags=["institutions"])
async def remove_institution_course(
    org_id: str = Path(..., min_length=1, max_length=64),
    course_id: str = Query(..., min_length=1, max_length=64),
    batch_id: Optional[str] = Query(None, max_length=64),
    principal: AuthContext = Depends(get_org_admin),
):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.grants.remove_course, org_id, course_id, batch_id)
    logger.info(
        "course_unassigned",
        organization_id=org_id,
        course_id=course_id,
        batch_id=batch_id,
        actor_id=principal.user_id,
    )
    return Envelope(status="ok", data={"removed": True})


@router.post("/institutions/{org_id}/roster", response_model=Envelope, tags=["institutions"])
async def upload_roster(
    body: RosterUploadRequest,
    org_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_org_admin),
):
    runtime = get_runtime()
    rows = [
        RosterRow(
            email=row.email,
            name=row.name,
            enrollment_id=row.enrollment_id,
            batch=row.batch,
        )
        for row in body.rows
    ]
    stats = await asyncio.to_thread(runtime.claims.ingest_roster, org_id, rows)
    return Envelope(status="ok", data=RosterUploadResponse(**asdict(stats)))


@router.get("/institutions/{org_id}/roster", response_model=Envelope, tags=["institutions"])
async def list_roster(
    org_id: str = Path(..., min_length=1, max_length=64),
    batch_id: Optional[str] = Query(None, max_length=64),
    claimed: Optional[bool] = Query(None),
    search: Optional[str] = Query(None, max_length=128),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    principal: AuthContext = Depends(get_org_admin),
):
    runtime = get_runtime()
    result = await asyncio.to_thread(
        lambda: runtime.claims.list_roster(
            org_id, batch_id=batch_id, claimed=claimed, search=search, page=page, limit=limit
        )
    )
    return Envelope(
        status="ok",
        data=RosterListResponse(
            items=[_roster_response(r) for r in result.records],
            total=result.total,
            page=result.page,
            limit=result.limit,
        ),
    )


@router.delete(
    "/institutions/{org_id}/roster/{record_id}", response_model=Envelope, tags=["institutions"]
)
async def remove_roster_record(
    org_id: str = Path(..., min_length=1, max_length=64),
    record_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_org_admin),
):
    runtime = get_runtime()
    record, enrollments = await asyncio.to_thread(
        runtime.claims.remove_roster_record, org_id, record_id
    )
    logger.info(
        "roster_record_deleted",
        organization_id=org_id,
        record_id=record.id,
        actor_id=principal.user_id,
    )
    return Envelope(
        status="ok",
        data=RosterRemovalResponse(was_claimed=record.is_claimed, enrollments_removed=enrollments),
    )


# platform administration


@router.patch("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def update_user(
    body: AdminUserUpdateRequest,
    user_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_platform_admin),
):
    runtime = get_runtime()
    if user_id == principal.user_id and body.is_active is False:
        raise _http_error("validation_error", "cannot deactivate your own account", status_code=400)
    user = await runtime.auth.set_user_status(user_id, role=body.role, is_active=body.is_active)
    return Envelope(status="ok", data=_user_response(user))


@router.post("/admin/users/{user_id}/subscription", response_model=Envelope, tags=["admin"])
async def update_subscription(
    body: SubscriptionUpdateRequest,
    user_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_platform_admin),
):
    runtime = get_runtime()
    user = await asyncio.to_thread(runtime.store.set_premium, user_id, body.is_premium)
    if not user:
        raise _http_error("not_found", "user not found", status_code=404)
    enrollments = None
    if body.is_premium:
        enrollments = await asyncio.to_thread(runtime.fanout.enroll_subscriber, user.id)
    logger.info(
        "subscription_updated",
        user_id=user.id,
        is_premium=body.is_premium,
        actor_id=principal.user_id,
    )
    return Envelope(
        status="ok",
        data={"user": _user_response(user), "enrollments": _fan_out_response(enrollments)},
    )


@router.get("/admin/organizations", response_model=Envelope, tags=["admin"])
async def list_organizations(principal: AuthContext = Depends(get_platform_admin)):
    runtime = get_runtime()
    orgs = await asyncio.to_thread(runtime.organizations.list_organizations)
    return Envelope(
        status="ok", data=OrganizationListResponse(items=[_org_response(o) for o in orgs])
    )


@router.post("/admin/organizations", response_model=Envelope, status_code=201, tags=["admin"])
async def create_organization(
    body: OrganizationCreateRequest,
    principal: AuthContext = Depends(get_platform_admin),
):
    runtime = get_runtime()
    org = await asyncio.to_thread(
        runtime.organizations.create_organization, body.name, body.slug, body.email_domains
    )
    logger.info("organization_provisioned", organization_id=org.id, actor_id=principal.user_id)
    return Envelope(status="ok", data=_org_response(org))


@router.patch("/admin/organizations/{org_id}", response_model=Envelope, tags=["admin"])
async def update_organization(
    body: OrganizationUpdateRequest,
    org_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_platform_admin),
):
    runtime = get_runtime()
    org = await asyncio.to_thread(
        lambda: runtime.organizations.update_organization(
            org_id,
            name=body.name,
            slug=body.slug,
            email_domains=body.email_domains,
            is_active=body.is_active,
        )
    )
    return Envelope(status="ok", data=_org_response(org))


@router.post(
    "/admin/organizations/{org_id}/admins",
    response_model=Envelope,
    status_code=201,
    tags=["admin"],
)
async def add_organization_admin(
    body: OrgAdminRequest,
    org_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_platform_admin),
):
    runtime = get_runtime()
    result = await asyncio.to_thread(
        runtime.organizations.add_admin, org_id, body.email, body.name, body.password
    )
    logger.info(
        "organization_admin_provisioned",
        organization_id=org_id,
        user_id=result.user.id,
        actor_id=principal.user_id,
    )
    return Envelope(
        status="ok",
        data=OrgAdminResponse(
            user=_user_response(result.user),
            organization_id=result.membership.organization_id,
            membership_role=result.membership.role,
            is_verified=result.membership.is_verified,
            created_user=result.created_user,
        ),
    )


# payment gateway


@router.post("/webhooks/payments", response_model=Envelope, tags=["payments"])
async def payment_webhook(
    request: Request,
    signature: Optional[str] = Header(None, alias=SIGNATURE_HEADER),
):
    runtime = get_runtime()
    raw = await request.body()
    if not verify_signature(runtime.settings.payment_webhook_secret, raw, signature):
        logger.warning("payment_webhook_bad_signature", client_ip=_client_ip(request))
        raise _http_error("unauthorized", "invalid webhook signature", status_code=401)
    try:
        payload = PaymentWebhookPayload.model_validate_json(raw)
    except ValueError as exc:
        raise _http_error(
            "validation_error",
            "malformed webhook payload",
            status_code=400,
            details=sanitize_error_message(str(exc)),
        )
    if payload.event == "payment.captured":
        if not payload.gateway_payment_id:
            raise _http_error(
                "validation_error", "gateway_payment_id is required", status_code=400
            )
        outcome = await asyncio.to_thread(
            runtime.payments.handle_captured, payload.order_id, payload.gateway_payment_id
        )
        return Envelope(
            status="ok",
            data={
                "order_id": payload.order_id,
                "status": outcome.payment.status,
                "newly_paid": outcome.newly_paid,
                "enrollments": _fan_out_response(outcome.enrollments),
            },
        )
    changed = await asyncio.to_thread(runtime.payments.handle_failed, payload.order_id)
    return Envelope(status="ok", data={"order_id": payload.order_id, "updated": changed})


__all__ = [
    "router",
    "get_principal",
    "get_optional_principal",
    "require_role",
    "require_org_role",
]
