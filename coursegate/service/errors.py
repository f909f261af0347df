from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Failure raised by a service and rendered by the API as an error envelope.

    ``status_code`` is the HTTP status and ``error_code`` the stable code
    clients switch on; subclasses pin both, and a raise site may override
    either for a one-off case.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class BadRequestError(ServiceError):
    """Input the service cannot act on (400)."""


class AuthenticationError(ServiceError):
    """Credential missing, invalid or expired (401). Never retried."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Valid identity without the required grant (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountDeactivatedError(ForbiddenError):
    error_code = "account_deactivated"


class EmailNotVerifiedError(ForbiddenError):
    error_code = "email_not_verified"


class NoSubscriptionError(ForbiddenError):
    """Neither an enrollment nor a verified institution membership covers the course."""
    error_code = "no_subscription"


class NotFoundError(ServiceError):
    """Missing, or hidden because its existence would leak gating information (404)."""
    status_code = 404
    error_code = "not_found"


class NoInstitutionError(NotFoundError):
    error_code = "no_institution"


class ConflictError(ServiceError):
    """Terminal state conflict (409); retrying the same request cannot succeed."""
    status_code = 409
    error_code = "conflict"


class AlreadyVerifiedError(ConflictError):
    error_code = "already_verified"


class ClaimRejectedError(ConflictError):
    """No unclaimed roster seat matched; the message never says which part was wrong."""
    error_code = "claim_rejected"


class ReuseDetected(Exception):
    """A spent rotation token was presented again.

    Raised and handled inside the session manager only; callers see a plain
    AuthenticationError.
    """

    def __init__(self, user_id: str) -> None:
        super().__init__("rotation token reuse")
        self.user_id = user_id


__all__ = [
    "ServiceError",
    "BadRequestError",
    "AuthenticationError",
    "ForbiddenError",
    "AccountDeactivatedError",
    "EmailNotVerifiedError",
    "NoSubscriptionError",
    "NotFoundError",
    "NoInstitutionError",
    "ConflictError",
    "AlreadyVerifiedError",
    "ClaimRejectedError",
    "ReuseDetected",
]
