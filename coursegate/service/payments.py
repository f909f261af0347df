from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from typing import Optional, Protocol

from coursegate.logging import get_logger
from coursegate.service.enrollment import SCOPE_GLOBAL, EnrollmentFanout, FanOutResult
from coursegate.service.errors import NotFoundError
from coursegate.storage.models import Payment

logger = get_logger(__name__)


class PaymentStore(Protocol):
    def get_payment_by_order(self, order_id: str) -> Optional[Payment]: ...

    def capture_payment(
        self, order_id: str, gateway_payment_id: str
    ) -> tuple[Optional[Payment], bool]: ...

    def fail_payment(self, order_id: str) -> bool: ...


def verify_signature(secret: Optional[str], body: bytes, signature: Optional[str]) -> bool:
    """HMAC-SHA256 of the raw request body, hex encoded."""
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


@dataclass
class CaptureOutcome:
    payment: Payment
    newly_paid: bool
    enrollments: Optional[FanOutResult] = None


class PaymentService:
    """Confirms gateway payments.

    Capture marks the payment paid and the owner premium in one store
    transaction; the subscriber fan-out runs afterwards and its failures never
    undo the payment.
    """

    def __init__(self, store: PaymentStore, fanout: EnrollmentFanout) -> None:
        self.store = store
        self.fanout = fanout

    def handle_captured(self, order_id: str, gateway_payment_id: str) -> CaptureOutcome:
        payment, newly_paid = self.store.capture_payment(order_id, gateway_payment_id)
        if payment is None:
            logger.warning("payment_capture_unknown_order", order_id=order_id)
            raise NotFoundError("payment not found")
        if not newly_paid:
            logger.info("payment_capture_duplicate", order_id=order_id)
            return CaptureOutcome(payment=payment, newly_paid=False)
        outcome = CaptureOutcome(payment=payment, newly_paid=True)
        try:
            outcome.enrollments = self.fanout.trigger(SCOPE_GLOBAL, user_id=payment.user_id)
        except Exception as exc:
            logger.error(
                "payment_fan_out_failed",
                order_id=order_id,
                user_id=payment.user_id,
                error=str(exc),
            )
        logger.info("payment_captured", order_id=order_id, user_id=payment.user_id)
        return outcome

    def handle_failed(self, order_id: str) -> bool:
        changed = self.store.fail_payment(order_id)
        if changed:
            logger.info("payment_failed", order_id=order_id)
        else:
            logger.info("payment_failure_ignored", order_id=order_id)
        return changed
