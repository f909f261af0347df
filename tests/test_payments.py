import hashlib
import hmac

import pytest

from coursegate.service.errors import NotFoundError
from coursegate.service.payments import verify_signature


def _sign(secret, body):
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class TestSignature:
    def test_valid_signature(self):
        body = b'{"event":"payment.captured"}'
        assert verify_signature("whsec", body, _sign("whsec", body))
        assert verify_signature("whsec", body, _sign("whsec", body).upper() + " ")

    @pytest.mark.parametrize(
        "secret,signature",
        [("whsec", "deadbeef"), (None, "deadbeef"), ("whsec", None), ("", "x")],
    )
    def test_invalid_or_missing(self, secret, signature):
        assert not verify_signature(secret, b"{}", signature)

    def test_body_tampering_detected(self):
        signature = _sign("whsec", b'{"amount":100}')
        assert not verify_signature("whsec", b'{"amount":1}', signature)


class TestCapture:
    def test_capture_sets_premium_and_enrolls(self, runtime, store, make_user, campus):
        user = make_user()
        store.create_payment(user.id, "order_1", 49900)

        outcome = runtime.payments.handle_captured("order_1", "pay_1")

        assert outcome.newly_paid
        assert outcome.payment.gateway_payment_id == "pay_1"
        assert outcome.enrollments.enrolled == 1
        assert store.get_user(user.id).is_premium
        assert store.get_enrollment(user.id, campus["course"].id).access_source == "individual"

    def test_duplicate_capture_is_noop(self, runtime, store, make_user, campus, monkeypatch):
        user = make_user()
        store.create_payment(user.id, "order_1", 49900)
        runtime.payments.handle_captured("order_1", "pay_1")

        calls = []
        monkeypatch.setattr(runtime.fanout, "trigger", lambda *a, **k: calls.append(a))
        again = runtime.payments.handle_captured("order_1", "pay_1")

        assert again.newly_paid is False and again.enrollments is None
        assert calls == []

    def test_unknown_order(self, runtime):
        with pytest.raises(NotFoundError):
            runtime.payments.handle_captured("order_missing", "pay_1")

    def test_fan_out_failure_keeps_payment(self, runtime, store, make_user, campus, monkeypatch):
        user = make_user()
        store.create_payment(user.id, "order_1", 49900)

        def boom(*_args, **_kwargs):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(runtime.fanout, "trigger", boom)
        outcome = runtime.payments.handle_captured("order_1", "pay_1")

        assert outcome.newly_paid and outcome.enrollments is None
        assert store.get_payment_by_order("order_1").status == "paid"
        assert store.get_user(user.id).is_premium


class TestFailure:
    def test_failed_event_marks_pending_payment(self, runtime, store, make_user):
        user = make_user()
        store.create_payment(user.id, "order_2", 49900)
        assert runtime.payments.handle_failed("order_2") is True
        assert store.get_payment_by_order("order_2").status == "failed"

    def test_failed_event_never_downgrades_paid(self, runtime, store, make_user):
        user = make_user()
        store.create_payment(user.id, "order_3", 49900)
        runtime.payments.handle_captured("order_3", "pay_3")

        assert runtime.payments.handle_failed("order_3") is False
        assert store.get_payment_by_order("order_3").status == "paid"
        assert store.get_user(user.id).is_premium
