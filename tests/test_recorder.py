"""Tests for SMS status transitions and refund handling."""

import pytest

from posreviews.domain.webhooks.recorder import (
    InvalidStatusTransition,
    TransactionNotFound,
    apply_refund,
    can_transition,
    record_dispatch,
    record_dispatch_failure,
    record_outcome,
)
from posreviews.models_pos import SmsStatus


class TestTransitions:
    @pytest.mark.parametrize(
        "current,requested",
        [
            (SmsStatus.PENDING, SmsStatus.SENT),
            (SmsStatus.PENDING, SmsStatus.FAILED),
            (SmsStatus.PENDING, SmsStatus.SKIPPED_REFUNDED),
            (SmsStatus.SENT, SmsStatus.SKIPPED_REFUNDED),
        ],
    )
    def test_allowed(self, current, requested):
        assert can_transition(current, requested)

    @pytest.mark.parametrize(
        "current,requested",
        [
            (SmsStatus.SENT, SmsStatus.PENDING),
            (SmsStatus.FAILED, SmsStatus.SENT),
            (SmsStatus.SKIPPED_RECENT, SmsStatus.SENT),
            (SmsStatus.SKIPPED_REFUNDED, SmsStatus.PENDING),
        ],
    )
    def test_rejected(self, current, requested):
        assert not can_transition(current, requested)


def test_record_sent(db, make_integration, make_transaction):
    transaction = make_transaction(make_integration())

    record_outcome(db, transaction, SmsStatus.SENT, message_id="SM123")
    db.commit()

    assert transaction.sms_status == SmsStatus.SENT
    assert transaction.message_sid == "SM123"
    assert transaction.sms_sent_at is not None


def test_record_failed_keeps_reason(db, make_integration, make_transaction):
    transaction = make_transaction(make_integration())

    record_outcome(db, transaction, SmsStatus.FAILED, reason="[21211] Invalid 'To' Phone Number")

    assert transaction.sms_status == SmsStatus.FAILED
    assert transaction.skip_reason == "[21211] Invalid 'To' Phone Number"


def test_invalid_transition_leaves_row_alone(db, make_integration, make_transaction):
    transaction = make_transaction(make_integration(), sms_status=SmsStatus.SENT)

    with pytest.raises(InvalidStatusTransition) as exc_info:
        record_outcome(db, transaction, SmsStatus.FAILED)

    assert exc_info.value.current == SmsStatus.SENT
    assert transaction.sms_status == SmsStatus.SENT


class TestApplyRefund:
    def test_pending_is_cancelled(self, db, make_integration, make_transaction):
        integration = make_integration()
        make_transaction(integration)

        transaction = apply_refund(db, integration, "PAY_1")

        assert transaction.sms_status == SmsStatus.SKIPPED_REFUNDED
        assert transaction.refunded_at is not None
        assert "before" in transaction.skip_reason

    def test_sent_gets_audit_marker(self, db, make_integration, make_transaction):
        integration = make_integration()
        make_transaction(integration, sms_status=SmsStatus.SENT, message_sid="SM1")

        transaction = apply_refund(db, integration, "PAY_1")

        assert transaction.sms_status == SmsStatus.SKIPPED_REFUNDED
        assert transaction.message_sid == "SM1"
        assert "after" in transaction.skip_reason

    def test_skipped_is_left_alone(self, db, make_integration, make_transaction):
        integration = make_integration()
        make_transaction(integration, sms_status=SmsStatus.SKIPPED_NO_PHONE)

        transaction = apply_refund(db, integration, "PAY_1")

        assert transaction.sms_status == SmsStatus.SKIPPED_NO_PHONE
        assert transaction.refunded_at is None

    def test_unknown_transaction(self, db, make_integration):
        with pytest.raises(TransactionNotFound):
            apply_refund(db, make_integration(), "PAY_MISSING")

    def test_other_integration_not_touched(self, db, make_integration, make_transaction):
        square = make_integration()
        shopify = make_integration(provider="shopify", merchant_id=None, shop_domain="s.myshopify.com")
        make_transaction(square)

        with pytest.raises(TransactionNotFound):
            apply_refund(db, shopify, "PAY_1")


class TestRecordDispatch:
    def test_pending_becomes_sent(self, db, make_integration, make_transaction):
        transaction = make_transaction(make_integration())

        record_dispatch(db, transaction, "SM123")

        assert transaction.sms_status == SmsStatus.SENT
        assert transaction.message_sid == "SM123"

    def test_refunded_in_flight_keeps_status(self, db, make_integration, make_transaction):
        transaction = make_transaction(make_integration(), sms_status=SmsStatus.SKIPPED_REFUNDED)

        record_dispatch(db, transaction, "SM123")

        assert transaction.sms_status == SmsStatus.SKIPPED_REFUNDED
        assert transaction.message_sid == "SM123"
        assert transaction.sms_sent_at is not None
        assert "while" in transaction.skip_reason

    def test_failure_marks_pending_failed(self, db, make_integration, make_transaction):
        transaction = make_transaction(make_integration())

        record_dispatch_failure(db, transaction, "timeout")

        assert transaction.sms_status == SmsStatus.FAILED
        assert transaction.skip_reason == "timeout"

    def test_failure_after_refund_is_ignored(self, db, make_integration, make_transaction):
        transaction = make_transaction(
            make_integration(), sms_status=SmsStatus.SKIPPED_REFUNDED, skip_reason="refunded"
        )

        record_dispatch_failure(db, transaction, "timeout")

        assert transaction.sms_status == SmsStatus.SKIPPED_REFUNDED
        assert transaction.skip_reason == "refunded"
