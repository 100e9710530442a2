"""Tests for the review request worker tasks."""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from posreviews import worker
from posreviews.domain.webhooks.recorder import apply_refund
from posreviews.models import User
from posreviews.models_pos import PosIntegration, PosTransaction, SmsStatus
from posreviews.services.twilio_service import SmsTransportError


@pytest.fixture()
def worker_session(session_factory):
    with patch("posreviews.worker.SessionLocal", session_factory):
        yield


@pytest.fixture()
def sms_mock():
    with patch(
        "posreviews.worker.send_sms_with_retry", new_callable=AsyncMock, return_value="SM123"
    ) as mock:
        yield mock


def _run(transaction_id, target_phone="+15551234567", is_test_mode=False):
    return asyncio.run(worker.send_review_request_task({}, transaction_id, target_phone, is_test_mode))


def _reload(db, model, row_id):
    db.expire_all()
    return db.get(model, row_id)


@pytest.mark.usefixtures("worker_session")
class TestSendReviewRequest:
    def test_live_send(self, db, user, make_integration, make_transaction, sms_mock):
        transaction = make_transaction(make_integration())

        result = _run(transaction.id)

        assert result == {"transaction_id": transaction.id, "status": SmsStatus.SENT}
        to_phone, message = sms_mock.await_args.args
        assert to_phone == "+15551234567"
        assert message.startswith("Hi Jane! Thanks for shopping at Sunny Cafe!")
        assert message.endswith("https://g.page/r/sunny-cafe/review")

        transaction = _reload(db, PosTransaction, transaction.id)
        assert transaction.sms_status == SmsStatus.SENT
        assert transaction.message_sid == "SM123"
        assert transaction.sms_sent_at is not None
        assert _reload(db, User, user.id).sms_usage_count == 1

    def test_test_mode_send_uses_test_number(
        self, db, user, make_integration, make_transaction, sms_mock
    ):
        integration = make_integration(test_mode=True, test_phone_number="+15550001111")
        transaction = make_transaction(integration, is_test_mode=True)

        _run(transaction.id, target_phone="+15550001111", is_test_mode=True)

        assert sms_mock.await_args.args[0] == "+15550001111"
        assert _reload(db, PosTransaction, transaction.id).sms_status == SmsStatus.SENT
        assert _reload(db, User, user.id).sms_usage_count == 0

    def test_refunded_while_queued(self, db, make_integration, make_transaction, sms_mock):
        transaction = make_transaction(make_integration(), sms_status=SmsStatus.SKIPPED_REFUNDED)

        result = _run(transaction.id)

        assert result["status"] == SmsStatus.SKIPPED_REFUNDED
        sms_mock.assert_not_awaited()

    def test_transport_failure(self, db, user, make_integration, make_transaction, sms_mock):
        sms_mock.side_effect = SmsTransportError("[21211] Invalid 'To' Phone Number", status_code=400)
        transaction = make_transaction(make_integration())

        result = _run(transaction.id)

        assert result["status"] == SmsStatus.FAILED
        transaction = _reload(db, PosTransaction, transaction.id)
        assert transaction.sms_status == SmsStatus.FAILED
        assert "21211" in transaction.skip_reason
        assert _reload(db, User, user.id).sms_usage_count == 0

    def test_review_link_removed_while_queued(
        self, db, user, make_integration, make_transaction, sms_mock
    ):
        transaction = make_transaction(make_integration())
        user.review_url = None
        db.commit()

        result = _run(transaction.id)

        assert result["status"] == SmsStatus.FAILED
        sms_mock.assert_not_awaited()

    def test_missing_transaction(self, db, sms_mock):
        assert _run(999)["status"] is None
        sms_mock.assert_not_awaited()

    def test_unexpected_error_propagates(self, db, make_integration, make_transaction, sms_mock):
        sms_mock.side_effect = RuntimeError("boom")
        transaction = make_transaction(make_integration())

        with pytest.raises(RuntimeError):
            _run(transaction.id)

        assert _reload(db, PosTransaction, transaction.id).sms_status == SmsStatus.PENDING

    def _refund_during_send(self, session_factory, integration_id, result=None, error=None):
        async def send(to_phone, message):
            session = session_factory()
            try:
                apply_refund(session, session.get(PosIntegration, integration_id), "PAY_1")
            finally:
                session.close()
            if error:
                raise error
            return result

        return send

    def test_refund_during_send_keeps_refunded_status(
        self, db, user, session_factory, make_integration, make_transaction, sms_mock
    ):
        integration = make_integration()
        transaction = make_transaction(integration)
        sms_mock.side_effect = self._refund_during_send(session_factory, integration.id, result="SM123")

        result = _run(transaction.id)

        assert result["status"] == SmsStatus.SKIPPED_REFUNDED
        transaction = _reload(db, PosTransaction, transaction.id)
        assert transaction.sms_status == SmsStatus.SKIPPED_REFUNDED
        assert transaction.message_sid == "SM123"
        assert transaction.sms_sent_at is not None
        assert transaction.refunded_at is not None
        assert transaction.skip_reason == "Order was refunded while the review request was being sent"
        # The message went out, so it still counts against the quota
        assert _reload(db, User, user.id).sms_usage_count == 1

    def test_refund_during_failed_send(
        self, db, user, session_factory, make_integration, make_transaction, sms_mock
    ):
        integration = make_integration()
        transaction = make_transaction(integration)
        sms_mock.side_effect = self._refund_during_send(
            session_factory, integration.id, error=SmsTransportError("timeout", transient=True)
        )

        result = _run(transaction.id)

        assert result["status"] == SmsStatus.SKIPPED_REFUNDED
        transaction = _reload(db, PosTransaction, transaction.id)
        assert transaction.sms_status == SmsStatus.SKIPPED_REFUNDED
        assert transaction.message_sid is None
        assert _reload(db, User, user.id).sms_usage_count == 0


class TestEnqueue:
    def _pool(self, job):
        pool = MagicMock()
        pool.enqueue_job = AsyncMock(return_value=job)
        pool.aclose = AsyncMock()
        return pool

    def test_job_id_and_delay(self):
        pool = self._pool(MagicMock(job_id="pos-sms-42"))

        with patch("posreviews.worker.create_pool", new_callable=AsyncMock, return_value=pool):
            job_id = asyncio.run(worker.enqueue_review_request(42, "+15551234567", False))

        assert job_id == "pos-sms-42"
        pool.enqueue_job.assert_awaited_once_with(
            "send_review_request_task",
            42,
            "+15551234567",
            False,
            _job_id="pos-sms-42",
            _defer_by=worker.config.POS_SMS_DELAY_SECONDS,
        )
        pool.aclose.assert_awaited_once()

    def test_already_queued(self):
        pool = self._pool(None)

        with patch("posreviews.worker.create_pool", new_callable=AsyncMock, return_value=pool):
            assert asyncio.run(worker.enqueue_review_request(42, "+15551234567", False)) is None

        pool.aclose.assert_awaited_once()


@pytest.mark.usefixtures("worker_session")
def test_monthly_reset(db, user):
    user.sms_usage_count = 120
    user.subscription_start_date = datetime.utcnow() - timedelta(days=45)
    user.month_reset_date = datetime.utcnow() - timedelta(days=1)
    db.commit()

    result = asyncio.run(worker.reset_monthly_sms_limits_task({}))

    assert result == {"checked": 1, "reset": 1}
    user = _reload(db, User, user.id)
    assert user.sms_usage_count == 0
    assert user.month_reset_date > datetime.utcnow()


def test_worker_settings():
    assert worker.send_review_request_task in worker.WorkerSettings.functions
    assert worker.review_request_job_id(7) == "pos-sms-7"
