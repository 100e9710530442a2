"""Tests for review messages, SMS quota and the Twilio transport."""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from posreviews import plan_limits
from posreviews.models_pos import SmsStatus
from posreviews.services import twilio_service
from posreviews.services.review_messages import (
    MessageConfig,
    build_review_message,
    get_message_config,
)
from posreviews.services.twilio_service import SmsTransportError, send_sms, send_sms_with_retry

LINK = "https://g.page/r/sunny-cafe/review"


class TestReviewMessages:
    def _config(self, tone="friendly", custom_message=None):
        return MessageConfig("Sunny Cafe", LINK, tone, custom_message)

    def test_friendly(self):
        message = build_review_message("Jane Doe", self._config())
        assert message == (
            "Hi Jane! Thanks for shopping at Sunny Cafe! "
            f"We'd love to hear about your experience: {LINK}"
        )

    def test_missing_name(self):
        assert build_review_message(None, self._config()).startswith("Hi there!")

    def test_professional(self):
        message = build_review_message("Jane", self._config(tone="professional"))
        assert message == f"Thank you for your purchase at Sunny Cafe. We value your feedback: {LINK}"

    def test_unknown_tone_falls_back(self):
        assert build_review_message("Jane", self._config(tone="sarcastic")).startswith("Hi Jane!")

    def test_custom_placeholders(self):
        config = self._config(
            tone="custom",
            custom_message="Hey {{customername}}, {{BusinessName}} says thanks! {{REVIEWLINK}}",
        )
        assert build_review_message("Jane Doe", config) == f"Hey Jane, Sunny Cafe says thanks! {LINK}"

    def test_custom_without_link_appends_it(self):
        config = self._config(tone="custom", custom_message="Thanks {{CustomerName}}!")
        assert build_review_message("Jane", config) == f"Thanks Jane! {LINK}"

    def test_config_requires_review_link(self, db, user):
        assert get_message_config(db, user.id).review_link == LINK

        user.review_url = None
        db.commit()
        assert get_message_config(db, user.id) is None


class TestPlanLimits:
    def test_plan_limit(self, user):
        assert plan_limits.get_plan_limit(user) == 500
        user.sms_usage_limit = 25
        assert plan_limits.get_plan_limit(user) == 25

    def test_no_plan(self, user):
        user.plan = None
        assert plan_limits.get_plan_limit(user) == 0

    def test_first_check_initializes_cycle(self, db, user):
        now = datetime.utcnow()
        plan_limits.check_and_reset_monthly_counter(user, db, now=now)

        assert user.month_reset_date == user.subscription_start_date + timedelta(days=30)

    def test_counter_resets_after_cycle(self, db, user):
        user.sms_usage_count = 40
        user.month_reset_date = datetime.utcnow() - timedelta(minutes=1)

        plan_limits.check_and_reset_monthly_counter(user, db)

        assert user.sms_usage_count == 0
        assert user.month_reset_date > datetime.utcnow()

    def test_can_send(self, db, user):
        assert plan_limits.can_send_sms(user, db) == (True, None)

    def test_record_usage_and_stats(self, db, user, make_integration, make_transaction):
        make_transaction(make_integration(), sms_status=SmsStatus.PENDING)
        make_transaction(
            make_integration(provider="zapier", merchant_id=None, webhook_url_token="tok"),
            external_transaction_id="T-TEST",
            is_test_mode=True,
        )

        plan_limits.record_sms_usage(user, db)
        stats = plan_limits.get_sms_usage_stats(user, db)

        assert stats["current"] == 1
        assert stats["pending"] == 1
        assert stats["remaining"] == 498
        assert stats["limit"] == 500


def _response(status_code, payload):
    return httpx.Response(status_code, json=payload)


@pytest.fixture()
def twilio_config():
    with patch.multiple(
        "posreviews.services.twilio_service.config",
        TWILIO_ACCOUNT_SID="AC123",
        TWILIO_AUTH_TOKEN="token",
        TWILIO_FROM_NUMBER="+15550009999",
        TWILIO_MESSAGING_SERVICE_SID=None,
    ):
        yield


@pytest.mark.usefixtures("twilio_config")
class TestTwilioTransport:
    def test_sent(self):
        post = AsyncMock(return_value=_response(201, {"sid": "SM123"}))
        with patch("httpx.AsyncClient.post", post):
            sid = asyncio.run(send_sms("+15551234567", "hello"))

        assert sid == "SM123"
        kwargs = post.await_args.kwargs
        assert kwargs["data"] == {"To": "+15551234567", "Body": "hello", "From": "+15550009999"}
        assert kwargs["auth"] == ("AC123", "token")

    def test_invalid_number_is_permanent(self):
        post = AsyncMock(
            return_value=_response(400, {"code": 21211, "message": "Invalid 'To' Phone Number"})
        )
        with patch("httpx.AsyncClient.post", post):
            with pytest.raises(SmsTransportError) as exc_info:
                asyncio.run(send_sms("+15551234567", "hello"))

        assert exc_info.value.transient is False
        assert exc_info.value.status_code == 400
        assert "21211" in str(exc_info.value)

    def test_rate_limit_is_transient(self):
        post = AsyncMock(return_value=_response(429, {"message": "Too Many Requests"}))
        with patch("httpx.AsyncClient.post", post):
            with pytest.raises(SmsTransportError) as exc_info:
                asyncio.run(send_sms("+15551234567", "hello"))

        assert exc_info.value.transient is True

    def test_timeout_is_transient(self):
        post = AsyncMock(side_effect=httpx.ReadTimeout("timed out"))
        with patch("httpx.AsyncClient.post", post):
            with pytest.raises(SmsTransportError) as exc_info:
                asyncio.run(send_sms("+15551234567", "hello"))

        assert exc_info.value.transient is True

    def test_rejects_non_e164(self):
        with pytest.raises(SmsTransportError):
            asyncio.run(send_sms("5551234567", "hello"))

    def test_missing_credentials(self):
        with patch("posreviews.services.twilio_service.config.TWILIO_AUTH_TOKEN", None):
            with pytest.raises(SmsTransportError):
                asyncio.run(send_sms("+15551234567", "hello"))


class TestRetry:
    def test_retries_transient_failures(self):
        send = AsyncMock(side_effect=[SmsTransportError("503", transient=True), "SM123"])
        with patch.object(twilio_service, "send_sms", send):
            sid = asyncio.run(send_sms_with_retry("+15551234567", "hello", max_attempts=3, retry_delay=0))

        assert sid == "SM123"
        assert send.await_count == 2

    def test_permanent_failure_not_retried(self):
        send = AsyncMock(side_effect=SmsTransportError("invalid number"))
        with patch.object(twilio_service, "send_sms", send):
            with pytest.raises(SmsTransportError):
                asyncio.run(send_sms_with_retry("+15551234567", "hello", max_attempts=3, retry_delay=0))

        assert send.await_count == 1

    def test_gives_up_after_max_attempts(self):
        send = AsyncMock(side_effect=SmsTransportError("timeout", transient=True))
        with patch.object(twilio_service, "send_sms", send):
            with pytest.raises(SmsTransportError):
                asyncio.run(send_sms_with_retry("+15551234567", "hello", max_attempts=3, retry_delay=0))

        assert send.await_count == 3
