"""
Twilio SMS Service
Sends review request SMS through the platform Twilio account
"""

import asyncio
import logging
from typing import Optional

import httpx

from .. import config
from ..security_utils import mask_phone

logger = logging.getLogger(__name__)

TWILIO_API_URL = "https://api.twilio.com/2010-04-01"


class SmsTransportError(Exception):
    """
    Raised when Twilio does not accept a message.

    transient=True for timeouts, connection errors, HTTP 429 and 5xx (worth retrying);
    False for permanent failures such as an invalid number.
    """

    def __init__(self, message: str, transient: bool = False, status_code: Optional[int] = None):
        super().__init__(message)
        self.transient = transient
        self.status_code = status_code


def _is_transient_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


async def send_sms(to_phone: str, message_body: str) -> str:
    """
    Send SMS via Twilio

    Args:
        to_phone: Recipient phone number in E.164 format
        message_body: SMS message content

    Returns:
        Twilio message SID

    Raises:
        SmsTransportError: on any failure, flagged transient when a retry may succeed
    """
    if not to_phone or not to_phone.startswith("+"):
        raise SmsTransportError("Phone number must be in E.164 format (e.g., +1234567890)")

    account_sid = config.TWILIO_ACCOUNT_SID
    auth_token = config.TWILIO_AUTH_TOKEN
    if not account_sid or not auth_token:
        raise SmsTransportError("Twilio credentials are not configured")

    data = {"To": to_phone, "Body": message_body}
    if config.TWILIO_MESSAGING_SERVICE_SID:
        data["MessagingServiceSid"] = config.TWILIO_MESSAGING_SERVICE_SID
    elif config.TWILIO_FROM_NUMBER:
        data["From"] = config.TWILIO_FROM_NUMBER
    else:
        raise SmsTransportError("Twilio sender (From number or Messaging Service) is not configured")

    logger.info(f"🚀 Sending SMS to Twilio API for {mask_phone(to_phone)}")
    try:
        async with httpx.AsyncClient() as client:
            response = await client.post(
                f"{TWILIO_API_URL}/Accounts/{account_sid}/Messages.json",
                auth=(account_sid, auth_token),
                data=data,
                timeout=config.TWILIO_TIMEOUT_SECONDS,
            )
    except (httpx.TimeoutException, httpx.TransportError) as e:
        logger.warning(f"⚠️ Twilio request failed: {type(e).__name__}")
        raise SmsTransportError(f"Twilio request failed: {e}", transient=True) from e

    logger.info(f"📡 Twilio API response status: {response.status_code}")

    if response.status_code in [200, 201]:
        message_sid = response.json().get("sid")
        logger.info(f"✅ SMS sent successfully to {mask_phone(to_phone)} (SID: {message_sid})")
        return message_sid

    try:
        error_data = response.json()
    except ValueError:
        error_data = {}
    error_message = error_data.get("message", "Unknown error")
    error_code = error_data.get("code")

    logger.error(f"❌ Twilio API error [{error_code}]: {error_message}")
    raise SmsTransportError(
        f"[{error_code}] {error_message}" if error_code else error_message,
        transient=_is_transient_status(response.status_code),
        status_code=response.status_code,
    )


async def send_sms_with_retry(
    to_phone: str,
    message_body: str,
    max_attempts: Optional[int] = None,
    retry_delay: Optional[float] = None,
) -> str:
    """
    Send SMS with exponential backoff retry on transient failures.
    Permanent failures are raised immediately.
    """
    max_attempts = max_attempts or config.SMS_MAX_ATTEMPTS
    retry_delay = config.SMS_RETRY_BASE_DELAY if retry_delay is None else retry_delay

    for attempt in range(max_attempts):
        try:
            return await send_sms(to_phone, message_body)
        except SmsTransportError as e:
            if not e.transient or attempt == max_attempts - 1:
                raise
            delay = retry_delay * (2**attempt)
            logger.warning(
                f"🔄 SMS attempt {attempt + 1}/{max_attempts} failed, retrying in {delay}s: {e}"
            )
            await asyncio.sleep(delay)

    raise SmsTransportError("SMS was not attempted")
