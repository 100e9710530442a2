"""
Security Utilities
Credential generation for inbound webhook integrations and log masking helpers
"""

import logging
import secrets
from typing import NamedTuple, Optional

logger = logging.getLogger(__name__)


class WebhookCredentials(NamedTuple):
    api_key: str  # 32 hex chars
    webhook_secret: str  # 64 hex chars
    url_token: str  # 16 hex chars, part of the webhook URL


def generate_secure_token(nbytes: int = 16) -> str:
    """Generate a cryptographically secure random hex token"""
    return secrets.token_hex(nbytes)


def generate_webhook_credentials() -> WebhookCredentials:
    """Generate API key, signing secret and URL token for a Zapier / generic webhook integration"""
    return WebhookCredentials(
        api_key=generate_secure_token(16),
        webhook_secret=generate_secure_token(32),
        url_token=generate_secure_token(8),
    )


def mask_sensitive_data(data: Optional[str], visible_chars: int = 4) -> str:
    """
    Mask sensitive data for logging/display

    Args:
        data: Sensitive data to mask
        visible_chars: Number of characters to show at the end

    Returns:
        Masked string
    """
    if not data:
        return ""
    if len(data) <= visible_chars:
        return "*" * len(data)

    return "*" * (len(data) - visible_chars) + data[-visible_chars:]


def mask_phone(phone: Optional[str]) -> str:
    """Mask a phone number for logs, keeping the last 4 digits (+*******4567)"""
    if not phone:
        return "<none>"
    prefix = "+" if phone.startswith("+") else ""
    return prefix + mask_sensitive_data(phone.lstrip("+"))
