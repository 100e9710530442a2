"""
Webhook Security Module

Signature verification for every POS webhook provider:
- Constant-time signature comparison
- Timestamp validation for providers that sign one (Stripe)
- Fail closed when no signing secret is available

Each provider has one WebhookVerifier subclass registered in VERIFIERS.
"""

import base64
import hashlib
import hmac
import logging
import time
from typing import Dict, List, Mapping, Optional

from . import config

logger = logging.getLogger(__name__)

# Maximum age of webhook in seconds (5 minutes)
MAX_WEBHOOK_AGE_SECONDS = 300


class WebhookSignatureError(Exception):
    """Raised when webhook signature verification fails"""

    pass


def constant_time_compare(a: Optional[str], b: Optional[str]) -> bool:
    """
    Compare two strings in constant time to prevent timing attacks.
    Empty values never match.
    """
    if not a or not b:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def compute_hmac_sha256(secret: str, payload: bytes) -> str:
    """Compute HMAC-SHA256 signature of payload"""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def compute_hmac_sha256_base64(secret: str, payload: bytes) -> str:
    """Compute HMAC-SHA256 signature of payload and return base64 encoded"""
    signature = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()
    return base64.b64encode(signature).decode("utf-8")


def verify_timestamp(timestamp: Optional[str], max_age: int = MAX_WEBHOOK_AGE_SECONDS) -> bool:
    """
    Verify webhook timestamp is within acceptable range.
    Prevents replay attacks by rejecting old webhooks.

    Args:
        timestamp: Unix timestamp as string
        max_age: Maximum age in seconds

    Returns:
        True if timestamp is valid, False otherwise
    """
    if not timestamp:
        return False

    try:
        webhook_time = int(timestamp)
        current_time = int(time.time())
        age = abs(current_time - webhook_time)

        if age > max_age:
            logger.warning(f"🚫 Webhook timestamp too old: {age}s (max: {max_age}s)")
            return False

        return True
    except (ValueError, TypeError):
        logger.warning(f"🚫 Invalid webhook timestamp format: {timestamp}")
        return False


def parse_stripe_signature_header(header: str) -> Dict[str, List[str]]:
    """Parse ``t=<ts>,v1=<sig>,v1=<sig>`` into a dict of value lists"""
    parts: Dict[str, List[str]] = {}
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if sep:
            parts.setdefault(key, []).append(value)
    return parts


class WebhookVerifier:
    """Base class: one subclass per provider"""

    provider = ""
    signature_header = ""

    def verify(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        signing_secret: Optional[str],
        api_key: Optional[str] = None,
        request_url: Optional[str] = None,
    ) -> bool:
        raise NotImplementedError


class SquareVerifier(WebhookVerifier):
    """base64(HMAC-SHA256(signature_key, notification_url + body))"""

    provider = "square"
    signature_header = "x-square-hmacsha256-signature"

    def verify(self, raw_body, headers, signing_secret, api_key=None, request_url=None):
        signature = headers.get(self.signature_header)
        notification_url = config.SQUARE_WEBHOOK_NOTIFICATION_URL or request_url
        if not signing_secret or not signature or not notification_url:
            return False

        payload = notification_url.encode("utf-8") + raw_body
        expected = compute_hmac_sha256_base64(signing_secret, payload)
        return constant_time_compare(expected, signature)


class ShopifyVerifier(WebhookVerifier):
    """base64(HMAC-SHA256(app_secret, body))"""

    provider = "shopify"
    signature_header = "x-shopify-hmac-sha256"

    def verify(self, raw_body, headers, signing_secret, api_key=None, request_url=None):
        signature = headers.get(self.signature_header)
        if not signing_secret or not signature:
            return False
        expected = compute_hmac_sha256_base64(signing_secret, raw_body)
        return constant_time_compare(expected, signature)


class CloverVerifier(WebhookVerifier):
    """Clover sends a shared auth code in X-Clover-Auth"""

    provider = "clover"
    signature_header = "x-clover-auth"

    def verify(self, raw_body, headers, signing_secret, api_key=None, request_url=None):
        return constant_time_compare(signing_secret, headers.get(self.signature_header))


class StripeVerifier(WebhookVerifier):
    """Stripe v1 scheme: HMAC-SHA256(secret, "<t>.<body>"), any v1 may match"""

    provider = "stripe_pos"
    signature_header = "stripe-signature"

    def verify(self, raw_body, headers, signing_secret, api_key=None, request_url=None):
        header = headers.get(self.signature_header)
        if not signing_secret or not header:
            return False

        parts = parse_stripe_signature_header(header)
        timestamp = (parts.get("t") or [None])[0]
        if not verify_timestamp(timestamp):
            return False

        signed_payload = f"{timestamp}.".encode("utf-8") + raw_body
        expected = compute_hmac_sha256(signing_secret, signed_payload)
        return any(constant_time_compare(expected, sig) for sig in parts.get("v1", []))


class WooCommerceVerifier(WebhookVerifier):
    """base64(HMAC-SHA256(webhook_secret, body))"""

    provider = "woocommerce"
    signature_header = "x-wc-webhook-signature"

    def verify(self, raw_body, headers, signing_secret, api_key=None, request_url=None):
        signature = headers.get(self.signature_header)
        if not signing_secret or not signature:
            return False
        expected = compute_hmac_sha256_base64(signing_secret, raw_body)
        return constant_time_compare(expected, signature)


class InboundVerifier(WebhookVerifier):
    """
    Zapier / generic webhook: X-API-Key must match the integration's API key.
    When a webhook secret is configured, X-Webhook-Signature (hex, optional
    "sha256=" prefix) is also required.
    """

    provider = "generic_webhook"
    signature_header = "x-webhook-signature"

    def verify(self, raw_body, headers, signing_secret, api_key=None, request_url=None):
        if not constant_time_compare(api_key, headers.get("x-api-key")):
            logger.warning(f"🚫 Invalid API key for {self.provider} webhook")
            return False

        if not signing_secret:
            return True

        signature = headers.get(self.signature_header)
        if not signature:
            logger.warning(f"🚫 Missing signature for {self.provider} webhook with secret configured")
            return False
        if signature.startswith("sha256="):
            signature = signature[len("sha256=") :]

        expected = compute_hmac_sha256(signing_secret, raw_body)
        return constant_time_compare(expected, signature.lower())


class ZapierVerifier(InboundVerifier):
    provider = "zapier"


# Provider -> verifier instance
VERIFIERS: Dict[str, WebhookVerifier] = {
    verifier.provider: verifier
    for verifier in (
        SquareVerifier(),
        ShopifyVerifier(),
        CloverVerifier(),
        StripeVerifier(),
        WooCommerceVerifier(),
        ZapierVerifier(),
        InboundVerifier(),
    )
}

# Provider -> app-level secret used when the integration has none of its own
APP_LEVEL_SECRETS = {
    "square": lambda: config.SQUARE_WEBHOOK_SIGNATURE_KEY,
    "shopify": lambda: config.SHOPIFY_API_SECRET,
    "clover": lambda: config.CLOVER_WEBHOOK_AUTH_CODE,
    "stripe_pos": lambda: config.STRIPE_POS_WEBHOOK_SECRET,
}


def get_app_level_secret(provider: str) -> Optional[str]:
    resolver = APP_LEVEL_SECRETS.get(provider)
    return resolver() if resolver else None


def verify_webhook(
    provider: str,
    raw_body: bytes,
    headers: Mapping[str, str],
    signing_secret: Optional[str],
    *,
    api_key: Optional[str] = None,
    request_url: Optional[str] = None,
) -> bool:
    """
    Verify a webhook for the given provider.

    Args:
        provider: Provider name (see VERIFIERS)
        raw_body: Raw request body, exactly as received
        headers: Request headers (matched case-insensitively)
        signing_secret: Decrypted webhook secret or app-level secret
        api_key: Decrypted API key (zapier / generic_webhook only)
        request_url: Full request URL, used by Square when no notification URL is configured

    Returns:
        True if the webhook is authentic
    """
    verifier = VERIFIERS.get(provider)
    if not verifier:
        logger.warning(f"🚫 Unknown webhook provider: {provider}")
        return False

    normalized_headers = {k.lower(): v for k, v in headers.items()}
    is_valid = verifier.verify(
        raw_body,
        normalized_headers,
        signing_secret,
        api_key=api_key,
        request_url=request_url,
    )
    if not is_valid:
        logger.warning(f"🚫 {provider} webhook signature verification failed")
    return is_valid
