"""
Stripe API Service
Customer lookups for Stripe payment webhooks
"""

import logging
from typing import Any, Dict, Optional

import httpx

from .. import config

logger = logging.getLogger(__name__)


async def fetch_customer(
    access_token: str, customer_id: str, stripe_account: Optional[str] = None
) -> Optional[Dict[str, Any]]:
    """
    Fetch a Stripe customer (optionally on a connected account).

    Returns:
        {"name": ..., "phone": ...} or None if the customer could not be loaded
    """
    if not customer_id or not access_token:
        return None

    headers = {"Authorization": f"Bearer {access_token}"}
    if stripe_account:
        headers["Stripe-Account"] = stripe_account

    try:
        async with httpx.AsyncClient(timeout=config.POS_API_TIMEOUT_SECONDS) as http_client:
            response = await http_client.get(
                f"{config.STRIPE_API_URL}/customers/{customer_id}", headers=headers
            )
    except httpx.HTTPError as e:
        logger.warning(f"⚠️ Could not fetch Stripe customer {customer_id}: {type(e).__name__}")
        return None

    if response.status_code != 200:
        logger.warning(f"⚠️ Stripe customer lookup returned {response.status_code}")
        return None

    customer = response.json()
    return {"name": customer.get("name"), "phone": customer.get("phone")}
