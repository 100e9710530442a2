"""
Square API Service
Customer lookups for Square payment webhooks
"""

import logging
from typing import Any, Dict, Optional

import httpx

from .. import config

logger = logging.getLogger(__name__)

if config.SQUARE_ENVIRONMENT == "production":
    SQUARE_API_URL = "https://connect.squareup.com/v2"
else:
    SQUARE_API_URL = "https://connect.squareupsandbox.com/v2"


async def fetch_customer(access_token: str, customer_id: str) -> Optional[Dict[str, Any]]:
    """
    Fetch a Square customer.

    Returns:
        {"name": ..., "phone": ...} or None if the customer could not be loaded
    """
    if not customer_id or not access_token:
        return None

    try:
        async with httpx.AsyncClient(timeout=config.POS_API_TIMEOUT_SECONDS) as http_client:
            response = await http_client.get(
                f"{SQUARE_API_URL}/customers/{customer_id}",
                headers={
                    "Square-Version": config.SQUARE_API_VERSION,
                    "Authorization": f"Bearer {access_token}",
                    "Content-Type": "application/json",
                },
            )
    except httpx.HTTPError as e:
        logger.error(f"❌ Error fetching Square customer {customer_id}: {type(e).__name__}")
        return None

    if response.status_code != 200:
        logger.warning(f"⚠️ Failed to fetch Square customer {customer_id}: {response.status_code}")
        return None

    customer = response.json().get("customer") or {}
    name = f"{customer.get('given_name') or ''} {customer.get('family_name') or ''}".strip()
    return {"name": name or None, "phone": customer.get("phone_number")}
