"""
Clover API Service
Payment and customer lookups for Clover webhooks (Clover pushes only object ids)
"""

import logging
from typing import Any, Dict, Optional

import httpx

from .. import config

logger = logging.getLogger(__name__)

if config.CLOVER_ENVIRONMENT == "production":
    CLOVER_API_URL = "https://api.clover.com/v3"
else:
    CLOVER_API_URL = "https://sandbox.dev.clover.com/v3"


async def _get(access_token: str, path: str, params: Optional[dict] = None) -> Optional[dict]:
    try:
        async with httpx.AsyncClient(timeout=config.POS_API_TIMEOUT_SECONDS) as http_client:
            response = await http_client.get(
                f"{CLOVER_API_URL}{path}",
                params=params,
                headers={"Authorization": f"Bearer {access_token}"},
            )
    except httpx.HTTPError as e:
        logger.error(f"❌ Clover API request failed for {path}: {type(e).__name__}")
        return None

    if response.status_code != 200:
        logger.warning(f"⚠️ Clover API returned {response.status_code} for {path}")
        return None
    return response.json()


async def fetch_payment(
    access_token: str, merchant_id: str, payment_id: str
) -> Optional[Dict[str, Any]]:
    """
    Fetch a Clover payment with its order's customer.

    Returns:
        {"amount", "order_id", "device_id", "customer_name", "customer_phone", "result"}
        or None when the payment cannot be loaded
    """
    if not access_token:
        return None

    payment = await _get(
        access_token, f"/merchants/{merchant_id}/payments/{payment_id}", {"expand": "order"}
    )
    if not payment:
        return None

    order_id = (payment.get("order") or {}).get("id")
    customer_name = None
    customer_phone = None

    if order_id:
        order = await _get(
            access_token,
            f"/merchants/{merchant_id}/orders/{order_id}",
            {"expand": "customers,customers.phoneNumbers"},
        )
        customers = ((order or {}).get("customers") or {}).get("elements") or []
        if customers:
            customer = customers[0]
            customer_name = (
                f"{customer.get('firstName') or ''} {customer.get('lastName') or ''}".strip() or None
            )
            phones = (customer.get("phoneNumbers") or {}).get("elements") or []
            if phones:
                customer_phone = phones[0].get("phoneNumber")

    amount = payment.get("amount")
    return {
        "amount": amount / 100 if amount is not None else None,
        "order_id": order_id,
        "device_id": (payment.get("device") or {}).get("id"),
        "customer_name": customer_name,
        "customer_phone": customer_phone,
        "result": payment.get("result"),
    }
