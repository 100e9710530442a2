"""
Payload normalizers - one class per provider, registered in NORMALIZERS.

Each normalizer knows three things about its provider's webhooks:
- lookup_value: which field identifies the integration (merchant id, shop domain, ...)
- split_events: one payload per event when a provider batches several into a delivery
- event_identity: the provider's event id used for idempotency
- normalize: how to turn the payload into a NormalizedEvent
"""

import hashlib
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ...encryption import decrypt
from ...models_pos import PosIntegration, PosProvider
from ...services import clover_service, square_service, stripe_service
from .schemas import EventKind, NormalizedEvent

logger = logging.getLogger(__name__)


class NormalizationError(Exception):
    """Raised when a webhook payload is malformed for its provider"""

    pass


class NormalizationContext:
    """Integration data a normalizer may need for follow-up API lookups"""

    def __init__(
        self,
        integration: PosIntegration,
        event_id: Optional[str] = None,
        raw_body: Optional[bytes] = None,
    ):
        self.integration = integration
        self.event_id = event_id
        self.raw_body = raw_body

    @property
    def merchant_id(self) -> Optional[str]:
        return self.integration.merchant_id

    def access_token(self) -> Optional[str]:
        """Decrypt the OAuth access token on demand (raises CredentialError)"""
        return decrypt(self.integration.access_token_encrypted)


def _get_path(data: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def _first(payload: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return value
    return None


def _to_amount(value: Any, cents: bool = False) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if cents:
        amount = amount / 100
    return amount.quantize(Decimal("0.01"))


def _full_name(first: Optional[str], last: Optional[str]) -> Optional[str]:
    name = f"{first or ''} {last or ''}".strip()
    return name or None


def normalize_store_url(url: Optional[str]) -> Optional[str]:
    """https://, lowercase, no trailing slash"""
    if not url:
        return None
    normalized = url.strip().lower()
    if not normalized.startswith("http"):
        normalized = f"https://{normalized}"
    return normalized.rstrip("/")


class PayloadNormalizer:
    """Base class: one subclass per provider"""

    provider = ""

    def lookup_value(self, payload: Dict[str, Any], headers: Mapping[str, str]) -> Optional[str]:
        raise NotImplementedError

    def split_events(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [payload]

    def event_identity(
        self,
        payload: Dict[str, Any],
        headers: Mapping[str, str],
        raw_body: bytes,
        integration: PosIntegration,
    ) -> Tuple[str, Optional[str]]:
        raise NotImplementedError

    async def normalize(
        self, payload: Dict[str, Any], headers: Mapping[str, str], context: NormalizationContext
    ) -> NormalizedEvent:
        raise NotImplementedError


class SquareNormalizer(PayloadNormalizer):
    provider = PosProvider.SQUARE

    PAYMENT_EVENTS = ("payment.created", "payment.updated")
    REFUND_EVENTS = ("refund.created", "refund.updated")

    def lookup_value(self, payload, headers):
        return payload.get("merchant_id")

    def event_identity(self, payload, headers, raw_body, integration):
        event_id = payload.get("event_id")
        if not event_id:
            raise NormalizationError("Square event is missing event_id")
        return str(event_id), payload.get("type")

    async def normalize(self, payload, headers, context):
        event_type = payload.get("type")

        if event_type in self.PAYMENT_EVENTS:
            payment = _get_path(payload, "data", "object", "payment")
            if not isinstance(payment, dict) or not payment.get("id"):
                raise NormalizationError("Square payment event has no payment data")

            # Only completed payments are purchases
            if payment.get("status") != "COMPLETED":
                return NormalizedEvent.ignored(f"payment status {payment.get('status')}")

            customer_name = None
            raw_phone = None
            customer_id = payment.get("customer_id")
            if customer_id:
                access_token = context.access_token()
                customer = await square_service.fetch_customer(access_token, customer_id)
                if customer:
                    customer_name = customer["name"]
                    raw_phone = customer["phone"]

            return NormalizedEvent(
                kind=EventKind.PURCHASE,
                external_transaction_id=str(payment["id"]),
                customer_name=customer_name,
                raw_phone=raw_phone,
                purchase_amount=_to_amount(_get_path(payment, "total_money", "amount"), cents=True),
                external_location_id=payment.get("location_id"),
            )

        if event_type in self.REFUND_EVENTS:
            refund = _get_path(payload, "data", "object", "refund")
            if not isinstance(refund, dict):
                raise NormalizationError("Square refund event has no refund data")
            if refund.get("status") not in ("COMPLETED", "APPROVED"):
                return NormalizedEvent.ignored(f"refund status {refund.get('status')}")

            transaction_id = refund.get("payment_id") or refund.get("order_id")
            if not transaction_id:
                raise NormalizationError("Square refund does not reference a payment")
            return NormalizedEvent(kind=EventKind.REFUND, external_transaction_id=str(transaction_id))

        if event_type == "oauth.authorization.revoked":
            return NormalizedEvent(kind=EventKind.DISCONNECT, reason="Square authorization revoked")

        return NormalizedEvent.ignored(f"unhandled event type {event_type}")


class ShopifyNormalizer(PayloadNormalizer):
    provider = PosProvider.SHOPIFY

    def lookup_value(self, payload, headers):
        shop_domain = headers.get("x-shopify-shop-domain")
        return shop_domain.lower() if shop_domain else None

    def event_identity(self, payload, headers, raw_body, integration):
        topic = headers.get("x-shopify-topic")
        webhook_id = headers.get("x-shopify-webhook-id")
        if webhook_id:
            return webhook_id, topic
        if payload.get("id") is None:
            raise NormalizationError("Shopify webhook has neither a webhook id nor an object id")
        return f"{payload['id']}-{topic}", topic

    async def normalize(self, payload, headers, context):
        topic = headers.get("x-shopify-topic")

        if topic == "orders/create":
            if payload.get("id") is None:
                raise NormalizationError("Shopify order has no id")

            customer = payload.get("customer") or {}
            shipping = payload.get("shipping_address") or {}
            billing = payload.get("billing_address") or {}

            raw_phone = (
                customer.get("phone")
                or shipping.get("phone")
                or billing.get("phone")
                or payload.get("phone")
            )
            customer_name = (
                _full_name(customer.get("first_name"), customer.get("last_name"))
                or shipping.get("name")
                or billing.get("name")
            )
            location_id = payload.get("location_id")

            return NormalizedEvent(
                kind=EventKind.PURCHASE,
                external_transaction_id=str(payload["id"]),
                customer_name=customer_name,
                raw_phone=raw_phone,
                purchase_amount=_to_amount(payload.get("total_price")),
                external_location_id=str(location_id) if location_id is not None else None,
                location_name="Shopify Online Store" if location_id is None else None,
            )

        if topic == "refunds/create":
            order_id = payload.get("order_id")
            if order_id is None:
                raise NormalizationError("Shopify refund has no order_id")
            return NormalizedEvent(kind=EventKind.REFUND, external_transaction_id=str(order_id))

        if topic == "app/uninstalled":
            return NormalizedEvent(kind=EventKind.DISCONNECT, reason="Shopify app uninstalled")

        return NormalizedEvent.ignored(f"unhandled topic {topic}")


class CloverNormalizer(PayloadNormalizer):
    """
    Clover pushes object ids only:
    {"appId": ..., "merchants": {"<mId>": [{"objectId": "P:<id>", "type": "CREATE", "ts": ...}]}}

    A single delivery can batch updates for several merchants and payments.
    """

    provider = PosProvider.CLOVER

    def _merchant_updates(self, payload) -> Tuple[Optional[str], list]:
        merchants = payload.get("merchants")
        if not isinstance(merchants, dict) or not merchants:
            return None, []
        merchant_id, updates = next(iter(merchants.items()))
        return merchant_id, updates if isinstance(updates, list) else []

    @staticmethod
    def _is_payment_create(update: Any) -> bool:
        return (
            isinstance(update, dict)
            and str(update.get("objectId", "")).startswith("P:")
            and update.get("type") == "CREATE"
        )

    def _payment_update(self, updates: list) -> Optional[dict]:
        return next((update for update in updates if self._is_payment_create(update)), None)

    def split_events(self, payload):
        merchants = payload.get("merchants")
        if not isinstance(merchants, dict):
            return [payload]

        events = []
        for merchant_id, updates in merchants.items():
            if not isinstance(updates, list):
                continue
            for update in updates:
                if self._is_payment_create(update):
                    events.append({"appId": payload.get("appId"), "merchants": {merchant_id: [update]}})
        return events or [payload]

    def lookup_value(self, payload, headers):
        merchant_id, _ = self._merchant_updates(payload)
        return merchant_id

    def event_identity(self, payload, headers, raw_body, integration):
        merchant_id, updates = self._merchant_updates(payload)
        update = self._payment_update(updates) or next(
            (u for u in updates if isinstance(u, dict) and u.get("objectId")), None
        )
        if not merchant_id or not update:
            raise NormalizationError("Clover webhook has no merchant updates")
        return f"{merchant_id}:{update['objectId']}:{update.get('type')}", update.get("type")

    async def normalize(self, payload, headers, context):
        merchant_id, updates = self._merchant_updates(payload)
        update = self._payment_update(updates)
        if not update:
            return NormalizedEvent.ignored("no payment creation in update")

        payment_id = update["objectId"][2:]
        payment = await clover_service.fetch_payment(context.access_token(), merchant_id, payment_id)
        if not payment:
            raise NormalizationError(f"Could not load Clover payment {payment_id}")

        if payment.get("result") and payment["result"] != "SUCCESS":
            return NormalizedEvent.ignored(f"payment result {payment['result']}")

        return NormalizedEvent(
            kind=EventKind.PURCHASE,
            external_transaction_id=payment_id,
            customer_name=payment["customer_name"],
            raw_phone=payment["customer_phone"],
            purchase_amount=_to_amount(payment["amount"]),
            location_name="Clover",
        )


class StripeNormalizer(PayloadNormalizer):
    provider = PosProvider.STRIPE_POS

    def lookup_value(self, payload, headers):
        return payload.get("account")

    def event_identity(self, payload, headers, raw_body, integration):
        if not payload.get("id"):
            raise NormalizationError("Stripe event has no id")
        return str(payload["id"]), payload.get("type")

    async def _lookup_customer(self, context, customer_id, account):
        if not customer_id:
            return None
        return await stripe_service.fetch_customer(context.access_token(), customer_id, account)

    async def normalize(self, payload, headers, context):
        event_type = payload.get("type")
        obj = _get_path(payload, "data", "object")
        if not isinstance(obj, dict):
            raise NormalizationError("Stripe event has no data.object")
        account = payload.get("account")

        if event_type == "checkout.session.completed":
            if obj.get("mode") != "payment":
                return NormalizedEvent.ignored(f"checkout mode {obj.get('mode')}")

            details = obj.get("customer_details") or {}
            raw_phone = details.get("phone")
            customer_name = details.get("name")
            if not raw_phone:
                customer = await self._lookup_customer(context, obj.get("customer"), account)
                if customer:
                    raw_phone = customer["phone"]
                    customer_name = customer_name or customer["name"]

            # Keyed by payment intent so payment_intent.succeeded for the same sale dedupes
            return NormalizedEvent(
                kind=EventKind.PURCHASE,
                external_transaction_id=str(obj.get("payment_intent") or obj.get("id")),
                customer_name=customer_name,
                raw_phone=raw_phone,
                purchase_amount=_to_amount(obj.get("amount_total"), cents=True),
                location_name="Stripe Checkout",
            )

        if event_type == "payment_intent.succeeded":
            if not obj.get("id"):
                raise NormalizationError("Stripe payment intent has no id")

            metadata = obj.get("metadata") or {}
            raw_phone = _first(metadata, "customer_phone", "phone")
            customer_name = _first(metadata, "customer_name", "name")
            if not raw_phone:
                customer = await self._lookup_customer(context, obj.get("customer"), account)
                if customer:
                    raw_phone = customer["phone"]
                    customer_name = customer_name or customer["name"]

            is_terminal = "card_present" in (obj.get("payment_method_types") or [])
            return NormalizedEvent(
                kind=EventKind.PURCHASE,
                external_transaction_id=str(obj["id"]),
                customer_name=customer_name,
                raw_phone=raw_phone,
                purchase_amount=_to_amount(obj.get("amount_received") or obj.get("amount"), cents=True),
                location_name="Stripe Terminal" if is_terminal else "Stripe Payment",
            )

        if event_type == "charge.refunded":
            transaction_id = obj.get("payment_intent") or obj.get("id")
            if not transaction_id:
                raise NormalizationError("Stripe charge has no payment intent")
            return NormalizedEvent(kind=EventKind.REFUND, external_transaction_id=str(transaction_id))

        if event_type == "account.application.deauthorized":
            return NormalizedEvent(kind=EventKind.DISCONNECT, reason="Stripe account deauthorized")

        return NormalizedEvent.ignored(f"unhandled event type {event_type}")


class WooCommerceNormalizer(PayloadNormalizer):
    provider = PosProvider.WOOCOMMERCE

    PURCHASE_TOPICS = ("order.created", "order.completed")

    def lookup_value(self, payload, headers):
        return normalize_store_url(headers.get("x-wc-webhook-source"))

    def event_identity(self, payload, headers, raw_body, integration):
        topic = headers.get("x-wc-webhook-topic")
        if payload.get("id") is None:
            raise NormalizationError("WooCommerce webhook has no order id")
        # Order ids are per store; updates repeat the topic so they key on the new state
        event_id = f"woo_{integration.id}_{payload['id']}_{topic}"
        if topic == "order.updated":
            modified = _first(payload, "date_modified_gmt", "date_modified") or ""
            event_id = f"{event_id}_{payload.get('status')}_{modified}"
        return event_id, topic

    async def normalize(self, payload, headers, context):
        topic = headers.get("x-wc-webhook-topic")
        order_id = str(payload["id"]) if payload.get("id") is not None else None
        if not order_id:
            raise NormalizationError("WooCommerce webhook has no order id")

        if topic in self.PURCHASE_TOPICS:
            billing = payload.get("billing") or {}
            return NormalizedEvent(
                kind=EventKind.PURCHASE,
                external_transaction_id=order_id,
                customer_name=_full_name(billing.get("first_name"), billing.get("last_name")),
                raw_phone=billing.get("phone"),
                purchase_amount=_to_amount(payload.get("total")),
                location_name=context.integration.store_url or "WooCommerce",
            )

        if topic == "order.updated" and payload.get("status") == "refunded":
            return NormalizedEvent(kind=EventKind.REFUND, external_transaction_id=order_id)

        return NormalizedEvent.ignored(f"unhandled topic {topic}")


class InboundNormalizer(PayloadNormalizer):
    """Zapier and generic webhooks: flat JSON with flexible field names"""

    provider = PosProvider.GENERIC_WEBHOOK

    PHONE_FIELDS = ("customer_phone", "phone", "customerPhone", "mobile", "cell")
    NAME_FIELDS = ("customer_name", "name", "customerName")
    AMOUNT_FIELDS = ("amount", "purchase_amount", "total", "order_total", "sale_amount")
    LOCATION_FIELDS = ("location", "location_name", "store", "store_name")

    def lookup_value(self, payload, headers):
        # The URL token comes from the route path, not the payload
        return None

    def event_identity(self, payload, headers, raw_body, integration):
        event = _first(payload, "event", "type") or "transaction.created"
        kind = "refund" if str(event).lower() == "refund" else "purchase"
        external_id = _first(payload, "transaction_id", "order_id")
        if external_id is None:
            external_id = hashlib.sha256(raw_body).hexdigest()
        return f"{integration.id}:{kind}:{external_id}", event

    async def normalize(self, payload, headers, context):
        external_id = _first(payload, "transaction_id", "order_id")
        event = str(_first(payload, "event", "type") or "").lower()

        if event == "refund":
            if external_id is None:
                raise NormalizationError("Refund event requires transaction_id or order_id")
            return NormalizedEvent(kind=EventKind.REFUND, external_transaction_id=str(external_id))

        if external_id is None:
            # Same fallback as the ledger event id
            body = context.raw_body or repr(sorted(payload.items())).encode("utf-8")
            external_id = hashlib.sha256(body).hexdigest()

        customer_name = _first(payload, *self.NAME_FIELDS) or _full_name(
            payload.get("first_name"), payload.get("last_name")
        )
        raw_phone = _first(payload, *self.PHONE_FIELDS)
        location_name = _first(payload, *self.LOCATION_FIELDS)
        provider_label = "Zapier" if context.integration.provider == PosProvider.ZAPIER else "Webhook"

        return NormalizedEvent(
            kind=EventKind.PURCHASE,
            external_transaction_id=str(external_id),
            customer_name=str(customer_name) if customer_name else None,
            raw_phone=str(raw_phone) if raw_phone is not None else None,
            purchase_amount=_to_amount(_first(payload, *self.AMOUNT_FIELDS)),
            location_name=str(location_name) if location_name else f"{provider_label} Integration",
        )


class ZapierNormalizer(InboundNormalizer):
    provider = PosProvider.ZAPIER


# Provider -> normalizer instance
NORMALIZERS: Dict[str, PayloadNormalizer] = {
    normalizer.provider: normalizer
    for normalizer in (
        SquareNormalizer(),
        ShopifyNormalizer(),
        CloverNormalizer(),
        StripeNormalizer(),
        WooCommerceNormalizer(),
        ZapierNormalizer(),
        InboundNormalizer(),
    )
}


def get_normalizer(provider: str) -> PayloadNormalizer:
    normalizer = NORMALIZERS.get(provider)
    if not normalizer:
        raise NormalizationError(f"No normalizer registered for provider {provider}")
    return normalizer
