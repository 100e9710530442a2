"""POS webhook service - Business logic from raw webhook to review request decision"""

import json
import logging
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Set, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...encryption import CredentialError, decrypt
from ...models_pos import PosIntegration, PosProvider, PosTransaction, SmsStatus
from ...security_utils import mask_phone
from ...webhook_security import WebhookSignatureError, get_app_level_secret, verify_webhook
from ...worker import enqueue_review_request
from .ledger import IdempotencyLedger
from .normalizers import (
    NormalizationContext,
    NormalizationError,
    PayloadNormalizer,
    get_normalizer,
)
from .recorder import TransactionNotFound, apply_refund, record_outcome
from .repository import PosRepository
from .rules import DROP, REVERSE, evaluate
from .schemas import EventKind, NormalizedEvent, WebhookAck

logger = logging.getLogger(__name__)


class InvalidPayloadError(Exception):
    """Body is not a JSON object, or carries no event identity"""

    pass


class IntegrationNotFound(Exception):
    pass


class PendingEvent(NamedTuple):
    """One authenticated event of a delivery, not yet in the ledger"""

    payload: Dict[str, Any]
    integration: Optional[PosIntegration]
    event_id: Optional[str]
    event_type: Optional[str]


def parse_payload(raw_body: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        raise InvalidPayloadError("Body is not valid JSON") from e
    if not isinstance(payload, dict):
        raise InvalidPayloadError("Body must be a JSON object")
    return payload


class WebhookService:
    """Service layer for POS webhook processing"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = PosRepository()
        self.ledger = IdempotencyLedger()

    async def handle_webhook(
        self,
        provider: str,
        raw_body: bytes,
        headers: Mapping[str, str],
        request_url: Optional[str] = None,
        url_token: Optional[str] = None,
    ) -> WebhookAck:
        """
        Process one webhook delivery.

        Before the ledger write, failures raise (InvalidPayloadError -> 400,
        IntegrationNotFound -> 404, WebhookSignatureError -> 401, anything else -> 500)
        so the provider retries. After it, failures are logged and acknowledged.

        A delivery that batches several events (Clover) is authenticated as a whole
        before any of its events reaches the ledger, then each event is processed
        on its own.
        """
        headers = {k.lower(): v for k, v in headers.items()}
        payload = parse_payload(raw_body)

        token_integration = None
        if url_token:
            token_integration = self._find_integration(provider, payload, headers, url_token)
            provider = token_integration.provider
        normalizer = get_normalizer(provider)

        events: List[PendingEvent] = []
        verified: Set[Optional[int]] = set()
        for event_payload in normalizer.split_events(payload):
            integration = token_integration or self._find_integration(
                provider, event_payload, headers, None
            )
            integration_id = integration.id if integration else None
            if integration_id not in verified:
                self._authenticate(provider, integration, raw_body, headers, request_url)
                verified.add(integration_id)

            event_id = event_type = None
            if integration is not None:
                try:
                    event_id, event_type = normalizer.event_identity(
                        event_payload, headers, raw_body, integration
                    )
                except NormalizationError as e:
                    raise InvalidPayloadError(str(e)) from e
            events.append(PendingEvent(event_payload, integration, event_id, event_type))

        acks = []
        for event in events:
            acks.append(await self._handle_event(provider, normalizer, event, headers, raw_body))

        if len(acks) == 1:
            return acks[0]
        processed = any(ack.status == "processed" for ack in acks)
        return WebhookAck(status="processed" if processed else acks[0].status, results=acks)

    async def inbound_test(self, url_token: str) -> PosIntegration:
        """Connectivity check for Zapier / generic webhook URLs"""
        integration = self.repo.find_integration_by_url_token(self.db, url_token)
        if not integration or not integration.is_active:
            raise IntegrationNotFound("Webhook URL not found")
        return integration

    # ------------------------------------------------------------------
    # Before the ledger
    # ------------------------------------------------------------------

    def _find_integration(
        self,
        provider: str,
        payload: Dict[str, Any],
        headers: Mapping[str, str],
        url_token: Optional[str],
    ) -> Optional[PosIntegration]:
        if url_token:
            integration = self.repo.find_integration_by_url_token(self.db, url_token)
            if not integration:
                raise IntegrationNotFound("Webhook URL not found")
            return integration

        lookup_value = get_normalizer(provider).lookup_value(payload, headers)
        integration = self.repo.find_integration(self.db, provider, lookup_value)
        if not integration and provider == PosProvider.WOOCOMMERCE:
            raise IntegrationNotFound(f"No WooCommerce integration for store {lookup_value}")
        return integration

    def _authenticate(
        self,
        provider: str,
        integration: Optional[PosIntegration],
        raw_body: bytes,
        headers: Mapping[str, str],
        request_url: Optional[str],
    ) -> None:
        if integration is None:
            # Unknown merchant: authenticate with the app-level secret
            signing_secret, api_key = get_app_level_secret(provider), None
        else:
            signing_secret, api_key = self._signing_material(integration)

        if not verify_webhook(
            provider,
            raw_body,
            headers,
            signing_secret,
            api_key=api_key,
            request_url=request_url,
        ):
            raise WebhookSignatureError(f"Invalid {provider} webhook signature")

    def _signing_material(self, integration: PosIntegration) -> Tuple[Optional[str], Optional[str]]:
        """Decrypt the webhook secret (and API key for inbound providers)"""
        try:
            signing_secret = decrypt(integration.webhook_secret_encrypted)
            api_key = (
                decrypt(integration.api_key_encrypted)
                if integration.provider in PosProvider.INBOUND
                else None
            )
        except CredentialError as e:
            self.repo.deactivate_integration(self.db, integration, "stored credentials cannot be decrypted")
            raise WebhookSignatureError("Integration credentials are invalid") from e

        if not signing_secret and integration.provider not in PosProvider.INBOUND:
            signing_secret = get_app_level_secret(integration.provider)
        return signing_secret, api_key

    # ------------------------------------------------------------------
    # After the ledger
    # ------------------------------------------------------------------

    async def _handle_event(
        self,
        provider: str,
        normalizer: PayloadNormalizer,
        event: PendingEvent,
        headers: Mapping[str, str],
        raw_body: bytes,
    ) -> WebhookAck:
        if event.integration is None:
            logger.info(f"ℹ️ No {provider} integration for this webhook, ignoring")
            return WebhookAck(status="ignored", detail="No matching integration")

        entry = self.ledger.record_if_new(self.db, provider, event.event_id, event.event_type)
        if not entry.is_new:
            return WebhookAck(status="duplicate")

        logger.info(
            f"📥 {provider} webhook {event.event_type} ({event.event_id}) "
            f"for integration {event.integration.id}"
        )
        try:
            return await self._process_event(
                event.integration, normalizer, event.payload, headers, event.event_id, raw_body
            )
        except Exception as e:
            self.db.rollback()
            logger.exception(f"❌ Failed processing {provider} event {event.event_id}: {e}")
            return WebhookAck(status="dropped", detail="Processing error")

    async def _process_event(
        self,
        integration: PosIntegration,
        normalizer: PayloadNormalizer,
        payload: Dict[str, Any],
        headers: Mapping[str, str],
        event_id: str,
        raw_body: Optional[bytes] = None,
    ) -> WebhookAck:
        if not integration.is_active:
            logger.info(f"🚫 Integration {integration.id} is inactive, dropping event {event_id}")
            return WebhookAck(status="dropped", detail="Integration is inactive")

        context = NormalizationContext(integration, event_id=event_id, raw_body=raw_body)
        try:
            event = await normalizer.normalize(payload, headers, context)
        except NormalizationError as e:
            logger.warning(f"⚠️ Could not normalize event {event_id}: {e}")
            return WebhookAck(status="ignored", detail=str(e))
        except CredentialError:
            self.repo.deactivate_integration(self.db, integration, "access token cannot be decrypted")
            return WebhookAck(status="dropped", detail="Integration credentials are invalid")

        if event.kind == EventKind.IGNORED:
            logger.info(f"ℹ️ Ignoring event {event_id}: {event.reason}")
            return WebhookAck(status="ignored", detail=event.reason)

        if event.kind == EventKind.DISCONNECT:
            self.repo.deactivate_integration(self.db, integration, event.reason or "provider disconnect")
            return WebhookAck(status="processed", detail="Integration deactivated")

        if event.kind == EventKind.REFUND:
            return self._handle_refund(integration, event)

        return await self._handle_purchase(integration, event)

    def _handle_refund(self, integration: PosIntegration, event: NormalizedEvent) -> WebhookAck:
        decision = evaluate(self.db, integration, event)
        if decision.action != REVERSE:
            self.db.commit()
            logger.info(
                f"ℹ️ Refund for {event.external_transaction_id} not applied: {decision.reason}"
            )
            return WebhookAck(status="skipped", detail=decision.reason)

        try:
            transaction = apply_refund(self.db, integration, event.external_transaction_id)
        except TransactionNotFound:
            logger.info(f"ℹ️ Refund for unknown transaction {event.external_transaction_id}")
            return WebhookAck(status="ignored", detail="No matching transaction")

        return WebhookAck(
            status="processed", transaction_id=transaction.id, sms_status=transaction.sms_status
        )

    async def _handle_purchase(self, integration: PosIntegration, event: NormalizedEvent) -> WebhookAck:
        # The same sale can arrive under several event ids (e.g. checkout + payment intent)
        existing = self.repo.find_transaction(self.db, integration.id, event.external_transaction_id)
        if existing:
            logger.info(f"🔁 Transaction {event.external_transaction_id} already recorded")
            return WebhookAck(
                status="duplicate", transaction_id=existing.id, sms_status=existing.sms_status
            )

        decision = evaluate(self.db, integration, event)
        if decision.action == DROP:
            self.db.commit()
            return WebhookAck(status="dropped", detail=decision.reason)

        transaction = PosTransaction(
            user_id=integration.user_id,
            pos_integration_id=integration.id,
            external_transaction_id=event.external_transaction_id,
            customer_name=event.customer_name,
            customer_phone=decision.phone.e164 if decision.phone else None,
            phone_confidence=decision.phone.confidence if decision.phone else None,
            purchase_amount=event.purchase_amount,
            location_name=decision.location_name,
            sms_status=decision.status,
            skip_reason=decision.reason,
            is_test_mode=bool(integration.test_mode),
        )
        self.db.add(transaction)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"🔁 Transaction {event.external_transaction_id} recorded concurrently")
            return WebhookAck(status="duplicate")
        self.db.refresh(transaction)

        if decision.phone and decision.phone.flagged:
            logger.warning(
                f"⚠️ Transaction {transaction.id}: phone {mask_phone(decision.phone.e164)} "
                f"has {decision.phone.confidence} confidence"
            )

        if decision.should_dispatch:
            try:
                await enqueue_review_request(
                    transaction.id, decision.target_phone, transaction.is_test_mode
                )
            except Exception as e:
                logger.error(f"❌ Failed to queue review request for transaction {transaction.id}: {e}")
                record_outcome(
                    self.db, transaction, SmsStatus.FAILED, reason="Could not queue review request"
                )
                self.db.commit()

        logger.info(f"✅ Transaction {transaction.id} recorded as {transaction.sms_status}")
        return WebhookAck(
            status="processed" if decision.should_dispatch else "skipped",
            transaction_id=transaction.id,
            sms_status=transaction.sms_status,
        )
