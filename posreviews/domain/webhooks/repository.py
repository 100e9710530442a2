"""POS webhook repository - Database operations for integrations, locations and transactions"""

import logging
from datetime import datetime
from typing import NamedTuple, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...encryption import encrypt
from ...models import User
from ...models_pos import PosIntegration, PosLocation, PosProvider, PosTransaction, SmsStatus
from ...security_utils import generate_webhook_credentials
from ...shared.validators import validate_us_phone

logger = logging.getLogger(__name__)


class InboundIntegrationSetup(NamedTuple):
    """Returned once at creation; the plaintext key and secret are not retrievable later"""

    integration: PosIntegration
    api_key: str
    webhook_secret: str
    url_token: str


class PosRepository:
    """Repository for POS integration database operations"""

    # ------------------------------------------------------------------
    # Integrations
    # ------------------------------------------------------------------

    @staticmethod
    def find_integration(db: Session, provider: str, lookup_value: str) -> Optional[PosIntegration]:
        """
        Find the integration a webhook belongs to, active or not.
        Inactive integrations are returned so the pipeline can log and drop their events.
        """
        if not lookup_value:
            return None

        query = db.query(PosIntegration)
        if provider in PosProvider.INBOUND:
            return query.filter(
                PosIntegration.provider.in_(PosProvider.INBOUND),
                PosIntegration.webhook_url_token == lookup_value,
            ).first()

        query = query.filter(PosIntegration.provider == provider)
        if provider == PosProvider.SHOPIFY:
            return query.filter(PosIntegration.shop_domain == lookup_value.lower()).first()
        if provider == PosProvider.WOOCOMMERCE:
            # Stores are registered with or without "www."
            candidates = {
                lookup_value,
                lookup_value.replace("https://www.", "https://"),
                lookup_value.replace("https://", "https://www.", 1),
            }
            return query.filter(PosIntegration.store_url.in_(candidates)).first()
        return query.filter(PosIntegration.merchant_id == lookup_value).first()

    @staticmethod
    def find_integration_by_url_token(db: Session, url_token: str) -> Optional[PosIntegration]:
        return (
            db.query(PosIntegration)
            .filter(
                PosIntegration.provider.in_(PosProvider.INBOUND),
                PosIntegration.webhook_url_token == url_token,
            )
            .first()
        )

    @staticmethod
    def deactivate_integration(db: Session, integration: PosIntegration, reason: str) -> None:
        integration.is_active = False
        integration.updated_at = datetime.utcnow()
        db.commit()
        logger.warning(
            f"⛔ Deactivated {integration.provider} integration {integration.id} "
            f"for user {integration.user_id}: {reason}"
        )

    @staticmethod
    def create_inbound_integration(
        db: Session,
        user: User,
        provider: str = PosProvider.GENERIC_WEBHOOK,
        test_mode: bool = True,
        test_phone_number: Optional[str] = None,
    ) -> InboundIntegrationSetup:
        """Create a Zapier / generic webhook integration with freshly generated credentials"""
        if provider not in PosProvider.INBOUND:
            raise ValueError(f"{provider} is not an inbound webhook provider")

        credentials = generate_webhook_credentials()
        integration = PosIntegration(
            user_id=user.id,
            provider=provider,
            api_key_encrypted=encrypt(credentials.api_key),
            webhook_secret_encrypted=encrypt(credentials.webhook_secret),
            webhook_url_token=credentials.url_token,
            is_active=True,
            test_mode=test_mode,
            test_phone_number=validate_us_phone(test_phone_number),
        )
        db.add(integration)
        db.commit()
        db.refresh(integration)

        logger.info(f"✅ Created {provider} integration {integration.id} for user {user.id}")
        return InboundIntegrationSetup(
            integration=integration,
            api_key=credentials.api_key,
            webhook_secret=credentials.webhook_secret,
            url_token=credentials.url_token,
        )

    # ------------------------------------------------------------------
    # Locations
    # ------------------------------------------------------------------

    @staticmethod
    def get_or_register_location(
        db: Session,
        integration: PosIntegration,
        external_location_id: str,
        location_name: Optional[str] = None,
    ) -> PosLocation:
        """Return the location, registering unseen ones as disabled so the tenant can opt in"""
        location = (
            db.query(PosLocation)
            .filter(
                PosLocation.pos_integration_id == integration.id,
                PosLocation.external_location_id == external_location_id,
            )
            .first()
        )
        if location:
            return location

        location = PosLocation(
            pos_integration_id=integration.id,
            external_location_id=external_location_id,
            location_name=location_name,
            is_enabled=False,
        )
        db.add(location)
        try:
            with db.begin_nested():
                db.flush()
        except IntegrityError:
            # Registered concurrently by another delivery
            return (
                db.query(PosLocation)
                .filter(
                    PosLocation.pos_integration_id == integration.id,
                    PosLocation.external_location_id == external_location_id,
                )
                .one()
            )

        logger.info(
            f"📍 Registered new location {external_location_id} for integration {integration.id} (disabled)"
        )
        return location

    @staticmethod
    def set_location_enabled(
        db: Session, integration: PosIntegration, external_location_id: str, enabled: bool
    ) -> Optional[PosLocation]:
        location = (
            db.query(PosLocation)
            .filter(
                PosLocation.pos_integration_id == integration.id,
                PosLocation.external_location_id == external_location_id,
            )
            .first()
        )
        if not location:
            return None
        location.is_enabled = enabled
        db.commit()
        return location

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @staticmethod
    def find_transaction(
        db: Session, integration_id: int, external_transaction_id: str, for_update: bool = False
    ) -> Optional[PosTransaction]:
        query = db.query(PosTransaction).filter(
            PosTransaction.pos_integration_id == integration_id,
            PosTransaction.external_transaction_id == external_transaction_id,
        )
        if for_update:
            query = query.with_for_update()
        return query.first()

    @staticmethod
    def get_transaction_for_update(db: Session, transaction_id: int) -> Optional[PosTransaction]:
        return (
            db.query(PosTransaction)
            .filter(PosTransaction.id == transaction_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    @staticmethod
    def has_recent_contact(db: Session, user_id: int, phone: str, since: datetime) -> bool:
        """Any live pending/sent review request to this phone for this tenant since the cutoff"""
        return (
            db.query(PosTransaction.id)
            .filter(
                PosTransaction.user_id == user_id,
                PosTransaction.customer_phone == phone,
                PosTransaction.sms_status.in_(SmsStatus.CONTACTED),
                PosTransaction.is_test_mode.is_(False),
                PosTransaction.created_at >= since,
            )
            .first()
            is not None
        )

    @staticmethod
    def lock_user(db: Session, user_id: int) -> Optional[User]:
        return (
            db.query(User)
            .filter(User.id == user_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
