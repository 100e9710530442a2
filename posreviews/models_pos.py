"""
POS Integration Models
Database models for POS/e-commerce integrations, their locations,
purchase transactions and processed webhook events
"""

from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .database import Base


class PosProvider:
    """Supported webhook providers"""

    SQUARE = "square"
    SHOPIFY = "shopify"
    CLOVER = "clover"
    STRIPE_POS = "stripe_pos"
    WOOCOMMERCE = "woocommerce"
    ZAPIER = "zapier"
    GENERIC_WEBHOOK = "generic_webhook"

    ALL = (SQUARE, SHOPIFY, CLOVER, STRIPE_POS, WOOCOMMERCE, ZAPIER, GENERIC_WEBHOOK)
    # Providers that authenticate with a generated URL token + API key
    INBOUND = (ZAPIER, GENERIC_WEBHOOK)


class SmsStatus:
    """Review request status of a POS transaction"""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED_NO_PHONE = "skipped_no_phone"
    SKIPPED_RECENT = "skipped_recent"
    SKIPPED_NO_REVIEW_LINK = "skipped_no_review_link"
    SKIPPED_LIMIT_REACHED = "skipped_limit_reached"
    SKIPPED_TEST_MODE = "skipped_test_mode"
    SKIPPED_NO_CONSENT = "skipped_no_consent"
    SKIPPED_LOCATION_DISABLED = "skipped_location_disabled"
    SKIPPED_REFUNDED = "skipped_refunded"

    LABELS = {
        PENDING: "Pending",
        SENT: "Sent",
        FAILED: "Failed",
        SKIPPED_NO_PHONE: "Skipped - No Phone",
        SKIPPED_RECENT: "Skipped - Recent Contact",
        SKIPPED_NO_REVIEW_LINK: "Skipped - No Review Link",
        SKIPPED_LIMIT_REACHED: "Skipped - SMS Limit",
        SKIPPED_TEST_MODE: "Skipped - Test Mode",
        SKIPPED_NO_CONSENT: "Skipped - No Consent",
        SKIPPED_LOCATION_DISABLED: "Skipped - Location Disabled",
        SKIPPED_REFUNDED: "Skipped - Refunded",
    }

    # Statuses that count as a contact for the recent-contact window
    CONTACTED = (PENDING, SENT)


class PosIntegration(Base):
    """Store POS credentials and review request settings (one per user and provider)"""

    __tablename__ = "pos_integrations"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="pos_integrations_user_provider_unique"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    provider = Column(String(32), nullable=False)

    # Provider account identifiers
    merchant_id = Column(String(255), nullable=True, index=True)  # Square, Clover, Stripe account
    shop_domain = Column(String(255), nullable=True, index=True)  # store.myshopify.com
    store_url = Column(String(255), nullable=True)  # WooCommerce store URL

    # OAuth credentials (encrypted)
    access_token_encrypted = Column(Text, nullable=True)
    refresh_token_encrypted = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)

    # Webhook authentication (encrypted)
    webhook_secret_encrypted = Column(Text, nullable=True)
    api_key_encrypted = Column(Text, nullable=True)  # Zapier / generic webhook
    webhook_url_token = Column(String(64), nullable=True, unique=True)  # Zapier / generic webhook

    # Settings
    is_active = Column(Boolean, default=True, nullable=False)
    test_mode = Column(Boolean, default=True, nullable=False)
    test_phone_number = Column(String(20), nullable=True)
    consent_confirmed = Column(Boolean, default=False, nullable=False)

    connected_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    user = relationship("User", back_populates="pos_integrations")
    locations = relationship("PosLocation", back_populates="integration")


class PosLocation(Base):
    """Physical site of a POS integration; review requests are opt-in per location"""

    __tablename__ = "pos_locations"
    __table_args__ = (
        UniqueConstraint(
            "pos_integration_id", "external_location_id", name="pos_locations_integration_unique"
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    pos_integration_id = Column(Integer, ForeignKey("pos_integrations.id"), nullable=False)
    external_location_id = Column(String(255), nullable=False)
    location_name = Column(String(255), nullable=True)
    is_enabled = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)

    integration = relationship("PosIntegration", back_populates="locations")


class PosTransaction(Base):
    """Log every POS purchase and its review request status"""

    __tablename__ = "pos_transactions"
    __table_args__ = (
        UniqueConstraint(
            "pos_integration_id",
            "external_transaction_id",
            name="pos_transactions_integration_external_unique",
        ),
        Index("pos_transactions_recent_contact", "user_id", "customer_phone", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    pos_integration_id = Column(Integer, ForeignKey("pos_integrations.id"), nullable=False)

    # Purchase details
    external_transaction_id = Column(String(255), nullable=False)  # Payment ID, order ID, ...
    customer_name = Column(String(255), nullable=True)
    customer_phone = Column(String(20), nullable=True)  # E.164
    phone_confidence = Column(String(10), nullable=True)  # high, medium
    purchase_amount = Column(Numeric(10, 2), nullable=True)
    location_name = Column(String(255), nullable=True)

    # Review request status
    sms_status = Column(String(40), nullable=False, default=SmsStatus.PENDING)
    skip_reason = Column(String(500), nullable=True)
    is_test_mode = Column(Boolean, default=False, nullable=False)
    message_sid = Column(String(64), nullable=True)  # Transport message id, kept for audit
    sms_sent_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    integration = relationship("PosIntegration")

    @property
    def status_label(self) -> str:
        return SmsStatus.LABELS.get(self.sms_status, self.sms_status)


class PosWebhookEvent(Base):
    """Processed webhook events (idempotency ledger)"""

    __tablename__ = "pos_webhook_events"
    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="pos_webhook_events_provider_event_unique"),
    )

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(32), nullable=False)
    event_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=True)
    processed_at = Column(DateTime, default=datetime.utcnow, nullable=False)
