"""
Review request rules.

RULES is an ordered list of steps; the first step whose predicate fails decides
the outcome. Predicates may resolve data later steps use (location, canonical
phone, tenant row lock), so the order matters.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, NamedTuple, Optional, Union

from sqlalchemy.orm import Session

from ... import config
from ...models import User
from ...models_pos import PosIntegration, PosLocation, SmsStatus
from ...plan_limits import can_send_sms
from ...services.review_messages import MessageConfig, get_message_config
from ...shared.validators import CanonicalPhone, canonicalize_phone
from .repository import PosRepository
from .schemas import EventKind, NormalizedEvent

logger = logging.getLogger(__name__)

# Outcomes that are not a transaction status
DROP = "drop"  # No transaction is recorded
REVERSE = "reverse"  # Refund: apply to the existing transaction
RECORD = "record"  # Insert a transaction with the decided status


class RuleContext:
    """State shared by the rule steps for one event"""

    def __init__(
        self,
        db: Session,
        integration: PosIntegration,
        event: NormalizedEvent,
        now: Optional[datetime] = None,
    ):
        self.db = db
        self.integration = integration
        self.event = event
        self.now = now or datetime.utcnow()
        self.repo = PosRepository()

        self.location: Optional[PosLocation] = None
        self.location_name: Optional[str] = event.location_name
        self.phone: Optional[CanonicalPhone] = None
        self.user: Optional[User] = None
        self.limit_message: Optional[str] = None
        self.message_config: Optional[MessageConfig] = None
        self.target_phone: Optional[str] = None

    def lock_tenant(self) -> User:
        """SELECT ... FOR UPDATE on the tenant; held until the caller commits"""
        if self.user is None:
            self.user = self.repo.lock_user(self.db, self.integration.user_id)
        return self.user


class RuleStep(NamedTuple):
    name: str
    predicate: Callable[[RuleContext], bool]
    status: str
    reason: Union[str, Callable[[RuleContext], str]]


class Decision(NamedTuple):
    action: str  # DROP, REVERSE or RECORD
    status: Optional[str] = None
    reason: Optional[str] = None
    step: Optional[str] = None
    phone: Optional[CanonicalPhone] = None
    target_phone: Optional[str] = None
    location_name: Optional[str] = None
    message_config: Optional[MessageConfig] = None

    @property
    def should_dispatch(self) -> bool:
        return self.action == RECORD and self.status == SmsStatus.PENDING


def _integration_active(ctx: RuleContext) -> bool:
    return bool(ctx.integration.is_active)


def _consent_confirmed(ctx: RuleContext) -> bool:
    return bool(ctx.integration.consent_confirmed)


def _not_refund(ctx: RuleContext) -> bool:
    return ctx.event.kind != EventKind.REFUND


def _location_enabled(ctx: RuleContext) -> bool:
    # Events without a location id (online stores, inbound webhooks) are not location-gated
    if not ctx.event.external_location_id:
        return True

    ctx.location = ctx.repo.get_or_register_location(
        ctx.db, ctx.integration, ctx.event.external_location_id, ctx.event.location_name
    )
    ctx.location_name = ctx.location.location_name or ctx.location_name
    return bool(ctx.location.is_enabled)


def _has_phone(ctx: RuleContext) -> bool:
    ctx.phone = canonicalize_phone(ctx.event.raw_phone)
    return ctx.phone is not None


def _not_recently_contacted(ctx: RuleContext) -> bool:
    ctx.lock_tenant()
    since = ctx.now - timedelta(days=config.RECENT_CONTACT_DAYS)
    return not ctx.repo.has_recent_contact(
        ctx.db, ctx.integration.user_id, ctx.phone.e164, since
    )


def _within_quota(ctx: RuleContext) -> bool:
    # Test sends go to the merchant's own number and do not consume quota
    if ctx.integration.test_mode:
        return True

    user = ctx.lock_tenant()
    if user is None:
        ctx.limit_message = "Tenant not found"
        return False

    allowed, ctx.limit_message = can_send_sms(user, ctx.db)
    return allowed


def _has_review_link(ctx: RuleContext) -> bool:
    ctx.message_config = get_message_config(ctx.db, ctx.integration.user_id)
    return ctx.message_config is not None


def _test_target_resolved(ctx: RuleContext) -> bool:
    if not ctx.integration.test_mode:
        ctx.target_phone = ctx.phone.e164
        return True

    test_phone = canonicalize_phone(ctx.integration.test_phone_number)
    if test_phone is None:
        return False
    ctx.target_phone = test_phone.e164
    return True


RULES = [
    RuleStep("integration_active", _integration_active, DROP, "Integration is inactive"),
    RuleStep(
        "consent_confirmed",
        _consent_confirmed,
        SmsStatus.SKIPPED_NO_CONSENT,
        "SMS consent has not been confirmed for this integration",
    ),
    RuleStep("purchase_event", _not_refund, REVERSE, "Refund event"),
    RuleStep(
        "location_enabled",
        _location_enabled,
        SmsStatus.SKIPPED_LOCATION_DISABLED,
        lambda ctx: f"Location {ctx.event.external_location_id} is not enabled",
    ),
    RuleStep("has_phone", _has_phone, SmsStatus.SKIPPED_NO_PHONE, "No valid customer phone number"),
    RuleStep(
        "not_recently_contacted",
        _not_recently_contacted,
        SmsStatus.SKIPPED_RECENT,
        lambda ctx: f"Customer contacted in the last {config.RECENT_CONTACT_DAYS} days",
    ),
    RuleStep(
        "within_quota",
        _within_quota,
        SmsStatus.SKIPPED_LIMIT_REACHED,
        lambda ctx: ctx.limit_message or "SMS limit reached",
    ),
    RuleStep(
        "has_review_link",
        _has_review_link,
        SmsStatus.SKIPPED_NO_REVIEW_LINK,
        "No review link configured",
    ),
    RuleStep(
        "test_target_resolved",
        _test_target_resolved,
        SmsStatus.SKIPPED_TEST_MODE,
        "Test mode is on but no valid test phone number is configured",
    ),
]


def evaluate(
    db: Session,
    integration: PosIntegration,
    event: NormalizedEvent,
    now: Optional[datetime] = None,
) -> Decision:
    """
    Run the rules for a purchase or refund event.

    The tenant row may be locked during evaluation; the caller must insert the
    transaction and commit in the same unit of work.
    """
    ctx = RuleContext(db, integration, event, now=now)

    for step in RULES:
        if step.predicate(ctx):
            continue

        reason = step.reason(ctx) if callable(step.reason) else step.reason
        if step.status == DROP:
            logger.info(f"🚫 Dropping event for integration {integration.id}: {reason}")
            return Decision(action=DROP, reason=reason, step=step.name)
        if step.status == REVERSE:
            return Decision(action=REVERSE, step=step.name)

        logger.info(
            f"⏭️ Review request skipped for integration {integration.id} "
            f"({step.name}): {reason}"
        )
        return Decision(
            action=RECORD,
            status=step.status,
            reason=reason,
            step=step.name,
            phone=ctx.phone,
            location_name=ctx.location_name,
        )

    return Decision(
        action=RECORD,
        status=SmsStatus.PENDING,
        phone=ctx.phone,
        target_phone=ctx.target_phone,
        location_name=ctx.location_name,
        message_config=ctx.message_config,
    )
