"""Idempotency ledger - at most one processing per (provider, event_id)"""

import logging
from typing import NamedTuple, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...models_pos import PosWebhookEvent

logger = logging.getLogger(__name__)


class LedgerEntry(NamedTuple):
    is_new: bool
    event: Optional[PosWebhookEvent] = None


class IdempotencyLedger:
    """
    Records processed webhook events.

    The insert itself is the check: the unique (provider, event_id) constraint
    makes concurrent deliveries of the same event race on the database, and
    exactly one of them commits.
    """

    @staticmethod
    def record_if_new(
        db: Session, provider: str, event_id: str, event_type: Optional[str] = None
    ) -> LedgerEntry:
        event = PosWebhookEvent(
            provider=provider,
            event_id=event_id,
            event_type=(event_type or "")[:100] or None,
        )
        db.add(event)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info(f"🔁 Duplicate {provider} event {event_id}, skipping")
            return LedgerEntry(is_new=False)

        db.refresh(event)
        return LedgerEntry(is_new=True, event=event)
