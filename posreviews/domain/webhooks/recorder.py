"""Dispatch recorder - the only place a transaction's SMS status changes after creation"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...models_pos import PosIntegration, PosTransaction, SmsStatus
from .repository import PosRepository

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    SmsStatus.PENDING: {SmsStatus.SENT, SmsStatus.FAILED, SmsStatus.SKIPPED_REFUNDED},
    # Audit marker only, the message is not retracted
    SmsStatus.SENT: {SmsStatus.SKIPPED_REFUNDED},
}


class TransactionNotFound(Exception):
    """Raised when a refund references a transaction this integration never recorded"""

    pass


class InvalidStatusTransition(Exception):
    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot move transaction from {current} to {requested}")
        self.current = current
        self.requested = requested


def can_transition(current: str, requested: str) -> bool:
    return requested in ALLOWED_TRANSITIONS.get(current, set())


def record_outcome(
    db: Session,
    transaction: PosTransaction,
    status: str,
    reason: Optional[str] = None,
    message_id: Optional[str] = None,
) -> PosTransaction:
    """
    Move a transaction to a new SMS status. Flushes only; the caller commits.

    Raises:
        InvalidStatusTransition: the transition is not allowed
    """
    current = transaction.sms_status
    if not can_transition(current, status):
        raise InvalidStatusTransition(current, status)

    transaction.sms_status = status
    if reason is not None:
        transaction.skip_reason = reason[:500]

    if status == SmsStatus.SENT:
        transaction.message_sid = message_id
        transaction.sms_sent_at = datetime.utcnow()
    elif status == SmsStatus.SKIPPED_REFUNDED:
        transaction.refunded_at = datetime.utcnow()

    db.flush()
    logger.info(f"📝 Transaction {transaction.id}: {current} -> {status}")
    return transaction


def record_dispatch(db: Session, transaction: PosTransaction, message_id: str) -> PosTransaction:
    """
    Record a delivered review request. Flushes only; the caller commits.

    A row refunded while the message was in flight keeps skipped_refunded and
    only gets the message id and send time.
    """
    if transaction.sms_status != SmsStatus.SKIPPED_REFUNDED:
        return record_outcome(db, transaction, SmsStatus.SENT, message_id=message_id)

    transaction.message_sid = message_id
    transaction.sms_sent_at = datetime.utcnow()
    transaction.skip_reason = "Order was refunded while the review request was being sent"
    db.flush()
    logger.info(f"📝 Transaction {transaction.id}: sent after refund, kept {transaction.sms_status}")
    return transaction


def record_dispatch_failure(db: Session, transaction: PosTransaction, reason: str) -> PosTransaction:
    """Mark a pending request failed; a row refunded meanwhile is left alone"""
    if transaction.sms_status != SmsStatus.PENDING:
        logger.info(
            f"ℹ️ Send for transaction {transaction.id} failed after it became {transaction.sms_status}"
        )
        return transaction
    return record_outcome(db, transaction, SmsStatus.FAILED, reason=reason)


def apply_refund(
    db: Session, integration: PosIntegration, external_transaction_id: str
) -> PosTransaction:
    """
    Mark the transaction a refund refers to.

    A pending request is cancelled (the queued job sees a non-pending row and does
    not send). A sent request gets an audit marker. Other statuses are left alone.

    Raises:
        TransactionNotFound: no transaction with that external id for the integration
    """
    transaction = PosRepository.find_transaction(
        db, integration.id, external_transaction_id, for_update=True
    )
    if not transaction:
        raise TransactionNotFound(
            f"No transaction {external_transaction_id} for integration {integration.id}"
        )

    if not can_transition(transaction.sms_status, SmsStatus.SKIPPED_REFUNDED):
        logger.info(
            f"ℹ️ Refund for transaction {transaction.id} ignored (status {transaction.sms_status})"
        )
        return transaction

    reason = (
        "Order was refunded before the review request was sent"
        if transaction.sms_status == SmsStatus.PENDING
        else "Order was refunded after the review request was sent"
    )
    record_outcome(db, transaction, SmsStatus.SKIPPED_REFUNDED, reason=reason)
    db.commit()
    return transaction
