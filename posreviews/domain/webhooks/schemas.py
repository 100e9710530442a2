"""Webhook domain schemas - Pydantic models for normalized events and responses"""

from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel


class EventKind:
    PURCHASE = "purchase"
    REFUND = "refund"
    DISCONNECT = "disconnect"
    IGNORED = "ignored"


class NormalizedEvent(BaseModel):
    """Canonical transaction shape every provider payload is normalized into"""

    kind: str
    external_transaction_id: Optional[str] = None
    customer_name: Optional[str] = None
    raw_phone: Optional[str] = None
    purchase_amount: Optional[Decimal] = None
    external_location_id: Optional[str] = None
    location_name: Optional[str] = None
    reason: Optional[str] = None  # Why the event was ignored

    @classmethod
    def ignored(cls, reason: str) -> "NormalizedEvent":
        return cls(kind=EventKind.IGNORED, reason=reason)


class WebhookAck(BaseModel):
    """Response body returned to the provider"""

    received: bool = True
    status: str  # processed, duplicate, ignored, skipped, dropped
    transaction_id: Optional[int] = None
    sms_status: Optional[str] = None
    detail: Optional[str] = None
    results: Optional[List["WebhookAck"]] = None  # One ack per event in a batched delivery


class InboundTestResponse(BaseModel):
    success: bool
    provider: str
    message: str
