"""
Review request message templates
"""

import logging
import re
from typing import NamedTuple, Optional

from sqlalchemy.orm import Session

from ..models import User

logger = logging.getLogger(__name__)

DEFAULT_TONE = "friendly"

TONE_TEMPLATES = {
    "friendly": "Hi {first_name}! Thanks for shopping at {business_name}! "
    "We'd love to hear about your experience: {review_link}",
    "professional": "Thank you for your purchase at {business_name}. "
    "We value your feedback: {review_link}",
    "grateful": "Thank you so much for supporting {business_name}! "
    "Your review would mean the world to us: {review_link}",
}


class MessageConfig(NamedTuple):
    business_name: str
    review_link: str
    tone: str
    custom_message: Optional[str]


def get_message_config(db: Session, user_id: int) -> Optional[MessageConfig]:
    """Message settings for a tenant, or None when no review link is configured"""
    user = db.query(User).filter(User.id == user_id).first()
    if not user or not (user.review_url or "").strip():
        return None

    return MessageConfig(
        business_name=user.business_name or "our business",
        review_link=user.review_url.strip(),
        tone=user.sms_message_tone or DEFAULT_TONE,
        custom_message=user.custom_sms_message,
    )


def _replace_placeholder(template: str, name: str, value: str) -> str:
    return re.sub(r"\{\{" + name + r"\}\}", lambda _: value, template, flags=re.IGNORECASE)


def build_review_message(customer_name: Optional[str], message_config: MessageConfig) -> str:
    """
    Build the review request SMS.

    Custom templates support {{CustomerName}}, {{BusinessName}} and {{ReviewLink}}
    (case-insensitive). The review link is appended when a custom template omits it.
    """
    first_name = (customer_name or "").split(" ")[0] or "there"
    business_name = message_config.business_name
    review_link = message_config.review_link
    tone = message_config.tone
    custom_message = message_config.custom_message

    if tone == "custom" and custom_message:
        message = _replace_placeholder(custom_message, "CustomerName", first_name)
        message = _replace_placeholder(message, "BusinessName", business_name)
        message = _replace_placeholder(message, "ReviewLink", review_link)
        if review_link not in message:
            message = f"{message} {review_link}"
        return message

    template = TONE_TEMPLATES.get(tone, TONE_TEMPLATES[DEFAULT_TONE])
    return template.format(
        first_name=first_name, business_name=business_name, review_link=review_link
    )
