from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class User(Base):
    """Merchant account (tenant) that receives review requests"""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    business_name = Column(String(255), nullable=True)

    # Review request settings
    review_url = Column(String(500), nullable=True)  # Google/Yelp/etc. review link
    sms_message_tone = Column(
        String(20), default="friendly", nullable=True
    )  # friendly, professional, grateful, custom
    custom_sms_message = Column(Text, nullable=True)  # Used when tone is "custom"

    # Plan and SMS quota
    plan = Column(String(50), nullable=True)  # trial, basic, pro, enterprise - null until selected
    subscription_status = Column(
        String(50), default="active", nullable=True
    )  # trial, active, past_due, cancelled
    subscription_start_date = Column(
        DateTime, nullable=True
    )  # When subscription started (for the 30-day usage cycle)
    sms_usage_count = Column(Integer, default=0, nullable=False)  # Live SMS sent this cycle
    sms_usage_limit = Column(
        Integer, nullable=True
    )  # Per-tenant override; falls back to the plan limit when null
    month_reset_date = Column(DateTime, nullable=True)  # When to reset the usage counter

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    pos_integrations = relationship("PosIntegration", back_populates="user")
