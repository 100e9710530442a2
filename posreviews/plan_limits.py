"""
Plan limits and utilities for the monthly review-request SMS quota.
"""

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from .models import User
from .models_pos import PosTransaction, SmsStatus

# Monthly SMS limits by plan
PLAN_SMS_LIMITS = {"trial": 50, "basic": 500, "pro": 2000, "enterprise": 10000}


def get_plan_limit(user: User) -> int:
    """Get the monthly SMS limit for a user. Per-user override wins, 0 for no plan."""
    if user.sms_usage_limit is not None:
        return user.sms_usage_limit
    if not user.plan:
        return 0  # No plan = no SMS allowed
    return PLAN_SMS_LIMITS.get(user.plan.lower(), PLAN_SMS_LIMITS["trial"])


def _calculate_next_reset_date(subscription_start: datetime, current_time: datetime) -> datetime:
    """
    Calculate the next reset date based on subscription start date.
    Reset happens every 30 days from the subscription start date.
    """
    days_since_start = (current_time - subscription_start).days
    # How many complete 30-day cycles have passed
    cycles_passed = days_since_start // 30
    # Next reset is at the start of the next cycle
    return subscription_start + timedelta(days=(cycles_passed + 1) * 30)


def check_and_reset_monthly_counter(user: User, db: Session, now: Optional[datetime] = None) -> None:
    """
    Check if the billing period has rolled over and reset the counter if needed.
    Only flushes; the caller owns the transaction (and any row lock held on the user).
    """
    now = now or datetime.utcnow()

    # Use subscription_start_date if available, otherwise fall back to created_at
    subscription_start = user.subscription_start_date or user.created_at or now

    # If no reset date set, initialize it based on subscription start
    if user.month_reset_date is None:
        user.month_reset_date = _calculate_next_reset_date(subscription_start, now)
        user.sms_usage_count = 0
        db.flush()
        return

    # Check if we've passed the reset date
    if now >= user.month_reset_date:
        user.sms_usage_count = 0
        user.month_reset_date = _calculate_next_reset_date(subscription_start, now)
        db.flush()


def count_in_flight_sms(user: User, db: Session) -> int:
    """Live review requests accepted but not yet sent (they will consume quota)"""
    return (
        db.query(PosTransaction)
        .filter(
            PosTransaction.user_id == user.id,
            PosTransaction.sms_status == SmsStatus.PENDING,
            PosTransaction.is_test_mode.is_(False),
        )
        .count()
    )


def can_send_sms(user: User, db: Session) -> tuple:
    """
    Check if user can send another review request this cycle.
    Counts recorded usage plus pending live sends.
    Returns (can_send, error_message).
    """
    if not user.plan and user.sms_usage_limit is None:
        return (False, "Please select a plan to start sending review requests.")

    check_and_reset_monthly_counter(user, db)

    limit = get_plan_limit(user)
    used = (user.sms_usage_count or 0) + count_in_flight_sms(user, db)

    if used < limit:
        return (True, None)

    return (False, f"SMS limit reached ({used}/{limit})")


def record_sms_usage(user: User, db: Session) -> None:
    """
    Increment the user's monthly SMS count.
    Called once per live review request delivered to the transport.
    """
    check_and_reset_monthly_counter(user, db)
    user.sms_usage_count = (user.sms_usage_count or 0) + 1
    db.flush()


def get_sms_usage_stats(user: User, db: Session) -> dict:
    """
    Get current usage statistics for the user.
    Returns dict with limit, current, pending, remaining, and reset_date.
    """
    check_and_reset_monthly_counter(user, db)

    limit = get_plan_limit(user)
    current = user.sms_usage_count or 0
    pending = count_in_flight_sms(user, db)

    return {
        "plan": user.plan,
        "limit": limit,
        "current": current,
        "pending": pending,
        "remaining": max(0, limit - current - pending),
        "reset_date": user.month_reset_date.isoformat() if user.month_reset_date else None,
    }
