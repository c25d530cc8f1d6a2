"""Subscription lifecycle: trial and freemium signup, trial expiry and purchased credits."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional

from src.billing.plans import get_plan_limits
from src.billing.quota import SUBSCRIPTION_ACTIVE, SUBSCRIPTION_TRIALING, TIER_FREEMIUM
from src.core.config import get_settings
from src.core.errors import Conflict, NotFound, ValidationError
from src.core.logger import get_logger
from src.core.timeutils import utc_now
from src.storage.models import Subscription
from src.storage.repository import ContentRepository


logger = get_logger("postpilot.billing.subscriptions")

TIER_TRIAL = "trial"


def _ensure_user(repo: ContentRepository, user_id: str) -> None:
    if repo.find_user(user_id) is None:
        raise NotFound("User not found", details={"user_id": user_id})


def start_trial(repo: ContentRepository, *, user_id: str, now: Optional[datetime] = None) -> Subscription:
    _ensure_user(repo, user_id)
    if repo.find_subscription(user_id) is not None:
        raise Conflict("User already has a subscription", details={"user_id": user_id})

    reference = now or utc_now()
    limits = get_plan_limits(TIER_TRIAL)
    trial_end = reference + timedelta(days=get_settings().trial_days)
    subscription = repo.insert_subscription(
        user_id=user_id,
        subscription_tier=TIER_TRIAL,
        subscription_status=SUBSCRIPTION_TRIALING,
        current_period_start=reference,
        current_period_end=trial_end,
        max_clients=limits.max_clients,
        max_posts_per_month=limits.max_posts_per_month,
        max_ai_credits_per_month=limits.max_ai_credits_per_month,
        usage_reset_date=reference,
    )
    repo.commit()
    logger.info("subscription_trial_started", user_id=user_id, trial_ends_at=trial_end.isoformat())
    return subscription


def start_freemium(repo: ContentRepository, *, user_id: str, now: Optional[datetime] = None) -> Subscription:
    _ensure_user(repo, user_id)
    if repo.find_subscription(user_id) is not None:
        raise Conflict("User already has a subscription", details={"user_id": user_id})

    reference = now or utc_now()
    limits = get_plan_limits(TIER_FREEMIUM)
    subscription = repo.insert_subscription(
        user_id=user_id,
        subscription_tier=TIER_FREEMIUM,
        subscription_status=SUBSCRIPTION_ACTIVE,
        current_period_start=reference,
        max_clients=limits.max_clients,
        max_posts_per_month=limits.max_posts_per_month,
        max_ai_credits_per_month=limits.max_ai_credits_per_month,
        usage_reset_date=reference,
    )
    repo.commit()
    logger.info("subscription_freemium_started", user_id=user_id)
    return subscription


def expire_trials(repo: ContentRepository, *, now: Optional[datetime] = None) -> List[str]:
    """Downgrade every trial whose period has ended to the freemium tier."""

    reference = now or utc_now()
    limits = get_plan_limits(TIER_FREEMIUM)
    expired = repo.list_subscriptions(
        conditions=[
            Subscription.subscription_status == SUBSCRIPTION_TRIALING,
            Subscription.current_period_end.is_not(None),
            Subscription.current_period_end <= reference,
        ]
    )

    downgraded: List[str] = []
    for subscription in expired:
        repo.update_subscription(
            subscription.user_id,
            {
                "subscription_tier": TIER_FREEMIUM,
                "subscription_status": SUBSCRIPTION_ACTIVE,
                "current_period_start": reference,
                "current_period_end": None,
                "max_clients": limits.max_clients,
                "max_posts_per_month": limits.max_posts_per_month,
                "max_ai_credits_per_month": limits.max_ai_credits_per_month,
            },
            conditions=[Subscription.subscription_status == SUBSCRIPTION_TRIALING],
        )
        downgraded.append(subscription.user_id)
    repo.commit()
    logger.info("subscription_trials_expired", count=len(downgraded))
    return downgraded


def add_purchased_credits(repo: ContentRepository, *, user_id: str, credits: int) -> int:
    if credits <= 0:
        raise ValidationError("Credits must be positive", details={"credits": credits})
    _ensure_user(repo, user_id)
    balance = repo.add_purchased_credits(user_id, credits)
    repo.commit()
    logger.info("subscription_credits_purchased", user_id=user_id, credits=credits, balance=balance)
    return balance
