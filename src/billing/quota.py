"""Quota gate: authorize metered actions against subscription allowances and record usage.

Three resource kinds are metered. AI credits draw from a non-expiring
purchased pool before the monthly allowance; posts and clients are plain
counters against their plan limits. A limit of -1 means unlimited.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from src.auth.jwt import AuthContext, decode_access_token
from src.billing.plans import is_unlimited
from src.core.errors import NotFound, QuotaExceeded, SubscriptionInactive, Unauthenticated, ValidationError
from src.core.logger import get_logger
from src.core.metrics import record_quota_block, record_usage_failure
from src.core.timeutils import normalize_optional_dt, utc_now
from src.storage.models import Subscription
from src.storage.repository import ContentRepository


logger = get_logger("postpilot.billing.quota")

T = TypeVar("T")

KIND_AI_CREDITS = "ai_credits"
KIND_POSTS = "posts"
KIND_CLIENTS = "clients"
QUOTA_KINDS = (KIND_AI_CREDITS, KIND_POSTS, KIND_CLIENTS)

SUBSCRIPTION_ACTIVE = "active"
SUBSCRIPTION_TRIALING = "trialing"
TIER_FREEMIUM = "freemium"

CREDIT_TYPE_PURCHASED = "purchased"
CREDIT_TYPE_MONTHLY = "monthly"

REASON_NO_SUBSCRIPTION = "no_subscription"
REASON_SUBSCRIPTION_INACTIVE = "subscription_inactive"
REASON_TRIAL_EXPIRED = "trial_expired"
REASON_PLAN_EXCLUDES_POSTS = "plan_excludes_posts"
REASON_LIMIT_REACHED = "limit_reached"
REASON_INSUFFICIENT_CREDITS = "insufficient_credits"

_INACTIVE_REASONS = frozenset({REASON_NO_SUBSCRIPTION, REASON_SUBSCRIPTION_INACTIVE, REASON_TRIAL_EXPIRED})
_CONSUME_ATTEMPTS = 3

_BLOCK_MESSAGES = {
    REASON_NO_SUBSCRIPTION: "No active subscription found",
    REASON_SUBSCRIPTION_INACTIVE: "Your subscription is not active",
    REASON_TRIAL_EXPIRED: "Your trial has ended",
    REASON_PLAN_EXCLUDES_POSTS: "Your plan does not include social media posting. Please upgrade your plan.",
    REASON_LIMIT_REACHED: "You have reached your plan limit. Please upgrade your plan.",
    REASON_INSUFFICIENT_CREDITS: "Insufficient AI credits",
}


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    actor_id: str
    kind: str
    reason: Optional[str] = None
    available: Optional[int] = None
    required: int = 0
    limit: Optional[int] = None
    used: Optional[int] = None

    @property
    def shortfall(self) -> int:
        if self.allowed or self.available is None:
            return 0
        return max(self.required - self.available, 0)


@dataclass(frozen=True)
class CreditBalance:
    actor_id: str
    purchased: int
    monthly_limit: Optional[int] = None
    monthly_used: Optional[int] = None
    unlimited: bool = False
    available: Optional[int] = None


def _add_month(value: datetime) -> datetime:
    year = value.year + (1 if value.month == 12 else 0)
    month = 1 if value.month == 12 else value.month + 1
    day = min(value.day, 28)
    return value.replace(year=year, month=month, day=day)


def current_period_start(anchor: datetime, now: datetime) -> datetime:
    """Latest monthly boundary at or before ``now`` counted from ``anchor``."""

    start = anchor
    following = _add_month(start)
    while following <= now:
        start = following
        following = _add_month(start)
    return start


def inactive_reason(subscription: Subscription, *, now: datetime) -> Optional[str]:
    status = subscription.subscription_status
    if status == SUBSCRIPTION_TRIALING:
        period_end = normalize_optional_dt(subscription.current_period_end)
        if period_end is not None and period_end <= now:
            return REASON_TRIAL_EXPIRED
        return None
    if status == SUBSCRIPTION_ACTIVE:
        return None
    return REASON_SUBSCRIPTION_INACTIVE


class QuotaGate:
    def __init__(
        self,
        repository: ContentRepository,
        *,
        token_decoder: Callable[[str], AuthContext] = decode_access_token,
    ) -> None:
        self._repository = repository
        self._token_decoder = token_decoder

    def resolve_actor(self, token: Optional[str]) -> str:
        if not token:
            raise Unauthenticated("Authentication required")
        context = self._token_decoder(token)
        user = self._repository.find_user(context.user_id)
        if user is None or not user.is_active:
            raise Unauthenticated("Unknown or inactive user")
        return user.id

    def _load_subscription(self, actor_id: str, *, now: datetime) -> Optional[Subscription]:
        subscription = self._repository.find_subscription(actor_id)
        if subscription is None:
            return None

        anchor = normalize_optional_dt(subscription.usage_reset_date)
        if anchor is None:
            return subscription
        period_start = current_period_start(anchor, now)
        if period_start == anchor:
            return subscription

        # conditional on the old anchor so concurrent requests reset only once
        try:
            subscription = self._repository.update_subscription(
                actor_id,
                {
                    "posts_used_this_month": 0,
                    "ai_credits_used_this_month": 0,
                    "usage_reset_date": period_start,
                },
                conditions=[Subscription.usage_reset_date == subscription.usage_reset_date],
            )
            self._repository.commit()
            logger.info("quota_monthly_usage_reset", actor_id=actor_id, period_start=period_start.isoformat())
        except (SQLAlchemyError, NotFound):
            self._repository.rollback()
            subscription = self._repository.find_subscription(actor_id)
        return subscription

    def evaluate(
        self,
        actor_id: str,
        kind: str,
        amount: int = 1,
        *,
        now: datetime | None = None,
    ) -> QuotaDecision:
        """Return the quota decision without raising for blocked actions."""

        if kind not in QUOTA_KINDS:
            raise ValidationError(f"Unknown quota kind: {kind}", details={"allowed": list(QUOTA_KINDS)})
        if amount <= 0:
            raise ValidationError("Amount must be positive", details={"amount": amount})

        reference = now or utc_now()
        subscription = self._load_subscription(actor_id, now=reference)

        if kind == KIND_AI_CREDITS:
            return self._evaluate_ai_credits(actor_id, subscription, amount, now=reference)

        if subscription is None:
            return QuotaDecision(False, actor_id, kind, reason=REASON_NO_SUBSCRIPTION, required=amount)
        reason = inactive_reason(subscription, now=reference)
        if reason is not None:
            return QuotaDecision(False, actor_id, kind, reason=reason, required=amount)

        if kind == KIND_POSTS:
            limit = int(subscription.max_posts_per_month)
            used = int(subscription.posts_used_this_month or 0)
            if subscription.subscription_tier == TIER_FREEMIUM:
                return QuotaDecision(
                    False, actor_id, kind, reason=REASON_PLAN_EXCLUDES_POSTS, required=amount, limit=limit, used=used
                )
        else:
            limit = int(subscription.max_clients)
            used = int(subscription.clients_used or 0)

        if is_unlimited(limit):
            return QuotaDecision(True, actor_id, kind, required=amount, limit=limit, used=used)
        available = max(limit - used, 0)
        return QuotaDecision(
            used + amount <= limit,
            actor_id,
            kind,
            reason=None if used + amount <= limit else REASON_LIMIT_REACHED,
            available=available,
            required=amount,
            limit=limit,
            used=used,
        )

    def _evaluate_ai_credits(
        self,
        actor_id: str,
        subscription: Optional[Subscription],
        amount: int,
        *,
        now: datetime,
    ) -> QuotaDecision:
        purchased = self._repository.get_purchased_credits(actor_id)
        if subscription is None:
            limit, used = 0, 0
        else:
            reason = inactive_reason(subscription, now=now)
            if reason is not None:
                return QuotaDecision(False, actor_id, KIND_AI_CREDITS, reason=reason, required=amount)
            limit = int(subscription.max_ai_credits_per_month)
            used = int(subscription.ai_credits_used_this_month or 0)
            if is_unlimited(limit):
                return QuotaDecision(True, actor_id, KIND_AI_CREDITS, required=amount, limit=limit, used=used)

        available = purchased + max(0, limit - used)
        allowed = available >= amount
        return QuotaDecision(
            allowed,
            actor_id,
            KIND_AI_CREDITS,
            reason=None if allowed else REASON_INSUFFICIENT_CREDITS,
            available=available,
            required=amount,
            limit=limit,
            used=used,
        )

    def credit_balance(self, actor_id: str, *, now: datetime | None = None) -> CreditBalance:
        reference = now or utc_now()
        purchased = self._repository.get_purchased_credits(actor_id)
        subscription = self._load_subscription(actor_id, now=reference)
        if subscription is None or inactive_reason(subscription, now=reference) is not None:
            return CreditBalance(actor_id, purchased, available=purchased)

        limit = int(subscription.max_ai_credits_per_month)
        used = int(subscription.ai_credits_used_this_month or 0)
        if is_unlimited(limit):
            return CreditBalance(actor_id, purchased, monthly_limit=limit, monthly_used=used, unlimited=True)
        return CreditBalance(
            actor_id,
            purchased,
            monthly_limit=limit,
            monthly_used=used,
            available=purchased + max(0, limit - used),
        )

    def authorize(
        self,
        token: Optional[str],
        kind: str,
        amount: int = 1,
        *,
        now: datetime | None = None,
    ) -> QuotaDecision:
        """Resolve the actor from ``token`` and raise unless the action is allowed."""

        actor_id = self.resolve_actor(token)
        return self.authorize_actor(actor_id, kind, amount, now=now)

    def authorize_actor(
        self,
        actor_id: str,
        kind: str,
        amount: int = 1,
        *,
        now: datetime | None = None,
    ) -> QuotaDecision:
        decision = self.evaluate(actor_id, kind, amount, now=now)
        if decision.allowed:
            return decision

        record_quota_block(kind=kind, reason=decision.reason or "unknown")
        logger.info(
            "quota_blocked",
            actor_id=actor_id,
            kind=kind,
            reason=decision.reason,
            required=decision.required,
            available=decision.available,
            shortfall=decision.shortfall,
        )
        details = {
            "allowed": False,
            "reason": decision.reason,
            "kind": kind,
            "required": decision.required,
            "current": decision.used,
            "max": decision.limit,
        }
        message = _BLOCK_MESSAGES.get(decision.reason or "", "Action not allowed by your plan")
        if decision.reason in _INACTIVE_REASONS:
            raise SubscriptionInactive(message, details=details)
        details["available"] = decision.available
        details["shortfall"] = decision.shortfall
        raise QuotaExceeded(message, details=details)

    def record_usage(
        self,
        actor_id: str,
        kind: str,
        amount: int = 1,
        *,
        action_type: str = "usage",
        client_id: Optional[str] = None,
    ) -> None:
        """Consume allowance after a metered action succeeded.

        AI credits come out of the purchased pool first and only the remainder
        is counted against the monthly allowance.
        """

        if kind not in QUOTA_KINDS:
            raise ValidationError(f"Unknown quota kind: {kind}", details={"allowed": list(QUOTA_KINDS)})
        if amount <= 0:
            raise ValidationError("Amount must be positive", details={"amount": amount})

        if kind == KIND_AI_CREDITS:
            self._record_ai_credits(actor_id, amount, action_type=action_type, client_id=client_id)
        else:
            subscription = self._repository.get_subscription(actor_id)
            column = Subscription.posts_used_this_month if kind == KIND_POSTS else Subscription.clients_used
            self._repository.update_subscription(actor_id, {column.key: column + amount})
            logger.info(
                "quota_usage_recorded",
                actor_id=actor_id,
                kind=kind,
                amount=amount,
                subscription_id=subscription.id,
            )
        self._repository.commit()

    def _consume_purchased(self, actor_id: str, amount: int) -> int:
        """Take up to ``amount`` from the purchased pool; returns what was actually deducted."""

        for _ in range(_CONSUME_ATTEMPTS):
            wanted = min(self._repository.get_purchased_credits(actor_id), amount)
            if wanted <= 0:
                return 0
            if self._repository.consume_purchased_credits(actor_id, wanted):
                return wanted
        return 0

    def _record_ai_credits(
        self,
        actor_id: str,
        amount: int,
        *,
        action_type: str,
        client_id: Optional[str],
    ) -> None:
        from_purchased = self._consume_purchased(actor_id, amount)
        from_monthly = amount - from_purchased

        if from_purchased > 0:
            self._repository.insert_credit_usage(
                user_id=actor_id,
                credit_type=CREDIT_TYPE_PURCHASED,
                action_type=action_type,
                credits_used=from_purchased,
                client_id=client_id,
            )
        if from_monthly > 0:
            self._repository.update_subscription(
                actor_id,
                {"ai_credits_used_this_month": Subscription.ai_credits_used_this_month + from_monthly},
            )
            self._repository.insert_credit_usage(
                user_id=actor_id,
                credit_type=CREDIT_TYPE_MONTHLY,
                action_type=action_type,
                credits_used=from_monthly,
                client_id=client_id,
            )
        logger.info(
            "quota_ai_credits_recorded",
            actor_id=actor_id,
            purchased_used=from_purchased,
            monthly_used=from_monthly,
            action_type=action_type,
        )

    def record_usage_safely(
        self,
        actor_id: str,
        kind: str,
        amount: int = 1,
        *,
        action_type: str = "usage",
        client_id: Optional[str] = None,
    ) -> bool:
        """Record usage, logging instead of raising when accounting fails."""

        try:
            self.record_usage(actor_id, kind, amount, action_type=action_type, client_id=client_id)
            return True
        except Exception:
            self._repository.rollback()
            record_usage_failure(kind=kind)
            logger.exception("quota_usage_record_failed", actor_id=actor_id, kind=kind, amount=amount)
            return False

    def run_metered(
        self,
        token: Optional[str],
        kind: str,
        action: Callable[[str], T],
        *,
        amount: int = 1,
        action_type: str = "usage",
        client_id: Optional[str] = None,
    ) -> T:
        """Authorize, run ``action(actor_id)``, then record usage without undoing the action."""

        decision = self.authorize(token, kind, amount)
        result = action(decision.actor_id)
        self.record_usage_safely(
            decision.actor_id,
            kind,
            amount,
            action_type=action_type,
            client_id=client_id,
        )
        return result
