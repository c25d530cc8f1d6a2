"""Quota and subscription API routes."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from src.auth.dependencies import get_bearer_token, require_auth_context, require_cron_secret
from src.auth.jwt import AuthContext
from src.billing.quota import QuotaDecision, QuotaGate
from src.billing.subscriptions import add_purchased_credits, expire_trials, start_freemium, start_trial
from src.core.timeutils import isoformat_or_none
from src.schemas.billing import (
    CreditPurchaseRequest,
    CreditPurchaseResponse,
    CreditsResponse,
    ExpireTrialsResponse,
    QuotaAuthorizeRequest,
    QuotaDecisionResponse,
    QuotaUsageRequest,
    QuotaUsageResponse,
    SubscriptionResponse,
)
from src.storage.db import get_session
from src.storage.models import Subscription
from src.storage.repository import ContentRepository


router = APIRouter(prefix="/billing", tags=["billing"])


def _decision_response(decision: QuotaDecision) -> QuotaDecisionResponse:
    return QuotaDecisionResponse(
        allowed=decision.allowed,
        actor_id=decision.actor_id,
        reason=decision.reason,
        kind=decision.kind,
        available=decision.available,
        required=decision.required,
        limit=decision.limit,
        used=decision.used,
    )


def _subscription_response(subscription: Subscription) -> SubscriptionResponse:
    return SubscriptionResponse(
        user_id=subscription.user_id,
        subscription_tier=subscription.subscription_tier,
        subscription_status=subscription.subscription_status,
        current_period_end=isoformat_or_none(subscription.current_period_end),
        max_clients=subscription.max_clients,
        max_posts_per_month=subscription.max_posts_per_month,
        max_ai_credits_per_month=subscription.max_ai_credits_per_month,
        clients_used=int(subscription.clients_used or 0),
        posts_used_this_month=int(subscription.posts_used_this_month or 0),
        ai_credits_used_this_month=int(subscription.ai_credits_used_this_month or 0),
    )


@router.post("/quota/authorize", response_model=QuotaDecisionResponse)
def authorize_quota(
    payload: QuotaAuthorizeRequest,
    token: Optional[str] = Depends(get_bearer_token),
    session: Session = Depends(get_session),
) -> QuotaDecisionResponse:
    decision = QuotaGate(ContentRepository(session)).authorize(token, payload.kind, payload.amount)
    return _decision_response(decision)


@router.post("/quota/usage", response_model=QuotaUsageResponse)
def record_quota_usage(
    payload: QuotaUsageRequest,
    token: Optional[str] = Depends(get_bearer_token),
    session: Session = Depends(get_session),
) -> QuotaUsageResponse:
    gate = QuotaGate(ContentRepository(session))
    actor_id = gate.resolve_actor(token)
    recorded = gate.record_usage_safely(
        actor_id,
        payload.kind,
        payload.amount,
        action_type=payload.action_type,
        client_id=payload.client_id,
    )
    return QuotaUsageResponse(recorded=recorded, kind=payload.kind, amount=payload.amount)


@router.get("/quota/credits", response_model=CreditsResponse)
def get_credit_balance(
    token: Optional[str] = Depends(get_bearer_token),
    session: Session = Depends(get_session),
) -> CreditsResponse:
    gate = QuotaGate(ContentRepository(session))
    balance = gate.credit_balance(gate.resolve_actor(token))
    return CreditsResponse(
        actor_id=balance.actor_id,
        purchased=balance.purchased,
        monthly_limit=balance.monthly_limit,
        monthly_used=balance.monthly_used,
        unlimited=balance.unlimited,
        available=balance.available,
    )


@router.post("/subscriptions/trial", response_model=SubscriptionResponse, status_code=201)
def start_trial_subscription(
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> SubscriptionResponse:
    return _subscription_response(start_trial(ContentRepository(session), user_id=auth.user_id))


@router.post("/subscriptions/freemium", response_model=SubscriptionResponse, status_code=201)
def start_freemium_subscription(
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> SubscriptionResponse:
    return _subscription_response(start_freemium(ContentRepository(session), user_id=auth.user_id))


@router.post("/subscriptions/expire-trials", response_model=ExpireTrialsResponse)
def expire_trial_subscriptions(
    _secret: None = Depends(require_cron_secret),
    session: Session = Depends(get_session),
) -> ExpireTrialsResponse:
    user_ids = expire_trials(ContentRepository(session))
    return ExpireTrialsResponse(downgraded=len(user_ids), user_ids=user_ids)


@router.post("/subscriptions/credits", response_model=CreditPurchaseResponse)
def purchase_credits(
    payload: CreditPurchaseRequest,
    _secret: None = Depends(require_cron_secret),
    session: Session = Depends(get_session),
) -> CreditPurchaseResponse:
    balance = add_purchased_credits(ContentRepository(session), user_id=payload.user_id, credits=payload.credits)
    return CreditPurchaseResponse(user_id=payload.user_id, purchased_credits=balance)
