"""Pydantic schemas for quota and subscription endpoints."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class QuotaAuthorizeRequest(BaseModel):
    kind: str = Field(min_length=1, max_length=32)
    amount: int = Field(default=1, ge=1, le=10_000)


class QuotaDecisionResponse(BaseModel):
    allowed: bool
    actor_id: Optional[str] = None
    reason: Optional[str] = None
    kind: str
    available: Optional[int] = None
    required: int
    limit: Optional[int] = None
    used: Optional[int] = None


class QuotaUsageRequest(BaseModel):
    kind: str = Field(min_length=1, max_length=32)
    amount: int = Field(default=1, ge=1, le=10_000)
    action_type: str = Field(default="usage", min_length=1, max_length=100)
    client_id: Optional[str] = Field(default=None, max_length=36)


class QuotaUsageResponse(BaseModel):
    recorded: bool
    kind: str
    amount: int


class CreditsResponse(BaseModel):
    actor_id: str
    purchased: int
    monthly_limit: Optional[int] = None
    monthly_used: Optional[int] = None
    unlimited: bool = False
    available: Optional[int] = None


class SubscriptionResponse(BaseModel):
    user_id: str
    subscription_tier: str
    subscription_status: str
    current_period_end: Optional[str] = None
    max_clients: int
    max_posts_per_month: int
    max_ai_credits_per_month: int
    clients_used: int
    posts_used_this_month: int
    ai_credits_used_this_month: int


class ExpireTrialsResponse(BaseModel):
    downgraded: int
    user_ids: List[str]


class CreditPurchaseRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=36)
    credits: int = Field(ge=1, le=1_000_000)


class CreditPurchaseResponse(BaseModel):
    user_id: str
    purchased_credits: int
