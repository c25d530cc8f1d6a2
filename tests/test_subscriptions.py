from __future__ import annotations

from datetime import datetime, timedelta, timezone
import uuid

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from sqlalchemy.orm import Session, sessionmaker

from src.billing.plans import get_plan_limits, is_unlimited, load_plans
from src.billing.subscriptions import add_purchased_credits, expire_trials, start_freemium, start_trial
from src.core.config import get_settings
from src.core.errors import Conflict, NotFound, ValidationError
from src.storage.db import Base, load_models
from src.storage.models import User
from src.storage.repository import ContentRepository


NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def _build_session() -> Session:
    load_models()
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    return factory()


def _seed_user(session: Session) -> User:
    user = User(id=str(uuid.uuid4()), email=f"{uuid.uuid4().hex[:8]}@example.com")
    session.add(user)
    session.commit()
    return user


def test_load_plans_contains_expected_tiers(monkeypatch) -> None:
    monkeypatch.setenv("PLANS_FILE_PATH", "config/plans.yaml")
    get_settings.cache_clear()
    load_plans.cache_clear()
    try:
        plans = load_plans()

        assert set(plans) >= {"freemium", "trial", "starter", "professional", "agency"}
        assert get_plan_limits("freemium").max_posts_per_month == 0
        assert get_plan_limits("starter").max_posts_per_month == 30
        assert is_unlimited(get_plan_limits("agency").max_clients)
        with pytest.raises(ValueError):
            get_plan_limits("enterprise")
    finally:
        load_plans.cache_clear()
        get_settings.cache_clear()


def test_start_trial_sets_trialing_subscription_with_trial_limits() -> None:
    session = _build_session()
    try:
        user = _seed_user(session)
        repo = ContentRepository(session)

        subscription = start_trial(repo, user_id=user.id, now=NOW)

        assert subscription.subscription_tier == "trial"
        assert subscription.subscription_status == "trialing"
        assert subscription.max_posts_per_month == 150
        period_end = subscription.current_period_end.replace(tzinfo=timezone.utc)
        assert period_end == NOW + timedelta(days=get_settings().trial_days)

        with pytest.raises(Conflict):
            start_freemium(repo, user_id=user.id, now=NOW)
        with pytest.raises(NotFound):
            start_trial(repo, user_id="missing-user", now=NOW)
    finally:
        session.close()


def test_expire_trials_downgrades_only_ended_trials() -> None:
    session = _build_session()
    try:
        ended = _seed_user(session)
        running = _seed_user(session)
        repo = ContentRepository(session)
        start_trial(repo, user_id=ended.id, now=NOW - timedelta(days=30))
        start_trial(repo, user_id=running.id, now=NOW - timedelta(days=2))

        downgraded = expire_trials(repo, now=NOW)

        assert downgraded == [ended.id]
        subscription = repo.get_subscription(ended.id)
        assert subscription.subscription_tier == "freemium"
        assert subscription.subscription_status == "active"
        assert subscription.max_posts_per_month == 0
        assert subscription.current_period_end is None
        assert repo.get_subscription(running.id).subscription_status == "trialing"
        assert expire_trials(repo, now=NOW) == []
    finally:
        session.close()


def test_add_purchased_credits_accumulates_balance() -> None:
    session = _build_session()
    try:
        user = _seed_user(session)
        repo = ContentRepository(session)

        assert add_purchased_credits(repo, user_id=user.id, credits=50) == 50
        assert add_purchased_credits(repo, user_id=user.id, credits=25) == 75
        assert repo.get_purchased_credits(user.id) == 75

        with pytest.raises(ValidationError):
            add_purchased_credits(repo, user_id=user.id, credits=0)
    finally:
        session.close()
