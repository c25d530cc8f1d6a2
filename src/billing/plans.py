"""Subscription tier catalogue loaded from the plans YAML file."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict

import yaml

from src.core.config import get_settings


UNLIMITED = -1
PLAN_LIMIT_KEYS = ("max_clients", "max_posts_per_month", "max_ai_credits_per_month")


@dataclass(frozen=True)
class PlanLimits:
    tier: str
    max_clients: int
    max_posts_per_month: int
    max_ai_credits_per_month: int


def is_unlimited(limit: int) -> bool:
    return int(limit) == UNLIMITED


def _resolve_plan_path() -> Path:
    settings = get_settings()
    configured = Path(settings.plans_file_path)
    if configured.is_absolute():
        return configured
    return Path.cwd() / configured


@lru_cache(maxsize=1)
def load_plans() -> Dict[str, Dict[str, int]]:
    plan_path = _resolve_plan_path()
    with plan_path.open("r", encoding="utf-8") as file:
        content = yaml.safe_load(file) or {}
    if not isinstance(content, dict):
        raise ValueError("Invalid plans file format")

    plans: Dict[str, Dict[str, int]] = {}
    for plan_name, plan_limits in content.items():
        if not isinstance(plan_name, str) or not isinstance(plan_limits, dict):
            continue
        normalized_limits: Dict[str, int] = {}
        for key, value in plan_limits.items():
            if isinstance(key, str) and isinstance(value, int):
                normalized_limits[key] = value
        plans[plan_name] = normalized_limits
    return plans


def get_plan_limits(tier: str) -> PlanLimits:
    limits = load_plans().get(tier)
    if limits is None:
        raise ValueError(f"Plan is not configured: {tier}")
    missing = [key for key in PLAN_LIMIT_KEYS if key not in limits]
    if missing:
        raise ValueError(f"Plan {tier} is missing limits: {', '.join(missing)}")
    return PlanLimits(
        tier=tier,
        max_clients=limits["max_clients"],
        max_posts_per_month=limits["max_posts_per_month"],
        max_ai_credits_per_month=limits["max_ai_credits_per_month"],
    )
