"""Subscription plan models."""

from enum import Enum

from pydantic import BaseModel, Field


class Plan(str, Enum):
    """Subscription plans, declared in upgrade order (cheapest first)."""

    FREE = "free"
    STANDARD = "standard"
    PLUS = "plus"
    PREMIUM = "premium"

    @property
    def rank(self) -> int:
        """Position in the upgrade order. Never compare plan names as strings."""
        return _PLAN_ORDER.index(self)


_PLAN_ORDER: list[Plan] = list(Plan)


class PlanAttributes(BaseModel):
    """Per-plan allowances."""

    daily_tokens: int = Field(default=0, ge=0)  # ignored when unlimited
    unlimited: bool = False
    purchasable: bool = False
    monthly_voice_conversations: int | None = Field(default=None, ge=0)  # None = unlimited
