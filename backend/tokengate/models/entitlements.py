"""Feature flag and entitlement models."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from tokengate.models.plans import Plan


class DisplayMode(str, Enum):
    """How a feature the caller cannot use is presented."""

    HIDE = "hide"
    LOCK = "lock"


class FeatureFlag(BaseModel):
    """Read-only feature flag as loaded from the flag source."""

    model_config = ConfigDict(frozen=True)

    feature_key: str
    feature_name: str | None = None
    is_enabled: bool = False
    enabled_for_plans: frozenset[Plan] = Field(default_factory=frozenset)
    display_mode: DisplayMode = DisplayMode.HIDE


class FeatureAccess(BaseModel):
    """Entitlement decision for one feature and plan."""

    feature_key: str
    has_access: bool
    is_locked: bool
    display_mode: DisplayMode
    required_plans: list[Plan] = Field(default_factory=list)
    current_plan: Plan
    upgrade_plan: Plan | None = None
