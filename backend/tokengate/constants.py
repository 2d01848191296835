"""
Business constants for tokengate.

These values are stable across environments and act as defaults for the
nested groups in config.py, which may override them per deployment.
"""

from tokengate.models.plans import Plan, PlanAttributes

API_TITLE = "tokengate"
API_VERSION = "1.0.0"

# --- Token costs per operation, by content language ---
DEFAULT_LANGUAGE_COSTS: dict[str, int] = {
    "en": 10,
    "hi": 20,
    "ml": 20,
}

# --- Study mode multipliers applied to the language cost (rounded up) ---
DEFAULT_MODE_MULTIPLIERS: dict[str, float] = {
    "quick": 0.5,
    "standard": 1.0,
    "deep": 1.5,
    "lectio": 1.2,
    "sermon": 2.0,
}

# --- Plan allowances ---
DEFAULT_PLAN_ATTRIBUTES: dict[Plan, PlanAttributes] = {
    Plan.FREE: PlanAttributes(daily_tokens=20, purchasable=True, monthly_voice_conversations=1),
    Plan.STANDARD: PlanAttributes(daily_tokens=40, purchasable=True, monthly_voice_conversations=3),
    Plan.PLUS: PlanAttributes(daily_tokens=100, purchasable=True, monthly_voice_conversations=10),
    Plan.PREMIUM: PlanAttributes(unlimited=True, purchasable=False, monthly_voice_conversations=None),
}

# Subscription statuses that still grant the subscribed plan
ACTIVE_SUBSCRIPTION_STATUSES = {"active", "trial", "pending_cancellation"}

# Sentinel returned for unlimited quotas in API payloads
UNLIMITED = -1
