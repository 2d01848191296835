"""Static plan hierarchy and per-plan attributes."""

from tokengate.config import PlanConfig
from tokengate.models.plans import Plan, PlanAttributes


class PlanCatalog:
    """Read-only view of the plan ladder ``free < standard < plus < premium``."""

    def __init__(self, config: PlanConfig | None = None) -> None:
        plans = (config or PlanConfig()).plans
        missing = [plan.value for plan in Plan if plan not in plans]
        if missing:
            raise ValueError(f"Plan configuration missing for: {', '.join(missing)}")
        self._plans: dict[Plan, PlanAttributes] = dict(plans)

    def ascending(self) -> list[Plan]:
        return sorted(Plan, key=lambda plan: plan.rank)

    def plans_above(self, plan: Plan) -> list[Plan]:
        """Plans strictly above ``plan``, cheapest first."""
        return [candidate for candidate in self.ascending() if candidate.rank > plan.rank]

    def daily_limit(self, plan: Plan) -> int:
        return self._plans[plan].daily_tokens

    def is_unlimited(self, plan: Plan) -> bool:
        return self._plans[plan].unlimited

    def is_purchasable(self, plan: Plan) -> bool:
        return self._plans[plan].purchasable

    def monthly_voice_limit(self, plan: Plan) -> int | None:
        return self._plans[plan].monthly_voice_conversations
