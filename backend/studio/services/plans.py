"""Static plan catalogue: Stripe price id -> generations per billing cycle."""

from dataclasses import dataclass

from studio.config import BillingConfig
from studio.models.billing import PlanCode

PLAN_LABELS: dict[PlanCode, str] = {
    PlanCode.FREE: "Essentiel",
    PlanCode.BASIC: "Basic",
    PlanCode.PRO: "Pro",
}


@dataclass(frozen=True)
class PlanTable:
    """Lookup table built once from configuration.

    Must be kept in sync by hand with the prices defined in Stripe.
    """

    free_tier_quota: int
    quotas: dict[str, int]
    plans: dict[str, PlanCode]

    @classmethod
    def from_config(cls, config: BillingConfig) -> "PlanTable":
        quotas: dict[str, int] = {}
        plans: dict[str, PlanCode] = {}
        for price_id, plan, quota in (
            (config.price_basic, PlanCode.BASIC, config.basic_quota),
            (config.price_pro, PlanCode.PRO, config.pro_quota),
        ):
            # Unset price ids would otherwise map "" to a paid plan
            if price_id:
                quotas[price_id] = quota
                plans[price_id] = plan
        return cls(free_tier_quota=config.free_tier_quota, quotas=quotas, plans=plans)

    def resolve_quota_limit(self, price_id: str | None) -> int:
        """Quota for a price reference; null or unknown references get the free tier."""
        if not price_id:
            return self.free_tier_quota
        return self.quotas.get(price_id, self.free_tier_quota)

    def plan_for_price(self, price_id: str | None) -> PlanCode:
        if not price_id:
            return PlanCode.FREE
        return self.plans.get(price_id, PlanCode.FREE)

    def price_for_plan(self, plan_code: PlanCode) -> str | None:
        for price_id, mapped_plan in self.plans.items():
            if mapped_plan == plan_code:
                return price_id
        return None

    def is_known_price(self, price_id: str | None) -> bool:
        return bool(price_id) and price_id in self.quotas

    def label_for(self, plan_code: PlanCode) -> str:
        return PLAN_LABELS[plan_code]
