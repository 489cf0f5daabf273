"""Unit tests for the plan table."""

from studio.config import BillingConfig
from studio.models.billing import PlanCode
from studio.services.plans import PlanTable


class TestResolveQuotaLimit:
    def test_known_prices_map_to_plan_quotas(self, plans):
        assert plans.resolve_quota_limit("price_basic") == 50
        assert plans.resolve_quota_limit("price_pro") == 200

    def test_missing_price_gets_free_quota(self, plans):
        assert plans.resolve_quota_limit(None) == 5
        assert plans.resolve_quota_limit("") == 5

    def test_unknown_price_gets_free_quota(self, plans):
        assert plans.resolve_quota_limit("price_unknown") == 5

    def test_free_quota_is_configurable(self):
        table = PlanTable.from_config(BillingConfig(free_tier_quota=10))
        assert table.resolve_quota_limit(None) == 10


class TestPlanLookup:
    def test_unset_price_ids_are_not_registered(self):
        table = PlanTable.from_config(BillingConfig(price_basic="", price_pro=""))

        assert table.quotas == {}
        assert table.is_known_price("") is False
        assert table.price_for_plan(PlanCode.PRO) is None

    def test_plan_for_price(self, plans):
        assert plans.plan_for_price("price_basic") == PlanCode.BASIC
        assert plans.plan_for_price("price_pro") == PlanCode.PRO
        assert plans.plan_for_price(None) == PlanCode.FREE
        assert plans.plan_for_price("price_other") == PlanCode.FREE

    def test_price_for_plan(self, plans):
        assert plans.price_for_plan(PlanCode.PRO) == "price_pro"
        assert plans.price_for_plan(PlanCode.FREE) is None

    def test_labels(self, plans):
        assert plans.label_for(PlanCode.PRO) == "Pro"
