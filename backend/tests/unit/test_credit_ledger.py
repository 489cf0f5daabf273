"""Unit tests for the metadata-backed credit ledger."""

import math
from unittest.mock import AsyncMock

import pytest

from studio.services.credit_ledger import (
    CreditLedger,
    InvalidCreditAmount,
    migrate_credit_metadata,
)
from studio.services.identity_store import InMemoryIdentityStore


class TestMigrateCreditMetadata:
    def test_folds_legacy_credits(self):
        migrated, folded = migrate_credit_metadata({"referral_credits": 8, "plan": "x"})

        assert folded is True
        assert migrated["credit_balance"] == 8
        assert migrated["referral_credits"] == 0
        assert migrated["credit_schema_version"] == 1
        assert migrated["plan"] == "x"

    def test_adds_to_existing_balance(self):
        migrated, _ = migrate_credit_metadata({"credit_balance": 3, "referral_credits": 2})
        assert migrated["credit_balance"] == 5

    def test_is_idempotent(self):
        once, _ = migrate_credit_metadata({"referral_credits": 8})
        twice, folded = migrate_credit_metadata(once)

        assert folded is False
        assert twice == once

    def test_clamps_garbage_values(self):
        migrated, folded = migrate_credit_metadata(
            {"credit_balance": -4, "referral_credits": "abc"}
        )

        assert folded is False
        assert migrated["credit_balance"] == 0
        assert migrated["referral_credits"] == 0

    def test_does_not_add_legacy_key_when_absent(self):
        migrated, _ = migrate_credit_metadata({})
        assert "referral_credits" not in migrated


class TestGetBalance:
    async def test_migrates_and_persists_once(self, identity_store, credit_ledger):
        identity_store.add_user("user-1", referral_credits=8)

        assert await credit_ledger.get_balance("user-1") == 8
        stored = identity_store.users["user-1"].metadata
        assert stored["credit_balance"] == 8
        assert stored["referral_credits"] == 0

        assert await credit_ledger.get_balance("user-1") == 8

    async def test_no_write_without_legacy_credits(self):
        store = InMemoryIdentityStore()
        store.add_user("user-1", credit_balance=4, credit_schema_version=1)
        store.update_metadata = AsyncMock()

        assert await CreditLedger(store).get_balance("user-1") == 4
        store.update_metadata.assert_not_awaited()

    async def test_fractional_balance_is_floored(self, identity_store, credit_ledger):
        identity_store.add_user("user-1", credit_balance=7.9)
        assert await credit_ledger.get_balance("user-1") == 7

    async def test_unknown_user_has_zero(self, credit_ledger):
        assert await credit_ledger.get_balance("nobody") == 0


class TestAddCredits:
    async def test_adds_floor_of_amount(self, identity_store, credit_ledger):
        identity_store.add_user("user-1", credit_balance=2)

        assert await credit_ledger.add_credits("user-1", 3.7) == 5
        assert identity_store.users["user-1"].metadata["credit_balance"] == 5

    @pytest.mark.parametrize("amount", [0, -1, math.inf, math.nan, "5", None, True])
    async def test_rejects_invalid_amounts(self, identity_store, credit_ledger, amount):
        identity_store.add_user("user-1", credit_balance=2)

        with pytest.raises(InvalidCreditAmount):
            await credit_ledger.add_credits("user-1", amount)

        assert identity_store.users["user-1"].metadata == {"credit_balance": 2}

    async def test_preserves_other_metadata(self, identity_store, credit_ledger):
        identity_store.add_user("user-1", referral_code="ABC123")

        await credit_ledger.add_credits("user-1", 10)

        metadata = identity_store.users["user-1"].metadata
        assert metadata["referral_code"] == "ABC123"
        assert metadata["credit_balance"] == 10


class TestConsumeCredits:
    @pytest.mark.parametrize("start,amount", [(0, 1), (5, 3), (10, 10), (7, 25)])
    async def test_add_then_consume_leaves_balance_unchanged(
        self, identity_store, credit_ledger, start, amount
    ):
        identity_store.add_user("user-1", credit_balance=start, credit_schema_version=1)

        await credit_ledger.add_credits("user-1", amount)
        assert await credit_ledger.consume_credits("user-1", amount) is True

        assert await credit_ledger.get_balance("user-1") == start

    @pytest.mark.parametrize("balance", [0, 1, 9])
    async def test_insufficient_balance_rejected(self, identity_store, credit_ledger, balance):
        identity_store.add_user("user-1", credit_balance=balance, credit_schema_version=1)

        assert await credit_ledger.consume_credits("user-1", balance + 1) is False
        assert await credit_ledger.get_balance("user-1") == balance

    @pytest.mark.parametrize("amount", [0, -3, math.nan])
    async def test_invalid_amount_returns_false(self, identity_store, credit_ledger, amount):
        identity_store.add_user("user-1", credit_balance=5, credit_schema_version=1)

        assert await credit_ledger.consume_credits("user-1", amount) is False
        assert await credit_ledger.get_balance("user-1") == 5

    async def test_consumes_legacy_credits(self, identity_store, credit_ledger):
        identity_store.add_user("user-1", referral_credits=4)

        assert await credit_ledger.consume_credits("user-1", 3) is True

        metadata = identity_store.users["user-1"].metadata
        assert metadata["credit_balance"] == 1
        assert metadata["referral_credits"] == 0
