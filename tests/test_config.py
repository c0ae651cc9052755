"""Settings and economy rule tests."""

from __future__ import annotations

from decimal import Decimal

import pytest
from pydantic import ValidationError

from phx.config import EconomyRules, Settings


class TestEconomyRules:
    def test_defaults(self):
        rules = EconomyRules()
        assert rules.mining_reward == Decimal("0.1007")
        assert rules.sessions_required == 170
        assert rules.min_withdrawal_amount == Decimal("37.07")
        assert rules.withdrawal_fee == Decimal("0.1")
        assert rules.withdrawal_batch_size == 100

    def test_frozen(self):
        rules = EconomyRules()
        with pytest.raises(ValidationError):
            rules.mining_reward = Decimal("1")


class TestSettings:
    def test_env_prefix_and_nested_economy(self, monkeypatch):
        monkeypatch.setenv("PHX_ENVIRONMENT", "staging")
        monkeypatch.setenv("PHX_ECONOMY__MINING_REWARD", "0.5")
        settings = Settings()
        assert settings.environment == "staging"
        assert settings.economy.mining_reward == Decimal("0.5")
        assert settings.economy.referral_bonus == Decimal("10.07")
