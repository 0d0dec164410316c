"""
Tests for EngineConfig, snapshots and optimization requests.
"""

import pytest


class TestEngineConfig:
    """Tests for runtime configuration updates."""

    def test_defaults_validate(self):
        from portfolio_engine.config import EngineConfig

        config = EngineConfig()
        assert sum(config.correlation_weights()) == pytest.approx(1.0)

    def test_out_of_range_rejected_at_construction(self):
        from portfolio_engine.config import EngineConfig
        from portfolio_engine.errors import ValidationError

        with pytest.raises(ValidationError):
            EngineConfig(action_threshold=2.0)

    def test_weights_must_sum_to_one(self):
        from portfolio_engine.config import EngineConfig
        from portfolio_engine.errors import ValidationError

        with pytest.raises(ValidationError):
            EngineConfig(price_correlation_weight=0.9)

    def test_update_runtime_converts_and_bumps_version(self):
        from portfolio_engine.config import EngineConfig

        config = EngineConfig()
        result = config.update_runtime("action_threshold", "0.05")

        assert result["status"] == "success"
        assert result["old_value"] == 0.02
        assert config.action_threshold == 0.05
        assert result["version"] == 1

    def test_update_runtime_rejects_immutable_key(self):
        from portfolio_engine.config import EngineConfig

        config = EngineConfig()
        result = config.update_runtime("simulation_only", True)
        assert "error" in result
        assert config.simulation_only is False

    def test_update_runtime_rejects_unknown_and_out_of_range(self):
        from portfolio_engine.config import EngineConfig

        config = EngineConfig()
        assert "error" in config.update_runtime("no_such_key", 1)
        assert "error" in config.update_runtime("_version", 5)
        assert "error" in config.update_runtime("max_workers", 0)
        assert "error" in config.update_runtime("max_workers", "many")
        assert config._version == 0

    def test_tables_only_name_config_fields(self):
        from dataclasses import fields
        from portfolio_engine.config import CONFIG_FIELD_RANGES, CONFIG_FIELD_TYPES, EngineConfig

        config_fields = {f.name for f in fields(EngineConfig)}
        assert set(CONFIG_FIELD_TYPES) <= config_fields
        assert set(CONFIG_FIELD_RANGES) <= set(CONFIG_FIELD_TYPES)

        # Volatility and return fallbacks belong to the market data provider
        config = EngineConfig()
        assert "error" in config.update_runtime("default_volatility", 0.3)
        assert "error" in config.update_runtime("default_expected_return", 0.2)

    def test_update_runtime_rolls_back_unbalanced_weights(self):
        from portfolio_engine.config import EngineConfig

        config = EngineConfig()
        result = config.update_runtime("price_correlation_weight", 0.5)
        assert "error" in result
        assert config.price_correlation_weight == 0.4

    def test_bool_parsing(self):
        from portfolio_engine.config import EngineConfig

        config = EngineConfig()
        config.update_runtime("enable_prometheus", "yes")
        assert config.enable_prometheus is True
        config.update_runtime("enable_prometheus", "off")
        assert config.enable_prometheus is False


class TestConfigSnapshot:
    """Tests for immutable cycle snapshots."""

    def test_snapshot_is_frozen(self):
        from dataclasses import FrozenInstanceError
        from portfolio_engine.config import EngineConfig

        snap = EngineConfig().snapshot()
        with pytest.raises(FrozenInstanceError):
            snap.risk_free_rate = 0.1

    def test_snapshot_not_affected_by_later_updates(self):
        from portfolio_engine.config import EngineConfig

        config = EngineConfig()
        snap = config.snapshot()
        config.update_runtime("risk_free_rate", 0.02)

        assert snap.risk_free_rate == 0.05
        assert snap.version == 0
        assert config.snapshot().version == 1


class TestOptimizationConfig:
    """Tests for optimization request validation."""

    def test_objective_by_name(self):
        from portfolio_engine.config import OptimizationConfig, OptimizationObjective

        cfg = OptimizationConfig(objective="maximize_sharpe")
        assert cfg.objective == OptimizationObjective.MAXIMIZE_SHARPE

    def test_unknown_objective(self):
        from portfolio_engine.config import OptimizationConfig
        from portfolio_engine.errors import ValidationError

        with pytest.raises(ValidationError):
            OptimizationConfig(objective="maximize_luck")

    def test_allocation_bounds_ordered(self):
        from portfolio_engine.config import OptimizationConfig
        from portfolio_engine.errors import ValidationError

        with pytest.raises(ValidationError):
            OptimizationConfig(min_allocation=0.6, max_allocation=0.4)

    def test_from_dict_rejects_unknown_keys(self):
        from portfolio_engine.config import OptimizationConfig
        from portfolio_engine.errors import ValidationError

        with pytest.raises(ValidationError):
            OptimizationConfig.from_dict({"objective": "minimize_risk", "leverage": 3})

    def test_constraint_dicts_are_converted(self):
        from portfolio_engine.config import OptimizationConfig, TokenConstraint

        cfg = OptimizationConfig.from_dict({
            "token_constraints": [{"token": "SOL", "max_weight": 0.5}],
        })
        assert cfg.token_constraints == (TokenConstraint("SOL", 0.0, 0.5),)
        assert cfg.to_dict()["token_constraints"][0]["max_weight"] == 0.5

    def test_token_constraint_range(self):
        from portfolio_engine.config import TokenConstraint
        from portfolio_engine.errors import ValidationError

        with pytest.raises(ValidationError):
            TokenConstraint("SOL", min_weight=0.7, max_weight=0.2)


class TestActionBuckets:
    """Tests for priority and timing classification."""

    def test_buckets(self):
        from portfolio_engine.config import ActionBuckets

        assert ActionBuckets.get_priority(0.15) == "high"
        assert ActionBuckets.get_timing(-0.15) == "immediate"
        assert ActionBuckets.get_priority(0.07) == "medium"
        assert ActionBuckets.get_timing(0.07) == "next_cycle"
        assert ActionBuckets.get_priority(0.03) == "low"
        assert ActionBuckets.get_timing(0.03) == "opportunistic"
