"""
Tests for the PortfolioAnalyticsEngine facade.
"""

import pytest


@pytest.fixture
def engine(market_data, clock):
    from portfolio_engine.cache import ResultCache
    from portfolio_engine.engine import PortfolioAnalyticsEngine

    eng = PortfolioAnalyticsEngine(market_data, cache=ResultCache(clock=clock), clock=clock)
    yield eng
    eng.shutdown()


class TestEngineConfig:
    """Tests for runtime config handling."""

    def test_set_config_clears_cache(self, engine, sample_positions, sample_analytics):
        first = engine.analyze_multiple_positions(sample_positions, sample_analytics, "owner")
        assert engine.cache_stats()["entries"] >= 1

        result = engine.set_config("action_threshold", "0.05")

        assert result["status"] == "success"
        assert result["new_value"] == 0.05
        assert engine.cache_stats()["entries"] == 0
        assert engine.analyze_multiple_positions(sample_positions, sample_analytics, "owner") is not first

    def test_rejected_change_keeps_cache(self, engine, sample_positions, sample_analytics):
        engine.analyze_multiple_positions(sample_positions, sample_analytics, "owner")

        result = engine.set_config("simulation_only", True)

        assert "error" in result
        assert engine.cache_stats()["entries"] >= 1
        assert engine.config.simulation_only is False

    def test_get_config(self, engine):
        assert engine.get_config("max_workers")["value"] == 8
        assert "error" in engine.get_config("_version")
        assert "error" in engine.get_config("no_such_key")
        assert engine.get_config()["config"]["risk_free_rate"] == 0.05

    def test_mutable_keys_exclude_immutable(self):
        from portfolio_engine.engine import PortfolioAnalyticsEngine

        keys = PortfolioAnalyticsEngine.mutable_config_keys()
        assert "simulation_only" not in keys
        assert "action_threshold" in keys
        assert keys == sorted(keys)


class TestEngineOperations:
    """Tests for the delegated public operations."""

    def test_optimize_shares_correlation_engine(self, engine, sample_positions, sample_analytics):
        result = engine.optimize_portfolio(sample_positions, sample_analytics, owner_key="owner")

        assert result.status == "optimized"
        assert sum(result.target_weights().values()) == pytest.approx(1.0, abs=1e-9)
        assert engine.optimizer.correlation_engine is engine.correlation_engine

    def test_analyze_and_execute(self, engine, market_data):
        from portfolio_engine.rebalancer import ExecutionStatus

        market_data.update_state("pos-sol-usdc", efficiency=0.5, capital_utilization=0.5)
        analysis = engine.analyze_position("pos-sol-usdc", "owner")
        execution = engine.execute_rebalancing(analysis, "owner", approval_granted=True)

        assert analysis.should_rebalance
        assert execution.status == ExecutionStatus.COMPLETED

    def test_status(self, engine):
        status = engine.status()

        assert status["status"] == "running"
        assert status["config_version"] == 0
        assert status["monitoring"] == {"rebalancer": False, "health": False}
        assert status["rebalancing"]["active_configs"] == 3
        assert status["health"]["positions_monitored"] == 0


class TestEngineMonitoring:
    """Tests for starting and stopping both loops."""

    def test_start_registers_positions(self, engine):
        engine.start_monitoring("owner", ["adaptive_rebalancing"], interval_minutes=60)
        try:
            status = engine.status()
            assert status["monitoring"] == {"rebalancer": True, "health": True}
            assert sorted(engine.health_monitor.monitored_positions()) == [
                "pos-eth-usdt", "pos-sol-bonk", "pos-sol-usdc"
            ]
        finally:
            engine.stop_monitoring()

        assert engine.status()["monitoring"] == {"rebalancer": False, "health": False}

    def test_unknown_config_rejected(self, engine):
        from portfolio_engine.errors import NotFoundError

        with pytest.raises(NotFoundError):
            engine.start_monitoring("owner", ["missing"])
        assert not engine.health_monitor.is_monitoring()
