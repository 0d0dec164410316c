"""
Tests for Portfolio Optimizer module.

Tests constrained weight allocation across liquidity positions.
"""

import math

import pytest


@pytest.fixture
def optimizer(market_data, engine_config, clock):
    from portfolio_engine.cache import ResultCache
    from portfolio_engine.portfolio_optimizer import PortfolioOptimizer

    return PortfolioOptimizer(
        market_data, config=engine_config, cache=ResultCache(clock=clock), clock=clock
    )


OBJECTIVES = ["maximize_return", "minimize_risk", "maximize_sharpe", "maximize_yield", "mean_variance"]
TOKENS = ["SOL", "ETH", "USDC", "BONK", "JUP"]


def random_portfolio(rng, n, make_position, clock):
    """n random positions with analytics and a provider that knows them."""
    from portfolio_engine.cache import ResultCache
    from portfolio_engine.market_data import StaticMarketData
    from portfolio_engine.models import PositionAnalytics
    from portfolio_engine.portfolio_optimizer import PortfolioOptimizer

    positions, analytics = [], []
    returns, vols = {}, {}
    for i in range(n):
        x, y = rng.sample(TOKENS, 2)
        pos = make_position(
            f"pos-{i}",
            pool_id=f"pool-{rng.randint(0, 2)}",
            x=(x, rng.uniform(0.5, 200.0)),
            y=(y, rng.uniform(0.5, 2.0)),
            liquidity=rng.uniform(1.0, 50.0),
            fees=(rng.uniform(0.0, 2.0), rng.uniform(0.0, 2.0)),
        )
        pnl = rng.uniform(-10.0, 10.0)
        positions.append(pos)
        analytics.append(PositionAnalytics(
            total_value=pos.value,
            pnl_amount=pos.value * pnl / 100,
            pnl_percent=pnl,
            fee_earnings=pos.fees_earned.total,
            il_percent=-rng.uniform(0.0, 5.0),
            apr=pnl * 4,
            duration_ms=7 * 86400 * 1000
        ))
        returns[pos.id] = rng.uniform(-0.1, 0.4)
        vols[pos.id] = rng.uniform(0.05, 0.9)

    optimizer = PortfolioOptimizer(
        StaticMarketData(returns=returns, volatilities=vols),
        cache=ResultCache(clock=clock),
        clock=clock
    )
    return optimizer, positions, analytics


class TestCovarianceHelpers:
    """Tests for the module-level portfolio math."""

    def test_covariance_matrix(self):
        from portfolio_engine.portfolio_optimizer import build_covariance_matrix

        cov = build_covariance_matrix([0.2, 0.5], [[1.0, 0.3], [0.3, 1.0]])

        assert cov[0][0] == pytest.approx(0.04)
        assert cov[1][1] == pytest.approx(0.25)
        assert cov[0][1] == pytest.approx(0.2 * 0.5 * 0.3)
        assert cov[0][1] == cov[1][0]

    def test_portfolio_return_and_risk(self):
        from portfolio_engine.portfolio_optimizer import portfolio_return, portfolio_risk

        assert portfolio_return([0.5, 0.5], [0.1, 0.3]) == pytest.approx(0.2)
        # Uncorrelated equal-vol assets: sigma / sqrt(2)
        risk = portfolio_risk([0.5, 0.5], [[0.04, 0.0], [0.0, 0.04]])
        assert risk == pytest.approx(0.2 / math.sqrt(2))


class TestWeightInvariants:
    """Every objective returns weights that sum to one within bounds."""

    @pytest.mark.parametrize("objective", [
        "maximize_return", "minimize_risk", "maximize_sharpe", "maximize_yield", "mean_variance",
    ])
    def test_sum_to_one_within_bounds(self, optimizer, sample_positions, sample_analytics, objective):
        from portfolio_engine.config import OptimizationConfig

        opt = OptimizationConfig(objective=objective, min_allocation=0.1, max_allocation=0.6)
        result = optimizer.optimize_portfolio(sample_positions, sample_analytics, opt, owner_key="owner")
        weights = result.target_weights()

        assert result.status == "optimized"
        assert sum(weights.values()) == pytest.approx(1.0, abs=1e-9)
        for w in weights.values():
            assert 0.1 - 1e-9 <= w <= 0.6 + 1e-9

    @pytest.mark.parametrize("objective", OBJECTIVES)
    def test_random_portfolios_random_bounds(self, make_position, clock, objective):
        import random
        from portfolio_engine.config import OptimizationConfig

        rng = random.Random(7)
        for n in range(1, 10):
            for _ in range(3):
                optimizer, positions, analytics = random_portfolio(rng, n, make_position, clock)
                lo = rng.uniform(0.0, 1.0 / n)
                hi = rng.uniform(1.0 / n, 1.0)
                opt = OptimizationConfig(objective=objective, min_allocation=lo, max_allocation=hi)

                weights = optimizer.optimize_portfolio(positions, analytics, opt).target_weights()

                assert sum(weights.values()) == pytest.approx(1.0, abs=1e-9)
                for w in weights.values():
                    assert lo - 1e-9 <= w <= hi + 1e-9

    @pytest.mark.parametrize("objective", OBJECTIVES)
    def test_random_portfolios_with_group_limits(self, make_position, clock, objective):
        import random
        from portfolio_engine.config import OptimizationConfig, PoolConstraint, TokenConstraint

        rng = random.Random(11)
        for n in range(2, 10):
            for _ in range(3):
                optimizer, positions, analytics = random_portfolio(rng, n, make_position, clock)
                token = rng.choice(TOKENS)
                cap = rng.uniform(0.1, 0.5)
                lo = rng.uniform(0.0, 1.0 / n)
                hi = rng.uniform(1.0 / n, 1.0)
                opt = OptimizationConfig(
                    objective=objective,
                    min_allocation=lo,
                    max_allocation=hi,
                    token_constraints=(TokenConstraint(token, max_weight=cap),),
                    pool_constraints=(PoolConstraint("pool-0", min_weight=0.0, max_weight=0.6),)
                )

                weights = optimizer.optimize_portfolio(positions, analytics, opt).target_weights()

                assert sum(weights.values()) == pytest.approx(1.0, abs=1e-9)
                for w in weights.values():
                    assert lo - 1e-9 <= w <= hi + 1e-9

    @pytest.mark.parametrize("objective", OBJECTIVES)
    def test_random_token_cap_is_met(self, make_position, clock, objective):
        import random
        from portfolio_engine.config import OptimizationConfig, TokenConstraint

        rng = random.Random(23)
        for n in range(2, 10):
            optimizer, positions, analytics = random_portfolio(rng, n, make_position, clock)
            token = positions[0].token_x.symbol
            members = [p.id for p in positions if token in p.tokens]
            if len(members) == n:
                continue
            opt = OptimizationConfig(
                objective=objective,
                token_constraints=(TokenConstraint(token, max_weight=0.25),)
            )

            result = optimizer.optimize_portfolio(positions, analytics, opt)
            weights = result.target_weights()

            assert not any("could not be fully satisfied" in w for w in result.warnings)
            assert sum(weights[pid] for pid in members) <= 0.25 + 1e-9
            assert sum(weights.values()) == pytest.approx(1.0, abs=1e-9)

    def test_maximize_return_fills_best_first(self, optimizer, sample_positions, sample_analytics):
        from portfolio_engine.config import OptimizationConfig

        opt = OptimizationConfig(objective="maximize_return", min_allocation=0.1, max_allocation=0.6)
        weights = optimizer.optimize_portfolio(sample_positions, sample_analytics, opt).target_weights()

        assert weights["pos-sol-bonk"] == pytest.approx(0.6)
        assert weights["pos-sol-usdc"] == pytest.approx(0.3)
        assert weights["pos-eth-usdt"] == pytest.approx(0.1)

    def test_minimize_risk_beats_equal_weights(self, optimizer, sample_positions, sample_analytics):
        from portfolio_engine.config import OptimizationConfig
        from portfolio_engine.portfolio_optimizer import portfolio_risk

        result = optimizer.optimize_portfolio(
            sample_positions, sample_analytics, OptimizationConfig(objective="minimize_risk")
        )
        weights = [w.target_weight for w in result.weights]
        equal = [1 / 3] * 3

        assert result.expected_risk <= portfolio_risk(equal, result.covariance_matrix) + 1e-9
        # Lowest-volatility position carries the most weight
        assert max(result.weights, key=lambda w: w.target_weight).position_id == "pos-eth-usdt"
        assert sum(weights) == pytest.approx(1.0, abs=1e-9)

    def test_dict_config_accepted(self, optimizer, sample_positions, sample_analytics):
        result = optimizer.optimize_portfolio(
            sample_positions, sample_analytics, {"objective": "maximize_yield"}
        )
        assert result.objective == "maximize_yield"


class TestEdgeCases:
    """Tests for empty, single and constrained portfolios."""

    def test_empty_portfolio(self, optimizer):
        result = optimizer.optimize_portfolio([], [], owner_key="owner")

        assert result.status == "empty"
        assert result.weights == []
        assert result.actions == []

    def test_single_position(self, optimizer, sample_positions, sample_analytics):
        result = optimizer.optimize_portfolio(sample_positions[:1], sample_analytics[:1])

        assert result.target_weights() == {"pos-sol-usdc": pytest.approx(1.0)}
        assert result.actions == []
        assert result.weights[0].rationale == "Optimal allocation maintained"

    def test_infeasible_bounds(self, optimizer, sample_positions, sample_analytics):
        from portfolio_engine.config import OptimizationConfig
        from portfolio_engine.errors import ValidationError

        with pytest.raises(ValidationError):
            optimizer.optimize_portfolio(
                sample_positions, sample_analytics, OptimizationConfig(min_allocation=0.5)
            )
        with pytest.raises(ValidationError):
            optimizer.optimize_portfolio(
                sample_positions, sample_analytics, OptimizationConfig(max_allocation=0.2)
            )

    def test_max_positions_excludes_lowest_score(self, optimizer, sample_positions, sample_analytics):
        from portfolio_engine.config import OptimizationConfig

        opt = OptimizationConfig(objective="maximize_return", max_positions=2)
        result = optimizer.optimize_portfolio(sample_positions, sample_analytics, opt)
        excluded = [w for w in result.weights if w.rationale == "Excluded by position count limit"]

        assert [w.position_id for w in excluded] == ["pos-eth-usdt"]
        assert excluded[0].target_weight == 0.0

    def test_min_positions_warning(self, optimizer, sample_positions, sample_analytics):
        from portfolio_engine.config import OptimizationConfig

        result = optimizer.optimize_portfolio(
            sample_positions[:1], sample_analytics[:1], OptimizationConfig(min_positions=2)
        )
        assert any("minimum is 2" in w for w in result.warnings)

    def test_token_constraint_caps_group(self, optimizer, sample_positions, sample_analytics):
        from portfolio_engine.config import OptimizationConfig, TokenConstraint

        opt = OptimizationConfig(
            objective="maximize_return",
            token_constraints=(TokenConstraint("SOL", max_weight=0.3),)
        )
        weights = optimizer.optimize_portfolio(sample_positions, sample_analytics, opt).target_weights()

        assert weights["pos-sol-usdc"] + weights["pos-sol-bonk"] <= 0.3 + 1e-9
        assert sum(weights.values()) == pytest.approx(1.0, abs=1e-9)


class TestActionsAndPlan:
    """Tests for rebalancing actions and the implementation plan."""

    def test_actions_follow_threshold_and_buckets(self, optimizer, sample_positions, sample_analytics):
        from portfolio_engine.config import OptimizationConfig, ActionBuckets, PRIORITY_ORDER

        result = optimizer.optimize_portfolio(
            sample_positions, sample_analytics, OptimizationConfig(objective="maximize_return")
        )

        assert result.actions
        for action in result.actions:
            assert abs(action.weight_change) > 0.02
            assert action.priority == ActionBuckets.get_priority(action.weight_change)
            assert action.action_type == ("increase" if action.weight_change > 0 else "decrease")
            assert action.estimated_cost == pytest.approx(action.amount * 0.003)
        ranks = [PRIORITY_ORDER[a.priority] for a in result.actions]
        assert ranks == sorted(ranks)

    def test_plan_phases_cover_actions(self, optimizer, sample_positions, sample_analytics):
        from portfolio_engine.config import OptimizationConfig

        result = optimizer.optimize_portfolio(
            sample_positions, sample_analytics, OptimizationConfig(objective="maximize_return")
        )
        planned = [aid for phase in result.plan.phases for aid in phase.action_ids]

        assert sorted(planned) == sorted(a.action_id for a in result.actions)
        assert result.plan.total_cost == pytest.approx(sum(a.estimated_cost for a in result.actions))
        assert result.plan.expected_duration_days == 7 * len(result.plan.phases)
        assert result.plan.phases[0].dependencies == []

    def test_scenarios_and_sensitivity(self, optimizer, sample_positions, sample_analytics):
        result = optimizer.optimize_portfolio(sample_positions, sample_analytics)
        scenarios = result.scenarios

        assert scenarios.base.probability + scenarios.bull.probability + scenarios.bear.probability == pytest.approx(1.0)
        assert scenarios.probability_weighted_return == pytest.approx(
            0.6 * scenarios.base.expected_return
            + 0.2 * scenarios.bull.expected_return
            + 0.2 * scenarios.bear.expected_return
        )
        assert [c.name for c in scenarios.custom] == ["DeFi Summer 2.0"]
        assert [p.parameter for p in result.sensitivity.parameters] == ["risk_aversion", "correlation"]
        assert len(result.sensitivity.stress_tests) == 2
        assert 0.0 <= result.sensitivity.robustness_score <= 100.0


class TestCachingAndHistory:
    """Tests for cached results and optimization history."""

    def test_cached_result_reused(self, optimizer, sample_positions, sample_analytics):
        first = optimizer.optimize_portfolio(sample_positions, sample_analytics, owner_key="owner")
        second = optimizer.optimize_portfolio(sample_positions, sample_analytics, owner_key="owner")

        assert second is first
        assert len(optimizer.get_optimization_history()) == 1

    def test_cache_hit_skips_correlation_matrix(self, optimizer, market_data, sample_positions, sample_analytics):
        from unittest.mock import MagicMock

        engine = optimizer.correlation_engine
        engine.calculate_correlation_matrix = MagicMock(wraps=engine.calculate_correlation_matrix)

        first = optimizer.optimize_portfolio(sample_positions, sample_analytics, owner_key="owner")
        assert optimizer.optimize_portfolio(sample_positions, sample_analytics, owner_key="owner") is first
        assert engine.calculate_correlation_matrix.call_count == 1

        # New market estimates change the key and rebuild the model
        market_data.set_return("pos-eth-usdt", 0.3)
        second = optimizer.optimize_portfolio(sample_positions, sample_analytics, owner_key="owner")
        assert second is not first
        assert engine.calculate_correlation_matrix.call_count == 2

        market_data.set_correlation("pos-sol-usdc", "pos-eth-usdt", 0.9)
        assert optimizer.optimize_portfolio(sample_positions, sample_analytics, owner_key="owner") is not second
        assert engine.calculate_correlation_matrix.call_count == 3

    def test_force_refresh_recomputes(self, optimizer, sample_positions, sample_analytics):
        optimizer.optimize_portfolio(sample_positions, sample_analytics, owner_key="owner")
        optimizer.optimize_portfolio(
            sample_positions, sample_analytics, owner_key="owner", force_refresh=True
        )

        history = optimizer.get_optimization_history()
        assert len(history) == 2
        assert optimizer.get_optimization_history(limit=1) == history[:1]

    def test_to_dict(self, optimizer, sample_positions, sample_analytics):
        data = optimizer.optimize_portfolio(sample_positions, sample_analytics).to_dict()

        assert data["status"] == "optimized"
        assert len(data["weights"]) == 3
        assert len(data["covariance_matrix"]) == 3
