"""
Tests for cross-position correlation and risk analysis.
"""

import pytest


@pytest.fixture
def engine(market_data, engine_config, clock):
    from portfolio_engine.cache import ResultCache
    from portfolio_engine.correlation_engine import CorrelationRiskEngine

    return CorrelationRiskEngine(
        market_data, config=engine_config, cache=ResultCache(clock=clock), clock=clock
    )


class TestPairwiseCorrelation:
    """Tests for the blended pairwise correlation."""

    def test_symmetric(self, engine, sample_positions, sample_analytics):
        a, b = sample_positions[0], sample_positions[2]
        an_a, an_b = sample_analytics[0], sample_analytics[2]

        ab = engine.calculate_pairwise_correlation(a, b, an_a, an_b)
        ba = engine.calculate_pairwise_correlation(b, a, an_b, an_a)
        assert ab.overall_correlation == pytest.approx(ba.overall_correlation)

    def test_shared_token_components(self, engine, sample_positions, sample_analytics):
        pair = engine.calculate_pairwise_correlation(
            sample_positions[0], sample_positions[1], sample_analytics[0], sample_analytics[1]
        )

        assert pair.shared_tokens == ("SOL",)
        assert pair.price_correlation == 0.8
        assert pair.volume_correlation == 0.6
        # 1 - |5 - (-2)| / 100
        assert pair.return_correlation == pytest.approx(0.93)
        # liquidity 10 vs 20
        assert pair.liquidity_correlation == pytest.approx(0.5)
        assert pair.overall_correlation == pytest.approx(0.32 + 0.279 + 0.12 + 0.05)

    def test_shared_token_above_distinct(self, engine, sample_positions, sample_analytics):
        shared = engine.calculate_pairwise_correlation(
            sample_positions[0], sample_positions[1], sample_analytics[0], sample_analytics[1]
        )
        distinct = engine.calculate_pairwise_correlation(
            sample_positions[0], sample_positions[2], sample_analytics[0], sample_analytics[2]
        )
        assert shared.overall_correlation > distinct.overall_correlation
        assert distinct.shared_tokens == ()

    def test_provider_price_correlation_wins(self, engine, market_data, sample_positions, sample_analytics):
        market_data.set_correlation("pos-sol-usdc", "pos-eth-usdt", 0.95)
        pair = engine.calculate_pairwise_correlation(
            sample_positions[0], sample_positions[2], sample_analytics[0], sample_analytics[2]
        )
        assert pair.price_correlation == 0.95

    def test_overall_within_bounds(self, engine, make_position):
        from portfolio_engine.models import PositionAnalytics

        a = make_position("a", liquidity=0.0)
        b = make_position("b", liquidity=0.0)
        pair = engine.calculate_pairwise_correlation(
            a, b, PositionAnalytics(pnl_percent=500), PositionAnalytics(pnl_percent=-500)
        )
        assert -1.0 <= pair.overall_correlation <= 1.0
        assert pair.return_correlation == 0.0
        assert pair.liquidity_correlation == 0.75


class TestCorrelationMatrix:
    """Tests for the matrix and clustering."""

    def test_diagonal_and_lookup(self, engine, sample_positions, sample_analytics):
        matrix = engine.calculate_correlation_matrix(sample_positions, sample_analytics)

        assert len(matrix.pairs) == 3
        assert matrix.get("pos-sol-usdc", "pos-sol-usdc") == 1.0
        assert matrix.get("pos-sol-usdc", "pos-sol-bonk") == matrix.get("pos-sol-bonk", "pos-sol-usdc")
        assert matrix.get("pos-sol-usdc", "unknown") is None
        assert matrix.min_correlation <= matrix.average_correlation <= matrix.max_correlation

    def test_clusters_group_shared_tokens(self, engine, sample_positions, sample_analytics):
        matrix = engine.calculate_correlation_matrix(sample_positions, sample_analytics)
        clusters = matrix.cluster_analysis.clusters

        assert len(clusters) == 2
        assert clusters[0].position_ids == ["pos-sol-usdc", "pos-sol-bonk"]
        assert clusters[0].dominant_tokens[0] == "SOL"
        assert clusters[1].position_ids == ["pos-eth-usdt"]
        assert clusters[1].coherence_score == 1.0

    def test_every_position_in_exactly_one_cluster(self, engine, sample_positions, sample_analytics):
        matrix = engine.calculate_correlation_matrix(sample_positions, sample_analytics)
        clustered = [pid for c in matrix.cluster_analysis.clusters for pid in c.position_ids]

        assert sorted(clustered) == sorted(p.id for p in sample_positions)
        assert len(matrix.cluster_analysis.clusters) <= len(sample_positions)

    def test_optimal_cluster_count_bounds(self, engine, make_position):
        from portfolio_engine.models import PositionAnalytics

        one = [make_position("only")]
        analysis = engine.cluster_positions(one, [PositionAnalytics()], engine.calculate_correlation_matrix(one, [PositionAnalytics()]))
        assert analysis.optimal_cluster_count == 2


class TestRiskDecomposition:
    """Tests for per-position risk contributions."""

    def test_empty_portfolio(self, engine):
        risk = engine.decompose_risk([])
        assert risk.total_risk == 0.0
        assert risk.contributions == []

    def test_percentages_sum_to_100(self, engine, sample_positions):
        risk = engine.decompose_risk(sample_positions)

        assert sum(c.risk_percentage for c in risk.contributions) == pytest.approx(100.0)
        assert sum(c.component_risk for c in risk.contributions) == pytest.approx(risk.total_risk)
        assert risk.systematic_risk == pytest.approx(risk.total_risk * 0.7)
        assert [s.name for s in risk.scenarios] == ["Market Stress", "Liquidity Crisis"]


class TestExposure:
    """Tests for token and pool exposure."""

    def test_token_value_split(self, engine, sample_positions, sample_analytics):
        exposure = engine.analyze_exposure(sample_positions, sample_analytics)
        sol = next(t for t in exposure.tokens if t.token == "SOL")

        assert sol.value == pytest.approx((1010.0 + 500.0001) / 2)
        assert sol.position_ids == ["pos-sol-usdc", "pos-sol-bonk"]
        assert exposure.risks == []
        assert sum(exposure.pool_shares.values()) == pytest.approx(1.0)

    def test_token_concentration_limit_is_strict(self, engine, make_position):
        from portfolio_engine.models import PositionAnalytics

        positions = [
            make_position("a", x=("SOL", 100.0), y=("USDC", 1.0)),
            make_position("b", x=("SOL", 100.0), y=("USDT", 1.0)),
        ]
        exposure = engine.analyze_exposure(positions, [PositionAnalytics(), PositionAnalytics()])

        sol = next(t for t in exposure.tokens if t.token == "SOL")
        assert sol.percentage == pytest.approx(50.0)
        assert exposure.risks == []

    def test_same_token_pair_concentration_flagged(self, engine, make_position):
        from portfolio_engine.models import PositionAnalytics

        positions = [make_position("a", x=("SOL", 100.0), y=("SOL", 100.0))]
        exposure = engine.analyze_exposure(positions, [PositionAnalytics()])
        assert any("SOL" in r for r in exposure.risks)


class TestAnalyzeMultiplePositions:
    """Tests for the full cached analysis."""

    def test_cached_result_is_reused(self, engine, sample_positions, sample_analytics):
        first = engine.analyze_multiple_positions(sample_positions, sample_analytics, "owner")
        second = engine.analyze_multiple_positions(sample_positions, sample_analytics, "owner")
        refreshed = engine.analyze_multiple_positions(
            sample_positions, sample_analytics, "owner", force_refresh=True
        )

        assert second is first
        assert refreshed is not first
        assert refreshed.analysis_id == first.analysis_id

    def test_market_change_invalidates(self, engine, market_data, sample_positions, sample_analytics):
        first = engine.analyze_multiple_positions(sample_positions, sample_analytics, "owner")
        market_data.set_volatility("pos-eth-usdt", 0.9)
        second = engine.analyze_multiple_positions(sample_positions, sample_analytics, "owner")

        assert second is not first

    def test_mismatched_inputs(self, engine, sample_positions, sample_analytics):
        from portfolio_engine.errors import ValidationError

        with pytest.raises(ValidationError):
            engine.analyze_multiple_positions(sample_positions, sample_analytics[:1], "owner")

    def test_metrics_and_opportunities(self, engine, sample_positions, sample_analytics):
        result = engine.analyze_multiple_positions(sample_positions, sample_analytics, "owner")

        assert result.metrics.position_count == 3
        assert result.metrics.value_at_risk == pytest.approx(
            1.645 * result.metrics.volatility * result.metrics.total_value
        )
        assert result.metrics.diversification_ratio >= 1.0
        assert result.to_dict()["owner_key"] == "owner"

    def test_single_position_pool_concentration(self, engine, make_position):
        from portfolio_engine.models import PositionAnalytics

        result = engine.analyze_multiple_positions([make_position("solo")], [PositionAnalytics()], "owner")
        types = [o.opportunity_type for o in result.opportunities]
        assert "liquidity_optimization" in types
        assert result.correlation_matrix.pairs == []
