"""
Correlation & Risk Engine for portfolio_engine

Cross-position analysis of a liquidity portfolio: how positions move
together, where risk concentrates, and what could be improved.

Key Concepts:
- Pairwise correlation: weighted blend of price, return, volume and
  liquidity similarity, symmetric and within [-1, 1]
- Clusters: greedy grouping of positions whose correlation exceeds a
  threshold (default 0.6)
- Risk decomposition: marginal risk = volatility * weight, total risk =
  sqrt(sum(marginal^2)); the systematic/idiosyncratic/correlation/
  liquidity split is a configured apportionment of total risk
- Exposure: each position's value is split evenly between its two tokens

Market statistics (volatility, price correlation) come from the injected
MarketDataProvider. When the provider has no price correlation for a
pair, a token-overlap baseline is used instead.

Analyses are pure functions of (positions, analytics, provider state,
config) and are cached by a fingerprint of all of them.
"""

import logging
import math
import time
from collections import Counter
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional, Any, Sequence, Tuple

from .cache import ResultCache, fingerprint
from .config import EngineConfig, ConfigSnapshot, PRIORITY_ORDER
from .log import get_logger, log_message
from .market_data import MarketDataProvider
from .models import Position, PositionAnalytics, load_snapshot


# =============================================================================
# CONSTANTS
# =============================================================================

MAX_CLUSTERS = 5                    # Upper bound for the suggested cluster count
MIN_CLUSTERS = 2
MIN_HEALTHY_CLUSTERS = 3            # Fewer clusters -> suggest new asset categories
OVERWEIGHT_CLUSTER_SIZE = 3         # More members -> flag cluster as overweight
DOMINANT_TOKEN_COUNT = 3

VAR_Z_95 = 1.645                    # One-sided 95% normal quantile
ES_Z_95 = 2.063                     # phi(1.645) / 0.05

TOKEN_CONCENTRATION_LIMIT = 0.5     # A token above 50% of value is a risk
POOL_CONCENTRATION_LIMIT = 0.8      # Herfindahl of pool shares
RISK_SHARE_LIMIT = 20.0             # Percent of total risk
RISK_SHARE_EQUAL_MULTIPLE = 1.5     # ... and this multiple of an equal share

# (name, probability, per-position impact, mitigation)
RISK_SCENARIOS = (
    ("Market Stress", 0.15, -0.30, [
        "Reduce exposure to highly correlated positions",
        "Increase allocation to stable pairs",
        "Widen ranges to limit rebalancing during drawdowns",
    ]),
    ("Liquidity Crisis", 0.10, -0.15, [
        "Keep positions in deep pools",
        "Stagger exits across several transactions",
        "Hold a reserve outside of concentrated ranges",
    ]),
)


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass(frozen=True)
class CorrelationPair:
    """Correlation between two positions (stored once per unordered pair)."""
    position_a: str
    position_b: str
    pair_a: str
    pair_b: str
    price_correlation: float
    return_correlation: float
    volume_correlation: float
    liquidity_correlation: float
    overall_correlation: float
    risk_contribution: float
    diversification_benefit: float
    shared_tokens: Tuple[str, ...] = ()

    def involves(self, position_id: str) -> bool:
        return position_id in (self.position_a, self.position_b)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_a": self.position_a,
            "position_b": self.position_b,
            "pair_a": self.pair_a,
            "pair_b": self.pair_b,
            "price_correlation": round(self.price_correlation, 4),
            "return_correlation": round(self.return_correlation, 4),
            "volume_correlation": round(self.volume_correlation, 4),
            "liquidity_correlation": round(self.liquidity_correlation, 4),
            "overall_correlation": round(self.overall_correlation, 4),
            "risk_contribution": round(self.risk_contribution, 4),
            "diversification_benefit": round(self.diversification_benefit, 2),
            "shared_tokens": list(self.shared_tokens),
        }


@dataclass
class PositionCluster:
    cluster_id: str
    position_ids: List[str]
    avg_volatility: float = 0.0
    avg_apr: float = 0.0
    avg_liquidity: float = 0.0
    dominant_tokens: List[str] = field(default_factory=list)
    coherence_score: float = 1.0
    risk_level: str = "low"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cluster_id": self.cluster_id,
            "position_ids": list(self.position_ids),
            "centroid": {
                "avg_volatility": round(self.avg_volatility, 4),
                "avg_apr": round(self.avg_apr, 4),
                "avg_liquidity": round(self.avg_liquidity, 4),
                "dominant_tokens": list(self.dominant_tokens),
            },
            "coherence_score": round(self.coherence_score, 4),
            "risk_level": self.risk_level,
        }


@dataclass
class ClusterAnalysis:
    clusters: List[PositionCluster] = field(default_factory=list)
    optimal_cluster_count: int = 0
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "clusters": [c.to_dict() for c in self.clusters],
            "cluster_count": len(self.clusters),
            "optimal_cluster_count": self.optimal_cluster_count,
            "recommendations": list(self.recommendations),
        }


@dataclass
class CorrelationMatrix:
    position_ids: List[str] = field(default_factory=list)
    pairs: List[CorrelationPair] = field(default_factory=list)
    average_correlation: float = 0.0
    max_correlation: float = 0.0
    min_correlation: float = 0.0
    cluster_analysis: ClusterAnalysis = field(default_factory=ClusterAnalysis)

    def get(self, a: str, b: str) -> Optional[float]:
        """Overall correlation for a pair in either order; 1.0 on the diagonal."""
        if a == b:
            return 1.0
        for pair in self.pairs:
            if (pair.position_a == a and pair.position_b == b) or \
               (pair.position_a == b and pair.position_b == a):
                return pair.overall_correlation
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_ids": list(self.position_ids),
            "pairs": [p.to_dict() for p in self.pairs],
            "average_correlation": round(self.average_correlation, 4),
            "max_correlation": round(self.max_correlation, 4),
            "min_correlation": round(self.min_correlation, 4),
            "cluster_analysis": self.cluster_analysis.to_dict(),
        }


@dataclass(frozen=True)
class RiskContribution:
    position_id: str
    pair: str
    weight: float
    volatility: float
    marginal_risk: float
    component_risk: float
    risk_percentage: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_id": self.position_id,
            "pair": self.pair,
            "weight": round(self.weight, 4),
            "volatility": round(self.volatility, 4),
            "marginal_risk": round(self.marginal_risk, 6),
            "component_risk": round(self.component_risk, 6),
            "risk_percentage": round(self.risk_percentage, 2),
        }


@dataclass
class RiskScenario:
    name: str
    probability: float
    impact: float
    position_impacts: Dict[str, float] = field(default_factory=dict)
    mitigation: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "probability": self.probability,
            "impact": round(self.impact, 4),
            "position_impacts": {k: round(v, 4) for k, v in self.position_impacts.items()},
            "mitigation": list(self.mitigation),
        }


@dataclass
class RiskDecomposition:
    """
    Portfolio risk split.

    Only total_risk, concentration_risk and the contributions are derived
    from data. The other four components are configured fractions of
    total_risk.
    """
    total_risk: float = 0.0
    systematic_risk: float = 0.0
    idiosyncratic_risk: float = 0.0
    concentration_risk: float = 0.0
    correlation_risk: float = 0.0
    liquidity_risk: float = 0.0
    contributions: List[RiskContribution] = field(default_factory=list)
    scenarios: List[RiskScenario] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_risk": round(self.total_risk, 6),
            "systematic_risk": round(self.systematic_risk, 6),
            "idiosyncratic_risk": round(self.idiosyncratic_risk, 6),
            "concentration_risk": round(self.concentration_risk, 4),
            "correlation_risk": round(self.correlation_risk, 6),
            "liquidity_risk": round(self.liquidity_risk, 6),
            "contributions": [c.to_dict() for c in self.contributions],
            "scenarios": [s.to_dict() for s in self.scenarios],
        }


@dataclass
class TokenExposure:
    token: str
    value: float
    percentage: float
    position_ids: List[str] = field(default_factory=list)


@dataclass
class PairExposure:
    pair: str
    value: float
    percentage: float
    position_count: int
    average_apr: float


@dataclass
class ExposureAnalysis:
    total_value: float = 0.0
    tokens: List[TokenExposure] = field(default_factory=list)
    pairs: List[PairExposure] = field(default_factory=list)
    pool_shares: Dict[str, float] = field(default_factory=dict)
    concentration_score: float = 0.0
    risks: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_value": round(self.total_value, 4),
            "tokens": [
                {"token": t.token, "value": round(t.value, 4),
                 "percentage": round(t.percentage, 2), "position_ids": list(t.position_ids)}
                for t in self.tokens
            ],
            "pairs": [
                {"pair": p.pair, "value": round(p.value, 4), "percentage": round(p.percentage, 2),
                 "position_count": p.position_count, "average_apr": round(p.average_apr, 4)}
                for p in self.pairs
            ],
            "pool_shares": {k: round(v, 4) for k, v in self.pool_shares.items()},
            "concentration_score": round(self.concentration_score, 4),
            "risks": list(self.risks),
        }


@dataclass(frozen=True)
class PositionAttribution:
    position_id: str
    weight: float
    position_return: float
    return_contribution: float
    allocation_effect: float
    selection_effect: float


@dataclass
class PerformanceAttribution:
    portfolio_return: float = 0.0
    benchmark_return: float = 0.0
    excess_return: float = 0.0
    positions: List[PositionAttribution] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "portfolio_return": round(self.portfolio_return, 6),
            "benchmark_return": round(self.benchmark_return, 6),
            "excess_return": round(self.excess_return, 6),
            "positions": [
                {k: (round(v, 6) if isinstance(v, float) else v) for k, v in asdict(p).items()}
                for p in self.positions
            ],
        }


@dataclass
class PortfolioMetrics:
    total_value: float = 0.0
    position_count: int = 0
    portfolio_return: float = 0.0
    volatility: float = 0.0
    sharpe_ratio: float = 0.0
    value_at_risk: float = 0.0
    expected_shortfall: float = 0.0
    diversification_ratio: float = 1.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_value": round(self.total_value, 4),
            "position_count": self.position_count,
            "portfolio_return": round(self.portfolio_return, 6),
            "volatility": round(self.volatility, 6),
            "sharpe_ratio": round(self.sharpe_ratio, 4),
            "value_at_risk_95": round(self.value_at_risk, 4),
            "expected_shortfall_95": round(self.expected_shortfall, 4),
            "diversification_ratio": round(self.diversification_ratio, 4),
        }


@dataclass
class OptimizationOpportunity:
    opportunity_type: str
    priority: str
    description: str
    affected_positions: List[str]
    expected_benefit: float
    implementation: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.opportunity_type,
            "priority": self.priority,
            "description": self.description,
            "affected_positions": list(self.affected_positions),
            "expected_benefit": round(self.expected_benefit, 4),
            "implementation": list(self.implementation),
        }


@dataclass
class CrossPositionAnalytics:
    """Full cross-position analysis of one owner's portfolio."""
    analysis_id: str
    owner_key: str
    position_ids: List[str]
    correlation_matrix: CorrelationMatrix
    risk_decomposition: RiskDecomposition
    exposure: ExposureAnalysis
    attribution: PerformanceAttribution
    metrics: PortfolioMetrics
    opportunities: List[OptimizationOpportunity]
    calculated_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "analysis_id": self.analysis_id,
            "owner_key": self.owner_key,
            "position_ids": list(self.position_ids),
            "correlation_matrix": self.correlation_matrix.to_dict(),
            "risk_decomposition": self.risk_decomposition.to_dict(),
            "exposure": self.exposure.to_dict(),
            "performance_attribution": self.attribution.to_dict(),
            "portfolio_metrics": self.metrics.to_dict(),
            "optimization_opportunities": [o.to_dict() for o in self.opportunities],
            "calculated_at": self.calculated_at,
        }


def value_weights(positions: Sequence[Position]) -> List[float]:
    """Value share of each position (equal shares when nothing has value)."""
    n = len(positions)
    if n == 0:
        return []
    total = sum(p.value for p in positions)
    if total <= 0:
        return [1.0 / n] * n
    return [p.value / total for p in positions]


# =============================================================================
# ENGINE
# =============================================================================

class CorrelationRiskEngine:
    """
    Cross-position correlation, clustering and risk analysis.
    """

    def __init__(
        self,
        market_data: MarketDataProvider,
        config: Optional[EngineConfig] = None,
        cache: Optional[ResultCache] = None,
        logger: Optional[logging.Logger] = None,
        clock=time.time
    ):
        """
        Args:
            market_data: Source of volatilities and price correlations
            config: Engine tunables (defaults when omitted)
            cache: Shared result cache (a private one when omitted)
            logger: Optional logger
            clock: Wall-clock source for timestamps
        """
        self.market_data = market_data
        self.config = config or EngineConfig()
        self.cache = cache or ResultCache(ttl_seconds=self.config.analysis_cache_ttl)
        self.logger = get_logger("correlation", logger)
        self._clock = clock

    def log(self, msg: str, level: str = "info") -> None:
        log_message(self.logger, "CorrelationRiskEngine", msg, level)

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    def analyze_multiple_positions(
        self,
        positions: Sequence[Any],
        analytics: Sequence[Any],
        owner_key: str,
        force_refresh: bool = False
    ) -> CrossPositionAnalytics:
        """
        Full cross-position analysis.

        Identical inputs within the analysis TTL return the cached result
        object unless force_refresh is set.

        Raises:
            ValidationError: malformed or mismatched inputs
        """
        positions, analytics = load_snapshot(positions, analytics)
        cfg = self.config.snapshot()

        key = self._cache_key(positions, analytics, owner_key, cfg)
        result, cached = self.cache.get_or_compute(
            key,
            lambda: self._analyze(positions, analytics, owner_key, cfg, key),
            ttl=cfg.analysis_cache_ttl,
            force_refresh=force_refresh
        )
        if cached:
            self.log(f"Cache hit for {owner_key} ({len(positions)} positions)", level="debug")
        return result

    def clear_cache(self) -> None:
        self.cache.clear()

    def cache_stats(self) -> Dict[str, Any]:
        return self.cache.stats()

    def _cache_key(
        self,
        positions: List[Position],
        analytics: List[PositionAnalytics],
        owner_key: str,
        cfg: ConfigSnapshot
    ) -> str:
        market = [
            (p.id, self.market_data.volatility(p), self.market_data.expected_return(p))
            for p in positions
        ]
        correlations = [
            (a.id, b.id, self.market_data.price_correlation(a, b))
            for i, a in enumerate(positions) for b in positions[i + 1:]
        ]
        return fingerprint(
            "cross_position_analysis",
            owner_key,
            [p.to_dict() for p in positions],
            [asdict(a) for a in analytics],
            market,
            correlations,
            asdict(cfg),
        )

    def _analyze(
        self,
        positions: List[Position],
        analytics: List[PositionAnalytics],
        owner_key: str,
        cfg: ConfigSnapshot,
        key: str
    ) -> CrossPositionAnalytics:
        start = time.monotonic()

        matrix = self.calculate_correlation_matrix(positions, analytics, cfg)
        risk = self.decompose_risk(positions, cfg)
        exposure = self.analyze_exposure(positions, analytics)
        attribution = self.attribute_performance(positions, analytics, cfg)
        metrics = self.calculate_portfolio_metrics(positions, analytics, matrix, cfg)
        opportunities = self.identify_opportunities(matrix, risk, exposure, cfg)

        self.log(
            f"Analyzed {len(positions)} positions for {owner_key}: "
            f"{len(matrix.cluster_analysis.clusters)} clusters, "
            f"total risk {risk.total_risk:.4f}, {len(opportunities)} opportunities "
            f"in {time.monotonic() - start:.3f}s"
        )

        return CrossPositionAnalytics(
            analysis_id=f"analysis-{key[:12]}",
            owner_key=owner_key,
            position_ids=[p.id for p in positions],
            correlation_matrix=matrix,
            risk_decomposition=risk,
            exposure=exposure,
            attribution=attribution,
            metrics=metrics,
            opportunities=opportunities,
            calculated_at=self._clock()
        )

    # =========================================================================
    # CORRELATION
    # =========================================================================

    def calculate_pairwise_correlation(
        self,
        pos_a: Position,
        pos_b: Position,
        analytics_a: PositionAnalytics,
        analytics_b: PositionAnalytics,
        cfg: Optional[ConfigSnapshot] = None
    ) -> CorrelationPair:
        """
        Correlation between two positions.

        Every component is symmetric in its arguments, so the result does
        not depend on the order of a and b.
        """
        cfg = cfg or self.config.snapshot()
        shared = tuple(sorted(set(pos_a.tokens) & set(pos_b.tokens)))

        provided = self.market_data.price_correlation(pos_a, pos_b)
        if provided is not None:
            price_corr = max(-1.0, min(1.0, provided))
        elif shared:
            price_corr = cfg.shared_token_price_correlation
        else:
            price_corr = cfg.distinct_token_price_correlation

        return_corr = max(0.0, 1.0 - abs(analytics_a.pnl_percent - analytics_b.pnl_percent) / 100)

        volume_corr = (
            cfg.shared_token_volume_correlation if shared
            else cfg.distinct_token_volume_correlation
        )

        liq_a, liq_b = pos_a.liquidity_amount, pos_b.liquidity_amount
        larger = max(liq_a, liq_b)
        ratio = min(liq_a, liq_b) / larger if larger > 0 else 1.0
        liquidity_corr = ratio * 0.5 + 0.25

        w_price, w_return, w_volume, w_liquidity = cfg.correlation_weights()
        overall = (
            price_corr * w_price
            + return_corr * w_return
            + volume_corr * w_volume
            + liquidity_corr * w_liquidity
        )
        overall = max(-1.0, min(1.0, overall))

        return CorrelationPair(
            position_a=pos_a.id,
            position_b=pos_b.id,
            pair_a=pos_a.pair,
            pair_b=pos_b.pair,
            price_correlation=price_corr,
            return_correlation=return_corr,
            volume_correlation=volume_corr,
            liquidity_correlation=liquidity_corr,
            overall_correlation=overall,
            risk_contribution=overall * math.sqrt(pos_a.value * pos_b.value),
            diversification_benefit=max(0.0, (1.0 - overall) * 100),
            shared_tokens=shared
        )

    def calculate_correlation_matrix(
        self,
        positions: Sequence[Position],
        analytics: Sequence[PositionAnalytics],
        cfg: Optional[ConfigSnapshot] = None
    ) -> CorrelationMatrix:
        cfg = cfg or self.config.snapshot()
        pairs: List[CorrelationPair] = []
        n = len(positions)
        for i in range(n):
            for j in range(i + 1, n):
                pairs.append(self.calculate_pairwise_correlation(
                    positions[i], positions[j], analytics[i], analytics[j], cfg
                ))

        values = [p.overall_correlation for p in pairs]
        matrix = CorrelationMatrix(
            position_ids=[p.id for p in positions],
            pairs=pairs,
            average_correlation=sum(values) / len(values) if values else 0.0,
            max_correlation=max(values) if values else 0.0,
            min_correlation=min(values) if values else 0.0,
        )
        matrix.cluster_analysis = self.cluster_positions(positions, analytics, matrix, cfg)
        return matrix

    # =========================================================================
    # CLUSTERING
    # =========================================================================

    def cluster_positions(
        self,
        positions: Sequence[Position],
        analytics: Sequence[PositionAnalytics],
        matrix: CorrelationMatrix,
        cfg: Optional[ConfigSnapshot] = None
    ) -> ClusterAnalysis:
        """
        Greedy clustering in input order.

        A position joins the first cluster holding any member it is
        correlated with above the threshold; otherwise it opens a new one.
        """
        cfg = cfg or self.config.snapshot()
        if not positions:
            return ClusterAnalysis()

        groups: List[List[int]] = []
        for i, pos in enumerate(positions):
            placed = False
            for group in groups:
                if any(
                    (matrix.get(pos.id, positions[j].id) or 0.0) > cfg.cluster_threshold
                    for j in group
                ):
                    group.append(i)
                    placed = True
                    break
            if not placed:
                groups.append([i])

        clusters = []
        for k, group in enumerate(groups, start=1):
            members = [positions[i] for i in group]
            token_counts = Counter(t for p in members for t in p.tokens)
            intra = [
                matrix.get(members[a].id, members[b].id) or 0.0
                for a in range(len(members)) for b in range(a + 1, len(members))
            ]
            size = len(members)
            if size > 5:
                risk_level = "high"
            elif size > 2:
                risk_level = "medium"
            else:
                risk_level = "low"

            clusters.append(PositionCluster(
                cluster_id=f"cluster-{k}",
                position_ids=[p.id for p in members],
                avg_volatility=sum(self.market_data.volatility(p) for p in members) / size,
                avg_apr=sum(analytics[i].apr for i in group) / size,
                avg_liquidity=sum(p.liquidity_amount for p in members) / size,
                dominant_tokens=[t for t, _ in token_counts.most_common(DOMINANT_TOKEN_COUNT)],
                coherence_score=sum(intra) / len(intra) if intra else 1.0,
                risk_level=risk_level
            ))

        recommendations = []
        if len(clusters) < MIN_HEALTHY_CLUSTERS:
            recommendations.append("Consider diversifying into additional asset categories")
        for cluster in clusters:
            if len(cluster.position_ids) > OVERWEIGHT_CLUSTER_SIZE:
                recommendations.append(
                    f"Cluster {cluster.cluster_id} is overweight - consider rebalancing"
                )

        n = len(positions)
        optimal = min(MAX_CLUSTERS, max(MIN_CLUSTERS, int(round(math.sqrt(n)))))

        return ClusterAnalysis(
            clusters=clusters,
            optimal_cluster_count=optimal,
            recommendations=recommendations
        )

    # =========================================================================
    # RISK
    # =========================================================================

    def decompose_risk(
        self,
        positions: Sequence[Position],
        cfg: Optional[ConfigSnapshot] = None
    ) -> RiskDecomposition:
        """
        Split portfolio risk into per-position contributions.

        component_risk = marginal^2 / total_risk, so the components add up
        to total_risk and risk_percentage adds up to 100.
        """
        cfg = cfg or self.config.snapshot()
        if not positions:
            return RiskDecomposition()

        weights = value_weights(positions)
        vols = [self.market_data.volatility(p) for p in positions]
        marginals = [v * w for v, w in zip(vols, weights)]
        total_risk = math.sqrt(sum(m ** 2 for m in marginals))

        contributions = []
        for pos, w, v, m in zip(positions, weights, vols, marginals):
            component = m ** 2 / total_risk if total_risk > 0 else 0.0
            contributions.append(RiskContribution(
                position_id=pos.id,
                pair=pos.pair,
                weight=w,
                volatility=v,
                marginal_risk=m,
                component_risk=component,
                risk_percentage=component / total_risk * 100 if total_risk > 0 else 0.0
            ))

        herfindahl = sum(w ** 2 for w in weights)

        scenarios = []
        for name, probability, impact, mitigation in RISK_SCENARIOS:
            position_impacts = {p.id: impact for p in positions}
            scenarios.append(RiskScenario(
                name=name,
                probability=probability,
                impact=sum(w * impact for w in weights),
                position_impacts=position_impacts,
                mitigation=list(mitigation)
            ))

        return RiskDecomposition(
            total_risk=total_risk,
            systematic_risk=total_risk * cfg.systematic_risk_fraction,
            idiosyncratic_risk=total_risk * cfg.idiosyncratic_risk_fraction,
            concentration_risk=herfindahl * 100,
            correlation_risk=total_risk * cfg.correlation_risk_fraction,
            liquidity_risk=total_risk * cfg.liquidity_risk_fraction,
            contributions=contributions,
            scenarios=scenarios
        )

    # =========================================================================
    # EXPOSURE & ATTRIBUTION
    # =========================================================================

    def analyze_exposure(
        self,
        positions: Sequence[Position],
        analytics: Sequence[PositionAnalytics]
    ) -> ExposureAnalysis:
        if not positions:
            return ExposureAnalysis()

        total_value = sum(p.value for p in positions)
        weights = value_weights(positions)

        token_values: Dict[str, float] = {}
        token_positions: Dict[str, List[str]] = {}
        pair_values: Dict[str, float] = {}
        pair_aprs: Dict[str, List[float]] = {}
        pool_shares: Dict[str, float] = {}

        for pos, an, w in zip(positions, analytics, weights):
            for token in pos.tokens:
                token_values[token] = token_values.get(token, 0.0) + pos.value / 2
                token_positions.setdefault(token, [])
                if pos.id not in token_positions[token]:
                    token_positions[token].append(pos.id)
            pair_values[pos.pair] = pair_values.get(pos.pair, 0.0) + pos.value
            pair_aprs.setdefault(pos.pair, []).append(an.apr)
            pool_shares[pos.pool_id] = pool_shares.get(pos.pool_id, 0.0) + w

        def pct(value: float) -> float:
            return value / total_value * 100 if total_value > 0 else 0.0

        tokens = sorted(
            (TokenExposure(token=t, value=v, percentage=pct(v), position_ids=token_positions[t])
             for t, v in token_values.items()),
            key=lambda e: (-e.value, e.token)
        )
        pairs = sorted(
            (PairExposure(
                pair=pair,
                value=v,
                percentage=pct(v),
                position_count=len(pair_aprs[pair]),
                average_apr=sum(pair_aprs[pair]) / len(pair_aprs[pair])
            ) for pair, v in pair_values.items()),
            key=lambda e: (-e.value, e.pair)
        )

        risks = [
            f"Token concentration: {t.token} is {t.percentage:.1f}% of portfolio value"
            for t in tokens if t.percentage > TOKEN_CONCENTRATION_LIMIT * 100
        ]

        return ExposureAnalysis(
            total_value=total_value,
            tokens=tokens,
            pairs=pairs,
            pool_shares=pool_shares,
            concentration_score=sum(s ** 2 for s in pool_shares.values()),
            risks=risks
        )

    def attribute_performance(
        self,
        positions: Sequence[Position],
        analytics: Sequence[PositionAnalytics],
        cfg: Optional[ConfigSnapshot] = None
    ) -> PerformanceAttribution:
        cfg = cfg or self.config.snapshot()
        if not positions:
            return PerformanceAttribution(benchmark_return=cfg.benchmark_return)

        weights = value_weights(positions)
        returns = [a.pnl_percent / 100 for a in analytics]
        portfolio_return = sum(w * r for w, r in zip(weights, returns))

        entries = [
            PositionAttribution(
                position_id=pos.id,
                weight=w,
                position_return=r,
                return_contribution=w * r,
                allocation_effect=w * (r - portfolio_return),
                selection_effect=w * (r - cfg.benchmark_return)
            )
            for pos, w, r in zip(positions, weights, returns)
        ]

        return PerformanceAttribution(
            portfolio_return=portfolio_return,
            benchmark_return=cfg.benchmark_return,
            excess_return=portfolio_return - cfg.benchmark_return,
            positions=entries
        )

    # =========================================================================
    # PORTFOLIO METRICS
    # =========================================================================

    def calculate_portfolio_metrics(
        self,
        positions: Sequence[Position],
        analytics: Sequence[PositionAnalytics],
        matrix: CorrelationMatrix,
        cfg: Optional[ConfigSnapshot] = None
    ) -> PortfolioMetrics:
        cfg = cfg or self.config.snapshot()
        if not positions:
            return PortfolioMetrics()

        n = len(positions)
        weights = value_weights(positions)
        vols = [self.market_data.volatility(p) for p in positions]
        total_value = sum(p.value for p in positions)
        portfolio_return = sum(w * a.pnl_percent / 100 for w, a in zip(weights, analytics))

        variance = 0.0
        for i in range(n):
            for j in range(n):
                corr = matrix.get(positions[i].id, positions[j].id) or 0.0
                variance += weights[i] * weights[j] * vols[i] * vols[j] * corr
        volatility = math.sqrt(max(variance, 0.0))

        weighted_vol = sum(w * v for w, v in zip(weights, vols))
        sharpe = (portfolio_return - cfg.risk_free_rate) / volatility if volatility > 0 else 0.0

        return PortfolioMetrics(
            total_value=total_value,
            position_count=n,
            portfolio_return=portfolio_return,
            volatility=volatility,
            sharpe_ratio=sharpe,
            value_at_risk=VAR_Z_95 * volatility * total_value,
            expected_shortfall=ES_Z_95 * volatility * total_value,
            diversification_ratio=weighted_vol / volatility if volatility > 0 else 1.0
        )

    # =========================================================================
    # OPPORTUNITIES
    # =========================================================================

    def identify_opportunities(
        self,
        matrix: CorrelationMatrix,
        risk: RiskDecomposition,
        exposure: ExposureAnalysis,
        cfg: Optional[ConfigSnapshot] = None
    ) -> List[OptimizationOpportunity]:
        cfg = cfg or self.config.snapshot()
        opportunities: List[OptimizationOpportunity] = []

        high_pairs = [p for p in matrix.pairs if p.overall_correlation > cfg.high_correlation_threshold]
        if high_pairs:
            affected = sorted({pid for p in high_pairs for pid in (p.position_a, p.position_b)})
            avg_high = sum(p.overall_correlation for p in high_pairs) / len(high_pairs)
            opportunities.append(OptimizationOpportunity(
                opportunity_type="correlation_reduction",
                priority="high",
                description=f"{len(high_pairs)} position pairs are highly correlated",
                affected_positions=affected,
                expected_benefit=max(0.0, avg_high - matrix.average_correlation),
                implementation=[
                    "Consolidate overlapping positions",
                    "Rotate part of the allocation into uncorrelated pairs",
                ]
            ))

        if exposure.concentration_score > POOL_CONCENTRATION_LIMIT:
            opportunities.append(OptimizationOpportunity(
                opportunity_type="liquidity_optimization",
                priority="medium",
                description="Liquidity is concentrated in few pools",
                affected_positions=[c.position_id for c in risk.contributions],
                expected_benefit=exposure.concentration_score - POOL_CONCENTRATION_LIMIT,
                implementation=["Spread liquidity across additional pools"]
            ))

        n = len(risk.contributions)
        if n > 1:
            equal_share = 100.0 / n
            limit = max(RISK_SHARE_LIMIT, equal_share * RISK_SHARE_EQUAL_MULTIPLE)
            heavy = [c for c in risk.contributions if c.risk_percentage > limit]
            if heavy:
                opportunities.append(OptimizationOpportunity(
                    opportunity_type="risk_rebalancing",
                    priority="medium",
                    description=f"{len(heavy)} positions carry a disproportionate share of risk",
                    affected_positions=[c.position_id for c in heavy],
                    expected_benefit=sum(c.risk_percentage - equal_share for c in heavy) / 100,
                    implementation=["Reduce allocation to the highest risk contributors"]
                ))

        opportunities.sort(
            key=lambda o: (PRIORITY_ORDER.get(o.priority, 4), -o.expected_benefit)
        )
        return opportunities
