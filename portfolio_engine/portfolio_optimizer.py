"""
Portfolio Optimizer module for portfolio_engine

Mean-variance style allocation across liquidity positions.

Treats positions as assets in a portfolio and solves for target weights
under one of five objectives:
- maximize_return: bounded linear program (greedy fill in return order)
- minimize_risk: bounded quadratic program min w'Cw (projected gradient)
- maximize_sharpe: weight proportional to excess return over risk-free
- maximize_yield: weight proportional to fee yield + 0.5 * return
- mean_variance: short gradient ascent on w'mu - lambda * w'Cw

Key Concepts:
- Expected Return: per-position annualized return from the market data provider
- Covariance: volatility_i * volatility_j * correlation_ij (diagonal = variance)
- Sharpe Ratio: (E[R] - Rf) / Std[R]
- Bounds: every weight within [min_allocation, max_allocation], sum = 1

Beyond the weights the optimizer produces rebalancing actions, metrics
comparing current and target allocations, a sensitivity analysis and a
scenario analysis (both obtained by re-solving under perturbed inputs),
and a phased implementation plan.
"""

import logging
import math
import time
from collections import deque
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional, Any, Sequence, Tuple

from .cache import ResultCache, fingerprint
from .config import (
    EngineConfig, ConfigSnapshot, OptimizationConfig, OptimizationObjective,
    ActionBuckets, PRIORITY_ORDER
)
from .correlation_engine import CorrelationRiskEngine, value_weights
from .errors import ValidationError
from .log import get_logger, log_message
from .market_data import MarketDataProvider
from .models import Position, PositionAnalytics, load_snapshot


# =============================================================================
# CONFIGURATION CONSTANTS
# =============================================================================

MIN_VARIANCE = 1e-12                # Floor to prevent divide-by-zero
WEIGHT_TOLERANCE = 1e-9             # Sum-to-one tolerance
MAINTAIN_THRESHOLD = 0.01           # |change| below this keeps the allocation
EXPECTED_BENEFIT_RATE = 0.05        # Benefit per unit of weight moved
YIELD_RETURN_WEIGHT = 0.5           # maximize_yield: fee_yield + 0.5 * return
LARGE_MOVE_THRESHOLD = 0.10         # Adds a volatility condition to an action

# Sensitivity perturbation (relative)
SENSITIVITY_STEP = 0.10

# (name, return shock, volatility multiplier)
STRESS_TESTS = (
    ("Market Crash (-30%)", -0.30, 1.5),
    ("Liquidity Crisis", -0.10, 1.3),
)

# Scenario analysis relative to the base case (12% return, 18% volatility)
# (key, name, probability, return shift, volatility multiplier)
SCENARIOS = (
    ("base", "Base Case", 0.6, 0.0, 1.0),
    ("bull", "Bull Market", 0.2, 0.13, 0.22 / 0.18),
    ("bear", "Bear Market", 0.2, -0.17, 0.30 / 0.18),
)
CUSTOM_SCENARIOS = (
    ("DeFi Summer 2.0", 0.15, 0.23, 0.25 / 0.18, [
        {"factor": "liquidity", "change": 0.5, "probability": 0.3},
        {"factor": "fees", "change": 0.3, "probability": 0.7},
    ]),
)

# Implementation plan phases by action priority
PLAN_PHASES = (
    ("high", "Critical rebalancing actions", "Immediate (1-2 days)"),
    ("medium", "Optimization improvements", "Short-term (1-2 weeks)"),
    ("low", "Fine-tuning adjustments", "Medium-term (1 month)"),
)
DAYS_PER_PHASE = 7

PLAN_RISK_MITIGATION = [
    "Execute large reallocations in several smaller transactions",
    "Re-check pool depth immediately before each transaction",
    "Pause execution when market volatility spikes",
    "Re-run the optimization after each completed phase",
]


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass(frozen=True)
class PortfolioWeight:
    position_id: str
    current_weight: float
    target_weight: float
    weight_change: float
    rationale: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_id": self.position_id,
            "current_weight": round(self.current_weight, 6),
            "target_weight": round(self.target_weight, 6),
            "weight_change": round(self.weight_change, 6),
            "rationale": self.rationale,
        }


@dataclass(frozen=True)
class OptimizationAction:
    action_id: str
    action_type: str                    # increase | decrease
    position_id: str
    amount: float                       # Value to move
    weight_change: float
    priority: str
    estimated_cost: float
    expected_benefit: float
    timing: str                         # immediate | next_cycle | opportunistic
    conditions: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_id": self.action_id,
            "type": self.action_type,
            "position_id": self.position_id,
            "amount": round(self.amount, 4),
            "weight_change": round(self.weight_change, 6),
            "priority": self.priority,
            "estimated_cost": round(self.estimated_cost, 4),
            "expected_benefit": round(self.expected_benefit, 6),
            "timing": self.timing,
            "conditions": list(self.conditions),
        }


@dataclass
class OptimizationMetrics:
    current_return: float = 0.0
    current_risk: float = 0.0
    risk_reduction: float = 0.0             # Percent
    return_enhancement: float = 0.0         # Percent
    sharpe_improvement: float = 0.0
    diversification_improvement: float = 0.0
    cost_efficiency: float = 100.0
    improvement_score: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {k: round(v, 4) for k, v in asdict(self).items()}


@dataclass(frozen=True)
class ParameterSensitivity:
    parameter: str
    base_value: float
    perturbation: float
    return_impact: float
    risk_impact: float
    elasticity: float


@dataclass
class StressTestResult:
    scenario: str
    return_impact: float
    risk_impact: float
    weight_changes: Dict[str, float] = field(default_factory=dict)


@dataclass
class SensitivityAnalysis:
    parameters: List[ParameterSensitivity] = field(default_factory=list)
    stress_tests: List[StressTestResult] = field(default_factory=list)
    robustness_score: float = 100.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "parameters": [
                {k: (round(v, 6) if isinstance(v, float) else v) for k, v in asdict(p).items()}
                for p in self.parameters
            ],
            "stress_tests": [
                {
                    "scenario": s.scenario,
                    "return_impact": round(s.return_impact, 6),
                    "risk_impact": round(s.risk_impact, 6),
                    "weight_changes": {k: round(v, 6) for k, v in s.weight_changes.items()},
                }
                for s in self.stress_tests
            ],
            "robustness_score": round(self.robustness_score, 2),
        }


@dataclass
class ScenarioOutcome:
    name: str
    probability: float
    expected_return: float
    expected_risk: float
    sharpe_ratio: float
    optimal_weights: Dict[str, float] = field(default_factory=dict)
    market_conditions: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "probability": self.probability,
            "expected_return": round(self.expected_return, 6),
            "expected_risk": round(self.expected_risk, 6),
            "sharpe_ratio": round(self.sharpe_ratio, 4),
            "optimal_weights": {k: round(v, 6) for k, v in self.optimal_weights.items()},
            "market_conditions": list(self.market_conditions),
        }


@dataclass
class ScenarioAnalysis:
    base: Optional[ScenarioOutcome] = None
    bull: Optional[ScenarioOutcome] = None
    bear: Optional[ScenarioOutcome] = None
    custom: List[ScenarioOutcome] = field(default_factory=list)
    probability_weighted_return: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "base": self.base.to_dict() if self.base else None,
            "bull": self.bull.to_dict() if self.bull else None,
            "bear": self.bear.to_dict() if self.bear else None,
            "custom": [c.to_dict() for c in self.custom],
            "probability_weighted_return": round(self.probability_weighted_return, 6),
        }


@dataclass
class ImplementationPhase:
    phase: int
    name: str
    timeframe: str
    action_ids: List[str]
    estimated_cost: float
    dependencies: List[int] = field(default_factory=list)


@dataclass(frozen=True)
class MonitoringCheckpoint:
    metric: str
    threshold: float
    action: str


@dataclass
class ImplementationPlan:
    phases: List[ImplementationPhase] = field(default_factory=list)
    total_cost: float = 0.0
    expected_duration_days: int = 0
    risk_mitigation: List[str] = field(default_factory=list)
    checkpoints: List[MonitoringCheckpoint] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phases": [
                {
                    "phase": p.phase,
                    "name": p.name,
                    "timeframe": p.timeframe,
                    "action_ids": list(p.action_ids),
                    "estimated_cost": round(p.estimated_cost, 4),
                    "dependencies": list(p.dependencies),
                }
                for p in self.phases
            ],
            "total_cost": round(self.total_cost, 4),
            "expected_duration_days": self.expected_duration_days,
            "risk_mitigation": list(self.risk_mitigation),
            "checkpoints": [asdict(c) for c in self.checkpoints],
        }


@dataclass
class OptimizationResult:
    optimization_id: str
    owner_key: str
    objective: str
    status: str                                 # optimized | empty
    weights: List[PortfolioWeight] = field(default_factory=list)
    actions: List[OptimizationAction] = field(default_factory=list)
    metrics: OptimizationMetrics = field(default_factory=OptimizationMetrics)
    sensitivity: SensitivityAnalysis = field(default_factory=SensitivityAnalysis)
    scenarios: ScenarioAnalysis = field(default_factory=ScenarioAnalysis)
    plan: ImplementationPlan = field(default_factory=ImplementationPlan)
    expected_return: float = 0.0
    expected_risk: float = 0.0
    sharpe_ratio: float = 0.0
    covariance_matrix: List[List[float]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    calculated_at: float = 0.0

    def target_weights(self) -> Dict[str, float]:
        return {w.position_id: w.target_weight for w in self.weights}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "optimization_id": self.optimization_id,
            "owner_key": self.owner_key,
            "objective": self.objective,
            "status": self.status,
            "weights": [w.to_dict() for w in self.weights],
            "actions": [a.to_dict() for a in self.actions],
            "metrics": self.metrics.to_dict(),
            "sensitivity": self.sensitivity.to_dict(),
            "scenarios": self.scenarios.to_dict(),
            "implementation_plan": self.plan.to_dict(),
            "expected_return": round(self.expected_return, 6),
            "expected_risk": round(self.expected_risk, 6),
            "sharpe_ratio": round(self.sharpe_ratio, 4),
            "covariance_matrix": [[round(c, 8) for c in row] for row in self.covariance_matrix],
            "warnings": list(self.warnings),
            "calculated_at": self.calculated_at,
        }


@dataclass
class PortfolioModel:
    """Inputs to one weight solve, in position order."""
    position_ids: List[str]
    returns: List[float]
    volatilities: List[float]
    correlations: List[List[float]]
    fee_yields: List[float]
    current_weights: List[float]
    lower: List[float]
    upper: List[float]
    total_value: float
    groups: List[Tuple[str, List[int], float, float]] = field(default_factory=list)
    excluded: List[bool] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.position_ids)


def build_covariance_matrix(
    volatilities: Sequence[float],
    correlations: Sequence[Sequence[float]]
) -> List[List[float]]:
    """Diagonal = volatility^2, off-diagonal = vol_i * vol_j * corr_ij."""
    n = len(volatilities)
    cov = []
    for i in range(n):
        row = []
        for j in range(n):
            if i == j:
                row.append(volatilities[i] ** 2)
            else:
                row.append(volatilities[i] * volatilities[j] * correlations[i][j])
        cov.append(row)
    return cov


def portfolio_return(weights: Sequence[float], returns: Sequence[float]) -> float:
    return sum(w * r for w, r in zip(weights, returns))


def portfolio_risk(weights: Sequence[float], cov: Sequence[Sequence[float]]) -> float:
    n = len(weights)
    variance = sum(weights[i] * weights[j] * cov[i][j] for i in range(n) for j in range(n))
    return math.sqrt(max(variance, 0.0))


class PortfolioOptimizer:
    """
    Constrained weight allocation across liquidity positions.
    """

    def __init__(
        self,
        market_data: MarketDataProvider,
        config: Optional[EngineConfig] = None,
        correlation_engine: Optional[CorrelationRiskEngine] = None,
        cache: Optional[ResultCache] = None,
        logger: Optional[logging.Logger] = None,
        clock=time.time
    ):
        """
        Initialize the portfolio optimizer.

        Args:
            market_data: Source of expected returns and volatilities
            config: Engine tunables
            correlation_engine: Supplies pairwise correlations (created
                from the same provider when omitted)
            cache: Shared result cache
            logger: Optional logger
            clock: Wall-clock source for timestamps
        """
        self.market_data = market_data
        self.config = config or EngineConfig()
        self.cache = cache or ResultCache(ttl_seconds=self.config.optimization_cache_ttl)
        self.correlation_engine = correlation_engine or CorrelationRiskEngine(
            market_data, self.config, self.cache, logger
        )
        self.logger = get_logger("optimizer", logger)
        self._clock = clock
        self._history: deque = deque(maxlen=self.config.max_optimization_history)

    def log(self, msg: str, level: str = "info") -> None:
        log_message(self.logger, "PortfolioOptimizer", msg, level)

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    def optimize_portfolio(
        self,
        positions: Sequence[Any],
        analytics: Sequence[Any],
        opt_config: Optional[OptimizationConfig] = None,
        owner_key: str = "",
        force_refresh: bool = False
    ) -> OptimizationResult:
        """
        Solve for target weights and derive the rebalancing plan.

        Raises:
            ValidationError: malformed inputs or infeasible bounds
        """
        if opt_config is None:
            opt_config = OptimizationConfig()
        elif isinstance(opt_config, dict):
            opt_config = OptimizationConfig.from_dict(opt_config)

        positions, analytics = load_snapshot(positions, analytics)
        cfg = self.config.snapshot()

        if not positions:
            return OptimizationResult(
                optimization_id="optimization-empty",
                owner_key=owner_key,
                objective=opt_config.objective.value,
                status="empty",
                warnings=["No positions to optimize"],
                calculated_at=self._clock()
            )

        key = self._cache_key(positions, analytics, opt_config, owner_key, cfg)
        result, cached = self.cache.get_or_compute(
            key,
            lambda: self._optimize(
                self.build_model(positions, analytics, opt_config, cfg), opt_config, owner_key, cfg, key
            ),
            ttl=cfg.optimization_cache_ttl,
            force_refresh=force_refresh
        )
        if cached:
            self.log(f"Cache hit for {owner_key} ({opt_config.objective.value})", level="debug")
        return result

    def get_optimization_history(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        entries = list(self._history)
        entries.reverse()
        return entries[:limit] if limit else entries

    def clear_cache(self) -> None:
        self.cache.clear()

    def cache_stats(self) -> Dict[str, Any]:
        return self.cache.stats()

    def _cache_key(
        self,
        positions: List[Position],
        analytics: List[PositionAnalytics],
        opt_config: OptimizationConfig,
        owner_key: str,
        cfg: ConfigSnapshot
    ) -> str:
        # Raw inputs only; the model and correlation matrix are built on a miss
        market = [
            (
                p.id,
                self.market_data.expected_return(p),
                self.market_data.volatility(p),
                self.market_data.fee_yield(p),
            )
            for p in positions
        ]
        correlations = [
            (a.id, b.id, self.market_data.price_correlation(a, b))
            for i, a in enumerate(positions) for b in positions[i + 1:]
        ]
        return fingerprint(
            "portfolio_optimization",
            owner_key,
            [p.to_dict() for p in positions],
            [asdict(a) for a in analytics],
            market,
            correlations,
            opt_config.to_dict(),
            asdict(cfg),
        )

    # =========================================================================
    # MODEL CONSTRUCTION
    # =========================================================================

    def build_model(
        self,
        positions: List[Position],
        analytics: List[PositionAnalytics],
        opt_config: OptimizationConfig,
        cfg: ConfigSnapshot
    ) -> PortfolioModel:
        n = len(positions)
        matrix = self.correlation_engine.calculate_correlation_matrix(positions, analytics, cfg)
        correlations = [
            [matrix.get(positions[i].id, positions[j].id) or 0.0 for j in range(n)]
            for i in range(n)
        ]
        returns = [self.market_data.expected_return(p) for p in positions]
        vols = [self.market_data.volatility(p) for p in positions]
        fee_yields = [self.market_data.fee_yield(p) for p in positions]

        excluded = [False] * n
        if opt_config.max_positions and n > opt_config.max_positions:
            scores = self._selection_scores(opt_config, returns, vols, fee_yields, cfg)
            ranked = sorted(range(n), key=lambda i: (-scores[i], i))
            for i in ranked[opt_config.max_positions:]:
                excluded[i] = True

        lower = [0.0 if excluded[i] else opt_config.min_allocation for i in range(n)]
        upper = [0.0 if excluded[i] else opt_config.max_allocation for i in range(n)]

        if sum(lower) > 1.0 + WEIGHT_TOLERANCE or sum(upper) < 1.0 - WEIGHT_TOLERANCE:
            raise ValidationError(
                f"Allocation bounds [{opt_config.min_allocation}, {opt_config.max_allocation}] "
                f"are infeasible for {n - sum(excluded)} positions"
            )

        groups = []
        for tc in opt_config.token_constraints:
            members = [i for i, p in enumerate(positions) if tc.token in p.tokens]
            if members:
                groups.append((f"token:{tc.token}", members, tc.min_weight, tc.max_weight))
        for pc in opt_config.pool_constraints:
            members = [i for i, p in enumerate(positions) if p.pool_id == pc.pool_id]
            if members:
                groups.append((f"pool:{pc.pool_id}", members, pc.min_weight, pc.max_weight))

        return PortfolioModel(
            position_ids=[p.id for p in positions],
            returns=returns,
            volatilities=vols,
            correlations=correlations,
            fee_yields=fee_yields,
            current_weights=value_weights(positions),
            lower=lower,
            upper=upper,
            total_value=sum(p.value for p in positions),
            groups=groups,
            excluded=excluded
        )

    def _selection_scores(
        self,
        opt_config: OptimizationConfig,
        returns: List[float],
        vols: List[float],
        fee_yields: List[float],
        cfg: ConfigSnapshot
    ) -> List[float]:
        objective = opt_config.objective
        if objective == OptimizationObjective.MINIMIZE_RISK:
            return [-v for v in vols]
        if objective == OptimizationObjective.MAXIMIZE_SHARPE:
            return [(r - cfg.risk_free_rate) / max(v, math.sqrt(MIN_VARIANCE)) for r, v in zip(returns, vols)]
        if objective == OptimizationObjective.MAXIMIZE_YIELD:
            return [fy + YIELD_RETURN_WEIGHT * r for fy, r in zip(fee_yields, returns)]
        if objective == OptimizationObjective.MEAN_VARIANCE:
            return [r - opt_config.risk_aversion * v ** 2 for r, v in zip(returns, vols)]
        return list(returns)

    # =========================================================================
    # OPTIMIZATION
    # =========================================================================

    def _optimize(
        self,
        model: PortfolioModel,
        opt_config: OptimizationConfig,
        owner_key: str,
        cfg: ConfigSnapshot,
        key: str
    ) -> OptimizationResult:
        start = time.monotonic()
        objective = opt_config.objective
        cov = build_covariance_matrix(model.volatilities, model.correlations)

        warnings: List[str] = []
        selected = model.size - sum(model.excluded)
        if selected < opt_config.min_positions:
            warnings.append(
                f"Only {selected} positions available; minimum is {opt_config.min_positions}"
            )

        weights, group_warnings = self.solve_weights(
            objective, model, cov, opt_config.risk_aversion, cfg
        )
        warnings.extend(group_warnings)

        portfolio_weights = self._build_portfolio_weights(model, weights, objective)
        actions = self.generate_rebalancing_actions(model, weights, cfg)
        metrics = self.calculate_optimization_metrics(model, cov, weights, actions, cfg)
        sensitivity = self.perform_sensitivity_analysis(model, cov, weights, opt_config, cfg)
        scenarios = self.run_scenario_analysis(model, opt_config, cfg)
        plan = self.create_implementation_plan(actions, opt_config)

        exp_return = portfolio_return(weights, model.returns)
        exp_risk = portfolio_risk(weights, cov)
        sharpe = (exp_return - cfg.risk_free_rate) / exp_risk if exp_risk > math.sqrt(MIN_VARIANCE) else 0.0

        result = OptimizationResult(
            optimization_id=f"optimization-{key[:12]}",
            owner_key=owner_key,
            objective=objective.value,
            status="optimized",
            weights=portfolio_weights,
            actions=actions,
            metrics=metrics,
            sensitivity=sensitivity,
            scenarios=scenarios,
            plan=plan,
            expected_return=exp_return,
            expected_risk=exp_risk,
            sharpe_ratio=sharpe,
            covariance_matrix=cov,
            warnings=warnings,
            calculated_at=self._clock()
        )

        self._history.append({
            "optimization_id": result.optimization_id,
            "owner_key": owner_key,
            "objective": objective.value,
            "timestamp": result.calculated_at,
            "expected_return": exp_return,
            "expected_risk": exp_risk,
            "improvement_score": metrics.improvement_score,
            "action_count": len(actions),
        })

        self.log(
            f"Optimized {model.size} positions for {owner_key} ({objective.value}): "
            f"E[R]={exp_return:.4f} risk={exp_risk:.4f} actions={len(actions)} "
            f"in {time.monotonic() - start:.3f}s"
        )
        return result

    def solve_weights(
        self,
        objective: OptimizationObjective,
        model: PortfolioModel,
        cov: List[List[float]],
        risk_aversion: float,
        cfg: ConfigSnapshot
    ) -> Tuple[List[float], List[str]]:
        """
        Target weights for one objective.

        Returns:
            Tuple of (weights summing to 1 within bounds, constraint warnings)
        """
        lower, upper = model.lower, model.upper

        if objective == OptimizationObjective.MAXIMIZE_RETURN:
            weights = self._greedy_fill(model.returns, lower, upper)
        elif objective == OptimizationObjective.MINIMIZE_RISK:
            weights = self._gradient_descent_optimize(
                [0.0] * model.size, cov, 1.0, lower, upper
            )
        elif objective == OptimizationObjective.MAXIMIZE_SHARPE:
            scores = [max(0.0, r - cfg.risk_free_rate) for r in model.returns]
            weights = self._proportional_weights(scores, lower, upper)
        elif objective == OptimizationObjective.MAXIMIZE_YIELD:
            scores = [
                max(0.0, fy + YIELD_RETURN_WEIGHT * r)
                for fy, r in zip(model.fee_yields, model.returns)
            ]
            weights = self._proportional_weights(scores, lower, upper)
        else:
            weights = self._mean_variance(
                model.returns, cov, risk_aversion, lower, upper,
                cfg.mean_variance_iterations, cfg.mean_variance_step
            )

        weights = self._enforce_bounds(weights, lower, upper)
        return self._apply_group_constraints(weights, model.groups, lower, upper)

    def _greedy_fill(
        self,
        returns: List[float],
        lower: List[float],
        upper: List[float]
    ) -> List[float]:
        """
        Exact solution of max w'r s.t. sum(w) = 1, lower <= w <= upper.

        Start every weight at its lower bound, then fill the highest
        returns up to their upper bounds until the budget is spent.
        """
        weights = list(lower)
        remaining = 1.0 - sum(lower)
        for i in sorted(range(len(returns)), key=lambda k: (-returns[k], k)):
            if remaining <= 0:
                break
            add = min(upper[i] - weights[i], remaining)
            weights[i] += add
            remaining -= add
        return weights

    def _proportional_weights(
        self,
        scores: List[float],
        lower: List[float],
        upper: List[float]
    ) -> List[float]:
        eligible = [i for i in range(len(scores)) if upper[i] > 0]
        total = sum(scores[i] for i in eligible)
        if total <= 0:
            # Nothing scores positively: equal weighting
            return [1.0 / len(eligible) if upper[i] > 0 else 0.0 for i in range(len(scores))]
        return [scores[i] / total if upper[i] > 0 else 0.0 for i in range(len(scores))]

    def _mean_variance(
        self,
        returns: List[float],
        cov: List[List[float]],
        risk_aversion: float,
        lower: List[float],
        upper: List[float],
        iterations: int,
        step: float
    ) -> List[float]:
        """
        Short gradient ascent on U(w) = w'mu - lambda * w'Cw.

        Each step is normalized back to a unit budget and clamped to the
        bounds.
        """
        n = len(returns)
        eligible = [upper[i] > 0 for i in range(n)]
        k = sum(eligible)
        weights = [1.0 / k if eligible[i] else 0.0 for i in range(n)]

        for _ in range(iterations):
            gradient = [
                returns[i] - risk_aversion * sum(cov[i][j] * weights[j] for j in range(n))
                for i in range(n)
            ]
            weights = [max(0.0, weights[i] + step * gradient[i]) for i in range(n)]
            total = sum(weights)
            if total > 0:
                weights = [w / total for w in weights]
            else:
                weights = [1.0 / k if eligible[i] else 0.0 for i in range(n)]
            weights = [max(lower[i], min(upper[i], weights[i])) for i in range(n)]

        return weights

    def _gradient_descent_optimize(
        self,
        returns: List[float],
        cov_matrix: List[List[float]],
        risk_aversion: float,
        lower: List[float],
        upper: List[float],
        max_iterations: int = 1000,
        learning_rate: Optional[float] = None,
        tolerance: float = 1e-10
    ) -> List[float]:
        """
        Optimize using projected gradient ascent.

        Objective: max sum(w_i * r_i) - lambda * sum(w_i * w_j * cov_ij)

        The default step is 1/L with L a Gershgorin bound on the
        curvature, which keeps the iteration stable for any scale of
        covariance.
        """
        n = len(returns)
        if learning_rate is None:
            curvature = 2 * risk_aversion * max(
                sum(abs(c) for c in row) for row in cov_matrix
            )
            learning_rate = 1.0 / curvature if curvature > MIN_VARIANCE else 0.01

        weights = self._project_to_simplex([1.0 / n] * n, lower, upper)

        for _ in range(max_iterations):
            gradient = []
            for i in range(n):
                # dVar/dw_i = 2 * sum(w_j * cov_ij)
                grad_var = 2 * sum(weights[j] * cov_matrix[i][j] for j in range(n))
                gradient.append(returns[i] - risk_aversion * grad_var)

            new_weights = self._project_to_simplex(
                [weights[i] + learning_rate * gradient[i] for i in range(n)],
                lower, upper
            )

            max_change = max(abs(new_weights[i] - weights[i]) for i in range(n))
            weights = new_weights
            if max_change < tolerance:
                break

        return weights

    def _project_to_simplex(
        self,
        weights: List[float],
        lower: List[float],
        upper: List[float]
    ) -> List[float]:
        """
        Euclidean projection onto {sum(w) = 1, lower <= w <= upper}.

        The projection is clip(w_i - tau, lower_i, upper_i) for the tau
        that makes the weights sum to one; tau is found by bisection.
        """
        n = len(weights)
        lo_tau = min(weights[i] - upper[i] for i in range(n)) - 1.0
        hi_tau = max(weights[i] - lower[i] for i in range(n)) + 1.0

        def clipped(tau: float) -> List[float]:
            return [max(lower[i], min(upper[i], weights[i] - tau)) for i in range(n)]

        for _ in range(100):
            mid = (lo_tau + hi_tau) / 2
            if sum(clipped(mid)) > 1.0:
                lo_tau = mid
            else:
                hi_tau = mid

        return self._enforce_bounds(clipped((lo_tau + hi_tau) / 2), lower, upper)

    def _enforce_bounds(
        self,
        weights: List[float],
        lower: List[float],
        upper: List[float]
    ) -> List[float]:
        """
        Clip to bounds and spread any budget residual by available slack.

        Bounds are assumed feasible (sum(lower) <= 1 <= sum(upper)).
        """
        n = len(weights)
        weights = [max(lower[i], min(upper[i], weights[i])) for i in range(n)]

        for _ in range(3):
            residual = 1.0 - sum(weights)
            if abs(residual) <= WEIGHT_TOLERANCE / 10:
                break
            if residual > 0:
                room = [upper[i] - weights[i] for i in range(n)]
            else:
                room = [weights[i] - lower[i] for i in range(n)]
            total_room = sum(room)
            if total_room <= 0:
                break
            share = min(1.0, abs(residual) / total_room)
            sign = 1.0 if residual > 0 else -1.0
            weights = [
                max(lower[i], min(upper[i], weights[i] + sign * room[i] * share))
                for i in range(n)
            ]

        return weights

    def _shift_mass(
        self,
        weights: List[float],
        sources: List[int],
        targets: List[int],
        amount: float,
        lower: List[float],
        upper: List[float]
    ) -> float:
        """Move up to `amount` of weight from sources to targets by slack."""
        give = sum(weights[i] - lower[i] for i in sources)
        take = sum(upper[i] - weights[i] for i in targets)
        moved = min(amount, give, take)
        if moved <= 0:
            return 0.0
        for i in sources:
            weights[i] -= (weights[i] - lower[i]) / give * moved
        for i in targets:
            weights[i] += (upper[i] - weights[i]) / take * moved
        return moved

    def _apply_group_constraints(
        self,
        weights: List[float],
        groups: List[Tuple[str, List[int], float, float]],
        lower: List[float],
        upper: List[float]
    ) -> Tuple[List[float], List[str]]:
        """Bring token/pool group weights inside their [min, max] ranges."""
        weights = list(weights)
        warnings: List[str] = []
        all_idx = range(len(weights))

        for name, members, gmin, gmax in groups:
            member_set = set(members)
            others = [i for i in all_idx if i not in member_set]
            total = sum(weights[i] for i in members)
            if total > gmax + WEIGHT_TOLERANCE:
                needed = total - gmax
                moved = self._shift_mass(weights, members, others, needed, lower, upper)
            elif total < gmin - WEIGHT_TOLERANCE:
                needed = gmin - total
                moved = self._shift_mass(weights, others, members, needed, lower, upper)
            else:
                continue
            if moved < needed - WEIGHT_TOLERANCE:
                warnings.append(
                    f"Constraint {name} could not be fully satisfied "
                    f"({needed - moved:.4f} short)"
                )
                self.log(f"Group constraint {name} partially satisfied", level="warn")

        return weights, warnings

    # =========================================================================
    # WEIGHTS & ACTIONS
    # =========================================================================

    def _build_portfolio_weights(
        self,
        model: PortfolioModel,
        weights: List[float],
        objective: OptimizationObjective
    ) -> List[PortfolioWeight]:
        label = objective.value.replace("_", " ")
        result = []
        for i, position_id in enumerate(model.position_ids):
            change = weights[i] - model.current_weights[i]
            if model.excluded[i]:
                rationale = "Excluded by position count limit"
            elif abs(change) < MAINTAIN_THRESHOLD:
                rationale = "Optimal allocation maintained"
            elif change > 0:
                rationale = f"Increase allocation due to {label} optimization"
            else:
                rationale = f"Reduce allocation to optimize {label}"
            result.append(PortfolioWeight(
                position_id=position_id,
                current_weight=model.current_weights[i],
                target_weight=weights[i],
                weight_change=change,
                rationale=rationale
            ))
        return result

    def generate_rebalancing_actions(
        self,
        model: PortfolioModel,
        weights: List[float],
        cfg: ConfigSnapshot
    ) -> List[OptimizationAction]:
        """One action per position whose weight moves more than the threshold."""
        actions = []
        for i, position_id in enumerate(model.position_ids):
            change = weights[i] - model.current_weights[i]
            abs_change = abs(change)
            if abs_change <= cfg.action_threshold:
                continue

            conditions = []
            if abs_change > LARGE_MOVE_THRESHOLD:
                conditions.append("Market volatility below 25%")
            conditions.append("Liquidity depth sufficient for execution")
            conditions.append("Gas fees below threshold")

            actions.append(OptimizationAction(
                action_id=f"action-{i + 1}-{position_id}",
                action_type="increase" if change > 0 else "decrease",
                position_id=position_id,
                amount=abs_change * model.total_value,
                weight_change=change,
                priority=ActionBuckets.get_priority(change),
                estimated_cost=abs_change * model.total_value * cfg.transaction_cost_rate,
                expected_benefit=abs_change * EXPECTED_BENEFIT_RATE,
                timing=ActionBuckets.get_timing(change),
                conditions=tuple(conditions)
            ))

        actions.sort(key=lambda a: (PRIORITY_ORDER.get(a.priority, 4), -a.expected_benefit))
        return actions

    def calculate_optimization_metrics(
        self,
        model: PortfolioModel,
        cov: List[List[float]],
        weights: List[float],
        actions: List[OptimizationAction],
        cfg: ConfigSnapshot
    ) -> OptimizationMetrics:
        current = model.current_weights
        cur_ret = portfolio_return(current, model.returns)
        opt_ret = portfolio_return(weights, model.returns)
        cur_risk = portfolio_risk(current, cov)
        opt_risk = portfolio_risk(weights, cov)

        risk_reduction = (cur_risk - opt_risk) / cur_risk * 100 if cur_risk > 0 else 0.0
        if abs(cur_ret) > MIN_VARIANCE:
            return_enhancement = (opt_ret - cur_ret) / abs(cur_ret) * 100
        else:
            return_enhancement = (opt_ret - cur_ret) * 100

        def sharpe(ret: float, risk: float) -> float:
            return (ret - cfg.risk_free_rate) / risk if risk > math.sqrt(MIN_VARIANCE) else 0.0

        total_change = sum(abs(weights[i] - current[i]) for i in range(model.size))

        return OptimizationMetrics(
            current_return=cur_ret,
            current_risk=cur_risk,
            risk_reduction=risk_reduction,
            return_enhancement=return_enhancement,
            sharpe_improvement=sharpe(opt_ret, opt_risk) - sharpe(cur_ret, cur_risk),
            diversification_improvement=(1.0 - max(weights)) * 100,
            cost_efficiency=max(0.0, 100.0 - total_change * 100),
            improvement_score=risk_reduction * 0.4 + return_enhancement * 0.6
        )

    # =========================================================================
    # SENSITIVITY & SCENARIOS
    # =========================================================================

    def _resolve(
        self,
        model: PortfolioModel,
        opt_config: OptimizationConfig,
        cfg: ConfigSnapshot,
        returns: Optional[List[float]] = None,
        vols: Optional[List[float]] = None,
        correlations: Optional[List[List[float]]] = None,
        risk_aversion: Optional[float] = None
    ) -> Tuple[List[float], List[List[float]], List[float]]:
        """Re-solve under perturbed inputs. Returns (weights, cov, returns)."""
        returns = model.returns if returns is None else returns
        vols = model.volatilities if vols is None else vols
        correlations = model.correlations if correlations is None else correlations
        risk_aversion = opt_config.risk_aversion if risk_aversion is None else risk_aversion

        perturbed = PortfolioModel(
            position_ids=model.position_ids,
            returns=returns,
            volatilities=vols,
            correlations=correlations,
            fee_yields=model.fee_yields,
            current_weights=model.current_weights,
            lower=model.lower,
            upper=model.upper,
            total_value=model.total_value,
            groups=model.groups,
            excluded=model.excluded
        )
        cov = build_covariance_matrix(vols, correlations)
        weights, _ = self.solve_weights(opt_config.objective, perturbed, cov, risk_aversion, cfg)
        return weights, cov, returns

    def perform_sensitivity_analysis(
        self,
        model: PortfolioModel,
        cov: List[List[float]],
        weights: List[float],
        opt_config: OptimizationConfig,
        cfg: ConfigSnapshot
    ) -> SensitivityAnalysis:
        base_ret = portfolio_return(weights, model.returns)
        base_risk = portfolio_risk(weights, cov)
        parameters = []

        # Risk aversion
        base_lambda = opt_config.risk_aversion
        bumped_lambda = base_lambda * (1 + SENSITIVITY_STEP) if base_lambda > 0 else SENSITIVITY_STEP
        w_l, cov_l, _ = self._resolve(model, opt_config, cfg, risk_aversion=bumped_lambda)
        ret_l = portfolio_return(w_l, model.returns)
        risk_l = portfolio_risk(w_l, cov_l)
        parameters.append(ParameterSensitivity(
            parameter="risk_aversion",
            base_value=base_lambda,
            perturbation=SENSITIVITY_STEP,
            return_impact=ret_l - base_ret,
            risk_impact=risk_l - base_risk,
            elasticity=((ret_l - base_ret) / base_ret) / SENSITIVITY_STEP if abs(base_ret) > MIN_VARIANCE else 0.0
        ))

        # Correlation
        n = model.size
        bumped_corr = [
            [model.correlations[i][j] if i == j
             else max(-1.0, min(1.0, model.correlations[i][j] * (1 + SENSITIVITY_STEP)))
             for j in range(n)]
            for i in range(n)
        ]
        w_c, cov_c, _ = self._resolve(model, opt_config, cfg, correlations=bumped_corr)
        ret_c = portfolio_return(w_c, model.returns)
        risk_c = portfolio_risk(w_c, cov_c)
        avg_corr = (
            sum(model.correlations[i][j] for i in range(n) for j in range(n) if i != j) / (n * (n - 1))
            if n > 1 else 0.0
        )
        parameters.append(ParameterSensitivity(
            parameter="correlation",
            base_value=avg_corr,
            perturbation=SENSITIVITY_STEP,
            return_impact=ret_c - base_ret,
            risk_impact=risk_c - base_risk,
            elasticity=((risk_c - base_risk) / base_risk) / SENSITIVITY_STEP if base_risk > 0 else 0.0
        ))

        stress_tests = []
        turnovers = []
        for name, return_shock, vol_mult in STRESS_TESTS:
            shocked_returns = [r + return_shock for r in model.returns]
            shocked_vols = [v * vol_mult for v in model.volatilities]
            w_s, cov_s, _ = self._resolve(
                model, opt_config, cfg, returns=shocked_returns, vols=shocked_vols
            )
            # Impact on the recommended allocation if the shock hits
            stress_tests.append(StressTestResult(
                scenario=name,
                return_impact=portfolio_return(weights, shocked_returns) - base_ret,
                risk_impact=portfolio_risk(weights, cov_s) - base_risk,
                weight_changes={
                    model.position_ids[i]: w_s[i] - weights[i] for i in range(n)
                }
            ))
            turnovers.append(sum(abs(w_s[i] - weights[i]) for i in range(n)) / 2)

        robustness = max(0.0, 100.0 - (sum(turnovers) / len(turnovers)) * 100) if turnovers else 100.0

        return SensitivityAnalysis(
            parameters=parameters,
            stress_tests=stress_tests,
            robustness_score=robustness
        )

    def _scenario_outcome(
        self,
        model: PortfolioModel,
        opt_config: OptimizationConfig,
        cfg: ConfigSnapshot,
        name: str,
        probability: float,
        return_shift: float,
        vol_mult: float,
        conditions: Optional[List[Dict[str, Any]]] = None
    ) -> ScenarioOutcome:
        returns = [r + return_shift for r in model.returns]
        vols = [v * vol_mult for v in model.volatilities]
        weights, cov, _ = self._resolve(model, opt_config, cfg, returns=returns, vols=vols)
        exp_ret = portfolio_return(weights, returns)
        exp_risk = portfolio_risk(weights, cov)
        return ScenarioOutcome(
            name=name,
            probability=probability,
            expected_return=exp_ret,
            expected_risk=exp_risk,
            sharpe_ratio=(exp_ret - cfg.risk_free_rate) / exp_risk if exp_risk > math.sqrt(MIN_VARIANCE) else 0.0,
            optimal_weights={model.position_ids[i]: weights[i] for i in range(model.size)},
            market_conditions=list(conditions or [])
        )

    def run_scenario_analysis(
        self,
        model: PortfolioModel,
        opt_config: OptimizationConfig,
        cfg: ConfigSnapshot
    ) -> ScenarioAnalysis:
        """Optimal allocation under base, bull, bear and custom markets."""
        analysis = ScenarioAnalysis()
        weighted = 0.0
        for key, name, probability, shift, vol_mult in SCENARIOS:
            outcome = self._scenario_outcome(
                model, opt_config, cfg, name, probability, shift, vol_mult
            )
            setattr(analysis, key, outcome)
            weighted += probability * outcome.expected_return

        for name, probability, shift, vol_mult, conditions in CUSTOM_SCENARIOS:
            analysis.custom.append(self._scenario_outcome(
                model, opt_config, cfg, name, probability, shift, vol_mult, conditions
            ))

        analysis.probability_weighted_return = weighted
        return analysis

    # =========================================================================
    # IMPLEMENTATION PLAN
    # =========================================================================

    def create_implementation_plan(
        self,
        actions: List[OptimizationAction],
        opt_config: OptimizationConfig
    ) -> ImplementationPlan:
        phases: List[ImplementationPhase] = []
        for priority, name, timeframe in PLAN_PHASES:
            group = [a for a in actions if a.priority == priority]
            if not group:
                continue
            number = len(phases) + 1
            phases.append(ImplementationPhase(
                phase=number,
                name=name,
                timeframe=timeframe,
                action_ids=[a.action_id for a in group],
                estimated_cost=sum(a.estimated_cost for a in group),
                dependencies=[number - 1] if number > 1 else []
            ))

        return ImplementationPlan(
            phases=phases,
            total_cost=sum(a.estimated_cost for a in actions),
            expected_duration_days=len(phases) * DAYS_PER_PHASE,
            risk_mitigation=list(PLAN_RISK_MITIGATION) if phases else [],
            checkpoints=[
                MonitoringCheckpoint("Portfolio Return", -0.05, "Pause remaining phases and re-optimize"),
                MonitoringCheckpoint("Risk Level", opt_config.max_volatility, "Reduce exposure to the most volatile positions"),
                MonitoringCheckpoint("Liquidity Utilization", 0.7, "Review position ranges"),
            ]
        )
