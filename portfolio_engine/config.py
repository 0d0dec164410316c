"""
Configuration module for portfolio_engine

Contains the EngineConfig dataclass holding every tunable ratio and
threshold used by the analytical components, plus the per-request
OptimizationConfig.

- ConfigSnapshot: immutable copy taken at the start of each cycle
- update_runtime(): validated in-place updates with a version counter
- OptimizationConfig: objective + allocation constraints, validated on
  construction
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, FrozenSet, Tuple

from .errors import ValidationError


# Keys that cannot be changed at runtime
IMMUTABLE_CONFIG_KEYS: FrozenSet[str] = frozenset({
    'simulation_only',  # Never allow a running engine to start executing
})

# Type mapping for config fields (for validation)
CONFIG_FIELD_TYPES: Dict[str, type] = {
    'analysis_cache_ttl': int,
    'optimization_cache_ttl': int,
    'cache_max_entries': int,
    'price_correlation_weight': float,
    'return_correlation_weight': float,
    'volume_correlation_weight': float,
    'liquidity_correlation_weight': float,
    'shared_token_price_correlation': float,
    'distinct_token_price_correlation': float,
    'shared_token_volume_correlation': float,
    'distinct_token_volume_correlation': float,
    'cluster_threshold': float,
    'high_correlation_threshold': float,
    'systematic_risk_fraction': float,
    'idiosyncratic_risk_fraction': float,
    'correlation_risk_fraction': float,
    'liquidity_risk_fraction': float,
    'risk_free_rate': float,
    'benchmark_return': float,
    'transaction_cost_rate': float,
    'action_threshold': float,
    'mean_variance_iterations': int,
    'mean_variance_step': float,
    'max_optimization_history': int,
    'monitoring_interval_minutes': int,
    'max_workers': int,
    'max_execution_history': int,
    'max_health_snapshots': int,
    'enable_prometheus': bool,
    'prometheus_port': int,
    'simulation_only': bool,
}

# Range constraints for numeric fields
CONFIG_FIELD_RANGES: Dict[str, tuple] = {
    'analysis_cache_ttl': (0, 86400),
    'optimization_cache_ttl': (0, 86400),
    'cache_max_entries': (1, 100000),
    'price_correlation_weight': (0.0, 1.0),
    'return_correlation_weight': (0.0, 1.0),
    'volume_correlation_weight': (0.0, 1.0),
    'liquidity_correlation_weight': (0.0, 1.0),
    'shared_token_price_correlation': (-1.0, 1.0),
    'distinct_token_price_correlation': (-1.0, 1.0),
    'shared_token_volume_correlation': (-1.0, 1.0),
    'distinct_token_volume_correlation': (-1.0, 1.0),
    'cluster_threshold': (-1.0, 1.0),
    'high_correlation_threshold': (-1.0, 1.0),
    'systematic_risk_fraction': (0.0, 1.0),
    'idiosyncratic_risk_fraction': (0.0, 1.0),
    'correlation_risk_fraction': (0.0, 1.0),
    'liquidity_risk_fraction': (0.0, 1.0),
    'risk_free_rate': (-1.0, 1.0),
    'transaction_cost_rate': (0.0, 0.1),
    'action_threshold': (0.0, 1.0),
    'mean_variance_iterations': (1, 10000),
    'mean_variance_step': (0.0, 1.0),
    'max_optimization_history': (1, 10000),
    'monitoring_interval_minutes': (1, 1440),
    'max_workers': (1, 64),
    'max_execution_history': (1, 10000),
    'max_health_snapshots': (1, 10000),
    'prometheus_port': (1024, 65535),
}

# Correlation weight fields must sum to 1.0
CORRELATION_WEIGHT_KEYS: Tuple[str, ...] = (
    'price_correlation_weight',
    'return_correlation_weight',
    'volume_correlation_weight',
    'liquidity_correlation_weight',
)


@dataclass
class EngineConfig:
    """
    Configuration container for the analytics engine.

    Every ratio the analysis uses lives here so it can be overridden
    instead of being buried in code. The risk fractions are tunable
    apportionments of total risk, not measured quantities.
    """

    # Cache TTLs (seconds)
    analysis_cache_ttl: int = 300       # 5 minutes
    optimization_cache_ttl: int = 600   # 10 minutes
    cache_max_entries: int = 512

    # Correlation component weights (sum to 1.0)
    price_correlation_weight: float = 0.4
    return_correlation_weight: float = 0.3
    volume_correlation_weight: float = 0.2
    liquidity_correlation_weight: float = 0.1

    # Token-overlap baselines used when the provider has no estimate
    shared_token_price_correlation: float = 0.8
    distinct_token_price_correlation: float = 0.25
    shared_token_volume_correlation: float = 0.6
    distinct_token_volume_correlation: float = 0.2

    # Clustering / opportunity thresholds
    cluster_threshold: float = 0.6         # Join a cluster above this correlation
    high_correlation_threshold: float = 0.8

    # Risk apportionment (fractions of total risk)
    systematic_risk_fraction: float = 0.7
    idiosyncratic_risk_fraction: float = 0.3
    correlation_risk_fraction: float = 0.4
    liquidity_risk_fraction: float = 0.2

    # Optimizer parameters
    risk_free_rate: float = 0.05
    benchmark_return: float = 0.12
    transaction_cost_rate: float = 0.003   # 0.3% of changed value
    action_threshold: float = 0.02         # Ignore weight changes <= 2%
    mean_variance_iterations: int = 10
    mean_variance_step: float = 0.01
    max_optimization_history: int = 100

    # Monitoring
    monitoring_interval_minutes: int = 5
    max_workers: int = 8
    max_execution_history: int = 100
    max_health_snapshots: int = 100

    # Observability
    enable_prometheus: bool = False
    prometheus_port: int = 9810

    # Safety flags
    simulation_only: bool = False   # If True, never run an executor

    # Internal version tracking (not a user-configurable option)
    _version: int = field(default=0, repr=False, compare=False)

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """
        Reject inconsistent settings.

        Raises:
            ValidationError: a field is out of range or the correlation
                weights do not sum to 1
        """
        for key, (min_val, max_val) in CONFIG_FIELD_RANGES.items():
            value = getattr(self, key)
            if not (min_val <= value <= max_val):
                raise ValidationError(f"Value {value} out of range [{min_val}, {max_val}] for {key}")
        total = sum(getattr(self, key) for key in CORRELATION_WEIGHT_KEYS)
        if abs(total - 1.0) > 1e-6:
            raise ValidationError(f"Correlation weights must sum to 1.0, got {total:.6f}")

    def correlation_weights(self) -> Tuple[float, float, float, float]:
        return tuple(getattr(self, key) for key in CORRELATION_WEIGHT_KEYS)

    def snapshot(self) -> 'ConfigSnapshot':
        """
        Create an immutable snapshot for cycle execution.

        Monitoring cycles capture a snapshot at cycle start and use only
        that snapshot, so a concurrent update_runtime() never produces a
        half-applied configuration inside one cycle.
        """
        return ConfigSnapshot.from_config(self)

    def update_runtime(self, key: str, value: Any) -> Dict[str, Any]:
        """
        Validate and apply a single runtime change.

        String values are converted to the field's declared type.

        Returns:
            Dict with status, old_value, new_value, version or an error
        """
        if key in IMMUTABLE_CONFIG_KEYS:
            return {"error": f"Key '{key}' cannot be changed at runtime"}

        if not hasattr(self, key) or key.startswith('_'):
            return {"error": f"Unknown config key: {key}"}

        field_type = CONFIG_FIELD_TYPES.get(key, str)
        try:
            if field_type == bool:
                typed_value = value if isinstance(value, bool) else str(value).lower() in ('true', '1', 'yes', 'on')
            elif field_type == int:
                typed_value = int(value)
            elif field_type == float:
                typed_value = float(value)
            else:
                typed_value = value
        except (ValueError, TypeError) as e:
            return {"error": f"Invalid value for {key} (expected {field_type.__name__}): {e}"}

        if key in CONFIG_FIELD_RANGES:
            min_val, max_val = CONFIG_FIELD_RANGES[key]
            if not (min_val <= typed_value <= max_val):
                return {"error": f"Value {typed_value} out of range [{min_val}, {max_val}] for {key}"}

        old_value = getattr(self, key)
        setattr(self, key, typed_value)
        if key in CORRELATION_WEIGHT_KEYS:
            total = sum(getattr(self, k) for k in CORRELATION_WEIGHT_KEYS)
            if abs(total - 1.0) > 1e-6:
                setattr(self, key, old_value)
                return {"error": f"Correlation weights would sum to {total:.4f}; they must sum to 1.0"}

        self._version += 1
        return {
            "status": "success",
            "key": key,
            "old_value": old_value,
            "new_value": typed_value,
            "version": self._version
        }


@dataclass(frozen=True)
class ConfigSnapshot:
    """
    Immutable configuration snapshot for one monitoring or analysis cycle.

    Usage:
        def run_cycle(self):
            cfg = self.config.snapshot()
            # All logic uses cfg, never self.config directly
    """
    analysis_cache_ttl: int
    optimization_cache_ttl: int

    price_correlation_weight: float
    return_correlation_weight: float
    volume_correlation_weight: float
    liquidity_correlation_weight: float
    shared_token_price_correlation: float
    distinct_token_price_correlation: float
    shared_token_volume_correlation: float
    distinct_token_volume_correlation: float
    cluster_threshold: float
    high_correlation_threshold: float

    systematic_risk_fraction: float
    idiosyncratic_risk_fraction: float
    correlation_risk_fraction: float
    liquidity_risk_fraction: float

    risk_free_rate: float
    benchmark_return: float
    transaction_cost_rate: float
    action_threshold: float
    mean_variance_iterations: int
    mean_variance_step: float

    monitoring_interval_minutes: int
    max_workers: int
    simulation_only: bool

    version: int = 0

    @classmethod
    def from_config(cls, config: 'EngineConfig') -> 'ConfigSnapshot':
        """Create snapshot from mutable EngineConfig."""
        return cls(
            analysis_cache_ttl=config.analysis_cache_ttl,
            optimization_cache_ttl=config.optimization_cache_ttl,
            price_correlation_weight=config.price_correlation_weight,
            return_correlation_weight=config.return_correlation_weight,
            volume_correlation_weight=config.volume_correlation_weight,
            liquidity_correlation_weight=config.liquidity_correlation_weight,
            shared_token_price_correlation=config.shared_token_price_correlation,
            distinct_token_price_correlation=config.distinct_token_price_correlation,
            shared_token_volume_correlation=config.shared_token_volume_correlation,
            distinct_token_volume_correlation=config.distinct_token_volume_correlation,
            cluster_threshold=config.cluster_threshold,
            high_correlation_threshold=config.high_correlation_threshold,
            systematic_risk_fraction=config.systematic_risk_fraction,
            idiosyncratic_risk_fraction=config.idiosyncratic_risk_fraction,
            correlation_risk_fraction=config.correlation_risk_fraction,
            liquidity_risk_fraction=config.liquidity_risk_fraction,
            risk_free_rate=config.risk_free_rate,
            benchmark_return=config.benchmark_return,
            transaction_cost_rate=config.transaction_cost_rate,
            action_threshold=config.action_threshold,
            mean_variance_iterations=config.mean_variance_iterations,
            mean_variance_step=config.mean_variance_step,
            monitoring_interval_minutes=config.monitoring_interval_minutes,
            max_workers=config.max_workers,
            simulation_only=config.simulation_only,
            version=config._version,
        )

    def correlation_weights(self) -> Tuple[float, float, float, float]:
        return (
            self.price_correlation_weight,
            self.return_correlation_weight,
            self.volume_correlation_weight,
            self.liquidity_correlation_weight,
        )


# =============================================================================
# OPTIMIZATION REQUEST CONFIGURATION
# =============================================================================

class OptimizationObjective(Enum):
    """Weight-solving objective."""
    MAXIMIZE_RETURN = "maximize_return"
    MINIMIZE_RISK = "minimize_risk"
    MAXIMIZE_SHARPE = "maximize_sharpe"
    MAXIMIZE_YIELD = "maximize_yield"
    MEAN_VARIANCE = "mean_variance"


def _check_weight(value: float, name: str) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be numeric")
    if math.isnan(value) or not (0.0 <= value <= 1.0):
        raise ValidationError(f"{name} must be within [0, 1], got {value}")
    return value


@dataclass(frozen=True)
class TokenConstraint:
    """Combined weight of all positions holding a token."""
    token: str
    min_weight: float = 0.0
    max_weight: float = 1.0

    def __post_init__(self):
        if not self.token:
            raise ValidationError("token constraint requires a token symbol")
        lo = _check_weight(self.min_weight, f"{self.token}.min_weight")
        hi = _check_weight(self.max_weight, f"{self.token}.max_weight")
        if lo > hi:
            raise ValidationError(f"token constraint {self.token}: min_weight > max_weight")


@dataclass(frozen=True)
class PoolConstraint:
    """Combined weight of all positions in a pool."""
    pool_id: str
    min_weight: float = 0.0
    max_weight: float = 1.0

    def __post_init__(self):
        if not self.pool_id:
            raise ValidationError("pool constraint requires a pool id")
        lo = _check_weight(self.min_weight, f"{self.pool_id}.min_weight")
        hi = _check_weight(self.max_weight, f"{self.pool_id}.max_weight")
        if lo > hi:
            raise ValidationError(f"pool constraint {self.pool_id}: min_weight > max_weight")


@dataclass(frozen=True)
class OptimizationConfig:
    """
    One optimization request.

    Objectives may be given by name ("mean_variance"). max_positions of 0
    means no limit on the number of held positions.
    """
    objective: OptimizationObjective = OptimizationObjective.MEAN_VARIANCE
    risk_aversion: float = 1.0
    min_allocation: float = 0.0
    max_allocation: float = 1.0
    min_positions: int = 1
    max_positions: int = 0
    token_constraints: Tuple[TokenConstraint, ...] = ()
    pool_constraints: Tuple[PoolConstraint, ...] = ()
    max_volatility: float = 0.3

    def __post_init__(self):
        objective = self.objective
        if not isinstance(objective, OptimizationObjective):
            try:
                objective = OptimizationObjective(objective)
            except ValueError:
                raise ValidationError(f"Unknown optimization objective: {objective!r}")
            object.__setattr__(self, "objective", objective)

        if self.risk_aversion < 0:
            raise ValidationError("risk_aversion must be >= 0")
        lo = _check_weight(self.min_allocation, "min_allocation")
        hi = _check_weight(self.max_allocation, "max_allocation")
        if lo > hi:
            raise ValidationError("min_allocation must not exceed max_allocation")
        if self.min_positions < 0 or self.max_positions < 0:
            raise ValidationError("position counts must be >= 0")
        if self.max_positions and self.min_positions > self.max_positions:
            raise ValidationError("min_positions must not exceed max_positions")
        if self.max_volatility <= 0:
            raise ValidationError("max_volatility must be > 0")

        object.__setattr__(self, "token_constraints", tuple(
            c if isinstance(c, TokenConstraint) else TokenConstraint(**c)
            for c in self.token_constraints
        ))
        object.__setattr__(self, "pool_constraints", tuple(
            c if isinstance(c, PoolConstraint) else PoolConstraint(**c)
            for c in self.pool_constraints
        ))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OptimizationConfig':
        known = {
            "objective", "risk_aversion", "min_allocation", "max_allocation",
            "min_positions", "max_positions", "token_constraints",
            "pool_constraints", "max_volatility",
        }
        unknown = set(data) - known
        if unknown:
            raise ValidationError(f"Unknown optimization config keys: {sorted(unknown)}")
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "objective": self.objective.value,
            "risk_aversion": self.risk_aversion,
            "min_allocation": self.min_allocation,
            "max_allocation": self.max_allocation,
            "min_positions": self.min_positions,
            "max_positions": self.max_positions,
            "token_constraints": [
                {"token": c.token, "min_weight": c.min_weight, "max_weight": c.max_weight}
                for c in self.token_constraints
            ],
            "pool_constraints": [
                {"pool_id": c.pool_id, "min_weight": c.min_weight, "max_weight": c.max_weight}
                for c in self.pool_constraints
            ],
            "max_volatility": self.max_volatility,
        }


# Rebalancing action buckets by absolute weight change
class ActionBuckets:
    """
    Classify a target weight change into a priority and timing bucket.

    - > 10%: high priority, execute immediately
    - > 5%:  medium priority, next monitoring cycle
    - else:  low priority, opportunistic
    """

    HIGH = 0.10
    MEDIUM = 0.05

    @classmethod
    def get_priority(cls, weight_change: float) -> str:
        abs_change = abs(weight_change)
        if abs_change > cls.HIGH:
            return "high"
        elif abs_change > cls.MEDIUM:
            return "medium"
        return "low"

    @classmethod
    def get_timing(cls, weight_change: float) -> str:
        timing = {
            "high": "immediate",
            "medium": "next_cycle",
            "low": "opportunistic",
        }
        return timing[cls.get_priority(weight_change)]


PRIORITY_ORDER: Dict[str, int] = {"critical": 0, "high": 1, "medium": 2, "low": 3}
