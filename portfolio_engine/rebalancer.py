"""
Trigger & Cost-Benefit Rebalancer module for portfolio_engine

Decides WHEN a liquidity position should be re-centered and whether the
move pays for itself.

Architecture Pattern: "Strategist, Manager, and Driver"
- STRATEGIST (RebalanceEvaluator): efficiency, cost/benefit and risk
  scoring, and the rebalance / no_action decision
- MANAGER (ExecutionManager): execution state machine, per-position
  serialization, bounded history and statistics
- DRIVER (RebalanceExecutor): injected; builds and submits transactions.
  The default SimulatedExecutor only reports estimated costs.

RebalancingSystem ties them together: it owns the configuration
registry, evaluates triggers on each monitoring cycle, enforces
constraints before automatic execution and runs the monitoring loop.

Decision rule:
    rebalance iff efficiency_gain > min_efficiency_gain
              and roi > break_even_threshold
              and overall_risk != critical

Execution lifecycle:
    pending -> executing -> completed | failed
    pending -> cancelled (approval withheld)
"""

import copy
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Any, Sequence, Tuple

from .config import EngineConfig, ConfigSnapshot
from .errors import ExecutionFailure, NotFoundError, ValidationError
from .log import get_logger, log_message
from .market_data import MarketDataProvider, PositionMarketState
from .metrics import PrometheusExporter, MetricNames
from .models import Position, find_position
from .scheduler import MonitoringLoop, fan_out


# =============================================================================
# CONSTANTS
# =============================================================================

BASE_EFFICIENCY = 0.8               # Potential efficiency before strategy multiplier
TARGET_EFFICIENCY = 0.9             # Efficiency a fresh range is expected to reach
OPTIMAL_EFFICIENCY_RANGE = (0.7, 0.95)
HOURS_PER_WEEK = 168
MAX_TIME_DEGRADATION = 0.1
FEE_RATE = 0.003                    # Pool fee tier used for fee estimates
DAYS_PER_YEAR = 365
HOURS_PER_YEAR = 24 * 365

GAS_COST_BASE = 0.002
AGGRESSIVE_GAS_MULTIPLIER = 1.5
OPPORTUNITY_RATE = 0.1              # Annual return foregone while out of range
OPPORTUNITY_WINDOW_HOURS = 0.25     # Execution window
EFFICIENCY_BENEFIT_RATE = 0.05
RISK_REDUCTION_RATE = 0.02
ACCEPTABLE_DEVIATION = 0.05

REFERENCE_POOL_LIQUIDITY = 100_000
LIQUIDITY_RISK_THRESHOLD = 0.7
VOLATILITY_RISK_THRESHOLD = 0.8
ELEVATED_VOLATILITY = 0.2           # Market volatility that warrants wider ranges

ESTIMATED_TRANSACTIONS = 2          # Remove + add liquidity
MAX_RECOMMENDED_SLIPPAGE = 2.0

# Thresholds applied when an emergency condition switches to conservative mode
CONSERVATIVE_MIN_GAIN = 0.15
CONSERVATIVE_BREAK_EVEN = 0.2

STRATEGY_MULTIPLIERS = {
    "aggressive": 1.2,
    "conservative": 1.0,
    "adaptive": 1.1,
    "momentum": 1.15,
    "mean_reversion": 1.05,
    "custom": 1.0,
}

URGENCY_WEIGHTS = {"critical": 4, "high": 3, "medium": 2, "low": 1}
RISK_CONFIDENCE = {"low": 1.0, "medium": 0.7}

DEFAULT_CONFIG_ID = "adaptive_rebalancing"


class StrategyType(Enum):
    AGGRESSIVE = "aggressive"
    CONSERVATIVE = "conservative"
    ADAPTIVE = "adaptive"
    MOMENTUM = "momentum"
    MEAN_REVERSION = "mean_reversion"
    CUSTOM = "custom"


class TriggerType(Enum):
    PRICE_MOVEMENT = "price_movement"
    TIME_BASED = "time_based"
    EFFICIENCY_DROP = "efficiency_drop"
    VOLATILITY_CHANGE = "volatility_change"
    CUSTOM = "custom"


class ConditionOperator(Enum):
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    EQ = "eq"
    BETWEEN = "between"


class ExecutionMode(Enum):
    SIMULATION = "simulation"
    AUTOMATIC = "automatic"
    APPROVAL_REQUIRED = "approval_required"


class RiskLevel(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ExecutionStatus(Enum):
    """Lifecycle state of a rebalancing execution."""
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# =============================================================================
# CONFIGURATION TYPES
# =============================================================================

@dataclass
class TriggerCondition:
    """
    metric <operator> value, held for confirmation_minutes.

    For BETWEEN the range is [value, upper_value]. time_window_minutes,
    when set, is the minimum spacing between two fires of the trigger.
    """
    metric: str
    operator: ConditionOperator
    value: float
    upper_value: Optional[float] = None
    time_window_minutes: Optional[float] = None
    confirmation_minutes: float = 0.0

    def __post_init__(self):
        if not isinstance(self.operator, ConditionOperator):
            try:
                self.operator = ConditionOperator(self.operator)
            except ValueError:
                raise ValidationError(f"Unknown condition operator: {self.operator!r}")
        if self.operator == ConditionOperator.BETWEEN:
            if self.upper_value is None or self.upper_value < self.value:
                raise ValidationError("between condition requires upper_value >= value")
        if self.confirmation_minutes < 0:
            raise ValidationError("confirmation_minutes must be >= 0")

    def evaluate(self, observed: float) -> bool:
        op = self.operator
        if op == ConditionOperator.GT:
            return observed > self.value
        if op == ConditionOperator.GTE:
            return observed >= self.value
        if op == ConditionOperator.LT:
            return observed < self.value
        if op == ConditionOperator.LTE:
            return observed <= self.value
        if op == ConditionOperator.EQ:
            return abs(observed - self.value) < 0.001
        return self.value <= observed <= self.upper_value


@dataclass
class RebalancingTrigger:
    trigger_id: str
    trigger_type: TriggerType
    condition: TriggerCondition
    priority: int = 5
    enabled: bool = True
    trigger_count: int = 0
    last_triggered: Optional[float] = None
    condition_since: Optional[float] = None

    def __post_init__(self):
        if not isinstance(self.trigger_type, TriggerType):
            try:
                self.trigger_type = TriggerType(self.trigger_type)
            except ValueError:
                raise ValidationError(f"Unknown trigger type: {self.trigger_type!r}")

    def observe(self, observed: Optional[float], now: float) -> bool:
        """
        Feed one observation; returns True when the trigger fires.

        The condition must hold continuously for the confirmation period.
        After a fire the confirmation period starts over.
        """
        if not self.enabled or observed is None or not self.condition.evaluate(observed):
            self.condition_since = None
            return False

        if self.condition_since is None:
            self.condition_since = now
        if now - self.condition_since < self.condition.confirmation_minutes * 60:
            return False

        window = self.condition.time_window_minutes
        if window and self.last_triggered is not None and now - self.last_triggered < window * 60:
            return False

        self.trigger_count += 1
        self.last_triggered = now
        self.condition_since = now
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trigger_id": self.trigger_id,
            "type": self.trigger_type.value,
            "metric": self.condition.metric,
            "operator": self.condition.operator.value,
            "value": self.condition.value,
            "priority": self.priority,
            "enabled": self.enabled,
            "trigger_count": self.trigger_count,
            "last_triggered": self.last_triggered,
        }


@dataclass(frozen=True)
class StrategyParameters:
    target_range: int = 10                  # Range width in bins
    rebalance_threshold: float = 0.05
    max_slippage: float = 0.8               # Percent
    min_efficiency_gain: float = 0.1
    volatility_multiplier: float = 1.0
    risk_adjustment: float = 1.0


@dataclass(frozen=True)
class TimeWindow:
    """UTC window; days_of_week uses 0 = Sunday."""
    start: str = "00:00"
    end: str = "23:59"
    days_of_week: Tuple[int, ...] = (0, 1, 2, 3, 4, 5, 6)

    def __post_init__(self):
        for value in (self.start, self.end):
            _parse_hhmm(value)
        if any(d < 0 or d > 6 for d in self.days_of_week):
            raise ValidationError("days_of_week must be within 0..6")

    def contains(self, timestamp: float) -> bool:
        dt = datetime.fromtimestamp(timestamp, tz=timezone.utc)
        day = (dt.weekday() + 1) % 7
        if day not in self.days_of_week:
            return False
        minute = dt.hour * 60 + dt.minute
        start, end = _parse_hhmm(self.start), _parse_hhmm(self.end)
        if start <= end:
            return start <= minute <= end
        return minute >= start or minute <= end


def _parse_hhmm(value: str) -> int:
    try:
        hours, minutes = value.split(":")
        hours, minutes = int(hours), int(minutes)
    except (AttributeError, ValueError):
        raise ValidationError(f"Invalid time {value!r}, expected HH:MM")
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        raise ValidationError(f"Invalid time {value!r}, expected HH:MM")
    return hours * 60 + minutes


@dataclass(frozen=True)
class EmergencyCondition:
    condition_type: str         # high_volatility | low_liquidity | price_crash | network_congestion
    threshold: float
    action: str                 # pause | reduce_frequency | conservative_mode

    def __post_init__(self):
        if self.condition_type not in ("high_volatility", "low_liquidity", "price_crash", "network_congestion"):
            raise ValidationError(f"Unknown emergency condition: {self.condition_type}")
        if self.action not in ("pause", "reduce_frequency", "conservative_mode"):
            raise ValidationError(f"Unknown emergency action: {self.action}")

    def is_met(self, state: 'PositionState') -> bool:
        if self.condition_type == "high_volatility":
            return state.volatility > self.threshold
        if self.condition_type == "low_liquidity":
            return state.pool_liquidity < self.threshold
        if self.condition_type == "price_crash":
            return state.price_deviation > self.threshold
        return state.network_congestion > self.threshold


@dataclass(frozen=True)
class RebalancingConstraints:
    max_rebalances_per_day: int = 6
    min_time_between_minutes: float = 60
    max_slippage_allowed: float = 1.0
    min_position_value: float = 0.0
    max_gas_cost_ratio: float = 0.05        # Gas / position value
    allowed_time_windows: Tuple[TimeWindow, ...] = (TimeWindow(),)
    emergency_stop_conditions: Tuple[EmergencyCondition, ...] = ()


@dataclass(frozen=True)
class CostAnalysisConfig:
    break_even_threshold: float = 0.12      # Minimum ROI (percent)
    include_gas_costs: bool = True
    include_slippage: bool = True
    include_opportunity_cost: bool = True


@dataclass(frozen=True)
class AutomationConfig:
    enabled: bool = True
    execution_mode: ExecutionMode = ExecutionMode.APPROVAL_REQUIRED
    max_automatic_value: float = 1000.0     # Largest position value executed unattended
    monitoring_interval_minutes: int = 30


@dataclass
class RebalancingConfig:
    config_id: str
    name: str
    description: str = ""
    strategy_type: StrategyType = StrategyType.ADAPTIVE
    parameters: StrategyParameters = field(default_factory=StrategyParameters)
    triggers: List[RebalancingTrigger] = field(default_factory=list)
    constraints: RebalancingConstraints = field(default_factory=RebalancingConstraints)
    cost_analysis: CostAnalysisConfig = field(default_factory=CostAnalysisConfig)
    automation: AutomationConfig = field(default_factory=AutomationConfig)
    is_active: bool = True

    def __post_init__(self):
        if not self.config_id:
            raise ValidationError("config_id is required")
        if not isinstance(self.strategy_type, StrategyType):
            try:
                self.strategy_type = StrategyType(self.strategy_type)
            except ValueError:
                raise ValidationError(f"Unknown strategy type: {self.strategy_type!r}")
        ids = [t.trigger_id for t in self.triggers]
        if len(ids) != len(set(ids)):
            raise ValidationError(f"Duplicate trigger ids in {self.config_id}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "config_id": self.config_id,
            "name": self.name,
            "description": self.description,
            "strategy_type": self.strategy_type.value,
            "triggers": [t.to_dict() for t in self.triggers],
            "execution_mode": self.automation.execution_mode.value,
            "break_even_threshold": self.cost_analysis.break_even_threshold,
            "min_efficiency_gain": self.parameters.min_efficiency_gain,
            "is_active": self.is_active,
        }


def default_rebalancing_configs() -> List[RebalancingConfig]:
    """The built-in aggressive, conservative and adaptive strategies."""
    return [
        RebalancingConfig(
            config_id="aggressive_rebalancing",
            name="Aggressive Rebalancing",
            description="Frequent rebalancing for maximum fee capture",
            strategy_type=StrategyType.AGGRESSIVE,
            parameters=StrategyParameters(
                target_range=6, rebalance_threshold=0.02, max_slippage=1.0,
                min_efficiency_gain=0.05, volatility_multiplier=1.5, risk_adjustment=1.2
            ),
            triggers=[
                RebalancingTrigger(
                    "price_movement_2pct", TriggerType.PRICE_MOVEMENT,
                    TriggerCondition("price_deviation", ConditionOperator.GTE, 0.02, confirmation_minutes=5),
                    priority=8
                ),
                RebalancingTrigger(
                    "efficiency_drop_10pct", TriggerType.EFFICIENCY_DROP,
                    TriggerCondition("efficiency_ratio", ConditionOperator.LT, 0.9),
                    priority=7
                ),
            ],
            constraints=RebalancingConstraints(
                max_rebalances_per_day=10, min_time_between_minutes=30,
                max_slippage_allowed=1.5, min_position_value=100,
                emergency_stop_conditions=(EmergencyCondition("high_volatility", 0.15, "conservative_mode"),)
            ),
            cost_analysis=CostAnalysisConfig(break_even_threshold=0.1),
            automation=AutomationConfig(
                enabled=True, execution_mode=ExecutionMode.APPROVAL_REQUIRED,
                max_automatic_value=1000, monitoring_interval_minutes=15
            ),
        ),
        RebalancingConfig(
            config_id="conservative_rebalancing",
            name="Conservative Rebalancing",
            description="Infrequent rebalancing with wide ranges and strict cost control",
            strategy_type=StrategyType.CONSERVATIVE,
            parameters=StrategyParameters(
                target_range=15, rebalance_threshold=0.08, max_slippage=0.5,
                min_efficiency_gain=0.15, volatility_multiplier=0.8, risk_adjustment=0.8
            ),
            triggers=[
                RebalancingTrigger(
                    "price_movement_8pct", TriggerType.PRICE_MOVEMENT,
                    TriggerCondition("price_deviation", ConditionOperator.GTE, 0.08, confirmation_minutes=30),
                    priority=6
                ),
                RebalancingTrigger(
                    "time_based_weekly", TriggerType.TIME_BASED,
                    TriggerCondition("time_elapsed", ConditionOperator.GTE, 10080),
                    priority=4
                ),
            ],
            constraints=RebalancingConstraints(
                max_rebalances_per_day=2, min_time_between_minutes=360,
                max_slippage_allowed=0.8, min_position_value=500,
                allowed_time_windows=(TimeWindow("06:00", "22:00", (1, 2, 3, 4, 5)),),
                emergency_stop_conditions=(EmergencyCondition("high_volatility", 0.1, "pause"),)
            ),
            cost_analysis=CostAnalysisConfig(break_even_threshold=0.2),
            automation=AutomationConfig(
                enabled=True, execution_mode=ExecutionMode.SIMULATION,
                max_automatic_value=500, monitoring_interval_minutes=60
            ),
        ),
        RebalancingConfig(
            config_id="adaptive_rebalancing",
            name="Adaptive Rebalancing",
            description="Adjusts to volatility and efficiency changes",
            strategy_type=StrategyType.ADAPTIVE,
            parameters=StrategyParameters(
                target_range=10, rebalance_threshold=0.05, max_slippage=0.8,
                min_efficiency_gain=0.1, volatility_multiplier=1.0, risk_adjustment=1.0
            ),
            triggers=[
                RebalancingTrigger(
                    "volatility_change", TriggerType.VOLATILITY_CHANGE,
                    TriggerCondition("volatility_change", ConditionOperator.GTE, 0.3, confirmation_minutes=15),
                    priority=9
                ),
                RebalancingTrigger(
                    "adaptive_efficiency", TriggerType.EFFICIENCY_DROP,
                    TriggerCondition("efficiency_ratio", ConditionOperator.LT, 0.85),
                    priority=8
                ),
            ],
            constraints=RebalancingConstraints(
                max_rebalances_per_day=6, min_time_between_minutes=60,
                max_slippage_allowed=1.0, min_position_value=250,
                emergency_stop_conditions=(EmergencyCondition("network_congestion", 0.8, "reduce_frequency"),)
            ),
            cost_analysis=CostAnalysisConfig(break_even_threshold=0.12),
            automation=AutomationConfig(
                enabled=True, execution_mode=ExecutionMode.APPROVAL_REQUIRED,
                max_automatic_value=2000, monitoring_interval_minutes=30
            ),
        ),
    ]


# =============================================================================
# ANALYSIS TYPES
# =============================================================================

@dataclass(frozen=True)
class PositionState:
    """Position figures the evaluator works from."""
    position_id: str
    total_value: float
    efficiency: float
    capital_utilization: float
    hours_since_update: float
    price_deviation: float
    pool_liquidity: float
    volatility: float
    volatility_change: float = 0.0
    network_congestion: float = 0.0

    @classmethod
    def from_market(cls, position: Position, market: PositionMarketState, now: float) -> 'PositionState':
        hours = (now - position.last_updated) / 3600 if position.last_updated > 0 else 0.0
        return cls(
            position_id=position.id,
            total_value=position.value,
            efficiency=market.efficiency,
            capital_utilization=market.capital_utilization,
            hours_since_update=max(0.0, hours),
            price_deviation=market.price_deviation,
            pool_liquidity=market.pool_liquidity,
            volatility=market.volatility,
            volatility_change=market.volatility_change,
            network_congestion=market.network_congestion
        )


@dataclass(frozen=True)
class EfficiencyAnalysis:
    current_efficiency: float
    potential_efficiency: float
    efficiency_gain: float
    degradation_rate: float
    missed_fees: float
    optimal_range: Tuple[float, float] = OPTIMAL_EFFICIENCY_RANGE


@dataclass(frozen=True)
class CostBenefitAnalysis:
    gas_cost: float
    slippage_cost: float
    opportunity_cost: float
    total_costs: float
    increased_fees: float
    efficiency_benefit: float
    risk_reduction_benefit: float
    total_benefits: float
    net_benefit: float
    roi: float                      # Percent
    payback_period_days: float
    profit_probability: float


@dataclass(frozen=True)
class RiskFactor:
    factor_type: str
    impact: float
    probability: float
    description: str


@dataclass(frozen=True)
class RiskAssessment:
    overall_risk: RiskLevel
    factors: Tuple[RiskFactor, ...]
    recommended_max_slippage: float
    liquidity_risk: float
    volatility_risk: float
    execution_risk: float


@dataclass(frozen=True)
class RebalancingRecommendation:
    recommendation_type: str
    priority: str
    description: str
    expected_benefit: float = 0.0


@dataclass(frozen=True)
class RecommendedAction:
    action: str                     # rebalance | no_action
    new_range_width: int = 0
    estimated_transactions: int = 0
    estimated_gas: float = 0.0
    max_slippage: float = 0.0
    reason: str = ""


@dataclass
class RebalancingAnalysis:
    analysis_id: str
    position_id: str
    config_id: str
    timestamp: float
    current_state: PositionState
    efficiency: EfficiencyAnalysis
    cost_benefit: CostBenefitAnalysis
    risk: RiskAssessment
    recommended_action: RecommendedAction
    recommendations: List[RebalancingRecommendation] = field(default_factory=list)
    confidence: float = 0.0
    urgency: str = "low"
    triggered_by: List[str] = field(default_factory=list)

    @property
    def should_rebalance(self) -> bool:
        return self.recommended_action.action == "rebalance"

    def to_dict(self) -> Dict[str, Any]:
        cb = self.cost_benefit
        return {
            "analysis_id": self.analysis_id,
            "position_id": self.position_id,
            "config_id": self.config_id,
            "timestamp": self.timestamp,
            "recommended_action": self.recommended_action.action,
            "new_range_width": self.recommended_action.new_range_width,
            "max_slippage": round(self.recommended_action.max_slippage, 4),
            "reason": self.recommended_action.reason,
            "efficiency_gain": round(self.efficiency.efficiency_gain, 4),
            "degradation_rate": round(self.efficiency.degradation_rate, 4),
            "total_costs": round(cb.total_costs, 6),
            "total_benefits": round(cb.total_benefits, 6),
            "net_benefit": round(cb.net_benefit, 6),
            "roi": round(cb.roi, 4),
            "profit_probability": round(cb.profit_probability, 4),
            "overall_risk": self.risk.overall_risk.value,
            "confidence": round(self.confidence, 4),
            "urgency": self.urgency,
            "triggered_by": list(self.triggered_by),
            "recommendations": [r.recommendation_type for r in self.recommendations],
        }


def should_rebalance(
    efficiency_gain: float,
    min_efficiency_gain: float,
    roi: float,
    break_even_threshold: float,
    overall_risk: RiskLevel
) -> bool:
    return (
        efficiency_gain > min_efficiency_gain
        and roi > break_even_threshold
        and overall_risk != RiskLevel.CRITICAL
    )


# =============================================================================
# STRATEGIST
# =============================================================================

class RebalanceEvaluator:
    """
    Pure scoring of one position under one configuration.

    No I/O and no state: the same state and config always give the same
    analysis.
    """

    def analyze(
        self,
        state: PositionState,
        config: RebalancingConfig,
        now: float,
        triggered_by: Optional[Sequence[str]] = None
    ) -> RebalancingAnalysis:
        efficiency = self.analyze_efficiency(state, config)
        cost_benefit = self.analyze_cost_benefit(state, config)
        risk = self.assess_risk(state, config)

        decide = should_rebalance(
            efficiency.efficiency_gain,
            config.parameters.min_efficiency_gain,
            cost_benefit.roi,
            config.cost_analysis.break_even_threshold,
            risk.overall_risk
        )
        action = self.build_action(state, config, decide, cost_benefit, risk)

        return RebalancingAnalysis(
            analysis_id=f"analysis-{state.position_id}-{config.config_id}-{int(now * 1000)}",
            position_id=state.position_id,
            config_id=config.config_id,
            timestamp=now,
            current_state=state,
            efficiency=efficiency,
            cost_benefit=cost_benefit,
            risk=risk,
            recommended_action=action,
            recommendations=self.build_recommendations(state, config, efficiency, cost_benefit),
            confidence=self.calculate_confidence(efficiency, cost_benefit, risk),
            urgency=self.calculate_urgency(efficiency, risk),
            triggered_by=list(triggered_by or [])
        )

    def analyze_efficiency(self, state: PositionState, config: RebalancingConfig) -> EfficiencyAnalysis:
        multiplier = STRATEGY_MULTIPLIERS.get(config.strategy_type.value, 1.0)
        potential = min(1.0, BASE_EFFICIENCY * multiplier)
        degradation = (
            min(MAX_TIME_DEGRADATION, state.hours_since_update / HOURS_PER_WEEK)
            + state.price_deviation * 0.5
        )
        missed = (TARGET_EFFICIENCY - state.efficiency) * state.total_value * FEE_RATE * DAYS_PER_YEAR
        return EfficiencyAnalysis(
            current_efficiency=state.efficiency,
            potential_efficiency=potential,
            efficiency_gain=potential - state.efficiency,
            degradation_rate=degradation,
            missed_fees=max(0.0, missed)
        )

    def analyze_cost_benefit(self, state: PositionState, config: RebalancingConfig) -> CostBenefitAnalysis:
        value = state.total_value
        aggressive = config.strategy_type == StrategyType.AGGRESSIVE
        options = config.cost_analysis

        gas = GAS_COST_BASE * (AGGRESSIVE_GAS_MULTIPLIER if aggressive else 1.0)
        if state.pool_liquidity > 0:
            slip_rate = min(config.parameters.max_slippage / 100, value / state.pool_liquidity * 0.1)
        else:
            slip_rate = config.parameters.max_slippage / 100
        slippage = value * slip_rate
        opportunity = value * OPPORTUNITY_RATE * (OPPORTUNITY_WINDOW_HOURS / HOURS_PER_YEAR)

        costs = (
            (gas if options.include_gas_costs else 0.0)
            + (slippage if options.include_slippage else 0.0)
            + (opportunity if options.include_opportunity_cost else 0.0)
        )

        increased_fees = value * FEE_RATE * max(0.0, TARGET_EFFICIENCY - state.efficiency) * DAYS_PER_YEAR
        efficiency_benefit = max(0.0, TARGET_EFFICIENCY - state.capital_utilization) * value * EFFICIENCY_BENEFIT_RATE
        risk_reduction = max(0.0, state.price_deviation - ACCEPTABLE_DEVIATION) * value * RISK_REDUCTION_RATE
        benefits = increased_fees + efficiency_benefit + risk_reduction

        net = benefits - costs
        roi = net / costs * 100 if costs > 0 else 0.0
        payback = costs / (increased_fees / DAYS_PER_YEAR) if increased_fees > 0 else float("inf")

        if net <= 0:
            probability = 0.1
        else:
            probability = 0.7 + min(0.2, net / 1000)
            if config.strategy_type == StrategyType.CONSERVATIVE:
                probability += 0.1
            probability = min(0.95, probability)

        return CostBenefitAnalysis(
            gas_cost=gas,
            slippage_cost=slippage,
            opportunity_cost=opportunity,
            total_costs=costs,
            increased_fees=increased_fees,
            efficiency_benefit=efficiency_benefit,
            risk_reduction_benefit=risk_reduction,
            total_benefits=benefits,
            net_benefit=net,
            roi=roi,
            payback_period_days=payback,
            profit_probability=probability
        )

    def assess_risk(self, state: PositionState, config: RebalancingConfig) -> RiskAssessment:
        liquidity_risk = max(0.0, 1.0 - state.pool_liquidity / REFERENCE_POOL_LIQUIDITY)
        volatility_risk = min(1.0, state.price_deviation * 5)
        execution_risk = 0.1 + (0.3 if config.strategy_type == StrategyType.AGGRESSIVE else 0.1)

        factors = []
        if liquidity_risk > LIQUIDITY_RISK_THRESHOLD:
            factors.append(RiskFactor("liquidity", liquidity_risk, 0.3, "Thin pool liquidity increases price impact"))
        if volatility_risk > VOLATILITY_RISK_THRESHOLD:
            factors.append(RiskFactor("volatility", volatility_risk, 0.4, "Large price deviation may continue"))
        factors.append(RiskFactor("execution", execution_risk, 0.2, "Transactions may fail or land late"))

        average = sum(f.impact for f in factors) / len(factors)
        if average < 0.3:
            overall = RiskLevel.LOW
        elif average < 0.6:
            overall = RiskLevel.MEDIUM
        elif average < 0.8:
            overall = RiskLevel.HIGH
        else:
            overall = RiskLevel.CRITICAL

        liq_impact = next((f.impact for f in factors if f.factor_type == "liquidity"), 0.0)
        vol_impact = next((f.impact for f in factors if f.factor_type == "volatility"), 0.0)

        return RiskAssessment(
            overall_risk=overall,
            factors=tuple(factors),
            recommended_max_slippage=min(MAX_RECOMMENDED_SLIPPAGE, 0.5 + liq_impact * 0.5 + vol_impact * 0.3),
            liquidity_risk=liquidity_risk,
            volatility_risk=volatility_risk,
            execution_risk=execution_risk
        )

    def build_action(
        self,
        state: PositionState,
        config: RebalancingConfig,
        decide: bool,
        cost_benefit: CostBenefitAnalysis,
        risk: RiskAssessment
    ) -> RecommendedAction:
        if not decide:
            return RecommendedAction(action="no_action", reason="Rebalancing criteria not met")
        params = config.parameters
        return RecommendedAction(
            action="rebalance",
            new_range_width=int(round(params.target_range * (1 + state.volatility * params.volatility_multiplier))),
            estimated_transactions=ESTIMATED_TRANSACTIONS,
            estimated_gas=cost_benefit.gas_cost,
            max_slippage=min(params.max_slippage, risk.recommended_max_slippage),
            reason="Efficiency gain exceeds costs"
        )

    def build_recommendations(
        self,
        state: PositionState,
        config: RebalancingConfig,
        efficiency: EfficiencyAnalysis,
        cost_benefit: CostBenefitAnalysis
    ) -> List[RebalancingRecommendation]:
        recs = []
        if efficiency.efficiency_gain > config.parameters.min_efficiency_gain:
            recs.append(RebalancingRecommendation(
                "immediate_rebalance", "high",
                f"Rebalance to improve efficiency by {efficiency.efficiency_gain * 100:.1f}%",
                cost_benefit.net_benefit
            ))
        if state.volatility > ELEVATED_VOLATILITY:
            recs.append(RebalancingRecommendation(
                "volatility_adjustment", "medium",
                "Widen the range to account for elevated volatility"
            ))
        if cost_benefit.roi < config.cost_analysis.break_even_threshold:
            recs.append(RebalancingRecommendation(
                "cost_optimization", "low",
                "ROI below break-even; wait for lower execution costs"
            ))
        return recs

    def calculate_confidence(
        self,
        efficiency: EfficiencyAnalysis,
        cost_benefit: CostBenefitAnalysis,
        risk: RiskAssessment
    ) -> float:
        gain_factor = max(0.0, min(1.0, efficiency.efficiency_gain * 2))
        risk_factor = RISK_CONFIDENCE.get(risk.overall_risk.value, 0.3)
        return (gain_factor + cost_benefit.profit_probability + risk_factor) / 3

    def calculate_urgency(self, efficiency: EfficiencyAnalysis, risk: RiskAssessment) -> str:
        gain, degradation = efficiency.efficiency_gain, efficiency.degradation_rate
        if risk.overall_risk == RiskLevel.CRITICAL or degradation > 0.1:
            return "critical"
        if gain > 0.2 or degradation > 0.05:
            return "high"
        if gain > 0.1 or degradation > 0.02:
            return "medium"
        return "low"


# =============================================================================
# DRIVER
# =============================================================================

@dataclass(frozen=True)
class TransactionRecord:
    signature: str
    tx_type: str                    # remove_liquidity | add_liquidity | ...
    cost: float
    status: str = "confirmed"       # confirmed | simulated | failed


@dataclass(frozen=True)
class ExecutionReport:
    transactions: Tuple[TransactionRecord, ...]
    actual_cost: float
    new_efficiency: Optional[float] = None


class RebalanceExecutor(ABC):
    """Builds and submits the transactions for a rebalance."""

    @abstractmethod
    def execute(self, analysis: RebalancingAnalysis) -> ExecutionReport:
        """Perform the rebalance. Raise on failure."""


class SimulatedExecutor(RebalanceExecutor):
    """Reports the estimated costs without touching any chain."""

    def execute(self, analysis: RebalancingAnalysis) -> ExecutionReport:
        per_tx = analysis.cost_benefit.total_costs / ESTIMATED_TRANSACTIONS
        return ExecutionReport(
            transactions=(
                TransactionRecord(f"simulated-{analysis.analysis_id}-remove", "remove_liquidity", per_tx, "simulated"),
                TransactionRecord(f"simulated-{analysis.analysis_id}-add", "add_liquidity", per_tx, "simulated"),
            ),
            actual_cost=analysis.cost_benefit.total_costs,
            new_efficiency=analysis.efficiency.potential_efficiency
        )


# =============================================================================
# MANAGER
# =============================================================================

@dataclass(frozen=True)
class ExecutionAlert:
    level: str                      # info | warning | error
    message: str
    timestamp: float


@dataclass
class RebalancingExecution:
    execution_id: str
    position_id: str
    config_id: str
    owner_key: str
    analysis: RebalancingAnalysis
    status: ExecutionStatus = ExecutionStatus.PENDING
    created_at: float = 0.0
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    transactions: List[TransactionRecord] = field(default_factory=list)
    estimated_cost: float = 0.0
    actual_cost: float = 0.0
    cost_variance: float = 0.0
    efficiency_improvement: float = 0.0
    actual_benefit: float = 0.0
    lessons_learned: List[str] = field(default_factory=list)
    alerts: List[ExecutionAlert] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return self.completed_at - self.started_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "position_id": self.position_id,
            "config_id": self.config_id,
            "owner_key": self.owner_key,
            "status": self.status.value,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "transactions": [t.signature for t in self.transactions],
            "estimated_cost": round(self.estimated_cost, 6),
            "actual_cost": round(self.actual_cost, 6),
            "cost_variance": round(self.cost_variance, 6),
            "efficiency_improvement": round(self.efficiency_improvement, 4),
            "actual_benefit": round(self.actual_benefit, 6),
            "lessons_learned": list(self.lessons_learned),
            "alerts": [{"level": a.level, "message": a.message} for a in self.alerts],
            "error": self.error,
        }


class RebalanceRateLimiter:
    """
    Per-position sliding-window limiter for executed rebalances.

    Enforces both a daily count and a minimum spacing.
    """

    WINDOW_SECONDS = 86400

    def __init__(self):
        self._timestamps: Dict[str, List[float]] = {}
        self._lock = threading.Lock()

    def check(
        self,
        position_id: str,
        max_per_day: int,
        min_interval_minutes: float,
        now: float
    ) -> Tuple[bool, str]:
        """
        Returns:
            Tuple of (allowed, reason when not allowed)
        """
        cutoff = now - self.WINDOW_SECONDS
        with self._lock:
            recent = [ts for ts in self._timestamps.get(position_id, []) if ts > cutoff]
            self._timestamps[position_id] = recent

            if len(recent) >= max_per_day:
                return (False, f"Daily limit reached ({max_per_day} rebalances per 24h)")
            if recent and now - recent[-1] < min_interval_minutes * 60:
                wait = min_interval_minutes * 60 - (now - recent[-1])
                return (False, f"Minimum interval not elapsed (retry in {int(wait)}s)")
            return (True, "")

    def record(self, position_id: str, now: float) -> None:
        with self._lock:
            self._timestamps.setdefault(position_id, []).append(now)

    def get_status(self, now: float) -> Dict[str, int]:
        cutoff = now - self.WINDOW_SECONDS
        with self._lock:
            return {
                pid: len([ts for ts in stamps if ts > cutoff])
                for pid, stamps in self._timestamps.items()
            }


class ExecutionManager:
    """
    Runs executions through the state machine.

    Executions for the same position are serialized by a per-position
    lock. Executor exceptions become a failed record with an error alert.
    """

    def __init__(
        self,
        executor: RebalanceExecutor,
        rate_limiter: RebalanceRateLimiter,
        max_history: int = 100,
        metrics: Optional[PrometheusExporter] = None,
        logger: Optional[logging.Logger] = None,
        clock=time.time
    ):
        self.executor = executor
        self.rate_limiter = rate_limiter
        self.metrics = metrics
        self.logger = get_logger("rebalancer", logger)
        self._clock = clock
        self._history: deque = deque(maxlen=max_history)
        self._history_lock = threading.Lock()
        self._position_locks: Dict[str, threading.Lock] = {}
        self._locks_lock = threading.Lock()
        self._sequence = 0

    def log(self, msg: str, level: str = "info") -> None:
        log_message(self.logger, "ExecutionManager", msg, level)

    def _position_lock(self, position_id: str) -> threading.Lock:
        with self._locks_lock:
            return self._position_locks.setdefault(position_id, threading.Lock())

    def _next_id(self, position_id: str) -> str:
        with self._locks_lock:
            self._sequence += 1
            return f"execution-{position_id}-{self._sequence}"

    def execute(
        self,
        analysis: RebalancingAnalysis,
        owner_key: str,
        approval_granted: bool
    ) -> RebalancingExecution:
        now = self._clock()
        execution = RebalancingExecution(
            execution_id=self._next_id(analysis.position_id),
            position_id=analysis.position_id,
            config_id=analysis.config_id,
            owner_key=owner_key,
            analysis=analysis,
            created_at=now,
            estimated_cost=analysis.cost_benefit.total_costs
        )
        with self._history_lock:
            self._history.append(execution)

        if not approval_granted:
            execution.status = ExecutionStatus.CANCELLED
            execution.completed_at = now
            execution.alerts.append(ExecutionAlert("info", "Execution cancelled - approval required", now))
            self.log(f"Execution {execution.execution_id} cancelled: approval required")
            self._count(execution)
            return execution

        with self._position_lock(analysis.position_id):
            execution.status = ExecutionStatus.EXECUTING
            execution.started_at = self._clock()
            try:
                if analysis.should_rebalance:
                    report = self.executor.execute(analysis)
                    self._check_report(report)
                    self._complete(execution, report)
                    self.rate_limiter.record(analysis.position_id, execution.completed_at)
                else:
                    execution.status = ExecutionStatus.COMPLETED
                    execution.completed_at = self._clock()
                    execution.lessons_learned.append("No rebalancing required")
            except Exception as e:
                execution.status = ExecutionStatus.FAILED
                execution.completed_at = self._clock()
                execution.error = str(e)
                execution.alerts.append(ExecutionAlert("error", f"Execution failed: {e}", execution.completed_at))
                self.log(f"Execution {execution.execution_id} failed: {e}", level="error")

        self._count(execution)
        return execution

    @staticmethod
    def _check_report(report: Any) -> None:
        """
        Reject executor reports that cannot describe a finished rebalance.

        Raises:
            ExecutionFailure: missing report, no transactions, a failed
                transaction or a negative cost
        """
        if not isinstance(report, ExecutionReport):
            raise ExecutionFailure(f"Executor returned {type(report).__name__}, not an ExecutionReport")
        if not report.transactions:
            raise ExecutionFailure("Executor reported no transactions")
        failed = [t.signature for t in report.transactions if t.status == "failed"]
        if failed:
            raise ExecutionFailure(f"Transactions failed: {', '.join(failed)}")
        if report.actual_cost < 0:
            raise ExecutionFailure(f"Executor reported negative cost {report.actual_cost}")

    def _complete(self, execution: RebalancingExecution, report: ExecutionReport) -> None:
        analysis = execution.analysis
        execution.transactions = list(report.transactions)
        execution.actual_cost = report.actual_cost
        execution.cost_variance = report.actual_cost - execution.estimated_cost

        if report.new_efficiency is not None:
            improvement = report.new_efficiency - analysis.current_state.efficiency
        else:
            improvement = analysis.efficiency.efficiency_gain
        execution.efficiency_improvement = improvement
        execution.actual_benefit = analysis.cost_benefit.total_benefits - report.actual_cost

        estimate = execution.estimated_cost
        if estimate > 0 and execution.cost_variance > estimate * 0.1:
            execution.lessons_learned.append(
                f"Actual costs exceeded estimates by {execution.cost_variance / estimate * 100:.1f}%"
            )
        elif estimate > 0 and execution.cost_variance < -estimate * 0.1:
            execution.lessons_learned.append("Costs were lower than expected")
        if improvement >= analysis.efficiency.efficiency_gain:
            execution.lessons_learned.append("Efficiency improvement met expectations")
        else:
            execution.lessons_learned.append(
                "Efficiency improvement below expectations - review strategy parameters"
            )

        execution.status = ExecutionStatus.COMPLETED
        execution.completed_at = self._clock()
        self.log(
            f"Execution {execution.execution_id} completed: {len(execution.transactions)} transactions, "
            f"cost {execution.actual_cost:.6f} (variance {execution.cost_variance:+.6f})"
        )
        if self.metrics:
            self.metrics.inc_counter(
                MetricNames.REBALANCE_VALUE_TOTAL,
                analysis.current_state.total_value,
                {"config_id": execution.config_id}
            )

    def _count(self, execution: RebalancingExecution) -> None:
        if self.metrics:
            self.metrics.inc_counter(
                MetricNames.REBALANCE_EXECUTIONS_TOTAL,
                1,
                {"status": execution.status.value}
            )

    def get_history(self, position_id: Optional[str] = None, limit: Optional[int] = None) -> List[RebalancingExecution]:
        with self._history_lock:
            entries = [e for e in self._history if position_id is None or e.position_id == position_id]
        entries.reverse()
        return entries[:limit] if limit else entries

    def get_stats(self) -> Dict[str, Any]:
        with self._history_lock:
            entries = list(self._history)
        completed = [e for e in entries if e.status == ExecutionStatus.COMPLETED]
        finished = [e for e in entries if e.duration is not None and e.status != ExecutionStatus.CANCELLED]
        rebalanced = [e for e in completed if e.analysis.should_rebalance]
        return {
            "total_executions": len(entries),
            "completed": len(completed),
            "failed": len([e for e in entries if e.status == ExecutionStatus.FAILED]),
            "cancelled": len([e for e in entries if e.status == ExecutionStatus.CANCELLED]),
            "success_rate": len(completed) / len(entries) if entries else 0.0,
            "average_improvement": (
                sum(e.efficiency_improvement for e in rebalanced) / len(rebalanced) if rebalanced else 0.0
            ),
            "total_value_rebalanced": sum(e.analysis.current_state.total_value for e in rebalanced),
            "average_execution_time": (
                sum(e.duration for e in finished) / len(finished) if finished else 0.0
            ),
        }


# =============================================================================
# ORCHESTRATION
# =============================================================================

@dataclass(frozen=True)
class ConstraintCheck:
    allowed: bool
    violations: Tuple[str, ...] = ()
    emergency_action: Optional[str] = None


@dataclass
class MonitoringCycleReport:
    owner_key: str
    started_at: float
    duration: float = 0.0
    positions_evaluated: int = 0
    triggers_fired: int = 0
    analyses: List[RebalancingAnalysis] = field(default_factory=list)
    executions: List[RebalancingExecution] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner_key": self.owner_key,
            "started_at": self.started_at,
            "duration": round(self.duration, 4),
            "positions_evaluated": self.positions_evaluated,
            "triggers_fired": self.triggers_fired,
            "analyses": [a.analysis_id for a in self.analyses],
            "executions": [e.execution_id for e in self.executions],
            "errors": dict(self.errors),
        }


class RebalancingSystem:
    """
    Trigger monitoring, analysis and execution for liquidity positions.
    """

    def __init__(
        self,
        market_data: MarketDataProvider,
        config: Optional[EngineConfig] = None,
        executor: Optional[RebalanceExecutor] = None,
        metrics: Optional[PrometheusExporter] = None,
        logger: Optional[logging.Logger] = None,
        clock=time.time
    ):
        """
        Args:
            market_data: Positions and per-position market state
            config: Engine tunables
            executor: Transaction driver (SimulatedExecutor when omitted)
            metrics: Optional Prometheus exporter
            logger: Optional logger
            clock: Wall-clock source (seconds)
        """
        self.market_data = market_data
        self.config = config or EngineConfig()
        self.metrics = metrics
        self.logger = get_logger("rebalancer", logger)
        self._clock = clock

        self.evaluator = RebalanceEvaluator()
        self.rate_limiter = RebalanceRateLimiter()
        self.execution_manager = ExecutionManager(
            executor or SimulatedExecutor(),
            self.rate_limiter,
            max_history=self.config.max_execution_history,
            metrics=metrics,
            logger=logger,
            clock=clock
        )

        self._configs_lock = threading.Lock()
        self._configs: Dict[str, RebalancingConfig] = {}
        for cfg in default_rebalancing_configs():
            self._configs[cfg.config_id] = cfg

        # (position_id, config_id) -> per-position trigger copies
        self._triggers: Dict[Tuple[str, str], List[RebalancingTrigger]] = {}
        self._triggers_lock = threading.Lock()
        # (position_id, config_id) -> latest analysis awaiting approval
        self._pending_approvals: Dict[Tuple[str, str], RebalancingAnalysis] = {}
        self._pending_lock = threading.Lock()

        self._loop: Optional[MonitoringLoop] = None

    def log(self, msg: str, level: str = "info") -> None:
        log_message(self.logger, "RebalancingSystem", msg, level)

    # =========================================================================
    # CONFIG REGISTRY
    # =========================================================================

    def get_config(self, config_id: str) -> RebalancingConfig:
        with self._configs_lock:
            if config_id not in self._configs:
                raise NotFoundError(f"Unknown rebalancing config: {config_id}")
            return self._configs[config_id]

    def list_configs(self) -> List[RebalancingConfig]:
        with self._configs_lock:
            return list(self._configs.values())

    def create_config(self, config: RebalancingConfig) -> str:
        with self._configs_lock:
            if config.config_id in self._configs:
                raise ValidationError(f"Config {config.config_id} already exists")
            self._configs[config.config_id] = config
        self.log(f"Created rebalancing config {config.config_id}")
        return config.config_id

    def update_config(self, config_id: str, **changes: Any) -> RebalancingConfig:
        """Replace fields of a config. Trigger state is reset for it."""
        with self._configs_lock:
            if config_id not in self._configs:
                raise NotFoundError(f"Unknown rebalancing config: {config_id}")
            if changes.get("config_id", config_id) != config_id:
                raise ValidationError("config_id cannot be changed")
            updated = replace(self._configs[config_id], **changes)
            self._configs[config_id] = updated
        with self._triggers_lock:
            for key in [k for k in self._triggers if k[1] == config_id]:
                del self._triggers[key]
        self.log(f"Updated rebalancing config {config_id}: {sorted(changes)}")
        return updated

    # =========================================================================
    # ANALYSIS
    # =========================================================================

    def _load_position(self, position_id: str, owner_key: str) -> Position:
        positions, _ = self.market_data.get_positions(owner_key)
        index = find_position(positions, position_id)
        if index is None:
            raise NotFoundError(f"Position {position_id} not found for owner {owner_key}")
        return positions[index]

    def _state(self, position: Position, now: float) -> PositionState:
        return PositionState.from_market(position, self.market_data.position_state(position), now)

    def analyze_position(
        self,
        position_id: str,
        owner_key: str,
        config_id: Optional[str] = None
    ) -> RebalancingAnalysis:
        """
        Full efficiency / cost-benefit / risk analysis of one position.

        Raises:
            NotFoundError: unknown position or config id
        """
        config = self.get_config(config_id or DEFAULT_CONFIG_ID)
        position = self._load_position(position_id, owner_key)
        now = self._clock()
        analysis = self.evaluator.analyze(self._state(position, now), config, now)
        self.log(
            f"Analyzed {position_id} with {config.config_id}: "
            f"{analysis.recommended_action.action} (urgency {analysis.urgency}, "
            f"confidence {analysis.confidence:.2f})",
            level="debug"
        )
        return analysis

    def get_position_recommendations(
        self,
        owner_key: str,
        config_id: Optional[str] = None
    ) -> List[RebalancingAnalysis]:
        """Analyses of all active positions, most urgent and confident first."""
        config = self.get_config(config_id or DEFAULT_CONFIG_ID)
        positions, _ = self.market_data.get_positions(owner_key)
        now = self._clock()
        analyses = [
            self.evaluator.analyze(self._state(p, now), config, now)
            for p in positions if p.is_active
        ]
        analyses.sort(key=lambda a: -URGENCY_WEIGHTS.get(a.urgency, 1) * a.confidence)
        return analyses

    # =========================================================================
    # EXECUTION
    # =========================================================================

    def execute_rebalancing(
        self,
        analysis: RebalancingAnalysis,
        owner_key: str,
        approval_granted: bool = False
    ) -> RebalancingExecution:
        """
        Run an analysis through the execution state machine.

        Never raises for executor failures; they end in a failed record.
        """
        if self.config.simulation_only and approval_granted and analysis.should_rebalance:
            self.log(f"simulation_only set: execution of {analysis.position_id} withheld", level="warn")
            approval_granted = False
        execution = self.execution_manager.execute(analysis, owner_key, approval_granted)
        key = (analysis.position_id, analysis.config_id)
        with self._pending_lock:
            pending = self._pending_approvals.get(key)
            # A newer analysis for the same pair stays queued
            if pending is not None and pending.analysis_id == analysis.analysis_id:
                del self._pending_approvals[key]
        return execution

    def _queue_approval(self, analysis: RebalancingAnalysis) -> None:
        with self._pending_lock:
            self._pending_approvals[(analysis.position_id, analysis.config_id)] = analysis

    def get_pending_approvals(self) -> List[RebalancingAnalysis]:
        with self._pending_lock:
            return list(self._pending_approvals.values())

    def get_execution_history(
        self,
        position_id: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[RebalancingExecution]:
        return self.execution_manager.get_history(position_id, limit)

    def get_rebalancing_stats(self) -> Dict[str, Any]:
        stats = self.execution_manager.get_stats()
        stats["active_configs"] = len([c for c in self.list_configs() if c.is_active])
        with self._pending_lock:
            stats["pending_approvals"] = len(self._pending_approvals)
        stats["monitoring"] = self.is_monitoring()
        return stats

    def check_constraints(
        self,
        state: PositionState,
        config: RebalancingConfig,
        analysis: RebalancingAnalysis,
        now: float
    ) -> ConstraintCheck:
        """Gate for automatic execution."""
        c = config.constraints
        violations = []
        emergency_action = None
        min_interval = c.min_time_between_minutes

        for condition in c.emergency_stop_conditions:
            if not condition.is_met(state):
                continue
            emergency_action = condition.action
            if condition.action == "pause":
                violations.append(f"Emergency stop ({condition.condition_type}): paused")
            elif condition.action == "reduce_frequency":
                min_interval *= 2
            elif not should_rebalance(
                analysis.efficiency.efficiency_gain, CONSERVATIVE_MIN_GAIN,
                analysis.cost_benefit.roi, CONSERVATIVE_BREAK_EVEN,
                analysis.risk.overall_risk
            ):
                violations.append(
                    f"Emergency condition ({condition.condition_type}): conservative thresholds not met"
                )

        allowed, reason = self.rate_limiter.check(state.position_id, c.max_rebalances_per_day, min_interval, now)
        if not allowed:
            violations.append(reason)

        if c.allowed_time_windows and not any(w.contains(now) for w in c.allowed_time_windows):
            violations.append("Outside allowed time windows")

        if state.total_value < c.min_position_value:
            violations.append(
                f"Position value {state.total_value:.2f} below minimum {c.min_position_value:.2f}"
            )

        if state.total_value > 0 and analysis.cost_benefit.gas_cost / state.total_value > c.max_gas_cost_ratio:
            violations.append("Gas cost ratio above limit")

        if analysis.recommended_action.max_slippage > c.max_slippage_allowed:
            violations.append("Required slippage above allowed maximum")

        return ConstraintCheck(
            allowed=not violations,
            violations=tuple(violations),
            emergency_action=emergency_action
        )

    def _handle_analysis(
        self,
        analysis: RebalancingAnalysis,
        config: RebalancingConfig,
        owner_key: str,
        cfg: ConfigSnapshot,
        now: float
    ) -> Optional[RebalancingExecution]:
        if not analysis.should_rebalance:
            self.log(f"{analysis.position_id}: no action ({config.config_id})", level="debug")
            return None

        mode = config.automation.execution_mode
        if mode == ExecutionMode.SIMULATION or cfg.simulation_only:
            self.log(
                f"SIMULATION: would rebalance {analysis.position_id} "
                f"(net benefit {analysis.cost_benefit.net_benefit:.4f}, roi {analysis.cost_benefit.roi:.1f}%)"
            )
            return None

        if mode == ExecutionMode.APPROVAL_REQUIRED or not config.automation.enabled:
            self._queue_approval(analysis)
            self.log(f"Rebalance of {analysis.position_id} awaiting approval ({analysis.analysis_id})")
            return None

        state = analysis.current_state
        if state.total_value > config.automation.max_automatic_value:
            self._queue_approval(analysis)
            self.log(
                f"{analysis.position_id} value {state.total_value:.2f} exceeds automatic limit "
                f"{config.automation.max_automatic_value:.2f}; approval required",
                level="warn"
            )
            return None

        check = self.check_constraints(state, config, analysis, now)
        if not check.allowed:
            self.log(
                f"Automatic rebalance of {analysis.position_id} blocked: {'; '.join(check.violations)}",
                level="warn"
            )
            return None

        return self.execute_rebalancing(analysis, owner_key, approval_granted=True)

    # =========================================================================
    # MONITORING
    # =========================================================================

    def _position_triggers(self, position_id: str, config: RebalancingConfig) -> List[RebalancingTrigger]:
        key = (position_id, config.config_id)
        with self._triggers_lock:
            if key not in self._triggers:
                self._triggers[key] = copy.deepcopy(config.triggers)
            return self._triggers[key]

    def get_trigger_state(self, position_id: str, config_id: str) -> List[RebalancingTrigger]:
        with self._triggers_lock:
            return list(self._triggers.get((position_id, config_id), []))

    @staticmethod
    def trigger_metric(trigger: RebalancingTrigger, state: PositionState,
                       market: PositionMarketState) -> Optional[float]:
        t = trigger.trigger_type
        if t == TriggerType.PRICE_MOVEMENT:
            return state.price_deviation
        if t == TriggerType.TIME_BASED:
            return state.hours_since_update * 60
        if t == TriggerType.EFFICIENCY_DROP:
            return state.efficiency
        if t == TriggerType.VOLATILITY_CHANGE:
            return state.volatility_change
        return market.metric(trigger.condition.metric)

    def evaluate_triggers(
        self,
        position: Position,
        config: RebalancingConfig,
        now: float
    ) -> Tuple[List[str], PositionState]:
        """Feed current metrics to a position's triggers; returns fired ids."""
        market = self.market_data.position_state(position)
        state = PositionState.from_market(position, market, now)
        fired = []
        triggers = sorted(self._position_triggers(position.id, config), key=lambda t: -t.priority)
        with self._triggers_lock:
            for trigger in triggers:
                if trigger.observe(self.trigger_metric(trigger, state, market), now):
                    fired.append(trigger.trigger_id)
                    if self.metrics:
                        self.metrics.inc_counter(
                            MetricNames.TRIGGERS_FIRED_TOTAL, 1,
                            {"trigger_type": trigger.trigger_type.value}
                        )
        return fired, state

    def _evaluate_position(
        self,
        position: Position,
        configs: List[RebalancingConfig],
        owner_key: str,
        cfg: ConfigSnapshot,
        now: float
    ) -> Tuple[int, List[RebalancingAnalysis], List[RebalancingExecution]]:
        fired_total = 0
        analyses = []
        executions = []
        for config in configs:
            fired, state = self.evaluate_triggers(position, config, now)
            if not fired:
                continue
            fired_total += len(fired)
            self.log(f"{position.id}: triggers fired under {config.config_id}: {fired}")
            analysis = self.evaluator.analyze(state, config, now, fired)
            analyses.append(analysis)
            execution = self._handle_analysis(analysis, config, owner_key, cfg, now)
            if execution is not None:
                executions.append(execution)
        return fired_total, analyses, executions

    def run_monitoring_cycle(self, owner_key: str, config_ids: Sequence[str]) -> MonitoringCycleReport:
        """
        One pass over all active positions of an owner.

        Positions are evaluated concurrently; a failure on one position is
        logged and recorded in the report without affecting the others.
        """
        cfg = self.config.snapshot()
        now = self._clock()
        start = time.monotonic()
        configs = [c for c in (self.get_config(cid) for cid in config_ids) if c.is_active]
        report = MonitoringCycleReport(owner_key=owner_key, started_at=now)

        positions, _ = self.market_data.get_positions(owner_key)
        active = [p for p in positions if p.is_active]

        results, errors = fan_out(
            ((p.id, p) for p in active),
            lambda p: self._evaluate_position(p, configs, owner_key, cfg, now),
            max_workers=cfg.max_workers,
            logger=self.logger,
            prefix="rebalance-monitor"
        )
        for position in active:
            if position.id not in results:
                continue
            fired, analyses, executions = results[position.id]
            report.triggers_fired += fired
            report.analyses.extend(analyses)
            report.executions.extend(executions)

        report.positions_evaluated = len(results)
        report.errors = errors
        report.duration = time.monotonic() - start

        if self.metrics:
            self.metrics.set_gauge(MetricNames.CYCLE_FAILURES, len(errors), {"task": "rebalance"})
        self.log(
            f"Monitoring cycle for {owner_key}: {report.positions_evaluated} positions, "
            f"{report.triggers_fired} triggers, {len(report.executions)} executions, "
            f"{len(errors)} errors in {report.duration:.3f}s"
        )
        return report

    def start_monitoring(
        self,
        owner_key: str,
        config_ids: Sequence[str],
        interval_minutes: Optional[float] = None
    ) -> None:
        """
        Start periodic trigger evaluation for an owner.

        Raises:
            NotFoundError: a config id is unknown
        """
        config_ids = list(config_ids)
        for config_id in config_ids:
            self.get_config(config_id)
        interval = interval_minutes or self.config.monitoring_interval_minutes

        self.stop_monitoring()
        self._loop = MonitoringLoop(
            name="rebalance-monitor",
            task=lambda: self.run_monitoring_cycle(owner_key, config_ids),
            interval_seconds=interval * 60,
            metrics=self.metrics,
            logger=self.logger
        )
        self._loop.start()
        self.log(f"Monitoring {owner_key} every {interval} minutes with {config_ids}")

    def stop_monitoring(self) -> None:
        if self._loop is not None:
            self._loop.stop()
            self._loop = None
            self.log("Monitoring stopped")

    def is_monitoring(self) -> bool:
        return self._loop is not None and self._loop.is_running()
