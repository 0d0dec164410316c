"""
Position Health Monitor module for portfolio_engine

Periodically scores every monitored position and keeps a deduplicated
set of alerts per position.

Health score (0-100):
    0.25 * efficiency
  + 0.20 * fee_optimization
  + 0.20 * liquidity_utilization
  + 0.20 * (100 - risk_score)
  + 0.15 * clamp(50 + total_return, 0, 100)

Alert semantics:
- Conditions are evaluated on every cycle (level based).
- A position holds at most one active alert per alert type. While the
  condition keeps holding, that alert is updated in place; it is logged
  and counted only when first raised or when its severity escalates.
  Escalation clears a previous acknowledgement.
- When the condition no longer holds the alert is marked inactive on
  that cycle and drops out of the active set. It stays in the bounded
  alert history.
"""

import logging
import statistics
import threading
import time
from collections import deque, Counter
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional, Any, Tuple

from .config import EngineConfig
from .errors import NotFoundError, ValidationError
from .log import get_logger, log_message
from .market_data import MarketDataProvider
from .metrics import PrometheusExporter, MetricNames
from .models import Position, PositionAnalytics, find_position
from .scheduler import MonitoringLoop, fan_out


MAX_ALERT_HISTORY = 1000
TREND_WINDOW = 5
TREND_THRESHOLD = 5.0
TREND_FULL_CONFIDENCE = 10
TOP_ISSUES = 5
MAX_SUGGESTIONS = 5


class AlertType(Enum):
    HEALTH_DEGRADATION = "health_degradation"
    PERFORMANCE_DECLINE = "performance_decline"
    RISK_INCREASE = "risk_increase"
    EFFICIENCY_DROP = "efficiency_drop"
    REBALANCE_NEEDED = "rebalance_needed"
    IMPERMANENT_LOSS = "impermanent_loss"
    VOLATILITY_SPIKE = "volatility_spike"
    LIQUIDITY_UTILIZATION = "liquidity_utilization"
    FEE_OPTIMIZATION = "fee_optimization"
    POSITION_EXPIRY = "position_expiry"


class AlertSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_RANK = {
    AlertSeverity.LOW: 0,
    AlertSeverity.MEDIUM: 1,
    AlertSeverity.HIGH: 2,
    AlertSeverity.CRITICAL: 3,
}

SEVERITY_LOG_LEVEL = {
    AlertSeverity.LOW: "info",
    AlertSeverity.MEDIUM: "warn",
    AlertSeverity.HIGH: "warn",
    AlertSeverity.CRITICAL: "error",
}

DEFAULT_ALERT_TYPES = (
    AlertType.HEALTH_DEGRADATION,
    AlertType.PERFORMANCE_DECLINE,
    AlertType.RISK_INCREASE,
    AlertType.REBALANCE_NEEDED,
)

# Recommendation texts, also used to derive improvement suggestions
REC_LOW_EFFICIENCY = "Position efficiency is low - consider rebalancing to active price ranges"
REC_FEE_COLLECTION = "Fee collection can be improved by optimizing liquidity positioning"
REC_INACTIVE_LIQUIDITY = "Most liquidity is inactive - narrow price ranges for better utilization"
REC_HIGH_RISK = "High risk detected - consider reducing position size or diversifying"
REC_IMPERMANENT_LOSS = "Significant impermanent loss detected - monitor price movements closely"
REC_NEGATIVE_RETURN = "Position showing negative returns - review strategy and consider exit"


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class MonitoringThresholds:
    """
    Alert bands and limits.

    Health bands alert when the score is BELOW the band; risk bands alert
    when the score is ABOVE it. Percent values are on a 0-100 scale.
    """
    health_critical: float = 20.0
    health_high: float = 40.0
    health_medium: float = 60.0
    health_low: float = 80.0

    risk_critical: float = 90.0
    risk_high: float = 75.0
    risk_medium: float = 60.0
    risk_low: float = 45.0

    impermanent_loss_percent: float = 5.0
    daily_return_variation: float = 10.0
    efficiency_drop: float = 30.0
    liquidity_utilization_min: float = 20.0
    fee_optimization_min: float = 50.0
    volatility_max: float = 80.0
    rebalance_urgency: float = 70.0

    stale_warning_days: float = 30.0
    expired_alert_days: float = 90.0

    def __post_init__(self):
        if not (self.health_critical <= self.health_high <= self.health_medium <= self.health_low):
            raise ValidationError("health bands must be ascending: critical <= high <= medium <= low")
        if not (self.risk_critical >= self.risk_high >= self.risk_medium >= self.risk_low):
            raise ValidationError("risk bands must be descending: critical >= high >= medium >= low")
        if self.stale_warning_days > self.expired_alert_days:
            raise ValidationError("stale_warning_days must not exceed expired_alert_days")

    @classmethod
    def default(cls) -> 'MonitoringThresholds':
        return cls()

    @classmethod
    def conservative(cls) -> 'MonitoringThresholds':
        return cls(
            health_critical=30, health_high=50, health_medium=70, health_low=85,
            risk_critical=85, risk_high=70, risk_medium=55, risk_low=40,
            impermanent_loss_percent=3.0, daily_return_variation=5.0, efficiency_drop=20.0,
            liquidity_utilization_min=30.0, fee_optimization_min=60.0, volatility_max=70.0,
            stale_warning_days=14, expired_alert_days=45
        )

    @classmethod
    def aggressive(cls) -> 'MonitoringThresholds':
        return cls(
            health_critical=10, health_high=25, health_medium=45, health_low=65,
            risk_critical=95, risk_high=85, risk_medium=75, risk_low=60,
            impermanent_loss_percent=8.0, daily_return_variation=20.0, efficiency_drop=50.0,
            liquidity_utilization_min=10.0, fee_optimization_min=40.0, volatility_max=90.0,
            stale_warning_days=60, expired_alert_days=180
        )

    def health_band(self, severity: AlertSeverity) -> float:
        return {
            AlertSeverity.CRITICAL: self.health_critical,
            AlertSeverity.HIGH: self.health_high,
            AlertSeverity.MEDIUM: self.health_medium,
            AlertSeverity.LOW: self.health_low,
        }[severity]

    def risk_band(self, severity: AlertSeverity) -> float:
        return {
            AlertSeverity.CRITICAL: self.risk_critical,
            AlertSeverity.HIGH: self.risk_high,
            AlertSeverity.MEDIUM: self.risk_medium,
            AlertSeverity.LOW: self.risk_low,
        }[severity]

    def health_severity(self, score: float) -> AlertSeverity:
        if score < self.health_critical:
            return AlertSeverity.CRITICAL
        if score < self.health_high:
            return AlertSeverity.HIGH
        if score < self.health_medium:
            return AlertSeverity.MEDIUM
        return AlertSeverity.LOW

    def risk_severity(self, score: float) -> AlertSeverity:
        if score > self.risk_critical:
            return AlertSeverity.CRITICAL
        if score > self.risk_high:
            return AlertSeverity.HIGH
        if score > self.risk_medium:
            return AlertSeverity.MEDIUM
        return AlertSeverity.LOW


@dataclass(frozen=True)
class AutoActionConfig:
    alert_type: AlertType
    action: str = "notify_only"     # rebalance | notify_only
    enabled: bool = True

    def __post_init__(self):
        if not isinstance(self.alert_type, AlertType):
            object.__setattr__(self, "alert_type", AlertType(self.alert_type))
        if self.action not in ("rebalance", "notify_only"):
            raise ValidationError(f"Unknown auto action: {self.action}")


@dataclass(frozen=True)
class AlertConfiguration:
    alert_types: Tuple[AlertType, ...] = DEFAULT_ALERT_TYPES
    thresholds: MonitoringThresholds = field(default_factory=MonitoringThresholds)
    auto_actions: Tuple[AutoActionConfig, ...] = ()
    monitoring_enabled: bool = True
    rebalance_config_id: Optional[str] = None   # Used by the rebalance auto action

    def __post_init__(self):
        try:
            types = tuple(t if isinstance(t, AlertType) else AlertType(t) for t in self.alert_types)
        except ValueError as e:
            raise ValidationError(f"Unknown alert type: {e}")
        object.__setattr__(self, "alert_types", types)

    def auto_action_for(self, alert_type: AlertType) -> Optional[AutoActionConfig]:
        for action in self.auto_actions:
            if action.alert_type == alert_type and action.enabled:
                return action
        return None


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class PerformanceAlert:
    alert_id: str
    position_id: str
    alert_type: AlertType
    severity: AlertSeverity
    message: str
    threshold_value: float
    current_value: float
    recommended_actions: List[str] = field(default_factory=list)
    created_at: float = 0.0
    updated_at: float = 0.0
    resolved_at: Optional[float] = None
    is_active: bool = True
    acknowledged: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "position_id": self.position_id,
            "type": self.alert_type.value,
            "severity": self.severity.value,
            "message": self.message,
            "threshold_value": round(self.threshold_value, 4),
            "current_value": round(self.current_value, 4),
            "recommended_actions": list(self.recommended_actions),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "resolved_at": self.resolved_at,
            "is_active": self.is_active,
            "acknowledged": self.acknowledged,
        }


@dataclass(frozen=True)
class AlertCandidate:
    alert_type: AlertType
    severity: AlertSeverity
    message: str
    threshold_value: float
    current_value: float
    recommended_actions: Tuple[str, ...] = ()


@dataclass(frozen=True)
class HealthMetrics:
    """Per-position inputs to the health score, on 0-100 scales where applicable."""
    efficiency: float
    fee_optimization: float
    liquidity_utilization: float
    risk_score: float
    total_return: float             # Percent
    impermanent_loss: float         # Percent, magnitude
    fee_yield: float
    volatility_score: float
    rebalance_urgency: float
    position_age_days: float


@dataclass(frozen=True)
class TrendAnalysis:
    health_trend: str = "stable"        # improving | stable | declining
    risk_trend: str = "stable"          # decreasing | stable | increasing
    performance_trend: str = "neutral"  # positive | neutral | negative
    confidence: float = 0.5


@dataclass(frozen=True)
class HealthSnapshot:
    position_id: str
    timestamp: float
    health_score: float
    risk_score: float
    metrics: HealthMetrics
    alert_types: Tuple[str, ...]
    recommendations: Tuple[str, ...]
    trend: TrendAnalysis

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_id": self.position_id,
            "timestamp": self.timestamp,
            "health_score": round(self.health_score, 2),
            "risk_score": round(self.risk_score, 2),
            "alerts": list(self.alert_types),
            "recommendations": list(self.recommendations),
            "health_trend": self.trend.health_trend,
            "risk_trend": self.trend.risk_trend,
            "performance_trend": self.trend.performance_trend,
            "trend_confidence": round(self.trend.confidence, 2),
        }


@dataclass
class PerformanceHistory:
    position_id: str
    snapshots: deque
    average_health_score: float = 0.0
    average_risk_score: float = 0.0
    total_alerts: int = 0
    alerts_by_type: Dict[str, int] = field(default_factory=dict)
    performance_trend: float = 0.0
    stability_score: float = 100.0
    best_snapshot: Optional[HealthSnapshot] = None
    worst_snapshot: Optional[HealthSnapshot] = None
    most_common_issues: List[str] = field(default_factory=list)
    improvement_suggestions: List[str] = field(default_factory=list)

    def add(self, snapshot: HealthSnapshot) -> None:
        self.snapshots.append(snapshot)
        self._aggregate()

    def _aggregate(self) -> None:
        snapshots = list(self.snapshots)
        health = [s.health_score for s in snapshots]
        risk = [s.risk_score for s in snapshots]

        self.average_health_score = sum(health) / len(health)
        self.average_risk_score = sum(risk) / len(risk)
        by_type = Counter(t for s in snapshots for t in s.alert_types)
        self.alerts_by_type = dict(by_type)
        self.total_alerts = sum(by_type.values())
        self.performance_trend = health[-1] - health[0] if len(health) >= 2 else 0.0
        if len(health) > 1:
            self.stability_score = max(0.0, 100.0 - statistics.pstdev(health))

        self.best_snapshot = max(snapshots, key=lambda s: s.health_score)
        self.worst_snapshot = min(snapshots, key=lambda s: s.health_score)

        issues = Counter(r for s in snapshots for r in s.recommendations)
        self.most_common_issues = [issue for issue, _ in issues.most_common(TOP_ISSUES)]
        self.improvement_suggestions = self._suggestions()

    def _suggestions(self) -> List[str]:
        suggestions = []
        if self.average_health_score < 60:
            suggestions.append("Overall position health is low - consider comprehensive strategy review")
        if self.average_risk_score > 70:
            suggestions.append("Position consistently shows high risk - implement risk management measures")
        if self.stability_score < 70:
            suggestions.append("Position shows high volatility - consider more stable ranges or diversification")
        if self.performance_trend < -10:
            suggestions.append("Performance trend is declining - review strategy effectiveness")
        if REC_LOW_EFFICIENCY in self.most_common_issues:
            suggestions.append("Set up automated rebalancing triggers to maintain efficiency")
        if REC_INACTIVE_LIQUIDITY in self.most_common_issues:
            suggestions.append("Implement dynamic range adjustment based on volatility")
        return suggestions[:MAX_SUGGESTIONS]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_id": self.position_id,
            "snapshots": len(self.snapshots),
            "average_health_score": round(self.average_health_score, 2),
            "average_risk_score": round(self.average_risk_score, 2),
            "total_alerts": self.total_alerts,
            "alerts_by_type": dict(self.alerts_by_type),
            "performance_trend": round(self.performance_trend, 2),
            "stability_score": round(self.stability_score, 2),
            "best_score": round(self.best_snapshot.health_score, 2) if self.best_snapshot else None,
            "worst_score": round(self.worst_snapshot.health_score, 2) if self.worst_snapshot else None,
            "most_common_issues": list(self.most_common_issues),
            "improvement_suggestions": list(self.improvement_suggestions),
        }


@dataclass
class MonitoredPosition:
    position_id: str
    owner_key: str
    config: AlertConfiguration
    added_at: float


@dataclass
class HealthCycleReport:
    started_at: float
    duration: float = 0.0
    snapshots: Dict[str, HealthSnapshot] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at,
            "duration": round(self.duration, 4),
            "snapshots": {pid: s.to_dict() for pid, s in self.snapshots.items()},
            "errors": dict(self.errors),
        }


# =============================================================================
# SCORING
# =============================================================================

def calculate_health_score(metrics: HealthMetrics) -> float:
    performance = max(0.0, min(100.0, 50.0 + metrics.total_return))
    score = (
        metrics.efficiency * 0.25
        + metrics.fee_optimization * 0.20
        + metrics.liquidity_utilization * 0.20
        + max(0.0, 100.0 - metrics.risk_score) * 0.20
        + performance * 0.15
    )
    return max(0.0, min(100.0, score))


def calculate_trend(values: List[float]) -> str:
    if len(values) < 2:
        return "stable"
    change = values[-1] - values[0]
    if change > TREND_THRESHOLD:
        return "improving"
    if change < -TREND_THRESHOLD:
        return "declining"
    return "stable"


def generate_recommendations(metrics: HealthMetrics) -> List[str]:
    recs = []
    if metrics.efficiency < 50:
        recs.append(REC_LOW_EFFICIENCY)
    if metrics.fee_optimization < 60:
        recs.append(REC_FEE_COLLECTION)
    if metrics.liquidity_utilization < 40:
        recs.append(REC_INACTIVE_LIQUIDITY)
    if metrics.risk_score > 80:
        recs.append(REC_HIGH_RISK)
    if metrics.impermanent_loss > 5:
        recs.append(REC_IMPERMANENT_LOSS)
    if metrics.total_return < 0:
        recs.append(REC_NEGATIVE_RETURN)
    return recs


def evaluate_alerts(
    metrics: HealthMetrics,
    health_score: float,
    config: AlertConfiguration
) -> List[AlertCandidate]:
    """Alert conditions that currently hold for one position."""
    t = config.thresholds
    enabled = set(config.alert_types)
    found = []

    if AlertType.HEALTH_DEGRADATION in enabled:
        severity = t.health_severity(health_score)
        if severity != AlertSeverity.LOW:
            found.append(AlertCandidate(
                AlertType.HEALTH_DEGRADATION, severity,
                f"Position health score is {severity.value} ({health_score:.1f}/100)",
                t.health_band(severity), health_score,
                ("Review position efficiency", "Consider rebalancing", "Monitor risk metrics")
            ))

    if AlertType.RISK_INCREASE in enabled:
        severity = t.risk_severity(metrics.risk_score)
        if severity != AlertSeverity.LOW:
            found.append(AlertCandidate(
                AlertType.RISK_INCREASE, severity,
                f"Position risk level is {severity.value} ({metrics.risk_score:.1f}/100)",
                t.risk_band(severity), metrics.risk_score,
                ("Reduce position size", "Diversify holdings", "Monitor volatility")
            ))

    if AlertType.EFFICIENCY_DROP in enabled and metrics.efficiency < t.efficiency_drop:
        found.append(AlertCandidate(
            AlertType.EFFICIENCY_DROP, AlertSeverity.MEDIUM,
            f"Position efficiency has dropped to {metrics.efficiency:.1f}%",
            t.efficiency_drop, metrics.efficiency,
            ("Rebalance position", "Adjust price ranges")
        ))

    if AlertType.REBALANCE_NEEDED in enabled and metrics.rebalance_urgency > t.rebalance_urgency:
        found.append(AlertCandidate(
            AlertType.REBALANCE_NEEDED, AlertSeverity.MEDIUM,
            f"Position requires rebalancing (urgency {metrics.rebalance_urgency:.1f}%)",
            t.rebalance_urgency, metrics.rebalance_urgency,
            ("Execute rebalancing strategy", "Update price ranges")
        ))

    if AlertType.IMPERMANENT_LOSS in enabled and metrics.impermanent_loss > t.impermanent_loss_percent:
        found.append(AlertCandidate(
            AlertType.IMPERMANENT_LOSS, AlertSeverity.HIGH,
            f"Significant impermanent loss detected ({metrics.impermanent_loss:.2f}%)",
            t.impermanent_loss_percent, metrics.impermanent_loss,
            ("Monitor price movements", "Consider exit strategy")
        ))

    if AlertType.LIQUIDITY_UTILIZATION in enabled and metrics.liquidity_utilization < t.liquidity_utilization_min:
        found.append(AlertCandidate(
            AlertType.LIQUIDITY_UTILIZATION, AlertSeverity.MEDIUM,
            f"Low liquidity utilization ({metrics.liquidity_utilization:.1f}%)",
            t.liquidity_utilization_min, metrics.liquidity_utilization,
            ("Narrow price ranges", "Rebalance to active bins")
        ))

    if AlertType.FEE_OPTIMIZATION in enabled and metrics.fee_optimization < t.fee_optimization_min:
        found.append(AlertCandidate(
            AlertType.FEE_OPTIMIZATION, AlertSeverity.LOW,
            f"Fee optimization below target ({metrics.fee_optimization:.1f}%)",
            t.fee_optimization_min, metrics.fee_optimization,
            ("Reposition liquidity around the active price",)
        ))

    if AlertType.VOLATILITY_SPIKE in enabled and metrics.volatility_score > t.volatility_max:
        found.append(AlertCandidate(
            AlertType.VOLATILITY_SPIKE, AlertSeverity.HIGH,
            f"Volatility spike ({metrics.volatility_score:.1f})",
            t.volatility_max, metrics.volatility_score,
            ("Widen price ranges", "Reduce exposure")
        ))

    if AlertType.PERFORMANCE_DECLINE in enabled and metrics.total_return < 0:
        found.append(AlertCandidate(
            AlertType.PERFORMANCE_DECLINE, AlertSeverity.MEDIUM,
            f"Position return is negative ({metrics.total_return:.2f}%)",
            0.0, metrics.total_return,
            ("Review strategy", "Compare against holding")
        ))

    if AlertType.POSITION_EXPIRY in enabled and metrics.position_age_days > t.stale_warning_days:
        expired = metrics.position_age_days > t.expired_alert_days
        found.append(AlertCandidate(
            AlertType.POSITION_EXPIRY,
            AlertSeverity.HIGH if expired else AlertSeverity.LOW,
            f"Position is {metrics.position_age_days:.0f} days old",
            t.expired_alert_days if expired else t.stale_warning_days,
            metrics.position_age_days,
            ("Re-evaluate position range and strategy",)
        ))

    return found


# =============================================================================
# MONITOR
# =============================================================================

class PositionHealthMonitor:
    """
    Scores monitored positions each cycle and maintains their alerts.
    """

    def __init__(
        self,
        market_data: MarketDataProvider,
        config: Optional[EngineConfig] = None,
        rebalancer: Optional[Any] = None,
        metrics: Optional[PrometheusExporter] = None,
        logger: Optional[logging.Logger] = None,
        clock=time.time
    ):
        """
        Args:
            market_data: Positions and per-position market state
            config: Engine tunables
            rebalancer: RebalancingSystem used by the rebalance auto action
            metrics: Optional Prometheus exporter
            logger: Optional logger
            clock: Wall-clock source (seconds)
        """
        self.market_data = market_data
        self.config = config or EngineConfig()
        self.rebalancer = rebalancer
        self.metrics = metrics
        self.logger = get_logger("health_monitor", logger)
        self._clock = clock

        self._lock = threading.RLock()
        self._monitored: Dict[str, MonitoredPosition] = {}
        self._active_alerts: Dict[str, Dict[AlertType, PerformanceAlert]] = {}
        self._alert_history: deque = deque(maxlen=MAX_ALERT_HISTORY)
        self._history: Dict[str, PerformanceHistory] = {}
        self._alert_sequence = 0
        self._auto_actions_executed = 0
        self._last_cycle: Optional[float] = None
        self._loop: Optional[MonitoringLoop] = None

    def log(self, msg: str, level: str = "info") -> None:
        log_message(self.logger, "PositionHealthMonitor", msg, level)

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    def add_position(
        self,
        position: Position,
        owner_key: str,
        config: Optional[AlertConfiguration] = None
    ) -> MonitoredPosition:
        entry = MonitoredPosition(
            position_id=position.id,
            owner_key=owner_key,
            config=config or AlertConfiguration(),
            added_at=self._clock()
        )
        with self._lock:
            self._monitored[position.id] = entry
            self._active_alerts.setdefault(position.id, {})
            if position.id not in self._history:
                self._history[position.id] = PerformanceHistory(
                    position_id=position.id,
                    snapshots=deque(maxlen=self.config.max_health_snapshots)
                )
        self.log(f"Position {position.id} added to health monitoring")
        return entry

    def remove_position(self, position_id: str) -> bool:
        with self._lock:
            removed = self._monitored.pop(position_id, None)
            if removed is None:
                return False
            self._active_alerts.pop(position_id, None)
            self._history.pop(position_id, None)
        if self.metrics:
            labels = {"position_id": position_id}
            self.metrics.remove_metric(MetricNames.POSITION_HEALTH_SCORE, labels)
            self.metrics.remove_metric(MetricNames.POSITION_RISK_SCORE, labels)
            self.metrics.remove_metric(MetricNames.ACTIVE_ALERTS, labels)
        self.log(f"Position {position_id} removed from health monitoring")
        return True

    def update_monitoring_config(self, position_id: str, **changes: Any) -> bool:
        """Replace fields of a position's AlertConfiguration."""
        with self._lock:
            entry = self._monitored.get(position_id)
            if entry is None:
                return False
            entry.config = replace(entry.config, **changes)
        self.log(f"Monitoring config updated for {position_id}: {sorted(changes)}")
        return True

    def monitored_positions(self) -> List[str]:
        with self._lock:
            return list(self._monitored)

    # =========================================================================
    # EVALUATION
    # =========================================================================

    def build_metrics(self, position: Position, analytics: PositionAnalytics, now: float) -> HealthMetrics:
        state = self.market_data.position_state(position)
        age = (now - position.created_at) / 86400 if position.created_at > 0 else 0.0
        return HealthMetrics(
            efficiency=state.efficiency * 100,
            fee_optimization=state.fee_optimization * 100,
            liquidity_utilization=state.capital_utilization * 100,
            risk_score=state.risk_score,
            total_return=analytics.pnl_percent,
            impermanent_loss=abs(analytics.il_percent),
            fee_yield=analytics.fee_earnings,
            volatility_score=state.volatility * 100,
            rebalance_urgency=state.rebalance_urgency,
            position_age_days=max(0.0, age)
        )

    def analyze_trends(self, position_id: str) -> TrendAnalysis:
        with self._lock:
            history = self._history.get(position_id)
            recent = list(history.snapshots)[-TREND_WINDOW:] if history else []
        if len(recent) < 2:
            return TrendAnalysis()

        health_trend = calculate_trend([s.health_score for s in recent])
        risk_direction = calculate_trend([s.risk_score for s in recent])
        risk_trend = {"improving": "increasing", "declining": "decreasing"}.get(risk_direction, "stable")

        if health_trend == "improving" and risk_trend == "decreasing":
            performance = "positive"
        elif health_trend == "declining" or risk_trend == "increasing":
            performance = "negative"
        else:
            performance = "neutral"

        return TrendAnalysis(
            health_trend=health_trend,
            risk_trend=risk_trend,
            performance_trend=performance,
            confidence=min(1.0, len(recent) / TREND_FULL_CONFIDENCE)
        )

    def evaluate_position(
        self,
        position: Position,
        analytics: PositionAnalytics,
        monitored: MonitoredPosition,
        now: float
    ) -> HealthSnapshot:
        """Score one position, update its alerts and history."""
        metrics = self.build_metrics(position, analytics, now)
        health = calculate_health_score(metrics)
        trend = self.analyze_trends(position.id)

        candidates = evaluate_alerts(metrics, health, monitored.config)
        raised = self._update_alerts(position.id, candidates, now)

        snapshot = HealthSnapshot(
            position_id=position.id,
            timestamp=now,
            health_score=health,
            risk_score=metrics.risk_score,
            metrics=metrics,
            alert_types=tuple(c.alert_type.value for c in candidates),
            recommendations=tuple(generate_recommendations(metrics)),
            trend=trend
        )
        with self._lock:
            history = self._history.get(position.id)
            if history is not None:
                history.add(snapshot)

        if self.metrics:
            labels = {"position_id": position.id}
            self.metrics.set_gauge(MetricNames.POSITION_HEALTH_SCORE, round(health, 2), labels)
            self.metrics.set_gauge(MetricNames.POSITION_RISK_SCORE, round(metrics.risk_score, 2), labels)
            self.metrics.set_gauge(MetricNames.ACTIVE_ALERTS, len(candidates), labels)

        self._run_auto_actions(position, monitored, raised)

        self.log(
            f"Position {position.id} evaluated - health {health:.1f}, risk {metrics.risk_score:.1f}, "
            f"alerts {len(candidates)}",
            level="debug"
        )
        return snapshot

    def _update_alerts(
        self,
        position_id: str,
        candidates: List[AlertCandidate],
        now: float
    ) -> List[PerformanceAlert]:
        """Apply this cycle's conditions. Returns alerts raised or escalated."""
        raised = []
        with self._lock:
            active = self._active_alerts.setdefault(position_id, {})
            seen = set()
            for c in candidates:
                seen.add(c.alert_type)
                alert = active.get(c.alert_type)
                if alert is None:
                    self._alert_sequence += 1
                    alert = PerformanceAlert(
                        alert_id=f"alert-{self._alert_sequence}",
                        position_id=position_id,
                        alert_type=c.alert_type,
                        severity=c.severity,
                        message=c.message,
                        threshold_value=c.threshold_value,
                        current_value=c.current_value,
                        recommended_actions=list(c.recommended_actions),
                        created_at=now,
                        updated_at=now
                    )
                    active[c.alert_type] = alert
                    self._alert_history.append(alert)
                    raised.append(alert)
                    continue

                escalated = SEVERITY_RANK[c.severity] > SEVERITY_RANK[alert.severity]
                alert.severity = c.severity
                alert.message = c.message
                alert.threshold_value = c.threshold_value
                alert.current_value = c.current_value
                alert.recommended_actions = list(c.recommended_actions)
                alert.updated_at = now
                if escalated:
                    alert.acknowledged = False
                    raised.append(alert)

            resolved = [a for t, a in active.items() if t not in seen]
            for alert in resolved:
                alert.is_active = False
                alert.resolved_at = now
                del active[alert.alert_type]

        for alert in raised:
            self.log(
                f"ALERT [{alert.severity.value.upper()}] {alert.position_id} "
                f"{alert.alert_type.value}: {alert.message}",
                level=SEVERITY_LOG_LEVEL[alert.severity]
            )
            if self.metrics:
                self.metrics.inc_counter(
                    MetricNames.ALERTS_RAISED_TOTAL, 1,
                    {"type": alert.alert_type.value, "severity": alert.severity.value}
                )
        for alert in resolved:
            self.log(f"Alert resolved: {alert.alert_type.value} for position {position_id}")
        return raised

    def _run_auto_actions(
        self,
        position: Position,
        monitored: MonitoredPosition,
        raised: List[PerformanceAlert]
    ) -> None:
        for alert in raised:
            action = monitored.config.auto_action_for(alert.alert_type)
            if action is None:
                continue
            if action.action == "notify_only":
                self.log(f"Notification for {alert.alert_type.value} on {position.id}: {alert.message}")
            elif self.rebalancer is None:
                self.log(f"Auto rebalance for {position.id} skipped: no rebalancer attached", level="warn")
                continue
            else:
                try:
                    self._auto_rebalance(position, monitored)
                except Exception as e:
                    self.log(f"Auto rebalance failed for {position.id}: {e}", level="error")
                    continue
            with self._lock:
                self._auto_actions_executed += 1

    def _auto_rebalance(self, position: Position, monitored: MonitoredPosition) -> None:
        analysis = self.rebalancer.analyze_position(
            position.id, monitored.owner_key, monitored.config.rebalance_config_id
        )
        if not (analysis.should_rebalance and analysis.cost_benefit.net_benefit > 0):
            self.log(f"Auto rebalance for {position.id} skipped - analysis shows no benefit")
            return
        # Submitted without approval: an operator has to confirm it
        execution = self.rebalancer.execute_rebalancing(analysis, monitored.owner_key, approval_granted=False)
        self.log(f"Auto rebalance for {position.id} submitted: {execution.status.value}")

    # =========================================================================
    # MONITORING CYCLE
    # =========================================================================

    def run_monitoring_cycle(self) -> HealthCycleReport:
        """
        Evaluate every monitored position once.

        A failure on one position (including a failed fetch for its owner)
        is logged and recorded, never raised.
        """
        now = self._clock()
        start = time.monotonic()
        report = HealthCycleReport(started_at=now)

        with self._lock:
            entries = [m for m in self._monitored.values() if m.config.monitoring_enabled]
        if not entries:
            self.log("No positions to monitor", level="debug")
            return report

        by_owner: Dict[str, List[MonitoredPosition]] = {}
        for entry in entries:
            by_owner.setdefault(entry.owner_key, []).append(entry)

        work = []
        for owner_key, owner_entries in by_owner.items():
            try:
                positions, analytics = self.market_data.get_positions(owner_key)
            except Exception as e:
                self.log(f"Failed to fetch positions for {owner_key}: {e}", level="error")
                for entry in owner_entries:
                    report.errors[entry.position_id] = str(e)
                continue
            for entry in owner_entries:
                index = find_position(positions, entry.position_id)
                if index is None:
                    self.log(f"Position {entry.position_id} not found for {owner_key}", level="warn")
                    report.errors[entry.position_id] = str(NotFoundError(f"Position {entry.position_id} not found"))
                    continue
                work.append((entry.position_id, (positions[index], analytics[index], entry)))

        results, errors = fan_out(
            work,
            lambda item: self.evaluate_position(item[0], item[1], item[2], now),
            max_workers=self.config.max_workers,
            logger=self.logger,
            prefix="health-monitor"
        )
        report.snapshots = results
        report.errors.update(errors)
        report.duration = time.monotonic() - start

        with self._lock:
            self._last_cycle = now
        if self.metrics:
            self.metrics.set_gauge(MetricNames.CYCLE_FAILURES, len(report.errors), {"task": "health"})
        self.log(
            f"Health cycle: {len(results)} positions evaluated, {len(report.errors)} errors "
            f"in {report.duration:.3f}s"
        )
        return report

    def start_monitoring(self, interval_minutes: Optional[float] = None) -> bool:
        if self.is_monitoring():
            self.log("Monitoring already active", level="warn")
            return False
        interval = interval_minutes or self.config.monitoring_interval_minutes
        self._loop = MonitoringLoop(
            name="health-monitor",
            task=self.run_monitoring_cycle,
            interval_seconds=interval * 60,
            metrics=self.metrics,
            logger=self.logger
        )
        self.log(f"Starting position health monitoring (interval {interval}m)")
        return self._loop.start()

    def stop_monitoring(self) -> None:
        if self._loop is not None:
            self._loop.stop()
            self._loop = None
            self.log("Position health monitoring stopped")

    def is_monitoring(self) -> bool:
        return self._loop is not None and self._loop.is_running()

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_position_alerts(self, position_id: str) -> List[PerformanceAlert]:
        with self._lock:
            return [a for a in self._active_alerts.get(position_id, {}).values() if a.is_active]

    def get_alert_history(self, position_id: Optional[str] = None) -> List[PerformanceAlert]:
        with self._lock:
            return [a for a in self._alert_history if position_id is None or a.position_id == position_id]

    def acknowledge_alert(self, alert_id: str) -> bool:
        with self._lock:
            for alerts in self._active_alerts.values():
                for alert in alerts.values():
                    if alert.alert_id == alert_id:
                        alert.acknowledged = True
                        break
                else:
                    continue
                break
            else:
                return False
        self.log(f"Alert {alert_id} acknowledged")
        return True

    def get_position_history(self, position_id: str) -> PerformanceHistory:
        with self._lock:
            history = self._history.get(position_id)
        if history is None:
            raise NotFoundError(f"No health history for position {position_id}")
        return history

    def get_monitoring_stats(self) -> Dict[str, Any]:
        with self._lock:
            active = [a for alerts in self._active_alerts.values() for a in alerts.values() if a.is_active]
            histories = list(self._history.values())
            monitored = len(self._monitored)
            executed = self._auto_actions_executed
            last_cycle = self._last_cycle

        health = [h.average_health_score for h in histories if h.snapshots]
        risk = [h.average_risk_score for h in histories if h.snapshots]
        return {
            "positions_monitored": monitored,
            "active_alerts": len(active),
            "alerts_by_type": dict(Counter(a.alert_type.value for a in active)),
            "alerts_by_severity": dict(Counter(a.severity.value for a in active)),
            "average_health_score": sum(health) / len(health) if health else 0.0,
            "average_risk_score": sum(risk) / len(risk) if risk else 0.0,
            "auto_actions_executed": executed,
            "monitoring": self.is_monitoring(),
            "last_cycle": last_cycle,
        }
