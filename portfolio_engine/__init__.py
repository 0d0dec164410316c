"""
portfolio_engine package

Portfolio analytics and optimization for liquidity positions:
- models: immutable Position / PositionAnalytics snapshots
- config: EngineConfig tunables and OptimizationConfig requests
- market_data: injected MarketDataProvider and the in-memory StaticMarketData
- cache: shared TTL ResultCache keyed by input fingerprints
- correlation_engine: pairwise correlation, clustering, risk decomposition
- portfolio_optimizer: covariance model, weight solvers, actions, scenarios
- rebalancer: triggers, cost-benefit evaluation, execution state machine
- health_monitor: health scoring, deduplicated alerts, history
- scheduler: fixed-interval monitoring loop and fan-out helper
- metrics: Prometheus text exporter
- engine: PortfolioAnalyticsEngine facade
"""

from .errors import EngineError, ValidationError, NotFoundError, ExecutionFailure
from .models import TokenInfo, FeesEarned, Position, PositionAnalytics
from .config import (
    EngineConfig, ConfigSnapshot, OptimizationConfig, OptimizationObjective,
    TokenConstraint, PoolConstraint
)
from .market_data import MarketDataProvider, PositionMarketState, StaticMarketData
from .cache import ResultCache, fingerprint
from .correlation_engine import CorrelationRiskEngine, CrossPositionAnalytics
from .portfolio_optimizer import PortfolioOptimizer, OptimizationResult
from .rebalancer import (
    RebalancingSystem, RebalancingConfig, RebalancingAnalysis, RebalancingExecution,
    RebalanceExecutor, SimulatedExecutor, ExecutionStatus
)
from .health_monitor import PositionHealthMonitor, AlertConfiguration, MonitoringThresholds
from .metrics import PrometheusExporter, MetricNames
from .engine import PortfolioAnalyticsEngine

__all__ = [
    'EngineError',
    'ValidationError',
    'NotFoundError',
    'ExecutionFailure',
    'TokenInfo',
    'FeesEarned',
    'Position',
    'PositionAnalytics',
    'EngineConfig',
    'ConfigSnapshot',
    'OptimizationConfig',
    'OptimizationObjective',
    'TokenConstraint',
    'PoolConstraint',
    'MarketDataProvider',
    'PositionMarketState',
    'StaticMarketData',
    'ResultCache',
    'fingerprint',
    'CorrelationRiskEngine',
    'CrossPositionAnalytics',
    'PortfolioOptimizer',
    'OptimizationResult',
    'RebalancingSystem',
    'RebalancingConfig',
    'RebalancingAnalysis',
    'RebalancingExecution',
    'RebalanceExecutor',
    'SimulatedExecutor',
    'ExecutionStatus',
    'PositionHealthMonitor',
    'AlertConfiguration',
    'MonitoringThresholds',
    'PrometheusExporter',
    'MetricNames',
    'PortfolioAnalyticsEngine',
]
