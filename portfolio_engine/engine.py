"""
PortfolioAnalyticsEngine - process-level entry point for portfolio_engine

Builds one shared ResultCache, the correlation engine, the optimizer,
the rebalancing system and the health monitor, and exposes the public
operations on a single object:

    analyze_multiple_positions(positions, analytics, owner_key, force_refresh)
    optimize_portfolio(positions, analytics, opt_config, owner_key, force_refresh)
    analyze_position(position_id, owner_key, config_id)
    execute_rebalancing(analysis, owner_key, approval_granted)
    start_monitoring(owner_key, config_ids, interval_minutes) / stop_monitoring()

Several engines can coexist in one process; nothing here is global.
"""

import logging
import time
from dataclasses import asdict
from typing import Dict, List, Optional, Any, Sequence

from .cache import ResultCache
from .config import EngineConfig, CONFIG_FIELD_TYPES, IMMUTABLE_CONFIG_KEYS
from .correlation_engine import CorrelationRiskEngine, CrossPositionAnalytics
from .health_monitor import PositionHealthMonitor, AlertConfiguration
from .log import get_logger, log_message
from .market_data import MarketDataProvider
from .metrics import PrometheusExporter
from .portfolio_optimizer import PortfolioOptimizer, OptimizationResult
from .rebalancer import (
    RebalancingSystem, RebalancingAnalysis, RebalancingExecution, RebalanceExecutor
)


class PortfolioAnalyticsEngine:
    """
    Wires the analytical components around one provider and one cache.

    Usage:
        engine = PortfolioAnalyticsEngine(StaticMarketData(...))
        result = engine.optimize_portfolio(positions, analytics, owner_key="owner")
        engine.start_monitoring("owner", ["adaptive_rebalancing"])
        ...
        engine.shutdown()
    """

    def __init__(
        self,
        market_data: MarketDataProvider,
        config: Optional[EngineConfig] = None,
        cache: Optional[ResultCache] = None,
        executor: Optional[RebalanceExecutor] = None,
        metrics: Optional[PrometheusExporter] = None,
        logger: Optional[logging.Logger] = None,
        clock=time.time
    ):
        self.config = config or EngineConfig()
        self.logger = get_logger("engine", logger)
        self.market_data = market_data

        self.cache = cache or ResultCache(
            ttl_seconds=self.config.analysis_cache_ttl,
            max_entries=self.config.cache_max_entries
        )

        if metrics is None and self.config.enable_prometheus:
            metrics = PrometheusExporter(port=self.config.prometheus_port, logger=logger)
            if not metrics.start_server():
                self.log("Prometheus exporter disabled: server failed to start", level="warn")
                metrics = None
        self.metrics = metrics

        self.correlation_engine = CorrelationRiskEngine(
            market_data, config=self.config, cache=self.cache, logger=logger, clock=clock
        )
        self.optimizer = PortfolioOptimizer(
            market_data, config=self.config, correlation_engine=self.correlation_engine,
            cache=self.cache, logger=logger, clock=clock
        )
        self.rebalancer = RebalancingSystem(
            market_data, config=self.config, executor=executor,
            metrics=self.metrics, logger=logger, clock=clock
        )
        self.health_monitor = PositionHealthMonitor(
            market_data, config=self.config, rebalancer=self.rebalancer,
            metrics=self.metrics, logger=logger, clock=clock
        )

        self.log(
            f"Engine initialized: simulation_only={self.config.simulation_only}, "
            f"cache_ttl={self.config.analysis_cache_ttl}s/{self.config.optimization_cache_ttl}s, "
            f"prometheus={'on' if self.metrics else 'off'}"
        )

    def log(self, msg: str, level: str = "info") -> None:
        log_message(self.logger, "PortfolioAnalyticsEngine", msg, level)

    # =========================================================================
    # ANALYSIS
    # =========================================================================

    def analyze_multiple_positions(
        self,
        positions: Sequence[Any],
        analytics: Sequence[Any],
        owner_key: str,
        force_refresh: bool = False
    ) -> CrossPositionAnalytics:
        return self.correlation_engine.analyze_multiple_positions(
            positions, analytics, owner_key, force_refresh=force_refresh
        )

    def optimize_portfolio(
        self,
        positions: Sequence[Any],
        analytics: Sequence[Any],
        opt_config: Optional[Any] = None,
        owner_key: str = "",
        force_refresh: bool = False
    ) -> OptimizationResult:
        return self.optimizer.optimize_portfolio(
            positions, analytics, opt_config, owner_key=owner_key, force_refresh=force_refresh
        )

    def analyze_position(
        self,
        position_id: str,
        owner_key: str,
        config_id: Optional[str] = None
    ) -> RebalancingAnalysis:
        return self.rebalancer.analyze_position(position_id, owner_key, config_id)

    def execute_rebalancing(
        self,
        analysis: RebalancingAnalysis,
        owner_key: str,
        approval_granted: bool = False
    ) -> RebalancingExecution:
        return self.rebalancer.execute_rebalancing(analysis, owner_key, approval_granted)

    # =========================================================================
    # MONITORING
    # =========================================================================

    def start_monitoring(
        self,
        owner_key: str,
        config_ids: Sequence[str],
        interval_minutes: Optional[float] = None,
        alert_config: Optional[AlertConfiguration] = None
    ) -> None:
        """
        Start trigger monitoring and health monitoring for an owner.

        Every active position of the owner is registered with the health
        monitor using alert_config (defaults when omitted).
        """
        self.rebalancer.start_monitoring(owner_key, config_ids, interval_minutes)

        positions, _ = self.market_data.get_positions(owner_key)
        for position in positions:
            if position.is_active:
                self.health_monitor.add_position(position, owner_key, alert_config)
        if not self.health_monitor.is_monitoring():
            self.health_monitor.start_monitoring(interval_minutes)

    def stop_monitoring(self) -> None:
        """Stop both loops. An in-flight cycle is allowed to finish."""
        self.rebalancer.stop_monitoring()
        self.health_monitor.stop_monitoring()

    def shutdown(self) -> None:
        self.stop_monitoring()
        if self.metrics:
            self.metrics.stop_server()
        self.log("Engine shut down")

    # =========================================================================
    # STATUS & CONFIG
    # =========================================================================

    def clear_cache(self) -> None:
        self.cache.clear()
        self.log("Result cache cleared")

    def cache_stats(self) -> Dict[str, Any]:
        return self.cache.stats()

    def status(self) -> Dict[str, Any]:
        return {
            "status": "running",
            "config_version": self.config._version,
            "simulation_only": self.config.simulation_only,
            "monitoring": {
                "rebalancer": self.rebalancer.is_monitoring(),
                "health": self.health_monitor.is_monitoring(),
            },
            "cache": self.cache_stats(),
            "rebalancing": self.rebalancer.get_rebalancing_stats(),
            "health": self.health_monitor.get_monitoring_stats(),
        }

    def get_config(self, key: Optional[str] = None) -> Dict[str, Any]:
        if key:
            if not hasattr(self.config, key) or key.startswith('_'):
                return {"error": f"Unknown config key: {key}"}
            return {"key": key, "value": getattr(self.config, key), "version": self.config._version}
        return {"config": asdict(self.config.snapshot()), "version": self.config._version}

    def set_config(self, key: str, value: Any) -> Dict[str, Any]:
        """
        Apply a runtime change. Cached results computed under the old
        value are dropped on success.
        """
        result = self.config.update_runtime(key, value)
        if result.get("status") == "success":
            self.cache.clear()
            self.log(
                f"CONFIG UPDATE: {key} changed from {result['old_value']} "
                f"to {result['new_value']} (v{result['version']})"
            )
        else:
            self.log(f"CONFIG UPDATE rejected for {key}: {result.get('error')}", level="warn")
        return result

    @staticmethod
    def mutable_config_keys() -> List[str]:
        return sorted(k for k in CONFIG_FIELD_TYPES if k not in IMMUTABLE_CONFIG_KEYS)
