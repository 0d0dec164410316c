"""
Tests for Position Health Monitor module.

Tests scoring, deduplicated alert lifecycle and auto actions.
"""

import pytest


POOR_STATE = dict(efficiency=0.05, fee_optimization=0.05, capital_utilization=0.05, risk_score=95.0)
MEDIUM_STATE = dict(efficiency=0.5, fee_optimization=0.5, capital_utilization=0.5, risk_score=50.0)


@pytest.fixture
def exporter():
    from portfolio_engine.metrics import PrometheusExporter
    return PrometheusExporter()


@pytest.fixture
def monitor(market_data, clock, exporter):
    from portfolio_engine.health_monitor import PositionHealthMonitor
    return PositionHealthMonitor(market_data, metrics=exporter, clock=clock)


@pytest.fixture
def watched(monitor, sample_positions):
    """Monitor with pos-sol-usdc registered under default settings."""
    monitor.add_position(sample_positions[0], "owner")
    return monitor


def make_metrics(**overrides):
    from portfolio_engine.health_monitor import HealthMetrics

    values = dict(
        efficiency=80.0, fee_optimization=60.0, liquidity_utilization=80.0,
        risk_score=30.0, total_return=5.0, impermanent_loss=1.5, fee_yield=1.0,
        volatility_score=20.0, rebalance_urgency=0.0, position_age_days=7.0
    )
    values.update(overrides)
    return HealthMetrics(**values)


class TestThresholds:
    """Tests for threshold presets and band validation."""

    def test_presets_are_valid(self):
        from portfolio_engine.health_monitor import MonitoringThresholds

        for preset in (MonitoringThresholds.default(), MonitoringThresholds.conservative(),
                       MonitoringThresholds.aggressive()):
            assert preset.health_critical <= preset.health_low
            assert preset.risk_critical >= preset.risk_low

        assert MonitoringThresholds.conservative().health_critical > MonitoringThresholds.default().health_critical
        assert MonitoringThresholds.aggressive().health_critical < MonitoringThresholds.default().health_critical

    def test_band_order_enforced(self):
        from portfolio_engine.health_monitor import MonitoringThresholds
        from portfolio_engine.errors import ValidationError

        with pytest.raises(ValidationError):
            MonitoringThresholds(health_critical=50, health_high=40)
        with pytest.raises(ValidationError):
            MonitoringThresholds(risk_critical=50)
        with pytest.raises(ValidationError):
            MonitoringThresholds(stale_warning_days=100)

    def test_severity_bands(self):
        from portfolio_engine.health_monitor import MonitoringThresholds, AlertSeverity

        t = MonitoringThresholds()
        assert t.health_severity(10) == AlertSeverity.CRITICAL
        assert t.health_severity(20) == AlertSeverity.HIGH
        assert t.health_severity(59.9) == AlertSeverity.MEDIUM
        assert t.health_severity(60) == AlertSeverity.LOW
        assert t.risk_severity(91) == AlertSeverity.CRITICAL
        assert t.risk_severity(90) == AlertSeverity.HIGH
        assert t.risk_severity(45) == AlertSeverity.LOW

    def test_unknown_auto_action(self):
        from portfolio_engine.health_monitor import AutoActionConfig
        from portfolio_engine.errors import ValidationError

        with pytest.raises(ValidationError):
            AutoActionConfig("health_degradation", "liquidate")


class TestScoring:
    """Tests for the module-level scoring helpers."""

    def test_health_score_weights(self):
        from portfolio_engine.health_monitor import calculate_health_score

        # 0.25*80 + 0.2*60 + 0.2*80 + 0.2*70 + 0.15*55
        assert calculate_health_score(make_metrics()) == pytest.approx(70.25)

    def test_health_score_clamped(self):
        from portfolio_engine.health_monitor import calculate_health_score

        best = make_metrics(efficiency=100, fee_optimization=100, liquidity_utilization=100,
                            risk_score=0, total_return=500)
        worst = make_metrics(efficiency=0, fee_optimization=0, liquidity_utilization=0,
                             risk_score=150, total_return=-500)
        assert calculate_health_score(best) == pytest.approx(100.0)
        assert calculate_health_score(worst) == 0.0

    def test_trend(self):
        from portfolio_engine.health_monitor import calculate_trend

        assert calculate_trend([50.0]) == "stable"
        assert calculate_trend([50.0, 52.0, 56.0]) == "improving"
        assert calculate_trend([50.0, 44.0]) == "declining"
        assert calculate_trend([50.0, 54.0]) == "stable"

    def test_recommendations(self):
        from portfolio_engine.health_monitor import (
            generate_recommendations, REC_LOW_EFFICIENCY, REC_NEGATIVE_RETURN, REC_IMPERMANENT_LOSS
        )

        assert generate_recommendations(make_metrics()) == []
        recs = generate_recommendations(make_metrics(efficiency=40, total_return=-1, impermanent_loss=6))
        assert recs == [REC_LOW_EFFICIENCY, REC_IMPERMANENT_LOSS, REC_NEGATIVE_RETURN]

    def test_only_enabled_types_evaluated(self):
        from portfolio_engine.health_monitor import evaluate_alerts, AlertConfiguration, AlertType

        metrics = make_metrics(efficiency=10, impermanent_loss=9, volatility_score=95)
        default = {c.alert_type for c in evaluate_alerts(metrics, 50.0, AlertConfiguration())}
        everything = {c.alert_type for c in evaluate_alerts(
            metrics, 50.0, AlertConfiguration(alert_types=tuple(AlertType))
        )}

        assert default == {AlertType.HEALTH_DEGRADATION}
        assert {AlertType.EFFICIENCY_DROP, AlertType.IMPERMANENT_LOSS, AlertType.VOLATILITY_SPIKE} <= everything

    def test_position_expiry_levels(self):
        from portfolio_engine.health_monitor import (
            evaluate_alerts, AlertConfiguration, AlertType, AlertSeverity
        )

        config = AlertConfiguration(alert_types=(AlertType.POSITION_EXPIRY,))
        stale = evaluate_alerts(make_metrics(position_age_days=45), 70.0, config)
        expired = evaluate_alerts(make_metrics(position_age_days=120), 70.0, config)

        assert stale[0].severity == AlertSeverity.LOW
        assert expired[0].severity == AlertSeverity.HIGH
        assert evaluate_alerts(make_metrics(), 70.0, config) == []


class TestBuildMetrics:
    """Tests for converting market state to health inputs."""

    def test_scales_and_magnitudes(self, monitor, sample_positions, sample_analytics, clock):
        metrics = monitor.build_metrics(sample_positions[0], sample_analytics[0], clock())

        assert metrics.efficiency == pytest.approx(80.0)
        assert metrics.liquidity_utilization == pytest.approx(80.0)
        assert metrics.impermanent_loss == pytest.approx(1.5)
        assert metrics.volatility_score == pytest.approx(30.0)
        assert metrics.position_age_days == pytest.approx(7.0)


class TestAlertLifecycle:
    """One active alert per (position, type), level evaluated."""

    def test_healthy_position_has_no_alerts(self, watched):
        report = watched.run_monitoring_cycle()

        assert report.snapshots["pos-sol-usdc"].health_score == pytest.approx(70.25)
        assert watched.get_position_alerts("pos-sol-usdc") == []

    def test_poor_state_raises_critical_alerts(self, watched, market_data, exporter):
        from portfolio_engine.health_monitor import AlertType, AlertSeverity
        from portfolio_engine.metrics import MetricNames

        market_data.update_state("pos-sol-usdc", **POOR_STATE)
        watched.run_monitoring_cycle()
        alerts = {a.alert_type: a for a in watched.get_position_alerts("pos-sol-usdc")}

        assert set(alerts) == {AlertType.HEALTH_DEGRADATION, AlertType.RISK_INCREASE}
        assert alerts[AlertType.HEALTH_DEGRADATION].severity == AlertSeverity.CRITICAL
        assert alerts[AlertType.RISK_INCREASE].severity == AlertSeverity.CRITICAL
        assert exporter.get_metric(
            MetricNames.ALERTS_RAISED_TOTAL, {"type": "health_degradation", "severity": "critical"}
        ) == 1

    def test_repeated_condition_is_deduplicated(self, watched, market_data, clock, exporter):
        from portfolio_engine.metrics import MetricNames

        market_data.update_state("pos-sol-usdc", **POOR_STATE)
        watched.run_monitoring_cycle()
        first_ids = sorted(a.alert_id for a in watched.get_position_alerts("pos-sol-usdc"))

        clock.advance(1800)
        watched.run_monitoring_cycle()
        alerts = watched.get_position_alerts("pos-sol-usdc")

        assert sorted(a.alert_id for a in alerts) == first_ids
        assert all(a.updated_at == clock() for a in alerts)
        assert len(watched.get_alert_history("pos-sol-usdc")) == 2
        assert exporter.get_metric(
            MetricNames.ALERTS_RAISED_TOTAL, {"type": "health_degradation", "severity": "critical"}
        ) == 1

    def test_alert_resolves_when_condition_clears(self, watched, market_data, clock):
        market_data.update_state("pos-sol-usdc", **POOR_STATE)
        watched.run_monitoring_cycle()
        market_data.update_state("pos-sol-usdc", efficiency=0.8, fee_optimization=0.6,
                                 capital_utilization=0.8, risk_score=30.0)
        clock.advance(1800)
        watched.run_monitoring_cycle()

        assert watched.get_position_alerts("pos-sol-usdc") == []
        history = watched.get_alert_history("pos-sol-usdc")
        assert all(not a.is_active for a in history)
        assert all(a.resolved_at == clock() for a in history)

    def test_acknowledge_and_escalation(self, watched, market_data):
        from portfolio_engine.health_monitor import AlertSeverity

        market_data.update_state("pos-sol-usdc", **MEDIUM_STATE)
        watched.run_monitoring_cycle()
        (alert,) = watched.get_position_alerts("pos-sol-usdc")
        assert alert.severity == AlertSeverity.MEDIUM

        assert watched.acknowledge_alert(alert.alert_id)
        assert alert.acknowledged
        assert not watched.acknowledge_alert("alert-unknown")

        market_data.update_state("pos-sol-usdc", **POOR_STATE)
        watched.run_monitoring_cycle()
        health = next(a for a in watched.get_position_alerts("pos-sol-usdc") if a.alert_id == alert.alert_id)

        assert health.severity == AlertSeverity.CRITICAL
        assert health.acknowledged is False

    def test_negative_return_performance_alert(self, monitor, sample_positions):
        from portfolio_engine.health_monitor import AlertType

        monitor.add_position(sample_positions[1], "owner")
        monitor.run_monitoring_cycle()

        types = [a.alert_type for a in monitor.get_position_alerts("pos-sol-bonk")]
        assert types == [AlertType.PERFORMANCE_DECLINE]


class TestAutoActions:
    """Tests for actions fired on raised or escalated alerts."""

    def test_notify_only_counts_once(self, monitor, market_data, sample_positions):
        from portfolio_engine.health_monitor import AlertConfiguration, AutoActionConfig

        config = AlertConfiguration(auto_actions=(AutoActionConfig("health_degradation", "notify_only"),))
        monitor.add_position(sample_positions[0], "owner", config)
        market_data.update_state("pos-sol-usdc", **POOR_STATE)

        monitor.run_monitoring_cycle()
        monitor.run_monitoring_cycle()
        assert monitor.get_monitoring_stats()["auto_actions_executed"] == 1

    def test_rebalance_action_submits_for_approval(self, market_data, clock, sample_positions):
        from portfolio_engine.health_monitor import (
            PositionHealthMonitor, AlertConfiguration, AutoActionConfig
        )
        from portfolio_engine.rebalancer import RebalancingSystem, ExecutionStatus

        rebalancer = RebalancingSystem(market_data, clock=clock)
        monitor = PositionHealthMonitor(market_data, rebalancer=rebalancer, clock=clock)
        config = AlertConfiguration(auto_actions=(AutoActionConfig("health_degradation", "rebalance"),))
        monitor.add_position(sample_positions[0], "owner", config)
        market_data.update_state("pos-sol-usdc", **POOR_STATE)

        monitor.run_monitoring_cycle()

        (execution,) = rebalancer.get_execution_history("pos-sol-usdc")
        assert execution.status == ExecutionStatus.CANCELLED
        assert monitor.get_monitoring_stats()["auto_actions_executed"] == 1

    def test_rebalance_without_rebalancer_is_skipped(self, monitor, market_data, sample_positions):
        from portfolio_engine.health_monitor import AlertConfiguration, AutoActionConfig

        config = AlertConfiguration(auto_actions=(AutoActionConfig("health_degradation", "rebalance"),))
        monitor.add_position(sample_positions[0], "owner", config)
        market_data.update_state("pos-sol-usdc", **POOR_STATE)
        monitor.run_monitoring_cycle()

        assert monitor.get_monitoring_stats()["auto_actions_executed"] == 0


class TestMonitorManagement:
    """Tests for registration, history and cycle failures."""

    def test_history_and_trends(self, watched, market_data, clock):
        watched.run_monitoring_cycle()
        market_data.update_state("pos-sol-usdc", **POOR_STATE)
        clock.advance(1800)
        watched.run_monitoring_cycle()

        history = watched.get_position_history("pos-sol-usdc")
        assert len(history.snapshots) == 2
        assert history.average_health_score == pytest.approx((70.25 + 12.5) / 2)
        assert history.performance_trend == pytest.approx(12.5 - 70.25)
        assert history.worst_snapshot.health_score == pytest.approx(12.5)

        trend = watched.analyze_trends("pos-sol-usdc")
        assert trend.health_trend == "declining"
        assert trend.risk_trend == "increasing"
        assert trend.performance_trend == "negative"

    def test_unknown_history(self, monitor):
        from portfolio_engine.errors import NotFoundError

        with pytest.raises(NotFoundError):
            monitor.get_position_history("missing")

    def test_remove_position(self, watched, market_data):
        from portfolio_engine.errors import NotFoundError

        market_data.update_state("pos-sol-usdc", **POOR_STATE)
        watched.run_monitoring_cycle()
        assert watched.get_position_history("pos-sol-usdc").snapshots

        assert watched.remove_position("pos-sol-usdc")
        assert not watched.remove_position("pos-sol-usdc")
        assert watched.get_position_alerts("pos-sol-usdc") == []
        assert watched.monitored_positions() == []
        with pytest.raises(NotFoundError):
            watched.get_position_history("pos-sol-usdc")
        stats = watched.get_monitoring_stats()
        assert stats["positions_monitored"] == 0
        assert stats["average_health_score"] == 0.0

    def test_disabled_monitoring_skipped(self, watched):
        assert watched.update_monitoring_config("pos-sol-usdc", monitoring_enabled=False)
        assert not watched.update_monitoring_config("missing", monitoring_enabled=False)

        report = watched.run_monitoring_cycle()
        assert report.snapshots == {}

    def test_unknown_owner_recorded_as_error(self, watched, make_position):
        watched.add_position(make_position("ghost-pos"), "ghost")
        report = watched.run_monitoring_cycle()

        assert "pos-sol-usdc" in report.snapshots
        assert "ghost-pos" in report.errors

    def test_stats(self, watched, market_data, clock):
        market_data.update_state("pos-sol-usdc", **POOR_STATE)
        watched.run_monitoring_cycle()
        stats = watched.get_monitoring_stats()

        assert stats["positions_monitored"] == 1
        assert stats["active_alerts"] == 2
        assert stats["alerts_by_severity"] == {"critical": 2}
        assert stats["average_health_score"] == pytest.approx(12.5)
        assert stats["last_cycle"] == clock()
        assert stats["monitoring"] is False

    def test_start_and_stop(self, watched):
        assert watched.start_monitoring(interval_minutes=60)
        try:
            assert watched.is_monitoring()
            assert not watched.start_monitoring()
        finally:
            watched.stop_monitoring()
        assert not watched.is_monitoring()
