"""
Prometheus metrics exporter for portfolio_engine

Exposes monitoring decisions (health scores, risk scores, alert counts,
rebalancing executions) in the Prometheus text format.

Standard library only:
- Thread-safe gauge/counter storage guarded by threading.Lock
- Label sets (e.g. {position_id="...", severity="..."})
- Optional background HTTP server serving /metrics

All metric names are prefixed with 'portfolio_engine_'.
"""

import logging
import socket
import threading
from http.server import HTTPServer, BaseHTTPRequestHandler
from typing import Dict, Optional, Any

from .log import get_logger, log_message


class MetricType:
    """Metric type constants."""
    GAUGE = "gauge"
    COUNTER = "counter"


class PrometheusExporter:
    """
    In-process metric registry with a text exposition endpoint.

    Usage:
        exporter = PrometheusExporter(port=9810)
        exporter.set_gauge(MetricNames.POSITION_HEALTH_SCORE, 72.5,
                           {"position_id": "pos-1"})
        exporter.inc_counter(MetricNames.REBALANCE_EXECUTIONS_TOTAL,
                             labels={"status": "completed"})
    """

    def __init__(self, port: int = 9810, logger: Optional[logging.Logger] = None):
        self.port = port
        self.logger = get_logger("metrics", logger)

        self._lock = threading.Lock()
        # {name: {"type": ..., "help": ..., "values": {frozenset(labels): value}}}
        self._metrics: Dict[str, Dict[str, Any]] = {}

        self._server: Optional[HTTPServer] = None
        self._server_thread: Optional[threading.Thread] = None
        self._running = False

    def log(self, msg: str, level: str = "info") -> None:
        log_message(self.logger, "PrometheusExporter", msg, level)

    def _entry(self, name: str, metric_type: str, help_text: str) -> Dict[str, Any]:
        if name not in self._metrics:
            self._metrics[name] = {
                "type": metric_type,
                "help": help_text or METRIC_HELP.get(name, ""),
                "values": {}
            }
        return self._metrics[name]

    def set_gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None,
                  help_text: str = "") -> None:
        """Set a gauge to its current value."""
        label_key = frozenset((labels or {}).items())
        with self._lock:
            self._entry(name, MetricType.GAUGE, help_text)["values"][label_key] = value

    def inc_counter(self, name: str, value: float = 1, labels: Optional[Dict[str, str]] = None,
                    help_text: str = "") -> None:
        """Add to a monotonically increasing counter."""
        label_key = frozenset((labels or {}).items())
        with self._lock:
            values = self._entry(name, MetricType.COUNTER, help_text)["values"]
            values[label_key] = values.get(label_key, 0) + value

    def get_metric(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        """Current value for an exact label set, or None."""
        label_key = frozenset((labels or {}).items())
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                return None
            return metric["values"].get(label_key)

    def remove_metric(self, name: str, labels: Optional[Dict[str, str]] = None) -> bool:
        """
        Drop one label combination, or the whole metric when labels is None.

        Used when a position stops being monitored.
        """
        with self._lock:
            if name not in self._metrics:
                return False
            if not labels:
                del self._metrics[name]
                return True
            values = self._metrics[name]["values"]
            label_key = frozenset(labels.items())
            if label_key not in values:
                return False
            del values[label_key]
            return True

    def format_prometheus(self) -> str:
        """Render every metric in the Prometheus text exposition format."""
        lines = []
        with self._lock:
            for name, metric in sorted(self._metrics.items()):
                if metric["help"]:
                    lines.append(f"# HELP {name} {metric['help']}")
                lines.append(f"# TYPE {name} {metric['type']}")
                for label_key, value in sorted(metric["values"].items(), key=lambda x: str(sorted(x[0]))):
                    if label_key:
                        label_part = ", ".join(f'{k}="{v}"' for k, v in sorted(label_key))
                        lines.append(f"{name}{{{label_part}}} {value}")
                    else:
                        lines.append(f"{name} {value}")
                lines.append("")
        return "\n".join(lines)

    def _create_request_handler(self):
        exporter = self

        class MetricsHandler(BaseHTTPRequestHandler):
            """Serves /metrics."""

            def log_message(self, format, *args):
                exporter.log(format % args, level="debug")

            def _reply(self, code: int, body: bytes, include_body: bool = True):
                self.send_response(code)
                self.send_header("Content-Type", "text/plain; charset=utf-8")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                if include_body:
                    self.wfile.write(body)

            def do_GET(self):
                try:
                    if self.path in ("/", "/metrics"):
                        self._reply(200, exporter.format_prometheus().encode("utf-8"))
                    else:
                        self._reply(404, b"Not Found. Try /metrics")
                except (BrokenPipeError, ConnectionResetError):
                    # Client went away mid-response
                    exporter.log("metrics client disconnected", level="debug")

            def do_HEAD(self):
                try:
                    if self.path in ("/", "/metrics"):
                        self._reply(200, b"", include_body=False)
                    else:
                        self._reply(404, b"", include_body=False)
                except (BrokenPipeError, ConnectionResetError):
                    exporter.log("metrics client disconnected", level="debug")

        return MetricsHandler

    def start_server(self) -> bool:
        """
        Start the HTTP endpoint on a daemon thread.

        Returns:
            True if the server is running, False if it could not bind
        """
        if self._running:
            self.log("Prometheus server already running")
            return True

        try:
            self._server = HTTPServer(("0.0.0.0", self.port), self._create_request_handler())
            self._server.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        except OSError as e:
            self.log(f"Failed to start Prometheus server on port {self.port}: {e}", level="error")
            self._server = None
            return False

        self._server_thread = threading.Thread(
            target=self._run_server,
            daemon=True,
            name="portfolio-metrics-exporter"
        )
        self._running = True
        self._server_thread.start()
        self.log(f"Prometheus metrics server started on port {self.port}")
        return True

    def _run_server(self):
        try:
            self._server.serve_forever()
        except OSError as e:
            self.log(f"Prometheus server error: {e}", level="error")
            self._running = False

    def stop_server(self):
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
            self._running = False
            self.log("Prometheus metrics server stopped")

    def is_running(self) -> bool:
        return self._running


class MetricNames:
    """Metric names shared across components."""

    # Health monitor (gauges)
    POSITION_HEALTH_SCORE = "portfolio_engine_position_health_score"
    POSITION_RISK_SCORE = "portfolio_engine_position_risk_score"
    ACTIVE_ALERTS = "portfolio_engine_active_alerts"

    # Health monitor (counters)
    ALERTS_RAISED_TOTAL = "portfolio_engine_alerts_raised_total"

    # Rebalancing evaluator (counters)
    REBALANCE_EXECUTIONS_TOTAL = "portfolio_engine_rebalance_executions_total"
    REBALANCE_VALUE_TOTAL = "portfolio_engine_rebalance_value_total"
    TRIGGERS_FIRED_TOTAL = "portfolio_engine_triggers_fired_total"

    # Monitoring loops (gauges)
    LAST_CYCLE_TIMESTAMP = "portfolio_engine_last_cycle_timestamp_seconds"
    CYCLE_FAILURES = "portfolio_engine_cycle_position_failures"


METRIC_HELP = {
    MetricNames.POSITION_HEALTH_SCORE: "Composite position health score (0-100)",
    MetricNames.POSITION_RISK_SCORE: "Position risk score (0-100)",
    MetricNames.ACTIVE_ALERTS: "Number of active alerts per position",
    MetricNames.ALERTS_RAISED_TOTAL: "Alerts raised, by type and severity",
    MetricNames.REBALANCE_EXECUTIONS_TOTAL: "Rebalancing executions by final status",
    MetricNames.REBALANCE_VALUE_TOTAL: "Position value moved by completed rebalances",
    MetricNames.TRIGGERS_FIRED_TOTAL: "Rebalancing triggers fired, by trigger type",
    MetricNames.LAST_CYCLE_TIMESTAMP: "Unix timestamp of the last completed monitoring cycle",
    MetricNames.CYCLE_FAILURES: "Positions skipped in the last monitoring cycle due to errors",
}
