import errno
import logging
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from typing import Optional

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


def _get_port_scan_limit() -> int:
    try:
        return int(config.monitoring.get('prometheus_port_scan', 0))
    except (TypeError, ValueError, AttributeError):
        return 0


class MetricsCollector:
    def __init__(self):
        self.orders_opened = Counter('orders_opened_total', 'Orders opened on the exchange', ['strategy'])
        self.open_failures = Counter('order_open_failures_total', 'Orders that could not be opened', ['reason'])
        self.orders_closed = Counter('orders_closed_total', 'Orders closed', ['reason'])
        self.ladder_advances = Counter('ladder_advances_total', 'Stop moved to the next ladder rung')
        self.stop_failures = Counter('stop_placement_failures_total', 'Protective stop placements that exhausted retries')
        self.stop_events = Counter('stop_events_total', 'Executed stop events received', ['source', 'outcome'])
        self.stream_reconnects = Counter('user_stream_reconnects_total', 'User data stream reconnects')
        self.anomalies = Counter('lifecycle_anomalies_total', 'Operational anomalies raised to the admin', ['kind'])

        self.active_orders = Gauge('active_orders', 'Orders currently held in the target index')
        self.watched_tokens = Gauge('watched_tokens', 'Tokens with a running price watch')
        self.realized_profit = Gauge('realized_net_profit_total', 'Net profit realized since start')

        self.exchange_latency = Histogram('exchange_call_seconds', 'Latency of exchange round trips', ['action'])
        self.backtest_runs = Counter('backtest_runs_total', 'Backtests executed')

    def record_order_opened(self, strategy_id: int):
        self.orders_opened.labels(strategy=str(strategy_id)).inc()

    def record_open_failure(self, reason: str):
        self.open_failures.labels(reason=reason).inc()

    def record_order_closed(self, reason: str, net_profit: Optional[float] = None):
        self.orders_closed.labels(reason=reason).inc()
        if net_profit is not None:
            self.realized_profit.inc(net_profit)

    def record_ladder_advance(self):
        self.ladder_advances.inc()

    def record_stop_failure(self):
        self.stop_failures.inc()

    def record_stop_event(self, source: str, outcome: str):
        self.stop_events.labels(source=source, outcome=outcome).inc()

    def record_stream_reconnect(self):
        self.stream_reconnects.inc()

    def record_anomaly(self, kind: str):
        self.anomalies.labels(kind=kind).inc()

    def set_active_orders(self, count: int):
        self.active_orders.set(count)

    def set_watched_tokens(self, count: int):
        self.watched_tokens.set(count)

    def record_exchange_latency(self, action: str, seconds: float):
        self.exchange_latency.labels(action=action).observe(seconds)

    def record_backtest(self):
        self.backtest_runs.inc()


def start_metrics_server(port: int = 9108):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return
    port_scan_limit = max(0, _get_port_scan_limit())
    last_error: Optional[OSError] = None
    for offset in range(port_scan_limit + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        logger.info("Prometheus metrics server started on port %s", candidate)
        return
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error

metrics = MetricsCollector()
