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
    except Exception:
        return 0


class MetricsCollector:
    def __init__(self):
        self.signals_received = Counter('signals_received_total', 'Inbound signals accepted for processing', ['ticker', 'signal'])
        self.signals_skipped = Counter('signals_skipped_total', 'Signals that produced no order', ['reason'])
        self.signals_failed = Counter('signals_failed_total', 'Signals that ended in an error', ['kind'])
        self.signal_queue_depth = Gauge('signal_queue_depth', 'Signals waiting for the processor')

        self.orders_placed = Counter('orders_placed_total', 'Orders accepted by the exchange', ['side', 'type'])
        self.orders_rejected = Counter('orders_rejected_total', 'Orders rejected by the exchange', ['code'])
        self.order_confirmations = Counter('order_confirmations_total', 'Order confirmation outcomes', ['outcome'])
        self.order_send_latency = Histogram('order_send_latency_seconds', 'Latency from order send to acknowledgement')

        self.price_failures = Counter('price_fetch_failures_total', 'Failed quote fetches', ['ticker'])
        self.reconcile_failures = Counter('reconcile_failures_total', 'Post-order balance re-fetch failures')

        self.account_value = Gauge('account_value_quote', 'Total account value in quote currency')
        self.position = Gauge('instrument_position', 'Recorded position per instrument', ['ticker'])
        self.paper_balance = Gauge('paper_quote_balance', 'Paper exchange quote balance')

    def record_signal(self, ticker: str, signal: str):
        self.signals_received.labels(ticker=ticker, signal=signal).inc()

    def record_skip(self, reason: str):
        self.signals_skipped.labels(reason=reason).inc()

    def record_failure(self, kind: str):
        self.signals_failed.labels(kind=kind).inc()

    def update_queue_depth(self, depth: int):
        self.signal_queue_depth.set(depth)

    def record_order_placed(self, side: str, order_type: str):
        self.orders_placed.labels(side=side, type=order_type).inc()

    def record_order_rejected(self, code: Optional[str]):
        self.orders_rejected.labels(code=str(code or 'unknown')).inc()

    def record_confirmation(self, outcome: str):
        self.order_confirmations.labels(outcome=outcome).inc()

    def record_order_send_latency(self, latency_seconds: float):
        self.order_send_latency.observe(latency_seconds)

    def record_price_failure(self, ticker: str):
        self.price_failures.labels(ticker=ticker).inc()

    def record_reconcile_failure(self):
        self.reconcile_failures.inc()

    def update_account_value(self, total: float):
        self.account_value.set(total)

    def update_position(self, ticker: str, position: float):
        self.position.labels(ticker=ticker).set(position)

    def update_paper_balance(self, balance: float):
        self.paper_balance.set(balance)


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
