import errno
import logging
from pathlib import Path
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from typing import Optional

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


def _get_port_scan_limit() -> int:
    try:
        return int(config.section('monitoring').get('prometheus_port_scan', 0))
    except (TypeError, ValueError):
        return 0


def _get_port_file() -> Optional[Path]:
    path_value = config.section('monitoring').get('metrics_port_file')
    if not path_value:
        return None
    return Path(path_value)


def _write_port_file(port: int) -> None:
    port_file = _get_port_file()
    if not port_file:
        return
    try:
        port_file.parent.mkdir(parents=True, exist_ok=True)
        port_file.write_text(str(port))
    except OSError as exc:
        logger.warning("Failed to persist metrics port file %s: %s", port_file, exc)


class MetricsCollector:
    def __init__(self):
        self.orders_placed = Counter('orders_placed_total', 'Total orders placed', ['symbol', 'type'])
        self.order_failures = Counter('order_failures_total', 'Order requests that failed', ['symbol', 'kind'])
        self.orders_cancelled = Counter('orders_cancelled_total', 'Total orders cancelled', ['symbol'])
        self.order_send_latency = Histogram('order_send_latency_seconds', 'Latency from order send to return/ACK')

        self.protective_retries = Counter('protective_order_retries_total', 'Protective order placement retries', ['symbol'])
        self.emergency_flattens = Counter('emergency_flattens_total', 'Emergency market flattens', ['symbol', 'reason'])
        self.unprotected_window = Histogram(
            'unprotected_window_seconds',
            'Time between entry fill and protective stop acknowledgement',
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 15, 60),
        )
        self.slippage_bps = Histogram(
            'fill_slippage_bps',
            'Absolute slippage of market fills versus signal price, in basis points',
            buckets=(1, 2, 5, 10, 25, 50, 100, 250),
        )
        self.signals = Counter('signals_total', 'Signals emitted by strategies', ['symbol', 'type'])
        self.signals_rejected = Counter('signals_rejected_total', 'Signals refused before execution', ['symbol', 'reason'])

        self.symbol_equity = Gauge('symbol_equity', 'Per-symbol equity', ['symbol'])
        self.portfolio_heat = Gauge('portfolio_heat_pct', 'Open risk as percent of equity', ['symbol'])
        self.equity = Gauge('account_equity', 'Total portfolio equity')
        self.drawdown = Gauge('portfolio_drawdown_pct', 'Portfolio drawdown from peak, percent')
        self.pnl_realized = Gauge('pnl_realized_total', 'Total realized PnL')
        self.open_positions = Gauge('open_positions', 'Open positions across all traders')
        self.trader_paused = Gauge('trader_paused', 'Trader paused after an unexpected failure', ['symbol'])

        self.reconnect_count = Counter('websocket_reconnects_total', 'Total WebSocket reconnects', ['stream'])
        self.stream_lag_seconds = Gauge('stream_lag_seconds', 'Seconds since last message seen', ['stream'])
        self.reconciliation_mismatches = Counter(
            'reconciliation_mismatches_total', 'Startup reconciliation mismatches', ['kind']
        )
        self.queue_depth = Gauge('queue_depth', 'Internal buffer depth', ['buffer'])

    def record_order_placed(self, symbol: str, order_type: str):
        self.orders_placed.labels(symbol=symbol, type=order_type).inc()

    def record_order_failure(self, symbol: str, kind: str):
        self.order_failures.labels(symbol=symbol, kind=kind).inc()

    def record_order_cancelled(self, symbol: str):
        self.orders_cancelled.labels(symbol=symbol).inc()

    def record_order_send_latency(self, latency_seconds: float):
        self.order_send_latency.observe(latency_seconds)

    def record_protective_retry(self, symbol: str):
        self.protective_retries.labels(symbol=symbol).inc()

    def record_emergency_flatten(self, symbol: str, reason: str):
        self.emergency_flattens.labels(symbol=symbol, reason=reason).inc()

    def record_unprotected_window(self, seconds: float):
        self.unprotected_window.observe(max(0.0, seconds))

    def record_slippage_bps(self, bps: float):
        # Record absolute bps to allow percentile views downstream
        if bps is not None:
            self.slippage_bps.observe(abs(float(bps)))

    def record_signal(self, symbol: str, signal_type: str):
        self.signals.labels(symbol=symbol, type=signal_type).inc()

    def record_signal_rejected(self, symbol: str, reason: str):
        self.signals_rejected.labels(symbol=symbol, reason=reason).inc()

    def update_symbol_equity(self, symbol: str, equity: float):
        self.symbol_equity.labels(symbol=symbol).set(equity)

    def update_portfolio_heat(self, symbol: str, heat_pct: float):
        self.portfolio_heat.labels(symbol=symbol).set(heat_pct)

    def update_portfolio(self, equity: float, drawdown_pct: float, realized_pnl: float, open_positions: int):
        self.equity.set(equity)
        self.drawdown.set(drawdown_pct)
        self.pnl_realized.set(realized_pnl)
        self.open_positions.set(open_positions)

    def mark_trader_paused(self, symbol: str, paused: bool):
        self.trader_paused.labels(symbol=symbol).set(1 if paused else 0)

    def record_reconnect(self, stream: str = 'market'):
        self.reconnect_count.labels(stream=stream).inc()

    def update_stream_lag(self, stream: str, seconds: float):
        self.stream_lag_seconds.labels(stream=stream).set(seconds)

    def record_reconciliation_mismatch(self, kind: str):
        self.reconciliation_mismatches.labels(kind=kind).inc()

    def update_queue_depth(self, name: str, depth: int):
        self.queue_depth.labels(buffer=name).set(depth)


def start_metrics_server(port: int = 9090):
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
        _write_port_file(candidate)
        logger.info("Prometheus metrics server started on port %s", candidate)
        return
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error


metrics = MetricsCollector()
