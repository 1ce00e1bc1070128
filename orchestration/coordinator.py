import asyncio
import logging
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from api.metrics import metrics
from config.settings import CoordinatorSettings, ShutdownAction, StrategyRole, TradingPairConfig
from execution.errors import ValidationError
from execution.gateway import ExecutionGateway
from monitoring.async_utils import cancel_tasks
from orchestration.events import EventKind, EventSink, Severity, TraderEvent
from orchestration.journal import TradeJournal
from orchestration.persistence import StateStore
from orchestration.reconciliation import ReconciledSymbol, ReconciliationService
from orchestration.symbol_trader import SymbolTrader
from risk.equity import SharedEquityManager, compute_allocations
from risk.portfolio import PortfolioRiskManager
from risk.risk_manager import RiskManager
from strategy.base import Strategy
from strategy.filters import FilterResult, SignalFilter, build_filter, evaluate_filters
from strategy.models import Candle, StrategyState, TradeSignal
from strategy.registry import load_strategy


logger = logging.getLogger(__name__)

PORTFOLIO = 'PORTFOLIO'

StrategyFactory = Callable[[str, Dict[str, Any]], Strategy]


class FilterUnit:
    """Secondary strategy on another timeframe that only gates entries."""

    def __init__(self, pair: TradingPairConfig, strategy: Strategy, signal_filter: SignalFilter):
        self.pair = pair
        self.strategy = strategy
        self.filter = signal_filter
        self.last_candle_at: Optional[int] = None

    @property
    def state(self) -> StrategyState:
        return self.strategy.get_state()

    def on_candle(self, candle: Candle) -> None:
        if candle.symbol != self.pair.symbol:
            return
        # filter strategies never hold positions; their signals are discarded
        self.strategy.analyze(candle, 0.0, candle.symbol)
        self.last_candle_at = candle.close_time

    def warmup(self, candles: List[Candle]) -> None:
        for candle in candles:
            self.strategy.warmup(candle)

    def status(self) -> Dict[str, Any]:
        return {
            'interval': self.pair.interval,
            'filter': self.pair.filter,
            'mode': self.filter.mode.value,
            'state': self.state.as_dict(),
            'last_candle_at': self.last_candle_at,
        }


class MultiSymbolCoordinator:
    """Runs one SymbolTrader per symbol over a shared equity ledger.

    Market data is fanned out to the traders and to filter units; trader
    events are collected into one stream and forwarded to the registered
    sinks (notifier, UI). A single stop request propagates to every trader.
    """

    def __init__(
        self,
        settings: CoordinatorSettings,
        gateway: ExecutionGateway,
        market_data=None,
        *,
        state_store: Optional[StateStore] = None,
        journal: Optional[TradeJournal] = None,
        sinks: Optional[List[EventSink]] = None,
        strategy_factory: StrategyFactory = load_strategy,
        recent_events: int = 500,
    ):
        self.settings = settings
        self.gateway = gateway
        self.market_data = market_data
        self.state_store = state_store
        self.journal = journal
        self.strategy_factory = strategy_factory
        self.sinks: List[EventSink] = list(sinks or [])
        self.recent_events: Deque[TraderEvent] = deque(maxlen=recent_events)

        self.equity = SharedEquityManager(settings.total_capital, settings.drawdown_alert_pct)
        self.portfolio_risk = PortfolioRiskManager(settings.portfolio, self.equity)
        self.equity.add_equity_listener(self._on_equity_change)
        self.equity.add_drawdown_listener(self._on_drawdown)

        self.traders: Dict[str, SymbolTrader] = {}
        self.filter_units: Dict[str, List[FilterUnit]] = {}
        self.reconciliation: Dict[str, ReconciledSymbol] = {}
        self._subscriptions: Dict[str, List[Any]] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._stop_event: Optional[asyncio.Event] = None
        self.running = False
        self.started_at: Optional[float] = None

    # -- events -------------------------------------------------------------------

    def add_sink(self, sink: EventSink) -> None:
        self.sinks.append(sink)

    def publish(self, event: TraderEvent) -> None:
        self.recent_events.append(event)
        for sink in list(self.sinks):
            try:
                sink(event)
            except Exception:
                logger.exception("Event sink %r failed", sink)

    def _on_equity_change(self, symbol: str, equity: float) -> None:
        snapshot = self.equity.snapshot()
        open_positions = sum(1 for t in self.traders.values() if t.position is not None)
        metrics.update_portfolio(snapshot.total_equity, snapshot.drawdown_pct, snapshot.realized_pnl, open_positions)

    def _on_drawdown(self, drawdown_pct: float) -> None:
        self.publish(TraderEvent(
            EventKind.ALERT,
            PORTFOLIO,
            f"portfolio drawdown {drawdown_pct:.2f}% reached alert level {self.settings.drawdown_alert_pct}%",
            Severity.WARNING,
            {'drawdown_pct': drawdown_pct},
        ))

    # -- construction ---------------------------------------------------------------

    def _signal_gate(self, symbol: str) -> Callable[[TradeSignal], FilterResult]:
        def gate(signal: TradeSignal) -> FilterResult:
            units = self.filter_units.get(symbol, ())
            return evaluate_filters(signal, [(unit.filter, unit.state) for unit in units])

        return gate

    def _build_trader(self, pair: TradingPairConfig, allocation: float) -> SymbolTrader:
        strategy = self.strategy_factory(pair.strategy, dict(pair.params))
        self.equity.allocate_capital(pair.symbol, allocation)
        risk_manager = RiskManager(pair.symbol, self.settings.risk, allocation)
        trader = SymbolTrader(
            pair.symbol,
            strategy,
            self.gateway,
            risk_manager,
            self.portfolio_risk,
            self.equity,
            self.settings.trader,
            interval=pair.interval,
            state_store=self.state_store,
            journal=self.journal,
            event_sink=self.publish,
            signal_gate=self._signal_gate(pair.symbol),
        )
        self.traders[pair.symbol] = trader
        return trader

    def _build_filter(self, pair: TradingPairConfig) -> FilterUnit:
        strategy = self.strategy_factory(pair.strategy, dict(pair.params))
        unit = FilterUnit(pair, strategy, build_filter(pair.filter, pair.filter_mode, pair.filter_params))
        self.filter_units.setdefault(pair.symbol, []).append(unit)
        return unit

    def setup(self) -> None:
        """Allocate capital and build traders and filter units from settings."""
        primaries = self.settings.primary_pairs
        allocations = compute_allocations(
            self.settings.allocation_mode,
            self.settings.total_capital,
            [p.symbol for p in primaries],
            weights_pct={p.symbol: p.weight_pct for p in primaries},
            volatilities={p.symbol: p.volatility for p in primaries},
        )
        for pair in primaries:
            self._build_trader(pair, allocations[pair.symbol])
        for pair in self.settings.pairs:
            if pair.role is StrategyRole.FILTER:
                self._build_filter(pair)
        logger.info(
            "Coordinator set up %s trader(s), %s filter(s), allocation=%s",
            len(self.traders),
            sum(len(u) for u in self.filter_units.values()),
            self.settings.allocation_mode.value,
        )

    async def _configure_symbol(self, symbol: str) -> None:
        if self.settings.leverage is not None:
            result = await self.gateway.set_leverage(symbol, self.settings.leverage)
            if not result.ok:
                logger.error("%s: set leverage %s failed: %s", symbol, self.settings.leverage, result)
                self.publish(TraderEvent(EventKind.ALERT, symbol, f"set leverage failed: {result}", Severity.ERROR))
        if self.settings.margin_mode is not None:
            result = await self.gateway.set_margin_mode(symbol, self.settings.margin_mode)
            if not result.ok:
                logger.error("%s: set margin mode %s failed: %s", symbol, self.settings.margin_mode, result)
                self.publish(TraderEvent(EventKind.ALERT, symbol, f"set margin mode failed: {result}", Severity.ERROR))

    # -- lifecycle --------------------------------------------------------------------

    async def reconcile(self) -> Dict[str, ReconciledSymbol]:
        service = ReconciliationService(
            self.gateway,
            self.state_store,
            self.settings.reconciliation,
            journal=self.journal,
            event_sink=self.publish,
            retry_policy=self.settings.trader.order_retry,
        )
        self.reconciliation = await service.reconcile(self.traders.keys())
        for symbol, result in self.reconciliation.items():
            self._restore(self.traders[symbol], result)
        return self.reconciliation

    def _restore(self, trader: SymbolTrader, result: ReconciledSymbol) -> None:
        symbol = trader.symbol
        allocation = self.equity.allocated_capital(symbol)
        if result.equity is not None and abs(result.equity - allocation) > 1e-9:
            # carry realized results across restarts
            carried = result.equity - allocation
            self.equity.record_trade_pnl(symbol, carried)
            logger.info("%s: restored equity %.2f (allocation %.2f, carried %.2f)", symbol, result.equity, allocation, carried)
        trader.risk.update_equity(self.equity.symbol_equity(symbol))
        if result.position is not None:
            trader.restore_position(result.position)
            if not result.is_protected:
                trader.pause("reconciled position could not be protected or flattened")
            elif result.hold_reason:
                trader.pause(f"reconciliation: {result.hold_reason}")

    async def _warmup(self) -> None:
        limit = self.settings.trader.warmup_candles
        if limit <= 0 or self.market_data is None:
            return
        for trader in self.traders.values():
            candles = await self.market_data.load_history(trader.symbol, trader.interval, limit)
            await trader.warmup(candles)
        for units in self.filter_units.values():
            for unit in units:
                unit.warmup(await self.market_data.load_history(unit.pair.symbol, unit.pair.interval, limit))

    def _subscribe(self, pair: TradingPairConfig, on_candle) -> None:
        if self.market_data is None:
            return
        handle = self.market_data.subscribe(pair.symbol, pair.interval, on_candle)
        self._subscriptions.setdefault(pair.symbol, []).append(handle)

    def _start_trader(self, trader: SymbolTrader) -> None:
        self._tasks[trader.symbol] = asyncio.create_task(trader.run(), name=f"trader-{trader.symbol}")

    async def start(self) -> None:
        """Set up, reconcile, warm up, subscribe and start every trader."""
        if not self.traders:
            self.setup()
        self._stop_event = asyncio.Event()
        for symbol in self.traders:
            await self._configure_symbol(symbol)
        await self.reconcile()
        await self._warmup()
        for units in self.filter_units.values():
            for unit in units:
                self._subscribe(unit.pair, unit.on_candle)
        for trader in self.traders.values():
            self._subscribe(self._primary_pair(trader.symbol), trader.submit_candle)
            self._start_trader(trader)
        self.running = True
        self.started_at = time.time()
        self.publish(TraderEvent(EventKind.STATE, PORTFOLIO, f"coordinator started with {len(self.traders)} trader(s)"))

    def _primary_pair(self, symbol: str) -> TradingPairConfig:
        trader = self.traders[symbol]
        for pair in self.settings.pairs:
            if pair.symbol == symbol and pair.role is StrategyRole.PRIMARY:
                return pair
        return TradingPairConfig(symbol=symbol, interval=trader.interval)

    async def run(self) -> None:
        await self.start()
        await self._stop_event.wait()
        await self.stop()

    def request_stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    async def stop(self, action: Optional[ShutdownAction] = None) -> None:
        if not self.running:
            return
        self.running = False
        logger.info("Stopping %s trader(s)", len(self.traders))
        for handles in self._subscriptions.values():
            for handle in handles:
                handle.stop()
        self._subscriptions.clear()
        for trader in self.traders.values():
            trader.request_stop(action)
        tasks = list(self._tasks.values())
        if tasks:
            grace = self.settings.trader.shutdown_timeout_s + 5.0
            done, pending = await asyncio.wait(tasks, timeout=grace)
            if pending:
                logger.error("%s trader(s) did not stop within %.0fs; cancelling", len(pending), grace)
                await cancel_tasks(pending)
        self._tasks.clear()
        self.publish(TraderEvent(EventKind.STATE, PORTFOLIO, "coordinator stopped"))

    # -- runtime changes ---------------------------------------------------------------

    async def add_trading_pair(self, pair: TradingPairConfig, capital: Optional[float] = None) -> None:
        if pair.role is StrategyRole.FILTER:
            if pair.symbol not in self.traders:
                raise ValidationError(f"{pair.symbol}: filter configured without a primary strategy")
            unit = self._build_filter(pair)
            if self.running:
                self._subscribe(pair, unit.on_candle)
            return
        if pair.symbol in self.traders:
            raise ValidationError(f"{pair.symbol} already has a trader")
        available = self.equity.available_capital
        if capital is None:
            capital = min(available, self.settings.total_capital / (len(self.traders) + 1))
        trader = self._build_trader(pair, capital)
        logger.info("Added trading pair %s with %.2f capital", pair.key, capital)
        if self.running:
            await self._configure_symbol(pair.symbol)
            self._subscribe(pair, trader.submit_candle)
            self._start_trader(trader)

    async def remove_trading_pair(self, symbol: str, action: Optional[ShutdownAction] = None) -> float:
        """Stop a symbol's trader and return its equity to the pool."""
        symbol = symbol.upper()
        trader = self.traders.get(symbol)
        if trader is None:
            raise ValidationError(f"{symbol} has no trader")
        for handle in self._subscriptions.pop(symbol, []):
            handle.stop()
        task = self._tasks.pop(symbol, None)
        if task is not None:
            trader.request_stop(action)
            await asyncio.wait([task], timeout=self.settings.trader.shutdown_timeout_s + 5.0)
            await cancel_tasks([task])
        self.filter_units.pop(symbol, None)
        self.portfolio_risk.unregister_symbol(symbol)
        del self.traders[symbol]
        released = self.equity.release_capital(symbol)
        if self.state_store is not None and trader.position is None:
            self.state_store.remove_symbol(symbol)
        logger.info("Removed %s; released %.2f", symbol, released)
        return released

    # -- status -------------------------------------------------------------------------

    def portfolio_status(self) -> Dict[str, Any]:
        stats = self.portfolio_risk.stats()
        snapshot = self.equity.snapshot().as_dict()
        snapshot.update({
            'open_positions': stats.open_positions,
            'group_risk_pct': dict(stats.group_risk_pct),
            'allocation_mode': self.settings.allocation_mode.value,
        })
        return snapshot

    def status(self) -> Dict[str, Any]:
        return {
            'running': self.running,
            'started_at': self.started_at,
            'portfolio': self.portfolio_status(),
            'traders': [
                dict(trader.status(), filters=[u.status() for u in self.filter_units.get(symbol, ())])
                for symbol, trader in self.traders.items()
            ],
        }
