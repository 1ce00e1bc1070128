#!/usr/bin/env python
"""
Multi-symbol coordinator wiring: setup, reconcile/restore, filters, runtime pairs
"""
import sys
sys.path.insert(0, '.')

import asyncio
import inspect

import pytest

from config.settings import (
    AllocationMode,
    CoordinatorSettings,
    ShutdownAction,
    TraderSettings,
    TradingPairConfig,
)
from execution.errors import ValidationError
from execution.paper import PaperGateway
from execution.types import OrderResult, PositionSide
from ingest.websocket_client import SubscriptionHandle
from orchestration.coordinator import PORTFOLIO, MultiSymbolCoordinator
from orchestration.models import Position, PositionState
from orchestration.persistence import StateStore
from strategy.models import StrategyState
from tests.trading_fixtures import FAST_RETRY, ScriptedStrategy, candle, enter_long


class FakeMarketData:
    def __init__(self, history=None):
        self.history = history or {}
        self.handlers = {}
        self.handles = []

    def subscribe(self, symbol, interval, on_candle):
        self.handlers.setdefault((symbol, interval), []).append(on_candle)
        handle = SubscriptionHandle(symbol, interval)
        self.handles.append(handle)
        return handle

    async def load_history(self, symbol, interval, limit):
        return list(self.history.get((symbol, interval), []))[-limit:]

    async def deliver(self, bar):
        for handler in self.handlers.get((bar.symbol, bar.interval), []):
            result = handler(bar)
            if inspect.isawaitable(result):
                await result


class StrategyBook:
    """Strategy factory handing out pre-built strategies by name."""

    def __init__(self, **strategies):
        self.strategies = strategies
        self.requested = []

    def __call__(self, name, params):
        self.requested.append((name, params))
        return self.strategies[name]


async def eventually(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


def _settings(*pairs, **overrides):
    overrides.setdefault('trader', TraderSettings(protective_retry=FAST_RETRY, order_retry=FAST_RETRY, shutdown_timeout_s=2.0))
    return CoordinatorSettings(total_capital=10000.0, pairs=tuple(pairs), **overrides)


def _coordinator(settings, book, gateway=None, market_data=None, store=None, sinks=None):
    gateway = gateway or PaperGateway()
    for symbol in ('BTCUSDT', 'ETHUSDT', 'SOLUSDT'):
        if symbol not in gateway.positions:
            gateway.set_mark_price(symbol, 1000.0)
    return MultiSymbolCoordinator(
        settings,
        gateway,
        market_data or FakeMarketData(),
        state_store=store,
        sinks=sinks,
        strategy_factory=book,
    )


def test_setup_splits_capital_and_builds_filters():
    book = StrategyBook(btc=ScriptedStrategy(), eth=ScriptedStrategy(), btc_rsi=ScriptedStrategy())
    settings = _settings(
        TradingPairConfig('BTCUSDT', strategy='btc'),
        TradingPairConfig('ETHUSDT', strategy='eth'),
        TradingPairConfig('BTCUSDT', interval='1h', role='filter', strategy='btc_rsi', filter='rsi', filter_mode='veto'),
    )
    coordinator = _coordinator(settings, book)
    coordinator.setup()

    assert sorted(coordinator.traders) == ['BTCUSDT', 'ETHUSDT']
    assert coordinator.equity.allocated_capital('BTCUSDT') == pytest.approx(5000.0)
    assert coordinator.traders['ETHUSDT'].risk.equity == pytest.approx(5000.0)
    assert len(coordinator.filter_units['BTCUSDT']) == 1
    assert coordinator.filter_units['BTCUSDT'][0].filter.name == 'rsi'


def test_filter_without_primary_is_rejected():
    with pytest.raises(ValidationError):
        _settings(TradingPairConfig('BTCUSDT', role='filter', strategy='x', filter='rsi', filter_mode='confirm'))


def test_start_configures_reconciles_and_restores(tmp_path):
    async def _run():
        store = StateStore(tmp_path / 'state.json')
        store.save_symbol('BTCUSDT', None, 5250.0)
        gateway = PaperGateway()
        gateway.open_position('ETHUSDT', PositionSide.LONG, 1.0, 2000.0)
        history = {('BTCUSDT', '4h'): [candle(open_time=i * 60_000) for i in range(5)]}
        btc, eth = ScriptedStrategy(), ScriptedStrategy()
        settings = _settings(
            TradingPairConfig('BTCUSDT', strategy='btc'),
            TradingPairConfig('ETHUSDT', strategy='eth'),
            leverage=3,
            margin_mode='ISOLATED',
            trader=TraderSettings(protective_retry=FAST_RETRY, order_retry=FAST_RETRY, warmup_candles=3),
        )
        coordinator = _coordinator(settings, StrategyBook(btc=btc, eth=eth), gateway, FakeMarketData(history), store)
        await coordinator.start()
        try:
            assert gateway.leverage == {'BTCUSDT': 3, 'ETHUSDT': 3}
            assert gateway.margin_mode['ETHUSDT'] == 'ISOLATED'

            assert coordinator.equity.symbol_equity('BTCUSDT') == pytest.approx(5250.0)
            assert coordinator.traders['BTCUSDT'].risk.equity == pytest.approx(5250.0)

            eth_trader = coordinator.traders['ETHUSDT']
            assert eth_trader.position is not None
            assert eth_trader.state is PositionState.OPEN
            assert eth_trader.position.stop_loss == pytest.approx(1960.0)
            assert eth_trader.risk.open_risk == pytest.approx(40.0)
            assert not eth_trader.paused
            assert 'remote_only' in [m.kind for m in coordinator.reconciliation['ETHUSDT'].mismatches]

            assert len(btc.warmed) == 3
            assert eth.warmed == []
            assert coordinator.running
        finally:
            await coordinator.stop()

    asyncio.run(_run())


def test_unprotectable_restore_starts_trader_paused():
    async def _run():
        gateway = PaperGateway()
        gateway.open_position('BTCUSDT', PositionSide.LONG, 1.0, 1000.0)
        gateway.inject_failure('stop', OrderResult.rejected('rejected'), times=3)
        gateway.inject_failure('market', OrderResult.rejected('rejected'), times=3)
        coordinator = _coordinator(_settings(TradingPairConfig('BTCUSDT', strategy='btc')),
                                   StrategyBook(btc=ScriptedStrategy()), gateway)
        coordinator.setup()
        await coordinator.reconcile()
        trader = coordinator.traders['BTCUSDT']
        assert trader.paused
        assert trader.position is not None

    asyncio.run(_run())


def test_stuck_protective_leg_starts_trader_paused():
    async def _run():
        gateway = PaperGateway()
        gateway.open_position('BTCUSDT', PositionSide.LONG, 0.5, 1000.0)
        await gateway.place_stop_order('BTCUSDT', 'SELL', 1.0, 900.0)
        gateway.inject_failure('cancel', OrderResult.rejected('rejected'), times=3)
        coordinator = _coordinator(_settings(TradingPairConfig('BTCUSDT', strategy='btc')),
                                   StrategyBook(btc=ScriptedStrategy()), gateway)
        coordinator.setup()
        await coordinator.reconcile()
        trader = coordinator.traders['BTCUSDT']
        assert trader.paused
        assert trader.pause_reason.startswith('reconciliation:')
        assert trader.position is not None
        assert len(gateway.active_orders('BTCUSDT')) == 1

    asyncio.run(_run())


def test_candles_flow_to_traders_and_stop_propagates():
    async def _run():
        market_data = FakeMarketData()
        btc = ScriptedStrategy([enter_long()])
        eth = ScriptedStrategy()
        events = []
        coordinator = _coordinator(
            _settings(TradingPairConfig('BTCUSDT', strategy='btc'), TradingPairConfig('ETHUSDT', strategy='eth')),
            StrategyBook(btc=btc, eth=eth),
            market_data=market_data,
            sinks=[events.append],
        )
        task = asyncio.create_task(coordinator.run())
        await eventually(lambda: coordinator.running)

        await market_data.deliver(candle('BTCUSDT', close=1000.0, interval='4h'))
        await market_data.deliver(candle('ETHUSDT', close=1000.0, interval='4h'))
        trader = coordinator.traders['BTCUSDT']
        await eventually(lambda: trader.position is not None)
        await eventually(lambda: len(eth.seen) == 1)

        assert len(btc.seen) == 1
        assert any(e.kind.value == 'trade' and e.symbol == 'BTCUSDT' for e in events)
        assert coordinator.portfolio_status()['open_positions'] == 1

        coordinator.request_stop()
        await asyncio.wait_for(task, timeout=5)
        assert not coordinator.running
        assert all(t.stopped for t in coordinator.traders.values())
        assert all(not h.active for h in market_data.handles)
        # default shutdown keeps the position under its stop
        assert trader.position is not None
        assert events[-1].message == 'coordinator stopped'

    asyncio.run(_run())


def test_stop_with_flatten_closes_everything():
    async def _run():
        market_data = FakeMarketData()
        coordinator = _coordinator(
            _settings(TradingPairConfig('BTCUSDT', strategy='btc')),
            StrategyBook(btc=ScriptedStrategy([enter_long()])),
            market_data=market_data,
        )
        await coordinator.start()
        await market_data.deliver(candle('BTCUSDT', interval='4h'))
        trader = coordinator.traders['BTCUSDT']
        await eventually(lambda: trader.position is not None)

        await coordinator.stop(ShutdownAction.FLATTEN)
        assert trader.position is None
        assert coordinator.gateway.active_orders() == []

    asyncio.run(_run())


@pytest.mark.parametrize("rsi,expected_qty", [(80.0, None), (25.0, 1.0), (50.0, 0.75)])
def test_filter_units_gate_entries(rsi, expected_qty):
    async def _run():
        market_data = FakeMarketData()
        filter_strategy = ScriptedStrategy(state=StrategyState(is_ready=True, indicator_value=rsi))
        mode = 'score' if rsi == 50.0 else 'confirm'
        coordinator = _coordinator(
            _settings(
                TradingPairConfig('BTCUSDT', strategy='btc'),
                TradingPairConfig('BTCUSDT', interval='1h', role='filter', strategy='btc_rsi', filter='rsi', filter_mode=mode),
            ),
            StrategyBook(btc=ScriptedStrategy([enter_long(price=1000.0, stop=850.0)]), btc_rsi=filter_strategy),
            market_data=market_data,
        )
        await coordinator.start()
        try:
            await market_data.deliver(candle('BTCUSDT', interval='1h'))
            assert len(filter_strategy.seen) == 1
            assert filter_strategy.positions == [0.0]

            await market_data.deliver(candle('BTCUSDT', interval='4h'))
            trader = coordinator.traders['BTCUSDT']
            await eventually(lambda: trader.last_signal is not None)
            await eventually(lambda: trader.state in (PositionState.FLAT, PositionState.OPEN))
            if expected_qty is None:
                assert trader.position is None
                assert coordinator.gateway.request_log == []
            else:
                await eventually(lambda: trader.position is not None)
                assert trader.position.quantity == pytest.approx(expected_qty)
        finally:
            await coordinator.stop()

    asyncio.run(_run())


def test_add_and_remove_pairs_at_runtime():
    async def _run():
        market_data = FakeMarketData()
        coordinator = _coordinator(
            _settings(TradingPairConfig('BTCUSDT', strategy='btc', weight_pct=50.0), allocation_mode=AllocationMode.WEIGHTED),
            StrategyBook(btc=ScriptedStrategy(), sol=ScriptedStrategy()),
            market_data=market_data,
        )
        await coordinator.start()
        try:
            assert coordinator.equity.available_capital == pytest.approx(5000.0)
            await coordinator.add_trading_pair(TradingPairConfig('SOLUSDT', strategy='sol'))
            assert coordinator.equity.allocated_capital('SOLUSDT') == pytest.approx(5000.0)
            assert ('SOLUSDT', '4h') in market_data.handlers
            assert not coordinator._tasks['SOLUSDT'].done()

            with pytest.raises(ValidationError):
                await coordinator.add_trading_pair(TradingPairConfig('SOLUSDT', strategy='sol'))

            released = await coordinator.remove_trading_pair('solusdt')
            assert released == pytest.approx(5000.0)
            assert 'SOLUSDT' not in coordinator.traders
            assert coordinator.equity.available_capital == pytest.approx(5000.0)

            with pytest.raises(ValidationError):
                await coordinator.remove_trading_pair('SOLUSDT')
        finally:
            await coordinator.stop()

    asyncio.run(_run())


def test_portfolio_drawdown_alert_is_published():
    events = []
    coordinator = _coordinator(
        _settings(TradingPairConfig('BTCUSDT', strategy='btc'), drawdown_alert_pct=10.0),
        StrategyBook(btc=ScriptedStrategy()),
        sinks=[events.append],
    )
    coordinator.setup()
    coordinator.equity.update_unrealized('BTCUSDT', -1500.0)

    alerts = [e for e in events if e.symbol == PORTFOLIO and e.kind.value == 'alert']
    assert len(alerts) == 1
    assert alerts[0].data['drawdown_pct'] == pytest.approx(15.0)
    assert alerts[0] in coordinator.recent_events


def test_broken_sink_does_not_stop_others():
    seen = []

    def broken(event):
        raise RuntimeError("notifier down")

    coordinator = _coordinator(
        _settings(TradingPairConfig('BTCUSDT', strategy='btc')),
        StrategyBook(btc=ScriptedStrategy()),
        sinks=[broken, seen.append],
    )
    coordinator.setup()
    coordinator.traders['BTCUSDT'].pause("manual")
    assert seen and seen[-1].message == 'trader paused: manual'


def test_status_includes_traders_and_filters():
    coordinator = _coordinator(
        _settings(
            TradingPairConfig('BTCUSDT', strategy='btc'),
            TradingPairConfig('BTCUSDT', interval='1h', role='filter', strategy='btc_adx', filter='adx', filter_mode='score'),
        ),
        StrategyBook(btc=ScriptedStrategy(), btc_adx=ScriptedStrategy()),
    )
    coordinator.setup()
    status = coordinator.status()
    assert status['portfolio']['total_equity'] == pytest.approx(10000.0)
    assert status['portfolio']['allocation_mode'] == 'equal'
    trader = status['traders'][0]
    assert trader['symbol'] == 'BTCUSDT'
    assert trader['filters'][0]['mode'] == 'score'


def test_restore_adopts_persisted_position(tmp_path):
    async def _run():
        gateway = PaperGateway()
        gateway.open_position('BTCUSDT', PositionSide.LONG, 0.5, 1000.0)
        stop = await gateway.place_stop_order('BTCUSDT', 'SELL', 0.5, 900.0, client_order_id='sl-keep-0')
        store = StateStore(tmp_path / 'state.json')
        local = Position('BTCUSDT', PositionSide.LONG, 1.0, 1000.0, stop_loss=900.0, position_id='keep')
        store.save_symbol('BTCUSDT', local, 10000.0)

        coordinator = _coordinator(_settings(TradingPairConfig('BTCUSDT', strategy='btc')),
                                   StrategyBook(btc=ScriptedStrategy()), gateway, store=store)
        coordinator.setup()
        await coordinator.reconcile()

        trader = coordinator.traders['BTCUSDT']
        assert trader.position.position_id == 'keep'
        assert trader.position.quantity == 0.5
        assert trader.state is PositionState.PARTIALLY_CLOSED
        assert trader.position.protection.stop.order_id == stop.ticket.id
        assert trader.risk.open_risk == pytest.approx(50.0)

    asyncio.run(_run())
