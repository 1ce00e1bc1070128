"""Builders shared by the trader, coordinator and reconciliation tests."""
from collections import deque
from typing import List, Optional

from config.settings import (
    PortfolioRiskSettings,
    RiskSettings,
    TraderSettings,
)
from execution.paper import PaperGateway
from execution.retry import RetryPolicy
from orchestration.symbol_trader import SymbolTrader
from risk.equity import SharedEquityManager
from risk.portfolio import PortfolioRiskManager
from risk.risk_manager import RiskManager
from strategy.base import Strategy
from strategy.models import Candle, SignalType, StrategyState, TradeSignal


FAST_RETRY = RetryPolicy(max_attempts=3, base_delay_s=1.0, factor=2.0, max_delay_s=8.0)


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class ScriptedStrategy(Strategy):
    """Returns queued signals one per candle; None once the script runs out."""

    name = 'scripted'

    def __init__(self, signals=None, state: Optional[StrategyState] = None, **params):
        super().__init__(**params)
        self.script = deque(signals or [])
        self.state = state or StrategyState()
        self.seen: List[Candle] = []
        self.warmed: List[Candle] = []
        self.positions: List[float] = []

    def warmup(self, candle):
        self.warmed.append(candle)

    def analyze(self, candle, current_position, symbol):
        self.seen.append(candle)
        self.positions.append(current_position)
        if self.script:
            return self.script.popleft()
        return None

    def get_state(self):
        return self.state


def candle(symbol='BTCUSDT', close=1000.0, high=None, low=None, open_time=0, interval='4h'):
    high = close if high is None else high
    low = close if low is None else low
    return Candle(
        symbol=symbol,
        open=close,
        high=high,
        low=low,
        close=close,
        volume=1.0,
        open_time=open_time,
        close_time=open_time + 59_999,
        interval=interval,
    )


def enter_long(symbol='BTCUSDT', price=1000.0, stop=850.0, take_profit=1300.0, **kwargs):
    return TradeSignal(symbol, SignalType.ENTER_LONG, price, stop_loss=stop, take_profit=take_profit, **kwargs)


def partial_exit(symbol='BTCUSDT', price=1100.0, fraction=0.25, breakeven=False):
    return TradeSignal(
        symbol,
        SignalType.PARTIAL_EXIT,
        price,
        partial_exit_fraction=fraction,
        reason='first target',
        move_stop_to_breakeven=breakeven,
    )


def exit_signal(symbol='BTCUSDT', price=1100.0):
    return TradeSignal(symbol, SignalType.EXIT, price, reason='exit')


class TraderRig:
    """A SymbolTrader wired to a paper gateway and a fresh shared ledger."""

    def __init__(
        self,
        symbol='BTCUSDT',
        capital=10000.0,
        mark=1000.0,
        strategy=None,
        trader_settings: Optional[TraderSettings] = None,
        risk_settings: Optional[RiskSettings] = None,
        portfolio_settings: Optional[PortfolioRiskSettings] = None,
        gateway: Optional[PaperGateway] = None,
        **trader_kwargs,
    ):
        self.symbol = symbol
        self.gateway = gateway or PaperGateway(initial_balance=capital)
        self.gateway.set_mark_price(symbol, mark)
        self.equity = SharedEquityManager(capital)
        self.equity.allocate_capital(symbol, capital)
        self.portfolio = PortfolioRiskManager(portfolio_settings or PortfolioRiskSettings(), self.equity)
        self.risk = RiskManager(symbol, risk_settings or RiskSettings(), capital)
        self.sleep = RecordingSleep()
        self.events = []
        self.strategy = strategy or ScriptedStrategy()
        self.trader = SymbolTrader(
            symbol,
            self.strategy,
            self.gateway,
            self.risk,
            self.portfolio,
            self.equity,
            trader_settings or TraderSettings(protective_retry=FAST_RETRY, order_retry=FAST_RETRY),
            interval='4h',
            event_sink=self.events.append,
            sleep=self.sleep,
            **trader_kwargs,
        )

    def stops(self):
        return [o for o in self.gateway.active_orders(self.symbol) if o.type == 'STOP_MARKET']

    def take_profits(self):
        return [o for o in self.gateway.active_orders(self.symbol) if o.type == 'TAKE_PROFIT_MARKET']

    def events_of(self, kind):
        return [e for e in self.events if e.kind.value == kind]
