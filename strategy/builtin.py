"""Small reference strategies usable as primary or filter roles."""

from typing import Any, Optional

from strategy.base import Strategy
from strategy.indicators import RollingSeries, adx, atr, ema, rsi
from strategy.models import Candle, SignalType, StrategyState, TradeSignal


class _AtrBracketStrategy(Strategy):
    """Shared ATR stop / target bracketing and 1R partial-exit bookkeeping."""

    def __init__(
        self,
        atr_period: int = 14,
        atr_stop_multiplier: float = 2.0,
        reward_risk: float = 2.0,
        partial_exit_r: Optional[float] = 1.0,
        partial_exit_fraction: float = 0.5,
        allow_short: bool = True,
        history: int = 500,
        **params: Any,
    ):
        super().__init__(**params)
        self.atr_period = int(atr_period)
        self.atr_stop_multiplier = float(atr_stop_multiplier)
        self.reward_risk = float(reward_risk)
        self.partial_exit_r = partial_exit_r
        self.partial_exit_fraction = float(partial_exit_fraction)
        self.allow_short = bool(allow_short)
        self.series = RollingSeries(maxlen=int(history))
        self.last_signal: Optional[SignalType] = None
        self._entry_price: Optional[float] = None
        self._risk: Optional[float] = None
        self._partial_taken = False

    def reset(self) -> None:
        self.series.clear()
        self.last_signal = None
        self._clear_trade()

    def _clear_trade(self) -> None:
        self._entry_price = None
        self._risk = None
        self._partial_taken = False

    def _atr(self) -> Optional[float]:
        return atr(self.series.highs, self.series.lows, self.series.closes, self.atr_period)

    def _enter(self, candle: Candle, kind: SignalType, reason: str) -> Optional[TradeSignal]:
        current_atr = self._atr()
        if not current_atr:
            return None
        risk = current_atr * self.atr_stop_multiplier
        direction = 1 if kind is SignalType.ENTER_LONG else -1
        self._entry_price = candle.close
        self._risk = risk
        self._partial_taken = False
        self.last_signal = kind
        return TradeSignal(
            symbol=candle.symbol,
            type=kind,
            price=candle.close,
            stop_loss=candle.close - direction * risk,
            take_profit=candle.close + direction * risk * self.reward_risk,
            reason=reason,
        )

    def _exit(self, candle: Candle, reason: str) -> TradeSignal:
        self._clear_trade()
        self.last_signal = SignalType.EXIT
        return TradeSignal(symbol=candle.symbol, type=SignalType.EXIT, price=candle.close, reason=reason)

    def _maybe_partial(self, candle: Candle, current_position: float) -> Optional[TradeSignal]:
        if self.partial_exit_r is None or self._partial_taken or not self._entry_price or not self._risk:
            return None
        target_distance = float(self.partial_exit_r) * self._risk
        if current_position > 0 and candle.high >= self._entry_price + target_distance:
            hit = True
        elif current_position < 0 and candle.low <= self._entry_price - target_distance:
            hit = True
        else:
            hit = False
        if not hit:
            return None
        self._partial_taken = True
        self.last_signal = SignalType.PARTIAL_EXIT
        return TradeSignal(
            symbol=candle.symbol,
            type=SignalType.PARTIAL_EXIT,
            price=candle.close,
            partial_exit_fraction=self.partial_exit_fraction,
            move_stop_to_breakeven=True,
            reason=f"{self.partial_exit_r}R reached",
        )


class EmaCrossStrategy(_AtrBracketStrategy):
    name = 'ema_cross'

    def __init__(self, fast: int = 12, slow: int = 26, trend_threshold_pct: float = 0.1, **params: Any):
        super().__init__(**params)
        if fast >= slow:
            raise ValueError("fast EMA period must be shorter than slow")
        self.fast = int(fast)
        self.slow = int(slow)
        self.trend_threshold_pct = float(trend_threshold_pct)
        self._prev_spread: Optional[float] = None
        self._spread: Optional[float] = None
        self._fast_value: Optional[float] = None
        self._slow_value: Optional[float] = None

    def reset(self) -> None:
        super().reset()
        self._prev_spread = None
        self._spread = None
        self._fast_value = None
        self._slow_value = None

    def analyze(self, candle: Candle, current_position: float, symbol: str) -> Optional[TradeSignal]:
        self.series.add(candle.high, candle.low, candle.close)
        closes = list(self.series.closes)
        self._fast_value = ema(closes, self.fast)
        self._slow_value = ema(closes, self.slow)
        if self._fast_value is None or self._slow_value is None:
            return None
        self._prev_spread, self._spread = self._spread, self._fast_value - self._slow_value
        if current_position == 0:
            self._clear_trade()
        if self._prev_spread is None:
            return None

        crossed_up = self._prev_spread <= 0 < self._spread
        crossed_down = self._prev_spread >= 0 > self._spread

        if current_position == 0:
            if crossed_up:
                return self._enter(candle, SignalType.ENTER_LONG, "fast EMA crossed above slow")
            if crossed_down and self.allow_short:
                return self._enter(candle, SignalType.ENTER_SHORT, "fast EMA crossed below slow")
            return None

        if (current_position > 0 and crossed_down) or (current_position < 0 and crossed_up):
            return self._exit(candle, "EMA cross reversed")
        return self._maybe_partial(candle, current_position)

    def get_state(self) -> StrategyState:
        if self._spread is None or not self.series.closes:
            return StrategyState()
        last_close = self.series.closes[-1]
        spread_pct = abs(self._spread) / last_close * 100 if last_close else 0.0
        direction = 1 if self._spread > 0 else -1 if self._spread < 0 else 0
        return StrategyState(
            is_ready=True,
            indicator_value=self._spread,
            last_signal=self.last_signal,
            is_trending=spread_pct >= self.trend_threshold_pct,
            trend_direction=direction,
            values={'ema_trend': float(direction), 'ema_fast': self._fast_value, 'ema_slow': self._slow_value},
        )


class RsiStrategy(_AtrBracketStrategy):
    name = 'rsi'

    def __init__(self, period: int = 14, overbought: float = 70.0, oversold: float = 30.0, **params: Any):
        super().__init__(**params)
        self.period = int(period)
        self.overbought = float(overbought)
        self.oversold = float(oversold)
        self._prev: Optional[float] = None
        self._value: Optional[float] = None

    def reset(self) -> None:
        super().reset()
        self._prev = None
        self._value = None

    def analyze(self, candle: Candle, current_position: float, symbol: str) -> Optional[TradeSignal]:
        self.series.add(candle.high, candle.low, candle.close)
        self._prev, self._value = self._value, rsi(list(self.series.closes), self.period)
        if current_position == 0:
            self._clear_trade()
        if self._prev is None or self._value is None:
            return None

        if current_position == 0:
            if self._prev <= self.oversold < self._value:
                return self._enter(candle, SignalType.ENTER_LONG, f"RSI left oversold ({self._value:.1f})")
            if self.allow_short and self._prev >= self.overbought > self._value:
                return self._enter(candle, SignalType.ENTER_SHORT, f"RSI left overbought ({self._value:.1f})")
            return None

        if current_position > 0 and self._value >= self.overbought:
            return self._exit(candle, f"RSI overbought ({self._value:.1f})")
        if current_position < 0 and self._value <= self.oversold:
            return self._exit(candle, f"RSI oversold ({self._value:.1f})")
        return self._maybe_partial(candle, current_position)

    def get_state(self) -> StrategyState:
        if self._value is None:
            return StrategyState()
        return StrategyState(
            is_ready=True,
            indicator_value=self._value,
            last_signal=self.last_signal,
            is_overbought=self._value >= self.overbought,
            is_oversold=self._value <= self.oversold,
            values={'rsi': self._value},
        )


class AdxTrendStrategy(_AtrBracketStrategy):
    name = 'adx'

    def __init__(
        self,
        period: int = 14,
        entry_threshold: float = 25.0,
        exit_threshold: float = 18.0,
        fast: int = 20,
        slow: int = 50,
        **params: Any,
    ):
        super().__init__(**params)
        self.period = int(period)
        self.entry_threshold = float(entry_threshold)
        self.exit_threshold = float(exit_threshold)
        self.fast = int(fast)
        self.slow = int(slow)
        self._value: Optional[float] = None
        self._prev: Optional[float] = None
        self._direction = 0

    def reset(self) -> None:
        super().reset()
        self._value = None
        self._prev = None
        self._direction = 0

    def analyze(self, candle: Candle, current_position: float, symbol: str) -> Optional[TradeSignal]:
        self.series.add(candle.high, candle.low, candle.close)
        closes = list(self.series.closes)
        self._prev, self._value = self._value, adx(self.series.highs, self.series.lows, closes, self.period)
        fast_value, slow_value = ema(closes, self.fast), ema(closes, self.slow)
        if fast_value is not None and slow_value is not None:
            self._direction = 1 if fast_value > slow_value else -1 if fast_value < slow_value else 0
        if current_position == 0:
            self._clear_trade()
        if self._prev is None or self._value is None or not self._direction:
            return None

        if current_position == 0:
            if self._prev < self.entry_threshold <= self._value:
                if self._direction > 0:
                    return self._enter(candle, SignalType.ENTER_LONG, f"ADX trend up ({self._value:.1f})")
                if self.allow_short:
                    return self._enter(candle, SignalType.ENTER_SHORT, f"ADX trend down ({self._value:.1f})")
            return None

        if self._value < self.exit_threshold:
            return self._exit(candle, f"ADX faded ({self._value:.1f})")
        if current_position * self._direction < 0:
            return self._exit(candle, "trend direction flipped")
        return self._maybe_partial(candle, current_position)

    def get_state(self) -> StrategyState:
        if self._value is None:
            return StrategyState()
        return StrategyState(
            is_ready=True,
            indicator_value=self._value,
            last_signal=self.last_signal,
            is_trending=self._value >= self.entry_threshold,
            trend_direction=self._direction,
            values={'adx': self._value, 'ema_trend': float(self._direction)},
        )
