import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Sequence

from execution.errors import ValidationError
from execution.types import PositionSide


@dataclass(frozen=True)
class Candle:
    symbol: str
    open: float
    high: float
    low: float
    close: float
    volume: float
    open_time: int
    close_time: int
    interval: str = ''

    @classmethod
    def from_kline(cls, kline: Mapping[str, Any]) -> 'Candle':
        """Build from the ``k`` object of a Binance kline stream event."""
        return cls(
            symbol=str(kline['s']).upper(),
            open=float(kline['o']),
            high=float(kline['h']),
            low=float(kline['l']),
            close=float(kline['c']),
            volume=float(kline['v']),
            open_time=int(kline['t']),
            close_time=int(kline['T']),
            interval=str(kline.get('i', '')),
        )

    @classmethod
    def from_rest_row(cls, symbol: str, interval: str, row: Sequence[Any]) -> 'Candle':
        """Build from one row of ``/fapi/v1/klines``."""
        return cls(
            symbol=symbol.upper(),
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[5]),
            open_time=int(row[0]),
            close_time=int(row[6]),
            interval=interval,
        )


class SignalType(Enum):
    ENTER_LONG = 'enter_long'
    ENTER_SHORT = 'enter_short'
    EXIT = 'exit'
    PARTIAL_EXIT = 'partial_exit'


@dataclass(frozen=True)
class TradeSignal:
    symbol: str
    type: SignalType
    price: float
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    partial_exit_fraction: Optional[float] = None
    reason: str = ''
    move_stop_to_breakeven: bool = False
    confidence: float = 1.0
    timestamp: float = field(default_factory=time.time)

    @property
    def is_entry(self) -> bool:
        return self.type in (SignalType.ENTER_LONG, SignalType.ENTER_SHORT)

    @property
    def side(self) -> Optional[PositionSide]:
        if self.type is SignalType.ENTER_LONG:
            return PositionSide.LONG
        if self.type is SignalType.ENTER_SHORT:
            return PositionSide.SHORT
        return None

    def exit_fraction(self) -> float:
        """Partial-exit fraction in (0, 1]; values above 1 are read as percent."""
        fraction = self.partial_exit_fraction
        if fraction is None:
            raise ValidationError(f"{self.symbol}: partial exit without a fraction")
        if fraction > 1:
            fraction = fraction / 100.0
        if fraction <= 0 or fraction > 1:
            raise ValidationError(f"{self.symbol}: invalid partial exit fraction {self.partial_exit_fraction}")
        return fraction

    def with_confidence(self, confidence: float) -> 'TradeSignal':
        return replace(self, confidence=confidence)


@dataclass
class StrategyState:
    """Read-only indicator snapshot a strategy exposes to signal filters."""

    is_ready: bool = False
    indicator_value: Optional[float] = None
    last_signal: Optional[SignalType] = None
    is_overbought: bool = False
    is_oversold: bool = False
    is_trending: bool = False
    trend_direction: int = 0
    values: Dict[str, float] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            'is_ready': self.is_ready,
            'indicator_value': self.indicator_value,
            'last_signal': self.last_signal.value if self.last_signal else None,
            'is_overbought': self.is_overbought,
            'is_oversold': self.is_oversold,
            'is_trending': self.is_trending,
            'trend_direction': self.trend_direction,
            'values': dict(self.values),
        }
