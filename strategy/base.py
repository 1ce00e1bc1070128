from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from strategy.models import Candle, StrategyState, TradeSignal


class Strategy(ABC):
    """Pure signal source driven by closed candles.

    ``analyze`` is called once per closed candle with the signed quantity of
    the current position (positive long, negative short, zero flat). It must
    not block or perform I/O.
    """

    name = 'strategy'

    def __init__(self, **params: Any):
        self.params: Dict[str, Any] = dict(params)

    @abstractmethod
    def analyze(self, candle: Candle, current_position: float, symbol: str) -> Optional[TradeSignal]:
        ...

    def reset(self) -> None:
        pass

    def warmup(self, candle: Candle) -> None:
        """Feed a historical candle without emitting a signal."""
        self.analyze(candle, 0.0, candle.symbol)

    def get_state(self) -> StrategyState:
        return StrategyState()
