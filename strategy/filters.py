import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Tuple

from execution.errors import ValidationError
from strategy.models import SignalType, StrategyState, TradeSignal


logger = logging.getLogger(__name__)


class FilterMode(Enum):
    CONFIRM = 'confirm'
    VETO = 'veto'
    SCORE = 'score'

    @classmethod
    def parse(cls, value: Any) -> 'FilterMode':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ValidationError(f"unknown filter mode: {value!r}") from exc


@dataclass(frozen=True)
class FilterResult:
    approved: bool
    reason: str
    confidence: Optional[float] = None


_EXIT_PASS = FilterResult(True, "exit signals are not filtered", 1.0)


class SignalFilter(ABC):
    name = 'filter'

    def __init__(self, mode: FilterMode):
        self.mode = mode

    @abstractmethod
    def evaluate(self, signal: TradeSignal, state: StrategyState) -> FilterResult:
        ...

    def _undetermined(self, reason: str) -> FilterResult:
        # veto only blocks on active disagreement, confirm needs agreement
        return FilterResult(
            approved=self.mode is FilterMode.VETO,
            reason=reason,
            confidence=0.5 if self.mode is FilterMode.SCORE else None,
        )


class RsiSignalFilter(SignalFilter):
    name = 'rsi'

    def __init__(self, mode: FilterMode = FilterMode.VETO, overbought: float = 70.0, oversold: float = 30.0):
        super().__init__(mode)
        if oversold >= overbought:
            raise ValidationError("rsi filter oversold must be below overbought")
        self.overbought = overbought
        self.oversold = oversold

    def evaluate(self, signal: TradeSignal, state: StrategyState) -> FilterResult:
        if not signal.is_entry:
            return _EXIT_PASS
        value = state.indicator_value
        if value is None:
            return self._undetermined("no RSI value available")
        band = self.overbought - self.oversold

        if signal.type is SignalType.ENTER_LONG:
            if value >= self.overbought:
                return FilterResult(False, f"RSI overbought ({value:.1f} >= {self.overbought})", 0.2)
            if value <= self.oversold:
                return FilterResult(True, f"RSI oversold ({value:.1f}), strong long confirmation", 1.2)
            score = (self.overbought - value) / band
        else:
            if value <= self.oversold:
                return FilterResult(False, f"RSI oversold ({value:.1f} <= {self.oversold})", 0.2)
            if value >= self.overbought:
                return FilterResult(True, f"RSI overbought ({value:.1f}), strong short confirmation", 1.2)
            score = (value - self.oversold) / band
        return FilterResult(True, f"RSI neutral ({value:.1f})", 0.5 + score * 0.5)


class AdxSignalFilter(SignalFilter):
    name = 'adx'

    def __init__(self, mode: FilterMode = FilterMode.SCORE, min_trend_strength: float = 20.0, strong_trend: float = 30.0):
        super().__init__(mode)
        if min_trend_strength >= strong_trend:
            raise ValidationError("adx filter min_trend_strength must be below strong_trend")
        self.min_trend_strength = min_trend_strength
        self.strong_trend = strong_trend

    def evaluate(self, signal: TradeSignal, state: StrategyState) -> FilterResult:
        if not signal.is_entry:
            return _EXIT_PASS
        value = state.indicator_value
        if value is None:
            return self._undetermined("no ADX value available")
        if value < self.min_trend_strength:
            return FilterResult(False, f"trend too weak (ADX {value:.1f} < {self.min_trend_strength})", self._confidence(value))
        if value >= self.strong_trend:
            return FilterResult(True, f"strong trend (ADX {value:.1f})", 1.2)
        return FilterResult(True, f"moderate trend (ADX {value:.1f})", self._confidence(value))

    def _confidence(self, value: float) -> float:
        if value < self.min_trend_strength:
            return 0.2 + (value / self.min_trend_strength) * 0.3
        if value >= self.strong_trend:
            return 1.0 + min(value - self.strong_trend, 20.0) / 20.0 * 0.2
        ratio = (value - self.min_trend_strength) / (self.strong_trend - self.min_trend_strength)
        return 0.5 + ratio * 0.5


class TrendAlignmentFilter(SignalFilter):
    name = 'trend_alignment'

    def __init__(self, mode: FilterMode = FilterMode.CONFIRM, strict: bool = True):
        super().__init__(mode)
        self.strict = strict

    def evaluate(self, signal: TradeSignal, state: StrategyState) -> FilterResult:
        if not signal.is_entry:
            return _EXIT_PASS
        if not state.is_trending:
            return FilterResult(self.mode is FilterMode.VETO, "filter shows no clear trend", 0.5)

        bullish, bearish = self._votes(state)
        wanted = 'bullish' if signal.type is SignalType.ENTER_LONG else 'bearish'
        aligned = bullish > bearish if wanted == 'bullish' else bearish > bullish
        if aligned:
            return FilterResult(True, f"trend aligned ({wanted})", 1.2)
        if self.strict:
            return FilterResult(False, f"trend misaligned (primary {wanted})", 0.2)
        return FilterResult(True, f"trend misaligned (primary {wanted}), allowed with reduced confidence", 0.5)

    @staticmethod
    def _votes(state: StrategyState) -> Tuple[int, int]:
        bullish = bearish = 0
        if state.last_signal is SignalType.ENTER_LONG:
            bullish += 1
        elif state.last_signal is SignalType.ENTER_SHORT:
            bearish += 1
        if state.is_oversold:
            bullish += 1
        if state.is_overbought:
            bearish += 1
        ema_trend = state.values.get('ema_trend')
        if ema_trend:
            if ema_trend > 0:
                bullish += 1
            else:
                bearish += 1
        if state.trend_direction > 0:
            bullish += 1
        elif state.trend_direction < 0:
            bearish += 1
        return bullish, bearish


FILTERS = {
    'rsi': RsiSignalFilter,
    'adx': AdxSignalFilter,
    'trend_alignment': TrendAlignmentFilter,
    'trend': TrendAlignmentFilter,
}


def build_filter(kind: str, mode: Any, params: Optional[Mapping[str, Any]] = None) -> SignalFilter:
    try:
        cls = FILTERS[str(kind).strip().lower()]
    except KeyError as exc:
        raise ValidationError(f"unknown signal filter: {kind!r}") from exc
    return cls(FilterMode.parse(mode), **dict(params or {}))


def is_state_ready(state: StrategyState) -> bool:
    return (
        state.is_ready
        or state.indicator_value is not None
        or state.last_signal is not None
        or state.is_overbought
        or state.is_oversold
        or state.is_trending
        or bool(state.values)
    )


def evaluate_filters(
    signal: TradeSignal,
    filters: Iterable[Tuple[SignalFilter, StrategyState]],
) -> FilterResult:
    """Combine filter verdicts: confirm rejections block, then veto
    rejections block, then score filters multiply confidence."""
    if not signal.is_entry:
        return _EXIT_PASS

    results = []
    for flt, state in filters:
        if not is_state_ready(state):
            result = FilterResult(True, "filter state not ready; skipped", 1.0)
        else:
            result = flt.evaluate(signal, state)
        logger.debug(
            "%s filter %s (%s): approved=%s confidence=%s reason=%s",
            signal.symbol,
            flt.name,
            flt.mode.value,
            result.approved,
            result.confidence,
            result.reason,
        )
        results.append((flt, result))

    if not results:
        return FilterResult(True, "no filters", 1.0)

    for mode in (FilterMode.CONFIRM, FilterMode.VETO):
        for flt, result in results:
            if flt.mode is mode and not result.approved:
                return FilterResult(
                    False,
                    f"{mode.value} filter '{flt.name}' rejected: {result.reason}",
                    result.confidence,
                )

    confidence = 1.0
    applied = []
    for flt, result in results:
        if flt.mode is FilterMode.SCORE and result.confidence is not None:
            confidence *= result.confidence
            applied.append(f"{flt.name}: {result.confidence:.2f}x")
    reason = "score filters applied: " + ", ".join(applied) if applied else "all filters approved"
    return FilterResult(True, reason, confidence)
