#!/usr/bin/env python
"""
Indicator math, built-in strategies, strategy loading and signal filters
"""
import sys
sys.path.insert(0, '.')

import pytest

from execution.errors import ValidationError
from strategy.builtin import AdxTrendStrategy, EmaCrossStrategy, RsiStrategy
from strategy.filters import (
    AdxSignalFilter,
    FilterMode,
    RsiSignalFilter,
    TrendAlignmentFilter,
    build_filter,
    evaluate_filters,
)
from strategy.indicators import RollingSeries, adx, atr, ema, rsi
from strategy.models import SignalType, StrategyState, TradeSignal
from strategy.registry import load_strategy, resolve_strategy_class
from tests.trading_fixtures import candle, enter_long, exit_signal


# -- indicators -----------------------------------------------------------------


def test_ema_and_rsi_edge_values():
    assert ema([5.0] * 10, 3) == pytest.approx(5.0)
    assert ema([1.0, 2.0], 3) is None
    assert rsi([float(i) for i in range(20)], 14) == 100.0
    assert rsi([10.0] * 20, 14) == 50.0
    assert rsi([float(20 - i) for i in range(20)], 14) == pytest.approx(0.0)
    assert rsi([1.0] * 14, 14) is None


def test_atr_of_constant_range():
    closes = [100.0] * 20
    assert atr([c + 1 for c in closes], [c - 1 for c in closes], closes, 14) == pytest.approx(2.0)
    assert atr([1.0], [0.5], [0.8], 14) is None


def test_adx_of_steady_uptrend():
    closes = [100.0 + i for i in range(40)]
    value = adx([c + 1 for c in closes], [c - 1 for c in closes], closes, 14)
    assert value == pytest.approx(100.0)
    assert adx(closes[:20], closes[:20], closes[:20], 14) is None


def test_rolling_series_is_bounded():
    series = RollingSeries(maxlen=3)
    for i in range(5):
        series.add(i + 1, i - 1, i)
    assert list(series.closes) == [2, 3, 4]
    series.clear()
    assert len(series) == 0


# -- built-in strategies --------------------------------------------------------


DOWN_THEN_UP = [100.0 - i for i in range(11)] + [97.0, 104.0, 111.0, 118.0]


def _bar(close, i):
    return candle(close=close, high=close + 1, low=close - 1, open_time=i * 60_000)


def test_ema_cross_enters_long_with_atr_bracket():
    strategy = EmaCrossStrategy(fast=3, slow=5, atr_period=3, reward_risk=2.0)
    signals = [strategy.analyze(_bar(c, i), 0.0, 'BTCUSDT') for i, c in enumerate(DOWN_THEN_UP)]
    entries = [s for s in signals if s is not None]

    assert len(entries) == 1
    signal = entries[0]
    assert signal.type is SignalType.ENTER_LONG
    risk = signal.price - signal.stop_loss
    assert risk > 0
    assert signal.take_profit - signal.price == pytest.approx(2.0 * risk)

    state = strategy.get_state()
    assert state.is_ready
    assert state.trend_direction == 1
    assert state.values['ema_trend'] == 1.0
    assert state.last_signal is SignalType.ENTER_LONG


def test_ema_cross_takes_one_partial_at_one_r():
    strategy = EmaCrossStrategy(fast=3, slow=5, atr_period=3)
    entry = None
    for i, close in enumerate(DOWN_THEN_UP):
        entry = strategy.analyze(_bar(close, i), 0.0, 'BTCUSDT')
        if entry is not None:
            break
    risk = entry.price - entry.stop_loss

    far = entry.price + risk + 5
    partial = strategy.analyze(candle(close=far, high=far + 1, low=far - 1, open_time=99), 1.0, 'BTCUSDT')
    assert partial.type is SignalType.PARTIAL_EXIT
    assert partial.exit_fraction() == 0.5
    assert partial.move_stop_to_breakeven

    again = strategy.analyze(candle(close=far + 2, high=far + 3, low=far + 1, open_time=100), 1.0, 'BTCUSDT')
    assert again is None


def test_rsi_strategy_enters_on_oversold_exit_and_leaves_overbought():
    strategy = RsiStrategy(period=3, atr_period=3)
    signals = [strategy.analyze(_bar(c, i), 0.0, 'BTCUSDT') for i, c in enumerate(DOWN_THEN_UP[:12])]
    assert [s.type for s in signals if s] == [SignalType.ENTER_LONG]

    exit_ = strategy.analyze(_bar(100.0, 12), 1.0, 'BTCUSDT')
    assert exit_.type is SignalType.EXIT
    assert strategy.get_state().is_overbought


def test_strategy_reset_clears_history():
    strategy = RsiStrategy(period=3)
    for i, close in enumerate(DOWN_THEN_UP):
        strategy.warmup(_bar(close, i))
    assert strategy.get_state().is_ready
    strategy.reset()
    assert strategy.get_state() == StrategyState()
    assert len(strategy.series) == 0


def test_adx_strategy_state_reports_trend():
    strategy = AdxTrendStrategy(period=5, fast=3, slow=5, atr_period=3)
    for i in range(30):
        close = 100.0 + i
        strategy.analyze(candle(close=close, high=close + 1, low=close - 1, open_time=i), 0.0, 'BTCUSDT')
    state = strategy.get_state()
    assert state.is_trending
    assert state.trend_direction == 1
    assert state.indicator_value == pytest.approx(100.0)


# -- strategy loading -----------------------------------------------------------


@pytest.mark.parametrize("path, cls", [
    ('ema_cross', EmaCrossStrategy),
    ('RSI', RsiStrategy),
    ('strategy.builtin:AdxTrendStrategy', AdxTrendStrategy),
    ('strategy.builtin.RsiStrategy', RsiStrategy),
])
def test_resolve_strategy_class(path, cls):
    assert resolve_strategy_class(path) is cls


@pytest.mark.parametrize("path, params", [
    ('not_a_module_anywhere:Thing', None),
    ('strategy.models:Candle', None),
    ('nodots', None),
    ('ema_cross', {'fast': 30, 'slow': 10}),
])
def test_load_strategy_errors(path, params):
    with pytest.raises(ValidationError):
        load_strategy(path, params)


def test_load_strategy_passes_params():
    strategy = load_strategy('ema_cross', {'fast': 5, 'slow': 8, 'allow_short': False})
    assert (strategy.fast, strategy.slow, strategy.allow_short) == (5, 8, False)


# -- signal filters -------------------------------------------------------------


def _state(value=None, **kwargs):
    return StrategyState(is_ready=True, indicator_value=value, **kwargs)


def _short(price=1000.0):
    return TradeSignal('BTCUSDT', SignalType.ENTER_SHORT, price, stop_loss=1100.0, take_profit=800.0)


@pytest.mark.parametrize("signal, value, approved, confidence", [
    (enter_long(), 80.0, False, 0.2),
    (enter_long(), 25.0, True, 1.2),
    (enter_long(), 50.0, True, 0.75),
    (_short(), 80.0, True, 1.2),
    (_short(), 20.0, False, 0.2),
])
def test_rsi_filter_verdicts(signal, value, approved, confidence):
    result = RsiSignalFilter(FilterMode.SCORE).evaluate(signal, _state(value))
    assert result.approved is approved
    assert result.confidence == pytest.approx(confidence)


@pytest.mark.parametrize("mode, approved, confidence", [
    (FilterMode.VETO, True, None),
    (FilterMode.CONFIRM, False, None),
    (FilterMode.SCORE, False, 0.5),
])
def test_missing_indicator_value_depends_on_mode(mode, approved, confidence):
    result = RsiSignalFilter(mode).evaluate(enter_long(), _state())
    assert result.approved is approved
    assert result.confidence == confidence


@pytest.mark.parametrize("value, approved, confidence", [
    (15.0, False, 0.425),
    (25.0, True, 0.75),
    (35.0, True, 1.2),
])
def test_adx_filter_verdicts(value, approved, confidence):
    result = AdxSignalFilter(FilterMode.SCORE).evaluate(enter_long(), _state(value))
    assert result.approved is approved
    assert result.confidence == pytest.approx(confidence)


def test_trend_alignment_filter():
    uptrend = _state(1.0, is_trending=True, trend_direction=1, values={'ema_trend': 1.0})
    assert TrendAlignmentFilter().evaluate(enter_long(), uptrend).approved
    assert not TrendAlignmentFilter().evaluate(_short(), uptrend).approved
    lenient = TrendAlignmentFilter(strict=False).evaluate(_short(), uptrend)
    assert lenient.approved and lenient.confidence == 0.5

    flat = _state(1.0, is_trending=False)
    assert not TrendAlignmentFilter(FilterMode.CONFIRM).evaluate(enter_long(), flat).approved
    assert TrendAlignmentFilter(FilterMode.VETO).evaluate(enter_long(), flat).approved


def test_exit_signals_bypass_filters():
    blocking = RsiSignalFilter(FilterMode.CONFIRM)
    result = evaluate_filters(exit_signal(), [(blocking, _state(99.0))])
    assert result.approved and result.confidence == 1.0


def test_confirm_rejection_reported_before_veto():
    filters = [
        (RsiSignalFilter(FilterMode.VETO), _state(80.0)),
        (AdxSignalFilter(FilterMode.CONFIRM), _state(10.0)),
    ]
    result = evaluate_filters(enter_long(), filters)
    assert not result.approved
    assert result.reason.startswith("confirm filter 'adx'")


def test_score_filters_multiply_and_unready_state_is_skipped():
    filters = [
        (RsiSignalFilter(FilterMode.SCORE), _state(50.0)),
        (AdxSignalFilter(FilterMode.SCORE), _state(35.0)),
        (RsiSignalFilter(FilterMode.CONFIRM), StrategyState()),
    ]
    result = evaluate_filters(enter_long(), filters)
    assert result.approved
    assert result.confidence == pytest.approx(0.75 * 1.2)
    assert evaluate_filters(enter_long(), []).confidence == 1.0


@pytest.mark.parametrize("kind, mode, params", [
    ('macd', 'veto', None),
    ('rsi', 'sometimes', None),
    ('rsi', 'veto', {'overbought': 30, 'oversold': 70}),
    ('adx', 'score', {'min_trend_strength': 40, 'strong_trend': 30}),
])
def test_build_filter_rejects_bad_configuration(kind, mode, params):
    with pytest.raises(ValidationError):
        build_filter(kind, mode, params)


def test_build_filter_by_alias():
    flt = build_filter('Trend', 'CONFIRM', {'strict': False})
    assert isinstance(flt, TrendAlignmentFilter)
    assert flt.mode is FilterMode.CONFIRM and not flt.strict
