from collections import deque
from typing import Deque, Optional, Sequence

import numpy as np


def ema(values: Sequence[float], period: int) -> Optional[float]:
    """Exponential moving average of the whole series, seeded with the SMA."""
    if period <= 0 or len(values) < period:
        return None
    data = np.asarray(values, dtype=float)
    alpha = 2.0 / (period + 1)
    current = float(data[:period].mean())
    for price in data[period:]:
        current = alpha * float(price) + (1 - alpha) * current
    return current


def rsi(closes: Sequence[float], period: int = 14) -> Optional[float]:
    """Wilder RSI over ``closes``."""
    if len(closes) <= period:
        return None
    deltas = np.diff(np.asarray(closes, dtype=float))
    gains = np.clip(deltas, 0, None)
    losses = np.clip(-deltas, 0, None)
    avg_gain = float(gains[:period].mean())
    avg_loss = float(losses[:period].mean())
    for gain, loss in zip(gains[period:], losses[period:]):
        avg_gain = (avg_gain * (period - 1) + float(gain)) / period
        avg_loss = (avg_loss * (period - 1) + float(loss)) / period
    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def true_ranges(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float]) -> np.ndarray:
    h = np.asarray(highs, dtype=float)
    l = np.asarray(lows, dtype=float)
    c = np.asarray(closes, dtype=float)
    if len(c) < 2:
        return h - l
    prev_close = c[:-1]
    tr = np.maximum.reduce([h[1:] - l[1:], np.abs(h[1:] - prev_close), np.abs(l[1:] - prev_close)])
    return tr


def atr(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float], period: int = 14) -> Optional[float]:
    if len(closes) <= period:
        return None
    tr = true_ranges(highs, lows, closes)
    current = float(tr[:period].mean())
    for value in tr[period:]:
        current = (current * (period - 1) + float(value)) / period
    return current


def adx(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float], period: int = 14) -> Optional[float]:
    """Wilder ADX; needs roughly ``2 * period`` bars before it is defined."""
    if len(closes) < 2 * period + 1:
        return None
    h = np.asarray(highs, dtype=float)
    l = np.asarray(lows, dtype=float)
    up = h[1:] - h[:-1]
    down = l[:-1] - l[1:]
    plus_dm = np.where((up > down) & (up > 0), up, 0.0)
    minus_dm = np.where((down > up) & (down > 0), down, 0.0)
    tr = true_ranges(highs, lows, closes)

    def wilder(series: np.ndarray) -> np.ndarray:
        out = np.empty(len(series) - period + 1)
        out[0] = series[:period].sum()
        for i, value in enumerate(series[period:], start=1):
            out[i] = out[i - 1] - out[i - 1] / period + value
        return out

    tr_s = wilder(tr)
    plus_s = wilder(plus_dm)
    minus_s = wilder(minus_dm)
    with np.errstate(divide='ignore', invalid='ignore'):
        plus_di = np.where(tr_s > 0, 100.0 * plus_s / tr_s, 0.0)
        minus_di = np.where(tr_s > 0, 100.0 * minus_s / tr_s, 0.0)
        di_sum = plus_di + minus_di
        dx = np.where(di_sum > 0, 100.0 * np.abs(plus_di - minus_di) / di_sum, 0.0)
    if len(dx) < period:
        return None
    current = float(dx[:period].mean())
    for value in dx[period:]:
        current = (current * (period - 1) + float(value)) / period
    return current


class RollingSeries:
    """Bounded OHLC history shared by the built-in strategies."""

    def __init__(self, maxlen: int = 500):
        self.highs: Deque[float] = deque(maxlen=maxlen)
        self.lows: Deque[float] = deque(maxlen=maxlen)
        self.closes: Deque[float] = deque(maxlen=maxlen)

    def add(self, high: float, low: float, close: float) -> None:
        self.highs.append(high)
        self.lows.append(low)
        self.closes.append(close)

    def clear(self) -> None:
        self.highs.clear()
        self.lows.clear()
        self.closes.clear()

    def __len__(self) -> int:
        return len(self.closes)
