import logging
import threading
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Sequence

import numpy as np

from config.settings import AllocationMode
from execution.errors import ValidationError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SymbolEquityInfo:
    allocated: float
    equity: float
    unrealized_pnl: float
    realized_pnl: float


@dataclass(frozen=True)
class PortfolioSnapshot:
    total_equity: float
    peak_equity: float
    drawdown_pct: float
    available_capital: float
    symbols: Mapping[str, SymbolEquityInfo]

    @property
    def realized_pnl(self) -> float:
        return sum(info.realized_pnl for info in self.symbols.values())

    def as_dict(self) -> Dict[str, object]:
        return {
            'total_equity': self.total_equity,
            'peak_equity': self.peak_equity,
            'drawdown_pct': self.drawdown_pct,
            'available_capital': self.available_capital,
            'realized_pnl': self.realized_pnl,
            'symbols': {
                symbol: {
                    'allocated': info.allocated,
                    'equity': info.equity,
                    'unrealized_pnl': info.unrealized_pnl,
                    'realized_pnl': info.realized_pnl,
                }
                for symbol, info in self.symbols.items()
            },
        }


def compute_allocations(
    mode: AllocationMode,
    total_capital: float,
    symbols: Sequence[str],
    weights_pct: Optional[Mapping[str, Optional[float]]] = None,
    volatilities: Optional[Mapping[str, Optional[float]]] = None,
) -> Dict[str, float]:
    """Split ``total_capital`` across ``symbols``.

    Weighted uses each symbol's ``weight_pct`` (missing weights share the
    remainder equally). Dynamic weights by inverse volatility and falls back
    to equal when any volatility is unknown.
    """
    if not symbols:
        return {}
    count = len(symbols)
    equal = {symbol: total_capital / count for symbol in symbols}
    if mode is AllocationMode.EQUAL:
        return equal

    if mode is AllocationMode.WEIGHTED:
        weights_pct = weights_pct or {}
        explicit = {s: float(weights_pct[s]) for s in symbols if weights_pct.get(s) is not None}
        explicit_total = sum(explicit.values())
        if explicit_total > 100.0 + 1e-9:
            raise ValidationError(f"allocation weights sum to {explicit_total}% (> 100%)")
        missing = [s for s in symbols if s not in explicit]
        share = (100.0 - explicit_total) / len(missing) if missing else 0.0
        return {s: total_capital * explicit.get(s, share) / 100.0 for s in symbols}

    volatilities = volatilities or {}
    vols = [volatilities.get(s) for s in symbols]
    if any(v is None or v <= 0 for v in vols):
        logger.warning("Dynamic allocation missing volatility for some symbols; using equal split")
        return equal
    inverse = 1.0 / np.asarray(vols, dtype=float)
    weights = inverse / inverse.sum()
    return {symbol: float(total_capital * weight) for symbol, weight in zip(symbols, weights)}


EquityListener = Callable[[str, float], None]
DrawdownListener = Callable[[float], None]


class SharedEquityManager:
    """Single ledger for capital shared by all symbol traders.

    Every mutation happens under one lock and readers only ever see frozen
    snapshots. Total equity is the sum of per-symbol equities; capital not
    allocated to a symbol is only reported as available. Peak equity moves
    with allocations so adding or releasing a symbol is not a drawdown.
    """

    def __init__(self, total_capital: float, drawdown_alert_pct: float = 10.0):
        if total_capital <= 0:
            raise ValidationError("total capital must be positive")
        self._lock = threading.Lock()
        self._unallocated = float(total_capital)
        self._allocations: Dict[str, float] = {}
        self._realized: Dict[str, float] = {}
        self._unrealized: Dict[str, float] = {}
        self._total_equity = 0.0
        self._peak_equity = 0.0
        self.drawdown_alert_pct = drawdown_alert_pct
        self._alerting = False
        self._equity_listeners: List[EquityListener] = []
        self._drawdown_listeners: List[DrawdownListener] = []

    def add_equity_listener(self, listener: EquityListener) -> None:
        self._equity_listeners.append(listener)

    def add_drawdown_listener(self, listener: DrawdownListener) -> None:
        self._drawdown_listeners.append(listener)

    # -- allocation -------------------------------------------------------------

    def allocate_capital(self, symbol: str, amount: float) -> None:
        with self._lock:
            if symbol in self._allocations:
                raise ValidationError(f"{symbol} already has capital allocated")
            if amount <= 0:
                raise ValidationError(f"{symbol}: allocation must be positive")
            if amount > self._unallocated + 1e-6:
                raise ValidationError(
                    f"{symbol}: allocation {amount:.2f} exceeds available capital {self._unallocated:.2f}"
                )
            self._unallocated -= amount
            self._allocations[symbol] = amount
            self._peak_equity += amount
            self._realized[symbol] = 0.0
            self._unrealized[symbol] = 0.0
            self._recalculate()
        logger.info("Allocated %.2f to %s", amount, symbol)

    def release_capital(self, symbol: str) -> float:
        """Return a symbol's current equity to the unallocated pool."""
        with self._lock:
            if symbol not in self._allocations:
                return 0.0
            equity = self._symbol_equity(symbol)
            del self._allocations[symbol]
            self._realized.pop(symbol, None)
            self._unrealized.pop(symbol, None)
            self._unallocated += equity
            self._peak_equity = max(0.0, self._peak_equity - equity)
            self._recalculate()
        logger.info("Released %s capital (%.2f) back to the pool", symbol, equity)
        return equity

    # -- updates ----------------------------------------------------------------

    def record_trade_pnl(self, symbol: str, realized_pnl: float) -> float:
        with self._lock:
            self._require(symbol)
            self._realized[symbol] += realized_pnl
            equity = self._recalculate_symbol(symbol)
        self._publish(symbol, equity)
        return equity

    def update_unrealized(self, symbol: str, unrealized_pnl: float) -> float:
        with self._lock:
            self._require(symbol)
            self._unrealized[symbol] = unrealized_pnl
            equity = self._recalculate_symbol(symbol)
        self._publish(symbol, equity)
        return equity

    def update_symbol_equity(self, symbol: str, equity: float) -> None:
        """Set a symbol's equity directly; the difference is booked as unrealized."""
        with self._lock:
            self._require(symbol)
            self._unrealized[symbol] = equity - self._allocations[symbol] - self._realized[symbol]
            equity = self._recalculate_symbol(symbol)
        self._publish(symbol, equity)

    def _require(self, symbol: str) -> None:
        if symbol not in self._allocations:
            raise ValidationError(f"{symbol} has no capital allocated")

    def _symbol_equity(self, symbol: str) -> float:
        return self._allocations[symbol] + self._realized[symbol] + self._unrealized[symbol]

    def _recalculate_symbol(self, symbol: str) -> float:
        self._recalculate()
        return self._symbol_equity(symbol)

    def _recalculate(self) -> None:
        self._total_equity = sum(self._symbol_equity(s) for s in self._allocations)
        if self._total_equity > self._peak_equity:
            self._peak_equity = self._total_equity

    def _drawdown_locked(self) -> float:
        if self._peak_equity <= 0:
            return 0.0
        return max(0.0, (self._peak_equity - self._total_equity) / self._peak_equity * 100.0)

    def _publish(self, symbol: str, equity: float) -> None:
        # listeners run outside the lock
        for listener in list(self._equity_listeners):
            try:
                listener(symbol, equity)
            except Exception:
                logger.exception("Equity listener failed for %s", symbol)
        drawdown = self.drawdown_pct
        if drawdown >= self.drawdown_alert_pct:
            if self._alerting:
                return
            self._alerting = True
            logger.warning("Portfolio drawdown %.2f%% >= %.2f%%", drawdown, self.drawdown_alert_pct)
            for listener in list(self._drawdown_listeners):
                try:
                    listener(drawdown)
                except Exception:
                    logger.exception("Drawdown listener failed")
        else:
            self._alerting = False

    # -- reads ------------------------------------------------------------------

    @property
    def total_equity(self) -> float:
        with self._lock:
            return self._total_equity

    @property
    def peak_equity(self) -> float:
        with self._lock:
            return self._peak_equity

    @property
    def drawdown_pct(self) -> float:
        with self._lock:
            return self._drawdown_locked()

    @property
    def available_capital(self) -> float:
        with self._lock:
            return self._unallocated

    def allocated_capital(self, symbol: str) -> float:
        with self._lock:
            return self._allocations.get(symbol, 0.0)

    def symbol_equity(self, symbol: str) -> float:
        with self._lock:
            if symbol not in self._allocations:
                return 0.0
            return self._symbol_equity(symbol)

    def symbols(self) -> List[str]:
        with self._lock:
            return list(self._allocations)

    def snapshot(self) -> PortfolioSnapshot:
        with self._lock:
            details = {
                symbol: SymbolEquityInfo(
                    allocated=self._allocations[symbol],
                    equity=self._symbol_equity(symbol),
                    unrealized_pnl=self._unrealized[symbol],
                    realized_pnl=self._realized[symbol],
                )
                for symbol in self._allocations
            }
            return PortfolioSnapshot(
                total_equity=self._total_equity,
                peak_equity=self._peak_equity,
                drawdown_pct=self._drawdown_locked(),
                available_capital=self._unallocated,
                symbols=MappingProxyType(details),
            )
