import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from config.settings import DailyResetMode, RiskSettings
from execution.errors import ValidationError
from execution.types import PositionSide


logger = logging.getLogger(__name__)

_DAY_SECONDS = 86400.0


@dataclass(frozen=True)
class PositionSize:
    quantity: float
    risk_amount: float
    stop_distance: float
    risk_pct: float


@dataclass
class OpenRisk:
    position_id: str
    side: PositionSide
    quantity: float
    entry_price: float
    stop_loss: float
    risk_amount: float


class RiskManager:
    """Per-symbol sizing, drawdown circuit breaker and heat accounting.

    Equity here is the symbol's own slice of the shared pool. The breaker
    latches: once the daily or total drawdown limit is hit, entries stay
    refused until the next trading period starts, even if equity recovers.
    """

    def __init__(
        self,
        symbol: str,
        settings: RiskSettings,
        initial_capital: float,
        clock: Callable[[], float] = time.time,
    ):
        if initial_capital <= 0:
            raise ValidationError(f"{symbol}: initial capital must be positive")
        self.symbol = symbol
        self.settings = settings
        self.initial_capital = float(initial_capital)
        self._clock = clock
        self._equity = float(initial_capital)
        self._peak_equity = float(initial_capital)
        self._day_start_equity = float(initial_capital)
        self._period_start = clock()
        self._period_key = self._period_for(self._period_start)
        self._breaker_reason: Optional[str] = None
        self._positions: Dict[str, OpenRisk] = {}
        self._mark_price: Optional[float] = None

    # -- equity and drawdown -------------------------------------------------

    @property
    def equity(self) -> float:
        return self._equity

    @property
    def peak_equity(self) -> float:
        return self._peak_equity

    @property
    def day_start_equity(self) -> float:
        return self._day_start_equity

    @property
    def current_drawdown_pct(self) -> float:
        if self._peak_equity <= 0:
            return 0.0
        return max(0.0, (self._peak_equity - self._equity) / self._peak_equity * 100.0)

    @property
    def daily_drawdown_pct(self) -> float:
        if self._day_start_equity <= 0:
            return 0.0
        return max(0.0, (self._day_start_equity - self._equity) / self._day_start_equity * 100.0)

    @property
    def breaker_tripped(self) -> bool:
        return self._breaker_reason is not None

    @property
    def breaker_reason(self) -> Optional[str]:
        return self._breaker_reason

    def update_equity(self, value: float) -> None:
        self._roll_period()
        self._equity = float(value)
        if self._equity > self._peak_equity:
            self._peak_equity = self._equity
        self._evaluate_breaker()

    def _period_for(self, now: float):
        if self.settings.daily_reset is DailyResetMode.UTC_DAY:
            return datetime.fromtimestamp(now, tz=timezone.utc).date()
        return None

    def _roll_period(self) -> None:
        now = self._clock()
        if self.settings.daily_reset is DailyResetMode.UTC_DAY:
            key = self._period_for(now)
            rolled = key != self._period_key
            self._period_key = key
        else:
            rolled = now - self._period_start >= _DAY_SECONDS
        if not rolled:
            return
        self._period_start = now
        self._day_start_equity = self._equity
        if self._breaker_reason:
            logger.info("%s: new trading period, clearing breaker (%s)", self.symbol, self._breaker_reason)
        self._breaker_reason = None
        self._evaluate_breaker()

    def _evaluate_breaker(self) -> None:
        if self._breaker_reason:
            return
        reason = None
        if self.daily_drawdown_pct >= self.settings.max_daily_drawdown_pct:
            reason = f"daily drawdown {self.daily_drawdown_pct:.2f}% >= {self.settings.max_daily_drawdown_pct}%"
        elif self.current_drawdown_pct >= self.settings.max_drawdown_pct:
            reason = f"drawdown {self.current_drawdown_pct:.2f}% >= {self.settings.max_drawdown_pct}%"
        if reason:
            self._breaker_reason = reason
            logger.warning("%s: circuit breaker tripped: %s", self.symbol, reason)

    # -- sizing ---------------------------------------------------------------

    def drawdown_multiplier(self) -> float:
        drawdown = self.current_drawdown_pct
        multiplier = 1.0
        for threshold, value in self.settings.drawdown_curve:
            if drawdown >= threshold:
                multiplier = value
        return multiplier

    def adjusted_risk_pct(self) -> float:
        return self.settings.risk_per_trade_pct * self.drawdown_multiplier()

    def calculate_position_size(
        self,
        entry_price: float,
        stop_price: float,
        atr: Optional[float] = None,
        confidence: float = 1.0,
    ) -> PositionSize:
        if entry_price <= 0 or stop_price <= 0:
            raise ValidationError(f"{self.symbol}: prices must be positive (entry={entry_price}, stop={stop_price})")
        stop_distance = abs(entry_price - stop_price)
        if stop_distance <= entry_price * 1e-9:
            raise ValidationError(f"{self.symbol}: degenerate stop distance (entry={entry_price}, stop={stop_price})")
        if atr:
            stop_distance = max(stop_distance, atr * self.settings.atr_stop_multiplier)
        if confidence <= 0:
            raise ValidationError(f"{self.symbol}: confidence must be positive")
        risk_pct = self.adjusted_risk_pct() * min(confidence, 1.0)
        risk_amount = self._equity * risk_pct / 100.0
        return PositionSize(
            quantity=risk_amount / stop_distance,
            risk_amount=risk_amount,
            stop_distance=stop_distance,
            risk_pct=risk_pct,
        )

    # -- gating -----------------------------------------------------------------

    def entry_refusal(self, candidate_risk: float = 0.0) -> Optional[str]:
        self._roll_period()
        self._evaluate_breaker()
        if self._breaker_reason:
            return f"circuit breaker: {self._breaker_reason}"
        if self._equity < self.settings.minimum_equity:
            return f"equity {self._equity:.2f} below minimum {self.settings.minimum_equity}"
        if self._equity <= 0:
            return "no equity"
        heat_after = (self.open_risk + max(0.0, candidate_risk)) / self._equity * 100.0
        if heat_after > self.settings.max_portfolio_heat_pct + 1e-9:
            return f"portfolio heat {heat_after:.2f}% would exceed {self.settings.max_portfolio_heat_pct}%"
        return None

    def can_open_position(self, candidate_risk: float = 0.0) -> bool:
        refusal = self.entry_refusal(candidate_risk)
        if refusal:
            logger.info("%s: entry refused: %s", self.symbol, refusal)
        return refusal is None

    # -- open risk ------------------------------------------------------------

    @property
    def open_risk(self) -> float:
        return sum(p.risk_amount for p in self._positions.values())

    @property
    def portfolio_heat(self) -> float:
        if self._equity <= 0:
            return 0.0
        return self.open_risk / self._equity * 100.0

    def risk_capacity(self) -> float:
        """Risk amount that still fits under the heat cap; negative when already over it."""
        return self._equity * self.settings.max_portfolio_heat_pct / 100.0 - self.open_risk

    @property
    def has_open_positions(self) -> bool:
        return bool(self._positions)

    @property
    def positions(self) -> List[OpenRisk]:
        return list(self._positions.values())

    @staticmethod
    def _risk_of(side: PositionSide, quantity: float, entry: float, stop: float) -> float:
        # a stop at or beyond breakeven carries no open risk
        return max(0.0, (entry - stop) * side.sign * quantity)

    def add_position(
        self,
        position_id: str,
        side: PositionSide,
        quantity: float,
        entry_price: float,
        stop_loss: float,
    ) -> OpenRisk:
        risk = OpenRisk(
            position_id=position_id,
            side=side,
            quantity=quantity,
            entry_price=entry_price,
            stop_loss=stop_loss,
            risk_amount=self._risk_of(side, quantity, entry_price, stop_loss),
        )
        self._positions[position_id] = risk
        return risk

    def update_position(
        self,
        position_id: str,
        quantity: Optional[float] = None,
        stop_loss: Optional[float] = None,
    ) -> Optional[OpenRisk]:
        risk = self._positions.get(position_id)
        if risk is None:
            return None
        if quantity is not None:
            risk.quantity = quantity
        if stop_loss is not None:
            risk.stop_loss = stop_loss
        risk.risk_amount = self._risk_of(risk.side, risk.quantity, risk.entry_price, risk.stop_loss)
        return risk

    def remove_position(self, position_id: str) -> None:
        self._positions.pop(position_id, None)

    def clear_positions(self) -> None:
        self._positions.clear()

    def update_mark_price(self, price: float) -> None:
        self._mark_price = float(price)

    @property
    def mark_price(self) -> Optional[float]:
        return self._mark_price

    @property
    def unrealized_pnl(self) -> float:
        if self._mark_price is None:
            return 0.0
        return sum(
            (self._mark_price - p.entry_price) * p.side.sign * p.quantity
            for p in self._positions.values()
        )

    def snapshot(self) -> Dict[str, object]:
        return {
            'symbol': self.symbol,
            'initial_capital': self.initial_capital,
            'equity': self._equity,
            'peak_equity': self._peak_equity,
            'day_start_equity': self._day_start_equity,
            'drawdown_pct': self.current_drawdown_pct,
            'daily_drawdown_pct': self.daily_drawdown_pct,
            'open_risk': self.open_risk,
            'portfolio_heat_pct': self.portfolio_heat,
            'breaker': self._breaker_reason,
        }
