from dataclasses import dataclass
from typing import Optional

from execution.errors import ValidationError
from execution.types import BUY


@dataclass(frozen=True)
class SlippageCheck:
    expected_price: float
    actual_price: float
    slippage_pct: float
    acceptable: bool
    reason: Optional[str] = None

    @property
    def slippage_bps(self) -> float:
        return self.slippage_pct * 100.0

    @property
    def adverse(self) -> bool:
        return self.slippage_pct > 0


class SlippageValidator:
    """Compare a fill against the price the signal expected.

    Positive slippage is adverse: paid more on a buy, received less on a
    sell. Only adverse slippage beyond the tolerance fails the check.
    """

    def __init__(self, max_slippage_pct: float = 0.5):
        if max_slippage_pct < 0:
            raise ValidationError("max_slippage_pct must be non-negative")
        self.max_slippage_pct = max_slippage_pct

    def validate(self, expected_price: float, actual_price: float, side: str) -> SlippageCheck:
        if expected_price <= 0:
            raise ValidationError("expected price must be positive")
        if side == BUY:
            slippage = (actual_price - expected_price) / expected_price * 100.0
        else:
            slippage = (expected_price - actual_price) / expected_price * 100.0
        acceptable = slippage <= self.max_slippage_pct
        reason = None if acceptable else f"slippage {slippage:.3f}% exceeds max {self.max_slippage_pct}%"
        return SlippageCheck(expected_price, actual_price, slippage, acceptable, reason)
