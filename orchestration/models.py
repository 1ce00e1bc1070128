import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from execution.types import PositionSide


_QTY_EPSILON = 1e-9


class PositionState(Enum):
    FLAT = 'flat'
    ENTERING = 'entering'
    OPEN = 'open'
    PARTIALLY_CLOSED = 'partially_closed'
    CLOSING = 'closing'


class ProtectionKind(Enum):
    STOP = 'stop'
    TAKE_PROFIT = 'take_profit'


@dataclass
class ProtectiveOrder:
    kind: ProtectionKind
    order_id: str
    quantity: float
    price: float
    client_order_id: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind.value,
            'order_id': self.order_id,
            'quantity': self.quantity,
            'price': self.price,
            'client_order_id': self.client_order_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ProtectiveOrder':
        return cls(
            kind=ProtectionKind(data['kind']),
            order_id=str(data['order_id']),
            quantity=float(data['quantity']),
            price=float(data['price']),
            client_order_id=data.get('client_order_id'),
        )


@dataclass
class ProtectiveOrderSet:
    """Resting stop-loss and take-profit of one position.

    The two legs form an OCO pair: each may cover the whole remaining
    quantity, but neither may exceed it, and there is at most one stop.
    """

    stop: Optional[ProtectiveOrder] = None
    take_profit: Optional[ProtectiveOrder] = None

    @property
    def legs(self) -> List[ProtectiveOrder]:
        return [leg for leg in (self.stop, self.take_profit) if leg is not None]

    @property
    def is_protected(self) -> bool:
        return self.stop is not None

    @property
    def quantity(self) -> float:
        return max((leg.quantity for leg in self.legs), default=0.0)

    def order_ids(self) -> List[str]:
        return [leg.order_id for leg in self.legs]

    def find(self, order_id: str) -> Optional[ProtectiveOrder]:
        for leg in self.legs:
            if order_id in (leg.order_id, leg.client_order_id):
                return leg
        return None

    def get(self, kind: ProtectionKind) -> Optional[ProtectiveOrder]:
        return self.stop if kind is ProtectionKind.STOP else self.take_profit

    def set(self, order: Optional[ProtectiveOrder], kind: ProtectionKind) -> None:
        if kind is ProtectionKind.STOP:
            self.stop = order
        else:
            self.take_profit = order

    def within(self, remaining_quantity: float) -> bool:
        return self.quantity <= remaining_quantity + _QTY_EPSILON

    def as_dict(self) -> Dict[str, Any]:
        return {
            'stop': self.stop.as_dict() if self.stop else None,
            'take_profit': self.take_profit.as_dict() if self.take_profit else None,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ProtectiveOrderSet':
        data = data or {}
        stop = data.get('stop')
        take_profit = data.get('take_profit')
        return cls(
            stop=ProtectiveOrder.from_dict(stop) if stop else None,
            take_profit=ProtectiveOrder.from_dict(take_profit) if take_profit else None,
        )


@dataclass
class Position:
    symbol: str
    side: PositionSide
    quantity: float
    entry_price: float
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    opened_at: float = field(default_factory=time.time)
    status: PositionState = PositionState.OPEN
    initial_quantity: float = 0.0
    initial_stop: Optional[float] = None
    position_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    revision: int = 0
    realized_pnl: float = 0.0
    pnl_approximate: bool = False
    protection: ProtectiveOrderSet = field(default_factory=ProtectiveOrderSet)

    def __post_init__(self) -> None:
        if not self.initial_quantity:
            self.initial_quantity = self.quantity
        if self.initial_stop is None:
            self.initial_stop = self.stop_loss

    @property
    def signed_quantity(self) -> float:
        return self.quantity * self.side.sign

    @property
    def is_closed(self) -> bool:
        return self.quantity <= _QTY_EPSILON

    def pnl_at(self, price: float, quantity: Optional[float] = None) -> float:
        qty = self.quantity if quantity is None else quantity
        return (price - self.entry_price) * self.side.sign * qty

    def r_multiple(self, pnl: float, quantity: float) -> Optional[float]:
        if self.initial_stop is None:
            return None
        risk = abs(self.entry_price - self.initial_stop) * quantity
        if risk <= 0:
            return None
        return pnl / risk

    def client_order_id(self, kind: ProtectionKind) -> str:
        """Deterministic id per position revision so a resubmit is idempotent."""
        prefix = 'sl' if kind is ProtectionKind.STOP else 'tp'
        return f"{prefix}-{self.position_id}-{self.revision}"

    def as_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'side': self.side.value,
            'quantity': self.quantity,
            'entry_price': self.entry_price,
            'stop_loss': self.stop_loss,
            'take_profit': self.take_profit,
            'opened_at': self.opened_at,
            'status': self.status.value,
            'initial_quantity': self.initial_quantity,
            'initial_stop': self.initial_stop,
            'position_id': self.position_id,
            'revision': self.revision,
            'realized_pnl': self.realized_pnl,
            'pnl_approximate': self.pnl_approximate,
            'protection': self.protection.as_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Position':
        return cls(
            symbol=data['symbol'],
            side=PositionSide(data['side']),
            quantity=float(data['quantity']),
            entry_price=float(data['entry_price']),
            stop_loss=data.get('stop_loss'),
            take_profit=data.get('take_profit'),
            opened_at=float(data.get('opened_at') or time.time()),
            status=PositionState(data.get('status', PositionState.OPEN.value)),
            initial_quantity=float(data.get('initial_quantity') or data['quantity']),
            initial_stop=data.get('initial_stop'),
            position_id=data.get('position_id') or uuid.uuid4().hex[:12],
            revision=int(data.get('revision', 0)),
            realized_pnl=float(data.get('realized_pnl', 0.0)),
            pnl_approximate=bool(data.get('pnl_approximate', False)),
            protection=ProtectiveOrderSet.from_dict(data.get('protection')),
        )
