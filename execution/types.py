import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


BUY = 'BUY'
SELL = 'SELL'

STATUS_NEW = 'NEW'
STATUS_PARTIALLY_FILLED = 'PARTIALLY_FILLED'
STATUS_FILLED = 'FILLED'
STATUS_CANCELED = 'CANCELED'
STATUS_EXPIRED = 'EXPIRED'
STATUS_REJECTED = 'REJECTED'

TERMINAL_STATUSES = frozenset({STATUS_FILLED, STATUS_CANCELED, STATUS_EXPIRED, STATUS_REJECTED})


class PositionSide(Enum):
    LONG = 'long'
    SHORT = 'short'

    @property
    def entry_side(self) -> str:
        return BUY if self is PositionSide.LONG else SELL

    @property
    def exit_side(self) -> str:
        return SELL if self is PositionSide.LONG else BUY

    @property
    def sign(self) -> int:
        return 1 if self is PositionSide.LONG else -1


class OrderKind(Enum):
    MARKET = 'MARKET'
    STOP = 'STOP_MARKET'
    TAKE_PROFIT = 'TAKE_PROFIT_MARKET'


class ErrorKind(Enum):
    REJECTED = 'rejected'
    TRANSIENT = 'transient'
    NOT_FOUND = 'not_found'


@dataclass
class OrderTicket:
    """Normalized view of an order acknowledgement across live and paper flows."""

    symbol: str
    side: str
    type: str
    quantity: float
    status: Optional[str] = None
    price: Optional[float] = None
    stop_price: Optional[float] = None
    client_order_id: Optional[str] = None
    exchange_order_id: Optional[int] = None
    filled_qty: float = 0.0
    avg_price: Optional[float] = None
    reduce_only: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        if self.exchange_order_id is not None:
            return str(self.exchange_order_id)
        if self.client_order_id:
            return self.client_order_id
        fallback = self.raw.get("id")
        if fallback is not None:
            return str(fallback)
        return "order"

    def matches(self, order_id: Optional[str]) -> bool:
        if order_id is None:
            return False
        return order_id in (self.id, self.client_order_id)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side,
            "type": self.type,
            "status": self.status,
            "quantity": self.quantity,
            "price": self.price,
            "stop_price": self.stop_price,
            "client_order_id": self.client_order_id,
            "exchange_order_id": self.exchange_order_id,
            "filled_qty": self.filled_qty,
            "avg_price": self.avg_price,
            "reduce_only": self.reduce_only,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OrderTicket':
        exchange_id = data.get("exchange_order_id")
        return cls(
            symbol=data.get("symbol", ""),
            side=data.get("side", ""),
            type=data.get("type", OrderKind.STOP.value),
            quantity=float(data.get("quantity") or 0.0),
            status=data.get("status"),
            price=data.get("price"),
            stop_price=data.get("stop_price"),
            client_order_id=data.get("client_order_id"),
            exchange_order_id=int(exchange_id) if exchange_id is not None else None,
            filled_qty=float(data.get("filled_qty") or 0.0),
            avg_price=data.get("avg_price"),
            reduce_only=bool(data.get("reduce_only", True)),
        )


@dataclass
class OrderResult:
    """Request/response outcome; expected failures are values, not exceptions."""

    ok: bool
    ticket: Optional[OrderTicket] = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    code: Optional[int] = None

    @classmethod
    def success(cls, ticket: Optional[OrderTicket] = None) -> 'OrderResult':
        return cls(ok=True, ticket=ticket)

    @classmethod
    def rejected(cls, message: str, code: Optional[int] = None) -> 'OrderResult':
        return cls(ok=False, error_kind=ErrorKind.REJECTED, message=message, code=code)

    @classmethod
    def transient(cls, message: str, code: Optional[int] = None) -> 'OrderResult':
        return cls(ok=False, error_kind=ErrorKind.TRANSIENT, message=message, code=code)

    @classmethod
    def not_found(cls, message: str, code: Optional[int] = None) -> 'OrderResult':
        return cls(ok=False, error_kind=ErrorKind.NOT_FOUND, message=message, code=code)

    @property
    def retryable(self) -> bool:
        return not self.ok and self.error_kind is ErrorKind.TRANSIENT

    @property
    def filled_qty(self) -> float:
        return self.ticket.filled_qty if self.ticket else 0.0

    @property
    def avg_price(self) -> Optional[float]:
        return self.ticket.avg_price if self.ticket else None

    def __str__(self) -> str:
        if self.ok:
            return f"ok({self.ticket.id if self.ticket else '-'})"
        kind = self.error_kind.value if self.error_kind else 'error'
        return f"{kind}(code={self.code}, msg={self.message})"


@dataclass
class ExchangePosition:
    symbol: str
    side: PositionSide
    quantity: float
    entry_price: float
    mark_price: Optional[float] = None
    leverage: Optional[int] = None

    @property
    def signed_quantity(self) -> float:
        return self.quantity * self.side.sign


@dataclass
class OrderUpdate:
    """Order status change pushed by the exchange (user stream or paper fills)."""

    symbol: str
    order_id: str
    status: str
    filled_qty: float = 0.0
    avg_price: Optional[float] = None
    side: Optional[str] = None
    order_type: Optional[str] = None
    client_order_id: Optional[str] = None
    reduce_only: bool = False
    timestamp: float = field(default_factory=time.time)

    @property
    def is_filled(self) -> bool:
        return self.status == STATUS_FILLED

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
