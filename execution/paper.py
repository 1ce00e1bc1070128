import itertools
import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from types import MappingProxyType
from typing import Deque, Dict, List, Mapping, Optional

from execution.gateway import ExecutionGateway, OrderUpdateCallback
from execution.types import (
    BUY,
    SELL,
    STATUS_CANCELED,
    STATUS_EXPIRED,
    STATUS_FILLED,
    STATUS_NEW,
    ExchangePosition,
    OrderKind,
    OrderResult,
    OrderTicket,
    OrderUpdate,
    PositionSide,
)


logger = logging.getLogger(__name__)


@dataclass
class PaperPosition:
    symbol: str
    side: PositionSide
    qty: float
    entry_price: float


class PaperGateway(ExecutionGateway):
    """In-memory futures exchange for paper trading and tests.

    Market orders fill at the last mark price (plus optional slippage).
    Resting reduce-only stop and take-profit orders trigger from candle
    ranges, stops first when both are touched by the same candle.
    """

    def __init__(
        self,
        initial_balance: float = 10000.0,
        slippage_pct: float = 0.0,
        fee_rate: float = 0.0,
        quantity_step: Optional[float] = None,
    ) -> None:
        self._balance = float(initial_balance)
        self.slippage_pct = float(slippage_pct)
        self.fee_rate = float(fee_rate)
        self.quantity_step = quantity_step
        self._ids = itertools.count(1)
        self._marks: Dict[str, float] = {}
        self._positions: Dict[str, PaperPosition] = {}
        self._orders: Dict[str, OrderTicket] = {}
        self._by_client_id: Dict[str, str] = {}
        self._callbacks: List[OrderUpdateCallback] = []
        self._failures: Dict[str, Deque[OrderResult]] = defaultdict(deque)
        self.request_log: List[str] = []
        self.leverage: Dict[str, int] = {}
        self.margin_mode: Dict[str, str] = {}

    @property
    def positions(self) -> Mapping[str, PaperPosition]:
        return MappingProxyType(self._positions)

    @property
    def balance(self) -> float:
        return self._balance

    def set_mark_price(self, symbol: str, price: float) -> None:
        self._marks[symbol] = float(price)

    def inject_failure(self, operation: str, result: OrderResult, times: int = 1) -> None:
        """Queue ``result`` as the answer to the next ``times`` calls of
        ``operation`` (market, stop, take_profit, cancel)."""
        for _ in range(times):
            self._failures[operation].append(result)

    def open_position(self, symbol: str, side: PositionSide, qty: float, entry_price: float) -> None:
        """Seed a position directly, as if it had been opened while offline."""
        self._positions[symbol] = PaperPosition(symbol, side, float(qty), float(entry_price))
        self._marks.setdefault(symbol, float(entry_price))

    def active_orders(self, symbol: Optional[str] = None) -> List[OrderTicket]:
        return [
            ticket for ticket in self._orders.values()
            if ticket.status == STATUS_NEW and (symbol is None or ticket.symbol == symbol)
        ]

    def _take_failure(self, operation: str) -> Optional[OrderResult]:
        queue = self._failures.get(operation)
        if queue:
            return queue.popleft()
        return None

    def _next_id(self) -> int:
        return next(self._ids)

    def round_quantity(self, symbol: str, quantity: float) -> float:
        if not self.quantity_step:
            return quantity
        steps = int(quantity / self.quantity_step + 1e-9)
        return round(steps * self.quantity_step, 12)

    async def place_market_order(
        self,
        symbol: str,
        side: str,
        quantity: float,
        reduce_only: bool = False,
        client_order_id: Optional[str] = None,
    ) -> OrderResult:
        self.request_log.append(f"market {symbol} {side} {quantity}")
        failure = self._take_failure('market')
        if failure is not None:
            return failure
        if quantity <= 0:
            return OrderResult.rejected("quantity must be positive", code=-4003)
        mark = self._marks.get(symbol)
        if mark is None:
            return OrderResult.rejected(f"no market price for {symbol}")

        position = self._positions.get(symbol)
        if reduce_only:
            if position is None or position.side.exit_side != side:
                return OrderResult.rejected("ReduceOnly Order is rejected.", code=-2022)
            quantity = min(quantity, position.qty)

        direction = 1 if side == BUY else -1
        price = mark * (1 + direction * self.slippage_pct / 100.0)
        ticket = OrderTicket(
            symbol=symbol,
            side=side,
            type=OrderKind.MARKET.value,
            quantity=quantity,
            status=STATUS_FILLED,
            client_order_id=client_order_id,
            exchange_order_id=self._next_id(),
            filled_qty=quantity,
            avg_price=price,
            reduce_only=reduce_only,
        )
        self._apply_fill(symbol, side, quantity, price)
        self._orders[ticket.id] = ticket
        self._emit(ticket)
        return OrderResult.success(ticket)

    async def place_stop_order(
        self,
        symbol: str,
        side: str,
        quantity: float,
        stop_price: float,
        client_order_id: Optional[str] = None,
    ) -> OrderResult:
        self.request_log.append(f"stop {symbol} {side} {quantity}@{stop_price}")
        return self._rest(OrderKind.STOP, 'stop', symbol, side, quantity, stop_price, client_order_id)

    async def place_take_profit_order(
        self,
        symbol: str,
        side: str,
        quantity: float,
        stop_price: float,
        client_order_id: Optional[str] = None,
    ) -> OrderResult:
        self.request_log.append(f"take_profit {symbol} {side} {quantity}@{stop_price}")
        return self._rest(OrderKind.TAKE_PROFIT, 'take_profit', symbol, side, quantity, stop_price, client_order_id)

    def _rest(
        self,
        kind: OrderKind,
        operation: str,
        symbol: str,
        side: str,
        quantity: float,
        stop_price: float,
        client_order_id: Optional[str],
    ) -> OrderResult:
        failure = self._take_failure(operation)
        if failure is not None:
            return failure
        if client_order_id and client_order_id in self._by_client_id:
            existing = self._orders[self._by_client_id[client_order_id]]
            if existing.status == STATUS_NEW:
                # duplicate submission of a live order
                return OrderResult.success(existing)
        if quantity <= 0 or stop_price <= 0:
            return OrderResult.rejected("quantity and stop price must be positive", code=-4003)
        mark = self._marks.get(symbol)
        if mark is not None and self._would_trigger_immediately(kind, side, stop_price, mark):
            return OrderResult.rejected("Order would immediately trigger.", code=-2021)

        ticket = OrderTicket(
            symbol=symbol,
            side=side,
            type=kind.value,
            quantity=quantity,
            status=STATUS_NEW,
            stop_price=stop_price,
            client_order_id=client_order_id,
            exchange_order_id=self._next_id(),
            reduce_only=True,
        )
        self._orders[ticket.id] = ticket
        if client_order_id:
            self._by_client_id[client_order_id] = ticket.id
        return OrderResult.success(ticket)

    @staticmethod
    def _would_trigger_immediately(kind: OrderKind, side: str, stop_price: float, mark: float) -> bool:
        if kind is OrderKind.STOP:
            return mark <= stop_price if side == SELL else mark >= stop_price
        return mark >= stop_price if side == SELL else mark <= stop_price

    async def cancel_order(self, symbol: str, order_id: str) -> OrderResult:
        self.request_log.append(f"cancel {symbol} {order_id}")
        failure = self._take_failure('cancel')
        if failure is not None:
            return failure
        key = self._by_client_id.get(order_id, order_id)
        ticket = self._orders.get(key)
        if ticket is None or ticket.symbol != symbol or ticket.status != STATUS_NEW:
            return OrderResult.not_found(f"Unknown order sent ({order_id})", code=-2011)
        ticket.status = STATUS_CANCELED
        self._emit(ticket)
        return OrderResult.success(ticket)

    async def get_account_balance(self) -> Optional[float]:
        return self._balance

    async def get_open_positions(self) -> List[ExchangePosition]:
        return [
            ExchangePosition(
                symbol=pos.symbol,
                side=pos.side,
                quantity=pos.qty,
                entry_price=pos.entry_price,
                mark_price=self._marks.get(pos.symbol),
            )
            for pos in self._positions.values()
        ]

    async def get_open_orders(self, symbol: str) -> List[OrderTicket]:
        return self.active_orders(symbol)

    async def set_leverage(self, symbol: str, leverage: int) -> OrderResult:
        self.leverage[symbol] = int(leverage)
        return OrderResult.success()

    async def set_margin_mode(self, symbol: str, margin_mode: str) -> OrderResult:
        self.margin_mode[symbol] = margin_mode.upper()
        return OrderResult.success()

    def subscribe_order_updates(self, callback: OrderUpdateCallback) -> None:
        self._callbacks.append(callback)

    async def on_market_data(self, candle) -> None:
        symbol = candle.symbol
        resting = self.active_orders(symbol)
        stops = [o for o in resting if o.type == OrderKind.STOP.value]
        targets = [o for o in resting if o.type == OrderKind.TAKE_PROFIT.value]
        for ticket in stops + targets:
            if ticket.status != STATUS_NEW:
                continue
            if self._touched(ticket, candle.high, candle.low):
                self._trigger(ticket)
        self._marks[symbol] = candle.close

    @staticmethod
    def _touched(ticket: OrderTicket, high: float, low: float) -> bool:
        stop = ticket.stop_price
        if ticket.type == OrderKind.STOP.value:
            return low <= stop if ticket.side == SELL else high >= stop
        return high >= stop if ticket.side == SELL else low <= stop

    def _trigger(self, ticket: OrderTicket) -> None:
        position = self._positions.get(ticket.symbol)
        if position is None or position.side.exit_side != ticket.side:
            ticket.status = STATUS_EXPIRED
            self._emit(ticket)
            return
        qty = min(ticket.quantity, position.qty)
        price = ticket.stop_price
        self._apply_fill(ticket.symbol, ticket.side, qty, price)
        ticket.status = STATUS_FILLED
        ticket.filled_qty = qty
        ticket.avg_price = price
        logger.info("Paper %s %s filled %s @ %s", ticket.type, ticket.symbol, qty, price)
        self._emit(ticket)

    def _apply_fill(self, symbol: str, side: str, qty: float, price: float) -> None:
        self._balance -= qty * price * self.fee_rate
        position = self._positions.get(symbol)
        fill_side = PositionSide.LONG if side == BUY else PositionSide.SHORT
        if position is None:
            self._positions[symbol] = PaperPosition(symbol, fill_side, qty, price)
            return
        if position.side is fill_side:
            total = position.qty + qty
            position.entry_price = (position.entry_price * position.qty + price * qty) / total
            position.qty = total
            return
        closed = min(qty, position.qty)
        self._balance += (price - position.entry_price) * closed * position.side.sign
        remaining = position.qty - qty
        if remaining > 1e-12:
            position.qty = remaining
        elif remaining < -1e-12:
            self._positions[symbol] = PaperPosition(symbol, fill_side, -remaining, price)
        else:
            del self._positions[symbol]

    def _emit(self, ticket: OrderTicket) -> None:
        update = OrderUpdate(
            symbol=ticket.symbol,
            order_id=ticket.id,
            status=ticket.status or STATUS_NEW,
            filled_qty=ticket.filled_qty,
            avg_price=ticket.avg_price,
            side=ticket.side,
            order_type=ticket.type,
            client_order_id=ticket.client_order_id,
            reduce_only=ticket.reduce_only,
        )
        for callback in list(self._callbacks):
            try:
                callback(update)
            except Exception:
                logger.exception("Order update callback failed for %s", ticket.id)
