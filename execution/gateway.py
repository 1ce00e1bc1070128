from abc import ABC, abstractmethod
from typing import Callable, List, Optional

from execution.types import ExchangePosition, OrderResult, OrderTicket, OrderUpdate


OrderUpdateCallback = Callable[[OrderUpdate], None]


class ExecutionGateway(ABC):
    """Exchange-facing request/response contract.

    Order operations report expected failures (rejections, timeouts, unknown
    orders) as ``OrderResult`` values. Read queries return data and raise
    ``TransientNetworkError`` only when the exchange cannot be reached.
    """

    @abstractmethod
    async def place_market_order(
        self,
        symbol: str,
        side: str,
        quantity: float,
        reduce_only: bool = False,
        client_order_id: Optional[str] = None,
    ) -> OrderResult:
        ...

    @abstractmethod
    async def place_stop_order(
        self,
        symbol: str,
        side: str,
        quantity: float,
        stop_price: float,
        client_order_id: Optional[str] = None,
    ) -> OrderResult:
        ...

    @abstractmethod
    async def place_take_profit_order(
        self,
        symbol: str,
        side: str,
        quantity: float,
        stop_price: float,
        client_order_id: Optional[str] = None,
    ) -> OrderResult:
        ...

    @abstractmethod
    async def cancel_order(self, symbol: str, order_id: str) -> OrderResult:
        ...

    @abstractmethod
    async def get_account_balance(self) -> Optional[float]:
        ...

    @abstractmethod
    async def get_open_positions(self) -> List[ExchangePosition]:
        ...

    @abstractmethod
    async def get_open_orders(self, symbol: str) -> List[OrderTicket]:
        ...

    @abstractmethod
    async def set_leverage(self, symbol: str, leverage: int) -> OrderResult:
        ...

    @abstractmethod
    async def set_margin_mode(self, symbol: str, margin_mode: str) -> OrderResult:
        ...

    @abstractmethod
    def subscribe_order_updates(self, callback: OrderUpdateCallback) -> None:
        ...

    async def get_position(self, symbol: str) -> Optional[ExchangePosition]:
        for position in await self.get_open_positions():
            if position.symbol == symbol:
                return position
        return None

    def round_quantity(self, symbol: str, quantity: float) -> float:
        return quantity

    async def on_market_data(self, candle) -> None:
        """Hook for simulated gateways that fill resting orders from candles."""

    async def close(self) -> None:
        pass
