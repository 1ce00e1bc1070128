import logging
import math
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from api.metrics import metrics
from execution.errors import TransientNetworkError
from execution.gateway import ExecutionGateway, OrderUpdateCallback
from execution.retry import RetryPolicy, retry_async
from execution.types import (
    ExchangePosition,
    OrderKind,
    OrderResult,
    OrderTicket,
    OrderUpdate,
    PositionSide,
)
from ingest.binance_rest import BinanceAPIError, BinanceRESTClient


logger = logging.getLogger(__name__)

__all__ = ["BinanceFuturesGateway", "SymbolInfo"]

_DUPLICATE_CLIENT_ID = -4116
_UNKNOWN_ORDER = (-2011, -2013)
_NO_CHANGE = (-4046, -4059)


@dataclass
class SymbolInfo:
    symbol: str
    price_tick: Optional[float] = None
    amount_step: Optional[float] = None
    min_qty: Optional[float] = None
    min_notional: Optional[float] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> 'SymbolInfo':
        info = cls(symbol=payload.get("symbol", ""), raw=dict(payload))
        for filt in payload.get("filters", []):
            ftype = filt.get("filterType")
            if ftype == "PRICE_FILTER":
                info.price_tick = _as_float(filt.get("tickSize"))
            elif ftype == "LOT_SIZE":
                info.amount_step = _as_float(filt.get("stepSize"))
                info.min_qty = _as_float(filt.get("minQty"))
            elif ftype == "MIN_NOTIONAL":
                info.min_notional = _as_float(filt.get("notional"))
        return info


def _as_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _round_to_step(value: float, step: Optional[float]) -> float:
    if not step:
        return value
    precision = max(0, int(round(-math.log10(step)))) if step < 1 else 0
    return round(math.floor(value / step + 1e-9) * step, precision)


class BinanceFuturesGateway(ExecutionGateway):
    """USDⓈ-M futures execution over signed REST."""

    def __init__(
        self,
        rest: Optional[BinanceRESTClient] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self._rest = rest
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3, base_delay_s=0.5, max_delay_s=4.0)
        self._symbols: Dict[str, SymbolInfo] = {}
        self._callbacks: List[OrderUpdateCallback] = []

    def _client(self) -> BinanceRESTClient:
        if self._rest is None:
            self._rest = BinanceRESTClient()
        return self._rest

    async def initialize(self) -> None:
        data = await self._call("exchange info", lambda: self._client().get("/fapi/v1/exchangeInfo"))
        for payload in (data or {}).get("symbols", []) if isinstance(data, dict) else []:
            info = SymbolInfo.from_payload(payload)
            self._symbols[info.symbol] = info
        logger.info("Loaded exchange filters for %s symbols", len(self._symbols))

    def symbol_info(self, symbol: str) -> Optional[SymbolInfo]:
        return self._symbols.get(symbol)

    def round_quantity(self, symbol: str, quantity: float) -> float:
        info = self._symbols.get(symbol)
        return _round_to_step(quantity, info.amount_step if info else None)

    def _round_price(self, symbol: str, price: float) -> float:
        info = self._symbols.get(symbol)
        if not info or not info.price_tick:
            return price
        tick = info.price_tick
        precision = max(0, int(round(-math.log10(tick)))) if tick < 1 else 0
        return round(round(price / tick) * tick, precision)

    async def _call(self, description: str, request: Callable[[], Awaitable[Any]]) -> Any:
        async def attempt() -> Any:
            try:
                return await request()
            except BinanceAPIError as exc:
                if exc.is_transient:
                    raise TransientNetworkError(str(exc), status=exc.status) from exc
                raise

        return await retry_async(attempt, self.retry_policy, description=f"Binance {description}")

    async def _submit(self, symbol: str, params: Dict[str, Any]) -> OrderResult:
        order_type = params["type"]
        params.setdefault("newClientOrderId", f"x-{uuid.uuid4().hex[:20]}")
        params.setdefault("newOrderRespType", "RESULT")
        started = time.perf_counter()
        try:
            data = await self._call(
                f"{order_type} order {symbol}",
                lambda: self._client().post("/fapi/v1/order", params=dict(params), signed=True),
            )
        except TransientNetworkError as exc:
            metrics.record_order_failure(symbol, "transient")
            return OrderResult.transient(str(exc), code=exc.status)
        except BinanceAPIError as exc:
            if exc.code == _DUPLICATE_CLIENT_ID:
                existing = await self._fetch_order(symbol, params["newClientOrderId"])
                if existing is not None:
                    logger.info("Order %s already on book; treating resubmit as success", existing.id)
                    return OrderResult.success(existing)
            metrics.record_order_failure(symbol, "rejected")
            logger.error("Binance %s order failed (code=%s, msg=%s)", order_type, exc.code, exc.msg)
            return OrderResult.rejected(exc.msg or str(exc), code=exc.code)
        metrics.record_order_send_latency(time.perf_counter() - started)
        metrics.record_order_placed(symbol, order_type)
        ticket = self._parse_order_ack(data)
        if ticket is None:
            return OrderResult.transient(f"unexpected order response: {data!r}")
        return OrderResult.success(ticket)

    async def _fetch_order(self, symbol: str, client_order_id: str) -> Optional[OrderTicket]:
        try:
            data = await self._call(
                "query order",
                lambda: self._client().get(
                    "/fapi/v1/order",
                    params={"symbol": symbol, "origClientOrderId": client_order_id},
                    signed=True,
                ),
            )
        except (TransientNetworkError, BinanceAPIError) as exc:
            logger.warning("Order lookup for %s failed: %s", client_order_id, exc)
            return None
        return self._parse_order_ack(data)

    async def place_market_order(
        self,
        symbol: str,
        side: str,
        quantity: float,
        reduce_only: bool = False,
        client_order_id: Optional[str] = None,
    ) -> OrderResult:
        qty = self.round_quantity(symbol, quantity)
        if qty <= 0:
            return OrderResult.rejected(f"quantity {quantity} below lot size")
        params: Dict[str, Any] = {
            "symbol": symbol,
            "side": side.upper(),
            "type": OrderKind.MARKET.value,
            "quantity": str(qty),
        }
        if reduce_only:
            params["reduceOnly"] = "true"
        if client_order_id:
            params["newClientOrderId"] = client_order_id
        return await self._submit(symbol, params)

    async def _place_trigger(
        self,
        kind: OrderKind,
        symbol: str,
        side: str,
        quantity: float,
        stop_price: float,
        client_order_id: Optional[str],
    ) -> OrderResult:
        qty = self.round_quantity(symbol, quantity)
        if qty <= 0:
            return OrderResult.rejected(f"quantity {quantity} below lot size")
        params: Dict[str, Any] = {
            "symbol": symbol,
            "side": side.upper(),
            "type": kind.value,
            "stopPrice": str(self._round_price(symbol, stop_price)),
            "quantity": str(qty),
            "reduceOnly": "true",
            "workingType": "MARK_PRICE",
        }
        if client_order_id:
            params["newClientOrderId"] = client_order_id
        return await self._submit(symbol, params)

    async def place_stop_order(self, symbol, side, quantity, stop_price, client_order_id=None) -> OrderResult:
        return await self._place_trigger(OrderKind.STOP, symbol, side, quantity, stop_price, client_order_id)

    async def place_take_profit_order(self, symbol, side, quantity, stop_price, client_order_id=None) -> OrderResult:
        return await self._place_trigger(OrderKind.TAKE_PROFIT, symbol, side, quantity, stop_price, client_order_id)

    async def cancel_order(self, symbol: str, order_id: str) -> OrderResult:
        params: Dict[str, Any] = {"symbol": symbol}
        numeric_id = _as_int(order_id)
        if numeric_id is not None:
            params["orderId"] = numeric_id
        else:
            params["origClientOrderId"] = order_id
        try:
            data = await self._call(
                f"cancel order {order_id}",
                lambda: self._client().delete("/fapi/v1/order", params=dict(params), signed=True),
            )
        except TransientNetworkError as exc:
            metrics.record_order_failure(symbol, "transient")
            return OrderResult.transient(str(exc), code=exc.status)
        except BinanceAPIError as exc:
            if exc.code in _UNKNOWN_ORDER:
                return OrderResult.not_found(exc.msg or str(exc), code=exc.code)
            metrics.record_order_failure(symbol, "rejected")
            return OrderResult.rejected(exc.msg or str(exc), code=exc.code)
        metrics.record_order_cancelled(symbol)
        return OrderResult.success(self._parse_order_ack(data))

    async def get_account_balance(self) -> Optional[float]:
        data = await self._call("account", lambda: self._client().get("/fapi/v2/account", signed=True))
        if not isinstance(data, dict):
            return None
        total_wallet = _as_float(data.get("totalWalletBalance"))
        if total_wallet is not None:
            return total_wallet
        for asset in data.get("assets") or []:
            if asset.get("asset") == "USDT":
                return _as_float(asset.get("walletBalance") or asset.get("marginBalance"))
        return None

    async def get_open_positions(self) -> List[ExchangePosition]:
        data = await self._call("position risk", lambda: self._client().get("/fapi/v2/positionRisk", signed=True))
        positions: List[ExchangePosition] = []
        for item in data if isinstance(data, list) else []:
            amount = _as_float(item.get("positionAmt")) or 0.0
            if amount == 0:
                continue
            positions.append(
                ExchangePosition(
                    symbol=item.get("symbol", ""),
                    side=PositionSide.LONG if amount > 0 else PositionSide.SHORT,
                    quantity=abs(amount),
                    entry_price=_as_float(item.get("entryPrice")) or 0.0,
                    mark_price=_as_float(item.get("markPrice")),
                    leverage=_as_int(item.get("leverage")),
                )
            )
        return positions

    async def get_open_orders(self, symbol: str) -> List[OrderTicket]:
        payload = await self._call(
            "open orders",
            lambda: self._client().get("/fapi/v1/openOrders", params={"symbol": symbol}, signed=True),
        )
        orders: List[OrderTicket] = []
        for item in payload if isinstance(payload, list) else []:
            ticket = self._parse_order_ack(item)
            if ticket:
                orders.append(ticket)
        return orders

    async def _settings_call(self, description: str, path: str, params: Dict[str, Any]) -> OrderResult:
        try:
            await self._call(description, lambda: self._client().post(path, params=dict(params), signed=True))
        except TransientNetworkError as exc:
            return OrderResult.transient(str(exc), code=exc.status)
        except BinanceAPIError as exc:
            if exc.code in _NO_CHANGE:
                return OrderResult.success()
            return OrderResult.rejected(exc.msg or str(exc), code=exc.code)
        return OrderResult.success()

    async def set_leverage(self, symbol: str, leverage: int) -> OrderResult:
        return await self._settings_call(
            f"leverage {symbol}", "/fapi/v1/leverage", {"symbol": symbol, "leverage": int(leverage)}
        )

    async def set_margin_mode(self, symbol: str, margin_mode: str) -> OrderResult:
        return await self._settings_call(
            f"margin type {symbol}", "/fapi/v1/marginType", {"symbol": symbol, "marginType": margin_mode.upper()}
        )

    def subscribe_order_updates(self, callback: OrderUpdateCallback) -> None:
        self._callbacks.append(callback)

    def handle_user_event(self, payload: Mapping[str, Any]) -> None:
        """Dispatch an ``ORDER_TRADE_UPDATE`` user-stream event to subscribers."""
        if payload.get("e") != "ORDER_TRADE_UPDATE":
            return
        order = payload.get("o") or {}
        update = OrderUpdate(
            symbol=order.get("s", ""),
            order_id=str(order.get("i")),
            status=order.get("X", ""),
            filled_qty=_as_float(order.get("z")) or 0.0,
            avg_price=_as_float(order.get("ap")),
            side=order.get("S"),
            order_type=order.get("ot") or order.get("o"),
            client_order_id=order.get("c"),
            reduce_only=bool(order.get("R", False)),
            timestamp=(_as_int(payload.get("E")) or int(time.time() * 1000)) / 1000.0,
        )
        for callback in list(self._callbacks):
            try:
                callback(update)
            except Exception:
                logger.exception("Order update callback failed for %s", update.order_id)

    async def close(self) -> None:
        if self._rest is not None:
            try:
                await self._rest.close()
            finally:
                self._rest = None

    @staticmethod
    def _parse_order_ack(payload: Any) -> Optional[OrderTicket]:
        if not isinstance(payload, dict):
            return None
        qty_val = payload.get("origQty") or payload.get("quantity")
        avg_price = _as_float(payload.get("avgPrice"))
        return OrderTicket(
            symbol=payload.get("symbol", ""),
            side=(payload.get("side") or "").upper(),
            type=payload.get("type") or payload.get("origType") or OrderKind.MARKET.value,
            quantity=_as_float(qty_val) or 0.0,
            status=payload.get("status"),
            price=_as_float(payload.get("price")),
            stop_price=_as_float(payload.get("stopPrice")),
            client_order_id=payload.get("clientOrderId"),
            exchange_order_id=_as_int(payload.get("orderId")),
            filled_qty=_as_float(payload.get("executedQty")) or 0.0,
            avg_price=avg_price if avg_price else None,
            reduce_only=bool(payload.get("reduceOnly", False)),
            raw=payload,
        )
