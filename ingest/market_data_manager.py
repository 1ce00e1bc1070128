import inspect
import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

from execution.errors import TransientNetworkError
from ingest.binance_rest import BinanceAPIError, BinanceRESTClient
from ingest.websocket_client import CandleHandler, KlineStreamClient, SubscriptionHandle
from strategy.models import Candle

logger = logging.getLogger(__name__)


class MarketDataManager:
    """Candle source for the coordinator: REST history plus live closed klines.

    One websocket subscription is opened per (symbol, interval); further
    subscribers to the same stream are fanned out locally.
    """

    def __init__(
        self,
        stream: Optional[KlineStreamClient] = None,
        rest: Optional[BinanceRESTClient] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.stream = stream or KlineStreamClient()
        self.rest = rest or BinanceRESTClient()
        self._clock = clock
        self._handlers: Dict[Tuple[str, str], List[CandleHandler]] = {}
        self._handles: Dict[Tuple[str, str], SubscriptionHandle] = {}

    def subscribe(self, symbol: str, interval: str, on_candle: CandleHandler) -> SubscriptionHandle:
        key = (symbol.upper(), interval)
        self._handlers.setdefault(key, []).append(on_candle)
        handle = self._handles.get(key)
        if handle is None or not handle.active:
            handle = self.stream.subscribe(symbol, interval, self._dispatcher(key))
            self._handles[key] = handle
        return handle

    def unsubscribe(self, symbol: str, interval: str) -> None:
        key = (symbol.upper(), interval)
        self._handlers.pop(key, None)
        handle = self._handles.pop(key, None)
        if handle is not None:
            handle.stop()

    def _dispatcher(self, key: Tuple[str, str]) -> CandleHandler:
        async def _dispatch(candle: Candle):
            for handler in list(self._handlers.get(key, ())):
                try:
                    result = handler(candle)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    logger.exception("Candle handler for %s:%s failed", *key)

        return _dispatch

    async def load_history(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        """Most recent closed candles, oldest first; empty when REST is unavailable."""
        if limit <= 0:
            return []
        try:
            rows = await self.rest.klines(symbol, interval, limit + 1)
        except (BinanceAPIError, TransientNetworkError) as e:
            logger.warning("History for %s:%s unavailable: %s", symbol, interval, e)
            return []
        now_ms = int(self._clock() * 1000)
        candles = [Candle.from_rest_row(symbol, interval, row) for row in rows]
        # the last row is usually the still-forming candle
        closed = [c for c in candles if c.close_time < now_ms]
        return closed[-limit:]

    async def close(self) -> None:
        for handle in self._handles.values():
            handle.stop()
        self._handles.clear()
        self._handlers.clear()
        await self.stream.close()
        await self.rest.close()
