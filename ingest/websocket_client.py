import asyncio
import inspect
import json
import logging
import time
from typing import Any, Callable, Dict, List, Mapping, Optional

import websockets

from api.metrics import metrics
from config import config
from execution.retry import RetryPolicy
from strategy.models import Candle
from .binance_rest import BinanceAPIError, BinanceRESTClient


logger = logging.getLogger(__name__)

MAINNET_WS_URL = "wss://fstream.binance.com"
TESTNET_WS_URL = "wss://stream.binancefuture.com"

CandleHandler = Callable[[Candle], Any]


def _default_ws_url() -> str:
    exchange = config.section("exchange")
    websocket = config.section("websocket")
    if exchange.get("testnet", False):
        return websocket.get("testnet_url") or TESTNET_WS_URL
    return websocket.get("url") or MAINNET_WS_URL


def _reconnect_policy() -> RetryPolicy:
    section = config.section("websocket").get("reconnect") or {}
    return RetryPolicy(
        # reconnects never give up; only the delay schedule matters
        max_attempts=1,
        base_delay_s=float(section.get("base_delay_s", 1.0)),
        factor=float(section.get("factor", 2.0)),
        max_delay_s=float(section.get("max_delay_s", 32.0)),
    )


class SubscriptionHandle:
    """Handle for one kline subscription; ``stop()`` ends its stream task."""

    def __init__(self, symbol: str, interval: str):
        self.symbol = symbol
        self.interval = interval
        self.active = True
        self.connected = False
        self.reconnects = 0
        self.last_message_at: Optional[float] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def stream(self) -> str:
        return f"{self.symbol.lower()}@kline_{self.interval}"

    def stop(self) -> None:
        self.active = False
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)


class KlineStreamClient:
    """Closed-kline subscriptions over the Binance futures websocket.

    Each subscription owns one connection. A dropped or stale connection is
    re-opened with exponential backoff (1s, 2s, 4s ... capped); the backoff
    resets once a new connection delivers its first message.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        stale_timeout_s: Optional[float] = None,
        ping_interval_s: Optional[float] = None,
        reconnect_policy: Optional[RetryPolicy] = None,
        connect: Callable[..., Any] = websockets.connect,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        section = config.section("websocket")
        self.url = (url or _default_ws_url()).rstrip("/")
        self.stale_timeout_s = float(stale_timeout_s or section.get("stale_timeout_s", 90))
        self.ping_interval_s = float(ping_interval_s or section.get("ping_interval_s", 20))
        self.reconnect_policy = reconnect_policy or _reconnect_policy()
        self._connect = connect
        self._sleep = sleep
        self.subscriptions: List[SubscriptionHandle] = []

    def subscribe(self, symbol: str, interval: str, on_candle: CandleHandler) -> SubscriptionHandle:
        handle = SubscriptionHandle(symbol.upper(), interval)
        handle._task = asyncio.create_task(self._run(handle, on_candle), name=f"kline-{handle.stream}")
        self.subscriptions.append(handle)
        logger.info("Subscribed to %s", handle.stream)
        return handle

    async def close(self) -> None:
        for handle in self.subscriptions:
            handle.stop()
        await asyncio.gather(*(h.wait() for h in self.subscriptions), return_exceptions=True)
        self.subscriptions.clear()

    async def _run(self, handle: SubscriptionHandle, on_candle: CandleHandler) -> None:
        url = f"{self.url}/ws/{handle.stream}"
        backoff_index = 0
        while handle.active:
            try:
                async with self._connect(url, ping_interval=self.ping_interval_s) as ws:
                    handle.connected = True
                    first = True
                    while handle.active:
                        try:
                            raw = await asyncio.wait_for(ws.recv(), timeout=self.stale_timeout_s)
                        except asyncio.TimeoutError:
                            raise ConnectionError(
                                f"no message for {self.stale_timeout_s:.0f}s"
                            ) from None
                        if first:
                            first = False
                            backoff_index = 0
                        handle.last_message_at = time.time()
                        await self._handle_message(handle, raw, on_candle)
            except asyncio.CancelledError:
                break
            except Exception as e:
                handle.connected = False
                if not handle.active:
                    break
                delay = self.reconnect_policy.delay_for(backoff_index)
                backoff_index += 1
                handle.reconnects += 1
                metrics.record_reconnect(handle.stream)
                logger.warning("%s stream error: %s; reconnecting in %.1fs", handle.stream, e, delay)
                await self._sleep(delay)
            else:
                handle.connected = False
        handle.connected = False
        logger.info("%s stream stopped", handle.stream)

    async def _handle_message(self, handle: SubscriptionHandle, raw: Any, on_candle: CandleHandler) -> None:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug("%s: dropping non-JSON frame", handle.stream)
            return
        if isinstance(data, dict) and "data" in data:
            data = data["data"]
        if not isinstance(data, dict) or data.get("e") != "kline":
            return
        kline = data.get("k") or {}
        event_ts = data.get("E")
        if event_ts:
            metrics.update_stream_lag(handle.stream, max(0.0, time.time() - int(event_ts) / 1000.0))
        if not kline.get("x"):
            return
        candle = Candle.from_kline(kline)
        result = on_candle(candle)
        if inspect.isawaitable(result):
            await result


class UserDataStream:
    """Account event stream (listenKey) feeding exchange order updates.

    The listenKey is kept alive on a timer and re-created when the stream
    reports it expired or the connection drops.
    """

    def __init__(
        self,
        rest: BinanceRESTClient,
        on_event: Callable[[Mapping[str, Any]], None],
        url: Optional[str] = None,
        keepalive_interval_s: float = 30 * 60,
        reconnect_policy: Optional[RetryPolicy] = None,
        connect: Callable[..., Any] = websockets.connect,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self._rest = rest
        self.on_event = on_event
        self.url = (url or _default_ws_url()).rstrip("/")
        self.keepalive_interval_s = keepalive_interval_s
        self.reconnect_policy = reconnect_policy or _reconnect_policy()
        self._connect = connect
        self._sleep = sleep
        self._listen_key: Optional[str] = None
        self.running = False
        self._tasks: List[asyncio.Task] = []

    async def start(self) -> None:
        if not self._rest.api_key:
            logger.info("No API key; user data stream disabled")
            return
        self.running = True
        self._tasks = [
            asyncio.create_task(self._run(), name="user-data"),
            asyncio.create_task(self._keepalive_loop(), name="user-data-keepalive"),
        ]

    async def stop(self) -> None:
        self.running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        if self._listen_key:
            try:
                await self._rest.close_listen_key()
            except (BinanceAPIError, OSError) as e:
                logger.debug("closing listenKey failed: %s", e)
            self._listen_key = None

    async def _keepalive_loop(self) -> None:
        while self.running:
            await self._sleep(self.keepalive_interval_s)
            if not self._listen_key:
                continue
            try:
                await self._rest.keepalive_listen_key()
            except Exception as e:
                logger.error("listenKey keepalive failed: %s", e)
                self._listen_key = None

    async def _run(self) -> None:
        backoff_index = 0
        while self.running:
            try:
                if not self._listen_key:
                    self._listen_key = await self._rest.create_listen_key()
                    if not self._listen_key:
                        raise ConnectionError("exchange returned no listenKey")
                    logger.info("Obtained listenKey for user data stream")
                async with self._connect(f"{self.url}/ws/{self._listen_key}", ping_interval=20) as ws:
                    first = True
                    while self.running:
                        raw = await ws.recv()
                        if first:
                            first = False
                            backoff_index = 0
                        event = json.loads(raw)
                        if isinstance(event, dict) and "data" in event:
                            event = event["data"]
                        if not isinstance(event, dict):
                            continue
                        if event.get("e") == "listenKeyExpired":
                            self._listen_key = None
                            raise ConnectionError("listenKey expired")
                        self.on_event(event)
            except asyncio.CancelledError:
                break
            except Exception as e:
                if not self.running:
                    break
                delay = self.reconnect_policy.delay_for(backoff_index)
                backoff_index += 1
                metrics.record_reconnect("user_data")
                logger.warning("User data stream error: %s; reconnecting in %.1fs", e, delay)
                await self._sleep(delay)

    def status(self) -> Dict[str, Any]:
        return {"running": self.running, "listen_key": bool(self._listen_key)}
