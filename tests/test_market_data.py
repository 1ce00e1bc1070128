#!/usr/bin/env python
"""
Websocket reconnect/backoff and market data fan-out tests (no network)
"""
import sys
sys.path.insert(0, '.')

import asyncio
import json

import pytest

from execution.errors import TransientNetworkError
from execution.retry import RetryPolicy
from ingest.market_data_manager import MarketDataManager
from ingest.websocket_client import KlineStreamClient, SubscriptionHandle
from tests.trading_fixtures import candle


BACKOFF = RetryPolicy(max_attempts=1, base_delay_s=1.0, factor=2.0, max_delay_s=32.0)


def kline_message(close=100.0, closed=True, symbol='BTCUSDT', open_time=0):
    return json.dumps({
        'e': 'kline',
        'E': 1,
        's': symbol,
        'k': {
            's': symbol, 'i': '1m', 't': open_time, 'T': open_time + 59_999,
            'o': '99.0', 'h': '101.0', 'l': '98.0', 'c': str(close), 'v': '12.5', 'x': closed,
        },
    })


class FakeSocket:
    def __init__(self, messages):
        self.messages = list(messages)

    async def recv(self):
        if not self.messages:
            raise ConnectionError("connection closed")
        return self.messages.pop(0)


class FakeConnection:
    def __init__(self, socket):
        self.socket = socket

    async def __aenter__(self):
        return self.socket

    async def __aexit__(self, *exc):
        return False


class ScriptedConnect:
    """Each call consumes one entry: an exception to raise or a message list."""

    def __init__(self, script):
        self.script = list(script)
        self.urls = []

    def __call__(self, url, ping_interval=None):
        self.urls.append(url)
        step = self.script.pop(0) if self.script else OSError("refused")
        if isinstance(step, Exception):
            raise step
        return FakeConnection(FakeSocket(step))


class StopAfter:
    """Sleep stand-in that records delays and ends the subscription after ``n``."""

    def __init__(self, n):
        self.n = n
        self.delays = []
        self.handle = None

    async def __call__(self, delay):
        self.delays.append(delay)
        if len(self.delays) >= self.n and self.handle is not None:
            self.handle.stop()


def _client(connect, sleep):
    return KlineStreamClient(
        url='wss://example.test',
        stale_timeout_s=5,
        ping_interval_s=20,
        reconnect_policy=BACKOFF,
        connect=connect,
        sleep=sleep,
    )


def test_reconnect_backoff_doubles():
    async def _run():
        connect = ScriptedConnect([OSError("refused")] * 4)
        sleep = StopAfter(4)
        client = _client(connect, sleep)
        handle = client.subscribe('btcusdt', '1m', lambda c: None)
        sleep.handle = handle
        await asyncio.wait_for(handle.wait(), timeout=5)

        assert sleep.delays == [1.0, 2.0, 4.0, 8.0]
        assert handle.reconnects == 4
        assert connect.urls[0] == 'wss://example.test/ws/btcusdt@kline_1m'

    asyncio.run(_run())


def test_backoff_resets_after_first_message():
    async def _run():
        connect = ScriptedConnect([
            OSError("refused"),
            OSError("refused"),
            [kline_message(closed=False)],
        ])
        sleep = StopAfter(3)
        client = _client(connect, sleep)
        handle = client.subscribe('BTCUSDT', '1m', lambda c: None)
        sleep.handle = handle
        await asyncio.wait_for(handle.wait(), timeout=5)

        assert sleep.delays == [1.0, 2.0, 1.0]
        assert handle.last_message_at is not None
        assert not handle.connected

    asyncio.run(_run())


def test_backoff_is_capped():
    policy = RetryPolicy(max_attempts=1, base_delay_s=1.0, factor=2.0, max_delay_s=32.0)
    assert [policy.delay_for(i) for i in range(8)] == [1, 2, 4, 8, 16, 32, 32, 32]


def test_only_closed_klines_reach_handler():
    async def _run():
        received = []
        connect = ScriptedConnect([[
            kline_message(close=100.0, closed=False),
            'not json',
            json.dumps({'e': 'aggTrade'}),
            kline_message(close=101.5, closed=True),
            json.dumps({'stream': 'btcusdt@kline_1m', 'data': json.loads(kline_message(close=102.0, open_time=60_000))}),
        ]])
        sleep = StopAfter(1)
        client = _client(connect, sleep)

        async def on_candle(candle):
            received.append(candle)

        handle = client.subscribe('BTCUSDT', '1m', on_candle)
        sleep.handle = handle
        await asyncio.wait_for(handle.wait(), timeout=5)

        assert [c.close for c in received] == [101.5, 102.0]
        assert received[0].symbol == 'BTCUSDT'
        assert received[0].interval == '1m'
        assert received[0].close_time == 59_999

    asyncio.run(_run())


def test_stale_connection_is_recycled():
    class SilentSocket:
        async def recv(self):
            await asyncio.sleep(10)

    async def _run():
        sleep = StopAfter(1)

        def connect(url, ping_interval=None):
            return FakeConnection(SilentSocket())

        client = KlineStreamClient(
            url='wss://example.test', stale_timeout_s=0.05, reconnect_policy=BACKOFF, connect=connect, sleep=sleep,
        )
        handle = client.subscribe('BTCUSDT', '1m', lambda c: None)
        sleep.handle = handle
        await asyncio.wait_for(handle.wait(), timeout=5)
        assert sleep.delays == [1.0]

    asyncio.run(_run())


def test_close_stops_all_subscriptions():
    async def _run():
        connect = ScriptedConnect([])
        client = _client(connect, lambda d: asyncio.sleep(0))
        handles = [client.subscribe('BTCUSDT', '1m', lambda c: None), client.subscribe('ETHUSDT', '1m', lambda c: None)]
        await asyncio.sleep(0)
        await asyncio.wait_for(client.close(), timeout=5)
        assert all(not h.active for h in handles)
        assert client.subscriptions == []

    asyncio.run(_run())


# -- market data manager --------------------------------------------------------


class FakeStream:
    def __init__(self):
        self.subscribed = []
        self.closed = False

    def subscribe(self, symbol, interval, on_candle):
        handle = SubscriptionHandle(symbol.upper(), interval)
        handle.on_candle = on_candle
        self.subscribed.append(handle)
        return handle

    async def close(self):
        self.closed = True


class FakeRest:
    def __init__(self, rows=None, error=None):
        self.rows = rows or []
        self.error = error
        self.requested = []

    async def klines(self, symbol, interval, limit=200):
        self.requested.append((symbol, interval, limit))
        if self.error:
            raise self.error
        return self.rows

    async def close(self):
        pass


def _row(open_time, close):
    return [open_time, '1', '2', '0.5', str(close), '10', open_time + 59_999]


def test_one_stream_per_symbol_interval_with_local_fanout():
    async def _run():
        stream = FakeStream()
        manager = MarketDataManager(stream=stream, rest=FakeRest())
        first, second, other = [], [], []
        handle = manager.subscribe('btcusdt', '1m', first.append)
        assert manager.subscribe('BTCUSDT', '1m', second.append) is handle
        manager.subscribe('BTCUSDT', '5m', other.append)
        assert len(stream.subscribed) == 2

        def broken(_candle):
            raise RuntimeError("handler bug")

        manager.subscribe('BTCUSDT', '1m', broken)
        await handle.on_candle(candle(close=5.0))
        assert len(first) == 1 and len(second) == 1
        assert other == []

        manager.unsubscribe('BTCUSDT', '1m')
        assert not handle.active
        await manager.close()
        assert stream.closed

    asyncio.run(_run())


def test_history_drops_forming_candle():
    async def _run():
        rows = [_row(0, 1.0), _row(60_000, 2.0), _row(120_000, 3.0), _row(180_000, 4.0)]
        rest = FakeRest(rows)
        # now is inside the last candle
        manager = MarketDataManager(stream=FakeStream(), rest=rest, clock=lambda: 200.0)
        candles = await manager.load_history('BTCUSDT', '1m', 2)
        assert [c.close for c in candles] == [2.0, 3.0]
        assert rest.requested == [('BTCUSDT', '1m', 3)]
        assert await manager.load_history('BTCUSDT', '1m', 0) == []

    asyncio.run(_run())


def test_history_unavailable_returns_empty():
    async def _run():
        manager = MarketDataManager(stream=FakeStream(), rest=FakeRest(error=TransientNetworkError("timeout")))
        assert await manager.load_history('BTCUSDT', '1m', 10) == []

    asyncio.run(_run())


@pytest.mark.parametrize("limit", [1, 5])
def test_history_limit_respected(limit):
    async def _run():
        rows = [_row(i * 60_000, float(i)) for i in range(10)]
        manager = MarketDataManager(stream=FakeStream(), rest=FakeRest(rows), clock=lambda: 10_000.0)
        candles = await manager.load_history('BTCUSDT', '1m', limit)
        assert len(candles) == limit
        assert candles[-1].close == 9.0

    asyncio.run(_run())
