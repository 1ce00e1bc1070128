import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Mapping, Optional

import asyncpg

from api.metrics import metrics


logger = logging.getLogger(__name__)

_SCHEMA = '''
CREATE TABLE IF NOT EXISTS trade_journal (
    trade_id TEXT PRIMARY KEY,
    position_id TEXT NOT NULL,
    symbol TEXT NOT NULL,
    side TEXT NOT NULL,
    entry_price DOUBLE PRECISION NOT NULL,
    exit_price DOUBLE PRECISION,
    quantity DOUBLE PRECISION NOT NULL,
    pnl DOUBLE PRECISION,
    r_multiple DOUBLE PRECISION,
    reason TEXT,
    partial BOOLEAN NOT NULL DEFAULT FALSE,
    approximate BOOLEAN NOT NULL DEFAULT FALSE,
    opened_at TIMESTAMPTZ,
    closed_at TIMESTAMPTZ NOT NULL
)
'''


@dataclass(frozen=True)
class TradeRecord:
    position_id: str
    symbol: str
    side: str
    entry_price: float
    exit_price: Optional[float]
    quantity: float
    pnl: Optional[float]
    reason: str
    r_multiple: Optional[float] = None
    partial: bool = False
    approximate: bool = False
    opened_at: Optional[float] = None
    closed_at: float = field(default_factory=time.time)
    trade_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _ts(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class TradeJournal:
    """Closed and partial trade log, flushed to PostgreSQL when enabled."""

    def __init__(self, db_config: Optional[Mapping[str, Any]] = None, recent_limit: int = 500):
        self.db_config = dict(db_config or {})
        self.enabled = bool(self.db_config.get('enabled', False))
        self.pool = None
        self.buffer: List[TradeRecord] = []
        self.recent: Deque[TradeRecord] = deque(maxlen=recent_limit)
        self.batch_size = int(self.db_config.get('batch_size', 100))
        self.flush_interval = float(self.db_config.get('flush_interval_s', 5))
        self.max_buffer_size = int(self.db_config.get('max_buffer', 1000))
        self.running = False
        self._auto_task: Optional[asyncio.Task] = None

    async def initialize(self):
        if not self.enabled:
            logger.info("Trade journal running in memory only (database disabled)")
            return
        self.pool = await asyncpg.create_pool(
            host=self.db_config.get('host', 'localhost'),
            port=int(self.db_config.get('port', 5432)),
            database=self.db_config.get('database'),
            user=self.db_config.get('user'),
            password=self.db_config.get('password'),
            min_size=1,
            max_size=4,
        )
        async with self.pool.acquire() as conn:
            await conn.execute(_SCHEMA)

    def record(self, trade: TradeRecord) -> None:
        self.recent.append(trade)
        logger.info(
            "Trade %s %s qty=%.6f entry=%.4f exit=%s pnl=%s%s (%s)",
            trade.symbol,
            trade.side,
            trade.quantity,
            trade.entry_price,
            trade.exit_price,
            f"{trade.pnl:.2f}" if trade.pnl is not None else 'unknown',
            ' approx' if trade.approximate else '',
            trade.reason,
        )
        if not self.enabled:
            return
        self.buffer.append(trade)
        self._enforce_bounds()

    def _enforce_bounds(self) -> None:
        if len(self.buffer) > self.max_buffer_size:
            # Drop oldest 20% to relieve pressure
            drop_n = max(int(self.max_buffer_size * 0.2), 1)
            del self.buffer[:drop_n]
            logger.warning("Trade journal buffer full; dropped %s oldest records", drop_n)
        metrics.update_queue_depth('trade_journal', len(self.buffer))

    async def flush(self) -> None:
        if not self.buffer or self.pool is None:
            return
        batch = list(self.buffer)
        try:
            async with self.pool.acquire() as conn:
                await conn.executemany(
                    '''INSERT INTO trade_journal
                       (trade_id, position_id, symbol, side, entry_price, exit_price, quantity,
                        pnl, r_multiple, reason, partial, approximate, opened_at, closed_at)
                       VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
                       ON CONFLICT (trade_id) DO NOTHING''',
                    [
                        (
                            t.trade_id,
                            t.position_id,
                            t.symbol,
                            t.side,
                            t.entry_price,
                            t.exit_price,
                            t.quantity,
                            t.pnl,
                            t.r_multiple,
                            t.reason,
                            t.partial,
                            t.approximate,
                            _ts(t.opened_at),
                            _ts(t.closed_at),
                        )
                        for t in batch
                    ],
                )
        except (asyncpg.PostgresError, OSError) as exc:
            logger.error("Trade journal flush failed (%s records kept): %s", len(batch), exc)
            return
        del self.buffer[:len(batch)]
        metrics.update_queue_depth('trade_journal', len(self.buffer))

    async def auto_flush_loop(self):
        self.running = True
        try:
            while self.running:
                try:
                    await asyncio.sleep(self.flush_interval)
                except asyncio.CancelledError:
                    break
                await self.flush()
        finally:
            await self.flush()

    async def start(self):
        await self.initialize()
        if self.enabled and self._auto_task is None:
            self._auto_task = asyncio.create_task(self.auto_flush_loop())

    async def stop(self):
        self.running = False
        if self._auto_task is not None:
            self._auto_task.cancel()
            await asyncio.gather(self._auto_task, return_exceptions=True)
            self._auto_task = None
        if self.pool is not None:
            await self.flush()
            await self.pool.close()
            self.pool = None
