import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from api.metrics import metrics
from config.settings import ReconciliationSettings
from execution.errors import TransientNetworkError
from execution.gateway import ExecutionGateway
from execution.retry import RetryPolicy, retry_async
from execution.types import ErrorKind, ExchangePosition, OrderKind, OrderTicket, PositionSide
from orchestration.events import EventKind, EventSink, Severity, TraderEvent
from orchestration.journal import TradeJournal, TradeRecord
from orchestration.models import Position, PositionState, ProtectionKind, ProtectiveOrder
from orchestration.persistence import StateStore


logger = logging.getLogger(__name__)

_QTY_EPSILON = 1e-9


@dataclass(frozen=True)
class ReconciliationMismatch:
    symbol: str
    kind: str
    detail: str
    local: Optional[float] = None
    remote: Optional[float] = None


@dataclass
class ReconciledSymbol:
    symbol: str
    position: Optional[Position] = None
    equity: Optional[float] = None
    mismatches: List[ReconciliationMismatch] = field(default_factory=list)
    flattened: bool = False
    # set when a resting leg could not be resized; the trader starts paused
    hold_reason: Optional[str] = None

    @property
    def is_protected(self) -> bool:
        return self.position is None or self.position.protection.is_protected


class ReconciliationService:
    """Startup reconciliation of persisted state against the exchange.

    The exchange is authoritative for quantity and entry price. Local
    positions the exchange no longer holds are cleared with their PnL
    marked approximate; exchange positions without a resting stop get one
    synthesized, and are flattened when even that fails.
    """

    def __init__(
        self,
        gateway: ExecutionGateway,
        state_store: Optional[StateStore] = None,
        settings: Optional[ReconciliationSettings] = None,
        *,
        journal: Optional[TradeJournal] = None,
        event_sink: Optional[EventSink] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.gateway = gateway
        self.state_store = state_store
        self.settings = settings or ReconciliationSettings()
        self.journal = journal
        self.event_sink = event_sink
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3)

    async def reconcile(self, symbols: Iterable[str]) -> Dict[str, ReconciledSymbol]:
        symbols = [s.upper() for s in symbols]
        local = self.state_store.load() if self.state_store is not None else {}
        remote_positions = await retry_async(
            self.gateway.get_open_positions,
            self.retry_policy,
            description="open positions query",
        )
        remote_by_symbol = {p.symbol: p for p in remote_positions}

        for symbol in sorted(set(remote_by_symbol) - set(symbols)):
            logger.warning("Exchange reports a position in unmanaged symbol %s; leaving it untouched", symbol)

        results: Dict[str, ReconciledSymbol] = {}
        for symbol in symbols:
            state = local.get(symbol)
            result = ReconciledSymbol(symbol=symbol, equity=state.equity if state else None)
            open_orders = await retry_async(
                lambda: self.gateway.get_open_orders(symbol),
                self.retry_policy,
                description=f"{symbol} open orders query",
            )
            await self._reconcile_symbol(
                result,
                state.position if state else None,
                remote_by_symbol.get(symbol),
                list(open_orders),
            )
            if self.state_store is not None:
                self.state_store.save_symbol(symbol, result.position, result.equity)
            results[symbol] = result

        total = sum(len(r.mismatches) for r in results.values())
        logger.info("Reconciliation finished: %s symbol(s), %s mismatch(es)", len(results), total)
        return results

    # -- per symbol ---------------------------------------------------------------

    def _mismatch(self, result: ReconciledSymbol, kind: str, detail: str,
                  local: Optional[float] = None, remote: Optional[float] = None,
                  severity: Severity = Severity.WARNING) -> None:
        mismatch = ReconciliationMismatch(result.symbol, kind, detail, local, remote)
        result.mismatches.append(mismatch)
        metrics.record_reconciliation_mismatch(kind)
        logger.log(int(severity), "%s reconciliation mismatch [%s]: %s", result.symbol, kind, detail)
        self._emit(result.symbol, f"reconciliation {kind}: {detail}", severity, kind=kind, local=local, remote=remote)

    def _emit(self, symbol: str, message: str, severity: Severity, **data: Any) -> None:
        if self.event_sink is None:
            return
        try:
            self.event_sink(TraderEvent(EventKind.ALERT, symbol, message, severity, data))
        except Exception:
            logger.exception("Event sink failed during reconciliation")

    async def _reconcile_symbol(
        self,
        result: ReconciledSymbol,
        local: Optional[Position],
        remote: Optional[ExchangePosition],
        open_orders: List[OrderTicket],
    ) -> None:
        if local is not None and local.is_closed:
            local = None

        if remote is None or remote.quantity <= _QTY_EPSILON:
            if local is not None:
                self._clear_local(result, local)
            await self._cancel_orphans(result, open_orders, keep=())
            return

        if local is None:
            self._mismatch(
                result, 'remote_only',
                f"exchange holds {remote.side.value} {remote.quantity} @ {remote.entry_price} with no local record",
                remote=remote.quantity,
            )
            position = self._adopt(remote)
        elif local.side is not remote.side:
            self._mismatch(
                result, 'side',
                f"local {local.side.value} but exchange holds {remote.side.value}",
                local=local.signed_quantity,
                remote=remote.signed_quantity,
            )
            self._clear_local(result, local, emit=False)
            position = self._adopt(remote)
        else:
            position = local
            self._check_tolerances(result, position, remote)

        await self._verify_protection(result, position, remote, open_orders)

    def _adopt(self, remote: ExchangePosition) -> Position:
        return Position(
            symbol=remote.symbol,
            side=remote.side,
            quantity=remote.quantity,
            entry_price=remote.entry_price,
            status=PositionState.OPEN,
        )

    def _clear_local(self, result: ReconciledSymbol, local: Position, emit: bool = True) -> None:
        if emit:
            self._mismatch(
                result, 'local_only',
                f"local {local.side.value} {local.quantity} no longer on the exchange; assumed closed while offline",
                local=local.quantity,
            )
        if self.journal is not None:
            self.journal.record(
                TradeRecord(
                    position_id=local.position_id,
                    symbol=local.symbol,
                    side=local.side.value,
                    entry_price=local.entry_price,
                    exit_price=None,
                    quantity=local.quantity,
                    pnl=None,
                    reason='closed while offline',
                    approximate=True,
                    opened_at=local.opened_at,
                )
            )

    def _check_tolerances(self, result: ReconciledSymbol, position: Position, remote: ExchangePosition) -> None:
        qty_diff_pct = abs(position.quantity - remote.quantity) / remote.quantity * 100.0
        if qty_diff_pct > self.settings.quantity_tolerance_pct:
            self._mismatch(
                result, 'quantity',
                f"local quantity {position.quantity} vs exchange {remote.quantity}; using exchange",
                local=position.quantity,
                remote=remote.quantity,
            )
        if remote.entry_price > 0:
            px_diff_pct = abs(position.entry_price - remote.entry_price) / remote.entry_price * 100.0
            if px_diff_pct > self.settings.price_tolerance_pct:
                self._mismatch(
                    result, 'entry_price',
                    f"local entry {position.entry_price} vs exchange {remote.entry_price}; using exchange",
                    local=position.entry_price,
                    remote=remote.entry_price,
                )
        position.quantity = remote.quantity
        position.entry_price = remote.entry_price
        if position.quantity < position.initial_quantity - _QTY_EPSILON:
            position.status = PositionState.PARTIALLY_CLOSED
        elif position.status in (PositionState.ENTERING, PositionState.CLOSING, PositionState.FLAT):
            position.status = PositionState.OPEN

    # -- protection ---------------------------------------------------------------

    def _synthesized_stop(self, position: Position, mark: Optional[float]) -> float:
        pct = self.settings.default_stop_pct / 100.0
        stop = position.entry_price * (1 - pct * position.side.sign)
        if mark is not None and (mark - stop) * position.side.sign <= 0:
            # price already moved through the default stop; rest it below the mark instead
            stop = mark * (1 - pct * position.side.sign)
        return stop

    @staticmethod
    def _is_stop_for(ticket: OrderTicket, side: PositionSide) -> bool:
        return ticket.type == OrderKind.STOP.value and ticket.side == side.exit_side

    @staticmethod
    def _is_target_for(ticket: OrderTicket, side: PositionSide) -> bool:
        return ticket.type == OrderKind.TAKE_PROFIT.value and ticket.side == side.exit_side

    async def _verify_protection(
        self,
        result: ReconciledSymbol,
        position: Position,
        remote: ExchangePosition,
        open_orders: List[OrderTicket],
    ) -> None:
        live = {ticket.id: ticket for ticket in open_orders}
        by_client = {t.client_order_id: t for t in open_orders if t.client_order_id}

        for leg in list(position.protection.legs):
            ticket = live.get(leg.order_id) or by_client.get(leg.client_order_id or leg.order_id)
            if ticket is None:
                self._mismatch(
                    result, f"missing_{leg.kind.value}",
                    f"{leg.kind.value} order {leg.order_id} is not resting on the exchange",
                )
                position.protection.set(None, leg.kind)
            elif ticket.id != leg.order_id:
                leg.order_id = ticket.id

        if position.protection.stop is None:
            # adopt a resting stop the exchange already has for this side
            for ticket in open_orders:
                if self._is_stop_for(ticket, position.side) and ticket.stop_price:
                    position.protection.stop = ProtectiveOrder(
                        ProtectionKind.STOP, ticket.id, ticket.quantity, ticket.stop_price, ticket.client_order_id
                    )
                    position.stop_loss = ticket.stop_price
                    logger.info("%s: adopted resting stop %s @ %s", result.symbol, ticket.id, ticket.stop_price)
                    break
        if position.protection.take_profit is None:
            for ticket in open_orders:
                if self._is_target_for(ticket, position.side) and ticket.stop_price:
                    position.protection.take_profit = ProtectiveOrder(
                        ProtectionKind.TAKE_PROFIT, ticket.id, ticket.quantity, ticket.stop_price, ticket.client_order_id
                    )
                    position.take_profit = ticket.stop_price
                    break

        resized = False
        cancelled = set()
        for leg in list(position.protection.legs):
            if abs(leg.quantity - position.quantity) <= _QTY_EPSILON:
                continue
            kind = 'protection_oversized' if leg.quantity > position.quantity else 'protection_undersized'
            self._mismatch(
                result, kind,
                f"{leg.kind.value} covers {leg.quantity} but position is {position.quantity}; resizing",
                local=leg.quantity,
                remote=position.quantity,
            )
            if await self._cancel_leg(result.symbol, leg):
                position.protection.set(None, leg.kind)
                cancelled.add(leg.order_id)
                resized = True
                continue
            # the old leg still rests; a second one would double the exit
            self._mismatch(
                result, 'protection_stuck',
                f"{leg.kind.value} {leg.order_id} could not be cancelled; not placing another",
                local=leg.quantity,
                remote=position.quantity,
                severity=Severity.CRITICAL,
            )
            result.hold_reason = f"{leg.kind.value} {leg.order_id} sized {leg.quantity} could not be cancelled"

        keep = set(position.protection.order_ids()) | cancelled
        await self._cancel_orphans(result, open_orders, keep=keep)

        # stuck legs stay tracked, so nothing below places a second one of their kind
        stop = position.protection.stop
        if stop is not None and stop.quantity < position.quantity - _QTY_EPSILON:
            # part of the position has no stop and the stop cannot be resized
            await self._flatten(result, position)
            return

        if position.protection.stop is None:
            await self._place_stop(result, position, remote.mark_price, resized=resized)
        if position.protection.stop is not None and position.protection.take_profit is None and position.take_profit:
            await self._place_leg(position, ProtectionKind.TAKE_PROFIT, position.take_profit)

        if position.protection.stop is None:
            await self._flatten(result, position)
            return
        result.position = position

    async def _place_stop(self, result: ReconciledSymbol, position: Position, mark: Optional[float],
                          resized: bool = False) -> None:
        stop = position.stop_loss
        if stop is None or (mark is not None and (mark - stop) * position.side.sign <= 0):
            stop = self._synthesized_stop(position, mark)
            self._mismatch(
                result, 'missing_stop',
                f"no valid protective stop; synthesizing one at {stop:.8g}",
                remote=position.quantity,
            )
        elif resized:
            logger.info("%s: re-placing stop at %s for %s", result.symbol, stop, position.quantity)
        else:
            self._mismatch(result, 'missing_stop', f"re-placing protective stop at {stop}", remote=position.quantity)
        position.revision += 1
        position.stop_loss = stop
        if position.initial_stop is None:
            position.initial_stop = stop
        await self._place_leg(position, ProtectionKind.STOP, stop)

    async def _cancel_leg(self, symbol: str, leg: ProtectiveOrder) -> bool:
        try:
            outcome = await retry_async(
                lambda: self.gateway.cancel_order(symbol, leg.order_id),
                self.retry_policy,
                description=f"{symbol} reconciliation cancel {leg.kind.value}",
                should_retry=lambda r: r.retryable,
            )
        except TransientNetworkError as exc:
            logger.error("%s: cancel of %s %s failed: %s", symbol, leg.kind.value, leg.order_id, exc)
            return False
        if outcome.ok or outcome.error_kind is ErrorKind.NOT_FOUND:
            metrics.record_order_cancelled(symbol)
            return True
        logger.error("%s: cancel of %s %s failed: %s", symbol, leg.kind.value, leg.order_id, outcome)
        return False

    async def _place_leg(self, position: Position, kind: ProtectionKind, price: float) -> bool:
        client_id = position.client_order_id(kind)
        side = position.side.exit_side
        if kind is ProtectionKind.STOP:
            place = lambda: self.gateway.place_stop_order(position.symbol, side, position.quantity, price, client_order_id=client_id)  # noqa: E731
        else:
            place = lambda: self.gateway.place_take_profit_order(position.symbol, side, position.quantity, price, client_order_id=client_id)  # noqa: E731
        outcome = await retry_async(
            place,
            self.retry_policy,
            description=f"{position.symbol} reconciliation {kind.value}",
            should_retry=lambda r: r.retryable,
        )
        if not outcome.ok:
            logger.error("%s: could not place %s: %s", position.symbol, kind.value, outcome)
            return False
        order_id = outcome.ticket.id if outcome.ticket else client_id
        position.protection.set(ProtectiveOrder(kind, order_id, position.quantity, price, client_id), kind)
        metrics.record_order_placed(position.symbol, outcome.ticket.type if outcome.ticket else kind.value)
        return True

    async def _flatten(self, result: ReconciledSymbol, position: Position) -> None:
        self._mismatch(
            result, 'unprotectable',
            f"could not protect {position.side.value} {position.quantity}; flattening",
            remote=position.quantity,
            severity=Severity.CRITICAL,
        )
        metrics.record_emergency_flatten(result.symbol, 'reconciliation')
        outcome = await retry_async(
            lambda: self.gateway.place_market_order(
                position.symbol, position.side.exit_side, position.quantity, reduce_only=True
            ),
            self.retry_policy,
            description=f"{position.symbol} reconciliation flatten",
            should_retry=lambda r: r.retryable,
        )
        if outcome.ok:
            result.flattened = True
            result.position = None
            if self.journal is not None:
                price = outcome.avg_price
                pnl = position.pnl_at(price) if price else None
                self.journal.record(
                    TradeRecord(
                        position_id=position.position_id,
                        symbol=position.symbol,
                        side=position.side.value,
                        entry_price=position.entry_price,
                        exit_price=price,
                        quantity=position.quantity,
                        pnl=pnl,
                        reason='reconciliation flatten',
                        approximate=True,
                        opened_at=position.opened_at,
                    )
                )
            return
        # keep it visible locally; the trader will start paused
        result.position = position
        logger.critical("%s: flatten failed (%s); position left open and unprotected", result.symbol, outcome)
        self._emit(result.symbol, f"unprotected position could not be flattened: {outcome}", Severity.CRITICAL)

    async def _cancel_orphans(self, result: ReconciledSymbol, open_orders: List[OrderTicket], keep) -> None:
        for ticket in open_orders:
            if ticket.id in keep or not ticket.reduce_only:
                continue
            self._mismatch(result, 'orphan_order', f"cancelling orphan {ticket.type} {ticket.id}")
            try:
                outcome = await self.gateway.cancel_order(result.symbol, ticket.id)
            except TransientNetworkError as exc:
                logger.error("%s: orphan cancel failed: %s", result.symbol, exc)
                continue
            if not outcome.ok:
                logger.warning("%s: orphan cancel of %s returned %s", result.symbol, ticket.id, outcome)
