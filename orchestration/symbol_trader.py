import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from api.metrics import metrics
from config.settings import ShutdownAction, TraderSettings
from execution.errors import TransientNetworkError, ValidationError
from execution.gateway import ExecutionGateway
from execution.retry import RetryPolicy, retry_async
from execution.slippage import SlippageValidator
from execution.types import (
    STATUS_CANCELED,
    STATUS_EXPIRED,
    STATUS_FILLED,
    ErrorKind,
    OrderResult,
    OrderUpdate,
    PositionSide,
)
from monitoring.logging_utils import SymbolLoggerAdapter
from orchestration.events import EventKind, EventSink, Severity, TraderEvent
from orchestration.journal import TradeJournal, TradeRecord
from orchestration.models import (
    Position,
    PositionState,
    ProtectionKind,
    ProtectiveOrder,
)
from orchestration.persistence import StateStore
from risk.equity import SharedEquityManager
from risk.portfolio import PortfolioRiskManager
from risk.risk_manager import RiskManager
from strategy.base import Strategy
from strategy.filters import FilterResult
from strategy.models import Candle, SignalType, TradeSignal


logger = logging.getLogger(__name__)

_QTY_EPSILON = 1e-9
_PRICE_EPSILON = 1e-9
_RISK_EPSILON = 1e-6

# trims keep this share of the remaining room; the trim's own realized loss eats into equity
_RISK_TRIM_MARGIN = 0.99
_RISK_TRIM_ATTEMPTS = 3

SignalGate = Callable[[TradeSignal], FilterResult]


@dataclass(frozen=True)
class CandleMessage:
    candle: Candle


@dataclass(frozen=True)
class SignalMessage:
    signal: TradeSignal


@dataclass(frozen=True)
class OrderUpdateMessage:
    """Wake-up marker; the updates themselves wait in the trader's backlog."""


@dataclass(frozen=True)
class StopMessage:
    action: Optional[ShutdownAction] = None


TraderMessage = Union[CandleMessage, SignalMessage, OrderUpdateMessage, StopMessage]


class SymbolTrader:
    """Owns one symbol's position and drives its order lifecycle.

    Every input (closed candle, injected signal, exchange order update) is
    delivered as a message through one queue and handled strictly in order,
    so no two order operations for the symbol are ever in flight together.
    An unexpected exception while handling a message pauses this trader
    only; order updates keep being tracked while paused.
    """

    def __init__(
        self,
        symbol: str,
        strategy: Strategy,
        gateway: ExecutionGateway,
        risk_manager: RiskManager,
        portfolio_risk: PortfolioRiskManager,
        equity: SharedEquityManager,
        settings: Optional[TraderSettings] = None,
        *,
        interval: str = '',
        state_store: Optional[StateStore] = None,
        journal: Optional[TradeJournal] = None,
        event_sink: Optional[EventSink] = None,
        signal_gate: Optional[SignalGate] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.symbol = symbol
        self.interval = interval
        self.strategy = strategy
        self.gateway = gateway
        self.risk = risk_manager
        self.portfolio_risk = portfolio_risk
        self.equity = equity
        self.settings = settings or TraderSettings()
        self.state_store = state_store
        self.journal = journal
        self.event_sink = event_sink
        self.signal_gate = signal_gate
        self.slippage = SlippageValidator(self.settings.slippage_tolerance_pct)
        self._sleep = sleep
        self.log = SymbolLoggerAdapter(logger, {'symbol': symbol, 'interval': interval})

        self.candles: Deque[Candle] = deque(maxlen=self.settings.candle_window)
        self.position: Optional[Position] = None
        self.state = PositionState.FLAT
        self.paused = False
        self.pause_reason: Optional[str] = None
        self.accepting_signals = True
        self.last_signal: Optional[TradeSignal] = None
        self.last_candle_at: Optional[int] = None

        self._inbox: asyncio.Queue = asyncio.Queue()
        self._updates: Deque[OrderUpdate] = deque()
        self._stopped = asyncio.Event()

        self.risk.update_equity(self.equity.symbol_equity(symbol) or self.risk.equity)
        self.portfolio_risk.register_symbol(symbol, self.risk)
        self.gateway.subscribe_order_updates(self.on_order_update)

    # -- inbox ----------------------------------------------------------------

    def submit_candle(self, candle: Candle) -> None:
        if candle.symbol == self.symbol:
            self._inbox.put_nowait(CandleMessage(candle))

    def submit_signal(self, signal: TradeSignal) -> None:
        self._inbox.put_nowait(SignalMessage(signal))

    def on_order_update(self, update: OrderUpdate) -> None:
        """Gateway callback; may fire from inside a gateway call."""
        if update.symbol != self.symbol:
            return
        self._updates.append(update)
        self._inbox.put_nowait(OrderUpdateMessage())

    def request_stop(self, action: Optional[ShutdownAction] = None) -> None:
        self.accepting_signals = False
        self._inbox.put_nowait(StopMessage(action))

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    async def run(self) -> None:
        self.log.info("Trader started (%s)", type(self.strategy).__name__)
        try:
            while True:
                message = await self._inbox.get()
                metrics.update_queue_depth(f"trader_{self.symbol}", self._inbox.qsize())
                if isinstance(message, StopMessage):
                    await self._shutdown(message.action)
                    break
                await self.process(message)
        finally:
            self._stopped.set()
            self.log.info("Trader stopped")

    async def process(self, message: TraderMessage) -> None:
        """Handle one message; unexpected failures pause this trader."""
        try:
            await self._apply_pending_updates()
            if isinstance(message, CandleMessage):
                await self.handle_candle(message.candle)
            elif isinstance(message, SignalMessage):
                if self._can_trade():
                    await self.dispatch_signal(message.signal)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.log.exception("Unexpected failure while handling %s", type(message).__name__)
            self.pause(f"{type(exc).__name__}: {exc}")

    def _can_trade(self) -> bool:
        return self.accepting_signals and not self.paused

    def pause(self, reason: str) -> None:
        self.paused = True
        self.pause_reason = reason
        metrics.mark_trader_paused(self.symbol, True)
        self.log.critical("Trader paused: %s", reason)
        self._emit(EventKind.ALERT, f"trader paused: {reason}", Severity.CRITICAL)

    def resume(self) -> None:
        if self.paused:
            self.log.warning("Trader resumed (was paused: %s)", self.pause_reason)
        self.paused = False
        self.pause_reason = None
        metrics.mark_trader_paused(self.symbol, False)

    # -- events -----------------------------------------------------------------

    def _emit(self, kind: EventKind, message: str, severity: Severity = Severity.INFO, **data: Any) -> None:
        if self.event_sink is None:
            return
        event = TraderEvent(kind=kind, symbol=self.symbol, message=message, severity=severity, data=data)
        try:
            self.event_sink(event)
        except Exception:
            self.log.exception("Event sink failed for %s event", kind.value)

    def _reject(self, signal: TradeSignal, reason: str, key: str) -> None:
        metrics.record_signal_rejected(self.symbol, key)
        self.log.info("Signal %s rejected: %s", signal.type.value, reason)
        self._emit(EventKind.SIGNAL, f"{signal.type.value} rejected: {reason}", Severity.INFO, rejected=True, reason=key)

    # -- candles and signals ----------------------------------------------------

    async def warmup(self, candles: List[Candle]) -> None:
        for candle in candles:
            self.candles.append(candle)
            self.strategy.warmup(candle)
        if candles:
            self.log.info("Warmed up strategy with %s candles", len(candles))

    async def handle_candle(self, candle: Candle) -> None:
        if candle.symbol != self.symbol:
            return
        self.candles.append(candle)
        self.last_candle_at = candle.close_time
        await self.gateway.on_market_data(candle)
        await self._apply_pending_updates()
        if self.position is not None:
            self.risk.update_mark_price(candle.close)
            self._update_unrealized(candle.close)
        if not self._can_trade():
            return
        signed = self.position.signed_quantity if self.position is not None else 0.0
        signal = self.strategy.analyze(candle, signed, self.symbol)
        if signal is not None:
            await self.dispatch_signal(signal)

    async def dispatch_signal(self, signal: TradeSignal) -> None:
        self.last_signal = signal
        metrics.record_signal(self.symbol, signal.type.value)
        self._emit(EventKind.SIGNAL, f"{signal.type.value} @ {signal.price} ({signal.reason})", price=signal.price)

        if signal.is_entry:
            if self.state is not PositionState.FLAT:
                self._reject(signal, f"position state is {self.state.value}", 'not_flat')
                return
            if self.signal_gate is not None:
                verdict = self.signal_gate(signal)
                if not verdict.approved:
                    self._reject(signal, verdict.reason, 'filter')
                    return
                if verdict.confidence is not None and verdict.confidence != 1.0:
                    signal = signal.with_confidence(signal.confidence * verdict.confidence)
            await self._enter(signal)
            return

        if self.position is None:
            self.log.debug("Ignoring %s without an open position", signal.type.value)
            return
        if signal.type is SignalType.EXIT:
            await self._exit(signal.reason or 'exit signal', signal.price)
            return
        if signal.type is SignalType.PARTIAL_EXIT:
            await self._partial_exit(signal)
        if signal.move_stop_to_breakeven and self.position is not None:
            await self._move_stop_to_breakeven()

    # -- equity -----------------------------------------------------------------

    def _update_unrealized(self, price: float) -> None:
        unrealized = self.position.pnl_at(price) if self.position is not None else 0.0
        symbol_equity = self.equity.update_unrealized(self.symbol, unrealized)
        self._sync_risk_equity(symbol_equity)

    def _book_realized(self, pnl: float) -> None:
        self.equity.record_trade_pnl(self.symbol, pnl)
        mark = self.risk.mark_price
        self._update_unrealized(mark if mark is not None else 0.0)

    def _sync_risk_equity(self, symbol_equity: float) -> None:
        self.risk.update_equity(symbol_equity)
        metrics.update_symbol_equity(self.symbol, symbol_equity)
        metrics.update_portfolio_heat(self.symbol, self.risk.portfolio_heat)
        self._emit(EventKind.EQUITY, f"equity {symbol_equity:.2f}", Severity.DEBUG, equity=symbol_equity)

    def _fees(self, quantity: float, entry: float, exit_price: float) -> float:
        return self.settings.fee_rate * quantity * (entry + exit_price)

    def _persist(self) -> None:
        if self.state_store is None:
            return
        try:
            self.state_store.save_symbol(self.symbol, self.position, self.equity.symbol_equity(self.symbol))
        except OSError as exc:
            self.log.error("Failed to persist state: %s", exc)
            self._emit(EventKind.ALERT, f"state persistence failed: {exc}", Severity.ERROR)

    # -- order helpers ------------------------------------------------------------

    async def _with_retry(self, description: str, call: Callable[[], Any], policy: RetryPolicy,
                          on_retry: Optional[Callable[[int, Any], None]] = None) -> OrderResult:
        result = await retry_async(
            call,
            policy,
            description=f"{self.symbol} {description}",
            should_retry=lambda r: r.retryable,
            on_retry=on_retry,
            sleep=self._sleep,
        )
        if not result.ok:
            kind = result.error_kind.value if result.error_kind else 'error'
            metrics.record_order_failure(self.symbol, kind)
        return result

    async def _market(self, side: str, quantity: float, reduce_only: bool, policy: Optional[RetryPolicy] = None) -> OrderResult:
        client_id = f"{'ex' if reduce_only else 'en'}-{uuid.uuid4().hex[:16]}"
        result = await self._with_retry(
            f"market {side} {quantity}",
            lambda: self.gateway.place_market_order(self.symbol, side, quantity, reduce_only=reduce_only, client_order_id=client_id),
            policy or self.settings.order_retry,
        )
        if result.ok:
            metrics.record_order_placed(self.symbol, 'MARKET')
        return result

    async def _cancel(self, order: ProtectiveOrder) -> bool:
        result = await self._with_retry(
            f"cancel {order.kind.value} {order.order_id}",
            lambda: self.gateway.cancel_order(self.symbol, order.order_id),
            self.settings.order_retry,
        )
        if result.ok or result.error_kind is ErrorKind.NOT_FOUND:
            return True
        self.log.error("Failed to cancel %s order %s: %s", order.kind.value, order.order_id, result)
        return False

    async def _exchange_quantity(self, fallback: float) -> float:
        """Remaining quantity as the exchange reports it."""
        try:
            remote = await self.gateway.get_position(self.symbol)
        except TransientNetworkError as exc:
            self.log.warning("Position query failed, using fill report (%.8f): %s", fallback, exc)
            return max(0.0, fallback)
        if remote is None or self.position is None or remote.side is not self.position.side:
            return 0.0
        return remote.quantity

    # -- protection ---------------------------------------------------------------

    async def _place_leg(self, position: Position, kind: ProtectionKind, price: float, quantity: float) -> Optional[ProtectiveOrder]:
        client_id = position.client_order_id(kind)
        side = position.side.exit_side
        if kind is ProtectionKind.STOP:
            place = lambda: self.gateway.place_stop_order(self.symbol, side, quantity, price, client_order_id=client_id)  # noqa: E731
            policy = self.settings.protective_retry
            on_retry = lambda attempt, outcome: metrics.record_protective_retry(self.symbol)  # noqa: E731
        else:
            place = lambda: self.gateway.place_take_profit_order(self.symbol, side, quantity, price, client_order_id=client_id)  # noqa: E731
            policy = self.settings.order_retry
            on_retry = None
        result = await self._with_retry(f"{kind.value} order", place, policy, on_retry)
        if not result.ok:
            self.log.error("%s placement failed: %s", kind.value, result)
            return None
        ticket = result.ticket
        metrics.record_order_placed(self.symbol, ticket.type if ticket else kind.value)
        order = ProtectiveOrder(
            kind=kind,
            order_id=ticket.id if ticket else client_id,
            quantity=quantity,
            price=price,
            client_order_id=client_id,
        )
        position.protection.set(order, kind)
        return order

    async def _protect(self, position: Position) -> bool:
        """Place the stop (and take-profit) for ``position``'s remaining quantity."""
        if position.stop_loss is None:
            self.log.error("Position has no stop-loss price")
            return False
        if position.protection.stop is None:
            stop = await self._place_leg(position, ProtectionKind.STOP, position.stop_loss, position.quantity)
            if stop is None:
                return False
        if (
            self.settings.place_take_profit
            and position.take_profit is not None
            and position.protection.take_profit is None
        ):
            if await self._place_leg(position, ProtectionKind.TAKE_PROFIT, position.take_profit, position.quantity) is None:
                self.log.warning("Take-profit not placed; position remains protected by its stop")
                self._emit(EventKind.ALERT, "take-profit placement failed", Severity.WARNING)
        return True

    async def replace_protection(self, position: Position, quantity: float, stop_price: float) -> bool:
        """Cancel-and-replace the legs that differ from the target.

        Only stale legs are touched, so re-applying a target that is already
        in place is a no-op and moving the stop leaves the take-profit alone.
        """
        stale = []
        stop = position.protection.stop
        if stop is not None and (
            abs(stop.quantity - quantity) > _QTY_EPSILON or abs(stop.price - stop_price) > _PRICE_EPSILON
        ):
            stale.append(stop)
        take_profit = position.protection.take_profit
        if take_profit is not None and abs(take_profit.quantity - quantity) > _QTY_EPSILON:
            stale.append(take_profit)
        if stop is not None and not stale:
            self.log.debug("Protection already at qty=%s stop=%s", quantity, stop_price)
            return True

        for leg in stale:
            if not await self._cancel(leg):
                self._emit(EventKind.ALERT, f"could not cancel {leg.kind.value} {leg.order_id}", Severity.CRITICAL)
                return False
            position.protection.set(None, leg.kind)
            metrics.record_order_cancelled(self.symbol)

        position.revision += 1
        position.stop_loss = stop_price
        if not await self._protect(position):
            return False
        self.log.info(
            "Protection replaced: stop %s x %.8f (rev %s)",
            stop_price,
            quantity,
            position.revision,
        )
        return True

    async def _cancel_protection(self, position: Position) -> None:
        for leg in position.protection.legs:
            if await self._cancel(leg):
                position.protection.set(None, leg.kind)
                metrics.record_order_cancelled(self.symbol)

    async def _emergency_flatten(self, reason: str) -> None:
        position = self.position
        if position is None:
            return
        self.log.critical("EMERGENCY FLATTEN: %s", reason)
        metrics.record_emergency_flatten(self.symbol, reason.split(':')[0])
        self._emit(EventKind.ALERT, f"emergency flatten: {reason}", Severity.CRITICAL, reason=reason)
        self._transition(PositionState.CLOSING)
        await self._cancel_protection(position)
        result = await self._market(position.side.exit_side, position.quantity, True, self.settings.protective_retry)
        if not result.ok:
            remaining = await self._exchange_quantity(position.quantity)
            if remaining <= _QTY_EPSILON:
                self._finalize_close(None, position.quantity, f"emergency: {reason}", approximate=True)
                return
            self.pause(f"emergency flatten failed ({result}); position of {remaining} left open")
            return
        fill_price = result.avg_price or self.risk.mark_price or position.entry_price
        closed = result.filled_qty or position.quantity
        remaining = await self._exchange_quantity(position.quantity - closed)
        if remaining > _QTY_EPSILON:
            self.pause(f"emergency flatten left {remaining} open")
            return
        self._finalize_close(fill_price, position.quantity, f"emergency: {reason}")

    # -- transitions --------------------------------------------------------------

    def _transition(self, state: PositionState) -> None:
        if state is not self.state:
            self.log.debug("State %s -> %s", self.state.value, state.value)
        self.state = state
        if self.position is not None:
            self.position.status = state

    async def _enter(self, signal: TradeSignal) -> None:
        side = signal.side
        if signal.stop_loss is None:
            self._reject(signal, "entry without stop-loss", 'validation')
            return
        if (signal.price - signal.stop_loss) * side.sign <= 0:
            self._reject(signal, f"stop {signal.stop_loss} on wrong side of entry {signal.price}", 'validation')
            return
        try:
            size = self.risk.calculate_position_size(signal.price, signal.stop_loss, confidence=signal.confidence)
        except ValidationError as exc:
            self._reject(signal, str(exc), 'validation')
            return
        quantity = self.gateway.round_quantity(self.symbol, size.quantity)
        if quantity <= 0:
            self._reject(signal, f"size {size.quantity} rounds to zero", 'size')
            return
        candidate_risk = quantity * size.stop_distance
        refusal = self.risk.entry_refusal(candidate_risk)
        if refusal:
            self._reject(signal, refusal, 'risk')
            return
        decision = self.portfolio_risk.can_open_position(self.symbol, candidate_risk)
        if not decision:
            self._reject(signal, decision.reason, decision.breach.rule if decision.breach else 'portfolio')
            return

        try:
            await self._open_position(signal, side, quantity)
        finally:
            self.portfolio_risk.release_reservation(self.symbol)

    async def _open_position(self, signal: TradeSignal, side: PositionSide, quantity: float) -> None:
        self._transition(PositionState.ENTERING)
        result = await self._market(side.entry_side, quantity, False)
        if not result.ok:
            self._transition(PositionState.FLAT)
            self.log.error("Entry order failed: %s", result)
            self._emit(EventKind.ALERT, f"entry order failed: {result}", Severity.ERROR)
            return

        filled_at = time.monotonic()
        fill_price = result.avg_price or signal.price
        filled = result.filled_qty or quantity
        position = Position(
            symbol=self.symbol,
            side=side,
            quantity=filled,
            entry_price=fill_price,
            stop_loss=signal.stop_loss,
            take_profit=signal.take_profit,
        )
        self.position = position
        self._transition(PositionState.OPEN)
        self.risk.update_mark_price(fill_price)
        self.log.warning("Entry filled %s %.8f @ %s; position UNPROTECTED until stop is placed", side.value, filled, fill_price)

        if (fill_price - signal.stop_loss) * side.sign <= 0:
            # the fill already crossed the stop: no valid stop can rest
            await self._emergency_flatten(f"fill {fill_price} beyond stop {signal.stop_loss}")
            return

        protected = await self._protect(position)
        window = time.monotonic() - filled_at
        metrics.record_unprotected_window(window)
        if not protected:
            await self._emergency_flatten("protective stop could not be placed")
            return
        self.log.info("Protective stop resting after %.3fs unprotected", window)

        self.risk.add_position(position.position_id, side, filled, fill_price, signal.stop_loss)
        # the booked risk replaces the reservation made at the gate
        self.portfolio_risk.release_reservation(self.symbol)
        self._update_unrealized(fill_price)
        self._persist()
        self._emit(
            EventKind.TRADE,
            f"opened {side.value} {filled:.8f} @ {fill_price}",
            quantity=filled,
            price=fill_price,
            stop=signal.stop_loss,
            take_profit=signal.take_profit,
        )

        check = self.slippage.validate(signal.price, fill_price, side.entry_side)
        metrics.record_slippage_bps(check.slippage_bps)
        if not check.acceptable:
            self.log.warning("Entry %s", check.reason)
            self._emit(EventKind.ALERT, f"entry {check.reason}", Severity.WARNING, slippage_pct=check.slippage_pct)
        await self._fit_risk_limits(position)
        if self.position is position and not check.acceptable:
            await self._reevaluate_after_slippage(position)

    def _risk_room(self) -> float:
        """Risk amount still free under the heat cap and the tightest correlation cap; negative when over."""
        room = self.risk.risk_capacity()
        group_room = self.portfolio_risk.group_capacity(self.symbol)
        return room if group_room is None else min(room, group_room)

    async def _fit_risk_limits(self, position: Position) -> None:
        """Shrink ``position`` until its risk at the actual fill fits the heat and correlation caps.

        The gate sized the entry at the signal price; an adverse fill widens
        the stop distance. Each trim realizes a loss, so the check repeats
        on the new equity, and a position that still does not fit is closed.
        """
        reason = 'risk limits exceeded at fill'
        for _ in range(_RISK_TRIM_ATTEMPTS):
            room = self._risk_room()
            if room >= -_RISK_EPSILON:
                return
            per_unit = abs(position.entry_price - position.stop_loss)
            own_risk = per_unit * position.quantity
            keep_risk = (own_risk + room) * _RISK_TRIM_MARGIN
            keep = self.gateway.round_quantity(self.symbol, keep_risk / per_unit) if keep_risk > 0 else 0.0
            self.log.warning(
                "Risk %.2f at fill %s over limits by %.2f; keeping %.8f of %.8f",
                own_risk,
                position.entry_price,
                -room,
                keep,
                position.quantity,
            )
            self._emit(EventKind.ALERT, f"{reason}: trimming to {keep:.8f}", Severity.WARNING, excess_risk=-room)
            if keep <= _QTY_EPSILON:
                await self._exit(reason, None)
                return
            if not await self._reduce(position, position.quantity - keep, None, reason):
                break
            if self.position is not position:
                return
        if self.position is position and self._risk_room() < -_RISK_EPSILON:
            await self._exit(reason, None)

    async def _reevaluate_after_slippage(self, position: Position) -> None:
        if position.take_profit is None or position.stop_loss is None:
            # no reward to weigh; the stop-distance risk was refitted to the caps above
            self.log.warning("No take-profit to re-evaluate reward:risk against; holding at %.8f", position.quantity)
            return
        risk = abs(position.entry_price - position.stop_loss)
        reward = (position.take_profit - position.entry_price) * position.side.sign
        ratio = reward / risk if risk > 0 else 0.0
        if ratio < self.settings.min_reward_risk:
            self.log.warning(
                "Reward:risk %.2f below %.2f after slippage; exiting",
                ratio,
                self.settings.min_reward_risk,
            )
            await self._exit(f"slippage: reward:risk {ratio:.2f} < {self.settings.min_reward_risk}", None)
        else:
            self.log.info("Reward:risk %.2f still acceptable after slippage; holding", ratio)

    async def _partial_exit(self, signal: TradeSignal) -> None:
        position = self.position
        try:
            fraction = signal.exit_fraction()
        except ValidationError as exc:
            self._reject(signal, str(exc), 'validation')
            return
        quantity = self.gateway.round_quantity(self.symbol, position.quantity * fraction)
        if quantity >= position.quantity - _QTY_EPSILON:
            await self._exit(signal.reason or 'partial exit of full size', signal.price)
            return
        if quantity <= 0:
            self.log.warning("Partial exit of %.2f rounds to zero; ignored", fraction)
            return
        await self._reduce(position, quantity, signal.price, signal.reason or 'partial exit')

    async def _reduce(self, position: Position, quantity: float, price: Optional[float], reason: str) -> bool:
        """Close ``quantity`` at market and resize protection to what the exchange says is left.

        Returns False only when the reducing order itself failed.
        """
        result = await self._market(position.side.exit_side, quantity, True)
        if not result.ok:
            self.log.error("Reduce order failed (%s): %s", reason, result)
            self._emit(EventKind.ALERT, f"{reason} failed: {result}", Severity.ERROR)
            return False
        fill_price = result.avg_price or price or self.risk.mark_price or position.entry_price
        remaining = await self._exchange_quantity(position.quantity - (result.filled_qty or quantity))
        closed = position.quantity - remaining
        if remaining <= _QTY_EPSILON:
            await self._cancel_protection(position)
            self._finalize_close(fill_price, position.quantity, reason)
            return True

        pnl = position.pnl_at(fill_price, closed) - self._fees(closed, position.entry_price, fill_price)
        position.realized_pnl += pnl
        self._journal(position, fill_price, closed, pnl, reason, partial=True)
        position.quantity = remaining
        self._transition(PositionState.PARTIALLY_CLOSED)
        self.risk.update_position(position.position_id, quantity=remaining)
        self._book_realized(pnl)

        if not await self.replace_protection(position, remaining, position.stop_loss):
            await self._emergency_flatten(f"protection could not be resized after {reason}")
            return True
        self._persist()
        self._emit(
            EventKind.TRADE,
            f"partial exit {closed:.8f} @ {fill_price}, {remaining:.8f} left",
            quantity=closed,
            price=fill_price,
            pnl=pnl,
            remaining=remaining,
        )
        return True

    async def _move_stop_to_breakeven(self) -> None:
        position = self.position
        target = position.entry_price
        if position.stop_loss is not None and (position.stop_loss - target) * position.side.sign >= 0:
            return
        mark = self.risk.mark_price
        if mark is not None and (mark - target) * position.side.sign <= 0:
            self.log.warning("Mark %s not beyond entry %s; keeping stop at %s", mark, target, position.stop_loss)
            return
        if not await self.replace_protection(position, position.quantity, target):
            await self._emergency_flatten("breakeven stop could not be placed")
            return
        self.risk.update_position(position.position_id, stop_loss=target)
        self._persist()
        self._emit(EventKind.TRADE, f"stop moved to breakeven {target}", stop=target)

    async def _exit(self, reason: str, price: Optional[float]) -> None:
        position = self.position
        if position is None:
            return
        previous = self.state
        self._transition(PositionState.CLOSING)
        result = await self._market(position.side.exit_side, position.quantity, True)
        if not result.ok:
            remaining = await self._exchange_quantity(position.quantity)
            if remaining <= _QTY_EPSILON:
                self.log.warning("Exit rejected but exchange reports flat; closing locally")
                await self._cancel_protection(position)
                self._finalize_close(None, position.quantity, reason, approximate=True)
                return
            self._transition(previous)
            self.log.error("Exit order failed, position stays protected: %s", result)
            self._emit(EventKind.ALERT, f"exit failed: {result}", Severity.ERROR)
            return
        fill_price = result.avg_price or price or self.risk.mark_price or position.entry_price
        remaining = await self._exchange_quantity(position.quantity - (result.filled_qty or position.quantity))
        if remaining > _QTY_EPSILON:
            closed = position.quantity - remaining
            pnl = position.pnl_at(fill_price, closed) - self._fees(closed, position.entry_price, fill_price)
            position.realized_pnl += pnl
            self._journal(position, fill_price, closed, pnl, reason, partial=True)
            position.quantity = remaining
            self.risk.update_position(position.position_id, quantity=remaining)
            self._book_realized(pnl)
            await self._emergency_flatten(f"exit left {remaining} open")
            return
        await self._cancel_protection(position)
        self._finalize_close(fill_price, position.quantity, reason)

    def _journal(self, position: Position, price: Optional[float], quantity: float, pnl: Optional[float],
                 reason: str, partial: bool = False, approximate: bool = False) -> None:
        if self.journal is None:
            return
        self.journal.record(
            TradeRecord(
                position_id=position.position_id,
                symbol=self.symbol,
                side=position.side.value,
                entry_price=position.entry_price,
                exit_price=price,
                quantity=quantity,
                pnl=pnl,
                reason=reason,
                r_multiple=position.r_multiple(pnl, quantity) if pnl is not None else None,
                partial=partial,
                approximate=approximate,
                opened_at=position.opened_at,
            )
        )

    def _finalize_close(self, price: Optional[float], quantity: float, reason: str, approximate: bool = False) -> None:
        position = self.position
        if price is None:
            # closed without a fill report: estimate at the last mark
            price = self.risk.mark_price or position.entry_price
            approximate = True
        pnl = position.pnl_at(price, quantity) - self._fees(quantity, position.entry_price, price)
        position.realized_pnl += pnl
        position.pnl_approximate = position.pnl_approximate or approximate
        self._journal(position, price, quantity, pnl, reason, approximate=approximate)
        self.risk.remove_position(position.position_id)
        self.position = None
        self._transition(PositionState.FLAT)
        self._book_realized(pnl)
        self._persist()
        self.log.info("Position closed (%s): pnl %.2f%s", reason, pnl, ' (approximate)' if approximate else '')
        self._emit(
            EventKind.TRADE,
            f"closed {position.side.value} {quantity:.8f} @ {price} pnl {pnl:.2f} ({reason})",
            quantity=quantity,
            price=price,
            pnl=pnl,
            total_pnl=position.realized_pnl,
            approximate=approximate,
        )

    # -- exchange order updates -----------------------------------------------------

    async def _apply_pending_updates(self) -> None:
        while self._updates:
            update = self._updates.popleft()
            await self._handle_order_update(update)

    async def _handle_order_update(self, update: OrderUpdate) -> None:
        position = self.position
        if position is None:
            return
        leg = position.protection.find(update.order_id) or (
            position.protection.find(update.client_order_id) if update.client_order_id else None
        )
        if leg is None:
            return
        if update.status == STATUS_FILLED:
            await self._on_protective_fill(position, leg, update)
        elif update.status in (STATUS_CANCELED, STATUS_EXPIRED):
            position.protection.set(None, leg.kind)
            self.log.warning("%s order %s was %s outside the trader", leg.kind.value, leg.order_id, update.status)
            if leg.kind is ProtectionKind.STOP:
                position.revision += 1
                if not await self._protect(position):
                    await self._emergency_flatten("stop vanished and could not be re-placed")

    async def _on_protective_fill(self, position: Position, leg: ProtectiveOrder, update: OrderUpdate) -> None:
        price = update.avg_price or leg.price
        position.protection.set(None, leg.kind)
        remaining = await self._exchange_quantity(position.quantity - update.filled_qty)
        reason = 'stop loss' if leg.kind is ProtectionKind.STOP else 'take profit'
        self.log.info("%s filled %.8f @ %s", reason, update.filled_qty, price)
        if remaining <= _QTY_EPSILON:
            # OCO: the sibling leg must not survive the position
            await self._cancel_protection(position)
            self._finalize_close(price, position.quantity, reason)
            return
        closed = position.quantity - remaining
        pnl = position.pnl_at(price, closed) - self._fees(closed, position.entry_price, price)
        position.realized_pnl += pnl
        self._journal(position, price, closed, pnl, f"{reason} (partial fill)", partial=True)
        position.quantity = remaining
        self._transition(PositionState.PARTIALLY_CLOSED)
        self.risk.update_position(position.position_id, quantity=remaining)
        self._book_realized(pnl)
        if not await self.replace_protection(position, remaining, position.stop_loss):
            await self._emergency_flatten("protection could not be resized after partial fill")
            return
        self._persist()

    # -- restore and shutdown ---------------------------------------------------------

    def restore_position(self, position: Position) -> None:
        """Adopt a reconciled position before the trader starts running."""
        self.position = position
        self._transition(PositionState.PARTIALLY_CLOSED if position.quantity < position.initial_quantity - _QTY_EPSILON
                         else PositionState.OPEN)
        if position.stop_loss is not None:
            self.risk.add_position(position.position_id, position.side, position.quantity, position.entry_price, position.stop_loss)
        self.risk.update_mark_price(position.entry_price)
        self.log.info(
            "Restored %s %.8f @ %s (stop %s)",
            position.side.value,
            position.quantity,
            position.entry_price,
            position.stop_loss,
        )
        self._persist()

    async def _shutdown(self, action: Optional[ShutdownAction]) -> None:
        self.accepting_signals = False
        action = action or self.settings.shutdown_action
        try:
            await self._apply_pending_updates()
            await asyncio.wait_for(self._shutdown_action(action), timeout=self.settings.shutdown_timeout_s)
        except asyncio.TimeoutError:
            self.log.error("Shutdown action %s timed out after %ss", action.value, self.settings.shutdown_timeout_s)
            self._emit(EventKind.ALERT, f"shutdown {action.value} timed out", Severity.CRITICAL)
        except Exception:
            self.log.exception("Shutdown action %s failed", action.value)
            self._emit(EventKind.ALERT, f"shutdown {action.value} failed", Severity.CRITICAL)

    async def _shutdown_action(self, action: ShutdownAction) -> None:
        position = self.position
        if position is None:
            return
        if action is ShutdownAction.FLATTEN:
            self.log.info("Shutdown: flattening position")
            await self._exit('shutdown', None)
            return
        if not position.protection.is_protected:
            self.log.warning("Shutdown: position unprotected, placing stop before leaving")
            if not await self._protect(position):
                await self._emergency_flatten("could not protect position at shutdown")
                return
        self.log.info("Shutdown: leaving position protected by stop %s", position.stop_loss)

    def status(self) -> Dict[str, Any]:
        position = self.position
        return {
            'symbol': self.symbol,
            'interval': self.interval,
            'strategy': type(self.strategy).__name__,
            'state': self.state.value,
            'paused': self.paused,
            'pause_reason': self.pause_reason,
            'accepting_signals': self.accepting_signals,
            'position': position.as_dict() if position else None,
            'risk': self.risk.snapshot(),
            'last_signal': {
                'type': self.last_signal.type.value,
                'price': self.last_signal.price,
                'reason': self.last_signal.reason,
            } if self.last_signal else None,
            'last_candle_at': self.last_candle_at,
        }
