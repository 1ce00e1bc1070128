import logging
import threading
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional

from config.settings import PortfolioRiskSettings
from risk.equity import SharedEquityManager
from risk.risk_manager import RiskManager


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PortfolioRiskBreach:
    """Why a new entry was refused at the portfolio level."""

    reason: str
    rule: str
    group: Optional[str] = None
    value: Optional[float] = None
    limit: Optional[float] = None


@dataclass(frozen=True)
class RiskDecision:
    allowed: bool
    breach: Optional[PortfolioRiskBreach] = None

    def __bool__(self) -> bool:
        return self.allowed

    @property
    def reason(self) -> Optional[str]:
        return self.breach.reason if self.breach else None


ALLOWED = RiskDecision(True)


@dataclass(frozen=True)
class PortfolioStats:
    total_equity: float
    peak_equity: float
    drawdown_pct: float
    open_positions: int
    group_risk_pct: Mapping[str, float]
    symbol_equities: Mapping[str, float]


class PortfolioRiskManager:
    """Correlation-group and concurrency caps across all symbol traders.

    An allowed entry reserves its candidate risk until the trader either
    commits the position into its RiskManager or releases the reservation,
    so two traders cannot pass the same group cap back to back.
    """

    def __init__(self, settings: PortfolioRiskSettings, equity: SharedEquityManager):
        self.settings = settings
        self.equity = equity
        self._lock = threading.Lock()
        self._managers: Dict[str, RiskManager] = {}
        self._reservations: Dict[str, float] = {}
        self._groups: Dict[str, tuple] = dict(settings.correlation_groups)
        self._limits: Dict[str, float] = dict(settings.group_limits_pct)

    def register_symbol(self, symbol: str, manager: RiskManager) -> None:
        with self._lock:
            self._managers[symbol] = manager

    def unregister_symbol(self, symbol: str) -> None:
        with self._lock:
            self._managers.pop(symbol, None)
            self._reservations.pop(symbol, None)

    def add_correlation_group(self, name: str, symbols: List[str], limit_pct: Optional[float] = None) -> None:
        with self._lock:
            self._groups[name] = tuple(s.upper() for s in symbols)
            if limit_pct is not None:
                self._limits[name] = float(limit_pct)

    def remove_correlation_group(self, name: str) -> None:
        with self._lock:
            self._groups.pop(name, None)
            self._limits.pop(name, None)

    def groups_for(self, symbol: str) -> List[str]:
        return [name for name, members in self._groups.items() if symbol in members]

    def _limit_for(self, group: str) -> float:
        return float(self._limits.get(group, self.settings.max_correlated_risk_pct))

    def _symbol_risk(self, symbol: str) -> float:
        manager = self._managers.get(symbol)
        committed = manager.open_risk if manager else 0.0
        return committed + self._reservations.get(symbol, 0.0)

    def _group_risk(self, group: str) -> float:
        return sum(self._symbol_risk(s) for s in self._groups.get(group, ()))

    def _open_count(self) -> int:
        active = {s for s, m in self._managers.items() if m.has_open_positions}
        active.update(self._reservations)
        return len(active)

    def can_open_position(self, symbol: str, candidate_risk: float, reserve: bool = True) -> RiskDecision:
        total_equity = self.equity.total_equity
        drawdown = self.equity.drawdown_pct
        with self._lock:
            decision = self._evaluate(symbol, candidate_risk, total_equity, drawdown)
            if decision.allowed and reserve:
                self._reservations[symbol] = max(0.0, candidate_risk)
        if not decision.allowed:
            logger.info("%s: portfolio refused entry: %s", symbol, decision.reason)
        return decision

    def _evaluate(self, symbol: str, candidate_risk: float, total_equity: float, drawdown: float) -> RiskDecision:
        limit_dd = self.settings.max_total_drawdown_pct
        if limit_dd is not None and drawdown >= limit_dd:
            return RiskDecision(False, PortfolioRiskBreach(
                f"portfolio drawdown {drawdown:.2f}% >= {limit_dd}%", 'total_drawdown', value=drawdown, limit=limit_dd
            ))

        open_count = self._open_count()
        if symbol not in self._reservations and open_count >= self.settings.max_concurrent_positions:
            return RiskDecision(False, PortfolioRiskBreach(
                f"max concurrent positions reached ({open_count} >= {self.settings.max_concurrent_positions})",
                'max_concurrent',
                value=float(open_count),
                limit=float(self.settings.max_concurrent_positions),
            ))

        if total_equity <= 0:
            return RiskDecision(False, PortfolioRiskBreach("no portfolio equity", 'equity'))

        for group in self.groups_for(symbol):
            limit_pct = self._limit_for(group)
            # a retried check from the same symbol must not count its own reservation twice
            current = self._group_risk(group) - self._reservations.get(symbol, 0.0)
            post_trade_pct = (current + candidate_risk) / total_equity * 100.0
            if post_trade_pct > limit_pct + 1e-9:
                return RiskDecision(False, PortfolioRiskBreach(
                    f"correlation group {group} risk {post_trade_pct:.2f}% would exceed {limit_pct}%",
                    'correlated_risk',
                    group=group,
                    value=post_trade_pct,
                    limit=limit_pct,
                ))
        return ALLOWED

    def group_capacity(self, symbol: str) -> Optional[float]:
        """Risk amount ``symbol`` can still add before its tightest correlation group is full.

        None when the symbol is in no group; negative when a group is already over its cap.
        """
        groups = self.groups_for(symbol)
        if not groups:
            return None
        total_equity = self.equity.total_equity
        with self._lock:
            return min(self._limit_for(g) * total_equity / 100.0 - self._group_risk(g) for g in groups)

    def release_reservation(self, symbol: str) -> None:
        """Drop a pending reservation once the entry was committed or abandoned."""
        with self._lock:
            self._reservations.pop(symbol, None)

    def group_risk_pct(self) -> Dict[str, float]:
        total_equity = self.equity.total_equity
        with self._lock:
            if total_equity <= 0:
                return {group: 0.0 for group in self._groups}
            return {group: self._group_risk(group) / total_equity * 100.0 for group in self._groups}

    def stats(self) -> PortfolioStats:
        snapshot = self.equity.snapshot()
        group_risk = self.group_risk_pct()
        with self._lock:
            open_positions = sum(1 for m in self._managers.values() if m.has_open_positions)
        return PortfolioStats(
            total_equity=snapshot.total_equity,
            peak_equity=snapshot.peak_equity,
            drawdown_pct=snapshot.drawdown_pct,
            open_positions=open_positions,
            group_risk_pct=MappingProxyType(group_risk),
            symbol_equities=MappingProxyType({s: info.equity for s, info in snapshot.symbols.items()}),
        )
