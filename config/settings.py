"""Typed, validated views over the raw configuration sections."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from config.config_loader import Config, as_plain
from execution.errors import ValidationError
from execution.retry import RetryPolicy
from strategy.filters import FilterMode


DEFAULT_DRAWDOWN_CURVE: Tuple[Tuple[float, float], ...] = (
    (5.0, 0.9),
    (10.0, 0.75),
    (15.0, 0.5),
    (20.0, 0.25),
)


class _ParsedEnum(Enum):
    @classmethod
    def parse(cls, value: Any):
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            allowed = ', '.join(member.value for member in cls)
            raise ValidationError(f"invalid {cls.__name__} {value!r} (expected one of: {allowed})") from exc


class DailyResetMode(_ParsedEnum):
    UTC_DAY = 'utc_day'
    ROLLING_24H = 'rolling_24h'


class AllocationMode(_ParsedEnum):
    EQUAL = 'equal'
    WEIGHTED = 'weighted'
    DYNAMIC = 'dynamic'


class StrategyRole(_ParsedEnum):
    PRIMARY = 'primary'
    FILTER = 'filter'


class ShutdownAction(_ParsedEnum):
    FLATTEN = 'flatten'
    LEAVE_PROTECTED = 'leave_protected'


def _pct(name: str, value: Any, upper: float = 100.0, allow_zero: bool = False) -> float:
    number = float(value)
    low_ok = number >= 0 if allow_zero else number > 0
    if not low_ok or number > upper:
        raise ValidationError(f"{name} must be within {'[' if allow_zero else '('}0, {upper}], got {number}")
    return number


@dataclass(frozen=True)
class RiskSettings:
    risk_per_trade_pct: float = 1.5
    max_portfolio_heat_pct: float = 15.0
    max_drawdown_pct: float = 20.0
    max_daily_drawdown_pct: float = 3.0
    atr_stop_multiplier: float = 2.5
    minimum_equity: float = 0.0
    drawdown_curve: Tuple[Tuple[float, float], ...] = DEFAULT_DRAWDOWN_CURVE
    daily_reset: DailyResetMode = DailyResetMode.UTC_DAY

    def __post_init__(self) -> None:
        _pct('risk_per_trade_pct', self.risk_per_trade_pct)
        _pct('max_portfolio_heat_pct', self.max_portfolio_heat_pct)
        _pct('max_drawdown_pct', self.max_drawdown_pct)
        _pct('max_daily_drawdown_pct', self.max_daily_drawdown_pct)
        if self.atr_stop_multiplier < 0:
            raise ValidationError("atr_stop_multiplier must be non-negative")
        curve = tuple(sorted((float(t), float(m)) for t, m in self.drawdown_curve))
        previous = 1.0
        for threshold, multiplier in curve:
            if threshold <= 0 or not 0 < multiplier <= 1.0:
                raise ValidationError(f"invalid drawdown curve point ({threshold}, {multiplier})")
            if multiplier > previous:
                raise ValidationError("drawdown curve multipliers must be non-increasing")
            previous = multiplier
        object.__setattr__(self, 'drawdown_curve', curve)
        object.__setattr__(self, 'daily_reset', DailyResetMode.parse(self.daily_reset))

    @classmethod
    def from_config(cls, section: Optional[Mapping[str, Any]]) -> 'RiskSettings':
        data = as_plain(section) or {}
        curve = data.get('drawdown_curve')
        if isinstance(curve, Mapping):
            curve = tuple(curve.items())
        elif curve:
            curve = tuple((point['drawdown_pct'], point['multiplier']) if isinstance(point, Mapping) else tuple(point)
                          for point in curve)
        return cls(
            risk_per_trade_pct=float(data.get('risk_per_trade_pct', cls.risk_per_trade_pct)),
            max_portfolio_heat_pct=float(data.get('max_portfolio_heat_pct', cls.max_portfolio_heat_pct)),
            max_drawdown_pct=float(data.get('max_drawdown_pct', cls.max_drawdown_pct)),
            max_daily_drawdown_pct=float(data.get('max_daily_drawdown_pct', cls.max_daily_drawdown_pct)),
            atr_stop_multiplier=float(data.get('atr_stop_multiplier', cls.atr_stop_multiplier)),
            minimum_equity=float(data.get('minimum_equity', cls.minimum_equity)),
            drawdown_curve=curve or DEFAULT_DRAWDOWN_CURVE,
            daily_reset=data.get('daily_reset', DailyResetMode.UTC_DAY.value),
        )


@dataclass(frozen=True)
class PortfolioRiskSettings:
    max_concurrent_positions: int = 5
    max_correlated_risk_pct: float = 10.0
    max_total_drawdown_pct: Optional[float] = 25.0
    correlation_groups: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    group_limits_pct: Mapping[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if int(self.max_concurrent_positions) < 1:
            raise ValidationError("max_concurrent_positions must be >= 1")
        _pct('max_correlated_risk_pct', self.max_correlated_risk_pct)
        if self.max_total_drawdown_pct is not None:
            _pct('max_total_drawdown_pct', self.max_total_drawdown_pct)
        groups = {
            str(name): tuple(str(symbol).upper() for symbol in symbols)
            for name, symbols in dict(self.correlation_groups).items()
        }
        for name, limit in dict(self.group_limits_pct).items():
            if name not in groups:
                raise ValidationError(f"limit configured for unknown correlation group {name!r}")
            _pct(f'group limit {name}', limit)
        object.__setattr__(self, 'correlation_groups', groups)

    def limit_for(self, group: str) -> float:
        return float(self.group_limits_pct.get(group, self.max_correlated_risk_pct))

    @classmethod
    def from_config(cls, section: Optional[Mapping[str, Any]]) -> 'PortfolioRiskSettings':
        data = as_plain(section) or {}
        groups: Dict[str, Tuple[str, ...]] = {}
        limits: Dict[str, float] = {}
        for name, spec in (data.get('correlation_groups') or {}).items():
            # either a plain symbol list or {symbols: [...], max_risk_pct: x}
            if isinstance(spec, Mapping):
                groups[name] = tuple(spec.get('symbols') or ())
                if spec.get('max_risk_pct') is not None:
                    limits[name] = float(spec['max_risk_pct'])
            else:
                groups[name] = tuple(spec or ())
        total_dd = data.get('max_total_drawdown_pct', cls.max_total_drawdown_pct)
        return cls(
            max_concurrent_positions=int(data.get('max_concurrent_positions', cls.max_concurrent_positions)),
            max_correlated_risk_pct=float(data.get('max_correlated_risk_pct', cls.max_correlated_risk_pct)),
            max_total_drawdown_pct=float(total_dd) if total_dd is not None else None,
            correlation_groups=groups,
            group_limits_pct=limits,
        )


@dataclass(frozen=True)
class TradingPairConfig:
    symbol: str
    interval: str = '4h'
    role: StrategyRole = StrategyRole.PRIMARY
    strategy: str = 'ema_cross'
    params: Mapping[str, Any] = field(default_factory=dict)
    filter: Optional[str] = None
    filter_mode: Optional[FilterMode] = None
    filter_params: Mapping[str, Any] = field(default_factory=dict)
    weight_pct: Optional[float] = None
    volatility: Optional[float] = None

    def __post_init__(self) -> None:
        if not self.symbol:
            raise ValidationError("trading pair requires a symbol")
        object.__setattr__(self, 'symbol', self.symbol.upper())
        object.__setattr__(self, 'role', StrategyRole.parse(self.role))
        if self.role is StrategyRole.FILTER:
            if self.filter_mode is None:
                raise ValidationError(f"{self.symbol}: filter role requires filter_mode")
            object.__setattr__(self, 'filter_mode', FilterMode.parse(self.filter_mode))
            if self.filter is None:
                object.__setattr__(self, 'filter', self.strategy)
        if self.weight_pct is not None:
            _pct(f'{self.symbol} weight_pct', self.weight_pct)
        if self.volatility is not None and self.volatility <= 0:
            raise ValidationError(f"{self.symbol}: volatility must be positive")

    @property
    def key(self) -> str:
        return f"{self.symbol}:{self.interval}:{self.role.value}"

    @classmethod
    def from_config(cls, data: Mapping[str, Any]) -> 'TradingPairConfig':
        data = as_plain(data)
        return cls(
            symbol=str(data.get('symbol', '')),
            interval=str(data.get('interval', '4h')),
            role=data.get('role', StrategyRole.PRIMARY.value),
            strategy=str(data.get('strategy', 'ema_cross')),
            params=dict(data.get('params') or {}),
            filter=data.get('filter'),
            filter_mode=data.get('filter_mode'),
            filter_params=dict(data.get('filter_params') or {}),
            weight_pct=float(data['weight_pct']) if data.get('weight_pct') is not None else None,
            volatility=float(data['volatility']) if data.get('volatility') is not None else None,
        )


@dataclass(frozen=True)
class TraderSettings:
    candle_window: int = 200
    warmup_candles: int = 0
    slippage_tolerance_pct: float = 0.5
    min_reward_risk: float = 1.0
    fee_rate: float = 0.0004
    place_take_profit: bool = True
    protective_retry: RetryPolicy = field(default_factory=RetryPolicy)
    order_retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(max_attempts=3))
    shutdown_action: ShutdownAction = ShutdownAction.LEAVE_PROTECTED
    shutdown_timeout_s: float = 30.0

    def __post_init__(self) -> None:
        if self.candle_window < 1:
            raise ValidationError("candle_window must be >= 1")
        if self.warmup_candles < 0:
            raise ValidationError("warmup_candles must be >= 0")
        _pct('slippage_tolerance_pct', self.slippage_tolerance_pct, allow_zero=True)
        if self.min_reward_risk < 0 or self.fee_rate < 0 or self.shutdown_timeout_s <= 0:
            raise ValidationError("min_reward_risk, fee_rate and shutdown_timeout_s must be positive")
        object.__setattr__(self, 'shutdown_action', ShutdownAction.parse(self.shutdown_action))

    @classmethod
    def from_config(cls, cfg: Config) -> 'TraderSettings':
        trading = cfg.section('trading')
        execution = cfg.section('execution')
        shutdown = cfg.section('shutdown')
        return cls(
            candle_window=int(trading.get('candle_window', cls.candle_window)),
            warmup_candles=int(trading.get('warmup_candles', cls.warmup_candles)),
            slippage_tolerance_pct=float(execution.get('slippage_tolerance_pct', cls.slippage_tolerance_pct)),
            min_reward_risk=float(execution.get('min_reward_risk', cls.min_reward_risk)),
            fee_rate=float(execution.get('fee_rate', cls.fee_rate)),
            place_take_profit=bool(execution.get('place_take_profit', cls.place_take_profit)),
            protective_retry=RetryPolicy.from_config(as_plain(execution.get('protective_retry'))),
            order_retry=RetryPolicy.from_config(as_plain(execution.get('order_retry')) or {'max_attempts': 3}),
            shutdown_action=shutdown.get('action', ShutdownAction.LEAVE_PROTECTED.value),
            shutdown_timeout_s=float(shutdown.get('timeout_s', cls.shutdown_timeout_s)),
        )


@dataclass(frozen=True)
class ReconciliationSettings:
    default_stop_pct: float = 2.0
    quantity_tolerance_pct: float = 1.0
    price_tolerance_pct: float = 1.0

    def __post_init__(self) -> None:
        _pct('default_stop_pct', self.default_stop_pct, upper=50.0)
        _pct('quantity_tolerance_pct', self.quantity_tolerance_pct, allow_zero=True)
        _pct('price_tolerance_pct', self.price_tolerance_pct, allow_zero=True)

    @classmethod
    def from_config(cls, section: Optional[Mapping[str, Any]]) -> 'ReconciliationSettings':
        data = as_plain(section) or {}
        return cls(
            default_stop_pct=float(data.get('default_stop_pct', cls.default_stop_pct)),
            quantity_tolerance_pct=float(data.get('quantity_tolerance_pct', cls.quantity_tolerance_pct)),
            price_tolerance_pct=float(data.get('price_tolerance_pct', cls.price_tolerance_pct)),
        )


@dataclass(frozen=True)
class CoordinatorSettings:
    total_capital: float = 10000.0
    allocation_mode: AllocationMode = AllocationMode.EQUAL
    pairs: Tuple[TradingPairConfig, ...] = ()
    leverage: Optional[int] = None
    margin_mode: Optional[str] = None
    drawdown_alert_pct: float = 10.0
    trader: TraderSettings = field(default_factory=TraderSettings)
    risk: RiskSettings = field(default_factory=RiskSettings)
    portfolio: PortfolioRiskSettings = field(default_factory=PortfolioRiskSettings)
    reconciliation: ReconciliationSettings = field(default_factory=ReconciliationSettings)

    def __post_init__(self) -> None:
        if self.total_capital <= 0:
            raise ValidationError("total_capital must be positive")
        object.__setattr__(self, 'allocation_mode', AllocationMode.parse(self.allocation_mode))
        seen = set()
        for pair in self.pairs:
            if pair.key in seen:
                raise ValidationError(f"duplicate trading pair {pair.key}")
            seen.add(pair.key)
        primaries = {p.symbol for p in self.pairs if p.role is StrategyRole.PRIMARY}
        for pair in self.pairs:
            if pair.role is StrategyRole.FILTER and pair.symbol not in primaries:
                raise ValidationError(f"{pair.symbol}: filter configured without a primary strategy")
        if self.leverage is not None and not 1 <= int(self.leverage) <= 125:
            raise ValidationError("leverage must be within [1, 125]")
        if self.margin_mode is not None and str(self.margin_mode).upper() not in ('ISOLATED', 'CROSSED'):
            raise ValidationError("margin_mode must be ISOLATED or CROSSED")

    @property
    def primary_pairs(self) -> Tuple[TradingPairConfig, ...]:
        return tuple(p for p in self.pairs if p.role is StrategyRole.PRIMARY)

    @classmethod
    def from_config(cls, cfg: Config) -> 'CoordinatorSettings':
        trading = cfg.section('trading')
        exchange = cfg.section('exchange')
        portfolio = cfg.section('portfolio')
        leverage = exchange.get('leverage')
        return cls(
            total_capital=float(trading.get('total_capital', cls.total_capital)),
            allocation_mode=trading.get('allocation_mode', AllocationMode.EQUAL.value),
            pairs=tuple(TradingPairConfig.from_config(p) for p in (as_plain(trading.get('pairs')) or [])),
            leverage=int(leverage) if leverage is not None else None,
            margin_mode=exchange.get('margin_mode'),
            drawdown_alert_pct=float(portfolio.get('drawdown_alert_pct', cls.drawdown_alert_pct)),
            trader=TraderSettings.from_config(cfg),
            risk=RiskSettings.from_config(cfg.section('risk')),
            portfolio=PortfolioRiskSettings.from_config(portfolio),
            reconciliation=ReconciliationSettings.from_config(cfg.section('reconciliation')),
        )
