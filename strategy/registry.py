import importlib
from typing import Any, Dict, Mapping, Optional, Type

from execution.errors import ValidationError
from strategy.base import Strategy
from strategy.builtin import AdxTrendStrategy, EmaCrossStrategy, RsiStrategy


BUILTIN_STRATEGIES: Dict[str, Type[Strategy]] = {
    EmaCrossStrategy.name: EmaCrossStrategy,
    RsiStrategy.name: RsiStrategy,
    AdxTrendStrategy.name: AdxTrendStrategy,
}


def resolve_strategy_class(path: str) -> Type[Strategy]:
    """Resolve a built-in name or a ``package.module:ClassName`` path."""
    key = str(path).strip()
    if key.lower() in BUILTIN_STRATEGIES:
        return BUILTIN_STRATEGIES[key.lower()]
    if ':' in key:
        module_name, _, attr = key.partition(':')
    else:
        module_name, _, attr = key.rpartition('.')
    if not module_name or not attr:
        raise ValidationError(f"invalid strategy path: {path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ValidationError(f"cannot import strategy module {module_name!r}: {exc}") from exc
    cls = getattr(module, attr, None)
    if not isinstance(cls, type) or not issubclass(cls, Strategy):
        raise ValidationError(f"{path!r} is not a Strategy subclass")
    return cls


def load_strategy(path: str, params: Optional[Mapping[str, Any]] = None) -> Strategy:
    cls = resolve_strategy_class(path)
    try:
        return cls(**dict(params or {}))
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"invalid parameters for strategy {path!r}: {exc}") from exc
