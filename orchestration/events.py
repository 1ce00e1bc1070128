import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Callable, Dict, Mapping, Optional


class EventKind(Enum):
    LOG = 'log'
    SIGNAL = 'signal'
    TRADE = 'trade'
    EQUITY = 'equity'
    STATE = 'state'
    ALERT = 'alert'


class Severity(IntEnum):
    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40
    CRITICAL = 50

    @classmethod
    def parse(cls, value: Any) -> 'Severity':
        if isinstance(value, cls):
            return value
        return cls[str(value).strip().upper()]


@dataclass(frozen=True)
class TraderEvent:
    kind: EventKind
    symbol: str
    message: str
    severity: Severity = Severity.INFO
    data: Mapping[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def as_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind.value,
            'symbol': self.symbol,
            'message': self.message,
            'severity': self.severity.name.lower(),
            'data': dict(self.data),
            'timestamp': self.timestamp,
        }


EventSink = Callable[[TraderEvent], None]


def trade_event(symbol: str, message: str, severity: Severity = Severity.INFO, **data: Any) -> TraderEvent:
    return TraderEvent(EventKind.TRADE, symbol, message, severity, data)


def alert_event(symbol: str, message: str, severity: Severity = Severity.CRITICAL, **data: Any) -> TraderEvent:
    return TraderEvent(EventKind.ALERT, symbol, message, severity, data)


def log_event(symbol: str, message: str, severity: Severity = Severity.INFO, data: Optional[Mapping[str, Any]] = None) -> TraderEvent:
    return TraderEvent(EventKind.LOG, symbol, message, severity, dict(data or {}))
