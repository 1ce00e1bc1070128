"""Error taxonomy shared by the execution, risk and orchestration layers.

Expected exchange outcomes (rejections, throttling) travel as
``OrderResult`` values; these exceptions are raised only where a caller
cannot continue, or by ``retry_async`` once its attempts are exhausted.
"""
from typing import Optional


class TradingError(Exception):
    """Base class for engine errors."""


class ValidationError(TradingError):
    """Bad signal or configuration, rejected before touching the exchange."""


class TransientNetworkError(TradingError):
    """Timeouts, rate limiting and dropped connections; safe to retry."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ExchangeRejection(TradingError):
    """The exchange refused the request (insufficient balance, size step, ...)."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code
