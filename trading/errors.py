from typing import Optional


class TradingError(Exception):
    """Base class for signal-processing failures surfaced to the caller."""

    kind = "trading"


class InvalidSignalError(TradingError):
    kind = "invalid_signal"


class InsufficientBalanceError(TradingError):
    kind = "insufficient_balance"


class NormalizationError(TradingError):
    kind = "normalization"


class OpenOrderError(TradingError):
    kind = "open_order"


class MarketDataError(TradingError):
    kind = "market_data"


class ExecutionError(TradingError):
    kind = "execution"


class OrderRejectedError(ExecutionError):
    kind = "order_rejected"

    def __init__(self, message: str, code: Optional[str] = None):
        self.code = code
        super().__init__(message)
