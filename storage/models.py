from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict

BUY = "buy"
SELL = "sell"
SIGNALS = (BUY, SELL)


@dataclass
class InstrumentState:
    ticker: str
    signal: str
    position: float
    last_update: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'ticker': self.ticker,
            'signal': self.signal,
            'position': self.position,
            'last_update': self.last_update.isoformat(),
        }


@dataclass
class Transaction:
    id: int
    ticker: str
    signal: str
    amount: float
    price: float
    notional_value: float
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'ticker': self.ticker,
            'signal': self.signal,
            'amount': self.amount,
            'price': self.price,
            'notional_value': self.notional_value,
            'timestamp': self.timestamp.isoformat(),
        }


@dataclass
class AccountValueSample:
    total_notional: float
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_notional': self.total_notional,
            'timestamp': self.timestamp.isoformat(),
        }
