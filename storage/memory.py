import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List

from market.universe import INSTRUMENTS
from storage.models import AccountValueSample, InstrumentState, SELL, Transaction


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MemoryLedgerStore:
    """In-process ledger used by paper mode and tests.

    Mirrors :class:`storage.ledger.LedgerStore` operation for operation.
    """

    def __init__(self, tickers: Iterable[str] = INSTRUMENTS):
        self.tickers = tuple(tickers)
        self._states: Dict[str, InstrumentState] = {}
        self._transactions: List[Transaction] = []
        self._account_values: List[AccountValueSample] = []
        self._next_id = 1
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        async with self._lock:
            for ticker in self.tickers:
                if ticker not in self._states:
                    self._states[ticker] = InstrumentState(ticker, SELL, 0.0, _now())

    async def close(self) -> None:
        return None

    async def get_state(self, ticker: str) -> InstrumentState:
        state = self._states.get(ticker)
        if state is None:
            raise KeyError(f"No state found for {ticker}")
        return InstrumentState(state.ticker, state.signal, state.position, state.last_update)

    async def get_all_states(self) -> List[InstrumentState]:
        return [await self.get_state(ticker) for ticker in self._states]

    async def update_state(self, ticker: str, signal: str, position: float) -> None:
        async with self._lock:
            if ticker not in self._states:
                raise KeyError(f"No state found for {ticker}")
            self._states[ticker] = InstrumentState(ticker, signal, float(position), _now())

    async def reset_state(self, ticker: str, signal: str, position: float) -> None:
        async with self._lock:
            self._states[ticker] = InstrumentState(ticker, signal, float(position), _now())

    async def record_transaction(self, ticker: str, signal: str, amount: float, price: float) -> Transaction:
        async with self._lock:
            txn = Transaction(
                id=self._next_id,
                ticker=ticker,
                signal=signal,
                amount=float(amount),
                price=float(price),
                notional_value=float(amount) * float(price),
                timestamp=_now(),
            )
            self._next_id += 1
            self._transactions.append(txn)
            return txn

    async def get_transactions(self, ticker: str) -> List[Transaction]:
        return [t for t in self._transactions if t.ticker == ticker]

    async def record_account_value(self, total: float) -> AccountValueSample:
        async with self._lock:
            timestamp = _now()
            if self._account_values and timestamp <= self._account_values[-1].timestamp:
                timestamp = self._account_values[-1].timestamp + timedelta(microseconds=1)
            sample = AccountValueSample(total_notional=float(total), timestamp=timestamp)
            self._account_values.append(sample)
            return sample

    async def get_account_values(self) -> List[AccountValueSample]:
        return list(self._account_values)
