import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import asyncpg

from config import config
from market.universe import INSTRUMENTS
from storage.models import AccountValueSample, InstrumentState, SELL, Transaction


logger = logging.getLogger(__name__)


SCHEMA = (
    '''CREATE TABLE IF NOT EXISTS states (
           ticker TEXT PRIMARY KEY,
           signal TEXT NOT NULL,
           position DOUBLE PRECISION NOT NULL DEFAULT 0,
           last_update TIMESTAMPTZ NOT NULL
       )''',
    '''CREATE TABLE IF NOT EXISTS transactions (
           id BIGSERIAL PRIMARY KEY,
           ticker TEXT NOT NULL,
           signal TEXT NOT NULL,
           amount DOUBLE PRECISION NOT NULL CHECK (amount > 0),
           price DOUBLE PRECISION NOT NULL CHECK (price > 0),
           notional_value DOUBLE PRECISION NOT NULL,
           ts TIMESTAMPTZ NOT NULL
       )''',
    '''CREATE INDEX IF NOT EXISTS transactions_ticker_ts ON transactions (ticker, ts)''',
    '''CREATE TABLE IF NOT EXISTS account_values (
           id BIGSERIAL PRIMARY KEY,
           total_notional DOUBLE PRECISION NOT NULL,
           ts TIMESTAMPTZ NOT NULL
       )''',
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _state_from_row(row) -> InstrumentState:
    return InstrumentState(
        ticker=row['ticker'],
        signal=row['signal'],
        position=float(row['position']),
        last_update=row['last_update'],
    )


def _transaction_from_row(row) -> Transaction:
    return Transaction(
        id=int(row['id']),
        ticker=row['ticker'],
        signal=row['signal'],
        amount=float(row['amount']),
        price=float(row['price']),
        notional_value=float(row['notional_value']),
        timestamp=row['ts'],
    )


class LedgerStore:
    """PostgreSQL-backed instrument state, transaction log and account value series."""

    def __init__(self, tickers: Iterable[str] = INSTRUMENTS, db_config: Optional[Dict[str, Any]] = None, pool=None):
        self.tickers = tuple(tickers)
        self.db_config = db_config if db_config is not None else config.database
        self.pool = pool
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        if self.pool is None:
            db_config = self.db_config
            self.pool = await asyncpg.create_pool(
                host=db_config['host'],
                port=int(db_config['port']),
                database=db_config['database'],
                user=db_config['user'],
                password=db_config['password'],
                min_size=int(db_config.get('min_pool', 1)),
                max_size=int(db_config.get('max_pool', 5)),
            )
        async with self._lock:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    for statement in SCHEMA:
                        await conn.execute(statement)
                    await conn.executemany(
                        '''INSERT INTO states (ticker, signal, position, last_update)
                           VALUES ($1, $2, $3, $4)
                           ON CONFLICT (ticker) DO NOTHING''',
                        [(ticker, SELL, 0.0, _now()) for ticker in self.tickers],
                    )
        logger.info("Ledger initialized for %s instruments", len(self.tickers))

    async def close(self):
        if self.pool:
            await self.pool.close()
            self.pool = None

    async def get_state(self, ticker: str) -> InstrumentState:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                'SELECT ticker, signal, position, last_update FROM states WHERE ticker = $1',
                ticker,
            )
        if row is None:
            raise KeyError(f"No state found for {ticker}")
        return _state_from_row(row)

    async def get_all_states(self) -> List[InstrumentState]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch('SELECT ticker, signal, position, last_update FROM states ORDER BY ticker')
        return [_state_from_row(row) for row in rows]

    async def update_state(self, ticker: str, signal: str, position: float) -> None:
        async with self._lock:
            async with self.pool.acquire() as conn:
                result = await conn.execute(
                    'UPDATE states SET signal = $1, position = $2, last_update = $3 WHERE ticker = $4',
                    signal,
                    float(position),
                    _now(),
                    ticker,
                )
        if result.endswith(' 0'):
            raise KeyError(f"No state found for {ticker}")

    async def reset_state(self, ticker: str, signal: str, position: float) -> None:
        async with self._lock:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    '''INSERT INTO states (ticker, signal, position, last_update)
                       VALUES ($1, $2, $3, $4)
                       ON CONFLICT (ticker) DO UPDATE SET
                           signal = EXCLUDED.signal,
                           position = EXCLUDED.position,
                           last_update = EXCLUDED.last_update''',
                    ticker,
                    signal,
                    float(position),
                    _now(),
                )

    async def record_transaction(self, ticker: str, signal: str, amount: float, price: float) -> Transaction:
        async with self._lock:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    '''INSERT INTO transactions (ticker, signal, amount, price, notional_value, ts)
                       VALUES ($1, $2, $3, $4, $5, $6)
                       RETURNING id, ticker, signal, amount, price, notional_value, ts''',
                    ticker,
                    signal,
                    float(amount),
                    float(price),
                    float(amount) * float(price),
                    _now(),
                )
        return _transaction_from_row(row)

    async def get_transactions(self, ticker: str) -> List[Transaction]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                '''SELECT id, ticker, signal, amount, price, notional_value, ts
                   FROM transactions WHERE ticker = $1 ORDER BY ts, id''',
                ticker,
            )
        return [_transaction_from_row(row) for row in rows]

    async def record_account_value(self, total: float) -> AccountValueSample:
        async with self._lock:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    '''INSERT INTO account_values (total_notional, ts)
                       VALUES ($1, GREATEST($2, COALESCE((SELECT MAX(ts) FROM account_values), $2) + INTERVAL '1 microsecond'))
                       RETURNING total_notional, ts''',
                    float(total),
                    _now(),
                )
        return AccountValueSample(total_notional=float(row['total_notional']), timestamp=row['ts'])

    async def get_account_values(self) -> List[AccountValueSample]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch('SELECT total_notional, ts FROM account_values ORDER BY ts, id')
        return [AccountValueSample(total_notional=float(r['total_notional']), timestamp=r['ts']) for r in rows]
