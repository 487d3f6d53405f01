import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from api.metrics import metrics
from market.universe import INSTRUMENTS, is_known, to_inst_id
from storage.models import SIGNALS
from trading.allocation import AllocationEngine, MarketSnapshot
from trading.errors import ExecutionError, InvalidSignalError, OpenOrderError, TradingError
from trading.executor import TRANSPORT_ERRORS, OrderExecutor


logger = logging.getLogger(__name__)


@dataclass
class SignalOutcome:
    ticker: str
    signal: str
    status: str
    reason: Optional[str] = None
    side: Optional[str] = None
    size: Optional[float] = None
    price: Optional[float] = None
    order_id: Optional[str] = None
    position: Optional[float] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'ticker': self.ticker,
            'signal': self.signal,
            'status': self.status,
        }
        for key in ('reason', 'side', 'size', 'price', 'order_id', 'position'):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        if self.details:
            data.update(self.details)
        return data


def validate_signal(ticker: Any, signal: Any) -> Tuple[str, str]:
    if not isinstance(ticker, str) or not ticker.strip():
        raise InvalidSignalError("ticker must be a non-empty string")
    if not isinstance(signal, str):
        raise InvalidSignalError("signal must be a string")
    ticker = ticker.strip().upper()
    signal = signal.strip().lower()
    if not is_known(ticker):
        raise InvalidSignalError(f"unknown ticker {ticker}")
    if signal not in SIGNALS:
        raise InvalidSignalError(f"invalid signal {signal}")
    return ticker, signal


class SignalProcessor:
    """Single-consumer queue: one signal runs end to end before the next starts."""

    def __init__(self, store, transport, oracle, metadata, allocator: AllocationEngine, executor: OrderExecutor):
        self.store = store
        self.transport = transport
        self.oracle = oracle
        self.metadata = metadata
        self.allocator = allocator
        self.executor = executor
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._run(), name="signal-processor")
        logger.info("Signal processor started")

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        await asyncio.gather(self._worker, return_exceptions=True)
        self._worker = None
        if self._queue is not None:
            while not self._queue.empty():
                _, _, future = self._queue.get_nowait()
                if not future.done():
                    future.set_exception(ExecutionError("signal processor stopped"))
        logger.info("Signal processor stopped")

    async def submit(self, ticker: Any, signal: Any) -> SignalOutcome:
        ticker, signal = validate_signal(ticker, signal)
        if not self.running:
            await self.start()
        future = asyncio.get_running_loop().create_future()
        await self._queue.put((ticker, signal, future))
        metrics.record_signal(ticker, signal)
        metrics.update_queue_depth(self._queue.qsize())
        return await future

    async def _run(self) -> None:
        while True:
            ticker, signal, future = await self._queue.get()
            metrics.update_queue_depth(self._queue.qsize())
            try:
                outcome = await self.process(ticker, signal)
            except asyncio.CancelledError:
                if not future.done():
                    future.set_exception(ExecutionError("signal processor stopped"))
                raise
            except Exception as exc:
                kind = exc.kind if isinstance(exc, TradingError) else 'internal'
                metrics.record_failure(kind)
                logger.error("Signal %s %s failed: %s", ticker, signal, exc)
                if not future.done():
                    future.set_exception(exc)
            else:
                if not future.done():
                    future.set_result(outcome)
            finally:
                self._queue.task_done()

    async def process(self, ticker: str, signal: str) -> SignalOutcome:
        state = await self.store.get_state(ticker)
        if self.allocator.is_duplicate(state, signal):
            logger.info("Ticker %s already in %s state, skipping order", ticker, signal)
            metrics.record_skip('duplicate')
            return SignalOutcome(ticker, signal, 'skipped', reason='duplicate', position=state.position)

        await self._ensure_no_open_orders(ticker)
        snapshot = await self.snapshot()
        plan = self.allocator.plan(ticker, signal, snapshot)
        if plan is None:
            metrics.record_skip('flat')
            await self.executor.mark_flat(ticker)
            return SignalOutcome(ticker, signal, 'flat', reason='no_position', position=0.0)

        result = await self.executor.execute(plan)
        return SignalOutcome(
            ticker,
            signal,
            'executed',
            reason=plan.reason,
            side=plan.side,
            size=result.transaction.amount,
            price=result.transaction.price,
            order_id=result.order_id,
            position=result.position,
            details={'confirmation': result.status.value, 'reconciled': result.reconciled},
        )

    async def _ensure_no_open_orders(self, ticker: str) -> None:
        inst_id = to_inst_id(ticker)
        try:
            pending = await self.transport.fetch_pending_orders(inst_id)
        except TRANSPORT_ERRORS as exc:
            raise ExecutionError(f"open order check for {ticker} failed: {exc}") from exc
        if pending:
            raise OpenOrderError(f"{len(pending)} open order(s) on {inst_id}; not placing a new order")

    async def snapshot(self) -> MarketSnapshot:
        try:
            balance = await self.transport.fetch_balance()
        except TRANSPORT_ERRORS as exc:
            raise ExecutionError(f"balance query failed: {exc}") from exc
        states = {state.ticker: state for state in await self.store.get_all_states()}
        prices = await self.oracle.prices(INSTRUMENTS)
        return MarketSnapshot(
            available_quote=balance.quote_available,
            total_quote=balance.quote_total,
            positions=balance.positions(),
            prices=prices,
            states=states,
            lot_sizes={ticker: self.metadata.lot_size(ticker) for ticker in INSTRUMENTS},
        )
