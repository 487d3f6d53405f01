import logging
from typing import Any, Dict, List, Optional

from api.metrics import start_metrics_server
from config import config
from exchange.paper import PaperExchange
from exchange.transport import OKXTransport
from market.instruments import InstrumentMetadataCache
from market.price_oracle import PriceOracle
from market.universe import INSTRUMENTS
from monitoring.logging_utils import setup_logging
from storage.ledger import LedgerStore
from storage.memory import MemoryLedgerStore
from trading.allocation import AllocationEngine
from trading.executor import OrderExecutor
from trading.processor import SignalOutcome, SignalProcessor


logger = logging.getLogger(__name__)


class TradingSystem:
    """Wire transport, ledger, oracle, metadata and the signal processor together."""

    def __init__(self, config_obj=None, transport=None, store=None, start_metrics: Optional[bool] = None):
        self.config = config_obj or config
        self.exchange_cfg = self.config.get('exchange') or {}
        self.database_cfg = self.config.get('database') or {}
        self.monitoring_cfg = self.config.get('monitoring') or {}
        self.paper_mode = bool(self.exchange_cfg.get('paper', False))
        self.start_metrics = bool(self.monitoring_cfg.get('prometheus_port')) if start_metrics is None else start_metrics
        self.running = False

        self.transport = transport or self._build_transport()
        self.store = store or self._build_store()
        self.oracle = PriceOracle(self.transport)
        self.metadata = InstrumentMetadataCache(self.transport)
        self.allocator = AllocationEngine()
        self.executor = OrderExecutor(self.transport, self.store, self.oracle, self.metadata)
        self.processor = SignalProcessor(
            self.store,
            self.transport,
            self.oracle,
            self.metadata,
            self.allocator,
            self.executor,
        )

    def _build_transport(self):
        if self.paper_mode:
            logger.info("Paper mode: orders fill against the in-process exchange")
            return PaperExchange(
                quote_balance=float(self.exchange_cfg.get('paper_balance', 1000.0)),
                quote_source=OKXTransport(),
            )
        return OKXTransport()

    def _build_store(self):
        backend = str(self.database_cfg.get('backend', 'postgres')).lower()
        if backend == 'memory':
            logger.warning("In-memory ledger selected; state is lost on restart")
            return MemoryLedgerStore(INSTRUMENTS)
        return LedgerStore(INSTRUMENTS)

    async def initialize(self):
        await self.store.initialize()
        error = await self.metadata.refresh()
        if error is not None:
            logger.warning("Continuing with default lot sizes after refresh failure")
        await self.processor.start()

    async def start(self):
        if self.running:
            return
        await self.initialize()
        if self.start_metrics:
            start_metrics_server(int(self.monitoring_cfg.get('prometheus_port')))
        self.running = True
        logger.info("Trading system started (%s mode)", "paper" if self.paper_mode else "live")

    async def stop(self):
        self.running = False
        await self.processor.stop()
        await self.transport.close()
        await self.store.close()
        logger.info("Trading system stopped")

    async def handle_signal(self, ticker: Any, signal: Any) -> SignalOutcome:
        return await self.processor.submit(ticker, signal)

    async def get_states(self) -> List[Dict]:
        return [state.to_dict() for state in await self.store.get_all_states()]

    async def get_transactions(self, ticker: str) -> List[Dict]:
        return [txn.to_dict() for txn in await self.store.get_transactions(ticker)]

    async def get_account_values(self) -> List[Dict]:
        return [sample.to_dict() for sample in await self.store.get_account_values()]

    async def reset_state(self, ticker: str, signal: str, position: float) -> None:
        await self.store.reset_state(ticker, signal, position)


def main():
    import uvicorn

    api_cfg = config.get('api') or {}
    setup_logging()
    uvicorn.run(
        "api.fastapi_server:app",
        host=api_cfg.get('host', '0.0.0.0'),
        port=int(api_cfg.get('port', 8090)),
        log_config=None,
    )


if __name__ == "__main__":
    main()
