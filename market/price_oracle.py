import asyncio
import logging
import time
from typing import Dict, Iterable, Optional

from api.metrics import metrics
from config import config
from market.universe import to_inst_id


logger = logging.getLogger(__name__)


class PriceOracle:
    """Spot quotes with a bounded fan-out for bulk fetches.

    ``price`` never raises: an unreachable endpoint, an error envelope or an
    empty/malformed payload yields ``0.0``.
    """

    def __init__(self, transport, max_concurrency: Optional[int] = None, min_spacing_ms: Optional[float] = None):
        oracle_cfg = config.get('oracle') or {}
        self.transport = transport
        self.max_concurrency = int(max_concurrency or oracle_cfg.get('max_concurrency', 3))
        spacing = min_spacing_ms if min_spacing_ms is not None else oracle_cfg.get('min_spacing_ms', 333)
        self.min_spacing_s = max(0.0, float(spacing) / 1000.0)
        self._semaphore = asyncio.Semaphore(self.max_concurrency)
        self._spacing_lock = asyncio.Lock()
        self._last_start = 0.0

    async def _throttle(self) -> None:
        async with self._spacing_lock:
            wait = self._last_start + self.min_spacing_s - time.monotonic()
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_start = time.monotonic()

    async def price(self, ticker: str) -> float:
        try:
            quote = await self.transport.fetch_ticker(to_inst_id(ticker))
        except Exception as exc:
            logger.error("Price fetch failed for %s: %s", ticker, exc)
            metrics.record_price_failure(ticker)
            return 0.0
        if quote is None:
            logger.warning("No price data for %s", ticker)
            metrics.record_price_failure(ticker)
            return 0.0
        return quote.last

    async def _bounded_price(self, ticker: str) -> float:
        async with self._semaphore:
            await self._throttle()
            return await self.price(ticker)

    async def prices(self, tickers: Iterable[str]) -> Dict[str, float]:
        tickers = list(dict.fromkeys(tickers))
        results = await asyncio.gather(*(self._bounded_price(t) for t in tickers))
        return dict(zip(tickers, results))
