import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, Optional

from api.alerts import alert_webhook
from config import config
from market.universe import INSTRUMENTS, from_inst_id


logger = logging.getLogger(__name__)

MIN_LOT_SIZE = 0.0001
MAX_LOT_SIZE = 1.0
FALLBACK_LOT_SIZE = 0.01


def lot_precision(lot_size: float) -> int:
    """Decimal places of a lot step: 0.001 -> 3, 1 -> 0."""
    if lot_size <= 0:
        return 0
    exponent = Decimal(repr(lot_size)).normalize().as_tuple().exponent
    return max(0, -int(exponent))


def valid_lot_size(value: Optional[float]) -> bool:
    return value is not None and MIN_LOT_SIZE < value <= MAX_LOT_SIZE


@dataclass(frozen=True)
class InstrumentMetadata:
    ticker: str
    lot_size: float
    precision: int
    from_exchange: bool = False


class InstrumentMetadataCache:
    """Lot-size constraints per configured ticker, refreshed once at startup."""

    def __init__(
        self,
        transport,
        tickers: Iterable[str] = INSTRUMENTS,
        defaults: Optional[Dict[str, float]] = None,
        attempts: Optional[int] = None,
        backoff_s: Optional[float] = None,
    ):
        instruments_cfg = config.get('instruments') or {}
        self.transport = transport
        self.tickers = tuple(tickers)
        configured = defaults if defaults is not None else (instruments_cfg.get('default_lot_sizes') or {})
        self.defaults: Dict[str, float] = {k: float(v) for k, v in dict(configured).items()}
        self.attempts = int(attempts or instruments_cfg.get('refresh_attempts', 3))
        self.backoff_s = float(backoff_s if backoff_s is not None else instruments_cfg.get('refresh_backoff_s', 1.0))
        self._data: Dict[str, InstrumentMetadata] = {}
        for ticker in self.tickers:
            self._data[ticker] = self._default(ticker)

    def _default(self, ticker: str) -> InstrumentMetadata:
        lot = self.defaults.get(ticker, FALLBACK_LOT_SIZE)
        if not valid_lot_size(lot):
            lot = FALLBACK_LOT_SIZE
        return InstrumentMetadata(ticker=ticker, lot_size=lot, precision=lot_precision(lot))

    async def refresh(self) -> Optional[Exception]:
        """Fetch lot sizes; returns the last transport error instead of raising."""
        instruments = None
        last_error: Optional[Exception] = None
        for attempt in range(1, self.attempts + 1):
            try:
                instruments = await self.transport.fetch_instruments("SPOT")
                break
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "Instrument refresh attempt %s/%s failed: %s",
                    attempt,
                    self.attempts,
                    exc,
                )
                if attempt < self.attempts:
                    await asyncio.sleep(self.backoff_s * attempt)

        if instruments is None:
            logger.error("Instrument refresh failed; using default lot sizes: %s", last_error)
            await alert_webhook.metadata_alert(len(self.tickers))
            return last_error

        fetched = {from_inst_id(info.inst_id): info for info in instruments}
        resolved = 0
        for ticker in self.tickers:
            info = fetched.get(ticker)
            lot = info.lot_sz if info else None
            if valid_lot_size(lot):
                self._data[ticker] = InstrumentMetadata(
                    ticker=ticker,
                    lot_size=lot,
                    precision=lot_precision(lot),
                    from_exchange=True,
                )
                resolved += 1
            else:
                if info is not None:
                    logger.warning("Invalid lot size %s for %s; using default", lot, ticker)
                self._data[ticker] = self._default(ticker)

        if resolved < len(self.tickers):
            logger.warning(
                "Resolved lot sizes for %s/%s instruments",
                resolved,
                len(self.tickers),
            )
            await alert_webhook.metadata_alert(len(self.tickers) - resolved)
        else:
            logger.info("Resolved lot sizes for all %s instruments", resolved)
        return None

    def get(self, ticker: str) -> InstrumentMetadata:
        meta = self._data.get(ticker)
        if meta is None:
            meta = self._default(ticker)
            self._data[ticker] = meta
        return meta

    def lot_size(self, ticker: str) -> float:
        return self.get(ticker).lot_size

    def precision(self, ticker: str) -> int:
        return self.get(ticker).precision

    def format_size(self, ticker: str, size: float) -> str:
        return f"{size:.{self.precision(ticker)}f}"
