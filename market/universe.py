from typing import Optional, Tuple

QUOTE_CURRENCY = "USDT"

INSTRUMENTS: Tuple[str, ...] = (
    "BTCUSDT",
    "TRXUSDT",
    "SUIUSDT",
    "SOLUSDT",
    "NEARUSDT",
    "TONUSDT",
    "ICPUSDT",
)


def is_known(ticker: str) -> bool:
    return ticker in INSTRUMENTS


def to_inst_id(ticker: str) -> str:
    """BTCUSDT -> BTC-USDT"""
    base = ticker.upper()
    if base.endswith(QUOTE_CURRENCY):
        base = base[: -len(QUOTE_CURRENCY)]
    return f"{base}-{QUOTE_CURRENCY}"


def from_inst_id(inst_id: str) -> str:
    return inst_id.replace("-", "").upper()


def ticker_for_ccy(ccy: str) -> Optional[str]:
    ticker = f"{ccy.upper()}{QUOTE_CURRENCY}"
    if ticker in INSTRUMENTS:
        return ticker
    return None
