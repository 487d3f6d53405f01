from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from market.universe import QUOTE_CURRENCY, ticker_for_ccy


def _as_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _first_item(envelope: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(envelope, dict):
        return None
    data = envelope.get("data")
    if not isinstance(data, list) or not data:
        return None
    item = data[0]
    return item if isinstance(item, dict) else None


@dataclass
class OrderRequest:
    """Body of ``POST /api/v5/trade/order``."""

    inst_id: str
    side: str
    ord_type: str
    sz: str
    px: Optional[str] = None
    td_mode: str = "cash"
    # base_ccy or quote_ccy; OKX reads a spot market buy sz in quote_ccy when unset
    tgt_ccy: Optional[str] = None

    def to_body(self) -> Dict[str, str]:
        body = {
            "instId": self.inst_id,
            "tdMode": self.td_mode,
            "side": self.side,
            "ordType": self.ord_type,
            "sz": self.sz,
        }
        if self.px is not None:
            body["px"] = self.px
        if self.tgt_ccy is not None:
            body["tgtCcy"] = self.tgt_ccy
        return body


@dataclass
class OrderAck:
    ord_id: str
    s_code: str
    s_msg: str
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def accepted(self) -> bool:
        return self.s_code == "0"

    @classmethod
    def from_payload(cls, envelope: Any) -> Optional["OrderAck"]:
        item = _first_item(envelope)
        if item is None:
            return None
        return cls(
            ord_id=str(item.get("ordId") or ""),
            s_code=str(item.get("sCode", "")),
            s_msg=str(item.get("sMsg") or ""),
            raw=item,
        )


@dataclass
class OrderDetail:
    """Subset of ``GET /api/v5/trade/order`` used for fill confirmation."""

    inst_id: str
    ord_id: str
    state: str
    side: str
    sz: Optional[float]
    acc_fill_sz: Optional[float]
    avg_px: Optional[float]
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, envelope: Any) -> Optional["OrderDetail"]:
        item = _first_item(envelope)
        if item is None:
            return None
        return cls(
            inst_id=str(item.get("instId") or ""),
            ord_id=str(item.get("ordId") or ""),
            state=str(item.get("state") or ""),
            side=str(item.get("side") or ""),
            sz=_as_float(item.get("sz")),
            acc_fill_sz=_as_float(item.get("accFillSz")),
            avg_px=_as_float(item.get("avgPx")),
            raw=item,
        )


@dataclass
class TickerQuote:
    inst_id: str
    last: float

    @classmethod
    def from_payload(cls, envelope: Any) -> Optional["TickerQuote"]:
        item = _first_item(envelope)
        if item is None:
            return None
        last = _as_float(item.get("last"))
        if last is None or last <= 0:
            return None
        return cls(inst_id=str(item.get("instId") or ""), last=last)


@dataclass
class InstrumentInfo:
    inst_id: str
    lot_sz: Optional[float]
    min_sz: Optional[float]
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def list_from_payload(cls, envelope: Any) -> List["InstrumentInfo"]:
        if not isinstance(envelope, dict):
            return []
        items: List[InstrumentInfo] = []
        for item in envelope.get("data") or []:
            if not isinstance(item, dict) or not item.get("instId"):
                continue
            items.append(cls(
                inst_id=str(item["instId"]),
                lot_sz=_as_float(item.get("lotSz")),
                min_sz=_as_float(item.get("minSz")),
                raw=item,
            ))
        return items


@dataclass
class BalanceDetail:
    ccy: str
    cash_bal: float
    avail_bal: float

    @property
    def holding(self) -> float:
        # cashBal is the canonical holding; availBal excludes amounts frozen in orders.
        return self.cash_bal if self.cash_bal else self.avail_bal


@dataclass
class AccountBalance:
    details: Dict[str, BalanceDetail] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, envelope: Any) -> "AccountBalance":
        item = _first_item(envelope)
        if item is None:
            raise ValueError("balance payload has no data")
        details: Dict[str, BalanceDetail] = {}
        for raw in item.get("details") or []:
            ccy = str(raw.get("ccy") or "").upper()
            if not ccy:
                continue
            details[ccy] = BalanceDetail(
                ccy=ccy,
                cash_bal=_as_float(raw.get("cashBal")) or 0.0,
                avail_bal=_as_float(raw.get("availBal")) or 0.0,
            )
        return cls(details=details)

    @property
    def quote_available(self) -> float:
        detail = self.details.get(QUOTE_CURRENCY)
        return detail.avail_bal if detail else 0.0

    @property
    def quote_total(self) -> float:
        detail = self.details.get(QUOTE_CURRENCY)
        return detail.holding if detail else 0.0

    def positions(self) -> Dict[str, float]:
        """Holdings keyed by configured ticker (``ccy + QUOTE``)."""
        positions: Dict[str, float] = {}
        for ccy, detail in self.details.items():
            ticker = ticker_for_ccy(ccy)
            if ticker is None:
                continue
            positions[ticker] = max(detail.holding, 0.0)
        return positions
