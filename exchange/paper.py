import logging
import uuid
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional

from api.metrics import metrics
from exchange.okx_rest import OKXOrderRejected
from exchange.okx_types import (
    AccountBalance,
    BalanceDetail,
    InstrumentInfo,
    OrderAck,
    OrderDetail,
    OrderRequest,
    TickerQuote,
)
from market.universe import QUOTE_CURRENCY, from_inst_id, to_inst_id


logger = logging.getLogger(__name__)


class PaperExchange:
    """In-process spot exchange with the same surface as :class:`OKXTransport`.

    Orders fill immediately and completely at the current quote. Quotes come
    from :meth:`set_price` or, when a ``quote_source`` transport is supplied,
    from its public ticker endpoint.
    """

    def __init__(
        self,
        quote_balance: float = 1000.0,
        quote_source=None,
        lot_sizes: Optional[Dict[str, float]] = None,
    ) -> None:
        self._balances: Dict[str, float] = {QUOTE_CURRENCY: float(quote_balance)}
        self._prices: Dict[str, float] = {}
        self._lot_sizes: Dict[str, float] = dict(lot_sizes or {})
        self._orders: Dict[str, OrderDetail] = {}
        self._pending: Dict[str, List[str]] = {}
        self.quote_source = quote_source

    @property
    def balances(self) -> Mapping[str, float]:
        return MappingProxyType(self._balances)

    @property
    def orders(self) -> Mapping[str, OrderDetail]:
        return MappingProxyType(self._orders)

    def set_price(self, ticker: str, price: float) -> None:
        self._prices[ticker] = float(price)

    def set_balance(self, ccy: str, amount: float) -> None:
        self._balances[ccy.upper()] = float(amount)

    def add_pending_order(self, inst_id: str, ord_id: Optional[str] = None) -> str:
        ord_id = ord_id or f"paper-{uuid.uuid4().hex[:8]}"
        self._pending.setdefault(inst_id, []).append(ord_id)
        return ord_id

    async def fetch_ticker(self, inst_id: str) -> Optional[TickerQuote]:
        price = self._prices.get(from_inst_id(inst_id))
        if price:
            return TickerQuote(inst_id=inst_id, last=price)
        if self.quote_source is not None:
            return await self.quote_source.fetch_ticker(inst_id)
        return None

    async def fetch_instruments(self, inst_type: str = "SPOT") -> List[InstrumentInfo]:
        if self.quote_source is not None and not self._lot_sizes:
            return await self.quote_source.fetch_instruments(inst_type)
        return [
            InstrumentInfo(inst_id=to_inst_id(ticker), lot_sz=lot, min_sz=lot)
            for ticker, lot in self._lot_sizes.items()
        ]

    async def fetch_balance(self) -> AccountBalance:
        details = {
            ccy: BalanceDetail(ccy=ccy, cash_bal=amount, avail_bal=amount)
            for ccy, amount in self._balances.items()
        }
        return AccountBalance(details=details)

    async def fetch_pending_orders(self, inst_id: str) -> List[str]:
        return list(self._pending.get(inst_id, []))

    async def place_order(self, order: OrderRequest) -> OrderAck:
        ticker = from_inst_id(order.inst_id)
        base = ticker[: -len(QUOTE_CURRENCY)]
        size = float(order.sz)
        quote = await self.fetch_ticker(order.inst_id)
        if quote is None:
            raise OKXOrderRejected("51001", "Instrument price unavailable", "")
        if size <= 0:
            raise OKXOrderRejected("51000", "Parameter sz error", "")

        # Spot market buys default to a quote-currency sz
        quote_sized = order.ord_type == "market" and order.side == "buy" and order.tgt_ccy != "base_ccy"
        if quote_sized:
            size = size / quote.last

        lot = self._lot_sizes.get(ticker)
        if lot and not quote_sized and abs(size / lot - round(size / lot)) > 1e-9:
            raise OKXOrderRejected("51121", "Order quantity must be a multiple of the lot size", "")

        notional = size * quote.last
        if order.side == "buy":
            if notional > self._balances.get(QUOTE_CURRENCY, 0.0) + 1e-9:
                raise OKXOrderRejected("51008", "Order failed. Insufficient USDT balance", "")
            self._balances[QUOTE_CURRENCY] = self._balances.get(QUOTE_CURRENCY, 0.0) - notional
            self._balances[base] = self._balances.get(base, 0.0) + size
        else:
            if size > self._balances.get(base, 0.0) + 1e-9:
                raise OKXOrderRejected("51008", f"Order failed. Insufficient {base} balance", "")
            self._balances[base] = max(self._balances.get(base, 0.0) - size, 0.0)
            self._balances[QUOTE_CURRENCY] = self._balances.get(QUOTE_CURRENCY, 0.0) + notional

        ord_id = f"paper-{uuid.uuid4().hex[:8]}"
        detail = OrderDetail(
            inst_id=order.inst_id,
            ord_id=ord_id,
            state="filled",
            side=order.side,
            sz=size,
            acc_fill_sz=size,
            avg_px=quote.last,
            raw=order.to_body(),
        )
        self._orders[ord_id] = detail
        metrics.update_paper_balance(self._balances[QUOTE_CURRENCY])
        logger.info("Paper %s %s %s @ %.8f", order.side, order.sz, order.inst_id, quote.last)
        return OrderAck(ord_id=ord_id, s_code="0", s_msg="", raw={"ordId": ord_id})

    async def fetch_order(self, inst_id: str, ord_id: str) -> Optional[OrderDetail]:
        return self._orders.get(ord_id)

    async def close(self) -> None:
        if self.quote_source is not None:
            await self.quote_source.close()
