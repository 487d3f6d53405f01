import asyncio
import json
import logging
from typing import List, Optional

from exchange.okx_rest import OKXAPIError, OKXOrderRejected, OKXRESTClient
from exchange.okx_types import (
    AccountBalance,
    InstrumentInfo,
    OrderAck,
    OrderDetail,
    OrderRequest,
    TickerQuote,
)


__all__ = ["OKXTransport", "OKXAPIError", "OKXOrderRejected"]


logger = logging.getLogger(__name__)


class OKXTransport:
    """Thin adapter around OKX REST returning typed records."""

    def __init__(self, rest: Optional[OKXRESTClient] = None) -> None:
        self._rest = rest
        self._lock = asyncio.Lock()

    def _client(self) -> OKXRESTClient:
        if self._rest is None:
            self._rest = OKXRESTClient()
        return self._rest

    async def fetch_ticker(self, inst_id: str) -> Optional[TickerQuote]:
        envelope = await self._client().get(
            "/api/v5/market/ticker",
            params={"instId": inst_id},
            signed=False,
        )
        return TickerQuote.from_payload(envelope)

    async def fetch_instruments(self, inst_type: str = "SPOT") -> List[InstrumentInfo]:
        envelope = await self._client().get(
            "/api/v5/public/instruments",
            params={"instType": inst_type},
            signed=False,
        )
        return InstrumentInfo.list_from_payload(envelope)

    async def fetch_balance(self) -> AccountBalance:
        envelope = await self._client().get("/api/v5/account/balance")
        try:
            return AccountBalance.from_payload(envelope)
        except ValueError as exc:
            raise OKXAPIError(200, None, str(exc), json.dumps(envelope)) from exc

    async def fetch_pending_orders(self, inst_id: str) -> List[str]:
        envelope = await self._client().get(
            "/api/v5/trade/orders-pending",
            params={"instId": inst_id},
        )
        return [str(item.get("ordId")) for item in envelope.get("data") or [] if isinstance(item, dict)]

    async def place_order(self, order: OrderRequest) -> OrderAck:
        body = order.to_body()
        try:
            envelope = await self._client().post("/api/v5/trade/order", body=body)
        except OKXAPIError as exc:
            # A failed placement usually carries the real reason in data[0].sCode.
            ack = self._ack_from_error(exc)
            if ack is not None and not ack.accepted:
                raise OKXOrderRejected(ack.s_code, ack.s_msg, exc.body) from exc
            raise

        ack = OrderAck.from_payload(envelope)
        if ack is None:
            raise OKXAPIError(200, envelope.get("code"), "order response has no data", json.dumps(envelope))
        if not ack.accepted:
            logger.error(
                "Order rejected for %s: sCode=%s sMsg=%s",
                order.inst_id,
                ack.s_code,
                ack.s_msg,
            )
            raise OKXOrderRejected(ack.s_code, ack.s_msg, json.dumps(envelope))
        return ack

    async def fetch_order(self, inst_id: str, ord_id: str) -> Optional[OrderDetail]:
        envelope = await self._client().get(
            "/api/v5/trade/order",
            params={"instId": inst_id, "ordId": ord_id},
        )
        return OrderDetail.from_payload(envelope)

    async def close(self) -> None:
        async with self._lock:
            if self._rest:
                try:
                    await self._rest.close()
                finally:
                    self._rest = None

    @staticmethod
    def _ack_from_error(exc: OKXAPIError) -> Optional[OrderAck]:
        try:
            envelope = json.loads(exc.body) if exc.body else None
        except ValueError:
            return None
        return OrderAck.from_payload(envelope)
