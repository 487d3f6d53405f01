import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional, Tuple

import aiohttp

from api.alerts import alert_webhook
from api.metrics import metrics
from config import config
from exchange.okx_rest import OKXAPIError, OKXOrderRejected
from exchange.okx_types import AccountBalance, OrderRequest
from market.universe import to_inst_id
from storage.models import AccountValueSample, BUY, SELL, Transaction
from trading.allocation import OrderPlan
from trading.confirmation import Confirmation, OrderConfirmer, OrderStatus
from trading.errors import ExecutionError, OrderRejectedError
from trading.sizing import LOT_TOLERANCE


logger = logging.getLogger(__name__)

TRANSPORT_ERRORS = (OKXAPIError, aiohttp.ClientError, asyncio.TimeoutError)


@dataclass
class ExecutionResult:
    plan: OrderPlan
    order_id: str
    status: OrderStatus
    transaction: Transaction
    position: float
    reconciled: bool
    account_value: Optional[AccountValueSample] = None


class OrderExecutor:
    """Submit a normalized plan, confirm it, and record what was observed."""

    def __init__(
        self,
        transport,
        store,
        oracle,
        metadata,
        order_type: Optional[str] = None,
        limit_offset_pct: Optional[float] = None,
        confirm_fills: Optional[bool] = None,
        confirm_timeout_s: Optional[float] = None,
        poll_interval_s: Optional[float] = None,
    ):
        trading_cfg = config.get('trading') or {}
        self.transport = transport
        self.store = store
        self.oracle = oracle
        self.metadata = metadata
        self.order_type = (order_type or trading_cfg.get('order_type', 'market')).lower()
        if self.order_type not in ('market', 'limit'):
            raise ValueError(f"unsupported order type {self.order_type!r}")
        self.limit_offset_pct = float(
            limit_offset_pct if limit_offset_pct is not None else trading_cfg.get('limit_offset_pct', 0.001)
        )
        self.confirm_fills = bool(
            confirm_fills if confirm_fills is not None else trading_cfg.get('confirm_fills', True)
        )
        self.confirmer = OrderConfirmer(
            transport,
            timeout_s=confirm_timeout_s if confirm_timeout_s is not None else trading_cfg.get('confirm_timeout_s', 10.0),
            poll_interval_s=poll_interval_s if poll_interval_s is not None else trading_cfg.get('poll_interval_s', 0.5),
        )

    def build_order(self, plan: OrderPlan) -> OrderRequest:
        order = OrderRequest(
            inst_id=to_inst_id(plan.ticker),
            side=plan.side,
            ord_type=self.order_type,
            sz=self.metadata.format_size(plan.ticker, plan.size),
        )
        if self.order_type == 'limit':
            if plan.side == BUY:
                px = plan.price * (1 + self.limit_offset_pct)
            else:
                px = plan.price * (1 - self.limit_offset_pct)
            order.px = f"{px:.8f}"
        else:
            # plan sizes are base-currency quantities
            order.tgt_ccy = 'base_ccy'
        return order

    async def execute(self, plan: OrderPlan) -> ExecutionResult:
        order = self.build_order(plan)
        logger.info(
            "Submitting %s %s %s (%s, lot %s, ~%.8f notional)",
            order.ord_type,
            order.side,
            order.sz,
            order.inst_id,
            self.metadata.lot_size(plan.ticker),
            plan.notional,
        )

        started = time.monotonic()
        try:
            ack = await self.transport.place_order(order)
        except OKXOrderRejected as exc:
            metrics.record_order_rejected(exc.s_code)
            await alert_webhook.order_rejected_alert(plan.ticker, plan.side, exc.s_code, exc.s_msg)
            raise OrderRejectedError(f"{plan.ticker} {plan.side} rejected: {exc.s_msg}", code=exc.s_code) from exc
        except TRANSPORT_ERRORS as exc:
            raise ExecutionError(f"order submission for {plan.ticker} failed: {exc}") from exc
        metrics.record_order_send_latency(time.monotonic() - started)
        metrics.record_order_placed(plan.side, order.ord_type)
        logger.info("Order accepted for %s: ordId=%s", plan.ticker, ack.ord_id)

        size, price, status = await self._observe_fill(plan, order, ack.ord_id)

        transaction = await self.store.record_transaction(plan.ticker, plan.signal, size, price)
        position, balance = await self._reconcile(plan, size)
        await self.store.update_state(plan.ticker, plan.signal, position)
        metrics.update_position(plan.ticker, position)

        sample = await self.sample_account_value(balance)
        return ExecutionResult(
            plan=plan,
            order_id=ack.ord_id,
            status=status,
            transaction=transaction,
            position=position,
            reconciled=balance is not None,
            account_value=sample,
        )

    async def _observe_fill(self, plan: OrderPlan, order: OrderRequest, ord_id: str) -> Tuple[float, float, OrderStatus]:
        if not self.confirm_fills:
            return plan.size, plan.price, OrderStatus.SUBMITTED

        confirmation: Confirmation = await self.confirmer.confirm(order.inst_id, ord_id)
        metrics.record_confirmation(confirmation.status.value)
        if confirmation.status == OrderStatus.REJECTED:
            state = confirmation.detail.state if confirmation.detail else 'unknown'
            metrics.record_order_rejected(state)
            await alert_webhook.order_rejected_alert(plan.ticker, plan.side, state, f"order {ord_id} {state}")
            if not confirmation.filled_size:
                raise OrderRejectedError(f"{plan.ticker} order {ord_id} ended {state}", code=state)
            logger.warning(
                "Order %s for %s ended %s after a partial fill of %s; recording the filled part",
                ord_id,
                plan.ticker,
                state,
                confirmation.filled_size,
            )

        size = confirmation.filled_size or plan.size
        price = confirmation.fill_price or plan.price
        if confirmation.status == OrderStatus.TIMED_OUT:
            logger.warning(
                "Order %s for %s unconfirmed after %s polls; recording %s @ %.8f",
                ord_id,
                plan.ticker,
                confirmation.polls,
                size,
                price,
            )
        return size, price, confirmation.status

    async def _reconcile(self, plan: OrderPlan, filled: float) -> Tuple[float, Optional[AccountBalance]]:
        """Re-query the holding from the exchange; estimate locally if that fails."""
        try:
            balance = await self.transport.fetch_balance()
        except Exception as exc:
            if plan.side == BUY:
                estimate = plan.current_position + filled
            else:
                estimate = max(plan.current_position - filled, 0.0)
            logger.error(
                "Position re-fetch failed after %s order; storing estimate %.8f (may be stale): %s",
                plan.ticker,
                estimate,
                exc,
            )
            metrics.record_reconcile_failure()
            await alert_webhook.reconcile_alert(plan.ticker, str(exc))
            return self._settle_position(plan, estimate), None
        return self._settle_position(plan, balance.positions().get(plan.ticker, 0.0)), balance

    def _settle_position(self, plan: OrderPlan, position: float) -> float:
        # A full exit leaves at most a sub-lot remainder that cannot be sold
        lot = self.metadata.lot_size(plan.ticker)
        if plan.signal == SELL and position < lot - LOT_TOLERANCE:
            if position > 0:
                logger.info("%s sub-lot remainder %.8f stored as flat", plan.ticker, position)
            return 0.0
        return position

    async def mark_flat(self, ticker: str) -> Optional[AccountValueSample]:
        """Sell signal on a flat instrument: no order, just the signal flip."""
        await self.store.update_state(ticker, SELL, 0.0)
        metrics.update_position(ticker, 0.0)
        logger.info("%s already flat; recorded sell state without an order", ticker)
        return await self.sample_account_value()

    async def sample_account_value(self, balance: Optional[AccountBalance] = None) -> Optional[AccountValueSample]:
        try:
            if balance is None:
                balance = await self.transport.fetch_balance()
            positions = {t: q for t, q in balance.positions().items() if q > 0}
            prices = await self.oracle.prices(positions) if positions else {}
        except Exception as exc:
            logger.error("Account value sample skipped: %s", exc)
            return None

        total = balance.quote_total
        for ticker, qty in positions.items():
            price = prices.get(ticker, 0.0)
            if price <= 0:
                logger.warning("No price for %s; excluded from account value", ticker)
                continue
            total += qty * price
        sample = await self.store.record_account_value(total)
        metrics.update_account_value(total)
        logger.info("Account value %.2f across %s holdings", total, len(positions))
        return sample
