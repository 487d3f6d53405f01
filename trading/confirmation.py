import asyncio
import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from exchange.okx_types import OrderDetail


logger = logging.getLogger(__name__)


class OrderStatus(Enum):
    SUBMITTED = "submitted"
    PENDING = "pending"
    FILLED = "filled"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"


TERMINAL = frozenset({OrderStatus.FILLED, OrderStatus.REJECTED, OrderStatus.TIMED_OUT})

TRANSITIONS = {
    OrderStatus.SUBMITTED: frozenset({OrderStatus.PENDING, OrderStatus.FILLED, OrderStatus.REJECTED, OrderStatus.TIMED_OUT}),
    OrderStatus.PENDING: frozenset({OrderStatus.PENDING, OrderStatus.FILLED, OrderStatus.REJECTED, OrderStatus.TIMED_OUT}),
}

# OKX order "state" values
EXCHANGE_STATES = {
    "live": OrderStatus.PENDING,
    "partially_filled": OrderStatus.PENDING,
    "filled": OrderStatus.FILLED,
    "canceled": OrderStatus.REJECTED,
    "mmp_canceled": OrderStatus.REJECTED,
}


class InvalidTransition(RuntimeError):
    pass


@dataclass
class Confirmation:
    ord_id: str
    status: OrderStatus = OrderStatus.SUBMITTED
    detail: Optional[OrderDetail] = None
    polls: int = 0

    def advance(self, new_status: OrderStatus) -> None:
        allowed = TRANSITIONS.get(self.status, frozenset())
        if new_status not in allowed:
            raise InvalidTransition(f"{self.status.value} -> {new_status.value}")
        self.status = new_status

    @property
    def done(self) -> bool:
        return self.status in TERMINAL

    @property
    def filled_size(self) -> Optional[float]:
        if self.detail and self.detail.acc_fill_sz:
            return self.detail.acc_fill_sz
        return None

    @property
    def fill_price(self) -> Optional[float]:
        if self.detail and self.detail.avg_px:
            return self.detail.avg_px
        return None


class OrderConfirmer:
    """Polls order status until it reaches a terminal state or the budget runs out."""

    def __init__(self, transport, timeout_s: float = 10.0, poll_interval_s: float = 0.5):
        self.transport = transport
        self.poll_interval_s = max(0.0, float(poll_interval_s))
        self.timeout_s = max(0.0, float(timeout_s))
        if self.poll_interval_s > 0:
            self.max_polls = max(1, math.ceil(self.timeout_s / self.poll_interval_s - 1e-9))
        else:
            self.max_polls = 1

    async def confirm(self, inst_id: str, ord_id: str) -> Confirmation:
        confirmation = Confirmation(ord_id=ord_id)
        while not confirmation.done:
            if confirmation.polls >= self.max_polls:
                confirmation.advance(OrderStatus.TIMED_OUT)
                break
            confirmation.polls += 1
            try:
                detail = await self.transport.fetch_order(inst_id, ord_id)
            except Exception as exc:
                logger.warning("Order status poll %s for %s failed: %s", confirmation.polls, ord_id, exc)
                detail = None

            if detail is not None:
                confirmation.detail = detail
                status = EXCHANGE_STATES.get(detail.state, OrderStatus.PENDING)
            else:
                status = OrderStatus.PENDING
            confirmation.advance(status)

            if not confirmation.done and confirmation.polls < self.max_polls:
                await asyncio.sleep(self.poll_interval_s)

        logger.info(
            "Order %s %s after %s poll(s)",
            ord_id,
            confirmation.status.value,
            confirmation.polls,
        )
        return confirmation
