import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from config import config
from storage.models import BUY, SELL, InstrumentState
from trading.errors import InsufficientBalanceError, InvalidSignalError, MarketDataError
from trading.sizing import normalize_size


logger = logging.getLogger(__name__)


@dataclass
class MarketSnapshot:
    """Everything the allocator reads for one signal, gathered up front."""

    available_quote: float
    total_quote: float
    positions: Dict[str, float]
    prices: Dict[str, float]
    states: Dict[str, InstrumentState]
    lot_sizes: Dict[str, float] = field(default_factory=dict)

    def position(self, ticker: str) -> float:
        return max(self.positions.get(ticker, 0.0), 0.0)

    def holdings_value(self) -> float:
        total = 0.0
        for ticker, qty in self.positions.items():
            if qty <= 0:
                continue
            price = self.prices.get(ticker, 0.0)
            if price <= 0:
                raise MarketDataError(f"missing price for held instrument {ticker}")
            total += qty * price
        return total

    def account_value(self) -> float:
        return self.total_quote + self.holdings_value()


@dataclass
class OrderPlan:
    ticker: str
    signal: str
    side: str
    size: float
    price: float
    reason: str
    raw_size: float
    current_position: float

    @property
    def notional(self) -> float:
        return self.size * self.price


class AllocationEngine:
    """Turns a (ticker, signal) pair into a normalized order plan.

    Buys split capital equally across every instrument in the buy state plus
    the new one; the first buy takes the whole available balance. Sells exit
    the full position.
    """

    def __init__(self, min_order_value: Optional[float] = None, min_balance: Optional[float] = None):
        trading_cfg = config.get('trading') or {}
        self.min_order_value = float(
            min_order_value if min_order_value is not None else trading_cfg.get('min_order_value', 10.0)
        )
        self.min_balance = float(
            min_balance if min_balance is not None else trading_cfg.get('min_balance', 10.0)
        )

    @staticmethod
    def is_duplicate(state: InstrumentState, signal: str) -> bool:
        return state.signal == signal

    @staticmethod
    def buy_count(states: Dict[str, InstrumentState], exclude: str) -> int:
        return sum(1 for ticker, state in states.items() if ticker != exclude and state.signal == BUY)

    def plan(self, ticker: str, signal: str, snapshot: MarketSnapshot) -> Optional[OrderPlan]:
        """Return the order to place, or ``None`` when the instrument is already flat."""
        if signal == BUY:
            return self._plan_buy(ticker, snapshot)
        if signal == SELL:
            return self._plan_sell(ticker, snapshot)
        raise InvalidSignalError(f"unknown signal {signal!r}")

    def _price(self, ticker: str, snapshot: MarketSnapshot) -> float:
        price = snapshot.prices.get(ticker, 0.0)
        if price <= 0:
            raise MarketDataError(f"no price available for {ticker}")
        return price

    def _lot(self, ticker: str, snapshot: MarketSnapshot) -> float:
        lot = snapshot.lot_sizes.get(ticker)
        if not lot:
            raise MarketDataError(f"no lot size available for {ticker}")
        return lot

    def _plan_buy(self, ticker: str, snapshot: MarketSnapshot) -> OrderPlan:
        available = snapshot.available_quote
        if available < self.min_balance:
            raise InsufficientBalanceError(
                f"available balance {available:.8f} below minimum {self.min_balance:.8f}"
            )
        price = self._price(ticker, snapshot)
        lot = self._lot(ticker, snapshot)
        current = snapshot.position(ticker)
        active_buys = self.buy_count(snapshot.states, exclude=ticker)

        if active_buys == 0:
            side, raw_size, reason = BUY, available / price, "first_buy"
        else:
            target_alloc = (available + snapshot.holdings_value()) / (active_buys + 1)
            target_pos = target_alloc / price
            if current > 0 and current > target_pos:
                side, raw_size, reason = SELL, current - target_pos, "trim_excess"
            else:
                side, raw_size, reason = BUY, target_pos, "equal_weight"
            logger.info(
                "%s target allocation %.8f across %s buys -> target position %.8f (current %.8f)",
                ticker,
                target_alloc,
                active_buys + 1,
                target_pos,
                current,
            )

        size = normalize_size(
            side,
            raw_size,
            price,
            lot,
            self.min_order_value,
            available_quote=available,
            max_size=current if side == SELL else None,
        )
        return OrderPlan(
            ticker=ticker,
            signal=BUY,
            side=side,
            size=size,
            price=price,
            reason=reason,
            raw_size=raw_size,
            current_position=current,
        )

    def _plan_sell(self, ticker: str, snapshot: MarketSnapshot) -> Optional[OrderPlan]:
        current = snapshot.position(ticker)
        if current <= 0:
            return None
        price = self._price(ticker, snapshot)
        lot = self._lot(ticker, snapshot)
        size = normalize_size(
            SELL,
            current,
            price,
            lot,
            self.min_order_value,
            max_size=current,
        )
        return OrderPlan(
            ticker=ticker,
            signal=SELL,
            side=SELL,
            size=size,
            price=price,
            reason="sell_all",
            raw_size=current,
            current_position=current,
        )
