import math
from typing import Optional

from storage.models import BUY
from trading.errors import InsufficientBalanceError, NormalizationError

LOT_TOLERANCE = 1e-9


def floor_to_lot(size: float, lot_size: float) -> float:
    steps = math.floor(size / lot_size + LOT_TOLERANCE)
    return _round_to_lot(steps * lot_size, lot_size)


def ceil_to_lot(size: float, lot_size: float) -> float:
    steps = math.ceil(size / lot_size - LOT_TOLERANCE)
    return _round_to_lot(steps * lot_size, lot_size)


def is_lot_multiple(size: float, lot_size: float) -> bool:
    ratio = size / lot_size
    return abs(ratio - round(ratio)) < LOT_TOLERANCE


def _round_to_lot(value: float, lot_size: float) -> float:
    # Trim float noise such as 0.30000000000000004 for a 0.1 step.
    decimals = max(0, -math.floor(math.log10(lot_size))) + 2
    return round(value, decimals)


def normalize_size(
    side: str,
    size: float,
    price: float,
    lot_size: float,
    min_order_value: float,
    available_quote: float = 0.0,
    max_size: Optional[float] = None,
) -> float:
    """Express ``size`` in whole lots with a notional of at least ``min_order_value``.

    Sizes below the minimum notional are raised to the smallest lot multiple
    that reaches it; all other sizes are rounded down to a lot multiple. Sell
    sizes are capped at ``max_size`` (the held position). Raises when no
    feasible size exists.
    """
    if price <= 0:
        raise NormalizationError(f"invalid price {price}")
    if lot_size <= 0:
        raise NormalizationError(f"invalid lot size {lot_size}")
    if size <= 0:
        raise NormalizationError(f"non-positive order size {size}")

    if size * price < min_order_value:
        size = ceil_to_lot(min_order_value / price, lot_size)
    else:
        size = floor_to_lot(size, lot_size)

    if side != BUY and max_size is not None and size > max_size:
        size = floor_to_lot(max_size, lot_size)
        if size * price < min_order_value:
            raise NormalizationError(
                f"position {max_size} is below the minimum order value {min_order_value}"
            )

    if size <= 0:
        raise NormalizationError("order size rounds to zero lots")
    if not is_lot_multiple(size, lot_size):
        raise NormalizationError(f"size {size} is not a multiple of lot {lot_size}")

    notional = size * price
    if side == BUY and notional > available_quote + LOT_TOLERANCE:
        raise InsufficientBalanceError(
            f"order notional {notional:.8f} exceeds available balance {available_quote:.8f}"
        )
    return size
