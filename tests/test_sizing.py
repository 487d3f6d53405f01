import sys

sys.path.insert(0, '.')

import pytest

from trading.errors import InsufficientBalanceError, NormalizationError
from trading.sizing import ceil_to_lot, floor_to_lot, is_lot_multiple, normalize_size


def test_sample_scenario_first_buy():
    size = normalize_size('buy', 100 / 10, 10.0, 0.1, 10.0, available_quote=100.0)
    assert size == pytest.approx(10.0)
    assert size * 10.0 == pytest.approx(100.0)


@pytest.mark.parametrize('raw, lot, expected', [
    (10.37, 0.1, 10.3),
    (0.123456, 0.001, 0.123),
    (7.99, 1.0, 7.0),
    (0.3, 0.1, 0.3),
])
def test_rounds_down_to_largest_lot_multiple(raw, lot, expected):
    size = normalize_size('buy', raw, 100.0, lot, 1.0, available_quote=1e9)
    assert size == pytest.approx(expected)
    assert size <= raw + 1e-12
    assert is_lot_multiple(size, lot)


def test_small_size_is_raised_to_minimum_notional():
    # 0.5 * 10 = 5 < 10 -> smallest lot multiple reaching 10 quote
    size = normalize_size('buy', 0.5, 10.0, 0.1, 10.0, available_quote=50.0)
    assert size == pytest.approx(1.0)
    assert size * 10.0 >= 10.0


def test_minimum_raise_uses_ceiling_so_notional_stays_above_floor():
    size = normalize_size('buy', 0.01, 3.0, 0.1, 10.0, available_quote=50.0)
    assert size == pytest.approx(3.4)
    assert size * 3.0 >= 10.0


def test_buy_notional_above_available_balance_is_rejected():
    with pytest.raises(InsufficientBalanceError):
        normalize_size('buy', 0.5, 10.0, 0.1, 10.0, available_quote=8.0)


def test_sell_is_capped_at_position():
    size = normalize_size('sell', 5.0, 10.0, 0.1, 10.0, max_size=4.25)
    assert size == pytest.approx(4.2)


def test_dust_sell_is_rejected():
    with pytest.raises(NormalizationError):
        normalize_size('sell', 0.5, 10.0, 0.1, 10.0, max_size=0.5)


def test_non_positive_inputs_are_rejected():
    with pytest.raises(NormalizationError):
        normalize_size('buy', 0.0, 10.0, 0.1, 10.0, available_quote=100.0)
    with pytest.raises(NormalizationError):
        normalize_size('buy', 1.0, 0.0, 0.1, 10.0, available_quote=100.0)


def test_lot_helpers_trim_float_noise():
    assert floor_to_lot(0.30000000000000004, 0.1) == 0.3
    assert ceil_to_lot(0.30000000000000004, 0.1) == 0.3
    assert floor_to_lot(0.29999999999, 0.1) == 0.3
    assert not is_lot_multiple(0.35, 0.1)
