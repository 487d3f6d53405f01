import asyncio
import sys

sys.path.insert(0, '.')

import pytest

from exchange.okx_types import OrderRequest
from exchange.paper import PaperExchange
from market.instruments import InstrumentMetadataCache
from market.price_oracle import PriceOracle
from storage.memory import MemoryLedgerStore
from tests.fakes import LOT_SIZES
from trading.allocation import OrderPlan
from trading.executor import OrderExecutor


def _executor(order_type):
    exchange = PaperExchange(lot_sizes=LOT_SIZES)
    metadata = InstrumentMetadataCache(exchange, defaults=LOT_SIZES, backoff_s=0)
    return OrderExecutor(
        exchange,
        MemoryLedgerStore(),
        PriceOracle(exchange, min_spacing_ms=0),
        metadata,
        order_type=order_type,
        limit_offset_pct=0.001,
    )


def _plan(side, size=1.5, price=10.0, ticker='SOLUSDT'):
    return OrderPlan(
        ticker=ticker,
        signal=side,
        side=side,
        size=size,
        price=price,
        reason='test',
        raw_size=size,
        current_position=0.0,
    )


def test_market_order_body_uses_lot_precision():
    order = _executor('market').build_order(_plan('buy', size=0.1 + 0.2))
    assert order.to_body() == {
        'instId': 'SOL-USDT',
        'tdMode': 'cash',
        'side': 'buy',
        'ordType': 'market',
        'sz': '0.30',
        'tgtCcy': 'base_ccy',
    }


def test_limit_buy_prices_through_the_quote():
    order = _executor('limit').build_order(_plan('buy'))
    assert order.ord_type == 'limit'
    assert order.px == '10.01000000'


def test_limit_sell_prices_through_the_quote():
    order = _executor('limit').build_order(_plan('sell', size=40, price=0.25, ticker='TRXUSDT'))
    assert order.sz == '40'
    assert order.px == '0.24975000'


def test_unsupported_order_type_rejected():
    with pytest.raises(ValueError):
        _executor('stop')


def test_market_buy_is_sized_in_base_currency():
    body = _executor('market').build_order(_plan('buy', size=10.0)).to_body()
    assert body['sz'] == '10.00'
    assert body['tgtCcy'] == 'base_ccy'


def test_limit_order_leaves_target_currency_unset():
    body = _executor('limit').build_order(_plan('buy')).to_body()
    assert 'tgtCcy' not in body


def test_paper_exchange_reads_untagged_market_buy_in_quote():
    async def _run():
        exchange = PaperExchange(quote_balance=100.0, lot_sizes=LOT_SIZES)
        exchange.set_price('SOLUSDT', 10.0)
        await exchange.place_order(OrderRequest('SOL-USDT', 'buy', 'market', '10.00'))
        assert exchange.balances['SOL'] == pytest.approx(1.0)
        assert exchange.balances['USDT'] == pytest.approx(90.0)

        await exchange.place_order(OrderRequest('SOL-USDT', 'buy', 'market', '5.00', tgt_ccy='base_ccy'))
        assert exchange.balances['SOL'] == pytest.approx(6.0)
        assert exchange.balances['USDT'] == pytest.approx(40.0)

    asyncio.run(_run())
