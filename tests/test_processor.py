import asyncio
import sys

sys.path.insert(0, '.')

import pytest

from exchange.okx_rest import OKXAPIError, OKXOrderRejected
from exchange.okx_types import OrderDetail
from tests.fakes import LOT_SIZES, Harness
from trading.errors import (
    InsufficientBalanceError,
    InvalidSignalError,
    OpenOrderError,
    OrderRejectedError,
)


def _lots(**overrides):
    lots = dict(LOT_SIZES)
    lots.update(overrides)
    return lots


def test_first_buy_spends_available_balance():
    async def _run():
        h = Harness(quote_balance=100.0, lot_sizes=_lots(SOLUSDT=0.1))
        await h.start()
        try:
            outcome = await h.processor.submit('solusdt', 'BUY')
        finally:
            await h.stop()

        assert outcome.status == 'executed'
        assert outcome.reason == 'first_buy'
        assert outcome.size == pytest.approx(10.0)
        assert outcome.price == pytest.approx(10.0)
        assert outcome.position == pytest.approx(10.0)
        assert outcome.details['confirmation'] == 'filled'

        state = await h.store.get_state('SOLUSDT')
        assert state.signal == 'buy'
        assert state.position == pytest.approx(10.0)
        txns = await h.store.get_transactions('SOLUSDT')
        assert len(txns) == 1
        assert txns[0].notional_value == pytest.approx(100.0)
        assert len(await h.store.get_account_values()) == 1

    asyncio.run(_run())


def test_repeated_signal_is_skipped():
    async def _run():
        h = Harness()
        await h.start()
        try:
            first = await h.processor.submit('SOLUSDT', 'buy')
            second = await h.processor.submit('SOLUSDT', 'buy')
        finally:
            await h.stop()

        assert first.status == 'executed'
        assert second.status == 'skipped'
        assert second.reason == 'duplicate'
        assert len(await h.store.get_transactions('SOLUSDT')) == 1

    asyncio.run(_run())


def test_second_buy_targets_equal_weight():
    async def _run():
        h = Harness(quote_balance=1000.0)
        await h.start()
        try:
            await h.processor.submit('SOLUSDT', 'buy')
            h.exchange.set_balance('USDT', 1000.0)
            outcome = await h.processor.submit('TRXUSDT', 'buy')
        finally:
            await h.stop()

        # 100 SOL @ 10 plus 1000 USDT split across two buys
        assert outcome.reason == 'equal_weight'
        assert outcome.size == pytest.approx(4000.0)
        assert h.exchange.balances['TRX'] == pytest.approx(4000.0)

    asyncio.run(_run())


def test_buy_with_nothing_left_fails_without_state_change():
    async def _run():
        h = Harness(quote_balance=1000.0)
        await h.start()
        try:
            await h.processor.submit('SOLUSDT', 'buy')
            with pytest.raises(InsufficientBalanceError):
                await h.processor.submit('TRXUSDT', 'buy')
        finally:
            await h.stop()

        assert (await h.store.get_state('TRXUSDT')).signal == 'sell'
        assert await h.store.get_transactions('TRXUSDT') == []

    asyncio.run(_run())


def test_sell_exits_whole_position():
    async def _run():
        h = Harness(quote_balance=100.0)
        await h.start()
        try:
            await h.processor.submit('SOLUSDT', 'buy')
            h.exchange.set_price('SOLUSDT', 12.0)
            outcome = await h.processor.submit('SOLUSDT', 'sell')
        finally:
            await h.stop()

        assert outcome.status == 'executed'
        assert outcome.reason == 'sell_all'
        assert outcome.size == pytest.approx(10.0)
        assert outcome.position == 0.0
        assert h.exchange.balances['USDT'] == pytest.approx(120.0)
        assert [t.signal for t in await h.store.get_transactions('SOLUSDT')] == ['buy', 'sell']
        samples = await h.store.get_account_values()
        assert samples[-1].total_notional == pytest.approx(120.0)

    asyncio.run(_run())


def test_sell_on_flat_instrument_places_no_order():
    async def _run():
        h = Harness()
        await h.start()
        try:
            await h.store.reset_state('SOLUSDT', 'buy', 0.0)
            outcome = await h.processor.submit('SOLUSDT', 'sell')
        finally:
            await h.stop()

        assert outcome.status == 'flat'
        assert outcome.position == 0.0
        assert h.exchange.orders == {}
        assert (await h.store.get_state('SOLUSDT')).signal == 'sell'
        assert await h.store.get_transactions('SOLUSDT') == []
        assert len(await h.store.get_account_values()) == 1

    asyncio.run(_run())


def test_open_order_blocks_signal():
    async def _run():
        h = Harness()
        await h.start()
        h.exchange.add_pending_order('SOL-USDT', 'resting-1')
        try:
            with pytest.raises(OpenOrderError):
                await h.processor.submit('SOLUSDT', 'buy')
        finally:
            await h.stop()

        assert h.exchange.orders == {}
        assert (await h.store.get_state('SOLUSDT')).signal == 'sell'

    asyncio.run(_run())


def test_rejected_order_is_not_recorded():
    async def _run():
        h = Harness()
        await h.start()

        async def reject(order):
            raise OKXOrderRejected('51008', 'Order failed. Insufficient USDT balance', '')

        h.exchange.place_order = reject
        try:
            with pytest.raises(OrderRejectedError) as excinfo:
                await h.processor.submit('SOLUSDT', 'buy')
        finally:
            await h.stop()

        assert excinfo.value.code == '51008'
        assert await h.store.get_transactions('SOLUSDT') == []
        assert (await h.store.get_state('SOLUSDT')).signal == 'sell'

    asyncio.run(_run())


def test_failed_position_refetch_stores_estimate():
    async def _run():
        h = Harness(quote_balance=100.0)
        await h.start()
        real_fetch = h.exchange.fetch_balance
        calls = []

        async def flaky_fetch():
            calls.append(1)
            # second query is the post-order re-fetch
            if len(calls) == 2:
                raise OKXAPIError(500, None, 'upstream unavailable', '')
            return await real_fetch()

        h.exchange.fetch_balance = flaky_fetch
        try:
            outcome = await h.processor.submit('SOLUSDT', 'buy')
        finally:
            await h.stop()

        assert outcome.status == 'executed'
        assert outcome.details['reconciled'] is False
        assert outcome.position == pytest.approx(10.0)
        assert len(await h.store.get_transactions('SOLUSDT')) == 1
        assert (await h.store.get_state('SOLUSDT')).position == pytest.approx(10.0)

    asyncio.run(_run())


def test_unconfirmed_order_records_requested_size():
    async def _run():
        h = Harness(quote_balance=100.0)
        await h.start()

        async def still_live(inst_id, ord_id):
            return OrderDetail(
                inst_id=inst_id,
                ord_id=ord_id,
                state='live',
                side='buy',
                sz=10.0,
                acc_fill_sz=0.0,
                avg_px=None,
            )

        h.exchange.fetch_order = still_live
        try:
            outcome = await h.processor.submit('SOLUSDT', 'buy')
        finally:
            await h.stop()

        assert outcome.details['confirmation'] == 'timed_out'
        txn = (await h.store.get_transactions('SOLUSDT'))[0]
        assert txn.amount == pytest.approx(10.0)
        assert txn.price == pytest.approx(10.0)

    asyncio.run(_run())


def test_concurrent_duplicates_execute_once():
    async def _run():
        h = Harness()
        await h.start()
        try:
            outcomes = await asyncio.gather(
                h.processor.submit('SOLUSDT', 'buy'),
                h.processor.submit('SOLUSDT', 'buy'),
                h.processor.submit('SOLUSDT', 'buy'),
            )
        finally:
            await h.stop()

        assert sorted(o.status for o in outcomes) == ['executed', 'skipped', 'skipped']
        assert len(h.exchange.orders) == 1
        assert len(await h.store.get_transactions('SOLUSDT')) == 1

    asyncio.run(_run())


def test_invalid_signals_are_rejected_before_queueing():
    async def _run():
        h = Harness()
        await h.start()
        try:
            with pytest.raises(InvalidSignalError):
                await h.processor.submit('SOLUSDT', 'hold')
            with pytest.raises(InvalidSignalError):
                await h.processor.submit('DOGEUSDT', 'buy')
            with pytest.raises(InvalidSignalError):
                await h.processor.submit(None, 'buy')
        finally:
            await h.stop()

        assert h.exchange.orders == {}

    asyncio.run(_run())


def test_stop_fails_queued_signals():
    async def _run():
        h = Harness()
        await h.start()
        gate = asyncio.Event()
        real_place = h.exchange.place_order

        async def slow_place(order):
            await gate.wait()
            return await real_place(order)

        h.exchange.place_order = slow_place
        first = asyncio.create_task(h.processor.submit('SOLUSDT', 'buy'))
        second = asyncio.create_task(h.processor.submit('TRXUSDT', 'buy'))
        await asyncio.sleep(0.05)
        await h.stop()
        results = await asyncio.gather(first, second, return_exceptions=True)
        assert all(isinstance(r, Exception) for r in results)
        assert not h.processor.running

    asyncio.run(_run())


def test_canceled_order_with_partial_fill_is_recorded():
    async def _run():
        h = Harness(quote_balance=100.0)
        await h.start()

        async def canceled_after_fill(inst_id, ord_id):
            return OrderDetail(
                inst_id=inst_id,
                ord_id=ord_id,
                state='canceled',
                side='buy',
                sz=10.0,
                acc_fill_sz=10.0,
                avg_px=10.0,
            )

        h.exchange.fetch_order = canceled_after_fill
        try:
            outcome = await h.processor.submit('SOLUSDT', 'buy')
        finally:
            await h.stop()

        assert outcome.status == 'executed'
        assert outcome.details['confirmation'] == 'rejected'
        txns = await h.store.get_transactions('SOLUSDT')
        assert len(txns) == 1
        assert txns[0].amount == pytest.approx(10.0)
        state = await h.store.get_state('SOLUSDT')
        assert state.signal == 'buy'
        assert state.position == pytest.approx(10.0)

    asyncio.run(_run())


def test_canceled_order_without_fill_is_rejected():
    async def _run():
        h = Harness(quote_balance=100.0)
        await h.start()

        async def canceled_unfilled(inst_id, ord_id):
            return OrderDetail(
                inst_id=inst_id,
                ord_id=ord_id,
                state='canceled',
                side='buy',
                sz=10.0,
                acc_fill_sz=0.0,
                avg_px=None,
            )

        h.exchange.fetch_order = canceled_unfilled
        try:
            with pytest.raises(OrderRejectedError):
                await h.processor.submit('SOLUSDT', 'buy')
        finally:
            await h.stop()

        assert await h.store.get_transactions('SOLUSDT') == []

    asyncio.run(_run())


def test_sell_leaving_sub_lot_remainder_stores_flat():
    async def _run():
        h = Harness(quote_balance=100.0)
        await h.start()
        try:
            await h.processor.submit('SOLUSDT', 'buy')
            h.exchange.set_balance('SOL', 10.005)
            outcome = await h.processor.submit('SOLUSDT', 'sell')
        finally:
            await h.stop()

        assert outcome.size == pytest.approx(10.0)
        assert outcome.position == 0.0
        assert h.exchange.balances['SOL'] == pytest.approx(0.005)
        state = await h.store.get_state('SOLUSDT')
        assert state.signal == 'sell'
        assert state.position == 0.0

    asyncio.run(_run())
