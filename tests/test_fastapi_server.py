import sys

sys.path.insert(0, '.')

import pytest
from fastapi.testclient import TestClient

import main
from api import fastapi_server
from exchange.paper import PaperExchange
from market.universe import INSTRUMENTS
from storage.memory import MemoryLedgerStore
from tests.fakes import LOT_SIZES, PRICES


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(main, 'TradingSystem', _make_factory(main.TradingSystem))
    with TestClient(fastapi_server.app) as test_client:
        yield test_client
    fastapi_server.trading_system = None


def _make_factory(system_cls):
    def factory():
        exchange = PaperExchange(quote_balance=100.0, lot_sizes=LOT_SIZES)
        for ticker, price in PRICES.items():
            exchange.set_price(ticker, price)
        system = system_cls(
            transport=exchange,
            store=MemoryLedgerStore(INSTRUMENTS),
            start_metrics=False,
        )
        system.oracle.min_spacing_s = 0
        return system
    return factory


def test_health_reports_running(client):
    response = client.get('/health')
    assert response.status_code == 200
    assert response.json()['system_running'] is True


def test_webhook_rejects_malformed_json(client):
    response = client.post('/webhook', content=b'{"ticker": "SOLUSDT",', headers={'Content-Type': 'application/json'})
    assert response.status_code == 400


def test_webhook_rejects_unknown_ticker(client):
    response = client.post('/webhook', json={'ticker': 'DOGEUSDT', 'signal': 'buy'})
    assert response.status_code == 400
    assert 'DOGEUSDT' in response.json()['error']


def test_webhook_rejects_bad_signal(client):
    response = client.post('/webhook', json={'ticker': 'SOLUSDT', 'signal': 'hold'})
    assert response.status_code == 400


def test_webhook_executes_and_exposes_ledger(client):
    response = client.post('/webhook', json={'ticker': 'SOLUSDT', 'signal': 'buy'})
    assert response.status_code == 200
    body = response.json()
    assert body['status'] == 'executed'
    assert body['size'] == pytest.approx(10.0)

    states = {s['ticker']: s for s in client.get('/state').json()['states']}
    assert states['SOLUSDT']['signal'] == 'buy'
    assert states['TRXUSDT']['signal'] == 'sell'

    txns = client.get('/api/transactions/solusdt').json()
    assert txns['count'] == 1
    assert txns['transactions'][0]['notional_value'] == pytest.approx(100.0)

    values = client.get('/api/account_values').json()
    assert values['count'] == 1

    repeat = client.post('/webhook', json={'ticker': 'SOLUSDT', 'signal': 'buy'})
    assert repeat.json()['status'] == 'skipped'


def test_webhook_failure_returns_500(client):
    async def broken_balance():
        raise RuntimeError('boom')

    fastapi_server.trading_system.transport.fetch_balance = broken_balance
    response = client.post('/webhook', json={'ticker': 'SOLUSDT', 'signal': 'buy'})
    assert response.status_code == 500
    assert response.json() == {'error': 'Failed to process signal'}


def test_transactions_for_unknown_ticker_is_404(client):
    assert client.get('/api/transactions/DOGEUSDT').status_code == 404


def test_operator_reset_overwrites_state(client):
    response = client.post('/api/state/solusdt/reset', json={'signal': 'buy', 'position': 2.5})
    assert response.status_code == 200
    assert response.json()['ticker'] == 'SOLUSDT'

    states = {s['ticker']: s for s in client.get('/state').json()['states']}
    assert states['SOLUSDT']['signal'] == 'buy'
    assert states['SOLUSDT']['position'] == pytest.approx(2.5)


def test_operator_reset_validates_input(client):
    assert client.post('/api/state/DOGEUSDT/reset', json={'signal': 'buy'}).status_code == 404
    assert client.post('/api/state/SOLUSDT/reset', json={'signal': 'hold'}).status_code == 400
    assert client.post('/api/state/SOLUSDT/reset', json={'signal': 'buy', 'position': -1}).status_code == 400
