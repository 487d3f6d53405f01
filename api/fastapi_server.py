import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import config
from market.universe import is_known
from monitoring.logging_utils import setup_logging
from storage.models import SELL, SIGNALS
from trading.errors import InvalidSignalError


logger = logging.getLogger(__name__)

trading_system = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global trading_system
    from main import TradingSystem
    setup_logging()
    trading_system = TradingSystem()
    await trading_system.start()
    try:
        yield
    finally:
        if trading_system:
            await trading_system.stop()


app = FastAPI(title="OKX Signal Rebalancer", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list((config.get('api') or {}).get('cors_origins', ["*"])),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _not_ready() -> JSONResponse:
    return JSONResponse({"error": "Trading system not initialized"}, status_code=503)


@app.get("/")
async def root():
    return {
        "service": "OKX Signal Rebalancer",
        "version": "1.0.0",
        "status": "running" if trading_system and trading_system.running else "stopped"
    }


@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": _now(),
        "system_running": trading_system.running if trading_system else False
    }


@app.post("/webhook")
async def webhook(request: Request):
    try:
        payload = json.loads(await request.body())
    except ValueError:
        return JSONResponse({"error": "Invalid JSON payload"}, status_code=400)
    if not isinstance(payload, dict):
        return JSONResponse({"error": "Invalid JSON payload"}, status_code=400)

    ticker = payload.get("ticker")
    signal = payload.get("signal")
    if not isinstance(ticker, str) or not is_known(ticker.strip().upper()):
        return JSONResponse({"error": f"Unknown ticker: {ticker}"}, status_code=400)

    if not trading_system:
        return _not_ready()

    try:
        outcome = await trading_system.handle_signal(ticker, signal)
    except InvalidSignalError as exc:
        return JSONResponse({"error": str(exc)}, status_code=400)
    except Exception as exc:
        logger.error("Error processing signal %s %s: %s", ticker, signal, exc)
        return JSONResponse({"error": "Failed to process signal"}, status_code=500)

    body = outcome.to_dict()
    body["timestamp"] = _now()
    return body


@app.get("/state")
async def get_state():
    if not trading_system:
        return _not_ready()
    states = await trading_system.get_states()
    return {"states": states, "count": len(states), "timestamp": _now()}


@app.get("/api/transactions/{ticker}")
async def get_transactions(ticker: str):
    if not trading_system:
        return _not_ready()
    ticker = ticker.upper()
    if not is_known(ticker):
        return JSONResponse({"error": f"Unknown ticker: {ticker}"}, status_code=404)
    transactions = await trading_system.get_transactions(ticker)
    return {"ticker": ticker, "transactions": transactions, "count": len(transactions), "timestamp": _now()}


@app.get("/api/account_values")
async def get_account_values():
    if not trading_system:
        return _not_ready()
    values = await trading_system.get_account_values()
    return {"account_values": values, "count": len(values), "timestamp": _now()}


@app.post("/api/state/{ticker}/reset")
async def reset_state(ticker: str, request: Request):
    if not trading_system:
        return _not_ready()
    ticker = ticker.upper()
    if not is_known(ticker):
        return JSONResponse({"error": f"Unknown ticker: {ticker}"}, status_code=404)
    try:
        payload = json.loads(await request.body())
    except ValueError:
        return JSONResponse({"error": "Invalid JSON payload"}, status_code=400)
    if not isinstance(payload, dict):
        return JSONResponse({"error": "Invalid JSON payload"}, status_code=400)

    signal = str(payload.get("signal", SELL)).strip().lower()
    if signal not in SIGNALS:
        return JSONResponse({"error": f"Invalid signal: {signal}"}, status_code=400)
    try:
        position = float(payload.get("position", 0.0))
    except (TypeError, ValueError):
        return JSONResponse({"error": "position must be a number"}, status_code=400)
    if position < 0:
        return JSONResponse({"error": "position must be non-negative"}, status_code=400)

    await trading_system.reset_state(ticker, signal, position)
    logger.warning("Operator reset %s to %s with position %s", ticker, signal, position)
    return {"ticker": ticker, "signal": signal, "position": position, "timestamp": _now()}
