"""
Paper Futures Bot - Main Application
Simulated leveraged trading driven by technical-indicator confirmation
"""
import logging
from datetime import datetime
from typing import List, Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from paperbot.bot_manager import BotManager
from paperbot.config import Settings
from paperbot.errors import AccountNotFoundError, MarketDataError, PositionConflictError
from paperbot.market_data import BinanceMarketData
from paperbot.mock_market import MockMarketData
from paperbot.models import (
    BotStatus, ConfigUpdateRequest, PositionSizeResult, Projection, TimeframeAnalysis, TradeStats
)
from paperbot.notifier import FirebaseNotifier
from paperbot.store import create_store

settings = Settings.from_env()

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Global state
bot_manager: Optional[BotManager] = None
connected_clients: List[WebSocket] = []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown"""
    global bot_manager

    logger.info("🚀 Starting Paper Futures Bot...")

    try:
        store = create_store(settings.db_path)

        if settings.market == "mock":
            market_data = MockMarketData()
            logger.warning("⚠️  Using MOCK market data - prices are random walks")
        else:
            market_data = BinanceMarketData(settings.binance_url, timeout=settings.http_timeout)

        notifier = FirebaseNotifier(settings.firebase_credentials_path or None)

        bot_manager = BotManager(
            store,
            market_data,
            notifier=notifier,
            kline_limit=settings.kline_limit,
            tick_seconds=settings.tick_seconds,
        )
        bot_manager.set_event_callback(broadcast_to_clients)
        bot_manager.ensure_account(settings.default_account)
        bot_manager.start()

        logger.info("✅ All services initialized successfully - PAPER TRADING (no real money)")

    except Exception as e:
        logger.error(f"❌ Startup error: {e}")
        raise

    yield

    logger.info("🛑 Shutting down Paper Futures Bot...")
    if bot_manager:
        bot_manager.stop()
        if isinstance(bot_manager.market_data, BinanceMarketData):
            await bot_manager.market_data.aclose()
        bot_manager.store.close()


app = FastAPI(
    title="Paper Futures Bot",
    description="Simulated leveraged trading on technical-indicator confirmation",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_manager() -> BotManager:
    if not bot_manager:
        raise HTTPException(status_code=500, detail="Bot manager not initialized")
    return bot_manager


async def broadcast_to_clients(message: dict):
    """Broadcast message to all connected WebSocket clients"""
    if not connected_clients:
        return

    disconnected = []
    for client in connected_clients:
        try:
            await client.send_json(message)
        except Exception:
            disconnected.append(client)

    for client in disconnected:
        if client in connected_clients:
            connected_clients.remove(client)


@app.get("/")
async def root():
    return {
        "name": "Paper Futures Bot",
        "version": "1.0.0",
        "status": "running",
        "timestamp": datetime.now().isoformat()
    }


@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "scheduler_running": bot_manager.scheduler.running if bot_manager else False,
        "timestamp": datetime.now().isoformat()
    }


@app.get("/api/bots")
async def list_bots():
    manager = get_manager()
    accounts = manager.accounts()
    return {
        "bots": [c.model_dump(mode="json") for c in accounts],
        "count": len(accounts),
        "timestamp": datetime.now().isoformat()
    }


@app.get("/api/bots/{account_id}", response_model=BotStatus)
async def get_bot_status(account_id: str):
    """Config plus recent positions, trades and logs"""
    manager = get_manager()
    try:
        return manager.status(account_id)
    except AccountNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.post("/api/bots/{account_id}/action")
async def bot_action(account_id: str, request: dict):
    """Manual actions: toggle, run, reset, reset_balance, update_config"""
    manager = get_manager()
    action = request.get("action", "run")

    try:
        if action == "toggle":
            config = await manager.toggle(account_id)
            return {"is_active": config.is_active}

        if action == "run":
            result = await manager.run(account_id)
            status = manager.status(account_id)
            status.analysis = result.analysis
            status.executed = result.executed
            return status

        if action == "reset":
            await manager.reset(account_id)
            return {"message": "Bot reset"}

        if action == "reset_balance":
            new_balance = request.get("new_balance")
            if new_balance is not None and float(new_balance) <= 0:
                raise HTTPException(status_code=422, detail="new_balance must be positive")
            config = await manager.reset_balance(
                account_id, float(new_balance) if new_balance is not None else None)
            return {"message": f"Balance reset to {config.current_balance}"}

        if action == "update_config":
            update = ConfigUpdateRequest(**request)
            config = await manager.update_config(account_id, update)
            return {"message": "Config updated", "config": config}

        raise HTTPException(status_code=400, detail=f"Unknown action '{action}'")

    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))
    except AccountNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except MarketDataError as e:
        logger.warning(f"Market data unavailable for {account_id}: {e}")
        raise HTTPException(status_code=503, detail=str(e))
    except PositionConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))


@app.get("/api/bots/{account_id}/signals")
async def get_signals(account_id: str):
    """Current indicator votes for the account's symbol"""
    manager = get_manager()
    try:
        analysis = await manager.current_signals(account_id)
    except AccountNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except MarketDataError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {
        "analysis": analysis,
        "bias_score": analysis.bias_score,
        "timestamp": datetime.now().isoformat()
    }


@app.get("/api/bots/{account_id}/forecast", response_model=Projection)
async def get_forecast(account_id: str, periods: Optional[int] = None):
    """Regression projection with bull and bear bands"""
    if periods is not None and not 1 <= periods <= 500:
        raise HTTPException(status_code=422, detail="periods must be between 1 and 500")
    manager = get_manager()
    try:
        return await manager.forecast(account_id, periods)
    except AccountNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except MarketDataError as e:
        raise HTTPException(status_code=503, detail=str(e))


@app.get("/api/bots/{account_id}/strategy", response_model=TimeframeAnalysis)
async def get_timeframe_strategy(account_id: str):
    """Hourly trend, ADR usage and 5-minute pullback"""
    manager = get_manager()
    try:
        return await manager.timeframe_analysis(account_id)
    except AccountNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except MarketDataError as e:
        raise HTTPException(status_code=503, detail=str(e))


@app.get("/api/bots/{account_id}/trades")
async def get_trade_history(account_id: str, limit: int = 50):
    manager = get_manager()
    try:
        manager.store.get_config(account_id)
    except AccountNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    trades = manager.store.get_trades(account_id, limit)
    return {
        "trades": [t.model_dump(mode="json") for t in trades],
        "count": len(trades),
        "timestamp": datetime.now().isoformat()
    }


@app.get("/api/bots/{account_id}/stats", response_model=TradeStats)
async def get_trade_stats(account_id: str):
    manager = get_manager()
    try:
        manager.store.get_config(account_id)
    except AccountNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return manager.trade_stats(account_id)


@app.get("/api/bots/{account_id}/position-size", response_model=PositionSizeResult)
async def get_position_size(account_id: str, risk_pct: float = 1.0, side: str = "long",
                            sl_multiplier: float = 1.5):
    """ATR-based size for risking risk_pct of the current balance"""
    if side not in ("long", "short"):
        raise HTTPException(status_code=422, detail="side must be 'long' or 'short'")
    if risk_pct <= 0 or sl_multiplier <= 0:
        raise HTTPException(status_code=422, detail="risk_pct and sl_multiplier must be positive")
    manager = get_manager()
    try:
        return await manager.position_size(account_id, risk_pct, side, sl_multiplier)
    except AccountNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except MarketDataError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint for real-time tick updates"""
    await websocket.accept()
    connected_clients.append(websocket)

    try:
        await websocket.send_json({
            "type": "connection_established",
            "message": "Connected to Paper Futures Bot",
            "timestamp": datetime.now().isoformat()
        })

        while True:
            try:
                data = await websocket.receive_text()
                logger.info(f"Received from client: {data}")
            except WebSocketDisconnect:
                break

    except Exception as e:
        logger.error(f"WebSocket error: {e}")
    finally:
        if websocket in connected_clients:
            connected_clients.remove(websocket)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=False,
        log_level="info"
    )
