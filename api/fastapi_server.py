import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from backtest.candles import CandleSource
from backtest.engine import BacktestError, BacktestRequest, run_backtest
from config import config
from monitoring.logging_utils import setup_logging


engine = None
candle_source = CandleSource()


class BacktestBody(BaseModel):
    token: str
    year: int
    strategy_id: int = Field(alias="strategyId")
    budget: float = Field(gt=0)

    model_config = {"populate_by_name": True}


@asynccontextmanager
async def lifespan(app: FastAPI):
    global engine
    from main import TradingEngine
    engine = TradingEngine()
    if config.api.get("run_engine", True):
        task = asyncio.create_task(engine.start())
    else:
        await engine.store.initialize()
        task = None
    try:
        yield
    finally:
        if engine.running:
            await engine.stop()
        else:
            await engine.store.close()
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)


app = FastAPI(title="Ladder Trading Engine API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.api.get("cors_origins", ["*"]),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    return {
        "service": "Ladder Trading Engine",
        "version": "1.0.0",
        "status": "running" if engine and engine.running else "stopped",
    }


@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "engine_running": engine.running if engine else False,
        "active_orders": len(engine.index) if engine else 0,
        "watched_tokens": len(engine.scheduler.watched_tokens()) if engine else 0,
    }


@app.post("/backtest")
async def backtest(body: BacktestBody):
    if not engine:
        raise HTTPException(status_code=503, detail="Engine not initialized")
    request = BacktestRequest(
        token=body.token,
        year=body.year,
        strategy_id=body.strategy_id,
        budget=body.budget,
    )
    try:
        result = await run_backtest(request, engine.store, candle_source)
    except BacktestError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"message": "Backtest done", "result": result}


if __name__ == "__main__":
    import uvicorn
    setup_logging()
    uvicorn.run(
        app,
        host=config.api.get("host", "0.0.0.0"),
        port=int(config.api.get("port", 3000)),
        log_level="info",
    )
