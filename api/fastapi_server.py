from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from config import config


coordinator = None


def attach(system: Any) -> None:
    """Expose ``system`` (a MultiSymbolCoordinator) through the status API."""
    global coordinator
    coordinator = system


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _require() -> Any:
    if coordinator is None:
        raise HTTPException(status_code=503, detail="Trading system not initialized")
    return coordinator


app = FastAPI(title="Trader Status API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(config.section('api').get('cors_origins') or []),
    allow_credentials=True,
    allow_methods=["GET"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    return {
        "service": "Multi-Symbol Trader",
        "version": "1.0.0",
        "status": "running" if coordinator and coordinator.running else "stopped",
    }


@app.get("/favicon.ico")
async def favicon():
    return Response(content=b"", media_type="image/x-icon")


@app.get("/health")
async def health():
    traders = coordinator.traders.values() if coordinator else []
    paused = sorted(t.symbol for t in traders if t.paused)
    return {
        "status": "degraded" if paused else "healthy",
        "timestamp": _now(),
        "system_running": coordinator.running if coordinator else False,
        "paused_traders": paused,
    }


@app.get("/api/portfolio")
async def get_portfolio():
    system = _require()
    return {"portfolio": system.portfolio_status(), "timestamp": _now()}


@app.get("/api/traders")
async def get_traders():
    system = _require()
    status = system.status()
    return {"traders": status["traders"], "count": len(status["traders"]), "timestamp": _now()}


@app.get("/api/traders/{symbol}")
async def get_trader(symbol: str):
    system = _require()
    trader = system.traders.get(symbol.upper())
    if trader is None:
        raise HTTPException(status_code=404, detail=f"No trader for {symbol.upper()}")
    return trader.status()


@app.get("/api/events")
async def get_events(limit: int = 100, kind: Optional[str] = None):
    system = _require()
    events = [e for e in system.recent_events if kind is None or e.kind.value == kind]
    out: List[Dict[str, Any]] = [e.as_dict() for e in events[-max(0, limit):]] if limit else []
    return {"events": out, "count": len(out), "timestamp": _now()}
