from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from sqlalchemy import text
import logging
import threading
import time

from kiosklink.api.v1.routes import device, pairing
from kiosklink.core.config import settings
from kiosklink.core.logging_config import setup_logging
from kiosklink.db.init_db import init_db
from kiosklink.db.session import SessionLocal
from kiosklink.services.device_agent import DeviceAgent
from kiosklink.services.local_cache import LocalCache
from kiosklink.services.navigator import create_navigator
from kiosklink.services.realtime import RealtimeClient
from kiosklink.services.store import ScreenStore

# Setup logging first
setup_logging()
logger = logging.getLogger(__name__)


def create_agent() -> DeviceAgent:
    """Wire the agent to the configured store, realtime endpoint, cache and browser."""
    return DeviceAgent(
        store=ScreenStore(),
        realtime=RealtimeClient(),
        cache=LocalCache(SessionLocal),
        navigator=create_navigator(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Start the device agent with the HTTP surface and stop it on shutdown.

    The cache database is (re)created first: it may have been wiped since
    the last boot.
    """
    logger.info("Starting kiosk agent...")

    try:
        init_db()
    except Exception as e:
        # Boot anyway; every cache read then falls back to the store
        logger.error(f"Cache database initialization failed: {e}", exc_info=True)

    agent_thread = None
    if settings.autostart_agent:
        agent = create_agent()
        app.state.agent = agent
        agent_thread = threading.Thread(target=agent.run, daemon=True, name="DeviceAgent")
        agent_thread.start()
        logger.info(f"Device agent started (hostname={agent.env.hostname})")

    logger.info(f"Agent running in {settings.environment} mode")
    yield

    logger.info("Shutting down kiosk agent...")
    agent = getattr(app.state, "agent", None)
    if agent is not None and agent_thread is not None:
        agent.stop()
        agent_thread.join(timeout=10)
    logger.info("Device agent stopped")


app = FastAPI(
    title="Kiosk Agent",
    description="Screen identity and assignment agent for unattended displays",
    version="1.0.0",
    lifespan=lifespan
)


@app.middleware("http")
async def add_process_time(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    response.headers["X-Process-Time"] = str(round(time.time() - start_time, 3))
    return response


app.include_router(pairing.router, prefix=settings.pairing_path, tags=["pairing"])
app.include_router(device.router, prefix="/api/v1", tags=["device"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "Kiosk Agent", "version": "1.0.0"}


@app.get("/health")
async def health(request: Request):
    """
    Health check for the local cache and the realtime channels.

    Returns:
        - 200: All systems healthy
        - 503: System degraded or unhealthy
    """
    health_status = {
        "status": "healthy",
        "cache": {"status": "ok", "latency_ms": 0},
        "realtime": {"status": "unknown", "channels": {}},
        "device": {"state": None},
    }

    try:
        start = time.time()
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
        latency = (time.time() - start) * 1000
        health_status["cache"] = {"status": "ok", "latency_ms": round(latency, 2)}
    except Exception as e:
        # A broken cache only costs a store round trip on the next boot
        health_status["status"] = "degraded"
        health_status["cache"] = {"status": "error", "error": str(e)}
        logger.warning(f"Cache health check failed: {e}")

    agent = getattr(request.app.state, "agent", None)
    if agent is None:
        health_status["status"] = "unhealthy"
    else:
        health_status["device"] = {"state": agent.status().state.value}
        channels = agent.realtime.get_channels()
        health_status["realtime"]["channels"] = {ch.topic: ch.state.value for ch in channels}
        if not channels:
            health_status["realtime"]["status"] = "idle"
        elif all(ch.is_disconnected for ch in channels):
            health_status["realtime"]["status"] = "disconnected"
            if health_status["status"] == "healthy":
                health_status["status"] = "degraded"
        else:
            health_status["realtime"]["status"] = "ok"

    status_code = 200 if health_status["status"] == "healthy" else 503
    return JSONResponse(content=health_status, status_code=status_code)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.agent_host, port=settings.agent_port)
