# FastAPI Server for the Influence Chat platform
# Negotiated chats, escrow payments and realtime fan-out

import asyncio
import logging
import os

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from dotenv import load_dotenv

from config.app_config import OUTBOX_REDELIVERY_SECONDS, SWEEP_INTERVAL_MINUTES
from core.errors import ChatEngineError
from database.config import SessionLocal, init_db
from services.realtime import ConnectionManager, RealtimeHub
from services.settings_service import SettingsHolder
from services.timeout_sweeper import run_sweep

# Import chat routers (v2 API)
from routers.conversations import router as conversations_router
from routers.requests import router as requests_router
from routers.payments import router as payments_router
from routers.wallet import router as wallet_router
from routers.notifications import router as notifications_router
from routers.admin_settings import router as admin_settings_router
from routers.realtime import router as realtime_router

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Influence Chat API",
    description="Negotiated chat, escrow and realtime messaging for influencer campaigns",
    version="1.0.0"
)

# One settings holder and one hub per process; routers read them from app.state
app.state.settings = SettingsHolder()
app.state.manager = ConnectionManager()
app.state.hub = RealtimeHub(app.state.manager, SessionLocal)
app.state.gateway = None  # PaystackService() on demand


@app.exception_handler(ChatEngineError)
async def chat_engine_error_handler(request: Request, exc: ChatEngineError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def _redeliver_loop(hub: RealtimeHub):
    while True:
        await asyncio.sleep(OUTBOX_REDELIVERY_SECONDS)
        try:
            await hub.redeliver()
        except Exception:
            logger.exception("Outbox redelivery failed")


@app.on_event("startup")
async def startup_event():
    # Initialize database tables and reserved users
    init_db()

    hub: RealtimeHub = app.state.hub
    hub.start()
    app.state.realtime_tasks = [
        asyncio.create_task(hub.run()),
        asyncio.create_task(_redeliver_loop(hub)),
    ]
    logger.info("✅ Realtime hub started")

    # Initialize Scheduler for idle conversation sweeps
    from apscheduler.schedulers.background import BackgroundScheduler

    def scheduled_sweep():
        logger.info("⏰ Running scheduled idle sweep...")
        try:
            run_sweep(SessionLocal, app.state.settings, hub)
        except Exception:
            logger.exception("❌ Scheduled idle sweep failed")

    scheduler = BackgroundScheduler()
    scheduler.add_job(scheduled_sweep, 'interval', minutes=SWEEP_INTERVAL_MINUTES)
    scheduler.start()
    app.state.scheduler = scheduler
    logger.info(f"✅ Scheduler started: idle sweep every {SWEEP_INTERVAL_MINUTES} minutes.")


@app.on_event("shutdown")
async def shutdown_event():
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        scheduler.shutdown(wait=False)
    for task in getattr(app.state, "realtime_tasks", []):
        task.cancel()
    app.state.hub.stop()


# CORS Setup - Allow all origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,  # Required when using "*"
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
)


# ============================================================================
# CHAT ROUTERS (v2 API)
# ============================================================================
app.include_router(conversations_router, prefix="/api/v2")
app.include_router(requests_router, prefix="/api/v2")
app.include_router(payments_router, prefix="/api/v2")
app.include_router(wallet_router, prefix="/api/v2")
app.include_router(notifications_router, prefix="/api/v2")
app.include_router(admin_settings_router, prefix="/api/v2")
app.include_router(realtime_router)


@app.get("/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("server:app", host="0.0.0.0", port=int(os.getenv("PORT", 8000)))
