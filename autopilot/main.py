import asyncio
import os

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from autopilot.config import settings
from autopilot.database import get_db
from autopilot.logging_config import get_logger, setup_logging
from autopilot.models import ChannelSession, ChatMessage, Contact
from autopilot.routers import webhook
from autopilot.services.runtime import AutopilotRuntime

setup_logging(settings.log_level)

app = FastAPI(
    title="Autopilot",
    description="WhatsApp conversation autopilot with human handover",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)

sweeper_logger = get_logger("sweeper")
_sweeper_task: asyncio.Task | None = None


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _is_sweeper_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return _is_env_enabled(os.environ.get("SWEEPER_ENABLED"), default=True)


@app.on_event("startup")
async def start_runtime() -> None:
    global _sweeper_task
    if getattr(app.state, "runtime", None) is None:
        app.state.runtime = AutopilotRuntime.from_settings()
    if not _is_sweeper_enabled():
        return
    if _sweeper_task is None or _sweeper_task.done():
        _sweeper_task = asyncio.create_task(app.state.runtime.run_sweeper(settings.sweep_interval_seconds))
        sweeper_logger.info("Sweeper started", extra={"context": {"interval": settings.sweep_interval_seconds}})


@app.on_event("shutdown")
async def stop_runtime() -> None:
    global _sweeper_task
    if _sweeper_task is not None:
        _sweeper_task.cancel()
        try:
            await _sweeper_task
        except asyncio.CancelledError:
            pass
        _sweeper_task = None
    runtime = getattr(app.state, "runtime", None)
    if runtime is not None:
        await runtime.shutdown()


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    return {
        "status": "ok",
        "channels": db.query(ChannelSession).count(),
        "contacts": db.query(Contact).count(),
        "messages": db.query(ChatMessage).count(),
    }
