import datetime as dt
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.orm import Session

from . import __version__, config
from .db import get_db, init_db
from .errors import register_error_handlers
from .logging_config import configure_logging
from .rate_limit import limiter
from . import account, auth, billing, webhooks, workflows

logger = logging.getLogger(__name__)

STARTED_AT = time.monotonic()


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    config.validate()
    init_db()
    limiter.start_sweeper()
    logger.info("Application started", extra={"env": config.ENV, "version": __version__})
    try:
        yield
    finally:
        limiter.stop_sweeper()


app = FastAPI(title="WorkflowDebugger", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)


@app.get("/health")
def health(db: Session = Depends(get_db)):
    report = {
        "status": "healthy",
        "version": __version__,
        "timestamp": dt.datetime.now(dt.timezone.utc).isoformat(),
        "uptime": int(time.monotonic() - STARTED_AT),
        "checks": {"database": {"status": "ok", "latency_ms": 0}},
    }
    started = time.perf_counter()
    try:
        db.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("Health check database probe failed: %s", exc)
        report["checks"]["database"] = {"status": "error", "error": str(exc)[:100]}
        report["status"] = "unhealthy"
    report["checks"]["database"]["latency_ms"] = int((time.perf_counter() - started) * 1000)

    return JSONResponse(
        report,
        status_code=200 if report["status"] == "healthy" else 503,
        headers={"Cache-Control": "no-cache, no-store"},
    )


app.include_router(auth.router)
app.include_router(billing.router)
app.include_router(webhooks.router)
app.include_router(workflows.router)
app.include_router(account.router)
