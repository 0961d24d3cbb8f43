"""
Entitlement Ledger — FastAPI Application Entry Point

Aggregates all routers, configures middleware, maps ledger errors to JSON
responses and initializes the database on startup.
"""
import time
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from ledger.config import get_settings
from ledger.database import SessionLocal, init_db
from ledger.exceptions import LedgerError, INFRASTRUCTURE, SECURITY
from ledger.jobs.sweeper import SweepWorker
from ledger.routes import payment_router, wallet_router, subscription_router, shop_router, admin_router
from ledger.utils.logger import get_logger, log_event, set_trace_id, setup_logging

settings = get_settings()
logger = get_logger("ledger")

BOOT_TIME = time.time()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize logging and database tables; start the sweeper when enabled."""
    setup_logging()
    init_db()

    logger.info(
        "%s v%s starting | time=%s | database=%s | redis=%s | sweeper=%s | debug=%s",
        settings.APP_NAME, settings.APP_VERSION, datetime.now().isoformat(),
        settings.DATABASE_URL, "on" if settings.REDIS_URL else "off",
        "on" if settings.SWEEPER_ENABLED else "off", settings.DEBUG,
    )

    worker = None
    if settings.SWEEPER_ENABLED:
        worker = SweepWorker()
        worker.start()
    try:
        yield
    finally:
        if worker is not None:
            worker.stop()


# ─── Application Instance ───────────────────────────────────────────
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=(
        "Transactional entitlement ledger: payment orders with a strict lifecycle, "
        "signed and replay-protected gateway callbacks, a concurrency-safe points "
        "ledger, and membership subscriptions derived from settled payments."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


# ─── Middleware ──────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Bind a trace id and log every API request with timing."""
    trace_id = set_trace_id(request.headers.get("x-trace-id"))
    start = time.time()
    response = await call_next(request)
    duration = round((time.time() - start) * 1000, 1)

    if request.url.path.startswith("/api"):
        log_event(logger, "http.request", method=request.method, path=request.url.path,
                  status=response.status_code, ms=duration)
    response.headers["X-Trace-Id"] = trace_id
    return response


# ─── Error Handling ──────────────────────────────────────────────────
@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    if exc.category == INFRASTRUCTURE:
        logger.error("store unavailable | path=%s | %s", request.url.path, exc.message, exc_info=exc)
    elif exc.category == SECURITY:
        logger.warning("security rejection | path=%s | code=%s | %s", request.url.path, exc.code, exc.message)
    else:
        logger.info("request rejected | path=%s | code=%s | %s", request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


# ─── API Routers ─────────────────────────────────────────────────────
app.include_router(payment_router)
app.include_router(wallet_router)
app.include_router(subscription_router)
app.include_router(shop_router)
app.include_router(admin_router)


@app.get("/health", tags=["Health"])
def deep_health():
    """Health check including database connectivity."""
    db_ok = False
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        db_ok = True
    except Exception:
        logger.exception("health check: database unreachable")
    finally:
        db.close()

    return {
        "status": "healthy" if db_ok else "degraded",
        "database": "connected" if db_ok else "disconnected",
        "ttl_store": "redis" if settings.REDIS_URL else "memory",
        "uptime_seconds": round(time.time() - BOOT_TIME, 1),
        "version": settings.APP_VERSION,
    }
