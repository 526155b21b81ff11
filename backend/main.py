"""
Order Lifecycle Engine — FastAPI Application

Specialist readiness confirmation, payment reconciliation with wallet
credits, and order state diagnostics.
"""
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi import HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
from domain.responses import error_body
from routes import diagnostics, health, orders, wallets

# ── Logging ─────────────────────────────────────────────────────────

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan ────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: create tables, wire alerts, start dispatcher. Shutdown: stop it."""
    # data/ holds the default SQLite file
    os.makedirs("data", exist_ok=True)

    settings.validate_production_settings()

    from database import async_session, init_db
    await init_db()
    logger.info("Database initialized")

    from services import readiness_service
    unsubscribe = readiness_service.install_not_ready_alerts(async_session)

    if settings.readiness_scheduler_enabled:
        try:
            from services import readiness_scheduler
            await readiness_scheduler.start()
            logger.info("Readiness dispatcher started")
        except Exception as e:
            logger.warning(f"Readiness dispatcher failed to start (non-fatal): {e}")

    yield  # app runs here

    if settings.readiness_scheduler_enabled:
        from services import readiness_scheduler
        await readiness_scheduler.stop()

    unsubscribe()
    logger.info("Shutting down")


# ── App Factory ─────────────────────────────────────────────────────

app = FastAPI(
    title="Order Lifecycle Engine API",
    description="Specialist readiness, payment reconciliation and order diagnostics",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Routes ──────────────────────────────────────────────────────────

app.include_router(health.router)
app.include_router(orders.router)
app.include_router(wallets.router)
app.include_router(diagnostics.router)


# ── Scheduler Status Endpoint ───────────────────────────────────────

@app.get("/scheduler/status", tags=["scheduler"])
async def get_scheduler_status():
    """Get the current status of the readiness dispatcher."""
    from services import readiness_scheduler
    return readiness_scheduler.get_status()


# ── Exception Handler ───────────────────────────────────────────────


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """
    Catch-all for unhandled exceptions.

    Raw exception details stay in the server log.
    """
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content=error_body("internal_server_error", "Internal server error"),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc: HTTPException):
    """
    Standardize HTTPException responses.

    Keeps the original HTTP status code, but wraps the payload.
    """
    if hasattr(exc, "message") and hasattr(exc, "details"):
        # DomainError: NotFoundError -> "notfound", ConflictError -> "conflict", ...
        error_code = exc.__class__.__name__.replace("Error", "").lower()
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(error_code, exc.message, exc.details),
        )

    detail = exc.detail
    message = detail if isinstance(detail, str) else "Request failed"
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body("http_error", message, detail if not isinstance(detail, str) else None),
    )


# ── Entrypoint ──────────────────────────────────────────────────────

if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port, log_level="info")
