import logging
import time
from pathlib import Path

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text

import inboxpay.models  # noqa: F401  # registers tables on Base.metadata
from inboxpay.config import settings
from inboxpay.db import Base, engine, is_sqlite_url
from inboxpay.errors import (
    ClassifierError,
    NotFoundError,
    OAuthError,
    ProviderError,
    ReauthRequiredError,
    SyncInProgressError,
    UnsupportedProviderError,
)
from inboxpay.rate_limit import limiter
from inboxpay.routers import analysis, auth, mail
from inboxpay.services.analysis_queue import QueueScheduler, analysis_queue

from alembic import command
from alembic.config import Config

# ---------------- Logging ----------------
logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    force=True,  # uvicorn installs its own handlers first
)

logger = logging.getLogger("inboxpay.main")

VERSION = "0.1.0"

app = FastAPI(title="InboxPay", version=VERSION)
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)

queue_scheduler = QueueScheduler(analysis_queue)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s -> %s (%.2fms)",
        request.method,
        request.url.path,
        getattr(response, "status_code", "?"),
        elapsed_ms,
    )
    return response


def _error(status_code: int, code: str, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "code": code, "message": message, **extra})


@app.exception_handler(ReauthRequiredError)
def reauth_handler(request: Request, exc: ReauthRequiredError):
    return _error(
        401,
        "reauth_required",
        str(exc),
        needs_reauth=True,
        mail_account_id=exc.account_id,
        provider=exc.provider,
    )


@app.exception_handler(SyncInProgressError)
def sync_in_progress_handler(request: Request, exc: SyncInProgressError):
    return _error(409, "sync_in_progress", str(exc), mail_account_id=exc.account_id)


@app.exception_handler(NotFoundError)
def not_found_handler(request: Request, exc: NotFoundError):
    return _error(404, "not_found", str(exc))


@app.exception_handler(UnsupportedProviderError)
def unsupported_provider_handler(request: Request, exc: UnsupportedProviderError):
    return _error(400, "unsupported_provider", str(exc))


@app.exception_handler(OAuthError)
def oauth_error_handler(request: Request, exc: OAuthError):
    return _error(400, "oauth_error", str(exc))


@app.exception_handler(ProviderError)
def provider_error_handler(request: Request, exc: ProviderError):
    logger.warning("provider error on %s %s: %s", request.method, request.url.path, exc)
    return _error(502, "provider_error", str(exc), provider_status=exc.status_code)


@app.exception_handler(ClassifierError)
def classifier_error_handler(request: Request, exc: ClassifierError):
    logger.warning("classifier error on %s %s: %s", request.method, request.url.path, exc)
    return _error(502, "classifier_error", str(exc))


@app.exception_handler(RateLimitExceeded)
def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return _error(429, "rate_limited", "Too many requests", details=exc.detail)


@app.exception_handler(RequestValidationError)
def validation_exception_handler(request: Request, exc: RequestValidationError):
    return _error(422, "validation_error", "Invalid request", details=jsonable_errors(exc))


def jsonable_errors(exc: RequestValidationError) -> list:
    # ctx may carry exception instances
    return [{k: v for k, v in e.items() if k != "ctx"} for e in exc.errors()]


@app.exception_handler(HTTPException)
def http_exception_handler(request: Request, exc: HTTPException):
    return _error(
        exc.status_code,
        "http_error",
        exc.detail if isinstance(exc.detail, str) else "Request failed",
        details=exc.detail if not isinstance(exc.detail, str) else None,
    )


@app.exception_handler(Exception)
def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s: %s", request.method, request.url.path, str(exc))
    return _error(500, "internal_error", "Internal Server Error")


def run_migrations() -> None:
    if is_sqlite_url(settings.DATABASE_URL):
        Base.metadata.create_all(bind=engine)
        logger.info("startup: sqlite schema ensured")
        return

    with engine.connect() as connection:
        lock_acquired = connection.execute(
            text("SELECT pg_try_advisory_lock(:lock_id)"),
            {"lock_id": settings.MIGRATION_LOCK_ID},
        ).scalar()

        if not lock_acquired:
            logger.info("startup: migrations skipped (another instance holds lock)")
            return

        try:
            logger.info("startup: running database migrations")
            alembic_cfg = Config(str(Path(__file__).resolve().parent.parent / "alembic.ini"))
            alembic_cfg.set_main_option("sqlalchemy.url", settings.DATABASE_URL)
            command.upgrade(alembic_cfg, "head")
            logger.info("startup: migrations complete")
        finally:
            connection.execute(
                text("SELECT pg_advisory_unlock(:lock_id)"),
                {"lock_id": settings.MIGRATION_LOCK_ID},
            )


@app.on_event("startup")
async def on_startup():
    if settings.MIGRATIONS_ON_STARTUP:
        run_migrations()
    else:
        logger.info("startup: migrations disabled")

    if settings.queue_loops_enabled:
        queue_scheduler.start()
    else:
        logger.info("startup: analysis queue loops disabled (LLM_PROVIDER=%s)", settings.LLM_PROVIDER)


@app.on_event("shutdown")
async def on_shutdown():
    if queue_scheduler.running:
        await queue_scheduler.stop()


app.include_router(auth.router)
app.include_router(mail.router)
app.include_router(analysis.router)


@app.get("/health", tags=["system"])
def health():
    return {"ok": True, "service": "inboxpay", "version": VERSION}


@app.get("/readiness", tags=["system"])
def readiness():
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return {"ok": True, "analysis_queue": analysis_queue.status(peek=0)}
    except Exception:
        logger.exception("readiness check failed")
        return JSONResponse(status_code=503, content={"ok": False})
