#main.py
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

import db
from cashout.errors import CashOutNotFound, DuplicateReference, StaleRecordError, ValidationError
from cashout.providers.factory import reset_provider_cache
from cashout.records.state_machine import InvalidTransition
from cashout.runtime import get_runtime
from middleware import RequestContextMiddleware
from routes.admin_cash_outs import router as admin_cash_outs_router
from routes.health import router as health_router
from routes.metrics import router as metrics_router
from routes.webhooks import router as webhooks_router
from settings import settings, validate_env_settings

logging.basicConfig(
    level=getattr(logging, (settings.LOG_LEVEL or "INFO").upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("cashout")


@asynccontextmanager
async def lifespan(app: FastAPI):
    validate_env_settings()
    runtime = get_runtime()
    if settings.SCHEDULERS_ENABLED:
        runtime.supervisor.start()
    try:
        yield
    finally:
        runtime.supervisor.stop()
        reset_provider_cache()
        db.close_pool()


app = FastAPI(title="Cash-Out Core", version="1.0.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)

# -----------------------------
# ROUTERS
# -----------------------------

app.include_router(health_router)
app.include_router(metrics_router)
app.include_router(admin_cash_outs_router)
app.include_router(webhooks_router)


@app.exception_handler(CashOutNotFound)
async def not_found_handler(request: Request, exc: CashOutNotFound):
    return JSONResponse(status_code=404, content={"detail": "CASH_OUT_NOT_FOUND", "cash_out_id": exc.cash_out_id})


@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(request: Request, exc: InvalidTransition):
    return JSONResponse(status_code=409, content={"detail": "INVALID_TRANSITION", "message": str(exc)})


@app.exception_handler(StaleRecordError)
async def stale_record_handler(request: Request, exc: StaleRecordError):
    return JSONResponse(status_code=409, content={"detail": "CONCURRENT_UPDATE", "message": str(exc)})


@app.exception_handler(DuplicateReference)
async def duplicate_reference_handler(request: Request, exc: DuplicateReference):
    return JSONResponse(status_code=409, content={"detail": "DUPLICATE_REFERENCE", "reference": exc.reference})


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": exc.code, "message": str(exc)})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled error path=%s", request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )
