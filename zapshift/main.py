from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from zapshift.config import load_settings
from zapshift.database import Database
from zapshift.errors import ZapShiftError
from zapshift.logging_config import setup_logging
from zapshift.models import Parcel, PaymentRecord  # noqa: F401
from zapshift.reconciliation import ReconciliationEngine
from zapshift.routes import router
from zapshift.stores import ParcelStore, PaymentLedger
from zapshift.stripe_service import PaymentSessionVerifier

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = load_settings()
    setup_logging(settings.log_level)

    database = Database(settings.database_url, echo=settings.database_echo)
    await database.open()

    app.state.settings = settings
    app.state.database = database
    app.state.parcels = ParcelStore(database.sessions)
    app.state.ledger = PaymentLedger(database.sessions)
    app.state.verifier = PaymentSessionVerifier(
        settings.stripe_secret_key, settings.stripe_webhook_secret, settings.payment_currency
    )
    app.state.engine = ReconciliationEngine(app.state.verifier, app.state.parcels, app.state.ledger)
    logger.info("zapshift_started", database=database.url.split("://", 1)[0])

    try:
        yield
    finally:
        await database.close()
        logger.info("zapshift_stopped")


app = FastAPI(title="ZapShift Parcel Service", lifespan=lifespan)

app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])

app.include_router(router)


@app.exception_handler(ZapShiftError)
async def zapshift_error_handler(request: Request, exc: ZapShiftError):
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, error=exc.message, status_code=exc.status_code)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": "Invalid input", "errors": jsonable_errors(exc)})


def jsonable_errors(exc: RequestValidationError) -> list:
    return [{"loc": list(error["loc"]), "msg": error["msg"]} for error in exc.errors()]


@app.get("/")
async def root():
    return {"status": "ok", "message": "zap is shifting"}
