import logging

from fastapi import FastAPI, Request, Depends
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from zetech.config import get_settings
from zetech.database import Base, engine, get_db
from zetech.errors import NotFoundError, PersistenceError, UpstreamSchemaError, ZetechError
from zetech.reconciliation import GatewayOutcome, reconcile
from zetech.routes import router
from zetech.schemas import CallbackEnvelope, parse_gateway

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name, version=settings.app_version)

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(ZetechError)
async def zetech_error_handler(request: Request, exc: ZetechError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.post("/mpesa/callback")
async def mpesa_callback(request: Request, db: Session = Depends(get_db)):
    """
    Result notification pushed by Daraja after the payer answers the STK prompt.

    Storage failures are logged and still acknowledged with 200 so Daraja does
    not keep redelivering a callback that was already received.
    """
    try:
        payload = await request.json()
    except ValueError:
        raise UpstreamSchemaError("Callback body is not valid JSON", status_code=400)

    logger.info("M-Pesa callback received: %s", payload)
    callback = parse_gateway(CallbackEnvelope, payload, "callback", status_code=400).body.stk_callback
    checkout_id = callback.checkout_request_id
    outcome = GatewayOutcome.from_callback(callback)

    try:
        # database work stays off the event loop
        result = await run_in_threadpool(reconcile, db, checkout_id, outcome, source="callback")
    except NotFoundError:
        logger.error("Payment not found for checkout request: %s", checkout_id)
        raise
    except PersistenceError as exc:
        logger.error("Callback for %s not persisted: %s", checkout_id, exc.message)
        return {
            "success": True,
            "status": outcome.status,
            "checkout_request_id": checkout_id,
            "changed": False,
        }

    if outcome.status != "success":
        logger.info("Payment %s for checkout request: %s, reason: %s", outcome.status, checkout_id, outcome.description)

    return {
        "success": True,
        "status": result.transaction.status,
        "checkout_request_id": checkout_id,
        "changed": result.changed,
    }


@app.get("/health")
def health(db: Session = Depends(get_db)):
    db_ok = True
    try:
        db.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Database health check failed")
        db_ok = False

    return {
        "status": "healthy" if db_ok else "degraded",
        "database": "connected" if db_ok else "disconnected",
        "gateway": "configured" if settings.gateway_configured else "not configured",
        "version": settings.app_version,
    }
