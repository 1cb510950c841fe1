import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from billing.config import get_settings
from billing.database import Base, engine
from billing.errors import PaymentError, ProviderUnavailable, StoreUnavailable, Unauthenticated, Unparseable
from billing.logging_config import REQUEST_ID_HEADER, request_id_var, setup_logging
from billing.routes import router

setup_logging(get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Course Billing Reconciliation Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.middleware("http")
async def assign_request_id(request: Request, call_next):
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    token = request_id_var.set(request_id)
    try:
        response = await call_next(request)
    finally:
        request_id_var.reset(token)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


@app.exception_handler(Unauthenticated)
async def unauthenticated_handler(request: Request, exc: Unauthenticated):
    return JSONResponse(status_code=401, content={"detail": "Invalid signature"})


@app.exception_handler(Unparseable)
async def unparseable_handler(request: Request, exc: Unparseable):
    logger.warning("Unparseable notification", extra={"path": request.url.path, "reason": str(exc)})
    return JSONResponse(status_code=400, content={"detail": "Invalid payload"})


@app.exception_handler(StoreUnavailable)
@app.exception_handler(ProviderUnavailable)
async def unavailable_handler(request: Request, exc: PaymentError):
    # Non-2xx makes the provider retry; retries are safe.
    return JSONResponse(status_code=503, content={"detail": "Temporarily unavailable, please retry"})


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    logger.error("Payment processing failed", extra={"path": request.url.path}, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Payment processing failed"})


@app.get("/health")
def health():
    return {"status": "ok"}
