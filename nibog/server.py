from __future__ import annotations
import logging
import os
from typing import Optional

import httpx
import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from sqlalchemy.exc import OperationalError

from fastapi import Body, Depends, FastAPI, Request
from fastapi.responses import ORJSONResponse

from . import pending
from .bookings import BookingSink, SqlBookingSink, WebhookBookingSink
from .checkout import initiate_payment
from .config import (
    PaymentConfig, config_summary, log_config, require_valid_config,
    resolve_config,
)
from .errors import (
    BookingOutcomeUnknown, CorruptedBooking, GatewayRejected,
    InvalidPaymentRequest, PaymentError,
    SignatureError, StaleBooking, TamperDetected,
)
from .helpers import now_ms
from .infra.sql import make_async_engine
from .model.booking import Base
from .model.pendingbooking import (
    BACKEND as PENDING_BACKEND, create_schema, new_store,
)
from .phonepe import PaymentAdapter, PhonePe, generate_transaction_id
from .reconcile import handle_callback, handle_status

# ----------------------------
# Config & Constants
# ----------------------------
logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("nibog.server")

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./nibog.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://127.0.0.1:6379")
BOOKING_SINK = os.environ.get("BOOKING_SINK", "sql").lower()  # sql | webhook
BOOKING_API_URL = os.environ.get("BOOKING_API_URL", "")
BOOKING_PAYMENT_API_URL = os.environ.get("BOOKING_PAYMENT_API_URL", "")
PENDING_BOOKING_TTL_SECONDS = int(
    os.environ.get("PENDING_BOOKING_TTL_SECONDS",
                   str(pending.DEFAULT_TTL_SECONDS))
)

CONFIG: PaymentConfig = resolve_config()

engine, SessionAsync, gated = make_async_engine(DATABASE_URL)

app = FastAPI(
    title="NIBOG Payments",
    default_response_class=ORJSONResponse,
)


# ----------------------------
# Dependencies
# ----------------------------
def get_config() -> PaymentConfig:
    return CONFIG


def get_gateway(
    cfg: PaymentConfig = Depends(get_config),
) -> PaymentAdapter:
    return PhonePe(cfg, app.state.http)


def pending_bookings():
    if PENDING_BACKEND == "sql":
        return new_store(sessions=SessionAsync, gated=gated)
    return new_store(r=app.state.redis)


def booking_sink() -> BookingSink:
    if BOOKING_SINK == "webhook":
        return WebhookBookingSink(app.state.http, BOOKING_API_URL,
                                  BOOKING_PAYMENT_API_URL)
    return SqlBookingSink(SessionAsync, gated)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    print('\n' * 2)
    print('=' * 50)
    print('NIBOG payments is starting up...')
    print(f'   - PhonePe environment:      {CONFIG.environment}')
    print(f'   - Pending bookings backend: {PENDING_BACKEND}')
    print(f'   - Booking sink:             {BOOKING_SINK}')
    print('=' * 50)
    print('\n' * 2)
    log_config(CONFIG)
    # production refuses to start without credentials
    require_valid_config(CONFIG)
    if BOOKING_SINK == "webhook" and not (BOOKING_API_URL
                                          and BOOKING_PAYMENT_API_URL):
        raise RuntimeError("BOOKING_SINK=webhook needs BOOKING_API_URL and "
                           "BOOKING_PAYMENT_API_URL")


@app.on_event("startup")
async def _db_init():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        if PENDING_BACKEND == "sql":
            await create_schema(conn)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=CONFIG.timeout_seconds,
        limits=httpx.Limits(
            max_connections=100, max_keepalive_connections=20
        ),
    )


@app.on_event("startup")
async def _redis_start():
    if PENDING_BACKEND != "sql":
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=int(os.getenv("REDIS_MAX_CONN", "64")),
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


@app.on_event("shutdown")
async def _db_stop():
    await engine.dispose()


# ----------------------------
# Error mapping
# ----------------------------
@app.exception_handler(PaymentError)
async def _payment_error(request: Request, exc: PaymentError):
    body = {"success": False, "error": exc.message}
    body.update({k: v for k, v in exc.extra.items() if v is not None})
    status = exc.status_code

    if isinstance(exc, TamperDetected):
        logger.critical("rejected %s: %s", request.url.path, exc.message)
        body["tamperDetected"] = True
    elif isinstance(exc, SignatureError):
        logger.error("signature failure on %s: %s",
                     request.url.path, exc.message)
    elif isinstance(exc, GatewayRejected):
        body["gatewayResponse"] = exc.body
    elif isinstance(exc, CorruptedBooking):
        body["needsCleanup"] = True
        raw = exc.raw
        body["rawBookingData"] = raw[:1000] if isinstance(raw, str) else raw
    elif isinstance(exc, StaleBooking):
        body["restartCheckout"] = True
    elif isinstance(exc, BookingOutcomeUnknown):
        body["needsReconcile"] = True
    return ORJSONResponse(body, status_code=status)


@app.exception_handler(RedisConnectionError)
@app.exception_handler(RedisTimeoutError)
@app.exception_handler(OperationalError)
async def _store_unavailable(request: Request, exc: Exception):
    logger.error("store unreachable on %s: %s", request.url.path, exc)
    return ORJSONResponse(
        {"success": False, "error": f"Network error: {exc}",
         "networkError": True},
        status_code=503,
    )


# ----------------------------
# API: Payments
# ----------------------------
@app.post("/api/payments/phonepe-initiate")
async def api_initiate_payment(
    payload: dict = Body(...),
    cfg: PaymentConfig = Depends(get_config),
    gateway: PaymentAdapter = Depends(get_gateway),
    store=Depends(pending_bookings),
):
    booking_data = payload.get("bookingData") or {}
    user_id = payload.get("userId") or booking_data.get("userId")
    result = await initiate_payment(
        cfg, gateway, store,
        booking_id=payload.get("bookingId") or user_id,
        user_id=user_id,
        amount=payload.get("amount") or booking_data.get("totalAmount"),
        mobile_number=(payload.get("mobileNumber")
                       or booking_data.get("phone") or ""),
        booking_data=booking_data,
        ttl_seconds=PENDING_BOOKING_TTL_SECONDS,
    )
    return result.to_json()


@app.post("/api/payments/phonepe-callback")
async def api_phonepe_callback(
    request: Request,
    gateway: PaymentAdapter = Depends(get_gateway),
    store=Depends(pending_bookings),
    sink: BookingSink = Depends(booking_sink),
):
    body = await request.body()
    result = await handle_callback(gateway, store, sink, body,
                                   request.headers)
    return result.to_json()


@app.get("/api/payments/phonepe-status/{transaction_id}")
async def api_phonepe_status(
    transaction_id: str,
    gateway: PaymentAdapter = Depends(get_gateway),
    store=Depends(pending_bookings),
    sink: BookingSink = Depends(booking_sink),
):
    result = await handle_status(gateway, store, sink, transaction_id)
    return result.to_json()


# browser return from the hosted payment page; the query string is
# user-controlled so only the id is taken from it
@app.get("/payment-callback")
async def payment_return(
    transactionId: str,
    bookingId: Optional[str] = None,
    gateway: PaymentAdapter = Depends(get_gateway),
    store=Depends(pending_bookings),
    sink: BookingSink = Depends(booking_sink),
):
    result = await handle_status(gateway, store, sink, transactionId)
    out = result.to_json()
    out["bookingId"] = result.booking_id or bookingId
    return out


@app.get("/api/payments/config")
async def api_payment_config(cfg: PaymentConfig = Depends(get_config)):
    return config_summary(cfg)


# ----------------------------
# API: Pending bookings
# ----------------------------
def _transaction_id(payload: dict) -> str:
    txid = payload.get("transaction_id") or payload.get("transactionId")
    if not txid:
        raise InvalidPaymentRequest("Transaction ID is required")
    return str(txid)


@app.post("/api/pending-bookings/create")
async def api_create_pending_booking(
    payload: dict = Body(...),
    store=Depends(pending_bookings),
):
    data = pending.validate_booking_form(payload)
    txid = generate_transaction_id(data["userId"], now=now_ms())
    pb = await pending.stage(store, txid, data, PENDING_BOOKING_TTL_SECONDS,
                             user_id=data["userId"])
    out = pb.to_json()
    out.pop("bookingData")
    return out


@app.post("/api/pending-bookings/get")
async def api_get_pending_booking(
    payload: dict = Body(...),
    store=Depends(pending_bookings),
):
    pb = await pending.load_pending(store, _transaction_id(payload))
    return pb.to_json()


@app.get("/api/pending-bookings/{transaction_id}")
async def api_get_pending_booking_by_id(
    transaction_id: str,
    store=Depends(pending_bookings),
):
    pb = await pending.load_pending(store, transaction_id)
    return pb.to_json()


@app.post("/api/pending-bookings/delete")
async def api_delete_pending_booking(
    payload: dict = Body(...),
    store=Depends(pending_bookings),
):
    await pending.remove(store, _transaction_id(payload))
    return {"success": True,
            "message": "Pending booking deleted successfully"}


@app.delete("/api/pending-bookings/{transaction_id}")
async def api_delete_pending_booking_by_id(
    transaction_id: str,
    store=Depends(pending_bookings),
):
    await pending.remove(store, transaction_id)
    return {"success": True,
            "message": "Pending booking deleted successfully"}


@app.get("/api/pending")
async def api_pending(
    limit: int = 100,
    store=Depends(pending_bookings),
):
    total, items = await store.get_recent_pending(
        limit=max(1, min(limit, 500)))
    return {"items": items, "limit": limit, "total": total}
