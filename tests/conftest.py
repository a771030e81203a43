import base64
import json
from typing import Optional

import fakeredis
import httpx
import pytest
import pytest_asyncio
from sqlalchemy import func, select

from nibog.bookings import SqlBookingSink
from nibog.config import resolve_config
from nibog.infra.sql import make_async_engine
from nibog.model.booking import Base, ConfirmedBooking, PaymentRecord
from nibog.model.pendingbooking import create_schema, new_store
from nibog.phonepe import PhonePe, RetryPolicy, x_verify

GATEWAY = "https://gateway.test"
REDIRECT = "https://mercury-uat.phonepe.com/transact/pg?token=abc123"


@pytest.fixture
def cfg():
    return resolve_config({
        "PHONEPE_ENVIRONMENT": "sandbox",
        "NEXT_PUBLIC_APP_URL": "https://nibog.example/",
        "PHONEPE_API_BASE": GATEWAY,
    })


@pytest.fixture
def booking_form():
    return {
        "userId": 42,
        "parentName": "Asha Rao",
        "email": "asha@example.com",
        "phone": "+91 98765-43210",
        "childName": "Kiran",
        "childDob": "2022-03-14",
        "schoolName": "Little Steps",
        "gender": "female",
        "eventId": 7,
        "gameId": [3, 5],
        "gamePrice": [399.5, 400],
        "slotId": [11, 12],
        "totalAmount": 799.5,
        "termsAccepted": True,
        "promoCode": "WELCOME10",
        "addOns": [{"addOnId": 2, "quantity": 1, "variantId": None}],
    }


def new_redis():
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(),
                                    decode_responses=True)


@pytest_asyncio.fixture
async def sql_db(tmp_path):
    engine, sessions, gated = make_async_engine(
        f"sqlite:///{tmp_path / 'nibog-test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await create_schema(conn)
    yield sessions, gated
    await engine.dispose()


@pytest_asyncio.fixture(params=["redis", "sql"])
async def store(request, sql_db):
    if request.param == "sql":
        sessions, gated = sql_db
        return new_store(sessions=sessions, gated=gated, backend="sql")
    return new_store(r=new_redis(), backend="redis")


@pytest.fixture
def sink(sql_db):
    sessions, gated = sql_db
    return SqlBookingSink(sessions, gated)


async def _count(sink: SqlBookingSink, model) -> int:
    async with sink.sessions() as db:
        return (await db.execute(
            select(func.count()).select_from(model)
        )).scalar_one()


async def count_bookings(sink: SqlBookingSink) -> int:
    return await _count(sink, ConfirmedBooking)


async def count_payments(sink: SqlBookingSink) -> int:
    return await _count(sink, PaymentRecord)


async def fetch_row(sink: SqlBookingSink, model, row_id: str):
    async with sink.sessions() as db:
        return await db.get(model, row_id)


# ----------------------------
# PhonePe fake
# ----------------------------
class FakePhonePe:
    """MockTransport handler standing in for the PhonePe API."""

    def __init__(self):
        self.requests = []
        self.pay_status = 200
        self.pay_body = {
            "success": True,
            "code": "PAYMENT_INITIATED",
            "message": "Payment initiated",
            "data": {
                "merchantId": "PGTESTPAYUAT86",
                "instrumentResponse": {
                    "type": "PAY_PAGE",
                    "redirectInfo": {"url": REDIRECT, "method": "GET"},
                },
            },
        }
        self.status_body = None
        # exceptions raised before answering, consumed in order
        self.failures = []

    def set_status(self, txid, code="PAYMENT_SUCCESS", state="COMPLETED",
                   amount=79950):
        self.status_body = gateway_payload(txid, code, state, amount)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.failures:
            raise self.failures.pop(0)
        if request.url.path == "/pg/v1/pay":
            return httpx.Response(self.pay_status, json=self.pay_body)
        if request.url.path.startswith("/pg/v1/status/"):
            return httpx.Response(200, json=self.status_body)
        return httpx.Response(404, json={"success": False})


@pytest.fixture
def fake_phonepe():
    return FakePhonePe()


@pytest_asyncio.fixture
async def gateway(cfg, fake_phonepe):
    http = httpx.AsyncClient(
        transport=httpx.MockTransport(fake_phonepe.handler))
    yield PhonePe(cfg, http, retry=RetryPolicy(attempts=3,
                                               backoff_seconds=0))
    await http.aclose()


def gateway_payload(txid, code="PAYMENT_SUCCESS", state="COMPLETED",
                    amount=79950) -> dict:
    return {
        "success": code == "PAYMENT_SUCCESS",
        "code": code,
        "message": code.replace("_", " ").title(),
        "data": {
            "merchantId": "PGTESTPAYUAT86",
            "merchantTransactionId": txid,
            "transactionId": f"T{txid[-10:]}",
            "amount": amount,
            "state": state,
            "responseCode": "SUCCESS" if state == "COMPLETED" else state,
        },
    }


def make_callback(cfg, txid, code="PAYMENT_SUCCESS", state="COMPLETED",
                  amount=79950, header: Optional[str] = None):
    b64 = base64.b64encode(
        json.dumps(gateway_payload(txid, code, state, amount)).encode()
    ).decode()
    body = json.dumps({"response": b64}).encode()
    if header is None:
        header = x_verify(b64, "", cfg.salt_key, cfg.salt_index)
    return body, {"x-verify": header}
