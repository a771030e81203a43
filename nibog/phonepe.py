from __future__ import annotations
import asyncio
import base64
import binascii
import hashlib
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional, TypeVar
from urllib.parse import quote

import httpx

from .config import PaymentConfig
from .errors import (
    GatewayRejected, GatewayTimeout, GatewayUnreachable,
    InvalidPaymentRequest, SignatureError, TamperDetected,
)
from .helpers import ct_equal, digits_only, now_ms, to_paise

logger = logging.getLogger("nibog.phonepe")

TXID_PREFIX = "NIBOG_"
TXID_MAX_LEN = 38

PAY_PATH = "/pg/v1/pay"
STATUS_PATH = "/pg/v1/status"
# S2S callbacks are signed over the response body only
CALLBACK_PATH = ""

REDIRECT_PATH = "/payment-callback"
CALLBACK_ROUTE = "/api/payments/phonepe-callback"

T = TypeVar("T")


# ----------------------------
# Transaction ids
# ----------------------------
def generate_transaction_id(booking_id: str | int,
                            now: Optional[int] = None) -> str:
    ts = now_ms() if now is None else int(now)
    full = f"{TXID_PREFIX}{booking_id}_{ts}"
    if len(full) <= TXID_MAX_LEN:
        return full
    return f"{TXID_PREFIX}{str(booking_id)[-6:]}_{ts}"


# ----------------------------
# Signing
# ----------------------------
@dataclass(frozen=True)
class SignedRequest:
    base64_payload: str
    x_verify: str


def encode_payload(payload: dict) -> str:
    raw = json.dumps(payload).encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def x_verify(base64_payload: str, endpoint_path: str,
             salt_key: str, salt_index: str) -> str:
    digest = hashlib.sha256(
        (base64_payload + endpoint_path + salt_key).encode("utf-8")
    ).hexdigest()
    return f"{digest}###{salt_index}"


def sign(payload: dict, endpoint_path: str,
         cfg: PaymentConfig) -> SignedRequest:
    try:
        b64 = encode_payload(payload)
        header = x_verify(b64, endpoint_path, cfg.salt_key, cfg.salt_index)
    except Exception as e:
        logger.error("Signing %s payload failed: %s", endpoint_path, e)
        raise SignatureError(f"could not sign payment request: {e}") from e
    return SignedRequest(base64_payload=b64, x_verify=header)


def verify_x_verify(base64_payload: str, endpoint_path: str,
                    supplied: Optional[str], cfg: PaymentConfig) -> None:
    expected = x_verify(base64_payload, endpoint_path,
                        cfg.salt_key, cfg.salt_index)
    if not supplied or not ct_equal(expected, supplied.strip()):
        raise TamperDetected("X-VERIFY header does not match payload")


# ----------------------------
# Payment request
# ----------------------------
def build_payment_request(
    cfg: PaymentConfig,
    *,
    transaction_id: str,
    booking_id: str | int,
    user_id: str | int,
    amount,
    mobile_number: str,
) -> dict:
    mobile = digits_only(mobile_number)
    if not mobile:
        raise InvalidPaymentRequest("mobile number is required")
    paise = to_paise(amount)
    if paise <= 0:
        raise InvalidPaymentRequest("amount must be greater than 0")

    app = cfg.app_base_url.rstrip("/")
    redirect_url = (
        f"{app}{REDIRECT_PATH}"
        f"?bookingId={quote(str(booking_id), safe='')}"
        f"&transactionId={quote(transaction_id, safe='')}"
    )
    return {
        "merchantId": cfg.merchant_id,
        "merchantTransactionId": transaction_id,
        "merchantUserId": str(user_id),
        "amount": paise,
        "redirectUrl": redirect_url,
        "redirectMode": "REDIRECT",
        "callbackUrl": f"{app}{CALLBACK_ROUTE}",
        "mobileNumber": mobile,
        "paymentInstrument": {"type": "PAY_PAGE"},
    }


# ----------------------------
# Events
# ----------------------------
@dataclass
class PaymentEvent:
    transaction_id: str
    kind: str  # succeeded | failed | pending
    amount: Optional[int] = None  # paise
    gateway_transaction_id: Optional[str] = None
    code: Optional[str] = None
    state: Optional[str] = None
    raw: dict = field(default_factory=dict)


@dataclass
class RetryPolicy:
    """Bounded retry for idempotent gateway reads (status queries).

    Only timeouts and unreachability are retried. A rejected request is
    returned to the caller at once.
    """
    attempts: int = 3
    backoff_seconds: float = 0.5

    async def run(self, fn: Callable[[], Awaitable[T]]) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await fn()
            except (GatewayTimeout, GatewayUnreachable) as e:
                if attempt >= max(1, self.attempts):
                    raise
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning("status query attempt %d failed (%s), "
                               "retrying in %.2fs", attempt, e, delay)
                await asyncio.sleep(delay)


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentAdapter(ABC):
    @abstractmethod
    async def pay(self, signed: SignedRequest) -> dict: ...

    @abstractmethod
    def redirect_url(self, response: dict) -> str: ...

    @abstractmethod
    async def check_status(self, transaction_id: str) -> dict: ...

    @abstractmethod
    def verify_callback(self, body: bytes,
                        headers: Mapping[str, str]) -> dict: ...

    @abstractmethod
    def parse_event(self, payload: dict) -> PaymentEvent: ...


# ----------------------------
# PhonePe implementation
# ----------------------------
class PhonePe(PaymentAdapter):

    def __init__(self, cfg: PaymentConfig, http: httpx.AsyncClient,
                 retry: Optional[RetryPolicy] = None) -> None:
        self.cfg = cfg
        self.http = http
        self.retry = retry or RetryPolicy()

    async def _send(self, method: str, path: str,
                    **kw: Any) -> httpx.Response:
        url = f"{self.cfg.gateway_base}{path}"
        try:
            return await self.http.request(
                method, url, timeout=self.cfg.timeout_seconds, **kw
            )
        except httpx.TimeoutException as e:
            logger.error("PhonePe %s %s timed out", method, path)
            raise GatewayTimeout(f"PhonePe request timed out: {e}") from e
        except httpx.TransportError as e:
            logger.error("PhonePe %s %s unreachable: %s", method, path, e)
            raise GatewayUnreachable(
                f"PhonePe is unreachable: {e}") from e

    @staticmethod
    def _body(resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except ValueError:
            return resp.text[:1000]

    # initiation is never retried; a fresh attempt needs a fresh txid
    async def pay(self, signed: SignedRequest) -> dict:
        resp = await self._send(
            "POST", PAY_PATH,
            json={"request": signed.base64_payload},
            headers={
                "Content-Type": "application/json",
                "X-VERIFY": signed.x_verify,
            },
        )
        data = self._body(resp)
        if not resp.is_success or not isinstance(data, dict) \
                or not data.get("success"):
            code = data.get("code") if isinstance(data, dict) else None
            message = (data.get("message") if isinstance(data, dict)
                       else None) or f"PhonePe returned {resp.status_code}"
            logger.error("PhonePe rejected pay request: status=%s code=%s",
                         resp.status_code, code)
            raise GatewayRejected(message, status_code=resp.status_code,
                                  body=data, code=code)
        return data

    def redirect_url(self, response: dict) -> str:
        try:
            return response["data"]["instrumentResponse"]["redirectInfo"][
                "url"]
        except (KeyError, TypeError):
            raise GatewayRejected(
                "PhonePe response has no redirect URL",
                status_code=200, body=response,
                code=response.get("code") if isinstance(response, dict)
                else None,
            )

    async def check_status(self, transaction_id: str) -> dict:
        path = f"{STATUS_PATH}/{self.cfg.merchant_id}/{transaction_id}"
        header = x_verify("", path, self.cfg.salt_key, self.cfg.salt_index)

        async def _once() -> dict:
            resp = await self._send(
                "GET", path,
                headers={
                    "Content-Type": "application/json",
                    "X-VERIFY": header,
                    "X-MERCHANT-ID": self.cfg.merchant_id,
                },
            )
            data = self._body(resp)
            # a declined payment still comes back as 200 with a code
            if not resp.is_success or not isinstance(data, dict):
                raise GatewayRejected(
                    f"PhonePe status query returned {resp.status_code}",
                    status_code=resp.status_code, body=data,
                )
            return data

        return await self.retry.run(_once)

    def verify_callback(self, body: bytes,
                        headers: Mapping[str, str]) -> dict:
        try:
            envelope = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise InvalidPaymentRequest("callback body is not JSON")
        b64 = envelope.get("response") if isinstance(envelope, dict) \
            else None
        if not b64:
            raise InvalidPaymentRequest("callback body has no response")

        supplied = headers.get("x-verify") or headers.get("X-VERIFY")
        try:
            verify_x_verify(b64, CALLBACK_PATH, supplied, self.cfg)
        except TamperDetected:
            logger.critical("PhonePe callback failed X-VERIFY check; "
                            "possible tampering")
            raise

        try:
            payload = json.loads(base64.b64decode(b64, validate=True))
        except (binascii.Error, ValueError):
            raise InvalidPaymentRequest("callback response is not "
                                        "base64 JSON")
        if not isinstance(payload, dict):
            raise InvalidPaymentRequest("callback response is not an object")
        return payload

    def parse_event(self, payload: dict) -> PaymentEvent:
        data = payload.get("data") or {}
        code = payload.get("code")
        state = data.get("state") or data.get("paymentState")
        txid = data.get("merchantTransactionId") or ""

        if code == "PAYMENT_SUCCESS" and state in (None, "COMPLETED"):
            kind = "succeeded"
        elif code in ("PAYMENT_PENDING", "INTERNAL_SERVER_ERROR") \
                or state == "PENDING":
            kind = "pending"
        else:
            kind = "failed"

        amount = data.get("amount")
        return PaymentEvent(
            transaction_id=txid,
            kind=kind,
            amount=int(amount) if amount is not None else None,
            gateway_transaction_id=data.get("transactionId"),
            code=code,
            state=state,
            raw=payload,
        )
