from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Optional

from . import pending
from .config import PaymentConfig
from .errors import GatewayError, InvalidPaymentRequest
from .helpers import digits_only, now_ts, to_iso, to_paise
from .phonepe import (
    PAY_PATH, PaymentAdapter, build_payment_request, generate_transaction_id,
    sign,
)

logger = logging.getLogger("nibog.checkout")


@dataclass
class InitiatedPayment:
    transaction_id: str
    redirect_url: str
    expires_at: float

    def to_json(self) -> dict:
        return {
            "success": True,
            "transactionId": self.transaction_id,
            "redirectUrl": self.redirect_url,
            "expiresAt": to_iso(self.expires_at),
        }


def _check_inputs(booking_id: Any, user_id: Any, amount: Any,
                  mobile_number: Any) -> None:
    if booking_id in (None, ""):
        raise InvalidPaymentRequest("Booking ID is required")
    if user_id in (None, ""):
        raise InvalidPaymentRequest("User ID is required")
    try:
        paise = to_paise(amount)
    except (ArithmeticError, TypeError, ValueError):
        raise InvalidPaymentRequest("Valid amount is required")
    if paise <= 0:
        raise InvalidPaymentRequest("Valid amount is required")
    if not digits_only(mobile_number):
        raise InvalidPaymentRequest("Mobile number is required")


async def initiate_payment(
    cfg: PaymentConfig,
    gateway: PaymentAdapter,
    store,
    *,
    booking_id: Any,
    user_id: Any,
    amount: Any,
    mobile_number: str,
    booking_data: dict,
    ttl_seconds: int = pending.DEFAULT_TTL_SECONDS,
    now: Optional[float] = None,
) -> InitiatedPayment:
    """Stage the booking, sign the pay request and ask PhonePe for a
    hosted payment page.

    The pending booking is durably written before the gateway is called,
    so a callback can never arrive ahead of it. Gateway failures are not
    retried here: a retry must go through this function again and get a
    fresh transaction id.
    """
    _check_inputs(booking_id, user_id, amount, mobile_number)
    now = now_ts() if now is None else now

    txid = generate_transaction_id(booking_id, now=int(now * 1000))
    request = build_payment_request(
        cfg,
        transaction_id=txid,
        booking_id=booking_id,
        user_id=user_id,
        amount=amount,
        mobile_number=mobile_number,
    )
    signed = sign(request, PAY_PATH, cfg)

    pb = await pending.stage(
        store, txid, booking_data, ttl_seconds,
        user_id=user_id, amount=amount, now=now,
    )

    logger.info("initiating PhonePe payment %s for booking %s "
                "(%d paise, %s)", txid, booking_id, request["amount"],
                cfg.environment)
    try:
        response = await gateway.pay(signed)
        redirect_url = gateway.redirect_url(response)
    except GatewayError:
        await store.set_status(txid, pending.FAILED)
        raise

    return InitiatedPayment(transaction_id=txid, redirect_url=redirect_url,
                            expires_at=pb.expires_at)
