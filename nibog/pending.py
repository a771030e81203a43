"""Staging of unconfirmed bookings across the gateway redirect.

The booking form is stored server side, keyed by transaction id, before
the browser is sent to PhonePe. The S2S callback has no access to browser
state, so this record is the only copy of what the parent filled in.
"""
from __future__ import annotations
import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

from .errors import (
    CorruptedBooking, InvalidPaymentRequest, PendingBookingExpired,
    PendingBookingNotFound,
)
from .helpers import is_valid_email, now_ts, to_iso, to_paise

logger = logging.getLogger("nibog.pending")

STAGED = "STAGED"
VERIFIED = "VERIFIED"
PROMOTED = "PROMOTED"
FAILED = "FAILED"
EXPIRED = "EXPIRED"

DEFAULT_TTL_SECONDS = 30 * 60

REQUIRED_FORM_FIELDS = (
    "userId", "parentName", "email", "phone", "childName", "childDob",
    "schoolName", "gender", "eventId", "gameId", "totalAmount",
    "termsAccepted",
)

_CORRUPT_MARKERS = ("", "undefined", "null")


@dataclass
class PendingBooking:
    transaction_id: str
    booking_data: dict
    expires_at: float
    status: str
    user_id: str = ""
    amount: int = 0  # paise
    created_at: float = 0.0

    def to_json(self) -> dict:
        return {
            "success": True,
            "transactionId": self.transaction_id,
            "bookingData": self.booking_data,
            "expiresAt": to_iso(self.expires_at),
            "status": self.status,
        }


def validate_booking_form(data: Any) -> dict:
    if not isinstance(data, dict):
        raise InvalidPaymentRequest("booking data must be an object")
    for name in REQUIRED_FORM_FIELDS:
        if not data.get(name):
            raise InvalidPaymentRequest(f"Missing required field: {name}",
                                        field=name)
    if not is_valid_email(str(data["email"])):
        raise InvalidPaymentRequest("Invalid email address", field="email")
    try:
        paise = to_paise(data["totalAmount"])
    except (ArithmeticError, TypeError, ValueError):
        paise = 0
    if paise <= 0:
        raise InvalidPaymentRequest("Valid total amount is required",
                                    field="totalAmount")
    return data


async def stage(store, transaction_id: str, booking_data: dict,
                ttl_seconds: int = DEFAULT_TTL_SECONDS, *,
                user_id: Any = "", amount: Any = None,
                now: Optional[float] = None) -> PendingBooking:
    now = now_ts() if now is None else now
    paise = to_paise(amount if amount is not None
                     else booking_data.get("totalAmount") or 0)
    pb = PendingBooking(
        transaction_id=transaction_id,
        booking_data=booking_data,
        expires_at=now + ttl_seconds,
        status=STAGED,
        user_id=str(user_id or booking_data.get("userId") or ""),
        amount=paise,
        created_at=now,
    )
    await store.save_pending(transaction_id, {
        "transaction_id": transaction_id,
        "user_id": pb.user_id,
        "booking_data": json.dumps(booking_data),
        "amount": pb.amount,
        "status": pb.status,
        "created_at": pb.created_at,
        "expires_at": pb.expires_at,
    }, ttl_seconds)
    logger.info("staged pending booking %s (expires %s)",
                transaction_id, to_iso(pb.expires_at))
    return pb


def _parse_booking_data(transaction_id: str, raw: Any) -> dict:
    if isinstance(raw, dict):
        return raw
    if raw is None or (isinstance(raw, str)
                       and raw.strip() in _CORRUPT_MARKERS):
        raise CorruptedBooking("Booking data is missing or corrupted",
                               transaction_id, raw)
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        raise CorruptedBooking("Invalid booking data format",
                               transaction_id, raw)
    if not isinstance(data, dict):
        raise CorruptedBooking("Invalid booking data format",
                               transaction_id, raw)
    return data


async def load_pending(store, transaction_id: str,
                       now: Optional[float] = None) -> PendingBooking:
    row = await store.get_pending(transaction_id)
    if not row:
        raise PendingBookingNotFound("Pending booking not found",
                                     transaction_id=transaction_id)

    now = now_ts() if now is None else now
    try:
        expires_at = float(row.get("expires_at") or 0)
    except (TypeError, ValueError):
        expires_at = 0.0
    if now > expires_at:
        raise PendingBookingExpired(
            "Pending booking has expired",
            transaction_id=transaction_id,
            expires_at=to_iso(expires_at),
        )

    booking_data = _parse_booking_data(transaction_id,
                                       row.get("booking_data"))
    if not (booking_data.get("userId") and booking_data.get("email")
            and booking_data.get("eventId")):
        logger.warning("pending booking %s lacks userId/email/eventId",
                       transaction_id)

    return PendingBooking(
        transaction_id=transaction_id,
        booking_data=booking_data,
        expires_at=expires_at,
        status=row.get("status") or STAGED,
        user_id=str(row.get("user_id") or ""),
        amount=int(row.get("amount") or 0),
        created_at=float(row.get("created_at") or 0),
    )


async def remove(store, transaction_id: str) -> None:
    await store.remove_pending(transaction_id)
    logger.info("removed pending booking %s", transaction_id)
