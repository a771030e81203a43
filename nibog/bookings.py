from __future__ import annotations
import json
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, List, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .errors import BookingCreationFailed, BookingOutcomeUnknown
from .helpers import digits_only, now_ts, to_iso, to_paise
from .infra.sql import Gated
from .model.booking import ConfirmedBooking, PaymentRecord
from .pending import PendingBooking
from .phonepe import PaymentEvent

logger = logging.getLogger("nibog.bookings")

_GENDERS = {
    "male": "Male",
    "m": "Male",
    "female": "Female",
    "f": "Female",
    "non-binary": "Non-Binary",
    "nonbinary": "Non-Binary",
    "non binary": "Non-Binary",
}


def map_gender(gender: Optional[str]) -> str:
    return _GENDERS.get((gender or "").strip().lower(), "Other")


def make_booking_ref(transaction_id: str,
                     now: Optional[float] = None) -> str:
    """PPT + YYMMDD + last three digits of the transaction id."""
    day = datetime.fromtimestamp(
        now_ts() if now is None else now, tz=timezone.utc)
    tail = digits_only(transaction_id)[-3:].rjust(3, "0")
    return f"PPT{day:%y%m%d}{tail}"


def _as_list(value: Any) -> List[Any]:
    if value is None or value == "":
        return []
    return list(value) if isinstance(value, (list, tuple)) else [value]


def _booking_games(data: dict, total_rupees: float) -> List[dict]:
    game_ids = _as_list(data.get("gameId"))
    prices = _as_list(data.get("gamePrice"))
    slots = _as_list(data.get("slotId"))

    games = []
    for i, game_id in enumerate(game_ids):
        game = {
            "game_id": game_id,
            "child_index": 0,
            "game_price": prices[i] if i < len(prices) else 0,
        }
        if i < len(slots):
            game["slot_id"] = slots[i]
        games.append(game)
    if not games:
        games = [{"game_id": None, "child_index": 0,
                  "game_price": total_rupees}]
    return games


def build_confirmed_booking(pending: PendingBooking, event: PaymentEvent,
                            now: Optional[float] = None) -> dict:
    now = now_ts() if now is None else now
    d = pending.booking_data
    paise = pending.amount or event.amount or to_paise(
        d.get("totalAmount") or 0)
    total_rupees = paise / 100

    booking = {
        "user_id": d.get("userId") or pending.user_id,
        "parent": {
            "parent_name": d.get("parentName"),
            "email": d.get("email"),
            "additional_phone": d.get("phone") or "",
        },
        "child": {
            "full_name": d.get("childName"),
            "date_of_birth": d.get("childDob") or d.get("dob"),
            "school_name": d.get("schoolName"),
            "gender": map_gender(d.get("gender")),
        },
        "booking": {
            "event_id": d.get("eventId"),
            "booking_date": datetime.fromtimestamp(
                now, tz=timezone.utc).date().isoformat(),
            "total_amount": total_rupees,
            "payment_method": "PhonePe",
            "payment_status": "Paid",
            "terms_accepted": bool(d.get("termsAccepted", True)),
            "transaction_id": event.gateway_transaction_id,
            "merchant_transaction_id": pending.transaction_id,
            "booking_ref": make_booking_ref(pending.transaction_id, now),
            "status": "Confirmed",
        },
        "booking_games": _booking_games(d, total_rupees),
    }
    if d.get("promoCode"):
        booking["booking"]["promo_code"] = d["promoCode"]

    addons = d.get("addOns") or []
    if addons:
        booking["booking_addons"] = [{
            "addon_id": a.get("addOnId"),
            "quantity": a.get("quantity", 1),
            "variant_id": a.get("variantId"),
        } for a in addons if isinstance(a, dict)]
    return booking


def build_payment_record(booking_id: str, pending: PendingBooking,
                         event: PaymentEvent,
                         now: Optional[float] = None) -> dict:
    now = now_ts() if now is None else now
    paise = event.amount if event.amount is not None else pending.amount
    data = event.raw.get("data") or {}
    return {
        "booking_id": booking_id,
        "transaction_id": event.gateway_transaction_id,
        "phonepe_transaction_id": pending.transaction_id,
        "amount": paise / 100,
        "payment_method": "PhonePe",
        "payment_status": "successful",
        "payment_date": to_iso(now),
        "gateway_response": {
            "code": event.code,
            "merchantId": data.get("merchantId"),
            "merchantTransactionId": pending.transaction_id,
            "transactionId": event.gateway_transaction_id,
            "amount": paise,
            "state": event.state,
        },
    }


# ----------------------------
# Booking sinks
# ----------------------------
class BookingSink(ABC):
    @abstractmethod
    async def create(self, booking: dict) -> str:
        """Persist a confirmed booking and return its id.

        Raise BookingOutcomeUnknown when the booking may have been stored
        anyway, so the caller keeps the transaction locked.
        """

    @abstractmethod
    async def record_payment(self, payment: dict) -> str:
        """Persist the payment behind a confirmed booking."""


class SqlBookingSink(BookingSink):
    def __init__(self, sessions: async_sessionmaker[AsyncSession],
                 gated: Gated) -> None:
        self.sessions = sessions
        self.gated = gated

    async def _scalar(self, stmt) -> Optional[str]:
        async with self.gated():
            async with self.sessions() as db:
                return (await db.execute(stmt)).scalar_one_or_none()

    async def find_by_transaction(self, transaction_id: str) -> Optional[str]:
        return await self._scalar(
            select(ConfirmedBooking.id).where(
                ConfirmedBooking.transaction_id == transaction_id))

    async def find_payment(self, transaction_id: str) -> Optional[str]:
        return await self._scalar(
            select(PaymentRecord.id).where(
                PaymentRecord.merchant_transaction_id == transaction_id))

    async def _insert(self, row, txid: str, find) -> str:
        try:
            async with self.gated():
                async with self.sessions() as db, db.begin():
                    db.add(row)
        except IntegrityError:
            # idempotent replay racing the first write
            existing = await find(txid)
            if existing is None:
                raise
            logger.warning("%s for %s already exists as %s",
                           row.__tablename__, txid, existing)
            return existing
        return row.id

    async def create(self, booking: dict) -> str:
        b = booking["booking"]
        txid = b["merchant_transaction_id"]
        now = now_ts()
        row = ConfirmedBooking(
            id=uuid.uuid4().hex,
            transaction_id=txid,
            gateway_transaction_id=b.get("transaction_id"),
            booking_ref=b["booking_ref"],
            user_id=str(booking.get("user_id") or ""),
            event_id=str(b.get("event_id") or ""),
            parent_name=booking["parent"].get("parent_name"),
            email=booking["parent"].get("email"),
            phone=booking["parent"].get("additional_phone"),
            child_name=booking["child"].get("full_name"),
            child_dob=booking["child"].get("date_of_birth"),
            gender=booking["child"].get("gender"),
            total_amount=to_paise(b["total_amount"]),
            payment_method=b.get("payment_method", "PhonePe"),
            payment_status=b.get("payment_status", "Paid"),
            status=b.get("status", "Confirmed"),
            booking_data=json.dumps(booking),
            created_at=now,
            paid_at=now,
        )
        booking_id = await self._insert(row, txid, self.find_by_transaction)
        logger.info("confirmed booking %s for %s", booking_id, txid)
        return booking_id

    async def record_payment(self, payment: dict) -> str:
        txid = payment["phonepe_transaction_id"]
        row = PaymentRecord(
            id=uuid.uuid4().hex,
            booking_id=str(payment["booking_id"]),
            merchant_transaction_id=txid,
            gateway_transaction_id=payment.get("transaction_id"),
            amount=to_paise(payment["amount"]),
            payment_method=payment.get("payment_method", "PhonePe"),
            payment_status=payment.get("payment_status", "successful"),
            payment_date=now_ts(),
            gateway_response=json.dumps(payment.get("gateway_response")),
        )
        return await self._insert(row, txid, self.find_payment)


class WebhookBookingSink(BookingSink):
    """Hands bookings and payments to the external booking backend."""

    def __init__(self, http: httpx.AsyncClient, url: str,
                 payments_url: str = "", timeout: float = 15.0) -> None:
        self.http = http
        self.url = url
        self.payments_url = payments_url
        self.timeout = timeout

    async def _post(self, url: str, body: dict, what: str) -> str:
        try:
            resp = await self.http.post(url, json=body, timeout=self.timeout)
        except (httpx.ConnectError, httpx.ConnectTimeout,
                httpx.PoolTimeout) as e:
            # the request never left this process
            raise BookingCreationFailed(
                f"booking backend unreachable: {e}") from e
        except httpx.TransportError as e:
            logger.error("%s request to booking backend broke off: %s",
                         what, e)
            raise BookingOutcomeUnknown(
                f"booking backend did not answer the {what} request: {e}"
            ) from e

        if not resp.is_success:
            logger.error("booking backend returned %s for %s: %s",
                         resp.status_code, what, resp.text[:500])
            raise BookingCreationFailed(
                f"Failed to create {what}: {resp.status_code}",
                backend_status=resp.status_code,
            )
        try:
            result = resp.json()
        except ValueError:
            raise BookingCreationFailed("booking backend returned non-JSON")

        if isinstance(result, list):
            result = result[0] if result else {}
        created_id = None
        if isinstance(result, dict):
            created_id = result.get(f"{what}_id") or result.get("id")
        if not created_id:
            raise BookingCreationFailed(
                f"No {what} ID returned from booking backend")
        return str(created_id)

    async def create(self, booking: dict) -> str:
        return await self._post(self.url, booking, "booking")

    async def record_payment(self, payment: dict) -> str:
        if not self.payments_url:
            raise BookingCreationFailed("BOOKING_PAYMENT_API_URL is not set")
        return await self._post(self.payments_url, payment, "payment")
