from __future__ import annotations
import logging
from dataclasses import asdict, dataclass
from typing import Mapping, Optional

from . import pending
from .bookings import (
    BookingSink, build_confirmed_booking, build_payment_record,
)
from .errors import (
    BookingCreationFailed, BookingOutcomeUnknown, CorruptedBooking,
    InvalidPaymentRequest, PendingBookingExpired, PendingBookingNotFound,
)
from .helpers import now_ts
from .phonepe import PaymentAdapter, PaymentEvent

logger = logging.getLogger("nibog.reconcile")

PROMOTED = "promoted"
ALREADY_PROMOTED = "already_promoted"
FAILED = "failed"
PENDING = "pending"
STALE = "stale"
EXPIRED = "expired"
CORRUPTED = "corrupted"
AMOUNT_MISMATCH = "amount_mismatch"
# another delivery holds the promotion gate and has not finished yet
IN_PROGRESS = "in_progress"
# pending booking already FAILED or EXPIRED
REFUSED = "refused"


@dataclass
class VerificationResult:
    outcome: str
    transaction_id: str
    booking_id: Optional[str] = None
    booking_ref: Optional[str] = None
    payment_id: Optional[str] = None
    detail: Optional[str] = None

    @property
    def confirmed(self) -> bool:
        return self.outcome in (PROMOTED, ALREADY_PROMOTED)

    def to_json(self) -> dict:
        out = asdict(self)
        out["ok"] = True
        out["confirmed"] = self.confirmed
        return out


def _gate_result(txid: str, done: str) -> VerificationResult:
    if done:
        return VerificationResult(ALREADY_PROMOTED, txid, booking_id=done)
    return VerificationResult(IN_PROGRESS, txid,
                              detail="Booking is being created")


async def reconcile(store, sink: BookingSink, event: PaymentEvent,
                    now: Optional[float] = None) -> VerificationResult:
    """Apply a verified gateway outcome to the staged booking.

    Safe to call any number of times for the same transaction: the
    promotion gate makes every call after the first successful one a
    no-op.
    """
    txid = event.transaction_id
    if not txid:
        raise InvalidPaymentRequest("gateway event has no transaction id")
    now = now_ts() if now is None else now

    done = await store.get_promotion(txid)
    if done is not None:
        return _gate_result(txid, done)

    if event.kind == "pending":
        return VerificationResult(PENDING, txid, detail=event.code)

    if event.kind != "succeeded":
        await store.set_status(txid, pending.FAILED)
        logger.info("payment %s failed: %s", txid, event.code)
        return VerificationResult(FAILED, txid, detail=event.code)

    try:
        pb = await pending.load_pending(store, txid, now=now)
    except PendingBookingExpired:
        await store.set_status(txid, pending.EXPIRED)
        logger.warning("payment %s succeeded after its pending booking "
                       "expired; not promoting", txid)
        return VerificationResult(EXPIRED, txid,
                                  detail="Pending booking has expired")
    except PendingBookingNotFound:
        # a concurrent delivery may have promoted and removed it meanwhile
        done = await store.get_promotion(txid)
        if done is not None:
            return _gate_result(txid, done)
        logger.warning("payment %s succeeded but no pending booking "
                       "exists; not promoting", txid)
        return VerificationResult(STALE, txid,
                                  detail="Pending booking not found")
    except CorruptedBooking as e:
        logger.error("pending booking %s is corrupted and needs manual "
                     "cleanup: %s", txid, e.message)
        return VerificationResult(CORRUPTED, txid, detail=e.message)

    if pb.status in (pending.FAILED, pending.EXPIRED):
        logger.error("payment %s succeeded but its pending booking is %s; "
                     "not promoting, refund needed", txid, pb.status)
        return VerificationResult(REFUSED, txid,
                                  detail=f"Pending booking is {pb.status}")

    if event.amount is not None and pb.amount and event.amount != pb.amount:
        await store.set_status(txid, pending.FAILED)
        logger.error("payment %s amount mismatch: staged %s, gateway %s",
                     txid, pb.amount, event.amount)
        return VerificationResult(
            AMOUNT_MISMATCH, txid,
            detail=f"expected {pb.amount} paise, got {event.amount}",
        )

    await store.set_status(txid, pending.VERIFIED)
    if not await store.claim_promotion(txid):
        return _gate_result(txid, await store.get_promotion(txid) or "")

    booking = build_confirmed_booking(pb, event, now=now)
    try:
        booking_id = await sink.create(booking)
    except BookingOutcomeUnknown:
        # the backend may hold the booking; the gate stays taken until an
        # operator checks, so a retry cannot book twice
        logger.error("booking for %s may already exist; transaction stays "
                     "locked for manual reconcile", txid)
        raise
    except Exception:
        # definite failure: the gateway's retry or a status poll may try again
        await store.release_promotion(txid)
        raise

    await store.finish_promotion(txid, booking_id)
    ref = booking["booking"]["booking_ref"]
    logger.info("promoted %s to booking %s (%s)", txid, booking_id, ref)

    payment = build_payment_record(booking_id, pb, event, now=now)
    try:
        payment_id = await sink.record_payment(payment)
    except BookingCreationFailed as e:
        # the booking stands; keep the staged record around for follow-up
        await store.set_status(txid, pending.PROMOTED)
        logger.error("booking %s for %s has no payment record: %s",
                     booking_id, txid, e.message)
        return VerificationResult(
            PROMOTED, txid, booking_id=booking_id, booking_ref=ref,
            detail="Booking created but payment record failed",
        )

    await pending.remove(store, txid)
    return VerificationResult(PROMOTED, txid, booking_id=booking_id,
                              booking_ref=ref, payment_id=payment_id)


async def handle_callback(gateway: PaymentAdapter, store, sink: BookingSink,
                          body: bytes, headers: Mapping[str, str],
                          now: Optional[float] = None) -> VerificationResult:
    payload = gateway.verify_callback(body, headers)
    event = gateway.parse_event(payload)
    logger.info("PhonePe callback for %s: %s (%s)",
                event.transaction_id, event.kind, event.code)
    return await reconcile(store, sink, event, now=now)


async def handle_status(gateway: PaymentAdapter, store, sink: BookingSink,
                        transaction_id: str,
                        now: Optional[float] = None) -> VerificationResult:
    # skip the gateway round-trip once the booking exists
    done = await store.get_promotion(transaction_id)
    if done:
        return VerificationResult(ALREADY_PROMOTED, transaction_id,
                                  booking_id=done)
    payload = await gateway.check_status(transaction_id)
    event = gateway.parse_event(payload)
    if not event.transaction_id:
        event.transaction_id = transaction_id
    elif event.transaction_id != transaction_id:
        raise InvalidPaymentRequest(
            "status response is for a different transaction")
    return await reconcile(store, sink, event, now=now)
