import json

import httpx
import pytest

from conftest import count_bookings, count_payments, fetch_row
from nibog.bookings import (
    WebhookBookingSink, build_confirmed_booking, build_payment_record,
    make_booking_ref, map_gender,
)
from nibog.errors import BookingCreationFailed, BookingOutcomeUnknown
from nibog.model.booking import ConfirmedBooking, PaymentRecord
from nibog.pending import PendingBooking
from nibog.phonepe import PaymentEvent

TXID = "NIBOG_42_1718000000987"
# 2024-06-10 06:13:20 UTC
NOW = 1_718_000_000.0


@pytest.fixture
def staged(booking_form):
    return PendingBooking(transaction_id=TXID, booking_data=booking_form,
                          expires_at=NOW + 1800, status="VERIFIED",
                          user_id="42", amount=79950, created_at=NOW)


@pytest.fixture
def event():
    return PaymentEvent(transaction_id=TXID, kind="succeeded", amount=79950,
                        gateway_transaction_id="T2406101234",
                        code="PAYMENT_SUCCESS", state="COMPLETED")


@pytest.mark.parametrize("raw,mapped", [
    ("male", "Male"), ("F", "Female"), (" Female ", "Female"),
    ("non-binary", "Non-Binary"), ("Non Binary", "Non-Binary"),
    ("", "Other"), (None, "Other"), ("prefer not to say", "Other"),
])
def test_map_gender(raw, mapped):
    assert map_gender(raw) == mapped


def test_booking_ref():
    assert make_booking_ref(TXID, NOW) == "PPT240610987"
    assert make_booking_ref("NIBOG_x_7", NOW) == "PPT240610007"


def test_build_confirmed_booking(staged, event):
    b = build_confirmed_booking(staged, event, now=NOW)
    assert b["user_id"] == 42
    assert b["parent"] == {"parent_name": "Asha Rao",
                           "email": "asha@example.com",
                           "additional_phone": "+91 98765-43210"}
    assert b["child"]["gender"] == "Female"
    assert b["child"]["date_of_birth"] == "2022-03-14"

    booking = b["booking"]
    assert booking["total_amount"] == 799.5
    assert booking["booking_date"] == "2024-06-10"
    assert booking["transaction_id"] == "T2406101234"
    assert booking["merchant_transaction_id"] == TXID
    assert booking["booking_ref"] == "PPT240610987"
    assert booking["status"] == "Confirmed"
    assert booking["payment_status"] == "Paid"
    assert booking["promo_code"] == "WELCOME10"

    assert b["booking_games"] == [
        {"game_id": 3, "child_index": 0, "game_price": 399.5, "slot_id": 11},
        {"game_id": 5, "child_index": 0, "game_price": 400, "slot_id": 12},
    ]
    assert b["booking_addons"] == [
        {"addon_id": 2, "quantity": 1, "variant_id": None}]


def test_single_game_without_extras(staged, event):
    for key in ("gamePrice", "slotId", "promoCode", "addOns"):
        staged.booking_data.pop(key)
    staged.booking_data["gameId"] = 9
    b = build_confirmed_booking(staged, event, now=NOW)
    assert b["booking_games"] == [
        {"game_id": 9, "child_index": 0, "game_price": 0}]
    assert "promo_code" not in b["booking"]
    assert "booking_addons" not in b


async def test_sql_sink_is_idempotent_per_transaction(sink, staged, event):
    payload = build_confirmed_booking(staged, event, now=NOW)
    first = await sink.create(payload)
    second = await sink.create(payload)
    assert first == second
    assert await count_bookings(sink) == 1
    assert await sink.find_by_transaction(TXID) == first

    row = await fetch_row(sink, ConfirmedBooking, first)
    assert row.booking_ref == "PPT240610987"
    assert row.total_amount == 79950
    assert json.loads(row.booking_data)["booking"]["merchant_transaction_id"] \
        == TXID


# ----------------------------
# webhook sink
# ----------------------------
def _webhook(handler):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return http, WebhookBookingSink(http, "https://bookings.test/create")


@pytest.mark.parametrize("answer,expected", [
    ([{"booking_id": 501}], "501"),
    ({"id": "b-77"}, "b-77"),
])
async def test_webhook_sink(staged, event, answer, expected):
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json=answer)

    http, sink = _webhook(handler)
    async with http:
        booking_id = await sink.create(
            build_confirmed_booking(staged, event, now=NOW))
    assert booking_id == expected
    assert seen[0]["booking"]["merchant_transaction_id"] == TXID


@pytest.mark.parametrize("response", [
    httpx.Response(500, text="boom"),
    httpx.Response(200, json=[]),
    httpx.Response(200, json={"ok": True}),
    httpx.Response(200, text="<html>"),
])
async def test_webhook_sink_failures(staged, event, response):
    http, sink = _webhook(lambda request: response)
    async with http:
        with pytest.raises(BookingCreationFailed):
            await sink.create(build_confirmed_booking(staged, event,
                                                      now=NOW))


async def test_webhook_sink_unreachable(staged, event):
    def handler(request):
        raise httpx.ConnectError("refused")

    http, sink = _webhook(handler)
    async with http:
        with pytest.raises(BookingCreationFailed) as info:
            await sink.create(build_confirmed_booking(staged, event,
                                                      now=NOW))
    assert "unreachable" in info.value.message


@pytest.mark.parametrize("failure", [
    httpx.ReadTimeout("no answer"),
    httpx.RemoteProtocolError("connection dropped"),
])
async def test_webhook_sink_lost_answer_is_ambiguous(staged, event, failure):
    def handler(request):
        raise failure

    http, sink = _webhook(handler)
    async with http:
        with pytest.raises(BookingOutcomeUnknown):
            await sink.create(build_confirmed_booking(staged, event,
                                                      now=NOW))


# ----------------------------
# payment records
# ----------------------------
def test_build_payment_record(staged, event):
    event.raw = {"data": {"merchantId": "PGTESTPAYUAT86"}}
    p = build_payment_record("b-1", staged, event, now=NOW)
    assert p == {
        "booking_id": "b-1",
        "transaction_id": "T2406101234",
        "phonepe_transaction_id": TXID,
        "amount": 799.5,
        "payment_method": "PhonePe",
        "payment_status": "successful",
        "payment_date": "2024-06-10T06:13:20+00:00",
        "gateway_response": {
            "code": "PAYMENT_SUCCESS",
            "merchantId": "PGTESTPAYUAT86",
            "merchantTransactionId": TXID,
            "transactionId": "T2406101234",
            "amount": 79950,
            "state": "COMPLETED",
        },
    }


async def test_sql_payment_record_is_idempotent(sink, staged, event):
    payment = build_payment_record("b-1", staged, event, now=NOW)
    first = await sink.record_payment(payment)
    assert await sink.record_payment(payment) == first
    assert await count_payments(sink) == 1
    assert await sink.find_payment(TXID) == first

    row = await fetch_row(sink, PaymentRecord, first)
    assert row.booking_id == "b-1"
    assert row.amount == 79950
    assert json.loads(row.gateway_response)["state"] == "COMPLETED"


async def test_webhook_sink_posts_payment(staged, event):
    seen = []

    def handler(request):
        seen.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json=[{"payment_id": 31}])

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    sink = WebhookBookingSink(http, "https://bookings.test/create",
                              "https://bookings.test/payments")
    async with http:
        payment_id = await sink.record_payment(
            build_payment_record("501", staged, event, now=NOW))
    assert payment_id == "31"
    path, body = seen[0]
    assert path == "/payments"
    assert body["booking_id"] == "501"
    assert body["amount"] == 799.5


async def test_webhook_sink_without_payments_url(staged, event):
    http, sink = _webhook(lambda request: httpx.Response(200, json={}))
    async with http:
        with pytest.raises(BookingCreationFailed):
            await sink.record_payment(
                build_payment_record("501", staged, event, now=NOW))
