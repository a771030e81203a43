from typing import Any, Optional


class PaymentError(Exception):
    status_code = 500

    def __init__(self, message: str, **extra: Any) -> None:
        self.message = message
        self.extra = extra
        super().__init__(message)


# ----------------------------
# configuration / signing
# ----------------------------
class ConfigError(PaymentError):
    pass


class SignatureError(PaymentError):
    pass


class InvalidPaymentRequest(PaymentError):
    status_code = 400


# ----------------------------
# gateway
# ----------------------------
class GatewayError(PaymentError):
    status_code = 502


class GatewayRejected(GatewayError):
    def __init__(self, message: str, status_code: int = 502,
                 body: Any = None, code: Optional[str] = None) -> None:
        super().__init__(message, gateway_status=status_code, code=code)
        self.gateway_status = status_code
        self.body = body
        self.code = code


class GatewayTimeout(GatewayError):
    status_code = 504


class GatewayUnreachable(GatewayError):
    status_code = 503


# ----------------------------
# callback / staging
# ----------------------------
class TamperDetected(PaymentError):
    status_code = 400


class StaleBooking(PaymentError):
    status_code = 404


class PendingBookingNotFound(StaleBooking):
    status_code = 404


class PendingBookingExpired(StaleBooking):
    status_code = 410


class CorruptedBooking(PaymentError):
    status_code = 207

    def __init__(self, message: str, transaction_id: str,
                 raw: Any = None) -> None:
        super().__init__(message, transaction_id=transaction_id)
        self.transaction_id = transaction_id
        self.raw = raw


class BookingCreationFailed(PaymentError):
    status_code = 502


class BookingOutcomeUnknown(BookingCreationFailed):
    """The booking backend may or may not have stored the booking."""
    status_code = 504
