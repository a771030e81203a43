from .orm import Base, ConfirmedBooking, PaymentRecord

__all__ = ["Base", "ConfirmedBooking", "PaymentRecord"]
