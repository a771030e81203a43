from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Text,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class ConfirmedBooking(Base):
    __tablename__ = "confirmed_bookings"
    id = Column(String, primary_key=True)
    # one confirmed booking per payment attempt
    transaction_id = Column(String, nullable=False, unique=True)
    gateway_transaction_id = Column(String, nullable=True)
    booking_ref = Column(String, nullable=False)

    user_id = Column(String, nullable=False)
    event_id = Column(String, nullable=True)
    parent_name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    child_name = Column(String, nullable=True)
    child_dob = Column(String, nullable=True)
    gender = Column(String, nullable=True)

    total_amount = Column(Integer, nullable=False)  # paise
    payment_method = Column(String, nullable=False, default="PhonePe")
    # Paid | Pending
    payment_status = Column(String, nullable=False, default="Paid")
    # Confirmed | Cancelled
    status = Column(String, nullable=False, default="Confirmed")

    # full payload as sent to the booking backend
    booking_data = Column(Text, nullable=False)
    created_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)


class PaymentRecord(Base):
    __tablename__ = "payments"
    id = Column(String, primary_key=True)
    booking_id = Column(String, nullable=False, index=True)
    # our NIBOG_* id; PhonePe's own id goes in gateway_transaction_id
    merchant_transaction_id = Column(String, nullable=False, unique=True)
    gateway_transaction_id = Column(String, nullable=True)

    amount = Column(Integer, nullable=False)  # paise
    payment_method = Column(String, nullable=False, default="PhonePe")
    payment_status = Column(String, nullable=False, default="successful")
    payment_date = Column(Float, nullable=False)
    # code / state / amount as reported by PhonePe
    gateway_response = Column(Text, nullable=False)
