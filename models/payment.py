from models.db import db
from utils.clock import utcnow


class PaymentStatus:
    CREATED = "CREATED"
    AUTHORIZED = "AUTHORIZED"
    CAPTURED = "CAPTURED"
    FAILED = "FAILED"

    # states a payment may still leave
    OPEN = (CREATED, AUTHORIZED)


class Payment(db.Model):
    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)
    # nullable for provider charges that cannot be tied to a booking
    booking_id = db.Column(db.Integer, db.ForeignKey("bookings.id"), nullable=True, index=True)

    provider = db.Column(db.String(20), nullable=False, default="RAZORPAY")
    provider_order_id = db.Column(db.String(64), nullable=True, index=True)
    provider_payment_id = db.Column(db.String(64), nullable=True, unique=True, index=True)
    method = db.Column(db.String(40), nullable=True)

    amount = db.Column(db.Integer, nullable=False)  # whole INR
    currency = db.Column(db.String(10), nullable=False, default="INR")

    status = db.Column(db.String(20), nullable=False, default=PaymentStatus.CREATED, index=True)
    hold_expires_at = db.Column(db.DateTime, nullable=True)  # checkout must finish by then
    capture_scheduled_for = db.Column(db.DateTime, nullable=True)
    captured_at = db.Column(db.DateTime, nullable=True)
    raw = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
