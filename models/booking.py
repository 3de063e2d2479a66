from models.db import db
from utils.clock import utcnow


class BookingStatus:
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELED = "CANCELED"
    COMPLETED = "COMPLETED"
    DISPUTED = "DISPUTED"

    LIVE = (PENDING, CONFIRMED, DISPUTED)


class Booking(db.Model):
    __tablename__ = "bookings"

    id = db.Column(db.Integer, primary_key=True)

    mentor_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    learner_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    slot_id = db.Column(db.Integer, db.ForeignKey("slots.id"), nullable=False)

    # copied from the slot so later slot edits never move a booked session
    scheduled_start_at = db.Column(db.DateTime, nullable=False, index=True)
    scheduled_end_at = db.Column(db.DateTime, nullable=False)

    price = db.Column(db.Integer, nullable=False)  # whole INR
    platform_fee = db.Column(db.Integer, nullable=False, default=0)
    commission_rate = db.Column(db.Float, nullable=False)

    status = db.Column(db.String(20), nullable=False, default=BookingStatus.PENDING, index=True)
    meeting_link = db.Column(db.String(255), nullable=True)
    meeting_link_added_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    canceled_at = db.Column(db.DateTime, nullable=True)
    cancel_reason = db.Column(db.String(500), nullable=True)

    __table_args__ = (
        # Hard business-rule: one booking row per slot (prevents double booking).
        # A CANCELED row is deleted before the slot is booked again.
        db.UniqueConstraint("slot_id", name="uq_booking_slot_once"),
    )
