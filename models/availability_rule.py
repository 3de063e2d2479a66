from models.db import db
from utils.clock import utcnow


class SlotMode:
    ONE_TIME = "ONE_TIME"
    RECURRING = "RECURRING"

    ALL = (ONE_TIME, RECURRING)


class AvailabilityRule(db.Model):
    """Weekly template a mentor publishes; expands into Slots."""
    __tablename__ = "availability_rules"

    id = db.Column(db.Integer, primary_key=True)
    mentor_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    title = db.Column(db.String(120), nullable=False)
    weekday = db.Column(db.Integer, nullable=False)  # 0=Monday .. 6=Sunday
    start_time = db.Column(db.String(5), nullable=False)  # "HH:MM" in the rule's timezone
    duration_minutes = db.Column(db.Integer, nullable=False)
    price = db.Column(db.Integer, nullable=False)  # whole INR
    meeting_link = db.Column(db.String(255), nullable=True)
    mode = db.Column(db.String(20), nullable=False, default=SlotMode.ONE_TIME)
    timezone = db.Column(db.String(64), nullable=False, default="Asia/Kolkata")
    active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
