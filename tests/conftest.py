import hashlib
import hmac
import itertools
import json
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from app import create_app
from config import Config
from models import db
from models.availability_rule import AvailabilityRule, SlotMode
from models.slot import Slot, SlotStatus
from models.user import User, Role
from security.session import create_session
from utils.clock import utcnow
from utils.seed import seed_roles

KEY_SECRET = "rzp_test_secret"
WEBHOOK_SECRET = "whsec_test"


class ConfigForTests(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SEED_ROLES_ON_STARTUP = False
    RAZORPAY_KEY_ID = "rzp_test_key"
    RAZORPAY_KEY_SECRET = KEY_SECRET
    RAZORPAY_WEBHOOK_SECRET = WEBHOOK_SECRET
    CALENDAR_SYNC_ENABLED = False
    AUTO_ROLLING = False
    HOLD_WINDOW_MINUTES = 30
    CAPTURE_OFFSET_HOURS = 24
    CANCEL_CUTOFF_HOURS = 24
    DEFAULT_COMMISSION_RATE = 0.15
    PLATFORM_FEE_INR = 0


@pytest.fixture
def app():
    app = create_app(ConfigForTests)
    with app.app_context():
        db.create_all()
        seed_roles()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def gateway(app):
    """The real adapter and SDK client, with every network resource mocked."""
    gw = app.extensions["payment_gateway"]
    rzp = gw.client
    ids = itertools.count(1)

    rzp.order = MagicMock()
    rzp.order.create.side_effect = lambda data: {
        "id": f"order_{next(ids)}",
        "amount": data["amount"],
        "currency": data["currency"],
        "receipt": data["receipt"],
        "status": "created",
    }
    rzp.payment = MagicMock()
    rzp.payment.capture.side_effect = lambda payment_id, amount, data=None: {
        "id": payment_id, "amount": amount, "status": "captured", "method": "card",
    }
    rzp.plan = MagicMock()
    rzp.plan.create.side_effect = lambda data: {"id": f"plan_{next(ids)}"}
    rzp.subscription = MagicMock()
    rzp.subscription.create.side_effect = lambda data: {
        "id": f"sub_{next(ids)}", "status": "created", "short_url": "https://rzp.io/i/test",
    }
    return gw


def _make_user(email, name, *role_names):
    user = User(email=email, name=name)
    user.roles = [Role.query.filter_by(name=r).one() for r in role_names]
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def mentor(app):
    return _make_user("meera@example.com", "Meera Iyer", "MENTOR")


@pytest.fixture
def learner(app):
    return _make_user("arjun@example.com", "Arjun Rao", "LEARNER")


@pytest.fixture
def other_learner(app):
    return _make_user("kavya@example.com", "Kavya Nair", "LEARNER")


@pytest.fixture
def admin(app):
    return _make_user("ops@example.com", "Ops", "ADMIN")


@pytest.fixture
def auth_header(app):
    def _header(user):
        return {"Authorization": f"Bearer {create_session(user.id)}"}
    return _header


@pytest.fixture
def make_slot(mentor):
    def _make(hours_ahead=72, price=1200, mode=SlotMode.ONE_TIME, status=SlotStatus.AVAILABLE):
        start = utcnow().replace(microsecond=0) + timedelta(hours=hours_ahead)
        slot = Slot(
            mentor_id=mentor.id,
            title="System design review",
            start_time=start,
            end_time=start + timedelta(minutes=60),
            duration_minutes=60,
            price=price,
            mode=mode,
            status=status,
        )
        db.session.add(slot)
        db.session.commit()
        return slot
    return _make


@pytest.fixture
def make_rule(mentor):
    def _make(weekday=2, start_time="18:00", mode=SlotMode.RECURRING, price=1200, timezone="Asia/Kolkata"):
        rule = AvailabilityRule(
            mentor_id=mentor.id,
            title="Weekly career mentoring",
            weekday=weekday,
            start_time=start_time,
            duration_minutes=60,
            price=price,
            mode=mode,
            timezone=timezone,
        )
        db.session.add(rule)
        db.session.commit()
        return rule
    return _make


@pytest.fixture
def sign_checkout():
    def _sign(order_id, payment_id, secret=KEY_SECRET):
        msg = f"{order_id}|{payment_id}".encode("utf-8")
        return hmac.new(secret.encode("utf-8"), msg, hashlib.sha256).hexdigest()
    return _sign


@pytest.fixture
def post_webhook(client):
    def _post(event, payload=None, signature=None, body=None):
        if body is None:
            body = json.dumps({"entity": "event", "event": event, "payload": payload or {}}).encode("utf-8")
        if signature is None:
            signature = hmac.new(WEBHOOK_SECRET.encode("utf-8"), body, hashlib.sha256).hexdigest()
        return client.post(
            "/webhooks/razorpay",
            data=body,
            headers={"X-Razorpay-Signature": signature, "Content-Type": "application/json"},
        )
    return _post
