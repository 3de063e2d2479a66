"""
Periodic sweep over time-based transitions.

Each pass selects candidate rows, then handles every row on its own: one row's
failure is logged, its session state rolled back, and the pass moves on. The
guarded updates underneath make an overlapping tick harmless.
"""
import logging
import threading

from flask import current_app

from models import db
from models.payment import Payment, PaymentStatus
from models.subscription import Subscription, SubscriptionStatus
from services.availability import ensure_rolling_slots
from services.bookings import cancel_unpaid_booking, capture_authorized_payment
from services.subscriptions import resume_due_subscription
from utils.audit import log_event
from utils.clock import utcnow

logger = logging.getLogger(__name__)


def _for_each(ids, label, fn) -> int:
    done = 0
    for row_id in ids:
        try:
            if fn(row_id) is not False:
                done += 1
        except Exception:
            logger.exception("%s failed for row %s", label, row_id)
            db.session.rollback()
    return done


def capture_due_payments(now=None) -> int:
    now = now or utcnow()
    ids = [
        p.id for p in Payment.query.filter(
            Payment.status == PaymentStatus.AUTHORIZED,
            Payment.capture_scheduled_for.isnot(None),
            Payment.capture_scheduled_for <= now,
        )
    ]
    return _for_each(ids, "capture", capture_authorized_payment)


def cancel_overdue_unpaid_bookings(now=None) -> int:
    now = now or utcnow()
    ids = [
        p.id for p in Payment.query.filter(
            Payment.status == PaymentStatus.CREATED,
            Payment.hold_expires_at.isnot(None),
            Payment.hold_expires_at <= now,
        )
    ]
    return _for_each(ids, "hold expiry", cancel_unpaid_booking)


def resume_due_subscriptions(now=None) -> int:
    now = now or utcnow()
    ids = [
        s.id for s in Subscription.query.filter(
            Subscription.status == SubscriptionStatus.PAUSED,
            Subscription.pause_until.isnot(None),
            Subscription.pause_until <= now,
            Subscription.provider_subscription_id.isnot(None),
        )
    ]
    return _for_each(ids, "resume", resume_due_subscription)


def run_sweep(now=None) -> dict:
    now = now or utcnow()
    counts = {
        "captured": capture_due_payments(now),
        "canceled": cancel_overdue_unpaid_bookings(now),
        "resumed": resume_due_subscriptions(now),
    }
    if current_app.config.get("AUTO_ROLLING"):
        try:
            counts["rolled_rules"] = ensure_rolling_slots(current_app.config.get("ROLLING_WEEKS", 8))
        except Exception:
            logger.exception("rolling slot expansion failed")
            db.session.rollback()

    if any(counts.values()):
        logger.info("sweep at %s: %s", now.isoformat(), counts)
        log_event("SCHEDULER_SWEEP", entity="scheduler", metadata=counts, source="scheduler")
    return counts


class SweepScheduler:
    """Runs run_sweep every `interval` seconds on a daemon thread."""

    def __init__(self, app, interval=None):
        self.app = app
        self.interval = interval or app.config.get("SCHEDULER_INTERVAL_SECONDS", 300)
        self._stop = threading.Event()
        self._tick_lock = threading.Lock()
        self._thread = None

    def run_once(self):
        # a slow tick makes the next one skip rather than pile up
        if not self._tick_lock.acquire(blocking=False):
            logger.info("previous sweep still running; skipping tick")
            return None
        try:
            with self.app.app_context():
                try:
                    return run_sweep()
                finally:
                    db.session.remove()
        except Exception:
            logger.exception("sweep tick crashed")
            return None
        finally:
            self._tick_lock.release()

    def _loop(self):
        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(self.interval)

    def start(self):
        if self._thread and self._thread.is_alive():
            return self._thread
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="sweep-scheduler", daemon=True)
        self._thread.start()
        logger.info("sweep scheduler started (every %ss)", self.interval)
        return self._thread

    def stop(self, timeout=None):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
        self._thread = None
