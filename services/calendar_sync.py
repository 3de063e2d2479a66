"""
Google Calendar sync for confirmed sessions.

Best-effort by contract: nothing here may fail a booking operation. The
synchronous entry point reports what was added; the async one only logs.
"""
import logging
import threading
from datetime import timedelta

import requests
from flask import current_app

from models import db
from models.booking import Booking
from models.oauth_account import OAuthAccount
from models.user import User
from utils.clock import utcnow

logger = logging.getLogger(__name__)

EVENTS_URL = "https://www.googleapis.com/calendar/v3/calendars/primary/events"
TOKEN_URL = "https://oauth2.googleapis.com/token"
REQUEST_TIMEOUT = 10


def create_event(access_token, summary, description, start, end, timezone):
    response = requests.post(
        EVENTS_URL,
        headers={"Authorization": f"Bearer {access_token}"},
        json={
            "summary": summary,
            "description": description,
            "start": {"dateTime": start, "timeZone": timezone},
            "end": {"dateTime": end, "timeZone": timezone},
        },
        timeout=REQUEST_TIMEOUT,
    )
    response.raise_for_status()
    return response.json()


def _refresh_access_token(account: OAuthAccount):
    client_id = current_app.config.get("GOOGLE_CLIENT_ID")
    client_secret = current_app.config.get("GOOGLE_CLIENT_SECRET")
    if not client_id or not client_secret:
        logger.warning("google oauth not configured; cannot refresh token for user %s", account.user_id)
        return None

    response = requests.post(
        TOKEN_URL,
        data={
            "client_id": client_id,
            "client_secret": client_secret,
            "grant_type": "refresh_token",
            "refresh_token": account.refresh_token,
        },
        timeout=REQUEST_TIMEOUT,
    )
    response.raise_for_status()
    data = response.json()

    account.access_token = data["access_token"]
    account.scopes = data.get("scope") or account.scopes
    if data.get("expires_in"):
        account.expires_at = utcnow() + timedelta(seconds=int(data["expires_in"]))
    db.session.commit()
    return account.access_token


def get_access_token_for_user(user_id: int):
    account = OAuthAccount.query.filter_by(user_id=user_id, provider="GOOGLE").first()
    if not account or not account.access_token:
        return None

    expiring = account.expires_at and account.expires_at < utcnow() + timedelta(seconds=60)
    if expiring and account.refresh_token:
        return _refresh_access_token(account)
    return account.access_token


def _add_for(user_id: int, event: dict) -> bool:
    try:
        token = get_access_token_for_user(user_id)
        if not token:
            return False
        create_event(token, **event)
        return True
    except (requests.RequestException, KeyError, ValueError) as exc:
        logger.warning("calendar sync failed for user %s: %s", user_id, exc)
        return False


def sync_calendar_for_booking(booking_id: int) -> dict:
    """Add the session to both parties' calendars. Returns which ones succeeded."""
    result = {"mentor_added": False, "learner_added": False}
    booking = db.session.get(Booking, booking_id)
    if not booking:
        return result

    mentor = db.session.get(User, booking.mentor_id)
    learner = db.session.get(User, booking.learner_id)
    event = {
        "summary": f"Mentoring session: {mentor.name} / {learner.name}",
        "description": f"Meeting link: {booking.meeting_link or 'Pending'}",
        "start": booking.scheduled_start_at.isoformat() + "Z",
        "end": booking.scheduled_end_at.isoformat() + "Z",
        "timezone": current_app.config.get("CALENDAR_TIMEZONE", "Asia/Kolkata"),
    }

    result["mentor_added"] = _add_for(booking.mentor_id, event)
    result["learner_added"] = _add_for(booking.learner_id, event)
    return result


def _run_sync(app, booking_id: int):
    with app.app_context():
        try:
            sync_calendar_for_booking(booking_id)
        except Exception:
            logger.exception("background calendar sync crashed for booking %s", booking_id)
        finally:
            db.session.remove()


def dispatch_calendar_sync(booking_id: int):
    """Fire-and-forget; call only after the owning transaction has committed."""
    if not current_app.config.get("CALENDAR_SYNC_ENABLED", True):
        return None
    app = current_app._get_current_object()
    worker = threading.Thread(
        target=_run_sync, args=(app, booking_id), name=f"calendar-sync-{booking_id}", daemon=True
    )
    worker.start()
    return worker
