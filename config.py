import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class Config:
    # Secrets
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")

    # SQLite database file stored next to app.py as mentorslot.db
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "mentorslot.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Session cookie name for our auth token
    AUTH_COOKIE_NAME = "mentorslot_session"

    # 7 days session lifetime
    SESSION_LIFETIME_SECONDS = 7 * 24 * 60 * 60

    # Idle timeout: 2 hours
    IDLE_TIMEOUT_SECONDS = 2 * 60 * 60

    # Razorpay
    RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID")
    RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET")
    RAZORPAY_WEBHOOK_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET")
    RAZORPAY_AUTO_CAPTURE = _env_bool("RAZORPAY_AUTO_CAPTURE", "true")
    PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "INR")

    # Booking policy
    HOLD_WINDOW_MINUTES = int(os.getenv("HOLD_WINDOW_MINUTES", "30"))
    CAPTURE_OFFSET_HOURS = int(os.getenv("CAPTURE_OFFSET_HOURS", "24"))
    CANCEL_CUTOFF_HOURS = int(os.getenv("CANCEL_CUTOFF_HOURS", "24"))
    DEFAULT_COMMISSION_RATE = float(os.getenv("DEFAULT_COMMISSION_RATE", "0.15"))
    PLATFORM_FEE_INR = int(os.getenv("PLATFORM_FEE_INR", "0"))

    # Subscriptions
    SUBSCRIPTION_MAX_PAUSE_WEEKS = int(os.getenv("SUBSCRIPTION_MAX_PAUSE_WEEKS", "4"))
    SUBSCRIPTION_TOTAL_COUNT = int(os.getenv("SUBSCRIPTION_TOTAL_COUNT", "999"))

    # Background sweep. Only `python app.py` honours SCHEDULER_ENABLED; under
    # `flask run` or a WSGI server run `flask run-scheduler` as its own process.
    SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED", "false")
    SCHEDULER_INTERVAL_SECONDS = int(os.getenv("SCHEDULER_INTERVAL_SECONDS", "300"))
    AUTO_ROLLING = _env_bool("AUTO_ROLLING", "false")
    ROLLING_WEEKS = int(os.getenv("ROLLING_WEEKS", "8"))

    # Google Calendar (best-effort)
    CALENDAR_SYNC_ENABLED = _env_bool("CALENDAR_SYNC_ENABLED", "true")
    CALENDAR_TIMEZONE = os.getenv("CALENDAR_TIMEZONE", "Asia/Kolkata")
    GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
    GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Create the default roles when the app starts (needs the schema to exist)
    SEED_ROLES_ON_STARTUP = _env_bool("SEED_ROLES_ON_STARTUP", "true")

    # Basic app settings
    DEBUG = False
