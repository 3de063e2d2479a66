import logging

from flask import Flask, jsonify
from config import Config
from routes import (
    health_bp, auth_bp, admin_bp, booking_bp, mentor_bp, subscription_bp, webhook_bp,
)

from models import db
from flask_migrate import Migrate
from services.gateway import init_gateway
from utils.seed import seed_roles
from utils.auth_context import load_current_user
from utils.errors import ApiError

logger = logging.getLogger(__name__)


def create_app(config_object=None):
    app = Flask(__name__)
    app.config.from_object(config_object or Config)

    logging.basicConfig(
        level=app.config.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Register routes
    app.register_blueprint(health_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(booking_bp)
    app.register_blueprint(mentor_bp)
    app.register_blueprint(subscription_bp)
    app.register_blueprint(webhook_bp)

    # Database init
    db.init_app(app)

    # Migrations
    Migrate(app, db)

    # Payment gateway client (lazy; missing keys surface per request)
    init_gateway(app)

    # Seed default roles at startup (safe & idempotent)
    if app.config.get("SEED_ROLES_ON_STARTUP", True):
        with app.app_context():
            seed_roles()

    @app.before_request
    def _load_user():
        load_current_user()

    @app.errorhandler(ApiError)
    def _api_error(exc):
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(500)
    def _internal_error(exc):
        db.session.rollback()
        logger.error("unhandled error: %s", getattr(exc, "original_exception", exc))
        return jsonify(error="internal_error"), 500

    @app.after_request
    def add_security_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        resp.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        return resp

    register_cli(app)

    return app

#-------------------------
import click
from models.user import User, Role
from security.session import create_session


def _get_or_create_role(name):
    role = Role.query.filter_by(name=name).first()
    if not role:
        role = Role(name=name)
        db.session.add(role)
        db.session.commit()
    return role


def register_cli(app):
    @app.cli.command("make-admin")
    @click.argument("email")
    def make_admin(email):
        """Promote a user to ADMIN by email (bootstrap)."""
        user = User.query.filter_by(email=email.strip().lower()).first()
        if not user:
            print("User not found")
            return

        admin_role = _get_or_create_role("ADMIN")
        if admin_role not in user.roles:
            user.roles.append(admin_role)
            db.session.commit()

        print(f"{user.email} promoted to ADMIN")

    @app.cli.command("issue-token")
    @click.argument("email")
    @click.option("--name", default=None, help="Display name when the user is created.")
    @click.option("--role", "roles", multiple=True, type=click.Choice(["LEARNER", "MENTOR", "ADMIN"]))
    def issue_token(email, name, roles):
        """Create the user if needed and print a bearer token for it."""
        email = email.strip().lower()
        user = User.query.filter_by(email=email).first()
        if not user:
            user = User(email=email, name=name or email.split("@")[0])
            db.session.add(user)
        for role_name in roles or ("LEARNER",):
            role = _get_or_create_role(role_name)
            if role not in user.roles:
                user.roles.append(role)
        db.session.commit()

        print(create_session(user.id, issued_via="CLI"))

    @app.cli.command("seed-roles")
    def seed_roles_command():
        """Insert the default roles."""
        seed_roles()
        print("roles seeded")

    @app.cli.command("sweep")
    def sweep():
        """Run one scheduler pass and print the counts."""
        from services.scheduler import run_sweep
        print(run_sweep())

    @app.cli.command("run-scheduler")
    @click.option("--interval", type=int, default=None, help="Seconds between passes.")
    def run_scheduler(interval):
        """Run the sweep loop in the foreground until interrupted.

        Holds only expire and due payments are only captured while this runs.
        Under `flask run` or a WSGI server, start it as a separate process.
        """
        from services.scheduler import SweepScheduler
        scheduler = SweepScheduler(app, interval)
        thread = scheduler.start()
        try:
            while thread.is_alive():
                thread.join(1)
        except KeyboardInterrupt:
            scheduler.stop()

    @app.cli.command("expand-rules")
    @click.option("--weeks", type=int, default=None)
    def expand_rules(weeks):
        """Expand every active ONE_TIME rule ahead of time."""
        from services.availability import ensure_rolling_slots
        count = ensure_rolling_slots(weeks or app.config.get("ROLLING_WEEKS", 8))
        print(f"expanded {count} rules")

#-------------------------


if __name__ == "__main__":
    app = create_app()
    if app.config.get("SCHEDULER_ENABLED"):
        from services.scheduler import SweepScheduler
        SweepScheduler(app).start()
    # Run locally
    app.run(host="127.0.0.1", port=5002)
