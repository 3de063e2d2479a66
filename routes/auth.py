from flask import Blueprint, jsonify, g, current_app

from security.session import revoke_session, token_from_request
from utils.audit import log_event
from utils.auth_context import login_required
from utils.serializers import user_dict

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


@auth_bp.get("/me")
@login_required
def me():
    return jsonify(user_dict(g.user)), 200


@auth_bp.post("/logout")
@login_required
def logout():
    cookie_name = current_app.config.get("AUTH_COOKIE_NAME", "mentorslot_session")

    revoke_session(token_from_request())
    log_event("LOGOUT", user_id=g.user.id)

    resp = jsonify(message="Logged out")
    resp.delete_cookie(cookie_name, path="/")
    return resp, 200
