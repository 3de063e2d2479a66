from flask import Blueprint, request, jsonify

from services.reconciler import handle_provider_event
from utils.audit import log_event

webhook_bp = Blueprint("webhook", __name__, url_prefix="/webhooks")


@webhook_bp.post("/razorpay")
def razorpay_webhook():
    # signature covers the exact bytes received, so never parse before verifying
    payload = request.get_data(cache=False)
    signature = request.headers.get("X-Razorpay-Signature")

    result = handle_provider_event(payload, signature)

    if result.get("event"):
        action = "WEBHOOK_" + result["event"].upper().replace(".", "_")
        log_event(action, entity="webhook", source="webhook")
    return jsonify(received=True), 200
