import hmac
import hashlib
import json
from flask import request, jsonify, abort, current_app
from . import bp
from subflow.wiring import get_services


def _valid_signature(raw_body: bytes, timestamp: str, sig: str) -> bool:
    secret = current_app.config.get("PAYMENT_WEBHOOK_SECRET")
    if not secret or not timestamp or not sig:
        return False
    mac = hmac.new(secret.encode("utf-8"), (timestamp + ".").encode("utf-8") + raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(mac, sig)


@bp.post("/payments")
def payment_events():
    # Generic HMAC: X-Timestamp, X-Signature
    timestamp = request.headers.get("X-Timestamp", "")
    signature = request.headers.get("X-Signature", "")
    raw = request.get_data() or b""
    if not _valid_signature(raw, timestamp, signature):
        abort(401)

    try:
        event = json.loads(raw.decode("utf-8") or "{}")
    except (UnicodeDecodeError, json.JSONDecodeError):
        abort(400, description="Body must be JSON")
    if not isinstance(event, dict):
        abort(400, description="Body must be a JSON object")

    reconciler = get_services().reconciler
    if reconciler is None:
        abort(404)

    # Reconciler never raises; the audit row tells us what happened
    audit = reconciler.handle_subscription_webhook(event)
    return jsonify({
        "received": True,
        "processed": bool(audit and audit.processed),
        "notes": audit.notes if audit else None,
    }), 200
