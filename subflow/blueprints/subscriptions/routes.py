from flask import jsonify, request

from . import bp
from subflow.errors import InvalidUserError, SubscriptionNotFoundError
from subflow.extensions import limiter
from subflow.wiring import get_services


def _user_id() -> str:
    # Identity is established upstream; the auth layer forwards it as a header
    user_id = (request.headers.get("X-User-Id") or "").strip()
    if not user_id:
        raise InvalidUserError("X-User-Id header is required")
    return user_id


def _body() -> dict:
    return request.get_json(silent=True) or {}


@bp.post("")
@limiter.limit("20 per minute")
def create_subscription():
    data = _body()
    sub = get_services().subscriptions.create_subscription(
        _user_id(), data.get("planId"), data.get("paymentId")
    )
    return jsonify(sub.to_dict()), 201


@bp.put("")
@limiter.limit("20 per minute")
def update_subscription():
    sub = get_services().subscriptions.update_subscription(_user_id(), _body().get("newPlanId"))
    return jsonify(sub.to_dict()), 200


@bp.post("/cancel")
@limiter.limit("20 per minute")
def cancel_subscription():
    sub = get_services().subscriptions.cancel_subscription(_user_id())
    return jsonify(sub.to_dict()), 200


@bp.get("/active")
def active_subscription():
    user_id = _user_id()
    sub = get_services().subscriptions.get_active_subscription(user_id)
    if sub is None:
        raise SubscriptionNotFoundError("No active subscription", context={"userId": user_id})
    data = sub.to_dict()
    data["plan"] = sub.plan.to_dict() if sub.plan else None
    return jsonify(data), 200


@bp.get("")
def list_subscriptions():
    subs = get_services().subscriptions.list_subscriptions(_user_id())
    return jsonify({"items": [s.to_dict() for s in subs]}), 200


@bp.get("/billing-history")
def billing_history():
    records = get_services().subscriptions.list_billing_history(
        _user_id(), subscription_id=request.args.get("subscriptionId")
    )
    return jsonify({"items": [r.to_dict() for r in records]}), 200
