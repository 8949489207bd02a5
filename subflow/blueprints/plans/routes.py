from flask import jsonify, request

from . import bp
from subflow.extensions import limiter
from subflow.wiring import get_services


@bp.post("")
@limiter.limit("30 per minute")
def create_plan():
    plan = get_services().plans.create_plan(request.get_json(silent=True) or {})
    return jsonify(plan.to_dict()), 201


@bp.put("/<plan_id>")
@limiter.limit("30 per minute")
def update_plan(plan_id):
    plan = get_services().plans.update_plan(plan_id, request.get_json(silent=True) or {})
    return jsonify(plan.to_dict()), 200


@bp.delete("/<plan_id>")
@limiter.limit("30 per minute")
def delete_plan(plan_id):
    get_services().plans.delete_plan(plan_id)
    return jsonify({"deleted": True, "id": plan_id}), 200
