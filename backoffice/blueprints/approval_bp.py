"""
Approval inbox Blueprint — the current user's view of approval work.

Routes:
  GET    /approval/pending                 – my pending tasks (status, business_type, priority)
  GET    /approval/handled                 – tasks I finished
  GET    /approval/statistics              – my inbox counters
  POST   /approval/tasks/<task_id>/approve – approve
  POST   /approval/tasks/<task_id>/reject  – reject (comment required)
  POST   /approval/tasks/<task_id>/return  – return (target_node_key + comment)
  POST   /approval/batch                   – batch approve/reject

Every route requires the X-User-Id header.
"""

import logging

from flask import Blueprint, jsonify, request

from backoffice.blueprints import current_user_id, page_args
from backoffice.services import workflow_service as wfs
from backoffice.utils.errors import E, api_error, register_service_error_handlers

logger = logging.getLogger(__name__)

approval_bp = Blueprint("approval", __name__, url_prefix="/api/v1/approval")
register_service_error_handlers(approval_bp)


@approval_bp.before_request
def _require_user():
    if current_user_id() is None:
        return api_error(E.FORBIDDEN, "X-User-Id header is required", status=401)
    return None


@approval_bp.route("/pending", methods=["GET"])
def my_pending():
    page, per_page = page_args()
    filters = {
        "status": request.args.get("status"),
        "business_type": request.args.get("business_type"),
        "priority": request.args.get("priority"),
    }
    return jsonify(wfs.get_pending_tasks(current_user_id(), page=page, per_page=per_page, filters=filters))


@approval_bp.route("/handled", methods=["GET"])
def my_handled():
    page, per_page = page_args()
    return jsonify(wfs.get_handled_tasks(current_user_id(), page=page, per_page=per_page))


@approval_bp.route("/statistics", methods=["GET"])
def my_statistics():
    return jsonify(wfs.approval_statistics(current_user_id()))


@approval_bp.route("/tasks/<task_id>/approve", methods=["POST"])
def approve(task_id):
    data = request.get_json(silent=True) or {}
    return jsonify(wfs.approve(task_id, data.get("comment"), operator_id=current_user_id()))


@approval_bp.route("/tasks/<task_id>/reject", methods=["POST"])
def reject(task_id):
    data = request.get_json(silent=True) or {}
    return jsonify(wfs.reject(task_id, data.get("comment"), operator_id=current_user_id()))


@approval_bp.route("/tasks/<task_id>/return", methods=["POST"])
def return_task(task_id):
    data = request.get_json(silent=True) or {}
    return jsonify(wfs.return_to(
        task_id, data.get("target_node_key"), data.get("comment"), operator_id=current_user_id(),
    ))


@approval_bp.route("/batch", methods=["POST"])
def batch_process():
    """Body: { items: [{node_id, action, comment}] }"""
    data = request.get_json(silent=True) or {}
    items = data.get("items")
    if not isinstance(items, list) or not items:
        return api_error(E.VALIDATION_REQUIRED, "items must be a non-empty array")
    result = wfs.batch_approve(items, operator_id=current_user_id())
    return jsonify(result.to_dict())
