"""
Workflow Blueprint — approval runs, tasks and history.

Routes:
  POST   /workflow/instances                         – start an approval run
  GET    /workflow/instances                         – list runs (status, applicant_id, business_type)
  GET    /workflow/instances/<iid>                   – run detail (+ live variables while RUNNING)
  POST   /workflow/instances/<iid>/approve           – approve a task of the run
  POST   /workflow/instances/<iid>/reject            – reject a task of the run
  POST   /workflow/instances/<iid>/return            – return a task to an earlier step
  GET    /workflow/instances/<iid>/history           – engine task history
  GET    /workflow/pending/<user_id>                 – user's active tasks
  GET    /workflow/handled/<user_id>                 – user's finished tasks
  GET    /workflow/nodes/<node_id>/returnable        – steps a node can return to
  POST   /workflow/batch-approve                     – approve/reject many nodes

The acting user is taken from X-User-Id when present; task actions then
require that user to be the assignee (or proxy).
Service layer owns all business logic and commits.
"""

import logging

from flask import Blueprint, jsonify, request

from backoffice.blueprints import current_user_id, page_args
from backoffice.services import workflow_service as wfs
from backoffice.utils.errors import E, api_error, register_service_error_handlers

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1/workflow")
register_service_error_handlers(workflow_bp)


def _task_body():
    data = request.get_json(silent=True) or {}
    task_id = str(data.get("task_id") or "").strip()
    if not task_id:
        return None, None, api_error(E.VALIDATION_REQUIRED, "task_id is required")
    return task_id, data, None


# ═════════════════════════════════════════════════════════════════════════════
# RUNS
# ═════════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/instances", methods=["POST"])
def start_instance():
    """Start an approval run.

    Body: { business_type, business_id, applicant_id, title?, amount?, variables? }
    """
    data = request.get_json(silent=True) or {}
    missing = [f for f in ("business_type", "business_id", "applicant_id") if not data.get(f)]
    if missing:
        return api_error(E.VALIDATION_REQUIRED, f"{', '.join(missing)} required", details={"missing": missing})
    if not str(data["applicant_id"]).isdigit():
        return api_error(E.VALIDATION_INVALID, "applicant_id must be an integer")
    if not isinstance(data.get("variables") or {}, dict):
        return api_error(E.VALIDATION_INVALID, "variables must be an object")

    instance = wfs.start_workflow(
        business_type=data["business_type"],
        business_id=data["business_id"],
        applicant_id=int(data["applicant_id"]),
        title=data.get("title"),
        amount=data.get("amount"),
        variables=data.get("variables"),
    )
    return jsonify(instance), 201


@workflow_bp.route("/instances", methods=["GET"])
def list_instances():
    page, per_page = page_args()
    return jsonify(wfs.list_instances(
        status=request.args.get("status"),
        applicant_id=request.args.get("applicant_id", type=int),
        business_type=request.args.get("business_type"),
        page=page,
        per_page=per_page,
    ))


@workflow_bp.route("/instances/<int:iid>", methods=["GET"])
def get_instance(iid):
    return jsonify(wfs.get_workflow_instance(iid))


@workflow_bp.route("/instances/<int:iid>/history", methods=["GET"])
def instance_history(iid):
    return jsonify(wfs.get_detailed_history(iid))


# ═════════════════════════════════════════════════════════════════════════════
# TASK ACTIONS
# ═════════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/instances/<int:iid>/approve", methods=["POST"])
def approve_task(iid):
    """Body: { task_id, comment? }"""
    task_id, data, err = _task_body()
    if err:
        return err
    wfs.assert_task_in_instance(iid, task_id)
    return jsonify(wfs.approve(task_id, data.get("comment"), operator_id=current_user_id()))


@workflow_bp.route("/instances/<int:iid>/reject", methods=["POST"])
def reject_task(iid):
    """Body: { task_id, comment }"""
    task_id, data, err = _task_body()
    if err:
        return err
    wfs.assert_task_in_instance(iid, task_id)
    return jsonify(wfs.reject(task_id, data.get("comment"), operator_id=current_user_id()))


@workflow_bp.route("/instances/<int:iid>/return", methods=["POST"])
def return_task(iid):
    """Body: { task_id, target_node_key, comment }

    target_node_key "applicant" ends the run and hands the object back.
    """
    task_id, data, err = _task_body()
    if err:
        return err
    wfs.assert_task_in_instance(iid, task_id)
    return jsonify(wfs.return_to(
        task_id, data.get("target_node_key"), data.get("comment"), operator_id=current_user_id(),
    ))


@workflow_bp.route("/batch-approve", methods=["POST"])
def batch_approve():
    """Body: { items: [{node_id, action: approve|reject, comment}] }"""
    data = request.get_json(silent=True) or {}
    items = data.get("items")
    if not isinstance(items, list) or not items:
        return api_error(E.VALIDATION_REQUIRED, "items must be a non-empty array")
    result = wfs.batch_approve(items, operator_id=current_user_id())
    return jsonify(result.to_dict())


# ═════════════════════════════════════════════════════════════════════════════
# TASK LISTS
# ═════════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/pending/<int:user_id>", methods=["GET"])
def pending_tasks(user_id):
    page, per_page = page_args()
    return jsonify(wfs.get_pending_tasks(user_id, page=page, per_page=per_page))


@workflow_bp.route("/handled/<int:user_id>", methods=["GET"])
def handled_tasks(user_id):
    page, per_page = page_args()
    return jsonify(wfs.get_handled_tasks(user_id, page=page, per_page=per_page))


@workflow_bp.route("/nodes/<int:node_id>/returnable", methods=["GET"])
def returnable_nodes(node_id):
    return jsonify({
        "nodes": wfs.get_returnable_nodes(node_id),
        "applicant_key": wfs.RETURN_TO_APPLICANT,
    })
