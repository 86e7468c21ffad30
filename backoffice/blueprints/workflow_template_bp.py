"""
Workflow template Blueprint.

Routes:
  GET    /workflow/templates                 – list templates
  POST   /workflow/templates                 – create (draft)
  GET    /workflow/templates/<tid>           – detail
  PUT    /workflow/templates/<tid>           – update (steps change → new version)
  DELETE /workflow/templates/<tid>           – soft delete (undeploys first)
  POST   /workflow/templates/<tid>/deploy    – deploy to the BPM engine
  POST   /workflow/templates/<tid>/undeploy  – withdraw from the BPM engine
"""

from flask import Blueprint, jsonify, request

from backoffice.services import workflow_template_service as wts
from backoffice.utils.errors import register_service_error_handlers

workflow_template_bp = Blueprint("workflow_template", __name__, url_prefix="/api/v1/workflow/templates")
register_service_error_handlers(workflow_template_bp)


@workflow_template_bp.route("", methods=["GET"])
def list_templates():
    return jsonify(wts.list_templates())


@workflow_template_bp.route("", methods=["POST"])
def create_template():
    """Body: { name, description?, type?, process_key?, steps?, config_data? }"""
    data = request.get_json(silent=True) or {}
    return jsonify(wts.create_template(data)), 201


@workflow_template_bp.route("/<int:tid>", methods=["GET"])
def get_template(tid):
    return jsonify(wts.get_template(tid))


@workflow_template_bp.route("/<int:tid>", methods=["PUT"])
def update_template(tid):
    data = request.get_json(silent=True) or {}
    return jsonify(wts.update_template(tid, data))


@workflow_template_bp.route("/<int:tid>", methods=["DELETE"])
def delete_template(tid):
    wts.delete_template(tid)
    return jsonify({"deleted": True})


@workflow_template_bp.route("/<int:tid>/deploy", methods=["POST"])
def deploy_template(tid):
    return jsonify(wts.deploy_template(tid))


@workflow_template_bp.route("/<int:tid>/undeploy", methods=["POST"])
def undeploy_template(tid):
    return jsonify(wts.undeploy_template(tid))
