"""
Workflow tracker Blueprint — progress of a business object's approval.

Routes:
  GET /workflow-tracker/expense/<application_id>                 – tracker for an expense application
  GET /workflow-tracker/<business_type>/<business_id>            – tracker for any business object
  GET /workflow-tracker/<business_type>/<business_id>/history    – action history of the latest run
"""

from flask import Blueprint, jsonify

from backoffice.services import expense_service
from backoffice.services import workflow_service as wfs
from backoffice.utils.errors import register_service_error_handlers

tracker_bp = Blueprint("tracker", __name__, url_prefix="/api/v1/workflow-tracker")
register_service_error_handlers(tracker_bp)


@tracker_bp.route("/expense/<int:application_id>", methods=["GET"])
def expense_tracker(application_id):
    number = expense_service.application_number_for(application_id)
    return jsonify(wfs.get_tracker(expense_service.BUSINESS_TYPE, number))


@tracker_bp.route("/<business_type>/<business_id>", methods=["GET"])
def business_tracker(business_type, business_id):
    return jsonify(wfs.get_tracker(business_type, business_id))


@tracker_bp.route("/<business_type>/<business_id>/history", methods=["GET"])
def business_history(business_type, business_id):
    return jsonify(wfs.get_workflow_history(business_type, business_id))
