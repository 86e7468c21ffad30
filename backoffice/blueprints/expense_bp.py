"""
Expense Blueprint — expense applications, attachments and statistics.

Routes:
  GET    /expense/applications                               – list (applicant_id, status, department, application_number, start_date, end_date)
  POST   /expense/applications                               – create DRAFT
  GET    /expense/applications/<aid>                         – detail (+ items, attachments, workflow)
  PUT    /expense/applications/<aid>                         – update (DRAFT/RETURNED only)
  DELETE /expense/applications/<aid>                         – delete (DRAFT/RETURNED only)
  POST   /expense/applications/<aid>/submit                  – submit and start approval
  GET    /expense/applications/history/<applicant_id>        – applicant's applications
  GET    /expense/applications/<aid>/attachments             – list attachments
  POST   /expense/applications/<aid>/attachments             – upload (multipart, field "file")
  GET    /expense/attachments/<att_id>                       – download
  DELETE /expense/attachments/<att_id>                       – delete
  GET    /expense/categories                                 – category list
  GET    /expense/statistics                                 – counters (applicant_id, department, start_date, end_date)
"""

import logging

from flask import Blueprint, jsonify, request, send_file

from backoffice.blueprints import current_user_id, page_args
from backoffice.services import attachment_service, expense_service
from backoffice.utils.errors import E, api_error, register_service_error_handlers

logger = logging.getLogger(__name__)

expense_bp = Blueprint("expense", __name__, url_prefix="/api/v1/expense")
register_service_error_handlers(expense_bp)

_LIST_FILTERS = ("applicant_id", "status", "department", "application_number", "start_date", "end_date")


# ═════════════════════════════════════════════════════════════════════════════
# APPLICATIONS
# ═════════════════════════════════════════════════════════════════════════════


@expense_bp.route("/applications", methods=["GET"])
def list_applications():
    page, per_page = page_args()
    filters = {k: request.args.get(k) for k in _LIST_FILTERS if request.args.get(k)}
    if filters.get("applicant_id") and not filters["applicant_id"].isdigit():
        return api_error(E.VALIDATION_INVALID, "applicant_id must be an integer")
    return jsonify(expense_service.find_applications(filters, page=page, per_page=per_page))


@expense_bp.route("/applications", methods=["POST"])
def create_application():
    """Body: { applicant_id, apply_date?, description?, company?, currency?, items: [...] }

    applicant_id defaults to the X-User-Id caller.
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return api_error(E.VALIDATION_REQUIRED, "JSON body is required")
    if not data.get("applicant_id") and current_user_id() is not None:
        data["applicant_id"] = current_user_id()
    return jsonify(expense_service.create_application(data)), 201


@expense_bp.route("/applications/<int:aid>", methods=["GET"])
def get_application(aid):
    return jsonify(expense_service.get_application_detail(aid))


@expense_bp.route("/applications/<int:aid>", methods=["PUT"])
def update_application(aid):
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return api_error(E.VALIDATION_REQUIRED, "JSON body is required")
    return jsonify(expense_service.update_application(aid, data))


@expense_bp.route("/applications/<int:aid>", methods=["DELETE"])
def delete_application(aid):
    expense_service.delete_application(aid)
    return jsonify({"deleted": True})


@expense_bp.route("/applications/<int:aid>/submit", methods=["POST"])
def submit_application(aid):
    return jsonify(expense_service.submit_for_approval(aid, operator_id=current_user_id()))


@expense_bp.route("/applications/history/<int:applicant_id>", methods=["GET"])
def applicant_history(applicant_id):
    page, per_page = page_args(default_per_page=10)
    return jsonify(expense_service.applicant_history(applicant_id, page=page, per_page=per_page))


# ═════════════════════════════════════════════════════════════════════════════
# ATTACHMENTS
# ═════════════════════════════════════════════════════════════════════════════


@expense_bp.route("/applications/<int:aid>/attachments", methods=["GET"])
def list_attachments(aid):
    return jsonify(expense_service.list_attachments(aid))


@expense_bp.route("/applications/<int:aid>/attachments", methods=["POST"])
def upload_attachment(aid):
    if "file" not in request.files:
        return api_error(E.VALIDATION_REQUIRED, "Multipart field 'file' is required")
    record = expense_service.add_attachment(aid, request.files["file"], uploaded_by=current_user_id())
    return jsonify(record), 201


@expense_bp.route("/attachments/<int:att_id>", methods=["GET"])
def download_attachment(att_id):
    record, path = attachment_service.open_file(att_id)
    return send_file(
        path,
        download_name=record.original_name,
        mimetype=record.content_type or "application/octet-stream",
        as_attachment=True,
    )


@expense_bp.route("/attachments/<int:att_id>", methods=["DELETE"])
def delete_attachment(att_id):
    expense_service.remove_attachment(att_id)
    return jsonify({"deleted": True})


# ═════════════════════════════════════════════════════════════════════════════
# REFERENCE DATA & STATISTICS
# ═════════════════════════════════════════════════════════════════════════════


@expense_bp.route("/categories", methods=["GET"])
def categories():
    return jsonify(expense_service.expense_categories())


@expense_bp.route("/statistics", methods=["GET"])
def statistics():
    return jsonify(expense_service.expense_statistics(
        applicant_id=request.args.get("applicant_id", type=int),
        department=request.args.get("department"),
        start_date=request.args.get("start_date"),
        end_date=request.args.get("end_date"),
    ))
