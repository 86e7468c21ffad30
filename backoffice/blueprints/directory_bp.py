"""
Directory Blueprint — read-only view of users and the department tree.

Routes:
  GET /directory/users/<user_id>        – user profile
  GET /directory/departments/tree       – nested department tree
  GET /directory/positions              – active positions, most senior first
"""

from flask import Blueprint, jsonify

from backoffice.core.exceptions import NotFoundError
from backoffice.services import directory_service
from backoffice.utils.errors import register_service_error_handlers

directory_bp = Blueprint("directory", __name__, url_prefix="/api/v1/directory")
register_service_error_handlers(directory_bp)


@directory_bp.route("/users/<int:user_id>", methods=["GET"])
def get_user(user_id):
    user = directory_service.get_user(user_id)
    if user is None:
        raise NotFoundError(resource="User", resource_id=user_id)
    return jsonify(user.to_dict())


@directory_bp.route("/departments/tree", methods=["GET"])
def department_tree():
    return jsonify(directory_service.department_tree())


@directory_bp.route("/positions", methods=["GET"])
def positions():
    return jsonify(directory_service.list_positions())
