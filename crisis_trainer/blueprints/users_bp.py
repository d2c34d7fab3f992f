"""
Users Blueprint.

Endpoints:
    GET    /api/v1/users              — list users (supervisor), ?role=counselor|supervisor
    POST   /api/v1/users              — create a user (supervisor)
    GET    /api/v1/users/me           — the caller's own profile
    GET    /api/v1/users/<id>         — a profile (self or supervisor)
    PUT    /api/v1/users/<id>         — update name, email or role (role: supervisor only)
    DELETE /api/v1/users/<id>         — delete a user without training history (supervisor)
"""

from flask import Blueprint, g, jsonify, request

from crisis_trainer.auth import require_supervisor, require_user
from crisis_trainer.services import user_service
from crisis_trainer.utils.helpers import json_body

users_bp = Blueprint("users", __name__, url_prefix="/api/v1")


@users_bp.route("/users", methods=["GET"])
@require_supervisor
def list_users():
    users = user_service.list_users(role=request.args.get("role"))
    return jsonify([u.to_dict() for u in users])


@users_bp.route("/users", methods=["POST"])
@require_supervisor
def create_user():
    user = user_service.create_user(json_body())
    return jsonify(user.to_dict()), 201


@users_bp.route("/users/me", methods=["GET"])
@require_user
def me():
    return jsonify(g.current_user.to_dict())


@users_bp.route("/users/<user_id>", methods=["GET"])
@require_user
def get_user(user_id):
    return jsonify(user_service.get_user(g.current_user, user_id).to_dict())


@users_bp.route("/users/<user_id>", methods=["PUT", "PATCH"])
@require_user
def update_user(user_id):
    user = user_service.update_user(g.current_user, user_id, json_body())
    return jsonify(user.to_dict())


@users_bp.route("/users/<user_id>", methods=["DELETE"])
@require_supervisor
def delete_user(user_id):
    user_service.delete_user(user_id)
    return "", 204
