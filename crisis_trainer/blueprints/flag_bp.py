"""
Flag review Blueprint (supervisor).

Endpoints:
    GET    /api/v1/flags             — review queue, critical first, max 50
           Query params: status, severity, session_id
    PATCH  /api/v1/flags/<id>        — Body: { "status": "reviewed|dismissed", "note"? }

Counselor feedback is submitted through POST /api/v1/sessions/<id>/flag.
"""

from flask import Blueprint, g, jsonify, request

from crisis_trainer.auth import require_supervisor
from crisis_trainer.services import flag_service
from crisis_trainer.utils.helpers import json_body

flag_bp = Blueprint("flags", __name__, url_prefix="/api/v1")


@flag_bp.route("/flags", methods=["GET"])
@require_supervisor
def list_flags():
    flags = flag_service.list_flags(
        status=request.args.get("status"),
        severity=request.args.get("severity"),
        session_id=request.args.get("session_id"),
    )
    return jsonify([f.to_dict() for f in flags])


@flag_bp.route("/flags/<flag_id>", methods=["PATCH"])
@require_supervisor
def resolve_flag(flag_id):
    flag = flag_service.resolve_flag(flag_id, g.current_user, json_body())
    return jsonify(flag.to_dict())
