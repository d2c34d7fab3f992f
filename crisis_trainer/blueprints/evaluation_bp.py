"""
Evaluations Blueprint.

Endpoints:
    GET    /api/v1/evaluations/<id>      — evaluation with its scenario { id, title }
                                           (graded counselor or supervisor)
"""

from flask import Blueprint, g, jsonify

from crisis_trainer.auth import require_user
from crisis_trainer.services import evaluation_service

evaluation_bp = Blueprint("evaluations", __name__, url_prefix="/api/v1")


@evaluation_bp.route("/evaluations/<evaluation_id>", methods=["GET"])
@require_user
def get_evaluation(evaluation_id):
    return jsonify(evaluation_service.get_evaluation(evaluation_id, g.current_user))
