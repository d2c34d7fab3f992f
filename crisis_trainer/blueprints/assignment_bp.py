"""
Assignment Blueprint.

Endpoints:
    GET    /api/v1/assignments               — supervisors: all (?counselor_id=); counselors: own
           Query params: status
    POST   /api/v1/assignments               — assign one scenario to one counselor (supervisor)
           Body: { "scenario_id", "counselor_id", "due_date"?, "supervisor_notes"? }
    POST   /api/v1/assignments/bulk          — counselor_ids × scenario_ids (supervisor)
           Returns: { created, skipped, skipped_pairs[], assignments[] }
    GET    /api/v1/assignments/<id>          — detail (owner or supervisor)
    PATCH  /api/v1/assignments/<id>          — status / due date / notes (supervisor)
    DELETE /api/v1/assignments/<id>          — 409 while an evaluation references it (supervisor)
"""

from flask import Blueprint, g, jsonify, request

from crisis_trainer.auth import ensure_can_access, require_supervisor, require_user
from crisis_trainer.services import assignment_service
from crisis_trainer.utils.helpers import json_body

assignment_bp = Blueprint("assignments", __name__, url_prefix="/api/v1")


@assignment_bp.route("/assignments", methods=["GET"])
@require_user
def list_assignments():
    assignments = assignment_service.list_assignments(
        g.current_user,
        counselor_id=request.args.get("counselor_id"),
        status=request.args.get("status"),
    )
    return jsonify([a.to_dict(include_scenario=True) for a in assignments])


@assignment_bp.route("/assignments", methods=["POST"])
@require_supervisor
def create_assignment():
    assignment = assignment_service.create_from_payload(json_body(), assigned_by=g.current_user.id)
    return jsonify(assignment.to_dict(include_scenario=True)), 201


@assignment_bp.route("/assignments/bulk", methods=["POST"])
@require_supervisor
def bulk_assign():
    result = assignment_service.bulk_assign(json_body(), assigned_by=g.current_user.id)
    return jsonify(result), 201 if result["created"] else 200


@assignment_bp.route("/assignments/<assignment_id>", methods=["GET"])
@require_user
def get_assignment(assignment_id):
    assignment = assignment_service.get_assignment(assignment_id)
    ensure_can_access(g.current_user, assignment.counselor_id, "view this assignment")
    return jsonify(assignment.to_dict(include_scenario=True))


@assignment_bp.route("/assignments/<assignment_id>", methods=["PATCH"])
@require_supervisor
def update_assignment(assignment_id):
    assignment = assignment_service.update_assignment(assignment_id, json_body())
    return jsonify(assignment.to_dict())


@assignment_bp.route("/assignments/<assignment_id>", methods=["DELETE"])
@require_supervisor
def delete_assignment(assignment_id):
    assignment_service.delete_assignment(assignment_id)
    return "", 204
