"""
External Partner API Blueprint.

All routes require the X-API-Key header of a configured partner.

Endpoints:
    POST   /api/v1/external/assignments
           Body: { "user_external_id", "scenario_id" | "scenario": {...},
                   "due_date"?, "supervisor_notes"? }
    GET    /api/v1/external/scenarios            ?category=&mode=
    GET    /api/v1/external/scenarios/<id>
    GET    /api/v1/external/users/<external_id>/assignments
    POST   /api/v1/external/assignments/<id>/evaluate
    GET    /api/v1/external/assignments/<id>/result
    GET    /api/v1/external/assignments/<id>/transcript
"""

from flask import Blueprint, g, jsonify, request

from crisis_trainer.auth import require_partner
from crisis_trainer.services import external_service
from crisis_trainer.utils.helpers import json_body

external_bp = Blueprint("external", __name__, url_prefix="/api/v1/external")


@external_bp.route("/assignments", methods=["POST"])
@require_partner
def create_assignment():
    assignment = external_service.create_assignment(json_body(), partner=g.partner)
    return jsonify(assignment.to_dict(include_scenario=True)), 201


@external_bp.route("/users/<external_id>/assignments", methods=["GET"])
@require_partner
def list_user_assignments(external_id):
    assignments = external_service.list_user_assignments(external_id)
    return jsonify([a.to_dict(include_scenario=True) for a in assignments])


@external_bp.route("/assignments/<assignment_id>/evaluate", methods=["POST"])
@require_partner
def evaluate_assignment(assignment_id):
    evaluation = external_service.evaluate_assignment(assignment_id, partner=g.partner)
    return jsonify(evaluation.to_dict()), 201


@external_bp.route("/assignments/<assignment_id>/result", methods=["GET"])
@require_partner
def get_result(assignment_id):
    return jsonify(external_service.get_result(assignment_id))


@external_bp.route("/assignments/<assignment_id>/transcript", methods=["GET"])
@require_partner
def get_transcript(assignment_id):
    return jsonify(external_service.get_transcript(assignment_id))


@external_bp.route("/scenarios", methods=["GET"])
@require_partner
def list_scenarios():
    return jsonify(external_service.list_scenarios(
        category=request.args.get("category"), mode=request.args.get("mode"),
    ))


@external_bp.route("/scenarios/<scenario_id>", methods=["GET"])
@require_partner
def get_scenario(scenario_id):
    return jsonify(external_service.get_scenario(scenario_id))
