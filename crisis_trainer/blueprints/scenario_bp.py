"""
Scenario Blueprint.

Endpoints:
    GET    /api/v1/scenarios                 — list reusable scenarios
           Query params: category, mode, account_id
    POST   /api/v1/scenarios                 — create (supervisor)
    GET    /api/v1/scenarios/<id>            — detail
    PATCH  /api/v1/scenarios/<id>            — partial update (supervisor)
    DELETE /api/v1/scenarios/<id>            — delete (supervisor); 409 while assignments exist
    POST   /api/v1/scenarios/generate        — build a scenario from a complaint (supervisor)
           Body: { "complaint": "...", "account_id": "...", "is_one_time": false }
    POST   /api/v1/scenarios/extract-text    — multipart PDF/TXT (field "file") → { text, file_name } (supervisor)
    GET    /api/v1/scenarios/<id>/evaluator-context  — { content, file_name, source }
    POST   /api/v1/scenarios/<id>/evaluator-context  — multipart PDF/TXT becomes the grading rubric (supervisor)

One-time scenarios never appear in the list but can be fetched by id.
"""

from flask import Blueprint, g, jsonify, request

from crisis_trainer import limiter
from crisis_trainer.auth import require_supervisor, require_user
from crisis_trainer.services import scenario_service
from crisis_trainer.utils.helpers import json_body, require_str

scenario_bp = Blueprint("scenarios", __name__, url_prefix="/api/v1")

MAX_COMPLAINT_LENGTH = 10000


@scenario_bp.route("/scenarios", methods=["GET"])
@require_user
def list_scenarios():
    scenarios = scenario_service.list_scenarios(
        category=request.args.get("category"),
        mode=request.args.get("mode"),
        account_id=request.args.get("account_id"),
    )
    return jsonify([s.to_dict() for s in scenarios])


@scenario_bp.route("/scenarios", methods=["POST"])
@require_supervisor
def create_scenario():
    scenario = scenario_service.create_scenario(json_body(), created_by=g.current_user.id)
    return jsonify(scenario.to_dict()), 201


@scenario_bp.route("/scenarios/generate", methods=["POST"])
@limiter.limit("10/minute")
@require_supervisor
def generate_scenario():
    data = json_body()
    complaint = require_str(data, "complaint", max_length=MAX_COMPLAINT_LENGTH)
    scenario = scenario_service.generate_from_complaint(
        complaint,
        created_by=g.current_user.id,
        account_id=data.get("account_id") or None,
        is_one_time=bool(data.get("is_one_time")),
    )
    return jsonify(scenario.to_dict()), 201


@scenario_bp.route("/scenarios/<scenario_id>", methods=["GET"])
@require_user
def get_scenario(scenario_id):
    return jsonify(scenario_service.get_scenario(scenario_id).to_dict())


@scenario_bp.route("/scenarios/<scenario_id>", methods=["PATCH", "PUT"])
@require_supervisor
def update_scenario(scenario_id):
    scenario = scenario_service.update_scenario(scenario_id, json_body())
    return jsonify(scenario.to_dict())


@scenario_bp.route("/scenarios/<scenario_id>", methods=["DELETE"])
@require_supervisor
def delete_scenario(scenario_id):
    scenario_service.delete_scenario(scenario_id)
    return "", 204


@scenario_bp.route("/scenarios/extract-text", methods=["POST"])
@require_supervisor
def extract_text():
    return jsonify(scenario_service.extract_text(request.files.get("file")))


@scenario_bp.route("/scenarios/<scenario_id>/evaluator-context", methods=["GET"])
@require_user
def get_evaluator_context(scenario_id):
    return jsonify(scenario_service.get_evaluator_context(scenario_id))


@scenario_bp.route("/scenarios/<scenario_id>/evaluator-context", methods=["POST"])
@require_supervisor
def upload_evaluator_context(scenario_id):
    scenario = scenario_service.attach_evaluator_context(scenario_id, request.files.get("file"))
    return jsonify(scenario.to_dict())
