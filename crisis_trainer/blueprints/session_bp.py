"""
Practice Session Blueprint.

Endpoints:
    POST   /api/v1/sessions                          — start chat practice
           Body: { "assignment_id"? , "scenario_id"? }
           Returns: 201 new session (200 when an assignment retry reopened it)
    GET    /api/v1/sessions/<id>                     — session, transcript, evaluation, recording
    POST   /api/v1/sessions/<id>/messages            — Body: { "content" } → counselor + caller turns
    PUT    /api/v1/sessions/<id>/transcript          — idempotent batch replace; 409 once ended
           Body: { "turns": [{role, content, turn_index}], "attempt_number"? }
    POST   /api/v1/sessions/<id>/end                 — idempotent
    POST   /api/v1/sessions/<id>/evaluate            — grade once; 409 / 425 / 429 / 502
    GET    /api/v1/sessions/<id>/evaluation          — stored evaluation or 404
    POST   /api/v1/sessions/<id>/flag                — counselor feedback
           Body: { "category", "details", "severity"? }
    POST   /api/v1/sessions/<id>/analyze             — manual secondary analysis
    POST   /api/v1/sessions/<id>/review-document     — multipart PDF of the call notes (field "file");
                                                     graded sessions only, once per session
    GET    /api/v1/sessions/<id>/review-document     — stored review or 404

Layer contract:
    - Blueprint: parse input, call service, serialise.
    - Ownership, rate limits and every write live in the services.
"""

from flask import Blueprint, g, jsonify, request

from crisis_trainer.auth import require_user
from crisis_trainer.core.exceptions import NotFoundError
from crisis_trainer.services import (
    analysis_service,
    evaluation_service,
    flag_service,
    review_service,
    session_service,
)
from crisis_trainer.utils.helpers import json_body

session_bp = Blueprint("sessions", __name__, url_prefix="/api/v1")


@session_bp.route("/sessions", methods=["POST"])
@require_user
def create_session():
    data = json_body()
    session, is_retry = session_service.start_chat_session(
        g.current_user,
        assignment_id=data.get("assignment_id") or None,
        scenario_id=data.get("scenario_id") or None,
    )
    body = session_service.session_detail(session)
    body["is_retry"] = is_retry
    return jsonify(body), 200 if is_retry else 201


@session_bp.route("/sessions/<session_id>", methods=["GET"])
@require_user
def get_session(session_id):
    session = session_service.get_session_for(g.current_user, session_id)
    return jsonify(session_service.session_detail(session, include_flags=g.current_user.is_supervisor))


@session_bp.route("/sessions/<session_id>/messages", methods=["POST"])
@require_user
def send_message(session_id):
    data = json_body()
    turns = session_service.send_message(g.current_user, session_id, data.get("content"))
    return jsonify([t.to_dict() for t in turns]), 201


@session_bp.route("/sessions/<session_id>/transcript", methods=["PUT"])
@require_user
def persist_transcript(session_id):
    data = json_body()
    result = session_service.persist_client_transcript(
        g.current_user, session_id, data.get("turns"), data.get("attempt_number"),
    )
    return jsonify(result)


@session_bp.route("/sessions/<session_id>/end", methods=["POST"])
@require_user
def end_session(session_id):
    session = session_service.get_session_for(g.current_user, session_id, "end this session")
    return jsonify(session_service.end_session(session).to_dict())


@session_bp.route("/sessions/<session_id>/evaluate", methods=["POST"])
@require_user
def evaluate_session(session_id):
    evaluation = evaluation_service.evaluate_session(session_id, requester=g.current_user)
    return jsonify(evaluation.to_dict()), 201


@session_bp.route("/sessions/<session_id>/evaluation", methods=["GET"])
@require_user
def get_evaluation(session_id):
    session = session_service.get_session_for(g.current_user, session_id)
    evaluation = evaluation_service.get_evaluation_for_session(session)
    if evaluation is None:
        raise NotFoundError("Evaluation", session_id)
    return jsonify(evaluation.to_dict())


@session_bp.route("/sessions/<session_id>/flag", methods=["POST"])
@require_user
def submit_flag(session_id):
    flag = flag_service.submit_feedback(session_id, g.current_user, json_body())
    return jsonify(flag.to_dict()), 201


@session_bp.route("/sessions/<session_id>/analyze", methods=["POST"])
@require_user
def analyze_session(session_id):
    flags = analysis_service.request_analysis(session_id, g.current_user)
    return jsonify([f.to_dict() for f in flags])


@session_bp.route("/sessions/<session_id>/review-document", methods=["POST"])
@require_user
def create_document_review(session_id):
    review = review_service.create_review(g.current_user, session_id, request.files.get("file"))
    return jsonify(review.to_dict()), 201


@session_bp.route("/sessions/<session_id>/review-document", methods=["GET"])
@require_user
def get_document_review(session_id):
    return jsonify(review_service.get_review(g.current_user, session_id).to_dict())
