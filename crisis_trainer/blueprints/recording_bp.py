"""
Recordings Blueprint.

Endpoints:
    POST   /api/v1/sessions/<id>/recordings        — multipart upload (field "file",
                                                    optional form field "duration_seconds")
    GET    /api/v1/sessions/<id>/recordings        — zero or one recording
    GET    /api/v1/recordings/<id>/download        — the audio file
"""

from flask import Blueprint, g, jsonify, request, send_file

from crisis_trainer.auth import require_user
from crisis_trainer.services import recording_service

recording_bp = Blueprint("recordings", __name__, url_prefix="/api/v1")


@recording_bp.route("/sessions/<session_id>/recordings", methods=["POST"])
@require_user
def upload_recording(session_id):
    recording = recording_service.save_recording(
        session_id,
        g.current_user,
        request.files.get("file"),
        duration_seconds=request.form.get("duration_seconds"),
    )
    return jsonify(recording.to_dict()), 201


@recording_bp.route("/sessions/<session_id>/recordings", methods=["GET"])
@require_user
def list_recordings(session_id):
    recordings = recording_service.list_recordings(session_id, g.current_user)
    return jsonify([r.to_dict() for r in recordings])


@recording_bp.route("/recordings/<recording_id>/download", methods=["GET"])
@require_user
def download_recording(recording_id):
    recording = recording_service.get_recording_file(recording_id, g.current_user)
    return send_file(recording.file_path, mimetype=recording.content_type or "application/octet-stream",
                     as_attachment=True)
