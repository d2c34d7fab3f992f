"""
Recording service — one optional audio file per voice session.

Uploads arrive fire-and-forget after a session ends, so every reader treats
a missing recording as normal.
"""

from __future__ import annotations

import logging
import os

from flask import current_app
from sqlalchemy.exc import IntegrityError
from werkzeug.utils import secure_filename

from crisis_trainer.auth import ensure_can_access
from crisis_trainer.core.exceptions import ConflictError, NotFoundError, ValidationError
from crisis_trainer.models import db
from crisis_trainer.models.account import User
from crisis_trainer.models.session import Recording, Session
from crisis_trainer.utils.helpers import get_or_404

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {".webm", ".ogg", ".mp3", ".wav", ".m4a"}


def _duration(value) -> float | None:
    if value in (None, ""):
        return None
    try:
        duration = float(value)
    except (TypeError, ValueError):
        raise ValidationError("Field 'duration_seconds' must be a number.")
    if duration < 0:
        raise ValidationError("Field 'duration_seconds' must not be negative.")
    return duration


def save_recording(session_id: str, user: User, file_storage, duration_seconds=None) -> Recording:
    """Store an uploaded recording for a session.

    Raises:
        ValidationError: missing file or unsupported extension.
        ConflictError: the session already has a recording.
    """
    session = get_or_404(Session, session_id)
    ensure_can_access(user, session.owner_id, "upload a recording for this session")

    if file_storage is None or not file_storage.filename:
        raise ValidationError("An audio file is required.", details={"file": "required"})
    filename = secure_filename(file_storage.filename)
    ext = os.path.splitext(filename)[1].lower()
    if ext not in ALLOWED_EXTENSIONS:
        raise ValidationError("Unsupported audio format.", details={"file": sorted(ALLOWED_EXTENSIONS)})
    duration = _duration(duration_seconds)

    if session.recording is not None:
        raise ConflictError("Session already has a recording", existing_id=session.recording.id)

    directory = current_app.config["RECORDINGS_DIR"]
    os.makedirs(directory, exist_ok=True)
    path = os.path.join(directory, f"{session.id}{ext}")
    file_storage.save(path)

    recording = Recording(
        session_id=session.id,
        file_path=path,
        content_type=file_storage.mimetype or None,
        file_size_bytes=os.path.getsize(path),
        duration_seconds=duration,
    )
    db.session.add(recording)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        winner = Recording.query.filter_by(session_id=session_id).first()
        raise ConflictError("Session already has a recording", existing_id=winner.id if winner else None)

    logger.info(
        "Recording stored (%d bytes)", recording.file_size_bytes,
        extra={"session_id": session.id, "event_type": "recording_uploaded"},
    )
    return recording


def list_recordings(session_id: str, user: User) -> list[Recording]:
    session = get_or_404(Session, session_id)
    ensure_can_access(user, session.owner_id, "view recordings for this session")
    return [session.recording] if session.recording is not None else []


def get_recording_file(recording_id: str, user: User) -> Recording:
    """Recording whose file is still on disk."""
    recording = get_or_404(Recording, recording_id)
    ensure_can_access(user, recording.session.owner_id, "download this recording")
    if not os.path.exists(recording.file_path):
        logger.warning("Recording file missing on disk: %s", recording.file_path,
                       extra={"session_id": recording.session_id})
        raise NotFoundError("Recording file", recording.id)
    return recording
