"""
Practice sessions, transcript turns and recordings.

A Session is one practice attempt (chat or voice).  ``assignment_id`` is
null for free practice.  Voice retries reuse the same Session row and bump
``current_attempt``; transcript turns are keyed by
(session_id, attempt_number, turn_index) so each attempt keeps its own
contiguous sequence.
"""

from crisis_trainer.models import db, iso, new_id, utcnow

# ── Constants ─────────────────────────────────────────────────────────────────

SESSION_ACTIVE = "active"
SESSION_ENDED = "ended"
VALID_SESSION_STATUSES = frozenset({SESSION_ACTIVE, SESSION_ENDED})

VALID_TURN_ROLES = frozenset({"user", "assistant"})


class Session(db.Model):
    __tablename__ = "sessions"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    assignment_id = db.Column(
        db.String(36),
        db.ForeignKey("assignments.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
        comment="Null for free practice; an assignment has at most one session",
    )
    user_id = db.Column(
        db.String(36),
        db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    scenario_id = db.Column(
        db.String(36),
        db.ForeignKey("scenarios.id", ondelete="SET NULL"),
        nullable=True,
    )
    model_type = db.Column(db.String(10), nullable=False, default="chat", comment="chat | phone")
    status = db.Column(db.String(20), nullable=False, default=SESSION_ACTIVE, comment="active | ended")
    current_attempt = db.Column(db.Integer, nullable=False, default=1)
    started_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    ended_at = db.Column(db.DateTime(timezone=True), nullable=True)

    assignment = db.relationship("Assignment", back_populates="session")
    scenario = db.relationship("Scenario")
    user = db.relationship("User")
    turns = db.relationship(
        "TranscriptTurn",
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by=lambda: [TranscriptTurn.attempt_number, TranscriptTurn.turn_index],
    )
    recording = db.relationship("Recording", back_populates="session", uselist=False)
    evaluation = db.relationship("Evaluation", back_populates="session", uselist=False)

    @property
    def owner_id(self) -> str:
        """Assignment sessions belong to the assignment's counselor."""
        if self.assignment is not None:
            return self.assignment.counselor_id
        return self.user_id

    @property
    def is_active(self) -> bool:
        return self.status == SESSION_ACTIVE

    def current_turns(self) -> list["TranscriptTurn"]:
        return [t for t in self.turns if t.attempt_number == self.current_attempt]

    def to_dict(self, include_transcript: bool = False) -> dict:
        data = {
            "id": self.id,
            "assignment_id": self.assignment_id,
            "user_id": self.user_id,
            "scenario_id": self.scenario_id,
            "model_type": self.model_type,
            "status": self.status,
            "current_attempt": self.current_attempt,
            "started_at": iso(self.started_at),
            "ended_at": iso(self.ended_at),
        }
        if include_transcript:
            data["transcript"] = [t.to_dict() for t in self.current_turns()]
        return data

    def __repr__(self) -> str:
        return f"<Session {self.id} {self.status} attempt={self.current_attempt}>"


class TranscriptTurn(db.Model):
    __tablename__ = "transcript_turns"
    __table_args__ = (
        db.UniqueConstraint(
            "session_id", "attempt_number", "turn_index",
            name="uq_transcript_turn_position",
        ),
        db.Index("ix_transcript_session_attempt", "session_id", "attempt_number"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    session_id = db.Column(
        db.String(36),
        db.ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    role = db.Column(db.String(20), nullable=False, comment="user | assistant")
    content = db.Column(db.Text, nullable=False)
    turn_index = db.Column(db.Integer, nullable=False)
    attempt_number = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    session = db.relationship("Session", back_populates="turns")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "role": self.role,
            "content": self.content,
            "turn_index": self.turn_index,
            "attempt_number": self.attempt_number,
            "created_at": iso(self.created_at),
        }


class Recording(db.Model):
    __tablename__ = "recordings"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    session_id = db.Column(
        db.String(36),
        db.ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    file_path = db.Column(db.String(512), nullable=False)
    content_type = db.Column(db.String(100), nullable=True)
    file_size_bytes = db.Column(db.Integer, nullable=True)
    duration_seconds = db.Column(db.Float, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    session = db.relationship("Session", back_populates="recording")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "content_type": self.content_type,
            "file_size_bytes": self.file_size_bytes,
            "duration_seconds": self.duration_seconds,
            "created_at": iso(self.created_at),
        }
