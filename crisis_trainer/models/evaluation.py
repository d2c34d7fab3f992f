"""
Evaluations, document reviews and session flags.

Exclusive arc:
    An Evaluation belongs to exactly one parent, either an Assignment or a
    free-practice Session.  The database enforces it with a CHECK constraint
    over the two nullable FK columns, and each column is independently
    UNIQUE, so a parent can never own two evaluations.  Concurrent evaluate
    requests race on that unique index; the loser gets an IntegrityError
    which the evaluation service turns into a CONFLICT.

    At the application boundary the parent is passed around as a tagged
    variant (``AssignmentEvaluation`` | ``SessionEvaluation``) and only
    ``Evaluation.for_parent`` maps it onto the two columns.

Document reviews:
    A counselor may upload the notes they wrote for a graded session; the
    model scores them against the transcript once per session.

Flags:
    SessionFlag rows come from three sources (evaluation, analysis,
    user_feedback).  Severity escalation for ``ai_guidance_concern`` feedback
    happens at write time in the flag service.
"""

from dataclasses import dataclass

from crisis_trainer.models import db, iso, new_id, utcnow

# ── Constants ─────────────────────────────────────────────────────────────────

SEVERITY_INFO = "info"
SEVERITY_WARNING = "warning"
SEVERITY_CRITICAL = "critical"
VALID_SEVERITIES = frozenset({SEVERITY_INFO, SEVERITY_WARNING, SEVERITY_CRITICAL})
SEVERITY_RANK = {SEVERITY_CRITICAL: 3, SEVERITY_WARNING: 2, SEVERITY_INFO: 1}

SOURCE_EVALUATION = "evaluation"
SOURCE_ANALYSIS = "analysis"
SOURCE_USER_FEEDBACK = "user_feedback"
VALID_SOURCES = frozenset({SOURCE_EVALUATION, SOURCE_ANALYSIS, SOURCE_USER_FEEDBACK})

FLAG_PENDING = "pending"
FLAG_REVIEWED = "reviewed"
FLAG_DISMISSED = "dismissed"
VALID_FLAG_STATUSES = frozenset({FLAG_PENDING, FLAG_REVIEWED, FLAG_DISMISSED})

CATEGORY_AI_GUIDANCE_CONCERN = "ai_guidance_concern"
CATEGORY_VOICE_TECHNICAL_ISSUE = "voice_technical_issue"
CATEGORY_USER_FEEDBACK = "user_feedback"
VALID_FEEDBACK_CATEGORIES = frozenset({
    CATEGORY_USER_FEEDBACK,
    CATEGORY_AI_GUIDANCE_CONCERN,
    CATEGORY_VOICE_TECHNICAL_ISSUE,
})
CATEGORY_ANALYSIS_CLEAN = "analysis_clean"
CATEGORY_MAX_LENGTH = 50


# ── Evaluation parent (tagged variant) ────────────────────────────────────────


@dataclass(frozen=True)
class AssignmentEvaluation:
    assignment_id: str
    kind = "assignment"


@dataclass(frozen=True)
class SessionEvaluation:
    session_id: str
    kind = "session"


EvaluationParent = AssignmentEvaluation | SessionEvaluation


class Evaluation(db.Model):
    __tablename__ = "evaluations"
    __table_args__ = (
        db.CheckConstraint(
            "(assignment_id IS NULL) <> (session_id IS NULL)",
            name="ck_evaluation_exclusive_parent",
        ),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    assignment_id = db.Column(
        db.String(36),
        db.ForeignKey("assignments.id", ondelete="RESTRICT"),
        nullable=True,
        unique=True,
        comment="Set for assignment evaluations; mutually exclusive with session_id",
    )
    session_id = db.Column(
        db.String(36),
        db.ForeignKey("sessions.id", ondelete="RESTRICT"),
        nullable=True,
        unique=True,
        comment="Set for free-practice evaluations; mutually exclusive with assignment_id",
    )
    overall_score = db.Column(db.Float, nullable=True)
    grade = db.Column(db.String(3), nullable=True)
    feedback = db.Column(db.Text, nullable=False, comment="Counselor-visible markdown, flags section removed")
    raw_response = db.Column(db.Text, nullable=True)
    used_retrieval = db.Column(db.Boolean, nullable=False, default=False)
    model = db.Column(db.String(100), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    assignment = db.relationship("Assignment", back_populates="evaluation")
    session = db.relationship("Session", back_populates="evaluation")

    @classmethod
    def for_parent(cls, parent: EvaluationParent, **fields) -> "Evaluation":
        if isinstance(parent, AssignmentEvaluation):
            return cls(assignment_id=parent.assignment_id, session_id=None, **fields)
        if isinstance(parent, SessionEvaluation):
            return cls(assignment_id=None, session_id=parent.session_id, **fields)
        raise TypeError(f"Unsupported evaluation parent: {parent!r}")

    @property
    def parent(self) -> EvaluationParent:
        if self.assignment_id is not None:
            return AssignmentEvaluation(self.assignment_id)
        return SessionEvaluation(self.session_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "assignment_id": self.assignment_id,
            "session_id": self.session_id,
            "parent_type": self.parent.kind,
            "overall_score": self.overall_score,
            "grade": self.grade,
            "feedback": self.feedback,
            "used_retrieval": self.used_retrieval,
            "model": self.model,
            "created_at": iso(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<Evaluation {self.id} parent={self.parent}>"


class SessionFlag(db.Model):
    __tablename__ = "session_flags"
    __table_args__ = (
        db.Index("ix_session_flags_session_source", "session_id", "source"),
        db.Index("ix_session_flags_status_severity", "status", "severity"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    session_id = db.Column(
        db.String(36),
        db.ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    category = db.Column(db.String(CATEGORY_MAX_LENGTH), nullable=False)
    severity = db.Column(db.String(10), nullable=False, default=SEVERITY_INFO, comment="info | warning | critical")
    source = db.Column(
        db.String(20),
        nullable=False,
        default=SOURCE_EVALUATION,
        comment="evaluation | analysis | user_feedback",
    )
    details = db.Column(db.Text, nullable=False)
    flag_metadata = db.Column("metadata", db.JSON, nullable=True)
    status = db.Column(db.String(20), nullable=False, default=FLAG_PENDING, comment="pending | reviewed | dismissed")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    session = db.relationship("Session")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "category": self.category,
            "severity": self.severity,
            "source": self.source,
            "details": self.details,
            "metadata": self.flag_metadata,
            "status": self.status,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }

    def __repr__(self) -> str:
        return f"<SessionFlag {self.id} {self.category}/{self.severity}>"


class DocumentReview(db.Model):
    """Policy review of the counselor's own call documentation against a graded session.

    One per session; the unique ``session_id`` decides concurrent uploads.
    """

    __tablename__ = "document_reviews"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    session_id = db.Column(
        db.String(36),
        db.ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    file_name = db.Column(db.String(255), nullable=False)
    transcript_accuracy = db.Column(db.Integer, nullable=False, comment="0-100")
    guidelines_compliance = db.Column(db.Integer, nullable=False, comment="0-100")
    overall_score = db.Column(db.Integer, nullable=False, comment="0-100")
    specific_gaps = db.Column(db.JSON, nullable=False, default=list)
    review_text = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "file_name": self.file_name,
            "transcript_accuracy": self.transcript_accuracy,
            "guidelines_compliance": self.guidelines_compliance,
            "overall_score": self.overall_score,
            "specific_gaps": list(self.specific_gaps or []),
            "review_text": self.review_text,
            "created_at": iso(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<DocumentReview {self.id} session={self.session_id}>"
