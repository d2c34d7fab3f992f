"""
Scenarios and assignments.

Business rules:
- A Scenario cannot be deleted while any Assignment references it
  (``ondelete='RESTRICT'`` on the FK, plus a service-level count check).
- One-time scenarios exist for exactly one Assignment and are hidden from
  list endpoints.
- At most one non-completed Assignment per (counselor, scenario) pair.
  Enforced by a partial unique index so concurrent bulk-assign calls cannot
  both insert.
"""

from sqlalchemy import text

from crisis_trainer.models import db, iso, new_id, utcnow

# ── Constants ─────────────────────────────────────────────────────────────────

VALID_MODES = frozenset({"phone", "chat"})
VALID_CATEGORIES = frozenset({"onboarding", "remediation", "assessment"})

ASSIGNMENT_PENDING = "pending"
ASSIGNMENT_IN_PROGRESS = "in_progress"
ASSIGNMENT_COMPLETED = "completed"
VALID_ASSIGNMENT_STATUSES = frozenset({
    ASSIGNMENT_PENDING,
    ASSIGNMENT_IN_PROGRESS,
    ASSIGNMENT_COMPLETED,
})

# Allowed forward transitions; completed is terminal.
ASSIGNMENT_TRANSITIONS = {
    ASSIGNMENT_PENDING: {ASSIGNMENT_IN_PROGRESS, ASSIGNMENT_COMPLETED},
    ASSIGNMENT_IN_PROGRESS: {ASSIGNMENT_COMPLETED},
    ASSIGNMENT_COMPLETED: set(),
}


class Scenario(db.Model):
    __tablename__ = "scenarios"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    account_id = db.Column(
        db.String(36),
        db.ForeignKey("accounts.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    created_by = db.Column(
        db.String(36),
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    prompt = db.Column(db.Text, nullable=False, comment="Caller persona / roleplay instructions")
    evaluator_context = db.Column(
        db.Text,
        nullable=True,
        comment="Extra grading rubric, free text or extracted from an uploaded file",
    )
    evaluator_context_file = db.Column(
        db.String(255),
        nullable=True,
        comment="Source file name when evaluator_context was extracted from an upload",
    )
    mode = db.Column(db.String(10), nullable=False, default="phone", comment="phone | chat")
    category = db.Column(db.String(20), nullable=True, comment="onboarding | remediation | assessment")
    skills = db.Column(db.JSON, nullable=False, default=list, comment="Ordered list of skill tags")
    is_one_time = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    account = db.relationship("Account", lazy="joined")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "created_by": self.created_by,
            "title": self.title,
            "description": self.description,
            "prompt": self.prompt,
            "evaluator_context": self.evaluator_context,
            "evaluator_context_file": self.evaluator_context_file,
            "mode": self.mode,
            "category": self.category,
            "skills": list(self.skills or []),
            "is_one_time": self.is_one_time,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }

    def __repr__(self) -> str:
        return f"<Scenario {self.id} {self.title!r}>"


class Assignment(db.Model):
    __tablename__ = "assignments"
    __table_args__ = (
        db.Index(
            "uq_assignment_active_pair",
            "counselor_id",
            "scenario_id",
            unique=True,
            sqlite_where=text("status != 'completed'"),
            postgresql_where=text("status != 'completed'"),
        ),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    scenario_id = db.Column(
        db.String(36),
        db.ForeignKey("scenarios.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    counselor_id = db.Column(
        db.String(36),
        db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    assigned_by = db.Column(
        db.String(36),
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    status = db.Column(
        db.String(20),
        nullable=False,
        default=ASSIGNMENT_PENDING,
        comment="pending | in_progress | completed",
    )
    due_date = db.Column(db.Date, nullable=True)
    supervisor_notes = db.Column(db.Text, nullable=True)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    scenario = db.relationship("Scenario", lazy="joined")
    counselor = db.relationship("User", foreign_keys=[counselor_id])
    session = db.relationship("Session", back_populates="assignment", uselist=False)
    evaluation = db.relationship("Evaluation", back_populates="assignment", uselist=False)

    def can_transition(self, new_status: str) -> bool:
        return new_status in ASSIGNMENT_TRANSITIONS.get(self.status, set())

    def to_dict(self, include_scenario: bool = False) -> dict:
        data = {
            "id": self.id,
            "scenario_id": self.scenario_id,
            "counselor_id": self.counselor_id,
            "assigned_by": self.assigned_by,
            "status": self.status,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "supervisor_notes": self.supervisor_notes,
            "session_id": self.session.id if self.session else None,
            "evaluation_id": self.evaluation.id if self.evaluation else None,
            "started_at": iso(self.started_at),
            "completed_at": iso(self.completed_at),
            "created_at": iso(self.created_at),
        }
        if include_scenario and self.scenario is not None:
            data["scenario"] = self.scenario.to_dict()
        return data

    def __repr__(self) -> str:
        return f"<Assignment {self.id} {self.status}>"
