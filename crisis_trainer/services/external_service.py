"""
External partner API service.

Partners address counselors by their own user ids (``user_external_id``);
the first call for an unknown id provisions a counselor.  A partner can
browse the scenario catalogue, assign an existing scenario or send an
inline scenario, which is stored as a one-time scenario bound to the
new assignment.
"""

from __future__ import annotations

import logging

from crisis_trainer.core.exceptions import NotFoundError, TooEarlyError, ValidationError
from crisis_trainer.models import db, iso
from crisis_trainer.models.account import User
from crisis_trainer.models.evaluation import Evaluation
from crisis_trainer.models.scenario import Assignment, Scenario
from crisis_trainer.services import assignment_service, evaluation_service, scenario_service, user_service
from crisis_trainer.utils.helpers import get_or_404

logger = logging.getLogger(__name__)


def create_assignment(data: dict, partner: str) -> Assignment:
    """Assign a scenario to an external user.

    Body: {"user_external_id", "scenario_id"} or {"user_external_id",
    "scenario": {title, prompt, ...}}, plus optional due_date and
    supervisor_notes.
    """
    scenario_id = data.get("scenario_id")
    inline = data.get("scenario")
    if bool(scenario_id) == bool(inline):
        raise ValidationError(
            "Provide exactly one of 'scenario_id' or 'scenario'.",
            details={"scenario_id": "or scenario", "scenario": "or scenario_id"},
        )
    if inline is not None and not isinstance(inline, dict):
        raise ValidationError("Field 'scenario' must be an object.")

    user = user_service.get_or_create_external_user(data.get("user_external_id"))

    if inline:
        scenario = scenario_service.create_scenario({**inline, "is_one_time": True}, commit=False)
        db.session.flush()
        scenario_id = scenario.id

    try:
        assignment = assignment_service.create_from_payload(
            {**data, "scenario_id": scenario_id, "counselor_id": user.id}, assigned_by=None,
        )
    except Exception:
        db.session.rollback()
        raise
    logger.info(
        "Partner %s created assignment", partner,
        extra={"assignment_id": assignment.id, "event_type": "external_assignment_created"},
    )
    return assignment


def list_user_assignments(user_external_id: str) -> list[Assignment]:
    user = User.query.filter_by(external_id=user_external_id).first()
    if user is None:
        raise NotFoundError("User", user_external_id)
    return (
        Assignment.query.filter_by(counselor_id=user.id)
        .order_by(Assignment.created_at.desc())
        .all()
    )


def _session_of(assignment: Assignment):
    if assignment.session is None:
        raise TooEarlyError("No practice session has been started for this assignment", retry_after=30)
    return assignment.session


def evaluate_assignment(assignment_id: str, partner: str) -> Evaluation:
    assignment = get_or_404(Assignment, assignment_id)
    session = _session_of(assignment)
    logger.info("Partner %s requested evaluation", partner, extra={"assignment_id": assignment.id})
    return evaluation_service.evaluate_session(session.id)


def get_result(assignment_id: str) -> dict:
    assignment = get_or_404(Assignment, assignment_id)
    return {
        "assignment_id": assignment.id,
        "status": assignment.status,
        "session_id": assignment.session.id if assignment.session else None,
        "evaluation": assignment.evaluation.to_dict() if assignment.evaluation else None,
    }


def get_transcript(assignment_id: str) -> dict:
    assignment = get_or_404(Assignment, assignment_id)
    session = assignment.session
    if session is None:
        raise NotFoundError("Session", assignment_id)
    return session.to_dict(include_transcript=True)


# ── Scenario catalogue ───────────────────────────────────────────────────────

def _scenario_view(scenario: Scenario) -> dict:
    return {
        "scenario_id": scenario.id,
        "title": scenario.title,
        "description": scenario.description,
        "mode": scenario.mode,
        "category": scenario.category,
        "skills": list(scenario.skills or []),
        "is_one_time": scenario.is_one_time,
        "account_id": scenario.account_id,
        "account_name": scenario.account.name if scenario.account else None,
        "created_at": iso(scenario.created_at),
    }


def list_scenarios(category: str | None = None, mode: str | None = None) -> list[dict]:
    """Every scenario a partner could assign, one-time ones included, by title."""
    q = Scenario.query
    if category:
        q = q.filter(Scenario.category == category)
    if mode:
        q = q.filter(Scenario.mode == mode)
    return [_scenario_view(s) for s in q.order_by(Scenario.title).all()]


def get_scenario(scenario_id: str) -> dict:
    scenario = get_or_404(Scenario, scenario_id)
    data = _scenario_view(scenario)
    creator = db.session.get(User, scenario.created_by) if scenario.created_by else None
    data["created_by"] = creator.display_name if creator else None
    return data
