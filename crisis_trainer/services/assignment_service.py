"""
Assignment service — single and bulk assignment, status transitions, delete guard.

Duplicate prevention:
    At most one non-completed assignment per (counselor, scenario).  The
    service pre-checks, and the partial unique index
    ``uq_assignment_active_pair`` rejects whatever slips through a race.
    Bulk assignment commits pair by pair, so one racing duplicate is
    reported as skipped instead of aborting the batch.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from crisis_trainer.core.exceptions import ConflictError, ValidationError
from crisis_trainer.models import db, utcnow
from crisis_trainer.models.account import User
from crisis_trainer.models.evaluation import Evaluation
from crisis_trainer.models.scenario import (
    ASSIGNMENT_COMPLETED,
    ASSIGNMENT_IN_PROGRESS,
    VALID_ASSIGNMENT_STATUSES,
    Assignment,
    Scenario,
)
from crisis_trainer.utils.helpers import get_or_404, is_uuid, parse_date

logger = logging.getLogger(__name__)

MAX_BULK_PAIRS = 500


def _active_assignment(counselor_id: str, scenario_id: str) -> Assignment | None:
    return (
        Assignment.query
        .filter(
            Assignment.counselor_id == counselor_id,
            Assignment.scenario_id == scenario_id,
            Assignment.status != ASSIGNMENT_COMPLETED,
        )
        .first()
    )


def _parse_due_date(data: dict):
    raw = data.get("due_date")
    if raw in (None, ""):
        return None
    due = parse_date(raw)
    if due is None:
        raise ValidationError("Field 'due_date' must be an ISO date.", details={"due_date": "YYYY-MM-DD"})
    return due


def _id_list(data: dict, field: str) -> list[str]:
    value = data.get(field)
    if not isinstance(value, list) or not value or not all(isinstance(v, str) for v in value):
        raise ValidationError(f"Field '{field}' must be a non-empty list of ids.", details={field: "required"})
    ordered = []
    for v in value:
        if v not in ordered:
            ordered.append(v)
    return ordered


def list_assignments(user: User, counselor_id: str | None = None, status: str | None = None) -> list[Assignment]:
    """Supervisors see every assignment; counselors only their own."""
    q = Assignment.query
    if not user.is_supervisor:
        q = q.filter(Assignment.counselor_id == user.id)
    elif counselor_id:
        q = q.filter(Assignment.counselor_id == counselor_id)
    if status:
        if status not in VALID_ASSIGNMENT_STATUSES:
            raise ValidationError(f"Invalid status '{status}'.", details={"status": sorted(VALID_ASSIGNMENT_STATUSES)})
        q = q.filter(Assignment.status == status)
    return q.order_by(Assignment.created_at.desc()).all()


def get_assignment(assignment_id: str) -> Assignment:
    return get_or_404(Assignment, assignment_id)


def create_assignment(
    scenario_id: str,
    counselor_id: str,
    assigned_by: str | None = None,
    due_date=None,
    supervisor_notes: str | None = None,
) -> Assignment:
    """Create one assignment.

    Raises:
        NotFoundError: unknown scenario or counselor.
        ConflictError: an active assignment already exists for the pair
                       (``existing_id`` points at it).
    """
    scenario = get_or_404(Scenario, scenario_id)
    counselor = get_or_404(User, counselor_id, label="Counselor")

    existing = _active_assignment(counselor.id, scenario.id)
    if existing is not None:
        raise ConflictError("Counselor already has an active assignment for this scenario",
                            existing_id=existing.id)

    assignment = Assignment(
        scenario_id=scenario.id,
        counselor_id=counselor.id,
        assigned_by=assigned_by,
        due_date=due_date,
        supervisor_notes=supervisor_notes,
    )
    db.session.add(assignment)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        winner = _active_assignment(counselor.id, scenario.id)
        raise ConflictError("Counselor already has an active assignment for this scenario",
                            existing_id=winner.id if winner else None)

    logger.info(
        "Assignment created", extra={"assignment_id": assignment.id, "event_type": "assignment_created"},
    )
    return assignment


def create_from_payload(data: dict, assigned_by: str | None) -> Assignment:
    scenario_id = data.get("scenario_id")
    counselor_id = data.get("counselor_id")
    if not scenario_id or not counselor_id:
        raise ValidationError(
            "Fields 'scenario_id' and 'counselor_id' are required.",
            details={"scenario_id": "required", "counselor_id": "required"},
        )
    return create_assignment(
        scenario_id,
        counselor_id,
        assigned_by=assigned_by,
        due_date=_parse_due_date(data),
        supervisor_notes=data.get("supervisor_notes") or None,
    )


def bulk_assign(data: dict, assigned_by: str | None) -> dict:
    """Assign every scenario to every counselor, skipping active duplicates.

    Returns:
        {"created": int, "skipped": int,
         "skipped_pairs": [{"counselor_id", "scenario_id", "reason"}],
         "assignments": [assignment dicts]}
    """
    counselor_ids = _id_list(data, "counselor_ids")
    scenario_ids = _id_list(data, "scenario_ids")
    if len(counselor_ids) * len(scenario_ids) > MAX_BULK_PAIRS:
        raise ValidationError(f"Bulk assignment is limited to {MAX_BULK_PAIRS} pairs.")
    due_date = _parse_due_date(data)
    notes = data.get("supervisor_notes") or None

    known_counselors = {
        u.id for u in User.query.filter(User.id.in_([c for c in counselor_ids if is_uuid(c)])).all()
    }
    known_scenarios = {
        s.id for s in Scenario.query.filter(Scenario.id.in_([s for s in scenario_ids if is_uuid(s)])).all()
    }

    created: list[Assignment] = []
    skipped_pairs: list[dict] = []

    for counselor_id in counselor_ids:
        for scenario_id in scenario_ids:
            pair = {"counselor_id": counselor_id, "scenario_id": scenario_id}
            if counselor_id not in known_counselors:
                skipped_pairs.append({**pair, "reason": "counselor_not_found"})
                continue
            if scenario_id not in known_scenarios:
                skipped_pairs.append({**pair, "reason": "scenario_not_found"})
                continue
            if _active_assignment(counselor_id, scenario_id) is not None:
                skipped_pairs.append({**pair, "reason": "active_assignment_exists"})
                continue

            assignment = Assignment(
                scenario_id=scenario_id,
                counselor_id=counselor_id,
                assigned_by=assigned_by,
                due_date=due_date,
                supervisor_notes=notes,
            )
            db.session.add(assignment)
            try:
                db.session.commit()
            except IntegrityError:
                db.session.rollback()
                skipped_pairs.append({**pair, "reason": "active_assignment_exists"})
                continue
            created.append(assignment)

    logger.info(
        "Bulk assignment: %d created, %d skipped", len(created), len(skipped_pairs),
        extra={"event_type": "bulk_assignment"},
    )
    return {
        "created": len(created),
        "skipped": len(skipped_pairs),
        "skipped_pairs": skipped_pairs,
        "assignments": [a.to_dict() for a in created],
    }


def update_assignment(assignment_id: str, data: dict) -> Assignment:
    """Update status (forward transitions only), due date or notes."""
    assignment = get_or_404(Assignment, assignment_id)

    if "status" in data and data["status"] != assignment.status:
        new_status = data["status"]
        if new_status not in VALID_ASSIGNMENT_STATUSES:
            raise ValidationError(
                f"Invalid status '{new_status}'.", details={"status": sorted(VALID_ASSIGNMENT_STATUSES)},
            )
        if not assignment.can_transition(new_status):
            raise ConflictError(f"Cannot move assignment from {assignment.status} to {new_status}")
        mark_status(assignment, new_status)

    if "due_date" in data:
        assignment.due_date = _parse_due_date(data)
    if "supervisor_notes" in data:
        assignment.supervisor_notes = data.get("supervisor_notes") or None

    db.session.commit()
    return assignment


def mark_status(assignment: Assignment, status: str) -> None:
    """Apply a status change and its timestamp without committing."""
    assignment.status = status
    if status == ASSIGNMENT_IN_PROGRESS and assignment.started_at is None:
        assignment.started_at = utcnow()
    elif status == ASSIGNMENT_COMPLETED:
        assignment.completed_at = utcnow()


def delete_assignment(assignment_id: str) -> None:
    """Delete an assignment unless an evaluation references it.

    Raises:
        ConflictError: with ``evaluation_count`` in details.
    """
    assignment = get_or_404(Assignment, assignment_id)
    count = Evaluation.query.filter_by(assignment_id=assignment.id).count()
    if count:
        raise ConflictError(
            f"Assignment has {count} evaluation(s) and cannot be deleted",
            details={"evaluation_count": count},
        )

    db.session.delete(assignment)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("Assignment gained an evaluation and cannot be deleted",
                            details={"evaluation_count": 1})
    logger.info("Assignment %s deleted", assignment_id, extra={"event_type": "assignment_deleted"})
