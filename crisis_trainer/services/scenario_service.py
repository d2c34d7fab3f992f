"""
Scenario service — CRUD, delete guard, complaint-driven generation and
file-derived evaluator context.

Business rules:
    - One-time scenarios never show up in list results.
    - A scenario with dependent assignments cannot be deleted; the error
      names the dependent count.  The RESTRICT foreign key is the backstop.
    - Evaluator context is free text or the text of an uploaded PDF/TXT;
      ``evaluator_context_file`` names the file when it came from an upload.
"""

from __future__ import annotations

import logging

from flask import current_app
from sqlalchemy.exc import IntegrityError

from crisis_trainer.ai.gateway import get_gateway
from crisis_trainer.ai.output_parser import parse_json_object
from crisis_trainer.ai.prompt_registry import get_registry
from crisis_trainer.core.exceptions import ConflictError, UpstreamError, ValidationError
from crisis_trainer.models import db
from crisis_trainer.models.account import Account
from crisis_trainer.models.scenario import VALID_CATEGORIES, VALID_MODES, Assignment, Scenario
from crisis_trainer.services.account_service import read_document_upload
from crisis_trainer.utils.helpers import get_or_404, require_str

logger = logging.getLogger(__name__)

MAX_PROMPT_LENGTH = 20000
MAX_EVALUATOR_CONTEXT_LENGTH = 30000
MAX_TEXT_UPLOAD_BYTES = 10 * 1024 * 1024
TEXT_UPLOAD_TYPES = (".pdf", ".txt")


def _clean_skills(value) -> list[str]:
    """Ordered, de-duplicated list of non-empty skill tags."""
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(s, str) for s in value):
        raise ValidationError("Field 'skills' must be a list of strings.", details={"skills": "list[str]"})
    seen = []
    for skill in value:
        tag = skill.strip()
        if tag and tag not in seen:
            seen.append(tag)
    return seen


def _apply_fields(scenario: Scenario, data: dict, partial: bool):
    if not partial or "title" in data:
        scenario.title = require_str(data, "title", max_length=255)
    if not partial or "prompt" in data:
        scenario.prompt = require_str(data, "prompt", max_length=MAX_PROMPT_LENGTH)
    if "description" in data:
        scenario.description = data.get("description") or None
    if "evaluator_context" in data:
        scenario.evaluator_context = data.get("evaluator_context") or None
        scenario.evaluator_context_file = None
    if not partial or "mode" in data:
        mode = data.get("mode") or "phone"
        if mode not in VALID_MODES:
            raise ValidationError(f"Invalid mode '{mode}'.", details={"mode": sorted(VALID_MODES)})
        scenario.mode = mode
    if "category" in data:
        category = data.get("category") or None
        if category is not None and category not in VALID_CATEGORIES:
            raise ValidationError(
                f"Invalid category '{category}'.", details={"category": sorted(VALID_CATEGORIES)},
            )
        scenario.category = category
    if "skills" in data:
        scenario.skills = _clean_skills(data.get("skills"))
    if "account_id" in data:
        account_id = data.get("account_id") or None
        if account_id:
            get_or_404(Account, account_id)
        scenario.account_id = account_id
    if "is_one_time" in data:
        scenario.is_one_time = bool(data.get("is_one_time"))


def list_scenarios(category: str | None = None, mode: str | None = None,
                   account_id: str | None = None) -> list[Scenario]:
    q = Scenario.query.filter(Scenario.is_one_time.is_(False))
    if category:
        q = q.filter(Scenario.category == category)
    if mode:
        q = q.filter(Scenario.mode == mode)
    if account_id:
        q = q.filter(Scenario.account_id == account_id)
    return q.order_by(Scenario.created_at.desc()).all()


def get_scenario(scenario_id: str) -> Scenario:
    return get_or_404(Scenario, scenario_id)


def create_scenario(data: dict, created_by: str | None = None, commit: bool = True) -> Scenario:
    scenario = Scenario(created_by=created_by, skills=[], is_one_time=False)
    _apply_fields(scenario, data, partial=False)
    db.session.add(scenario)
    if commit:
        db.session.commit()
        logger.info("Scenario created: %s", scenario.title, extra={"event_type": "scenario_created"})
    return scenario


def update_scenario(scenario_id: str, data: dict) -> Scenario:
    scenario = get_or_404(Scenario, scenario_id)
    _apply_fields(scenario, data, partial=True)
    db.session.commit()
    return scenario


def delete_scenario(scenario_id: str) -> None:
    """Delete a scenario unless assignments still reference it.

    Raises:
        ConflictError: with ``assignment_count`` in details.
    """
    scenario = get_or_404(Scenario, scenario_id)
    count = Assignment.query.filter_by(scenario_id=scenario.id).count()
    if count:
        raise ConflictError(
            f"Scenario has {count} assignment(s) and cannot be deleted",
            details={"assignment_count": count},
        )

    db.session.delete(scenario)
    try:
        db.session.commit()
    except IntegrityError:
        # An assignment was created between the count and the delete
        db.session.rollback()
        count = Assignment.query.filter_by(scenario_id=scenario_id).count()
        raise ConflictError(
            f"Scenario has {count} assignment(s) and cannot be deleted",
            details={"assignment_count": count},
        )
    logger.info("Scenario %s deleted", scenario_id, extra={"event_type": "scenario_deleted"})


def generate_from_complaint(complaint: str, created_by: str | None = None,
                            account_id: str | None = None, is_one_time: bool = False) -> Scenario:
    """Ask the LLM to turn a complaint into a remediation scenario and store it.

    Raises:
        UpstreamError: the model failed or returned something unusable.
    """
    messages = get_registry().render("scenario_generator", complaint=complaint)
    result = get_gateway().chat(
        messages,
        model=current_app.config["SIMULATOR_MODEL"],
        purpose="scenario_generation",
        temperature=0.7,
    )
    try:
        generated = parse_json_object(result["content"])
    except ValueError as e:
        logger.warning("Scenario generation returned unusable output: %s", e)
        raise UpstreamError("Scenario generator returned unusable output")

    category = generated.get("category")
    data = {
        "title": generated.get("title"),
        "description": generated.get("description"),
        "prompt": generated.get("prompt"),
        "skills": generated.get("skills") or [],
        "category": category if category in VALID_CATEGORIES else "remediation",
        "mode": "phone",
        "account_id": account_id,
        "is_one_time": is_one_time,
    }
    try:
        return create_scenario(data, created_by=created_by)
    except ValidationError as e:
        db.session.rollback()
        logger.warning("Generated scenario failed validation: %s", e)
        raise UpstreamError("Scenario generator returned an incomplete scenario")


# ── Document text and evaluator context ──────────────────────────────────────


def extract_text(file_storage) -> dict:
    """Text of an uploaded PDF or TXT file, for pasting into a complaint or rubric."""
    filename, text = read_document_upload(file_storage, allowed=TEXT_UPLOAD_TYPES, max_bytes=MAX_TEXT_UPLOAD_BYTES)
    return {"text": text, "file_name": filename}


def attach_evaluator_context(scenario_id: str, file_storage) -> Scenario:
    """Replace a scenario's evaluator context with the text of an uploaded file."""
    scenario = get_or_404(Scenario, scenario_id)
    filename, text = read_document_upload(file_storage, allowed=TEXT_UPLOAD_TYPES, max_bytes=MAX_TEXT_UPLOAD_BYTES)
    scenario.evaluator_context = text[:MAX_EVALUATOR_CONTEXT_LENGTH]
    scenario.evaluator_context_file = filename
    db.session.commit()
    logger.info(
        "Evaluator context for scenario %s loaded from %s (%d chars)", scenario.id, filename, len(text),
        extra={"event_type": "evaluator_context_uploaded"},
    )
    return scenario


def get_evaluator_context(scenario_id: str) -> dict:
    scenario = get_or_404(Scenario, scenario_id)
    return {
        "scenario_id": scenario.id,
        "content": scenario.evaluator_context,
        "file_name": scenario.evaluator_context_file,
        "source": (
            None if not scenario.evaluator_context
            else "file" if scenario.evaluator_context_file else "text"
        ),
    }
