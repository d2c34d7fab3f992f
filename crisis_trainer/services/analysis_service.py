"""
Secondary session analysis.

A cheaper model re-reads the transcript for trainee misuse and for the
simulated caller breaking character.  Runs fire-and-forget after every
evaluation and can be requested manually.

Idempotent per session: once any ``source = analysis`` flag exists the
stored flags are returned and no model call is made.  A run with no
findings writes a single ``analysis_clean`` info flag so the next run still
sees the session as analysed.
"""

from __future__ import annotations

import logging

from flask import current_app

from crisis_trainer.ai.gateway import get_gateway
from crisis_trainer.ai.output_parser import parse_json_object
from crisis_trainer.ai.prompt_registry import get_registry
from crisis_trainer.auth import ensure_can_access
from crisis_trainer.core.exceptions import UpstreamError
from crisis_trainer.middleware.rate_limiter import session_limits
from crisis_trainer.models import db
from crisis_trainer.models.account import User
from crisis_trainer.models.evaluation import (
    CATEGORY_ANALYSIS_CLEAN,
    CATEGORY_MAX_LENGTH,
    SEVERITY_INFO,
    SOURCE_ANALYSIS,
    VALID_SEVERITIES,
    SessionFlag,
)
from crisis_trainer.models.session import Session
from crisis_trainer.services.session_service import format_transcript
from crisis_trainer.utils.helpers import get_or_404

logger = logging.getLogger(__name__)

MIN_TURNS_FOR_ANALYSIS = 3


def _finding_to_flag(session_id: str, finding, consistency_score) -> SessionFlag | None:
    if not isinstance(finding, dict):
        return None
    category = finding.get("category")
    severity = str(finding.get("severity", "")).lower()
    summary = finding.get("summary")
    if not isinstance(category, str) or not category.strip():
        return None
    if severity not in VALID_SEVERITIES or not isinstance(summary, str) or not summary.strip():
        return None
    return SessionFlag(
        session_id=session_id,
        category=category.strip().lower().replace(" ", "_")[:CATEGORY_MAX_LENGTH],
        severity=severity,
        source=SOURCE_ANALYSIS,
        details=summary.strip(),
        flag_metadata={"evidence": finding.get("evidence"), "consistency_score": consistency_score},
    )


def analyze_session(session_id: str) -> list[SessionFlag]:
    """Run the analysis pass once per session and return its flags."""
    session = get_or_404(Session, session_id)

    existing = SessionFlag.query.filter_by(session_id=session.id, source=SOURCE_ANALYSIS).all()
    if existing:
        logger.info("Session already analysed", extra={"session_id": session.id})
        return existing

    turns = session.current_turns()
    if len(turns) < MIN_TURNS_FOR_ANALYSIS:
        logger.info("Skipping analysis: %d turns", len(turns), extra={"session_id": session.id})
        return []

    scenario = session.assignment.scenario if session.assignment is not None else session.scenario
    messages = get_registry().render(
        "session_analysis",
        scenario_prompt=scenario.prompt if scenario else "Free practice with no scenario.",
        transcript=format_transcript(turns),
    )
    result = get_gateway().chat(
        messages,
        model=current_app.config["ANALYSIS_MODEL"],
        purpose="analysis",
        temperature=0,
    )
    try:
        data = parse_json_object(result["content"])
    except ValueError as e:
        logger.warning("Analysis output unusable: %s", e, extra={"session_id": session.id})
        raise UpstreamError("Analysis returned unusable output")

    consistency_score = data.get("consistency_score")
    findings = data.get("findings") or []
    if not isinstance(findings, list):
        findings = []

    flags = []
    for finding in findings:
        flag = _finding_to_flag(session.id, finding, consistency_score)
        if flag is None:
            logger.warning("Dropping malformed analysis finding: %r", finding, extra={"session_id": session.id})
            continue
        flags.append(flag)

    if not flags:
        flags.append(SessionFlag(
            session_id=session.id,
            category=CATEGORY_ANALYSIS_CLEAN,
            severity=SEVERITY_INFO,
            source=SOURCE_ANALYSIS,
            details=str(data.get("summary") or "No issues found."),
            flag_metadata={"consistency_score": consistency_score},
        ))

    db.session.add_all(flags)
    db.session.commit()
    logger.info(
        "Session analysed: %d flag(s)", len(flags),
        extra={"session_id": session.id, "event_type": "session_analysed"},
    )
    return flags


def request_analysis(session_id: str, user: User) -> list[SessionFlag]:
    """Manual trigger: access check and per-session window before the pass."""
    session = get_or_404(Session, session_id)
    ensure_can_access(user, session.owner_id, "analyse this session")
    session_limits.check("analysis", session.id, current_app.config["ANALYSIS_RATE_LIMIT"])
    return analyze_session(session.id)
