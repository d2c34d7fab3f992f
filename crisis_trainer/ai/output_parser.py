"""
Parsers for structured LLM output.

Evaluator output is markdown with ``## Score:``, ``## Grade:`` and a
``## Flags`` section.  The flags section is removed from the feedback the
counselor sees and parsed into flag dicts.  Malformed flag lines are dropped
with a warning; the score and feedback are still returned.

Analysis and scenario-generation output is JSON, optionally wrapped in a
```json fence.
"""

import json
import logging
import re
from dataclasses import dataclass, field

from crisis_trainer.models.evaluation import CATEGORY_MAX_LENGTH, VALID_SEVERITIES

logger = logging.getLogger(__name__)

_GRADE_RE = re.compile(r"^#{1,3}\s*Grade:\s*([A-F][+-]?)", re.IGNORECASE | re.MULTILINE)
_SCORE_RE = re.compile(r"^#{1,3}\s*(?:Overall\s+)?Score:\s*(\d{1,3}(?:\.\d+)?)", re.IGNORECASE | re.MULTILINE)
_FLAGS_HEADING_RE = re.compile(r"^##\s*Flags\s*:?\s*$", re.IGNORECASE | re.MULTILINE)
_NEXT_HEADING_RE = re.compile(r"^##\s", re.MULTILINE)
_FLAG_LINE_RE = re.compile(r"^[-*]\s*\[(\w+)\]\s*([A-Za-z][\w\s-]*?)\s*:\s*(.+)$")
_NO_FLAGS = {"none", "none.", "n/a", "no flags", "no concerns"}
_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)

# Used when the model gives a grade but no numeric score
GRADE_SCORES = {"A": 95.0, "B": 85.0, "C": 75.0, "D": 65.0, "F": 50.0}


@dataclass
class ParsedEvaluation:
    feedback: str
    grade: str | None = None
    score: float | None = None
    flags: list[dict] = field(default_factory=list)


def _split_flags_section(content: str) -> tuple[str, str | None]:
    """Return (content without the flags section, flags section body or None)."""
    heading = _FLAGS_HEADING_RE.search(content)
    if heading is None:
        return content, None
    rest = content[heading.end():]
    next_heading = _NEXT_HEADING_RE.search(rest)
    body = rest[:next_heading.start()] if next_heading else rest
    after = rest[next_heading.start():] if next_heading else ""
    visible = (content[:heading.start()].rstrip() + "\n\n" + after.lstrip()).strip()
    return visible, body


def _parse_flag_lines(body: str) -> list[dict]:
    flags = []
    for raw in body.splitlines():
        line = raw.strip()
        if not line or line.lower().lstrip("-* ").strip() in _NO_FLAGS:
            continue
        match = _FLAG_LINE_RE.match(line)
        if match is None:
            logger.warning("Dropping malformed evaluator flag line: %r", line[:200])
            continue
        severity = match.group(1).lower()
        if severity not in VALID_SEVERITIES:
            logger.warning("Dropping evaluator flag with unknown severity %r", severity)
            continue
        category = re.sub(r"[\s-]+", "_", match.group(2).strip().lower())
        if len(category) > CATEGORY_MAX_LENGTH:
            logger.warning("Dropping evaluator flag with over-long category (%d chars)", len(category))
            continue
        flags.append({"category": category, "severity": severity, "details": match.group(3).strip()})
    return flags


def parse_evaluation(content: str) -> ParsedEvaluation:
    """Split evaluator markdown into feedback, grade, score and flags.

    Raises:
        ValueError: content is empty once the flags section is removed.
    """
    visible, flags_body = _split_flags_section(content or "")
    if not visible.strip():
        raise ValueError("Evaluator returned no feedback")

    grade_match = _GRADE_RE.search(visible)
    grade = grade_match.group(1).upper() if grade_match else None

    score = None
    score_match = _SCORE_RE.search(visible)
    if score_match:
        score = min(float(score_match.group(1)), 100.0)
    elif grade:
        score = GRADE_SCORES.get(grade[0])

    flags = _parse_flag_lines(flags_body) if flags_body else []
    return ParsedEvaluation(feedback=visible, grade=grade, score=score, flags=flags)


def parse_json_object(content: str) -> dict:
    """Parse a JSON object from model output.

    Raises:
        ValueError: not valid JSON or not an object.
    """
    text = _FENCE_RE.sub("", (content or "").strip())
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"Model output is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("Model output is not a JSON object")
    return data
