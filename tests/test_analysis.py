"""
Tests: Secondary session analysis.

Coverage:
    - Short transcripts are skipped
    - A clean run writes one analysis_clean flag
    - Re-running returns stored flags without calling the model
    - Malformed findings are dropped, valid ones stored with evidence
    - Unparseable model output → UPSTREAM_FAILURE
    - Manual trigger: ownership and per-session window
"""

import json
from unittest.mock import patch

import pytest

from crisis_trainer.ai.gateway import LocalStubProvider
from crisis_trainer.core.exceptions import UpstreamError
from crisis_trainer.models.evaluation import SOURCE_ANALYSIS, SessionFlag
from crisis_trainer.services import analysis_service


def _reply(payload):
    content = payload if isinstance(payload, str) else json.dumps(payload)
    return {"content": content, "prompt_tokens": 1, "completion_tokens": 1, "model": "local-stub"}


def _analysis_flags(sess):
    return SessionFlag.query.filter_by(session_id=sess.id, source=SOURCE_ANALYSIS).all()


def test_short_transcript_is_skipped(counselor, make_session, add_turns):
    sess = make_session(counselor)
    add_turns(sess, 2)

    with patch.object(LocalStubProvider, "chat") as chat:
        assert analysis_service.analyze_session(sess.id) == []

    chat.assert_not_called()
    assert _analysis_flags(sess) == []


def test_clean_run_writes_marker_flag(counselor, make_session, add_turns):
    sess = make_session(counselor)
    add_turns(sess, 4)

    flags = analysis_service.analyze_session(sess.id)

    assert len(flags) == 1
    assert flags[0].category == "analysis_clean"
    assert flags[0].severity == "info"
    assert flags[0].flag_metadata == {"consistency_score": 90}


def test_rerun_is_idempotent(counselor, make_session, add_turns):
    sess = make_session(counselor)
    add_turns(sess, 4)
    first = analysis_service.analyze_session(sess.id)

    with patch.object(LocalStubProvider, "chat") as chat:
        second = analysis_service.analyze_session(sess.id)

    chat.assert_not_called()
    assert [f.id for f in second] == [f.id for f in first]
    assert len(_analysis_flags(sess)) == 1


def test_findings_become_flags(counselor, make_session, add_turns):
    sess = make_session(counselor)
    add_turns(sess, 4)
    payload = {
        "consistency_score": 40,
        "findings": [
            {"category": "Character Break", "severity": "warning",
             "summary": "Caller said it was an AI", "evidence": "turn 3"},
            {"category": "trainee_misuse", "severity": "CRITICAL",
             "summary": "Counselor asked the caller to write code"},
            {"category": "no_severity", "summary": "missing severity"},
            {"severity": "info", "summary": "missing category"},
            "not an object",
        ],
    }

    with patch.object(LocalStubProvider, "chat", return_value=_reply(payload)):
        flags = analysis_service.analyze_session(sess.id)

    assert sorted((f.category, f.severity) for f in flags) == [
        ("character_break", "warning"),
        ("trainee_misuse", "critical"),
    ]
    character = next(f for f in flags if f.category == "character_break")
    assert character.flag_metadata == {"evidence": "turn 3", "consistency_score": 40}


def test_fenced_json_is_accepted(counselor, make_session, add_turns):
    sess = make_session(counselor)
    add_turns(sess, 3)
    fenced = "```json\n" + json.dumps({"findings": [], "summary": "All good"}) + "\n```"

    with patch.object(LocalStubProvider, "chat", return_value=_reply(fenced)):
        flags = analysis_service.analyze_session(sess.id)

    assert flags[0].details == "All good"


def test_unparseable_output_raises(counselor, make_session, add_turns):
    sess = make_session(counselor)
    add_turns(sess, 3)

    with patch.object(LocalStubProvider, "chat", return_value=_reply("I could not analyse this.")):
        with pytest.raises(UpstreamError):
            analysis_service.analyze_session(sess.id)

    assert _analysis_flags(sess) == []


# ── Manual trigger ───────────────────────────────────────────────────────


def test_manual_analysis_endpoint(client, counselor, other_counselor, make_session, add_turns):
    sess = make_session(counselor)
    add_turns(sess, 4)

    denied = client.post(f"/api/v1/sessions/{sess.id}/analyze", headers={"X-User-Id": other_counselor.id})
    res = client.post(f"/api/v1/sessions/{sess.id}/analyze", headers={"X-User-Id": counselor.id})

    assert denied.status_code == 403
    assert res.status_code == 200
    assert [f["category"] for f in res.get_json()] == ["analysis_clean"]


def test_manual_analysis_rate_limited(client, counselor, make_session, add_turns):
    sess = make_session(counselor)
    add_turns(sess, 4)
    headers = {"X-User-Id": counselor.id}

    statuses = [client.post(f"/api/v1/sessions/{sess.id}/analyze", headers=headers).status_code
                for _ in range(6)]

    assert statuses == [200] * 5 + [429]
