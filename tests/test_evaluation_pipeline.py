"""
Tests: Evaluation pipeline.

Coverage:
    - Assignment sessions are graded against the assignment, free practice
      against the session
    - Evaluation ends the session and completes the assignment
    - Second evaluation → CONFLICT with existing_id
    - Fewer than 2 turns → TOO_EARLY with Retry-After
    - Rolling-hour window → RATE_LIMITED on the N+1th trigger
    - LLM failure → UPSTREAM_FAILURE, nothing stored
    - ``## Flags`` section parsed into flags and hidden from feedback
    - Lost insert race → CONFLICT carrying the winner's id
    - Background analysis failures never surface
    - Evaluation by id with its scenario (owner and supervisors only)
"""

from unittest.mock import patch

from crisis_trainer.ai.gateway import LocalStubProvider
from crisis_trainer.models import db as _db
from crisis_trainer.models.evaluation import SOURCE_EVALUATION, Evaluation, SessionFlag
from crisis_trainer.models.scenario import ASSIGNMENT_COMPLETED, Assignment
from crisis_trainer.models.session import SESSION_ENDED, Session
from crisis_trainer.services import evaluation_service

FLAGGED_FEEDBACK = (
    "## Overall Assessment\n"
    "The counselor never asked about safety.\n\n"
    "## Score: 58\n"
    "## Grade: D\n\n"
    "## Flags\n"
    "- [critical] missed risk assessment: caller mentioned pills and it was not explored\n"
    "- [warning] Rushed Closing: call ended abruptly\n"
    "- this line is not a flag\n"
    "- [urgent] unknown severity: dropped\n\n"
    "## Next Steps\n"
    "Practice the safety question.\n"
)


def _auth(user):
    return {"X-User-Id": user.id}


def _evaluate(client, sess, user):
    return client.post(f"/api/v1/sessions/{sess.id}/evaluate", headers=_auth(user))


def _stub_reply(content):
    return {"content": content, "prompt_tokens": 10, "completion_tokens": 10, "model": "local-stub"}


# ── Happy path ───────────────────────────────────────────────────────────


def test_assignment_session_evaluation(client, counselor, scenario, make_assignment, make_session, add_turns):
    assignment = make_assignment(scenario, counselor)
    sess = make_session(counselor, assignment=assignment)
    add_turns(sess, 2)

    res = _evaluate(client, sess, counselor)

    assert res.status_code == 201
    body = res.get_json()
    assert body["parent_type"] == "assignment"
    assert body["assignment_id"] == assignment.id
    assert body["session_id"] is None
    assert body["grade"] == "B"
    assert body["overall_score"] == 82.0
    assert body["used_retrieval"] is False
    assert "## Flags" not in body["feedback"]

    assert _db.session.get(Assignment, assignment.id).status == ASSIGNMENT_COMPLETED
    stored = _db.session.get(Session, sess.id)
    assert stored.status == SESSION_ENDED
    assert stored.ended_at is not None


def test_free_practice_evaluation_uses_session_parent(client, counselor, scenario, make_session, add_turns):
    sess = make_session(counselor, scenario=scenario)
    add_turns(sess, 2)

    res = _evaluate(client, sess, counselor)

    assert res.status_code == 201
    body = res.get_json()
    assert body["parent_type"] == "session"
    assert body["session_id"] == sess.id
    assert body["assignment_id"] is None


def test_stored_evaluation_is_readable(client, counselor, make_session, add_turns):
    sess = make_session(counselor)
    add_turns(sess, 2)

    assert client.get(f"/api/v1/sessions/{sess.id}/evaluation", headers=_auth(counselor)).status_code == 404
    created = _evaluate(client, sess, counselor).get_json()

    res = client.get(f"/api/v1/sessions/{sess.id}/evaluation", headers=_auth(counselor))
    assert res.status_code == 200
    assert res.get_json()["id"] == created["id"]


# ── Idempotency / transient errors ───────────────────────────────────────


def test_second_evaluation_conflicts_with_existing_id(client, counselor, make_session, add_turns):
    sess = make_session(counselor)
    add_turns(sess, 2)
    first = _evaluate(client, sess, counselor)

    second = _evaluate(client, sess, counselor)

    assert second.status_code == 409
    body = second.get_json()
    assert body["code"] == "CONFLICT"
    assert body["details"]["existing_id"] == first.get_json()["id"]
    assert Evaluation.query.count() == 1


def test_too_early_when_transcript_not_persisted(client, counselor, make_session, add_turns):
    sess = make_session(counselor)
    add_turns(sess, 1)

    res = _evaluate(client, sess, counselor)

    assert res.status_code == 425
    assert res.headers["Retry-After"]
    body = res.get_json()
    assert body["code"] == "TOO_EARLY"
    assert body["details"]["retryable"] is True
    assert body["details"]["turns"] == 1
    assert Evaluation.query.count() == 0


def test_too_early_counts_only_current_attempt(client, counselor, make_session, add_turns):
    sess = make_session(counselor, current_attempt=2)
    add_turns(sess, 4, attempt=1)

    assert _evaluate(client, sess, counselor).status_code == 425


def test_rate_limit_after_five_triggers(client, counselor, make_session):
    sess = make_session(counselor)

    statuses = [_evaluate(client, sess, counselor).status_code for _ in range(6)]

    assert statuses[:5] == [425] * 5
    assert statuses[5] == 429
    last = _evaluate(client, sess, counselor)
    assert last.get_json()["code"] == "RATE_LIMITED"
    assert int(last.headers["Retry-After"]) > 0


def test_rate_limit_is_per_session(client, counselor, make_session):
    noisy = make_session(counselor)
    quiet = make_session(counselor)
    for _ in range(5):
        _evaluate(client, noisy, counselor)

    assert _evaluate(client, noisy, counselor).status_code == 429
    assert _evaluate(client, quiet, counselor).status_code == 425


def test_llm_failure_stores_nothing(client, counselor, scenario, make_assignment, make_session, add_turns):
    assignment = make_assignment(scenario, counselor)
    sess = make_session(counselor, assignment=assignment)
    add_turns(sess, 2)

    with patch.object(LocalStubProvider, "chat", side_effect=RuntimeError("timeout")):
        res = _evaluate(client, sess, counselor)

    assert res.status_code == 502
    assert res.get_json()["code"] == "UPSTREAM_FAILURE"
    assert Evaluation.query.count() == 0
    assert _db.session.get(Assignment, assignment.id).status != ASSIGNMENT_COMPLETED


def test_empty_evaluator_output_is_upstream_failure(client, counselor, make_session, add_turns):
    sess = make_session(counselor)
    add_turns(sess, 2)

    with patch.object(LocalStubProvider, "chat", return_value=_stub_reply("## Flags\nNone\n")):
        res = _evaluate(client, sess, counselor)

    assert res.status_code == 502
    assert Evaluation.query.count() == 0


# ── Flags ────────────────────────────────────────────────────────────────


def test_flags_section_parsed_and_hidden(client, counselor, make_session, add_turns):
    sess = make_session(counselor)
    add_turns(sess, 2)

    with patch.object(LocalStubProvider, "chat", return_value=_stub_reply(FLAGGED_FEEDBACK)):
        res = _evaluate(client, sess, counselor)

    assert res.status_code == 201
    body = res.get_json()
    assert body["grade"] == "D"
    assert body["overall_score"] == 58.0
    assert "## Flags" not in body["feedback"]
    assert "caller mentioned pills" not in body["feedback"]
    assert "Practice the safety question." in body["feedback"]

    flags = SessionFlag.query.filter_by(session_id=sess.id, source=SOURCE_EVALUATION).all()
    assert sorted((f.category, f.severity) for f in flags) == [
        ("missed_risk_assessment", "critical"),
        ("rushed_closing", "warning"),
    ]


def test_over_long_flag_category_is_dropped(client, counselor, make_session, add_turns):
    sess = make_session(counselor)
    add_turns(sess, 2)
    content = (
        "Kept the caller talking.\n## Score: 70\n\n## Flags\n"
        f"- [warning] {'x' * 120}: detail\n"
        "- [info] pacing: a little fast\n"
    )

    with patch.object(LocalStubProvider, "chat", return_value=_stub_reply(content)):
        res = _evaluate(client, sess, counselor)

    assert res.status_code == 201
    assert res.get_json()["overall_score"] == 70.0
    flags = SessionFlag.query.filter_by(session_id=sess.id, source=SOURCE_EVALUATION).all()
    assert [f.category for f in flags] == ["pacing"]


# ── Races ────────────────────────────────────────────────────────────────


def test_lost_race_reports_winner(client, counselor, scenario, make_assignment, make_session, add_turns):
    assignment = make_assignment(scenario, counselor)
    sess = make_session(counselor, assignment=assignment)
    add_turns(sess, 2)

    with patch.object(LocalStubProvider, "chat", return_value=_stub_reply(FLAGGED_FEEDBACK)):
        winner = _evaluate(client, sess, counselor)
        # Second request passes the pre-check as if both were in flight together
        with patch.object(evaluation_service, "_find_existing_evaluation", return_value=None):
            loser = _evaluate(client, sess, counselor)

    assert winner.status_code == 201
    assert loser.status_code == 409
    assert loser.get_json()["details"]["existing_id"] == winner.get_json()["id"]
    assert Evaluation.query.filter_by(assignment_id=assignment.id).count() == 1
    assert SessionFlag.query.filter_by(session_id=sess.id, source=SOURCE_EVALUATION).count() == 2


# ── Access / background work ─────────────────────────────────────────────


def test_other_counselor_cannot_trigger_evaluation(client, counselor, other_counselor, make_session, add_turns):
    sess = make_session(counselor)
    add_turns(sess, 2)

    res = _evaluate(client, sess, other_counselor)

    assert res.status_code == 403
    assert Evaluation.query.count() == 0


def test_supervisor_can_trigger_evaluation(client, counselor, supervisor, make_session, add_turns):
    sess = make_session(counselor)
    add_turns(sess, 2)

    assert _evaluate(client, sess, supervisor).status_code == 201


def test_get_evaluation_by_id(client, counselor, other_counselor, supervisor, scenario, make_assignment,
                              make_session, add_turns):
    assignment = make_assignment(scenario, counselor)
    sess = make_session(counselor, assignment=assignment)
    add_turns(sess, 2)
    evaluation_id = _evaluate(client, sess, counselor).get_json()["id"]

    own = client.get(f"/api/v1/evaluations/{evaluation_id}", headers=_auth(counselor))
    by_supervisor = client.get(f"/api/v1/evaluations/{evaluation_id}", headers=_auth(supervisor))
    by_peer = client.get(f"/api/v1/evaluations/{evaluation_id}", headers=_auth(other_counselor))

    assert own.status_code == 200
    body = own.get_json()
    assert body["assignment_id"] == assignment.id
    assert body["scenario"] == {"id": scenario.id, "title": scenario.title}
    assert by_supervisor.status_code == 200
    assert by_peer.status_code == 403


def test_get_free_practice_evaluation_without_scenario(client, counselor, make_session, add_turns):
    sess = make_session(counselor)
    add_turns(sess, 2)
    evaluation_id = _evaluate(client, sess, counselor).get_json()["id"]

    body = client.get(f"/api/v1/evaluations/{evaluation_id}", headers=_auth(counselor)).get_json()

    assert body["session_id"] == sess.id
    assert body["scenario"] is None


def test_get_unknown_evaluation(client, counselor):
    res = client.get("/api/v1/evaluations/00000000-0000-0000-0000-000000000000", headers=_auth(counselor))
    assert res.status_code == 404


def test_analysis_runs_after_evaluation(client, counselor, make_session, add_turns):
    sess = make_session(counselor)
    add_turns(sess, 4)

    assert _evaluate(client, sess, counselor).status_code == 201

    analysis = SessionFlag.query.filter_by(session_id=sess.id, source="analysis").all()
    assert [f.category for f in analysis] == ["analysis_clean"]


def test_analysis_failure_does_not_break_evaluation(client, counselor, make_session, add_turns):
    sess = make_session(counselor)
    add_turns(sess, 4)

    with patch("crisis_trainer.services.analysis_service.analyze_session", side_effect=RuntimeError("boom")):
        res = _evaluate(client, sess, counselor)

    assert res.status_code == 201
    assert Evaluation.query.count() == 1
