"""
Tests: External partner API.

Coverage:
    - Assignment with an existing scenario or an inline one-time scenario
    - External users are provisioned once
    - One-time scenario flow end to end: assign → voice session →
      transcript → evaluate → duplicate evaluate → result
    - Evaluate before any session → TOO_EARLY
    - Lost evaluation race reported as CONFLICT with the winner's id
    - Scenario catalogue with one-time scenarios and account names
"""

from unittest.mock import patch

from crisis_trainer.models import db as _db
from crisis_trainer.models.account import Account, User
from crisis_trainer.models.evaluation import Evaluation
from crisis_trainer.models.scenario import Scenario
from crisis_trainer.services import evaluation_service

PARTNER = {"X-API-Key": "test-partner-key"}
INTERNAL = {"X-Internal-Service-Key": "test-internal-key"}

INLINE_SCENARIO = {
    "title": "Follow-up after complaint",
    "prompt": "You called last week and felt rushed. Test whether the counselor listens this time.",
    "skills": ["rapport_building"],
}


def _create(client, **body):
    return client.post("/api/v1/external/assignments", json=body, headers=PARTNER)


def _turns(count):
    return [
        {"role": "user" if i % 2 == 0 else "assistant", "content": f"line {i}", "turn_index": i}
        for i in range(count)
    ]


def _practice(client, assignment):
    """Simulate the voice agent: open the session and persist a short transcript."""
    sess = client.post("/api/v1/internal/sessions", json={
        "type": "assignment",
        "assignment_id": assignment["id"],
        "user_id": assignment["counselor_id"],
    }, headers=INTERNAL).get_json()
    client.put(f"/api/v1/internal/sessions/{sess['id']}/transcript", json={"turns": _turns(2)}, headers=INTERNAL)
    return sess


def test_assign_existing_scenario(client, scenario):
    res = _create(client, user_external_id="emp-1001", scenario_id=scenario.id, due_date="2026-12-01")

    assert res.status_code == 201
    body = res.get_json()
    assert body["scenario_id"] == scenario.id
    assert body["assigned_by"] is None
    user = User.query.filter_by(external_id="emp-1001").one()
    assert body["counselor_id"] == user.id


def test_assign_inline_scenario_is_one_time(client, supervisor):
    res = _create(client, user_external_id="emp-1002", scenario=INLINE_SCENARIO)

    assert res.status_code == 201
    scenario = res.get_json()["scenario"]
    assert scenario["is_one_time"] is True
    listed = client.get("/api/v1/scenarios", headers={"X-User-Id": supervisor.id}).get_json()
    assert scenario["id"] not in [s["id"] for s in listed]


def test_assign_requires_exactly_one_scenario_source(client, scenario):
    assert _create(client, user_external_id="emp-1").status_code == 400
    assert _create(client, user_external_id="emp-1", scenario_id=scenario.id,
                   scenario=INLINE_SCENARIO).status_code == 400


def test_invalid_inline_scenario_leaves_nothing_behind(client):
    res = _create(client, user_external_id="emp-1003", scenario={"title": "No prompt"})

    assert res.status_code == 400
    assert Scenario.query.count() == 0


def test_repeat_assignment_conflicts(client, scenario):
    first = _create(client, user_external_id="emp-1004", scenario_id=scenario.id)
    second = _create(client, user_external_id="emp-1004", scenario_id=scenario.id)

    assert second.status_code == 409
    assert second.get_json()["details"]["existing_id"] == first.get_json()["id"]
    assert User.query.filter_by(external_id="emp-1004").count() == 1


def test_list_user_assignments(client, scenario, make_scenario):
    _create(client, user_external_id="emp-1005", scenario_id=scenario.id)
    _create(client, user_external_id="emp-1005", scenario_id=make_scenario("Second").id)

    res = client.get("/api/v1/external/users/emp-1005/assignments", headers=PARTNER)

    assert res.status_code == 200
    assert len(res.get_json()) == 2


# ── Evaluation flow ──────────────────────────────────────────────────────


def test_one_time_scenario_end_to_end(client):
    assignment = _create(client, user_external_id="emp-2001", scenario=INLINE_SCENARIO).get_json()
    sess = _practice(client, assignment)

    evaluated = client.post(f"/api/v1/external/assignments/{assignment['id']}/evaluate", headers=PARTNER)
    duplicate = client.post(f"/api/v1/external/assignments/{assignment['id']}/evaluate", headers=PARTNER)
    result = client.get(f"/api/v1/external/assignments/{assignment['id']}/result", headers=PARTNER)
    transcript = client.get(f"/api/v1/external/assignments/{assignment['id']}/transcript", headers=PARTNER)

    assert evaluated.status_code == 201
    assert evaluated.get_json()["assignment_id"] == assignment["id"]
    assert duplicate.status_code == 409
    assert duplicate.get_json()["details"]["existing_id"] == evaluated.get_json()["id"]

    body = result.get_json()
    assert body["status"] == "completed"
    assert body["session_id"] == sess["id"]
    assert body["evaluation"]["id"] == evaluated.get_json()["id"]
    assert len(transcript.get_json()["transcript"]) == 2


def test_one_time_scenario_evaluation_race(client):
    assignment = _create(client, user_external_id="emp-2002", scenario=INLINE_SCENARIO).get_json()
    _practice(client, assignment)

    winner = client.post(f"/api/v1/external/assignments/{assignment['id']}/evaluate", headers=PARTNER)
    with patch.object(evaluation_service, "_find_existing_evaluation", return_value=None):
        loser = client.post(f"/api/v1/external/assignments/{assignment['id']}/evaluate", headers=PARTNER)

    assert winner.status_code == 201
    assert loser.status_code == 409
    assert loser.get_json()["details"]["existing_id"] == winner.get_json()["id"]
    assert Evaluation.query.filter_by(assignment_id=assignment["id"]).count() == 1


def test_evaluate_before_session_is_too_early(client, scenario):
    assignment = _create(client, user_external_id="emp-2003", scenario_id=scenario.id).get_json()

    res = client.post(f"/api/v1/external/assignments/{assignment['id']}/evaluate", headers=PARTNER)

    assert res.status_code == 425
    assert res.headers["Retry-After"] == "30"


def test_result_and_transcript_before_session(client, scenario):
    assignment = _create(client, user_external_id="emp-2004", scenario_id=scenario.id).get_json()

    result = client.get(f"/api/v1/external/assignments/{assignment['id']}/result", headers=PARTNER).get_json()
    transcript = client.get(f"/api/v1/external/assignments/{assignment['id']}/transcript", headers=PARTNER)

    assert result == {"assignment_id": assignment["id"], "status": "pending", "session_id": None,
                      "evaluation": None}
    assert transcript.status_code == 404


# ── Scenario catalogue ───────────────────────────────────────────────────


def test_list_scenarios_includes_one_time(client, supervisor, make_scenario):
    account = Account(name="Northside Crisis Line", procedure_history=[])
    _db.session.add(account)
    _db.session.commit()
    make_scenario("Bereavement", mode="chat", category="assessment", account_id=account.id)
    make_scenario("After a complaint", is_one_time=True, category="remediation")

    every = client.get("/api/v1/external/scenarios", headers=PARTNER).get_json()
    chat_only = client.get("/api/v1/external/scenarios?mode=chat", headers=PARTNER).get_json()

    assert [s["title"] for s in every] == ["After a complaint", "Bereavement"]
    assert every[0]["is_one_time"] is True
    assert every[0]["account_name"] is None
    assert [(s["title"], s["account_name"]) for s in chat_only] == [("Bereavement", "Northside Crisis Line")]
    assert "prompt" not in every[0]


def test_get_scenario(client, supervisor, make_scenario):
    scenario = make_scenario("Bereavement", created_by=supervisor.id)

    res = client.get(f"/api/v1/external/scenarios/{scenario.id}", headers=PARTNER)
    missing = client.get("/api/v1/external/scenarios/00000000-0000-0000-0000-000000000000", headers=PARTNER)

    assert res.status_code == 200
    body = res.get_json()
    assert body["scenario_id"] == scenario.id
    assert body["created_by"] == "Sam Supervisor"
    assert missing.status_code == 404


def test_scenarios_require_partner_key(client, scenario):
    assert client.get("/api/v1/external/scenarios").status_code == 401
    assert client.get(f"/api/v1/external/scenarios/{scenario.id}",
                      headers={"X-API-Key": "wrong"}).status_code == 401
