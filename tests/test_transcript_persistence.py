"""
Tests: Idempotent transcript persistence.

Coverage:
    - Replaying the same batch leaves exactly len(batch) rows
    - A corrected batch replaces the stored turns
    - A shorter batch never overwrites a longer stored attempt
    - Attempts are stored independently
    - Turn index contiguity and shape validation
    - Internal callback and client fast path authorisation
    - Ended sessions reject the client fast path; graded transcripts are frozen
"""

import pytest

from crisis_trainer.core.exceptions import ConflictError, ValidationError
from crisis_trainer.models.session import TranscriptTurn
from crisis_trainer.services import session_service

INTERNAL = {"X-Internal-Service-Key": "test-internal-key"}


def _turns(count, prefix="line"):
    return [
        {"role": "user" if i % 2 == 0 else "assistant", "content": f"{prefix} {i}", "turn_index": i}
        for i in range(count)
    ]


def _stored(sess, attempt=1):
    return (
        TranscriptTurn.query.filter_by(session_id=sess.id, attempt_number=attempt)
        .order_by(TranscriptTurn.turn_index)
        .all()
    )


# ── Service ──────────────────────────────────────────────────────────────


def test_replaying_batch_is_idempotent(counselor, make_session):
    sess = make_session(counselor)
    batch = _turns(4)

    first = session_service.replace_transcript(sess.id, batch)
    second = session_service.replace_transcript(sess.id, batch)

    assert first == {"session_id": sess.id, "attempt": 1, "saved": 4, "replaced": True}
    assert second["saved"] == 4
    assert len(_stored(sess)) == 4


def test_corrected_batch_replaces_content(counselor, make_session):
    sess = make_session(counselor)
    session_service.replace_transcript(sess.id, _turns(3))
    session_service.replace_transcript(sess.id, _turns(3, prefix="fixed"))

    assert [t.content for t in _stored(sess)] == ["fixed 0", "fixed 1", "fixed 2"]


def test_longer_batch_extends_transcript(counselor, make_session):
    sess = make_session(counselor)
    session_service.replace_transcript(sess.id, _turns(2))
    result = session_service.replace_transcript(sess.id, _turns(5))

    assert result["replaced"] is True
    assert len(_stored(sess)) == 5


def test_shorter_batch_keeps_stored_turns(counselor, make_session):
    sess = make_session(counselor)
    session_service.replace_transcript(sess.id, _turns(6))

    result = session_service.replace_transcript(sess.id, _turns(2, prefix="partial"))

    assert result == {"session_id": sess.id, "attempt": 1, "saved": 6, "replaced": False}
    stored = _stored(sess)
    assert len(stored) == 6
    assert stored[0].content == "line 0"


def test_unsorted_contiguous_batch_is_accepted(counselor, make_session):
    sess = make_session(counselor)
    batch = list(reversed(_turns(3)))

    session_service.replace_transcript(sess.id, batch)

    assert [t.turn_index for t in _stored(sess)] == [0, 1, 2]


def test_attempts_are_stored_separately(counselor, make_session):
    sess = make_session(counselor, current_attempt=2)
    session_service.replace_transcript(sess.id, _turns(2), attempt_number=1)
    session_service.replace_transcript(sess.id, _turns(3))

    assert len(_stored(sess, attempt=1)) == 2
    assert len(_stored(sess, attempt=2)) == 3


@pytest.mark.parametrize("batch", [
    [{"role": "user", "content": "a", "turn_index": 0}, {"role": "assistant", "content": "b", "turn_index": 2}],
    [{"role": "user", "content": "a", "turn_index": 1}],
    [{"role": "user", "content": "a", "turn_index": 0}, {"role": "user", "content": "b", "turn_index": 0}],
])
def test_non_contiguous_indices_are_rejected(counselor, make_session, batch):
    sess = make_session(counselor)
    with pytest.raises(ValidationError):
        session_service.replace_transcript(sess.id, batch)
    assert _stored(sess) == []


@pytest.mark.parametrize("batch", [
    [],
    "not-a-list",
    [{"role": "system", "content": "a", "turn_index": 0}],
    [{"role": "user", "content": "   ", "turn_index": 0}],
    [{"role": "user", "content": "a", "turn_index": "0"}],
    [{"role": "user", "content": "a", "turn_index": 0, "attempt_number": 1},
     {"role": "assistant", "content": "b", "turn_index": 1, "attempt_number": 2}],
])
def test_malformed_batches_are_rejected(counselor, make_session, batch):
    sess = make_session(counselor)
    with pytest.raises(ValidationError):
        session_service.replace_transcript(sess.id, batch)


def test_oversized_batch_is_rejected(counselor, make_session):
    sess = make_session(counselor)
    with pytest.raises(ValidationError):
        session_service.replace_transcript(sess.id, _turns(session_service.MAX_TURNS_PER_BATCH + 1))


# ── HTTP ─────────────────────────────────────────────────────────────────


def test_internal_transcript_callback(client, counselor, make_session):
    sess = make_session(counselor)

    for _ in range(2):
        res = client.put(f"/api/v1/internal/sessions/{sess.id}/transcript",
                         json={"turns": _turns(4)}, headers=INTERNAL)
        assert res.status_code == 200

    assert res.get_json()["saved"] == 4
    assert len(_stored(sess)) == 4


def test_internal_transcript_requires_service_key(client, counselor, make_session):
    sess = make_session(counselor)
    res = client.put(f"/api/v1/internal/sessions/{sess.id}/transcript",
                     json={"turns": _turns(2)}, headers={"X-Internal-Service-Key": "wrong"})

    assert res.status_code == 401
    assert res.get_json()["code"] == "UNAUTHORIZED"
    assert _stored(sess) == []


def test_internal_transcript_bad_indices_returns_400(client, counselor, make_session):
    sess = make_session(counselor)
    bad = [{"role": "user", "content": "a", "turn_index": 0}, {"role": "user", "content": "b", "turn_index": 3}]
    res = client.put(f"/api/v1/internal/sessions/{sess.id}/transcript", json={"turns": bad}, headers=INTERNAL)

    assert res.status_code == 400
    assert res.get_json()["code"] == "VALIDATION_ERROR"


def test_client_fast_path_persists_for_owner(client, counselor, make_session):
    sess = make_session(counselor)
    res = client.put(f"/api/v1/sessions/{sess.id}/transcript",
                     json={"turns": _turns(2)}, headers={"X-User-Id": counselor.id})

    assert res.status_code == 200
    assert len(_stored(sess)) == 2


def test_client_fast_path_rejects_other_counselor(client, counselor, other_counselor, make_session):
    sess = make_session(counselor)
    res = client.put(f"/api/v1/sessions/{sess.id}/transcript",
                     json={"turns": _turns(2)}, headers={"X-User-Id": other_counselor.id})

    assert res.status_code == 403
    assert res.get_json()["code"] == "UNAUTHORIZED"
    assert _stored(sess) == []


def test_transcript_for_unknown_session_returns_404(client):
    res = client.put("/api/v1/internal/sessions/00000000-0000-0000-0000-000000000000/transcript",
                     json={"turns": _turns(2)}, headers=INTERNAL)
    assert res.status_code == 404


# ── Graded and ended sessions ────────────────────────────────────────────


def _graded_session(client, counselor, scenario, make_assignment, make_session, add_turns):
    assignment = make_assignment(scenario, counselor)
    sess = make_session(counselor, assignment=assignment)
    add_turns(sess, 2)
    res = client.post(f"/api/v1/sessions/{sess.id}/evaluate", headers={"X-User-Id": counselor.id})
    assert res.status_code == 201
    return sess, res.get_json()["id"]


def test_client_fast_path_rejects_ended_session(client, counselor, make_session):
    sess = make_session(counselor)
    client.post(f"/api/v1/sessions/{sess.id}/end", headers={"X-User-Id": counselor.id})

    res = client.put(f"/api/v1/sessions/{sess.id}/transcript",
                     json={"turns": _turns(2)}, headers={"X-User-Id": counselor.id})

    assert res.status_code == 409
    assert res.get_json()["code"] == "CONFLICT"
    assert _stored(sess) == []


def test_client_fast_path_cannot_rewrite_graded_transcript(
    client, counselor, scenario, make_assignment, make_session, add_turns,
):
    sess, _ = _graded_session(client, counselor, scenario, make_assignment, make_session, add_turns)

    res = client.put(f"/api/v1/sessions/{sess.id}/transcript",
                     json={"turns": _turns(4, prefix="rewritten")}, headers={"X-User-Id": counselor.id})

    assert res.status_code == 409
    assert [t.content for t in _stored(sess)] == ["turn 0", "turn 1"]


def test_internal_callback_cannot_rewrite_graded_transcript(
    client, counselor, scenario, make_assignment, make_session, add_turns,
):
    sess, evaluation_id = _graded_session(client, counselor, scenario, make_assignment, make_session, add_turns)

    res = client.put(f"/api/v1/internal/sessions/{sess.id}/transcript",
                     json={"turns": _turns(4, prefix="late flush")}, headers=INTERNAL)

    assert res.status_code == 409
    assert res.get_json()["details"]["existing_id"] == evaluation_id
    assert len(_stored(sess)) == 2


def test_graded_free_practice_transcript_is_frozen(client, counselor, make_session, add_turns):
    sess = make_session(counselor)
    add_turns(sess, 2)
    client.post(f"/api/v1/sessions/{sess.id}/evaluate", headers={"X-User-Id": counselor.id})

    with pytest.raises(ConflictError):
        session_service.replace_transcript(sess.id, _turns(4))

    assert len(_stored(sess)) == 2
