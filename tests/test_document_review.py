"""
Tests: Document review of graded sessions.

Coverage:
    - Graded session + PDF notes → review with three scores and gaps
    - Ungraded session → CONFLICT
    - Second upload → CONFLICT carrying the first review's id
    - Fewer than 3 turns, non-PDF, missing file → VALIDATION_ERROR
    - Another counselor's session → UNAUTHORIZED (403)
    - Unusable model output → UPSTREAM_FAILURE, nothing stored
    - GET before and after a review
"""

import io
from unittest.mock import MagicMock, patch

from crisis_trainer.ai.gateway import LocalStubProvider
from crisis_trainer.models.evaluation import DocumentReview

PDF_OPEN = "crisis_trainer.services.account_service.pdfplumber.open"


def _auth(user):
    return {"X-User-Id": user.id}


def _fake_pdf(text):
    page = MagicMock()
    page.extract_text.return_value = text
    pdf = MagicMock()
    pdf.__enter__.return_value.pages = [page]
    return pdf


def _upload(client, sess, user, filename="call-notes.pdf", payload=b"%PDF-1.7 notes"):
    return client.post(
        f"/api/v1/sessions/{sess.id}/review-document",
        data={"file": (io.BytesIO(payload), filename)},
        content_type="multipart/form-data",
        headers=_auth(user),
    )


def _graded(client, counselor, make_session, add_turns, scenario=None, turns=4):
    sess = make_session(counselor, scenario=scenario)
    add_turns(sess, turns)
    assert client.post(f"/api/v1/sessions/{sess.id}/evaluate", headers=_auth(counselor)).status_code == 201
    return sess


# ── Happy path ───────────────────────────────────────────────────────────


def test_review_graded_session(client, counselor, scenario, make_session, add_turns):
    sess = _graded(client, counselor, make_session, add_turns, scenario=scenario)

    with patch(PDF_OPEN, return_value=_fake_pdf("Caller reported job loss. Safety screened.")):
        res = _upload(client, sess, counselor)

    assert res.status_code == 201
    body = res.get_json()
    assert body["session_id"] == sess.id
    assert body["file_name"] == "call-notes.pdf"
    assert (body["transcript_accuracy"], body["guidelines_compliance"], body["overall_score"]) == (88, 74, 80)
    assert body["specific_gaps"] == ["Safety plan discussed on the call is not documented"]
    assert body["review_text"].startswith("The notes follow the call")


def test_reviewer_receives_notes_and_transcript(client, counselor, scenario, make_session, add_turns):
    sess = _graded(client, counselor, make_session, add_turns, scenario=scenario)

    with patch(PDF_OPEN, return_value=_fake_pdf("Caller reported job loss.")), \
            patch.object(LocalStubProvider, "chat", wraps=LocalStubProvider().chat) as chat:
        assert _upload(client, sess, counselor).status_code == 201

    messages = chat.call_args.args[0]
    user_prompt = messages[-1]["content"]
    assert "Caller reported job loss." in user_prompt
    assert "turn 3" in user_prompt
    assert chat.call_args.kwargs["purpose"] == "document_review"


def test_get_review(client, counselor, make_session, add_turns):
    sess = _graded(client, counselor, make_session, add_turns)

    missing = client.get(f"/api/v1/sessions/{sess.id}/review-document", headers=_auth(counselor))
    with patch(PDF_OPEN, return_value=_fake_pdf("notes")):
        created = _upload(client, sess, counselor).get_json()
    found = client.get(f"/api/v1/sessions/{sess.id}/review-document", headers=_auth(counselor))

    assert missing.status_code == 404
    assert missing.get_json()["code"] == "NOT_FOUND"
    assert found.status_code == 200
    assert found.get_json()["id"] == created["id"]


# ── Guards ───────────────────────────────────────────────────────────────


def test_ungraded_session_conflicts(client, counselor, make_session, add_turns):
    sess = make_session(counselor)
    add_turns(sess, 4)

    with patch(PDF_OPEN, return_value=_fake_pdf("notes")) as pdf_open:
        res = _upload(client, sess, counselor)

    assert res.status_code == 409
    assert res.get_json()["code"] == "CONFLICT"
    pdf_open.assert_not_called()


def test_second_review_conflicts_with_existing_id(client, counselor, make_session, add_turns):
    sess = _graded(client, counselor, make_session, add_turns)

    with patch(PDF_OPEN, return_value=_fake_pdf("notes")):
        first = _upload(client, sess, counselor).get_json()
        second = _upload(client, sess, counselor, filename="revised-notes.pdf")

    assert second.status_code == 409
    assert second.get_json()["details"]["existing_id"] == first["id"]
    assert DocumentReview.query.filter_by(session_id=sess.id).count() == 1


def test_short_transcript_rejected(client, counselor, make_session, add_turns):
    sess = _graded(client, counselor, make_session, add_turns, turns=2)

    with patch(PDF_OPEN, return_value=_fake_pdf("notes")):
        res = _upload(client, sess, counselor)

    assert res.status_code == 400
    assert res.get_json()["details"] == {"turns": 2, "required": 3}


def test_non_pdf_and_missing_file_rejected(client, counselor, make_session, add_turns):
    sess = _graded(client, counselor, make_session, add_turns)

    as_text = _upload(client, sess, counselor, filename="notes.txt", payload=b"plain notes")
    no_file = client.post(f"/api/v1/sessions/{sess.id}/review-document", headers=_auth(counselor))

    assert as_text.status_code == 400
    assert no_file.status_code == 400
    assert DocumentReview.query.count() == 0


def test_other_counselor_cannot_review(client, counselor, other_counselor, make_session, add_turns):
    sess = _graded(client, counselor, make_session, add_turns)

    res = _upload(client, sess, other_counselor)

    assert res.status_code == 403
    assert res.get_json()["code"] == "UNAUTHORIZED"


def test_unusable_reviewer_output_is_upstream_failure(client, counselor, make_session, add_turns):
    sess = _graded(client, counselor, make_session, add_turns)
    reply = {"content": '{"overall_score": 140, "narrative": "x"}', "prompt_tokens": 1,
             "completion_tokens": 1, "model": "local-stub"}

    with patch(PDF_OPEN, return_value=_fake_pdf("notes")), \
            patch.object(LocalStubProvider, "chat", return_value=reply):
        res = _upload(client, sess, counselor)

    assert res.status_code == 502
    assert DocumentReview.query.count() == 0
