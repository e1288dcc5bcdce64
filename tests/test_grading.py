from unittest.mock import patch

import pytest
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

import app as app_module
from models import db, Exam, Question, Submission, Grade


def _make_submission(exam_id, order=0, code="print('hi')", status="submitted", attempt_id="attempt-1"):
    question = Question.query.filter_by(exam_id=exam_id, order=order).one()
    sub = Submission(
        exam_id=exam_id,
        question_id=question.id,
        attempt_id=attempt_id,
        code=code,
        status=status,
    )
    db.session.add(sub)
    db.session.commit()
    return sub.id


@pytest.mark.parametrize("raw, expected", [
    ("50", 50),
    (" 7 ", 7),
    ("150", 100),
    ("-5", 0),
    ("42.7", 42),
    ("abc", 0),
    ("", 0),
    (None, 0),
    ("nan", 0),
    ("inf", 0),
    (100, 100),
])
def test_clamp_score(raw, expected):
    assert app_module.clamp_score(raw) == expected


def test_detail_shows_code_and_test_cases(client, sample_exam_id):
    sub_id = _make_submission(sample_exam_id, code="def add(a, b):\n    return a + b")
    resp = client.get(f"/submissions/{sub_id}")
    assert resp.status_code == 200
    body = resp.data
    assert b"Intro Exam" in body
    assert b"Add two numbers" in body
    assert b"return a + b" in body
    assert b"add(1, 2)" in body
    assert b"add(-1, 1)" in body
    assert b'name="score" min="0" max="100" value="0"' in body


def test_grade_is_created_then_updated(client, csrf, sample_exam_id):
    sub_id = _make_submission(sample_exam_id)

    resp = client.post(f"/submissions/{sub_id}", data={"csrf": csrf, "score": "80", "feedback": "Good"})
    assert resp.status_code == 302
    grade = Grade.query.one()
    assert (grade.submission_id, grade.score, grade.feedback) == (sub_id, 80, "Good")
    grade_id = grade.id

    page = client.get(f"/submissions/{sub_id}")
    assert b"Grade saved successfully!" in page.data
    assert b'value="80"' in page.data

    client.post(f"/submissions/{sub_id}", data={"csrf": csrf, "score": "250", "feedback": "Better"})
    db.session.expire_all()
    grades = Grade.query.all()
    assert len(grades) == 1
    assert grades[0].id == grade_id
    assert grades[0].score == 100
    assert grades[0].feedback == "Better"


def test_grade_score_is_clamped_low(client, csrf, sample_exam_id):
    sub_id = _make_submission(sample_exam_id)
    client.post(f"/submissions/{sub_id}", data={"csrf": csrf, "score": "-20", "feedback": ""})
    assert Grade.query.one().score == 0


def test_grade_store_failure(client, csrf, sample_exam_id):
    sub_id = _make_submission(sample_exam_id)
    with patch.object(db.session, "commit", side_effect=SQLAlchemyError("boom")):
        resp = client.post(f"/submissions/{sub_id}", data={"csrf": csrf, "score": "55", "feedback": "x"})
    assert resp.status_code == 500
    assert b"Failed to save grade" in resp.data
    assert Grade.query.count() == 0


def test_grade_requires_csrf(client, csrf, sample_exam_id):
    sub_id = _make_submission(sample_exam_id)
    resp = client.post(f"/submissions/{sub_id}", data={"csrf": "nope", "score": "10"})
    assert resp.status_code == 400
    assert Grade.query.count() == 0


def test_unknown_submission_is_404(client):
    assert client.get("/submissions/12345").status_code == 404


def test_results_are_scoped_to_exam(client, app, sample_exam_id):
    other = app_module.create_exam("Other Exam", "", app_module.normalize_exam_questions([
        {"title": "Unrelated prompt", "description": "d"},
    ]))
    _make_submission(sample_exam_id)
    _make_submission(other.id)

    scoped = client.get(f"/view-results/{sample_exam_id}").data
    assert b"Add two numbers" in scoped
    assert b"Unrelated prompt" not in scoped

    everything = client.get("/submissions").data
    assert b"Add two numbers" in everything
    assert b"Unrelated prompt" in everything


def test_results_list_newest_first_with_scores_and_status(client, sample_exam_id):
    older = _make_submission(sample_exam_id, order=0, status="passed")
    _make_submission(sample_exam_id, order=1, status="failed")
    db.session.add(Grade(submission_id=older, score=91, feedback=""))
    db.session.commit()

    body = client.get(f"/view-results/{sample_exam_id}").data
    assert body.index(b"Greeting") < body.index(b"Add two numbers")
    assert b"Score: 91/100" in body
    assert b"Passed" in body
    assert b"Failed" in body


def test_results_empty(client, sample_exam_id):
    assert b"No submissions found." in client.get(f"/view-results/{sample_exam_id}").data


def test_api_submissions(client, sample_exam_id):
    sub_id = _make_submission(sample_exam_id)
    db.session.add(Grade(submission_id=sub_id, score=70, feedback="ok"))
    db.session.commit()

    data = client.get(f"/api/submissions?exam_id={sample_exam_id}").get_json()
    assert data["ok"] is True
    assert len(data["submissions"]) == 1
    row = data["submissions"][0]
    assert row["exam"]["title"] == "Intro Exam"
    assert row["question"]["language"] == "python"
    assert row["grade"]["score"] == 70

    assert client.get("/api/submissions?exam_id=999").get_json()["submissions"] == []


def test_download_submission(client, sample_exam_id):
    sub_id = _make_submission(sample_exam_id, code="x = 1")
    resp = client.get(f"/submissions/{sub_id}/download")
    assert resp.status_code == 200
    assert f'filename="submission_{sub_id}.json"' in resp.headers["Content-Disposition"]
    data = resp.get_json(force=True)
    assert data["code"] == "x = 1"
    assert data["grade"] is None
    assert [tc["expected_output"] for tc in data["question"]["test_cases"]] == ["3", "0", "0"]


def test_one_grade_per_submission(app, sample_exam_id):
    sub_id = _make_submission(sample_exam_id)
    db.session.add(Grade(submission_id=sub_id, score=10, feedback=""))
    db.session.commit()
    db.session.add(Grade(submission_id=sub_id, score=20, feedback=""))
    with pytest.raises(IntegrityError):
        db.session.commit()
    db.session.rollback()
    assert Grade.query.count() == 1


def test_one_submission_per_question_attempt(app, sample_exam_id):
    _make_submission(sample_exam_id, attempt_id="same")
    with pytest.raises(IntegrityError):
        _make_submission(sample_exam_id, attempt_id="same")
    db.session.rollback()


def test_deleting_exam_cascades(app, sample_exam_id):
    sub_id = _make_submission(sample_exam_id)
    db.session.add(Grade(submission_id=sub_id, score=10, feedback=""))
    db.session.commit()

    db.session.delete(db.session.get(Exam, sample_exam_id))
    db.session.commit()
    assert Question.query.count() == 0
    assert Submission.query.count() == 0
    assert Grade.query.count() == 0
