from datetime import timedelta

import pytest
from sqlalchemy import select

from conftest import COORDINATOR_PASSWORD, PHASE1_SUFFIX, SESSION_PASSWORD, build_exam, correct_choice
from hems.models.orm import Question
from hems.services.credential_gate import CredentialGate

NEW_PASSWORD = "Str0ng!Pass"


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def exam_day_token(client, seeded):
    r = client.post("/v1/auth/phase1", json={"email": "student@hems.edu", "password": "SE123" + PHASE1_SUFFIX})
    assert r.status_code == 200
    r = client.post("/v1/auth/phase2", json={"id_number": "SE123", "password": SESSION_PASSWORD})
    assert r.status_code == 200
    body = r.json()
    assert body["phase"] == 2 and body["exam_id"] == seeded.exam.id and body["must_change_password"] is True
    token = body["access_token"]
    r = client.post("/v1/auth/change-credential", headers=bearer(token),
                    json={"new_password": NEW_PASSWORD, "confirm_password": NEW_PASSWORD})
    assert r.status_code == 200
    return token


@pytest.fixture
def coordinator_token(client, seeded):
    r = client.post("/v1/auth/login", json={"email": "coordinator@hems.edu", "password": COORDINATOR_PASSWORD})
    assert r.status_code == 200
    return r.json()["access_token"]


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200 and r.json() == {"status": "ok"}


def test_phase1_login_only_once(client, seeded):
    payload = {"email": "student@hems.edu", "password": "SE123" + PHASE1_SUFFIX}
    first = client.post("/v1/auth/phase1", json=payload)
    assert first.status_code == 200
    assert first.json()["phase"] == 1
    second = client.post("/v1/auth/phase1", json=payload)
    assert second.status_code == 401
    assert second.json()["detail"]["reason"] == "phase1_already_completed"


def test_phase1_loser_of_concurrent_login_gets_no_token(db, client, clock, seeded, monkeypatch):
    check = CredentialGate.check_phase1_login

    def check_then_lose_race(self, email, password):
        result = check(self, email, password)
        CredentialGate(db, clock).complete_phase1_login(seeded.user.id)
        return result

    monkeypatch.setattr(CredentialGate, "check_phase1_login", check_then_lose_race)
    r = client.post("/v1/auth/phase1", json={"email": "student@hems.edu", "password": "SE123" + PHASE1_SUFFIX})
    assert r.status_code == 401
    assert r.json()["detail"]["reason"] == "phase1_already_completed"


def test_phase1_rejects_foreign_email(client, seeded):
    r = client.post("/v1/auth/phase1", json={"email": "student@gmail.com", "password": "SE12319"})
    assert r.status_code == 401
    assert r.json()["detail"]["error"] == "invalid_input"


def test_phase2_before_phase1_is_refused(client, seeded):
    r = client.post("/v1/auth/phase2", json={"id_number": "SE123", "password": SESSION_PASSWORD})
    assert r.status_code == 401
    assert r.json()["detail"]["reason"] == "phase1_not_completed"


def test_second_phase2_login_conflicts(client, exam_day_token):
    r = client.post("/v1/auth/phase2", json={"id_number": "SE123", "password": SESSION_PASSWORD})
    assert r.status_code == 409


def test_start_requires_credential_change(client, seeded):
    client.post("/v1/auth/phase1", json={"email": "student@hems.edu", "password": "SE123" + PHASE1_SUFFIX})
    token = client.post("/v1/auth/phase2", json={"id_number": "SE123", "password": SESSION_PASSWORD}).json()["access_token"]
    r = client.post(f"/v1/exams/{seeded.exam.id}/start", headers=bearer(token))
    assert r.status_code == 403


def test_phase1_token_cannot_take_exams(client, seeded):
    token = client.post("/v1/auth/phase1", json={"email": "student@hems.edu", "password": "SE123" + PHASE1_SUFFIX}).json()["access_token"]
    assert client.get("/v1/exams", headers=bearer(token)).status_code == 403


def test_requests_without_token_are_rejected(client, seeded):
    assert client.get("/v1/exams").status_code in (401, 403)
    assert client.get("/v1/exams", headers=bearer("garbage")).status_code == 401


def test_full_exam_flow(db, client, clock, seeded, exam_day_token):
    headers = bearer(exam_day_token)
    exams = client.get("/v1/exams", headers=headers).json()
    assert [e["id"] for e in exams] == [seeded.exam.id]
    assert exams[0]["question_count"] == 5

    r = client.post(f"/v1/exams/{seeded.exam.id}/start", headers=headers)
    assert r.status_code == 201
    started = r.json()
    attempt_id = started["attempt_id"]
    assert started["remaining_seconds"] == 3600
    assert len(started["questions"]) == 5
    assert all("is_correct" not in c for q in started["questions"] for c in q["choices"])

    assert client.post(f"/v1/exams/{seeded.exam.id}/start", headers=headers).status_code == 409

    questions = started["questions"]
    for q in questions[:3]:
        choice_id = correct_choice(db, q["id"]).id
        r = client.put(f"/v1/attempts/{attempt_id}/answers/{q['id']}", headers=headers, json={"choice_id": choice_id})
        assert r.status_code == 200 and r.json()["choice_id"] == choice_id
    r = client.put(f"/v1/attempts/{attempt_id}/flags/{questions[4]['id']}", headers=headers, json={"flagged": True})
    assert r.json()["is_flagged"] is True

    foreign = correct_choice(db, questions[1]["id"]).id
    r = client.put(f"/v1/attempts/{attempt_id}/answers/{questions[0]['id']}", headers=headers, json={"choice_id": foreign})
    assert r.status_code == 409
    assert r.json()["detail"]["reason"] == "choice_not_in_question"

    nxt = client.get(f"/v1/exams/questions/{questions[0]['id']}/next", headers=headers)
    assert nxt.json()["id"] == questions[1]["id"]
    assert client.get(f"/v1/exams/questions/{questions[0]['id']}/previous", headers=headers).status_code == 404

    clock.advance(minutes=12)
    overview = client.get(f"/v1/attempts/{attempt_id}", headers=headers).json()
    assert (overview["answered"], overview["flagged"], overview["unanswered"]) == (3, 1, 2)
    assert overview["formatted_remaining"] == "00:48:00"

    assert client.get(f"/v1/attempts/{attempt_id}/result", headers=headers).status_code == 409

    r = client.post(f"/v1/attempts/{attempt_id}/submit", headers=headers)
    assert r.status_code == 200
    assert r.json()["result"]["percentage"] == 60.0
    assert client.post(f"/v1/attempts/{attempt_id}/submit", headers=headers).status_code == 409

    result = client.get(f"/v1/attempts/{attempt_id}/result", headers=headers).json()
    assert (result["correct"], result["total_questions"], result["percentage"], result["grade"]) == (3, 5, 60.0, "D")


def test_timer_endpoints(client, clock, seeded, exam_day_token):
    headers = bearer(exam_day_token)
    attempt_id = client.post(f"/v1/exams/{seeded.exam.id}/start", headers=headers).json()["attempt_id"]
    clock.advance(minutes=5)

    timer = client.get(f"/v1/attempts/{attempt_id}/timer", headers=headers).json()
    assert timer["remaining_seconds"] == 55 * 60
    assert timer["formatted_remaining"] == "00:55:00"
    assert timer["is_expired"] is False

    clock.advance(seconds=30)
    ok = client.post(f"/v1/attempts/{attempt_id}/timer/verify", headers=headers,
                     json={"server_time": timer["server_time"], "hash": timer["hash"], "client_elapsed_seconds": 330})
    assert ok.status_code == 200
    assert ok.json()["valid"] is True and ok.json()["suspicious"] is False

    cheating = client.post(f"/v1/attempts/{attempt_id}/timer/verify", headers=headers,
                           json={"server_time": timer["server_time"], "hash": timer["hash"], "client_elapsed_seconds": 30})
    assert cheating.status_code == 200
    assert cheating.json()["suspicious"] is True

    tampered = client.post(f"/v1/attempts/{attempt_id}/timer/verify", headers=headers,
                           json={"server_time": "2026-03-10T08:00:00", "hash": timer["hash"]})
    assert tampered.status_code == 422
    assert tampered.json()["detail"]["reason"] == "timestamp_tampered"


def test_timer_poll_after_expiry_submits(client, clock, seeded, exam_day_token):
    headers = bearer(exam_day_token)
    attempt_id = client.post(f"/v1/exams/{seeded.exam.id}/start", headers=headers).json()["attempt_id"]
    clock.advance(minutes=61)
    timer = client.get(f"/v1/attempts/{attempt_id}/timer", headers=headers).json()
    assert timer["is_expired"] is True and timer["formatted_remaining"] == "00:00:00"
    assert client.get(f"/v1/attempts/{attempt_id}", headers=headers).json()["is_submitted"] is True


def test_logout_ends_exam_access(client, seeded, exam_day_token):
    headers = bearer(exam_day_token)
    assert client.post("/v1/auth/logout", headers=headers).status_code == 200
    assert client.get("/v1/exams", headers=headers).status_code == 401


def test_coordinator_workflow(client, clock, seeded, coordinator_token):
    headers = bearer(coordinator_token)
    r = client.post("/v1/coordinator/exams", headers=headers,
                    json={"title": "Pharmacology Final", "academic_year": 2026, "duration_minutes": 120})
    assert r.status_code == 201
    exam_id = r.json()["id"]

    assert client.post(f"/v1/coordinator/exams/{exam_id}/publish", headers=headers).status_code == 409
    r = client.post(f"/v1/coordinator/exams/{exam_id}/questions", headers=headers,
                    json={"text": "Drug of choice?", "choices": ["A", "B", "C"], "correct_index": 2})
    assert r.status_code == 201 and r.json()["order"] == 1
    assert client.post(f"/v1/coordinator/exams/{exam_id}/publish", headers=headers).json()["is_published"] is True

    expires = (clock() + timedelta(hours=4)).isoformat()
    r = client.post(f"/v1/coordinator/exams/{exam_id}/session-credentials", headers=headers,
                    json={"password": "PHARM-DAY", "expires_at": expires})
    assert r.status_code == 201
    credential_id = r.json()["id"]
    r = client.post(f"/v1/coordinator/session-credentials/{credential_id}/deactivate", headers=headers)
    assert r.json()["is_active"] is False

    assert any(e["id"] == exam_id for e in client.get("/v1/coordinator/exams", headers=headers).json())


def test_coordinator_routes_need_role(client, exam_day_token):
    r = client.post("/v1/coordinator/exams", headers=bearer(exam_day_token),
                    json={"title": "Sneaky Exam", "academic_year": 2026, "duration_minutes": 60})
    assert r.status_code == 403


def test_coordinator_enqueues_jobs(client, seeded, coordinator_token, monkeypatch):
    enqueued = []

    class FakeJob:
        def get_id(self):
            return "job-1"

    class FakeQueue:
        def enqueue(self, func, *args, **kwargs):
            enqueued.append((func.__name__, args))
            return FakeJob()

    monkeypatch.setattr("hems.api.coordinator.queue", FakeQueue())
    headers = bearer(coordinator_token)
    r = client.post(f"/v1/coordinator/exams/{seeded.exam.id}/regrade", headers=headers)
    assert r.status_code == 202 and r.json()["job_id"] == "job-1"
    assert client.post("/v1/coordinator/attempts/sweep-expired", headers=headers).status_code == 202
    assert enqueued == [("regrade_exam_job", (seeded.exam.id,)), ("sweep_expired_attempts_job", ())]


def test_question_navigation_requires_exam_day_and_started_exam(db, client, clock, seeded):
    draft = build_exam(db, clock, title="Draft Pathology", publish=False)
    draft_qid = db.scalar(select(Question.id).where(Question.exam_id == draft.id).order_by(Question.question_order))
    seeded_qid = db.scalar(select(Question.id).where(Question.exam_id == seeded.exam.id).order_by(Question.question_order))

    phase1 = client.post("/v1/auth/phase1", json={"email": "student@hems.edu", "password": "SE123" + PHASE1_SUFFIX})
    headers = bearer(phase1.json()["access_token"])
    assert client.get(f"/v1/exams/questions/{draft_qid}/next", headers=headers).status_code == 403
    assert client.get(f"/v1/exams/questions/{seeded_qid}/next", headers=headers).status_code == 403

    r = client.post("/v1/auth/phase2", json={"id_number": "SE123", "password": SESSION_PASSWORD})
    headers = bearer(r.json()["access_token"])
    assert client.get(f"/v1/exams/questions/{seeded_qid}/next", headers=headers).status_code == 404
    assert client.get(f"/v1/exams/questions/{draft_qid}/next", headers=headers).status_code == 404
