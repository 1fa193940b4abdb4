"""
Test suite for the evaluation endpoints.

Tests cover:
- Submission and validation
- Status polling
- Attending overrides and finalization
- Email notification
- Listing, deletion and the explicit processing trigger
"""

import pytest

from app.core.config import settings
from app.core.exceptions import DeliveryError
from app.crud import evaluation_job as job_crud
from app.models.evaluation_job import EvaluationJob, JobStatus
from app.services import evaluation_service

API = "/api/v1/evaluations"


@pytest.fixture
def completed_job_id(client, inline_pipeline, sample_submission):
    """Submit a job and run the pipeline inline so it ends complete"""
    response = client.post(f"{API}/", json=sample_submission)
    assert response.status_code == 202
    return response.json()["job_id"]


@pytest.fixture
def pending_job_id(client, queued_jobs, sample_submission):
    response = client.post(f"{API}/", json=sample_submission)
    assert response.status_code == 202
    return response.json()["job_id"]


@pytest.fixture
def trigger_secret(monkeypatch):
    monkeypatch.setattr(settings, "PROCESSING_TRIGGER_SECRET", "s3cret")
    return {"Authorization": "Bearer s3cret"}


class TestSubmit:
    """Tests for POST /evaluations"""

    def test_submit_creates_pending_job(self, client, db_session, queued_jobs, sample_submission):
        response = client.post(f"{API}/", json=sample_submission)

        assert response.status_code == 202
        data = response.json()
        assert data["status"] == "pending"
        assert queued_jobs == [(data["job_id"], False)]

        job = job_crud.get(db_session, data["job_id"])
        assert job.status == JobStatus.PENDING
        assert job.subject_name == "Dr. Jordan Reyes"

    def test_unknown_procedure_rejected_without_job(self, client, db_session, queued_jobs, sample_submission):
        sample_submission["procedure_id"] = "X"

        response = client.post(f"{API}/", json=sample_submission)

        assert response.status_code == 400
        assert "Unknown procedure" in response.json()["detail"]
        assert db_session.query(EvaluationJob).count() == 0
        assert queued_jobs == []

    @pytest.mark.parametrize("media_ref", ["", "   ", "uploads/never-uploaded.mp3", "/etc/passwd"])
    def test_unresolvable_media_rejected(self, client, db_session, queued_jobs, sample_submission, media_ref):
        sample_submission["media_ref"] = media_ref

        response = client.post(f"{API}/", json=sample_submission)

        assert response.status_code == 400
        assert db_session.query(EvaluationJob).count() == 0

    def test_remote_url_accepted(self, client, queued_jobs, sample_submission):
        sample_submission["media_ref"] = "https://cdn.example.com/cases/0412.mp4"

        response = client.post(f"{API}/", json=sample_submission)

        assert response.status_code == 202

    @pytest.mark.parametrize("missing,detail", [
        ("media_ref", "media_ref is required"),
        ("procedure_id", "procedure_id is required"),
    ])
    def test_missing_required_field_rejected(self, client, db_session, queued_jobs, sample_submission, missing, detail):
        del sample_submission[missing]

        response = client.post(f"{API}/", json=sample_submission)

        assert response.status_code == 400
        assert response.json()["detail"] == detail
        assert db_session.query(EvaluationJob).count() == 0
        assert queued_jobs == []

    def test_wrong_field_type_is_schema_error(self, client, queued_jobs, sample_submission):
        sample_submission["media_ref"] = {"bucket": "recordings"}

        response = client.post(f"{API}/", json=sample_submission)

        assert response.status_code == 422

    def test_identical_submissions_get_distinct_jobs(self, client, queued_jobs, sample_submission):
        first = client.post(f"{API}/", json=sample_submission).json()["job_id"]
        second = client.post(f"{API}/", json=sample_submission).json()["job_id"]

        assert first != second
        assert len(queued_jobs) == 2

    def test_broker_unavailable_still_accepts(self, client, db_session, monkeypatch, sample_submission):
        """The job stays pending for the sweep when queueing fails"""
        monkeypatch.setattr(evaluation_service, "trigger_processing", lambda job_id, allow_retry=False: False)

        response = client.post(f"{API}/", json=sample_submission)

        assert response.status_code == 202
        assert "shortly" in response.json()["message"]
        assert job_crud.get(db_session, response.json()["job_id"]).status == JobStatus.PENDING


class TestStatus:
    """Tests for GET /evaluations/{id}/status"""

    def test_pending_job(self, client, pending_job_id):
        response = client.get(f"{API}/{pending_job_id}/status")

        assert response.status_code == 200
        assert response.json() == {"job_id": pending_job_id, "status": "pending", "result": None, "error": None}

    def test_unknown_job(self, client):
        response = client.get(f"{API}/missing/status")

        assert response.status_code == 404
        assert response.json()["detail"] == "Job missing not found"

    def test_complete_job_returns_result(self, client, completed_job_id, lap_chole):
        data = client.get(f"{API}/{completed_job_id}/status").json()

        assert data["status"] == "complete"
        assert data["error"] is None
        assert list(data["result"]["steps"]) == lap_chole.step_keys
        assert data["result"]["is_finalized"] is False

    def test_polling_is_read_only(self, client, completed_job_id):
        first = client.get(f"{API}/{completed_job_id}/status").json()
        second = client.get(f"{API}/{completed_job_id}/status").json()

        assert first == second

    def test_failed_job_returns_error(self, client, inline_pipeline, fake_transcriber, sample_submission):
        fake_transcriber.transcript = "   "
        job_id = client.post(f"{API}/", json=sample_submission).json()["job_id"]

        data = client.get(f"{API}/{job_id}/status").json()

        assert data["status"] == "failed"
        assert data["error"] == "empty transcription"
        assert data["result"] is None

    def test_full_record(self, client, completed_job_id, media_ref):
        data = client.get(f"{API}/{completed_job_id}").json()

        assert data["id"] == completed_job_id
        assert data["source_ref"] == media_ref
        assert data["attempts"] == 1


class TestOverride:
    """Tests for PUT /evaluations/{id}/override"""

    def test_override_keeps_ai_values(self, client, completed_job_id):
        response = client.put(f"{API}/{completed_job_id}/override", json={
            "steps": {"portPlacement": {"attending_score": 3, "attending_comments": "Port too lateral."}},
            "attending_case_difficulty": 3,
            "attending_additional_comments": "Needs more reps on access.",
        })

        assert response.status_code == 200
        result = response.json()["result"]
        step = result["steps"]["portPlacement"]
        assert step["score"] == 4
        assert step["attending_score"] == 3
        assert step["attending_comments"] == "Port too lateral."
        assert "attending_time" not in step
        assert result["case_difficulty"] == 2
        assert result["attending_case_difficulty"] == 3
        assert result["attending_additional_comments"] == "Needs more reps on access."

    def test_override_before_complete_conflicts(self, client, pending_job_id):
        response = client.put(f"{API}/{pending_job_id}/override", json={"attending_case_difficulty": 1})

        assert response.status_code == 409

    def test_unknown_step_rejected(self, client, completed_job_id):
        response = client.put(f"{API}/{completed_job_id}/override", json={
            "steps": {"robotDocking": {"attending_score": 2}},
        })

        assert response.status_code == 400
        assert "robotDocking" in response.json()["detail"]

    @pytest.mark.parametrize("body", [
        {},
        {"steps": {"portPlacement": {"attending_score": 7}}},
        {"attending_case_difficulty": 4},
    ])
    def test_invalid_override_is_schema_error(self, client, completed_job_id, body):
        response = client.put(f"{API}/{completed_job_id}/override", json=body)

        assert response.status_code == 422

    def test_override_unknown_job(self, client):
        response = client.put(f"{API}/missing/override", json={"attending_case_difficulty": 1})

        assert response.status_code == 404


class TestFinalize:
    """Tests for POST /evaluations/{id}/finalize"""

    def test_finalize_complete_job(self, client, completed_job_id):
        response = client.post(f"{API}/{completed_job_id}/finalize")

        assert response.status_code == 200
        result = response.json()["result"]
        assert result["is_finalized"] is True
        assert result["finalized_at"]

    def test_finalize_twice_conflicts(self, client, completed_job_id):
        client.post(f"{API}/{completed_job_id}/finalize")

        response = client.post(f"{API}/{completed_job_id}/finalize")

        assert response.status_code == 409

    def test_finalized_job_cannot_be_edited(self, client, completed_job_id):
        client.put(f"{API}/{completed_job_id}/override", json={"attending_case_difficulty": 1})
        client.post(f"{API}/{completed_job_id}/finalize")

        response = client.put(f"{API}/{completed_job_id}/override", json={"attending_case_difficulty": 3})

        assert response.status_code == 409
        result = client.get(f"{API}/{completed_job_id}/status").json()["result"]
        assert result["attending_case_difficulty"] == 1

    def test_finalize_pending_job_conflicts(self, client, pending_job_id):
        assert client.post(f"{API}/{pending_job_id}/finalize").status_code == 409


class TestNotify:
    """Tests for POST /evaluations/{id}/notify"""

    def test_notify_requires_finalized(self, client, completed_job_id, fake_email):
        response = client.post(f"{API}/{completed_job_id}/notify", json={"recipient": "attending@hospital.org"})

        assert response.status_code == 412
        assert fake_email.sent == []

    def test_notify_finalized_job(self, client, completed_job_id, fake_email):
        client.post(f"{API}/{completed_job_id}/finalize")

        response = client.post(f"{API}/{completed_job_id}/notify", json={"recipient": "attending@hospital.org"})

        assert response.status_code == 200
        assert response.json()["recipient"] == "attending@hospital.org"
        assert fake_email.sent == [("attending@hospital.org", completed_job_id, "lap-cholecystectomy")]

    def test_delivery_failure_is_bad_gateway(self, client, completed_job_id, fake_email):
        client.post(f"{API}/{completed_job_id}/finalize")
        fake_email.error = DeliveryError("Failed to send email: MessageRejected")

        response = client.post(f"{API}/{completed_job_id}/notify", json={"recipient": "attending@hospital.org"})

        assert response.status_code == 502

    def test_invalid_recipient(self, client, completed_job_id):
        response = client.post(f"{API}/{completed_job_id}/notify", json={"recipient": "not-an-email"})

        assert response.status_code == 422

    def test_notify_unknown_job(self, client):
        response = client.post(f"{API}/missing/notify", json={"recipient": "attending@hospital.org"})

        assert response.status_code == 404


class TestListAndDelete:
    """Tests for GET /evaluations and DELETE /evaluations/{id}"""

    def test_lists_only_completed(self, client, inline_pipeline, fake_transcriber, sample_submission):
        done = client.post(f"{API}/", json=sample_submission).json()["job_id"]
        fake_transcriber.transcript = ""
        client.post(f"{API}/", json=sample_submission)

        data = client.get(f"{API}/").json()

        assert [row["id"] for row in data] == [done]
        assert data[0]["procedure_name"] == "Laparoscopic Cholecystectomy"
        assert data[0]["is_finalized"] is False

    def test_pagination(self, client, inline_pipeline, sample_submission):
        for _ in range(3):
            client.post(f"{API}/", json=sample_submission)

        assert len(client.get(f"{API}/", params={"limit": 2}).json()) == 2
        assert len(client.get(f"{API}/", params={"skip": 2}).json()) == 1
        assert client.get(f"{API}/", params={"limit": 500}).status_code == 422

    def test_delete(self, client, pending_job_id):
        response = client.delete(f"{API}/{pending_job_id}")

        assert response.status_code == 204
        assert client.get(f"{API}/{pending_job_id}").status_code == 404
        assert client.delete(f"{API}/{pending_job_id}").status_code == 404


class TestProcessTrigger:
    """Tests for POST /evaluations/{id}/process"""

    def test_disabled_without_secret(self, client, monkeypatch, pending_job_id):
        monkeypatch.setattr(settings, "PROCESSING_TRIGGER_SECRET", "")

        response = client.post(f"{API}/{pending_job_id}/process", headers={"Authorization": "Bearer anything"})

        assert response.status_code == 503

    @pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer wrong"}])
    def test_rejects_bad_secret(self, client, trigger_secret, pending_job_id, headers):
        response = client.post(f"{API}/{pending_job_id}/process", headers=headers)

        assert response.status_code == 401

    def test_queues_pending_job(self, client, trigger_secret, queued_jobs, pending_job_id):
        response = client.post(f"{API}/{pending_job_id}/process", headers=trigger_secret)

        assert response.status_code == 202
        assert response.json()["queued"] is True
        assert queued_jobs[-1] == (pending_job_id, False)

    def test_retry_failed_job(self, client, db_session, trigger_secret, queued_jobs, pending_job_id):
        job_crud.claim(db_session, pending_job_id)
        job_crud.update_status(db_session, pending_job_id, JobStatus.FAILED, error="Deepgram request timed out")

        response = client.post(f"{API}/{pending_job_id}/process", params={"retry": "true"}, headers=trigger_secret)

        assert response.status_code == 202
        assert response.json()["queued"] is True
        assert queued_jobs[-1] == (pending_job_id, True)

    def test_retry_requires_failed_job(self, client, trigger_secret, queued_jobs, pending_job_id):
        response = client.post(f"{API}/{pending_job_id}/process", params={"retry": "true"}, headers=trigger_secret)

        assert response.status_code == 409
        assert len(queued_jobs) == 1

    def test_complete_job_is_noop(self, client, trigger_secret, completed_job_id):
        response = client.post(f"{API}/{completed_job_id}/process", headers=trigger_secret)

        assert response.status_code == 202
        assert response.json()["queued"] is False
        assert "complete" in response.json()["message"]

    def test_retry_runs_pipeline_again(self, client, trigger_secret, inline_pipeline, fake_transcriber, sample_submission):
        fake_transcriber.transcript = ""
        job_id = client.post(f"{API}/", json=sample_submission).json()["job_id"]
        assert client.get(f"{API}/{job_id}/status").json()["status"] == "failed"

        fake_transcriber.transcript = "[Speaker 0] (0.00s): Clip the cystic duct."
        client.post(f"{API}/{job_id}/process", params={"retry": "true"}, headers=trigger_secret)

        data = client.get(f"{API}/{job_id}/status").json()
        assert data["status"] == "complete"
        assert data["error"] is None

    def test_unknown_job(self, client, trigger_secret):
        assert client.post(f"{API}/missing/process", headers=trigger_secret).status_code == 404
