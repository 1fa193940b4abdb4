"""
Pytest configuration and fixtures for testing.

This file provides reusable test fixtures for:
- Database setup/teardown
- FastAPI test client with collaborator overrides
- Fake transcriber, evaluator and email service
- Running the pipeline inline instead of through Celery
"""

import io
import threading

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base, get_db
from app.core.deps import get_catalog, get_email, get_storage_backend
from app.core.storage import LocalStorage
from app.models.evaluation_job import EvaluationJob  # noqa: F401
from app.services import evaluation_service
from app.services.orchestrator import JobOrchestrator
from app.services.rubric_catalog import get_rubric_catalog
from main import app


# Use in-memory SQLite for testing (fast, isolated)
SQLALCHEMY_TEST_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

SAMPLE_TRANSCRIPT = (
    "[Speaker 0] (0.00s): Okay, go ahead and place the first port.\n"
    "[Speaker 1] (4.12s): Placing the umbilical port now, entering under direct vision.\n"
    "[Speaker 0] (62.50s): Good. Now retract the fundus and open the peritoneum over Calot's."
)


class FakeTranscriber:
    """Returns `transcript`, or raises `error`; records every call."""

    def __init__(self, transcript=SAMPLE_TRANSCRIPT):
        self.transcript = transcript
        self.error = None
        self.block = None
        self.calls = []
        self._lock = threading.Lock()

    def transcribe(self, media_ref):
        with self._lock:
            self.calls.append(media_ref)
        if self.block is not None:
            self.block.wait(5)
        if self.error is not None:
            raise self.error
        return self.transcript


class FakeEvaluator:
    """Scores every rubric step unless `payload` or `error` is set."""

    def __init__(self):
        self.payload = None
        self.error = None
        self.block = None
        self.calls = []

    def evaluate(self, transcript, rubric, context=None):
        self.calls.append((transcript, rubric.procedure_id, context))
        if self.block is not None:
            self.block.wait(5)
        if self.error is not None:
            raise self.error
        if self.payload is not None:
            return self.payload
        return build_payload(rubric)


class FakeEmailService:
    def __init__(self):
        self.sent = []
        self.error = None

    def send_evaluation_report(self, recipient, job, rubric):
        if self.error is not None:
            raise self.error
        self.sent.append((recipient, job.id, rubric.procedure_id))
        return f"msg-{len(self.sent)}"


def build_payload(rubric, score=4, case_difficulty=2):
    return {
        "steps": {
            step.key: {"score": score, "time": "5 minutes 0 seconds", "comments": f"Solid {step.name.lower()}."}
            for step in rubric.steps
        },
        "case_difficulty": case_difficulty,
        "additional_comments": "Resident progressed steadily with appropriate guidance.",
    }


@pytest.fixture
def db_session():
    """
    Create a fresh database for each test.
    """
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def catalog():
    return get_rubric_catalog()


@pytest.fixture
def lap_chole(catalog):
    return catalog.get_rubric("lap-cholecystectomy")


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(str(tmp_path / "uploads"))


@pytest.fixture
def media_ref(storage):
    """A recording already stored through the local backend"""
    return storage.upload_file(io.BytesIO(b"ID3 fake audio bytes"), "case recording.mp3")


@pytest.fixture
def fake_transcriber():
    return FakeTranscriber()


@pytest.fixture
def fake_evaluator():
    return FakeEvaluator()


@pytest.fixture
def fake_email():
    return FakeEmailService()


@pytest.fixture
def orchestrator(db_session, catalog, fake_transcriber, fake_evaluator):
    return JobOrchestrator(db_session, catalog, fake_transcriber, fake_evaluator)


@pytest.fixture
def queued_jobs(monkeypatch):
    """
    Replace Celery queueing with a recorder.
    Jobs stay pending; each call is recorded as (job_id, allow_retry).
    """
    calls = []

    def fake_trigger(job_id, allow_retry=False):
        calls.append((job_id, allow_retry))
        return True

    monkeypatch.setattr(evaluation_service, "trigger_processing", fake_trigger)
    return calls


@pytest.fixture
def inline_pipeline(monkeypatch, db_session, orchestrator):
    """
    Run the orchestrator synchronously whenever processing is triggered,
    using the fake transcriber/evaluator.
    """
    def run_now(job_id, allow_retry=False):
        orchestrator.process_job(job_id, allow_retry=allow_retry)
        return True

    monkeypatch.setattr(evaluation_service, "trigger_processing", run_now)
    return orchestrator


@pytest.fixture
def client(db_session, catalog, storage, fake_email):
    """
    FastAPI test client with overridden database and collaborator dependencies.
    """
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_catalog] = lambda: catalog
    app.dependency_overrides[get_storage_backend] = lambda: storage
    app.dependency_overrides[get_email] = lambda: fake_email

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def sample_submission(media_ref):
    """Sample submission payload for testing"""
    return {
        "media_ref": media_ref,
        "procedure_id": "lap-cholecystectomy",
        "subject_name": "Dr. Jordan Reyes",
        "additional_context": "PGY-3 resident, second lap chole this rotation.",
    }
