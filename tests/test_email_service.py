"""
Tests for the SES email service and report rendering.
"""

import pytest
from botocore.exceptions import ClientError

from app.core.exceptions import DeliveryError
from app.models.evaluation_job import EvaluationJob, JobStatus
from app.services.email_service import EmailService
from conftest import build_payload


class FakeSES:
    def __init__(self, error=None):
        self.error = error
        self.sent = []

    def send_email(self, **kwargs):
        if self.error is not None:
            raise self.error
        self.sent.append(kwargs)
        return {"MessageId": "ses-123"}


@pytest.fixture
def finalized_job(lap_chole):
    result = build_payload(lap_chole)
    result["steps"]["portPlacement"].update(attending_score=2, attending_comments="Port <too> lateral")
    result.update(
        transcription="[Speaker 0] (0.00s): Port in.\n[Speaker 1] (2.00s): Okay.",
        subject_name="Dr. Jordan Reyes",
        attending_case_difficulty=3,
        is_finalized=True,
    )
    return EvaluationJob(
        id="job-1",
        status=JobStatus.COMPLETE,
        source_ref="uploads/x.mp3",
        procedure_id=lap_chole.procedure_id,
        result=result,
    )


class TestEmailService:
    """Tests for sending and rendering"""

    def test_send_report(self, finalized_job, lap_chole):
        ses = FakeSES()

        message_id = EmailService(ses_client=ses).send_evaluation_report("attending@hospital.org", finalized_job, lap_chole)

        assert message_id == "ses-123"
        sent = ses.sent[0]
        assert sent["Destination"] == {"ToAddresses": ["attending@hospital.org"]}
        assert sent["Message"]["Subject"]["Data"] == "Evaluation Results for Laparoscopic Cholecystectomy"

    def test_html_shows_ai_and_attending_values(self, finalized_job, lap_chole):
        html = EmailService(ses_client=FakeSES()).build_report_html(finalized_job, lap_chole)

        assert "Port Placement" in html
        assert "Port &lt;too&gt; lateral" in html
        assert "Port <too> lateral" not in html
        assert "Attending difficulty" in html
        assert "[Speaker 0] (0.00s): Port in.<br>" in html

    def test_text_fallback(self, finalized_job, lap_chole):
        text = EmailService(ses_client=FakeSES()).build_report_text(finalized_job, lap_chole)

        assert "Resident: Dr. Jordan Reyes" in text
        assert "- Port Placement: score 4/5" in text
        assert "Attending: score 2/5" in text
        assert text.endswith("[Speaker 1] (2.00s): Okay.")

    def test_ses_rejection_is_delivery_error(self, finalized_job, lap_chole):
        error = ClientError(
            {"Error": {"Code": "MessageRejected", "Message": "Email address is not verified."}},
            "SendEmail",
        )
        service = EmailService(ses_client=FakeSES(error=error))

        with pytest.raises(DeliveryError) as exc_info:
            service.send_evaluation_report("attending@hospital.org", finalized_job, lap_chole)

        assert exc_info.value.status_code == 502
        assert "MessageRejected" in exc_info.value.message
