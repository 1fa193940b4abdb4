"""
AWS SES email delivery for finalized evaluation reports.

Renders the merged result (AI values and attending overrides side by side)
as HTML plus a plain-text fallback.
"""

import logging
from html import escape
from typing import Dict, Optional
import boto3
from botocore.exceptions import ClientError, BotoCoreError
from app.core.config import settings
from app.core.exceptions import DeliveryError
from app.models.evaluation_job import EvaluationJob
from app.services.rubric_catalog import Rubric

logger = logging.getLogger(__name__)


def _display(value, default: str = "-") -> str:
    if value is None or value == "":
        return default
    return str(value)


def _difficulty_label(level: Optional[int], rubric: Rubric) -> str:
    if level is None:
        return "-"
    if level == 0:
        return "0 (evaluation declined)"
    description = rubric.difficulty_levels.get(level)
    return f"{level} - {description}" if description else str(level)


class EmailService:
    """
    Service for sending evaluation reports via AWS SES.
    """

    def __init__(self, ses_client=None):
        """Initialize AWS SES client"""
        if ses_client is not None:
            self.ses_client = ses_client
            return

        session_kwargs = {
            'region_name': settings.AWS_REGION,
        }

        # Add credentials if provided (otherwise uses IAM role)
        if settings.AWS_ACCESS_KEY_ID and settings.AWS_SECRET_ACCESS_KEY:
            session_kwargs['aws_access_key_id'] = settings.AWS_ACCESS_KEY_ID
            session_kwargs['aws_secret_access_key'] = settings.AWS_SECRET_ACCESS_KEY

        self.ses_client = boto3.client('ses', **session_kwargs)

    def send_evaluation_report(self, recipient: str, job: EvaluationJob, rubric: Rubric) -> str:
        """
        Email the finalized evaluation of `job` to `recipient`.

        Args:
            recipient: Destination email address
            job: Finalized job whose result is rendered
            rubric: Rubric for the job's procedure (step display names)

        Returns:
            str: SES MessageId

        Raises:
            DeliveryError: If SES rejects or cannot send the message
        """
        subject = f"Evaluation Results for {rubric.name}"
        html_body = self.build_report_html(job, rubric)
        text_body = self.build_report_text(job, rubric)

        try:
            response = self.ses_client.send_email(
                Source=f"{settings.AWS_SES_FROM_NAME} <{settings.AWS_SES_FROM_EMAIL}>",
                Destination={'ToAddresses': [recipient]},
                Message={
                    'Subject': {'Data': subject, 'Charset': 'UTF-8'},
                    'Body': {
                        'Html': {'Data': html_body, 'Charset': 'UTF-8'},
                        'Text': {'Data': text_body, 'Charset': 'UTF-8'}
                    }
                }
            )
        except ClientError as e:
            error_code = e.response['Error']['Code']
            error_message = e.response['Error']['Message']
            logger.error(f"AWS SES ClientError: {error_code} - {error_message}")
            raise DeliveryError(f"Email delivery failed: {error_code}")
        except BotoCoreError as e:
            logger.error(f"AWS BotoCoreError: {str(e)}")
            raise DeliveryError("Email delivery failed")

        message_id = response.get('MessageId', '')
        logger.info(f"Evaluation report for job {job.id} sent to {recipient} (MessageId: {message_id})")
        return message_id

    def _step_rows(self, result: Dict, rubric: Rubric):
        steps = result.get("steps", {})
        for step in rubric.steps:
            yield step, steps.get(step.key, {})

    def build_report_html(self, job: EvaluationJob, rubric: Rubric) -> str:
        result = job.result or {}
        subject_line = ""
        if result.get("subject_name"):
            subject_line = f'<p style="margin: 0 0 8px 0; color: #666666;">Resident: <strong>{escape(result["subject_name"])}</strong></p>'

        step_sections = []
        for step, values in self._step_rows(result, rubric):
            attending = ""
            if any(k in values for k in ("attending_score", "attending_time", "attending_comments")):
                attending = f"""
                <p style="margin: 8px 0 0 0; color: #4F46E5;"><strong>Attending:</strong>
                    score {escape(_display(values.get("attending_score")))}/5,
                    time {escape(_display(values.get("attending_time")))}<br>
                    {escape(_display(values.get("attending_comments"), ""))}</p>"""
            step_sections.append(f"""
            <div style="border-top: 1px solid #e5e7eb; padding: 12px 0;">
                <h3 style="margin: 0 0 6px 0; color: #333333; font-size: 16px;">{escape(step.name)}</h3>
                <p style="margin: 0; color: #666666;"><strong>AI:</strong>
                    score {escape(_display(values.get("score")))}/5,
                    time {escape(_display(values.get("time"), "N/A"))}<br>
                    {escape(_display(values.get("comments"), ""))}</p>{attending}
            </div>""")

        attending_overall = ""
        if "attending_case_difficulty" in result or "attending_additional_comments" in result:
            attending_overall = f"""
            <p style="margin: 8px 0; color: #4F46E5;"><strong>Attending difficulty:</strong>
                {escape(_difficulty_label(result.get("attending_case_difficulty"), rubric))}</p>
            <p style="margin: 8px 0; color: #4F46E5;"><strong>Attending comments:</strong>
                {escape(_display(result.get("attending_additional_comments"), ""))}</p>"""

        transcription = escape(result.get("transcription", "")).replace("\n", "<br>")

        return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="UTF-8">
    <title>Evaluation Results</title>
</head>
<body style="margin: 0; padding: 0; font-family: Arial, sans-serif; background-color: #f4f4f4;">
    <div style="max-width: 640px; margin: 40px auto; background-color: #ffffff; border-radius: 8px; padding: 32px;">
        <h1 style="margin: 0 0 12px 0; color: #333333; font-size: 24px;">{escape(rubric.name)}</h1>
        {subject_line}
        <h2 style="margin: 24px 0 8px 0; color: #333333; font-size: 18px;">Overall Assessment</h2>
        <p style="margin: 8px 0; color: #666666;"><strong>Case difficulty:</strong>
            {escape(_difficulty_label(result.get("case_difficulty"), rubric))}</p>
        <p style="margin: 8px 0; color: #666666;">{escape(_display(result.get("additional_comments"), ""))}</p>
        {attending_overall}
        <h2 style="margin: 24px 0 8px 0; color: #333333; font-size: 18px;">Procedure Steps</h2>
        {"".join(step_sections)}
        <h2 style="margin: 24px 0 8px 0; color: #333333; font-size: 18px;">Transcription</h2>
        <div style="background-color: #f8f9fa; border-radius: 8px; padding: 16px; color: #555555; font-size: 13px;">
            {transcription}
        </div>
    </div>
</body>
</html>
"""

    def build_report_text(self, job: EvaluationJob, rubric: Rubric) -> str:
        """Plain text version of the report (fallback)"""
        result = job.result or {}
        lines = [f"Evaluation Results: {rubric.name}"]
        if result.get("subject_name"):
            lines.append(f"Resident: {result['subject_name']}")
        lines += [
            "",
            "OVERALL ASSESSMENT",
            f"Case difficulty: {_difficulty_label(result.get('case_difficulty'), rubric)}",
            _display(result.get("additional_comments"), ""),
        ]
        if "attending_case_difficulty" in result:
            lines.append(f"Attending difficulty: {_difficulty_label(result.get('attending_case_difficulty'), rubric)}")
        if "attending_additional_comments" in result:
            lines.append(f"Attending comments: {result['attending_additional_comments']}")

        lines += ["", "PROCEDURE STEPS"]
        for step, values in self._step_rows(result, rubric):
            lines.append(f"- {step.name}: score {_display(values.get('score'))}/5, time {_display(values.get('time'), 'N/A')}")
            if values.get("comments"):
                lines.append(f"  {values['comments']}")
            if "attending_score" in values or "attending_comments" in values or "attending_time" in values:
                lines.append(
                    f"  Attending: score {_display(values.get('attending_score'))}/5, "
                    f"time {_display(values.get('attending_time'))} {_display(values.get('attending_comments'), '')}".rstrip()
                )

        lines += ["", "TRANSCRIPTION", result.get("transcription", "")]
        return "\n".join(lines)


_email_service: Optional[EmailService] = None


def get_email_service() -> EmailService:
    """Shared EmailService, created on first use."""
    global _email_service
    if _email_service is None:
        _email_service = EmailService()
    return _email_service
