import json
import logging
from typing import Dict, Optional, Protocol
import openai
from openai import OpenAI

from app.core.config import settings
from app.core.exceptions import EvaluationError, SchemaMismatchError
from app.services.rubric_catalog import Rubric

logger = logging.getLogger(__name__)


class Evaluator(Protocol):
    def evaluate(self, transcript: str, rubric: Rubric, context: Optional[str] = None) -> Dict:
        ...


def _get_schema_example(rubric: Rubric) -> str:
    """JSON shape the model must return, with one entry per rubric step"""
    example = {
        "steps": {
            step.key: {"score": 4, "time": "8 minutes 30 seconds", "comments": f"Feedback on {step.name}"}
            for step in rubric.steps
        },
        "case_difficulty": 2,
        "additional_comments": "Concise summary of the resident's overall performance.",
    }
    return json.dumps(example, indent=2)


def build_prompts(transcript: str, rubric: Rubric, context: Optional[str] = None):
    """Return (system_prompt, user_prompt) for one evaluation request."""
    step_lines = "\n".join(
        f"- {step.key}: {step.name}" + (f" (goal time {step.goal_time})" if step.goal_time else "")
        for step in rubric.steps
    )
    difficulty_lines = "\n".join(
        f"- {level}: {text}" for level, text in sorted(rubric.difficulty_levels.items())
    )

    system_prompt = f"""You are an expert surgical education analyst. Your task is to provide a
detailed, constructive evaluation of a resident's performance from a transcript
of an operation.

IMPORTANT INSTRUCTIONS:
1. Determine which speaker is the resident (learner) and which is the attending
   (supervising surgeon). Evaluate the resident's actions.
2. If the transcript is too short or lacks meaningful surgical dialogue, refuse to
   evaluate: set "case_difficulty" to 0, every step score to 0, and explain why in
   "additional_comments".
3. For EACH procedure step below:
   - If the step WAS performed: "score" 1-5, "time" as "X minutes Y seconds",
     "comments" with constructive feedback.
   - If the step was NOT performed or mentioned: "score" 0, "time" "N/A",
     "comments" "This step was not performed or mentioned."
4. "case_difficulty" is an integer 1-3 using the scale below.
5. Use exactly the step keys listed. Do not add or rename steps.

PROCEDURE STEPS:
{step_lines}

CASE DIFFICULTY SCALE:
{difficulty_lines}

Return ONLY valid JSON matching this exact structure:
{_get_schema_example(rubric)}"""

    context_section = ""
    if context:
        context_section = f"\nADDITIONAL CONTEXT:\n{context}\n"

    user_prompt = f"""Evaluate the resident in this recording.

PROCEDURE: {rubric.name}
{context_section}
TRANSCRIPT WITH SPEAKER LABELS:
{transcript}

Generate the JSON evaluation following the exact schema structure provided."""

    return system_prompt, user_prompt


def attempt_timeout(total: float, max_retries: int) -> float:
    """Per-request timeout so that all SDK attempts together fit in `total` seconds."""
    return total / (max_retries + 1)


class OpenAIEvaluator:
    """
    Evaluator backed by OpenAI chat completions in JSON mode.

    Returns the parsed JSON object as-is; range and step-key checks are done
    by the orchestrator against the rubric.
    """

    def __init__(self, client: Optional[OpenAI] = None, model: Optional[str] = None, temperature: Optional[float] = None):
        self.client = client or OpenAI(
            api_key=settings.OPENAI_API_KEY,
            timeout=attempt_timeout(settings.EVALUATION_TIMEOUT_SECONDS, settings.OPENAI_MAX_RETRIES),
            max_retries=settings.OPENAI_MAX_RETRIES,
        )
        self.model = model or settings.OPENAI_MODEL
        self.temperature = settings.OPENAI_TEMPERATURE if temperature is None else temperature

    def evaluate(self, transcript: str, rubric: Rubric, context: Optional[str] = None) -> Dict:
        """
        Score `transcript` against `rubric`.

        Raises:
            EvaluationError: The API call failed or returned nothing
            SchemaMismatchError: The response is not the expected JSON object
        """
        system_prompt, user_prompt = build_prompts(transcript, rubric, context)
        logger.info(f"Starting evaluation for procedure {rubric.procedure_id}")

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt}
                ],
                response_format={"type": "json_object"},
                temperature=self.temperature
            )
        except openai.APITimeoutError:
            raise EvaluationError("OpenAI request timed out")
        except openai.APIError as e:
            raise EvaluationError(f"OpenAI request failed: {e}")

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise EvaluationError("Empty response from OpenAI")

        try:
            payload = json.loads(content)
        except json.JSONDecodeError as e:
            raise SchemaMismatchError(f"Evaluator returned malformed JSON: {e}")

        if not isinstance(payload, dict) or not isinstance(payload.get("steps"), dict):
            raise SchemaMismatchError("Evaluator response is missing the 'steps' object")

        logger.info(f"Evaluation complete for procedure {rubric.procedure_id}")
        return payload
