"""
Diagnostic annotation of incorrect attempts.

Diagnoses are qualitative and best-effort: they never influence proficiency
scores, and any failure here (timeout, service error, malformed response)
degrades to "no diagnostics" instead of failing the session.

Annotators:
- NullAnnotator: always returns nothing
- GeminiDiagnosticAnnotator: asks a Gemini model directly
- HttpDiagnosticAnnotator: delegates to a remote reasoning service
"""

from __future__ import annotations

import asyncio
import json
import re
from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from varc_analytics.core.errors import DiagnosticServiceError
from varc_analytics.integrations.reasoning_client import ReasoningServiceClient
from varc_analytics.pipeline.models import Attempt, AttemptDiagnosis


# ========================================
# Response schema
# ========================================


class DiagnosisPayload(BaseModel):
    """One diagnosis as returned by a model or service."""

    attempt_id: str = Field(..., min_length=1)
    failure_tags: list[str] = Field(default_factory=list)
    description: str = ""


class DiagnosisResponse(BaseModel):
    """Envelope shared by the Gemini and HTTP annotators."""

    diagnostics: list[DiagnosisPayload] = Field(default_factory=list)

    def to_diagnoses(self) -> list[AttemptDiagnosis]:
        return [
            AttemptDiagnosis(
                attempt_id=d.attempt_id,
                failure_tags=tuple(d.failure_tags),
                description=d.description,
            )
            for d in self.diagnostics
        ]


def parse_diagnosis_response(data: Any) -> list[AttemptDiagnosis]:
    """Validate a decoded response body, raising DiagnosticServiceError if malformed."""
    try:
        return DiagnosisResponse.model_validate(data).to_diagnoses()
    except ValidationError as e:
        raise DiagnosticServiceError(f"Malformed diagnosis response: {e}") from e


def attempt_to_payload(attempt: Attempt) -> dict[str, Any]:
    """Serialise the context a diagnoser needs for one attempt."""
    return {
        "attempt_id": attempt.attempt_id,
        "question_id": attempt.question_id,
        "question_type": attempt.question_type,
        "genre": attempt.genre,
        "question_text": attempt.question_text,
        "options": attempt.options,
        "correct_answer": attempt.correct_answer,
        "user_answer": attempt.user_answer,
        "confidence_level": attempt.confidence_level,
        "time_spent_seconds": attempt.time_spent_seconds,
        "reasoning_node_ids": list(attempt.reasoning_node_ids),
    }


# ========================================
# Annotators
# ========================================


@runtime_checkable
class Annotator(Protocol):
    """Capability: explain why attempts were answered incorrectly."""

    async def annotate(self, attempts: Sequence[Attempt]) -> list[AttemptDiagnosis]: ...


class NullAnnotator:
    """Annotator used when no diagnosis backend is configured."""

    async def annotate(self, attempts: Sequence[Attempt]) -> list[AttemptDiagnosis]:
        return []


class GeminiDiagnosticAnnotator:
    """Diagnose incorrect attempts with a Gemini model."""

    def __init__(self, api_key: str | None, model: str = "gemini-1.5-flash"):
        self.api_key = api_key
        self.model = model
        self._client = None

    @property
    def client(self):
        """Lazy-load Gemini client."""
        if self._client is None:
            import google.generativeai as genai
            genai.configure(api_key=self.api_key)
            self._client = genai.GenerativeModel(
                model_name=self.model,
                system_instruction=self._get_system_prompt(),
            )
        return self._client

    def _get_system_prompt(self) -> str:
        return """You are an expert CAT VARC diagnostician.

For each incorrect attempt, identify the ONE dominant reasoning failure behind the wrong answer
(for example: misreading scope, over-weighting examples, ignoring paragraph function,
premature elimination, surface-level paraphrasing).

Anchor the diagnosis to the question type. Be specific and actionable; never say "practice more"."""

    def _build_prompt(self, attempts: Sequence[Attempt]) -> str:
        prompt_parts = [
            "Diagnose these incorrect attempts.",
            f"\nATTEMPTS:\n{json.dumps([attempt_to_payload(a) for a in attempts], indent=2, default=str)}",
            """
Return JSON only:
{
  "diagnostics": [
    {"attempt_id": "<id from input>", "failure_tags": ["short_snake_case_tag"], "description": "..."}
  ]
}""",
        ]
        return "\n".join(prompt_parts)

    def _generate(self, prompt: str) -> str:
        response = self.client.generate_content(
            prompt,
            generation_config={
                "temperature": 0.3,
                "max_output_tokens": 2048,
            },
        )
        if response.text:
            return response.text
        raise DiagnosticServiceError("Empty response from diagnosis model")

    async def annotate(self, attempts: Sequence[Attempt]) -> list[AttemptDiagnosis]:
        if not attempts:
            return []
        if not self.api_key:
            raise DiagnosticServiceError("Gemini API key not configured")

        # The SDK call is synchronous; keep it off the event loop
        text = await asyncio.to_thread(self._generate, self._build_prompt(attempts))

        json_match = re.search(r"\{[\s\S]*\}", text)
        if not json_match:
            raise DiagnosticServiceError("No JSON found in diagnosis response")
        try:
            data = json.loads(json_match.group(0))
        except json.JSONDecodeError as e:
            raise DiagnosticServiceError(f"Diagnosis response is not valid JSON: {e}") from e

        return parse_diagnosis_response(data)


class HttpDiagnosticAnnotator:
    """Diagnose incorrect attempts through a remote reasoning service."""

    def __init__(self, client: ReasoningServiceClient, taxonomy_version: str | None = None):
        self.client = client
        self.taxonomy_version = taxonomy_version

    async def annotate(self, attempts: Sequence[Attempt]) -> list[AttemptDiagnosis]:
        if not attempts:
            return []
        data = await self.client.diagnose(
            {
                "taxonomy_version": self.taxonomy_version,
                "attempts": [attempt_to_payload(a) for a in attempts],
            }
        )
        return parse_diagnosis_response(data)

    async def close(self) -> None:
        await self.client.close()


def build_annotator(settings: Any, taxonomy_version: str | None = None) -> Annotator:
    """Create the annotator selected by ``settings.diagnostics_provider``."""
    provider = settings.diagnostics_provider

    if provider == "gemini":
        if not settings.has_ai_configured():
            logger.warning("diagnostics_provider=gemini but GEMINI_API_KEY is not set; diagnostics disabled")
            return NullAnnotator()
        return GeminiDiagnosticAnnotator(api_key=settings.gemini_api_key, model=settings.diagnostics_model)

    if provider == "http":
        if not settings.diagnostics_service_url:
            logger.warning("diagnostics_provider=http but DIAGNOSTICS_SERVICE_URL is not set; diagnostics disabled")
            return NullAnnotator()
        client = ReasoningServiceClient(
            api_url=settings.diagnostics_service_url,
            api_key=settings.diagnostics_api_key,
            timeout_seconds=settings.diagnostics_timeout_seconds,
        )
        return HttpDiagnosticAnnotator(client, taxonomy_version=taxonomy_version)

    return NullAnnotator()


# ========================================
# Phase runner
# ========================================


async def run_diagnostics(
    annotator: Annotator,
    attempts: Sequence[Attempt],
    timeout: float,
) -> list[AttemptDiagnosis]:
    """
    Diagnose the incorrect attempts of a session under a deadline.

    Never raises for annotator failures: timeouts, service errors and
    malformed responses are logged and yield an empty list. Diagnoses for
    attempt ids that were not sent are dropped, as are duplicates.

    Args:
        annotator: Diagnosis backend
        attempts: All attempts of the session (correct ones are filtered out)
        timeout: Deadline in seconds for the whole annotator call

    Returns:
        Diagnoses in the order of the submitted attempts
    """
    incorrect = [a for a in attempts if not a.correct]
    if not incorrect:
        logger.info("No incorrect attempts to diagnose")
        return []

    logger.info(f"Diagnosing {len(incorrect)} incorrect attempts")

    try:
        diagnoses = await asyncio.wait_for(annotator.annotate(incorrect), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Diagnostics timed out after {timeout}s, continuing without diagnostics")
        return []
    except DiagnosticServiceError as e:
        logger.warning(f"Diagnostics unavailable: {e}")
        return []
    except Exception as e:  # Intentionally broad - diagnostics must never fail the session
        logger.error(f"Diagnostics failed unexpectedly: {type(e).__name__}: {e}")
        return []

    by_id: dict[str, AttemptDiagnosis] = {}
    for diagnosis in diagnoses:
        by_id.setdefault(diagnosis.attempt_id, diagnosis)

    known = {a.attempt_id for a in incorrect}
    unknown = set(by_id) - known
    if unknown:
        logger.warning(f"Dropping {len(unknown)} diagnoses for unknown attempts: {sorted(unknown)}")

    result = [by_id[a.attempt_id] for a in incorrect if a.attempt_id in by_id]
    logger.info(f"Diagnostics produced {len(result)} diagnoses")
    return result
