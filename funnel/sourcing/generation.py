"""
On-demand question generation.

The generation service is an opaque collaborator: it receives a target
concept, a count and the guide text, and returns loosely shaped question
dicts. Everything it returns is validated here before it can reach a batch.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from loguru import logger
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from funnel.concepts.normalizer import normalize_concept_key
from funnel.core.errors import GenerationError, QuestionValidationError
from funnel.core.models import Question, SourceType
from funnel.dedup.fingerprint import strip_option_label

LETTERS = "ABCDEFGH"


@dataclass
class GenerationRequest:
    """What the pipeline asks the generation service for."""

    concept_key: str
    display_name: str
    count: int
    content: str = ""
    guide_hash: str | None = None
    module_id: str | None = None

    @property
    def instruction(self) -> str:
        """Plain-language steering appended to the generator's prompt."""
        concept = self.display_name or self.concept_key
        if self.count == 1:
            return "\n".join([
                f"Target concept: {concept}.",
                "Generate exactly 1 question primarily about this concept.",
                f'The question MUST include "{concept}" in studyConcepts.',
            ])
        return "\n".join([
            f"Generate exactly {self.count} questions about {concept}.",
            f'Each question MUST include "{concept}" in studyConcepts and be primarily about it.',
            "Avoid repeating stems/phrasing from prior questions.",
        ])

    def to_dict(self) -> dict[str, Any]:
        return {
            "concept": self.display_name or self.concept_key,
            "concept_key": self.concept_key,
            "count": self.count,
            "content": self.content,
            "guide_hash": self.guide_hash,
            "module_id": self.module_id,
            "instruction": self.instruction,
        }


class QuestionGenerator(Protocol):
    """Generation service port."""

    async def generate(self, request: GenerationRequest) -> list[dict[str, Any]]: ...


# ========================================
# Validation
# ========================================


class GeneratedQuestionPayload(BaseModel):
    """Structural contract for one generated multiple-choice question."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    text: str = Field(..., min_length=1, validation_alias=AliasChoices("text", "questionText", "question"))
    options: list[str] = Field(..., min_length=2)
    correct_answer: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("correct_answer", "correctAnswer", "answer"),
    )
    concept_tags: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("concept_tags", "studyConcepts", "concepts"),
    )
    explanation: str = ""

    @field_validator("text", "correct_answer", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("options")
    @classmethod
    def _distinct_options(cls, value: list[str]) -> list[str]:
        cleaned = [str(o).strip() for o in value]
        if any(not o for o in cleaned):
            raise ValueError("options must not be blank")
        if len({strip_option_label(o).casefold() for o in cleaned}) != len(cleaned):
            raise ValueError("options must be distinct")
        return cleaned

    @field_validator("explanation", mode="before")
    @classmethod
    def _explanation_text(cls, value: Any) -> str:
        return "" if value is None else str(value)


def resolve_correct_answer(options: list[str], answer: str) -> str | None:
    """
    Map an answer to exactly one option.

    Accepts the option text (labels and case ignored) or a bare letter
    such as "C" / "c)".
    """
    wanted = strip_option_label(answer).casefold()
    matches = [o for o in options if strip_option_label(o).casefold() == wanted]
    if len(matches) == 1:
        return matches[0]

    letter = answer.strip().rstrip(").:").strip().upper()
    if len(letter) == 1 and letter in LETTERS:
        index = LETTERS.index(letter)
        if index < len(options):
            return options[index]
    return None


def validate_generated(
    payload: dict[str, Any],
    concept_display: str,
    guide_hash: str | None = None,
    module_id: str | None = None,
) -> Question:
    """
    Validate one generated item and convert it to a Question.

    The target concept is added to the tags when the generator left it out.

    Raises:
        QuestionValidationError: If the item is structurally unusable
    """
    try:
        parsed = GeneratedQuestionPayload.model_validate(payload)
    except ValidationError as e:
        raise QuestionValidationError(f"invalid generated question: {e.errors()[0]['msg']}", payload) from e

    correct = resolve_correct_answer(parsed.options, parsed.correct_answer)
    if correct is None:
        raise QuestionValidationError("correct answer does not match any option", payload)

    tags = list(parsed.concept_tags)
    target_key = normalize_concept_key(concept_display)
    if target_key and all(normalize_concept_key(t) != target_key for t in tags):
        tags.append(concept_display)

    return Question(
        id=f"gen-{uuid.uuid4().hex}",
        text=parsed.text,
        options=parsed.options,
        correct_answer=correct,
        concept_tags=tags,
        source_type=SourceType.GENERATED,
        explanation=parsed.explanation,
        module_id=module_id,
        guide_hash=guide_hash,
    )


# ========================================
# HTTP Generator
# ========================================


class HttpQuestionGenerator:
    """HTTP client for the question generation service."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 45.0,
        retry_attempts: int = 2,
        backoff_seconds: float = 1.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retry_attempts = max(1, retry_attempts)
        self.backoff_seconds = backoff_seconds
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            follow_redirects=True,
        )

    async def close(self) -> None:
        await self.client.aclose()

    async def generate(self, request: GenerationRequest) -> list[dict[str, Any]]:
        """
        Request questions for one target.

        Raises:
            GenerationError: If the service stays unavailable or answers garbage
        """
        url = f"{self.base_url}/generate"
        last_error: Exception | None = None

        for attempt in range(self.retry_attempts):
            try:
                response = await self.client.post(url, json=request.to_dict())
                response.raise_for_status()
                data = response.json()
                questions = data.get("questions") if isinstance(data, dict) else data
                if not isinstance(questions, list):
                    raise GenerationError("generation response has no question list")
                return [q for q in questions if isinstance(q, dict)]

            except httpx.TimeoutException as e:
                last_error = e
                logger.warning(f"Generation timeout on attempt {attempt + 1}/{self.retry_attempts}")

            except httpx.HTTPStatusError as e:
                last_error = e
                if e.response.status_code < 500:
                    raise GenerationError(
                        f"generation rejected with {e.response.status_code}"
                    ) from e
                logger.warning(
                    f"Generation server error {e.response.status_code} on attempt "
                    f"{attempt + 1}/{self.retry_attempts}"
                )

            except httpx.RequestError as e:
                last_error = e
                logger.warning(f"Generation request error on attempt {attempt + 1}/{self.retry_attempts}: {e}")

            except ValueError as e:
                raise GenerationError(f"generation response is not JSON: {e}") from e

            if attempt < self.retry_attempts - 1:
                await asyncio.sleep(self.backoff_seconds * (2 ** attempt))

        raise GenerationError(
            f"generation failed after {self.retry_attempts} attempts: {last_error}"
        ) from last_error
