"""Category assessor: one language-model assessment per concept category."""

from __future__ import annotations

import json
import logging
import math
from typing import Any, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from voice_tutor.config import settings
from voice_tutor.errors import AssessmentParseError
from voice_tutor.models import KnowledgeState, Message, Subconcept, TaskContext, utcnow
from voice_tutor.prompts import CATEGORY_ASSESSOR
from voice_tutor.services.llm import format_history, parse_json_reply

log = logging.getLogger(__name__)

FAILURE_MARKER = " (Update failed)"
LOW_UNDERSTANDING = 0.4
LOW_UNDERSTANDING_MAX_CONFIDENCE = 0.6


class AssessedState(BaseModel):
    """One subconcept as the model reported it, before clamping."""
    model_config = ConfigDict(populate_by_name=True)

    understanding_level: float = Field(alias="understandingLevel")
    confidence_in_assessment: float = Field(alias="confidenceInAssessment")
    reasoning: str = ""
    explicit_evidence: bool = Field(default=False, alias="explicitEvidence")


def clamp_unit(value: float) -> float:
    if math.isnan(value):
        return 0.0
    return min(1.0, max(0.0, value))


def enforce_confidence_rule(understanding: float, confidence: float, explicit: bool) -> float:
    """Low understanding may not be claimed with high confidence without direct evidence."""
    if understanding < LOW_UNDERSTANDING and not explicit:
        return min(confidence, LOW_UNDERSTANDING_MAX_CONFIDENCE)
    return confidence


def mark_failed(subconcepts: dict[str, Subconcept]) -> dict[str, Subconcept]:
    """Previous states, with the failure noted in their reasoning."""
    failed = {}
    for name, sub in subconcepts.items():
        state = sub.knowledge_state
        reasoning = state.reasoning
        if not reasoning.endswith(FAILURE_MARKER):
            reasoning += FAILURE_MARKER
        failed[name] = Subconcept(
            name=name, knowledge_state=state.model_copy(update={"reasoning": reasoning})
        )
    return failed


def _unwrap(data: Any, category: str) -> Any:
    """Accept {"updatedConceptMap": {...}} and {category: {...}} wrappers."""
    if isinstance(data, dict) and len(data) == 1:
        (key, inner), = data.items()
        if key in ("updatedConceptMap", category) and isinstance(inner, dict):
            return inner
    return data


def _state_payload(entry: Any) -> Any:
    """Accept both {knowledge...} and {"name": ..., "knowledgeState": {...}} entries."""
    if isinstance(entry, dict):
        nested = entry.get("knowledgeState", entry.get("knowledge_state"))
        if isinstance(nested, dict):
            return nested
    return entry


def merge_assessment(
    category: str, subconcepts: dict[str, Subconcept], raw_text: str
) -> dict[str, Subconcept]:
    """Validate a raw model reply against the category's current subconcepts.

    Subconcepts the reply leaves out keep their previous state; names the
    category does not have are ignored.

    Raises:
        AssessmentParseError: the reply is not JSON, or names no known subconcept,
            or a named subconcept has the wrong shape.
    """
    try:
        data = _unwrap(parse_json_reply(raw_text), category)
    except ValueError as e:
        raise AssessmentParseError(str(e)) from e
    if not isinstance(data, dict):
        raise AssessmentParseError(f"Expected a JSON object, got {type(data).__name__}")

    now = utcnow()
    updated: dict[str, Subconcept] = {}
    matched = 0
    for name, previous in subconcepts.items():
        if name not in data:
            updated[name] = previous
            continue
        try:
            assessed = AssessedState.model_validate(_state_payload(data[name]))
        except ValidationError as e:
            raise AssessmentParseError(f"Bad knowledge state for {name!r}: {e}") from e
        matched += 1
        understanding = clamp_unit(assessed.understanding_level)
        confidence = enforce_confidence_rule(
            understanding,
            clamp_unit(assessed.confidence_in_assessment),
            assessed.explicit_evidence,
        )
        updated[name] = Subconcept(
            name=name,
            knowledge_state=KnowledgeState(
                understanding_level=understanding,
                confidence_in_assessment=confidence,
                reasoning=assessed.reasoning.strip() or previous.knowledge_state.reasoning,
                last_updated=now,
                explicit_evidence=assessed.explicit_evidence,
            ),
        )

    if subconcepts and matched == 0:
        raise AssessmentParseError(f"Reply names none of the {category!r} subconcepts")
    return updated


class CategoryAssessor:
    """Runs one assessment call for one category.

    Never raises: a failed call or unusable reply returns the previous states
    marked as failed, so sibling categories assessed concurrently are unaffected.
    """

    def __init__(self, llm, history_window: Optional[int] = None):
        self.llm = llm
        self.history_window = (
            settings.ASSESSMENT_HISTORY_WINDOW if history_window is None else history_window
        )

    def build_prompt(
        self,
        category: str,
        subconcepts: dict[str, Subconcept],
        history: Sequence[Message],
        task_context: TaskContext,
    ) -> str:
        knowledge_state = {
            name: sub.knowledge_state.model_dump(
                mode="json", by_alias=True, exclude={"last_updated"}
            )
            for name, sub in subconcepts.items()
        }
        return CATEGORY_ASSESSOR.format(
            category=category,
            knowledge_state=json.dumps(knowledge_state, indent=2),
            task=task_context.task or "(none)",
            error_message=task_context.error_message or "(none)",
            terminal_output=task_context.terminal_output or "(none)",
            code=task_context.code or "(none)",
            history=format_history(history, limit=self.history_window),
        )

    async def assess(
        self,
        category: str,
        subconcepts: dict[str, Subconcept],
        history: Sequence[Message],
        task_context: TaskContext,
    ) -> dict[str, Subconcept]:
        prompt = self.build_prompt(category, subconcepts, history, task_context)
        try:
            raw_text = await self.llm.complete(prompt)
            updated = merge_assessment(category, subconcepts, raw_text)
        except AssessmentParseError as e:
            log.warning(f"[{category}] Could not parse assessment: {e}")
            return mark_failed(subconcepts)
        except Exception as e:
            log.warning(f"[{category}] Assessment call failed: {e}")
            return mark_failed(subconcepts)

        log.info(
            f"[{category}] Assessed: "
            + ", ".join(
                f"{name}=U{sub.knowledge_state.understanding_level:.2f}"
                f"/C{sub.knowledge_state.confidence_in_assessment:.2f}"
                for name, sub in updated.items()
            )
        )
        return updated
