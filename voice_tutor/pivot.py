"""Pivot queue: which under-assessed concept to ask about next."""

from __future__ import annotations

import logging
import re
from typing import Optional

from voice_tutor.config import settings
from voice_tutor.models import ConceptMap, PivotEntry
from voice_tutor.prompts import PIVOT_QUESTIONS

log = logging.getLogger(__name__)

MAX_QUESTION_WORDS = 10
MAX_QUESTIONS = 3
# Prompts that ask the student to type code rather than talk about ideas.
CODE_PROMPT = re.compile(
    r"\b(write|implement|complete|fill in|code up)\b|[`(){}\[\];=]|def |return ",
    re.IGNORECASE,
)
LIST_MARKER = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s*")


def build_pivot_queue(
    concept_map: ConceptMap,
    threshold: Optional[float] = None,
    size: Optional[int] = None,
) -> list[PivotEntry]:
    """Every subconcept below the confidence threshold, least confident first."""
    threshold = settings.CONFIDENCE_THRESHOLD if threshold is None else threshold
    size = settings.PIVOT_QUEUE_SIZE if size is None else size
    candidates = [
        PivotEntry(
            concept=sub.name,
            category=category,
            confidence=sub.knowledge_state.confidence_in_assessment,
        )
        for category, sub in concept_map.iter_subconcepts()
        if sub.knowledge_state.confidence_in_assessment < threshold
    ]
    # sorted() is stable, so ties keep concept-map order.
    candidates = sorted(candidates, key=lambda entry: entry.confidence)
    return candidates[: max(0, size)]


def clean_questions(raw_text: str) -> list[str]:
    """Keep at most three short, conceptual, spoken questions."""
    questions: list[str] = []
    for line in raw_text.splitlines():
        question = LIST_MARKER.sub("", line).strip().strip('"').strip()
        if not question:
            continue
        if len(question.split()) > MAX_QUESTION_WORDS:
            log.debug(f"Dropping long pivot question: {question!r}")
            continue
        if CODE_PROMPT.search(question):
            log.debug(f"Dropping code-style pivot question: {question!r}")
            continue
        questions.append(question)
        if len(questions) == MAX_QUESTIONS:
            break
    return questions


class PivotQuestionGenerator:
    """Asks the language model for verbal questions about the weakest concept."""

    def __init__(self, llm):
        self.llm = llm

    async def questions_for(self, entry: PivotEntry) -> list[str]:
        raw_text = await self.llm.complete(
            PIVOT_QUESTIONS.format(concept=entry.concept, category=entry.category),
            temperature=0.7,
        )
        return clean_questions(raw_text)

    async def questions_for_lowest(self, concept_map: ConceptMap) -> list[str]:
        """Questions for the single lowest-confidence concept, or [] if none is left."""
        queue = build_pivot_queue(concept_map, size=1)
        if not queue:
            return []
        return await self.questions_for(queue[0])
