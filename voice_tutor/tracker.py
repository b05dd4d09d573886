"""Knowledge tracker: owns the concept map and updates it after every utterance."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional, Sequence

from voice_tutor.assessor import CategoryAssessor
from voice_tutor.config import settings
from voice_tutor.events import (
    ConceptMapUpdated,
    ConfidenceReached,
    EventBus,
    PivotQueueUpdated,
)
from voice_tutor.models import ConceptMap, Message, PivotEntry, Subconcept, TaskContext
from voice_tutor.pivot import build_pivot_queue
from voice_tutor.prompts import FALLBACK_GUIDANCE, TA_GUIDANCE
from voice_tutor.services.llm import format_history

log = logging.getLogger(__name__)


def category_confident(subconcepts: dict[str, Subconcept], threshold: float) -> bool:
    """True once every subconcept is assessed with at least ``threshold`` confidence."""
    return all(
        sub.knowledge_state.confidence_in_assessment >= threshold
        for sub in subconcepts.values()
    )


def categories_needing_assessment(concept_map: ConceptMap, threshold: float) -> list[str]:
    return [
        category
        for category, subconcepts in concept_map.categories.items()
        if not category_confident(subconcepts, threshold)
    ]


class KnowledgeTracker:
    """Keeps one session's concept map current.

    ``process_utterance`` runs at most once at a time: a call made while
    another is in flight, or for the same text as the previous call, is
    dropped rather than queued.
    """

    def __init__(
        self,
        session_id: str,
        assessor: CategoryAssessor,
        store,
        bus: EventBus,
        initial_map: ConceptMap,
        llm=None,
        threshold: Optional[float] = None,
        pivot_size: Optional[int] = None,
    ):
        self.session_id = session_id
        self.assessor = assessor
        self.store = store
        self.bus = bus
        self.llm = llm
        self.threshold = settings.CONFIDENCE_THRESHOLD if threshold is None else threshold
        self.pivot_size = settings.PIVOT_QUEUE_SIZE if pivot_size is None else pivot_size

        self.concept_map = initial_map
        self.pivot_queue: list[PivotEntry] = []
        self.confidence_reached = False
        self.guidance: Optional[str] = None
        self._last_text: Optional[str] = None
        self._in_flight = False

    @property
    def is_processing(self) -> bool:
        return self._in_flight

    async def initialize(
        self, history: Sequence[Message] = (), task_context: Optional[TaskContext] = None
    ) -> ConceptMap:
        """Load the saved map for this session, or calibrate a new one."""
        saved = self.store.load(self.session_id)
        if saved is None:
            log.info(f"[{self.session_id}] No saved concept map, calibrating")
            return await self.calibrate(history, task_context)

        log.info(f"[{self.session_id}] Loaded saved concept map")
        self.concept_map = saved
        self.confidence_reached = self._all_confident()
        self._refresh_pivot_queue()
        self.bus.publish(ConceptMapUpdated(concept_map=self.concept_map))
        return self.concept_map

    async def calibrate(
        self, history: Sequence[Message] = (), task_context: Optional[TaskContext] = None
    ) -> ConceptMap:
        """Assess every category once, in parallel, and install the result."""
        task_context = task_context or TaskContext()
        categories = list(self.concept_map.categories)
        updates = await self._assess(categories, history, task_context)
        self.concept_map = ConceptMap(categories=updates)
        log.info(f"[{self.session_id}] Calibrated {len(categories)} categories")
        await self._after_update(history, task_context)
        return self.concept_map

    async def process_utterance(
        self,
        text: str,
        history: Sequence[Message],
        task_context: Optional[TaskContext] = None,
    ) -> bool:
        """Reassess the categories that are still uncertain.

        Returns False when the call was dropped by the duplicate/in-flight guard.
        """
        if self._in_flight or text == self._last_text:
            log.debug(f"[{self.session_id}] Dropping assessment for {text[:40]!r}")
            return False

        self._last_text = text
        self._in_flight = True
        try:
            task_context = task_context or TaskContext()
            pending = categories_needing_assessment(self.concept_map, self.threshold)
            if pending:
                updates = await self._assess(pending, history, task_context)
                self.concept_map = self.concept_map.with_categories(updates)
            else:
                log.debug(f"[{self.session_id}] Every category is confident, nothing to assess")
            await self._after_update(history, task_context)
        finally:
            self._in_flight = False
        return True

    async def _assess(
        self,
        categories: list[str],
        history: Sequence[Message],
        task_context: TaskContext,
    ) -> dict[str, dict[str, Subconcept]]:
        snapshot = list(history)
        results = await asyncio.gather(
            *(
                self.assessor.assess(
                    category, self.concept_map.categories[category], snapshot, task_context
                )
                for category in categories
            ),
            return_exceptions=True,
        )
        updates: dict[str, dict[str, Subconcept]] = {}
        for category, result in zip(categories, results):
            if isinstance(result, BaseException):
                # The assessor already absorbs its own failures; keep the old state.
                log.error(f"[{category}] Assessment raised: {result!r}")
                updates[category] = self.concept_map.categories[category]
            else:
                updates[category] = result
        return updates

    async def _after_update(self, history: Sequence[Message], task_context: TaskContext) -> None:
        newly_confident = False
        if self._all_confident() and not self.confidence_reached:
            self.confidence_reached = True
            newly_confident = True
            log.info(f"[{self.session_id}] >>> Confidence reached across all categories")
            self.guidance = await self._generate_guidance(history, task_context)

        self._refresh_pivot_queue()
        self.bus.publish(ConceptMapUpdated(concept_map=self.concept_map))
        self.bus.publish(PivotQueueUpdated(queue=list(self.pivot_queue)))
        self._persist(history)
        if newly_confident:
            self.bus.publish(ConfidenceReached(guidance=self.guidance))

    def _all_confident(self) -> bool:
        return all(
            category_confident(subconcepts, self.threshold)
            for subconcepts in self.concept_map.categories.values()
        )

    def _refresh_pivot_queue(self) -> None:
        self.pivot_queue = build_pivot_queue(
            self.concept_map, threshold=self.threshold, size=self.pivot_size
        )

    def _persist(self, history: Sequence[Message]) -> None:
        self.store.save(
            self.session_id,
            self.concept_map,
            history,
            self.pivot_queue,
            confidence_reached=self.confidence_reached,
        )

    async def _generate_guidance(
        self, history: Sequence[Message], task_context: TaskContext
    ) -> Optional[str]:
        if self.llm is None:
            return None
        prompt = TA_GUIDANCE.format(
            concept_map=json.dumps(
                self.concept_map.model_dump(mode="json", by_alias=True), indent=2
            ),
            task=task_context.task or "(none)",
            history=format_history(history, limit=8),
        )
        try:
            return (await self.llm.complete(prompt)).strip() or FALLBACK_GUIDANCE
        except Exception as e:
            log.warning(f"[{self.session_id}] Guidance generation failed: {e}")
            return FALLBACK_GUIDANCE
