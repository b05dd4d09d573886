"""Tests for the knowledge tracker."""

from __future__ import annotations

import asyncio

from voice_tutor.concepts import build_concept_map
from voice_tutor.events import ConceptMapUpdated, ConfidenceReached, EventBus, PivotQueueUpdated
from voice_tutor.models import KnowledgeState, Message, Subconcept
from voice_tutor.prompts import FALLBACK_GUIDANCE
from voice_tutor.tracker import KnowledgeTracker, categories_needing_assessment

CATEGORIES = {
    "Array Manipulation": ["Indexing", "Linear Search"],
    "Data Structures": ["Hash Map", "Array"],
    "Algorithm Design": ["Time Complexity", "Edge Cases"],
}


def state(confidence: float, understanding: float = 0.5) -> KnowledgeState:
    return KnowledgeState(
        understanding_level=understanding, confidence_in_assessment=confidence
    )


class FakeAssessor:
    """Returns fixed confidences per subconcept (default 0.3)."""

    def __init__(self, confidences=None, fail=(), gate: asyncio.Event | None = None):
        self.confidences = confidences or {}
        self.fail = set(fail)
        self.gate = gate
        self.calls: list[str] = []

    async def assess(self, category, subconcepts, history, task_context):
        self.calls.append(category)
        if self.gate is not None:
            await self.gate.wait()
        if category in self.fail:
            raise RuntimeError("assessor blew up")
        return {
            name: Subconcept(name=name, knowledge_state=state(self.confidences.get(name, 0.3)))
            for name in subconcepts
        }


class FakeStore:
    def __init__(self, saved=None):
        self.saved = saved
        self.saves = []

    def load(self, session_id):
        return self.saved

    def save(self, session_id, concept_map, history=(), pivot_queue=(), confidence_reached=False):
        self.saves.append((session_id, concept_map, list(history), list(pivot_queue)))


class FakeLLM:
    def __init__(self, reply="Move on to the optimal solution.", error=None):
        self.reply = reply
        self.error = error
        self.calls = 0

    async def complete(self, prompt: str, temperature: float = 0.3) -> str:
        self.calls += 1
        if self.error:
            raise self.error
        return self.reply


def make_tracker(assessor, store=None, llm=None, bus=None, initial=None):
    return KnowledgeTracker(
        "s1",
        assessor,
        store or FakeStore(),
        bus or EventBus(),
        initial or build_concept_map(CATEGORIES),
        llm=llm,
        threshold=0.7,
        pivot_size=5,
    )


def test_calibration_pivot_starts_with_global_minimum():
    assessor = FakeAssessor(confidences={"Hash Map": 0.2})
    store = FakeStore()
    tracker = make_tracker(assessor, store=store)

    asyncio.run(tracker.initialize([], None))

    assert sorted(assessor.calls) == sorted(CATEGORIES)
    assert tracker.pivot_queue[0].concept == "Hash Map"
    assert tracker.pivot_queue[0].category == "Data Structures"
    assert len(tracker.pivot_queue) == 5
    assert len(store.saves) == 1


def test_initialize_uses_saved_map_without_calibrating():
    saved = build_concept_map(CATEGORIES, confidence=0.4)
    assessor = FakeAssessor()
    tracker = make_tracker(assessor, store=FakeStore(saved=saved))

    asyncio.run(tracker.initialize([], None))

    assert assessor.calls == []
    assert tracker.concept_map == saved
    assert tracker.pivot_queue[0].confidence == 0.4


def test_confident_categories_are_not_reassessed():
    initial = build_concept_map(CATEGORIES, confidence=0.3)
    initial.categories["Data Structures"] = {
        "Hash Map": Subconcept(name="Hash Map", knowledge_state=state(0.8)),
        "Array": Subconcept(name="Array", knowledge_state=state(0.7)),
    }
    assessor = FakeAssessor()
    tracker = make_tracker(assessor, initial=initial)

    assert "Data Structures" not in categories_needing_assessment(initial, 0.7)
    asyncio.run(tracker.process_utterance("I would use a dict", [], None))

    assert "Data Structures" not in assessor.calls
    assert len(assessor.calls) == 2
    assert tracker.concept_map.categories["Data Structures"] == initial.categories["Data Structures"]


def test_failed_category_keeps_previous_state_and_others_merge():
    initial = build_concept_map(CATEGORIES, confidence=0.5)
    assessor = FakeAssessor(confidences={"Indexing": 0.6}, fail={"Data Structures"})
    tracker = make_tracker(assessor, initial=initial)

    assert asyncio.run(tracker.process_utterance("hello", [], None)) is True

    categories = tracker.concept_map.categories
    assert categories["Data Structures"] == initial.categories["Data Structures"]
    assert categories["Array Manipulation"]["Indexing"].knowledge_state.confidence_in_assessment == 0.6


def test_overlapping_calls_are_dropped():
    async def run():
        gate = asyncio.Event()
        assessor = FakeAssessor(gate=gate)
        tracker = make_tracker(assessor)
        first = asyncio.create_task(tracker.process_utterance("first", [], None))
        await asyncio.sleep(0)
        second = await tracker.process_utterance("second", [], None)
        assert tracker.is_processing
        gate.set()
        return await first, second, assessor, tracker

    first, second, assessor, tracker = asyncio.run(run())

    assert first is True
    assert second is False
    assert len(assessor.calls) == len(CATEGORIES)
    assert not tracker.is_processing


def test_repeated_text_is_dropped():
    assessor = FakeAssessor()
    tracker = make_tracker(assessor)

    async def run():
        a = await tracker.process_utterance("same words", [], None)
        b = await tracker.process_utterance("same words", [], None)
        return a, b

    assert asyncio.run(run()) == (True, False)
    assert len(assessor.calls) == len(CATEGORIES)


def test_in_flight_flag_cleared_after_failure():
    class BrokenStore(FakeStore):
        def save(self, *args, **kwargs):
            raise OSError("disk full")

    tracker = make_tracker(FakeAssessor(), store=BrokenStore())

    async def run():
        try:
            await tracker.process_utterance("text", [], None)
        except OSError:
            pass

    asyncio.run(run())
    assert not tracker.is_processing


def test_confidence_reached_signalled_once_with_guidance():
    bus = EventBus()
    reached = []
    bus.subscribe(ConfidenceReached, reached.append)
    assessor = FakeAssessor(confidences={name: 0.9 for names in CATEGORIES.values() for name in names})
    llm = FakeLLM()
    store = FakeStore()
    tracker = make_tracker(assessor, store=store, llm=llm, bus=bus)

    async def run():
        await tracker.process_utterance("first answer", [Message(role="user", content="x")], None)
        await tracker.process_utterance("second answer", [], None)

    asyncio.run(run())

    assert tracker.confidence_reached
    assert len(reached) == 1
    assert reached[0].guidance == "Move on to the optimal solution."
    assert tracker.pivot_queue == []
    assert llm.calls == 1
    assert len(store.saves) == 2


def test_guidance_falls_back_when_generation_fails():
    assessor = FakeAssessor(confidences={name: 0.9 for names in CATEGORIES.values() for name in names})
    tracker = make_tracker(assessor, llm=FakeLLM(error=RuntimeError("down")))

    asyncio.run(tracker.process_utterance("answer", [], None))

    assert tracker.guidance == FALLBACK_GUIDANCE


def test_confidence_may_decrease_between_passes():
    bus = EventBus()
    maps = []
    queues = []
    bus.subscribe(ConceptMapUpdated, lambda e: maps.append(e.concept_map))
    bus.subscribe(PivotQueueUpdated, lambda e: queues.append(e.queue))
    initial = build_concept_map(CATEGORIES, confidence=0.65)
    tracker = make_tracker(FakeAssessor(confidences={"Indexing": 0.1}), bus=bus, initial=initial)

    asyncio.run(tracker.process_utterance("I am not sure anymore", [], None))

    indexing = tracker.concept_map.categories["Array Manipulation"]["Indexing"]
    assert indexing.knowledge_state.confidence_in_assessment == 0.1
    assert queues[-1][0].concept == "Indexing"
    assert maps[-1] is tracker.concept_map
