"""One tutoring session: the components of a conversation, wired together."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

from voice_tutor.assessor import CategoryAssessor
from voice_tutor.audio import AudioSink, FileAudioSink
from voice_tutor.concepts import default_concept_map
from voice_tutor.config import settings
from voice_tutor.controller import SpeechSessionController
from voice_tutor.events import EventBus, StateChanged
from voice_tutor.models import ConceptMap, ConversationStatus, TaskContext, TranscriptSegment
from voice_tutor.orchestrator import DialogueOrchestrator
from voice_tutor.pivot import PivotQuestionGenerator
from voice_tutor.services.database import ConceptMapStore
from voice_tutor.services.llm import HttpReplyService, LLMService
from voice_tutor.services.stt import DeepgramSTT
from voice_tutor.services.tts import ElevenLabsTTS
from voice_tutor.tracker import KnowledgeTracker

log = logging.getLogger(__name__)


class TutorSession:
    """Owns everything one student conversation needs.

    Nothing here is shared between sessions; create one per conversation and
    pass it to whatever needs it. Every collaborator can be injected, which is
    how the tests replace the network services.
    """

    def __init__(
        self,
        session_id: str,
        task_context: Optional[TaskContext] = None,
        concept_map: Optional[ConceptMap] = None,
        llm=None,
        replies=None,
        tts=None,
        stt=None,
        store=None,
        sink: Optional[AudioSink] = None,
        bus: Optional[EventBus] = None,
    ):
        self.session_id = session_id
        self.task_context = task_context or TaskContext()
        self.bus = bus or EventBus()
        self.llm = llm or LLMService()
        if replies is None:
            replies = HttpReplyService() if settings.REPLY_ENDPOINT else self.llm
        self.tts = tts or ElevenLabsTTS()
        self.store = store or ConceptMapStore()
        if sink is None:
            audio_dir = None
            if settings.SAVE_TTS_AUDIO:
                audio_dir = Path(settings.DATA_DIR) / "audio" / session_id
            sink = FileAudioSink(audio_dir)

        self.controller = SpeechSessionController(self.bus, sink, stt=stt)
        self.tracker = KnowledgeTracker(
            session_id,
            CategoryAssessor(self.llm),
            self.store,
            self.bus,
            concept_map or default_concept_map(),
            llm=self.llm,
        )
        self.orchestrator = DialogueOrchestrator(
            self.controller, self.tracker, replies, self.tts, self.task_context
        )

    @classmethod
    def with_microphone(cls, session_id: str, **kwargs) -> "TutorSession":
        """A session that transcribes raw audio through Deepgram."""
        return cls(session_id, stt=DeepgramSTT(), **kwargs)

    @property
    def state(self):
        return self.controller.state

    async def start(self) -> ConceptMap:
        """Restore the saved conversation, then load or calibrate the concept map."""
        record = self.store.load_record(self.session_id)
        if record is not None and not self.state.history:
            self.state.history.extend(record.history)
            log.info(f"[{self.session_id}] Restored {len(record.history)} messages")
        return await self.tracker.initialize(list(self.state.history), self.task_context)

    def update_task_context(self, task_context: TaskContext) -> None:
        self.task_context = task_context
        self.orchestrator.task_context = task_context

    async def start_recording(self) -> bool:
        return await self.controller.start_recording()

    async def send_audio(self, frame: bytes) -> None:
        await self.controller.send_audio(frame)

    async def stop_recording(self) -> None:
        await self.controller.stop_recording()

    def submit_text(self, text: str) -> bool:
        """Treat typed text as a complete spoken utterance and finalize it now."""
        self.controller.handle_segment(
            TranscriptSegment(transcript=text, is_final=True, confidence=1.0)
        )
        return self.controller.finalize()

    async def wait_until_idle(self) -> None:
        """Return once the current turn has finished (or was cancelled)."""
        idle = asyncio.Event()

        def _on_state(event: StateChanged) -> None:
            if event.status == ConversationStatus.IDLE:
                idle.set()

        unsubscribe = self.bus.subscribe(StateChanged, _on_state)
        try:
            if self.controller.status != ConversationStatus.IDLE:
                await idle.wait()
        finally:
            unsubscribe()

    async def pivot_questions(self) -> list[str]:
        """Short spoken questions about the concept the tutor knows least about."""
        return await PivotQuestionGenerator(self.llm).questions_for_lowest(self.tracker.concept_map)

    def stop(self) -> None:
        self.controller.stop()

    async def close(self) -> None:
        self.controller.stop()
        if self.controller.recording:
            await self.controller.stop_recording()
        self.orchestrator.close()
        await self.orchestrator.wait_for_tracking()
        aclose = getattr(self.tts, "aclose", None)
        if aclose is not None:
            await aclose()
        log.info(f"[{self.session_id}] Session closed")
