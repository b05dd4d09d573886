"""Dialogue orchestrator: turns a finalized utterance into a spoken reply."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from voice_tutor.chunker import SentenceChunker
from voice_tutor.controller import SpeechSessionController
from voice_tutor.errors import GenerationError
from voice_tutor.events import TranscriptFinalized
from voice_tutor.models import ConversationStatus, Message, TaskContext
from voice_tutor.prompts import get_reply_context
from voice_tutor.tracker import KnowledgeTracker

log = logging.getLogger(__name__)


class DialogueOrchestrator:
    """Runs one turn per ``TranscriptFinalized`` event.

    Knowledge tracking is started as a background task and never delays the
    reply. Reply text is cut into chunks as it streams in; every chunk goes
    to synthesis at once and the controller's playback pipeline plays them
    back in order.
    """

    def __init__(
        self,
        controller: SpeechSessionController,
        tracker: KnowledgeTracker,
        replies,
        tts,
        task_context: Optional[TaskContext] = None,
        chunker_factory: Callable[[], SentenceChunker] = SentenceChunker,
    ):
        self.controller = controller
        self.tracker = tracker
        self.replies = replies
        self.tts = tts
        self.task_context = task_context or TaskContext()
        self.chunker_factory = chunker_factory
        self._background: set[asyncio.Task] = set()
        self._unsubscribe = controller.bus.subscribe(TranscriptFinalized, self._on_finalized)

    @property
    def history(self) -> list[Message]:
        return self.controller.state.history

    def close(self) -> None:
        self._unsubscribe()

    async def wait_for_tracking(self) -> None:
        """Wait for background knowledge-tracking tasks started so far."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _on_finalized(self, event: TranscriptFinalized) -> None:
        self.history.append(Message(role="user", content=event.text, timestamp=event.timestamp))
        self.controller.set_status(ConversationStatus.PROCESSING)

        loop = asyncio.get_running_loop()
        tracking = loop.create_task(
            self.tracker.process_utterance(event.text, self.history, self.task_context)
        )
        self._background.add(tracking)
        tracking.add_done_callback(self._tracking_done)

        self.controller.attach_turn(loop.create_task(self.run_turn()))

    def _tracking_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error(f"Knowledge tracking failed: {task.exception()!r}")

    async def run_turn(self) -> Optional[str]:
        """Stream, chunk and queue one reply. Returns the full reply text, if any."""
        playback = self.controller.playback
        chunker = self.chunker_factory()
        parts: list[str] = []
        count = 0

        def dispatch(chunk: str) -> None:
            nonlocal count
            if count == 0:
                playback.start()
            log.debug(f"Chunk {count}: {chunk!r}")
            playback.submit(count, self.tts.synthesize(chunk))
            count += 1

        try:
            pivot_queue = self.tracker.pivot_queue
            system_context = get_reply_context(
                self.task_context,
                focus=pivot_queue[0] if pivot_queue else None,
                guidance=self.tracker.guidance,
            )
            async for delta in self.replies.stream_reply(system_context, list(self.history)):
                parts.append(delta.text)
                for chunk in chunker.feed(delta.text):
                    dispatch(chunk)
            tail = chunker.flush()
            if tail:
                dispatch(tail)
        except GenerationError as e:
            self.controller.abort_turn(str(e))
            return None
        except Exception as e:
            self.controller.abort_turn(f"Reply generation failed: {e}")
            return None

        if count == 0:
            log.info("Reply produced no speech")
            self.controller.set_status(ConversationStatus.IDLE)
            return None

        reply = "".join(parts).strip()
        self.history.append(Message(role="assistant", content=reply))
        log.info(f"Tutor: {reply[:60]!r}")
        playback.close_input(count)
        return reply
