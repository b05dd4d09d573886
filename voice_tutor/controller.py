"""Speech session controller: the Idle / Processing / Speaking turn-taking machine."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from voice_tutor.audio import AudioSink
from voice_tutor.config import settings
from voice_tutor.errors import GenerationError, InvalidTransition, TransportError
from voice_tutor.events import ErrorEvent, EventBus, StateChanged, TranscriptFinalized
from voice_tutor.models import ConversationState, ConversationStatus, TranscriptSegment
from voice_tutor.playback import PlaybackPipeline
from voice_tutor.silence import SilenceTimer
from voice_tutor.transcript import TranscriptAggregator

log = logging.getLogger(__name__)

IDLE = ConversationStatus.IDLE
PROCESSING = ConversationStatus.PROCESSING
SPEAKING = ConversationStatus.SPEAKING

# Every state may always fall back to Idle (stop, reset, barge-in, failure).
TRANSITIONS: dict[ConversationStatus, set[ConversationStatus]] = {
    IDLE: {PROCESSING},
    PROCESSING: {SPEAKING, IDLE},
    SPEAKING: {IDLE},
}


class SpeechSessionController:
    """Owns the live conversation state of one session.

    Transcript segments come in through ``handle_segment`` (directly, or from
    the speech-to-text receive loop started by ``start_recording``). After
    ``silence_ms`` without a new segment the accumulated utterance is
    finalized, but only while Idle; a ``TranscriptFinalized`` event is then
    published for the dialogue layer.

    New speech while Speaking is a barge-in: the running turn, queued
    synthesis and playing audio are all dropped and the state returns to Idle.
    """

    def __init__(
        self,
        bus: EventBus,
        sink: AudioSink,
        stt=None,
        state: Optional[ConversationState] = None,
        silence_ms: Optional[int] = None,
        drain_timeout: float = 3.0,
    ):
        self.bus = bus
        self.stt = stt
        self.state = state or ConversationState()
        self.aggregator = TranscriptAggregator()
        self.aggregator.on_change(self._on_transcript_change)
        self.silence = SilenceTimer(
            silence_ms if silence_ms is not None else settings.SILENCE_THRESHOLD_MS,
            self._on_silence,
        )
        self.playback = PlaybackPipeline(
            sink,
            on_first_play=self._on_first_play,
            on_drained=self._on_drained,
            on_failure=self._on_playback_failure,
        )
        self._turn: Optional[asyncio.Task] = None
        self._receiver: Optional[asyncio.Task] = None
        self._cancelling = False
        self.drain_timeout = drain_timeout

    @property
    def status(self) -> ConversationStatus:
        return self.state.status

    @property
    def recording(self) -> bool:
        return self._receiver is not None and not self._receiver.done()

    # State machine

    def set_status(self, status: ConversationStatus) -> None:
        previous = self.state.status
        if status == previous:
            return
        if status not in TRANSITIONS[previous]:
            raise InvalidTransition(f"{previous.value} -> {status.value}")
        self.state.status = status
        log.info(f"Status: {previous.value} -> {status.value}")
        self.bus.publish(StateChanged(status=status, previous=previous))
        if status == IDLE and self.aggregator.has_text:
            # Speech heard while busy gets its own silence countdown now.
            self.silence.reset()

    # Transcript input

    def handle_segment(self, segment: TranscriptSegment) -> None:
        text = segment.transcript.strip()
        if text and self.state.status == SPEAKING:
            log.info("Barge-in: student spoke over playback")
            self.barge_in()
        self.aggregator.apply(segment)
        if text:
            self.silence.reset()

    def _on_transcript_change(self, interim: str, accumulated: str) -> None:
        self.state.transcript = self.aggregator.live_text

    def _on_silence(self) -> None:
        self.finalize()

    def finalize(self) -> bool:
        """Close the accumulated utterance, if allowed. Returns True if one was published."""
        self.silence.cancel()
        if self.state.status != IDLE:
            log.debug(f"Silence while {self.state.status.value}, keeping buffer")
            return False
        if not self.aggregator.has_text:
            return False
        text = self.aggregator.take()
        log.info(f"Finalized utterance: {text[:60]!r}")
        self.bus.publish(TranscriptFinalized(text=text))
        return True

    # Turns

    def attach_turn(self, task: asyncio.Task) -> None:
        """Register the task producing the current reply so it can be cancelled."""
        self._turn = task
        task.add_done_callback(self._turn_done)

    def _turn_done(self, task: asyncio.Task) -> None:
        if self._turn is task:
            self._turn = None

    def _on_first_play(self) -> None:
        if self.state.status == PROCESSING:
            self.set_status(SPEAKING)

    def _on_drained(self) -> None:
        if self.state.status == SPEAKING:
            self.set_status(IDLE)

    def _on_playback_failure(self, error: Exception) -> None:
        if isinstance(error, GenerationError):
            self.abort_turn(str(error))
        else:
            self.abort_turn(f"Audio playback failed: {error}")

    def abort_turn(self, message: str) -> None:
        """Drop the current turn after a generation failure and report it."""
        log.error(f"Turn aborted: {message}")
        self.bus.publish(ErrorEvent(message=message))
        self.cancel_output()

    def barge_in(self) -> bool:
        return self.cancel_output()

    def cancel_output(self) -> bool:
        """Cancel the running turn, queued synthesis and playing audio; go Idle.

        Returns False if a cancellation is already in progress. Stopping the
        sink or publishing the state change may call back into this method.
        """
        if self._cancelling:
            log.debug("Cancellation already in progress")
            return False
        self._cancelling = True
        try:
            turn, self._turn = self._turn, None
            if turn is not None and not turn.done():
                turn.cancel()
            self.playback.cancel()
            self.set_status(IDLE)
        finally:
            self._cancelling = False
        return True

    def stop(self) -> None:
        """Stop everything in flight and discard the unfinished utterance."""
        self.silence.cancel()
        self.aggregator.reset()
        self.cancel_output()

    def reset(self) -> None:
        """Stop, then forget the conversation."""
        self.stop()
        self.state.history.clear()
        self.state.error = None

    def clear_error(self) -> None:
        self.state.error = None

    # Recording

    async def start_recording(self) -> bool:
        """Open the speech-to-text stream. Returns False (with ``state.error`` set) on failure."""
        if self.recording:
            return True
        self.clear_error()
        if self.stt is None:
            self._transport_failed(TransportError("No speech-to-text service configured"))
            return False
        try:
            await self.stt.connect()
        except TransportError as e:
            self._transport_failed(e)
            return False
        self._receiver = asyncio.get_running_loop().create_task(self._receive_loop())
        return True

    async def send_audio(self, frame: bytes) -> None:
        if self.stt is None:
            return
        try:
            await self.stt.send_audio(frame)
        except TransportError as e:
            self._transport_failed(e)

    async def stop_recording(self) -> None:
        """Close the stream and finalize whatever was said last.

        The provider is asked to flush first, and results still in flight are
        received for up to ``drain_timeout`` seconds before the socket closes.
        """
        receiver, self._receiver = self._receiver, None
        if self.stt is not None and receiver is not None and not receiver.done():
            await self.stt.finish()
            try:
                await asyncio.wait_for(receiver, timeout=self.drain_timeout)
            except asyncio.TimeoutError:
                log.warning("Transcription stream did not drain in time")
            except asyncio.CancelledError:
                if not receiver.cancelled():
                    raise
        if self.stt is not None:
            await self.stt.close()
        self.finalize()

    async def _receive_loop(self) -> None:
        try:
            async for segment in self.stt.events():
                self.handle_segment(segment)
        except TransportError as e:
            self._transport_failed(e)

    def _transport_failed(self, error: TransportError) -> None:
        message = str(error)
        log.error(f"Speech input failed: {message}")
        self.state.error = message
        self.bus.publish(ErrorEvent(message=message))
        self.cancel_output()
