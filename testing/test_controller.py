"""Tests for the turn-taking controller."""

from __future__ import annotations

import asyncio

import pytest

from voice_tutor.controller import SpeechSessionController
from voice_tutor.errors import InvalidTransition, TransportError
from voice_tutor.events import ErrorEvent, EventBus, StateChanged, TranscriptFinalized
from voice_tutor.models import ConversationStatus, TranscriptSegment

SILENCE_MS = 20
WAIT = 0.08  # Comfortably longer than SILENCE_MS


class HoldingSink:
    """Plays forever until stopped, like a long sentence."""

    def __init__(self):
        self.played: list[bytes] = []
        self.stops = 0
        self.on_stop = None

    async def play(self, audio: bytes) -> None:
        self.played.append(audio)
        await asyncio.Event().wait()

    def stop(self) -> None:
        self.stops += 1
        if self.on_stop is not None:
            self.on_stop()


class FakeSTT:
    def __init__(self, segments=(), connect_error=None, stream_error=None):
        self.segments = list(segments)
        self.connect_error = connect_error
        self.stream_error = stream_error
        self.frames: list[bytes] = []
        self.finished = False
        self.closed = False

    async def connect(self) -> None:
        if self.connect_error:
            raise self.connect_error

    async def send_audio(self, frame: bytes) -> None:
        self.frames.append(frame)

    async def events(self):
        for segment in self.segments:
            yield segment
        if self.stream_error:
            raise self.stream_error

    async def finish(self) -> None:
        self.finished = True

    async def close(self) -> None:
        self.closed = True


class LateResultSTT(FakeSTT):
    """Sends its last final result only after being asked to finish."""

    def __init__(self, last_words: str, hang: bool = False):
        super().__init__()
        self.last_words = last_words
        self.hang = hang
        self.flushed = asyncio.Event()

    async def events(self):
        await self.flushed.wait()
        if self.hang:
            await asyncio.Event().wait()
        yield final(self.last_words)

    async def finish(self) -> None:
        await super().finish()
        self.flushed.set()


def final(text: str) -> TranscriptSegment:
    return TranscriptSegment(transcript=text, is_final=True, confidence=0.9)


def make_controller(stt=None, drain_timeout=1.0):
    bus = EventBus()
    finalized: list[str] = []
    states: list[ConversationStatus] = []
    errors: list[str] = []
    bus.subscribe(TranscriptFinalized, lambda e: finalized.append(e.text))
    bus.subscribe(StateChanged, lambda e: states.append(e.status))
    bus.subscribe(ErrorEvent, lambda e: errors.append(e.message))
    sink = HoldingSink()
    controller = SpeechSessionController(
        bus, sink, stt=stt, silence_ms=SILENCE_MS, drain_timeout=drain_timeout
    )
    return controller, sink, finalized, states, errors


async def audio(text: str) -> bytes:
    return text.encode()


async def start_speaking(controller: SpeechSessionController) -> None:
    controller.set_status(ConversationStatus.PROCESSING)
    controller.playback.start()
    controller.playback.submit(0, audio("first"))
    controller.playback.submit(1, audio("second"))
    controller.playback.close_input(2)
    await asyncio.sleep(0.01)


def test_silence_finalizes_accumulated_utterance_once():
    async def run():
        controller, _, finalized, _, _ = make_controller()
        controller.handle_segment(final("I would use"))
        await asyncio.sleep(SILENCE_MS / 2000)
        controller.handle_segment(final("a hash map"))
        await asyncio.sleep(WAIT)
        return controller, finalized

    controller, finalized = asyncio.run(run())

    assert finalized == ["I would use a hash map"]
    assert not controller.aggregator.has_text


def test_silence_with_only_interim_text_finalizes_nothing():
    async def run():
        controller, _, finalized, _, _ = make_controller()
        controller.handle_segment(TranscriptSegment(transcript="umm", is_final=False))
        await asyncio.sleep(WAIT)
        return finalized

    assert asyncio.run(run()) == []


def test_silence_while_processing_waits_for_idle():
    async def run():
        controller, _, finalized, _, _ = make_controller()
        controller.set_status(ConversationStatus.PROCESSING)
        controller.handle_segment(final("one more thing"))
        await asyncio.sleep(WAIT)
        held = list(finalized)
        controller.set_status(ConversationStatus.IDLE)
        await asyncio.sleep(WAIT)
        return held, finalized

    held, finalized = asyncio.run(run())

    assert held == []
    assert finalized == ["one more thing"]


def test_illegal_transition_raises():
    controller, _, _, _, _ = make_controller()

    with pytest.raises(InvalidTransition):
        controller.set_status(ConversationStatus.SPEAKING)
    assert controller.status == ConversationStatus.IDLE


def test_barge_in_while_speaking_empties_queue_and_goes_idle():
    async def run():
        controller, sink, _, states, _ = make_controller()
        await start_speaking(controller)
        assert controller.status == ConversationStatus.SPEAKING
        assert controller.playback.queue_length == 2

        controller.handle_segment(TranscriptSegment(transcript="wait", is_final=False))
        return controller, sink, states

    controller, sink, states = asyncio.run(run())

    assert controller.status == ConversationStatus.IDLE
    assert controller.playback.queue_length == 0
    assert sink.stops == 1
    assert sink.played == [b"first"]
    assert states == [
        ConversationStatus.PROCESSING,
        ConversationStatus.SPEAKING,
        ConversationStatus.IDLE,
    ]


def test_empty_segment_while_speaking_is_not_barge_in():
    async def run():
        controller, sink, _, _, _ = make_controller()
        await start_speaking(controller)
        controller.handle_segment(TranscriptSegment(transcript="  ", is_final=False))
        return controller, sink

    controller, sink = asyncio.run(run())

    assert controller.status == ConversationStatus.SPEAKING
    assert sink.stops == 0


def test_cancellation_is_not_reentered():
    async def run():
        controller, sink, _, states, _ = make_controller()
        nested: list[bool] = []
        sink.on_stop = lambda: nested.append(controller.barge_in())
        controller.bus.subscribe(
            StateChanged,
            lambda e: nested.append(controller.cancel_output())
            if e.status == ConversationStatus.IDLE
            else None,
        )
        await start_speaking(controller)
        outer = controller.barge_in()
        return outer, nested, sink, states

    outer, nested, sink, states = asyncio.run(run())

    assert outer is True
    assert nested == [False, False]
    assert sink.stops == 1
    assert states.count(ConversationStatus.IDLE) == 1


def test_cancel_output_cancels_running_turn():
    async def run():
        controller, _, _, _, _ = make_controller()
        controller.set_status(ConversationStatus.PROCESSING)
        turn = asyncio.create_task(asyncio.sleep(10))
        controller.attach_turn(turn)
        controller.stop()
        await asyncio.sleep(0)
        return controller, turn

    controller, turn = asyncio.run(run())

    assert turn.cancelled()
    assert controller.status == ConversationStatus.IDLE


def test_connect_failure_sets_error_and_stays_idle():
    async def run():
        stt = FakeSTT(connect_error=TransportError("Microphone permission denied"))
        controller, _, _, _, errors = make_controller(stt)
        ok = await controller.start_recording()
        return ok, controller, errors

    ok, controller, errors = asyncio.run(run())

    assert ok is False
    assert controller.state.error == "Microphone permission denied"
    assert errors == ["Microphone permission denied"]
    assert controller.status == ConversationStatus.IDLE


def test_stream_error_forces_idle_and_retry_clears_error():
    async def run():
        stt = FakeSTT(
            segments=[final("so the answer")],
            stream_error=TransportError("Transcription stream disconnected"),
        )
        controller, _, _, _, errors = make_controller(stt)
        controller.set_status(ConversationStatus.PROCESSING)
        await controller.start_recording()
        await asyncio.sleep(0.01)
        status_after_error = controller.status
        error_after_error = controller.state.error

        stt.stream_error = None
        stt.segments = []
        await controller.start_recording()
        return controller, errors, status_after_error, error_after_error

    controller, errors, status_after_error, error_after_error = asyncio.run(run())

    assert status_after_error == ConversationStatus.IDLE
    assert error_after_error == "Transcription stream disconnected"
    assert errors == ["Transcription stream disconnected"]
    assert controller.state.error is None


def test_stop_recording_finalizes_remaining_speech():
    async def run():
        stt = FakeSTT()
        controller, _, finalized, _, _ = make_controller(stt)
        await controller.start_recording()
        await controller.send_audio(b"\x00\x01")
        controller.handle_segment(final("that is all"))
        await controller.stop_recording()
        return stt, finalized

    stt, finalized = asyncio.run(run())

    assert stt.frames == [b"\x00\x01"]
    assert stt.closed
    assert finalized == ["that is all"]


def test_stop_recording_waits_for_results_sent_after_flush():
    async def run():
        stt = LateResultSTT("and then return it")
        controller, _, finalized, _, _ = make_controller(stt)
        await controller.start_recording()
        controller.handle_segment(final("sort the list"))
        await controller.stop_recording()
        return stt, controller, finalized

    stt, controller, finalized = asyncio.run(run())

    assert stt.finished and stt.closed
    assert finalized == ["sort the list and then return it"]
    assert not controller.recording


def test_stop_recording_gives_up_on_a_stream_that_never_ends():
    async def run():
        stt = LateResultSTT("never arrives", hang=True)
        controller, _, finalized, _, _ = make_controller(stt, drain_timeout=0.02)
        await controller.start_recording()
        controller.handle_segment(final("that is all"))
        await controller.stop_recording()
        return stt, finalized

    stt, finalized = asyncio.run(run())

    assert stt.closed
    assert finalized == ["that is all"]
