"""Tests for ordered playback of out-of-order synthesis."""

import asyncio

from voice_tutor.errors import GenerationError
from voice_tutor.playback import PlaybackPipeline


class RecordingSink:
    def __init__(self):
        self.played: list[bytes] = []
        self.stops = 0

    async def play(self, audio: bytes) -> None:
        self.played.append(audio)
        await asyncio.sleep(0)

    def stop(self) -> None:
        self.stops += 1


async def synth(text: str, delay: float) -> bytes:
    await asyncio.sleep(delay)
    return text.encode()


async def failing_synth(delay: float) -> bytes:
    await asyncio.sleep(delay)
    raise RuntimeError("voice not found")


def make_pipeline(sink):
    calls = {"first": 0, "drained": asyncio.Event(), "failures": []}

    def on_first():
        calls["first"] += 1

    pipeline = PlaybackPipeline(
        sink,
        on_first_play=on_first,
        on_drained=calls["drained"].set,
        on_failure=calls["failures"].append,
    )
    return pipeline, calls


def test_plays_in_index_order_when_synthesis_finishes_out_of_order():
    async def run():
        sink = RecordingSink()
        pipeline, calls = make_pipeline(sink)
        pipeline.start()
        pipeline.submit(0, synth("zero", 0.05))
        pipeline.submit(1, synth("one", 0.0))
        pipeline.submit(2, synth("two", 0.01))
        pipeline.close_input(3)
        await asyncio.wait_for(calls["drained"].wait(), timeout=1)
        return sink, pipeline, calls

    sink, pipeline, calls = asyncio.run(run())

    assert sink.played == [b"zero", b"one", b"two"]
    assert calls["first"] == 1
    assert pipeline.queue_length == 0
    assert not pipeline.active


def test_close_input_after_all_chunks_played_still_drains():
    async def run():
        sink = RecordingSink()
        pipeline, calls = make_pipeline(sink)
        pipeline.start()
        pipeline.submit(0, synth("only", 0.0))
        await asyncio.sleep(0.01)
        pipeline.close_input(1)
        await asyncio.wait_for(calls["drained"].wait(), timeout=1)
        return sink

    assert asyncio.run(run()).played == [b"only"]


def test_synthesis_failure_stops_playback_at_that_chunk():
    async def run():
        sink = RecordingSink()
        pipeline, calls = make_pipeline(sink)
        pipeline.start()
        pipeline.submit(0, synth("zero", 0.0))
        pipeline.submit(1, failing_synth(0.01))
        pipeline.submit(2, synth("two", 0.0))
        pipeline.close_input(3)
        await asyncio.sleep(0.05)
        return sink, calls

    sink, calls = asyncio.run(run())

    assert sink.played == [b"zero"]
    assert len(calls["failures"]) == 1
    assert isinstance(calls["failures"][0], GenerationError)
    assert not calls["drained"].is_set()


def test_cancel_clears_queue_synchronously():
    async def run():
        sink = RecordingSink()
        pipeline, calls = make_pipeline(sink)
        pipeline.start()
        pipeline.submit(0, synth("zero", 0.5))
        pipeline.submit(1, synth("one", 0.5))
        assert pipeline.queue_length == 2
        pipeline.cancel()
        queue_after_cancel = pipeline.queue_length
        await asyncio.sleep(0.01)
        return sink, pipeline, calls, queue_after_cancel

    sink, pipeline, calls, queue_after_cancel = asyncio.run(run())

    assert queue_after_cancel == 0
    assert sink.stops == 1
    assert sink.played == []
    assert not pipeline.active
    assert calls["first"] == 0
