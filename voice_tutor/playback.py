"""Ordered playback of concurrently synthesized reply chunks."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from voice_tutor.audio import AudioSink
from voice_tutor.errors import GenerationError

log = logging.getLogger(__name__)

_END = object()  # Marks the slot after the last chunk of a reply


class PlaybackPipeline:
    """Producer/consumer pipeline between synthesis and the speaker.

    Chunks are submitted with their sequence index and synthesized
    concurrently, so results land in their slots in any order. The player
    walks the slots strictly by index and waits on slot ``i`` before playing
    it, however many later slots are already filled.
    """

    def __init__(
        self,
        sink: AudioSink,
        on_first_play: Callable[[], None],
        on_drained: Callable[[], None],
        on_failure: Callable[[Exception], None],
    ):
        self.sink = sink
        self._on_first_play = on_first_play
        self._on_drained = on_drained
        self._on_failure = on_failure
        self._slots: dict[int, asyncio.Future] = {}
        self._queued: set[int] = set()
        self._synthesis: set[asyncio.Task] = set()
        self._player: Optional[asyncio.Task] = None
        self._started_playing = False

    @property
    def active(self) -> bool:
        return self._player is not None and not self._player.done()

    @property
    def queue_length(self) -> int:
        """Chunks submitted but not yet played."""
        return len(self._queued)

    @property
    def started_playing(self) -> bool:
        return self._started_playing

    def start(self) -> None:
        """Begin a new reply. Any previous reply must have been cancelled or drained."""
        if self.active:
            raise RuntimeError("Playback already running")
        self._reset()
        self._player = asyncio.get_running_loop().create_task(self._play_loop())

    def submit(self, index: int, synthesis: Awaitable[bytes]) -> None:
        """Queue chunk ``index``; its audio is produced by ``synthesis``."""
        self._queued.add(index)
        slot = self._slot(index)
        task = asyncio.get_running_loop().create_task(self._fill(index, slot, synthesis))
        self._synthesis.add(task)
        task.add_done_callback(self._synthesis.discard)

    def close_input(self, total: int) -> None:
        """No chunks beyond ``total - 1`` will be submitted."""
        slot = self._slot(total)
        if not slot.done():
            slot.set_result(_END)

    def cancel(self) -> None:
        """Stop playing and drop every queued or in-flight chunk, synchronously."""
        player, self._player = self._player, None
        synthesis, self._synthesis = self._synthesis, set()
        for task in synthesis:
            task.cancel()
        if player is not None and not player.done():
            player.cancel()
        self._reset()
        self.sink.stop()

    def _reset(self) -> None:
        for slot in self._slots.values():
            if not slot.done():
                slot.cancel()
        self._slots = {}
        self._queued = set()
        self._started_playing = False

    def _slot(self, index: int) -> asyncio.Future:
        slot = self._slots.get(index)
        if slot is None:
            slot = asyncio.get_running_loop().create_future()
            self._slots[index] = slot
        return slot

    async def _fill(self, index: int, slot: asyncio.Future, synthesis: Awaitable[bytes]) -> None:
        try:
            audio = await synthesis
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not slot.done():
                slot.set_exception(GenerationError(f"Synthesis failed for chunk {index}: {e}"))
            return
        if not slot.done():
            slot.set_result(audio)
        log.debug(f"Chunk {index} synthesized ({len(audio)} bytes)")

    async def _play_loop(self) -> None:
        index = 0
        try:
            while True:
                audio = await self._slot(index)
                if audio is _END:
                    break
                self._slots.pop(index, None)
                if not self._started_playing:
                    self._started_playing = True
                    self._on_first_play()
                log.debug(f"Playing chunk {index}")
                await self.sink.play(audio)
                self._queued.discard(index)
                index += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning(f"Playback stopped at chunk {index}: {e}")
            self._player = None
            self._on_failure(e)
            return
        self._slots.pop(index, None)
        self._player = None
        self._on_drained()
