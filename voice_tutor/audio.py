"""Audio output seam. Real playback devices live outside this package."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Protocol

log = logging.getLogger(__name__)


class AudioSink(Protocol):
    async def play(self, audio: bytes) -> None:
        """Play one chunk; returns when it has finished playing."""
        ...

    def stop(self) -> None:
        """Stop whatever is playing right now. Must not block."""
        ...


class FileAudioSink:
    """Writes each chunk to an mp3 file instead of a speaker (or drops it)."""

    def __init__(self, directory: Optional[str | Path] = None):
        self.directory = Path(directory) if directory else None
        if self.directory:
            self.directory.mkdir(parents=True, exist_ok=True)
        self.played = 0

    async def play(self, audio: bytes) -> None:
        self.played += 1
        if self.directory is None:
            return
        path = self.directory / f"chunk_{self.played:04d}.mp3"
        path.write_bytes(audio)
        log.debug(f"Wrote {len(audio)} bytes to {path}")

    def stop(self) -> None:
        pass
