"""Cuts a streamed reply into sentence-sized pieces for speech synthesis."""

from __future__ import annotations

import re
from typing import Optional

from voice_tutor.config import settings

SENTENCE_END = re.compile(r"[.!?]+[\"')\]]*\s+")
COMMA = re.compile(r",\s+")


class SentenceChunker:
    """Accumulates text deltas and yields chunks at sentence boundaries.

    The first chunk of a reply is cut more aggressively (first comma, or a
    word boundary once ``first_chunk_max_chars`` is reached) so the first
    audio can start sooner.
    """

    def __init__(
        self,
        first_chunk_max_chars: Optional[int] = None,
        break_on_comma: Optional[bool] = None,
    ) -> None:
        self.first_chunk_max_chars = (
            first_chunk_max_chars
            if first_chunk_max_chars is not None
            else settings.FIRST_CHUNK_MAX_CHARS
        )
        self.break_on_comma = (
            break_on_comma if break_on_comma is not None else settings.FIRST_CHUNK_BREAK_ON_COMMA
        )
        self._buffer = ""
        self.chunks_emitted = 0

    def feed(self, text: str) -> list[str]:
        """Add a delta; return any chunks that are now complete."""
        self._buffer += text
        chunks: list[str] = []
        while True:
            cut = self._next_cut()
            if cut is None:
                break
            chunk = self._buffer[:cut].strip()
            self._buffer = self._buffer[cut:]
            if chunk:
                chunks.append(chunk)
                self.chunks_emitted += 1
        return chunks

    def flush(self) -> Optional[str]:
        """Return whatever is left once the stream has ended."""
        chunk = self._buffer.strip()
        self._buffer = ""
        if not chunk:
            return None
        self.chunks_emitted += 1
        return chunk

    def _next_cut(self) -> Optional[int]:
        match = SENTENCE_END.search(self._buffer)
        sentence_cut = match.end() if match else None
        if self.chunks_emitted > 0:
            return sentence_cut

        candidates = [sentence_cut] if sentence_cut is not None else []
        if self.break_on_comma:
            comma = COMMA.search(self._buffer)
            if comma:
                candidates.append(comma.end())
        if self.first_chunk_max_chars and len(self._buffer) >= self.first_chunk_max_chars:
            space = self._buffer.rfind(" ", 0, self.first_chunk_max_chars + 1)
            if space > 0:
                candidates.append(space + 1)
        return min(candidates) if candidates else None
