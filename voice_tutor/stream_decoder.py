"""Typed decoding of streamed reply text, independent of the provider's wire format."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator

from voice_tutor.errors import GenerationError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class TextDelta:
    """A piece of reply text, in arrival order."""
    text: str


class LineStreamDecoder:
    """Incremental decoder for line-delimited token streams.

    Understands the two shapes reply endpoints use:
    - server-sent events: ``data: {"text": "..."}``, ``data: [DONE]``,
      ``data: {"error": "..."}``
    - prefixed lines: ``0:"..."`` (a JSON string per line)

    Feed it raw chunks as they arrive; lines may be split across chunks.
    """

    def __init__(self) -> None:
        self._pending = ""
        self.done = False

    def feed(self, chunk: str) -> list[TextDelta]:
        self._pending += chunk
        *lines, self._pending = self._pending.split("\n")
        deltas: list[TextDelta] = []
        for line in lines:
            delta = self._decode_line(line)
            if delta is not None:
                deltas.append(delta)
        return deltas

    def finish(self) -> list[TextDelta]:
        """Decode a trailing line that had no newline."""
        line, self._pending = self._pending, ""
        delta = self._decode_line(line)
        return [delta] if delta is not None else []

    def _decode_line(self, raw: str) -> TextDelta | None:
        line = raw.strip()
        if not line or self.done:
            return None

        if line.startswith("data:"):
            payload = line[len("data:"):].strip()
            if payload == "[DONE]":
                self.done = True
                return None
            return self._from_json(payload)

        prefix, sep, payload = line.partition(":")
        if sep and prefix == "0":
            try:
                value = json.loads(payload)
            except json.JSONDecodeError:
                return TextDelta(payload) if payload else None
            return TextDelta(value) if isinstance(value, str) and value else None

        # Comments, event names and ids carry no text.
        log.debug(f"Ignoring stream line: {line[:60]!r}")
        return None

    def _from_json(self, payload: str) -> TextDelta | None:
        try:
            data: Any = json.loads(payload)
        except json.JSONDecodeError:
            return TextDelta(payload) if payload else None
        if isinstance(data, str):
            return TextDelta(data) if data else None
        if not isinstance(data, dict):
            return None
        if data.get("error"):
            raise GenerationError(f"Reply stream error: {data['error']}")
        text = data.get("text")
        return TextDelta(text) if isinstance(text, str) and text else None


async def decode_lines(chunks: AsyncIterator[str]) -> AsyncIterator[TextDelta]:
    """Adapt an async iterator of raw text chunks into TextDelta events."""
    decoder = LineStreamDecoder()
    async for chunk in chunks:
        for delta in decoder.feed(chunk):
            yield delta
    for delta in decoder.finish():
        yield delta


async def decode_openai_chunks(stream: AsyncIterator[Any]) -> AsyncIterator[TextDelta]:
    """Adapt OpenAI chat-completion stream chunks into TextDelta events."""
    async for chunk in stream:
        if not chunk.choices:
            continue
        content = chunk.choices[0].delta.content
        if content:
            yield TextDelta(content)
