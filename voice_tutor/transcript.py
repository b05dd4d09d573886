"""Merges interim and final speech-to-text segments into one utterance buffer."""

from __future__ import annotations

import logging
from typing import Callable

from voice_tutor.models import TranscriptSegment

log = logging.getLogger(__name__)

ChangeListener = Callable[[str, str], None]  # (interim, accumulated)


class TranscriptAggregator:
    """Holds the live interim text and the accumulated final text separately.

    Interim results only move the live display value. Final results are
    appended to the accumulated buffer with single spaces, unless the buffer
    already ends with exactly that text (providers sometimes resend a final).
    """

    def __init__(self) -> None:
        self.interim = ""
        self.accumulated = ""
        self._listeners: list[ChangeListener] = []

    def on_change(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def apply(self, segment: TranscriptSegment) -> bool:
        """Apply one segment. Returns True if anything visible changed."""
        text = segment.transcript.strip()
        if not segment.is_final:
            return self._set(interim=text, accumulated=self.accumulated)

        if not text:
            return self._set(interim="", accumulated=self.accumulated)

        if self.accumulated.endswith(text):
            log.debug(f"Skipping duplicate final segment: {text!r}")
            return self._set(interim="", accumulated=self.accumulated)

        joined = f"{self.accumulated} {text}" if self.accumulated else text
        return self._set(interim="", accumulated=joined)

    @property
    def has_text(self) -> bool:
        return bool(self.accumulated.strip())

    @property
    def live_text(self) -> str:
        """Everything heard so far in this utterance, for display."""
        if self.interim and self.accumulated:
            return f"{self.accumulated} {self.interim}"
        return self.interim or self.accumulated

    def take(self) -> str:
        """Return the finished utterance and empty the buffer."""
        text = self.accumulated.strip()
        self._set(interim="", accumulated="")
        return text

    def reset(self) -> None:
        self._set(interim="", accumulated="")

    def _set(self, interim: str, accumulated: str) -> bool:
        if interim == self.interim and accumulated == self.accumulated:
            return False
        self.interim = interim
        self.accumulated = accumulated
        log.debug(f"Transcript: accumulated={accumulated!r} interim={interim!r}")
        for listener in list(self._listeners):
            listener(interim, accumulated)
        return True
