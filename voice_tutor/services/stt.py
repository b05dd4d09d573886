"""Deepgram live speech-to-text over a websocket."""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator, Optional
from urllib.parse import urlencode

import websockets

from voice_tutor.config import settings
from voice_tutor.errors import TransportError
from voice_tutor.models import TranscriptSegment

log = logging.getLogger(__name__)


def parse_result(message: str | bytes) -> Optional[TranscriptSegment]:
    """Turn one Deepgram message into a segment; None for non-result messages."""
    try:
        event = json.loads(message)
    except (json.JSONDecodeError, TypeError):
        log.debug("Ignoring non-JSON STT message")
        return None
    if not isinstance(event, dict):
        return None

    msg_type = event.get("type", "Results")
    if msg_type == "Error":
        raise TransportError(f"Transcription error: {event.get('message') or event}")
    if msg_type != "Results":
        return None

    alternatives = event.get("channel", {}).get("alternatives") or [{}]
    best = alternatives[0]
    return TranscriptSegment(
        transcript=(best.get("transcript") or "").strip(),
        is_final=bool(event.get("is_final", False)),
        confidence=min(1.0, max(0.0, float(best.get("confidence") or 0.0))),
    )


class DeepgramSTT:
    """Duplex stream: raw audio frames in, TranscriptSegments out."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        url: Optional[str] = None,
        model: Optional[str] = None,
        language: str = "en-US",
    ) -> None:
        self.api_key = (api_key or settings.DEEPGRAM_API_KEY or "").strip() or None
        self.url = url or settings.DEEPGRAM_URL
        self.model = model or settings.DEEPGRAM_MODEL
        self.language = language
        self._ws = None
        self._finished = False

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def _listen_url(self) -> str:
        params = {
            "model": self.model,
            "language": self.language,
            "smart_format": "true",
            "interim_results": "true",
            "punctuate": "true",
        }
        return f"{self.url}?{urlencode(params)}"

    async def connect(self) -> None:
        if not self.api_key:
            raise TransportError("Deepgram API key is not configured")
        try:
            self._ws = await websockets.connect(
                self._listen_url(),
                additional_headers={"Authorization": f"Token {self.api_key}"},
                ping_interval=20,
                ping_timeout=10,
            )
        except (OSError, websockets.WebSocketException) as e:
            raise TransportError(f"Could not connect to transcription service: {e}") from e
        self._finished = False
        log.info("Deepgram STT websocket connected")

    async def send_audio(self, frame: bytes) -> None:
        if self._ws is None:
            raise TransportError("Transcription stream is not open")
        try:
            await self._ws.send(frame)
        except websockets.ConnectionClosed as e:
            self._ws = None
            raise TransportError("Transcription stream disconnected") from e

    async def events(self) -> AsyncIterator[TranscriptSegment]:
        """Yield segments until the provider closes the stream."""
        if self._ws is None:
            raise TransportError("Transcription stream is not open")
        try:
            async for message in self._ws:
                segment = parse_result(message)
                if segment is not None:
                    yield segment
        except websockets.ConnectionClosedError as e:
            raise TransportError("Transcription stream disconnected") from e
        finally:
            log.info("Deepgram STT stream ended")

    async def finish(self) -> None:
        """Ask Deepgram to flush pending results; the socket stays open for them."""
        if self._ws is None or self._finished:
            return
        self._finished = True
        try:
            await self._ws.send(json.dumps({"type": "CloseStream"}))
        except websockets.WebSocketException:
            log.debug("STT websocket closed before CloseStream")

    async def close(self) -> None:
        await self.finish()
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.close()
        except websockets.WebSocketException:
            log.debug("STT websocket already closed")
