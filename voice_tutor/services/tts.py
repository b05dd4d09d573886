"""Text-to-speech services.

This module provides a small async ElevenLabs wrapper that can:
- select a specific voice_id per request
- apply voice_settings (stability/similarity_boost)
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from voice_tutor.config import settings
from voice_tutor.errors import GenerationError

log = logging.getLogger(__name__)


class ElevenLabsTTS:
    """Async ElevenLabs TTS client, one request per spoken chunk."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        voice_id: Optional[str] = None,
        model_id: Optional[str] = None,
        output_format: str = "mp3_44100_128",
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        # .env values sometimes contain accidental leading spaces; strip to be safe.
        self.api_key = (api_key or settings.ELEVENLABS_API_KEY or "").strip() or None
        self.base_url = (base_url or settings.ELEVENLABS_BASE_URL).strip()
        self.voice_id = (voice_id or settings.ELEVENLABS_VOICE_ID).strip()
        self.model_id = model_id or settings.ELEVENLABS_MODEL_ID
        self.output_format = output_format
        # Reused across chunks to avoid a new connection per sentence.
        self._client = client

        if not self.api_key:
            raise ValueError("ELEVENLABS_API_KEY is not set")
        if not self.voice_id:
            raise ValueError("ELEVENLABS_VOICE_ID is not set")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=30)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def synthesize(self, text: str, voice_id: Optional[str] = None) -> bytes:
        """Return raw audio bytes for the given text."""
        return await self.synthesize_with_voice(
            text=text,
            voice_id=voice_id or self.voice_id,
            voice_settings={
                "stability": settings.ELEVENLABS_STABILITY,
                "similarity_boost": settings.ELEVENLABS_SIMILARITY_BOOST,
            },
        )

    async def synthesize_with_voice(
        self,
        text: str,
        voice_id: str,
        voice_settings: Optional[dict[str, Any]] = None,
    ) -> bytes:
        """Return raw audio bytes for the given text.

        Args:
            text: Text to speak.
            voice_id: ElevenLabs voice id to use.
            voice_settings: Optional dict sent as `voice_settings`.

        Raises:
            GenerationError: the request failed or ElevenLabs rejected it.
        """
        url = f"{self.base_url}/v1/text-to-speech/{voice_id}"
        headers = {
            "xi-api-key": self.api_key,
            "Accept": "audio/mpeg",
            "Content-Type": "application/json",
        }
        payload: dict[str, Any] = {
            "text": text,
            "model_id": self.model_id,
            "output_format": self.output_format,
        }
        if voice_settings:
            payload["voice_settings"] = voice_settings

        try:
            response = await self._get_client().post(url, headers=headers, json=payload)
        except httpx.HTTPError as e:
            raise GenerationError(f"ElevenLabs request failed: {e}") from e

        if response.is_error:
            # ElevenLabs often returns useful JSON error details on failure.
            try:
                detail = response.json()
            except ValueError:
                detail = response.text
            raise GenerationError(
                f"ElevenLabs returned {response.status_code} | detail: {detail}"
            )
        log.debug(f"Synthesized {len(text)} chars -> {len(response.content)} bytes")
        return response.content
