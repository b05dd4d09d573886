"""Language-model services: one-shot completions and streamed spoken replies."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, AsyncIterator, Optional, Sequence

import httpx
from openai import AsyncOpenAI, OpenAIError

from voice_tutor.config import settings
from voice_tutor.errors import GenerationError
from voice_tutor.models import Message
from voice_tutor.stream_decoder import TextDelta, decode_lines, decode_openai_chunks

log = logging.getLogger(__name__)

FENCED_JSON = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")
BARE_OBJECT = re.compile(r"\{[\s\S]*\}")


def format_history(history: Sequence[Message], limit: Optional[int] = None) -> str:
    """Render recent messages as 'Student:' / 'Tutor:' lines."""
    if limit is not None:
        history = history[-limit:] if limit > 0 else []
    if not history:
        return "(no previous messages)"
    speaker = {"user": "Student", "assistant": "Tutor"}
    return "\n".join(f"{speaker[m.role]}: {m.content}" for m in history)


def parse_json_reply(raw_text: str) -> Any:
    """Parse a model reply that should be JSON, tolerating fences and stray prose.

    Raises ValueError when nothing JSON-shaped can be recovered.
    """
    text = raw_text.strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    # Extract JSON from markdown code blocks if present
    fenced = FENCED_JSON.search(text)
    if fenced:
        text = fenced.group(1)
    else:
        bare = BARE_OBJECT.search(text)
        if bare:
            text = bare.group(0)
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        # Fix invalid escapes and retry
        repaired = re.sub(r'\\(?!["\\/bfnrtu])', r"\\\\", text)
        try:
            return json.loads(repaired)
        except json.JSONDecodeError as e:
            raise ValueError(f"Reply is not valid JSON: {e}") from e


def build_messages(system_context: str, history: Sequence[Message]) -> list[dict[str, str]]:
    messages = [{"role": "system", "content": system_context}]
    messages.extend(
        {"role": m.role, "content": m.content} for m in history if m.content.strip()
    )
    return messages


class LLMService:
    """OpenAI-backed completions and reply streaming."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: Optional[str] = None,
        reply_model: Optional[str] = None,
    ):
        self._client = client
        self.model = model or settings.OPENAI_MODEL
        self.reply_model = reply_model or settings.OPENAI_REPLY_MODEL

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
        return self._client

    async def complete(self, prompt: str, temperature: float = 0.3) -> str:
        """Single non-streamed completion; returns the output text."""
        response = await self.client.responses.create(
            model=self.model,
            input=prompt,
            temperature=temperature,
        )
        return response.output_text

    async def stream_reply(
        self, system_context: str, history: Sequence[Message]
    ) -> AsyncIterator[TextDelta]:
        """Stream the tutor's next reply as TextDelta events."""
        messages = build_messages(system_context, history)
        log.debug(f"Streaming reply with {len(messages) - 1} history messages")
        try:
            stream = await self.client.chat.completions.create(
                model=self.reply_model,
                messages=messages,
                stream=True,
                temperature=0.3,
                max_tokens=500,
            )
            async for delta in decode_openai_chunks(stream):
                yield delta
        except OpenAIError as e:
            raise GenerationError(f"Reply generation failed: {e}") from e


class HttpReplyService:
    """Streams replies from an HTTP endpoint that speaks a line-delimited protocol."""

    def __init__(self, endpoint: Optional[str] = None, timeout: float = 60.0):
        self.endpoint = (endpoint or settings.REPLY_ENDPOINT or "").strip()
        self.timeout = timeout
        if not self.endpoint:
            raise ValueError("REPLY_ENDPOINT is not set")

    async def stream_reply(
        self, system_context: str, history: Sequence[Message]
    ) -> AsyncIterator[TextDelta]:
        payload = {
            "system": system_context,
            "messages": [
                {"role": m.role, "content": m.content} for m in history if m.content.strip()
            ],
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                async with client.stream("POST", self.endpoint, json=payload) as response:
                    response.raise_for_status()
                    async for delta in decode_lines(response.aiter_text()):
                        yield delta
        except httpx.HTTPError as e:
            raise GenerationError(f"Reply endpoint failed: {e}") from e
