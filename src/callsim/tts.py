from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Optional

import structlog

from src.callsim.config import get_config

logger = structlog.get_logger(__name__)


class SpeechSynthesizer(ABC):
    """Text -> encoded audio for one assistant utterance."""

    audio_format: str = "mp3"

    @abstractmethod
    async def synthesize(self, text: str) -> Optional[bytes]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class OpenAISpeechSynthesizer(SpeechSynthesizer):
    """
    OpenAI Text-to-Speech (non-streaming).

    Returns the full mp3 for the utterance, or None when synthesis fails so the
    browser can fall back to local speech synthesis.
    """

    def __init__(self, config: Optional[Any] = None):
        self.config = config or get_config()
        self._client = None

    def _get_client(self):
        if self._client is None:
            from openai import OpenAI  # Local import to keep module import light

            self._client = OpenAI(api_key=self.config.openai_api_key)
        return self._client

    async def _generate(self, text: str) -> bytes:
        client = self._get_client()

        def _call() -> bytes:
            resp = client.audio.speech.create(
                model=self.config.openai_tts_model,
                voice=self.config.openai_tts_voice,
                input=text,
                response_format=self.audio_format,
            )
            # SDKs have varied over time; handle several shapes.
            data = getattr(resp, "content", None)
            if isinstance(data, (bytes, bytearray)):
                return bytes(data)
            read = getattr(resp, "read", None)
            if callable(read):
                return read()
            return bytes(resp)

        return await asyncio.to_thread(_call)

    async def synthesize(self, text: str) -> Optional[bytes]:
        if not text or not text.strip():
            return None

        try:
            audio = await self._generate(text)
        except Exception as e:
            logger.warning("OpenAI TTS failed", error=str(e))
            return None

        logger.debug("TTS audio generated", bytes=len(audio), format=self.audio_format)
        return audio or None
