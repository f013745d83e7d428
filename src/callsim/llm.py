"""
Prospect language generation (OpenAI chat completions).

Provides:
- LanguageGenerator interface consumed by the call (history -> next prospect line)
- Startup model validation
- Streaming generation with persona system prompt and a rolling history window
- End-of-call detection from the prospect's farewell
- Speech synthesis of each reply
"""

from __future__ import annotations

import re
import time
import unicodedata
from abc import ABC, abstractmethod
from typing import Any, List, Dict, Optional, Sequence

import httpx
import structlog
from openai import AsyncOpenAI

from src.callsim.config import get_config
from src.callsim.personas import OPENING_INSTRUCTION, build_system_prompt
from src.callsim.tts import OpenAISpeechSynthesizer, SpeechSynthesizer
from src.callsim.types import AssistantReply, TrainingConfig, Turn

logger = structlog.get_logger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"

_FAREWELL_PHRASES = ("au revoir", "bonne journee", "a bientot")


class LanguageGenerationError(Exception):
    """The language model could not produce a usable reply."""
    pass


def _fold(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text or "")
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).lower()


def should_end_call(message: str) -> bool:
    """True when the prospect says goodbye ("au revoir", "bonne journée", "à bientôt")."""
    folded = re.sub(r"\s+", " ", _fold(message))
    return any(phrase in folded for phrase in _FAREWELL_PHRASES)


def build_messages(
    system_prompt: str,
    history: Sequence[Turn],
    *,
    is_first_turn: bool = False,
    max_turns: int = 20,
) -> List[Dict[str, str]]:
    """Chat messages in OpenAI format; only the last `max_turns` turns are sent."""
    messages = [{"role": "system", "content": system_prompt}]
    if is_first_turn:
        messages.append({"role": "system", "content": OPENING_INSTRUCTION})

    recent = list(history)[-max_turns:] if max_turns > 0 else list(history)
    messages.extend(turn.to_message() for turn in recent)
    return messages


async def validate_openai_model(api_key: str, model_name: str) -> bool:
    """
    Validate that the configured OpenAI model exists.

    Calls GET https://api.openai.com/v1/models to check.

    Raises:
        SystemExit: If the model doesn't exist or the API can't be reached (fail fast)
    """
    logger.info("Validating OpenAI model", model=model_name)

    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(
                f"{OPENAI_BASE_URL}/models",
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=10.0,
            )

            if response.status_code != 200:
                logger.error(
                    "Failed to fetch OpenAI models",
                    status_code=response.status_code,
                    response=response.text[:200],
                )
                raise SystemExit(
                    f"Failed to validate OpenAI model. API returned status {response.status_code}. "
                    "Check your OPENAI_API_KEY."
                )

            data = response.json()
            model_ids = [m.get("id") for m in data.get("data", [])]

            if model_name not in model_ids:
                available = ", ".join(sorted(mid for mid in model_ids if mid)[:10])
                logger.error(
                    "OpenAI model not found",
                    requested_model=model_name,
                    available_models=available,
                )
                raise SystemExit(
                    f"OPENAI_MODEL '{model_name}' not found in available models.\n"
                    f"Available models include: {available}\n"
                    "Please update OPENAI_MODEL in your .env file."
                )

            logger.info("OpenAI model validated successfully", model=model_name)
            return True

        except httpx.RequestError as e:
            logger.error("Failed to connect to OpenAI API", error=str(e))
            raise SystemExit(
                f"Failed to connect to OpenAI API: {e}\n"
                "Check your network connection and OPENAI_API_KEY."
            )


class LanguageGenerator(ABC):
    """Produces the prospect's next line from the conversation so far."""

    @abstractmethod
    async def generate_reply(
        self, history: Sequence[Turn], is_first_turn: bool = False
    ) -> AssistantReply:
        """Raise on failure; the caller owns fallback behaviour."""
        raise NotImplementedError


class OpenAIProspect(LanguageGenerator):
    """
    OpenAI chat model playing the prospect.

    Text is streamed and assembled, then synthesized to mp3 when TTS is enabled.
    """

    def __init__(
        self,
        training: TrainingConfig,
        config: Optional[Any] = None,
        synthesizer: Optional[SpeechSynthesizer] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.config = config or get_config()
        self.training = training
        self.model = self.config.openai_model
        self.system_prompt = build_system_prompt(training)

        self._client = client or AsyncOpenAI(api_key=self.config.openai_api_key)
        if synthesizer is None and self.config.tts_enabled:
            synthesizer = OpenAISpeechSynthesizer(self.config)
        self._synthesizer = synthesizer

    async def validate_model(self) -> bool:
        return await validate_openai_model(self.config.openai_api_key, self.model)

    async def _complete(self, messages: List[Dict[str, str]]) -> str:
        stream = await self._client.chat.completions.create(
            model=self.model,
            messages=messages,
            stream=True,
            max_tokens=self.config.llm_max_tokens,
            temperature=self.config.llm_temperature,
        )

        full_response = ""
        async for chunk in stream:
            if chunk.choices and chunk.choices[0].delta.content:
                full_response += chunk.choices[0].delta.content
        return full_response.strip()

    async def generate_reply(
        self, history: Sequence[Turn], is_first_turn: bool = False
    ) -> AssistantReply:
        messages = build_messages(
            self.system_prompt,
            history,
            is_first_turn=is_first_turn,
            max_turns=self.config.max_history_turns,
        )

        start_time = time.time()
        try:
            message = await self._complete(messages)
        except Exception as e:
            logger.error("LLM generation failed", error=str(e), model=self.model)
            raise LanguageGenerationError(str(e)) from e

        if not message:
            raise LanguageGenerationError("Empty completion")

        llm_ms = (time.time() - start_time) * 1000

        audio = None
        if self._synthesizer is not None:
            audio = await self._synthesizer.synthesize(message)

        reply = AssistantReply(
            message=message,
            audio=audio,
            audio_format=self._synthesizer.audio_format if self._synthesizer else "mp3",
            # The opening line is never a farewell.
            should_end_call=False if is_first_turn else should_end_call(message),
        )
        logger.info(
            "Prospect reply generated",
            llm_ms=round(llm_ms, 1),
            total_ms=round((time.time() - start_time) * 1000, 1),
            has_audio=audio is not None,
            should_end_call=reply.should_end_call,
            first_turn=is_first_turn,
        )
        return reply

    async def close(self) -> None:
        if self._synthesizer is not None:
            await self._synthesizer.close()
