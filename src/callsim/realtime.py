"""
Realtime transport variant (OpenAI Realtime over WebRTC).

In this mode the browser streams microphone audio straight to OpenAI and turn
detection happens server-side (server VAD). The server only:
- mints an ephemeral session with the persona instructions
- tracks the conversation from data-channel events relayed by the browser

Transport problems are never raised: they surface as connection-state changes
(connecting -> connected -> disconnected / error).
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import httpx
import msgspec
import structlog

from src.callsim.config import get_config
from src.callsim.personas import build_system_prompt
from src.callsim.types import Speaker, TrainingConfig, Turn

logger = structlog.get_logger(__name__)

REALTIME_SESSIONS_URL = "https://api.openai.com/v1/realtime/sessions"

decoder = msgspec.json.Decoder()


class RealtimeSessionError(Exception):
    """The ephemeral session could not be created."""

    def __init__(self, message: str, status_code: int = 500, details: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.details = details


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class AIState(str, Enum):
    LISTENING = "listening"
    THINKING = "thinking"
    SPEAKING = "speaking"


def build_session_payload(
    training: TrainingConfig,
    voice: Optional[str] = None,
    config: Optional[Any] = None,
) -> Dict[str, Any]:
    config = config or get_config()
    return {
        "model": config.openai_realtime_model,
        "voice": voice or config.openai_realtime_voice,
        "instructions": build_system_prompt(training),
        "input_audio_transcription": {"model": "whisper-1"},
        "turn_detection": {
            "type": "server_vad",
            "threshold": 0.5,
            "prefix_padding_ms": 300,
            "silence_duration_ms": 500,
        },
        "temperature": config.llm_temperature,
        "max_response_output_tokens": 4096,
    }


async def create_realtime_session(
    training: TrainingConfig,
    voice: Optional[str] = None,
    config: Optional[Any] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Any]:
    """
    Create an ephemeral Realtime session for the browser.

    Returns:
        {"client_secret", "session_id", "expires_at"}

    Raises:
        RealtimeSessionError: On HTTP or network failure
    """
    config = config or get_config()
    if not config.openai_api_key:
        raise RealtimeSessionError("OpenAI API key not configured", status_code=500)

    payload = build_session_payload(training, voice, config)
    headers = {
        "Authorization": f"Bearer {config.openai_api_key}",
        "Content-Type": "application/json",
    }

    owns_client = client is None
    client = client or httpx.AsyncClient()
    try:
        response = await client.post(
            REALTIME_SESSIONS_URL,
            json=payload,
            headers=headers,
            timeout=15.0,
        )
    except httpx.RequestError as e:
        logger.error("Failed to connect to OpenAI Realtime API", error=str(e))
        raise RealtimeSessionError(f"Failed to connect to OpenAI Realtime API: {e}", status_code=502)
    finally:
        if owns_client:
            await client.aclose()

    if response.status_code != 200:
        logger.error(
            "OpenAI Realtime API error",
            status_code=response.status_code,
            response=response.text[:200],
        )
        raise RealtimeSessionError(
            f"OpenAI Realtime API error ({response.status_code})",
            status_code=response.status_code,
            details=response.text[:500],
        )

    data = response.json()
    logger.info(
        "Realtime session created",
        session_id=data.get("id"),
        persona=training.persona,
        difficulty=training.difficulty,
    )
    return {
        "client_secret": data.get("client_secret"),
        "session_id": data.get("id"),
        "expires_at": data.get("expires_at"),
    }


class RealtimeConversation:
    """Tracks one realtime conversation from data-channel and ICE events."""

    def __init__(
        self,
        on_conversation_update: Optional[Callable[[List[Turn]], None]] = None,
        on_state_change: Optional[Callable[[ConnectionState], None]] = None,
        on_ai_state_change: Optional[Callable[[AIState], None]] = None,
    ):
        self._turns: List[Turn] = []
        self.connection_state = ConnectionState.CONNECTING
        self.ai_state = AIState.LISTENING
        self.last_error: Optional[str] = None
        self.on_conversation_update = on_conversation_update
        self.on_state_change = on_state_change
        self.on_ai_state_change = on_ai_state_change

    @property
    def history(self) -> List[Turn]:
        return list(self._turns)

    @property
    def is_connected(self) -> bool:
        return self.connection_state == ConnectionState.CONNECTED

    def _set_state(self, state: ConnectionState) -> None:
        if state == self.connection_state:
            return
        logger.info("Realtime connection state", previous=self.connection_state.value, state=state.value)
        self.connection_state = state
        if self.on_state_change:
            self.on_state_change(state)

    def _set_ai_state(self, state: AIState) -> None:
        self.ai_state = state
        if self.on_ai_state_change:
            self.on_ai_state_change(state)

    def _append(self, speaker: Speaker, text: str) -> None:
        self._turns.append(Turn(speaker, text))
        if self.on_conversation_update:
            self.on_conversation_update(self.history)

    def _last_speaker(self) -> Optional[Speaker]:
        return self._turns[-1].speaker if self._turns else None

    def handle_ice_state(self, ice_state: str) -> None:
        state = (ice_state or "").strip().lower()
        if state in ("connected", "completed"):
            self._set_state(ConnectionState.CONNECTED)
            # The prospect picks up and speaks first.
            self._set_ai_state(AIState.SPEAKING)
        elif state in ("disconnected", "failed", "closed"):
            self._set_state(ConnectionState.DISCONNECTED)

    def handle_message(self, raw_message: Any) -> None:
        """Decode a relayed data-channel message; malformed messages are logged and dropped."""
        try:
            event = decoder.decode(
                raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message
            )
        except msgspec.DecodeError as e:
            logger.warning("Failed to parse realtime event", error=str(e))
            return
        if isinstance(event, dict):
            self.handle_event(event)

    def handle_event(self, event: Dict[str, Any]) -> None:
        event_type = event.get("type", "")

        if event_type == "conversation.item.created":
            item = event.get("item") or {}
            if item.get("type") != "message":
                return
            content = item.get("content") or []
            text = ""
            if content and isinstance(content[0], dict):
                text = (content[0].get("transcript") or "").strip()
            role = item.get("role")
            if text and role in (Speaker.USER.value, Speaker.ASSISTANT.value):
                self._append(Speaker(role), text)

        elif event_type == "response.audio_transcript.done":
            text = (event.get("transcript") or "").strip()
            if text and self._last_speaker() != Speaker.ASSISTANT:
                self._append(Speaker.ASSISTANT, text)

        elif event_type == "input_audio_buffer.committed":
            text = (event.get("transcript") or "").strip()
            if text and self._last_speaker() != Speaker.USER:
                self._append(Speaker.USER, text)

        elif event_type == "input_audio_buffer.speech_started":
            self._set_ai_state(AIState.LISTENING)

        elif event_type == "input_audio_buffer.speech_stopped":
            self._set_ai_state(AIState.THINKING)

        elif event_type in ("response.audio.done", "response.done"):
            self._set_ai_state(AIState.LISTENING)

        elif event_type == "error":
            error = event.get("error") or {}
            self.last_error = error.get("message") if isinstance(error, dict) else str(error)
            logger.error("Realtime API error", error=self.last_error)
            self._set_state(ConnectionState.ERROR)

    def end_session(self) -> None:
        self._set_state(ConnectionState.DISCONNECTED)
