"""
Browser call WebSocket protocol.

The browser owns the microphone (Web Speech recognition) and the speaker; the
server owns the call. Messages are JSON objects with a `type` field.

Inbound (browser -> server):
- start: begin a call, contains persona and difficulty
- recognition: speech recognition result, contains final and interim text
- recognition_end: the recognition engine stopped on its own
- recognition_error: recognition engine error code (e.g. no-speech, not-allowed)
- playback_done: an utterance finished playing (or failed), contains its id
- device_error: microphone acquisition failed (NotAllowedError, NotFoundError, ...)
- hangup: the trainee ended the call

Outbound (server -> browser):
- state: call state changed
- ringtone: ringback audio as base64 WAV
- speak: play one assistant utterance (base64 audio, or text for local synthesis)
- stop_audio: stop all playback now
- listen: start/stop the recognition engine
- turn: a transcript turn was appended
- result: final session result
- error: fatal error with a user-facing message
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import msgspec
import structlog

from src.callsim.audio import b64encode_audio

logger = structlog.get_logger(__name__)

# Create global msgspec encoder/decoder
decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()


class ClientEventType(str, Enum):
    """Browser WebSocket event types."""
    START = "start"
    RECOGNITION = "recognition"
    RECOGNITION_END = "recognition_end"
    RECOGNITION_ERROR = "recognition_error"
    PLAYBACK_DONE = "playback_done"
    DEVICE_ERROR = "device_error"
    HANGUP = "hangup"


@dataclass
class StartEvent:
    persona: str
    difficulty: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "StartEvent":
        return cls(
            persona=str(message.get("persona") or ""),
            difficulty=str(message.get("difficulty") or ""),
        )


@dataclass
class RecognitionEvent:
    final: str
    interim: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "RecognitionEvent":
        return cls(
            final=str(message.get("final") or ""),
            interim=str(message.get("interim") or ""),
        )


@dataclass
class RecognitionErrorEvent:
    error: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "RecognitionErrorEvent":
        return cls(error=str(message.get("error") or ""))


@dataclass
class PlaybackDoneEvent:
    id: int
    error: Optional[str] = None

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "PlaybackDoneEvent":
        try:
            playback_id = int(message.get("id", 0))
        except (TypeError, ValueError):
            raise ValueError(f"Invalid playback id: {message.get('id')!r}")
        error = message.get("error")
        return cls(id=playback_id, error=str(error) if error else None)


@dataclass
class DeviceErrorEvent:
    kind: str
    detail: str = ""

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "DeviceErrorEvent":
        return cls(
            kind=str(message.get("kind") or ""),
            detail=str(message.get("detail") or ""),
        )


def parse_client_message(raw_message: Any) -> tuple[ClientEventType, Any]:
    """
    Parse a raw browser WebSocket message.

    Returns:
        Tuple of (event_type, parsed_event)

    Raises:
        ValueError: If message cannot be parsed
    """
    try:
        message = decoder.decode(
            raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message
        )
    except msgspec.DecodeError as e:
        logger.error("Failed to parse client message", error=str(e))
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError("Message must be a JSON object")

    event_type_str = message.get("type", "")
    try:
        event_type = ClientEventType(event_type_str)
    except ValueError:
        logger.warning("Unknown client event type", event_type=event_type_str)
        raise ValueError(f"Unknown event type: {event_type_str}")

    if event_type == ClientEventType.START:
        return event_type, StartEvent.from_message(message)
    elif event_type == ClientEventType.RECOGNITION:
        return event_type, RecognitionEvent.from_message(message)
    elif event_type == ClientEventType.RECOGNITION_ERROR:
        return event_type, RecognitionErrorEvent.from_message(message)
    elif event_type == ClientEventType.PLAYBACK_DONE:
        return event_type, PlaybackDoneEvent.from_message(message)
    elif event_type == ClientEventType.DEVICE_ERROR:
        return event_type, DeviceErrorEvent.from_message(message)
    else:
        return event_type, message


def _encode(message: Dict[str, Any]) -> str:
    return encoder.encode(message).decode("utf-8")


def create_state_message(state: str, **extra: Any) -> str:
    message = {"type": "state", "state": state}
    message.update(extra)
    return _encode(message)


def create_ringtone_message(wav_bytes: bytes) -> str:
    return _encode({"type": "ringtone", "audio": b64encode_audio(wav_bytes), "format": "wav"})


def create_speak_message(
    playback_id: int,
    text: str,
    audio: Optional[bytes] = None,
    audio_format: str = "mp3",
) -> str:
    """
    Ask the browser to play one utterance.

    `audio` is omitted when there is none; the browser then speaks `text` itself.
    """
    message: Dict[str, Any] = {"type": "speak", "id": playback_id, "text": text}
    encoded = b64encode_audio(audio)
    if encoded:
        message["audio"] = encoded
        message["format"] = audio_format
    return _encode(message)


def create_stop_audio_message() -> str:
    return _encode({"type": "stop_audio"})


def create_listen_message(active: bool) -> str:
    return _encode({"type": "listen", "active": bool(active)})


def create_turn_message(speaker: str, text: str) -> str:
    return _encode({"type": "turn", "speaker": speaker, "text": text})


def create_result_message(result: Dict[str, Any]) -> str:
    return _encode({"type": "result", "result": result})


def create_error_message(kind: str, message: str) -> str:
    return _encode({"type": "error", "kind": kind, "message": message})
