from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import structlog

logger = structlog.get_logger(__name__)

PERSONAS: tuple[str, ...] = ("secretary", "hr", "manager", "sales")
DIFFICULTIES: tuple[str, ...] = ("easy", "medium", "hard")

DEFAULT_PERSONA = "secretary"
DEFAULT_DIFFICULTY = "medium"


class Speaker(str, Enum):
    """Who produced a turn."""
    USER = "user"
    ASSISTANT = "assistant"


class CallState(str, Enum):
    """Lifecycle of a simulated call (linear, no cycles)."""
    DIALING = "dialing"
    RINGING = "ringing"
    CONNECTED = "connected"
    ENDED = "ended"


@dataclass(frozen=True)
class Turn:
    """A finalized utterance in the call transcript."""

    speaker: Speaker
    text: str
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        if not (self.text or "").strip():
            raise ValueError("Turn text must be non-empty")

    def to_message(self) -> dict[str, str]:
        """OpenAI chat format, from the simulator's point of view."""
        return {"role": self.speaker.value, "content": self.text}


@dataclass(frozen=True)
class TrainingConfig:
    """Target persona + difficulty chosen by the trainee."""

    persona: str = DEFAULT_PERSONA
    difficulty: str = DEFAULT_DIFFICULTY

    @classmethod
    def create(cls, persona: Optional[str], difficulty: Optional[str]) -> "TrainingConfig":
        """Build a config, falling back to defaults for unknown values."""
        persona_norm = (persona or "").strip().lower()
        difficulty_norm = (difficulty or "").strip().lower()

        if persona_norm not in PERSONAS:
            logger.warning("Unknown persona, using default", persona=persona, default=DEFAULT_PERSONA)
            persona_norm = DEFAULT_PERSONA
        if difficulty_norm not in DIFFICULTIES:
            logger.warning(
                "Unknown difficulty, using default",
                difficulty=difficulty,
                default=DEFAULT_DIFFICULTY,
            )
            difficulty_norm = DEFAULT_DIFFICULTY

        return cls(persona=persona_norm, difficulty=difficulty_norm)


@dataclass
class AssistantReply:
    """
    Result of one language-generation exchange.

    `audio` is the synthesized speech for `message` (mp3 by default), or None when
    synthesis is disabled/failed and the UI should fall back to local speech.
    """

    message: str
    audio: Optional[bytes] = None
    audio_format: str = "mp3"
    should_end_call: bool = False
