"""
Configuration management for the cold-call simulator.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    port: int = 7860
    log_level: str = "INFO"

    # OpenAI
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_scoring_model: str = "gpt-4o-mini"
    openai_tts_model: str = "tts-1"
    openai_tts_voice: str = "alloy"
    openai_realtime_model: str = "gpt-4o-realtime-preview-2024-12-17"
    openai_realtime_voice: str = "alloy"

    # Language generation
    llm_timeout_seconds: float = 12.0
    llm_max_consecutive_failures: int = 3
    llm_max_tokens: int = 150
    llm_temperature: float = 0.8
    max_history_turns: int = 20
    tts_enabled: bool = True

    # Scoring
    scoring_timeout_seconds: float = 30.0

    # Turn taking
    # - turn_debounce_seconds: quiet time after interim text before re-evaluating the buffer
    # - min_turn_spacing_seconds: minimum gap between two dispatched user turns
    # - utterance_*: is_complete_utterance thresholds (tuned for French phone speech)
    turn_debounce_seconds: float = 1.5
    min_turn_spacing_seconds: float = 1.3
    utterance_length_threshold: int = 40
    utterance_context_min_length: int = 12
    utterance_keyword_min_length: int = 8

    # Recognition engine restarts
    recognition_restart_delay_seconds: float = 0.1
    recognition_error_restart_delay_seconds: float = 0.5

    # Call
    ringtone_seconds: float = 1.2
    playback_timeout_seconds: float = 30.0
    fallback_utterance: str = "Pardon ?"
    opening_fallback_utterance: str = "Allô ?"

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        if not self.openai_model:
            missing.append("OPENAI_MODEL")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

        if self.turn_debounce_seconds <= 0 or self.min_turn_spacing_seconds < 0:
            raise ConfigError(
                "TURN_DEBOUNCE_SECONDS must be > 0 and MIN_TURN_SPACING_SECONDS must be >= 0."
            )
        if self.llm_timeout_seconds <= 0:
            raise ConfigError("LLM_TIMEOUT_SECONDS must be > 0.")
        if self.llm_max_consecutive_failures < 1:
            raise ConfigError("LLM_MAX_CONSECUTIVE_FAILURES must be >= 1.")

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            port=self.port,
            log_level=self.log_level,
            openai_model=self.openai_model,
            openai_scoring_model=self.openai_scoring_model,
            openai_tts_model=self.openai_tts_model,
            openai_tts_voice=self.openai_tts_voice,
            tts_enabled=self.tts_enabled,
            llm_timeout_seconds=self.llm_timeout_seconds,
            llm_max_consecutive_failures=self.llm_max_consecutive_failures,
            turn_debounce_seconds=self.turn_debounce_seconds,
            min_turn_spacing_seconds=self.min_turn_spacing_seconds,
            utterance_length_threshold=self.utterance_length_threshold,
            ringtone_seconds=self.ringtone_seconds,
            openai_key_set=bool(self.openai_api_key),
        )


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    return Config(
        # Server
        port=_get_int("PORT", 7860),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # OpenAI
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        openai_scoring_model=os.getenv("OPENAI_SCORING_MODEL", "gpt-4o-mini"),
        openai_tts_model=os.getenv("OPENAI_TTS_MODEL", "tts-1"),
        openai_tts_voice=os.getenv("OPENAI_TTS_VOICE", "alloy"),
        openai_realtime_model=os.getenv(
            "OPENAI_REALTIME_MODEL", "gpt-4o-realtime-preview-2024-12-17"
        ),
        openai_realtime_voice=os.getenv("OPENAI_REALTIME_VOICE", "alloy"),

        # Language generation
        llm_timeout_seconds=_get_float("LLM_TIMEOUT_SECONDS", 12.0),
        llm_max_consecutive_failures=_get_int("LLM_MAX_CONSECUTIVE_FAILURES", 3),
        llm_max_tokens=_get_int("LLM_MAX_TOKENS", 150),
        llm_temperature=_get_float("LLM_TEMPERATURE", 0.8),
        max_history_turns=_get_int("MAX_HISTORY_TURNS", 20),
        tts_enabled=_get_bool("TTS_ENABLED", True),

        # Scoring
        scoring_timeout_seconds=_get_float("SCORING_TIMEOUT_SECONDS", 30.0),

        # Turn taking
        turn_debounce_seconds=_get_float("TURN_DEBOUNCE_SECONDS", 1.5),
        min_turn_spacing_seconds=_get_float("MIN_TURN_SPACING_SECONDS", 1.3),
        utterance_length_threshold=_get_int("UTTERANCE_LENGTH_THRESHOLD", 40),
        utterance_context_min_length=_get_int("UTTERANCE_CONTEXT_MIN_LENGTH", 12),
        utterance_keyword_min_length=_get_int("UTTERANCE_KEYWORD_MIN_LENGTH", 8),

        # Recognition engine restarts
        recognition_restart_delay_seconds=_get_float("RECOGNITION_RESTART_DELAY_SECONDS", 0.1),
        recognition_error_restart_delay_seconds=_get_float(
            "RECOGNITION_ERROR_RESTART_DELAY_SECONDS", 0.5
        ),

        # Call
        ringtone_seconds=_get_float("RINGTONE_SECONDS", 1.2),
        playback_timeout_seconds=_get_float("PLAYBACK_TIMEOUT_SECONDS", 30.0),
        fallback_utterance=os.getenv("FALLBACK_UTTERANCE", "Pardon ?"),
        opening_fallback_utterance=os.getenv("OPENING_FALLBACK_UTTERANCE", "Allô ?"),
    )


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
