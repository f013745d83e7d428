"""
Speech-state coordination.

Serializes user and AI speech:
- while the AI holds the floor, recognition keeps running and text keeps buffering,
  but nothing is dispatched
- when the AI stops, buffered finalized text is flushed as a turn
- owns the recognition engine lifecycle, including auto-restart after the engine
  terminates (silence timeout, transient audio errors)

Restart policy: restart only while listening and the AI is silent. Terminations
while the AI speaks collapse into a single restart performed when it stops, so the
engine can't enter a restart storm during playback.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, Optional

import structlog

from src.callsim.accumulator import TranscriptAccumulator
from src.callsim.audio import MicrophoneError
from src.callsim.config import Config, get_config
from src.callsim.speech_state import SpeechCoordinatorState
from src.callsim.timer import Timer

logger = structlog.get_logger(__name__)

# Web Speech API error codes
TRANSIENT_RECOGNITION_ERRORS = frozenset({"no-speech", "audio-capture", "network", "aborted"})
FATAL_RECOGNITION_ERRORS = frozenset({"not-allowed", "service-not-allowed"})


class RecognitionEngine(ABC):
    """
    Continuous speech recognition (partial + final results).

    Results, terminations and errors are reported back to the call as
    RecognitionResult / RecognitionEnded / RecognitionFailed events.
    """

    @abstractmethod
    async def start(self) -> None:
        """Start recognition. Raise MicrophoneError if capture is impossible."""
        raise NotImplementedError

    @abstractmethod
    async def stop(self) -> None:
        raise NotImplementedError


class SpeechStateCoordinator:
    """Owns the AI-speaking flag, the accumulator and the recognition engine."""

    def __init__(
        self,
        engine: RecognitionEngine,
        state: Optional[SpeechCoordinatorState] = None,
        config: Optional[Config] = None,
    ):
        self.config = config or get_config()
        self.state = state or SpeechCoordinatorState()
        self._engine = engine
        # Returns None once the text is consumed, or seconds until it may be retried.
        self._on_utterance: Optional[Callable[[str], Optional[float]]] = None
        self._restart_timer = Timer("recognition_restart")
        self._restart_pending = False
        self._engine_running = False
        self.restart_count = 0
        # Restarts run on a timer; fatal errors there are reported through this hook.
        self.on_fatal_error: Optional[Callable[[MicrophoneError], None]] = None
        self.accumulator = TranscriptAccumulator(
            self.state,
            on_candidate=self._handle_candidate,
            config=self.config,
        )

    @property
    def is_listening(self) -> bool:
        return self.state.listening

    @property
    def engine_running(self) -> bool:
        return self._engine_running

    @property
    def ai_speaking(self) -> bool:
        return self.state.ai_speaking

    @property
    def restart_pending(self) -> bool:
        return self._restart_pending or self._restart_timer.pending

    def _handle_candidate(self, text: str) -> Optional[float]:
        if self._on_utterance is None:
            logger.debug("Utterance dropped (no listener)", text=text[:80])
            return None
        return self._on_utterance(text)

    def set_ai_speaking(self, speaking: bool) -> None:
        changed = self.state.set_ai_speaking(speaking)
        if not changed:
            return

        logger.debug("AI speaking state", ai_speaking=speaking)

        if speaking:
            # Keep buffering overlapping user speech; a scheduled restart waits for the floor.
            if self._restart_timer.pending:
                self._restart_timer.cancel()
                self._restart_pending = True
            return

        # Floor is free again: recover speech captured during playback.
        self.accumulator.flush()

        if self._restart_pending and self.state.listening:
            self._restart_pending = False
            self._schedule_restart(self.config.recognition_restart_delay_seconds, reason="resume")

    async def start_listening(self, on_utterance: Callable[[str], Optional[float]]) -> None:
        self._on_utterance = on_utterance
        self.accumulator.reset()
        self._restart_pending = False
        self.state.listening = True
        logger.info("Listening started")
        await self._start_engine()

    async def stop_listening(self) -> None:
        """Idempotent; safe if never started."""
        was_listening = self.state.listening
        self.state.listening = False
        self._restart_pending = False
        self._restart_timer.cancel()
        self.accumulator.reset()

        if not self._engine_running and not was_listening:
            return

        self._engine_running = False
        try:
            await self._engine.stop()
        except Exception as e:
            logger.warning("Recognition engine stop failed", error=str(e))
        logger.info("Listening stopped")

    def on_recognition_result(self, final_text: str, interim_text: str) -> None:
        if not self.state.listening:
            return
        self.accumulator.on_recognition_result(final_text, interim_text)

    def on_engine_ended(self) -> None:
        self._engine_running = False
        self._maybe_restart(self.config.recognition_restart_delay_seconds, reason="ended")

    def on_engine_error(self, error: str) -> None:
        """
        Handle an engine error code.

        Raises MicrophoneError for permission failures; transient errors schedule a restart.
        """
        code = (error or "").strip().lower()
        if code in FATAL_RECOGNITION_ERRORS:
            raise MicrophoneError.from_name(code)

        if code in TRANSIENT_RECOGNITION_ERRORS:
            self._engine_running = False
            self._maybe_restart(
                self.config.recognition_error_restart_delay_seconds, reason=f"error:{code}"
            )
            return

        logger.warning("Unhandled recognition error", error=code)

    def _maybe_restart(self, delay_s: float, *, reason: str) -> None:
        if not self.state.listening:
            return
        if self.state.ai_speaking:
            # Remember one restart for when the AI yields the floor.
            self._restart_pending = True
            logger.debug("Recognition restart deferred", reason=reason)
            return
        self._schedule_restart(delay_s, reason=reason)

    def _schedule_restart(self, delay_s: float, *, reason: str) -> None:
        logger.debug("Recognition restart scheduled", reason=reason, delay_ms=int(delay_s * 1000))
        self._restart_timer.schedule(delay_s, self._restart_engine)

    async def _restart_engine(self) -> None:
        if not self.state.listening:
            return
        if self.state.ai_speaking:
            self._restart_pending = True
            return
        if self._engine_running:
            return
        self.restart_count += 1
        try:
            await self._start_engine()
        except MicrophoneError as e:
            logger.error("Recognition restart denied", kind=e.kind.value, error=str(e))
            if self.on_fatal_error is not None:
                self.on_fatal_error(e)
        except Exception as e:
            logger.warning("Recognition restart failed", error=str(e))
        else:
            if not self.state.listening:
                # Listening stopped while the engine was starting.
                logger.info("Recognition restart abandoned, listening stopped")
                self._engine_running = False
                try:
                    await self._engine.stop()
                except Exception as e:
                    logger.warning("Recognition engine stop failed", error=str(e))

    async def _start_engine(self) -> None:
        await self._engine.start()
        self._engine_running = True
