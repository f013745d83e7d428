"""
Turn dispatcher.

Owns the single in-flight guarantee: at most one "user turn -> AI turn" exchange
is outstanding at any time.

- Preconditions are checked synchronously in `try_begin()` before the first await,
  so two submissions started in the same loop tick can't both pass
- language-generation failures (error, timeout, empty reply) fall back to a short
  fixed utterance; the call never deadlocks on a failed exchange
- the in-flight flag is always released
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

import structlog

from src.callsim.config import Config, get_config
from src.callsim.speech_state import SpeechCoordinatorState
from src.callsim.types import AssistantReply, Speaker, Turn

if TYPE_CHECKING:
    from src.callsim.call import CallSession
    from src.callsim.llm import LanguageGenerator

logger = structlog.get_logger(__name__)


@dataclass
class DispatchOutcome:
    """Result of one exchange."""

    user_text: str
    reply: Optional[AssistantReply] = None
    fallback: bool = False
    unavailable: bool = False
    consecutive_failures: int = 0
    error: Optional[str] = None


class TurnDispatcher:
    """Routes completed user utterances to the language generator."""

    def __init__(
        self,
        session: "CallSession",
        generator: "LanguageGenerator",
        state: SpeechCoordinatorState,
        on_reply: Optional[Callable[[DispatchOutcome], None]] = None,
        config: Optional[Config] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or get_config()
        self._session = session
        self._generator = generator
        self._state = state
        self._on_reply = on_reply
        self._clock = clock

        self.last_submitted_text = ""
        self.last_submit_at: Optional[float] = None
        self.consecutive_failures = 0

    @property
    def in_flight(self) -> bool:
        return self._state.in_flight

    def try_begin(self, text: str) -> bool:
        """
        Check preconditions, take the in-flight slot and append the user turn.

        Returns False (silent no-op) when the text is empty, a duplicate of the
        previous submission, too soon after it, or when the floor is taken.
        """
        text = (text or "").strip()
        if not text:
            return False
        if not self._session.is_active:
            return False
        if text == self.last_submitted_text:
            logger.debug("Duplicate turn ignored", text=text[:80])
            return False

        now = self._clock()
        if (
            self.last_submit_at is not None
            and now - self.last_submit_at < self.config.min_turn_spacing_seconds
        ):
            logger.debug(
                "Turn too soon after previous, ignored",
                elapsed_ms=int((now - self.last_submit_at) * 1000),
                text=text[:80],
            )
            return False

        if self._state.ai_speaking:
            logger.debug("Turn ignored while AI speaking", text=text[:80])
            return False
        if not self._state.acquire_dispatch():
            logger.debug("Turn ignored, exchange in flight", text=text[:80])
            return False

        self.last_submitted_text = text
        self.last_submit_at = now
        try:
            self._session.append(Turn(Speaker.USER, text))
        except Exception:
            self._state.release_dispatch()
            raise

        logger.info("User turn", text=text[:120])
        return True

    def retry_delay(self, text: str) -> Optional[float]:
        """
        Seconds until text refused by `try_begin()` may be offered again.

        None means drop it: empty, inactive session, or a repeat of the last turn.
        """
        text = (text or "").strip()
        if not text or not self._session.is_active or text == self.last_submitted_text:
            return None

        delay = 0.0
        if self.last_submit_at is not None:
            delay = self.config.min_turn_spacing_seconds - (self._clock() - self.last_submit_at)
        if self._state.in_flight:
            delay = max(delay, self.config.turn_debounce_seconds)
        return max(delay, 0.0)

    async def exchange(self, text: str) -> Optional[DispatchOutcome]:
        """
        Run the language-generation exchange for a turn accepted by `try_begin()`.

        Returns None when the session ended while waiting (the result is discarded).
        """
        try:
            outcome = await self._generate(text)

            if not self._session.is_active:
                logger.info("Reply discarded, call no longer active", text=text[:80])
                return None

            if outcome.reply is not None:
                self._session.append(Turn(Speaker.ASSISTANT, outcome.reply.message))
                logger.info(
                    "Assistant turn",
                    text=outcome.reply.message[:120],
                    fallback=outcome.fallback,
                    should_end_call=outcome.reply.should_end_call,
                )
                if self._on_reply is not None:
                    # Playback starts before in-flight is released.
                    self._on_reply(outcome)
            return outcome
        finally:
            self._state.release_dispatch()

    async def submit(self, text: str) -> Optional[DispatchOutcome]:
        if not self.try_begin(text):
            return None
        return await self.exchange(text.strip())

    async def _generate(self, text: str) -> DispatchOutcome:
        history = self._session.transcript
        error: Optional[str] = None
        try:
            reply = await asyncio.wait_for(
                self._generator.generate_reply(history, is_first_turn=False),
                timeout=self.config.llm_timeout_seconds,
            )
            if reply is None or not (reply.message or "").strip():
                raise ValueError("Empty reply from language generator")
        except asyncio.TimeoutError:
            error = f"timeout after {self.config.llm_timeout_seconds}s"
        except Exception as e:
            error = str(e) or e.__class__.__name__
        else:
            self.consecutive_failures = 0
            return DispatchOutcome(user_text=text, reply=reply)

        self.consecutive_failures += 1
        logger.warning(
            "Language generation failed",
            error=error,
            consecutive_failures=self.consecutive_failures,
        )

        if self.consecutive_failures >= self.config.llm_max_consecutive_failures:
            logger.error(
                "Language generation unavailable",
                consecutive_failures=self.consecutive_failures,
            )
            return DispatchOutcome(
                user_text=text,
                unavailable=True,
                consecutive_failures=self.consecutive_failures,
                error=error,
            )

        return DispatchOutcome(
            user_text=text,
            reply=AssistantReply(message=self.config.fallback_utterance),
            fallback=True,
            consecutive_failures=self.consecutive_failures,
            error=error,
        )
