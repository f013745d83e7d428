"""
Transcript accumulator.

Turns a stream of speech-recognition results into submission-ready utterances:

- final fragments are appended to the finalized text
- interim text is always a full replacement (engines re-evaluate the tail)
- a final fragment triggers an immediate completeness check
- interim-only input (re)arms a debounce timer; on expiry finalized + interim is checked

A complete utterance is emitted only while the dispatcher can accept it. While the
AI is speaking (or a turn is in flight) text keeps accumulating and is flushed by
the coordinator once the floor is free again. A candidate the dispatcher refuses
for now (too soon after the previous turn) is put back and retried, never dropped.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from src.callsim.config import Config, get_config
from src.callsim.speech_state import SpeechCoordinatorState
from src.callsim.timer import Timer
from src.callsim.utterance import is_complete_utterance

logger = structlog.get_logger(__name__)

# Added to a refusal delay so the retry lands after the spacing window closes.
RETRY_MARGIN_SECONDS = 0.02


def _join(*parts: str) -> str:
    return " ".join(p.strip() for p in parts if p and p.strip())


@dataclass
class AccumulatorBuffer:
    finalized_text: str = ""
    interim_text: str = ""

    @property
    def combined(self) -> str:
        return _join(self.finalized_text, self.interim_text)

    @property
    def is_empty(self) -> bool:
        return not self.finalized_text and not self.interim_text

    def clear(self) -> None:
        self.finalized_text = ""
        self.interim_text = ""


class TranscriptAccumulator:
    """Buffers recognition fragments and decides when a turn is complete."""

    def __init__(
        self,
        state: SpeechCoordinatorState,
        on_candidate: Callable[[str], Optional[float]],
        config: Optional[Config] = None,
    ):
        self.config = config or get_config()
        self._state = state
        self._on_candidate = on_candidate
        self._buffer = AccumulatorBuffer()
        self._debounce = Timer("turn_debounce")
        self._deferred = False

    @property
    def buffer(self) -> AccumulatorBuffer:
        return self._buffer

    @property
    def debounce_pending(self) -> bool:
        return self._debounce.pending

    def is_complete(self, text: str) -> bool:
        return is_complete_utterance(
            text,
            length_threshold=self.config.utterance_length_threshold,
            contextual_min_length=self.config.utterance_context_min_length,
            keyword_min_length=self.config.utterance_keyword_min_length,
        )

    def on_recognition_result(self, final_fragment: str, interim_fragment: str) -> None:
        final_fragment = (final_fragment or "").strip()
        interim_fragment = (interim_fragment or "").strip()

        if not final_fragment and not interim_fragment:
            # Malformed/empty engine event.
            return

        self._debounce.cancel()

        if final_fragment:
            self._buffer.finalized_text = _join(self._buffer.finalized_text, final_fragment)
        self._buffer.interim_text = interim_fragment

        if final_fragment and self.is_complete(self._buffer.finalized_text):
            if self._emit(self._buffer.finalized_text, source="final"):
                return

        if not self._buffer.is_empty:
            self._debounce.schedule(self.config.turn_debounce_seconds, self._on_debounce_elapsed)

    def _on_debounce_elapsed(self) -> None:
        text = self._buffer.combined
        if text and self.is_complete(text):
            self._emit(text, source="debounce")
        elif self._deferred:
            self._on_retry_elapsed()

    def _emit(self, text: str, *, source: str) -> bool:
        """
        Hand a complete utterance to the dispatcher, or hold it if the floor is taken.

        Returns True once the text has left the buffer or been queued for a retry.
        """
        if not self._state.can_dispatch():
            logger.debug(
                "Utterance held",
                source=source,
                ai_speaking=self._state.ai_speaking,
                in_flight=self._state.in_flight,
                text=text[:80],
            )
            return False

        logger.debug("Utterance complete", source=source, text=text[:80])
        self.reset()
        self._offer(text)
        return True

    def _offer(self, text: str) -> bool:
        """Pass `text` on; if it is refused for now, put it back and retry later."""
        retry_after = self._on_candidate(text)
        if retry_after is None:
            self._deferred = False
            return True

        self._buffer.finalized_text = _join(text, self._buffer.finalized_text)
        self._deferred = True
        delay = max(retry_after, 0.0) + RETRY_MARGIN_SECONDS
        logger.debug("Utterance deferred", retry_ms=int(delay * 1000), text=text[:80])
        self._debounce.schedule(delay, self._on_retry_elapsed)
        return False

    def _on_retry_elapsed(self) -> None:
        if not self._state.can_dispatch():
            # Still held; the next flush picks it up.
            return
        self.flush()

    def flush(self) -> Optional[str]:
        """
        Release finalized text as a candidate turn (called when the AI stops speaking).

        Interim text stays buffered and the debounce timer is re-armed for it. Text the
        dispatcher can't take yet stays finalized and is retried; returns the text
        only when it was taken.
        """
        text = self._buffer.finalized_text.strip()
        if not text:
            if self._buffer.interim_text:
                self._debounce.schedule(
                    self.config.turn_debounce_seconds, self._on_debounce_elapsed
                )
            return None

        self._debounce.cancel()
        self._buffer.finalized_text = ""
        if self._buffer.interim_text:
            self._debounce.schedule(self.config.turn_debounce_seconds, self._on_debounce_elapsed)

        logger.debug("Flushing buffered speech", text=text[:80])
        if not self._offer(text):
            return None
        return text

    def reset(self) -> None:
        self._buffer.clear()
        self._deferred = False
        self._debounce.cancel()
