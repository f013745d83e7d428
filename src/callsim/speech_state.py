from __future__ import annotations

from dataclasses import dataclass


@dataclass
class SpeechCoordinatorState:
    """
    Shared turn-taking flags for one call.

    Passed by reference to the accumulator, dispatcher and coordinator. Everything
    runs on one event loop, so flags are read and written synchronously.
    """

    ai_speaking: bool = False
    in_flight: bool = False
    listening: bool = False

    def set_ai_speaking(self, speaking: bool) -> bool:
        """Set the flag; returns True if it changed."""
        changed = self.ai_speaking != speaking
        self.ai_speaking = speaking
        return changed

    def acquire_dispatch(self) -> bool:
        """Take the single in-flight slot. Returns False if already taken."""
        if self.in_flight:
            return False
        self.in_flight = True
        return True

    def release_dispatch(self) -> None:
        self.in_flight = False

    def can_dispatch(self) -> bool:
        """A user turn may be dispatched only when nothing is in flight and the AI is silent."""
        return not self.in_flight and not self.ai_speaking

    def reset(self) -> None:
        self.ai_speaking = False
        self.in_flight = False
        self.listening = False
