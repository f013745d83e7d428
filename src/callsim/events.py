"""
Tagged events consumed by the per-call event loop.

Inputs (recognition, playback, dispatch, user and device) are posted to the call's
queue and handled one at a time; state transitions are reported to listeners.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional, Union

from src.callsim.types import CallState

if TYPE_CHECKING:
    from src.callsim.dispatcher import DispatchOutcome


@dataclass(frozen=True)
class RecognitionResult:
    final_text: str = ""
    interim_text: str = ""


@dataclass(frozen=True)
class RecognitionEnded:
    """The recognition engine terminated on its own (silence timeout, etc.)."""
    pass


@dataclass(frozen=True)
class RecognitionFailed:
    error: str


@dataclass(frozen=True)
class PlaybackFinished:
    playback_id: int
    error: Optional[str] = None


@dataclass(frozen=True)
class DispatchCompleted:
    outcome: "DispatchOutcome"


@dataclass(frozen=True)
class HangUpRequested:
    pass


@dataclass(frozen=True)
class DeviceFailed:
    """Microphone permission revoked / device lost mid-call."""
    kind: str
    detail: str = ""


CallEvent = Union[
    RecognitionResult,
    RecognitionEnded,
    RecognitionFailed,
    PlaybackFinished,
    DispatchCompleted,
    HangUpRequested,
    DeviceFailed,
]


@dataclass(frozen=True)
class CallStateTransition:
    previous: Optional[CallState]
    state: CallState
    at: float = field(default_factory=time.time)
