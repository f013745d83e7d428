"""
Call state machine.

Drives one simulated call through Dialing -> Ringing -> Connected -> Ended:

- Dialing: opening-line preparation starts
- Ringing: ringtone plays while the opening line is prepared; waits for both
- Connected: opening line plays, then the microphone opens; user/AI turns alternate
- Ended: audio and recognition stop, transcript freezes, the call is scored

Inputs (recognition, playback, dispatch, hang-up, device errors) are posted as
tagged events and handled by a single loop per call. Any fatal failure forces
Ended with whatever transcript exists; scoring always produces a result.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

import structlog

from src.callsim.audio import AudioOutput, MicrophoneError, PlaybackError
from src.callsim.config import Config, get_config
from src.callsim.coordinator import RecognitionEngine, SpeechStateCoordinator
from src.callsim.dispatcher import DispatchOutcome, TurnDispatcher
from src.callsim.events import (
    CallEvent,
    CallStateTransition,
    DeviceFailed,
    DispatchCompleted,
    HangUpRequested,
    PlaybackFinished,
    RecognitionEnded,
    RecognitionFailed,
    RecognitionResult,
)
from src.callsim.llm import LanguageGenerator
from src.callsim.scoring import CallScorer, SessionResult, build_session_result, fallback_score
from src.callsim.speech_state import SpeechCoordinatorState
from src.callsim.types import AssistantReply, CallState, Speaker, TrainingConfig, Turn

logger = structlog.get_logger(__name__)

LLM_UNAVAILABLE_MESSAGE = "Le correspondant ne répond plus. Réessayez dans quelques instants."


class EndReason(str, Enum):
    USER_HANGUP = "user_hangup"
    ASSISTANT_ENDED = "assistant_ended"
    MICROPHONE_ERROR = "microphone_error"
    PLAYBACK_ERROR = "playback_error"
    LLM_UNAVAILABLE = "llm_unavailable"
    STARTUP_FAILED = "startup_failed"


class TranscriptFrozenError(Exception):
    """A turn was appended outside Connected."""
    pass


_NEXT_STATE = {
    CallState.DIALING: CallState.RINGING,
    CallState.RINGING: CallState.CONNECTED,
    CallState.CONNECTED: CallState.ENDED,
}


@dataclass
class CallSession:
    """State and transcript of one call. Discarded once the result is consumed."""

    training: TrainingConfig = field(default_factory=TrainingConfig)
    state: CallState = CallState.DIALING
    started_at: float = field(default_factory=time.time)
    connected_at: Optional[float] = None
    ended_at: Optional[float] = None
    end_reason: Optional[EndReason] = None
    error: Optional[str] = None
    on_append: Optional[Callable[[Turn], None]] = field(default=None, repr=False, compare=False)
    _turns: List[Turn] = field(default_factory=list, init=False, repr=False)

    @property
    def transcript(self) -> tuple[Turn, ...]:
        return tuple(self._turns)

    @property
    def is_active(self) -> bool:
        return self.state == CallState.CONNECTED

    @property
    def duration_seconds(self) -> float:
        """Connected duration; frozen once the call has ended."""
        if self.connected_at is None:
            return 0.0
        end = self.ended_at if self.ended_at is not None else time.time()
        return max(0.0, end - self.connected_at)

    def append(self, turn: Turn) -> None:
        if self.state != CallState.CONNECTED:
            raise TranscriptFrozenError(
                f"Cannot append a {turn.speaker.value} turn while {self.state.value}"
            )
        self._turns.append(turn)
        if self.on_append is not None:
            try:
                self.on_append(turn)
            except Exception as e:
                logger.error("Turn listener failed", error=str(e))

    def advance(self, new_state: CallState, *, now: Optional[float] = None) -> CallState:
        """Move to `new_state`; Ended is reachable from anywhere. Returns the previous state."""
        if self.state == CallState.ENDED:
            raise ValueError("Call already ended")
        if new_state != CallState.ENDED and _NEXT_STATE.get(self.state) != new_state:
            raise ValueError(f"Invalid transition {self.state.value} -> {new_state.value}")

        previous = self.state
        self.state = new_state
        now = time.time() if now is None else now
        if new_state == CallState.CONNECTED:
            self.connected_at = now
        elif new_state == CallState.ENDED:
            self.ended_at = now
        return previous


class CallStateMachine:
    """
    One simulated call.

    Usage:
        machine = CallStateMachine(training, llm, scorer, engine, audio)
        await machine.start()
        machine.post(RecognitionResult(final_text="..."))
        machine.hang_up()
        result = await machine.wait_result()
    """

    def __init__(
        self,
        training: TrainingConfig,
        llm: LanguageGenerator,
        scorer: Optional[CallScorer],
        engine: RecognitionEngine,
        audio: AudioOutput,
        config: Optional[Config] = None,
        on_transition: Optional[Callable[[CallStateTransition], None]] = None,
        on_turn: Optional[Callable[[Turn], None]] = None,
    ):
        self.config = config or get_config()
        self.training = training
        self.session = CallSession(training=training, on_append=on_turn)
        self.speech_state = SpeechCoordinatorState()
        self.coordinator = SpeechStateCoordinator(engine, self.speech_state, self.config)
        self.coordinator.on_fatal_error = self._on_microphone_error
        self.dispatcher = TurnDispatcher(
            self.session,
            llm,
            self.speech_state,
            on_reply=self._on_reply,
            config=self.config,
        )
        self.on_transition = on_transition
        self.transitions: List[CallStateTransition] = []

        self._llm = llm
        self._scorer = scorer
        self._audio = audio

        self._queue: asyncio.Queue = asyncio.Queue()
        self._loop_task: Optional[asyncio.Task] = None
        self._startup_task: Optional[asyncio.Task] = None
        self._opening_task: Optional[asyncio.Task] = None
        self._playback_task: Optional[asyncio.Task] = None
        self._dispatch_task: Optional[asyncio.Task] = None

        self._playback_id = 0
        self._playback_is_opening = False
        self._playback_should_end = False

        self._ending = False
        self._result: Optional[asyncio.Future] = None

    @property
    def call_state(self) -> CallState:
        return self.session.state

    @property
    def transcript(self) -> tuple[Turn, ...]:
        return self.session.transcript

    # Lifecycle

    async def start(self) -> None:
        """Enter Dialing and launch the event loop and startup sequence."""
        if self._loop_task is not None:
            return
        self._result = asyncio.get_running_loop().create_future()
        self._emit_transition(None, CallState.DIALING)
        logger.info(
            "Call started",
            persona=self.training.persona,
            difficulty=self.training.difficulty,
        )
        self._loop_task = asyncio.create_task(self._event_loop())
        self._startup_task = asyncio.create_task(self._startup())

    async def run(self) -> SessionResult:
        await self.start()
        return await self.wait_result()

    async def wait_result(self) -> SessionResult:
        if self._result is None:
            raise RuntimeError("Call not started")
        return await asyncio.shield(self._result)

    def post(self, event: CallEvent) -> None:
        if self._ending:
            logger.debug("Event ignored after end", event_type=type(event).__name__)
            return
        self._queue.put_nowait(event)

    def hang_up(self) -> None:
        self.post(HangUpRequested())

    async def end(self, reason: EndReason, error: Optional[str] = None) -> None:
        """Enter Ended. Idempotent; later calls are no-ops."""
        if self._ending:
            return
        self._ending = True
        current = asyncio.current_task()
        logger.info(
            "Ending call",
            reason=reason.value,
            error=error,
            state=self.session.state.value,
            turns=len(self.session.transcript),
        )

        tasks_to_cancel: List[asyncio.Task] = []
        for task in (
            self._startup_task,
            self._opening_task,
            self._playback_task,
            self._dispatch_task,
        ):
            if task and not task.done() and task is not current:
                task.cancel()
                tasks_to_cancel.append(task)

        await self.coordinator.stop_listening()
        # Direct flag write: ending must not flush buffered speech into a new turn.
        self.speech_state.ai_speaking = False
        try:
            await self._audio.stop()
        except Exception as e:
            logger.warning("Audio stop failed", error=str(e))

        if tasks_to_cancel:
            await asyncio.gather(*tasks_to_cancel, return_exceptions=True)

        self.session.end_reason = reason
        self.session.error = error
        self._advance(CallState.ENDED)

        result = await self._score(reason, error)
        if self._result is not None and not self._result.done():
            self._result.set_result(result)

        loop_task = self._loop_task
        if loop_task and not loop_task.done() and loop_task is not current:
            loop_task.cancel()

    # Startup

    async def _prepare_opening(self) -> AssistantReply:
        try:
            reply = await asyncio.wait_for(
                self._llm.generate_reply([], is_first_turn=True),
                timeout=self.config.llm_timeout_seconds,
            )
            if reply is None or not (reply.message or "").strip():
                raise ValueError("Empty opening line")
            return reply
        except asyncio.TimeoutError:
            logger.warning("Opening line timed out, using fallback")
        except Exception as e:
            logger.warning("Opening line failed, using fallback", error=str(e))
        return AssistantReply(message=self.config.opening_fallback_utterance)

    async def _startup(self) -> None:
        try:
            self._opening_task = asyncio.create_task(self._prepare_opening())
            self._advance(CallState.RINGING)

            try:
                await self._audio.play_ringtone()
            except PlaybackError as e:
                logger.error("Ringtone playback failed", error=str(e))
                await self.end(EndReason.PLAYBACK_ERROR, error=str(e))
                return

            reply = await self._opening_task
            if self._ending:
                return

            self._advance(CallState.CONNECTED)
            self.session.append(Turn(Speaker.ASSISTANT, reply.message))
            logger.info("Call connected", opening=reply.message[:80])
            self._start_playback(reply, opening=True)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Call startup failed", error=str(e))
            await self.end(EndReason.STARTUP_FAILED, error=str(e))

    # Event loop

    async def _event_loop(self) -> None:
        try:
            while not self._ending:
                event = await self._queue.get()
                try:
                    await self._handle_event(event)
                except MicrophoneError as e:
                    await self.end(EndReason.MICROPHONE_ERROR, error=e.user_message)
                except TranscriptFrozenError as e:
                    logger.error("Transcript invariant violated", error=str(e))
                    if self._result is not None and not self._result.done():
                        self._result.set_exception(e)
                    raise
                except Exception as e:
                    logger.error(
                        "Call event failed",
                        event=type(event).__name__,
                        error=str(e),
                    )
        except asyncio.CancelledError:
            pass

    async def _handle_event(self, event: CallEvent) -> None:
        if self._ending:
            return

        if isinstance(event, RecognitionResult):
            self.coordinator.on_recognition_result(event.final_text, event.interim_text)

        elif isinstance(event, RecognitionEnded):
            self.coordinator.on_engine_ended()

        elif isinstance(event, RecognitionFailed):
            self.coordinator.on_engine_error(event.error)

        elif isinstance(event, PlaybackFinished):
            await self._on_playback_finished(event)

        elif isinstance(event, DispatchCompleted):
            await self._on_dispatch_completed(event.outcome)

        elif isinstance(event, HangUpRequested):
            await self.end(EndReason.USER_HANGUP)

        elif isinstance(event, DeviceFailed):
            error = MicrophoneError.from_name(event.kind, event.detail)
            logger.error("Microphone failed", kind=error.kind.value, detail=event.detail)
            await self.end(EndReason.MICROPHONE_ERROR, error=error.user_message)

        else:
            logger.warning("Unknown call event", event_type=type(event).__name__)

    # Turns and playback

    def _on_utterance(self, text: str) -> Optional[float]:
        if self._ending or not self.session.is_active:
            return None
        if not self.dispatcher.try_begin(text):
            return self.dispatcher.retry_delay(text)
        self._dispatch_task = asyncio.create_task(self._run_exchange(text.strip()))
        return None

    async def _run_exchange(self, text: str) -> None:
        try:
            outcome = await self.dispatcher.exchange(text)
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.error("Exchange failed", error=str(e))
            return
        if outcome is not None:
            self.post(DispatchCompleted(outcome))

    def _on_reply(self, outcome: DispatchOutcome) -> None:
        if outcome.reply is not None:
            self._start_playback(outcome.reply, opening=False)

    async def _on_dispatch_completed(self, outcome: DispatchOutcome) -> None:
        if outcome.unavailable:
            detail = f"{LLM_UNAVAILABLE_MESSAGE} ({outcome.error})" if outcome.error else LLM_UNAVAILABLE_MESSAGE
            await self.end(EndReason.LLM_UNAVAILABLE, error=detail)

    def _start_playback(self, reply: AssistantReply, *, opening: bool) -> None:
        self._playback_id += 1
        self._playback_is_opening = opening
        self._playback_should_end = reply.should_end_call and not opening
        self.coordinator.set_ai_speaking(True)
        self._playback_task = asyncio.create_task(self._play(self._playback_id, reply))

    async def _play(self, playback_id: int, reply: AssistantReply) -> None:
        error: Optional[str] = None
        try:
            await asyncio.wait_for(
                self._audio.play(reply.message, reply.audio, reply.audio_format),
                timeout=self.config.playback_timeout_seconds,
            )
        except asyncio.CancelledError:
            return
        except asyncio.TimeoutError:
            logger.warning("Playback timed out", playback_id=playback_id)
        except PlaybackError as e:
            error = str(e) or "playback failed"
        except Exception as e:
            logger.warning("Playback failed", playback_id=playback_id, error=str(e))

        self.post(PlaybackFinished(playback_id=playback_id, error=error))

    async def _on_playback_finished(self, event: PlaybackFinished) -> None:
        if event.playback_id != self._playback_id:
            return
        self._playback_task = None

        if event.error:
            logger.error("Playback error", error=event.error)
            await self.end(EndReason.PLAYBACK_ERROR, error=event.error)
            return

        if self._playback_should_end:
            await self.end(EndReason.ASSISTANT_ENDED)
            return

        opening = self._playback_is_opening
        self._playback_is_opening = False
        self.coordinator.set_ai_speaking(False)

        if opening:
            await self.coordinator.start_listening(self._on_utterance)

    def _on_microphone_error(self, error: MicrophoneError) -> None:
        self.post(DeviceFailed(kind=error.kind.value, detail=error.detail))

    # State and scoring

    def _advance(self, new_state: CallState) -> None:
        previous = self.session.advance(new_state)
        self._emit_transition(previous, new_state)

    def _emit_transition(self, previous: Optional[CallState], state: CallState) -> None:
        transition = CallStateTransition(previous=previous, state=state)
        self.transitions.append(transition)
        logger.info(
            "Call state",
            previous=previous.value if previous else None,
            state=state.value,
        )
        if self.on_transition is not None:
            try:
                self.on_transition(transition)
            except Exception as e:
                logger.error("Transition listener failed", error=str(e))

    async def _score(self, reason: EndReason, error: Optional[str]) -> SessionResult:
        transcript = self.session.transcript
        duration = self.session.duration_seconds
        fallback = False

        if self._scorer is None:
            analysis = fallback_score(transcript, duration)
            fallback = True
        else:
            try:
                analysis = await asyncio.wait_for(
                    self._scorer.score_call(
                        transcript,
                        self.training.persona,
                        self.training.difficulty,
                        duration,
                    ),
                    timeout=self.config.scoring_timeout_seconds,
                )
            except Exception as e:
                logger.warning("Scoring failed, using fallback", error=str(e) or type(e).__name__)
                analysis = fallback_score(transcript, duration)
                fallback = True

        result = build_session_result(
            analysis,
            transcript,
            duration_seconds=duration,
            persona=self.training.persona,
            difficulty=self.training.difficulty,
            end_reason=reason.value,
            error=error,
            fallback=fallback,
        )
        logger.info(
            "Call result",
            score=result.score,
            duration=result.duration,
            turns=len(transcript),
            fallback=fallback,
            end_reason=reason.value,
        )
        return result
