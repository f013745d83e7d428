"""
Browser call bridge.

One WebSocket connection = one call. The browser does recognition and playback;
BrowserRecognition and BrowserAudio expose them to the call state machine, and the
bridge routes inbound messages to the machine as events.

Outbound messages go through a queue drained by a single sender task, so
synchronous callbacks (state transitions, turns) can emit messages in order.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict, Optional

import structlog

from src.callsim.audio import AudioOutput, PlaybackError, generate_ringtone_wav, wav_duration_seconds
from src.callsim.call import CallStateMachine, EndReason
from src.callsim.config import Config, get_config
from src.callsim.coordinator import RecognitionEngine
from src.callsim.events import (
    CallStateTransition,
    DeviceFailed,
    RecognitionEnded,
    RecognitionFailed,
    RecognitionResult,
)
from src.callsim.llm import LanguageGenerator
from src.callsim.personas import get_contact
from src.callsim.protocol import (
    ClientEventType,
    create_error_message,
    create_listen_message,
    create_result_message,
    create_ringtone_message,
    create_speak_message,
    create_state_message,
    create_stop_audio_message,
    create_turn_message,
    parse_client_message,
)
from src.callsim.scoring import CallScorer, SessionResult
from src.callsim.types import CallState, TrainingConfig, Turn

logger = structlog.get_logger(__name__)

SendFn = Callable[[str], Awaitable[None]]
GeneratorFactory = Callable[[TrainingConfig], LanguageGenerator]


class BrowserRecognition(RecognitionEngine):
    """Browser Web Speech recognition, started/stopped with `listen` messages."""

    def __init__(self, enqueue: Callable[[str], None]):
        self._enqueue = enqueue
        self.active = False

    async def start(self) -> None:
        self.active = True
        self._enqueue(create_listen_message(True))

    async def stop(self) -> None:
        if not self.active:
            return
        self.active = False
        self._enqueue(create_listen_message(False))


class BrowserAudio(AudioOutput):
    """
    Browser playback.

    Each utterance gets an id; `play()` returns when the browser acknowledges it
    with `playback_done`.
    """

    def __init__(self, enqueue: Callable[[str], None], config: Optional[Config] = None):
        self.config = config or get_config()
        self._enqueue = enqueue
        self._playback_counter = 0
        self._pending: Dict[int, asyncio.Future] = {}

    async def play_ringtone(self) -> None:
        wav = generate_ringtone_wav(interval_s=self.config.ringtone_seconds / 2)
        self._enqueue(create_ringtone_message(wav))
        # The browser plays it locally; ringing lasts as long as the tone.
        await asyncio.sleep(wav_duration_seconds(wav))

    async def play(self, text: str, audio: Optional[bytes], audio_format: str = "mp3") -> None:
        self._playback_counter += 1
        playback_id = self._playback_counter
        future = asyncio.get_running_loop().create_future()
        self._pending[playback_id] = future

        self._enqueue(create_speak_message(playback_id, text, audio, audio_format))
        try:
            error = await future
        finally:
            self._pending.pop(playback_id, None)

        if error:
            raise PlaybackError(error)

    async def stop(self) -> None:
        self._enqueue(create_stop_audio_message())
        for future in self._pending.values():
            if not future.done():
                future.set_result(None)
        self._pending.clear()

    def playback_done(self, playback_id: int, error: Optional[str] = None) -> None:
        future = self._pending.get(playback_id)
        if future is None or future.done():
            logger.debug("Stale playback acknowledgment", playback_id=playback_id)
            return
        future.set_result(error)


class BrowserCallBridge:
    """Routes one WebSocket connection to one call."""

    def __init__(
        self,
        send: SendFn,
        generator_factory: GeneratorFactory,
        scorer: Optional[CallScorer] = None,
        config: Optional[Config] = None,
    ):
        self.config = config or get_config()
        self._send = send
        self._generator_factory = generator_factory
        self._scorer = scorer

        self.recognition = BrowserRecognition(self.enqueue)
        self.audio = BrowserAudio(self.enqueue, self.config)
        self.machine: Optional[CallStateMachine] = None
        self.result: Optional[SessionResult] = None

        self._outbound: asyncio.Queue = asyncio.Queue()
        self._sender_task: Optional[asyncio.Task] = None
        self._result_task: Optional[asyncio.Task] = None

    # Outbound

    def start_sender(self) -> None:
        if self._sender_task is None or self._sender_task.done():
            self._sender_task = asyncio.create_task(self._sender())

    def enqueue(self, message: str) -> None:
        self._outbound.put_nowait(message)

    async def _sender(self) -> None:
        try:
            while True:
                message = await self._outbound.get()
                if message is None:
                    break
                try:
                    await self._send(message)
                except Exception as e:
                    logger.error("Failed to send WebSocket message", error=str(e))
        except asyncio.CancelledError:
            pass

    # Call wiring

    def _on_transition(self, transition: CallStateTransition) -> None:
        extra = {}
        if transition.state == CallState.DIALING and self.machine is not None:
            extra["contact"] = get_contact(self.machine.training.persona).to_dict()
        self.enqueue(create_state_message(transition.state.value, **extra))

    def _on_turn(self, turn: Turn) -> None:
        self.enqueue(create_turn_message(turn.speaker.value, turn.text))

    async def start_call(self, training: TrainingConfig) -> CallStateMachine:
        if self.machine is not None:
            raise ValueError("Call already started on this connection")

        self.machine = CallStateMachine(
            training,
            llm=self._generator_factory(training),
            scorer=self._scorer,
            engine=self.recognition,
            audio=self.audio,
            config=self.config,
            on_transition=self._on_transition,
            on_turn=self._on_turn,
        )
        await self.machine.start()
        self._result_task = asyncio.create_task(self._deliver_result())
        return self.machine

    async def _deliver_result(self) -> None:
        if self.machine is None:
            return
        try:
            result = await self.machine.wait_result()
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.error("Call failed", error=str(e))
            self.enqueue(create_error_message("internal", "Une erreur interne est survenue."))
            return

        self.result = result
        if result.error and result.end_reason in (
            EndReason.MICROPHONE_ERROR.value,
            EndReason.PLAYBACK_ERROR.value,
            EndReason.LLM_UNAVAILABLE.value,
            EndReason.STARTUP_FAILED.value,
        ):
            self.enqueue(create_error_message(result.end_reason, result.error))
        self.enqueue(create_result_message(result.model_dump()))

    # Inbound

    async def handle_message(self, raw_message: str) -> None:
        """Route one browser message. Raises ValueError for malformed messages."""
        event_type, event = parse_client_message(raw_message)

        if event_type == ClientEventType.START:
            await self.start_call(TrainingConfig.create(event.persona, event.difficulty))
            return

        if event_type == ClientEventType.PLAYBACK_DONE:
            self.audio.playback_done(event.id, event.error)
            return

        machine = self.machine
        if machine is None:
            logger.warning("Event before call start", event_type=event_type.value)
            return

        if event_type == ClientEventType.RECOGNITION:
            machine.post(RecognitionResult(final_text=event.final, interim_text=event.interim))
        elif event_type == ClientEventType.RECOGNITION_END:
            machine.post(RecognitionEnded())
        elif event_type == ClientEventType.RECOGNITION_ERROR:
            machine.post(RecognitionFailed(error=event.error))
        elif event_type == ClientEventType.DEVICE_ERROR:
            machine.post(DeviceFailed(kind=event.kind, detail=event.detail))
        elif event_type == ClientEventType.HANGUP:
            machine.hang_up()

    async def close(self) -> Optional[SessionResult]:
        """Connection closed: hang up if the call is live, then stop sending."""
        if self.machine is not None and self.machine.call_state != CallState.ENDED:
            self.machine.hang_up()
        if self._result_task is not None:
            try:
                await asyncio.wait_for(
                    asyncio.shield(self._result_task),
                    timeout=self.config.scoring_timeout_seconds + 5.0,
                )
            except asyncio.TimeoutError:
                logger.warning("Timed out waiting for call result")
                self._result_task.cancel()

        self._outbound.put_nowait(None)
        if self._sender_task is not None:
            try:
                await asyncio.wait_for(self._sender_task, timeout=2.0)
            except asyncio.TimeoutError:
                self._sender_task.cancel()
        return self.result
