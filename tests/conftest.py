"""
Pytest configuration and fixtures.
"""

import asyncio
import dataclasses
import os
from typing import List, Optional, Sequence
from unittest.mock import patch

import pytest

from src.callsim.audio import AudioOutput, MicrophoneError, PlaybackError
from src.callsim.coordinator import RecognitionEngine
from src.callsim.llm import LanguageGenerator
from src.callsim.scoring import CallAnalysis, CallScorer
from src.callsim.types import AssistantReply, Turn


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "OPENAI_API_KEY": "sk-test-key",
        "OPENAI_MODEL": "gpt-4o-mini",
        "TTS_ENABLED": "false",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.callsim.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def fast_config():
    """Config with short timers so call flows run in milliseconds."""
    from src.callsim.config import get_config

    return dataclasses.replace(
        get_config(),
        turn_debounce_seconds=0.05,
        min_turn_spacing_seconds=0.0,
        llm_timeout_seconds=0.5,
        recognition_restart_delay_seconds=0.01,
        recognition_error_restart_delay_seconds=0.02,
        ringtone_seconds=0.05,
        playback_timeout_seconds=2.0,
        scoring_timeout_seconds=0.5,
    )


class FakeEngine(RecognitionEngine):
    def __init__(self, start_error: Optional[MicrophoneError] = None):
        self.start_calls = 0
        self.stop_calls = 0
        self.start_error = start_error

    async def start(self) -> None:
        self.start_calls += 1
        if self.start_error is not None:
            raise self.start_error

    async def stop(self) -> None:
        self.stop_calls += 1


class FakeAudio(AudioOutput):
    def __init__(self, play_seconds: float = 0.02, ringtone_seconds: float = 0.02):
        self.play_seconds = play_seconds
        self.ringtone_seconds = ringtone_seconds
        self.ringtone_calls = 0
        self.played: List[str] = []
        self.stop_calls = 0
        self.play_error: Optional[str] = None
        self.ringtone_error: Optional[str] = None

    async def play_ringtone(self) -> None:
        self.ringtone_calls += 1
        if self.ringtone_error:
            raise PlaybackError(self.ringtone_error)
        await asyncio.sleep(self.ringtone_seconds)

    async def play(self, text: str, audio: Optional[bytes], audio_format: str = "mp3") -> None:
        self.played.append(text)
        await asyncio.sleep(self.play_seconds)
        if self.play_error:
            raise PlaybackError(self.play_error)

    async def stop(self) -> None:
        self.stop_calls += 1


class FakeGenerator(LanguageGenerator):
    """Replies from a script; `fail` makes every non-opening call raise."""

    def __init__(
        self,
        opening: str = "Allô ?",
        replies: Optional[List[str]] = None,
        delay: float = 0.0,
        fail: bool = False,
        end_on: Optional[str] = None,
    ):
        self.opening = opening
        self.replies = list(replies or ["Oui, c'est à quel sujet ?"])
        self.delay = delay
        self.fail = fail
        self.end_on = end_on
        self.calls: List[Sequence[Turn]] = []

    async def generate_reply(self, history, is_first_turn=False) -> AssistantReply:
        self.calls.append(tuple(history))
        if self.delay:
            await asyncio.sleep(self.delay)
        if is_first_turn:
            return AssistantReply(message=self.opening)
        if self.fail:
            raise RuntimeError("network down")
        message = self.replies.pop(0) if self.replies else "D'accord."
        return AssistantReply(
            message=message,
            audio=b"ID3fake",
            should_end_call=self.end_on is not None and self.end_on in message,
        )


class FakeScorer(CallScorer):
    def __init__(self, score: int = 72, fail: bool = False):
        self.score = score
        self.fail = fail
        self.calls = []

    async def score_call(self, transcript, persona, difficulty, duration_seconds) -> CallAnalysis:
        self.calls.append((tuple(transcript), persona, difficulty, duration_seconds))
        if self.fail:
            raise RuntimeError("scoring service down")
        return CallAnalysis(
            score=self.score,
            strengths=["Bonne accroche"],
            recommendations=["Pose plus de questions"],
            improvements=["Closing"],
        )


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def fake_audio():
    return FakeAudio()


@pytest.fixture
def fake_generator():
    return FakeGenerator()


@pytest.fixture
def fake_scorer():
    return FakeScorer()


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> bool:
    """Poll `predicate` on the running loop until it holds or `timeout` elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()
