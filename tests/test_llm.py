"""
Tests for prospect language generation.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.callsim.llm import (
    LanguageGenerationError,
    OpenAIProspect,
    build_messages,
    should_end_call,
)
from src.callsim.personas import OPENING_INSTRUCTION
from src.callsim.tts import SpeechSynthesizer
from src.callsim.types import Speaker, TrainingConfig, Turn


class TestShouldEndCall:
    @pytest.mark.parametrize(
        "message",
        [
            "Très bien, au revoir.",
            "Merci, bonne journée !",
            "Bonne Journee monsieur",
            "On se rappelle, à bientôt.",
        ],
    )
    def test_farewells(self, message):
        assert should_end_call(message) is True

    @pytest.mark.parametrize("message", ["Allô ?", "Je vous écoute.", "Revoir le contrat ?", ""])
    def test_not_farewells(self, message):
        assert should_end_call(message) is False


class TestBuildMessages:
    def test_first_turn_adds_opening_instruction(self):
        messages = build_messages("SYSTEM", [], is_first_turn=True)
        assert messages == [
            {"role": "system", "content": "SYSTEM"},
            {"role": "system", "content": OPENING_INSTRUCTION},
        ]

    def test_history_roles(self):
        history = [Turn(Speaker.ASSISTANT, "Allô ?"), Turn(Speaker.USER, "Bonjour")]
        messages = build_messages("SYSTEM", history)
        assert messages[1:] == [
            {"role": "assistant", "content": "Allô ?"},
            {"role": "user", "content": "Bonjour"},
        ]

    def test_history_window(self):
        history = [Turn(Speaker.USER, f"phrase {i}") for i in range(30)]
        messages = build_messages("SYSTEM", history, max_turns=5)
        assert len(messages) == 6
        assert messages[1]["content"] == "phrase 25"
        assert messages[-1]["content"] == "phrase 29"


def _chunk(content):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content))])


def _stream(*parts):
    async def gen():
        for part in parts:
            yield _chunk(part)
        # Keep-alive chunk without choices.
        yield SimpleNamespace(choices=[])

    return gen()


def _client(*parts):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=_stream(*parts))
    return client


class FakeSynthesizer(SpeechSynthesizer):
    def __init__(self):
        self.texts = []

    async def synthesize(self, text):
        self.texts.append(text)
        return b"ID3audio"


@pytest.mark.asyncio
async def test_generate_reply_streams_and_synthesizes():
    synthesizer = FakeSynthesizer()
    client = _client("Oui, ", "c'est à quel ", None, "sujet ?")
    prospect = OpenAIProspect(TrainingConfig.create("hr", "hard"), synthesizer=synthesizer, client=client)

    reply = await prospect.generate_reply([Turn(Speaker.USER, "Bonjour, je suis Marc.")])

    assert reply.message == "Oui, c'est à quel sujet ?"
    assert reply.audio == b"ID3audio"
    assert reply.should_end_call is False
    assert synthesizer.texts == ["Oui, c'est à quel sujet ?"]

    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["stream"] is True
    assert kwargs["messages"][0]["role"] == "system"
    assert "Pierre Martin" in kwargs["messages"][0]["content"]
    assert kwargs["messages"][-1] == {"role": "user", "content": "Bonjour, je suis Marc."}


@pytest.mark.asyncio
async def test_generate_reply_without_tts():
    # TTS_ENABLED=false in the test environment.
    prospect = OpenAIProspect(TrainingConfig(), client=_client("Allô ?"))
    reply = await prospect.generate_reply([], is_first_turn=True)
    assert reply.message == "Allô ?"
    assert reply.audio is None


@pytest.mark.asyncio
async def test_farewell_ends_call_except_on_opening():
    prospect = OpenAIProspect(TrainingConfig(), client=_client("Non merci, au revoir."))
    reply = await prospect.generate_reply([Turn(Speaker.USER, "Bonjour")])
    assert reply.should_end_call is True

    prospect = OpenAIProspect(TrainingConfig(), client=_client("Allô, bonne journée ?"))
    reply = await prospect.generate_reply([], is_first_turn=True)
    assert reply.should_end_call is False


@pytest.mark.asyncio
async def test_empty_completion_raises():
    prospect = OpenAIProspect(TrainingConfig(), client=_client("  "))
    with pytest.raises(LanguageGenerationError):
        await prospect.generate_reply([Turn(Speaker.USER, "Bonjour")])


@pytest.mark.asyncio
async def test_request_failure_raises():
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=RuntimeError("connection reset"))
    prospect = OpenAIProspect(TrainingConfig(), client=client)

    with pytest.raises(LanguageGenerationError, match="connection reset"):
        await prospect.generate_reply([Turn(Speaker.USER, "Bonjour")])
