"""
Tests for the transcript accumulator.
"""

import asyncio
import dataclasses

import pytest

from src.callsim.accumulator import TranscriptAccumulator
from src.callsim.speech_state import SpeechCoordinatorState


def _make(fast_config):
    state = SpeechCoordinatorState(listening=True)
    emitted = []
    acc = TranscriptAccumulator(state, on_candidate=emitted.append, config=fast_config)
    return acc, state, emitted


@pytest.mark.asyncio
async def test_complete_final_fragment_emits_immediately(fast_config):
    acc, _, emitted = _make(fast_config)
    acc.on_recognition_result("Bonjour, je suis Marc de la société X.", "")
    assert emitted == ["Bonjour, je suis Marc de la société X."]
    assert acc.buffer.is_empty
    assert not acc.debounce_pending


@pytest.mark.asyncio
async def test_final_fragments_are_appended_until_complete(fast_config):
    acc, _, emitted = _make(fast_config)
    acc.on_recognition_result("je vous", "")
    assert emitted == []
    assert acc.buffer.finalized_text == "je vous"

    acc.on_recognition_result("appelle pour un rendez-vous", "")
    assert emitted == ["je vous appelle pour un rendez-vous"]


@pytest.mark.asyncio
async def test_interim_text_is_replaced_not_appended(fast_config):
    acc, _, _ = _make(fast_config)
    acc.on_recognition_result("", "je")
    acc.on_recognition_result("", "je vous")
    acc.on_recognition_result("", "je vous appelle")
    assert acc.buffer.interim_text == "je vous appelle"
    assert acc.buffer.finalized_text == ""


@pytest.mark.asyncio
async def test_interim_only_emits_after_debounce(fast_config):
    acc, _, emitted = _make(fast_config)
    acc.on_recognition_result("", "je vous appelle au sujet de votre recrutement")
    assert emitted == []
    assert acc.debounce_pending

    await asyncio.sleep(fast_config.turn_debounce_seconds * 3)
    assert emitted == ["je vous appelle au sujet de votre recrutement"]
    assert acc.buffer.is_empty


@pytest.mark.asyncio
async def test_new_input_restarts_debounce(fast_config):
    config = dataclasses.replace(fast_config, turn_debounce_seconds=0.2)
    acc, _, emitted = _make(config)
    delay = config.turn_debounce_seconds

    acc.on_recognition_result("", "je vous appelle de la part")
    await asyncio.sleep(delay * 0.6)
    acc.on_recognition_result("", "je vous appelle de la part de Julie")
    await asyncio.sleep(delay * 0.6)
    # First timer would have fired by now if it had not been restarted.
    assert emitted == []

    await asyncio.sleep(delay * 2)
    assert emitted == ["je vous appelle de la part de Julie"]


@pytest.mark.asyncio
async def test_debounce_combines_finalized_and_interim(fast_config):
    acc, _, emitted = _make(fast_config)
    acc.on_recognition_result("je suis", "Marc de chez Acme")
    assert emitted == []
    await asyncio.sleep(fast_config.turn_debounce_seconds * 3)
    assert emitted == ["je suis Marc de chez Acme"]


@pytest.mark.asyncio
async def test_acknowledgement_is_withheld(fast_config):
    acc, _, emitted = _make(fast_config)
    acc.on_recognition_result("oui", "")
    acc.on_recognition_result("", "allô")
    await asyncio.sleep(fast_config.turn_debounce_seconds * 3)
    assert emitted == []
    assert acc.buffer.finalized_text == "oui"


@pytest.mark.asyncio
async def test_empty_events_are_ignored(fast_config):
    acc, _, emitted = _make(fast_config)
    acc.on_recognition_result("", "")
    acc.on_recognition_result("   ", None)
    assert acc.buffer.is_empty
    assert not acc.debounce_pending
    assert emitted == []


@pytest.mark.asyncio
async def test_complete_text_is_held_while_ai_speaking(fast_config):
    acc, state, emitted = _make(fast_config)
    state.set_ai_speaking(True)

    acc.on_recognition_result("Excusez-moi, je voulais juste préciser.", "")
    await asyncio.sleep(fast_config.turn_debounce_seconds * 3)
    assert emitted == []
    assert acc.buffer.finalized_text == "Excusez-moi, je voulais juste préciser."


@pytest.mark.asyncio
async def test_flush_releases_finalized_and_keeps_interim(fast_config):
    acc, _, emitted = _make(fast_config)
    acc.on_recognition_result("oui", "et aussi")

    assert acc.flush() == "oui"
    assert emitted == ["oui"]
    assert acc.buffer.finalized_text == ""
    assert acc.buffer.interim_text == "et aussi"
    assert acc.debounce_pending


@pytest.mark.asyncio
async def test_flush_with_nothing_finalized(fast_config):
    acc, _, emitted = _make(fast_config)
    assert acc.flush() is None
    assert emitted == []


@pytest.mark.asyncio
async def test_reset_cancels_debounce(fast_config):
    acc, _, emitted = _make(fast_config)
    acc.on_recognition_result("", "je vous appelle au sujet de votre recrutement")
    acc.reset()
    assert acc.buffer.is_empty
    assert not acc.debounce_pending
    await asyncio.sleep(fast_config.turn_debounce_seconds * 3)
    assert emitted == []


@pytest.mark.asyncio
async def test_refused_flush_keeps_text_and_retries(fast_config):
    state = SpeechCoordinatorState(listening=True)
    offered = []
    answers = [0.05, None]

    def on_candidate(text):
        offered.append(text)
        return answers.pop(0)

    acc = TranscriptAccumulator(state, on_candidate=on_candidate, config=fast_config)
    state.set_ai_speaking(True)
    acc.on_recognition_result("Excusez-moi, encore une chose.", "")
    state.set_ai_speaking(False)

    assert acc.flush() is None
    assert acc.buffer.finalized_text == "Excusez-moi, encore une chose."
    assert acc.debounce_pending

    await asyncio.sleep(0.15)
    assert offered == ["Excusez-moi, encore une chose."] * 2
    assert acc.buffer.is_empty


@pytest.mark.asyncio
async def test_refused_text_waits_while_floor_is_taken(fast_config):
    state = SpeechCoordinatorState(listening=True)
    offered = []

    def on_candidate(text):
        offered.append(text)
        return 0.0 if len(offered) == 1 else None

    acc = TranscriptAccumulator(state, on_candidate=on_candidate, config=fast_config)
    acc.on_recognition_result("Bonjour, je suis Marc de la société X.", "")
    state.set_ai_speaking(True)

    await asyncio.sleep(0.1)
    assert len(offered) == 1
    assert acc.buffer.finalized_text == "Bonjour, je suis Marc de la société X."

    state.set_ai_speaking(False)
    assert acc.flush() == "Bonjour, je suis Marc de la société X."
    assert len(offered) == 2
