"""
Tests for configuration loading and validation.
"""

import dataclasses
import os
from unittest.mock import patch

import pytest

from src.callsim.config import ConfigError, get_config, init_config


def test_defaults_from_environment():
    config = get_config()
    assert config.port == 7860
    assert config.log_level == "DEBUG"
    assert config.openai_api_key == "sk-test-key"
    assert config.tts_enabled is False
    assert config.turn_debounce_seconds == 1.5
    assert config.min_turn_spacing_seconds == 1.3
    assert config.llm_max_consecutive_failures == 3
    assert config.fallback_utterance == "Pardon ?"


def test_environment_overrides():
    env = {
        "TURN_DEBOUNCE_SECONDS": "0.8",
        "UTTERANCE_LENGTH_THRESHOLD": "60",
        "TTS_ENABLED": "yes",
        "FALLBACK_UTTERANCE": "Comment ?",
    }
    with patch.dict(os.environ, env):
        get_config.cache_clear()
        config = get_config()

    assert config.turn_debounce_seconds == 0.8
    assert config.utterance_length_threshold == 60
    assert config.tts_enabled is True
    assert config.fallback_utterance == "Comment ?"


def test_invalid_numbers_fall_back_to_defaults():
    with patch.dict(os.environ, {"LLM_TIMEOUT_SECONDS": "soon", "PORT": "http"}):
        get_config.cache_clear()
        config = get_config()

    assert config.llm_timeout_seconds == 12.0
    assert config.port == 7860


def test_config_is_cached():
    assert get_config() is get_config()


def test_init_config_validates():
    assert init_config().openai_model == "gpt-4o-mini"


def test_missing_api_key():
    config = dataclasses.replace(get_config(), openai_api_key="")
    with pytest.raises(ConfigError, match="OPENAI_API_KEY"):
        config.validate()


@pytest.mark.parametrize(
    "overrides",
    [
        {"turn_debounce_seconds": 0},
        {"min_turn_spacing_seconds": -1},
        {"llm_timeout_seconds": 0},
        {"llm_max_consecutive_failures": 0},
    ],
)
def test_invalid_timings(overrides):
    config = dataclasses.replace(get_config(), **overrides)
    with pytest.raises(ConfigError):
        config.validate()
