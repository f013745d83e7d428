"""
Tests for the browser WebSocket protocol.
"""

import base64
import json

import pytest

from src.callsim.protocol import (
    ClientEventType,
    DeviceErrorEvent,
    PlaybackDoneEvent,
    RecognitionErrorEvent,
    RecognitionEvent,
    StartEvent,
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


class TestParseClientMessage:
    def test_start(self):
        event_type, event = parse_client_message(
            json.dumps({"type": "start", "persona": "hr", "difficulty": "hard"})
        )
        assert event_type == ClientEventType.START
        assert event == StartEvent(persona="hr", difficulty="hard")

    def test_recognition(self):
        event_type, event = parse_client_message(
            json.dumps({"type": "recognition", "final": "Bonjour", "interim": "je suis"})
        )
        assert event_type == ClientEventType.RECOGNITION
        assert event == RecognitionEvent(final="Bonjour", interim="je suis")

    def test_recognition_missing_fields_default_to_empty(self):
        _, event = parse_client_message('{"type": "recognition"}')
        assert event == RecognitionEvent(final="", interim="")

    def test_recognition_error(self):
        _, event = parse_client_message('{"type": "recognition_error", "error": "no-speech"}')
        assert event == RecognitionErrorEvent(error="no-speech")

    def test_playback_done(self):
        _, event = parse_client_message('{"type": "playback_done", "id": 3}')
        assert event == PlaybackDoneEvent(id=3, error=None)

        _, event = parse_client_message('{"type": "playback_done", "id": "4", "error": "NotAllowedError"}')
        assert event == PlaybackDoneEvent(id=4, error="NotAllowedError")

    def test_playback_done_invalid_id(self):
        with pytest.raises(ValueError):
            parse_client_message('{"type": "playback_done", "id": "abc"}')

    def test_device_error(self):
        _, event = parse_client_message(
            '{"type": "device_error", "kind": "NotAllowedError", "detail": "denied"}'
        )
        assert event == DeviceErrorEvent(kind="NotAllowedError", detail="denied")

    @pytest.mark.parametrize("event_name", ["hangup", "recognition_end"])
    def test_bare_events_return_message(self, event_name):
        event_type, event = parse_client_message(json.dumps({"type": event_name}))
        assert event_type == ClientEventType(event_name)
        assert event == {"type": event_name}

    def test_bytes_input(self):
        event_type, _ = parse_client_message(b'{"type": "hangup"}')
        assert event_type == ClientEventType.HANGUP

    @pytest.mark.parametrize(
        "raw",
        ["not json", "[1, 2]", '{"type": "dance"}', '{"persona": "hr"}'],
    )
    def test_invalid_messages(self, raw):
        with pytest.raises(ValueError):
            parse_client_message(raw)


class TestCreateMessages:
    def test_state(self):
        message = json.loads(create_state_message("ringing", contact={"name": "Marie"}))
        assert message == {"type": "state", "state": "ringing", "contact": {"name": "Marie"}}

    def test_ringtone(self):
        message = json.loads(create_ringtone_message(b"RIFF1234"))
        assert message["type"] == "ringtone"
        assert message["format"] == "wav"
        assert base64.b64decode(message["audio"]) == b"RIFF1234"

    def test_speak_with_audio(self):
        message = json.loads(create_speak_message(2, "Allô ?", b"ID3data", "mp3"))
        assert message["id"] == 2
        assert message["text"] == "Allô ?"
        assert base64.b64decode(message["audio"]) == b"ID3data"
        assert message["format"] == "mp3"

    def test_speak_without_audio(self):
        message = json.loads(create_speak_message(1, "Allô ?"))
        assert message == {"type": "speak", "id": 1, "text": "Allô ?"}

    def test_simple_messages(self):
        assert json.loads(create_stop_audio_message()) == {"type": "stop_audio"}
        assert json.loads(create_listen_message(True)) == {"type": "listen", "active": True}
        assert json.loads(create_turn_message("user", "Bonjour")) == {
            "type": "turn",
            "speaker": "user",
            "text": "Bonjour",
        }
        assert json.loads(create_error_message("microphone_error", "Refusé")) == {
            "type": "error",
            "kind": "microphone_error",
            "message": "Refusé",
        }

    def test_result(self):
        message = json.loads(create_result_message({"score": 42}))
        assert message == {"type": "result", "result": {"score": 42}}
