"""
Audio output interface, ringtone synthesis and microphone error taxonomy.

The simulator never touches raw microphone audio itself: the recognition engine
(browser Web Speech, or any other continuous engine) owns capture. What lives here:

- AudioOutput: the playback seam (ringtone, assistant speech, stop)
- MicrophoneError: fatal capture errors, classified for an actionable user message
- ringtone synthesis (two-tone 800/600 Hz bursts) as a WAV byte string
"""

from __future__ import annotations

import base64
import io
import wave
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

import numpy as np

RINGTONE_SAMPLE_RATE = 16000


class MicrophoneErrorKind(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    NO_DEVICE = "no_device"
    UNKNOWN = "unknown"


_MICROPHONE_MESSAGES = {
    MicrophoneErrorKind.PERMISSION_DENIED: (
        "Accès au microphone refusé. Autorisez le microphone dans les paramètres "
        "de votre navigateur puis relancez l'appel."
    ),
    MicrophoneErrorKind.NO_DEVICE: (
        "Aucun microphone détecté. Branchez un micro ou un casque puis relancez l'appel."
    ),
    MicrophoneErrorKind.UNKNOWN: (
        "Impossible d'accéder au microphone. Vérifiez votre matériel et réessayez."
    ),
}

# Browser / engine error names -> kind
_MICROPHONE_ERROR_NAMES = {
    "notallowederror": MicrophoneErrorKind.PERMISSION_DENIED,
    "permissiondeniederror": MicrophoneErrorKind.PERMISSION_DENIED,
    "securityerror": MicrophoneErrorKind.PERMISSION_DENIED,
    "not-allowed": MicrophoneErrorKind.PERMISSION_DENIED,
    "service-not-allowed": MicrophoneErrorKind.PERMISSION_DENIED,
    "permission_denied": MicrophoneErrorKind.PERMISSION_DENIED,
    "notfounderror": MicrophoneErrorKind.NO_DEVICE,
    "devicesnotfounderror": MicrophoneErrorKind.NO_DEVICE,
    "overconstrainederror": MicrophoneErrorKind.NO_DEVICE,
    "no_device": MicrophoneErrorKind.NO_DEVICE,
}


class MicrophoneError(Exception):
    """Microphone permission/device failure. Fatal to starting or continuing a call."""

    def __init__(self, kind: MicrophoneErrorKind, detail: str = ""):
        self.kind = kind
        self.detail = detail
        super().__init__(f"{kind.value}: {detail}" if detail else kind.value)

    @property
    def user_message(self) -> str:
        return _MICROPHONE_MESSAGES[self.kind]

    @classmethod
    def from_name(cls, name: Optional[str], detail: str = "") -> "MicrophoneError":
        key = (name or "").strip().lower()
        kind = _MICROPHONE_ERROR_NAMES.get(key, MicrophoneErrorKind.UNKNOWN)
        return cls(kind, detail or (name or ""))


class PlaybackError(Exception):
    """Fatal audio output failure (the call cannot continue)."""
    pass


class AudioOutput(ABC):
    """Plays call audio to the trainee."""

    @abstractmethod
    async def play_ringtone(self) -> None:
        """Play the ringback tone; returns when it is done."""
        raise NotImplementedError

    @abstractmethod
    async def play(self, text: str, audio: Optional[bytes], audio_format: str = "mp3") -> None:
        """
        Play one assistant utterance and return when playback has finished.

        When `audio` is None the output should speak `text` by other means
        (e.g., browser speech synthesis). Raise PlaybackError for fatal failures.
        """
        raise NotImplementedError

    async def stop(self) -> None:
        return None


def write_wav_mono_pcm16(pcm_bytes: bytes, sample_rate: int) -> bytes:
    """Create a mono 16-bit PCM WAV byte string from PCM bytes."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(int(sample_rate))
        wf.writeframes(pcm_bytes or b"")
    return buf.getvalue()


def read_wav_mono_pcm16(wav_bytes: bytes) -> tuple[int, bytes]:
    """Read a 16-bit PCM WAV; returns (sample_rate, mono_pcm_bytes)."""
    with wave.open(io.BytesIO(wav_bytes), "rb") as wf:
        sample_rate = wf.getframerate()
        channels = wf.getnchannels()
        sampwidth = wf.getsampwidth()
        frames = wf.readframes(wf.getnframes())

    if sampwidth != 2:
        raise ValueError(f"Unsupported WAV sample width: {sampwidth}")

    if channels == 1:
        return sample_rate, frames

    samples = np.frombuffer(frames, dtype=np.int16).reshape(-1, channels)
    mono = samples.mean(axis=1).astype(np.int16)
    return sample_rate, mono.tobytes()


def wav_duration_seconds(wav_bytes: bytes) -> float:
    if not wav_bytes:
        return 0.0
    sample_rate, pcm = read_wav_mono_pcm16(wav_bytes)
    if sample_rate <= 0:
        return 0.0
    return (len(pcm) // 2) / float(sample_rate)


def generate_ringtone_pcm(
    *,
    rings: int = 2,
    interval_s: float = 0.7,
    tone_s: float = 0.3,
    sample_rate: int = RINGTONE_SAMPLE_RATE,
    volume: float = 0.1,
) -> bytes:
    """
    Classic ringback: each ring is 800 Hz dropping to 600 Hz halfway, then silence.

    Returns 16-bit mono PCM covering `rings * interval_s` seconds.
    """
    ring_samples = int(interval_s * sample_rate)
    tone_samples = min(int(tone_s * sample_rate), ring_samples)
    split = tone_samples // 2

    t = np.arange(tone_samples) / float(sample_rate)
    freq = np.where(np.arange(tone_samples) < split, 800.0, 600.0)
    tone = np.sin(2 * np.pi * freq * t) * volume

    ring = np.zeros(ring_samples, dtype=np.float64)
    ring[:tone_samples] = tone
    signal = np.tile(ring, max(1, rings))

    pcm = np.clip(signal * 32767.0, -32768, 32767).astype(np.int16)
    return pcm.tobytes()


def generate_ringtone_wav(**kwargs) -> bytes:
    sample_rate = kwargs.get("sample_rate", RINGTONE_SAMPLE_RATE)
    return write_wav_mono_pcm16(generate_ringtone_pcm(**kwargs), sample_rate)


def b64encode_audio(data: Optional[bytes]) -> Optional[str]:
    if not data:
        return None
    return base64.b64encode(data).decode("utf-8")
