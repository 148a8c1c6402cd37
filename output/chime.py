"""
output/chime.py — Commit feedback: two-tone chime and haptic pulse.

The chime is C6 (1047 Hz) plus E6 (1319 Hz) sine, 20 ms attack to 0.15
gain, exponential decay to 0.01 by 400 ms, silent at 500 ms. It is
synthesised once with numpy and played through ``pygame.mixer``.

Desktop hosts have no vibration motor, so :class:`LoggingHaptics` only
records the pulse; hardware integrations replace it with their own sink.
"""

from __future__ import annotations

import threading
from typing import Optional

import numpy as np

from core.logger import get_logger

_log = get_logger()

_SAMPLE_RATE: int = 22050
_FREQS_HZ: tuple[float, float] = (1047.0, 1319.0)
_PEAK_GAIN: float = 0.15
_FLOOR_GAIN: float = 0.01
_ATTACK_S: float = 0.02
_DECAY_END_S: float = 0.4
_DURATION_S: float = 0.5
_HAPTIC_PULSE_MS: int = 50


def synth_chime(sample_rate: int = _SAMPLE_RATE) -> np.ndarray:
    """
    Render the commit chime as mono int16 PCM.

    Returns:
        Array of ``round(sample_rate × 0.5)`` samples.
    """
    n = int(round(sample_rate * _DURATION_S))
    t = np.arange(n, dtype=np.float64) / sample_rate

    envelope = np.empty(n, dtype=np.float64)
    attack = t < _ATTACK_S
    envelope[attack] = _PEAK_GAIN * t[attack] / _ATTACK_S
    rest = ~attack
    # exponential ramp from peak to floor between attack end and decay end
    frac = np.clip((t[rest] - _ATTACK_S) / (_DECAY_END_S - _ATTACK_S), 0.0, 1.0)
    envelope[rest] = _PEAK_GAIN * (_FLOOR_GAIN / _PEAK_GAIN) ** frac

    wave = sum(np.sin(2.0 * np.pi * f * t) for f in _FREQS_HZ)
    pcm = np.clip(wave * envelope, -1.0, 1.0)
    return (pcm * 32767).astype(np.int16)


class ChimePlayer:
    """
    Plays the commit chime through pygame without blocking the caller.

    If the mixer cannot be opened (no audio device), :meth:`play` only logs.
    """

    def __init__(self) -> None:
        self._sound: Optional[object] = None
        self._init_mixer()

    @property
    def ready(self) -> bool:
        return self._sound is not None

    def play(self) -> None:
        if self._sound is None:
            _log.debug("chime", "skipped_no_mixer", {})
            return
        try:
            self._sound.play()  # type: ignore[attr-defined]
        except Exception as exc:  # noqa: BLE001
            _log.warn("chime", "play_error", {"error": str(exc)})

    def shutdown(self) -> None:
        if self._sound is None:
            return
        try:
            import pygame  # type: ignore
            pygame.mixer.quit()
        except Exception as exc:  # noqa: BLE001
            _log.debug("chime", "mixer_quit_error", {"error": str(exc)})
        self._sound = None

    def _init_mixer(self) -> None:
        try:
            import pygame  # type: ignore
            import pygame.sndarray  # type: ignore

            pygame.mixer.init(frequency=_SAMPLE_RATE, size=-16, channels=1, buffer=512)
            pcm = synth_chime(_SAMPLE_RATE)
            _, _, channels = pygame.mixer.get_init()
            if channels > 1:
                pcm = np.repeat(pcm[:, None], channels, axis=1)
            self._sound = pygame.sndarray.make_sound(np.ascontiguousarray(pcm))
            _log.info("chime", "mixer_ready", {"freq": _SAMPLE_RATE})
        except Exception as exc:  # noqa: BLE001
            self._sound = None
            _log.warn("chime", "mixer_init_failed", {"error": str(exc)})


class LoggingHaptics:
    """Haptic sink that records each pulse; thread-safe counter for tests."""

    def __init__(self, pulse_ms: int = _HAPTIC_PULSE_MS) -> None:
        self._pulse_ms = pulse_ms
        self._lock = threading.Lock()
        self._count = 0

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    def pulse(self) -> None:
        with self._lock:
            self._count += 1
        _log.debug("haptics", "pulse", {"duration_ms": self._pulse_ms})
