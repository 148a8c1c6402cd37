"""
input/audio.py — Ambient sound level sources.

A sound source answers one question per polling tick: how loud is it right
now, as a scalar in [0, 1]. The microphone source captures blocks in a
sounddevice callback thread and keeps only the latest level.

Level model: the magnitude spectrum of the latest 256-sample block is
converted to dB, each bin is mapped linearly from [-100 dB, -30 dB] to
[0, 1], and the bins are averaged.
"""

from __future__ import annotations

import threading
from typing import Any, Optional, Protocol, runtime_checkable

import numpy as np

from core.config import AudioConfig
from core.logger import get_logger

_log = get_logger()

_FFT_SIZE: int = 256
_MIN_DB: float = -100.0
_MAX_DB: float = -30.0


@runtime_checkable
class AudioSource(Protocol):
    """Minimal interface required of any sound-level provider."""

    def poll_level(self) -> float:
        """Return the current sound level in [0.0, 1.0]."""
        ...


class SilentAudioSource:
    """Always-quiet source used when no microphone is running."""

    def poll_level(self) -> float:
        return 0.0


def spectrum_level(block: np.ndarray, fft_size: int = _FFT_SIZE) -> float:
    """
    Map one block of float PCM samples to a [0, 1] loudness level.

    Args:
        block: Mono float samples in [-1, 1].
        fft_size: Number of trailing samples analysed.

    Returns:
        Mean per-bin level, 0.0 for an empty block.
    """
    samples = np.asarray(block, dtype=np.float32).reshape(-1)
    if samples.size == 0:
        return 0.0
    if samples.size < fft_size:
        samples = np.pad(samples, (0, fft_size - samples.size))
    else:
        samples = samples[-fft_size:]

    window = np.blackman(fft_size).astype(np.float32)
    magnitude = np.abs(np.fft.rfft(samples * window))[: fft_size // 2] / fft_size
    db = 20.0 * np.log10(np.maximum(magnitude, 1e-12))
    levels = np.clip((db - _MIN_DB) / (_MAX_DB - _MIN_DB), 0.0, 1.0)
    return float(levels.mean())


class MicrophoneLevelSource:
    """
    Live microphone level via a ``sounddevice.InputStream``.

    :meth:`start` opens the default input device; if that fails an error is
    logged and the source keeps reporting 0.0. :meth:`stop` closes the
    stream and zeroes the level immediately.

    Args:
        config: Sample rate and block size.
    """

    def __init__(self, config: AudioConfig | None = None) -> None:
        self._cfg = config or AudioConfig()
        self._lock = threading.Lock()
        self._level: float = 0.0
        self._stream: Optional[Any] = None

    @property
    def running(self) -> bool:
        return self._stream is not None

    def start(self) -> bool:
        """Open the microphone. Returns True on success."""
        if self._stream is not None:
            return True
        try:
            import sounddevice as sd

            self._stream = sd.InputStream(
                callback=self._callback,
                channels=1,
                samplerate=self._cfg.samplerate,
                blocksize=self._cfg.blocksize,
                dtype="float32",
            )
            self._stream.start()
        except Exception as exc:  # noqa: BLE001
            self._stream = None
            _log.error("audio", "mic_open_failed", {"error": str(exc)})
            return False
        _log.info("audio", "mic_started", {
            "samplerate": self._cfg.samplerate,
            "blocksize": self._cfg.blocksize,
        })
        return True

    def stop(self) -> None:
        """Close the microphone and reset the level to 0.0."""
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except Exception as exc:  # noqa: BLE001
                _log.warn("audio", "mic_close_error", {"error": str(exc)})
        with self._lock:
            self._level = 0.0
        _log.info("audio", "mic_stopped", {})

    def poll_level(self) -> float:
        with self._lock:
            return self._level

    def _callback(self, indata: np.ndarray, frames: int, time_info: Any, status: Any) -> None:
        if status:
            _log.debug("audio", "stream_status", {"status": str(status)})
        level = spectrum_level(indata[:, 0] if indata.ndim > 1 else indata)
        with self._lock:
            self._level = level
