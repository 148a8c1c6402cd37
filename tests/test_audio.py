"""
tests/test_audio.py — Sound level model and microphone source (sounddevice mocked).
"""

from __future__ import annotations

import sys
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from input.audio import MicrophoneLevelSource, SilentAudioSource, spectrum_level


class TestSpectrumLevel:

    def test_silence_is_zero(self) -> None:
        assert spectrum_level(np.zeros(256, dtype=np.float32)) == 0.0

    def test_empty_block_is_zero(self) -> None:
        assert spectrum_level(np.zeros(0, dtype=np.float32)) == 0.0

    def test_louder_noise_scores_higher(self) -> None:
        rng = np.random.default_rng(0)
        quiet = spectrum_level(rng.uniform(-0.001, 0.001, 256))
        loud = spectrum_level(rng.uniform(-0.5, 0.5, 256))
        assert 0.0 <= quiet < loud <= 1.0
        assert loud > 0.4

    def test_short_block_is_padded(self) -> None:
        rng = np.random.default_rng(1)
        level = spectrum_level(rng.uniform(-0.5, 0.5, 64))
        assert 0.0 < level <= 1.0

    def test_only_trailing_window_counts(self) -> None:
        block = np.concatenate([np.ones(512, dtype=np.float32), np.zeros(256, dtype=np.float32)])
        assert spectrum_level(block) == 0.0


class TestSilentSource:

    def test_always_zero(self) -> None:
        assert SilentAudioSource().poll_level() == 0.0


class TestMicrophoneLevelSource:

    def test_open_failure_reports_silence(self) -> None:
        fake_sd = MagicMock()
        fake_sd.InputStream.side_effect = OSError("no input device")
        with patch.dict(sys.modules, {"sounddevice": fake_sd}):
            mic = MicrophoneLevelSource()
            assert mic.start() is False
        assert not mic.running
        assert mic.poll_level() == 0.0

    def test_callback_updates_level_and_stop_zeroes_it(self) -> None:
        fake_sd = MagicMock()
        with patch.dict(sys.modules, {"sounddevice": fake_sd}):
            mic = MicrophoneLevelSource()
            assert mic.start() is True
        fake_sd.InputStream.return_value.start.assert_called_once()

        rng = np.random.default_rng(2)
        block = rng.uniform(-0.5, 0.5, (512, 1)).astype(np.float32)
        mic._callback(block, 512, None, None)
        assert mic.poll_level() == pytest.approx(spectrum_level(block[:, 0]))

        mic.stop()
        assert mic.poll_level() == 0.0
        assert not mic.running
