"""
tests/test_perception.py — Perception sources: safe_detect, MediaPipe result
conversion and the scripted face used by sim mode.
"""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from core.errors import PerceptionUnavailable
from input.face_sim import (
    PlaceholderFrames,
    ScriptedAudioSource,
    ScriptedFaceSource,
    neutral_landmarks,
)
from input.perception import (
    NO_FACE,
    NOSE_TIP,
    MediaPipeFaceSource,
    PerceptionSample,
    safe_detect,
    to_sample,
)

from helpers import FRAME_MS, FakeClock, face_sample


class TestSafeDetect:

    def test_missing_source_is_no_face(self) -> None:
        assert safe_detect(None, object(), 0.0) is NO_FACE

    def test_missing_frame_is_no_face(self) -> None:
        source = MagicMock()
        assert safe_detect(source, None, 0.0) is NO_FACE
        source.detect.assert_not_called()

    @pytest.mark.parametrize("error", [
        RuntimeError("boom"),
        PerceptionUnavailable("model not loaded"),
    ])
    def test_raising_source_is_no_face(self, error) -> None:
        source = MagicMock()
        source.detect.side_effect = error
        assert safe_detect(source, object(), 0.0) is NO_FACE

    def test_none_result_is_no_face(self) -> None:
        source = MagicMock()
        source.detect.return_value = None
        assert safe_detect(source, object(), 0.0) is NO_FACE

    def test_recovers_after_failure(self) -> None:
        source = MagicMock()
        sample = face_sample()
        source.detect.side_effect = [RuntimeError("glitch"), sample]
        assert safe_detect(source, object(), 0.0) is NO_FACE
        assert safe_detect(source, object(), 33.0) is sample


class TestToSample:

    def test_no_faces(self) -> None:
        result = SimpleNamespace(face_landmarks=[], face_blendshapes=[])
        sample = to_sample(result, 10.0)
        assert not sample.has_face
        assert sample.timestamp_ms == 10.0

    def test_first_face_and_blendshapes(self) -> None:
        landmarks = [SimpleNamespace(x=0.1 * (i % 10), y=0.5, z=0.0) for i in range(478)]
        shapes = [SimpleNamespace(category_name="jawOpen", score=0.7)]
        result = SimpleNamespace(face_landmarks=[landmarks], face_blendshapes=[shapes])
        sample = to_sample(result, 5.0)
        assert sample.has_face
        assert len(sample.face.landmarks) == 478
        assert sample.face.expressions == {"jawOpen": 0.7}

    def test_missing_blendshapes_gives_empty_expressions(self) -> None:
        landmarks = [SimpleNamespace(x=0.5, y=0.5) for _ in range(478)]
        result = SimpleNamespace(face_landmarks=[landmarks])
        assert to_sample(result, 0.0).face.expressions == {}


class TestMediaPipeFaceSource:

    def test_missing_model_degrades_to_unavailable(self, tmp_path) -> None:
        source = MediaPipeFaceSource(tmp_path / "missing.task")
        assert not source.ready
        with pytest.raises(PerceptionUnavailable):
            source.detect(object(), 0.0)
        assert safe_detect(source, object(), 0.0) is NO_FACE


class TestScriptedFace:

    def test_script_steps_follow_elapsed_time(self) -> None:
        face = ScriptedFaceSource([("NEUTRAL", 100.0, 0.0), ("SMILE", 100.0, 0.0)])
        assert face.detect(None, 1000.0).face.expressions == {}
        smile = face.detect(None, 1150.0).face.expressions
        assert smile["mouthSmileLeft"] == 0.5

    def test_away_step_has_no_face(self) -> None:
        face = ScriptedFaceSource([("AWAY", 100.0, 0.0)])
        assert not face.detect(None, 0.0).has_face

    def test_after_script_face_is_neutral(self) -> None:
        face = ScriptedFaceSource([("SMILE", 100.0, 0.0)])
        face.detect(None, 0.0)
        assert face.detect(None, 500.0).face.expressions == {}

    def test_nod_moves_nose_vertically(self) -> None:
        face = ScriptedFaceSource([("NOD", 1000.0, 0.0)])
        face.detect(None, 0.0)
        # sample mid-frame so each call lands on a distinct frame index
        nose = [face.detect(None, (i + 0.5) * FRAME_MS).face.landmarks[NOSE_TIP]
                for i in range(4)]
        ys = [p.y for p in nose]
        xs = {p.x for p in nose}
        assert max(ys) - min(ys) == pytest.approx(0.06)
        assert xs == {0.5}

    def test_audio_tracks_the_same_script(self) -> None:
        clock = FakeClock()
        face = ScriptedFaceSource([("NEUTRAL", 100.0, 0.0), ("OPEN", 100.0, 0.7)])
        audio = ScriptedAudioSource(face.clock, clock)
        face.detect(None, clock.now)
        assert audio.poll_level() == 0.0
        clock.advance(150.0)
        assert audio.poll_level() == 0.7
        clock.advance(500.0)
        assert audio.poll_level() == 0.0

    def test_neutral_landmarks_shape(self) -> None:
        points = neutral_landmarks(0.01, -0.02)
        assert len(points) == 478
        assert (points[NOSE_TIP].x, points[NOSE_TIP].y) == pytest.approx((0.51, 0.48))

    def test_placeholder_frames(self) -> None:
        frames = PlaceholderFrames()
        assert frames.read() is None
        assert frames.start() is True
        assert frames.read().shape == (1, 1, 3)
        frames.stop()
        assert frames.read() is None

    def test_sample_type(self) -> None:
        assert isinstance(ScriptedFaceSource().detect(None, 0.0), PerceptionSample)
