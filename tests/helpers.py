"""
tests/helpers.py — Builders shared by the Attune test modules.
"""

from __future__ import annotations

from typing import List

from core.constants import Emotion, HeadGesture
from input.face_sim import neutral_landmarks
from input.perception import FaceObservation, PerceptionSample, Point
from input.signal_extractor import EmotionScores, SignalFrame

#: One frame at 30 fps, in ms.
FRAME_MS = 1000.0 / 30.0


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, start_ms: float = 0.0) -> None:
        self.now = start_ms

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> float:
        self.now += ms
        return self.now


def make_frame(
    smile: float = 0.0,
    mouth_open: float = 0.0,
    movement: float = 0.0,
    head_gesture: HeadGesture = HeadGesture.STILL,
    sad: float = 0.0,
    surprised: float = 0.0,
    happy: float = 0.0,
    dominant: Emotion = Emotion.NEUTRAL,
) -> SignalFrame:
    """Build a SignalFrame with only the fields a test cares about."""
    neutral = max(0.0, 1.0 - happy - sad - surprised)
    return SignalFrame(
        smile=smile,
        mouth_open=mouth_open,
        movement=movement,
        head_gesture=head_gesture,
        emotion=EmotionScores(happy, sad, surprised, neutral),
        dominant_emotion=dominant,
    )


def face_sample(
    landmarks: List[Point] | None = None,
    expressions: dict | None = None,
    timestamp_ms: float = 0.0,
) -> PerceptionSample:
    """A one-face PerceptionSample; neutral landmarks by default."""
    return PerceptionSample(
        face=FaceObservation(
            landmarks=landmarks if landmarks is not None else neutral_landmarks(),
            expressions=expressions or {},
        ),
        timestamp_ms=timestamp_ms,
    )
