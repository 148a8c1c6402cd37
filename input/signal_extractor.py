"""
input/signal_extractor.py — PerceptionSample → SignalFrame.

Two estimators read the same face:

* the landmark estimator derives smile and mouth-open from four mouth
  landmarks (width/height ratio and corner lift);
* the expression estimator averages paired left/right blendshape
  intensities.

The final smile is the higher of the two, so a weak estimator never hides a
smile the other one sees. Mouth-open prefers the expression estimator and
falls back to landmarks. When no expression data arrives, the emotion
distribution comes from the landmark estimator alone.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from collections.abc import Mapping
from typing import Optional, Sequence

from core.constants import AttuneConstants as C, Emotion, HeadGesture
from core.errors import MalformedSample
from input.gesture_tracker import GestureTracker
from input.perception import (
    LEFT_MOUTH_CORNER,
    LOWER_LIP,
    MAX_ROLE_INDEX,
    NOSE_TIP,
    RIGHT_MOUTH_CORNER,
    UPPER_LIP,
    PerceptionSample,
    Point,
)

logger = logging.getLogger(__name__)


def clamp01(value: float) -> float:
    """Clamp *value* into [0, 1]."""
    return max(0.0, min(1.0, value))


# ──────────────────────────────────────────────────────────────
# Output dataclasses
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class EmotionScores:
    """Emotion distribution; ``neutral`` is the residual."""

    happy: float = 0.0
    sad: float = 0.0
    surprised: float = 0.0
    neutral: float = 1.0

    def to_dict(self) -> dict[str, float]:
        return {
            "happy": round(self.happy, 4),
            "sad": round(self.sad, 4),
            "surprised": round(self.surprised, 4),
            "neutral": round(self.neutral, 4),
        }


@dataclass(frozen=True)
class SignalFrame:
    """
    Normalised per-frame signals consumed by the rule engine and the display.

    Attributes:
        smile: Smile intensity in [0, 1].
        mouth_open: Mouth-open intensity in [0, 1].
        movement: Net head displacement over the gesture window, in [0, 1].
        head_gesture: Current head gesture.
        emotion: Emotion distribution.
        dominant_emotion: Emotion chosen by ordered thresholds.
    """

    smile: float = 0.0
    mouth_open: float = 0.0
    movement: float = 0.0
    head_gesture: HeadGesture = HeadGesture.STILL
    emotion: EmotionScores = EmotionScores()
    dominant_emotion: Emotion = Emotion.NEUTRAL

    def to_dict(self) -> dict:
        """JSON-safe representation for sinks and logs."""
        return {
            "smile": round(self.smile, 4),
            "mouth_open": round(self.mouth_open, 4),
            "movement": round(self.movement, 4),
            "head_gesture": self.head_gesture.value,
            "emotion": self.emotion.to_dict(),
            "dominant_emotion": self.dominant_emotion.value,
        }


#: The frame produced for no face, malformed input, and stopped camera.
ZERO_FRAME = SignalFrame()


# ──────────────────────────────────────────────────────────────
# Estimators
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class LandmarkEstimate:
    """Mouth geometry read from landmarks."""

    smile: float
    mouth_open: float
    corner_lift: float


@dataclass(frozen=True)
class ExpressionEstimate:
    """Paired blendshape averages."""

    smile: float
    frown: float
    brow_down: float
    brow_up: float
    eye_wide: float
    eye_squint: float
    jaw_open: float


def _role(landmarks: Sequence[Point], index: int) -> Point:
    try:
        point = landmarks[index]
        x, y = float(point.x), float(point.y)
    except (AttributeError, IndexError, TypeError, ValueError) as exc:
        raise MalformedSample(f"landmark {index}: {exc}") from exc
    if not (math.isfinite(x) and math.isfinite(y)):
        raise MalformedSample(f"landmark {index} is not finite")
    return Point(x, y)


def estimate_from_landmarks(landmarks: Sequence[Point]) -> LandmarkEstimate:
    """
    Estimate smile and mouth-open from mouth-corner and lip landmarks.

    ``smile = clamp01((ratio − 2.5) / 2 + lift × 15)`` where ratio is mouth
    width over height and lift is how far the corners sit above the mouth
    centre (image y grows downwards).

    Raises:
        MalformedSample: If a required landmark role is missing or invalid.
    """
    try:
        count = len(landmarks)
    except TypeError as exc:
        raise MalformedSample(f"landmarks are not a sequence: {exc}") from exc
    if count <= MAX_ROLE_INDEX:
        raise MalformedSample(
            f"expected more than {MAX_ROLE_INDEX} landmarks, got {count}"
        )
    left = _role(landmarks, LEFT_MOUTH_CORNER)
    right = _role(landmarks, RIGHT_MOUTH_CORNER)
    upper = _role(landmarks, UPPER_LIP)
    lower = _role(landmarks, LOWER_LIP)

    width = abs(right.x - left.x)
    height = abs(lower.y - upper.y)
    ratio = width / (height + 0.001)
    center_y = (upper.y + lower.y) / 2.0
    lift = ((center_y - left.y) + (center_y - right.y)) / 2.0

    return LandmarkEstimate(
        smile=clamp01((ratio - 2.5) / 2.0 + lift * 15.0),
        mouth_open=clamp01(height * 5.0),
        corner_lift=lift,
    )


def _intensity(expressions: Mapping[str, float], name: str) -> float:
    raw = expressions.get(name, 0.0)
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise MalformedSample(f"expression {name!r} is not numeric") from exc
    if not math.isfinite(value):
        raise MalformedSample(f"expression {name!r} is not finite")
    return clamp01(value)


def _pair(expressions: Mapping[str, float], stem: str) -> float:
    return (_intensity(expressions, f"{stem}Left") + _intensity(expressions, f"{stem}Right")) / 2.0


def estimate_from_expressions(expressions: Mapping[str, float]) -> ExpressionEstimate:
    """
    Average left/right blendshape pairs into single intensities.

    Brow-up averages the inner brow raise with both outer brow raises.
    Absent names count as 0.0.

    Raises:
        MalformedSample: If *expressions* is not a mapping or an intensity
            is not a finite number.
    """
    if not isinstance(expressions, Mapping):
        raise MalformedSample(
            f"expressions must be a mapping, got {type(expressions).__name__}"
        )
    brow_up = (
        _intensity(expressions, "browInnerUp")
        + _intensity(expressions, "browOuterUpLeft")
        + _intensity(expressions, "browOuterUpRight")
    ) / 3.0
    return ExpressionEstimate(
        smile=_pair(expressions, "mouthSmile"),
        frown=_pair(expressions, "mouthFrown"),
        brow_down=_pair(expressions, "browDown"),
        brow_up=brow_up,
        eye_wide=_pair(expressions, "eyeWide"),
        eye_squint=_pair(expressions, "eyeSquint"),
        jaw_open=_intensity(expressions, "jawOpen"),
    )


# ──────────────────────────────────────────────────────────────
# Combinators
# ──────────────────────────────────────────────────────────────

def combine_max(primary: float, secondary: Optional[float]) -> float:
    """The more sensitive of two estimates; a missing estimate is ignored."""
    return primary if secondary is None else max(primary, secondary)


def prefer(preferred: Optional[float], fallback: float) -> float:
    """*preferred* when present, else *fallback*."""
    return fallback if preferred is None else preferred


# ──────────────────────────────────────────────────────────────
# Emotion distributions
# ──────────────────────────────────────────────────────────────

def emotion_from_expressions(
    smile: float, expr: ExpressionEstimate
) -> tuple[EmotionScores, Emotion]:
    """
    Emotion distribution and dominant emotion when blendshapes are present.

    The dominant check uses its own thresholds in a fixed order rather than
    the distribution maximum.
    """
    happy = min(1.0, smile * 2.0)
    sad = min(1.0, expr.frown * 1.5 + expr.brow_down * 0.5)
    surprised = min(1.0, expr.brow_up * 0.8 + expr.eye_wide * 0.8 + expr.jaw_open * 0.4)
    neutral = max(0.0, 1.0 - happy - sad - surprised)
    scores = EmotionScores(happy, sad, surprised, neutral)

    if smile > C.DOMINANT_HAPPY_SMILE:
        dominant = Emotion.HAPPY
    elif sad > C.DOMINANT_SAD:
        dominant = Emotion.SAD
    elif surprised > C.DOMINANT_SURPRISED:
        dominant = Emotion.SURPRISED
    else:
        dominant = Emotion.NEUTRAL
    return scores, dominant


def emotion_from_landmarks(est: LandmarkEstimate) -> tuple[EmotionScores, Emotion]:
    """Coarser distribution used when no blendshapes arrive."""
    happy = est.smile
    sad = clamp01(-est.corner_lift * 10.0)
    surprised = est.mouth_open * 0.5
    neutral = max(0.0, 1.0 - happy - sad)
    scores = EmotionScores(happy, sad, surprised, neutral)

    if happy > 0.2:
        dominant = Emotion.HAPPY
    elif sad > 0.2:
        dominant = Emotion.SAD
    else:
        dominant = Emotion.NEUTRAL
    return scores, dominant


# ──────────────────────────────────────────────────────────────
# Extractor
# ──────────────────────────────────────────────────────────────

class SignalExtractor:
    """
    Stateful wrapper that turns each PerceptionSample into a SignalFrame.

    The only state is the gesture tracker's nose history.

    Args:
        tracker: Gesture tracker fed with the nose tip of every face frame.
    """

    def __init__(self, tracker: GestureTracker | None = None) -> None:
        self._tracker = tracker or GestureTracker()

    @property
    def tracker(self) -> GestureTracker:
        return self._tracker

    def extract(self, sample: PerceptionSample, now_ms: float | None = None) -> SignalFrame:
        """
        Produce the SignalFrame for one sample.

        No face and malformed input both yield :data:`ZERO_FRAME`; this method
        never raises for bad perception data.

        Args:
            sample: Output of the perception source.
            now_ms: Tick time; defaults to the sample timestamp.
        """
        if sample.face is None:
            return ZERO_FRAME
        now = sample.timestamp_ms if now_ms is None else now_ms
        try:
            return self._extract_face(sample, now)
        except MalformedSample as exc:
            logger.debug("Malformed sample dropped: %s", exc.detail)
            return ZERO_FRAME

    def reset(self) -> None:
        """Clear gesture history (camera stopped)."""
        self._tracker.reset()

    def _extract_face(self, sample: PerceptionSample, now_ms: float) -> SignalFrame:
        face = sample.face
        assert face is not None
        landmark = estimate_from_landmarks(face.landmarks)
        expr = estimate_from_expressions(face.expressions) if face.expressions else None

        smile = combine_max(landmark.smile, expr.smile if expr else None)
        mouth_open = prefer(expr.jaw_open if expr else None, landmark.mouth_open)

        if expr is not None:
            emotion, dominant = emotion_from_expressions(smile, expr)
        else:
            emotion, dominant = emotion_from_landmarks(landmark)

        nose = _role(face.landmarks, NOSE_TIP)
        self._tracker.observe(nose.x, nose.y, now_ms)

        return SignalFrame(
            smile=smile,
            mouth_open=mouth_open,
            movement=self._tracker.movement(),
            head_gesture=self._tracker.classify(),
            emotion=emotion,
            dominant_emotion=dominant,
        )
