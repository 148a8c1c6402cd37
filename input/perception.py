"""
input/perception.py — Per-frame face perception samples and sources.

A perception source turns one video frame into at most one detected face:
normalised landmark points plus named expression intensities (MediaPipe
blendshapes). :func:`safe_detect` is the only way the pipeline calls a
source, so a throwing or uninitialised source degrades to "no face" for
that tick instead of breaking the loop.

Landmark roles follow the MediaPipe Face Mesh topology (478 points).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol, Sequence, runtime_checkable

from core.errors import PerceptionUnavailable
from core.logger import get_logger

_log = get_logger()

# ── Landmark roles (MediaPipe Face Mesh indices) ──────────────────────────────
LEFT_MOUTH_CORNER: int = 61
RIGHT_MOUTH_CORNER: int = 291
UPPER_LIP: int = 13
LOWER_LIP: int = 14
NOSE_TIP: int = 4

#: Highest index any role needs; shorter landmark lists are malformed.
MAX_ROLE_INDEX: int = max(
    LEFT_MOUTH_CORNER, RIGHT_MOUTH_CORNER, UPPER_LIP, LOWER_LIP, NOSE_TIP
)


# ── Data containers ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Point:
    """A normalised 2-D landmark, both coordinates nominally in [0, 1]."""

    x: float
    y: float


@dataclass(frozen=True)
class FaceObservation:
    """
    One detected face.

    Attributes:
        landmarks: Ordered landmark points, indexable by the role constants.
        expressions: Expression label → intensity in [0, 1]; may be empty.
    """

    landmarks: Sequence[Point]
    expressions: Mapping[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class PerceptionSample:
    """
    Output of a perception source for a single frame.

    ``face is None`` is the normal no-face state, not an error.
    """

    face: Optional[FaceObservation] = None
    timestamp_ms: float = 0.0

    @property
    def has_face(self) -> bool:
        """True when a face was detected in this frame."""
        return self.face is not None


#: Shared empty sample returned whenever perception yields nothing.
NO_FACE = PerceptionSample()


@runtime_checkable
class PerceptionSource(Protocol):
    """Minimal interface required of any face perception provider."""

    def detect(self, frame: Any, timestamp_ms: float) -> Optional[PerceptionSample]:
        """Return the face observed in *frame*, or raise."""
        ...


# ── Failure-tolerant call wrapper ─────────────────────────────────────────────

class _FailureGate:
    """Logs the first failure of a run of consecutive failures, then stays quiet."""

    def __init__(self) -> None:
        self.failing = False

    def fail(self, exc: BaseException) -> None:
        if not self.failing:
            level = _log.info if isinstance(exc, PerceptionUnavailable) else _log.warn
            level("perception", "detect_failed", {
                "error": str(exc),
                "type": type(exc).__name__,
            })
        self.failing = True

    def ok(self) -> None:
        if self.failing:
            _log.info("perception", "detect_recovered", {})
        self.failing = False


_gate = _FailureGate()


def safe_detect(
    source: Optional[PerceptionSource],
    frame: Any,
    timestamp_ms: float,
) -> PerceptionSample:
    """
    Run *source* on *frame*, mapping every failure to :data:`NO_FACE`.

    A missing source, a ``None`` result, and any raised exception (including
    :class:`~core.errors.PerceptionUnavailable`) all count as "no face" for
    this tick only.

    Args:
        source: The perception source, or ``None`` if not yet created.
        frame: Opaque frame object passed through to the source.
        timestamp_ms: Frame timestamp in milliseconds.

    Returns:
        The detected sample, or :data:`NO_FACE`.
    """
    if source is None or frame is None:
        return NO_FACE
    try:
        sample = source.detect(frame, timestamp_ms)
    except Exception as exc:  # noqa: BLE001
        _gate.fail(exc)
        return NO_FACE
    _gate.ok()
    return sample if sample is not None else NO_FACE


# ── MediaPipe FaceLandmarker adapter ──────────────────────────────────────────

class MediaPipeFaceSource:
    """
    Perception source backed by the MediaPipe Tasks ``FaceLandmarker``.

    Runs in VIDEO mode with blendshape output enabled and a single face.
    Frames are BGR ``numpy`` arrays as produced by OpenCV.

    If the ``.task`` model cannot be loaded, construction still succeeds
    and every :meth:`detect` call raises
    :class:`~core.errors.PerceptionUnavailable`.

    Args:
        model_path: Path to ``face_landmarker.task``.
        min_confidence: Detection / presence / tracking confidence floor.
    """

    def __init__(
        self,
        model_path: str | Path = "models/face_landmarker.task",
        min_confidence: float = 0.5,
    ) -> None:
        self._model_path = str(model_path)
        self._landmarker: Any = None
        self._last_ts: int = -1
        self._init_error: Optional[str] = None

        try:
            from mediapipe.tasks import python as mp_tasks
            from mediapipe.tasks.python import vision as mp_vision

            options = mp_vision.FaceLandmarkerOptions(
                base_options=mp_tasks.BaseOptions(model_asset_path=self._model_path),
                running_mode=mp_vision.RunningMode.VIDEO,
                num_faces=1,
                output_face_blendshapes=True,
                min_face_detection_confidence=min_confidence,
                min_face_presence_confidence=min_confidence,
                min_tracking_confidence=min_confidence,
            )
            self._landmarker = mp_vision.FaceLandmarker.create_from_options(options)
            _log.info("perception", "landmarker_ready", {"model": self._model_path})
        except Exception as exc:  # noqa: BLE001
            self._init_error = str(exc)
            _log.error("perception", "landmarker_init_failed", {
                "model": self._model_path,
                "error": str(exc),
            })

    @property
    def ready(self) -> bool:
        """True once the landmarker model has loaded."""
        return self._landmarker is not None

    def detect(self, frame: Any, timestamp_ms: float) -> Optional[PerceptionSample]:
        """
        Detect at most one face in a BGR frame.

        Raises:
            PerceptionUnavailable: If the landmarker failed to initialise.
        """
        if self._landmarker is None:
            raise PerceptionUnavailable(
                self._init_error or "face landmarker not initialised"
            )

        import cv2
        import mediapipe as mp

        # VIDEO mode requires strictly increasing integer timestamps
        ts = max(int(timestamp_ms), self._last_ts + 1)
        self._last_ts = ts

        rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        image = mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb)
        result = self._landmarker.detect_for_video(image, ts)
        return to_sample(result, timestamp_ms)

    def close(self) -> None:
        """Release the landmarker."""
        if self._landmarker is not None:
            self._landmarker.close()
            self._landmarker = None


def to_sample(result: Any, timestamp_ms: float) -> PerceptionSample:
    """
    Convert a MediaPipe ``FaceLandmarkerResult`` into a :class:`PerceptionSample`.

    Args:
        result: Object exposing ``face_landmarks`` and ``face_blendshapes``.
        timestamp_ms: Frame timestamp.
    """
    faces = getattr(result, "face_landmarks", None) or []
    if not faces:
        return PerceptionSample(timestamp_ms=timestamp_ms)

    landmarks = tuple(Point(float(lm.x), float(lm.y)) for lm in faces[0])
    expressions: dict[str, float] = {}
    blendshapes = getattr(result, "face_blendshapes", None) or []
    if blendshapes:
        expressions = {bs.category_name: float(bs.score) for bs in blendshapes[0]}

    return PerceptionSample(
        face=FaceObservation(landmarks=landmarks, expressions=expressions),
        timestamp_ms=timestamp_ms,
    )
