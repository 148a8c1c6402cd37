"""
input/face_sim.py — Scripted face and sound input for demo and testing without hardware.

:class:`ScriptedFaceSource` satisfies the perception source contract and
:class:`ScriptedAudioSource` the audio source contract. Both read the same
list of :data:`ScriptStep` tuples and pick the active step from elapsed
time, so a headless run is deterministic for a given clock.

Expressions per step
--------------------
``'NEUTRAL'``  resting face, no gesture.
``'SMILE'``    mouth-smile blendshapes at 0.5.
``'SAD'``      mouth-frown blendshapes at 0.4.
``'SURPRISE'`` brows and eyes wide.
``'NOD'``      nose tip oscillates vertically by ±0.03 every frame pair.
``'SHAKE'``    nose tip oscillates horizontally by ±0.04.
``'OPEN'``     jaw open at 0.6 (pair with a loud step for "Needs attention").
``'AWAY'``     no face in frame.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from core.logger import get_logger
from input.perception import (
    LEFT_MOUTH_CORNER,
    LOWER_LIP,
    NOSE_TIP,
    RIGHT_MOUTH_CORNER,
    UPPER_LIP,
    FaceObservation,
    PerceptionSample,
    Point,
)

_log = get_logger()

#: ``(expression, hold_duration_ms, sound_level)``
ScriptStep = Tuple[str, float, float]

_LANDMARK_COUNT: int = 478

#: Per-frame nose offsets cycled by NOD / SHAKE steps.
_OSCILLATION: Tuple[float, ...] = (0.0, 1.0, 0.0, -1.0)
_NOD_AMPLITUDE: float = 0.03
_SHAKE_AMPLITUDE: float = 0.04

_EXPRESSIONS: Dict[str, Dict[str, float]] = {
    "NEUTRAL":  {},
    "NOD":      {},
    "SHAKE":    {},
    "SMILE":    {"mouthSmileLeft": 0.5, "mouthSmileRight": 0.5},
    "SAD":      {"mouthFrownLeft": 0.4, "mouthFrownRight": 0.4,
                 "browDownLeft": 0.2, "browDownRight": 0.2},
    "SURPRISE": {"browInnerUp": 0.5, "browOuterUpLeft": 0.5, "browOuterUpRight": 0.5,
                 "eyeWideLeft": 0.4, "eyeWideRight": 0.4},
    "OPEN":     {"jawOpen": 0.6},
}


def neutral_landmarks(nose_dx: float = 0.0, nose_dy: float = 0.0) -> List[Point]:
    """
    A resting face: closed mouth, level corners, nose at centre.

    The mouth is 0.10 wide and 0.04 tall, which scores a landmark smile of 0.
    """
    points = [Point(0.5, 0.5)] * _LANDMARK_COUNT
    points[LEFT_MOUTH_CORNER] = Point(0.45, 0.70)
    points[RIGHT_MOUTH_CORNER] = Point(0.55, 0.70)
    points[UPPER_LIP] = Point(0.50, 0.68)
    points[LOWER_LIP] = Point(0.50, 0.72)
    points[NOSE_TIP] = Point(0.5 + nose_dx, 0.5 + nose_dy)
    return points


def _active_step(script: List[ScriptStep], elapsed_ms: float) -> Optional[ScriptStep]:
    t = 0.0
    for step in script:
        t += step[1]
        if elapsed_ms < t:
            return step
    return None


class _ScriptClock:
    """Shared start-time bookkeeping for the scripted sources."""

    def __init__(self, script: List[ScriptStep]) -> None:
        self.script = list(script)
        self.start_ms: Optional[float] = None

    def step_at(self, now_ms: float) -> Optional[ScriptStep]:
        if self.start_ms is None:
            self.start_ms = now_ms
        return _active_step(self.script, now_ms - self.start_ms)

    @property
    def duration_ms(self) -> float:
        return sum(step[1] for step in self.script)


class ScriptedFaceSource:
    """
    Perception source that plays back a script of facial expressions.

    The first :meth:`detect` call starts the script clock. After the last
    step the face stays neutral.

    Args:
        script: Steps to play.
        fps: Frame rate used to phase NOD / SHAKE oscillation.
    """

    DEMO_NOD_SCRIPT: List[ScriptStep] = [
        ("NEUTRAL",  500.0, 0.0),
        ("NOD",     1500.0, 0.0),   # ≥ 800 ms of nodding → "Yes"
        ("NEUTRAL", 4500.0, 0.0),   # held through the lock window
    ]

    DEMO_SMILE_SCRIPT: List[ScriptStep] = [
        ("NEUTRAL",  500.0, 0.0),
        ("SMILE",   1500.0, 0.0),   # → "Feeling happy"
        ("NEUTRAL", 4500.0, 0.0),
    ]

    DEMO_DISTRESS_SCRIPT: List[ScriptStep] = [
        ("NEUTRAL",  500.0, 0.0),
        ("OPEN",    1500.0, 0.7),   # open mouth + loud sound → "Needs attention"
        ("NEUTRAL", 4500.0, 0.1),
    ]

    def __init__(self, script: Optional[List[ScriptStep]] = None, fps: int = 30) -> None:
        self._clock = _ScriptClock(script if script is not None else self.DEMO_SMILE_SCRIPT)
        self._frame_ms = 1000.0 / fps
        _log.info("face_sim", "init", {
            "steps": len(self._clock.script),
            "duration_ms": self._clock.duration_ms,
        })

    @property
    def clock(self) -> _ScriptClock:
        return self._clock

    def detect(self, frame: Any, timestamp_ms: float) -> Optional[PerceptionSample]:
        step = self._clock.step_at(timestamp_ms)
        name = step[0] if step is not None else "NEUTRAL"
        if name == "AWAY":
            return PerceptionSample(timestamp_ms=timestamp_ms)

        assert self._clock.start_ms is not None
        frame_index = int((timestamp_ms - self._clock.start_ms) / self._frame_ms)
        phase = _OSCILLATION[frame_index % len(_OSCILLATION)]
        dx = phase * _SHAKE_AMPLITUDE if name == "SHAKE" else 0.0
        dy = phase * _NOD_AMPLITUDE if name == "NOD" else 0.0

        return PerceptionSample(
            face=FaceObservation(
                landmarks=neutral_landmarks(dx, dy),
                expressions=dict(_EXPRESSIONS.get(name, {})),
            ),
            timestamp_ms=timestamp_ms,
        )


class PlaceholderFrames:
    """Frame source for scripted runs: yields a blank frame while started."""

    def __init__(self) -> None:
        self._frame = np.zeros((1, 1, 3), dtype=np.uint8)
        self._running = False

    def start(self) -> bool:
        self._running = True
        return True

    def stop(self) -> None:
        self._running = False

    def read(self) -> Optional[Any]:
        return self._frame if self._running else None


class ScriptedAudioSource:
    """
    Audio source that reports the sound level of the active script step.

    Pass the face source's clock to keep both in lock-step.

    Args:
        clock: Script clock shared with a :class:`ScriptedFaceSource`.
        time_fn: Returns the current time in ms; the controller's clock.
    """

    def __init__(self, clock: _ScriptClock, time_fn: Any) -> None:
        self._clock = clock
        self._time_fn = time_fn

    def poll_level(self) -> float:
        step = self._clock.step_at(self._time_fn())
        return float(step[2]) if step is not None else 0.0
