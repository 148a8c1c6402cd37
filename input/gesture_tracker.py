"""
input/gesture_tracker.py — Nod / shake classification from nose-tip motion.

Keeps a rolling 500 ms window of nose-tip positions. A gesture is an
oscillation: the per-frame direction on one axis must flip at least twice
inside the window. Slow drift in one direction never counts.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass

from core.config import GestureConfig
from core.constants import AttuneConstants as C, HeadGesture

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NoseSample:
    """A nose-tip position at a point in time."""

    x: float
    y: float
    timestamp_ms: float


def _sign(delta: float, threshold: float) -> int:
    """Return +1 / -1 when *delta* exceeds *threshold* in that direction, else 0."""
    if delta > threshold:
        return 1
    if delta < -threshold:
        return -1
    return 0


def count_flips(values: list[float], threshold: float) -> int:
    """
    Count direction reversals along one axis.

    Deltas inside ``±threshold`` are ignored and do not reset the remembered
    direction, so jitter between two real swings does not break a flip.

    Args:
        values: Consecutive positions on a single axis.
        threshold: Minimum per-step delta that counts as movement.

    Returns:
        Number of times the movement direction reversed.
    """
    flips = 0
    last_dir = 0
    for prev, cur in zip(values, values[1:]):
        direction = _sign(cur - prev, threshold)
        if direction == 0:
            continue
        if last_dir != 0 and direction != last_dir:
            flips += 1
        last_dir = direction
    return flips


class GestureTracker:
    """
    Rolling-window head gesture classifier.

    Owns the nose history exclusively; every :meth:`observe` prunes samples
    older than ``window_ms``. Classification needs at least ``min_samples``
    samples and looks at the most recent ``min_samples`` of them. Vertical
    oscillation is checked first, so a frame that qualifies as both is a nod.

    Args:
        config: Gesture window and threshold settings.
    """

    def __init__(self, config: GestureConfig | None = None) -> None:
        cfg = config or GestureConfig()
        self._window_ms = cfg.window_ms
        self._min_samples = cfg.min_samples
        self._nod_threshold = cfg.nod_threshold
        self._shake_threshold = cfg.shake_threshold
        self._min_flips = cfg.min_flips
        self._history: deque[NoseSample] = deque()

    def observe(self, x: float, y: float, now_ms: float) -> None:
        """Append a nose-tip sample and drop samples outside the window."""
        self._history.append(NoseSample(x, y, now_ms))
        cutoff = now_ms - self._window_ms
        while self._history and self._history[0].timestamp_ms <= cutoff:
            self._history.popleft()

    def classify(self) -> HeadGesture:
        """Return the gesture currently present in the window."""
        if len(self._history) < self._min_samples:
            return HeadGesture.STILL

        recent = list(self._history)[-self._min_samples:]
        y_flips = count_flips([p.y for p in recent], self._nod_threshold)
        if y_flips >= self._min_flips:
            logger.debug("nod: %d vertical flips", y_flips)
            return HeadGesture.NOD

        x_flips = count_flips([p.x for p in recent], self._shake_threshold)
        if x_flips >= self._min_flips:
            logger.debug("shake: %d horizontal flips", x_flips)
            return HeadGesture.SHAKE
        return HeadGesture.STILL

    def movement(self) -> float:
        """
        Net displacement of the nose across the window, scaled to [0, 1].

        ``min(1, (|Δx| + |Δy|) × 5)`` between the oldest and newest sample;
        0.0 until the window holds ``min_samples`` samples.
        """
        if len(self._history) < self._min_samples:
            return 0.0
        first, last = self._history[0], self._history[-1]
        dx = abs(last.x - first.x)
        dy = abs(last.y - first.y)
        return min(1.0, (dx + dy) * C.MOVEMENT_GAIN)

    def reset(self) -> None:
        """Forget all history."""
        self._history.clear()

    @property
    def history(self) -> tuple[NoseSample, ...]:
        """Snapshot of the retained samples, oldest first."""
        return tuple(self._history)
