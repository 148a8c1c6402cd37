"""
core/constants.py — All system constants for Attune.

Single frozen dataclass with typed constant groups: commit timing, speech
cooldowns, detection thresholds, gesture tuning and log capacity, plus the
enums shared across the pipeline. ``core.config`` defaults are drawn from here.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import ClassVar


# ──────────────────────────────────────────────────────────────
# Enums
# ──────────────────────────────────────────────────────────────

class Phase(Enum):
    """States of the commit state machine."""

    IDLE = "IDLE"
    STABILIZING = "STABILIZING"
    LOCKED = "LOCKED"


class HeadGesture(Enum):
    """Discrete head gestures classified from nose-tip oscillation."""

    STILL = "still"
    NOD = "nod"
    SHAKE = "shake"


class Emotion(Enum):
    """Dominant emotion labels carried by a SignalFrame."""

    HAPPY = "happy"
    SAD = "sad"
    SURPRISED = "surprised"
    NEUTRAL = "neutral"


class Category(Enum):
    """Origin tag of a committed message."""

    MOOD = "mood"
    NEED = "need"
    SIGNAL = "signal"


# ──────────────────────────────────────────────────────────────
# Frozen constants dataclass
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class AttuneConstants:
    """
    Frozen dataclass holding all Attune system constants.

    Use the class attributes directly — do not instantiate this class.

    Example::

        from core.constants import AttuneConstants as C

        print(C.STABILITY_MS)   # 800.0
    """

    # ── Commit timing (milliseconds) ──────────────────────────
    STABILITY_MS: ClassVar[float] = 800.0
    """ms a candidate suggestion must persist unchanged before it commits."""

    LOCK_MS: ClassVar[float] = 4000.0
    """ms after a commit during which no suggestion is evaluated."""

    # ── Speech ────────────────────────────────────────────────
    TTS_COOLDOWN_MS: ClassVar[float] = 4000.0
    """Minimum ms between any two spoken messages."""

    REPEAT_COOLDOWN_MS: ClassVar[float] = 10000.0
    """Minimum ms before the same message may be spoken again."""

    # ── Detection thresholds ──────────────────────────────────
    SOUND_SPIKE_THRESHOLD: ClassVar[float] = 0.4
    MOUTH_OPEN_THRESHOLD: ClassVar[float] = 0.15
    MOVEMENT_THRESHOLD: ClassVar[float] = 0.5
    SMILE_THRESHOLD: ClassVar[float] = 0.08
    SAD_THRESHOLD: ClassVar[float] = 0.15
    SURPRISED_THRESHOLD: ClassVar[float] = 0.2
    TONE_SMILE_THRESHOLD: ClassVar[float] = 0.3
    """Smile level at which the presentation tone turns positive."""

    # ── Dominant-emotion thresholds (expression path) ─────────
    DOMINANT_HAPPY_SMILE: ClassVar[float] = 0.1
    DOMINANT_SAD: ClassVar[float] = 0.15
    DOMINANT_SURPRISED: ClassVar[float] = 0.2

    # ── Head gesture ──────────────────────────────────────────
    GESTURE_WINDOW_MS: ClassVar[float] = 500.0
    GESTURE_MIN_SAMPLES: ClassVar[int] = 10
    NOD_THRESHOLD: ClassVar[float] = 0.015
    SHAKE_THRESHOLD: ClassVar[float] = 0.02
    GESTURE_MIN_FLIPS: ClassVar[int] = 2
    MOVEMENT_GAIN: ClassVar[float] = 5.0

    # ── Conversation log ──────────────────────────────────────
    MAX_LOG_ENTRIES: ClassVar[int] = 50
    STORAGE_PREFIX: ClassVar[str] = "attune_"

    # ── Loop ──────────────────────────────────────────────────
    TICK_HZ: ClassVar[float] = 30.0
    """Evaluation tick rate of the controller run loop."""


#: Convenience alias — ``from core.constants import C``
C = AttuneConstants
