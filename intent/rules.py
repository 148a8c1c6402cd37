"""
intent/rules.py — Ordered suggestion rules and presentation tone.

:func:`suggest` is pure: the same SignalFrame and sound level always give
the same Suggestion. Rules are evaluated top to bottom and the first match
wins, so volitional head gestures outrank distress-with-sound, which
outranks affect.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from core.config import DetectionConfig
from core.constants import Category, Emotion, HeadGesture
from input.signal_extractor import SignalFrame

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Suggestion:
    """A candidate message and where it came from."""

    label: str
    category: Category = Category.SIGNAL

    def to_dict(self) -> dict[str, str]:
        return {"label": self.label, "category": self.category.value}


#: ``(label, predicate(frame, sound_spike, cfg))`` in priority order.
Rule = tuple[str, Callable[[SignalFrame, bool, DetectionConfig], bool]]

RULES: tuple[Rule, ...] = (
    ("Yes", lambda f, spike, cfg: f.head_gesture is HeadGesture.NOD),
    ("No", lambda f, spike, cfg: f.head_gesture is HeadGesture.SHAKE),
    ("Needs attention",
     lambda f, spike, cfg: f.mouth_open > cfg.mouth_open_threshold and spike),
    ("Needs a break",
     lambda f, spike, cfg: f.movement > cfg.movement_threshold and spike),
    ("Feeling happy", lambda f, spike, cfg: f.smile > cfg.smile_threshold),
    ("Feeling sad", lambda f, spike, cfg: f.emotion.sad > cfg.sad_threshold),
    ("Surprised",
     lambda f, spike, cfg: f.emotion.surprised > cfg.surprised_threshold),
)


def is_sound_spike(sound_level: float, cfg: DetectionConfig | None = None) -> bool:
    """True when *sound_level* is above the spike threshold."""
    cfg = cfg or DetectionConfig()
    return sound_level > cfg.sound_spike_threshold


def suggest(
    frame: SignalFrame,
    sound_level: float,
    cfg: DetectionConfig | None = None,
) -> Optional[Suggestion]:
    """
    Return the highest-priority suggestion for this frame, or None.

    Args:
        frame: Current signals.
        sound_level: Current sound level in [0, 1].
        cfg: Thresholds; defaults to the built-in constants.
    """
    cfg = cfg or DetectionConfig()
    spike = is_sound_spike(sound_level, cfg)
    for label, matches in RULES:
        if matches(frame, spike, cfg):
            return Suggestion(label, Category.SIGNAL)
    return None


# ──────────────────────────────────────────────────────────────
# Manual selections
# ──────────────────────────────────────────────────────────────

MOOD_OPTIONS: tuple[str, ...] = ("Feeling happy", "Feeling sad", "Feeling tired", "Feeling okay")
NEED_OPTIONS: tuple[str, ...] = ("Water", "Break", "Reposition", "Bathroom", "Help")


def manual_suggestion(category: Category, choice: str) -> Suggestion:
    """
    Build the suggestion for a mood or need button.

    Moods are committed verbatim; a need ``X`` becomes ``"Needs X"``.

    Raises:
        ValueError: For the signal category or a choice not on offer.
    """
    if category is Category.MOOD and choice in MOOD_OPTIONS:
        return Suggestion(choice, Category.MOOD)
    if category is Category.NEED and choice in NEED_OPTIONS:
        return Suggestion(f"Needs {choice}", Category.NEED)
    raise ValueError(f"unknown {category.value} choice: {choice!r}")


# ──────────────────────────────────────────────────────────────
# Presentation tone
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SignalTone:
    """Colour class and caption shown next to the live signals."""

    kind: str
    label: str

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "label": self.label}


NEUTRAL_TONE = SignalTone("neutral", "Neutral")


def signal_tone(
    frame: SignalFrame,
    sound_level: float,
    cfg: DetectionConfig | None = None,
) -> SignalTone:
    """
    Classify the live signals for display only; never drives a commit.

    A dominant emotion wins when its own score clears the tone threshold,
    then a plain smile, then movement or head shake accompanied by sound.
    """
    cfg = cfg or DetectionConfig()
    limit = cfg.tone_smile_threshold
    emo = frame.emotion
    dominant = frame.dominant_emotion

    if dominant is Emotion.HAPPY and emo.happy > limit:
        return SignalTone("positive", "Happy")
    if dominant is Emotion.SAD and emo.sad > limit:
        return SignalTone("sad", "Sad")
    if dominant is Emotion.SURPRISED and emo.surprised > limit:
        return SignalTone("surprised", "Surprised")
    if frame.smile > limit:
        return SignalTone("positive", "Positive")

    spike = is_sound_spike(sound_level, cfg)
    if spike and (
        frame.movement > cfg.movement_threshold
        or frame.head_gesture is HeadGesture.SHAKE
    ):
        logger.debug("distress tone: movement=%.2f sound=%.2f", frame.movement, sound_level)
        return SignalTone("distress", "Needs attention")
    return NEUTRAL_TONE
