"""
core/config.py — Typed configuration loader for Attune.

Loads config/attune.yaml and validates all values into typed dataclasses.
Downstream modules take the relevant section object; never read YAML directly.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from core.constants import AttuneConstants as C

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────
# Dataclass hierarchy — mirrors attune.yaml
# ──────────────────────────────────────────────


@dataclass(frozen=True)
class CommitConfig:
    """Stability and lock windows of the commit state machine."""

    stability_ms: float = C.STABILITY_MS
    lock_ms: float = C.LOCK_MS


@dataclass(frozen=True)
class SpeechConfig:
    """Text-to-speech suppression policy and voice settings."""

    enabled: bool = True
    tts_cooldown_ms: float = C.TTS_COOLDOWN_MS
    repeat_cooldown_ms: float = C.REPEAT_COOLDOWN_MS
    rate: int = 150
    volume: float = 1.0
    voice_id: Optional[str] = None


@dataclass(frozen=True)
class DetectionConfig:
    """Rule-engine thresholds."""

    sound_spike_threshold: float = C.SOUND_SPIKE_THRESHOLD
    mouth_open_threshold: float = C.MOUTH_OPEN_THRESHOLD
    movement_threshold: float = C.MOVEMENT_THRESHOLD
    smile_threshold: float = C.SMILE_THRESHOLD
    sad_threshold: float = C.SAD_THRESHOLD
    surprised_threshold: float = C.SURPRISED_THRESHOLD
    tone_smile_threshold: float = C.TONE_SMILE_THRESHOLD


@dataclass(frozen=True)
class GestureConfig:
    """Head-gesture window and oscillation thresholds."""

    window_ms: float = C.GESTURE_WINDOW_MS
    min_samples: int = C.GESTURE_MIN_SAMPLES
    nod_threshold: float = C.NOD_THRESHOLD
    shake_threshold: float = C.SHAKE_THRESHOLD
    min_flips: int = C.GESTURE_MIN_FLIPS


@dataclass(frozen=True)
class LogConfig:
    """Conversation log capacity and storage location."""

    max_entries: int = C.MAX_LOG_ENTRIES
    data_dir: str = "data"

    @property
    def resolved_data_dir(self) -> Path:
        """Return the data directory as a Path, expanding ~ if needed."""
        return Path(os.path.expanduser(self.data_dir))


@dataclass(frozen=True)
class CameraConfig:
    """Webcam capture and face landmarker model settings."""

    index: int = 0
    width: int = 640
    height: int = 480
    fps: int = 30
    model_path: str = "models/face_landmarker.task"


@dataclass(frozen=True)
class AudioConfig:
    """Microphone level polling settings."""

    samplerate: int = 16000
    blocksize: int = 512


@dataclass(frozen=True)
class FeedbackConfig:
    """Commit chime and haptic pulse switches."""

    chime: bool = True
    haptic: bool = True


@dataclass(frozen=True)
class AttuneConfig:
    """Root configuration object — single source of truth for all settings."""

    commit: CommitConfig = field(default_factory=CommitConfig)
    speech: SpeechConfig = field(default_factory=SpeechConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    gesture: GestureConfig = field(default_factory=GestureConfig)
    log: LogConfig = field(default_factory=LogConfig)
    camera: CameraConfig = field(default_factory=CameraConfig)
    audio: AudioConfig = field(default_factory=AudioConfig)
    feedback: FeedbackConfig = field(default_factory=FeedbackConfig)


# ──────────────────────────────────────────────
# Loader
# ──────────────────────────────────────────────


def _resolve_path(config_path: Path | str | None) -> Path | None:
    """Apply the search order and return the config file to read, if any."""
    if config_path is not None:
        resolved = Path(config_path)
        if not resolved.exists():
            raise FileNotFoundError(f"Config file not found: {resolved}")
        return resolved
    if "ATTUNE_CONFIG" in os.environ:
        resolved = Path(os.environ["ATTUNE_CONFIG"])
        if not resolved.exists():
            raise FileNotFoundError(
                f"ATTUNE_CONFIG points to missing file: {resolved}"
            )
        return resolved
    candidate = Path(__file__).resolve().parent.parent / "config" / "attune.yaml"
    return candidate if candidate.exists() else None


def load_config(config_path: Path | str | None = None) -> AttuneConfig:
    """
    Load, validate, and return an AttuneConfig from a YAML file.

    The search order for the config file is:
    1. *config_path* argument (if provided)
    2. ATTUNE_CONFIG environment variable
    3. ``config/attune.yaml`` at the project root
    4. Built-in defaults (no file required)

    Args:
        config_path: Optional path to an ``attune.yaml`` file.

    Returns:
        A fully populated and frozen :class:`AttuneConfig` instance.

    Raises:
        ValueError: If a YAML field is unknown or has an invalid value.
        FileNotFoundError: If an explicitly named config file does not exist.
    """
    resolved_path = _resolve_path(config_path)

    raw: dict = {}
    if resolved_path is not None:
        logger.info("Loading config from: %s", resolved_path)
        with resolved_path.open("r", encoding="utf-8") as fh:
            loaded = yaml.safe_load(fh) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config file must be a YAML mapping, got: {type(loaded)}")
        raw = loaded
    else:
        logger.info("No config file found — using built-in defaults")

    try:
        config = AttuneConfig(
            commit=CommitConfig(**(raw.get("commit") or {})),
            speech=SpeechConfig(**(raw.get("speech") or {})),
            detection=DetectionConfig(**(raw.get("detection") or {})),
            gesture=GestureConfig(**(raw.get("gesture") or {})),
            log=LogConfig(**(raw.get("log") or {})),
            camera=CameraConfig(**(raw.get("camera") or {})),
            audio=AudioConfig(**(raw.get("audio") or {})),
            feedback=FeedbackConfig(**(raw.get("feedback") or {})),
        )
    except TypeError as exc:
        raise ValueError(f"Invalid config value: {exc}") from exc

    _validate_config(config)
    logger.debug("Config loaded: %s", config)
    return config


def _validate_config(config: AttuneConfig) -> None:
    """
    Validate cross-field constraints on the loaded configuration.

    Raises:
        ValueError: If any configured value violates a hard constraint.
    """
    det = config.detection
    for name in (
        "sound_spike_threshold",
        "mouth_open_threshold",
        "movement_threshold",
        "smile_threshold",
        "sad_threshold",
        "surprised_threshold",
        "tone_smile_threshold",
    ):
        value = getattr(det, name)
        if not (0.0 <= value <= 1.0):
            raise ValueError(f"detection.{name} must be in [0, 1], got {value}")

    if config.commit.stability_ms <= 0:
        raise ValueError(
            f"commit.stability_ms must be positive, got {config.commit.stability_ms}"
        )
    if config.commit.lock_ms < 0:
        raise ValueError(f"commit.lock_ms must be ≥0, got {config.commit.lock_ms}")

    sp = config.speech
    if sp.repeat_cooldown_ms < sp.tts_cooldown_ms:
        raise ValueError(
            "speech.repeat_cooldown_ms must be ≥ speech.tts_cooldown_ms, "
            f"got {sp.repeat_cooldown_ms} < {sp.tts_cooldown_ms}"
        )
    if not (0.0 <= sp.volume <= 1.0):
        raise ValueError(f"speech.volume must be in [0, 1], got {sp.volume}")

    if config.gesture.min_samples < 2:
        raise ValueError(
            f"gesture.min_samples must be ≥2, got {config.gesture.min_samples}"
        )
    if config.gesture.window_ms <= 0:
        raise ValueError(f"gesture.window_ms must be positive, got {config.gesture.window_ms}")
    if config.log.max_entries < 1:
        raise ValueError(f"log.max_entries must be ≥1, got {config.log.max_entries}")
    if config.camera.fps <= 0:
        raise ValueError(f"camera.fps must be positive, got {config.camera.fps}")
