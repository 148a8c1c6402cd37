"""
output/coordinator.py — Fan-out of a committed message to every sink.

On each commit the coordinator always shows the message, appends it to the
conversation log and gives haptic / chime feedback. Speech is conditional:
a message is spoken only when the speech cooldown has passed since the
last utterance and it either differs from the last spoken message or the
longer repeat cooldown has also passed.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Optional, Protocol

from core.config import FeedbackConfig, SpeechConfig
from core.errors import PersistenceFailure
from core.logger import get_logger
from intent.rules import Suggestion
from storage.conversation_log import ConversationLog, LogEntry

_log = get_logger()


# ──────────────────────────────────────────────────────────────
# Sink contracts
# ──────────────────────────────────────────────────────────────

class SpeechSink(Protocol):
    def speak(self, text: str) -> None:
        """Fire-and-forget; cancels any earlier utterance."""
        ...


class DisplaySink(Protocol):
    def show_output(self, suggestion: Suggestion, now_ms: float) -> None:
        ...


class HapticSink(Protocol):
    def pulse(self) -> None:
        ...


class ChimeSink(Protocol):
    def play(self) -> None:
        ...


# ──────────────────────────────────────────────────────────────
# Speech suppression
# ──────────────────────────────────────────────────────────────

@dataclass
class TTSState:
    """When and what was last spoken."""

    last_speak_time: Optional[float] = None
    last_message: Optional[str] = None


def should_speak(
    state: TTSState,
    message: str,
    now_ms: float,
    cfg: SpeechConfig | None = None,
) -> bool:
    """
    Apply the cooldown / repeat policy without changing *state*.

    Nothing spoken yet always allows speech.
    """
    cfg = cfg or SpeechConfig()
    if state.last_speak_time is None:
        return True
    elapsed = now_ms - state.last_speak_time
    if elapsed < cfg.tts_cooldown_ms:
        return False
    return message != state.last_message or elapsed >= cfg.repeat_cooldown_ms


@dataclass(frozen=True)
class CommitOutcome:
    """What happened to one committed message."""

    suggestion: Suggestion
    entry: Optional[LogEntry]
    spoken: bool
    persisted: bool


# ──────────────────────────────────────────────────────────────
# Coordinator
# ──────────────────────────────────────────────────────────────

class OutputCoordinator:
    """
    Delivers committed suggestions to display, log, feedback and speech sinks.

    Args:
        conversation_log: Log that receives every commit.
        speech: Speech sink, or None for silent operation.
        display: Presentation sink for the current output.
        haptics: Haptic pulse sink.
        chime: Commit chime sink.
        speech_config: Cooldowns and the initial speech toggle.
        feedback_config: Enables / disables chime and haptics.
    """

    def __init__(
        self,
        conversation_log: ConversationLog,
        speech: SpeechSink | None = None,
        display: DisplaySink | None = None,
        haptics: HapticSink | None = None,
        chime: ChimeSink | None = None,
        speech_config: SpeechConfig | None = None,
        feedback_config: FeedbackConfig | None = None,
    ) -> None:
        self._log_book = conversation_log
        self._speech = speech
        self._display = display
        self._haptics = haptics
        self._chime = chime
        self._speech_cfg = speech_config or SpeechConfig()
        self._feedback = feedback_config or FeedbackConfig()
        self._speech_enabled = self._speech_cfg.enabled
        self._tts = TTSState()
        self._current: Optional[Suggestion] = None
        self._current_at: Optional[float] = None
        self._lock = threading.Lock()

    # ──────────────────────────────────────────
    # Properties
    # ──────────────────────────────────────────

    @property
    def conversation_log(self) -> ConversationLog:
        return self._log_book

    @property
    def tts_state(self) -> TTSState:
        with self._lock:
            return TTSState(self._tts.last_speak_time, self._tts.last_message)

    @property
    def current_output(self) -> Optional[Suggestion]:
        return self._current

    @property
    def current_output_time(self) -> Optional[float]:
        return self._current_at

    @property
    def speech_enabled(self) -> bool:
        return self._speech_enabled

    def set_speech_enabled(self, enabled: bool) -> None:
        """Turn speech on or off; display and logging are unaffected."""
        self._speech_enabled = bool(enabled)
        _log.info("coordinator", "speech_toggled", {"enabled": self._speech_enabled})

    # ──────────────────────────────────────────
    # Commit handling
    # ──────────────────────────────────────────

    def handle_commit(self, suggestion: Suggestion, now_ms: float) -> CommitOutcome:
        """
        Deliver one committed suggestion.

        A failing sink is logged and skipped; a log persistence failure is
        logged at ERROR and the entry stays in memory.
        """
        self._current = suggestion
        self._current_at = now_ms

        if self._display is not None:
            try:
                self._display.show_output(suggestion, now_ms)
            except Exception as exc:  # noqa: BLE001
                _log.warn("coordinator", "display_error", {"error": str(exc)})

        if self._feedback.chime and self._chime is not None:
            try:
                self._chime.play()
            except Exception as exc:  # noqa: BLE001
                _log.warn("coordinator", "chime_error", {"error": str(exc)})

        if self._feedback.haptic and self._haptics is not None:
            try:
                self._haptics.pulse()
            except Exception as exc:  # noqa: BLE001
                _log.warn("coordinator", "haptic_error", {"error": str(exc)})

        spoken = self._maybe_speak(suggestion.label, now_ms)

        entry: Optional[LogEntry] = None
        persisted = True
        try:
            entry = self._log_book.add(suggestion.label, suggestion.category)
        except PersistenceFailure as exc:
            persisted = False
            entries = self._log_book.entries
            entry = entries[0] if entries else None
            _log.error("coordinator", "log_persist_failed", {
                "patient": exc.patient_id,
                "operation": exc.operation,
                "error": str(exc.cause or exc),
            })

        return CommitOutcome(suggestion, entry, spoken, persisted)

    def replay(self, now_ms: float) -> bool:
        """
        Speak the current output again, ignoring cooldowns.

        Returns:
            False when there is nothing to replay, speech is off, or no
            speech sink is attached.
        """
        current = self._current
        if current is None or not self._speech_enabled or self._speech is None:
            return False
        self._speak(current.label, now_ms, reason="replay")
        return True

    # ──────────────────────────────────────────
    # Internal
    # ──────────────────────────────────────────

    def _maybe_speak(self, message: str, now_ms: float) -> bool:
        if not self._speech_enabled or self._speech is None:
            return False
        with self._lock:
            allowed = should_speak(self._tts, message, now_ms, self._speech_cfg)
        if not allowed:
            _log.info("coordinator", "speech_suppressed", {
                "message": message,
                "last_message": self._tts.last_message,
                "last_speak_time": self._tts.last_speak_time,
            })
            return False
        return self._speak(message, now_ms, reason="commit")

    def _speak(self, message: str, now_ms: float, reason: str) -> bool:
        assert self._speech is not None
        try:
            self._speech.speak(message)
        except Exception as exc:  # noqa: BLE001
            _log.error("coordinator", "speech_error", {"error": str(exc)})
            return False
        with self._lock:
            self._tts.last_speak_time = now_ms
            self._tts.last_message = message
        _log.info("coordinator", "spoken", {"message": message, "reason": reason})
        return True
