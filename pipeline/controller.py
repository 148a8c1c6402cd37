"""
pipeline/controller.py — AttuneController: main orchestrator for Attune.

Wires the subsystems in a fixed order and drives one evaluation tick at
~30 Hz::

    FrameSource ─► PerceptionSource ─► SignalExtractor ─┐
    AudioSource ────────────────────────────────────────┴► CommitStateMachine ─► OutputCoordinator

:meth:`AttuneController.tick` is the only writer of the commit state and the
nose history. Camera / microphone control and manual commits may come from
other threads (the web server); they take the same re-entrant lock as the
tick. An internal EventBus lets presentation sinks subscribe without holding
references to internal modules.
"""

from __future__ import annotations

import threading
import time
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

from core.commit_fsm import CommitStateMachine
from core.config import AttuneConfig
from core.constants import AttuneConstants as C, Category
from core.errors import AttuneError, PersistenceFailure
from core.logger import get_logger
from input.perception import PerceptionSource, safe_detect
from input.signal_extractor import ZERO_FRAME, SignalExtractor, SignalFrame
from input.gesture_tracker import GestureTracker
from intent.rules import Suggestion, manual_suggestion, signal_tone
from output.coordinator import CommitOutcome, OutputCoordinator
from storage.conversation_log import ConversationLog, JsonFileLogStore, LogStore

_log = get_logger()

# ── EventBus event-name constants ─────────────────────────────────────────────

ON_SIGNALS = "ON_SIGNALS"
"""Fired every tick with the live SignalFrame, sound level, phase and tone."""

ON_PHASE_CHANGE = "ON_PHASE_CHANGE"
"""Fired when the commit phase changes (IDLE / STABILIZING / LOCKED)."""

ON_OUTPUT = "ON_OUTPUT"
"""Fired when a committed message is put on display."""

ON_COMMIT = "ON_COMMIT"
"""Fired after a commit has been delivered to all sinks."""

ON_LOG_CHANGED = "ON_LOG_CHANGED"
"""Fired after the conversation log was appended to or cleared."""

ON_DEVICE = "ON_DEVICE"
"""Fired when the camera or microphone is started or stopped."""

#: Marker for "build the real device-backed component".
_AUTO: Any = object()


class _BusDisplay:
    """Display sink that forwards the current output onto the EventBus."""

    def __init__(self, publish: Callable[[str, Dict[str, Any]], None]) -> None:
        self._publish = publish

    def show_output(self, suggestion: Suggestion, now_ms: float) -> None:
        self._publish(ON_OUTPUT, {**suggestion.to_dict(), "time_ms": now_ms})


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class AttuneController:
    """
    Main system orchestrator for Attune.

    Initialisation order:

    1.  :func:`~core.logger.get_logger` (singleton)
    2.  Conversation log + store, loaded for *patient_id*
    3.  Frame / perception / audio sources (``mode='webcam'`` or ``'sim'``)
    4.  :class:`~input.signal_extractor.SignalExtractor`
    5.  Speech, chime and haptic sinks
    6.  :class:`~output.coordinator.OutputCoordinator`
    7.  :class:`~core.commit_fsm.CommitStateMachine`

    Any component may be passed in; the ``_AUTO`` default builds the real
    one for *mode*. Pass ``None`` for a sink to run without it.

    Args:
        config: Loaded configuration.
        patient_id: Patient whose log is used.
        mode: ``'webcam'`` for camera + microphone, ``'sim'`` for the scripted demo.
        demo_script: Script for ``mode='sim'``; defaults to the smile demo.
        clock: Returns the current time in ms; defaults to a monotonic clock.

    Example::

        ctrl = AttuneController(load_config(), patient_id="Alex", mode="sim")
        ctrl.subscribe(ON_COMMIT, lambda d: print("Committed:", d["label"]))
        t = threading.Thread(target=ctrl.run, daemon=True, name="attune-main")
        t.start()
        ...
        ctrl.shutdown()
        t.join(timeout=5.0)
    """

    def __init__(
        self,
        config: AttuneConfig | None = None,
        *,
        patient_id: str = "Patient",
        mode: str = "sim",
        demo_script: Optional[list] = None,
        frame_source: Any = _AUTO,
        face_source: Any = _AUTO,
        audio_source: Any = _AUTO,
        speech: Any = _AUTO,
        chime: Any = _AUTO,
        haptics: Any = _AUTO,
        store: Optional[LogStore] = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if mode not in ("webcam", "sim"):
            raise ValueError(f"mode must be 'webcam' or 'sim', got {mode!r}")
        self._cfg = config or AttuneConfig()
        self._mode = mode
        self._clock = clock or _monotonic_ms
        self._lock = threading.RLock()
        # device open/close runs under this lock so the tick lock is never held across it
        self._device_lock = threading.Lock()

        # ── 1. Core logger ────────────────────────────────────────────────
        _t = time.perf_counter()
        self._log = get_logger()
        self._log.perf("pipeline", "init_logger",
                       (time.perf_counter() - _t) * 1_000.0, {})

        # ── EventBus ──────────────────────────────────────────────────────
        self._subscribers: Dict[str, List[Callable[[Dict[str, Any]], None]]] = (
            defaultdict(list)
        )

        # ── 2. Conversation log ───────────────────────────────────────────
        _t = time.perf_counter()
        self._conversation = ConversationLog(
            patient_id,
            store if store is not None else JsonFileLogStore(self._cfg.log.resolved_data_dir),
            max_entries=self._cfg.log.max_entries,
        )
        try:
            self._conversation.load()
        except PersistenceFailure as exc:
            _log.error("pipeline", "log_load_failed", {
                "patient": patient_id,
                "error": str(exc.cause or exc),
            })
        self._log.perf("pipeline", "init_conversation_log",
                       (time.perf_counter() - _t) * 1_000.0,
                       {"entries": len(self._conversation)})

        # ── 3. Input sources ──────────────────────────────────────────────
        _t = time.perf_counter()
        self._init_sources(demo_script, frame_source, face_source, audio_source)
        self._log.perf("pipeline", "init_sources",
                       (time.perf_counter() - _t) * 1_000.0, {"mode": mode})

        # ── 4. Signal extractor ───────────────────────────────────────────
        self._extractor = SignalExtractor(GestureTracker(self._cfg.gesture))

        # ── 5. Sinks ──────────────────────────────────────────────────────
        _t = time.perf_counter()
        if speech is _AUTO:
            from output.tts_engine import TTSEngine  # noqa: PLC0415
            speech = TTSEngine(self._cfg.speech)
        if chime is _AUTO:
            if self._cfg.feedback.chime:
                from output.chime import ChimePlayer  # noqa: PLC0415
                chime = ChimePlayer()
            else:
                chime = None
        if haptics is _AUTO:
            from output.chime import LoggingHaptics  # noqa: PLC0415
            haptics = LoggingHaptics()
        self._speech = speech
        self._chime = chime
        self._log.perf("pipeline", "init_sinks",
                       (time.perf_counter() - _t) * 1_000.0, {})

        # ── 6. Output coordinator ─────────────────────────────────────────
        self._coordinator = OutputCoordinator(
            self._conversation,
            speech=speech,
            display=_BusDisplay(self.publish),
            haptics=haptics,
            chime=chime,
            speech_config=self._cfg.speech,
            feedback_config=self._cfg.feedback,
        )

        # ── 7. Commit state machine ───────────────────────────────────────
        self._fsm = CommitStateMachine(
            self._cfg.commit,
            self._cfg.detection,
            on_commit=self._on_commit,
        )

        # ── Runtime state ─────────────────────────────────────────────────
        self._running = False
        self._camera_on = False
        self._mic_on = False
        self._signals: SignalFrame = ZERO_FRAME
        self._sound_level = 0.0
        self._last_outcome: Optional[CommitOutcome] = None
        self._snapshot: Dict[str, Any] = {}
        self._refresh_snapshot(self._clock())

        self._log.info("pipeline", "controller_ready", {
            "mode": mode,
            "patient": patient_id,
            "speech": speech is not None,
        })

    def _init_sources(
        self,
        demo_script: Optional[list],
        frame_source: Any,
        face_source: Any,
        audio_source: Any,
    ) -> None:
        if self._mode == "sim":
            from input.face_sim import (  # noqa: PLC0415
                PlaceholderFrames,
                ScriptedAudioSource,
                ScriptedFaceSource,
            )

            if face_source is _AUTO:
                face_source = ScriptedFaceSource(demo_script, fps=self._cfg.camera.fps)
            if frame_source is _AUTO:
                frame_source = PlaceholderFrames()
            if audio_source is _AUTO:
                clock = getattr(face_source, "clock", None)
                if clock is not None:
                    audio_source = ScriptedAudioSource(clock, self._clock)
                else:
                    from input.audio import SilentAudioSource  # noqa: PLC0415
                    audio_source = SilentAudioSource()
        else:
            if frame_source is _AUTO:
                from input.camera import WebcamCapture  # noqa: PLC0415
                frame_source = WebcamCapture(self._cfg.camera)
            if face_source is _AUTO:
                from input.perception import MediaPipeFaceSource  # noqa: PLC0415
                face_source = MediaPipeFaceSource(self._cfg.camera.model_path)
            if audio_source is _AUTO:
                from input.audio import MicrophoneLevelSource  # noqa: PLC0415
                audio_source = MicrophoneLevelSource(self._cfg.audio)

        self._frames = frame_source
        self._face: Optional[PerceptionSource] = face_source
        self._audio = audio_source

    # ── Properties ────────────────────────────────────────────────────────────

    @property
    def config(self) -> AttuneConfig:
        return self._cfg

    @property
    def conversation_log(self) -> ConversationLog:
        return self._conversation

    @property
    def coordinator(self) -> OutputCoordinator:
        return self._coordinator

    @property
    def commit_fsm(self) -> CommitStateMachine:
        return self._fsm

    @property
    def camera_on(self) -> bool:
        return self._camera_on

    @property
    def mic_on(self) -> bool:
        return self._mic_on

    @property
    def signals(self) -> SignalFrame:
        return self._signals

    @property
    def sound_level(self) -> float:
        return self._sound_level

    def snapshot(self) -> Dict[str, Any]:
        """JSON-safe copy of the latest presentation state."""
        with self._lock:
            return dict(self._snapshot)

    # ── EventBus ──────────────────────────────────────────────────────────────

    def subscribe(self, event: str, callback: Callable[[Dict[str, Any]], None]) -> None:
        """
        Register *callback* to receive payloads whenever *event* is published.

        Callbacks run synchronously on the publishing thread in registration
        order; a callback that raises is logged and skipped.
        """
        self._subscribers[event].append(callback)
        _log.info("pipeline", "event_subscribed", {"event": event})

    def unsubscribe(self, event: str, callback: Callable[[Dict[str, Any]], None]) -> None:
        try:
            self._subscribers[event].remove(callback)
        except ValueError:
            pass

    def publish(self, event: str, data: Dict[str, Any]) -> None:
        for cb in list(self._subscribers.get(event, [])):
            try:
                cb(data)
            except Exception as exc:  # noqa: BLE001
                _log.error("pipeline", "event_callback_error", {
                    "event": event,
                    "error": str(exc),
                })

    # ── Devices ───────────────────────────────────────────────────────────────

    def start_camera(self) -> bool:
        """Open the frame source; blocking device I/O stays outside the tick lock."""
        with self._device_lock:
            if self._camera_on:
                return True
            ok = bool(self._frames.start()) if self._frames is not None else False
            with self._lock:
                self._camera_on = ok
        self.publish(ON_DEVICE, {"device": "camera", "on": ok})
        return ok

    def stop_camera(self) -> None:
        """Stop the camera and zero every face-derived signal immediately."""
        with self._device_lock:
            with self._lock:
                self._camera_on = False
                now = self._clock()
                self._extractor.reset()
                self._signals = ZERO_FRAME
                self._fsm.reset(now)
                self._refresh_snapshot(now)
                snap = dict(self._snapshot)
            if self._frames is not None:
                self._frames.stop()
        self.publish(ON_DEVICE, {"device": "camera", "on": False})
        self.publish(ON_SIGNALS, snap)

    def start_mic(self) -> bool:
        with self._device_lock:
            if self._mic_on:
                return True
            start = getattr(self._audio, "start", None)
            ok = bool(start()) if callable(start) else self._audio is not None
            with self._lock:
                self._mic_on = ok
        self.publish(ON_DEVICE, {"device": "mic", "on": ok})
        return ok

    def stop_mic(self) -> None:
        """Stop the microphone and zero the sound level immediately."""
        with self._device_lock:
            with self._lock:
                self._mic_on = False
                now = self._clock()
                self._sound_level = 0.0
                self._fsm.reset(now)
                self._refresh_snapshot(now)
                snap = dict(self._snapshot)
            stop = getattr(self._audio, "stop", None)
            if callable(stop):
                stop()
        self.publish(ON_DEVICE, {"device": "mic", "on": False})
        self.publish(ON_SIGNALS, snap)

    # ── Tick ──────────────────────────────────────────────────────────────────

    def tick(self, now_ms: float | None = None) -> Optional[Suggestion]:
        """
        Run one evaluation tick.

        Never raises for perception or audio failures: a failing face source
        yields "no face" and a failing audio source yields silence.

        Args:
            now_ms: Tick time; defaults to the controller clock.

        Returns:
            The suggestion committed on this tick, if any.
        """
        with self._lock:
            now = self._clock() if now_ms is None else now_ms
            before = self._fsm.phase

            if self._camera_on:
                frame = self._frames.read() if self._frames is not None else None
                sample = safe_detect(self._face, frame, now)
                self._signals = self._extractor.extract(sample, now)
            else:
                self._signals = ZERO_FRAME
            self._sound_level = self._poll_sound() if self._mic_on else 0.0

            committed = self._fsm.tick(self._signals, self._sound_level, now)
            after = self._fsm.phase
            self._refresh_snapshot(now)
            snap = dict(self._snapshot)

        if after is not before:
            self.publish(ON_PHASE_CHANGE, {"from": before.value, "to": after.value})
        self.publish(ON_SIGNALS, snap)
        return committed

    def _poll_sound(self) -> float:
        try:
            level = float(self._audio.poll_level())
        except Exception as exc:  # noqa: BLE001
            _log.warn("pipeline", "audio_poll_failed", {"error": str(exc)})
            return 0.0
        return max(0.0, min(1.0, level))

    # ── Manual actions ────────────────────────────────────────────────────────

    def commit_manual(self, category: Category, choice: str, now_ms: float | None = None) -> CommitOutcome:
        """
        Commit a mood or need selection immediately; the lock window follows.

        Raises:
            ValueError: If *choice* is not offered for *category*.
            AttuneError: If the commit could not be delivered to the outputs.
        """
        suggestion = manual_suggestion(category, choice)
        with self._lock:
            now = self._clock() if now_ms is None else now_ms
            self._last_outcome = None
            self._fsm.force_commit(suggestion, now)
            self._refresh_snapshot(now)
            outcome = self._last_outcome
        if outcome is None:
            raise AttuneError(f"manual commit of {suggestion.label!r} was not delivered")
        return outcome

    def replay(self, now_ms: float | None = None) -> bool:
        """Speak the current output again, bypassing the speech cooldowns."""
        with self._lock:
            now = self._clock() if now_ms is None else now_ms
            return self._coordinator.replay(now)

    def set_speech_enabled(self, enabled: bool) -> None:
        with self._lock:
            self._coordinator.set_speech_enabled(enabled)
            self._refresh_snapshot(self._clock())

    def clear_log(self) -> None:
        """
        Empty the conversation log.

        Raises:
            PersistenceFailure: If the empty log cannot be saved.
        """
        try:
            self._conversation.clear()
        finally:
            self.publish(ON_LOG_CHANGED, {"entries": 0})

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def run(self) -> None:
        """
        Start camera and microphone and enter the ~30 Hz loop.

        **Blocking** — returns only after :meth:`shutdown`.
        """
        self.start_camera()
        self.start_mic()
        self._running = True
        _log.info("pipeline", "run_start", {"mode": self._mode})
        self._main_loop()

    def shutdown(self) -> None:
        """
        Stop the loop, release devices and sinks, and flush the JSONL log.

        Safe to call from any thread and more than once.
        """
        _log.info("pipeline", "shutdown_requested", {})
        self._running = False
        self.stop_camera()
        self.stop_mic()
        close = getattr(self._face, "close", None)
        if callable(close):
            close()
        for sink in (self._speech, self._chime):
            stop = getattr(sink, "shutdown", None)
            if callable(stop):
                stop()
        _log.info("pipeline", "controller_shutdown", {})
        _log.flush()

    def _main_loop(self) -> None:
        interval_s = 1.0 / C.TICK_HZ
        while self._running:
            _t0 = time.monotonic()
            try:
                self.tick()
            except Exception as exc:  # noqa: BLE001
                _log.error("pipeline", "tick_unhandled_error", {"error": str(exc)})
            _remainder = interval_s - (time.monotonic() - _t0)
            if _remainder > 0.0:
                time.sleep(_remainder)

    # ── Internal ──────────────────────────────────────────────────────────────

    def _on_commit(self, suggestion: Suggestion, now_ms: float) -> None:
        outcome = self._coordinator.handle_commit(suggestion, now_ms)
        self._last_outcome = outcome
        self.publish(ON_COMMIT, {
            **suggestion.to_dict(),
            "time_ms": now_ms,
            "spoken": outcome.spoken,
            "persisted": outcome.persisted,
            "entry": outcome.entry.to_dict() if outcome.entry else None,
        })
        self.publish(ON_LOG_CHANGED, {"entries": len(self._conversation)})

    def _refresh_snapshot(self, now_ms: float) -> None:
        state = self._fsm.state
        current = self._coordinator.current_output
        self._snapshot = {
            "patient": self._conversation.patient_id,
            "mode": self._mode,
            "camera_on": self._camera_on,
            "mic_on": self._mic_on,
            "speech_enabled": self._coordinator.speech_enabled,
            "signals": self._signals.to_dict(),
            "sound_level": round(self._sound_level, 4),
            "phase": state.phase.value,
            "phase_label": self._fsm.phase_label(now_ms),
            "candidate": state.candidate.to_dict() if state.candidate else None,
            "lock_until": state.lock_until,
            "tone": signal_tone(self._signals, self._sound_level, self._cfg.detection).to_dict(),
            "output": current.to_dict() if current else None,
            "output_time_ms": self._coordinator.current_output_time,
            "time_ms": now_ms,
        }
