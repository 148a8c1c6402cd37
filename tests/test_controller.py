"""
tests/test_controller.py — Integration tests for pipeline.controller.AttuneController.

The controller runs in sim mode on a FakeClock and is ticked by hand, one
frame at a time, so every run is deterministic. Speech is a MagicMock, the
chime is disabled and the log lives in memory.
"""

from __future__ import annotations

import threading
from typing import Any, Dict, List
from unittest.mock import MagicMock

import pytest

from core.constants import Category, Phase
from core.errors import AttuneError, PersistenceFailure
from input.face_sim import PlaceholderFrames, ScriptedFaceSource
from input.signal_extractor import ZERO_FRAME
from intent.rules import Suggestion
from output.chime import LoggingHaptics
from pipeline.controller import (
    ON_COMMIT,
    ON_DEVICE,
    ON_LOG_CHANGED,
    ON_OUTPUT,
    ON_PHASE_CHANGE,
    ON_SIGNALS,
    AttuneController,
)
from storage.conversation_log import MemoryLogStore

from helpers import FRAME_MS, FakeClock


def _make_controller(clock: FakeClock, script=None, **overrides: Any) -> AttuneController:
    kwargs: Dict[str, Any] = dict(
        patient_id="Alex",
        mode="sim",
        demo_script=script,
        speech=MagicMock(),
        chime=None,
        haptics=LoggingHaptics(),
        store=MemoryLogStore(),
        clock=clock,
    )
    kwargs.update(overrides)
    return AttuneController(**kwargs)


def _run(ctrl: AttuneController, clock: FakeClock, duration_ms: float) -> List[tuple]:
    """Tick once per frame for *duration_ms*; return ``(label, time)`` commits."""
    commits = []
    end = clock.now + duration_ms
    while clock.now < end:
        clock.advance(FRAME_MS)
        result = ctrl.tick()
        if result is not None:
            commits.append((result.label, clock.now))
    return commits


@pytest.fixture()
def ctrl(clock) -> AttuneController:
    controller = _make_controller(clock)
    controller.start_camera()
    controller.start_mic()
    return controller


# ──────────────────────────────────────────────────────────────
# Scripted demos end to end
# ──────────────────────────────────────────────────────────────

class TestDemoScripts:

    @pytest.mark.parametrize("script, label", [
        (ScriptedFaceSource.DEMO_SMILE_SCRIPT, "Feeling happy"),
        (ScriptedFaceSource.DEMO_NOD_SCRIPT, "Yes"),
        (ScriptedFaceSource.DEMO_DISTRESS_SCRIPT, "Needs attention"),
    ])
    def test_demo_commits_once(self, clock, script, label: str) -> None:
        ctrl = _make_controller(clock, script)
        ctrl.start_camera()
        ctrl.start_mic()
        commits = _run(ctrl, clock, 7000.0)
        assert [c[0] for c in commits] == [label]
        assert len(ctrl.conversation_log) == 1
        assert ctrl.conversation_log.entries[0].message == label

    def test_smile_commits_after_stability_window(self, ctrl, clock) -> None:
        commits = _run(ctrl, clock, 3000.0)
        assert len(commits) == 1
        # script starts at the first tick; smile from +500 ms; +800 ms to commit
        assert 1300.0 <= commits[0][1] <= 1450.0

    def test_commit_is_spoken_and_locked(self, ctrl, clock) -> None:
        _run(ctrl, clock, 2000.0)
        speech = ctrl._speech
        speech.speak.assert_called_once_with("Feeling happy")
        snap = ctrl.snapshot()
        assert snap["phase"] == Phase.LOCKED.value
        assert snap["phase_label"] == "locked"
        assert snap["output"] == {"label": "Feeling happy", "category": "signal"}

    def test_haptic_pulse_on_commit(self, clock) -> None:
        haptics = LoggingHaptics()
        ctrl = _make_controller(clock, haptics=haptics)
        ctrl.start_camera()
        ctrl.start_mic()
        _run(ctrl, clock, 2000.0)
        assert haptics.count == 1


# ──────────────────────────────────────────────────────────────
# Devices
# ──────────────────────────────────────────────────────────────

class TestDevices:

    def test_camera_off_means_zero_signals(self, clock) -> None:
        ctrl = _make_controller(clock)
        commits = _run(ctrl, clock, 3000.0)
        assert commits == []
        assert ctrl.signals == ZERO_FRAME

    def test_stop_camera_resets_immediately(self, ctrl, clock) -> None:
        _run(ctrl, clock, 1000.0)
        assert ctrl.commit_fsm.phase is Phase.STABILIZING
        ctrl.stop_camera()
        snap = ctrl.snapshot()
        assert ctrl.signals == ZERO_FRAME
        assert ctrl.commit_fsm.phase is Phase.IDLE
        assert snap["candidate"] is None
        assert snap["signals"]["smile"] == 0.0
        assert not snap["camera_on"]
        assert _run(ctrl, clock, 3000.0) == []

    def test_stop_camera_clears_gesture_history(self, clock) -> None:
        ctrl = _make_controller(clock, ScriptedFaceSource.DEMO_NOD_SCRIPT)
        ctrl.start_camera()
        _run(ctrl, clock, 1000.0)
        ctrl.stop_camera()
        assert ctrl._extractor.tracker.history == ()

    def test_stop_mic_resets_immediately(self, clock) -> None:
        ctrl = _make_controller(clock, ScriptedFaceSource.DEMO_DISTRESS_SCRIPT)
        ctrl.start_camera()
        ctrl.start_mic()
        _run(ctrl, clock, 1000.0)
        assert ctrl.commit_fsm.state.candidate == Suggestion("Needs attention")
        ctrl.stop_mic()
        assert ctrl.sound_level == 0.0
        assert ctrl.snapshot()["sound_level"] == 0.0
        assert ctrl.commit_fsm.phase is Phase.IDLE
        labels = [c[0] for c in _run(ctrl, clock, 3000.0)]
        assert "Needs attention" not in labels

    def test_device_events_published(self, clock) -> None:
        ctrl = _make_controller(clock)
        events: List[dict] = []
        ctrl.subscribe(ON_DEVICE, events.append)
        ctrl.start_camera()
        ctrl.stop_camera()
        assert events == [
            {"device": "camera", "on": True},
            {"device": "camera", "on": False},
        ]

    def test_camera_that_fails_to_open(self, clock) -> None:
        frames = MagicMock()
        frames.start.return_value = False
        ctrl = _make_controller(clock, frame_source=frames)
        assert ctrl.start_camera() is False
        assert not ctrl.camera_on

    def test_slow_camera_open_does_not_block_tick(self, clock) -> None:
        opening = threading.Event()
        release = threading.Event()

        def _slow_start() -> bool:
            opening.set()
            release.wait(timeout=5.0)
            return True

        frames = MagicMock()
        frames.start.side_effect = _slow_start
        ctrl = _make_controller(clock, frame_source=frames)
        starter = threading.Thread(target=ctrl.start_camera, daemon=True)
        starter.start()
        assert opening.wait(timeout=2.0)

        ticker = threading.Thread(target=ctrl.tick, daemon=True)
        ticker.start()
        ticker.join(timeout=2.0)
        tick_blocked = ticker.is_alive()
        release.set()
        starter.join(timeout=2.0)

        assert not tick_blocked
        assert ctrl.camera_on

    def test_concurrent_camera_starts_open_once(self, clock) -> None:
        frames = MagicMock()
        frames.start.return_value = True
        ctrl = _make_controller(clock, frame_source=frames)
        workers = [threading.Thread(target=ctrl.start_camera) for _ in range(4)]
        for w in workers:
            w.start()
        for w in workers:
            w.join(timeout=2.0)
        frames.start.assert_called_once()


# ──────────────────────────────────────────────────────────────
# Failure containment
# ──────────────────────────────────────────────────────────────

class TestFailures:

    def test_failing_face_source_is_no_face(self, clock) -> None:
        face = MagicMock(spec=["detect"])
        face.detect.side_effect = RuntimeError("landmarker crashed")
        ctrl = _make_controller(clock, face_source=face, frame_source=PlaceholderFrames())
        ctrl.start_camera()
        assert _run(ctrl, clock, 2000.0) == []
        assert ctrl.signals == ZERO_FRAME

    def test_failing_audio_source_is_silence(self, clock) -> None:
        audio = MagicMock()
        audio.poll_level.side_effect = OSError("device unplugged")
        ctrl = _make_controller(clock, audio_source=audio)
        ctrl.start_mic()
        ctrl.tick()
        assert ctrl.sound_level == 0.0

    def test_out_of_range_sound_is_clamped(self, clock) -> None:
        audio = MagicMock()
        audio.poll_level.return_value = 3.0
        ctrl = _make_controller(clock, audio_source=audio)
        ctrl.start_mic()
        clock.advance(FRAME_MS)
        ctrl.tick()
        assert ctrl.sound_level == 1.0

    def test_failing_subscriber_does_not_break_commit(self, ctrl, clock) -> None:
        ctrl.subscribe(ON_COMMIT, MagicMock(side_effect=RuntimeError("ui gone")))
        commits = _run(ctrl, clock, 2000.0)
        assert [c[0] for c in commits] == ["Feeling happy"]
        assert len(ctrl.conversation_log) == 1

    def test_unknown_mode_rejected(self, clock) -> None:
        with pytest.raises(ValueError):
            _make_controller(clock, mode="kinect")

    def test_unreadable_log_starts_empty(self, clock) -> None:
        store = MagicMock()
        store.load.side_effect = PersistenceFailure("Alex", "load")
        ctrl = _make_controller(clock, store=store)
        assert len(ctrl.conversation_log) == 0

    def test_store_error_during_manual_commit_keeps_entry(self, clock) -> None:
        store = MagicMock()
        store.load.return_value = []
        store.save.side_effect = OSError("disk full")
        ctrl = _make_controller(clock, store=store)
        outcome = ctrl.commit_manual(Category.NEED, "Water")
        assert outcome.persisted is False
        assert outcome.entry is not None and outcome.entry.message == "Needs Water"
        assert [e.message for e in ctrl.conversation_log.entries] == ["Needs Water"]

    def test_undelivered_manual_commit_raises(self, clock) -> None:
        ctrl = _make_controller(clock)
        ctrl._coordinator.handle_commit = MagicMock(side_effect=RuntimeError("sink crashed"))
        with pytest.raises(AttuneError):
            ctrl.commit_manual(Category.NEED, "Water")


# ──────────────────────────────────────────────────────────────
# Manual actions and events
# ──────────────────────────────────────────────────────────────

class TestManualAndEvents:

    def test_commit_manual_need(self, ctrl, clock) -> None:
        outcome = ctrl.commit_manual(Category.NEED, "Water")
        assert outcome.suggestion == Suggestion("Needs Water", Category.NEED)
        assert outcome.spoken
        assert ctrl.conversation_log.entries[0].category is Category.NEED
        assert ctrl.commit_fsm.phase is Phase.LOCKED
        assert ctrl.snapshot()["output"]["label"] == "Needs Water"

    def test_manual_commit_locks_out_signals(self, ctrl, clock) -> None:
        ctrl.commit_manual(Category.MOOD, "Feeling okay")
        commits = _run(ctrl, clock, 3900.0)
        assert commits == []

    def test_commit_manual_rejects_unknown_choice(self, ctrl) -> None:
        with pytest.raises(ValueError):
            ctrl.commit_manual(Category.MOOD, "Ecstatic")
        assert len(ctrl.conversation_log) == 0

    def test_replay_speaks_again(self, ctrl, clock) -> None:
        ctrl.commit_manual(Category.NEED, "Help")
        clock.advance(100.0)
        assert ctrl.replay() is True
        assert ctrl._speech.speak.call_count == 2

    def test_speech_toggle(self, ctrl, clock) -> None:
        ctrl.set_speech_enabled(False)
        outcome = ctrl.commit_manual(Category.NEED, "Help")
        assert not outcome.spoken
        assert ctrl.snapshot()["speech_enabled"] is False

    def test_commit_events(self, ctrl, clock) -> None:
        seen: Dict[str, List[dict]] = {
            ON_OUTPUT: [], ON_COMMIT: [], ON_LOG_CHANGED: [], ON_PHASE_CHANGE: [],
        }
        for name, bucket in seen.items():
            ctrl.subscribe(name, bucket.append)
        _run(ctrl, clock, 2000.0)
        assert seen[ON_OUTPUT][0]["label"] == "Feeling happy"
        assert seen[ON_COMMIT][0]["entry"]["message"] == "Feeling happy"
        assert seen[ON_LOG_CHANGED] == [{"entries": 1}]
        transitions = [(e["from"], e["to"]) for e in seen[ON_PHASE_CHANGE]]
        assert transitions == [("IDLE", "STABILIZING"), ("STABILIZING", "LOCKED")]

    def test_signals_published_every_tick(self, ctrl, clock) -> None:
        seen: List[dict] = []
        ctrl.subscribe(ON_SIGNALS, seen.append)
        _run(ctrl, clock, 10 * FRAME_MS)
        assert len(seen) == 10
        assert set(seen[-1]) >= {"signals", "sound_level", "phase_label", "tone"}

    def test_unsubscribe(self, ctrl, clock) -> None:
        seen: List[dict] = []
        ctrl.subscribe(ON_SIGNALS, seen.append)
        ctrl.unsubscribe(ON_SIGNALS, seen.append)
        _run(ctrl, clock, 3 * FRAME_MS)
        assert seen == []

    def test_clear_log(self, ctrl) -> None:
        ctrl.commit_manual(Category.NEED, "Water")
        seen: List[dict] = []
        ctrl.subscribe(ON_LOG_CHANGED, seen.append)
        ctrl.clear_log()
        assert len(ctrl.conversation_log) == 0
        assert seen == [{"entries": 0}]
