"""
tests/test_commit_fsm.py — pytest unit tests for core.commit_fsm.CommitStateMachine.

Time is driven explicitly through ``now_ms``; no test sleeps.
"""

from __future__ import annotations

from typing import List, Tuple

import pytest

from core.config import CommitConfig
from core.constants import Category, HeadGesture, Phase
from core.commit_fsm import CommitStateMachine
from intent.rules import Suggestion

from helpers import FRAME_MS, make_frame

HAPPY = make_frame(smile=0.5)
SAD = make_frame(sad=0.5)
NOD = make_frame(head_gesture=HeadGesture.NOD)
QUIET = make_frame()


@pytest.fixture()
def commits() -> List[Tuple[Suggestion, float]]:
    return []


@pytest.fixture()
def fsm(commits) -> CommitStateMachine:
    return CommitStateMachine(on_commit=lambda s, t: commits.append((s, t)))


def _hold(fsm: CommitStateMachine, frame, start: float, end: float, sound: float = 0.0):
    """Tick *frame* every frame from *start* to *end* inclusive; return commits."""
    out = []
    t = start
    while t <= end + 1e-9:
        result = fsm.tick(frame, sound, t)
        if result is not None:
            out.append((result, t))
        t += FRAME_MS
    return out


# ──────────────────────────────────────────────────────────────
# Stability window
# ──────────────────────────────────────────────────────────────

class TestStability:

    def test_first_suggestion_starts_stabilizing(self, fsm) -> None:
        assert fsm.tick(HAPPY, 0.0, 0.0) is None
        state = fsm.state
        assert state.phase is Phase.STABILIZING
        assert state.candidate == Suggestion("Feeling happy")
        assert state.candidate_since == 0.0

    def test_commits_exactly_at_stability_window(self, fsm, commits) -> None:
        fsm.tick(HAPPY, 0.0, 100.0)
        assert fsm.tick(HAPPY, 0.0, 899.0) is None
        assert fsm.tick(HAPPY, 0.0, 900.0) == Suggestion("Feeling happy")
        assert commits == [(Suggestion("Feeling happy"), 900.0)]

    def test_change_of_candidate_restarts_window(self, fsm) -> None:
        fsm.tick(HAPPY, 0.0, 0.0)
        fsm.tick(SAD, 0.0, 500.0)
        assert fsm.tick(SAD, 0.0, 1000.0) is None
        assert fsm.state.candidate_since == 500.0
        assert fsm.tick(SAD, 0.0, 1300.0) == Suggestion("Feeling sad")

    def test_losing_the_signal_returns_to_idle(self, fsm) -> None:
        fsm.tick(HAPPY, 0.0, 0.0)
        fsm.tick(QUIET, 0.0, 400.0)
        assert fsm.phase is Phase.IDLE
        assert fsm.tick(HAPPY, 0.0, 800.0) is None
        assert fsm.state.candidate_since == 800.0

    def test_flicker_never_commits(self, fsm, commits) -> None:
        for i in range(100):
            fsm.tick(HAPPY if i % 2 else SAD, 0.0, i * FRAME_MS)
        assert commits == []

    def test_custom_stability(self) -> None:
        fsm = CommitStateMachine(CommitConfig(stability_ms=200.0, lock_ms=1000.0))
        fsm.tick(NOD, 0.0, 0.0)
        assert fsm.tick(NOD, 0.0, 200.0) == Suggestion("Yes")
        assert fsm.state.lock_until == 1200.0


# ──────────────────────────────────────────────────────────────
# Lock window
# ──────────────────────────────────────────────────────────────

class TestLock:

    def test_commit_locks_for_lock_window(self, fsm) -> None:
        fsm.tick(HAPPY, 0.0, 0.0)
        fsm.tick(HAPPY, 0.0, 800.0)
        state = fsm.state
        assert state.locked
        assert state.lock_until == 4800.0
        assert state.candidate is None

    def test_no_evaluation_while_locked(self, fsm) -> None:
        fsm.tick(HAPPY, 0.0, 0.0)
        fsm.tick(HAPPY, 0.0, 800.0)
        assert fsm.tick(SAD, 0.0, 4799.0) is None
        assert fsm.state.candidate is None
        assert fsm.phase is Phase.LOCKED

    def test_unlock_tick_evaluates_rules(self, fsm) -> None:
        fsm.tick(HAPPY, 0.0, 0.0)
        fsm.tick(HAPPY, 0.0, 800.0)
        fsm.tick(SAD, 0.0, 4800.0)
        state = fsm.state
        assert not state.locked
        assert state.candidate == Suggestion("Feeling sad")
        assert state.candidate_since == 4800.0

    def test_held_signal_commits_once_per_lock_cycle(self, fsm, commits) -> None:
        out = _hold(fsm, HAPPY, 0.0, 6000.0)
        assert len(out) == 2
        first, second = out[0][1], out[1][1]
        # unlock at first + 4000, then a fresh stability window
        assert second - first >= 4000.0 + 800.0 - FRAME_MS

    def test_no_commit_closer_than_lock_plus_stability(self, fsm) -> None:
        out = _hold(fsm, NOD, 0.0, 20000.0)
        times = [t for _, t in out]
        assert all(b - a >= 4800.0 - 1e-6 for a, b in zip(times, times[1:]))


# ──────────────────────────────────────────────────────────────
# Manual commits, labels, reset, history
# ──────────────────────────────────────────────────────────────

class TestForceCommit:

    def test_force_commit_bypasses_stability(self, fsm, commits) -> None:
        manual = Suggestion("Needs Water", Category.NEED)
        fsm.force_commit(manual, 50.0)
        assert commits == [(manual, 50.0)]
        assert fsm.state.lock_until == 4050.0

    def test_force_commit_during_lock_relocks(self, fsm, commits) -> None:
        fsm.tick(HAPPY, 0.0, 0.0)
        fsm.tick(HAPPY, 0.0, 800.0)
        fsm.force_commit(Suggestion("Feeling tired", Category.MOOD), 2000.0)
        assert len(commits) == 2
        assert fsm.state.lock_until == 6000.0

    def test_callback_error_is_contained(self) -> None:
        def boom(suggestion, now_ms):
            raise RuntimeError("sink down")

        fsm = CommitStateMachine(on_commit=boom)
        fsm.tick(HAPPY, 0.0, 0.0)
        assert fsm.tick(HAPPY, 0.0, 800.0) == Suggestion("Feeling happy")
        assert fsm.phase is Phase.LOCKED


class TestPhaseLabel:

    def test_waiting(self, fsm) -> None:
        assert fsm.phase_label(0.0) == "waiting"

    def test_stabilizing_percentage(self, fsm) -> None:
        fsm.tick(HAPPY, 0.0, 0.0)
        assert fsm.phase_label(400.0) == "stabilizing 50%"
        assert fsm.phase_label(5000.0) == "stabilizing 100%"

    def test_locked(self, fsm) -> None:
        fsm.force_commit(Suggestion("Yes"), 0.0)
        assert fsm.phase_label(10.0) == "locked"


class TestResetAndHistory:

    def test_reset_drops_candidate(self, fsm) -> None:
        fsm.tick(HAPPY, 0.0, 0.0)
        fsm.reset(100.0)
        assert fsm.phase is Phase.IDLE
        assert fsm.tick(HAPPY, 0.0, 800.0) is None

    def test_reset_keeps_lock(self, fsm) -> None:
        fsm.force_commit(Suggestion("Yes"), 0.0)
        fsm.reset(100.0)
        assert fsm.phase is Phase.LOCKED
        assert fsm.state.lock_until == 4000.0

    def test_history_records_transitions(self, fsm) -> None:
        fsm.tick(HAPPY, 0.0, 0.0)
        fsm.tick(HAPPY, 0.0, 800.0)
        fsm.tick(QUIET, 0.0, 4800.0)
        reasons = [(h["from"], h["to"]) for h in fsm.get_history()]
        assert reasons == [
            ("IDLE", "STABILIZING"),
            ("STABILIZING", "LOCKED"),
            ("LOCKED", "IDLE"),
        ]

    def test_history_is_capped(self, fsm) -> None:
        for i in range(100):
            fsm.tick(HAPPY if i % 2 else SAD, 0.0, float(i))
        history = fsm.get_history()
        assert len(history) == 50
        assert history[-1]["timestamp_ms"] == 99.0

    def test_state_is_a_copy(self, fsm) -> None:
        fsm.state.locked = True
        assert fsm.phase is Phase.IDLE
