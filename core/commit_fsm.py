"""
core/commit_fsm.py — Debounce-and-lock state machine for committed messages.

A suggestion must stay unchanged for the stability window before it commits.
After a commit the machine locks for the lock window and does not look at
signals at all. Phases: IDLE → STABILIZING(candidate, since) → LOCKED(until).

The machine is driven by :meth:`CommitStateMachine.tick` with an explicit
``now_ms``; it owns no clock and no thread. Callers that tick from several
threads must serialise those calls themselves.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from core.config import CommitConfig, DetectionConfig
from core.constants import Phase
from core.logger import get_logger
from input.signal_extractor import SignalFrame
from intent.rules import Suggestion, suggest

logger = logging.getLogger(__name__)
_log = get_logger()

# Maximum number of transition records kept in history
_MAX_HISTORY = 50

CommitCallback = Callable[[Suggestion, float], None]


# ──────────────────────────────────────────────────────────────
# Context object
# ──────────────────────────────────────────────────────────────

@dataclass
class CommitState:
    """
    Mutable commit context, written only by :class:`CommitStateMachine`.

    Invariants: a candidate always has a ``candidate_since``; ``locked``
    always has a ``lock_until``.
    """

    candidate: Optional[Suggestion] = None
    candidate_since: Optional[float] = None
    locked: bool = False
    lock_until: Optional[float] = None

    @property
    def phase(self) -> Phase:
        if self.locked:
            return Phase.LOCKED
        if self.candidate is not None:
            return Phase.STABILIZING
        return Phase.IDLE

    def snapshot(self) -> "CommitState":
        """Return an independent copy for readers outside the tick."""
        return CommitState(self.candidate, self.candidate_since, self.locked, self.lock_until)

    def to_dict(self) -> dict:
        return {
            "phase": self.phase.value,
            "candidate": self.candidate.to_dict() if self.candidate else None,
            "candidate_since": self.candidate_since,
            "locked": self.locked,
            "lock_until": self.lock_until,
        }


# ──────────────────────────────────────────────────────────────
# State machine
# ──────────────────────────────────────────────────────────────

class CommitStateMachine:
    """
    Turns a stream of per-frame suggestions into debounced commit events.

    Args:
        commit_config: Stability and lock windows.
        detection_config: Rule thresholds passed to :func:`intent.rules.suggest`.
        on_commit: Called with ``(suggestion, now_ms)`` for every commit,
            automatic or forced. Exceptions it raises are logged and dropped.
    """

    def __init__(
        self,
        commit_config: CommitConfig | None = None,
        detection_config: DetectionConfig | None = None,
        on_commit: CommitCallback | None = None,
    ) -> None:
        cfg = commit_config or CommitConfig()
        self._stability_ms = cfg.stability_ms
        self._lock_ms = cfg.lock_ms
        self._detection = detection_config or DetectionConfig()
        self._on_commit = on_commit
        self._state = CommitState()
        self._history: list[dict] = []

        logger.debug(
            "CommitStateMachine ready: stability=%.0fms lock=%.0fms",
            self._stability_ms,
            self._lock_ms,
        )

    # ──────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────

    @property
    def state(self) -> CommitState:
        """A copy of the current commit context."""
        return self._state.snapshot()

    @property
    def phase(self) -> Phase:
        return self._state.phase

    def tick(
        self,
        frame: SignalFrame,
        sound_level: float,
        now_ms: float,
    ) -> Optional[Suggestion]:
        """
        Advance the machine by one evaluation tick.

        While locked and ``now_ms`` is before the unlock time nothing is
        evaluated. The tick that reaches the unlock time releases the lock
        and evaluates the rules in the same call.

        Returns:
            The suggestion committed on this tick, or None.
        """
        st = self._state
        if st.locked:
            assert st.lock_until is not None
            if now_ms < st.lock_until:
                return None
            st.locked = False
            st.lock_until = None
            self._record(Phase.LOCKED, Phase.IDLE, "unlock", now_ms)
            _log.info("commit_fsm", "lock_released", {"now_ms": now_ms})

        suggestion = suggest(frame, sound_level, self._detection)
        return self._advance(suggestion, now_ms)

    def force_commit(self, suggestion: Suggestion, now_ms: float) -> Suggestion:
        """
        Commit *suggestion* immediately, bypassing stability and any current lock.

        Used for manual mood / need selections; the lock window still applies
        afterwards.
        """
        self._commit(suggestion, now_ms, reason="manual")
        return suggestion

    def phase_label(self, now_ms: float) -> str:
        """
        Human-readable phase: ``"waiting"``, ``"stabilizing N%"`` or ``"locked"``.

        N is the rounded share of the stability window already elapsed.
        """
        st = self._state
        if st.locked:
            return "locked"
        if st.candidate is None or st.candidate_since is None:
            return "waiting"
        elapsed = max(0.0, now_ms - st.candidate_since)
        pct = min(100, round(100.0 * elapsed / self._stability_ms))
        return f"stabilizing {pct}%"

    def reset(self, now_ms: float = 0.0) -> None:
        """
        Drop the current candidate. An active lock is kept.

        Called when the camera or microphone stops so a half-stabilised
        suggestion cannot commit from stale signals.
        """
        st = self._state
        if st.candidate is None:
            return
        st.candidate = None
        st.candidate_since = None
        self._record(Phase.STABILIZING, st.phase, "reset", now_ms)
        logger.debug("CommitStateMachine candidate reset")

    def get_history(self) -> list[dict]:
        """
        Return a copy of the last (up to 50) transition records, oldest first.

        Each record holds ``from``, ``to``, ``reason`` and ``timestamp_ms``.
        """
        return list(self._history)

    # ──────────────────────────────────────────
    # Internal helpers
    # ──────────────────────────────────────────

    def _advance(self, suggestion: Optional[Suggestion], now_ms: float) -> Optional[Suggestion]:
        st = self._state
        if suggestion is None:
            if st.candidate is not None:
                st.candidate = None
                st.candidate_since = None
                self._record(Phase.STABILIZING, Phase.IDLE, "signal_lost", now_ms)
            return None

        if suggestion != st.candidate:
            before = st.phase
            st.candidate = suggestion
            st.candidate_since = now_ms
            self._record(before, Phase.STABILIZING, suggestion.label, now_ms)
            return None

        assert st.candidate_since is not None
        if now_ms - st.candidate_since >= self._stability_ms:
            self._commit(suggestion, now_ms, reason="stable")
            return suggestion
        return None

    def _commit(self, suggestion: Suggestion, now_ms: float, reason: str) -> None:
        st = self._state
        before = st.phase
        st.candidate = None
        st.candidate_since = None
        st.locked = True
        st.lock_until = now_ms + self._lock_ms
        self._record(before, Phase.LOCKED, f"{reason}:{suggestion.label}", now_ms)

        _log.info("commit_fsm", "commit", {
            "message": suggestion.label,
            "category": suggestion.category.value,
            "reason": reason,
            "lock_until": st.lock_until,
        })

        if self._on_commit is not None:
            try:
                self._on_commit(suggestion, now_ms)
            except Exception as exc:  # noqa: BLE001
                _log.error("commit_fsm", "on_commit_error", {"error": str(exc)})

    def _record(self, from_phase: Phase, to_phase: Phase, reason: str, now_ms: float) -> None:
        self._history.append({
            "from": from_phase.value,
            "to": to_phase.value,
            "reason": reason,
            "timestamp_ms": now_ms,
        })
        if len(self._history) > _MAX_HISTORY:
            self._history.pop(0)

    def __repr__(self) -> str:
        st = self._state
        cand = st.candidate.label if st.candidate else None
        return f"CommitStateMachine(phase={st.phase.value}, candidate={cand!r})"
