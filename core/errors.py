"""
core/errors.py — Exception taxonomy for Attune.

None of these ever escape the evaluation tick: perception errors degrade to
"no face", malformed samples to the zero SignalFrame, and persistence errors
are reported to the caller while the in-memory pipeline keeps running.
"""

from __future__ import annotations


class AttuneError(RuntimeError):
    """Base class for all Attune errors."""


class PerceptionUnavailable(AttuneError):
    """Raised by a perception source that is not initialised yet."""


class MalformedSample(AttuneError):
    """
    Raised inside the signal extractor when a sample lacks expected landmark roles.

    Args:
        detail: What was missing or invalid.
    """

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"Malformed perception sample: {detail}")


class PersistenceFailure(AttuneError):
    """
    Raised when the conversation log cannot be loaded or saved.

    Args:
        patient_id: Patient whose log was being persisted.
        operation: ``'load'`` or ``'save'``.
        cause: Underlying exception, if any.
    """

    def __init__(
        self,
        patient_id: str,
        operation: str,
        cause: BaseException | None = None,
    ) -> None:
        self.patient_id = patient_id
        self.operation = operation
        self.cause = cause
        super().__init__(
            f"Log {operation} failed for patient {patient_id!r}"
            + (f": {cause}" if cause is not None else "")
        )
