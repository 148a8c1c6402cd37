"""
storage/conversation_log.py — Per-patient conversation log.

Entries are kept newest first and capped at ``max_entries``; the oldest
entry is evicted when the cap is exceeded. Every mutation is written
through the configured :class:`LogStore`. A store failure raises
:class:`~core.errors.PersistenceFailure` but leaves the in-memory log
updated, so the commit pipeline keeps working without storage.

Persisted and exported entries look like::

    {"id": 1760781600000, "message": "Yes", "category": "signal",
     "isoTimestamp": "2026-10-18T10:00:00+00:00", "patientId": "Alex"}

Older files that use ``type`` / ``patient`` / ``timestamp`` still load.
"""

from __future__ import annotations

import json
import os
import re
import threading
import time
from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol, Sequence

from core.constants import AttuneConstants as C, Category
from core.errors import PersistenceFailure
from core.logger import get_logger

_log = get_logger()


# ──────────────────────────────────────────────────────────────
# Entry
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class LogEntry:
    """One committed message."""

    id: int
    message: str
    category: Category
    iso_timestamp: str
    patient_id: str

    @property
    def timestamp(self) -> datetime:
        stamp = self.iso_timestamp
        if stamp.endswith("Z"):
            stamp = stamp[:-1] + "+00:00"
        return datetime.fromisoformat(stamp)

    @property
    def icon(self) -> str:
        return icon_for(self.category, self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "message": self.message,
            "category": self.category.value,
            "isoTimestamp": self.iso_timestamp,
            "patientId": self.patient_id,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "LogEntry":
        """
        Build an entry from its stored form, accepting the legacy key names.

        Raises:
            ValueError: If a required field is missing or invalid.
        """
        try:
            category = raw.get("category", raw.get("type", Category.SIGNAL.value))
            stamp = raw.get("isoTimestamp", raw.get("timestamp"))
            if stamp is None:
                raise KeyError("isoTimestamp")
            return cls(
                id=int(raw["id"]),
                message=str(raw["message"]),
                category=Category(category),
                iso_timestamp=str(stamp),
                patient_id=str(raw.get("patientId") or raw.get("patient") or ""),
            )
        except (AttributeError, KeyError, TypeError) as exc:
            raise ValueError(f"invalid log entry {raw!r}: {exc}") from exc


_NEED_ICONS: dict[str, str] = {
    "Needs Water": "💧",
    "Needs Break": "☕",
    "Needs Reposition": "🔄",
    "Needs Bathroom": "🚻",
    "Needs Help": "🆘",
}
_MOOD_ICONS: dict[str, str] = {
    "Feeling happy": "😊",
    "Feeling sad": "😢",
    "Feeling tired": "😴",
    "Feeling okay": "🙂",
}
_SIGNAL_ICONS: dict[str, str] = {
    "Yes": "✓",
    "No": "✗",
    "Feeling happy": "😊",
    "Feeling sad": "😢",
    "Surprised": "😮",
    "Needs attention": "⚠️",
    "Needs a break": "☕",
}


def icon_for(category: Category, message: str) -> str:
    """Display icon for a log entry."""
    if category is Category.NEED:
        return _NEED_ICONS.get(message, "📌")
    if category is Category.MOOD:
        return _MOOD_ICONS.get(message, "💭")
    return _SIGNAL_ICONS.get(message, "💬")


# ──────────────────────────────────────────────────────────────
# Persistence
# ──────────────────────────────────────────────────────────────

class LogStore(Protocol):
    """Synchronous per-patient persistence."""

    def load(self, patient_id: str) -> list[LogEntry]:
        ...

    def save(self, patient_id: str, entries: Sequence[LogEntry]) -> None:
        ...


class MemoryLogStore:
    """Process-local store; used when no data directory is wanted."""

    def __init__(self) -> None:
        self._data: dict[str, list[LogEntry]] = {}

    def load(self, patient_id: str) -> list[LogEntry]:
        return list(self._data.get(patient_id, []))

    def save(self, patient_id: str, entries: Sequence[LogEntry]) -> None:
        self._data[patient_id] = list(entries)


_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]+")


def _slug(patient_id: str) -> str:
    return _UNSAFE.sub("_", patient_id.strip()) or "anonymous"


class JsonFileLogStore:
    """
    One JSON array per patient at ``{data_dir}/attune_log_{patient}.json``.

    Writes go to a temporary file that replaces the target, so a crash never
    leaves a half-written log.

    Args:
        data_dir: Directory holding the log files; created on first save.
    """

    def __init__(self, data_dir: str | Path) -> None:
        self._dir = Path(data_dir)

    def path_for(self, patient_id: str) -> Path:
        return self._dir / f"{C.STORAGE_PREFIX}log_{_slug(patient_id)}.json"

    def load(self, patient_id: str) -> list[LogEntry]:
        path = self.path_for(patient_id)
        if not path.exists():
            return []
        try:
            with path.open("r", encoding="utf-8") as fh:
                raw = json.load(fh)
            if not isinstance(raw, list):
                raise ValueError(f"expected a JSON array, got {type(raw).__name__}")
            return [LogEntry.from_dict(item) for item in raw]
        except (OSError, ValueError) as exc:
            raise PersistenceFailure(patient_id, "load", exc) from exc

    def save(self, patient_id: str, entries: Sequence[LogEntry]) -> None:
        path = self.path_for(patient_id)
        tmp = path.with_suffix(".json.tmp")
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            with tmp.open("w", encoding="utf-8") as fh:
                json.dump([e.to_dict() for e in entries], fh, ensure_ascii=False, indent=2)
            os.replace(tmp, path)
        except OSError as exc:
            raise PersistenceFailure(patient_id, "save", exc) from exc


# ──────────────────────────────────────────────────────────────
# Log
# ──────────────────────────────────────────────────────────────

class ConversationLog:
    """
    Bounded, newest-first log of committed messages for one patient.

    Args:
        patient_id: Patient the entries belong to.
        store: Persistence backend; defaults to an in-memory store.
        max_entries: Capacity; oldest entries beyond it are dropped.
    """

    def __init__(
        self,
        patient_id: str,
        store: LogStore | None = None,
        max_entries: int = C.MAX_LOG_ENTRIES,
    ) -> None:
        self._patient_id = patient_id
        self._store: LogStore = store if store is not None else MemoryLogStore()
        self._max = max_entries
        self._lock = threading.Lock()
        self._entries: list[LogEntry] = []
        self._last_id = 0

    @property
    def patient_id(self) -> str:
        return self._patient_id

    @property
    def entries(self) -> tuple[LogEntry, ...]:
        """Current entries, newest first."""
        with self._lock:
            return tuple(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def load(self) -> int:
        """
        Replace the in-memory entries with the stored ones.

        Returns:
            Number of entries loaded.

        Raises:
            PersistenceFailure: If the store cannot be read; memory is unchanged.
        """
        try:
            loaded = self._store.load(self._patient_id)
        except PersistenceFailure:
            raise
        except Exception as exc:  # noqa: BLE001
            raise PersistenceFailure(self._patient_id, "load", exc) from exc
        loaded.sort(key=lambda e: e.id, reverse=True)
        with self._lock:
            self._entries = loaded[: self._max]
            self._last_id = max((e.id for e in self._entries), default=0)
            count = len(self._entries)
        _log.info("conversation_log", "loaded", {
            "patient": self._patient_id,
            "entries": count,
        })
        return count

    def add(
        self,
        message: str,
        category: Category,
        now: Optional[datetime] = None,
    ) -> LogEntry:
        """
        Prepend a new entry, evict beyond capacity, and persist.

        Raises:
            PersistenceFailure: If saving fails; the entry is still kept in memory.
        """
        now = now or datetime.now(timezone.utc)
        with self._lock:
            entry_id = max(int(now.timestamp() * 1000), self._last_id + 1)
            self._last_id = entry_id
            entry = LogEntry(
                id=entry_id,
                message=message,
                category=category,
                iso_timestamp=now.isoformat(),
                patient_id=self._patient_id,
            )
            self._entries.insert(0, entry)
            del self._entries[self._max:]
            snapshot = list(self._entries)
        self._save(snapshot)
        return entry

    def clear(self) -> None:
        """Remove all entries and persist the empty log."""
        with self._lock:
            self._entries = []
        _log.info("conversation_log", "cleared", {"patient": self._patient_id})
        self._save([])

    def _save(self, entries: list[LogEntry]) -> None:
        try:
            self._store.save(self._patient_id, entries)
        except PersistenceFailure:
            raise
        except Exception as exc:  # noqa: BLE001
            raise PersistenceFailure(self._patient_id, "save", exc) from exc

    # ── Export and summary ─────────────────────────────────────

    def export_payload(self, now: Optional[datetime] = None) -> dict[str, Any]:
        """``{patient, exportedAt, entries}`` with entries newest first."""
        now = now or datetime.now(timezone.utc)
        return {
            "patient": self._patient_id,
            "exportedAt": now.isoformat(),
            "entries": [e.to_dict() for e in self.entries],
        }

    def export_filename(self, now_ms: Optional[int] = None) -> str:
        stamp = int(time.time() * 1000) if now_ms is None else now_ms
        return f"attune-log-{_slug(self._patient_id)}-{stamp}.json"

    def write_export(self, directory: str | Path, now: Optional[datetime] = None) -> Path:
        """
        Write the export artifact into *directory* and return its path.

        Raises:
            PersistenceFailure: If the file cannot be written.
        """
        now = now or datetime.now(timezone.utc)
        path = Path(directory) / self.export_filename(int(now.timestamp() * 1000))
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("w", encoding="utf-8") as fh:
                json.dump(self.export_payload(now), fh, ensure_ascii=False, indent=2)
        except OSError as exc:
            raise PersistenceFailure(self._patient_id, "export", exc) from exc
        _log.info("conversation_log", "exported", {"path": str(path)})
        return path

    def summary(self, today: Optional[date] = None) -> dict[str, Any]:
        """
        Counts for the current day.

        Returns:
            ``{"total_today", "last_time", "top_message"}``; ``last_time`` and
            ``top_message`` are None when nothing was logged today.
        """
        today = today or datetime.now(timezone.utc).date()
        todays = [e for e in self.entries if e.timestamp.date() == today]
        if not todays:
            return {"total_today": 0, "last_time": None, "top_message": None}
        # Counter keeps first-seen order on ties, i.e. the newest message wins
        top, _ = Counter(e.message for e in todays).most_common(1)[0]
        return {
            "total_today": len(todays),
            "last_time": todays[0].iso_timestamp,
            "top_message": top,
        }
