"""
output/tts_engine.py — Offline speech sink using pyttsx3.

``speak()`` never blocks. Text is handed to a daemon worker thread that owns
the pyttsx3 engine; a newer request replaces any request still waiting and
interrupts the utterance in progress, so only the latest message is voiced.
"""

from __future__ import annotations

import threading
from typing import Optional

import pyttsx3  # type: ignore[import]

from core.config import SpeechConfig
from core.logger import get_logger

_log = get_logger()

# Worker poll interval while idle (seconds)
_IDLE_POLL_S: float = 0.05


class TTSEngine:
    """
    Fire-and-forget text-to-speech sink.

    If the pyttsx3 driver cannot be initialised, an error is logged once
    and every :meth:`speak` call is dropped with a warning.

    Args:
        config: Voice rate, volume and optional voice id.
    """

    def __init__(self, config: SpeechConfig | None = None) -> None:
        self._cfg = config or SpeechConfig()
        self._lock = threading.Lock()
        self._wake = threading.Event()
        self._pending_text: Optional[str] = None
        self._speaking = False
        self._running = False
        self._engine: Optional[pyttsx3.Engine] = None
        self._worker: Optional[threading.Thread] = None

        self._start_worker()

    # ──────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────

    def speak(self, text: str) -> None:
        """
        Speak *text*, cancelling any earlier utterance that is pending or playing.

        Args:
            text: Message to voice; blank text is ignored.
        """
        text = text.strip()
        if not text:
            return

        with self._lock:
            replaced = self._pending_text
            self._pending_text = text
            if self._engine is not None and self._speaking:
                try:
                    self._engine.stop()
                except Exception as exc:  # noqa: BLE001
                    _log.debug("tts_engine", "stop_error", {"error": str(exc)})
        self._wake.set()

        _log.info("tts_engine", "queued", {
            "text": text[:80],
            "replaced": replaced is not None,
        })

    @property
    def is_speaking(self) -> bool:
        with self._lock:
            return self._speaking

    @property
    def ready(self) -> bool:
        """True once the worker has a working pyttsx3 engine."""
        return self._engine is not None

    def shutdown(self) -> None:
        """Stop the worker thread (waits up to 3 s). Safe to call twice."""
        self._running = False
        self._wake.set()
        if self._worker is not None and self._worker.is_alive():
            self._worker.join(timeout=3.0)
        if self._engine is not None:
            try:
                self._engine.stop()
            except Exception as exc:  # noqa: BLE001
                _log.debug("tts_engine", "stop_error", {"error": str(exc)})
        _log.info("tts_engine", "shutdown", {})

    # ──────────────────────────────────────────
    # Worker thread
    # ──────────────────────────────────────────

    def _start_worker(self) -> None:
        self._running = True
        self._worker = threading.Thread(
            target=self._worker_loop, name="tts-worker", daemon=True
        )
        self._worker.start()

    def _init_engine(self) -> None:
        """Create the pyttsx3 engine on the worker thread; drivers are not thread-safe."""
        try:
            engine = pyttsx3.init()
            engine.setProperty("rate", self._cfg.rate)
            engine.setProperty("volume", self._cfg.volume)
            if self._cfg.voice_id:
                engine.setProperty("voice", self._cfg.voice_id)
            self._engine = engine
            _log.info("tts_engine", "ready", {
                "rate": self._cfg.rate,
                "volume": self._cfg.volume,
            })
        except Exception as exc:  # noqa: BLE001
            self._engine = None
            _log.error("tts_engine", "init_failed", {"error": str(exc)})

    def _worker_loop(self) -> None:
        self._init_engine()
        while self._running:
            self._wake.wait(timeout=_IDLE_POLL_S)
            self._wake.clear()

            with self._lock:
                text, self._pending_text = self._pending_text, None
            if text is None:
                continue
            if self._engine is None:
                _log.warn("tts_engine", "dropped_no_engine", {"text": text[:80]})
                continue

            with self._lock:
                self._speaking = True
            try:
                self._engine.say(text)
                self._engine.runAndWait()
            except Exception as exc:  # noqa: BLE001
                _log.error("tts_engine", "speak_error", {"error": str(exc)})
            finally:
                with self._lock:
                    self._speaking = False
