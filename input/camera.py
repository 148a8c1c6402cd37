"""
input/camera.py — Webcam frame source for the perception stage.

:class:`WebcamCapture` reads BGR frames from an OpenCV device in a daemon
thread and keeps only the newest one, so the evaluation tick never waits on
the camera.

When the camera cannot be opened, :meth:`WebcamCapture.start` logs the
error and :meth:`WebcamCapture.read` keeps returning ``None``; the tick then
sees "no face".
"""

from __future__ import annotations

import threading
import time
from typing import Any, Optional, Protocol

import cv2
import numpy as np

from core.config import CameraConfig
from core.logger import get_logger

_log = get_logger()

# Consecutive read failures tolerated before a warning is logged
_READ_FAIL_LOG_EVERY: int = 30


class FrameSource(Protocol):
    """Anything that yields the latest video frame, or None."""

    def start(self) -> bool:
        ...

    def stop(self) -> None:
        ...

    def read(self) -> Optional[Any]:
        ...


class WebcamCapture:
    """
    Latest-frame webcam reader.

    Args:
        config: Device index, resolution and frame-rate.
    """

    def __init__(self, config: CameraConfig | None = None) -> None:
        self._cfg = config or CameraConfig()
        self._cap: Optional[cv2.VideoCapture] = None
        self._running: bool = False
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._latest: Optional[np.ndarray] = None

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> bool:
        """
        Open the device and launch the capture thread.

        Returns:
            False (after logging) if the device could not be opened.
        """
        if self._running:
            return True
        cap = cv2.VideoCapture(self._cfg.index)
        if not cap.isOpened():
            cap.release()
            _log.error("camera", "open_failed", {
                "index": self._cfg.index,
                "hint": "check device index or run with --mode sim",
            })
            return False

        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self._cfg.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self._cfg.height)
        cap.set(cv2.CAP_PROP_FPS, self._cfg.fps)
        self._cap = cap
        self._running = True
        self._thread = threading.Thread(target=self._loop, name="camera-capture", daemon=True)
        self._thread.start()
        _log.info("camera", "started", {
            "index": self._cfg.index,
            "width": self._cfg.width,
            "height": self._cfg.height,
            "fps": self._cfg.fps,
        })
        return True

    def stop(self) -> None:
        """Stop capturing, release the device and forget the last frame."""
        self._running = False
        if self._thread is not None:
            self._thread.join(timeout=3.0)
            self._thread = None
        if self._cap is not None:
            self._cap.release()
            self._cap = None
        with self._lock:
            self._latest = None
        _log.info("camera", "stopped", {"index": self._cfg.index})

    def read(self) -> Optional[np.ndarray]:
        with self._lock:
            return self._latest

    def _loop(self) -> None:
        interval = 1.0 / self._cfg.fps
        failures = 0
        while self._running:
            t0 = time.monotonic()
            cap = self._cap
            if cap is None:
                break
            ok, bgr = cap.read()
            if ok:
                failures = 0
                with self._lock:
                    self._latest = bgr
            else:
                failures += 1
                if failures % _READ_FAIL_LOG_EVERY == 1:
                    _log.warn("camera", "frame_read_failed", {
                        "index": self._cfg.index,
                        "consecutive": failures,
                    })
            remaining = interval - (time.monotonic() - t0)
            if remaining > 0.0:
                time.sleep(remaining)
