"""
input — Face and sound input sources and per-frame signal extraction.

Provides PerceptionSample from the webcam (MediaPipe FaceLandmarker) or a
scripted simulator, the head-gesture tracker, the SignalFrame extractor,
and microphone level sources.
"""
