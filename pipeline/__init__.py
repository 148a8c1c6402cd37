"""
pipeline — Attune orchestration: AttuneController and its EventBus.
"""
