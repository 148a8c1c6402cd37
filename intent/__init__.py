"""
intent — Suggestion rules mapping a SignalFrame and sound level to a message.
"""
