"""Conversation lifecycle and real-time handoff engine."""

__version__ = "1.0.0"
