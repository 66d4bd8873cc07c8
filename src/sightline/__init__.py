"""Sightline — screen + voice relay to vision, transcription and chat inference."""

__version__ = "0.1.0"
