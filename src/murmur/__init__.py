"""Realtime transcription relay between browser audio capture and a hosted realtime API."""

__version__ = "0.1.0"
