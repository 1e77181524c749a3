"""
Constants for the murmur relay.

These values are contracts with the upstream realtime API and are not configurable through the
config file or CLI arguments.
"""

SAMPLE_RATE = 24000
"""Sample rate in Hz that upstream assumes for every appended PCM16 frame."""

BYTES_PER_SAMPLE = 2
"""Little-endian signed 16-bit mono samples."""

UPSTREAM_BETA_HEADER = "realtime=v1"
"""Value of the OpenAI-Beta header sent when opening an upstream connection."""

DEFAULT_ERROR_MESSAGE = "Transcription failed"
"""Client-visible text used when upstream reports a failure without a message."""
