"""
Validation and measurement of inbound PCM16 audio chunks.

Browsers resample to the upstream rate before encoding, so every chunk is assumed to be
little-endian signed 16-bit mono at `SAMPLE_RATE`. Decoding never raises: a chunk is either
measured or rejected.
"""

import base64
import binascii
from dataclasses import dataclass
from enum import StrEnum

import numpy as np

from murmur.constants import BYTES_PER_SAMPLE, SAMPLE_RATE
from murmur.errors import RejectReason


class FrameStatus(StrEnum):
  ACCEPTED = "accepted"
  SILENT = "silent"


@dataclass(frozen=True)
class DecodedFrame:
  """Measurements of a well-formed chunk."""

  byte_length: int
  sample_count: int
  duration_ms: float
  peak_abs_sample: int
  is_even: bool
  status: FrameStatus

  @property
  def is_silent(self) -> bool:
    """Silent frames are measured but never forwarded upstream."""
    return self.status is FrameStatus.SILENT


@dataclass(frozen=True)
class RejectedFrame:
  """A chunk that could not be interpreted as whole PCM16 samples."""

  reason: RejectReason
  byte_length: int
  detail: str = ""


type FrameResult = DecodedFrame | RejectedFrame


def samples_to_ms(sample_count: int, sample_rate: int = SAMPLE_RATE) -> float:
  return sample_count / sample_rate * 1000


def measure_pcm16(data: bytes, sample_rate: int = SAMPLE_RATE) -> FrameResult:
  """
  Measure raw PCM16 bytes.

  :param data: Little-endian signed 16-bit mono samples.
  :param sample_rate: Rate the samples were recorded at.
  :returns: A `DecodedFrame`, or a `RejectedFrame` when the byte length is odd.
  """
  byte_length = len(data)
  if byte_length % BYTES_PER_SAMPLE != 0:
    return RejectedFrame(
      reason=RejectReason.MALFORMED_FRAME,
      byte_length=byte_length,
      detail="byte length is not a whole number of 16-bit samples",
    )

  samples = np.frombuffer(data, dtype="<i2")
  sample_count = int(samples.size)

  # Widen before abs() so that -32768 does not overflow
  peak = int(np.abs(samples.astype(np.int32)).max()) if sample_count else 0

  return DecodedFrame(
    byte_length=byte_length,
    sample_count=sample_count,
    duration_ms=samples_to_ms(sample_count, sample_rate),
    peak_abs_sample=peak,
    is_even=True,
    status=FrameStatus.SILENT if peak == 0 else FrameStatus.ACCEPTED,
  )


def decode_frame(audio_b64: str, sample_rate: int = SAMPLE_RATE) -> FrameResult:
  """
  Decode and measure a base64-encoded PCM16 chunk.

  :param audio_b64: Base64 text as sent in an `audio_chunk` message.
  :param sample_rate: Rate the samples were recorded at.
  :returns: A `DecodedFrame`, or a `RejectedFrame` for invalid base64 or odd byte lengths.
  """
  try:
    data = base64.b64decode(audio_b64, validate=True)
  except (binascii.Error, ValueError) as e:
    return RejectedFrame(reason=RejectReason.INVALID_BASE64, byte_length=0, detail=str(e))

  return measure_pcm16(data, sample_rate)
