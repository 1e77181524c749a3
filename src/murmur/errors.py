"""
Error taxonomy for the relay.

Decode failures are returned as values by the audio decoder; the types here cover the
conditions that cross component boundaries.
"""

from enum import StrEnum


class RejectReason(StrEnum):
  """Why an inbound audio chunk was dropped before reaching upstream."""

  MALFORMED_FRAME = "malformed_frame"
  INVALID_BASE64 = "invalid_base64"


class InvalidModelError(ValueError):
  """Requested model is not in the configured allow-list."""

  def __init__(self, model: str, allowed: list[str]) -> None:
    super().__init__(f"Invalid model '{model}'. Use one of: {', '.join(allowed)}")
    self.model = model
    self.allowed = allowed


class UpstreamProtocolError(Exception):
  """An upstream payload could not be parsed into a known event shape."""


class UpstreamConnectError(Exception):
  """The upstream connection could not be opened (unreachable, rejected credentials, ...)."""


class UnknownMessageType(Exception):
  """A client message carried a `type` tag the relay does not handle."""

  def __init__(self, message_type: object) -> None:
    super().__init__(f"Unknown message type: {message_type!r}")
    self.message_type = message_type


class TransportClosed(Exception):
  """
  One side of a session went away.

  :param clean: True when the peer performed a normal close handshake.
  """

  def __init__(self, reason: str = "", clean: bool = True) -> None:
    super().__init__(reason or ("closed" if clean else "connection lost"))
    self.reason = reason
    self.clean = clean
