"""
Protocol interfaces for relay components.

Defines the contracts for message transports (browser and upstream sockets), one-shot timers
and the collaborative document publisher using Python's Protocol system for structural typing.
"""

from collections.abc import Callable
from typing import Protocol


class MessageTransport(Protocol):
  """
  A bidirectional text message channel.

  Implementations raise `murmur.errors.TransportClosed` from `send` and `recv` once the
  underlying connection has gone away.
  """

  name: str

  async def send(self, message: str) -> None:
    """Send one text message."""
    ...

  async def recv(self) -> str | bytes:
    """Receive the next message."""
    ...

  async def close(self, code: int = 1000, reason: str = "") -> None:
    """Close the channel. Safe to call more than once."""
    ...


class Cancellable(Protocol):
  def cancel(self) -> None: ...


class TimerFactory(Protocol):
  """
  Schedules one-shot callbacks.

  `asyncio.AbstractEventLoop` satisfies this protocol.
  """

  def call_later(self, delay: float, callback: Callable[..., object], *args: object) -> Cancellable:
    """
    :param delay: Seconds until the callback runs.
    :param callback: Callable invoked with `args` once the delay elapses.
    :returns: A handle whose `cancel()` prevents the callback from running.
    """
    ...


class DocumentPublisher(Protocol):
  """Receives recognized text for a shared document. `publish` must not block on delivery."""

  def publish(self, document: str, text: str, item_id: str | None = None) -> None: ...
