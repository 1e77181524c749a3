"""Shared fakes for relay tests: an in-memory transport, a manual clock and manual timers."""

import asyncio
import base64
import json

import numpy as np
import pytest

from murmur.constants import SAMPLE_RATE
from murmur.errors import TransportClosed


class FakeTransport:
  """In-memory `MessageTransport`. Closing it ends any pending `recv()`."""

  def __init__(self, name: str = "fake") -> None:
    self.name = name
    self.sent: list[str] = []
    self.closed = False
    self.close_calls = 0
    self._inbox: asyncio.Queue[str | bytes | TransportClosed] = asyncio.Queue()

  def feed(self, message: str | bytes | dict) -> None:
    self._inbox.put_nowait(json.dumps(message) if isinstance(message, dict) else message)

  def disconnect(self, clean: bool = True) -> None:
    """Simulate the peer going away."""
    self._inbox.put_nowait(TransportClosed("peer left", clean=clean))

  async def send(self, message: str) -> None:
    if self.closed:
      raise TransportClosed("send after close")
    self.sent.append(message)

  async def recv(self) -> str | bytes:
    item = await self._inbox.get()
    if isinstance(item, TransportClosed):
      self._inbox.put_nowait(item)
      raise item
    return item

  async def close(self, code: int = 1000, reason: str = "") -> None:
    self.close_calls += 1
    if not self.closed:
      self.closed = True
      self._inbox.put_nowait(TransportClosed("closed locally"))

  @property
  def messages(self) -> list[dict]:
    return [json.loads(m) for m in self.sent]

  def types(self) -> list[str]:
    return [m["type"] for m in self.messages]


class StalledTransport(FakeTransport):
  """A transport whose sends never complete, like a peer that stopped reading."""

  def __init__(self, name: str = "stalled") -> None:
    super().__init__(name)
    self.send_attempts = 0

  async def send(self, message: str) -> None:
    self.send_attempts += 1
    await asyncio.Event().wait()


class ManualClock:
  def __init__(self, start_ms: float = 0.0) -> None:
    self.now_ms = start_ms

  def __call__(self) -> float:
    return self.now_ms

  def advance(self, ms: float) -> None:
    self.now_ms += ms


class ManualHandle:
  def __init__(self, due_ms: float, callback, args) -> None:
    self.due_ms = due_ms
    self.callback = callback
    self.args = args
    self.cancelled = False

  def cancel(self) -> None:
    self.cancelled = True


class ManualTimers:
  """`TimerFactory` driven by a `ManualClock`; callbacks run only from `advance()`."""

  def __init__(self, clock: ManualClock) -> None:
    self.clock = clock
    self.handles: list[ManualHandle] = []

  def call_later(self, delay: float, callback, *args) -> ManualHandle:
    handle = ManualHandle(self.clock.now_ms + delay * 1000, callback, args)
    self.handles.append(handle)
    return handle

  @property
  def pending(self) -> list[ManualHandle]:
    return [h for h in self.handles if not h.cancelled]

  def advance(self, ms: float) -> None:
    """Move the clock forward, running due callbacks in order."""
    target = self.clock.now_ms + ms
    while True:
      due = [h for h in self.pending if h.due_ms <= target]
      if not due:
        break
      handle = min(due, key=lambda h: h.due_ms)
      self.clock.now_ms = max(self.clock.now_ms, handle.due_ms)
      handle.cancelled = True
      handle.callback(*handle.args)
    self.clock.now_ms = target


def pcm16_b64(duration_ms: float, amplitude: int = 1000) -> str:
  """Base64 PCM16 of a constant-amplitude signal lasting `duration_ms`."""
  samples = np.full(int(SAMPLE_RATE * duration_ms / 1000), amplitude, dtype="<i2")
  return base64.b64encode(samples.tobytes()).decode("ascii")


@pytest.fixture
def clock() -> ManualClock:
  return ManualClock(start_ms=10_000.0)


@pytest.fixture
def timers(clock) -> ManualTimers:
  return ManualTimers(clock)
