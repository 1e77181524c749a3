"""
Per-session relay components.

A session pairs one browser connection with one upstream connection. Audio chunks are measured
by the decoder, counted by the commit scheduler and forwarded upstream; upstream events are
classified by the interpreter and relayed back to the browser.
"""

from .audio import DecodedFrame, FrameStatus, RejectedFrame, decode_frame, measure_pcm16
from .interpreter import UpstreamEventInterpreter
from .scheduler import CommitAction, CommitScheduler, SchedulerState
from .session import SessionController, validate_model

__all__ = [
  "CommitAction",
  "CommitScheduler",
  "DecodedFrame",
  "FrameStatus",
  "RejectedFrame",
  "SchedulerState",
  "SessionController",
  "UpstreamEventInterpreter",
  "decode_frame",
  "measure_pcm16",
  "validate_model",
]
