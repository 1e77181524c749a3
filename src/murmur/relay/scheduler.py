"""
Commit scheduling for a single relay session.

Tracks how much un-committed audio has been forwarded upstream and decides when to commit it.
Two policies cooperate: an immediate commit once enough audio is buffered, and a debounced
commit when the stream goes quiet. Both are rate-limited against the previous commit, and no
commit is issued while the previous one is still awaiting its response.
"""

import asyncio
import math
import time
from collections.abc import Callable
from enum import StrEnum

from murmur.config import CommitPolicy
from murmur.format import Milliseconds
from murmur.logs import get_logger
from murmur.relay.interfaces import Cancellable, TimerFactory


class SchedulerState(StrEnum):
  IDLE = "idle"
  BUFFERING = "buffering"
  AWAITING_RESPONSE = "awaiting_response"


class CommitAction(StrEnum):
  NONE = "none"
  COMMIT_NOW = "commit_now"
  CLEAR_UPSTREAM_BUFFER = "clear_upstream_buffer"


def monotonic_ms() -> float:
  return time.monotonic() * 1000


class CommitScheduler:
  """
  Buffered-duration accounting and commit decisions for one session.

  All methods must be called from the event loop that owns the session. The debounce timer is
  held as a single handle plus a generation number: every reschedule cancels the previous
  handle and bumps the generation, and a callback whose generation is stale does nothing.
  """

  def __init__(
    self,
    policy: CommitPolicy,
    *,
    clock: Callable[[], float] = monotonic_ms,
    timers: TimerFactory | None = None,
    on_timer_commit: Callable[[], None] | None = None,
    logger_name: str = "relay/sched",
  ) -> None:
    """
    :param policy: Thresholds and delays for the three commit paths.
    :param clock: Returns the current time in milliseconds.
    :param timers: Schedules the debounce timer; defaults to the running event loop.
    :param on_timer_commit: Invoked when the debounce timer decides to commit.
    :param logger_name: Name for this scheduler's logger.
    """
    self.policy = policy
    self.clock = clock
    self.on_timer_commit = on_timer_commit
    self.logger = get_logger(logger_name)
    self._timers = timers

    self.state = SchedulerState.IDLE
    self.buffered_ms: float = 0.0
    """Audio forwarded upstream since the last reset."""

    self.chunk_count: int = 0
    """Chunks counted into `buffered_ms`. Diagnostic only."""

    self.last_commit_at_ms: float | None = None
    """Clock value of the most recent commit, None until the first one."""

    self.immediate_min_buffered_ms: float = policy.immediate_min_buffered_ms

    self._timer: Cancellable | None = None
    self._timer_generation = 0

  @property
  def response_in_progress(self) -> bool:
    return self.state is SchedulerState.AWAITING_RESPONSE

  @property
  def timer_pending(self) -> bool:
    return self._timer is not None

  def set_immediate_threshold(self, threshold_ms: float) -> None:
    """
    Override the immediate-commit threshold for this session.

    Values below the debounce threshold are raised to it.
    """
    clamped = max(threshold_ms, self.policy.debounce_min_buffered_ms)
    self.immediate_min_buffered_ms = clamped
    self.logger.info(
      "Commit threshold updated",
      requested=Milliseconds(threshold_ms),
      threshold=Milliseconds(clamped),
    )

  def on_frame(self, duration_ms: float) -> CommitAction:
    """
    Account for a frame that is being forwarded upstream.

    :param duration_ms: Duration of the frame's audio.
    :returns: `COMMIT_NOW` when the immediate policy allows a commit, otherwise `NONE`.
    """
    self.buffered_ms += duration_ms
    self.chunk_count += 1
    self._arm_timer()

    if self.state is SchedulerState.IDLE:
      self.state = SchedulerState.BUFFERING

    if self.chunk_count % 50 == 0:
      self.logger.debug(
        "Buffer progress", chunks=self.chunk_count, buffered=Milliseconds(self.buffered_ms)
      )

    if (
      self.buffered_ms >= self.immediate_min_buffered_ms
      and not self.response_in_progress
      and self._since_last_commit() >= self.policy.immediate_min_interval_ms
    ):
      return self._commit("immediate")

    return CommitAction.NONE

  def request_commit(self) -> CommitAction:
    """Handle a commit requested by the client."""
    if self.response_in_progress:
      self.logger.info("Manual commit ignored: response in progress")
      return CommitAction.NONE

    if self.buffered_ms < self.policy.manual_min_buffered_ms:
      self.logger.info(
        "Manual commit ignored: not enough audio",
        buffered=Milliseconds(self.buffered_ms),
        required=Milliseconds(self.policy.manual_min_buffered_ms),
      )
      return CommitAction.NONE

    return self._commit("manual")

  def clear(self) -> CommitAction:
    """Discard all buffered audio and return to idle."""
    self._cancel_timer()
    self.logger.info(
      "Clearing buffer", chunks=self.chunk_count, buffered=Milliseconds(self.buffered_ms)
    )
    self.buffered_ms = 0.0
    self.chunk_count = 0
    self.state = SchedulerState.IDLE
    return CommitAction.CLEAR_UPSTREAM_BUFFER

  def response_terminated(self) -> None:
    """Upstream finished (or abandoned) the response to the last commit."""
    if self.response_in_progress:
      self.logger.debug("Response terminated")
      self.state = SchedulerState.BUFFERING

  def reset_counters(self) -> None:
    """Reset buffered-duration accounting without touching the upstream buffer."""
    self.buffered_ms = 0.0
    self.chunk_count = 0
    if self.state is SchedulerState.BUFFERING:
      self.state = SchedulerState.IDLE

  def close(self) -> None:
    self._cancel_timer()

  def fire_timer(self, generation: int) -> None:
    """Debounce timer callback. Stale generations are ignored."""
    if generation != self._timer_generation:
      return
    self._timer = None

    action = self.on_quiet_period()
    if action is CommitAction.COMMIT_NOW and self.on_timer_commit is not None:
      self.on_timer_commit()

  def on_quiet_period(self) -> CommitAction:
    """Apply the debounced policy after no frame arrived for the debounce delay."""
    if self.response_in_progress:
      self.logger.debug("Debounce elapsed during response; not committing")
      return CommitAction.NONE

    if self.buffered_ms < self.policy.debounce_min_buffered_ms:
      self.logger.debug(
        "Debounce elapsed with too little audio", buffered=Milliseconds(self.buffered_ms)
      )
      return CommitAction.NONE

    if self._since_last_commit() < self.policy.debounce_min_interval_ms:
      self.logger.debug("Debounce elapsed too soon after last commit")
      return CommitAction.NONE

    return self._commit("debounced")

  def _commit(self, reason: str) -> CommitAction:
    now = self.clock()
    self.logger.info(
      "Committing audio",
      reason=reason,
      chunks=self.chunk_count,
      buffered=Milliseconds(self.buffered_ms),
    )
    self.last_commit_at_ms = now
    self.state = SchedulerState.AWAITING_RESPONSE
    return CommitAction.COMMIT_NOW

  def _since_last_commit(self) -> float:
    if self.last_commit_at_ms is None:
      return math.inf
    return self.clock() - self.last_commit_at_ms

  def _arm_timer(self) -> None:
    self._cancel_timer()
    timers = self._timers or asyncio.get_running_loop()
    self._timer = timers.call_later(
      self.policy.debounce_delay_ms / 1000, self.fire_timer, self._timer_generation
    )

  def _cancel_timer(self) -> None:
    if self._timer is not None:
      self._timer.cancel()
      self._timer = None
    self._timer_generation += 1
