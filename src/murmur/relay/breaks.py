"""
Paragraph break detection from upstream voice activity events.

When upstream reports the end of speech, the silence that has already elapsed is the VAD
silence duration. If that is shorter than the paragraph threshold, a one-shot timer waits out
the remainder; a new `speech_started` cancels it, otherwise a `paragraph_break` is emitted.
"""

import asyncio
from collections.abc import Callable

from murmur.config import SpeechBreakConfig
from murmur.format import Milliseconds
from murmur.logs import get_logger
from murmur.relay.interfaces import Cancellable, TimerFactory
from murmur.wire import ParagraphBreakMessage, SpeechStoppedMessage


class SpeechBreakDetector:
  def __init__(
    self,
    config: SpeechBreakConfig,
    on_break: Callable[[ParagraphBreakMessage], None],
    *,
    timers: TimerFactory | None = None,
    logger_name: str = "relay/breaks",
  ) -> None:
    self.enabled = config.enabled
    self.marker = config.marker
    self.threshold_ms = config.paragraph_break_threshold_ms
    self.on_break = on_break
    self.logger = get_logger(logger_name)
    self._timers = timers
    self._timer: Cancellable | None = None

  @property
  def timer_pending(self) -> bool:
    return self._timer is not None

  def configure(self, enabled: bool, marker: str | None = None) -> None:
    self.enabled = enabled
    if marker is not None:
      self.marker = marker
    if not enabled:
      self._cancel_timer()
    self.logger.info("Speech break detection configured", enabled=enabled, marker=self.marker)

  def set_threshold(self, threshold_ms: int) -> None:
    self.threshold_ms = threshold_ms

  def on_speech_started(self) -> None:
    if self._timer is not None:
      self.logger.debug("Speech resumed before paragraph break")
    self._cancel_timer()

  def on_speech_stopped(
    self, message: SpeechStoppedMessage, silence_gap_ms: int
  ) -> SpeechStoppedMessage:
    """
    Annotate a `speech_stopped` message and arm the break timer if needed.

    :param message: Message produced from the upstream event.
    :param silence_gap_ms: Silence already elapsed when upstream fired the event.
    :returns: The message to forward, with break fields filled in when detection is enabled.
    """
    if not self.enabled:
      return message

    self._cancel_timer()
    remaining_ms = self.threshold_ms - silence_gap_ms
    if remaining_ms > 0:
      timers = self._timers or asyncio.get_running_loop()
      self._timer = timers.call_later(remaining_ms / 1000, self._fire)
      self.logger.debug("Paragraph break timer armed", remaining=Milliseconds(remaining_ms))
    else:
      self._timer = None

    return message.model_copy(
      update={
        "silence_gap_ms": silence_gap_ms,
        "silence_threshold_ms": self.threshold_ms,
        "marker": self.marker,
      }
    )

  def close(self) -> None:
    self._cancel_timer()

  def _fire(self) -> None:
    self._timer = None
    self.logger.debug("Paragraph break")
    self.on_break(ParagraphBreakMessage(marker=self.marker))

  def _cancel_timer(self) -> None:
    if self._timer is not None:
      self._timer.cancel()
      self._timer = None
