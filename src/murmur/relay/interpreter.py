"""
Classification of upstream realtime events.

Each event applies at most one update to the session's commit state and produces at most one
message for the browser. Transcription text reaches the browser only through
`conversation.item.input_audio_transcription.completed`; generic response text belongs to
conversational replies and is never forwarded.
"""

from murmur.constants import DEFAULT_ERROR_MESSAGE
from murmur.errors import UpstreamProtocolError
from murmur.logs import get_logger
from murmur.relay.scheduler import CommitScheduler
from murmur.wire import (
  ErrorMessage,
  SpeechStartedMessage,
  SpeechStoppedMessage,
  TranscriptionDeltaMessage,
  TranscriptionErrorMessage,
  TranscriptionMessage,
  UpstreamEventKind,
  deserialize_upstream_event,
)
from murmur.wire.client import ClientMessage
from murmur.wire.upstream import (
  BufferEvent,
  ErrorEvent,
  ResponseDoneEvent,
  ResponseLifecycleEvent,
  SessionEvent,
  SpeechStartedEvent,
  SpeechStoppedEvent,
  TranscriptionCompletedEvent,
  TranscriptionDeltaEvent,
  TranscriptionFailedEvent,
  TranscriptionStartedEvent,
  UnknownEvent,
  UpstreamEvent,
)

MALFORMED_EVENT_MESSAGE = "Received a malformed event from the transcription service"


class UpstreamEventInterpreter:
  def __init__(
    self,
    scheduler: CommitScheduler,
    *,
    reset_buffer_on_response_done: bool = False,
    logger_name: str = "relay/interp",
  ) -> None:
    """
    :param scheduler: Commit state of the session the events belong to.
    :param reset_buffer_on_response_done: Also reset buffered-duration accounting when a
      response ends without a transcription.
    :param logger_name: Name for this interpreter's logger.
    """
    self.scheduler = scheduler
    self.reset_buffer_on_response_done = reset_buffer_on_response_done
    self.logger = get_logger(logger_name)

  def interpret_raw(self, payload: str | bytes) -> ClientMessage | None:
    """
    Parse and interpret one upstream payload.

    A payload that cannot be parsed ends any in-flight response, so the session cannot stall
    waiting for a response whose terminal event was unreadable.
    """
    try:
      event = deserialize_upstream_event(payload)
    except UpstreamProtocolError as e:
      self.logger.warning("Malformed upstream event", error=str(e))
      self.scheduler.response_terminated()
      return ErrorMessage(error=MALFORMED_EVENT_MESSAGE)

    return self.interpret(event)

  def interpret(self, event: UpstreamEvent) -> ClientMessage | None:
    """
    Apply one parsed upstream event.

    :returns: The message to forward to the browser, if any.
    """
    match event:
      case TranscriptionCompletedEvent(item_id=item_id, transcript=transcript):
        self.logger.info("Transcription completed", item_id=item_id, chars=len(transcript))
        self.scheduler.response_terminated()
        self.scheduler.reset_counters()
        return TranscriptionMessage(text=transcript, item_id=item_id)

      case TranscriptionFailedEvent(item_id=item_id, error=error):
        message = (error.message if error else None) or DEFAULT_ERROR_MESSAGE
        self.logger.warning("Transcription failed", item_id=item_id, error=message)
        self.scheduler.response_terminated()
        return TranscriptionErrorMessage(error=message, item_id=item_id)

      case TranscriptionDeltaEvent(item_id=item_id, delta=delta):
        return TranscriptionDeltaMessage(delta=delta, item_id=item_id)

      case TranscriptionStartedEvent(item_id=item_id):
        self.logger.debug("Transcription started", item_id=item_id)
        return None

      case SpeechStartedEvent(audio_start_ms=start, item_id=item_id):
        self.logger.debug("Speech started", audio_start_ms=start)
        return SpeechStartedMessage(audio_start_ms=start, item_id=item_id)

      case SpeechStoppedEvent(audio_end_ms=end, item_id=item_id):
        self.logger.debug("Speech stopped", audio_end_ms=end)
        return SpeechStoppedMessage(audio_end_ms=end, item_id=item_id)

      case ErrorEvent():
        message = event.message or "Unknown upstream error"
        self.logger.error("Upstream error", error=message, code=event.error and event.error.code)
        self.scheduler.response_terminated()
        # The upstream buffer may no longer match our accounting
        if "buffer" in message.lower():
          self.scheduler.reset_counters()
        return ErrorMessage(error=message)

      case ResponseDoneEvent():
        self.logger.debug("Response done")
        self.scheduler.response_terminated()
        if self.reset_buffer_on_response_done:
          self.scheduler.reset_counters()
        return None

      case ResponseLifecycleEvent(type=kind):
        self.logger.debug("Response lifecycle event", kind=kind)
        return None

      case BufferEvent(type=UpstreamEventKind.BUFFER_COMMITTED, item_id=item_id):
        self.logger.debug("Upstream committed buffer", item_id=item_id)
        return None

      case BufferEvent(type=UpstreamEventKind.BUFFER_CLEARED):
        self.logger.debug("Upstream cleared buffer")
        return None

      case SessionEvent(type=kind):
        self.logger.info("Upstream session event", kind=kind)
        return None

      case UnknownEvent(type=kind):
        self.logger.debug("Ignoring unrecognized upstream event", kind=kind)
        return None

      case _:
        self.logger.warning("Unhandled upstream event", kind=event.type)
        return None
