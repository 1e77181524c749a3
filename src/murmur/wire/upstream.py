"""
Pydantic models for the upstream realtime API protocol.

Outbound commands configure the upstream session and manage its input audio buffer. Inbound
events are classified by their `type` tag into the categories of `UpstreamEventKind`; the
upstream API adds event types over time, so unrecognized tags parse into `UnknownEvent` rather
than failing.
"""

from enum import StrEnum
from typing import Any, Literal

from pydantic import (
  BaseModel,
  ConfigDict,
  Field,
  SerializerFunctionWrapHandler,
  model_serializer,
)


class UpstreamEventKind(StrEnum):
  """Upstream `type` tags the relay understands."""

  # Session lifecycle
  SESSION_CREATED = "session.created"
  SESSION_UPDATED = "session.updated"

  # Input buffer lifecycle
  BUFFER_COMMITTED = "input_audio_buffer.committed"
  BUFFER_CLEARED = "input_audio_buffer.cleared"
  SPEECH_STARTED = "input_audio_buffer.speech_started"
  SPEECH_STOPPED = "input_audio_buffer.speech_stopped"

  # Transcription lifecycle
  TRANSCRIPTION_STARTED = "conversation.item.input_audio_transcription.started"
  TRANSCRIPTION_DELTA = "conversation.item.input_audio_transcription.delta"
  TRANSCRIPTION_COMPLETED = "conversation.item.input_audio_transcription.completed"
  TRANSCRIPTION_FAILED = "conversation.item.input_audio_transcription.failed"

  # Generic response lifecycle
  RESPONSE_CREATED = "response.created"
  RESPONSE_OUTPUT_ADDED = "response.output_item.added"
  RESPONSE_TEXT_DELTA = "response.text.delta"
  RESPONSE_TEXT_DONE = "response.text.done"
  CONTENT_PART_ADDED = "response.content_part.added"
  CONTENT_PART_DONE = "response.content_part.done"
  OUTPUT_ITEM_DONE = "response.output_item.done"
  RESPONSE_DONE = "response.done"

  ERROR = "error"


# --- Outbound commands ----------------------------------------------------------------------


class UpstreamCommand(BaseModel):
  model_config = ConfigDict(extra="forbid")


class InputAudioTranscription(BaseModel):
  model: str
  prompt: str | None = None
  language: str | None = None

  @model_serializer(mode="wrap")
  def _omit_unset(self, handler: SerializerFunctionWrapHandler) -> dict[str, Any]:
    return {key: value for key, value in handler(self).items() if value is not None}


class TurnDetection(BaseModel):
  type: Literal["server_vad"] = "server_vad"
  threshold: float
  prefix_padding_ms: int
  silence_duration_ms: int
  create_response: bool = False


class SessionSettings(BaseModel):
  modalities: list[str] = Field(default_factory=lambda: ["text"])
  input_audio_format: Literal["pcm16"] = "pcm16"
  input_audio_transcription: InputAudioTranscription
  turn_detection: TurnDetection | None
  max_response_output_tokens: int | Literal["inf"] = 1


class SessionUpdateCommand(UpstreamCommand):
  type: Literal["session.update"] = "session.update"
  session: SessionSettings


class AppendAudioCommand(UpstreamCommand):
  type: Literal["input_audio_buffer.append"] = "input_audio_buffer.append"
  audio: str


class CommitAudioCommand(UpstreamCommand):
  type: Literal["input_audio_buffer.commit"] = "input_audio_buffer.commit"


class ClearAudioCommand(UpstreamCommand):
  type: Literal["input_audio_buffer.clear"] = "input_audio_buffer.clear"


type UpstreamOutbound = (
  SessionUpdateCommand | AppendAudioCommand | CommitAudioCommand | ClearAudioCommand
)


# --- Inbound events -------------------------------------------------------------------------


class UpstreamEvent(BaseModel):
  """Base for inbound upstream events. Extra fields are preserved for logging."""

  model_config = ConfigDict(extra="allow")

  type: str
  event_id: str | None = None


class ErrorDetail(BaseModel):
  model_config = ConfigDict(extra="allow")

  message: str | None = None
  type: str | None = None
  code: str | int | None = None


class SessionEvent(UpstreamEvent):
  session: dict[str, Any] | None = None


class BufferEvent(UpstreamEvent):
  item_id: str | None = None


class SpeechStartedEvent(UpstreamEvent):
  audio_start_ms: int | None = None
  item_id: str | None = None


class SpeechStoppedEvent(UpstreamEvent):
  audio_end_ms: int | None = None
  item_id: str | None = None


class TranscriptionStartedEvent(UpstreamEvent):
  item_id: str | None = None


class TranscriptionDeltaEvent(UpstreamEvent):
  item_id: str | None = None
  delta: str = ""


class TranscriptionCompletedEvent(UpstreamEvent):
  item_id: str | None = None
  transcript: str = ""


class TranscriptionFailedEvent(UpstreamEvent):
  item_id: str | None = None
  error: ErrorDetail | None = None


class ResponseLifecycleEvent(UpstreamEvent):
  """Any event belonging to a generic (conversational) response."""

  response_id: str | None = None


class ResponseDoneEvent(UpstreamEvent):
  response: dict[str, Any] | None = None


class ErrorEvent(UpstreamEvent):
  error: ErrorDetail | None = None

  @property
  def message(self) -> str | None:
    return self.error.message if self.error else None


class UnknownEvent(UpstreamEvent):
  """An event whose `type` the relay does not recognize."""


EVENT_MODELS: dict[str, type[UpstreamEvent]] = {
  UpstreamEventKind.SESSION_CREATED: SessionEvent,
  UpstreamEventKind.SESSION_UPDATED: SessionEvent,
  UpstreamEventKind.BUFFER_COMMITTED: BufferEvent,
  UpstreamEventKind.BUFFER_CLEARED: BufferEvent,
  UpstreamEventKind.SPEECH_STARTED: SpeechStartedEvent,
  UpstreamEventKind.SPEECH_STOPPED: SpeechStoppedEvent,
  UpstreamEventKind.TRANSCRIPTION_STARTED: TranscriptionStartedEvent,
  UpstreamEventKind.TRANSCRIPTION_DELTA: TranscriptionDeltaEvent,
  UpstreamEventKind.TRANSCRIPTION_COMPLETED: TranscriptionCompletedEvent,
  UpstreamEventKind.TRANSCRIPTION_FAILED: TranscriptionFailedEvent,
  UpstreamEventKind.RESPONSE_CREATED: ResponseLifecycleEvent,
  UpstreamEventKind.RESPONSE_OUTPUT_ADDED: ResponseLifecycleEvent,
  UpstreamEventKind.RESPONSE_TEXT_DELTA: ResponseLifecycleEvent,
  UpstreamEventKind.RESPONSE_TEXT_DONE: ResponseLifecycleEvent,
  UpstreamEventKind.CONTENT_PART_ADDED: ResponseLifecycleEvent,
  UpstreamEventKind.CONTENT_PART_DONE: ResponseLifecycleEvent,
  UpstreamEventKind.OUTPUT_ITEM_DONE: ResponseLifecycleEvent,
  UpstreamEventKind.RESPONSE_DONE: ResponseDoneEvent,
  UpstreamEventKind.ERROR: ErrorEvent,
}
"""Model used to validate each recognized event type."""
