"""
Pydantic models for the browser-facing protocol.

Every message is a JSON object tagged by its `type` field. Inbound messages are control and
audio messages sent by the browser; outbound messages are notifications the relay sends back.
"""

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field


class ClientMessage(BaseModel):
  """Base for browser messages. Unknown extra fields are ignored."""

  model_config = ConfigDict(extra="ignore", populate_by_name=True)


# --- Inbound (browser -> relay) -------------------------------------------------------------


class SetPromptMessage(ClientMessage):
  type: Literal["set_prompt"] = "set_prompt"
  prompt: str = ""


class SetVadParamsMessage(ClientMessage):
  """Replaces VAD parameters; omitted fields keep their current values."""

  type: Literal["set_vad_params"] = "set_vad_params"
  enabled: bool | None = None
  threshold: float | None = Field(default=None, gt=0.0, le=1.0)
  silence_duration_ms: int | None = Field(default=None, ge=0)
  prefix_padding_ms: int | None = Field(default=None, ge=0)
  paragraph_break_threshold_ms: int | None = Field(default=None, ge=0)


class SetTranscriptionModelMessage(ClientMessage):
  type: Literal["set_transcription_model"] = "set_transcription_model"
  model: str


class SetSessionIdMessage(ClientMessage):
  type: Literal["set_session_id"] = "set_session_id"
  session_id: str = Field(alias="sessionId", min_length=1)


class SetSpeechBreakDetectionMessage(ClientMessage):
  type: Literal["set_speech_break_detection"] = "set_speech_break_detection"
  enabled: bool
  marker: str | None = None


class SetCommitThresholdMessage(ClientMessage):
  type: Literal["set_commit_threshold"] = "set_commit_threshold"
  threshold_ms: float = Field(gt=0.0)


class AudioChunkMessage(ClientMessage):
  type: Literal["audio_chunk"] = "audio_chunk"
  audio: str
  """Base64-encoded little-endian PCM16 mono audio at 24 kHz."""


class AudioCommitMessage(ClientMessage):
  type: Literal["audio_commit"] = "audio_commit"


class ClearAudioBufferMessage(ClientMessage):
  type: Literal["clear_audio_buffer"] = "clear_audio_buffer"


InboundClientMessage = Annotated[
  SetPromptMessage
  | SetVadParamsMessage
  | SetTranscriptionModelMessage
  | SetSessionIdMessage
  | SetSpeechBreakDetectionMessage
  | SetCommitThresholdMessage
  | AudioChunkMessage
  | AudioCommitMessage
  | ClearAudioBufferMessage,
  Field(discriminator="type"),
]


# --- Outbound (relay -> browser) ------------------------------------------------------------


class ReadyMessage(ClientMessage):
  type: Literal["ready"] = "ready"
  message: str = "Connected to realtime transcription"


class TranscriptionMessage(ClientMessage):
  type: Literal["transcription"] = "transcription"
  text: str
  item_id: str | None = None


class TranscriptionDeltaMessage(ClientMessage):
  type: Literal["transcription_delta"] = "transcription_delta"
  delta: str
  item_id: str | None = None


class TranscriptionErrorMessage(ClientMessage):
  type: Literal["transcription_error"] = "transcription_error"
  error: str
  item_id: str | None = None


class SpeechStartedMessage(ClientMessage):
  type: Literal["speech_started"] = "speech_started"
  audio_start_ms: int | None = None
  item_id: str | None = None


class SpeechStoppedMessage(ClientMessage):
  type: Literal["speech_stopped"] = "speech_stopped"
  audio_end_ms: int | None = None
  item_id: str | None = None
  silence_gap_ms: int | None = None
  silence_threshold_ms: int | None = None
  marker: str | None = None


class ParagraphBreakMessage(ClientMessage):
  type: Literal["paragraph_break"] = "paragraph_break"
  marker: str


class ErrorMessage(ClientMessage):
  type: Literal["error"] = "error"
  error: str


OutboundClientMessage = Annotated[
  ReadyMessage
  | TranscriptionMessage
  | TranscriptionDeltaMessage
  | TranscriptionErrorMessage
  | SpeechStartedMessage
  | SpeechStoppedMessage
  | ParagraphBreakMessage
  | ErrorMessage,
  Field(discriminator="type"),
]


# --- Collaboration subscribers --------------------------------------------------------------


class TranscriptAppendedMessage(ClientMessage):
  """Sent to every subscriber of a shared document when a transcription lands."""

  type: Literal["transcript_appended"] = "transcript_appended"
  document: str
  text: str
  item_id: str | None = None
