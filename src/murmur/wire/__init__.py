"""
Wire protocol package.

Contains the message types exchanged with browser clients and with the upstream realtime API.
"""

from .client import (
  AudioChunkMessage,
  AudioCommitMessage,
  ClearAudioBufferMessage,
  ErrorMessage,
  InboundClientMessage,
  OutboundClientMessage,
  ParagraphBreakMessage,
  ReadyMessage,
  SetCommitThresholdMessage,
  SetPromptMessage,
  SetSessionIdMessage,
  SetSpeechBreakDetectionMessage,
  SetTranscriptionModelMessage,
  SetVadParamsMessage,
  SpeechStartedMessage,
  SpeechStoppedMessage,
  TranscriptAppendedMessage,
  TranscriptionDeltaMessage,
  TranscriptionErrorMessage,
  TranscriptionMessage,
)
from .codec import deserialize_client_message, deserialize_upstream_event, serialize_message
from .upstream import (
  AppendAudioCommand,
  ClearAudioCommand,
  CommitAudioCommand,
  SessionUpdateCommand,
  UpstreamEvent,
  UpstreamEventKind,
  UpstreamOutbound,
)

__all__ = [
  "AppendAudioCommand",
  "AudioChunkMessage",
  "AudioCommitMessage",
  "ClearAudioBufferMessage",
  "ClearAudioCommand",
  "CommitAudioCommand",
  "ErrorMessage",
  "InboundClientMessage",
  "OutboundClientMessage",
  "ParagraphBreakMessage",
  "ReadyMessage",
  "SessionUpdateCommand",
  "SetCommitThresholdMessage",
  "SetPromptMessage",
  "SetSessionIdMessage",
  "SetSpeechBreakDetectionMessage",
  "SetTranscriptionModelMessage",
  "SetVadParamsMessage",
  "SpeechStartedMessage",
  "SpeechStoppedMessage",
  "TranscriptAppendedMessage",
  "TranscriptionDeltaMessage",
  "TranscriptionErrorMessage",
  "TranscriptionMessage",
  "UpstreamEvent",
  "UpstreamEventKind",
  "UpstreamOutbound",
  "deserialize_client_message",
  "deserialize_upstream_event",
  "serialize_message",
]
