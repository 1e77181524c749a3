import os

import yaml
from pydantic import BaseModel, Field, model_validator, validate_call
from pydantic.dataclasses import dataclass
from pydantic.types import FilePath

from murmur.constants import SAMPLE_RATE
from murmur.logs import get_logger

logger = get_logger("cfg")


@dataclass
class VadParams:
  """Server-side voice activity detection parameters sent upstream with each configuration."""

  enabled: bool = True
  """When False, upstream turn detection is switched off entirely."""

  threshold: float = Field(default=0.5, gt=0.0, le=1.0)
  """Activation threshold; higher values require louder audio to count as speech."""

  silence_duration_ms: int = Field(default=500, ge=0)
  """Silence that must elapse before upstream reports speech_stopped."""

  prefix_padding_ms: int = Field(default=300, ge=0)
  """Audio retained before detected speech onset."""


@dataclass
class CommitPolicy:
  """
  Rate-limit policy for committing buffered audio upstream.

  Immediate commits happen as frames arrive; debounced commits happen when the audio stream
  goes quiet for `debounce_delay_ms`. Manual commits are requested by the client.
  """

  immediate_min_buffered_ms: float = Field(default=1000.0, gt=0.0)
  """Buffered audio required before a frame can trigger an immediate commit."""

  immediate_min_interval_ms: float = Field(default=2000.0, ge=0.0)
  """Minimum time since the last commit for an immediate commit."""

  debounce_delay_ms: float = Field(default=2000.0, gt=0.0)
  """Quiet period after the last frame before the debounce timer fires."""

  debounce_min_buffered_ms: float = Field(default=500.0, gt=0.0)
  """Buffered audio required when the debounce timer fires."""

  debounce_min_interval_ms: float = Field(default=1500.0, ge=0.0)
  """Minimum time since the last commit for a debounced commit."""

  manual_min_buffered_ms: float = Field(default=100.0, ge=0.0)
  """Buffered audio required to honour a manual commit request."""

  @model_validator(mode="after")
  def validate_threshold_relationships(self) -> "CommitPolicy":
    """The debounce path is the fallback for short utterances, so it must not demand more."""
    if self.debounce_min_buffered_ms > self.immediate_min_buffered_ms:
      raise ValueError(
        f"debounce_min_buffered_ms ({self.debounce_min_buffered_ms}ms) must not exceed "
        f"immediate_min_buffered_ms ({self.immediate_min_buffered_ms}ms)"
      )
    return self


@dataclass
class SpeechBreakConfig:
  """Paragraph break detection driven by upstream speech_stopped events."""

  enabled: bool = False
  marker: str = "⏎"
  paragraph_break_threshold_ms: int = Field(default=2000, ge=0)
  """Silence after which a paragraph break marker is emitted."""


class ServerConfig(BaseModel):
  """Listener configuration for the relay process."""

  host: str = "0.0.0.0"
  port: int = Field(default=8888, gt=0, lt=65536)
  relay_path: str = "/api/realtime-ws"
  transcripts_path: str = "/api/transcripts"
  info_path: str = "/api/realtime"
  health_path: str = "/healthz"

  @model_validator(mode="after")
  def validate_paths(self) -> "ServerConfig":
    paths = [self.relay_path, self.transcripts_path, self.info_path, self.health_path]
    for path in paths:
      if not path.startswith("/"):
        raise ValueError(f"Path '{path}' must start with '/'")
    if len(set(paths)) != len(paths):
      raise ValueError("relay_path, transcripts_path, info_path and health_path must differ")
    return self


class UpstreamConfig(BaseModel):
  """Connection settings for the hosted realtime API."""

  url: str = "wss://api.openai.com/v1/realtime"
  api_key: str | None = Field(default_factory=lambda: os.getenv("OPENAI_API_KEY"), repr=False)
  models: list[str] = Field(
    default_factory=lambda: ["gpt-4o-realtime-preview", "gpt-4o-mini-realtime-preview"],
    min_length=1,
  )
  """Realtime models a client may request with the `model` query parameter."""

  default_model: str = "gpt-4o-realtime-preview"
  """Model used when the client does not pass one."""

  open_timeout: float = Field(default=10.0, gt=0.0)
  """Seconds allowed for the upstream handshake."""

  close_grace_period: float = Field(default=2.0, ge=0.0)
  """Seconds allowed for outstanding close handshakes during teardown."""

  @model_validator(mode="after")
  def validate_default_model(self) -> "UpstreamConfig":
    if self.default_model not in self.models:
      raise ValueError(
        f"default_model '{self.default_model}' is not in models: {', '.join(self.models)}"
      )
    return self


class SessionConfig(BaseModel):
  """Per-session defaults. Clients override most of these with control messages."""

  transcription_models: list[str] = Field(
    default_factory=lambda: ["gpt-4o-transcribe", "gpt-4o-mini-transcribe"], min_length=1
  )
  transcription_model: str = "gpt-4o-transcribe"
  prompt: str = ""
  language: str | None = None
  vad: VadParams = Field(default_factory=VadParams)
  commit: CommitPolicy = Field(default_factory=CommitPolicy)
  speech_breaks: SpeechBreakConfig = Field(default_factory=SpeechBreakConfig)
  max_response_output_tokens: int = Field(default=1, gt=0)

  reset_buffer_on_response_done: bool = False
  """
  Whether a bare `response.done` also resets buffered-duration accounting. Transcription
  completion always resets it.
  """

  @model_validator(mode="after")
  def validate_transcription_model(self) -> "SessionConfig":
    if self.transcription_model not in self.transcription_models:
      raise ValueError(
        f"transcription_model '{self.transcription_model}' is not in transcription_models: "
        f"{', '.join(self.transcription_models)}"
      )
    return self


class CollabConfig(BaseModel):
  """Collaborative transcript fan-out."""

  enabled: bool = True


class RelayConfig(BaseModel):
  """Top-level relay configuration."""

  server: ServerConfig = Field(default_factory=ServerConfig)
  upstream: UpstreamConfig = Field(default_factory=UpstreamConfig)
  session: SessionConfig = Field(default_factory=SessionConfig)
  collab: CollabConfig = Field(default_factory=CollabConfig)

  def pretty_print(self) -> None:
    """Log every effective configuration value at INFO level."""
    logger.info("=" * 60)
    logger.info("MURMUR CONFIGURATION")
    logger.info("=" * 60)

    logger.info("SERVER SETTINGS:")
    logger.info(f"  Listen: {self.server.host}:{self.server.port}")
    logger.info(f"  Relay Path: {self.server.relay_path}")
    logger.info(f"  Transcripts Path: {self.server.transcripts_path}")
    logger.info(f"  Info Path: {self.server.info_path}")
    logger.info(f"  Health Path: {self.server.health_path}")

    logger.info("UPSTREAM SETTINGS:")
    logger.info(f"  URL: {self.upstream.url}")
    logger.info(f"  API Key: {'set' if self.upstream.api_key else 'MISSING'}")
    logger.info(f"  Models: {self.upstream.models}")
    logger.info(f"  Default Model: {self.upstream.default_model}")
    logger.info(f"  Open Timeout: {self.upstream.open_timeout}s")
    logger.info(f"  Close Grace Period: {self.upstream.close_grace_period}s")

    session = self.session
    logger.info("SESSION SETTINGS:")
    logger.info(f"  Transcription Model: {session.transcription_model}")
    logger.info(f"  Transcription Models: {session.transcription_models}")
    logger.info(f"  Prompt: {session.prompt!r}")
    logger.info(f"  Language: {session.language}")
    logger.info(f"  Max Response Output Tokens: {session.max_response_output_tokens}")
    logger.info(f"  Reset Buffer On Response Done: {session.reset_buffer_on_response_done}")

    logger.info("  VAD PARAMETERS:")
    logger.info(f"    Enabled: {session.vad.enabled}")
    logger.info(f"    Threshold: {session.vad.threshold}")
    logger.info(f"    Silence Duration: {session.vad.silence_duration_ms}ms")
    logger.info(f"    Prefix Padding: {session.vad.prefix_padding_ms}ms")

    commit = session.commit
    logger.info("  COMMIT POLICY:")
    logger.info(
      f"    Immediate: >= {commit.immediate_min_buffered_ms}ms buffered, "
      f">= {commit.immediate_min_interval_ms}ms since last commit"
    )
    logger.info(
      f"    Debounced: after {commit.debounce_delay_ms}ms quiet, "
      f">= {commit.debounce_min_buffered_ms}ms buffered, "
      f">= {commit.debounce_min_interval_ms}ms since last commit"
    )
    logger.info(f"    Manual: >= {commit.manual_min_buffered_ms}ms buffered")

    logger.info("  SPEECH BREAKS:")
    logger.info(f"    Enabled: {session.speech_breaks.enabled}")
    logger.info(f"    Marker: {session.speech_breaks.marker!r}")
    logger.info(f"    Paragraph Threshold: {session.speech_breaks.paragraph_break_threshold_ms}ms")

    logger.info("COLLABORATION:")
    logger.info(f"  Enabled: {self.collab.enabled}")

    logger.info("SYSTEM CONSTANTS:")
    logger.info(f"  Sample Rate: {SAMPLE_RATE}")

    logger.info("=" * 60)


@validate_call
def load_config_from_file(config_path: FilePath) -> RelayConfig:
  """Load and validate relay configuration from a YAML file."""

  logger.info("Loading relay configuration", path=str(config_path))

  try:
    with open(config_path, "r", encoding="utf-8") as file:
      config_data = yaml.safe_load(file)

  except yaml.YAMLError as e:
    raise ValueError(f"Invalid YAML in configuration file: {e}") from e
  except OSError as e:
    raise ValueError(f"Error reading configuration file: {e}") from e

  if config_data is None:
    raise ValueError("Configuration file is empty")

  if not isinstance(config_data, dict):
    raise ValueError("Configuration file must contain a YAML dictionary")

  config = RelayConfig.model_validate(config_data)
  config.pretty_print()

  return config


def get_env_int(key: str, default: int | None) -> int | None:
  """Get an int from an environment variable, falling back on missing or unparseable values."""
  value = os.getenv(key)
  if value is None:
    return default
  try:
    return int(value)
  except ValueError:
    return default


def get_env_bool(key: str, default: bool) -> bool:
  """Get a bool from an environment variable."""
  value = os.getenv(key)
  if value is None:
    return default
  return value.lower() in ("true", "1", "yes", "on")
