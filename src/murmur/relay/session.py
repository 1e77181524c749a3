"""
Session controller: one browser connection bridged to one upstream connection.

The controller owns the session's commit scheduler, event interpreter and paragraph break
detector. Four tasks run per session: a reader and a writer for each side. Outbound messages go
through one queue per side so that sends made from timer callbacks keep their order relative
to sends made while handling frames and events. The first task to finish ends the session, and
teardown always closes both sides.
"""

import asyncio
import dataclasses
import uuid
from collections.abc import Callable

from pydantic import BaseModel

from murmur.config import SessionConfig
from murmur.errors import InvalidModelError, TransportClosed, UnknownMessageType
from murmur.format import Pretty, Seconds
from murmur.logs import get_logger
from murmur.relay.audio import DecodedFrame, RejectedFrame, decode_frame
from murmur.relay.breaks import SpeechBreakDetector
from murmur.relay.interfaces import DocumentPublisher, MessageTransport, TimerFactory
from murmur.relay.interpreter import UpstreamEventInterpreter
from murmur.relay.scheduler import CommitAction, CommitScheduler, monotonic_ms
from murmur.wire import (
  AppendAudioCommand,
  AudioChunkMessage,
  AudioCommitMessage,
  ClearAudioBufferMessage,
  ClearAudioCommand,
  CommitAudioCommand,
  ErrorMessage,
  ParagraphBreakMessage,
  ReadyMessage,
  SessionUpdateCommand,
  SetCommitThresholdMessage,
  SetPromptMessage,
  SetSessionIdMessage,
  SetSpeechBreakDetectionMessage,
  SetTranscriptionModelMessage,
  SetVadParamsMessage,
  SpeechStartedMessage,
  SpeechStoppedMessage,
  TranscriptionMessage,
  deserialize_client_message,
  serialize_message,
)
from murmur.wire.upstream import InputAudioTranscription, SessionSettings, TurnDetection

UPSTREAM_LOST_MESSAGE = "Connection to the transcription service was lost"


def validate_model(model: str | None, allowed: list[str], default: str) -> str:
  """
  Resolve the model requested by a connecting client.

  :param model: Value of the `model` query parameter, None when absent.
  :param allowed: Allow-list of models.
  :param default: Model used when none was requested.
  :raises InvalidModelError: A model was requested but is not allowed.
  """
  if model is None:
    return default
  if model not in allowed:
    raise InvalidModelError(model, allowed)
  return model


class SessionController:
  """
  Bridges a browser transport and an upstream transport for one transcription session.

  All session state is mutated only from the event loop running `run()`.
  """

  def __init__(
    self,
    client: MessageTransport,
    upstream: MessageTransport,
    *,
    model: str,
    config: SessionConfig,
    session_id: str | None = None,
    publisher: DocumentPublisher | None = None,
    close_grace_period: float = 2.0,
    clock: Callable[[], float] = monotonic_ms,
    timers: TimerFactory | None = None,
  ) -> None:
    """
    :param client: Browser-facing transport.
    :param upstream: Transport to the upstream realtime API.
    :param model: Realtime model the upstream connection was opened for.
    :param config: Session defaults.
    :param session_id: Document id; generated when not given.
    :param publisher: Receives completed transcriptions for the session's document.
    :param close_grace_period: Seconds allowed for each close during teardown.
    :param clock: Millisecond clock for commit rate limits.
    :param timers: Timer factory for the debounce and paragraph break timers.
    """
    self.client = client
    self.upstream = upstream
    self.model = model
    self.config = config
    self.session_id = session_id or uuid.uuid4().hex
    self.publisher = publisher
    self.close_grace_period = close_grace_period
    self.logger = get_logger("relay/session", session=self.session_id)
    self._clock = clock
    self._started_at = clock()

    self.prompt = config.prompt
    self.language = config.language
    self.transcription_model = config.transcription_model
    self.vad = config.vad

    self.scheduler = CommitScheduler(
      config.commit, clock=clock, timers=timers, on_timer_commit=self._commit_from_timer
    )
    self.interpreter = UpstreamEventInterpreter(
      self.scheduler, reset_buffer_on_response_done=config.reset_buffer_on_response_done
    )
    self.breaks = SpeechBreakDetector(
      config.speech_breaks, self._send_paragraph_break, timers=timers
    )

    self.frames_forwarded = 0
    self.frames_silent = 0
    self.frames_rejected = 0

    self._client_outbox: asyncio.Queue[BaseModel] = asyncio.Queue()
    self._upstream_outbox: asyncio.Queue[BaseModel] = asyncio.Queue()

  # --- Upstream configuration ---------------------------------------------------------------

  def build_session_update(self) -> SessionUpdateCommand:
    """Full upstream configuration reflecting the current session settings."""
    turn_detection = None
    if self.vad.enabled:
      turn_detection = TurnDetection(
        threshold=self.vad.threshold,
        prefix_padding_ms=self.vad.prefix_padding_ms,
        silence_duration_ms=self.vad.silence_duration_ms,
      )

    return SessionUpdateCommand(
      session=SessionSettings(
        input_audio_transcription=InputAudioTranscription(
          model=self.transcription_model,
          prompt=self.prompt or None,
          language=self.language,
        ),
        turn_detection=turn_detection,
        max_response_output_tokens=self.config.max_response_output_tokens,
      )
    )

  def _reconfigure(self) -> None:
    self.logger.info(
      "Sending session configuration",
      transcription_model=self.transcription_model,
      vad_enabled=self.vad.enabled,
      prompt_chars=len(self.prompt),
    )
    update = self.build_session_update()
    settings = update.session.model_dump(exclude_none=True)
    self.logger.debug("Session update", settings=Pretty(settings))
    self._send_upstream(update)

  # --- Control operations -------------------------------------------------------------------

  def set_prompt(self, prompt: str) -> None:
    self.prompt = prompt
    self._reconfigure()

  def set_vad_params(
    self,
    *,
    enabled: bool | None = None,
    threshold: float | None = None,
    silence_duration_ms: int | None = None,
    prefix_padding_ms: int | None = None,
    paragraph_break_threshold_ms: int | None = None,
  ) -> None:
    """Replace the given VAD parameters, keeping the others, and reconfigure upstream."""
    changes = {
      key: value
      for key, value in {
        "enabled": enabled,
        "threshold": threshold,
        "silence_duration_ms": silence_duration_ms,
        "prefix_padding_ms": prefix_padding_ms,
      }.items()
      if value is not None
    }
    self.vad = dataclasses.replace(self.vad, **changes)
    if paragraph_break_threshold_ms is not None:
      self.breaks.set_threshold(paragraph_break_threshold_ms)
    self._reconfigure()

  def set_transcription_model(self, model: str) -> None:
    allowed = self.config.transcription_models
    if model not in allowed:
      error = InvalidModelError(model, allowed)
      self.logger.warning("Rejected transcription model", model=model)
      self._send_client(ErrorMessage(error=str(error)))
      return

    self.transcription_model = model
    self._reconfigure()

  def set_session_id(self, session_id: str) -> None:
    self.logger.info("Session id changed", new_session=session_id)
    self.session_id = session_id
    self.logger = self.logger.bind(session=session_id)

  def set_speech_break_detection(self, enabled: bool, marker: str | None = None) -> None:
    self.breaks.configure(enabled, marker)

  def set_commit_threshold(self, threshold_ms: float) -> None:
    self.scheduler.set_immediate_threshold(threshold_ms)

  def append_audio(self, audio_b64: str) -> None:
    """Measure a browser chunk and forward it upstream unless it is malformed or silent."""
    frame = decode_frame(audio_b64)

    match frame:
      case RejectedFrame(reason=reason, byte_length=byte_length, detail=detail):
        self.frames_rejected += 1
        self.logger.debug(
          "Dropping malformed audio chunk", reason=reason, bytes=byte_length, detail=detail
        )
        return

      case DecodedFrame() if frame.is_silent:
        self.frames_silent += 1
        if self.frames_silent % 50 == 1:
          self.logger.debug("Dropping silent audio chunk", silent_chunks=self.frames_silent)
        return

    action = self.scheduler.on_frame(frame.duration_ms)
    self.frames_forwarded += 1
    self._send_upstream(AppendAudioCommand(audio=audio_b64))
    if action is CommitAction.COMMIT_NOW:
      self._send_upstream(CommitAudioCommand())

  def commit(self) -> None:
    if self.scheduler.request_commit() is CommitAction.COMMIT_NOW:
      self._send_upstream(CommitAudioCommand())

  def clear_buffer(self) -> None:
    if self.scheduler.clear() is CommitAction.CLEAR_UPSTREAM_BUFFER:
      self._send_upstream(ClearAudioCommand())

  # --- Inbound dispatch ---------------------------------------------------------------------

  def handle_client_message(self, payload: str | bytes) -> None:
    """Apply one message received from the browser."""
    if isinstance(payload, bytes):
      self.logger.warning("Ignoring binary client message", bytes=len(payload))
      return

    try:
      message = deserialize_client_message(payload)
    except UnknownMessageType as e:
      self.logger.warning("Ignoring unrecognized client message", message_type=e.message_type)
      return
    except ValueError as e:
      self.logger.warning("Invalid client message", error=str(e))
      self._send_client(ErrorMessage(error=str(e)))
      return

    match message:
      case AudioChunkMessage(audio=audio):
        self.append_audio(audio)
      case AudioCommitMessage():
        self.commit()
      case ClearAudioBufferMessage():
        self.clear_buffer()
      case SetPromptMessage(prompt=prompt):
        self.set_prompt(prompt)
      case SetVadParamsMessage():
        self.set_vad_params(
          enabled=message.enabled,
          threshold=message.threshold,
          silence_duration_ms=message.silence_duration_ms,
          prefix_padding_ms=message.prefix_padding_ms,
          paragraph_break_threshold_ms=message.paragraph_break_threshold_ms,
        )
      case SetTranscriptionModelMessage(model=model):
        self.set_transcription_model(model)
      case SetSessionIdMessage(session_id=session_id):
        self.set_session_id(session_id)
      case SetSpeechBreakDetectionMessage(enabled=enabled, marker=marker):
        self.set_speech_break_detection(enabled, marker)
      case SetCommitThresholdMessage(threshold_ms=threshold_ms):
        self.set_commit_threshold(threshold_ms)

  def handle_upstream_message(self, payload: str | bytes) -> None:
    """Apply one upstream event and forward the resulting message to the browser."""
    message = self.interpreter.interpret_raw(payload)

    match message:
      case None:
        return
      case SpeechStartedMessage():
        self.breaks.on_speech_started()
      case SpeechStoppedMessage():
        message = self.breaks.on_speech_stopped(message, self.vad.silence_duration_ms)

    self._send_client(message)

    # Every message reaches the client; transcriptions are also shared with the document
    if isinstance(message, TranscriptionMessage) and self.publisher is not None:
      self.publisher.publish(self.session_id, message.text, message.item_id)

  # --- Lifecycle ----------------------------------------------------------------------------

  async def run(self) -> None:
    """Bridge both transports until either side closes, then close the other."""
    self.logger.info("Session started", model=self.model)
    self._reconfigure()
    self._send_client(ReadyMessage())

    tasks = {
      asyncio.create_task(self._read_client(), name="client-reader"): "client",
      asyncio.create_task(
        self._drain(self._client_outbox, self.client), name="client-writer"
      ): "client",
      asyncio.create_task(self._read_upstream(), name="upstream-reader"): "upstream",
      asyncio.create_task(
        self._drain(self._upstream_outbox, self.upstream), name="upstream-writer"
      ): "upstream",
    }

    side, clean = "server", True
    try:
      done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
      side, clean = self._closure_cause(done, tasks)
    finally:
      for task in tasks:
        task.cancel()
      await asyncio.gather(*tasks, return_exceptions=True)
      await self._teardown(side, clean)

  def _closure_cause(
    self, done: set[asyncio.Task], tasks: dict[asyncio.Task, str]
  ) -> tuple[str, bool]:
    for task in done:
      side = tasks[task]
      error = task.exception()
      if isinstance(error, TransportClosed):
        self.logger.info("Peer closed", side=side, clean=error.clean, reason=error.reason)
        return side, error.clean
      if error is not None:
        self.logger.error("Session task failed", task=task.get_name(), exc_info=error)
        return side, False
    return "server", True

  async def _teardown(self, side: str, clean: bool) -> None:
    self.scheduler.close()
    self.breaks.close()

    if side == "upstream" and not clean:
      try:
        await asyncio.wait_for(
          self.client.send(serialize_message(ErrorMessage(error=UPSTREAM_LOST_MESSAGE))),
          self.close_grace_period,
        )
      except (TransportClosed, TimeoutError):
        self.logger.debug("Could not notify client of upstream loss")

    await asyncio.gather(self._close(self.client), self._close(self.upstream))
    self.logger.info(
      "Session closed",
      closed_by=side,
      clean=clean,
      frames_forwarded=self.frames_forwarded,
      frames_silent=self.frames_silent,
      frames_rejected=self.frames_rejected,
      duration=Seconds((self._clock() - self._started_at) / 1000),
    )

  async def _close(self, transport: MessageTransport) -> None:
    try:
      await asyncio.wait_for(transport.close(), self.close_grace_period)
    except TimeoutError:
      self.logger.warning("Timed out closing connection", side=transport.name)

  async def _read_client(self) -> None:
    while True:
      self.handle_client_message(await self.client.recv())

  async def _read_upstream(self) -> None:
    while True:
      self.handle_upstream_message(await self.upstream.recv())

  async def _drain(self, outbox: asyncio.Queue[BaseModel], transport: MessageTransport) -> None:
    while True:
      message = await outbox.get()
      await transport.send(serialize_message(message))

  def _send_client(self, message: BaseModel) -> None:
    self._client_outbox.put_nowait(message)

  def _send_upstream(self, message: BaseModel) -> None:
    self._upstream_outbox.put_nowait(message)

  def _commit_from_timer(self) -> None:
    self._send_upstream(CommitAudioCommand())

  def _send_paragraph_break(self, message: ParagraphBreakMessage) -> None:
    self._send_client(message)
